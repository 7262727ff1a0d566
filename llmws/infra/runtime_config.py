"""Per-call runtime settings resolution.

Provides a layered config resolution model:
  per-model params  →  deployment defaults (``llmws:``)  →  environment  →  hardcoded default

Each call resolves a fresh :class:`RuntimeSettings`; nothing is cached, so a
config edit takes effect on the next call.

Keys are accepted in camelCase (``connectTimeoutMs``) and snake_case
(``connect_timeout_ms``).  Generation knobs additionally accept the raw wire
names (``max_new_tokens``) alongside the camelCase aliases (``maxNewTokens``).
"""

import logging
import math
import os
from typing import Any, Mapping, Optional

from llmws.core import targets as target_resolver
from llmws.core.types import GenerationConfig, RuntimeSettings

logger = logging.getLogger(__name__)


# Hardcoded fallback defaults.
DEFAULT_CONNECT_TIMEOUT = 8.0     # seconds
DEFAULT_HISTORY_TURNS = 12
DEFAULT_HISTORY_CHARS = 12_000
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Answer concisely and accurately."
DEFAULT_SILENT_REPLY_TOKEN = "NO_REPLY"

# wire name -> accepted aliases, in lookup order
_GENERATION_NUMBER_KEYS = {
    "max_new_tokens": ("max_new_tokens", "maxNewTokens"),
    "temperature": ("temperature",),
    "top_p": ("top_p", "topP"),
    "top_k": ("top_k", "topK"),
    "repetition_penalty": ("repetition_penalty", "repetitionPenalty"),
}
_GENERATION_INT_KEYS = {"max_new_tokens", "top_k"}


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _as_record(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def read_number(record: Mapping[str, Any], *keys: str) -> Optional[float]:
    """First finite number under any of *keys*.  Booleans are not numbers."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if math.isfinite(value):
            return value
    return None


def read_bool(record: Mapping[str, Any], *keys: str) -> Optional[bool]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, bool):
            return value
    return None


def read_str(record: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _layered_number(layers: "list[Mapping[str, Any]]", *keys: str) -> Optional[float]:
    for layer in layers:
        value = read_number(layer, *keys)
        if value is not None:
            return value
    return None


def _layered_bool(layers: "list[Mapping[str, Any]]", *keys: str) -> Optional[bool]:
    for layer in layers:
        value = read_bool(layer, *keys)
        if value is not None:
            return value
    return None


def _layered_str(layers: "list[Mapping[str, Any]]", *keys: str) -> Optional[str]:
    for layer in layers:
        value = read_str(layer, *keys)
        if value is not None:
            return value
    return None


def parse_env_positive_int(env: Mapping[str, str], names: "list[str]",
                           fallback: int) -> int:
    """First env var in *names* holding a positive number, floored to int."""
    for name in names:
        raw = (env.get(name) or "").strip()
        if not raw:
            continue
        try:
            parsed = float(raw)
        except ValueError:
            continue
        if not math.isfinite(parsed) or parsed <= 0:
            continue
        return max(1, int(parsed))
    return fallback


# ---------------------------------------------------------------------------
# Config blocks
# ---------------------------------------------------------------------------

def resolve_defaults(config: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """The deployment-wide ``llmws:`` block."""
    return _as_record(_as_record(config).get("llmws"))


def resolve_model_params(config: Optional[Mapping[str, Any]],
                         provider: str, model: str) -> Mapping[str, Any]:
    """The ``params`` block of ``models["<provider>/<model>"]``, or ``{}``."""
    models = _as_record(_as_record(config).get("models"))
    entry = _as_record(models.get(f"{provider}/{model}"))
    return _as_record(entry.get("params"))


def resolve_generation_config(defaults: Mapping[str, Any],
                              model_params: Mapping[str, Any],
                              stream_params: Optional[Mapping[str, Any]] = None,
                              ) -> GenerationConfig:
    """Merge generation knobs: model config → model params → defaults config → defaults."""
    layers = [
        _as_record(model_params.get("config")),
        model_params,
        _as_record(defaults.get("config")),
        defaults,
    ]
    gen = GenerationConfig()
    for wire_name, aliases in _GENERATION_NUMBER_KEYS.items():
        # Raw spelling wins over camelCase across *all* layers.
        value = None
        for alias in aliases:
            value = _layered_number(layers, alias)
            if value is not None:
                break
        if value is not None:
            setattr(gen, wire_name, int(value) if wire_name in _GENERATION_INT_KEYS else value)
    gen.do_sample = _layered_bool(layers, "do_sample")
    if gen.do_sample is None:
        gen.do_sample = _layered_bool(layers, "doSample")

    stream = _as_record(stream_params)
    temperature = read_number(stream, "temperature")
    if temperature is not None:
        gen.temperature = temperature
    max_tokens = read_number(stream, "max_tokens", "maxTokens")
    if max_tokens is not None:
        gen.max_new_tokens = int(max_tokens)
    return gen


def _ms_to_seconds(value: float) -> float:
    return max(1, math.floor(value)) / 1000.0


def resolve_runtime_settings(config: Optional[Mapping[str, Any]], *,
                             provider: str, model: str, timeout: float,
                             stream_params: Optional[Mapping[str, Any]] = None,
                             env: Optional[Mapping[str, str]] = None,
                             ) -> RuntimeSettings:
    """Resolve everything one call needs.  *timeout* is the call timeout in seconds."""
    if env is None:
        env = os.environ
    defaults = resolve_defaults(config)
    model_params = resolve_model_params(config, provider, model)
    layers = [model_params, defaults]

    connect_ms = _layered_number(layers, "connectTimeoutMs", "connect_timeout_ms")
    read_ms = _layered_number(layers, "readTimeoutMs", "read_timeout_ms")
    connect_timeout = (_ms_to_seconds(connect_ms) if connect_ms is not None
                       else max(0.001, min(DEFAULT_CONNECT_TIMEOUT, timeout)))
    read_timeout = (_ms_to_seconds(read_ms) if read_ms is not None
                    else max(0.001, timeout))

    include_history = _layered_bool(layers, "includeHistory", "include_history")
    history_turns = _layered_number(layers, "historyTurns", "history_turns")
    history_chars = _layered_number(layers, "historyChars", "history_chars")
    budget_correction = _layered_bool(layers, "budgetCorrection", "budget_correction")

    settings = RuntimeSettings(
        targets=target_resolver.resolve_targets(model_params, defaults, env),
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        include_history=True if include_history is None else include_history,
        history_turns=max(0, math.floor(
            DEFAULT_HISTORY_TURNS if history_turns is None else history_turns)),
        history_chars=max(0, math.floor(
            DEFAULT_HISTORY_CHARS if history_chars is None else history_chars)),
        generation=resolve_generation_config(defaults, model_params, stream_params),
        budget_correction=True if budget_correction is None else budget_correction,
        system_prompt=(_layered_str(layers, "systemPrompt", "system_prompt")
                       or DEFAULT_SYSTEM_PROMPT),
        silent_reply_token=(_layered_str(layers, "silentReplyToken", "silent_reply_token")
                            or DEFAULT_SILENT_REPLY_TOKEN),
    )
    logger.debug(
        "Resolved %s/%s: %d target(s), connect=%.1fs read=%.1fs history=%s(%d turns, %d chars)",
        provider, model, len(settings.targets), settings.connect_timeout,
        settings.read_timeout, settings.include_history,
        settings.history_turns, settings.history_chars,
    )
    return settings
