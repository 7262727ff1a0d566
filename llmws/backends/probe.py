"""
Endpoint probe: check which LLMWS servers are up and what they serve.

A probe opens one socket, performs the hello/welcome handshake, then asks
for ``get_resources`` and records the loaded model plus a sample of the
models the server could load.  Probes never raise; every failure ends up in
``ProbeResult.error``.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from llmws.backends.socket_session import SocketSession
from llmws.core.types import ReadTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0   # seconds
AVAILABLE_MODELS_SAMPLE = 8
_DEADLINE_SLACK = 2.0


@dataclass
class ProbeResult:
    url: str
    reachable: bool = False
    session_id: Optional[str] = None
    welcome_model: Optional[str] = None
    welcome_capabilities: Optional[dict] = None
    resources_model: Optional[dict] = None
    available_models_count: Optional[int] = None
    available_models_sample: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    timings_ms: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


class _ProbeError(Exception):
    pass


async def _await_type(sock: SocketSession, wanted: str, deadline: float) -> dict:
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReadTimeoutError("timeout")
        message = await sock.next_message(remaining)
        kind = message.get("type")
        if kind == wanted:
            return message
        if kind == "error":
            raise _ProbeError(_str_or_none(message.get("message")) or "server error")


async def probe_target(url: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> ProbeResult:
    """Handshake with *url* and collect its model inventory."""
    result = ProbeResult(url=url)
    started = time.monotonic()

    def _elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        async with SocketSession(url, connect_timeout=timeout) as sock:
            result.timings_ms["open"] = _elapsed_ms()
            deadline = started + timeout + _DEADLINE_SLACK
            await sock.send_json({})

            welcome = await _await_type(sock, "welcome", deadline)
            result.reachable = True
            result.session_id = _str_or_none(welcome.get("session_id"))
            result.welcome_model = _str_or_none(welcome.get("model"))
            caps = welcome.get("capabilities")
            result.welcome_capabilities = caps if isinstance(caps, dict) else None
            result.timings_ms["welcome"] = _elapsed_ms()

            await sock.send_json({"type": "get_resources"})
            resources = await _await_type(sock, "resources", deadline)
            model = resources.get("model")
            if isinstance(model, dict):
                vision = model.get("vision")
                result.resources_model = {
                    "name": _str_or_none(model.get("name")),
                    "path": _str_or_none(model.get("path")),
                    "vision": vision if isinstance(vision, bool) else None,
                }
            available = resources.get("available_models")
            available = available if isinstance(available, list) else []
            result.available_models_count = len(available)
            result.available_models_sample = [
                {
                    "name": _str_or_none(entry.get("name")),
                    "path": _str_or_none(entry.get("path")),
                    "source": _str_or_none(entry.get("source")),
                }
                for entry in available[:AVAILABLE_MODELS_SAMPLE]
                if isinstance(entry, dict)
            ]
            result.timings_ms["resources"] = _elapsed_ms()
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        result.error = str(exc) or type(exc).__name__
        logger.debug("Probe of %s failed: %s", url, result.error)
    return result


async def probe_targets(urls: Iterable[str],
                        timeout: float = DEFAULT_PROBE_TIMEOUT) -> list[ProbeResult]:
    """Probe each URL in turn."""
    return [await probe_target(url, timeout) for url in urls]


def _format_capabilities(caps: Optional[dict]) -> str:
    if not caps:
        return "-"
    parts = []
    for key, value in caps.items():
        if isinstance(value, list):
            value = "[" + ",".join(str(v) for v in value) + "]"
        parts.append(f"{key}={value}")
    return ", ".join(parts)


def format_table(results: Iterable[ProbeResult]) -> str:
    cols = ["Endpoint", "Status", "Model", "Available", "Capabilities"]
    rows = []
    for entry in results:
        model = (entry.resources_model or {}).get("name") or entry.welcome_model or "-"
        rows.append({
            "Endpoint": entry.url,
            "Status": "ok" if entry.reachable
                      else f"fail: {entry.error or 'unknown'}",
            "Model": model,
            "Available": ("-" if entry.available_models_count is None
                          else str(entry.available_models_count)),
            "Capabilities": _format_capabilities(entry.welcome_capabilities),
        })
    widths = {c: max([len(c)] + [len(r[c]) for r in rows]) for c in cols}
    lines = [
        " | ".join(c.ljust(widths[c]) for c in cols),
        "-+-".join("-" * widths[c] for c in cols),
    ]
    for row in rows:
        lines.append(" | ".join(row[c].ljust(widths[c]) for c in cols))
    return "\n".join(lines)
