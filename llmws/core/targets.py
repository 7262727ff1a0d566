"""
Candidate server resolution.

Builds the ordered, de-duplicated list of :class:`Target` endpoints for one
call.  Sources, highest priority first:

  1. model params ``servers`` list
  2. model params ``server``
  3. deployment defaults ``servers`` list
  4. deployment defaults ``server``
  5. ``LLMWS_SERVERS`` (comma list) from the supplied environment mapping
  6. ``LLMWS_SERVER`` from the supplied environment mapping
  7. the built-in default endpoint

The list is then stably reordered by how well each target's capability tags
match the model's preferred tags.
"""

import logging
import re
from typing import Any, Iterable, Mapping

from llmws.core.types import Target

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "ws://127.0.0.1:8765"

ENV_SERVERS = "LLMWS_SERVERS"
ENV_SERVER = "LLMWS_SERVER"

_PREFERRED_CAPABILITY_KEYS = (
    "serverCapabilities", "server_capabilities",
    "preferredServerCapabilities", "preferred_server_capabilities",
    "preferredCapabilities", "preferred_capabilities",
)

_SCHEME_SINGLE_SLASH = re.compile(r"^([a-z]+):/(.+)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def to_ws_url(value: str) -> str:
    """Normalize an endpoint string.  Returns ``""`` for unusable input.

    ``ws:\\\\host:port`` and ``ws:/host:port`` both become ``ws://host:port``;
    a bare ``host:port`` gets the ``ws://`` scheme.
    """
    trimmed = value.strip()
    if not trimmed:
        return ""
    slashed = trimmed.replace("\\", "/")
    if "://" in slashed:
        return slashed
    m = _SCHEME_SINGLE_SLASH.match(slashed)
    if m:
        scheme, rest = m.groups()
        rest = rest.lstrip("/")
        return f"{scheme.lower()}://{rest}" if rest else ""
    rest = slashed.lstrip("/")
    return f"ws://{rest}" if rest else ""


def normalize_capability_tag(value: str) -> str:
    return re.sub(r"\s+", "-", value.strip().lower())


def dedupe_capability_tags(values: Iterable[str]) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in values:
        tag = normalize_capability_tag(raw)
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return tuple(out)


def dedupe_targets(targets: Iterable[Target]) -> list[Target]:
    """Drop empty and repeated URLs; the first occurrence wins."""
    out: list[Target] = []
    seen: set[str] = set()
    for raw in targets:
        url = to_ws_url(raw.url)
        if not url or url in seen:
            continue
        seen.add(url)
        out.append(Target(url=url, capabilities=dedupe_capability_tags(raw.capabilities)))
    return out


# ---------------------------------------------------------------------------
# Config readers
# ---------------------------------------------------------------------------

def _read_string(record: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _read_string_list(record: Mapping[str, Any], key: str) -> list[str]:
    value = record.get(key)
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def parse_server_entry(raw: Any) -> Target | None:
    """Accept either a URL string or ``{url|server, capabilities}``."""
    if isinstance(raw, str):
        url = to_ws_url(raw)
        return Target(url=url) if url else None
    if not isinstance(raw, Mapping):
        return None
    url = _read_string(raw, "url", "server")
    if not url:
        return None
    return Target(
        url=to_ws_url(url),
        capabilities=dedupe_capability_tags(_read_string_list(raw, "capabilities")),
    )


def read_server_list(record: Mapping[str, Any], key: str = "servers") -> list[Target]:
    value = record.get(key)
    if not isinstance(value, list):
        return []
    out = []
    for entry in value:
        parsed = parse_server_entry(entry)
        if parsed is None:
            logger.debug("Ignoring unusable server entry %r", entry)
            continue
        out.append(parsed)
    return out


def parse_env_targets(env: Mapping[str, str]) -> list[Target]:
    out = [Target(url=part.strip())
           for part in (env.get(ENV_SERVERS) or "").split(",") if part.strip()]
    single = (env.get(ENV_SERVER) or "").strip()
    if single:
        out.append(Target(url=single))
    return out


def resolve_preferred_capabilities(model_params: Mapping[str, Any]) -> tuple[str, ...]:
    tags: list[str] = []
    for key in _PREFERRED_CAPABILITY_KEYS:
        tags.extend(_read_string_list(model_params, key))
    return dedupe_capability_tags(tags)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def sort_targets_by_capabilities(targets: list[Target],
                                 preferred: Iterable[str]) -> list[Target]:
    """Stable reorder: full matches first, then by number of matched tags."""
    wanted = set(dedupe_capability_tags(preferred))
    if not wanted or len(targets) <= 1:
        return list(targets)

    def _score(target: Target) -> tuple[bool, int]:
        matched = len(wanted & set(dedupe_capability_tags(target.capabilities)))
        return (matched != len(wanted), -matched)

    return sorted(targets, key=_score)


def resolve_targets(model_params: Mapping[str, Any],
                    defaults: Mapping[str, Any],
                    env: Mapping[str, str]) -> list[Target]:
    """Return the ordered candidate list for one call.  Never empty."""
    candidates: list[Target] = []
    candidates.extend(read_server_list(model_params))
    model_server = parse_server_entry(_read_string(model_params, "server"))
    if model_server:
        candidates.append(model_server)
    candidates.extend(read_server_list(defaults))
    default_server = parse_server_entry(_read_string(defaults, "server"))
    if default_server:
        candidates.append(default_server)
    candidates.extend(parse_env_targets(env))
    candidates.append(Target(url=DEFAULT_ENDPOINT))

    targets = dedupe_targets(candidates) or [Target(url=DEFAULT_ENDPOINT)]
    preferred = resolve_preferred_capabilities(model_params)
    ordered = sort_targets_by_capabilities(targets, preferred)
    if preferred:
        logger.debug("Targets ordered by capabilities %s: %s",
                     ",".join(preferred), [t.url for t in ordered])
    return ordered
