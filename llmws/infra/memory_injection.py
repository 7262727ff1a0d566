"""
Memory snippet injection for LLMWS prompts.

When the configured memory backend is ``http_search`` the current user text
is sent to the memory service's ``/search`` endpoint and the best hits are
rendered as a short bullet list that the request builder places ahead of the
user's request.  Injection is strictly best-effort: any failure is logged at
DEBUG and the section is simply omitted.

Config (``memory:`` block of config.yaml)::

    memory:
      backend: http_search
      http_search:
        base_url: http://127.0.0.1:8000
        api_key: ""            # optional, sent as a bearer token
        headers: {}            # optional extra request headers
        timeout_ms: 8000
        mode: hybrid           # lexical | semantic | hybrid
        max_results: 6
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

import httpx

from llmws.infra.runtime_config import parse_env_positive_int, read_number, read_str

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_INJECTION_MAX_RESULTS = 4
DEFAULT_MEMORY_INJECTION_MAX_CHARS = 1_800
DEFAULT_MEMORY_INJECTION_HEADER = (
    "Relevant memory snippets. Use only if helpful; ignore if irrelevant:"
)
MAX_RESULTS_ENV_VARS = ["LLMWS_MEMORY_INJECTION_MAX_RESULTS", "MEMORY_INJECTION_MAX_RESULTS"]
MAX_CHARS_ENV_VARS = ["LLMWS_MEMORY_INJECTION_MAX_CHARS", "MEMORY_INJECTION_MAX_CHARS"]

SNIPPET_MAX_CHARS = 700
CURRENT_REQUEST_MARKER = "Current user request:"

_DEFAULT_BASE_URL = "http://127.0.0.1:8000"
_DEFAULT_TIMEOUT_MS = 8_000
_DEFAULT_MODE = "hybrid"
_DEFAULT_MAX_RESULTS = 6
_SEARCH_MODES = ("lexical", "semantic", "hybrid")


class MemorySearchError(Exception):
    """The memory service could not answer a search."""


@dataclass
class MemoryHit:
    id: str
    snippet: str
    score: float = 0.0


class MemorySearch(Protocol):
    async def search(self, query: str, *, max_results: Optional[int] = None,
                     session_key: Optional[str] = None) -> "list[MemoryHit]": ...


def _clip(text: str, max_chars: int) -> str:
    trimmed = text.strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return trimmed[:max(0, max_chars - 1)] + "…"


# ---------------------------------------------------------------------------
# HTTP search backend
# ---------------------------------------------------------------------------

@dataclass
class HttpSearchConfig:
    base_url: str = _DEFAULT_BASE_URL
    api_key: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = _DEFAULT_TIMEOUT_MS / 1000.0   # seconds
    mode: str = _DEFAULT_MODE
    max_results: int = _DEFAULT_MAX_RESULTS


def resolve_memory_backend_config(config: Optional[Mapping[str, Any]]
                                  ) -> Optional[HttpSearchConfig]:
    """The HTTP-search settings, or ``None`` when another backend is configured."""
    memory = (config or {}).get("memory")
    if not isinstance(memory, Mapping):
        return None
    if read_str(memory, "backend") != "http_search":
        return None
    raw = memory.get("http_search")
    if not isinstance(raw, Mapping):
        raw = memory.get("httpSearch")
    raw = raw if isinstance(raw, Mapping) else {}

    headers = raw.get("headers")
    timeout_ms = read_number(raw, "timeout_ms", "timeoutMs")
    max_results = read_number(raw, "max_results", "maxResults")
    mode = read_str(raw, "mode")
    return HttpSearchConfig(
        base_url=(read_str(raw, "base_url", "baseUrl") or _DEFAULT_BASE_URL).rstrip("/"),
        api_key=read_str(raw, "api_key", "apiKey") or "",
        headers={str(k): str(v) for k, v in headers.items()}
        if isinstance(headers, Mapping) else {},
        timeout=(max(1, math.floor(timeout_ms)) / 1000.0
                 if timeout_ms is not None and timeout_ms > 0
                 else _DEFAULT_TIMEOUT_MS / 1000.0),
        mode=mode if mode in _SEARCH_MODES else _DEFAULT_MODE,
        max_results=(max(1, math.floor(max_results))
                     if max_results is not None and max_results > 0
                     else _DEFAULT_MAX_RESULTS),
    )


class HttpSearchMemory:
    """Client for a memory service exposing ``GET /search?q=&mode=&limit=``.

    The service answers ``{"items": [{"id", "text", "score"}]}``.  Rows
    without an id or text are skipped; snippets are clipped to
    ``SNIPPET_MAX_CHARS``.
    """

    def __init__(self, config: HttpSearchConfig, *,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json", **self.config.headers}
        if self.config.api_key:
            headers["authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def search(self, query: str, *, max_results: Optional[int] = None,
                     min_score: Optional[float] = None,
                     session_key: Optional[str] = None) -> "list[MemoryHit]":
        cleaned = query.strip()
        if not cleaned:
            return []
        limit = max_results if max_results and max_results > 0 else self.config.max_results
        params = {"q": cleaned, "mode": self.config.mode, "limit": str(limit)}

        body = await self._request_json(f"{self.config.base_url}/search", params)
        rows = body.get("items") if isinstance(body, dict) else None
        hits: list[MemoryHit] = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict):
                continue
            row_id = row.get("id")
            text = row.get("text")
            if not isinstance(row_id, str) or not row_id.strip():
                continue
            if not isinstance(text, str) or not text.strip():
                continue
            score = row.get("score")
            score = float(score) if isinstance(score, (int, float)) \
                and not isinstance(score, bool) else 0.0
            if min_score is not None and score < min_score:
                continue
            hits.append(MemoryHit(id=row_id.strip(), snippet=_clip(text, SNIPPET_MAX_CHARS),
                                  score=score))
        logger.debug("Memory search %r (session %s): %d hit(s)",
                     cleaned[:80], session_key or "-", len(hits))
        return hits

    async def _request_json(self, url: str, params: dict[str, str]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout,
                                         transport=self._transport) as client:
                resp = await client.get(url, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise MemorySearchError(
                f"memory search timed out after {self.config.timeout * 1000:.0f}ms"
            ) from exc
        except httpx.HTTPError as exc:
            raise MemorySearchError(f"memory search request failed: {exc}") from exc

        parsed: Any = {}
        if resp.text.strip():
            try:
                parsed = resp.json()
            except ValueError as exc:
                raise MemorySearchError(
                    f"memory search invalid JSON ({resp.status_code})") from exc
        if resp.is_error:
            detail = parsed.get("detail") if isinstance(parsed, dict) else None
            suffix = f": {detail.strip()}" if isinstance(detail, str) and detail.strip() else ""
            raise MemorySearchError(f"memory search failed ({resp.status_code}){suffix}")
        return parsed


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _hit_snippet(hit: Any) -> str:
    """Snippet text of a :class:`MemoryHit` or a ``{"snippet": ...}`` mapping."""
    if isinstance(hit, Mapping):
        snippet = hit.get("snippet")
    else:
        snippet = getattr(hit, "snippet", None)
    return snippet if isinstance(snippet, str) else ""


def format_memory_injection(results: "Sequence[Union[MemoryHit, Mapping[str, Any]]]",
                            budget_chars: int,
                            header: str = DEFAULT_MEMORY_INJECTION_HEADER) -> Optional[str]:
    """Render *results* as a bullet list that fits *budget_chars*.

    Hits may be :class:`MemoryHit` objects or mappings with a ``snippet``
    key.  Returns ``None`` when nothing fits.
    """
    budget = max(0, math.floor(budget_chars))
    if budget <= 0:
        return None

    header_text = header.strip() or DEFAULT_MEMORY_INJECTION_HEADER
    lines = [header_text]
    used = len(header_text) + 1
    prefix = "- "
    for hit in results:
        if used >= budget:
            break
        snippet = _hit_snippet(hit).strip()
        if not snippet:
            continue
        available = budget - used - len(prefix)
        if available <= 0:
            break
        clipped = _clip(snippet, available)
        lines.append(prefix + clipped)
        used += len(prefix) + len(clipped) + 1

    if len(lines) <= 1:
        return None
    return "\n".join(lines)


async def resolve_memory_injection(config: Optional[Mapping[str, Any]], query: str, *,
                                   env: Mapping[str, str],
                                   session_key: Optional[str] = None,
                                   manager: Optional[MemorySearch] = None,
                                   header: str = DEFAULT_MEMORY_INJECTION_HEADER,
                                   ) -> Optional[str]:
    """Search memory for *query* and format the hits.  Never raises.

    *manager* overrides the configured backend (used by tests and by callers
    that keep a long-lived client).
    """
    query = query.strip()
    if not query:
        return None
    try:
        if manager is None:
            backend_config = resolve_memory_backend_config(config)
            if backend_config is None:
                return None
            manager = HttpSearchMemory(backend_config)

        max_results = parse_env_positive_int(env, MAX_RESULTS_ENV_VARS,
                                             DEFAULT_MEMORY_INJECTION_MAX_RESULTS)
        max_chars = parse_env_positive_int(env, MAX_CHARS_ENV_VARS,
                                           DEFAULT_MEMORY_INJECTION_MAX_CHARS)
        results = await manager.search(query, max_results=max_results,
                                       session_key=session_key)
        if not results:
            return None
        return format_memory_injection(list(results)[:max_results], max_chars, header)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Memory injection skipped: %s", exc)
        return None
