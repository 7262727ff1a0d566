"""
Sequential failover across LLMWS targets, and failure classification.

``TargetPool`` mirrors the backend pool used for hosted providers: targets
are tried strictly in order, one socket at a time, and the first success
wins.  When every target fails the per-target messages are joined into one
:class:`AllTargetsFailedError`, which callers turn into a classified
:class:`FailoverError` via :func:`to_failover_error`.
"""

import errno
import logging
import re
import socket
from typing import Awaitable, Callable, Optional

from llmws.core.types import (
    AllTargetsFailedError,
    AttemptResult,
    ConnectTimeoutError,
    FailoverError,
    LockTimeoutError,
    ReadTimeoutError,
    SocketClosedError,
    Target,
    TargetFailure,
)

logger = logging.getLogger(__name__)

AttemptFn = Callable[[Target], Awaitable[AttemptResult]]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _hint_pattern(*hints: str) -> "re.Pattern[str]":
    # Bare status codes match as whole words not preceded by ':' (host:port).
    parts = [rf"(?<![\w:]){h}(?!\w)" if h.isdigit() else re.escape(h) for h in hints]
    return re.compile("|".join(parts), re.IGNORECASE)


_URL = re.compile(r"\b[a-z][a-z0-9+.-]*://\S*", re.IGNORECASE)


_RATE_LIMIT_HINTS = _hint_pattern(
    "rate limit", "rate_limit", "ratelimit", "too many requests", "429",
    "quota exceeded", "exceeded your current quota", "resource has been exhausted",
    "resource_exhausted", "throttl",
)
_BILLING_HINTS = _hint_pattern(
    "billing", "payment required", "402", "insufficient credit",
    "credit balance", "insufficient balance", "insufficient quota",
)
_AUTH_HINTS = _hint_pattern(
    "unauthorized", "401", "403", "forbidden", "invalid api key", "invalid_api_key",
    "authentication", "not authenticated", "permission denied", "access denied",
)
_TIMEOUT_HINTS = _hint_pattern(
    "timeout", "timed out", "deadline exceeded",
)
_CONNECTIVITY_HINTS = _hint_pattern(
    "connect timeout", "read timeout", "socket closed", "connection closed",
    "econnrefused", "econnreset", "connection refused", "connection reset",
    "cannot connect to host", "connect call failed",
    "name or service not known", "no route to host", "network is unreachable",
    "broken pipe",
)

# Quota exhaustion reported as a rate limit: retrying quickly is wasteful,
# so backoff treats it like a billing failure.
_QUOTA_EXHAUSTED_HINTS = _hint_pattern(
    "exceeded your current quota",
    "quota exceeded",
    "insufficient quota",
)

CONNECTIVITY_ERRNOS = frozenset({
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EPIPE,
})

_STATUS_BY_REASON = {
    "rate_limit": 429,
    "billing": 402,
    "auth": 401,
    "timeout": 408,
    "unknown": 500,
}

_BACKOFF_SECONDS = {
    "billing": 3600.0,
    "rate_limit": 60.0,
    "auth": 300.0,
    "timeout": 5.0,
    "unknown": 30.0,
}


def classify_failover_reason(message: str) -> Optional[str]:
    """Map failure wording to a reason, or ``None`` when nothing matches.

    Endpoint URLs are removed first; a port is not a status code.
    """
    message = _URL.sub("", message)
    if _RATE_LIMIT_HINTS.search(message):
        return "rate_limit"
    if _BILLING_HINTS.search(message):
        return "billing"
    if _AUTH_HINTS.search(message):
        return "auth"
    if _TIMEOUT_HINTS.search(message):
        return "timeout"
    return None


def is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, SocketClosedError)):
        return True
    if isinstance(exc, socket.gaierror):
        return True
    if isinstance(exc, OSError) and exc.errno in CONNECTIVITY_ERRNOS:
        return True
    cause = exc.__cause__ or exc.__context__
    return cause is not None and cause is not exc and is_connectivity_error(cause)


def has_connectivity_hint(exc: BaseException, message: str) -> bool:
    if is_connectivity_error(exc):
        return True
    if isinstance(exc, AllTargetsFailedError):
        if any(is_connectivity_error(f.error) for f in exc.failures):
            return True
    return _CONNECTIVITY_HINTS.search(message) is not None


def resolve_failover_status(reason: str) -> int:
    return _STATUS_BY_REASON.get(reason, 500)


def resolve_backoff_reason(reason: str, message: str) -> str:
    """Escalate quota-exhausted rate limits to ``billing`` for backoff purposes."""
    if reason != "rate_limit":
        return reason
    if _QUOTA_EXHAUSTED_HINTS.search(message):
        return "billing"
    return reason


def suggested_backoff_seconds(reason: str) -> float:
    return _BACKOFF_SECONDS.get(reason, _BACKOFF_SECONDS["unknown"])


def to_failover_error(exc: BaseException, provider: str, model: str) -> FailoverError:
    """Wrap any failure as a classified :class:`FailoverError`."""
    if isinstance(exc, FailoverError):
        return exc
    message = str(exc).strip() or "LLMWS request failed"
    if isinstance(exc, LockTimeoutError):
        reason = "unknown"
    else:
        reason = classify_failover_reason(message)
        if reason is None:
            reason = "timeout" if has_connectivity_hint(exc, message) else "unknown"
    backoff_reason = resolve_backoff_reason(reason, message)
    err = FailoverError(
        message,
        reason=reason,
        provider=provider,
        model=model,
        status=resolve_failover_status(reason),
        backoff_reason=backoff_reason,
        backoff_seconds=suggested_backoff_seconds(backoff_reason),
    )
    err.__cause__ = exc
    return err


# ---------------------------------------------------------------------------
# Target pool
# ---------------------------------------------------------------------------

class TargetPool:
    """Ordered list of targets for one call, tried one after another."""

    def __init__(self, targets: "list[Target]") -> None:
        self._targets = list(targets)
        self.last_used: str = ""

    async def call(self, attempt: AttemptFn) -> "tuple[Target, AttemptResult]":
        """Run *attempt* per target until one succeeds.

        Raises :class:`AllTargetsFailedError` listing every target's failure.
        """
        failures: list[TargetFailure] = []
        for target in self._targets:
            try:
                result = await attempt(target)
            except Exception as exc:  # noqa: BLE001
                failures.append(TargetFailure(url=target.url, error=exc))
                remaining = len(self._targets) - len(failures)
                if remaining:
                    logger.warning("LLMWS target %s failed: %s, trying next (%d left)",
                                   target.url, exc, remaining)
                else:
                    logger.warning("LLMWS target %s failed: %s", target.url, exc)
                continue
            self.last_used = target.url
            if failures:
                logger.info("LLMWS call succeeded on %s after %d failed target(s)",
                            target.url, len(failures))
            return target, result
        raise AllTargetsFailedError(failures)
