"""
Shared type definitions for the llmws package.

Houses the per-call data classes (targets, resolved settings, attempt
results) and the exception types raised along the inference path, so that
the resolver, the socket layer and the failover orchestrator can share them
without importing each other.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LLMWSError(Exception):
    """Base class for every failure raised by the LLMWS client."""


class ConnectTimeoutError(LLMWSError):
    """The socket did not open within the connect timeout."""


class ReadTimeoutError(LLMWSError):
    """No message arrived within the read (idle) timeout."""


class SocketClosedError(LLMWSError):
    """The connection closed or errored while a read was outstanding."""


class ServerError(LLMWSError):
    """The server sent an ``error`` frame; the message is passed through verbatim."""


class TokenBudgetError(LLMWSError):
    """The server reported a non-positive generation budget that cannot be corrected."""


class LockTimeoutError(LLMWSError):
    """The transcript lock could not be acquired in time."""


@dataclass
class TargetFailure:
    """One target's failure, kept for the aggregated error message."""
    url: str
    error: BaseException

    def describe(self) -> str:
        return f"{self.url}: {self.error}"


class AllTargetsFailedError(LLMWSError):
    """Every candidate target failed; carries the per-target failures."""

    def __init__(self, failures: "list[TargetFailure]") -> None:
        self.failures = list(failures)
        if self.failures:
            message = "LLMWS endpoints failed: " + " | ".join(f.describe() for f in self.failures)
        else:
            message = "LLMWS endpoints failed"
        super().__init__(message)


class FailoverError(LLMWSError):
    """Caller-facing classified failure.

    ``reason`` is one of ``rate_limit``, ``timeout``, ``auth``, ``billing``
    or ``unknown``.  ``backoff_reason`` may differ from ``reason`` when the
    wording implies a longer cooldown (e.g. an exhausted quota).
    """

    def __init__(self, message: str, *, reason: str, provider: str, model: str,
                 status: Optional[int] = None,
                 backoff_reason: Optional[str] = None,
                 backoff_seconds: Optional[float] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.provider = provider
        self.model = model
        self.status = status
        self.backoff_reason = backoff_reason or reason
        self.backoff_seconds = backoff_seconds

    def __repr__(self) -> str:
        return (f"FailoverError(reason={self.reason!r}, status={self.status!r}, "
                f"model='{self.provider}/{self.model}', message={str(self)!r})")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Target:
    """One candidate server endpoint.  ``url`` is already normalized."""
    url: str
    capabilities: tuple[str, ...] = ()


@dataclass
class GenerationConfig:
    """Generation knobs.  ``None`` means 'let the server decide'."""
    max_new_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repetition_penalty: Optional[float] = None
    do_sample: Optional[bool] = None

    def to_payload(self) -> dict[str, Any]:
        """Wire form: only the knobs that are set."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class RuntimeSettings:
    """Fully resolved per-call settings.  Timeouts are in seconds."""
    targets: list[Target]
    connect_timeout: float
    read_timeout: float
    include_history: bool
    history_turns: int
    history_chars: int
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    budget_correction: bool = True
    system_prompt: str = ""
    silent_reply_token: str = "NO_REPLY"


@dataclass
class Usage:
    input: Optional[int] = None
    output: Optional[int] = None
    total: Optional[int] = None


@dataclass
class AttemptResult:
    """Outcome of one successful exchange with one target."""
    text: str
    session_id: Optional[str] = None
    usage: Optional[Usage] = None


@dataclass
class ImageInput:
    """Inbound image: base64 payload (optionally a data URI) plus MIME type."""
    data: str
    mime_type: str = "image/png"


@dataclass
class LLMWSRequest:
    """The final (system, user, media) triple sent in the inference frame."""
    system_prompt: str
    user_prompt: str
    media: list[dict] = field(default_factory=list)


@dataclass
class LLMWSReply:
    """What a caller gets back from :func:`llmws.runner.run_llmws_agent`."""
    text: str
    session_id: str
    provider: str
    model: str
    target: str
    duration_ms: int
    usage: Optional[Usage] = None
