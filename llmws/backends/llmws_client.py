"""
LLMWS inference client: one full exchange against one target.

Protocol (newline-delimited JSON text frames):

  → {}  or  {"session_id": "<resume-id>"}
  ← {"type": "welcome", "session_id"?, "model"?, "capabilities"?}
  → {"type": "inference", "prompt": {"system", "user"}, "media": [...], "config": {...}}
  ← {"type": "start", "tokens_in", "max_tokens"}
  ← {"type": "token", "data"}  (repeated)
  ← {"type": "done", "total_tokens"?}  |  {"type": "error", "message"}

Deployed llmws_server.py builds have a budget bug: the server computes
``max_tokens = max_new_tokens - tokens_in`` and generates while
``generated < max_tokens``.  With a long prompt that budget is non-positive,
the generation loop never runs and ``done`` never arrives.  When ``start``
reports ``max_tokens <= tokens_in`` the attempt reconnects once with
``max_new_tokens = 2 * tokens_in + requested`` (see ``TokenBudgetCorrection``).
"""

import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Optional

from llmws.backends.socket_session import SocketSession
from llmws.core.types import (
    AttemptResult,
    GenerationConfig,
    LLMWSRequest,
    ReadTimeoutError,
    ServerError,
    Target,
    TokenBudgetError,
    Usage,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., SocketSession]


# ---------------------------------------------------------------------------
# Budget correction policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenBudgetCorrection:
    """One-shot fix for servers that treat ``max_new_tokens`` as a total ceiling."""
    enabled: bool = True

    def is_broken(self, tokens_in: Optional[float], max_tokens: Optional[float]) -> bool:
        return (self.enabled
                and tokens_in is not None and max_tokens is not None
                and tokens_in > 0 and max_tokens <= tokens_in)

    def corrected(self, generation: GenerationConfig, tokens_in: float,
                  max_tokens: float) -> GenerationConfig:
        desired = generation.max_new_tokens
        if desired is None or desired <= 0:
            raise TokenBudgetError(
                f"LLMWS server token budget invalid (tokens_in={tokens_in:g}, "
                f"max_tokens={max_tokens:g}). Configure llmws.config.maxNewTokens "
                f"(or update llmws_server.py)."
            )
        return replace(generation, max_new_tokens=int(tokens_in * 2 + desired))


NO_BUDGET_CORRECTION = TokenBudgetCorrection(enabled=False)


class _RetryForBudget(Exception):
    """Internal signal: restart the exchange with a corrected budget."""

    def __init__(self, generation: GenerationConfig) -> None:
        super().__init__("retry for token budget")
        self.generation = generation


def _read_str(message: dict, key: str) -> Optional[str]:
    value = message.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _read_number(message: dict, key: str) -> Optional[float]:
    value = message.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class LLMWSClient:
    """Drives hello → welcome → inference → stream against a single target."""

    def __init__(self, target: Target, *, connect_timeout: float, read_timeout: float,
                 budget_policy: TokenBudgetCorrection = TokenBudgetCorrection(),
                 session_factory: SessionFactory = SocketSession) -> None:
        self.target = target
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._budget_policy = budget_policy
        self._session_factory = session_factory

    async def run(self, request: LLMWSRequest, generation: GenerationConfig,
                  resume_session_id: Optional[str] = None) -> AttemptResult:
        """Run the exchange, restarting at most once for the budget bug."""
        retried_for_budget = False
        while True:
            policy = NO_BUDGET_CORRECTION if retried_for_budget else self._budget_policy
            try:
                return await self._exchange(request, generation, resume_session_id, policy)
            except _RetryForBudget as retry:
                retried_for_budget = True
                logger.warning(
                    "LLMWS %s reported a broken token budget (retrying once with "
                    "max_new_tokens=%s)", self.target.url, retry.generation.max_new_tokens,
                )
                generation = retry.generation

    async def _exchange(self, request: LLMWSRequest, generation: GenerationConfig,
                        resume_session_id: Optional[str],
                        policy: TokenBudgetCorrection) -> AttemptResult:
        async with self._session_factory(self.target.url,
                                         connect_timeout=self._connect_timeout) as sock:
            hello: dict = {}
            if resume_session_id and resume_session_id.strip():
                hello["session_id"] = resume_session_id.strip()
            await sock.send_json(hello)

            session_id = await self._await_welcome(sock)

            await sock.send_json({
                "type": "inference",
                "prompt": {"system": request.system_prompt, "user": request.user_prompt},
                "media": request.media,
                "config": generation.to_payload(),
            })
            return await self._read_stream(sock, session_id, generation, policy)

    async def _await_welcome(self, sock: SocketSession) -> str:
        # Fixed deadline: non-welcome frames are skipped but do not extend it.
        deadline = time.monotonic() + self._read_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadTimeoutError("LLMWS welcome timeout")
            try:
                message = await sock.next_message(remaining)
            except ReadTimeoutError:
                raise ReadTimeoutError("LLMWS welcome timeout") from None
            if _read_str(message, "type") != "welcome":
                logger.debug("Skipping pre-welcome frame from %s: %s",
                             self.target.url, message.get("type"))
                continue
            session_id = _read_str(message, "session_id")
            if session_id is None:
                session_id = str(uuid.uuid4())
                logger.debug("Welcome from %s carried no session_id, using %s",
                             self.target.url, session_id)
            return session_id

    async def _read_stream(self, sock: SocketSession, session_id: str,
                           generation: GenerationConfig,
                           policy: TokenBudgetCorrection) -> AttemptResult:
        chunks: list[str] = []
        input_tokens: Optional[float] = None
        output_tokens: Optional[float] = None

        while True:
            # Idle timeout: the window restarts with every received frame.
            try:
                message = await sock.next_message(self._read_timeout)
            except ReadTimeoutError:
                raise ReadTimeoutError(
                    f"LLMWS stream timeout ({self._read_timeout:.1f}s idle)") from None
            kind = _read_str(message, "type")

            if kind == "start":
                tokens_in = _read_number(message, "tokens_in")
                max_tokens = _read_number(message, "max_tokens")
                if tokens_in is not None:
                    input_tokens = tokens_in
                if policy.is_broken(tokens_in, max_tokens):
                    raise _RetryForBudget(policy.corrected(generation, tokens_in, max_tokens))
                continue

            if kind == "token":
                data = message.get("data")
                if isinstance(data, str):
                    chunks.append(data)  # verbatim: chunks may end in whitespace
                continue

            if kind == "done":
                total = _read_number(message, "total_tokens")
                if total is not None:
                    output_tokens = total
                break

            if kind == "error":
                raise ServerError(_read_str(message, "message") or "LLMWS returned an error")

        return AttemptResult(
            text="".join(chunks).strip(),
            session_id=session_id,
            usage=_build_usage(input_tokens, output_tokens),
        )


def _build_usage(input_tokens: Optional[float],
                 output_tokens: Optional[float]) -> Optional[Usage]:
    if input_tokens is None and output_tokens is None:
        return None
    total = (input_tokens or 0) + (output_tokens or 0)
    return Usage(
        input=None if input_tokens is None else int(input_tokens),
        output=None if output_tokens is None else int(output_tokens),
        total=int(total) if total > 0 else None,
    )
