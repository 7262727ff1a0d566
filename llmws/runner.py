"""
Top-level LLMWS call.

``run_llmws_agent`` wires the whole path for one logical call:

  settings → request (context files + history + memory + media) → target pool
  → LLMWS client per target → reasoning-tag stripping → transcript append

Every failure leaves as a classified :class:`FailoverError`.
"""

import logging
import os
import time
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

from llmws.backends.llmws_client import LLMWSClient, TokenBudgetCorrection
from llmws.backends.socket_session import SocketSession
from llmws.core.failover import TargetPool, to_failover_error
from llmws.core.types import AttemptResult, ImageInput, LLMWSReply, Target
from llmws.infra import transcript
from llmws.infra.context_files import ContextFileSource
from llmws.infra.file_lock import DEFAULT_LOCK_TIMEOUT
from llmws.infra.llm_utils import strip_reasoning_tags
from llmws.infra.memory_injection import MemorySearch
from llmws.infra.request_builder import build_request
from llmws.infra.runtime_config import resolve_runtime_settings

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "llmws"
DEFAULT_MODEL = "default"


async def run_llmws_agent(*, prompt: str,
                          session_id: str,
                          session_file: Union[str, Path],
                          workspace_dir: Union[str, Path],
                          config: Optional[Mapping[str, Any]] = None,
                          provider: str = DEFAULT_PROVIDER,
                          model: Optional[str] = None,
                          timeout: float = 120.0,
                          remote_session_id: Optional[str] = None,
                          session_key: Optional[str] = None,
                          extra_system_prompt: Optional[str] = None,
                          stream_params: Optional[Mapping[str, Any]] = None,
                          images: Optional[Sequence[ImageInput]] = None,
                          env: Optional[Mapping[str, str]] = None,
                          memory: Optional[MemorySearch] = None,
                          context_files: Optional[ContextFileSource] = None,
                          lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
                          session_factory=SocketSession) -> LLMWSReply:
    """Run one prompt against the configured LLMWS servers.

    *timeout* is the call timeout in seconds; it bounds the read (idle)
    timeout and, unless configured, the connect timeout.  *env* replaces
    ``os.environ`` as the source of server and budget variables.  Context
    files are read from *workspace_dir* unless *context_files* is given.

    Raises :class:`~llmws.core.types.FailoverError` on any failure.
    """
    started = time.monotonic()
    model_id = (model or DEFAULT_MODEL).strip() or DEFAULT_MODEL
    if env is None:
        env = os.environ
    try:
        settings = resolve_runtime_settings(
            config, provider=provider, model=model_id, timeout=timeout,
            stream_params=stream_params, env=env,
        )
        request = await build_request(
            prompt=prompt,
            settings=settings,
            session_file=session_file,
            workspace_dir=workspace_dir,
            config=config,
            env=env,
            session_key=session_key or session_id,
            extra_system_prompt=extra_system_prompt,
            images=images,
            memory=memory,
            context_files=context_files,
        )
        budget_policy = TokenBudgetCorrection(enabled=settings.budget_correction)

        async def _attempt(target: Target) -> AttemptResult:
            client = LLMWSClient(
                target,
                connect_timeout=settings.connect_timeout,
                read_timeout=settings.read_timeout,
                budget_policy=budget_policy,
                session_factory=session_factory,
            )
            return await client.run(request, settings.generation, remote_session_id)

        pool = TargetPool(settings.targets)
        target, result = await pool.call(_attempt)

        final_text = strip_reasoning_tags(result.text)
        if final_text:
            await transcript.append_turn(
                session_file, session_id, workspace_dir, prompt, final_text,
                lock_timeout=lock_timeout,
            )
    except Exception as exc:  # noqa: BLE001
        err = to_failover_error(exc, provider, model_id)
        logger.warning("LLMWS call %s/%s failed [%s]: %s",
                       provider, model_id, err.reason, err)
        raise err

    duration_ms = int((time.monotonic() - started) * 1000)
    usage = result.usage
    logger.info("LLMWS %s/%s via %s done in %dms (tokens in=%s out=%s)",
                provider, model_id, target.url, duration_ms,
                usage.input if usage else "-", usage.output if usage else "-")
    return LLMWSReply(
        text=final_text,
        session_id=result.session_id or session_id,
        provider=provider,
        model=model_id,
        target=target.url,
        duration_ms=duration_ms,
        usage=usage,
    )
