"""
Request builder: turns a caller prompt into the ``(system, user, media)``
triple sent in the LLMWS inference frame.

The user prompt gets optional context sections, in this order:

  1. ``Conversation history:`` window read from the transcript
  2. memory snippets from the memory service
  3. ``Current user request:`` followed by the raw prompt

With no optional section the raw prompt is sent as-is.  The system prompt
is the configured base, workspace context files, any extra caller prompt,
and the tools-disabled line.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

from llmws.core.types import ImageInput, LLMWSRequest, RuntimeSettings
from llmws.infra import transcript
from llmws.infra.context_files import ContextFileSource, resolve_context_section
from llmws.infra.llm_utils import is_silent_reply_text
from llmws.infra.memory_injection import (
    CURRENT_REQUEST_MARKER,
    MemorySearch,
    resolve_memory_injection,
)

logger = logging.getLogger(__name__)

TOOLS_DISABLED_LINE = "Tools are disabled in this session. Do not call tools."
HISTORY_HEADING = "Conversation history:"

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


# ---------------------------------------------------------------------------
# History window
# ---------------------------------------------------------------------------

def extract_text_from_content(content: Any) -> str:
    """Flatten message content (string, block list, or single block) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if not isinstance(block, dict):
                continue
            for key in ("text", "content", "thinking"):
                if isinstance(block.get(key), str):
                    parts.append(block[key])
                    break
        return "\n".join(parts)
    if isinstance(content, dict):
        for key in ("text", "content"):
            if isinstance(content.get(key), str):
                return content[key]
    return ""


def normalize_transcript_text(text: str) -> str:
    normalized = text.replace("\r", "").strip()
    return _EXCESS_NEWLINES.sub("\n\n", normalized)


def read_history_context(session_file: Union[str, Path], *, history_turns: int,
                         history_chars: int,
                         silent_reply_token: str = "NO_REPLY") -> Optional[str]:
    """Render the most recent transcript messages that fit the turn/char budget.

    Walks backwards from the newest message.  Each kept block costs its
    length plus two separator characters.  If the newest block alone is over
    budget it is truncated with an ellipsis.  Returns ``None`` when there is
    nothing to show.
    """
    if history_turns <= 0 or history_chars <= 0:
        return None

    entries: list[tuple[str, str]] = []
    for record in transcript.iter_records(session_file):
        message = record.get("message")
        if record.get("type") != "message" or not isinstance(message, dict):
            continue
        role = message.get("role")
        role = role.strip().lower() if isinstance(role, str) else ""
        if role not in _ROLE_LABELS:
            continue
        text = normalize_transcript_text(extract_text_from_content(message.get("content")))
        if not text:
            continue
        if role == "assistant" and is_silent_reply_text(text, silent_reply_token):
            continue
        entries.append((role, text))

    selected: list[str] = []
    used = 0
    for role, text in reversed(entries):
        if len(selected) >= history_turns:
            break
        block = f"{_ROLE_LABELS[role]}: {text}"
        if used > 0 and used + len(block) + 2 > history_chars:
            break
        if used == 0 and len(block) > history_chars:
            selected.append(block[:max(0, history_chars - 1)] + "…")
            break
        selected.append(block)
        used += len(block) + 2

    if not selected:
        return None
    selected.reverse()
    logger.debug("History window: %d of %d message(s) from %s",
                 len(selected), len(entries), session_file)
    return HISTORY_HEADING + "\n" + "\n\n".join(selected)


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

def normalize_image_base64(raw: str) -> str:
    """Strip a ``data:<mime>;base64,`` prefix, leaving the bare payload."""
    trimmed = raw.strip()
    marker = ";base64,"
    index = trimmed.find(marker)
    if index == -1:
        return trimmed
    return trimmed[index + len(marker):]


def image_extension(mime_type: str) -> str:
    normalized = mime_type.strip().lower()
    if normalized in ("image/jpeg", "image/jpg"):
        return ".jpg"
    if normalized == "image/webp":
        return ".webp"
    if normalized == "image/gif":
        return ".gif"
    return ".png"


def build_media_payload(images: Optional[Sequence[ImageInput]]) -> list[dict]:
    out = []
    for i, image in enumerate(images or ()):
        data = normalize_image_base64(image.data or "")
        if not data:
            continue
        out.append({
            "type": "image",
            "data": data,
            "name": f"image-{i + 1}{image_extension(image.mime_type or '')}",
        })
    return out


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------

def assemble_user_prompt(prompt: str, history: Optional[str],
                         memory: Optional[str]) -> str:
    sections = [s for s in (history, memory) if s]
    if not sections:
        return prompt
    sections.append(f"{CURRENT_REQUEST_MARKER}\n{prompt}")
    return "\n\n".join(sections)


def build_system_prompt(base: str, extra: Optional[str] = None,
                        context: Optional[str] = None) -> str:
    parts = [base.strip()]
    if context and context.strip():
        parts.append(context.strip())
    if extra and extra.strip():
        parts.append(extra.strip())
    parts.append(TOOLS_DISABLED_LINE)
    return "\n".join(p for p in parts if p)


async def build_request(*, prompt: str, settings: RuntimeSettings,
                        session_file: Optional[Union[str, Path]] = None,
                        workspace_dir: Optional[Union[str, Path]] = None,
                        config: Optional[Mapping[str, Any]] = None,
                        env: Mapping[str, str],
                        session_key: Optional[str] = None,
                        extra_system_prompt: Optional[str] = None,
                        images: Optional[Sequence[ImageInput]] = None,
                        memory: Optional[MemorySearch] = None,
                        context_files: Optional[ContextFileSource] = None) -> LLMWSRequest:
    """Assemble the full request for one call.

    Context files are read from *workspace_dir* (or *context_files*) and go
    into the system prompt; history and memory go into the user prompt.
    """
    context = None
    if workspace_dir is not None or context_files is not None:
        context = await resolve_context_section(workspace_dir or ".", env=env,
                                                source=context_files)
    history = None
    if settings.include_history and session_file:
        history = await asyncio.to_thread(
            read_history_context,
            session_file,
            history_turns=settings.history_turns,
            history_chars=settings.history_chars,
            silent_reply_token=settings.silent_reply_token,
        )
    injection = await resolve_memory_injection(
        config, prompt, env=env, session_key=session_key, manager=memory,
    )
    return LLMWSRequest(
        system_prompt=build_system_prompt(settings.system_prompt, extra_system_prompt,
                                          context),
        user_prompt=assemble_user_prompt(prompt, history, injection),
        media=build_media_payload(images),
    )
