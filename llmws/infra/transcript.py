"""
Append-only JSONL transcript for one logical conversation.

File layout, one JSON object per line::

    {"type": "session", "version": 7, "id": ..., "timestamp": ..., "cwd": ...}
    {"type": "message", "id": ..., "parentId": null, "timestamp": ...,
     "message": {"role": "user", "content": [{"type": "text", "text": ...}]}}
    {"type": "message", "id": ..., "parentId": <previous id>, ...}

The header is written only into an empty file, so it is always the first
line when present.  Messages form a linear chain through ``parentId``.
Existing lines are never rewritten.
"""

import asyncio
import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from llmws.infra.file_lock import DEFAULT_LOCK_TIMEOUT, acquire_session_write_lock

logger = logging.getLogger(__name__)

TRANSCRIPT_VERSION = 7

_LINE_SPLIT = re.compile(r"\r?\n")

PathLike = Union[str, Path]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _read_text(path: PathLike) -> str:
    """File contents, or ``""`` when the file does not exist yet."""
    try:
        with open(path, encoding="utf-8") as fh:
            return fh.read()
    except FileNotFoundError:
        return ""


def _parse_records(raw: str) -> Iterator[dict]:
    for line in _LINE_SPLIT.split(raw):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            yield record


def iter_records(path: PathLike) -> Iterator[dict]:
    """Yield every parsable JSON object in the transcript, in file order.

    A missing file yields nothing; unparsable lines are skipped.
    """
    yield from _parse_records(_read_text(path))


def _message_record(message_id: str, parent_id: Optional[str], role: str,
                    text: str) -> dict:
    return {
        "type": "message",
        "id": message_id,
        "parentId": parent_id,
        "timestamp": _now_iso(),
        "message": {
            "role": role,
            "content": [{"type": "text", "text": text}],
        },
    }


def _append_turn_sync(session_file: Path, session_id: str, workspace_dir: PathLike,
                      user_text: str, assistant_text: str) -> None:
    existing = _read_text(session_file)

    last_message_id: Optional[str] = None
    for record in _parse_records(existing):
        if record.get("type") == "message":
            message_id = record.get("id")
            if isinstance(message_id, str) and message_id.strip():
                last_message_id = message_id.strip()

    additions: list[dict] = []
    if not existing.strip():
        additions.append({
            "type": "session",
            "version": TRANSCRIPT_VERSION,
            "id": session_id,
            "timestamp": _now_iso(),
            "cwd": os.path.abspath(workspace_dir),
        })
    user_id = str(uuid.uuid4())
    additions.append(_message_record(user_id, last_message_id, "user", user_text))
    additions.append(_message_record(str(uuid.uuid4()), user_id, "assistant", assistant_text))

    prefix = "\n" if existing.strip() and not existing.endswith("\n") else ""
    payload = prefix + "\n".join(json.dumps(r, ensure_ascii=False) for r in additions) + "\n"

    session_file.parent.mkdir(parents=True, exist_ok=True)
    with open(session_file, "a", encoding="utf-8") as fh:
        fh.write(payload)


async def append_turn(session_file: PathLike, session_id: str, workspace_dir: PathLike,
                      user_text: str, assistant_text: str, *,
                      lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
    """Append one user/assistant exchange under the transcript's write lock.

    Raises :class:`~llmws.core.types.LockTimeoutError` when the lock stays
    busy past *lock_timeout* seconds; I/O errors propagate unchanged.
    """
    session_file = Path(session_file)
    async with acquire_session_write_lock(session_file, timeout=lock_timeout):
        await asyncio.to_thread(_append_turn_sync, session_file, session_id,
                                workspace_dir, user_text, assistant_text)
    logger.debug("Appended turn to %s (session %s)", session_file, session_id)
