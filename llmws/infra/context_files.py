"""
Workspace context files for the LLMWS system prompt.

A small set of well-known Markdown files in the workspace root (``AGENTS.md``,
``SOUL.md``, ...) is read, clamped, and rendered into the system prompt.
Each file is clipped to ``DEFAULT_CONTEXT_FILE_MAX_CHARS`` and all files
together to ``DEFAULT_CONTEXT_FILES_TOTAL_MAX_CHARS``; both limits can be
overridden through the environment.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Protocol, Sequence, Union

from llmws.infra.runtime_config import parse_env_positive_int

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_FILES_TOTAL_MAX_CHARS = 6_000
DEFAULT_CONTEXT_FILE_MAX_CHARS = 4_000
TOTAL_MAX_CHARS_ENV_VARS = ["LLMWS_CONTEXT_FILES_MAX_CHARS", "CONTEXT_FILES_MAX_CHARS"]
FILE_MAX_CHARS_ENV_VARS = ["LLMWS_CONTEXT_FILE_MAX_CHARS", "CONTEXT_FILE_MAX_CHARS"]

DEFAULT_CONTEXT_FILE_NAMES = ("AGENTS.md", "SOUL.md", "TOOLS.md", "IDENTITY.md", "USER.md")
CONTEXT_HEADING = "Workspace context files:"


@dataclass
class ContextFile:
    path: str
    content: str


class ContextFileSource(Protocol):
    async def load(self, workspace_dir: Union[str, Path]) -> "list[ContextFile]": ...


class WorkspaceContextFiles:
    """Reads the named files from the workspace root, in order.

    Missing files are skipped silently; unreadable ones with a warning.
    """

    def __init__(self, names: Iterable[str] = DEFAULT_CONTEXT_FILE_NAMES) -> None:
        self.names = [n for n in names if n and n.strip()]

    def _read_all(self, workspace_dir: Path) -> "list[ContextFile]":
        files = []
        for name in self.names:
            path = workspace_dir / name
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Skipping context file %s: %s", path, exc)
                continue
            files.append(ContextFile(path=name, content=content))
        return files

    async def load(self, workspace_dir: Union[str, Path]) -> "list[ContextFile]":
        return await asyncio.to_thread(self._read_all, Path(workspace_dir))


def clamp_context_files(files: Sequence[ContextFile], *, max_total_chars: float,
                        max_file_chars: float) -> "list[ContextFile]":
    """Trim *files* to the per-file and total budgets.

    Empty paths or contents are dropped.  A clipped file ends in an ellipsis.
    """
    max_total = max(0, math.floor(max_total_chars))
    max_file = max(0, math.floor(max_file_chars))
    if max_total <= 0 or max_file <= 0:
        return []

    out: list[ContextFile] = []
    used = 0
    for entry in files:
        if used >= max_total:
            break
        path = (entry.path or "").strip()
        content = (entry.content or "").strip()
        if not path or not content:
            continue
        available = min(max_file, max_total - used)
        if available <= 0:
            break
        if len(content) > available:
            content = content[:max(0, available - 1)] + "…"
        out.append(ContextFile(path=path, content=content))
        used += len(content)
    return out


def format_context_files(files: Sequence[ContextFile]) -> Optional[str]:
    if not files:
        return None
    blocks = [f"## {f.path}\n{f.content}" for f in files]
    return CONTEXT_HEADING + "\n\n" + "\n\n".join(blocks)


async def resolve_context_section(workspace_dir: Union[str, Path], *,
                                  env: Mapping[str, str],
                                  source: Optional[ContextFileSource] = None,
                                  ) -> Optional[str]:
    """Load, clamp and render the workspace context files."""
    if source is None:
        source = WorkspaceContextFiles()
    files = await source.load(workspace_dir)
    clamped = clamp_context_files(
        files,
        max_total_chars=parse_env_positive_int(env, TOTAL_MAX_CHARS_ENV_VARS,
                                               DEFAULT_CONTEXT_FILES_TOTAL_MAX_CHARS),
        max_file_chars=parse_env_positive_int(env, FILE_MAX_CHARS_ENV_VARS,
                                              DEFAULT_CONTEXT_FILE_MAX_CHARS),
    )
    if clamped:
        logger.debug("Context files: %s", ", ".join(f.path for f in clamped))
    return format_context_files(clamped)
