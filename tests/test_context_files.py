"""Tests for workspace context files and their size clamp."""

import pytest

from llmws.infra.context_files import (
    CONTEXT_HEADING,
    ContextFile,
    WorkspaceContextFiles,
    clamp_context_files,
    format_context_files,
    resolve_context_section,
)


class TestClamp:
    """Per-file and total budgets."""

    def test_per_file_limit(self):
        out = clamp_context_files([ContextFile("A.md", "x" * 50)],
                                  max_total_chars=100, max_file_chars=10)
        assert out == [ContextFile("A.md", "x" * 9 + "…")]

    def test_total_limit_spans_files(self):
        files = [ContextFile("A.md", "a" * 8), ContextFile("B.md", "b" * 8),
                 ContextFile("C.md", "c" * 8)]
        out = clamp_context_files(files, max_total_chars=12, max_file_chars=10)
        assert out == [ContextFile("A.md", "a" * 8), ContextFile("B.md", "bbb…")]

    def test_blank_entries_dropped(self):
        files = [ContextFile(" ", "text"), ContextFile("A.md", "  \n"),
                 ContextFile(" B.md ", " body ")]
        out = clamp_context_files(files, max_total_chars=100, max_file_chars=100)
        assert out == [ContextFile("B.md", "body")]

    def test_zero_budget(self):
        files = [ContextFile("A.md", "text")]
        assert clamp_context_files(files, max_total_chars=0, max_file_chars=10) == []
        assert clamp_context_files(files, max_total_chars=10, max_file_chars=0) == []


class TestWorkspaceReader:
    @pytest.mark.asyncio
    async def test_reads_known_names_in_order(self, tmp_path):
        (tmp_path / "SOUL.md").write_text("soul", encoding="utf-8")
        (tmp_path / "AGENTS.md").write_text("agents", encoding="utf-8")
        (tmp_path / "notes.md").write_text("ignored", encoding="utf-8")
        files = await WorkspaceContextFiles().load(tmp_path)
        assert files == [ContextFile("AGENTS.md", "agents"), ContextFile("SOUL.md", "soul")]

    @pytest.mark.asyncio
    async def test_custom_names(self, tmp_path):
        (tmp_path / "README.md").write_text("readme", encoding="utf-8")
        files = await WorkspaceContextFiles(["README.md", "MISSING.md"]).load(tmp_path)
        assert files == [ContextFile("README.md", "readme")]


class TestResolveSection:
    @pytest.mark.asyncio
    async def test_env_limits_apply(self):
        class Source:
            async def load(self, workspace_dir):
                return [ContextFile("A.md", "a" * 40), ContextFile("B.md", "b" * 40)]

        text = await resolve_context_section(
            "/ws", env={"LLMWS_CONTEXT_FILE_MAX_CHARS": "10",
                        "CONTEXT_FILES_MAX_CHARS": "15"},
            source=Source())
        assert text == (f"{CONTEXT_HEADING}\n\n## A.md\n{'a' * 9}…\n\n## B.md\nbbbb…")

    @pytest.mark.asyncio
    async def test_empty_workspace(self, tmp_path):
        assert await resolve_context_section(tmp_path, env={}) is None

    def test_format_empty(self):
        assert format_context_files([]) is None
