"""
Assistant log parsers.

Each parser owns one assistant's root directory, discovers its log files
and turns new content into normalized records for the ingest coordinator.
"""

from pathlib import Path
from typing import Optional

from aiobscura.config import AgentPaths
from aiobscura.parsers.base import (
    AssistantParser,
    ParseContext,
    ParseResult,
    SourcePattern,
)
from aiobscura.parsers.claude_code import ClaudeCodeParser
from aiobscura.parsers.codex import CodexParser


def create_all_parsers(paths: Optional[AgentPaths] = None) -> list[AssistantParser]:
    """
    Build the default parser set, honoring ``[agents]`` path overrides.

    Aider and Cursor paths are accepted in config but have no parser yet.
    """
    paths = paths or AgentPaths()
    return [
        ClaudeCodeParser(Path(paths.claude_code_path) if paths.claude_code_path else None),
        CodexParser(Path(paths.codex_path) if paths.codex_path else None),
    ]


__all__ = [
    "AssistantParser",
    "ClaudeCodeParser",
    "CodexParser",
    "ParseContext",
    "ParseResult",
    "SourcePattern",
    "create_all_parsers",
]
