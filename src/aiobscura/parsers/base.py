"""
Base parser protocol and shared types for assistant log parsers.

This module defines the interface that every assistant parser implements,
the parse context/result types exchanged with the ingest coordinator, and
the line reader used by the JSONL parsers for checkpointed reads.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from aiobscura.exceptions import SourceIOError
from aiobscura.models.db import Assistant, CheckpointType, FileType
from aiobscura.models.parsed import (
    Checkpoint,
    ParsedMessage,
    ParsedPlan,
    ParsedProject,
    ParsedSession,
    ParsedThread,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourcePattern:
    """One kind of file a parser owns, relative to its root path."""

    pattern: str  # Glob relative to the parser root, e.g. "projects/*/*.jsonl"
    file_type: FileType
    description: str


@dataclass(frozen=True)
class ParseContext:
    """Input to a single parse call."""

    path: Path
    checkpoint: Checkpoint
    file_size: int
    modified_at: datetime


@dataclass
class ParseResult:
    """
    Everything a parser extracted from one file in one round.

    Messages carry seq numbers starting at 1 per thread for this round.
    ``agent_spawn_map`` maps an agent id to the seq of the main-thread
    tool call that spawned it (same numbering as ``messages``).
    """

    new_checkpoint: Checkpoint = field(default_factory=Checkpoint.none)
    project: Optional[ParsedProject] = None
    session: Optional[ParsedSession] = None
    threads: list[ParsedThread] = field(default_factory=list)
    messages: list[ParsedMessage] = field(default_factory=list)
    plans: list[ParsedPlan] = field(default_factory=list)
    agent_spawn_map: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    # Set when the file shrank below its checkpoint and was re-read from byte 0
    restarted: bool = False

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to persist besides the checkpoint."""
        return not self.messages and self.session is None and not self.threads


class AssistantParser(Protocol):
    """
    Protocol for assistant log parsers.

    Parsers are pure with respect to the store: they read the file from the
    checkpoint in ``ParseContext`` and return a ``ParseResult``. Sequence
    offsets, spawn resolution and persistence are the coordinator's job.
    """

    @property
    def assistant(self) -> Assistant:
        """The assistant whose logs this parser handles."""
        ...

    @property
    def root_path(self) -> Path:
        """
        Root directory owned by this parser.

        The coordinator dispatches a file to the parser whose root contains it.
        """
        ...

    def source_patterns(self) -> list[SourcePattern]:
        """Glob patterns (relative to ``root_path``) of parseable files."""
        ...

    def is_installed(self) -> bool:
        """True if the assistant's root directory exists."""
        ...

    def discover_files(self) -> list[Path]:
        """Expand ``source_patterns()`` under ``root_path``, sorted."""
        ...

    def parse(self, ctx: ParseContext) -> ParseResult:
        """
        Parse new content of ``ctx.path`` since ``ctx.checkpoint``.

        Raises:
            SourceIOError: If the file cannot be read
            ParseError: If the file cannot be normalized at all

        Note:
            Parsers should be resilient: malformed records become entries
            in ``ParseResult.warnings`` rather than exceptions.
        """
        ...


def discover_pattern_files(root_path: Path, patterns: list[SourcePattern]) -> list[Path]:
    """Expand glob patterns under a root, deduplicated and sorted."""
    if not root_path.is_dir():
        return []
    found: set[Path] = set()
    for source_pattern in patterns:
        for path in root_path.glob(source_pattern.pattern):
            if path.is_file():
                found.add(path)
    return sorted(found)


@dataclass
class JsonlRecord:
    """A decoded JSONL line and where it came from."""

    line_number: int  # Relative to the starting offset of this round
    offset: int
    data: dict[str, Any]


class JsonlReader:
    """
    Checkpointed reader for append-only JSONL logs.

    Reads from the checkpoint offset up to the last newline in the file.
    A trailing line without its newline is left for the next round, so the
    returned ``end_offset`` always sits on a line boundary. If the checkpoint
    is past the end of the file (the file was truncated or rewritten) the
    reader starts over from byte 0 and records a warning.
    """

    def __init__(self, ctx: ParseContext, warnings: list[str]):
        self.ctx = ctx
        self.warnings = warnings
        self.reset = False
        self.start_offset = self._start_offset()
        self.end_offset = self.start_offset

    def _start_offset(self) -> int:
        checkpoint = self.ctx.checkpoint
        if checkpoint.type != CheckpointType.BYTE_OFFSET:
            return 0
        offset = checkpoint.offset or 0
        if offset > self.ctx.file_size:
            self.warnings.append(
                f"File truncated: checkpoint {offset} > file size "
                f"{self.ctx.file_size}, starting from beginning"
            )
            self.reset = True
            return 0
        return offset

    @property
    def at_eof(self) -> bool:
        return self.start_offset >= self.ctx.file_size

    def _read_complete_lines(self) -> bytes:
        try:
            with self.ctx.path.open("rb") as f:
                f.seek(self.start_offset)
                chunk = f.read(self.ctx.file_size - self.start_offset)
        except OSError as e:
            raise SourceIOError(str(self.ctx.path), f"Failed to read: {e}") from e

        last_newline = chunk.rfind(b"\n")
        if last_newline < 0:
            return b""
        return chunk[: last_newline + 1]

    def records(self) -> Iterator[JsonlRecord]:
        """
        Yield decoded JSON objects in file order.

        Blank lines are skipped. Lines that are not valid JSON objects are
        recorded as warnings and skipped. ``end_offset`` advances as lines
        are consumed.
        """
        if self.at_eof:
            self.end_offset = self.ctx.file_size
            return

        data = self._read_complete_lines()
        offset = self.start_offset
        for line_number, raw_line in enumerate(data.split(b"\n")[:-1], start=1):
            record_offset = offset
            offset += len(raw_line) + 1
            self.end_offset = offset

            if not raw_line.strip():
                continue

            try:
                decoded = json.loads(raw_line)
            except ValueError as e:
                self.warnings.append(
                    f"Line {line_number} (offset {record_offset}): JSON parse error: {e}"
                )
                continue

            if not isinstance(decoded, dict):
                self.warnings.append(
                    f"Line {line_number} (offset {record_offset}): "
                    f"expected a JSON object, got {type(decoded).__name__}"
                )
                continue

            yield JsonlRecord(line_number=line_number, offset=record_offset, data=decoded)

    @property
    def checkpoint(self) -> Checkpoint:
        return Checkpoint.byte_offset(self.end_offset)
