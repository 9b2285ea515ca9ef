"""
Edit churn analyzer (``core.edit_churn``).

Tracks how often the assistant goes back to files it already modified.
Two signals are combined:

1. Statistical outliers: files edited markedly more often than the rest
   of the session. The threshold is ``max(3, median + 2 * stddev)`` once
   a session touches at least 5 files, and the fixed floor of 3 below that.
2. Bursts: 3 or more edits to one file within 2 minutes, which usually
   means a fix-and-retry loop.

Metrics produced (per session, and per thread for thread analysis):

    edit_count            Edit/Write/MultiEdit calls on non-excluded paths
    unique_files          distinct files modified
    churn_ratio           (edit_count - unique_files) / edit_count, 0 with no edits
    file_edit_counts      {path: count}, most edited first
    high_churn_files      paths at or above the threshold, most edited first
    high_churn_threshold  threshold used for this session
    burst_edit_files      {path: bursts}
    burst_edit_count      total bursts
    lines_added / lines_removed / lines_changed
    edits_by_extension    {ext: count}
    first_try_files       files edited exactly once
    first_try_rate        first_try_files / unique_files

Line deltas are heuristic. MultiEdit does not carry per-edit line counts
in a cheap form, so each sub-edit is counted as 5 lines added and 3
removed.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Optional, Sequence

from aiobscura.analytics.engine import AnalyticsContext, AnalyticsPlugin, MetricOutput
from aiobscura.models.db import AssistantSession, Message, MessageType, Thread

HIGH_CHURN_THRESHOLD = 3
BURST_WINDOW_SECONDS = 120
MIN_FILES_FOR_STATS = 5
OUTLIER_STDDEV_MULTIPLIER = 2.0

MULTI_EDIT_LINES_ADDED = 5
MULTI_EDIT_LINES_REMOVED = 3

EDIT_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "edit", "write"})

# Planning documents written by assistants, not user code
EXCLUDED_PATH_PATTERNS = (
    "/.claude/plans/",
    "/.claude/todos/",
    "/PLAN.md",
    "/IMPLEMENTATION.md",
    "/DESIGN.md",
    "/ARCHITECTURE.md",
)


@dataclass
class ChurnMetrics:
    total_edits: int = 0
    file_counts: dict[str, int] = field(default_factory=dict)
    high_churn_files: list[str] = field(default_factory=list)
    high_churn_threshold: float = float(HIGH_CHURN_THRESHOLD)
    burst_edit_files: dict[str, int] = field(default_factory=dict)
    lines_added: int = 0
    lines_removed: int = 0
    extension_counts: dict[str, int] = field(default_factory=dict)

    @property
    def unique_files(self) -> int:
        return len(self.file_counts)

    @property
    def churn_ratio(self) -> float:
        if self.total_edits == 0:
            return 0.0
        return (self.total_edits - self.unique_files) / self.total_edits

    @property
    def burst_edit_count(self) -> int:
        return sum(self.burst_edit_files.values())

    @property
    def first_try_files(self) -> int:
        return sum(1 for count in self.file_counts.values() if count == 1)

    @property
    def first_try_rate(self) -> float:
        if not self.file_counts:
            return 0.0
        return self.first_try_files / self.unique_files


def extract_file_path(tool_input: Any) -> Optional[str]:
    """``file_path`` (Edit/Write) or ``filePath`` (some tools) from tool input."""
    if not isinstance(tool_input, dict):
        return None
    value = tool_input.get("file_path", tool_input.get("filePath"))
    return value if isinstance(value, str) and value else None


def is_excluded_path(path: str) -> bool:
    return any(pattern in path for pattern in EXCLUDED_PATH_PATTERNS)


def _line_count(value: Any) -> int:
    return len(value.splitlines()) if isinstance(value, str) else 0


def extract_line_changes(tool_name: Optional[str], tool_input: dict) -> tuple[int, int]:
    """Return (lines_added, lines_removed) for one edit call."""
    if tool_name in ("Edit", "edit"):
        old = _line_count(tool_input.get("old_string"))
        new = _line_count(tool_input.get("new_string"))
        return max(new - old, 0), max(old - new, 0)
    if tool_name in ("Write", "write"):
        return _line_count(tool_input.get("content")), 0
    if tool_name == "MultiEdit":
        edits = tool_input.get("edits")
        n = len(edits) if isinstance(edits, list) else 0
        return n * MULTI_EDIT_LINES_ADDED, n * MULTI_EDIT_LINES_REMOVED
    return 0, 0


def extract_extension(path: str) -> str:
    suffix = PurePosixPath(path).suffix
    return suffix[1:] if suffix else "no_ext"


def compute_threshold(counts: list[int]) -> float:
    if len(counts) < MIN_FILES_FOR_STATS:
        return float(HIGH_CHURN_THRESHOLD)
    median = statistics.median(counts)
    stddev = statistics.pstdev(counts)
    return max(float(HIGH_CHURN_THRESHOLD), median + OUTLIER_STDDEV_MULTIPLIER * stddev)


def detect_bursts(file_timestamps: dict[str, list[datetime]]) -> dict[str, int]:
    """Count windows of 3 consecutive edits spanning at most 2 minutes, per file."""
    bursts: dict[str, int] = {}
    for path, timestamps in file_timestamps.items():
        if len(timestamps) < 3:
            continue
        ordered = sorted(timestamps)
        count = sum(
            1
            for i in range(len(ordered) - 2)
            if (ordered[i + 2] - ordered[i]).total_seconds() <= BURST_WINDOW_SECONDS
        )
        if count:
            bursts[path] = count
    return bursts


def _ranked(counts: dict[str, int]) -> dict[str, int]:
    return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


def compute_churn(messages: Sequence[Message]) -> ChurnMetrics:
    metrics = ChurnMetrics()
    file_counts: dict[str, int] = defaultdict(int)
    timestamps: dict[str, list[datetime]] = defaultdict(list)
    extensions: dict[str, int] = defaultdict(int)

    for msg in messages:
        if msg.message_type != MessageType.TOOL_CALL or msg.tool_name not in EDIT_TOOLS:
            continue
        path = extract_file_path(msg.tool_input)
        if path is None or is_excluded_path(path):
            continue
        metrics.total_edits += 1
        file_counts[path] += 1
        timestamps[path].append(msg.emitted_at)
        extensions[extract_extension(path)] += 1
        added, removed = extract_line_changes(msg.tool_name, msg.tool_input)
        metrics.lines_added += added
        metrics.lines_removed += removed

    metrics.file_counts = _ranked(file_counts)
    metrics.extension_counts = _ranked(extensions)
    metrics.high_churn_threshold = compute_threshold(list(file_counts.values()))
    metrics.high_churn_files = [
        path
        for path, count in metrics.file_counts.items()
        if count >= metrics.high_churn_threshold
    ]
    metrics.burst_edit_files = _ranked(detect_bursts(timestamps))
    return metrics


def _outputs(make: Any, entity_id: str, m: ChurnMetrics) -> list[MetricOutput]:
    values = {
        "edit_count": m.total_edits,
        "unique_files": m.unique_files,
        "churn_ratio": m.churn_ratio,
        "file_edit_counts": m.file_counts,
        "high_churn_files": m.high_churn_files,
        "high_churn_threshold": m.high_churn_threshold,
        "burst_edit_files": m.burst_edit_files,
        "burst_edit_count": m.burst_edit_count,
        "lines_added": m.lines_added,
        "lines_removed": m.lines_removed,
        "lines_changed": m.lines_added + m.lines_removed,
        "edits_by_extension": m.extension_counts,
        "first_try_files": m.first_try_files,
        "first_try_rate": m.first_try_rate,
    }
    return [make(entity_id, name, value) for name, value in values.items()]


class EditChurnAnalyzer(AnalyticsPlugin):
    """File modification patterns for sessions and threads."""

    name = "core.edit_churn"

    def analyze_session(
        self,
        session: AssistantSession,
        messages: Sequence[Message],
        ctx: AnalyticsContext,
    ) -> list[MetricOutput]:
        return _outputs(MetricOutput.session, session.id, compute_churn(messages))

    def supports_thread_analysis(self) -> bool:
        return True

    def analyze_thread(
        self,
        thread: Thread,
        messages: Sequence[Message],
        ctx: AnalyticsContext,
    ) -> list[MetricOutput]:
        return _outputs(MetricOutput.thread, thread.id, compute_churn(messages))
