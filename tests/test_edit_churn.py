"""
Tests for edit churn and outcome analysis.
"""

from datetime import datetime, timedelta

import pytest

from aiobscura.analytics.plugins.edit_churn import (
    HIGH_CHURN_THRESHOLD,
    compute_churn,
    compute_threshold,
    detect_bursts,
    extract_extension,
    extract_file_path,
    extract_line_changes,
    is_excluded_path,
)
from aiobscura.analytics.plugins.outcome import classify_outcome
from aiobscura.models.db import Message, MessageType

START = datetime(2025, 6, 2, 10, 0, 0)


def edit(path: str, offset_seconds: int = 0, tool: str = "Edit", **tool_input) -> Message:
    return Message(
        message_type=MessageType.TOOL_CALL,
        tool_name=tool,
        tool_input={"file_path": path, **tool_input},
        emitted_at=START + timedelta(seconds=offset_seconds),
    )


class TestComputeChurn:
    """Tests for churn aggregation over a session's tool calls."""

    def test_plan_files_are_excluded(self):
        """Test that edits to planning documents do not count as churn."""
        messages = [
            edit("/proj/src/a.rs", 0),
            edit("/proj/src/a.rs", 600),
            edit("/proj/src/a.rs", 1200),
            *[edit("/home/dev/.claude/plans/x.md", 1800 + i * 600) for i in range(5)],
            edit("/proj/src/b.rs", 6000),
        ]

        metrics = compute_churn(messages)

        assert metrics.total_edits == 4
        assert metrics.unique_files == 2
        assert metrics.churn_ratio == 0.5
        assert metrics.high_churn_files == ["/proj/src/a.rs"]
        assert metrics.file_counts == {"/proj/src/a.rs": 3, "/proj/src/b.rs": 1}
        assert metrics.burst_edit_count == 0

    def test_no_edits(self):
        messages = [
            Message(message_type=MessageType.PROMPT, content="hi", emitted_at=START),
            Message(
                message_type=MessageType.TOOL_CALL,
                tool_name="Read",
                tool_input={"file_path": "/p/a.py"},
                emitted_at=START,
            ),
        ]

        metrics = compute_churn(messages)

        assert metrics.total_edits == 0
        assert metrics.churn_ratio == 0.0
        assert metrics.first_try_rate == 0.0
        assert metrics.high_churn_files == []

    def test_calls_without_file_path_are_ignored(self):
        messages = [
            Message(
                message_type=MessageType.TOOL_CALL,
                tool_name="Edit",
                tool_input={"old_string": "a"},
                emitted_at=START,
            )
        ]

        assert compute_churn(messages).total_edits == 0

    def test_extensions_and_first_try(self):
        metrics = compute_churn(
            [
                edit("/p/a.py", 0),
                edit("/p/a.py", 1000),
                edit("/p/b.py", 2000),
                edit("/p/Makefile", 3000, tool="Write", content="all:\n\techo"),
            ]
        )

        assert metrics.extension_counts == {"py": 3, "no_ext": 1}
        assert metrics.first_try_files == 2
        assert metrics.first_try_rate == pytest.approx(2 / 3)
        assert metrics.lines_added == 2


class TestThreshold:
    def test_floor_below_minimum_file_count(self):
        assert compute_threshold([1, 1, 1, 20]) == HIGH_CHURN_THRESHOLD

    def test_outlier_threshold(self):
        """Test median + 2 * stddev once enough files are touched."""
        assert compute_threshold([1, 1, 1, 1, 10]) == pytest.approx(8.2)

    def test_threshold_never_below_floor(self):
        assert compute_threshold([1, 1, 1, 1, 1]) == HIGH_CHURN_THRESHOLD


class TestBursts:
    def test_three_edits_within_window(self):
        times = [START, START + timedelta(seconds=30), START + timedelta(seconds=90)]

        assert detect_bursts({"/p/a.py": times}) == {"/p/a.py": 1}

    def test_sliding_windows_are_counted(self):
        times = [START + timedelta(seconds=s) for s in (0, 10, 20, 30)]

        assert detect_bursts({"/p/a.py": times}) == {"/p/a.py": 2}

    def test_spread_out_edits_are_not_bursts(self):
        times = [START + timedelta(seconds=s) for s in (0, 100, 200)]

        assert detect_bursts({"/p/a.py": times, "/p/b.py": times[:2]}) == {}

    def test_bursts_in_session(self):
        metrics = compute_churn([edit("/p/a.py", s) for s in (0, 20, 40)])

        assert metrics.burst_edit_files == {"/p/a.py": 1}
        assert metrics.burst_edit_count == 1


class TestLineChanges:
    @pytest.mark.parametrize(
        "tool_name,tool_input,expected",
        [
            ("Edit", {"old_string": "a\nb\nc", "new_string": "a"}, (0, 2)),
            ("Edit", {"old_string": "a", "new_string": "a\nb"}, (1, 0)),
            ("Write", {"content": "1\n2\n3\n"}, (3, 0)),
            ("MultiEdit", {"edits": [{}, {}]}, (10, 6)),
            ("Read", {"file_path": "/p/a.py"}, (0, 0)),
        ],
    )
    def test_line_changes(self, tool_name, tool_input, expected):
        assert extract_line_changes(tool_name, tool_input) == expected

    def test_file_path_keys(self):
        assert extract_file_path({"file_path": "/a"}) == "/a"
        assert extract_file_path({"filePath": "/b"}) == "/b"
        assert extract_file_path({"file_path": ""}) is None
        assert extract_file_path("not a dict") is None

    def test_excluded_paths(self):
        assert is_excluded_path("/home/dev/.claude/plans/quiet-river.md")
        assert is_excluded_path("/repo/DESIGN.md")
        assert not is_excluded_path("/repo/src/design.py")

    def test_extension(self):
        assert extract_extension("/p/a.tar.gz") == "gz"
        assert extract_extension("/p/Makefile") == "no_ext"


class TestOutcome:
    @pytest.mark.parametrize(
        "tool_results,errors,expected",
        [
            (3, 0, (True, "tool_result_no_errors")),
            (3, 1, (False, "tool_result_with_errors")),
            (0, 2, (False, "errors_only")),
            (0, 0, (False, "insufficient_signal")),
        ],
    )
    def test_classify_outcome(self, tool_results, errors, expected):
        assert classify_outcome(tool_results, errors) == expected
