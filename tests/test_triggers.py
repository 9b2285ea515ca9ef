"""Tests for the post-sync analytics scheduler."""

from datetime import timedelta
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from aiobscura.analytics.plugins import create_default_engine
from aiobscura.assessment.assessor import SessionAssessor
from aiobscura.config import AnalyticsSettings
from aiobscura.db.repositories import AnalyticsRepository
from aiobscura.exceptions import NetworkError, StorageError
from aiobscura.models.parsed import Checkpoint
from aiobscura.pipeline.coordinator import FileSyncResult, SyncResult
from aiobscura.pipeline.triggers import AnalyticsScheduler


def sync_result(**tool_calls: int) -> SyncResult:
    """A sync result with the given new tool calls per session."""
    result = SyncResult()
    for session_id, count in tool_calls.items():
        result.add(
            FileSyncResult(
                path=Path(f"/logs/{session_id}.jsonl"),
                new_checkpoint=Checkpoint.byte_offset(100),
                new_messages=count,
                new_tool_calls=count,
                session_id=session_id,
            )
        )
    return result


@pytest.fixture
def settings() -> AnalyticsSettings:
    return AnalyticsSettings(tool_call_threshold=5, inactivity_minutes=15)


@pytest.fixture
def scheduler(db, settings) -> AnalyticsScheduler:
    return AnalyticsScheduler(db, create_default_engine(settings), settings)


class TestActivityTrigger:
    """Tests for the tool call threshold."""

    def test_tool_calls_accumulate_across_syncs(self, scheduler, seed_session, base_time):
        """Test that counts below the threshold carry over to the next sync."""
        sid = seed_session()

        first = scheduler.after_sync(sync_result(**{sid: 3}), now=base_time)
        assert first.activity_sessions == []
        assert scheduler.pending_tool_calls(sid) == 3

        second = scheduler.after_sync(sync_result(**{sid: 2}), now=base_time)
        assert second.activity_sessions == [sid]
        assert second.plugin_runs == 3
        assert second.plugin_errors == 0
        assert scheduler.pending_tool_calls(sid) == 0

    def test_analysis_fills_metric_caches(self, scheduler, db, seed_session, base_time):
        sid = seed_session()

        scheduler.after_sync(sync_result(**{sid: 5}), now=base_time)

        with db.session() as session:
            assert AnalyticsRepository(session).get_session_metrics(sid) is not None

    def test_unknown_session_is_reported(self, scheduler, base_time):
        report = scheduler.after_sync(sync_result(ghost=10), now=base_time)

        assert report.errors == ["ghost: Session not found: ghost"]
        assert report.plugin_runs == 0

    def test_storage_errors_propagate(self, scheduler, seed_session, base_time):
        sid = seed_session()

        with patch.object(
            scheduler.engine, "run_session", side_effect=StorageError("disk full")
        ):
            with pytest.raises(StorageError):
                scheduler.after_sync(sync_result(**{sid: 5}), now=base_time)


class TestInactivityTrigger:
    """Tests for the periodic scan of idle sessions."""

    def test_idle_session_is_analyzed_once(self, scheduler, seed_session, base_time):
        """Test that an analyzed session is not picked up again until it changes."""
        sid = seed_session()
        later = base_time + timedelta(hours=1)

        first = scheduler.after_sync(SyncResult(), now=later)
        second = scheduler.after_sync(SyncResult(), now=later + timedelta(minutes=16))

        assert first.inactive_sessions == [sid]
        assert second.inactive_sessions == []

    def test_scan_runs_at_most_once_per_window(self, db, settings, seed_session, base_time):
        engine = Mock(wraps=create_default_engine(settings))
        scheduler = AnalyticsScheduler(db, engine, settings)
        later = base_time + timedelta(hours=1)
        scheduler.after_sync(SyncResult(), now=later)

        sid = seed_session("sess-2")
        report = scheduler.after_sync(SyncResult(), now=later + timedelta(minutes=5))

        assert report.inactive_sessions == []
        assert sid not in [c.args[0] for c in engine.run_session.call_args_list]

    def test_recent_sessions_are_not_idle(self, scheduler, seed_session, base_time):
        seed_session()

        report = scheduler.after_sync(SyncResult(), now=base_time + timedelta(minutes=5))

        assert report.inactive_sessions == []

    def test_active_sessions_are_not_analyzed_twice(self, scheduler, seed_session, base_time):
        sid = seed_session()

        report = scheduler.after_sync(sync_result(**{sid: 5}), now=base_time + timedelta(hours=1))

        assert report.activity_sessions == [sid]
        assert report.inactive_sessions == []
        assert report.analyzed == 1


class TestAssessment:
    def test_assessor_runs_after_plugins(self, db, settings, seed_session, base_time):
        assessor = Mock(spec=SessionAssessor)
        assessor.assess_and_store.return_value = object()
        scheduler = AnalyticsScheduler(db, create_default_engine(settings), settings, assessor)
        sid = seed_session()

        report = scheduler.after_sync(sync_result(**{sid: 5}), now=base_time)

        assessor.assess_and_store.assert_called_once_with(sid)
        assert report.assessments == 1

    def test_assessment_failure_is_recorded(self, db, settings, seed_session, base_time):
        assessor = Mock(spec=SessionAssessor)
        assessor.assess_and_store.side_effect = NetworkError("ollama unreachable")
        scheduler = AnalyticsScheduler(db, create_default_engine(settings), settings, assessor)
        sid = seed_session()

        report = scheduler.after_sync(sync_result(**{sid: 5}), now=base_time)

        assert report.assessments == 0
        assert report.plugin_runs == 3
        assert report.errors == [f"{sid}: ollama unreachable"]
