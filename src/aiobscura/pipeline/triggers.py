"""
Automatic analytics after sync.

Two triggers decide which sessions get analyzed after a sync tick:

- activity: a session accumulated ``tool_call_threshold`` new tool calls
  since it was last analyzed by this scheduler
- inactivity: every ``inactivity_minutes``, sessions whose last activity
  is older than that window and whose cached metrics predate it

Selected sessions get every enabled plugin plus the first-order metrics
cache, and an LLM assessment when ``[llm]`` is configured.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from aiobscura.analytics.engine import AnalyticsEngine
from aiobscura.assessment.assessor import SessionAssessor
from aiobscura.config import AnalyticsSettings
from aiobscura.db.connection import Database
from aiobscura.db.repositories import StatsRepository
from aiobscura.exceptions import AiobscuraError, LLMError, NetworkError
from aiobscura.pipeline.coordinator import SyncResult
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)


@dataclass
class TriggerReport:
    """What one ``after_sync`` call did."""

    activity_sessions: list[str] = field(default_factory=list)
    inactive_sessions: list[str] = field(default_factory=list)
    plugin_runs: int = 0
    plugin_errors: int = 0
    assessments: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def analyzed(self) -> int:
        return len(self.activity_sessions) + len(self.inactive_sessions)


class AnalyticsScheduler:
    """Decides when sessions are analyzed and runs the analysis."""

    def __init__(
        self,
        db: Database,
        engine: AnalyticsEngine,
        settings: AnalyticsSettings,
        assessor: Optional[SessionAssessor] = None,
    ):
        self.db = db
        self.engine = engine
        self.settings = settings
        self.assessor = assessor
        self._pending_tool_calls: dict[str, int] = {}
        self._last_inactivity_scan: Optional[datetime] = None

    def pending_tool_calls(self, session_id: str) -> int:
        return self._pending_tool_calls.get(session_id, 0)

    def _activity_due(self, result: SyncResult) -> list[str]:
        due: list[str] = []
        for session_id, count in result.tool_calls_by_session().items():
            total = self._pending_tool_calls.get(session_id, 0) + count
            if total >= self.settings.tool_call_threshold:
                due.append(session_id)
                self._pending_tool_calls.pop(session_id, None)
            else:
                self._pending_tool_calls[session_id] = total
        return due

    def _inactivity_due(self, now: datetime) -> list[str]:
        window = timedelta(minutes=self.settings.inactivity_minutes)
        if self._last_inactivity_scan is not None and now - self._last_inactivity_scan < window:
            return []
        self._last_inactivity_scan = now
        with self.db.session() as session:
            return StatsRepository(session).sessions_inactive_since(now - window)

    def after_sync(self, result: SyncResult, now: Optional[datetime] = None) -> TriggerReport:
        """
        Run triggered analytics for one sync result.

        Plugin failures are recorded on their run rows; assessment
        failures are logged and counted. Storage errors propagate.
        """
        now = now or utc_now()
        report = TriggerReport()
        report.activity_sessions = self._activity_due(result)
        report.inactive_sessions = [
            session_id
            for session_id in self._inactivity_due(now)
            if session_id not in report.activity_sessions
        ]

        for session_id in report.activity_sessions + report.inactive_sessions:
            self._analyze(session_id, report)

        if report.analyzed:
            logger.info(
                f"Triggered analytics for {report.analyzed} sessions "
                f"({len(report.activity_sessions)} active, "
                f"{len(report.inactive_sessions)} inactive)"
            )
        return report

    def _analyze(self, session_id: str, report: TriggerReport) -> None:
        try:
            results = self.engine.run_session(session_id, self.db)
            self.engine.ensure_first_order_metrics(session_id, self.db)
        except AiobscuraError as e:
            if e.kind == "storage":
                raise
            logger.warning(f"Analytics skipped for {session_id}: {e}")
            report.errors.append(f"{session_id}: {e}")
            return

        report.plugin_runs += len(results)
        report.plugin_errors += sum(1 for r in results if not r.succeeded)

        if self.assessor is None:
            return
        try:
            if self.assessor.assess_and_store(session_id) is not None:
                report.assessments += 1
        except (NetworkError, LLMError) as e:
            logger.warning(f"Assessment failed for {session_id}: {e}")
            report.errors.append(f"{session_id}: {e}")
