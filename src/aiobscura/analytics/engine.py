"""
Plugin-based analytics engine.

Plugins read canonical rows (sessions, threads, messages) and produce
derived metrics that are upserted into ``plugin_metrics``. Every run,
successful or not, leaves an audit row in ``plugin_runs``.

A plugin is a subclass of ``AnalyticsPlugin``:

    class MyPlugin(AnalyticsPlugin):
        name = "custom.my_plugin"

        def analyze_session(self, session, messages, ctx):
            return [MetricOutput.session(session.id, "answer", 42)]

Plugin failures are local: the error is recorded on the run row and the
engine moves on to the next plugin.
"""

import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from aiobscura.config import AnalyticsSettings
from aiobscura.db.connection import Database
from aiobscura.db.repositories import (
    AnalyticsRepository,
    MessageRepository,
    SessionFilter,
    SessionRepository,
    StatsRepository,
    ThreadRepository,
)
from aiobscura.exceptions import ConfigError, SessionNotFoundError, StorageError
from aiobscura.models.db import (
    AssistantSession,
    Message,
    PluginRun,
    PluginRunStatus,
    SessionMetrics,
    Thread,
)
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

# Bump when metric definitions change; older cached rows are recomputed.
METRIC_VERSION = 1

DEFAULT_PLUGIN_TIMEOUT_MS = 30_000


class TriggerKind(str, enum.Enum):
    ON_DEMAND = "on_demand"
    EVENT_COUNT = "event_count"
    INACTIVITY = "inactivity"


@dataclass(frozen=True)
class AnalyticsTrigger:
    """When a plugin wants to run; ``value`` is a count or minutes."""

    kind: TriggerKind
    value: Optional[int] = None

    @classmethod
    def on_demand(cls) -> "AnalyticsTrigger":
        return cls(TriggerKind.ON_DEMAND)

    @classmethod
    def event_count(cls, count: int) -> "AnalyticsTrigger":
        return cls(TriggerKind.EVENT_COUNT, count)

    @classmethod
    def inactivity(cls, minutes: int) -> "AnalyticsTrigger":
        return cls(TriggerKind.INACTIVITY, minutes)


@dataclass
class AnalyticsContext:
    """Handed to plugins that need to look beyond the messages they were given."""

    db: Database
    settings: AnalyticsSettings = field(default_factory=AnalyticsSettings)


@dataclass
class MetricOutput:
    """One metric value produced by a plugin."""

    entity_type: str
    entity_id: Optional[str]
    metric_name: str
    metric_value: Any

    @classmethod
    def session(cls, session_id: str, name: str, value: Any) -> "MetricOutput":
        return cls("session", session_id, name, value)

    @classmethod
    def thread(cls, thread_id: str, name: str, value: Any) -> "MetricOutput":
        return cls("thread", thread_id, name, value)

    @classmethod
    def global_(cls, name: str, value: Any) -> "MetricOutput":
        return cls("global", None, name, value)


@dataclass
class PluginRunResult:
    """Outcome of one plugin execution, mirrored into ``plugin_runs``."""

    plugin_name: str
    session_id: Optional[str]
    started_at: datetime
    duration_ms: int
    status: PluginRunStatus
    error_message: Optional[str] = None
    metrics_produced: int = 0
    input_message_count: int = 0
    input_token_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == PluginRunStatus.SUCCESS


@dataclass
class SessionAnalytics:
    """Edit-churn summary for a session, read back from ``plugin_metrics``."""

    edit_count: int
    unique_files: int
    churn_ratio: float
    high_churn_files: list[str]
    computed_at: datetime
    lines_added: int = 0
    lines_removed: int = 0
    burst_edit_count: int = 0
    first_try_rate: float = 0.0


@dataclass
class ThreadAnalytics:
    """Edit-churn summary for a single thread."""

    edit_count: int
    unique_files: int
    churn_ratio: float
    high_churn_files: list[str]
    computed_at: datetime
    lines_added: int = 0
    lines_removed: int = 0


class AnalyticsPlugin(ABC):
    """Base class for analytics plugins."""

    #: Unique dotted name, e.g. ``core.edit_churn``
    name: str = ""

    def triggers(self) -> list[AnalyticsTrigger]:
        return [AnalyticsTrigger.on_demand()]

    @abstractmethod
    def analyze_session(
        self,
        session: AssistantSession,
        messages: Sequence[Message],
        ctx: AnalyticsContext,
    ) -> list[MetricOutput]:
        """
        Compute metrics for one session.

        Args:
            session: The session row
            messages: All messages of the session across its threads
            ctx: Engine context (database handle, analytics settings)

        Returns:
            Metric outputs to upsert
        """

    def supports_thread_analysis(self) -> bool:
        return False

    def analyze_thread(
        self,
        thread: Thread,
        messages: Sequence[Message],
        ctx: AnalyticsContext,
    ) -> list[MetricOutput]:
        return []


def _token_count(messages: Sequence[Message]) -> int:
    return sum((m.tokens_in or 0) + (m.tokens_out or 0) for m in messages)


def _is_fresh(computed_at: Optional[datetime], last_message_at: Optional[datetime]) -> bool:
    if computed_at is None:
        return False
    return last_message_at is None or computed_at >= last_message_at


class AnalyticsEngine:
    """
    Registry and runner for analytics plugins.

    Example:
        >>> engine = AnalyticsEngine(settings.analytics)
        >>> engine.register(EditChurnAnalyzer())
        >>> engine.run_session("abc123", db)
    """

    def __init__(self, settings: Optional[AnalyticsSettings] = None):
        self.settings = settings or AnalyticsSettings(timeout_ms=DEFAULT_PLUGIN_TIMEOUT_MS)
        self._plugins: list[AnalyticsPlugin] = []

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, plugin: AnalyticsPlugin) -> None:
        if not plugin.name:
            raise ConfigError(f"Plugin {type(plugin).__name__} has no name")
        if self.has_plugin(plugin.name):
            raise ConfigError(f"Plugin already registered: {plugin.name}")
        self._plugins.append(plugin)
        logger.info(f"Registered analytics plugin {plugin.name}")

    def plugin_names(self) -> list[str]:
        return [p.name for p in self._plugins]

    def has_plugin(self, name: str) -> bool:
        return any(p.name == name for p in self._plugins)

    def get_plugin(self, name: str) -> AnalyticsPlugin:
        for plugin in self._plugins:
            if plugin.name == name:
                return plugin
        raise ConfigError(f"Plugin not found: {name}")

    def is_enabled(self, name: str) -> bool:
        return name not in self.settings.disabled_plugins

    def enabled_plugins(self) -> list[AnalyticsPlugin]:
        return [p for p in self._plugins if self.is_enabled(p.name)]

    def timeout_for(self, name: str) -> int:
        return max(1, self.settings.timeout_for(name))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        plugin: AnalyticsPlugin,
        session_id: str,
        messages: Sequence[Message],
        db: Database,
        analyze: Any,
        label: str,
    ) -> PluginRunResult:
        """Time ``analyze()``, persist its outputs and record the run."""
        started_at = utc_now()
        start = time.monotonic()
        timeout_ms = self.timeout_for(plugin.name)
        result = PluginRunResult(
            plugin_name=plugin.name,
            session_id=session_id,
            started_at=started_at,
            duration_ms=0,
            status=PluginRunStatus.SUCCESS,
            input_message_count=len(messages),
            input_token_count=_token_count(messages),
        )
        logger.debug(
            f"Running plugin {plugin.name} on {label} "
            f"({len(messages)} messages, timeout {timeout_ms}ms)"
        )

        try:
            outputs = analyze()
        except Exception as e:
            result.duration_ms = int((time.monotonic() - start) * 1000)
            result.status = PluginRunStatus.ERROR
            result.error_message = str(e) or type(e).__name__
            logger.error(f"Plugin {plugin.name} failed on {label}: {e}")
            self._record_run(db, result)
            return result

        result.duration_ms = int((time.monotonic() - start) * 1000)
        if result.duration_ms > timeout_ms:
            result.status = PluginRunStatus.TIMEOUT
            result.error_message = (
                f"plugin {plugin.name} exceeded timeout: "
                f"{result.duration_ms}ms > {timeout_ms}ms"
            )
            logger.warning(
                f"Plugin {plugin.name} exceeded its timeout on {label}; "
                f"dropping computed metrics"
            )
            self._record_run(db, result)
            return result

        computed_at = utc_now()
        with db.session() as session:
            repo = AnalyticsRepository(session)
            for output in outputs:
                repo.upsert_metric(
                    plugin.name,
                    output.entity_type,
                    output.entity_id,
                    output.metric_name,
                    output.metric_value,
                    computed_at=computed_at,
                )
        result.metrics_produced = len(outputs)
        self._record_run(db, result)
        logger.info(
            f"Plugin {plugin.name} completed on {label}: "
            f"{len(outputs)} metrics in {result.duration_ms}ms"
        )
        return result

    @staticmethod
    def _record_run(db: Database, result: PluginRunResult) -> None:
        try:
            with db.session() as session:
                AnalyticsRepository(session).insert_run(
                    PluginRun(
                        plugin_name=result.plugin_name,
                        session_id=result.session_id,
                        started_at=result.started_at,
                        duration_ms=result.duration_ms,
                        status=result.status,
                        error_message=result.error_message,
                        metrics_produced=result.metrics_produced,
                        input_message_count=result.input_message_count,
                        input_token_count=result.input_token_count,
                    )
                )
        except StorageError as e:
            logger.warning(f"Failed to record plugin run for {result.plugin_name}: {e}")

    def run_plugin(
        self,
        plugin_name: str,
        session: AssistantSession,
        messages: Sequence[Message],
        db: Database,
    ) -> PluginRunResult:
        """
        Run one plugin against a session.

        Raises:
            ConfigError: If the plugin is unknown or disabled
        """
        plugin = self.get_plugin(plugin_name)
        if not self.is_enabled(plugin_name):
            raise ConfigError(f"Plugin is disabled: {plugin_name}")
        ctx = AnalyticsContext(db=db, settings=self.settings)
        return self._execute(
            plugin,
            session.id,
            messages,
            db,
            lambda: plugin.analyze_session(session, messages, ctx),
            f"session {session.id}",
        )

    def run_thread_plugin(
        self,
        plugin_name: str,
        thread: Thread,
        messages: Sequence[Message],
        db: Database,
    ) -> PluginRunResult:
        plugin = self.get_plugin(plugin_name)
        if not plugin.supports_thread_analysis():
            raise ConfigError(f"Plugin {plugin_name} does not support thread analysis")
        if not self.is_enabled(plugin_name):
            raise ConfigError(f"Plugin is disabled: {plugin_name}")
        ctx = AnalyticsContext(db=db, settings=self.settings)
        return self._execute(
            plugin,
            thread.session_id,
            messages,
            db,
            lambda: plugin.analyze_thread(thread, messages, ctx),
            f"thread {thread.id}",
        )

    def run_all(
        self,
        session: AssistantSession,
        messages: Sequence[Message],
        db: Database,
    ) -> list[PluginRunResult]:
        """Run every enabled plugin; one plugin's failure does not stop the rest."""
        return [
            self.run_plugin(plugin.name, session, messages, db)
            for plugin in self.enabled_plugins()
        ]

    def _load_session(
        self, session_id: str, db: Database
    ) -> tuple[AssistantSession, list[Message]]:
        with db.session() as session:
            row = SessionRepository(session).get(session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            messages = MessageRepository(session).list_for_session(session_id)
        return row, messages

    def run_session(
        self,
        session_id: str,
        db: Database,
        plugin_name: Optional[str] = None,
    ) -> list[PluginRunResult]:
        """
        Load a session and run one plugin, or every enabled plugin.

        Raises:
            SessionNotFoundError: If the session does not exist
            ConfigError: If ``plugin_name`` is unknown or disabled
        """
        row, messages = self._load_session(session_id, db)
        if plugin_name:
            return [self.run_plugin(plugin_name, row, messages, db)]
        return self.run_all(row, messages, db)

    def run_all_sessions(self, db: Database) -> tuple[int, list[str]]:
        """Run every enabled plugin on every session; returns (runs, error lines)."""
        with db.session() as session:
            session_ids = [s.id for s in SessionRepository(session).list(SessionFilter())]

        total_runs = 0
        errors: list[str] = []
        for session_id in session_ids:
            for result in self.run_session(session_id, db):
                total_runs += 1
                if result.error_message:
                    errors.append(
                        f"{result.plugin_name} on {session_id}: {result.error_message}"
                    )
        return total_runs, errors

    # ------------------------------------------------------------------
    # Cached accessors
    # ------------------------------------------------------------------

    def ensure_session_analytics(self, session_id: str, db: Database) -> SessionAnalytics:
        """
        Edit-churn metrics for a session, recomputed when missing or older
        than the session's last message.
        """
        plugin_name = "core.edit_churn"
        with db.session() as session:
            computed_at = AnalyticsRepository(session).latest_metric_time(
                plugin_name, "session", session_id
            )
            last_message_at = StatsRepository(session).session_last_message_at(session_id)

        if _is_fresh(computed_at, last_message_at):
            logger.debug(f"Using cached session analytics for {session_id}")
        else:
            logger.info(f"Computing session analytics for {session_id}")
            row, messages = self._load_session(session_id, db)
            self.run_plugin(plugin_name, row, messages, db)

        with db.session() as session:
            repo = AnalyticsRepository(session)
            values = repo.metrics_as_dict(plugin_name, "session", session_id)
            computed_at = repo.latest_metric_time(plugin_name, "session", session_id)
        if not values or computed_at is None:
            raise StorageError(f"Failed to compute session analytics for {session_id}")
        return SessionAnalytics(
            edit_count=int(values.get("edit_count", 0)),
            unique_files=int(values.get("unique_files", 0)),
            churn_ratio=float(values.get("churn_ratio", 0.0)),
            high_churn_files=list(values.get("high_churn_files", [])),
            computed_at=computed_at,
            lines_added=int(values.get("lines_added", 0)),
            lines_removed=int(values.get("lines_removed", 0)),
            burst_edit_count=int(values.get("burst_edit_count", 0)),
            first_try_rate=float(values.get("first_try_rate", 0.0)),
        )

    def ensure_thread_analytics(self, thread_id: str, db: Database) -> ThreadAnalytics:
        plugin_name = "core.edit_churn"
        with db.session() as session:
            thread = ThreadRepository(session).get(thread_id)
            if thread is None:
                raise ConfigError(f"Thread not found: {thread_id}")
            computed_at = AnalyticsRepository(session).latest_metric_time(
                plugin_name, "thread", thread_id
            )
            last_activity = thread.last_activity_at

            if not _is_fresh(computed_at, last_activity):
                messages = MessageRepository(session).list_for_thread(thread_id)
            else:
                messages = None

        if messages is not None:
            logger.info(f"Computing thread analytics for {thread_id}")
            self.run_thread_plugin(plugin_name, thread, messages, db)

        with db.session() as session:
            repo = AnalyticsRepository(session)
            values = repo.metrics_as_dict(plugin_name, "thread", thread_id)
            computed_at = repo.latest_metric_time(plugin_name, "thread", thread_id)
        if not values or computed_at is None:
            raise StorageError(f"Failed to compute thread analytics for {thread_id}")
        return ThreadAnalytics(
            edit_count=int(values.get("edit_count", 0)),
            unique_files=int(values.get("unique_files", 0)),
            churn_ratio=float(values.get("churn_ratio", 0.0)),
            high_churn_files=list(values.get("high_churn_files", [])),
            computed_at=computed_at,
            lines_added=int(values.get("lines_added", 0)),
            lines_removed=int(values.get("lines_removed", 0)),
        )

    def ensure_first_order_metrics(self, session_id: str, db: Database) -> SessionMetrics:
        """
        First-order SQL aggregates for a session, served from the
        ``session_metrics`` cache when it is current.
        """
        from aiobscura.analytics.first_order import compute_session_metrics

        with db.session() as session:
            cached = AnalyticsRepository(session).get_session_metrics(session_id)
            last_message_at = StatsRepository(session).session_last_message_at(session_id)
            if (
                cached is not None
                and cached.metric_version >= METRIC_VERSION
                and _is_fresh(cached.computed_at, last_message_at)
            ):
                logger.debug(f"Using cached first-order metrics for {session_id}")
                return cached

            if SessionRepository(session).get(session_id) is None:
                raise SessionNotFoundError(session_id)
            logger.info(f"Computing first-order metrics for {session_id}")
            metrics = compute_session_metrics(session, session_id)
            AnalyticsRepository(session).upsert_session_metrics(metrics)
            return metrics
