"""
Analytics repository: cached session metrics, plugin outputs, plugin run
audit rows and LLM assessments. Everything here is regenerable.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from aiobscura.db.repositories.base import BaseRepository
from aiobscura.models.db import (
    Assessment,
    PluginMetric,
    PluginRun,
    PluginRunStatus,
    SessionMetrics,
)
from aiobscura.utils.timestamps import utc_now


class AnalyticsRepository(BaseRepository[PluginMetric]):
    """Repository for derived analytics tables."""

    def __init__(self, session: Session):
        super().__init__(PluginMetric, session)

    # Session metrics

    def get_session_metrics(self, session_id: str) -> Optional[SessionMetrics]:
        return self.session.get(SessionMetrics, session_id)

    def upsert_session_metrics(self, metrics: SessionMetrics) -> None:
        self.session.merge(metrics)
        self.session.flush()

    # Plugin metrics

    def upsert_metric(
        self,
        plugin_name: str,
        entity_type: str,
        entity_id: Optional[str],
        metric_name: str,
        metric_value: Any,
        computed_at: Optional[datetime] = None,
    ) -> None:
        """
        Insert or replace one metric value.

        ``entity_id`` of None is stored as "" so global metrics still hit the
        uniqueness constraint.
        """
        self._upsert(
            {
                "plugin_name": plugin_name,
                "entity_type": entity_type,
                "entity_id": entity_id or "",
                "metric_name": metric_name,
                "metric_value": metric_value,
                "computed_at": computed_at or utc_now(),
            },
            index_elements=["plugin_name", "entity_type", "entity_id", "metric_name"],
            update_columns=["metric_value", "computed_at"],
        )

    def list_metrics(
        self,
        plugin_name: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[PluginMetric]:
        query = self.session.query(PluginMetric)
        if plugin_name is not None:
            query = query.filter(PluginMetric.plugin_name == plugin_name)
        if entity_type is not None:
            query = query.filter(PluginMetric.entity_type == entity_type)
        if entity_id is not None:
            query = query.filter(PluginMetric.entity_id == entity_id)
        return query.order_by(PluginMetric.plugin_name, PluginMetric.metric_name).all()

    def metrics_as_dict(
        self, plugin_name: str, entity_type: str, entity_id: str
    ) -> dict[str, Any]:
        return {
            m.metric_name: m.metric_value
            for m in self.list_metrics(plugin_name, entity_type, entity_id)
        }

    def latest_metric_time(
        self, plugin_name: str, entity_type: str, entity_id: str
    ) -> Optional[datetime]:
        """Most recent ``computed_at`` among a plugin's metrics for one entity."""
        latest = (
            self.session.query(PluginMetric)
            .filter(
                PluginMetric.plugin_name == plugin_name,
                PluginMetric.entity_type == entity_type,
                PluginMetric.entity_id == entity_id,
            )
            .order_by(PluginMetric.computed_at.desc())
            .first()
        )
        return latest.computed_at if latest else None

    # Plugin runs

    def insert_run(self, run: PluginRun) -> PluginRun:
        self.session.add(run)
        self.session.flush()
        return run

    def list_runs(
        self,
        session_id: Optional[str] = None,
        plugin_name: Optional[str] = None,
        limit: int = 50,
    ) -> List[PluginRun]:
        query = self.session.query(PluginRun)
        if session_id is not None:
            query = query.filter(PluginRun.session_id == session_id)
        if plugin_name is not None:
            query = query.filter(PluginRun.plugin_name == plugin_name)
        return (
            query.order_by(PluginRun.started_at.desc(), PluginRun.id.desc())
            .limit(limit)
            .all()
        )

    def plugin_run_stats(self) -> list[tuple[str, int, int, float]]:
        """(plugin_name, runs, errors, avg duration ms) per plugin."""
        rows = (
            self.session.query(
                PluginRun.plugin_name,
                func.count(PluginRun.id),
                func.sum(case((PluginRun.status != PluginRunStatus.SUCCESS, 1), else_=0)),
                func.avg(PluginRun.duration_ms),
            )
            .group_by(PluginRun.plugin_name)
            .order_by(PluginRun.plugin_name)
            .all()
        )
        return [
            (name, runs, int(errors or 0), float(avg or 0.0))
            for name, runs, errors, avg in rows
        ]

    # Assessments

    def insert_assessment(self, assessment: Assessment) -> Assessment:
        self.session.add(assessment)
        self.session.flush()
        return assessment

    def latest_assessment(
        self, session_id: str, assessor: Optional[str] = None
    ) -> Optional[Assessment]:
        query = self.session.query(Assessment).filter(Assessment.session_id == session_id)
        if assessor is not None:
            query = query.filter(Assessment.assessor == assessor)
        return query.order_by(Assessment.assessed_at.desc(), Assessment.id.desc()).first()
