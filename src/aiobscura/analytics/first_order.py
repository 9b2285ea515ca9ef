"""First-order session metrics computed by SQL and cached in ``session_metrics``."""

import logging

from sqlalchemy.orm import Session

from aiobscura.analytics.engine import METRIC_VERSION
from aiobscura.db.repositories import AnalyticsRepository, StatsRepository
from aiobscura.models.db import SessionMetrics
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)


def compute_session_metrics(session: Session, session_id: str) -> SessionMetrics:
    """
    Aggregate tokens, tool calls, errors and duration for one session.

    ``edit_churn_ratio`` is copied from the edit-churn plugin's output when
    that plugin has already run; otherwise it stays None.
    """
    stats = StatsRepository(session).session_first_order(session_id)

    duration_ms = 0
    if stats["first_at"] is not None and stats["last_at"] is not None:
        duration_ms = max(
            0, int((stats["last_at"] - stats["first_at"]).total_seconds() * 1000)
        )

    total_tokens = stats["tokens_in"] + stats["tokens_out"]
    minutes = duration_ms / 60_000
    tokens_per_minute = total_tokens / minutes if minutes > 0 else 0.0

    tool_calls = stats["tool_calls"]
    # Codex can log outputs for calls made before the checkpoint; cap at 1.0
    tool_success_rate = min(1.0, stats["tool_results"] / tool_calls) if tool_calls else 0.0

    churn = AnalyticsRepository(session).metrics_as_dict(
        "core.edit_churn", "session", session_id
    ).get("churn_ratio")

    return SessionMetrics(
        session_id=session_id,
        metric_version=METRIC_VERSION,
        computed_at=utc_now(),
        total_tokens_in=stats["tokens_in"],
        total_tokens_out=stats["tokens_out"],
        total_tool_calls=tool_calls,
        tool_call_breakdown=stats["tool_breakdown"],
        error_count=stats["error_count"],
        duration_ms=duration_ms,
        tokens_per_minute=tokens_per_minute,
        tool_success_rate=tool_success_rate,
        edit_churn_ratio=float(churn) if churn is not None else None,
    )
