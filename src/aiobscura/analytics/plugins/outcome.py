"""
Coarse session outcome (``core.outcome``).

A session counts as successful when tools produced results and nothing
was logged as an error. This is a heuristic until outcomes are modeled
explicitly.
"""

from typing import Sequence

from aiobscura.analytics.engine import AnalyticsContext, AnalyticsPlugin, MetricOutput
from aiobscura.models.db import AssistantSession, Message, MessageType


def classify_outcome(tool_results: int, errors: int) -> tuple[bool, str]:
    """Return (success, evidence type) for the given counts."""
    if tool_results > 0 and errors == 0:
        return True, "tool_result_no_errors"
    if tool_results > 0:
        return False, "tool_result_with_errors"
    if errors > 0:
        return False, "errors_only"
    return False, "insufficient_signal"


class OutcomeMetrics(AnalyticsPlugin):
    name = "core.outcome"

    def analyze_session(
        self,
        session: AssistantSession,
        messages: Sequence[Message],
        ctx: AnalyticsContext,
    ) -> list[MetricOutput]:
        errors = sum(1 for m in messages if m.message_type == MessageType.ERROR)
        tool_results = sum(1 for m in messages if m.message_type == MessageType.TOOL_RESULT)
        success, evidence = classify_outcome(tool_results, errors)
        return [
            MetricOutput.session(session.id, "outcome_success", success),
            MetricOutput.session(session.id, "outcome_evidence_type", evidence),
            MetricOutput.session(
                session.id, "outcome_notes", f"tool_results={tool_results} errors={errors}"
            ),
        ]
