"""First-order session metrics as a plugin (``core.first_order``)."""

from collections import Counter
from typing import Sequence

from aiobscura.analytics.engine import AnalyticsContext, AnalyticsPlugin, MetricOutput
from aiobscura.models.db import AssistantSession, Message, MessageType


class FirstOrderMetrics(AnalyticsPlugin):
    """Token, tool call, error and duration totals over a session's messages."""

    name = "core.first_order"

    def analyze_session(
        self,
        session: AssistantSession,
        messages: Sequence[Message],
        ctx: AnalyticsContext,
    ) -> list[MetricOutput]:
        tokens_in = sum(m.tokens_in or 0 for m in messages)
        tokens_out = sum(m.tokens_out or 0 for m in messages)
        breakdown: Counter[str] = Counter(
            m.tool_name or "unknown"
            for m in messages
            if m.message_type == MessageType.TOOL_CALL
        )
        tool_calls = sum(breakdown.values())
        tool_results = sum(1 for m in messages if m.message_type == MessageType.TOOL_RESULT)
        errors = sum(1 for m in messages if m.message_type == MessageType.ERROR)

        duration_ms = 0
        if messages:
            timestamps = [m.emitted_at for m in messages]
            duration_ms = int((max(timestamps) - min(timestamps)).total_seconds() * 1000)

        success_rate = tool_results / tool_calls if tool_calls else 0.0

        sid = session.id
        return [
            MetricOutput.session(sid, "tokens_in", tokens_in),
            MetricOutput.session(sid, "tokens_out", tokens_out),
            MetricOutput.session(sid, "tokens_total", tokens_in + tokens_out),
            MetricOutput.session(sid, "tool_call_count", tool_calls),
            MetricOutput.session(sid, "tool_call_breakdown", dict(breakdown.most_common())),
            MetricOutput.session(sid, "error_count", errors),
            MetricOutput.session(sid, "duration_ms", duration_ms),
            MetricOutput.session(sid, "tool_success_rate", success_rate),
        ]
