"""
Descriptors for every metric the built-in plugins produce.

Used by ``aiobscura metrics`` for listing and search. Search is a plain
substring scorer (name 3, summary 2, description 1); a caller can pass
its own scorer to ``search_metrics``.
"""

import enum
from dataclasses import dataclass
from typing import Callable, Optional


class MetricValueType(str, enum.Enum):
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class MetricDescriptor:
    plugin: str
    entity_type: str
    name: str
    value_type: MetricValueType
    summary: str
    description: str


@dataclass(frozen=True)
class MetricSearchResult:
    metric: MetricDescriptor
    score: float


def _m(plugin: str, name: str, value_type: MetricValueType, summary: str, description: str):
    return MetricDescriptor(plugin, "session", name, value_type, summary, description)


INT = MetricValueType.INTEGER
FLOAT = MetricValueType.FLOAT
JSON = MetricValueType.JSON

FIRST_ORDER_METRICS = (
    _m("core.first_order", "tokens_in", INT, "Total input tokens for the session.",
       "Sum of input tokens across all messages in the session."),
    _m("core.first_order", "tokens_out", INT, "Total output tokens for the session.",
       "Sum of output tokens across all messages in the session."),
    _m("core.first_order", "tokens_total", INT, "Total tokens for the session.",
       "Sum of input and output tokens across the session."),
    _m("core.first_order", "tool_call_count", INT, "Total tool calls in the session.",
       "Count of tool_call messages in the session."),
    _m("core.first_order", "tool_call_breakdown", JSON, "Tool call counts by tool name.",
       "JSON object mapping tool name to call count."),
    _m("core.first_order", "error_count", INT, "Total errors in the session.",
       "Count of messages classified as error events."),
    _m("core.first_order", "duration_ms", INT, "Session duration in milliseconds.",
       "Elapsed time between first and last message in the session."),
    _m("core.first_order", "tool_success_rate", FLOAT, "Tool success rate for the session.",
       "Ratio of tool results to tool calls."),
)

EDIT_CHURN_METRICS = (
    _m("core.edit_churn", "edit_count", INT, "File edits in the session.",
       "Edit, Write and MultiEdit calls, excluding planning documents."),
    _m("core.edit_churn", "unique_files", INT, "Distinct files modified.",
       "Number of different file paths touched by edit calls."),
    _m("core.edit_churn", "churn_ratio", FLOAT, "Share of edits that revisit a file.",
       "(edit_count - unique_files) / edit_count; 0 when nothing was edited."),
    _m("core.edit_churn", "file_edit_counts", JSON, "Edit count per file.",
       "JSON object mapping file path to edit count, most edited first."),
    _m("core.edit_churn", "high_churn_files", JSON, "Files edited unusually often.",
       "Files at or above the session's high churn threshold."),
    _m("core.edit_churn", "high_churn_threshold", FLOAT, "Threshold for high churn.",
       "max(3, median + 2 * stddev) of per-file edit counts, 3 below five files."),
    _m("core.edit_churn", "burst_edit_files", JSON, "Files with rapid re-edits.",
       "JSON object mapping file path to bursts of 3 edits within 2 minutes."),
    _m("core.edit_churn", "burst_edit_count", INT, "Rapid re-edit bursts.",
       "Total number of edit bursts across files."),
    _m("core.edit_churn", "lines_added", INT, "Lines added by edits.",
       "Heuristic line additions from edit and write payloads."),
    _m("core.edit_churn", "lines_removed", INT, "Lines removed by edits.",
       "Heuristic line removals from edit payloads."),
    _m("core.edit_churn", "lines_changed", INT, "Lines added plus removed.",
       "Sum of lines_added and lines_removed."),
    _m("core.edit_churn", "edits_by_extension", JSON, "Edit count per file extension.",
       "JSON object mapping extension (or no_ext) to edit count."),
    _m("core.edit_churn", "first_try_files", INT, "Files edited exactly once.",
       "Files that needed no rework after the first edit."),
    _m("core.edit_churn", "first_try_rate", FLOAT, "Share of files edited once.",
       "first_try_files / unique_files."),
)

OUTCOME_METRICS = (
    _m("core.outcome", "outcome_success", MetricValueType.BOOLEAN,
       "Whether the session looks successful.",
       "True when tools returned results and no errors were logged."),
    _m("core.outcome", "outcome_evidence_type", MetricValueType.TEXT,
       "Evidence behind the outcome.",
       "One of tool_result_no_errors, tool_result_with_errors, errors_only, "
       "insufficient_signal."),
    _m("core.outcome", "outcome_notes", MetricValueType.TEXT, "Outcome counts.",
       "Tool result and error counts the outcome was derived from."),
)

ALL_METRICS = FIRST_ORDER_METRICS + EDIT_CHURN_METRICS + OUTCOME_METRICS

Scorer = Callable[[MetricDescriptor, str], Optional[float]]


def list_metrics() -> list[MetricDescriptor]:
    return list(ALL_METRICS)


def list_metrics_for_plugin(plugin: str) -> list[MetricDescriptor]:
    return [m for m in ALL_METRICS if m.plugin == plugin]


def list_metrics_for_entity(entity_type: str) -> list[MetricDescriptor]:
    return [m for m in ALL_METRICS if m.entity_type == entity_type]


def fallback_score(metric: MetricDescriptor, query: str) -> Optional[float]:
    query = query.strip().lower()
    if not query:
        return None
    score = 0.0
    if query in metric.name.lower():
        score += 3.0
    if query in metric.summary.lower():
        score += 2.0
    if query in metric.description.lower():
        score += 1.0
    return score or None


def search_metrics(query: str, scorer: Scorer = fallback_score) -> list[MetricSearchResult]:
    """Matching metrics, best score first; ties keep registry order."""
    results = []
    for metric in ALL_METRICS:
        score = scorer(metric, query)
        if score is not None:
            results.append(MetricSearchResult(metric, score))
    return sorted(results, key=lambda r: -r.score)
