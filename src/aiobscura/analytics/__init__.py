"""
Analytics for aiobscura.

- ``engine``: plugin framework; plugins read canonical rows and write
  ``plugin_metrics`` plus a ``plugin_runs`` audit row per execution
- ``plugins``: built-in plugins (first-order, edit churn, outcome)
- ``first_order``: SQL-computed session metrics cached in ``session_metrics``
- ``wrapped`` and ``personality``: year/month in review
- ``dashboard``: header stats and per-project rollups
- ``metrics_registry``: descriptors for metric discovery
"""

from aiobscura.analytics.dashboard import (
    DashboardStats,
    ProjectRow,
    ProjectStats,
    get_dashboard_stats,
    get_project_stats,
    list_projects,
)
from aiobscura.analytics.engine import (
    METRIC_VERSION,
    AnalyticsContext,
    AnalyticsEngine,
    AnalyticsPlugin,
    AnalyticsTrigger,
    MetricOutput,
    PluginRunResult,
    SessionAnalytics,
    ThreadAnalytics,
)
from aiobscura.analytics.personality import Personality, UsageProfile
from aiobscura.analytics.plugins import create_default_engine
from aiobscura.analytics.wrapped import (
    WrappedCache,
    WrappedConfig,
    WrappedPeriod,
    WrappedStats,
    generate_wrapped,
)

__all__ = [
    "METRIC_VERSION",
    "AnalyticsContext",
    "AnalyticsEngine",
    "AnalyticsPlugin",
    "AnalyticsTrigger",
    "DashboardStats",
    "MetricOutput",
    "Personality",
    "PluginRunResult",
    "ProjectRow",
    "ProjectStats",
    "SessionAnalytics",
    "ThreadAnalytics",
    "UsageProfile",
    "WrappedCache",
    "WrappedConfig",
    "WrappedPeriod",
    "WrappedStats",
    "create_default_engine",
    "generate_wrapped",
    "get_dashboard_stats",
    "get_project_stats",
    "list_projects",
]
