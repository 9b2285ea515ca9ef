"""Built-in analytics plugins."""

from typing import Optional

from aiobscura.analytics.engine import AnalyticsEngine
from aiobscura.analytics.plugins.edit_churn import EditChurnAnalyzer
from aiobscura.analytics.plugins.first_order import FirstOrderMetrics
from aiobscura.analytics.plugins.outcome import OutcomeMetrics
from aiobscura.config import AnalyticsSettings


def create_default_engine(settings: Optional[AnalyticsSettings] = None) -> AnalyticsEngine:
    """Engine with every built-in plugin registered."""
    engine = AnalyticsEngine(settings)
    engine.register(FirstOrderMetrics())
    engine.register(EditChurnAnalyzer())
    engine.register(OutcomeMetrics())
    return engine


__all__ = [
    "EditChurnAnalyzer",
    "FirstOrderMetrics",
    "OutcomeMetrics",
    "create_default_engine",
]
