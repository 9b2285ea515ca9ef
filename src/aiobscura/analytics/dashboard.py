"""
Dashboard and project-level statistics.

The dashboard is the at-a-glance header: totals, a 28-day activity strip
(index 0 is 27 days ago, index 27 is today), streaks and the usual
working hour and weekday. Project stats roll the same data up per
working directory.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Optional

from aiobscura.analytics.wrapped import DAY_NAMES
from aiobscura.db.connection import Database
from aiobscura.db.repositories import StatsRepository
from aiobscura.utils.formatting import format_hour_range
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

ACTIVITY_DAYS = 28
DEFAULT_PEAK_HOUR = 12
DEFAULT_BUSIEST_DAY = 1  # Monday


@dataclass
class DashboardStats:
    project_count: int = 0
    session_count: int = 0
    total_tokens: int = 0
    total_duration_secs: int = 0
    daily_activity: list[int] = field(default_factory=lambda: [0] * ACTIVITY_DAYS)
    current_streak: int = 0
    longest_streak: int = 0
    peak_hour: int = DEFAULT_PEAK_HOUR
    busiest_day: int = DEFAULT_BUSIEST_DAY

    @staticmethod
    def calculate_streaks(daily_activity: list[int]) -> tuple[int, int]:
        """Return (current, longest) runs of active days; current must end today."""
        longest = run = 0
        for count in daily_activity:
            run = run + 1 if count > 0 else 0
            longest = max(longest, run)

        current = 0
        for count in reversed(daily_activity):
            if count <= 0:
                break
            current += 1
        return current, longest

    def format_peak_hour(self) -> str:
        return format_hour_range(self.peak_hour)

    def format_busiest_day(self) -> str:
        return DAY_NAMES[self.busiest_day] if 0 <= self.busiest_day < 7 else "Unknown"

    def format_duration(self) -> str:
        return f"{self.total_duration_secs // 3600}h"


def get_dashboard_stats(db: Database, today: Optional[date] = None) -> DashboardStats:
    """Aggregate the dashboard header. Days are UTC calendar days."""
    today = today or utc_now().date()
    first_day = today - timedelta(days=ACTIVITY_DAYS - 1)
    since = datetime(first_day.year, first_day.month, first_day.day, tzinfo=UTC)

    with db.session() as session:
        stats = StatsRepository(session)
        totals = stats.dashboard_totals()
        per_day = stats.daily_message_counts(since)
        hourly = stats.hourly_distribution()
        daily = stats.daily_distribution()

    activity = [0] * ACTIVITY_DAYS
    for day_str, count in per_day.items():
        days_ago = (today - date.fromisoformat(day_str)).days
        if 0 <= days_ago < ACTIVITY_DAYS:
            activity[ACTIVITY_DAYS - 1 - days_ago] = count

    current, longest = DashboardStats.calculate_streaks(activity)
    return DashboardStats(
        project_count=totals["project_count"],
        session_count=totals["session_count"],
        total_tokens=totals["total_tokens"],
        total_duration_secs=totals["total_duration_secs"],
        daily_activity=activity,
        current_streak=current,
        longest_streak=longest,
        peak_hour=max(range(24), key=lambda h: hourly[h]) if any(hourly) else DEFAULT_PEAK_HOUR,
        busiest_day=max(range(7), key=lambda d: daily[d]) if any(daily) else DEFAULT_BUSIEST_DAY,
    )


@dataclass
class ProjectRow:
    """One line of the project list."""

    id: str
    name: Optional[str]
    path: str
    session_count: int
    last_activity: Optional[datetime]
    total_tokens: int


@dataclass
class ProjectStats:
    id: str
    name: Optional[str]
    path: str
    session_count: int
    thread_count: int
    message_count: int
    total_duration_secs: int
    tokens_in: int
    tokens_out: int
    tool_stats: list[tuple[str, int]]
    file_stats: list[tuple[str, int]]
    agents_spawned: int
    plans_created: int
    hourly_distribution: list[int]
    first_session: Optional[datetime]
    last_activity: Optional[datetime]
    sessions_by_assistant: list[tuple[str, int]]

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out

    @property
    def peak_hour(self) -> int:
        return max(range(24), key=lambda h: self.hourly_distribution[h])

    def top_tools(self, limit: int = 5) -> list[tuple[str, int]]:
        return self.tool_stats[:limit]

    def top_files(self, limit: int = 5) -> list[tuple[str, int]]:
        return self.file_stats[:limit]


def list_projects(db: Database) -> list[ProjectRow]:
    with db.session() as session:
        return [ProjectRow(**row) for row in StatsRepository(session).list_projects_with_stats()]


def get_project_stats(db: Database, project_id: str) -> Optional[ProjectStats]:
    with db.session() as session:
        row = StatsRepository(session).project_stats(project_id)
    if row is None:
        logger.debug(f"No project with id {project_id}")
        return None
    return ProjectStats(**row)
