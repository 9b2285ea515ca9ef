"""
Wrapped: a year or month in review.

Every figure is attributed to the period in which its session started.
The report is assembled from read-only aggregate queries in
``StatsRepository`` and cached in memory per (period, config).
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Optional

from aiobscura.analytics.personality import Personality, UsageProfile
from aiobscura.db.connection import Database
from aiobscura.db.repositories import StatsRepository
from aiobscura.utils.formatting import format_duration, format_hour_range, format_tokens
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

TOOL_DESCRIPTIONS = {
    "read": "Your trusty magnifying glass",
    "edit": "The surgeon's scalpel",
    "write": "The creator's pen",
    "bash": "Terminal warrior",
    "grep": "Finding needles in haystacks",
    "glob": "Pattern hunter",
    "task": "Delegation master",
    "webfetch": "Web explorer",
    "websearch": "Knowledge seeker",
    "todowrite": "The organizer",
    "multiedit": "Bulk editor extraordinaire",
    "notebookedit": "Jupyter juggler",
}


def witty_description(tool_name: str) -> str:
    return TOOL_DESCRIPTIONS.get(tool_name.lower(), "A trusty companion")


@dataclass(frozen=True)
class WrappedPeriod:
    """A calendar year, or one month of it when ``month`` is set."""

    year: int
    month: Optional[int] = None

    def __post_init__(self) -> None:
        if self.month is not None and not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def current_year(cls) -> "WrappedPeriod":
        return cls(utc_now().year)

    @classmethod
    def current_month(cls) -> "WrappedPeriod":
        now = utc_now()
        return cls(now.year, now.month)

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month or 1, 1, tzinfo=UTC)

    @property
    def end(self) -> datetime:
        if self.month is None:
            return datetime(self.year + 1, 1, 1, tzinfo=UTC)
        if self.month == 12:
            return datetime(self.year + 1, 1, 1, tzinfo=UTC)
        return datetime(self.year, self.month + 1, 1, tzinfo=UTC)

    def previous(self) -> "WrappedPeriod":
        if self.month is None:
            return WrappedPeriod(self.year - 1)
        if self.month == 1:
            return WrappedPeriod(self.year - 1, 12)
        return WrappedPeriod(self.year, self.month - 1)

    @property
    def display_name(self) -> str:
        if self.month is None:
            return str(self.year)
        return f"{MONTH_NAMES[self.month - 1]} {self.year}"


@dataclass(frozen=True)
class WrappedConfig:
    fun_mode: bool = True
    include_trends: bool = True
    top_tools_count: int = 5
    top_projects_count: int = 5

    @classmethod
    def serious(cls) -> "WrappedConfig":
        return cls(fun_mode=False)


@dataclass
class TotalStats:
    sessions: int = 0
    total_duration_secs: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    tool_calls: int = 0
    plans: int = 0
    agents_spawned: int = 0
    files_modified: int = 0
    unique_projects: int = 0

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out

    def tokens_display(self) -> str:
        return format_tokens(self.total_tokens)

    def duration_display(self) -> str:
        return format_duration(self.total_duration_secs)


@dataclass
class ToolRanking:
    name: str
    count: int
    description: Optional[str] = None


@dataclass
class MarathonSession:
    """Longest same-day stretch of a single session."""

    session_id: str
    duration_secs: int
    date: Optional[datetime]
    project_name: Optional[str]
    tool_calls: int
    tokens: int
    files_modified: int

    def duration_display(self) -> str:
        return format_duration(self.duration_secs)

    def date_display(self) -> str:
        return self.date.strftime("%b %d") if self.date else "-"


@dataclass
class TimePatterns:
    hourly_distribution: list[int] = field(default_factory=lambda: [0] * 24)
    daily_distribution: list[int] = field(default_factory=lambda: [0] * 7)
    peak_hour: int = 0
    busiest_day: int = 0
    quietest_day: int = 0
    marathon_session: Optional[MarathonSession] = None

    @staticmethod
    def day_name(day: int) -> str:
        return DAY_NAMES[day] if 0 <= day < 7 else "Unknown"

    @staticmethod
    def hour_display(hour: int) -> str:
        return format_hour_range(hour)

    def is_night_owl(self) -> bool:
        total = sum(self.hourly_distribution)
        night = sum(self.hourly_distribution[22:24]) + sum(self.hourly_distribution[0:4])
        return total > 0 and night / total > 0.3

    def is_early_bird(self) -> bool:
        total = sum(self.hourly_distribution)
        return total > 0 and sum(self.hourly_distribution[5:9]) / total > 0.3


@dataclass
class ProjectRanking:
    name: str
    sessions: int
    tokens: int
    duration_secs: int
    files_modified: int
    first_session: Optional[datetime] = None


@dataclass
class StreakStats:
    current_streak_days: int = 0
    longest_streak_days: int = 0
    longest_streak_start: Optional[datetime] = None
    longest_streak_end: Optional[datetime] = None
    active_days: int = 0
    total_days: int = 0

    @property
    def activity_percentage(self) -> float:
        if self.total_days == 0:
            return 0.0
        return self.active_days / self.total_days * 100.0


def calc_delta(current: int, previous: int) -> float:
    """Percent change; growth from zero is shown as 100%."""
    if previous == 0:
        return 0.0 if current == 0 else 100.0
    return (current - previous) / previous * 100.0


def format_delta(delta: float) -> str:
    return f"+{delta:.0f}%" if delta >= 0 else f"{delta:.0f}%"


@dataclass
class TrendComparison:
    sessions_delta_pct: float
    tokens_delta_pct: float
    tools_delta_pct: float
    duration_delta_pct: float
    previous_totals: TotalStats

    @classmethod
    def between(cls, current: TotalStats, previous: TotalStats) -> "TrendComparison":
        return cls(
            sessions_delta_pct=calc_delta(current.sessions, previous.sessions),
            tokens_delta_pct=calc_delta(current.total_tokens, previous.total_tokens),
            tools_delta_pct=calc_delta(current.tool_calls, previous.tool_calls),
            duration_delta_pct=calc_delta(
                current.total_duration_secs, previous.total_duration_secs
            ),
            previous_totals=previous,
        )


@dataclass
class WrappedStats:
    period: WrappedPeriod
    totals: TotalStats
    top_tools: list[ToolRanking]
    time_patterns: TimePatterns
    projects: list[ProjectRanking]
    streaks: StreakStats
    personality: Optional[Personality] = None
    trends: Optional[TrendComparison] = None


def compute_streaks(
    active_dates: list[str],
    start: datetime,
    end: datetime,
    today: Optional[date] = None,
) -> StreakStats:
    """
    Streaks over the sorted ``YYYY-MM-DD`` strings of active days.

    The current streak counts back from ``today``; it is 0 unless today
    itself was active.
    """
    days = [date.fromisoformat(d) for d in active_dates]
    stats = StreakStats(active_days=len(days), total_days=(end - start).days)

    run_start: Optional[date] = None
    run_length = 0
    prev: Optional[date] = None
    for day in days:
        if prev is not None and (day - prev).days == 1:
            run_length += 1
        else:
            run_start, run_length = day, 1
        if run_length > stats.longest_streak_days:
            stats.longest_streak_days = run_length
            stats.longest_streak_start = datetime.combine(run_start, datetime.min.time(), UTC)
            stats.longest_streak_end = datetime(day.year, day.month, day.day, 23, 59, 59, tzinfo=UTC)
        prev = day

    today = today or utc_now().date()
    for day in reversed(days):
        if (today - day).days == stats.current_streak_days:
            stats.current_streak_days += 1
        else:
            break
    return stats


def _index_of_max(values: list[int]) -> int:
    return max(range(len(values)), key=lambda i: values[i]) if values else 0


def _quietest(values: list[int]) -> int:
    active = [i for i, v in enumerate(values) if v > 0]
    return min(active, key=lambda i: values[i]) if active else 0


def generate_wrapped(
    db: Database,
    period: WrappedPeriod,
    config: Optional[WrappedConfig] = None,
    today: Optional[date] = None,
) -> WrappedStats:
    """
    Build the wrapped report for ``period``.

    A period without sessions yields zero totals, and personality and
    trends are left out.
    """
    config = config or WrappedConfig()
    start, end = period.start, period.end

    with db.session() as session:
        stats = StatsRepository(session)
        totals = TotalStats(**stats.wrapped_totals(start, end))
        tools = stats.wrapped_tool_rankings(start, end, config.top_tools_count)
        hourly = stats.hourly_distribution(start, end)
        daily = stats.daily_distribution(start, end)
        projects = stats.wrapped_project_rankings(start, end, config.top_projects_count)
        marathon = stats.wrapped_marathon_session(start, end)
        active_dates = stats.active_dates(start, end)

        personality = None
        if config.fun_mode and totals.sessions > 0:
            profile = UsageProfile.from_counts(stats.wrapped_usage_inputs(start, end))
            personality = profile.classify()

        trends = None
        if config.include_trends and totals.sessions > 0:
            prev = period.previous()
            previous = TotalStats(**stats.wrapped_totals(prev.start, prev.end))
            if previous.sessions > 0:
                trends = TrendComparison.between(totals, previous)

    return WrappedStats(
        period=period,
        totals=totals,
        top_tools=[
            ToolRanking(name, count, witty_description(name) if config.fun_mode else None)
            for name, count in tools
        ],
        time_patterns=TimePatterns(
            hourly_distribution=hourly,
            daily_distribution=daily,
            peak_hour=_index_of_max(hourly),
            busiest_day=_index_of_max(daily),
            quietest_day=_quietest(daily),
            marathon_session=MarathonSession(**marathon) if marathon else None,
        ),
        projects=[ProjectRanking(**row) for row in projects],
        streaks=compute_streaks(active_dates, start, end, today=today),
        personality=personality,
        trends=trends,
    )


class WrappedCache:
    """In-memory cache of wrapped reports keyed by period and config."""

    def __init__(self, db: Database, ttl: timedelta = timedelta(minutes=5)):
        self.db = db
        self.ttl = ttl
        self._entries: dict[tuple[WrappedPeriod, WrappedConfig], tuple[datetime, WrappedStats]] = {}
        self._lock = threading.Lock()

    def get(self, period: WrappedPeriod, config: Optional[WrappedConfig] = None) -> WrappedStats:
        config = config or WrappedConfig()
        key = (period, config)
        now = utc_now()
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and now - cached[0] < self.ttl:
                logger.debug(f"Wrapped cache hit for {period.display_name}")
                return cached[1]

        logger.info(f"Generating wrapped report for {period.display_name}")
        stats = generate_wrapped(self.db, period, config)
        with self._lock:
            self._entries[key] = (now, stats)
        return stats

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()
