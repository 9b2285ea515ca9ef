"""Formatting helpers shared by the CLI and reports."""

import os
from datetime import datetime
from typing import Optional

from aiobscura.utils.timestamps import ensure_utc, utc_now


def format_relative_time(ts: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format a timestamp relative to now (e.g. "2m ago")."""
    if ts is None:
        return "-"
    now = now or utc_now()
    seconds = int((now - ensure_utc(ts)).total_seconds())

    if seconds < 0:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    if seconds < 7 * 86400:
        return f"{seconds // 86400}d ago"
    return ensure_utc(ts).strftime("%b %d")


def format_tokens(count: int) -> str:
    """Compact token count: 950, 14.2K, 3.1M, 1.2B."""
    if count >= 1_000_000_000:
        return f"{count / 1_000_000_000:.1f}B"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def format_duration(total_secs: int) -> str:
    """Hours and minutes, e.g. "312h 45m" or "45m"."""
    secs = max(total_secs, 0)
    hours = secs // 3600
    minutes = (secs % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_hour_range(hour: int) -> str:
    """Display a one-hour bucket, e.g. 14 -> "2pm-3pm"."""

    def label(h: int) -> str:
        if h == 0:
            return "12am"
        if h < 12:
            return f"{h}am"
        if h == 12:
            return "12pm"
        return f"{h - 12}pm"

    return f"{label(hour % 24)}-{label((hour + 1) % 24)}"


def shorten_path(path: str, home: Optional[str] = None) -> str:
    """Abbreviate the home directory prefix as ``~``."""
    home = home or os.getenv("HOME")
    if home and path.startswith(home.rstrip("/") + "/"):
        return "~/" + path[len(home.rstrip("/")) + 1 :]
    return path
