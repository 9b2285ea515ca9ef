"""
Read-only aggregate queries for analytics, wrapped reports and dashboards.

All period queries attribute a message to the period in which its session
started, so a session is never split across two reports.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from aiobscura.utils.timestamps import from_db_timestamp, to_db_timestamp

EDIT_TOOLS_SQL = "('Edit', 'Write', 'MultiEdit')"

SESSION_DURATION_SQL = """
    CASE WHEN s.last_activity_at IS NOT NULL
    THEN MAX(0, (julianday(s.last_activity_at) - julianday(s.started_at)) * 86400)
    ELSE 0 END
"""


def _ts(value: Optional[str]) -> Optional[datetime]:
    return from_db_timestamp(value) if value else None


class StatsRepository:
    """Aggregate statistics computed by SQL over the canonical tables."""

    def __init__(self, session: Session):
        self.session = session

    def _scalar(self, sql: str, **params: Any) -> Any:
        return self.session.execute(text(sql), params).scalar()

    def _rows(self, sql: str, **params: Any) -> list[Any]:
        return list(self.session.execute(text(sql), params).all())

    @staticmethod
    def _range(start: datetime, end: datetime) -> dict[str, str]:
        return {"start": to_db_timestamp(start), "end": to_db_timestamp(end)}

    # ------------------------------------------------------------------
    # Session level
    # ------------------------------------------------------------------

    def session_first_order(self, session_id: str) -> dict[str, Any]:
        """
        Token, tool and error aggregates for one session.

        Returns:
            Dict with tokens_in, tokens_out, tool_calls, tool_results,
            error_count, tool_breakdown, first_at and last_at
        """
        row = self.session.execute(
            text(
                """
                SELECT
                    COALESCE(SUM(tokens_in), 0),
                    COALESCE(SUM(tokens_out), 0),
                    SUM(CASE WHEN message_type = 'tool_call' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN message_type = 'tool_result' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN message_type = 'error' THEN 1 ELSE 0 END),
                    MIN(emitted_at),
                    MAX(emitted_at)
                FROM messages
                WHERE session_id = :session_id
                """
            ),
            {"session_id": session_id},
        ).one()
        breakdown = {
            name: count
            for name, count in self._rows(
                """
                SELECT COALESCE(tool_name, 'unknown'), COUNT(*)
                FROM messages
                WHERE session_id = :session_id AND message_type = 'tool_call'
                GROUP BY COALESCE(tool_name, 'unknown')
                ORDER BY COUNT(*) DESC
                """,
                session_id=session_id,
            )
        }
        return {
            "tokens_in": int(row[0] or 0),
            "tokens_out": int(row[1] or 0),
            "tool_calls": int(row[2] or 0),
            "tool_results": int(row[3] or 0),
            "error_count": int(row[4] or 0),
            "tool_breakdown": breakdown,
            "first_at": _ts(row[5]),
            "last_at": _ts(row[6]),
        }

    def session_last_message_at(self, session_id: str) -> Optional[datetime]:
        return _ts(
            self._scalar(
                "SELECT MAX(emitted_at) FROM messages WHERE session_id = :session_id",
                session_id=session_id,
            )
        )

    def thread_tool_stats(self, thread_id: str) -> list[tuple[str, int]]:
        """Tool call counts per tool name, most used first."""
        return [
            (name, count)
            for name, count in self._rows(
                """
                SELECT tool_name, COUNT(*) AS cnt
                FROM messages
                WHERE thread_id = :thread_id
                  AND message_type = 'tool_call'
                  AND tool_name IS NOT NULL
                GROUP BY tool_name
                ORDER BY cnt DESC, tool_name
                """,
                thread_id=thread_id,
            )
        ]

    def thread_file_stats(self, thread_id: str) -> list[tuple[str, int]]:
        """Edit/Write/MultiEdit counts per ``file_path``, most edited first."""
        return [
            (path, count)
            for path, count in self._rows(
                f"""
                SELECT json_extract(tool_input, '$.file_path') AS file_path, COUNT(*) AS cnt
                FROM messages
                WHERE thread_id = :thread_id
                  AND message_type = 'tool_call'
                  AND tool_name IN {EDIT_TOOLS_SQL}
                  AND json_extract(tool_input, '$.file_path') IS NOT NULL
                GROUP BY file_path
                ORDER BY cnt DESC, file_path
                """,
                thread_id=thread_id,
            )
        ]

    def sessions_inactive_since(
        self, cutoff: datetime, not_analyzed_after: bool = True
    ) -> list[str]:
        """
        Sessions whose last activity is older than ``cutoff``.

        With ``not_analyzed_after``, sessions whose cached metrics are newer
        than their last message are left out.
        """
        sql = """
            SELECT s.id
            FROM sessions s
            LEFT JOIN session_metrics sm ON sm.session_id = s.id
            WHERE s.last_activity_at IS NOT NULL
              AND s.last_activity_at < :cutoff
        """
        if not_analyzed_after:
            sql += " AND (sm.computed_at IS NULL OR sm.computed_at < s.last_activity_at)"
        sql += " ORDER BY s.last_activity_at"
        return [row[0] for row in self._rows(sql, cutoff=to_db_timestamp(cutoff))]

    # ------------------------------------------------------------------
    # Global counts
    # ------------------------------------------------------------------

    def total_counts(self) -> dict[str, int]:
        row = self.session.execute(
            text(
                """
                SELECT
                    (SELECT COUNT(*) FROM projects),
                    (SELECT COUNT(*) FROM sessions),
                    (SELECT COUNT(*) FROM threads),
                    (SELECT COUNT(*) FROM messages),
                    (SELECT COUNT(*) FROM plans)
                """
            )
        ).one()
        return {
            "projects": row[0],
            "sessions": row[1],
            "threads": row[2],
            "messages": row[3],
            "plans": row[4],
        }

    # ------------------------------------------------------------------
    # Wrapped (period) queries
    # ------------------------------------------------------------------

    def wrapped_totals(self, start: datetime, end: datetime) -> dict[str, int]:
        params = self._range(start, end)
        sessions, duration = self.session.execute(
            text(
                f"""
                SELECT COUNT(*), COALESCE(SUM({SESSION_DURATION_SQL}), 0)
                FROM sessions s
                WHERE s.started_at >= :start AND s.started_at < :end
                """
            ),
            params,
        ).one()
        tokens_in, tokens_out, tool_calls = self.session.execute(
            text(
                """
                SELECT
                    COALESCE(SUM(m.tokens_in), 0),
                    COALESCE(SUM(m.tokens_out), 0),
                    COALESCE(SUM(CASE WHEN m.message_type = 'tool_call' THEN 1 ELSE 0 END), 0)
                FROM messages m
                JOIN sessions s ON m.session_id = s.id
                WHERE s.started_at >= :start AND s.started_at < :end
                """
            ),
            params,
        ).one()
        plans = self._scalar(
            """
            SELECT COUNT(DISTINCT sp.plan_slug)
            FROM session_plans sp
            JOIN sessions s ON sp.session_id = s.id
            WHERE s.started_at >= :start AND s.started_at < :end
            """,
            **params,
        )
        agents = self._scalar(
            """
            SELECT COUNT(*)
            FROM threads t
            JOIN sessions s ON t.session_id = s.id
            WHERE t.thread_type = 'agent'
              AND s.started_at >= :start AND s.started_at < :end
            """,
            **params,
        )
        files = self._scalar(
            f"""
            SELECT COUNT(DISTINCT json_extract(m.tool_input, '$.file_path'))
            FROM messages m
            JOIN sessions s ON m.session_id = s.id
            WHERE s.started_at >= :start AND s.started_at < :end
              AND m.message_type = 'tool_call'
              AND m.tool_name IN {EDIT_TOOLS_SQL}
              AND json_extract(m.tool_input, '$.file_path') IS NOT NULL
            """,
            **params,
        )
        projects = self._scalar(
            """
            SELECT COUNT(DISTINCT project_id)
            FROM sessions
            WHERE started_at >= :start AND started_at < :end
              AND project_id IS NOT NULL
            """,
            **params,
        )
        return {
            "sessions": int(sessions or 0),
            "total_duration_secs": int(duration or 0),
            "tokens_in": int(tokens_in or 0),
            "tokens_out": int(tokens_out or 0),
            "tool_calls": int(tool_calls or 0),
            "plans": int(plans or 0),
            "agents_spawned": int(agents or 0),
            "files_modified": int(files or 0),
            "unique_projects": int(projects or 0),
        }

    def wrapped_tool_rankings(
        self, start: datetime, end: datetime, limit: int
    ) -> list[tuple[str, int]]:
        return [
            (name, count)
            for name, count in self._rows(
                """
                SELECT m.tool_name, COUNT(*) AS cnt
                FROM messages m
                JOIN sessions s ON m.session_id = s.id
                WHERE s.started_at >= :start AND s.started_at < :end
                  AND m.message_type = 'tool_call'
                  AND m.tool_name IS NOT NULL
                GROUP BY m.tool_name
                ORDER BY cnt DESC, m.tool_name
                LIMIT :limit
                """,
                limit=limit,
                **self._range(start, end),
            )
        ]

    def _distribution(
        self, fmt: str, size: int, start: Optional[datetime], end: Optional[datetime]
    ) -> list[int]:
        distribution = [0] * size
        if start is not None and end is not None:
            rows = self._rows(
                f"""
                SELECT CAST(strftime('{fmt}', m.emitted_at) AS INTEGER) AS bucket, COUNT(*)
                FROM messages m
                JOIN sessions s ON m.session_id = s.id
                WHERE s.started_at >= :start AND s.started_at < :end
                GROUP BY bucket
                """,
                **self._range(start, end),
            )
        else:
            rows = self._rows(
                f"""
                SELECT CAST(strftime('{fmt}', emitted_at) AS INTEGER) AS bucket, COUNT(*)
                FROM messages
                GROUP BY bucket
                """
            )
        for bucket, count in rows:
            if bucket is not None and 0 <= bucket < size:
                distribution[bucket] = count
        return distribution

    def hourly_distribution(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[int]:
        """Message counts per UTC hour (0-23)."""
        return self._distribution("%H", 24, start, end)

    def daily_distribution(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[int]:
        """Message counts per weekday, 0 = Sunday."""
        return self._distribution("%w", 7, start, end)

    def wrapped_project_rankings(
        self, start: datetime, end: datetime, limit: int
    ) -> list[dict[str, Any]]:
        rows = self._rows(
            f"""
            WITH session_tokens AS (
                SELECT m.session_id,
                       SUM(COALESCE(m.tokens_in, 0) + COALESCE(m.tokens_out, 0)) AS tokens
                FROM messages m
                GROUP BY m.session_id
            ),
            session_files AS (
                SELECT m.session_id,
                       json_extract(m.tool_input, '$.file_path') AS file_path
                FROM messages m
                WHERE m.message_type = 'tool_call'
                  AND m.tool_name IN {EDIT_TOOLS_SQL}
                  AND json_extract(m.tool_input, '$.file_path') IS NOT NULL
            )
            SELECT
                COALESCE(p.name, '(no project)') AS name,
                COUNT(DISTINCT s.id) AS sessions,
                COALESCE(SUM(st.tokens), 0) AS tokens,
                COALESCE(SUM({SESSION_DURATION_SQL}), 0) AS duration,
                (SELECT COUNT(DISTINCT sf.file_path)
                   FROM session_files sf
                   JOIN sessions s2 ON sf.session_id = s2.id
                  WHERE COALESCE(s2.project_id, 'none') = COALESCE(p.id, 'none')
                    AND s2.started_at >= :start AND s2.started_at < :end) AS files,
                MIN(s.started_at) AS first_session
            FROM sessions s
            LEFT JOIN projects p ON s.project_id = p.id
            LEFT JOIN session_tokens st ON st.session_id = s.id
            WHERE s.started_at >= :start AND s.started_at < :end
            GROUP BY COALESCE(p.id, 'none')
            ORDER BY tokens DESC, sessions DESC, name
            LIMIT :limit
            """,
            limit=limit,
            **self._range(start, end),
        )
        return [
            {
                "name": name,
                "sessions": int(sessions),
                "tokens": int(tokens or 0),
                "duration_secs": int(duration or 0),
                "files_modified": int(files or 0),
                "first_session": _ts(first),
            }
            for name, sessions, tokens, duration, files, first in rows
        ]

    def wrapped_marathon_session(
        self, start: datetime, end: datetime
    ) -> Optional[dict[str, Any]]:
        """
        Longest single-day stretch of one session.

        Measured from first to last message on the same UTC day, so sessions
        left open overnight do not dominate.
        """
        rows = self._rows(
            f"""
            WITH daily AS (
                SELECT
                    s.id AS session_id,
                    p.name AS project_name,
                    date(m.emitted_at) AS day,
                    MIN(m.emitted_at) AS first_msg,
                    (julianday(MAX(m.emitted_at)) - julianday(MIN(m.emitted_at))) * 86400
                        AS duration_secs,
                    SUM(CASE WHEN m.message_type = 'tool_call' THEN 1 ELSE 0 END)
                        AS tool_calls,
                    COALESCE(SUM(COALESCE(m.tokens_in, 0) + COALESCE(m.tokens_out, 0)), 0)
                        AS tokens,
                    COUNT(DISTINCT CASE
                        WHEN m.message_type = 'tool_call' AND m.tool_name IN {EDIT_TOOLS_SQL}
                        THEN json_extract(m.tool_input, '$.file_path') END) AS files
                FROM messages m
                JOIN sessions s ON m.session_id = s.id
                LEFT JOIN projects p ON s.project_id = p.id
                WHERE m.emitted_at >= :start AND m.emitted_at < :end
                GROUP BY s.id, date(m.emitted_at)
                HAVING COUNT(*) > 1
            )
            SELECT session_id, duration_secs, first_msg, project_name, tool_calls,
                   tokens, files
            FROM daily
            ORDER BY duration_secs DESC
            LIMIT 1
            """,
            **self._range(start, end),
        )
        if not rows:
            return None
        session_id, duration, first_msg, project_name, tool_calls, tokens, files = rows[0]
        return {
            "session_id": session_id,
            "duration_secs": int(duration or 0),
            "date": _ts(first_msg),
            "project_name": project_name,
            "tool_calls": int(tool_calls or 0),
            "tokens": int(tokens or 0),
            "files_modified": int(files or 0),
        }

    def active_dates(self, start: datetime, end: datetime) -> list[str]:
        """Distinct UTC dates (YYYY-MM-DD) on which a session started."""
        return [
            row[0]
            for row in self._rows(
                """
                SELECT DISTINCT date(started_at) AS day
                FROM sessions
                WHERE started_at >= :start AND started_at < :end
                ORDER BY day
                """,
                **self._range(start, end),
            )
        ]

    def wrapped_usage_inputs(self, start: datetime, end: datetime) -> dict[str, Any]:
        """Raw counts the personality profile is derived from."""
        params = self._range(start, end)
        read_count, edit_count, bash_count, total_tools = self.session.execute(
            text(
                f"""
                SELECT
                    COALESCE(SUM(CASE WHEN m.tool_name = 'Read' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN m.tool_name IN {EDIT_TOOLS_SQL} THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN m.tool_name = 'Bash' THEN 1 ELSE 0 END), 0),
                    COUNT(*)
                FROM messages m
                JOIN sessions s ON m.session_id = s.id
                WHERE s.started_at >= :start AND s.started_at < :end
                  AND m.message_type = 'tool_call'
                """
            ),
            params,
        ).one()
        avg_duration = self._scalar(
            """
            SELECT AVG((julianday(last_activity_at) - julianday(started_at)) * 86400)
            FROM sessions
            WHERE started_at >= :start AND started_at < :end
              AND last_activity_at IS NOT NULL
            """,
            **params,
        )
        top_project_sessions = self._scalar(
            """
            SELECT COUNT(*) AS cnt
            FROM sessions
            WHERE started_at >= :start AND started_at < :end
              AND project_id IS NOT NULL
            GROUP BY project_id
            ORDER BY cnt DESC
            LIMIT 1
            """,
            **params,
        )
        totals = self.wrapped_totals(start, end)
        return {
            "read_count": int(read_count),
            "edit_count": int(edit_count),
            "bash_count": int(bash_count),
            "total_tools": int(total_tools),
            "sessions": totals["sessions"],
            "agents": totals["agents_spawned"],
            "plans": totals["plans"],
            "unique_projects": totals["unique_projects"],
            "top_project_sessions": int(top_project_sessions or 0),
            "avg_session_duration_secs": float(avg_duration or 0.0),
            "hourly": self.hourly_distribution(start, end),
        }

    # ------------------------------------------------------------------
    # Dashboard and projects
    # ------------------------------------------------------------------

    def dashboard_totals(self) -> dict[str, int]:
        row = self.session.execute(
            text(
                f"""
                SELECT
                    (SELECT COUNT(*) FROM projects),
                    (SELECT COUNT(*) FROM sessions),
                    COALESCE((SELECT SUM(COALESCE(tokens_in, 0) + COALESCE(tokens_out, 0))
                              FROM messages), 0),
                    COALESCE((SELECT SUM({SESSION_DURATION_SQL}) FROM sessions s), 0)
                """
            )
        ).one()
        return {
            "project_count": int(row[0]),
            "session_count": int(row[1]),
            "total_tokens": int(row[2] or 0),
            "total_duration_secs": int(row[3] or 0),
        }

    def daily_message_counts(self, since: datetime) -> dict[str, int]:
        """Message count per UTC date for messages emitted at or after ``since``."""
        return {
            day: count
            for day, count in self._rows(
                """
                SELECT date(emitted_at) AS day, COUNT(*)
                FROM messages
                WHERE emitted_at >= :since
                GROUP BY day
                """,
                since=to_db_timestamp(since),
            )
        }

    def list_projects_with_stats(self) -> list[dict[str, Any]]:
        rows = self._rows(
            """
            SELECT
                p.id,
                p.name,
                p.path,
                COUNT(DISTINCT s.id) AS session_count,
                MAX(s.last_activity_at) AS last_activity,
                COALESCE(SUM(COALESCE(m.tokens_in, 0) + COALESCE(m.tokens_out, 0)), 0)
                    AS total_tokens
            FROM projects p
            LEFT JOIN sessions s ON s.project_id = p.id
            LEFT JOIN messages m ON m.session_id = s.id
            GROUP BY p.id
            ORDER BY last_activity IS NULL, last_activity DESC
            """
        )
        return [
            {
                "id": pid,
                "name": name,
                "path": path,
                "session_count": int(count),
                "last_activity": _ts(last),
                "total_tokens": int(tokens or 0),
            }
            for pid, name, path, count, last, tokens in rows
        ]

    def project_stats(self, project_id: str) -> Optional[dict[str, Any]]:
        """Detailed rollup for one project, or None if it does not exist."""
        info = self.session.execute(
            text("SELECT id, name, path FROM projects WHERE id = :project_id"),
            {"project_id": project_id},
        ).first()
        if info is None:
            return None
        params = {"project_id": project_id}
        sessions, duration, first, last = self.session.execute(
            text(
                f"""
                SELECT COUNT(*), COALESCE(SUM({SESSION_DURATION_SQL}), 0),
                       MIN(s.started_at), MAX(s.last_activity_at)
                FROM sessions s
                WHERE s.project_id = :project_id
                """
            ),
            params,
        ).one()
        threads, agents = self.session.execute(
            text(
                """
                SELECT COUNT(*),
                       COALESCE(SUM(CASE WHEN t.thread_type = 'agent' THEN 1 ELSE 0 END), 0)
                FROM threads t
                JOIN sessions s ON t.session_id = s.id
                WHERE s.project_id = :project_id
                """
            ),
            params,
        ).one()
        messages, tokens_in, tokens_out = self.session.execute(
            text(
                """
                SELECT COUNT(*), COALESCE(SUM(m.tokens_in), 0), COALESCE(SUM(m.tokens_out), 0)
                FROM messages m
                JOIN sessions s ON m.session_id = s.id
                WHERE s.project_id = :project_id
                """
            ),
            params,
        ).one()
        tools = self._rows(
            """
            SELECT m.tool_name, COUNT(*) AS cnt
            FROM messages m
            JOIN sessions s ON m.session_id = s.id
            WHERE s.project_id = :project_id
              AND m.message_type = 'tool_call' AND m.tool_name IS NOT NULL
            GROUP BY m.tool_name
            ORDER BY cnt DESC, m.tool_name
            """,
            **params,
        )
        files = self._rows(
            f"""
            SELECT json_extract(m.tool_input, '$.file_path') AS file_path, COUNT(*) AS cnt
            FROM messages m
            JOIN sessions s ON m.session_id = s.id
            WHERE s.project_id = :project_id
              AND m.message_type = 'tool_call'
              AND m.tool_name IN {EDIT_TOOLS_SQL}
              AND json_extract(m.tool_input, '$.file_path') IS NOT NULL
            GROUP BY file_path
            ORDER BY cnt DESC, file_path
            """,
            **params,
        )
        plans = self._scalar(
            """
            SELECT COUNT(DISTINCT sp.plan_slug)
            FROM session_plans sp
            JOIN sessions s ON sp.session_id = s.id
            WHERE s.project_id = :project_id
            """,
            **params,
        )
        by_assistant = self._rows(
            """
            SELECT assistant, COUNT(*) FROM sessions
            WHERE project_id = :project_id
            GROUP BY assistant ORDER BY COUNT(*) DESC
            """,
            **params,
        )
        hourly = [0] * 24
        for hour, count in self._rows(
            """
            SELECT CAST(strftime('%H', m.emitted_at) AS INTEGER) AS hour, COUNT(*)
            FROM messages m
            JOIN sessions s ON m.session_id = s.id
            WHERE s.project_id = :project_id
            GROUP BY hour
            """,
            **params,
        ):
            if hour is not None and 0 <= hour < 24:
                hourly[hour] = count
        return {
            "id": info[0],
            "name": info[1],
            "path": info[2],
            "session_count": int(sessions),
            "thread_count": int(threads),
            "message_count": int(messages),
            "total_duration_secs": int(duration or 0),
            "tokens_in": int(tokens_in or 0),
            "tokens_out": int(tokens_out or 0),
            "tool_stats": [(name, count) for name, count in tools],
            "file_stats": [(path, count) for path, count in files],
            "agents_spawned": int(agents or 0),
            "plans_created": int(plans or 0),
            "hourly_distribution": hourly,
            "first_session": _ts(first),
            "last_activity": _ts(last),
            "sessions_by_assistant": [(a, c) for a, c in by_assistant],
        }
