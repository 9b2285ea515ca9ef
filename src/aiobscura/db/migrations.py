"""
Forward-only schema migrations.

The schema version is kept in ``PRAGMA user_version``. Each entry in
``MIGRATIONS`` is a self-contained SQL script; migration N (1-based) is
applied together with ``PRAGMA user_version = N`` in a single
transaction. There are no down migrations.
"""

import logging

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)


# v1: canonical layer plus derived analytics tables
V1_CANONICAL = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL UNIQUE,
    name TEXT,
    created_at TEXT NOT NULL,
    last_activity_at TEXT,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS backing_models (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    model_id TEXT NOT NULL,
    display_name TEXT,
    first_seen_at TEXT NOT NULL,
    metadata TEXT,
    UNIQUE (provider, model_id)
);

CREATE TABLE IF NOT EXISTS source_files (
    path TEXT PRIMARY KEY,
    file_type TEXT NOT NULL,
    assistant TEXT NOT NULL,
    created_at TEXT,
    modified_at TEXT,
    size_bytes INTEGER,
    last_parsed_at TEXT,
    checkpoint_type TEXT,
    checkpoint_data TEXT
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    assistant TEXT NOT NULL,
    backing_model_id TEXT REFERENCES backing_models(id),
    project_id TEXT REFERENCES projects(id),
    started_at TEXT NOT NULL,
    last_activity_at TEXT,
    status TEXT,
    source_file_path TEXT NOT NULL REFERENCES source_files(path) ON DELETE CASCADE,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_sessions_last_activity ON sessions(last_activity_at);

CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    thread_type TEXT NOT NULL,
    parent_thread_id TEXT REFERENCES threads(id) ON DELETE SET NULL,
    spawned_by_message_id INTEGER,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    last_activity_at TEXT,
    agent_subtype TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_threads_session ON threads(session_id);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    emitted_at TEXT NOT NULL,
    observed_at TEXT NOT NULL,
    author_role TEXT NOT NULL,
    author_name TEXT,
    message_type TEXT NOT NULL,
    content TEXT,
    tool_name TEXT,
    tool_input TEXT,
    tool_result TEXT,
    tokens_in INTEGER,
    tokens_out INTEGER,
    duration_ms INTEGER,
    source_file_path TEXT NOT NULL REFERENCES source_files(path) ON DELETE CASCADE,
    source_offset INTEGER NOT NULL,
    source_line INTEGER,
    raw_data TEXT NOT NULL,
    metadata TEXT,
    UNIQUE (thread_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);
CREATE INDEX IF NOT EXISTS idx_messages_type ON messages(message_type);
CREATE INDEX IF NOT EXISTS idx_messages_emitted ON messages(emitted_at);

CREATE TABLE IF NOT EXISTS session_metrics (
    session_id TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
    metric_version INTEGER NOT NULL,
    computed_at TEXT NOT NULL,
    total_tokens_in INTEGER,
    total_tokens_out INTEGER,
    total_tool_calls INTEGER,
    tool_call_breakdown TEXT,
    error_count INTEGER,
    duration_ms INTEGER,
    tokens_per_minute REAL,
    tool_success_rate REAL,
    edit_churn_ratio REAL
);

CREATE TABLE IF NOT EXISTS assessments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    assessor TEXT NOT NULL,
    model TEXT,
    assessed_at TEXT NOT NULL,
    scores TEXT NOT NULL,
    raw_response TEXT,
    prompt_hash TEXT
);

CREATE INDEX IF NOT EXISTS idx_assessments_session ON assessments(session_id, assessed_at);

CREATE TABLE IF NOT EXISTS plugin_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plugin_name TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL DEFAULT '',
    metric_name TEXT NOT NULL,
    metric_value TEXT NOT NULL,
    computed_at TEXT NOT NULL,
    UNIQUE (plugin_name, entity_type, entity_id, metric_name)
);

CREATE TABLE IF NOT EXISTS plugin_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plugin_name TEXT NOT NULL,
    session_id TEXT,
    started_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT,
    metrics_produced INTEGER,
    input_message_count INTEGER,
    input_token_count INTEGER
);

CREATE INDEX IF NOT EXISTS idx_plugin_runs_session ON plugin_runs(session_id)
"""

# v2: cross-file agent spawn index
V2_AGENT_SPAWNS = """
CREATE TABLE IF NOT EXISTS agent_spawns (
    agent_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    spawning_message_seq INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agent_spawns_session ON agent_spawns(session_id)
"""

# v3: plans with content history and session links
V3_PLANS = """
CREATE TABLE IF NOT EXISTS plans (
    slug TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    title TEXT,
    created_at TEXT NOT NULL,
    modified_at TEXT NOT NULL,
    status TEXT,
    content TEXT,
    content_hash TEXT NOT NULL,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS plan_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plan_slug TEXT NOT NULL REFERENCES plans(slug) ON DELETE CASCADE,
    content_hash TEXT NOT NULL,
    title TEXT,
    content TEXT,
    captured_at TEXT NOT NULL,
    UNIQUE (plan_slug, content_hash)
);

CREATE TABLE IF NOT EXISTS session_plans (
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    plan_slug TEXT NOT NULL REFERENCES plans(slug) ON DELETE CASCADE,
    first_used_at TEXT NOT NULL,
    PRIMARY KEY (session_id, plan_slug)
)
"""

# v4: publisher high-water marks
V4_PUBLISH_STATE = """
CREATE TABLE IF NOT EXISTS collector_publish_state (
    session_id TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
    last_published_seq INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    started_at TEXT,
    last_published_at TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_publish_state_status ON collector_publish_state(status)
"""

MIGRATIONS: list[str] = [
    V1_CANONICAL,
    V2_AGENT_SPAWNS,
    V3_PLANS,
    V4_PUBLISH_STATE,
]

TARGET_VERSION = len(MIGRATIONS)


def split_statements(script: str) -> list[str]:
    """Split a migration script into executable statements, dropping comment lines."""
    lines = [
        line for line in script.splitlines() if not line.strip().startswith("--")
    ]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def _read_version(conn: Connection) -> int:
    return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def get_schema_version(engine: Engine) -> int:
    """Return the schema version recorded in the database file."""
    with engine.connect() as conn:
        return _read_version(conn)


def run_migrations(engine: Engine) -> int:
    """
    Apply every pending migration in order.

    Returns:
        The schema version after migrating. Calling this on an up-to-date
        database performs no writes.
    """
    current = get_schema_version(engine)
    if current > TARGET_VERSION:
        logger.warning(
            f"Database schema version {current} is newer than supported "
            f"version {TARGET_VERSION}"
        )
        return current

    for version, script in enumerate(MIGRATIONS[current:], start=current + 1):
        logger.info(f"Applying migration v{version}")
        with engine.begin() as conn:
            for statement in split_statements(script):
                conn.execute(text(statement))
            conn.exec_driver_sql(f"PRAGMA user_version = {version}")

    if current < TARGET_VERSION:
        logger.info(f"Database migrated from v{current} to v{TARGET_VERSION}")
    return TARGET_VERSION
