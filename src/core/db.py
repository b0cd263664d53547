"""
SQLite storage for work orders, operations and their loop stories, approvals, agents,
activities and receipts.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional
from . import config

REQUIRED_TABLES = [
    'work_orders', 'operations', 'operation_stories', 'approvals', 'agents', 'activities',
    'receipts', 'agent_sessions', 'leases', 'completion_tokens', 'packages',
]


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    path = db_path or config.DB_PATH
    config.ensure_db_directory(path)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def create_tables(conn: sqlite3.Connection):
    """Create all tables and indexes on an open connection."""
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS work_orders (
            id TEXT PRIMARY KEY,
            code TEXT NOT NULL UNIQUE,
            seq INTEGER NOT NULL,
            title TEXT NOT NULL,
            goal_md TEXT DEFAULT '',
            state TEXT NOT NULL DEFAULT 'planned',
            priority TEXT DEFAULT 'P2',
            workflow_id TEXT,
            current_stage INTEGER DEFAULT 0,
            blocked_reason TEXT,
            owner TEXT DEFAULT 'user',
            routing_template TEXT,
            tags TEXT DEFAULT '[]',       -- JSON list
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            shipped_at TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS operations (
            id TEXT PRIMARY KEY,
            work_order_id TEXT NOT NULL REFERENCES work_orders(id),
            station TEXT NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'todo',
            notes TEXT DEFAULT '',
            workflow_id TEXT,
            workflow_stage_index INTEGER DEFAULT 0,
            iteration_count INTEGER DEFAULT 0,
            loop_target_op_id TEXT,
            assignee_agent_ids TEXT DEFAULT '[]',        -- JSON list
            depends_on_operation_ids TEXT DEFAULT '[]',  -- JSON list
            blocked_reason TEXT,
            escalation_reason TEXT,
            escalated_at TIMESTAMP,
            retry_count INTEGER DEFAULT 0,
            claimed_by TEXT,
            claim_expires_at TIMESTAMP,
            last_claimed_at TIMESTAMP,
            execution_type TEXT DEFAULT 'single',
            loop_config TEXT,                            -- JSON object
            current_story_id TEXT,
            max_retries INTEGER DEFAULT 2,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS operation_stories (
            id TEXT PRIMARY KEY,
            operation_id TEXT NOT NULL REFERENCES operations(id),
            work_order_id TEXT NOT NULL REFERENCES work_orders(id),
            story_index INTEGER NOT NULL,
            story_key TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT DEFAULT '',
            acceptance_criteria TEXT DEFAULT '[]',  -- JSON list
            status TEXT NOT NULL DEFAULT 'pending',
            output TEXT,                            -- JSON object
            retry_count INTEGER DEFAULT 0,
            max_retries INTEGER DEFAULT 2,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (operation_id, story_index)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS approvals (
            id TEXT PRIMARY KEY,
            work_order_id TEXT NOT NULL REFERENCES work_orders(id),
            operation_id TEXT REFERENCES operations(id),
            type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            question_md TEXT NOT NULL,
            resolved_by TEXT,
            resolved_at TIMESTAMP,
            note TEXT,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agents (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            role TEXT DEFAULT '',
            station TEXT DEFAULT '',
            kind TEXT DEFAULT 'worker',
            status TEXT NOT NULL DEFAULT 'idle',
            wip_limit INTEGER DEFAULT 1,
            capabilities TEXT DEFAULT '{}',  -- JSON object
            session_key TEXT,
            current_work_order_id TEXT,
            updated_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS activities (
            id TEXT PRIMARY KEY,
            ts TIMESTAMP NOT NULL,
            type TEXT NOT NULL,
            actor TEXT NOT NULL,
            actor_type TEXT DEFAULT 'system',
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            summary TEXT DEFAULT '',
            category TEXT DEFAULT 'workflow',
            risk_level TEXT DEFAULT 'safe',
            payload TEXT DEFAULT '{}'  -- JSON object
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS receipts (
            id TEXT PRIMARY KEY,
            work_order_id TEXT,
            operation_id TEXT,
            kind TEXT NOT NULL,
            command_name TEXT NOT NULL,
            stdout TEXT DEFAULT '',
            stderr TEXT DEFAULT '',
            exit_code INTEGER,
            duration_ms INTEGER,
            parsed_json TEXT,
            started_at TIMESTAMP NOT NULL,
            ended_at TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_sessions (
            session_key TEXT PRIMARY KEY,
            agent_id TEXT NOT NULL,
            work_order_id TEXT NOT NULL,
            operation_id TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL,
            last_used_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at REAL NOT NULL  -- epoch seconds
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS completion_tokens (
            token TEXT PRIMARY KEY,
            operation_id TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS packages (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            sha256 TEXT NOT NULL,
            blocked_by_scan BOOLEAN DEFAULT FALSE,
            scan TEXT DEFAULT '{}',
            alert_work_order_id TEXT,
            deployed_at TIMESTAMP
        )
    ''')

    cursor.execute('CREATE INDEX IF NOT EXISTS idx_work_orders_state ON work_orders(state, created_at)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_operations_wo ON operations(work_order_id, status)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_stories_op ON operation_stories(operation_id, status, story_index)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_approvals_wo ON approvals(work_order_id, type, status)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_activities_entity ON activities(entity_id, ts DESC)')

    conn.commit()


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    with get_db(db_path) as conn:
        create_tables(conn)


def health_check(db_path: Optional[str] = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
