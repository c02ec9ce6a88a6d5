"""
Agent Engine — Database layer
==============================
init_agent_tables(), _get_conn(), log_event(), timestamp helpers.

Every knowledge-store row is owned by exactly one user_id. Embeddings are
stored as JSON arrays beside the row; the Pinecone backend mirrors them.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

from db import get_db, connect

logger = logging.getLogger(__name__)

TS_FORMAT = '%Y-%m-%d %H:%M:%S'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _ts(dt: datetime = None) -> str:
    """Timestamp string in the same format SQLite's CURRENT_TIMESTAMP produces."""
    return (dt or _utcnow()).strftime(TS_FORMAT)


def _ts_ago(days: float = 0, hours: float = 0) -> str:
    return _ts(_utcnow() - timedelta(days=days, hours=hours))


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    text = str(value).replace('T', ' ')
    return datetime.strptime(text[:19], TS_FORMAT)


def init_agent_tables():
    """Initialize all agent engine tables."""
    with get_db() as conn:
        _create_agent_tables(conn)


def _create_agent_tables(conn):
    """Internal: create all agent engine tables on the given connection."""
    cursor = conn.cursor()

    # --- Knowledge store: decisions ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_decisions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            decision_ref TEXT UNIQUE NOT NULL,
            user_id TEXT NOT NULL,
            conversation_id INTEGER,
            sequence INTEGER DEFAULT 0,
            tool_name TEXT NOT NULL,
            category TEXT NOT NULL,
            input_summary TEXT,
            tool_input TEXT,
            reasoning TEXT,
            confidence_factors TEXT,
            confidence REAL,
            disposition TEXT,
            embedding TEXT,
            owner_feedback TEXT,
            owner_correction TEXT,
            feedback_at TIMESTAMP,
            was_auto_executed INTEGER DEFAULT 0,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    # --- Knowledge store: rules ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            rule_text TEXT NOT NULL,
            category TEXT DEFAULT 'general',
            embedding TEXT NOT NULL,
            confidence REAL NOT NULL DEFAULT 0.5,
            active INTEGER DEFAULT 1,
            source TEXT,
            reinforcement_count INTEGER DEFAULT 0,
            last_reinforced_at TIMESTAMP NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    ''')

    # --- Knowledge store: preferences ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_preferences (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            category TEXT NOT NULL,
            preference_key TEXT NOT NULL,
            value TEXT,
            source TEXT,
            confidence REAL DEFAULT 0.7,
            embedding TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (user_id, preference_key)
        )
    ''')

    # --- Knowledge store: corrections (append-only) ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_corrections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            decision_id INTEGER,
            original_action TEXT NOT NULL,
            correction_text TEXT NOT NULL,
            context_snapshot TEXT,
            category TEXT DEFAULT 'general',
            embedding TEXT NOT NULL,
            pattern_matched INTEGER DEFAULT 0,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    # --- Knowledge store: outcomes ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_outcomes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            decision_id INTEGER UNIQUE NOT NULL,
            tool_name TEXT,
            category TEXT,
            success INTEGER NOT NULL,
            outcome_type TEXT NOT NULL,
            detail TEXT,
            measured_at TIMESTAMP NOT NULL,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    # --- Heartbeat tasks ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            category TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            recommendation TEXT NOT NULL,
            priority TEXT DEFAULT 'normal',
            timeline TEXT,
            status TEXT DEFAULT 'pending_input',
            related_entity_type TEXT,
            related_entity_id TEXT,
            idempotency_key TEXT UNIQUE NOT NULL,
            decision_ref TEXT,
            disposition TEXT,
            was_auto_executed INTEGER DEFAULT 0,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    ''')

    # --- Per-tool execution genome (structural, not embedded) ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS tool_genome (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            tool_name TEXT NOT NULL,
            total_executions INTEGER DEFAULT 0,
            successful_executions INTEGER DEFAULT 0,
            failed_executions INTEGER DEFAULT 0,
            success_rate_ema REAL DEFAULT 0.9,
            avg_duration_ms REAL DEFAULT 0,
            failure_patterns TEXT,
            parameter_insights TEXT,
            last_executed_at TIMESTAMP,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (user_id, tool_name)
        )
    ''')

    # --- Autonomy configuration ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_autonomy_settings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT UNIQUE NOT NULL,
            preset TEXT NOT NULL DEFAULT 'balanced',
            category_overrides TEXT,
            updated_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS autonomy_graduation (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            category TEXT NOT NULL,
            consecutive_approvals INTEGER DEFAULT 0,
            total_approvals INTEGER DEFAULT 0,
            total_rejections INTEGER DEFAULT 0,
            backoff_multiplier REAL DEFAULT 1.0,
            last_rejection_at TIMESTAMP,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (user_id, category)
        )
    ''')

    # --- Curated known-correct examples for golden alignment ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_golden_examples (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            tool_name TEXT NOT NULL,
            description TEXT NOT NULL,
            embedding TEXT,
            active INTEGER DEFAULT 1,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    # --- Chat surface ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            title TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id INTEGER NOT NULL,
            role TEXT NOT NULL,
            content TEXT,
            tool_calls TEXT,
            tokens_used INTEGER DEFAULT 0,
            created_at TIMESTAMP NOT NULL
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_pending_actions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            conversation_id INTEGER,
            decision_ref TEXT,
            tool_name TEXT NOT NULL,
            tool_input TEXT,
            description TEXT,
            category TEXT,
            status TEXT DEFAULT 'pending',
            result TEXT,
            created_at TIMESTAMP NOT NULL,
            resolved_at TIMESTAMP
        )
    ''')

    # --- Audit trail ---
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS agent_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subsystem TEXT NOT NULL,
            event_type TEXT NOT NULL,
            details TEXT,
            severity TEXT DEFAULT 'info',
            timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS retention_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            rows_affected INTEGER DEFAULT 0,
            detail TEXT,
            timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Indexes
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_decisions_user_tool ON agent_decisions(user_id, tool_name, category)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_decisions_created ON agent_decisions(created_at)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_rules_user_active ON agent_rules(user_id, active)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_prefs_user ON agent_preferences(user_id, category)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_corrections_user ON agent_corrections(user_id, pattern_matched)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_outcomes_user_tool ON agent_outcomes(user_id, tool_name)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_tasks_entity ON agent_tasks(user_id, related_entity_id, category)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_pending_user ON agent_pending_actions(user_id, status)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_messages_conv ON agent_messages(conversation_id)')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_time ON agent_events(timestamp)')

    logger.info("Agent engine tables initialized (15 tables)")


def log_event(subsystem: str, event_type: str, details: str = None, severity: str = 'info'):
    """Log an engine event for the audit trail. Never raises."""
    try:
        with get_db() as conn:
            conn.execute('''
                INSERT INTO agent_events (subsystem, event_type, details, severity, timestamp)
                VALUES (?, ?, ?, ?, ?)
            ''', (subsystem, event_type, details, severity, _ts()))
    except Exception as e:
        logger.error(f"Failed to log event {subsystem}/{event_type}: {e}")


def _get_conn():
    """Get a database connection with row factory and WAL mode."""
    return connect()


def _dumps(value) -> str:
    return json.dumps(value, default=str)


def _loads(value, default=None):
    if value is None or value == '':
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default
