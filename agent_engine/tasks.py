"""
Agent Engine — Task store
==========================
Tasks are the proactive surface the heartbeat (and the plan_task tool)
write for the owner: a title, a human-readable recommendation, a priority,
a status and a timeline of what the agent did.

Creation is idempotent: a task is skipped when its idempotency key has
been used before or an open task already exists for the same entity and
category.
"""

import logging
from typing import Dict, List, Optional

from constants import OPEN_TASK_STATUSES, TASK_PRIORITIES, TASK_STATUSES
from db import atomic, get_integrity_error
from agent_engine.db import _get_conn, _ts, _dumps, _loads

logger = logging.getLogger(__name__)

MIN_RECOMMENDATION_LENGTH = 11


def timeline_entry(action: str, status: str = 'completed', reasoning: str = None, data: Dict = None) -> Dict:
    entry = {'timestamp': _ts(), 'action': action, 'status': status}
    if reasoning:
        entry['reasoning'] = reasoning
    if data:
        entry['data'] = data
    return entry


def _task(row) -> Dict:
    task = dict(row)
    task['timeline'] = _loads(task.get('timeline'), [])
    task['was_auto_executed'] = bool(task.get('was_auto_executed'))
    return task


class TaskStore:
    """Durable agent tasks."""

    @staticmethod
    def open_task_exists(user_id: str, category: str, entity_id: str) -> bool:
        placeholders = ', '.join('?' for _ in OPEN_TASK_STATUSES)
        conn = _get_conn()
        row = conn.execute(f'''
            SELECT id FROM agent_tasks
            WHERE user_id = ? AND category = ? AND related_entity_id = ? AND status IN ({placeholders})
            LIMIT 1
        ''', [user_id, category, entity_id, *OPEN_TASK_STATUSES]).fetchone()
        conn.close()
        return row is not None

    @staticmethod
    def key_exists(idempotency_key: str) -> bool:
        conn = _get_conn()
        row = conn.execute('SELECT id FROM agent_tasks WHERE idempotency_key = ?', (idempotency_key,)).fetchone()
        conn.close()
        return row is not None

    @staticmethod
    def create_task(user_id: str, category: str, title: str, recommendation: str,
                    idempotency_key: str, description: str = None, priority: str = 'normal',
                    related_entity_type: str = None, related_entity_id: str = None,
                    status: str = 'pending_input', timeline: List[Dict] = None,
                    decision_ref: str = None, disposition: str = None,
                    was_auto_executed: bool = False) -> Optional[int]:
        """
        Insert a task. Returns its id, or None when it duplicates an existing
        task (same idempotency key, or an open task for the same entity/category).
        """
        if not user_id or not title or not idempotency_key:
            raise ValueError("user_id, title and idempotency_key are required")
        if len((recommendation or '').strip()) < MIN_RECOMMENDATION_LENGTH:
            raise ValueError("recommendation must be a meaningful sentence")
        if priority not in TASK_PRIORITIES:
            raise ValueError(f"Unknown priority: {priority}")
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        now = _ts()
        placeholders = ', '.join('?' for _ in OPEN_TASK_STATUSES)

        try:
            with atomic(f"tasks:{user_id}") as conn:
                if conn.execute('SELECT id FROM agent_tasks WHERE idempotency_key = ?',
                                (idempotency_key,)).fetchone():
                    return None
                if related_entity_id and conn.execute(f'''
                    SELECT id FROM agent_tasks
                    WHERE user_id = ? AND category = ? AND related_entity_id = ? AND status IN ({placeholders})
                    LIMIT 1
                ''', [user_id, category, related_entity_id, *OPEN_TASK_STATUSES]).fetchone():
                    return None
                cursor = conn.execute('''
                    INSERT INTO agent_tasks
                    (user_id, category, title, description, recommendation, priority, timeline, status,
                     related_entity_type, related_entity_id, idempotency_key, decision_ref, disposition,
                     was_auto_executed, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (user_id, category, title, description, recommendation.strip(), priority,
                      _dumps(timeline or []), status, related_entity_type, related_entity_id,
                      idempotency_key, decision_ref, disposition, 1 if was_auto_executed else 0,
                      now, now))
                task_id = cursor.lastrowid
        except get_integrity_error():
            logger.info(f"Task {idempotency_key} already exists")
            return None
        return task_id

    @staticmethod
    def get_task(task_id: int, user_id: str = None) -> Optional[Dict]:
        conn = _get_conn()
        if user_id:
            row = conn.execute('SELECT * FROM agent_tasks WHERE id = ? AND user_id = ?',
                               (task_id, user_id)).fetchone()
        else:
            row = conn.execute('SELECT * FROM agent_tasks WHERE id = ?', (task_id,)).fetchone()
        conn.close()
        return _task(row) if row else None

    @staticmethod
    def list_tasks(user_id: str, category: str = None, open_only: bool = True, limit: int = 50) -> List[Dict]:
        clauses = ['user_id = ?']
        params = [user_id]
        if category:
            clauses.append('category = ?')
            params.append(category)
        if open_only:
            clauses.append(f"status IN ({', '.join('?' for _ in OPEN_TASK_STATUSES)})")
            params.extend(OPEN_TASK_STATUSES)
        params.append(limit)
        conn = _get_conn()
        rows = conn.execute(f'''
            SELECT * FROM agent_tasks WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, id DESC LIMIT ?
        ''', params).fetchall()
        conn.close()
        return [_task(r) for r in rows]

    @staticmethod
    def append_timeline(task_id: int, user_id: str, entry: Dict, status: str = None,
                        was_auto_executed: bool = None) -> bool:
        if status and status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        with atomic(f"tasks:{user_id}") as conn:
            row = conn.execute('SELECT timeline, status FROM agent_tasks WHERE id = ? AND user_id = ?',
                               (task_id, user_id)).fetchone()
            if row is None:
                return False
            timeline = _loads(row['timeline'], [])
            timeline.append(entry)
            if was_auto_executed is not None:
                conn.execute('UPDATE agent_tasks SET was_auto_executed = ? WHERE id = ?',
                             (1 if was_auto_executed else 0, task_id))
            conn.execute('UPDATE agent_tasks SET timeline = ?, status = ?, updated_at = ? WHERE id = ?',
                         (_dumps(timeline), status or row['status'], _ts(), task_id))
        return True

