"""
Agent Engine — Pending actions
===============================
Actions gated to "draft & approve" wait here for the owner. Each one is
resolved exactly once: approve executes the tool and records approved
feedback on its decision, reject records rejected feedback and, when a
reason is given, learns a rule from it.
"""

import json
import logging
from typing import Dict, List, Optional

from db import atomic, get_db
from agent_engine.db import _get_conn, _ts, _ts_ago, _dumps, _loads, log_event
from agent_engine.dispatcher import ToolDispatcher
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.learning import LearningPipeline, learn_from_tool_error
from agent_engine.recorder import get_recorder

logger = logging.getLogger(__name__)


class PendingActionNotFound(LookupError):
    """No pending action with that id is waiting for the user."""


def _pending(row) -> Dict:
    action = dict(row)
    action['tool_input'] = _loads(action.get('tool_input'), {})
    action['result'] = _loads(action.get('result'), action.get('result'))
    return action


class PendingActions:
    """Draft actions awaiting explicit approval."""

    @staticmethod
    def create(user_id: str, tool_name: str, tool_input: Dict, description: str, category: str,
               decision_ref: str = None, conversation_id: int = None) -> int:
        with get_db() as conn:
            cursor = conn.execute('''
                INSERT INTO agent_pending_actions
                (user_id, conversation_id, decision_ref, tool_name, tool_input, description,
                 category, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
            ''', (user_id, conversation_id, decision_ref, tool_name, _dumps(tool_input or {}),
                  description, category, _ts()))
            return cursor.lastrowid

    @staticmethod
    def get(action_id: int, user_id: str) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM agent_pending_actions WHERE id = ? AND user_id = ?',
                           (action_id, user_id)).fetchone()
        conn.close()
        return _pending(row) if row else None

    @staticmethod
    def list_pending(user_id: str, status: str = 'pending', limit: int = 50) -> List[Dict]:
        conn = _get_conn()
        rows = conn.execute('''
            SELECT * FROM agent_pending_actions WHERE user_id = ? AND status = ?
            ORDER BY created_at DESC, id DESC LIMIT ?
        ''', (user_id, status, limit)).fetchall()
        conn.close()
        return [_pending(r) for r in rows]

    @staticmethod
    def stale(user_id: str, older_than_hours: float) -> List[Dict]:
        conn = _get_conn()
        rows = conn.execute('''
            SELECT * FROM agent_pending_actions
            WHERE user_id = ? AND status = 'pending' AND created_at < ?
            ORDER BY created_at
        ''', (user_id, _ts_ago(hours=older_than_hours))).fetchall()
        conn.close()
        return [_pending(r) for r in rows]

    @staticmethod
    def _claim(action_id: int, user_id: str, status: str) -> Dict:
        """Move a pending action to status exactly once. Raises PendingActionNotFound."""
        with atomic(f"pending:{action_id}") as conn:
            cursor = conn.execute('''
                UPDATE agent_pending_actions SET status = ?, resolved_at = ?
                WHERE id = ? AND user_id = ? AND status = 'pending'
            ''', (status, _ts(), action_id, user_id))
            if cursor.rowcount == 0:
                raise PendingActionNotFound(f"No pending action {action_id}")
            row = conn.execute('SELECT * FROM agent_pending_actions WHERE id = ?', (action_id,)).fetchone()
        return _pending(row)

    @staticmethod
    def _set_result(action_id: int, status: str, result: Dict):
        with get_db() as conn:
            conn.execute('UPDATE agent_pending_actions SET status = ?, result = ? WHERE id = ?',
                         (status, _dumps(result), action_id))

    @staticmethod
    def _decision_id(decision_ref: str) -> Optional[int]:
        if not decision_ref:
            return None
        decision = KnowledgeStore.get_decision_by_ref(decision_ref)
        if decision is None:
            # The recorder may still be holding it
            get_recorder().flush()
            decision = KnowledgeStore.get_decision_by_ref(decision_ref)
        return decision['id'] if decision else None

    @staticmethod
    def approve(action_id: int, user_id: str) -> Dict:
        """Execute an approved draft. Returns {action, result, feedback}."""
        action = PendingActions._claim(action_id, user_id, 'approved')
        result = ToolDispatcher.run(user_id, action['tool_name'], action['tool_input'])
        PendingActions._set_result(action_id, 'executed' if result['success'] else 'failed', result)
        if not result['success']:
            learn_from_tool_error(user_id, result['error_type'], action['tool_name'], result['error'],
                                  json.dumps(action['tool_input'], default=str)[:300], action['category'])

        feedback = None
        decision_id = PendingActions._decision_id(action.get('decision_ref'))
        if decision_id is not None:
            feedback = LearningPipeline.process_feedback(user_id, decision_id, 'approved',
                                                         category=action['category'])
        log_event('pending', 'approved', json.dumps({
            'user_id': user_id, 'action_id': action_id, 'tool_name': action['tool_name'],
            'success': result['success'],
        }))
        return {'action': PendingActions.get(action_id, user_id), 'result': result, 'feedback': feedback}

    @staticmethod
    def reject(action_id: int, user_id: str, reason: str = None) -> Dict:
        """Reject a draft; a reason becomes a correction and a rule."""
        action = PendingActions._claim(action_id, user_id, 'rejected')
        reason = (reason or '').strip() or None

        feedback = None
        decision_id = PendingActions._decision_id(action.get('decision_ref'))
        if decision_id is not None:
            feedback = LearningPipeline.process_feedback(user_id, decision_id, 'rejected',
                                                         category=action['category'], correction=reason)
        rule = None
        if reason:
            artifact_type, rule_id = KnowledgeStore.learn_rule(
                user_id, f'When using "{action["tool_name"]}": {reason}',
                category=action['category'] or 'general', source='rejection')
            rule = {'artifact_type': artifact_type, 'rule_id': rule_id}
        log_event('pending', 'rejected', json.dumps({
            'user_id': user_id, 'action_id': action_id, 'tool_name': action['tool_name'],
            'reason': reason,
        }))
        return {'action': PendingActions.get(action_id, user_id), 'feedback': feedback, 'rule': rule}
