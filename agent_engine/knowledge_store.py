"""
Agent Engine — Knowledge Store
===============================
Decisions, rules, preferences, corrections, outcomes and golden examples,
all owned by a single user_id.

Similarity search goes through the configured VectorStore and is hydrated
from SQL, so a record only surfaces while its row is still searchable
(decisions need owner feedback, rules must be active). Rule dedup-or-reinforce
and preference upsert run inside db.atomic() so concurrent corrections about
the same fact cannot produce near-duplicate rows.
"""

import json
import logging
from typing import Dict, List, Optional, Tuple

from config import Config
from db import atomic, get_db
from agent_engine.db import _get_conn, _ts, _ts_ago, _dumps, _loads, log_event
from agent_engine.embeddings import (
    get_embedding_provider, serialize_vector, deserialize_vector, validate_vector,
    preference_text, correction_text,
)
from agent_engine.vector_store import KIND_TABLES, get_vector_store, scan_similar

logger = logging.getLogger(__name__)

FEEDBACK_VALUES = ('approved', 'rejected')

# Rules below this after negative feedback stop being applied
RULE_DEACTIVATE_BELOW = 0.3
# cleanup_old_learning_data deactivates anything weaker than this
RULE_RETENTION_FLOOR = 0.2


class DecisionNotFound(LookupError):
    """No decision with that id belongs to the user."""


class FeedbackAlreadyRecorded(ValueError):
    """owner_feedback was already set; it transitions exactly once."""


def _record(row) -> Dict:
    record = dict(row)
    record.pop('embedding', None)
    for field in ('confidence_factors', 'tool_input', 'failure_patterns', 'parameter_insights',
                  'context_snapshot'):
        if field in record and isinstance(record[field], str):
            record[field] = _loads(record[field], record[field])
    return record


class KnowledgeStore:
    """Durable semantic memory for the agent, scoped per user."""

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    @staticmethod
    def _search(kind: str, query_embedding, user_id: str, threshold: float, count: int) -> List[Dict]:
        if query_embedding is None or not user_id or count <= 0:
            return []
        vector = validate_vector(query_embedding)
        hits = get_vector_store().search(kind, vector, user_id, threshold, count)
        if not hits:
            return []

        table, row_filter = KIND_TABLES[kind]
        ids = [record_id for record_id, _ in hits]
        placeholders = ', '.join('?' for _ in ids)
        conn = _get_conn()
        rows = conn.execute(f'''
            SELECT * FROM {table}
            WHERE user_id = ? AND {row_filter} AND id IN ({placeholders})
        ''', [user_id] + ids).fetchall()
        conn.close()

        by_id = {row['id']: row for row in rows}
        results = []
        for record_id, similarity in hits:
            row = by_id.get(record_id)
            if row is None:
                continue
            record = _record(row)
            record['similarity'] = round(similarity, 4)
            results.append(record)
            if len(results) >= count:
                break
        return results

    @staticmethod
    def search_similar_decisions(query_embedding, user_id: str, threshold: float = 0.7,
                                 count: int = 3) -> List[Dict]:
        """Past decisions that already carry owner feedback, most similar first."""
        return KnowledgeStore._search('decisions', query_embedding, user_id, threshold, count)

    @staticmethod
    def search_similar_rules(query_embedding, user_id: str, threshold: float = 0.6,
                             count: int = 5) -> List[Dict]:
        """Active rules, most similar first."""
        return KnowledgeStore._search('rules', query_embedding, user_id, threshold, count)

    @staticmethod
    def search_similar_preferences(query_embedding, user_id: str, threshold: float = 0.5,
                                   count: int = 10) -> List[Dict]:
        return KnowledgeStore._search('preferences', query_embedding, user_id, threshold, count)

    @staticmethod
    def search_similar_corrections(query_embedding, user_id: str, threshold: float = 0.6,
                                   count: int = 10) -> List[Dict]:
        return KnowledgeStore._search('corrections', query_embedding, user_id, threshold, count)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    @staticmethod
    def insert_decision(decision: Dict) -> Optional[int]:
        """
        Persist one evaluated candidate action. Idempotent on decision_ref, so
        a redelivered record never produces a second row. Returns the row id.
        """
        if not decision.get('decision_ref') or not decision.get('user_id'):
            raise ValueError("decision_ref and user_id are required")
        vector = decision.get('embedding')
        stored_vector = serialize_vector(vector)
        factors = decision.get('confidence_factors')

        conn = _get_conn()
        try:
            conn.execute('''
                INSERT OR IGNORE INTO agent_decisions
                (decision_ref, user_id, conversation_id, sequence, tool_name, category,
                 input_summary, tool_input, reasoning, confidence_factors, confidence, disposition,
                 embedding, was_auto_executed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (decision['decision_ref'], decision['user_id'], decision.get('conversation_id'),
                  decision.get('sequence', 0), decision['tool_name'], decision['category'],
                  decision.get('input_summary'), _dumps(decision.get('tool_input') or {}),
                  decision.get('reasoning'),
                  _dumps(factors) if factors is not None else None,
                  factors['composite'] if factors is not None else None,
                  decision.get('disposition'), stored_vector,
                  1 if decision.get('was_auto_executed') else 0,
                  decision.get('created_at') or _ts()))
            conn.commit()
            row = conn.execute('SELECT id FROM agent_decisions WHERE decision_ref = ?',
                               (decision['decision_ref'],)).fetchone()
        finally:
            conn.close()

        decision_id = row['id'] if row else None
        if decision_id is not None and vector is not None:
            get_vector_store().upsert('decisions', decision_id, decision['user_id'], vector,
                                      {'tool_name': decision['tool_name'],
                                       'category': decision['category']})
        return decision_id

    @staticmethod
    def get_decision(decision_id: int, user_id: str = None) -> Optional[Dict]:
        conn = _get_conn()
        if user_id is None:
            row = conn.execute('SELECT * FROM agent_decisions WHERE id = ?', (decision_id,)).fetchone()
        else:
            row = conn.execute('SELECT * FROM agent_decisions WHERE id = ? AND user_id = ?',
                               (decision_id, user_id)).fetchone()
        conn.close()
        return _record(row) if row else None

    @staticmethod
    def get_decision_by_ref(decision_ref: str) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM agent_decisions WHERE decision_ref = ?',
                           (decision_ref,)).fetchone()
        conn.close()
        return _record(row) if row else None

    @staticmethod
    def max_decision_sequence(conversation_id) -> int:
        """Highest sequence persisted for a conversation, 0 when it has none."""
        conn = _get_conn()
        row = conn.execute('SELECT MAX(sequence) AS seq FROM agent_decisions WHERE conversation_id = ?',
                           (conversation_id,)).fetchone()
        conn.close()
        return (row['seq'] or 0) if row else 0

    @staticmethod
    def get_decision_embedding(decision_id: int) -> Optional[List[float]]:
        conn = _get_conn()
        row = conn.execute('SELECT embedding FROM agent_decisions WHERE id = ?', (decision_id,)).fetchone()
        conn.close()
        return deserialize_vector(row['embedding']) if row else None

    @staticmethod
    def set_owner_feedback(user_id: str, decision_id: int, feedback: str,
                           correction: str = None) -> Dict:
        """
        Transition owner_feedback from null to approved/rejected, exactly once.
        Raises DecisionNotFound or FeedbackAlreadyRecorded.
        """
        if feedback not in FEEDBACK_VALUES:
            raise ValueError(f"feedback must be one of {', '.join(FEEDBACK_VALUES)}")

        with atomic(f"decision:{decision_id}") as conn:
            cursor = conn.execute('''
                UPDATE agent_decisions
                SET owner_feedback = ?, owner_correction = ?, feedback_at = ?
                WHERE id = ? AND user_id = ? AND owner_feedback IS NULL
            ''', (feedback, correction, _ts(), decision_id, user_id))
            if cursor.rowcount == 0:
                existing = conn.execute(
                    'SELECT owner_feedback FROM agent_decisions WHERE id = ? AND user_id = ?',
                    (decision_id, user_id)).fetchone()
                if existing is None:
                    raise DecisionNotFound(f"Decision {decision_id} not found")
                raise FeedbackAlreadyRecorded(
                    f"Decision {decision_id} already has feedback '{existing['owner_feedback']}'")
            row = conn.execute('SELECT * FROM agent_decisions WHERE id = ?', (decision_id,)).fetchone()
        return _record(row)

    @staticmethod
    def get_recent_feedback(user_id: str, tool_name: str, limit: int = 5) -> List[str]:
        """owner_feedback values for the tool's latest reviewed decisions, newest first."""
        conn = _get_conn()
        rows = conn.execute('''
            SELECT owner_feedback FROM agent_decisions
            WHERE user_id = ? AND tool_name = ? AND owner_feedback IS NOT NULL
            ORDER BY feedback_at DESC, id DESC
            LIMIT ?
        ''', (user_id, tool_name, limit)).fetchall()
        conn.close()
        return [r['owner_feedback'] for r in rows]

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def learn_rule(user_id: str, rule_text: str, category: str = 'general',
                   source: str = 'factual_error', start_confidence: float = None,
                   embedding=None) -> Tuple[str, int]:
        """
        Insert a rule, or reinforce an existing near-duplicate instead.

        The similarity check and the write share one serialised transaction
        per user. Returns (artifact_type, rule_id) where artifact_type is
        'rule' for a new row or 'rule_dedup' for a reinforcement.
        """
        text = (rule_text or '').strip()
        if not user_id:
            raise ValueError("user_id is required")
        if not text:
            raise ValueError("rule_text is required")
        vector = embedding if embedding is not None else get_embedding_provider().embed_required(text)
        stored_vector = serialize_vector(vector)
        confidence = Config.RULE_START_CONFIDENCE if start_confidence is None else start_confidence
        now = _ts()

        with atomic(f"rules:{user_id}") as conn:
            match = scan_similar(conn, 'rules', vector, user_id, Config.RULE_DEDUP_THRESHOLD, 1)
            if match:
                rule_id, similarity = match[0]
                current = conn.execute('SELECT confidence FROM agent_rules WHERE id = ?',
                                       (rule_id,)).fetchone()
                new_confidence = round(min(1.0, current['confidence'] + Config.RULE_REINFORCE_STEP), 4)
                conn.execute('''
                    UPDATE agent_rules
                    SET confidence = ?, reinforcement_count = reinforcement_count + 1,
                        last_reinforced_at = ?, updated_at = ?
                    WHERE id = ?
                ''', (new_confidence, now, now, rule_id))
                artifact_type = 'rule_dedup'
            else:
                similarity = None
                cursor = conn.execute('''
                    INSERT INTO agent_rules
                    (user_id, rule_text, category, embedding, confidence, active, source,
                     reinforcement_count, last_reinforced_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?, 0, ?, ?, ?)
                ''', (user_id, text, category or 'general', stored_vector, confidence,
                      source, now, now, now))
                rule_id = cursor.lastrowid
                artifact_type = 'rule'

        if artifact_type == 'rule':
            get_vector_store().upsert('rules', rule_id, user_id, vector, {'category': category or 'general'})
            logger.info(f"New rule {rule_id} for {user_id} ({category}): {text[:80]}")
        else:
            logger.info(f"Reinforced rule {rule_id} for {user_id} (similarity {similarity:.3f})")
        log_event('learning', artifact_type, json.dumps({
            'user_id': user_id, 'rule_id': rule_id, 'category': category, 'source': source,
        }))
        return artifact_type, rule_id

    @staticmethod
    def adjust_rule_confidence(user_id: str, rule_id: int, delta: float,
                               deactivate_below: float = RULE_DEACTIVATE_BELOW) -> Optional[float]:
        """Shift a rule's confidence by delta (clamped to [0, 1]). Returns the new value."""
        now = _ts()
        with atomic(f"rules:{user_id}") as conn:
            row = conn.execute('SELECT confidence, active FROM agent_rules WHERE id = ? AND user_id = ?',
                               (rule_id, user_id)).fetchone()
            if row is None:
                return None
            new_confidence = round(max(0.0, min(1.0, row['confidence'] + delta)), 4)
            active = 0 if new_confidence < deactivate_below else row['active']
            conn.execute('UPDATE agent_rules SET confidence = ?, active = ?, updated_at = ? WHERE id = ?',
                         (new_confidence, active, now, rule_id))
            if delta > 0:
                conn.execute('''
                    UPDATE agent_rules
                    SET last_reinforced_at = ?, reinforcement_count = reinforcement_count + 1
                    WHERE id = ?
                ''', (now, rule_id))
        return new_confidence

    @staticmethod
    def get_active_rules(user_id: str, category: str = None, limit: int = 20) -> List[Dict]:
        conn = _get_conn()
        if category:
            rows = conn.execute('''
                SELECT * FROM agent_rules WHERE user_id = ? AND active = 1 AND category = ?
                ORDER BY confidence DESC LIMIT ?
            ''', (user_id, category, limit)).fetchall()
        else:
            rows = conn.execute('''
                SELECT * FROM agent_rules WHERE user_id = ? AND active = 1
                ORDER BY confidence DESC LIMIT ?
            ''', (user_id, limit)).fetchall()
        conn.close()
        return [_record(r) for r in rows]

    @staticmethod
    def get_rule(rule_id: int) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM agent_rules WHERE id = ?', (rule_id,)).fetchone()
        conn.close()
        return _record(row) if row else None

    @staticmethod
    def decay_stale_rules(user_id: str = None, days_threshold: float = None,
                          decay_amount: float = None) -> int:
        """
        Lower the confidence of active rules not reinforced within days_threshold
        days by decay_amount, never below 0. Rules that reach 0 are deactivated,
        not deleted. With no user_id every user's rules are decayed.
        Returns the number of rules decayed.
        """
        days = Config.DECAY_DAYS_THRESHOLD if days_threshold is None else days_threshold
        amount = Config.DECAY_AMOUNT if decay_amount is None else decay_amount
        if days < 0 or amount < 0:
            raise ValueError("days_threshold and decay_amount must be non-negative")

        if user_id is None:
            conn = _get_conn()
            users = [r['user_id'] for r in conn.execute(
                'SELECT DISTINCT user_id FROM agent_rules WHERE active = 1').fetchall()]
            conn.close()
        else:
            users = [user_id]

        cutoff = _ts_ago(days=days)
        now = _ts()
        decayed = 0
        deactivated = 0
        for uid in users:
            with atomic(f"rules:{uid}") as conn:
                stale = conn.execute('''
                    SELECT id, confidence FROM agent_rules
                    WHERE user_id = ? AND active = 1 AND last_reinforced_at < ?
                ''', (uid, cutoff)).fetchall()
                for rule in stale:
                    new_confidence = round(max(0.0, rule['confidence'] - amount), 4)
                    active = 1 if new_confidence > 0 else 0
                    conn.execute('UPDATE agent_rules SET confidence = ?, active = ?, updated_at = ? WHERE id = ?',
                                 (new_confidence, active, now, rule['id']))
                    decayed += 1
                    if not active:
                        deactivated += 1

        if decayed:
            logger.info(f"Decayed {decayed} stale rules ({deactivated} deactivated)")
            log_event('decay', 'rules_decayed', json.dumps({
                'user_id': user_id, 'decayed': decayed, 'deactivated': deactivated,
                'days_threshold': days, 'decay_amount': amount,
            }))
        return decayed

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    @staticmethod
    def upsert_preference(user_id: str, category: str, preference_key: str, value,
                          source: str = 'explicit', confidence: float = 0.7) -> int:
        """Insert or replace the preference keyed by (user_id, preference_key)."""
        key = (preference_key or '').strip()
        if not user_id:
            raise ValueError("user_id is required")
        if not key:
            raise ValueError("preference_key is required")
        value_text = value if isinstance(value, str) else _dumps(value)
        if not value_text.strip():
            raise ValueError("preference value is required")
        vector = get_embedding_provider().embed_required(preference_text(category, key, value_text))
        now = _ts()

        with atomic(f"preferences:{user_id}") as conn:
            conn.execute('''
                INSERT INTO agent_preferences
                (user_id, category, preference_key, value, source, confidence, embedding,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, preference_key) DO UPDATE SET
                    category = excluded.category, value = excluded.value,
                    source = excluded.source, confidence = excluded.confidence,
                    embedding = excluded.embedding, updated_at = excluded.updated_at
            ''', (user_id, category or 'general', key, value_text, source, confidence,
                  serialize_vector(vector), now, now))
            row = conn.execute('SELECT id FROM agent_preferences WHERE user_id = ? AND preference_key = ?',
                               (user_id, key)).fetchone()

        preference_id = row['id']
        get_vector_store().upsert('preferences', preference_id, user_id, vector,
                                  {'category': category or 'general', 'preference_key': key})
        return preference_id

    @staticmethod
    def get_preferences(user_id: str, category: str = None) -> List[Dict]:
        conn = _get_conn()
        if category:
            rows = conn.execute('''
                SELECT * FROM agent_preferences WHERE user_id = ? AND category = ?
                ORDER BY updated_at DESC
            ''', (user_id, category)).fetchall()
        else:
            rows = conn.execute('SELECT * FROM agent_preferences WHERE user_id = ? ORDER BY updated_at DESC',
                                (user_id,)).fetchall()
        conn.close()
        return [_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Corrections (append-only)
    # ------------------------------------------------------------------

    @staticmethod
    def insert_correction(user_id: str, original_action: str, correction: str,
                          context_snapshot=None, category: str = 'general',
                          decision_id: int = None) -> Tuple[int, List[float]]:
        """Append a correction with its embedding. Returns (id, vector)."""
        if not user_id:
            raise ValueError("user_id is required")
        if not (correction or '').strip():
            raise ValueError("correction text is required")
        original_action = original_action or ''
        vector = get_embedding_provider().embed_required(correction_text(original_action, correction))
        snapshot = context_snapshot if context_snapshot is None or isinstance(context_snapshot, str) \
            else _dumps(context_snapshot)

        with get_db() as conn:
            cursor = conn.execute('''
                INSERT INTO agent_corrections
                (user_id, decision_id, original_action, correction_text, context_snapshot,
                 category, embedding, pattern_matched, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            ''', (user_id, decision_id, original_action, correction.strip(), snapshot,
                  category or 'general', serialize_vector(vector), _ts()))
            correction_id = cursor.lastrowid

        get_vector_store().upsert('corrections', correction_id, user_id, vector,
                                  {'category': category or 'general'})
        return correction_id, vector

    @staticmethod
    def get_unmatched_corrections(user_id: str, limit: int = 50) -> List[Dict]:
        """Unmatched corrections, embeddings included, newest first."""
        conn = _get_conn()
        rows = conn.execute('''
            SELECT * FROM agent_corrections
            WHERE user_id = ? AND pattern_matched = 0
            ORDER BY created_at DESC, id DESC LIMIT ?
        ''', (user_id, limit)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    @staticmethod
    def mark_corrections_matched(correction_ids: List[int]):
        if not correction_ids:
            return
        placeholders = ', '.join('?' for _ in correction_ids)
        with get_db() as conn:
            conn.execute(f'UPDATE agent_corrections SET pattern_matched = 1 WHERE id IN ({placeholders})',
                         list(correction_ids))

    @staticmethod
    def users_with_unmatched_corrections(min_count: int = 3) -> List[str]:
        conn = _get_conn()
        rows = conn.execute('''
            SELECT user_id FROM agent_corrections WHERE pattern_matched = 0
            GROUP BY user_id HAVING COUNT(*) >= ?
        ''', (min_count,)).fetchall()
        conn.close()
        return [r['user_id'] for r in rows]

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    @staticmethod
    def insert_outcome(user_id: str, decision_id: int, success: bool, outcome_type: str,
                       detail=None, tool_name: str = None, category: str = None) -> Optional[int]:
        """Link a measured result to a decision. Returns None if one already exists."""
        now = _ts()
        with get_db() as conn:
            cursor = conn.execute('''
                INSERT OR IGNORE INTO agent_outcomes
                (user_id, decision_id, tool_name, category, success, outcome_type, detail,
                 measured_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user_id, decision_id, tool_name, category, 1 if success else 0, outcome_type,
                  detail if detail is None or isinstance(detail, str) else _dumps(detail), now, now))
            if cursor.rowcount != 1:
                return None
            row = conn.execute('SELECT id FROM agent_outcomes WHERE decision_id = ?',
                               (decision_id,)).fetchone()
        return row['id']

    @staticmethod
    def get_outcome_for_decision(decision_id: int) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM agent_outcomes WHERE decision_id = ?', (decision_id,)).fetchone()
        conn.close()
        return dict(row) if row else None

    @staticmethod
    def decisions_awaiting_outcome(user_id: str = None, grace_hours: float = None,
                                   limit: int = 200) -> List[Dict]:
        """
        Executed or approved decisions older than the grace period that have
        no outcome yet, oldest first.
        """
        grace_hours = Config.OUTCOME_GRACE_HOURS if grace_hours is None else grace_hours
        params = [_ts_ago(hours=grace_hours)]
        user_clause = ''
        if user_id:
            user_clause = 'AND d.user_id = ?'
            params.append(user_id)
        params.append(limit)
        conn = _get_conn()
        rows = conn.execute(f'''
            SELECT d.* FROM agent_decisions d
            LEFT JOIN agent_outcomes o ON o.decision_id = d.id
            WHERE o.id IS NULL AND d.created_at < ?
              AND (d.was_auto_executed = 1 OR d.owner_feedback = 'approved')
              {user_clause}
            ORDER BY d.created_at, d.id LIMIT ?
        ''', params).fetchall()
        conn.close()
        return [_record(r) for r in rows]

    @staticmethod
    def get_recent_outcomes(user_id: str, tool_name: str, category: str = None,
                            limit: int = 20) -> List[int]:
        """Success flags (1/0) of the latest outcomes for the tool, newest first."""
        conn = _get_conn()
        if category:
            rows = conn.execute('''
                SELECT success FROM agent_outcomes
                WHERE user_id = ? AND tool_name = ? AND category = ?
                ORDER BY measured_at DESC, id DESC LIMIT ?
            ''', (user_id, tool_name, category, limit)).fetchall()
        else:
            rows = conn.execute('''
                SELECT success FROM agent_outcomes
                WHERE user_id = ? AND tool_name = ?
                ORDER BY measured_at DESC, id DESC LIMIT ?
            ''', (user_id, tool_name, limit)).fetchall()
        conn.close()
        return [r['success'] for r in rows]

    # ------------------------------------------------------------------
    # Golden examples
    # ------------------------------------------------------------------

    @staticmethod
    def add_golden_example(tool_name: str, description: str, user_id: str = None) -> int:
        """Curate a known-correct invocation. user_id None makes it global."""
        if not tool_name or not (description or '').strip():
            raise ValueError("tool_name and description are required")
        vector = get_embedding_provider().embed(description)
        with get_db() as conn:
            cursor = conn.execute('''
                INSERT INTO agent_golden_examples (user_id, tool_name, description, embedding, active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
            ''', (user_id, tool_name, description.strip(), serialize_vector(vector), _ts()))
            return cursor.lastrowid

    @staticmethod
    def get_golden_examples(user_id: str, tool_name: str = None) -> List[Dict]:
        """Active golden examples visible to the user, embeddings included."""
        conn = _get_conn()
        if tool_name:
            rows = conn.execute('''
                SELECT * FROM agent_golden_examples
                WHERE active = 1 AND (user_id = ? OR user_id IS NULL) AND tool_name = ?
            ''', (user_id, tool_name)).fetchall()
        else:
            rows = conn.execute('''
                SELECT * FROM agent_golden_examples
                WHERE active = 1 AND (user_id = ? OR user_id IS NULL)
            ''', (user_id,)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    @staticmethod
    def cleanup_old_learning_data(retention_days: int = None) -> Dict:
        """
        Prune learning data past the retention window:
        - decisions older than the cutoff with no feedback and no embedding
        - outcomes older than twice the cutoff
        - audit events older than the cutoff
        - active rules with confidence below 0.2 are deactivated
        - tool genomes idle beyond the cutoff have their success EMA reset to 0.9
        """
        days = Config.RETENTION_DAYS if retention_days is None else retention_days
        if days <= 0:
            raise ValueError("retention_days must be positive")
        cutoff = _ts_ago(days=days)
        outcome_cutoff = _ts_ago(days=days * 2)
        now = _ts()

        with get_db() as conn:
            decisions = conn.execute('''
                DELETE FROM agent_decisions
                WHERE created_at < ? AND owner_feedback IS NULL AND embedding IS NULL
            ''', (cutoff,)).rowcount
            outcomes = conn.execute('DELETE FROM agent_outcomes WHERE created_at < ?',
                                    (outcome_cutoff,)).rowcount
            events = conn.execute('DELETE FROM agent_events WHERE timestamp < ?', (cutoff,)).rowcount
            rules = conn.execute('''
                UPDATE agent_rules SET active = 0, updated_at = ?
                WHERE active = 1 AND confidence < ?
            ''', (now, RULE_RETENTION_FLOOR)).rowcount
            genomes = conn.execute('''
                UPDATE tool_genome SET success_rate_ema = 0.9, updated_at = ?
                WHERE last_executed_at < ? AND success_rate_ema <> 0.9
            ''', (now, cutoff)).rowcount

            result = {
                'decisions_deleted': decisions,
                'outcomes_deleted': outcomes,
                'events_deleted': events,
                'rules_deactivated': rules,
                'genomes_reset': genomes,
            }
            for table, count in (('agent_decisions', decisions), ('agent_outcomes', outcomes),
                                 ('agent_events', events), ('agent_rules', rules),
                                 ('tool_genome', genomes)):
                if count:
                    conn.execute('''
                        INSERT INTO retention_log (table_name, rows_affected, detail, timestamp)
                        VALUES (?, ?, ?, ?)
                    ''', (table, count, f"retention_days={days}", now))

        logger.info(f"Learning data cleanup: {result}")
        return result
