"""
Agent Engine — Tool Genome
===========================
Per-(user, tool) execution profile: success-rate EMA, duration EMA,
counters, recurring failure patterns and recent parameter shapes.

Structural, not semantic: nothing here is embedded. The success EMA feeds
the historical_accuracy confidence factor; failure patterns are surfaced to
the model as guardrails the next time the tool is offered.
"""

import json
import logging
from typing import Dict, List, Optional

from db import atomic
from agent_engine.db import _get_conn, _ts, _dumps, _loads, log_event
from agent_engine.helpers import _ema, _pattern_key

logger = logging.getLogger(__name__)

GENOME_EMA_ALPHA = 0.15
INITIAL_EMA_SUCCESS = 0.9
INITIAL_EMA_FAILURE = 0.5
PARAM_SAMPLES = 5
MAX_FAILURE_PATTERNS = 20


def _param_shape(params) -> str:
    return ','.join(sorted((params or {}).keys())) if isinstance(params, dict) else ''


def _add_failure_pattern(patterns: Dict, error_message: str, input_summary: str = None) -> str:
    key = _pattern_key(error_message) or 'unknown_error'
    entry = patterns.get(key) or {'count': 0, 'sample': (error_message or '')[:200]}
    entry['count'] += 1
    entry['last_seen'] = _ts()
    if input_summary:
        entry['last_input'] = input_summary[:200]
    patterns[key] = entry
    if len(patterns) > MAX_FAILURE_PATTERNS:
        # Drop the least frequent pattern
        weakest = min(patterns, key=lambda k: (patterns[k]['count'], patterns[k].get('last_seen', '')))
        patterns.pop(weakest)
    return key


class ToolGenome:
    """Execution genome per user and tool."""

    @staticmethod
    def get(user_id: str, tool_name: str) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM tool_genome WHERE user_id = ? AND tool_name = ?',
                           (user_id, tool_name)).fetchone()
        conn.close()
        if not row:
            return None
        genome = dict(row)
        genome['failure_patterns'] = _loads(genome.get('failure_patterns'), {})
        genome['parameter_insights'] = _loads(genome.get('parameter_insights'),
                                              {'success_params': [], 'failure_params': []})
        return genome

    @staticmethod
    def record_execution(user_id: str, tool_name: str, success: bool, duration_ms: float = 0,
                         error: str = None, params: Dict = None) -> Dict:
        """Fold one execution into the genome. Returns the updated profile."""
        shape = _param_shape(params)
        bucket = 'success_params' if success else 'failure_params'
        now = _ts()

        with atomic(f"genome:{user_id}:{tool_name}") as conn:
            row = conn.execute('SELECT * FROM tool_genome WHERE user_id = ? AND tool_name = ?',
                               (user_id, tool_name)).fetchone()
            if row:
                ema = round(_ema(row['success_rate_ema'], 1.0 if success else 0.0, GENOME_EMA_ALPHA), 4)
                avg_duration = round(_ema(row['avg_duration_ms'] or 0, duration_ms, GENOME_EMA_ALPHA), 2)
                patterns = _loads(row['failure_patterns'], {})
                insights = _loads(row['parameter_insights'], {'success_params': [], 'failure_params': []})
                total = row['total_executions'] + 1
                successes = row['successful_executions'] + (1 if success else 0)
                failures = row['failed_executions'] + (0 if success else 1)
            else:
                ema = INITIAL_EMA_SUCCESS if success else INITIAL_EMA_FAILURE
                avg_duration = round(duration_ms, 2)
                patterns = {}
                insights = {'success_params': [], 'failure_params': []}
                total, successes, failures = 1, (1 if success else 0), (0 if success else 1)

            samples = insights.setdefault(bucket, [])
            samples.append(shape)
            insights[bucket] = samples[-PARAM_SAMPLES:]
            if not success and error:
                _add_failure_pattern(patterns, error)

            if row:
                conn.execute('''
                    UPDATE tool_genome SET
                        total_executions = ?, successful_executions = ?, failed_executions = ?,
                        success_rate_ema = ?, avg_duration_ms = ?, failure_patterns = ?,
                        parameter_insights = ?, last_executed_at = ?, updated_at = ?
                    WHERE id = ?
                ''', (total, successes, failures, ema, avg_duration, _dumps(patterns),
                      _dumps(insights), now, now, row['id']))
            else:
                conn.execute('''
                    INSERT INTO tool_genome
                    (user_id, tool_name, total_executions, successful_executions, failed_executions,
                     success_rate_ema, avg_duration_ms, failure_patterns, parameter_insights,
                     last_executed_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (user_id, tool_name, total, successes, failures, ema, avg_duration,
                      _dumps(patterns), _dumps(insights), now, now))

        return {
            'tool_name': tool_name, 'total_executions': total,
            'successful_executions': successes, 'failed_executions': failures,
            'success_rate_ema': ema, 'avg_duration_ms': avg_duration,
        }

    @staticmethod
    def record_failure_pattern(user_id: str, tool_name: str, error_message: str,
                               input_summary: str = None) -> int:
        """
        Add a misuse pattern without counting an execution. Creates the
        genome row if needed. Returns the genome row id.
        """
        now = _ts()
        with atomic(f"genome:{user_id}:{tool_name}") as conn:
            row = conn.execute('SELECT id, failure_patterns FROM tool_genome WHERE user_id = ? AND tool_name = ?',
                               (user_id, tool_name)).fetchone()
            patterns = _loads(row['failure_patterns'], {}) if row else {}
            key = _add_failure_pattern(patterns, error_message, input_summary)
            if row:
                conn.execute('UPDATE tool_genome SET failure_patterns = ?, updated_at = ? WHERE id = ?',
                             (_dumps(patterns), now, row['id']))
                genome_id = row['id']
            else:
                cursor = conn.execute('''
                    INSERT INTO tool_genome (user_id, tool_name, failure_patterns, parameter_insights, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                ''', (user_id, tool_name, _dumps(patterns),
                      _dumps({'success_params': [], 'failure_params': []}), now))
                genome_id = cursor.lastrowid

        log_event('genome', 'failure_pattern', json.dumps({
            'user_id': user_id, 'tool_name': tool_name, 'pattern': key,
        }))
        return genome_id

    @staticmethod
    def guardrails(user_id: str, tool_name: str, limit: int = 3) -> List[str]:
        """Most frequent failure patterns for the tool, as prompt-ready lines."""
        genome = ToolGenome.get(user_id, tool_name)
        if not genome or not genome['failure_patterns']:
            return []
        ranked = sorted(genome['failure_patterns'].values(), key=lambda p: p['count'], reverse=True)
        return [f"{tool_name}: previously failed {p['count']}x with \"{p['sample'][:120]}\""
                for p in ranked[:limit]]

    @staticmethod
    def tools_with_guardrails(user_id: str) -> List[str]:
        conn = _get_conn()
        rows = conn.execute('''
            SELECT tool_name FROM tool_genome
            WHERE user_id = ? AND failure_patterns IS NOT NULL AND failure_patterns <> '{}'
        ''', (user_id,)).fetchall()
        conn.close()
        return [r['tool_name'] for r in rows]
