"""
Agent Engine — Outcome Tracker
===============================
Closes the feedback loop: once a decision has had time to play out, check
the business records for whether it worked and link an outcome to it.

Measurers are keyed by tool. A measurer returns (success, outcome_type,
detail), or None when the result cannot be judged yet; the decision is
then retried on the next run.
"""

import json
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

from agent_engine.business import BusinessRecords
from agent_engine.db import _parse_ts, _utcnow, log_event
from agent_engine.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

# How long a reminder gets before unpaid arrears count as a failure
ARREARS_MEASURE_DAYS = 14

Measurement = Optional[Tuple[bool, str, Dict]]


def _age(decision: Dict) -> timedelta:
    return _utcnow() - _parse_ts(decision['created_at'])


def _measure_rent_reminder(decision: Dict) -> Measurement:
    arrears_id = (decision.get('tool_input') or {}).get('arrears_id')
    arrears = BusinessRecords.get_arrears(decision['user_id'], arrears_id) if arrears_id else None
    if arrears is None:
        return False, 'entity_missing', {'arrears_id': arrears_id}
    if arrears.get('is_resolved'):
        return True, 'arrears_resolved', {'arrears_id': arrears_id}
    if _age(decision) >= timedelta(days=ARREARS_MEASURE_DAYS):
        return False, 'arrears_unresolved', {'arrears_id': arrears_id,
                                             'days_overdue': arrears.get('days_overdue')}
    return None


def _measure_maintenance(decision: Dict) -> Measurement:
    request_id = (decision.get('tool_input') or {}).get('request_id')
    if not request_id:
        return _measure_executed(decision)
    request = BusinessRecords.get_maintenance_request(decision['user_id'], request_id)
    if request is None:
        return False, 'entity_missing', {'request_id': request_id}
    if request.get('assigned_trade') or request.get('status') == 'completed':
        return True, 'trade_engaged', {'request_id': request_id, 'status': request.get('status')}
    return False, 'no_trade_assigned', {'request_id': request_id, 'status': request.get('status')}


def _measure_inspection(decision: Dict) -> Measurement:
    tool_input = decision.get('tool_input') or {}
    property_id = tool_input.get('property_id')
    scheduled = [i for i in BusinessRecords.get_inspections(decision['user_id'], property_id)
                 if i['scheduled_date'] == tool_input.get('scheduled_date')] if property_id else []
    if not scheduled:
        return False, 'entity_missing', {'property_id': property_id}
    inspection = scheduled[0]
    if inspection['status'] == 'cancelled':
        return False, 'inspection_cancelled', {'inspection_id': inspection['id']}
    return True, 'inspection_' + inspection['status'], {'inspection_id': inspection['id']}


def _measure_executed(decision: Dict) -> Measurement:
    if decision.get('owner_feedback') == 'rejected':
        return False, 'owner_rejected', {}
    return True, 'executed', {'auto': bool(decision.get('was_auto_executed'))}


MEASURERS: Dict[str, Callable[[Dict], Measurement]] = {
    'send_rent_reminder': _measure_rent_reminder,
    'assign_trade': _measure_maintenance,
    'create_maintenance': _measure_maintenance,
    'triage_maintenance': _measure_maintenance,
    'schedule_inspection': _measure_inspection,
}


class OutcomeTracker:
    """Measures the real-world result of executed and approved decisions."""

    @staticmethod
    def measure(decision: Dict) -> Measurement:
        measurer = MEASURERS.get(decision['tool_name'], _measure_executed)
        return measurer(decision)

    @staticmethod
    def run(user_id: str = None, grace_hours: float = None) -> int:
        """Measure every decision past its grace period. Returns outcomes recorded."""
        recorded = 0
        for decision in KnowledgeStore.decisions_awaiting_outcome(user_id, grace_hours):
            try:
                measurement = OutcomeTracker.measure(decision)
            except Exception as e:
                logger.error(f"Outcome measurement failed for decision {decision['id']}: {e}")
                continue
            if measurement is None:
                continue
            success, outcome_type, detail = measurement
            outcome_id = KnowledgeStore.insert_outcome(
                decision['user_id'], decision['id'], success, outcome_type, detail,
                tool_name=decision['tool_name'], category=decision['category'])
            if outcome_id is not None:
                recorded += 1
        if recorded:
            log_event('outcomes', 'measured', json.dumps({'user_id': user_id, 'recorded': recorded}))
            logger.info(f"Recorded {recorded} outcomes" + (f" for {user_id}" if user_id else ''))
        return recorded
