"""
Tests for outcome measurement against business records.
"""

from unittest.mock import patch

from agent_engine.business import BusinessRecords
from agent_engine.db import _ts, _ts_ago
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.outcomes import OutcomeTracker

OWNER = 'owner-1'


def _decision(tool_name, tool_input, created_at=None, **extra):
    decision = {'user_id': OWNER, 'tool_name': tool_name, 'tool_input': tool_input,
                'created_at': created_at or _ts(), 'category': 'action'}
    decision.update(extra)
    return decision


def _stored_decision(ref, tool_name, tool_input, days_ago=3):
    return KnowledgeStore.insert_decision({
        'decision_ref': ref, 'user_id': OWNER, 'tool_name': tool_name, 'category': 'rent_collection',
        'tool_input': tool_input, 'was_auto_executed': True, 'created_at': _ts_ago(days=days_ago),
    })


class TestMeasure:
    """Test per-tool measurers."""

    def test_resolved_arrears_is_success(self, business):
        BusinessRecords.resolve_arrears(OWNER, business['arrears_id'])
        success, outcome_type, detail = OutcomeTracker.measure(
            _decision('send_rent_reminder', {'arrears_id': business['arrears_id']}))
        assert success is True
        assert outcome_type == 'arrears_resolved'
        assert detail == {'arrears_id': business['arrears_id']}

    def test_unresolved_arrears_waits(self, business):
        decision = _decision('send_rent_reminder', {'arrears_id': business['arrears_id']},
                             created_at=_ts_ago(days=5))
        assert OutcomeTracker.measure(decision) is None

    def test_unresolved_arrears_fails_after_two_weeks(self, business):
        decision = _decision('send_rent_reminder', {'arrears_id': business['arrears_id']},
                             created_at=_ts_ago(days=15))
        success, outcome_type, _ = OutcomeTracker.measure(decision)
        assert success is False
        assert outcome_type == 'arrears_unresolved'

    def test_missing_entity(self):
        success, outcome_type, _ = OutcomeTracker.measure(_decision('send_rent_reminder', {'arrears_id': 'gone'}))
        assert (success, outcome_type) == (False, 'entity_missing')

    def test_trade_assigned(self, business):
        BusinessRecords.assign_trade(OWNER, business['request_id'], 'Acme Plumbing')
        success, outcome_type, _ = OutcomeTracker.measure(
            _decision('triage_maintenance', {'request_id': business['request_id']}))
        assert (success, outcome_type) == (True, 'trade_engaged')

    def test_no_trade_assigned(self, business):
        success, outcome_type, _ = OutcomeTracker.measure(
            _decision('assign_trade', {'request_id': business['request_id']}))
        assert (success, outcome_type) == (False, 'no_trade_assigned')

    def test_scheduled_inspection(self, business):
        BusinessRecords.add_inspection(OWNER, business['property_id'], '2026-11-02')
        success, outcome_type, _ = OutcomeTracker.measure(_decision(
            'schedule_inspection', {'property_id': business['property_id'], 'scheduled_date': '2026-11-02'}))
        assert (success, outcome_type) == (True, 'inspection_scheduled')

    def test_default_measure(self):
        assert OutcomeTracker.measure(_decision('send_sms', {}, was_auto_executed=1))[:2] == (True, 'executed')
        assert OutcomeTracker.measure(_decision('send_sms', {}, owner_feedback='rejected'))[:2] == \
            (False, 'owner_rejected')


class TestOutcomeRun:
    """Test the outcome sweep."""

    def test_records_once(self, business):
        decision_id = _stored_decision('ref-1', 'send_rent_reminder', {'arrears_id': business['arrears_id']})
        BusinessRecords.resolve_arrears(OWNER, business['arrears_id'])

        assert OutcomeTracker.run(OWNER, grace_hours=48) == 1
        outcome = KnowledgeStore.get_outcome_for_decision(decision_id)
        assert outcome['success'] == 1
        assert outcome['outcome_type'] == 'arrears_resolved'
        assert outcome['tool_name'] == 'send_rent_reminder'
        assert OutcomeTracker.run(OWNER, grace_hours=48) == 0

    def test_undecided_retried_later(self, business):
        decision_id = _stored_decision('ref-2', 'send_rent_reminder', {'arrears_id': business['arrears_id']})
        assert OutcomeTracker.run(OWNER, grace_hours=48) == 0
        assert KnowledgeStore.get_outcome_for_decision(decision_id) is None
        assert len(KnowledgeStore.decisions_awaiting_outcome(OWNER, grace_hours=48)) == 1

    def test_within_grace_period_skipped(self, business):
        _stored_decision('ref-3', 'send_sms', {'to': '0400 000 000', 'body': 'hi'}, days_ago=0)
        assert OutcomeTracker.run(OWNER, grace_hours=48) == 0

    def test_measurer_failure_skips_decision(self, business):
        _stored_decision('ref-4', 'send_sms', {'to': '0400 000 000', 'body': 'hi'})
        _stored_decision('ref-5', 'send_rent_reminder', {'arrears_id': business['arrears_id']}, days_ago=20)
        original = OutcomeTracker.measure

        def flaky(decision):
            if decision['tool_name'] == 'send_sms':
                raise RuntimeError('measurement broke')
            return original(decision)

        with patch.object(OutcomeTracker, 'measure', side_effect=flaky):
            assert OutcomeTracker.run(OWNER, grace_hours=48) == 1
