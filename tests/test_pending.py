"""
Tests for draft actions awaiting owner approval.
"""

import pytest

from agent_engine.business import BusinessRecords
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.pending import PendingActionNotFound, PendingActions
from agent_engine.recorder import new_decision_ref

OWNER = 'owner-1'
OTHER_OWNER = 'owner-2'


@pytest.fixture
def drafted(business, recorder):
    """A drafted rent reminder with its decision recorded."""
    tool_input = {'arrears_id': business['arrears_id'], 'tone': 'friendly'}
    ref = recorder.record(OWNER, 'send_rent_reminder', 'rent_collection', 'arrears_id=a1, tone=friendly',
                          tool_input, 'Rent is 10 days overdue', disposition='draft',
                          decision_ref=new_decision_ref())
    action_id = PendingActions.create(OWNER, 'send_rent_reminder', tool_input, 'Send a friendly rent reminder',
                                      'rent_collection', decision_ref=ref)
    return action_id, ref


class TestPendingActions:
    """Test exactly-once approval and rejection."""

    def test_create_and_list(self, drafted):
        action_id, _ = drafted
        action = PendingActions.get(action_id, OWNER)
        assert action['status'] == 'pending'
        assert action['tool_input']['tone'] == 'friendly'
        assert [a['id'] for a in PendingActions.list_pending(OWNER)] == [action_id]
        assert PendingActions.get(action_id, OTHER_OWNER) is None

    def test_approve_executes_and_records_feedback(self, drafted, business):
        action_id, ref = drafted
        result = PendingActions.approve(action_id, OWNER)

        assert result['result']['success'] is True
        assert result['action']['status'] == 'executed'
        assert result['feedback']['feedback'] == 'approved'
        assert KnowledgeStore.get_decision_by_ref(ref)['owner_feedback'] == 'approved'
        assert len(BusinessRecords.get_messages(OWNER, business['arrears_id'])) == 1

    def test_failed_execution_marked_failed(self, drafted, business):
        action_id, _ = drafted
        BusinessRecords.resolve_arrears(OWNER, business['arrears_id'])
        result = PendingActions.approve(action_id, OWNER)
        assert result['result']['success'] is False
        assert result['action']['status'] == 'failed'

    def test_reject_with_reason_learns_rule(self, drafted):
        action_id, ref = drafted
        result = PendingActions.reject(action_id, OWNER, 'Wait until 14 days before reminding')

        assert result['action']['status'] == 'rejected'
        assert result['feedback']['feedback'] == 'rejected'
        assert result['rule']['artifact_type'] == 'rule'
        rule = KnowledgeStore.get_rule(result['rule']['rule_id'])
        assert rule['rule_text'] == 'When using "send_rent_reminder": Wait until 14 days before reminding'
        assert rule['category'] == 'rent_collection'

        decision = KnowledgeStore.get_decision_by_ref(ref)
        assert decision['owner_feedback'] == 'rejected'
        assert KnowledgeStore.get_outcome_for_decision(decision['id'])['outcome_type'] == 'owner_rejected'

    def test_reject_without_reason(self, drafted):
        action_id, _ = drafted
        result = PendingActions.reject(action_id, OWNER, '  ')
        assert result['rule'] is None
        assert KnowledgeStore.get_active_rules(OWNER) == []

    def test_resolved_exactly_once(self, drafted):
        action_id, _ = drafted
        PendingActions.approve(action_id, OWNER)
        with pytest.raises(PendingActionNotFound):
            PendingActions.approve(action_id, OWNER)
        with pytest.raises(PendingActionNotFound):
            PendingActions.reject(action_id, OWNER, 'too late')

    def test_other_user_cannot_resolve(self, drafted):
        action_id, _ = drafted
        with pytest.raises(PendingActionNotFound):
            PendingActions.approve(action_id, OTHER_OWNER)
        assert PendingActions.get(action_id, OWNER)['status'] == 'pending'

    def test_action_without_decision(self, business):
        action_id = PendingActions.create(OWNER, 'draft_message', {'purpose': 'Say hello to the new tenant'},
                                          'Welcome message', 'general')
        result = PendingActions.approve(action_id, OWNER)
        assert result['feedback'] is None
        assert result['result']['data']['sent'] is False
