"""
Tests for the tool-using chat turn.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from config import Config
from db import get_db
from agent_engine.autonomy import AutonomyStore
from agent_engine.business import BusinessRecords
from agent_engine.chat import AgentChat, ConversationNotFound, ConversationStore, build_system_prompt
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.pending import PendingActions

OWNER = 'owner-1'
OTHER_OWNER = 'owner-2'


def _call(name, arguments, call_id='call-1'):
    call = MagicMock(id=call_id)
    call.function.name = name
    call.function.arguments = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return call


def _completion(content=None, tool_calls=None, tokens=10):
    message = MagicMock(content=content, tool_calls=tool_calls)
    return MagicMock(choices=[MagicMock(message=message)], usage=MagicMock(total_tokens=tokens))


class TestRespond:
    """Test a full chat turn against a mocked model."""

    def test_empty_message_rejected(self):
        with pytest.raises(ValueError):
            AgentChat.respond(OWNER, '   ')

    def test_plain_reply_persisted(self):
        with patch('agent_engine.chat.chat_completion', return_value=_completion('Hello, how can I help?')):
            result = AgentChat.respond(OWNER, 'Hi there')

        assert result['message'] == 'Hello, how can I help?'
        assert result['tokensUsed'] == 10
        assert result['toolsUsed'] == []
        roles = [m['role'] for m in ConversationStore.messages(result['conversationId'])]
        assert roles == ['user', 'assistant']

    def test_foreign_conversation(self):
        conversation_id = ConversationStore.create(OTHER_OWNER, 'their chat')
        with pytest.raises(ConversationNotFound):
            AgentChat.respond(OWNER, 'Hello', conversation_id)

    def test_query_tool_executes(self, business):
        responses = [
            _completion(tool_calls=[_call('get_properties', {})]),
            _completion('You have one property on Harbour St.'),
        ]
        with patch('agent_engine.chat.chat_completion', side_effect=responses) as completion:
            result = AgentChat.respond(OWNER, 'Which properties do I own?')

        assert result['toolsUsed'] == ['get_properties']
        assert result['tokensUsed'] == 20
        tool_message = completion.call_args_list[1][0][0][-1]
        assert tool_message['role'] == 'tool'
        assert json.loads(tool_message['content'])['data']['count'] == 1

    def test_action_drafted_for_approval(self, business, recorder):
        responses = [
            _completion(tool_calls=[_call('send_rent_reminder', {'arrears_id': business['arrears_id']})]),
            _completion('I have queued a reminder for your approval.'),
        ]
        with patch('agent_engine.chat.chat_completion', side_effect=responses):
            result = AgentChat.respond(OWNER, 'Remind Sam about the rent')

        assert result['toolsUsed'] == []
        assert [p['tool_name'] for p in result['pendingActions']] == ['send_rent_reminder']
        assert BusinessRecords.get_messages(OWNER, business['arrears_id']) == []

        action = PendingActions.get(result['pendingActions'][0]['id'], OWNER)
        assert action['conversation_id'] == result['conversationId']
        recorder.flush()
        decision = KnowledgeStore.get_decision_by_ref(action['decision_ref'])
        assert decision['disposition'] == 'draft'
        assert decision['tool_name'] == 'send_rent_reminder'

    def test_hands_off_executes_action(self, business, recorder):
        AutonomyStore.set_preset(OWNER, 'hands_off')
        responses = [
            _completion(tool_calls=[_call('send_rent_reminder', {'arrears_id': business['arrears_id'],
                                                                 'tone': 'friendly'})]),
            _completion('Reminder sent.'),
        ]
        with patch('agent_engine.chat.chat_completion', side_effect=responses):
            result = AgentChat.respond(OWNER, 'Remind Sam about the rent')

        assert result['toolsUsed'] == ['send_rent_reminder']
        assert result['pendingActions'] == []
        assert len(BusinessRecords.get_messages(OWNER, business['arrears_id'])) == 1

    def test_disabled_domain_blocks_action(self, recorder):
        """An action tool is blocked when the business area it touches is disabled."""
        AutonomyStore.set_category_level(OWNER, 'compliance', 0)
        responses = [
            _completion(tool_calls=[_call('record_compliance', {'item_id': 'c1'})]),
            _completion('I am not allowed to record compliance items.'),
        ]
        with patch('agent_engine.chat.chat_completion', side_effect=responses) as completion, \
                patch('agent_engine.chat.ToolDispatcher.run') as run:
            result = AgentChat.respond(OWNER, 'Mark the smoke alarm check as done')

        run.assert_not_called()
        assert result['toolsUsed'] == []
        assert result['pendingActions'] == []
        assert PendingActions.list_pending(OWNER) == []
        tool_message = completion.call_args_list[1][0][0][-1]
        assert json.loads(tool_message['content'])['blocked'] is True

        recorder.flush()
        with get_db() as conn:
            row = conn.execute("SELECT disposition FROM agent_decisions WHERE tool_name = 'record_compliance'")
            assert row.fetchone()['disposition'] == 'block'

    def test_bad_arguments_reported_to_model(self):
        responses = [
            _completion(tool_calls=[_call('get_property', '{not json'), _call('fly_drone', {}, 'call-2')]),
            _completion('Sorry, something went wrong.'),
        ]
        with patch('agent_engine.chat.chat_completion', side_effect=responses) as completion:
            AgentChat.respond(OWNER, 'Show me the property')

        tool_messages = [m for m in completion.call_args_list[1][0][0] if m['role'] == 'tool']
        errors = [json.loads(m['content'])['error'] for m in tool_messages]
        assert 'not valid JSON' in errors[0]
        assert errors[1] == 'Unknown tool: fly_drone'

    def test_tool_round_limit(self, business, monkeypatch):
        monkeypatch.setattr(Config, 'CHAT_MAX_TOOL_ROUNDS', 2)
        with patch('agent_engine.chat.chat_completion',
                   return_value=_completion(tool_calls=[_call('get_properties', {})])) as completion:
            result = AgentChat.respond(OWNER, 'Keep looking')

        assert completion.call_count == 2
        assert result['message'].startswith("I've reached the limit")

    def test_model_failure_propagates(self):
        with patch('agent_engine.chat.chat_completion', side_effect=RuntimeError('upstream down')):
            with pytest.raises(RuntimeError):
                AgentChat.respond(OWNER, 'Hello')

    def test_correction_recorded(self):
        with patch('agent_engine.chat.chat_completion', return_value=_completion('I will email the tenant today.')):
            first = AgentChat.respond(OWNER, 'Follow up with the tenant')
        with patch('agent_engine.chat.chat_completion', return_value=_completion('Understood.')):
            AgentChat.respond(OWNER, "No, that's wrong. Call them instead", first['conversationId'])

        corrections = KnowledgeStore.get_unmatched_corrections(OWNER)
        assert len(corrections) == 1
        assert corrections[0]['original_action'] == 'I will email the tenant today.'
        assert corrections[0]['correction_text'] == "No, that's wrong. Call them instead"


class TestSystemPrompt:
    """Test system prompt assembly."""

    def test_includes_guardrails(self):
        from agent_engine.genome import ToolGenome
        ToolGenome.record_failure_pattern(OWNER, 'renew_lease', 'new_end_date out of range', 'tenancy_id=t1')
        prompt = build_system_prompt(OWNER, 'Renew the lease')
        assert 'property management agent' in prompt
        assert 'Known tool pitfalls' in prompt

    def test_no_memory_sections_for_new_owner(self):
        prompt = build_system_prompt(OWNER, 'Hello')
        assert 'Rules learned' not in prompt
        assert 'Owner preferences' not in prompt
