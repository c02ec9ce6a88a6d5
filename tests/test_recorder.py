"""
Tests for the fire-and-forget decision recorder.
"""

from unittest.mock import patch

import pytest

from constants import CONFIDENCE_FACTORS
from agent_engine.confidence import ConfidenceError
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.recorder import DecisionRecorder, get_recorder, new_decision_ref, set_recorder

OWNER = 'owner-1'


def _factors(composite=0.74):
    factors = {name: 0.8 for name in CONFIDENCE_FACTORS}
    factors['composite'] = composite
    return factors


class TestDecisionRecorder:
    """Test queueing, ordering and spooling of decisions."""

    def test_record_persists_after_flush(self, recorder):
        ref = recorder.record(OWNER, 'send_rent_reminder', 'rent_collection', 'arrears_id=a1',
                              {'arrears_id': 'a1'}, 'Rent is 10 days overdue', _factors(), 'draft')
        recorder.flush()

        decision = KnowledgeStore.get_decision_by_ref(ref)
        assert decision['tool_name'] == 'send_rent_reminder'
        assert decision['tool_input'] == {'arrears_id': 'a1'}
        assert decision['confidence'] == 0.74
        assert decision['disposition'] == 'draft'
        assert KnowledgeStore.get_decision_embedding(decision['id']) is not None
        assert recorder.persisted == 1

    def test_conversation_sequence(self, recorder):
        refs = [recorder.record(OWNER, 'draft_message', 'generate', f'draft {i}', conversation_id=7)
                for i in range(3)]
        other = recorder.record(OWNER, 'draft_message', 'generate', 'unrelated')
        recorder.flush()

        assert [KnowledgeStore.get_decision_by_ref(r)['sequence'] for r in refs] == [1, 2, 3]
        assert KnowledgeStore.get_decision_by_ref(other)['sequence'] == 0

    def test_sequence_cache_bounded(self, tmp_path):
        """Only the most recent conversations keep an in-memory counter."""
        recorder = DecisionRecorder(max_attempts=1, spool_dir=str(tmp_path / 'lru-spool'), max_conversations=2)
        first = [recorder.record(OWNER, 'draft_message', 'generate', f'draft {i}', conversation_id=1)
                 for i in range(2)]
        for conversation_id in (2, 3, 4):
            recorder.record(OWNER, 'draft_message', 'generate', 'other', conversation_id=conversation_id)
        recorder.flush()
        assert list(recorder._sequences) == [3, 4]

        resumed = recorder.record(OWNER, 'draft_message', 'generate', 'draft 2', conversation_id=1)
        recorder.flush()
        recorder.stop()

        assert len(recorder._sequences) == 2
        assert [KnowledgeStore.get_decision_by_ref(r)['sequence'] for r in first + [resumed]] == [1, 2, 3]

    def test_given_ref_kept(self, recorder):
        ref = new_decision_ref()
        assert recorder.record(OWNER, 'draft_message', 'generate', decision_ref=ref) == ref

    def test_redelivery_is_idempotent(self, recorder):
        ref = new_decision_ref()
        recorder.record(OWNER, 'draft_message', 'generate', 'first', decision_ref=ref)
        recorder.record(OWNER, 'draft_message', 'generate', 'first', decision_ref=ref)
        recorder.flush()
        assert recorder.persisted == 2
        assert KnowledgeStore.get_decision_by_ref(ref)['input_summary'] == 'first'

    @pytest.mark.parametrize('user_id, tool_name, category', [
        ('', 'draft_message', 'generate'),
        (OWNER, '', 'generate'),
        (OWNER, 'draft_message', ''),
    ])
    def test_required_fields(self, recorder, user_id, tool_name, category):
        with pytest.raises(ValueError):
            recorder.record(user_id, tool_name, category)

    def test_partial_factors_rejected(self, recorder):
        factors = _factors()
        del factors['outcome_track']
        with pytest.raises(ConfidenceError):
            recorder.record(OWNER, 'send_rent_reminder', 'rent_collection', confidence_factors=factors)

    def test_failed_write_spooled_then_drained(self, tmp_path):
        recorder = DecisionRecorder(max_attempts=1, spool_dir=str(tmp_path / 'failing-spool'))
        with patch.object(KnowledgeStore, 'insert_decision', side_effect=RuntimeError('database locked')):
            ref = recorder.record(OWNER, 'draft_message', 'generate', 'spooled draft')
            recorder.stop()
            assert recorder.spooled == 1
            assert recorder.pending() == 1

        assert KnowledgeStore.get_decision_by_ref(ref) is None
        assert recorder.drain_spool() == 1
        assert KnowledgeStore.get_decision_by_ref(ref)['input_summary'] == 'spooled draft'
        assert recorder.pending() == 0

    def test_full_queue_spools(self, tmp_path):
        recorder = DecisionRecorder(maxsize=1, max_attempts=1, spool_dir=str(tmp_path / 'full-spool'))
        with patch.object(recorder, '_ensure_worker'):
            refs = [recorder.record(OWNER, 'draft_message', 'generate', f'draft {i}') for i in range(3)]
        assert recorder.spooled == 2

        recorder.flush()
        assert all(KnowledgeStore.get_decision_by_ref(r) for r in refs)


class TestRecorderRegistry:
    """Test the process-wide recorder."""

    def test_set_recorder_stops_previous(self, tmp_path):
        previous = get_recorder()
        replacement = DecisionRecorder(spool_dir=str(tmp_path / 'replacement'))
        with patch.object(previous, 'stop') as stop:
            set_recorder(replacement)
        stop.assert_called_once()
        assert get_recorder() is replacement
