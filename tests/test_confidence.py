"""
Tests for the multi-factor confidence scorer.
"""

from unittest.mock import patch

import pytest

from constants import CONFIDENCE_FACTORS
from agent_engine.confidence import ConfidenceError, ConfidenceScorer, check_factors, composite_score
from agent_engine.genome import ToolGenome
from agent_engine.knowledge_store import KnowledgeStore

OWNER = 'owner-1'


def _factors(**overrides):
    factors = {name: 0.8 for name in CONFIDENCE_FACTORS}
    factors['composite'] = 0.8
    factors.update(overrides)
    return factors


class TestScoreDefaults:
    """Test scoring with no learning history."""

    def test_exempt_tool_not_scored(self):
        assert ConfidenceScorer.score(OWNER, 'get_properties') is None
        assert ConfidenceScorer.score(OWNER, 'remember') is None

    def test_unknown_tool_raises(self):
        with pytest.raises(ConfidenceError):
            ConfidenceScorer.score(OWNER, 'launch_rocket')

    def test_action_tool_neutral_composite(self):
        factors = ConfidenceScorer.score(OWNER, 'send_rent_reminder')
        assert set(factors) == set(CONFIDENCE_FACTORS) | {'composite'}
        assert factors['historical_accuracy'] == 0.8
        assert factors['source_quality'] == 0.85
        assert factors['precedent_alignment'] == 0.7
        assert factors['rule_alignment'] == 0.8
        assert factors['golden_alignment'] == 0.5
        assert factors['outcome_track'] == 0.7
        assert factors['composite'] == pytest.approx(0.74)

    def test_workflow_tool_neutral_composite(self):
        factors = ConfidenceScorer.score(OWNER, 'workflow_arrears_escalation')
        assert factors['source_quality'] == 0.7
        assert factors['composite'] == pytest.approx(0.725)

    def test_inferred_data_lowers_source_quality(self):
        factors = ConfidenceScorer.score(OWNER, 'suggest_rent_price')
        assert factors['source_quality'] == pytest.approx(0.45)

    def test_all_factors_in_unit_range(self):
        factors = ConfidenceScorer.score(OWNER, 'triage_maintenance')
        assert all(0.0 <= v <= 1.0 for v in factors.values())


class TestScoreEvidence:
    """Test how stored history moves each factor."""

    def test_genome_ema_used_after_three_executions(self):
        for _ in range(3):
            ToolGenome.record_execution(OWNER, 'send_rent_reminder', False, 120, error='SMTP timeout')
        factors = ConfidenceScorer.score(OWNER, 'send_rent_reminder')
        assert factors['historical_accuracy'] == pytest.approx(0.361)
        assert factors['composite'] < 0.74

    def test_genome_ignored_below_three_executions(self):
        ToolGenome.record_execution(OWNER, 'send_rent_reminder', False, 120)
        ToolGenome.record_execution(OWNER, 'send_rent_reminder', False, 120)
        assert ConfidenceScorer.score(OWNER, 'send_rent_reminder')['historical_accuracy'] == 0.8

    def test_approved_precedent_raises_alignment(self, embedder):
        text = 'send_rent_reminder arrears_id=a1 tone=friendly'
        decision_id = KnowledgeStore.insert_decision({
            'decision_ref': 'ref-p1', 'user_id': OWNER, 'tool_name': 'send_rent_reminder',
            'category': 'action', 'input_summary': text, 'embedding': embedder.embed(text),
        })
        KnowledgeStore.set_owner_feedback(OWNER, decision_id, 'approved')

        factors = ConfidenceScorer.score(OWNER, 'send_rent_reminder', embedding=embedder.embed(text))
        assert factors['precedent_alignment'] == pytest.approx(1.0)

    def test_recent_feedback_fallback(self):
        for ref, verdict in (('ref-a', 'approved'), ('ref-b', 'rejected')):
            decision_id = KnowledgeStore.insert_decision({
                'decision_ref': ref, 'user_id': OWNER, 'tool_name': 'send_rent_reminder',
                'category': 'action',
            })
            KnowledgeStore.set_owner_feedback(OWNER, decision_id, verdict)
        assert ConfidenceScorer.score(OWNER, 'send_rent_reminder')['precedent_alignment'] == 0.5

    def test_category_rules_used_without_embedding(self):
        KnowledgeStore.learn_rule(OWNER, 'Wait five days before a rent reminder', 'rent_collection')
        assert ConfidenceScorer.score(OWNER, 'send_rent_reminder')['rule_alignment'] == 0.5

    def test_outcomes_need_three_samples(self):
        for i in range(3):
            decision_id = KnowledgeStore.insert_decision({
                'decision_ref': f'ref-o{i}', 'user_id': OWNER, 'tool_name': 'send_rent_reminder',
                'category': 'action', 'was_auto_executed': True,
            })
            KnowledgeStore.insert_outcome(OWNER, decision_id, True, 'arrears_resolved',
                                          tool_name='send_rent_reminder')
        assert ConfidenceScorer.score(OWNER, 'send_rent_reminder')['outcome_track'] == 1.0

    def test_golden_example_present(self):
        KnowledgeStore.add_golden_example('send_rent_reminder', 'Friendly reminder after 3 days overdue')
        assert ConfidenceScorer.score(OWNER, 'send_rent_reminder')['golden_alignment'] == 1.0

    def test_store_failure_raises_confidence_error(self):
        with patch.object(KnowledgeStore, 'get_recent_outcomes', side_effect=RuntimeError('db down')):
            with pytest.raises(ConfidenceError, match='db down'):
                ConfidenceScorer.score(OWNER, 'send_rent_reminder')

    def test_wrong_dimension_embedding_raises(self):
        with pytest.raises(ConfidenceError):
            ConfidenceScorer.score(OWNER, 'send_rent_reminder', embedding=[0.1, 0.2])


class TestCheckFactors:
    """Test rejection of partial factor sets."""

    def test_none_passes_through(self):
        assert check_factors(None) is None

    def test_complete_factors_pass(self):
        factors = _factors()
        assert check_factors(factors) is factors

    def test_missing_factor_rejected(self):
        factors = _factors()
        del factors['golden_alignment']
        with pytest.raises(ConfidenceError, match='golden_alignment'):
            check_factors(factors)

    def test_null_composite_rejected(self):
        with pytest.raises(ConfidenceError):
            check_factors(_factors(composite=None))

    def test_out_of_range_rejected(self):
        with pytest.raises(ConfidenceError):
            check_factors(_factors(outcome_track=1.2))

    def test_composite_is_weighted_sum(self):
        assert composite_score(_factors()) == pytest.approx(0.8)
        assert composite_score(_factors(historical_accuracy=0.0)) == pytest.approx(0.56)
