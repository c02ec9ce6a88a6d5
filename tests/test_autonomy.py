"""
Tests for the autonomy gate, settings persistence and graduation.
"""

import pytest

from config import Config
from agent_engine.autonomy import AutonomyStore, gate
from agent_engine.types import AutonomyLevel, AutonomySettings, Disposition

OWNER = 'owner-1'


@pytest.fixture
def balanced():
    return AutonomySettings('balanced')


@pytest.fixture
def graduation_threshold(monkeypatch):
    monkeypatch.setattr(Config, 'GRADUATION_THRESHOLD', 3)
    return 3


class TestGate:
    """Test the level-to-disposition mapping and confidence demotion."""

    def test_query_auto_silent(self, balanced):
        assert gate(balanced, 'query').disposition == Disposition.AUTO_SILENT

    def test_level_two_drafts(self, balanced):
        result = gate(balanced, 'action', 0.74, required_level=3)
        assert result.disposition == Disposition.DRAFT
        assert result.effective_level == AutonomyLevel.DRAFT

    def test_level_three_auto_with_notice(self, balanced):
        result = gate(balanced, 'generate', 0.73, required_level=3)
        assert result.disposition == Disposition.AUTO_WITH_NOTICE

    def test_low_confidence_demotes_one_level(self, balanced):
        result = gate(balanced, 'generate', 0.4, required_level=3)
        assert result.configured_level == AutonomyLevel.AUTO_WITH_NOTICE
        assert result.effective_level == AutonomyLevel.DRAFT
        assert result.disposition == Disposition.DRAFT
        assert 'demoted' in result.reason

    def test_severe_confidence_demotes_two_levels(self, balanced):
        result = gate(balanced, 'generate', 0.2, required_level=3)
        assert result.effective_level == AutonomyLevel.SUGGEST
        assert result.disposition == Disposition.SUGGEST

    def test_demotion_never_blocks(self, balanced):
        result = gate(balanced, 'workflow', 0.05, required_level=1)
        assert result.effective_level == AutonomyLevel.SUGGEST
        assert result.disposition == Disposition.SUGGEST

    def test_category_minimum_applies(self, balanced):
        # 0.65 clears the default minimum but not the rent_collection one
        assert gate(balanced, 'maintenance', 0.65).effective_level == AutonomyLevel.DRAFT
        assert gate(balanced, 'rent_collection', 0.65).effective_level == AutonomyLevel.SUGGEST

    def test_disabled_category_blocks(self):
        result = gate(AutonomySettings('cautious'), 'workflow', 0.99, required_level=1)
        assert result.disposition == Disposition.BLOCK

    def test_confidence_never_promotes(self, balanced):
        assert gate(balanced, 'action', 1.0).effective_level == AutonomyLevel.DRAFT

    def test_required_level_caps_auto_to_draft(self):
        hands_off = AutonomySettings('hands_off')
        assert gate(hands_off, 'action', 0.9, required_level=3).disposition == Disposition.AUTO_WITH_NOTICE
        assert gate(hands_off, 'action', 0.9, required_level=4).disposition == Disposition.DRAFT

    def test_required_level_zero_always_drafts(self):
        result = gate(AutonomySettings('hands_off'), 'generate', 0.95, required_level=0)
        assert result.disposition == Disposition.DRAFT

    def test_custom_override(self):
        settings = AutonomySettings('custom', {'maintenance': 'L4'})
        assert gate(settings, 'maintenance', 0.9).disposition == Disposition.AUTO_SILENT
        assert gate(settings, 'action', 0.9).disposition == Disposition.DRAFT

    def test_custom_auto_silent_demoted_on_low_confidence(self):
        """An L4 override still loses levels when confidence is low."""
        settings = AutonomySettings('custom', {'maintenance': 'L4'})
        moderate = gate(settings, 'maintenance', 0.5)
        assert moderate.configured_level == AutonomyLevel.AUTO_SILENT
        assert moderate.effective_level == AutonomyLevel.AUTO_WITH_NOTICE
        assert moderate.disposition == Disposition.AUTO_WITH_NOTICE

        severe = gate(settings, 'maintenance', 0.2)
        assert severe.effective_level == AutonomyLevel.DRAFT
        assert severe.disposition == Disposition.DRAFT

    def test_severe_demotion_floors_at_suggest(self, balanced):
        """Two-level demotion from L2 stops at suggest."""
        result = gate(balanced, 'maintenance', 0.1)
        assert result.configured_level == AutonomyLevel.DRAFT
        assert result.effective_level == AutonomyLevel.SUGGEST
        assert result.disposition == Disposition.SUGGEST

    def test_disabled_domain_blocks_tool_category(self):
        """A disabled business domain blocks a tool whose own category is allowed."""
        settings = AutonomySettings('custom', {'compliance': 'L0'})
        result = gate(settings, 'action', 0.9, required_level=2, domain='compliance')
        assert result.disposition == Disposition.BLOCK
        assert 'compliance' in result.reason
        assert gate(settings, 'action', 0.9, required_level=2).disposition == Disposition.DRAFT

    def test_domain_level_and_minimum_apply(self):
        """The stricter level and the higher confidence minimum govern."""
        hands_off = AutonomySettings('hands_off')
        assert gate(hands_off, 'generate', 0.55).disposition == Disposition.AUTO_SILENT

        result = gate(hands_off, 'generate', 0.55, domain='maintenance')
        assert result.configured_level == AutonomyLevel.AUTO_WITH_NOTICE
        assert result.effective_level == AutonomyLevel.DRAFT
        assert result.disposition == Disposition.DRAFT

    def test_looser_domain_does_not_raise_level(self, balanced):
        result = gate(balanced, 'action', 0.9, required_level=2, domain='generate')
        assert result.configured_level == AutonomyLevel.DRAFT
        assert result.disposition == Disposition.DRAFT


class TestAutonomyTypes:
    """Test level parsing and settings records."""

    @pytest.mark.parametrize('value', [3, '3', 'L3', 'l3', ' L3 '])
    def test_parse_accepts_level_forms(self, value):
        assert AutonomyLevel.parse(value) == AutonomyLevel.AUTO_WITH_NOTICE

    @pytest.mark.parametrize('value', [True, 'L9', 'high', 3.5, None, 7])
    def test_parse_rejects_junk(self, value):
        with pytest.raises(ValueError):
            AutonomyLevel.parse(value)

    def test_unknown_preset_rejected(self):
        with pytest.raises(ValueError):
            AutonomySettings('reckless')

    def test_with_category_level_keeps_other_levels(self):
        settings = AutonomySettings('hands_off').with_category_level('maintenance', 1)
        assert settings.preset == 'custom'
        assert settings.level_for('maintenance') == AutonomyLevel.SUGGEST
        assert settings.level_for('generate') == AutonomyLevel.FULL_AUTO


class TestAutonomyStore:
    """Test per-user settings persistence."""

    def test_default_is_balanced(self):
        assert AutonomyStore.get_settings(OWNER) == AutonomySettings('balanced')

    def test_set_preset(self):
        AutonomyStore.set_preset(OWNER, 'hands_off')
        assert AutonomyStore.get_settings(OWNER).preset == 'hands_off'

    def test_custom_preset_materializes_current_levels(self):
        AutonomyStore.set_preset(OWNER, 'hands_off')
        settings = AutonomyStore.set_preset(OWNER, 'custom')
        assert settings.category_overrides['maintenance'] == 'L3'
        assert AutonomyStore.get_settings(OWNER).level_for('generate') == AutonomyLevel.FULL_AUTO

    def test_set_category_level(self):
        AutonomyStore.set_category_level(OWNER, 'maintenance', 'L0')
        settings = AutonomyStore.get_settings(OWNER)
        assert settings.preset == 'custom'
        assert settings.level_for('maintenance') == AutonomyLevel.DISABLED
        assert settings.level_for('action') == AutonomyLevel.DRAFT

    def test_unknown_category_rejected(self):
        with pytest.raises(ValueError):
            AutonomyStore.set_category_level(OWNER, 'pets', 2)

    def test_invalid_level_rejected(self):
        with pytest.raises(ValueError):
            AutonomyStore.set_category_level(OWNER, 'maintenance', 'L7')


class TestGraduation:
    """Test the consecutive-approval graduation loop."""

    def test_not_eligible_without_history(self, graduation_threshold):
        assert AutonomyStore.check_graduation(OWNER, 'maintenance') is None

    def test_proposal_after_threshold(self, graduation_threshold):
        for _ in range(3):
            AutonomyStore.record_approval(OWNER, 'maintenance')
        proposal = AutonomyStore.check_graduation(OWNER, 'maintenance')
        assert proposal == {
            'category': 'maintenance', 'current_level': 2, 'proposed_level': 3,
            'consecutive_approvals': 3, 'threshold': 3,
        }

    def test_rejection_resets_streak(self, graduation_threshold):
        AutonomyStore.record_approval(OWNER, 'maintenance')
        AutonomyStore.record_approval(OWNER, 'maintenance')
        AutonomyStore.record_rejection(OWNER, 'maintenance')
        AutonomyStore.record_approval(OWNER, 'maintenance')
        assert AutonomyStore.check_graduation(OWNER, 'maintenance') is None
        assert AutonomyStore.get_graduation(OWNER, 'maintenance')['total_rejections'] == 1

    def test_accept_raises_level_and_resets(self, graduation_threshold):
        for _ in range(3):
            AutonomyStore.record_approval(OWNER, 'maintenance')
        settings = AutonomyStore.accept_graduation(OWNER, 'maintenance')
        assert settings.level_for('maintenance') == AutonomyLevel.AUTO_WITH_NOTICE
        assert AutonomyStore.get_graduation(OWNER, 'maintenance')['consecutive_approvals'] == 0

    def test_accept_when_not_eligible(self, graduation_threshold):
        AutonomyStore.record_approval(OWNER, 'maintenance')
        with pytest.raises(ValueError):
            AutonomyStore.accept_graduation(OWNER, 'maintenance')

    def test_decline_doubles_threshold(self, graduation_threshold):
        for _ in range(3):
            AutonomyStore.record_approval(OWNER, 'maintenance')
        record = AutonomyStore.decline_graduation(OWNER, 'maintenance')
        assert record['threshold'] == 6
        assert record['consecutive_approvals'] == 0
        for _ in range(3):
            AutonomyStore.record_approval(OWNER, 'maintenance')
        assert AutonomyStore.check_graduation(OWNER, 'maintenance') is None

    def test_backoff_capped(self, graduation_threshold):
        AutonomyStore.record_approval(OWNER, 'maintenance')
        for _ in range(5):
            record = AutonomyStore.decline_graduation(OWNER, 'maintenance')
        assert record['backoff_multiplier'] == 8.0
        assert record['threshold'] == 24

    def test_full_auto_never_proposed(self, graduation_threshold):
        AutonomyStore.set_category_level(OWNER, 'maintenance', 4)
        for _ in range(3):
            AutonomyStore.record_approval(OWNER, 'maintenance')
        assert AutonomyStore.check_graduation(OWNER, 'maintenance') is None

    def test_pending_graduations(self, graduation_threshold):
        for _ in range(3):
            AutonomyStore.record_approval(OWNER, 'maintenance')
        AutonomyStore.record_approval(OWNER, 'listings')
        assert [p['category'] for p in AutonomyStore.pending_graduations(OWNER)] == ['maintenance']
