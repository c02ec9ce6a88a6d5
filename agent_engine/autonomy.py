"""
Agent Engine — Autonomy Gate
=============================
gate() maps (configured level, composite confidence) to a disposition:

  L0 → block    L1 → suggest    L2 → draft    L3 → auto_with_notice    L4 → auto_silent

Confidence only ever demotes: a composite below the category minimum drops
the effective level one step, below SEVERE_CONFIDENCE_FLOOR two steps. A
demotion never goes below L1; only configuration blocks outright. gate() is
pure: the caller loads AutonomySettings and passes them in.

AutonomyStore persists the per-user settings and the graduation counters
that suggest raising a category's level after a run of approvals.
"""

import json
import logging
from typing import Dict, List, NamedTuple, Optional

from config import Config
from constants import (
    AUTONOMY_PRESETS, CATEGORY_CONFIDENCE_MINIMUMS, DEFAULT_CONFIDENCE_MINIMUM, DEFAULT_PRESET,
    SEVERE_CONFIDENCE_FLOOR,
)
from db import atomic
from agent_engine.db import _get_conn, _ts, _dumps, _loads, log_event
from agent_engine.types import AutonomyLevel, AutonomySettings, Disposition, LEVEL_DISPOSITIONS

logger = logging.getLogger(__name__)

MAX_BACKOFF_MULTIPLIER = 8.0


class GateResult(NamedTuple):
    disposition: Disposition
    configured_level: AutonomyLevel
    effective_level: AutonomyLevel
    reason: str


def confidence_minimum(category: str) -> float:
    return CATEGORY_CONFIDENCE_MINIMUMS.get(category, DEFAULT_CONFIDENCE_MINIMUM)


def gate(settings: AutonomySettings, category: str, composite: Optional[float] = None,
         required_level: Optional[int] = None, domain: Optional[str] = None) -> GateResult:
    """
    Decide what the agent may do with one candidate action.

    composite is None for confidence-exempt tools. required_level is the
    tool's registered minimum level for unattended execution; an auto
    disposition below it is capped to draft. domain is the business area the
    tool acts on; when given, the stricter of the two configured levels and
    the higher of the two confidence minimums apply.
    """
    governing = category
    configured = settings.level_for(category)
    minimum = confidence_minimum(category)
    if domain and domain != category:
        domain_level = settings.level_for(domain)
        if domain_level < configured:
            governing, configured = domain, domain_level
        minimum = max(minimum, confidence_minimum(domain))

    if configured == AutonomyLevel.DISABLED:
        return GateResult(Disposition.BLOCK, configured, configured,
                          f"{governing} is disabled ({configured.label})")

    effective = configured
    reason = f"{governing} configured at {configured.label}"
    if composite is not None:
        if composite < SEVERE_CONFIDENCE_FLOOR:
            steps = 2
        elif composite < minimum:
            steps = 1
        else:
            steps = 0
        if steps:
            effective = AutonomyLevel(max(int(AutonomyLevel.SUGGEST), int(configured) - steps))
            reason = (f"confidence {composite:.2f} below {minimum:.2f}: "
                      f"{configured.label} demoted to {effective.label}")

    disposition = LEVEL_DISPOSITIONS[effective]
    if disposition.executes and required_level is not None:
        if required_level == 0 or required_level > effective:
            disposition = Disposition.DRAFT
            reason = f"{reason}; tool requires L{required_level} to run unattended"
    return GateResult(disposition, configured, effective, reason)


def _graduation_row(row) -> Dict:
    record = dict(row)
    record['threshold'] = int(round(Config.GRADUATION_THRESHOLD * (record.get('backoff_multiplier') or 1.0)))
    return record


class AutonomyStore:
    """Per-user autonomy settings and graduation tracking."""

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @staticmethod
    def get_settings(user_id: str) -> AutonomySettings:
        """Stored settings, or the default preset when none are saved."""
        conn = _get_conn()
        row = conn.execute('SELECT preset, category_overrides FROM agent_autonomy_settings WHERE user_id = ?',
                           (user_id,)).fetchone()
        conn.close()
        if not row:
            return AutonomySettings(DEFAULT_PRESET)
        try:
            return AutonomySettings(row['preset'], _loads(row['category_overrides'], {}))
        except ValueError as e:
            logger.warning(f"Invalid autonomy settings for {user_id}, using default: {e}")
            return AutonomySettings(DEFAULT_PRESET)

    @staticmethod
    def save_settings(user_id: str, settings: AutonomySettings) -> AutonomySettings:
        if not user_id:
            raise ValueError("user_id is required")
        for level in settings.category_overrides.values():
            AutonomyLevel.parse(level)
        now = _ts()
        with atomic(f"autonomy:{user_id}") as conn:
            conn.execute('''
                INSERT INTO agent_autonomy_settings (user_id, preset, category_overrides, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    preset = excluded.preset,
                    category_overrides = excluded.category_overrides,
                    updated_at = excluded.updated_at
            ''', (user_id, settings.preset, _dumps(settings.category_overrides), now))
        log_event('autonomy', 'settings_updated', json.dumps({
            'user_id': user_id, 'preset': settings.preset,
        }))
        return settings

    @staticmethod
    def set_preset(user_id: str, preset: str) -> AutonomySettings:
        """Switch to a named preset. 'custom' keeps the current levels as overrides."""
        if preset == 'custom':
            current = AutonomyStore.get_settings(user_id)
            overrides = {cat: f"L{lvl}" for cat, lvl in current.levels().items()}
            return AutonomyStore.save_settings(user_id, AutonomySettings('custom', overrides))
        return AutonomyStore.save_settings(user_id, AutonomySettings(preset))

    @staticmethod
    def set_category_level(user_id: str, category: str, level) -> AutonomySettings:
        """Change one category. A named preset flips to custom with its levels kept."""
        if category not in AUTONOMY_PRESETS[DEFAULT_PRESET]:
            raise ValueError(f"Unknown autonomy category: {category}")
        settings = AutonomyStore.get_settings(user_id).with_category_level(category, level)
        return AutonomyStore.save_settings(user_id, settings)

    @staticmethod
    def users_with_settings() -> List[str]:
        conn = _get_conn()
        rows = conn.execute('SELECT user_id FROM agent_autonomy_settings').fetchall()
        conn.close()
        return [r['user_id'] for r in rows]

    # ------------------------------------------------------------------
    # Graduation
    # ------------------------------------------------------------------

    @staticmethod
    def get_graduation(user_id: str, category: str) -> Optional[Dict]:
        conn = _get_conn()
        row = conn.execute('SELECT * FROM autonomy_graduation WHERE user_id = ? AND category = ?',
                           (user_id, category)).fetchone()
        conn.close()
        return _graduation_row(row) if row else None

    @staticmethod
    def _record_review(user_id: str, category: str, approved: bool):
        now = _ts()
        with atomic(f"graduation:{user_id}") as conn:
            row = conn.execute('SELECT id FROM autonomy_graduation WHERE user_id = ? AND category = ?',
                               (user_id, category)).fetchone()
            if row is None:
                conn.execute('''
                    INSERT INTO autonomy_graduation
                    (user_id, category, consecutive_approvals, total_approvals, total_rejections,
                     backoff_multiplier, last_rejection_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 1.0, ?, ?)
                ''', (user_id, category, 1 if approved else 0, 1 if approved else 0,
                      0 if approved else 1, None if approved else now, now))
            elif approved:
                conn.execute('''
                    UPDATE autonomy_graduation
                    SET consecutive_approvals = consecutive_approvals + 1,
                        total_approvals = total_approvals + 1, updated_at = ?
                    WHERE id = ?
                ''', (now, row['id']))
            else:
                conn.execute('''
                    UPDATE autonomy_graduation
                    SET consecutive_approvals = 0, total_rejections = total_rejections + 1,
                        last_rejection_at = ?, updated_at = ?
                    WHERE id = ?
                ''', (now, now, row['id']))

    @staticmethod
    def record_approval(user_id: str, category: str):
        AutonomyStore._record_review(user_id, category, True)

    @staticmethod
    def record_rejection(user_id: str, category: str):
        AutonomyStore._record_review(user_id, category, False)

    @staticmethod
    def check_graduation(user_id: str, category: str) -> Optional[Dict]:
        """
        Graduation proposal for the category, or None when it is not yet
        eligible (too few consecutive approvals, or already at L4).
        """
        record = AutonomyStore.get_graduation(user_id, category)
        if not record:
            return None
        current = AutonomyStore.get_settings(user_id).level_for(category)
        if current >= AutonomyLevel.FULL_AUTO:
            return None
        if record['consecutive_approvals'] < record['threshold']:
            return None
        return {
            'category': category,
            'current_level': int(current),
            'proposed_level': int(current) + 1,
            'consecutive_approvals': record['consecutive_approvals'],
            'threshold': record['threshold'],
        }

    @staticmethod
    def pending_graduations(user_id: str) -> List[Dict]:
        conn = _get_conn()
        rows = conn.execute('SELECT category FROM autonomy_graduation WHERE user_id = ?',
                            (user_id,)).fetchall()
        conn.close()
        proposals = [AutonomyStore.check_graduation(user_id, r['category']) for r in rows]
        return [p for p in proposals if p]

    @staticmethod
    def accept_graduation(user_id: str, category: str) -> AutonomySettings:
        """Raise the category one level (max L4) and reset its counter."""
        proposal = AutonomyStore.check_graduation(user_id, category)
        if proposal is None:
            raise ValueError(f"{category} is not eligible for graduation")
        settings = AutonomyStore.set_category_level(user_id, category, proposal['proposed_level'])
        with atomic(f"graduation:{user_id}") as conn:
            conn.execute('''
                UPDATE autonomy_graduation SET consecutive_approvals = 0, updated_at = ?
                WHERE user_id = ? AND category = ?
            ''', (_ts(), user_id, category))
        log_event('autonomy', 'graduation_accepted', json.dumps({
            'user_id': user_id, 'category': category, 'level': proposal['proposed_level'],
        }))
        logger.info(f"Graduated {category} for {user_id} to L{proposal['proposed_level']}")
        return settings

    @staticmethod
    def decline_graduation(user_id: str, category: str) -> Dict:
        """Double the approvals needed before the next proposal (capped) and reset."""
        record = AutonomyStore.get_graduation(user_id, category)
        if record is None:
            raise ValueError(f"No graduation history for {category}")
        multiplier = min(MAX_BACKOFF_MULTIPLIER, (record['backoff_multiplier'] or 1.0) * 2)
        with atomic(f"graduation:{user_id}") as conn:
            conn.execute('''
                UPDATE autonomy_graduation
                SET backoff_multiplier = ?, consecutive_approvals = 0, updated_at = ?
                WHERE id = ?
            ''', (multiplier, _ts(), record['id']))
        log_event('autonomy', 'graduation_declined', json.dumps({
            'user_id': user_id, 'category': category, 'backoff_multiplier': multiplier,
        }))
        return AutonomyStore.get_graduation(user_id, category)
