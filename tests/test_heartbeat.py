"""
Tests for the heartbeat scanner: findings, gating, task creation and
idempotency across runs.
"""

from datetime import date, timedelta
from unittest.mock import patch

from db import get_db
from agent_engine.autonomy import AutonomyStore
from agent_engine.business import BusinessRecords
from agent_engine.db import _ts_ago, _utcnow
from agent_engine.heartbeat import (
    SCANNERS,
    HeartbeatScanner,
    idempotency_key,
    scan_compliance,
    scan_lease_management,
    scan_listings,
    scan_maintenance,
    scan_rent_collection,
    scan_tenant_finding,
    time_bucket,
)
from agent_engine.pending import PendingActions
from agent_engine.tasks import TaskStore

OWNER = 'owner-1'


def _tasks(category=None):
    return TaskStore.list_tasks(OWNER, category, open_only=False)


def _decisions(tool_name):
    with get_db() as conn:
        rows = conn.execute('SELECT * FROM agent_decisions WHERE tool_name = ?', (tool_name,)).fetchall()
    return [dict(r) for r in rows]


class TestTimeBucket:
    """Test idempotency bucketing."""

    def test_iso_week(self):
        assert time_bucket(date(2026, 1, 5)) == '2026-W02'
        assert time_bucket(date(2026, 1, 1)) == '2026-W01'

    def test_day_granularity(self):
        assert time_bucket(date(2026, 1, 5), 'day') == '2026-01-05'

    def test_key_format(self):
        finding = {'entity_type': 'arrears', 'entity_id': 'a1', 'category': 'rent_collection'}
        assert idempotency_key(finding, '2026-W02') == 'arrears:a1:rent_collection:2026-W02'


class TestScanners:
    """Test the domain scanners against seeded business records."""

    def test_maintenance_finding(self, business):
        findings = scan_maintenance(OWNER)
        assert len(findings) == 1
        finding = findings[0]
        assert finding['entity_id'] == business['request_id']
        assert finding['priority'] == 'high'
        assert finding['tool_name'] == 'triage_maintenance'
        assert 'Leaking kitchen tap' in finding['recommendation']
        assert len(finding['recommendation']) > 10

    def test_recent_maintenance_not_flagged(self, business):
        BusinessRecords.add_maintenance_request(OWNER, business['property_id'], 'Squeaky door',
                                                created_at=_ts_ago(hours=2))
        assert len(scan_maintenance(OWNER)) == 1

    def test_rent_collection_tone(self, business):
        finding = scan_rent_collection(OWNER)[0]
        assert finding['tool_input'] == {'arrears_id': business['arrears_id'], 'tone': 'friendly'}
        assert finding['priority'] == 'high'

    def test_payment_plan_suppresses_reminder(self, business):
        BusinessRecords.set_payment_plan(OWNER, business['arrears_id'], '$100 a week')
        assert scan_rent_collection(OWNER) == []

    def test_lease_ending_soon(self, business):
        today = _utcnow().date()
        property_id = BusinessRecords.add_property(OWNER, '3 Ocean Rd, Manly', 'NSW', 720.0)
        lease_end = today + timedelta(days=20)
        tenancy_id = BusinessRecords.add_tenancy(
            OWNER, property_id, 'Alex Chen', (today - timedelta(days=345)).isoformat(),
            lease_end.isoformat(), 720.0, bond_status='lodged')

        findings = scan_lease_management(OWNER)
        assert [f['entity_id'] for f in findings] == [tenancy_id]
        assert findings[0]['priority'] == 'high'
        assert findings[0]['tool_input'] == {
            'tenancy_id': tenancy_id,
            'new_end_date': (lease_end + timedelta(days=365)).isoformat(),
        }

    def test_application_affordability(self, business):
        listing_id = BusinessRecords.add_listing(OWNER, business['property_id'], 'Harbour apartment', 650.0)
        BusinessRecords.add_application(OWNER, listing_id, 'Jo Smith', annual_income=120000.0)
        finding = scan_tenant_finding(OWNER)[0]
        assert finding['priority'] == 'high'
        assert 'above the 2.5x benchmark' in finding['recommendation']

    def test_stale_listing(self, business):
        BusinessRecords.add_listing(OWNER, business['property_id'], 'Harbour apartment', 650.0,
                                    view_count=3, published_at=_ts_ago(days=10))
        finding = scan_listings(OWNER)[0]
        assert finding['tool_name'] == 'suggest_rent_price'
        assert finding['priority'] == 'normal'

    def test_overdue_compliance_urgent(self, business):
        due = (_utcnow().date() - timedelta(days=3)).isoformat()
        BusinessRecords.add_compliance_item(OWNER, business['property_id'], 'smoke_alarm', due)
        finding = scan_compliance(OWNER)[0]
        assert finding['priority'] == 'urgent'
        assert finding['tool_name'] == 'draft_message'
        assert 'smoke alarm' in finding['recommendation']


class TestHeartbeatRun:
    """Test end-to-end runs."""

    def test_balanced_run_drafts_actions(self, business, recorder):
        summary = HeartbeatScanner.run(OWNER)

        assert summary['ok'] is True
        assert summary['processed'] == 1
        assert summary['findings'] == 2
        assert summary['tasks_created'] == 2
        assert summary['actions_drafted'] == 2
        assert summary['actions_auto_executed'] == 0
        assert summary['errors'] == []

        task = _tasks('maintenance')[0]
        assert task['status'] == 'pending_input'
        assert task['disposition'] == 'draft'
        assert task['related_entity_id'] == business['request_id']
        assert len(task['recommendation']) > 10
        assert task['timeline'][-1]['status'] == 'awaiting_approval'

        pending = PendingActions.list_pending(OWNER)
        assert sorted(p['tool_name'] for p in pending) == ['send_rent_reminder', 'triage_maintenance']

        recorder.flush()
        decision = _decisions('triage_maintenance')[0]
        assert decision['disposition'] == 'draft'
        assert decision['decision_ref'] == task['decision_ref']
        assert decision['confidence'] is not None

    def test_rerun_creates_no_duplicates(self, business):
        HeartbeatScanner.run(OWNER)
        summary = HeartbeatScanner.run(OWNER)

        assert summary['tasks_created'] == 0
        assert summary['skipped_duplicates'] == 2
        assert len(_tasks()) == 2
        assert len(PendingActions.list_pending(OWNER)) == 2

    def test_hands_off_auto_executes(self, business, recorder):
        AutonomyStore.set_preset(OWNER, 'hands_off')
        summary = HeartbeatScanner.run(OWNER)

        assert summary['actions_auto_executed'] == 2
        assert summary['actions_drafted'] == 0
        assert PendingActions.list_pending(OWNER) == []
        assert all(t['status'] == 'completed' and t['was_auto_executed'] for t in _tasks())

        messages = BusinessRecords.get_messages(OWNER, business['arrears_id'])
        assert len(messages) == 1
        assert 'friendly reminder' in messages[0]['body']

        recorder.flush()
        assert _decisions('send_rent_reminder')[0]['was_auto_executed'] == 1

    def test_disabled_category_blocks(self, business, recorder):
        AutonomyStore.set_category_level(OWNER, 'maintenance', 0)
        summary = HeartbeatScanner.run(OWNER)

        assert summary['blocked'] == 1
        assert summary['tasks_created'] == 1
        assert _tasks('maintenance') == []
        recorder.flush()
        assert _decisions('triage_maintenance')[0]['disposition'] == 'block'

    def test_toolless_finding_suggests_at_auto_level(self):
        """A finding with no tool is stored as a suggestion even when its category auto-executes."""
        AutonomyStore.set_preset(OWNER, 'hands_off')
        action_id = PendingActions.create(OWNER, 'draft_message', {'purpose': 'Welcome the new tenant'},
                                          'Welcome message', 'general')
        with get_db() as conn:
            conn.execute('UPDATE agent_pending_actions SET created_at = ? WHERE id = ?',
                         (_ts_ago(hours=72), action_id))

        summary = HeartbeatScanner.run(OWNER)

        task = _tasks('general')[0]
        assert task['disposition'] == 'suggest'
        assert task['status'] == 'pending_input'
        assert task['was_auto_executed'] in (0, False)
        assert summary['actions_auto_executed'] == 0

    def test_scanner_error_collected(self, business):
        def broken(user_id):
            raise RuntimeError('listing feed unavailable')

        with patch.dict(SCANNERS, {'listings': broken}):
            summary = HeartbeatScanner.run(OWNER)

        assert summary['ok'] is False
        assert summary['errors'] == [f'[user:{OWNER}] listings: listing feed unavailable']
        assert summary['tasks_created'] == 2

    def test_all_users_run(self, business):
        summary = HeartbeatScanner.run()
        assert summary['processed'] == 1
        assert summary['tasks_created'] == 2

    def test_no_records_no_tasks(self):
        summary = HeartbeatScanner.run(OWNER)
        assert summary['ok'] is True
        assert summary['findings'] == 0
        assert _tasks() == []
