"""
Agent Engine — Heartbeat Scanner
=================================
Proactive sweep over an owner's business records. Each domain scanner
returns findings: things that need attention, with a recommendation and
the tool that would act on them. Every finding is scored, gated and turned
into a task:

  block       no task
  suggest     task awaiting the owner
  draft       task + pending action awaiting approval
  auto_*      tool executed, task completed (or left for the owner on failure)

Runs are idempotent. A task's idempotency key is
entity_type:entity_id:category:bucket, where bucket is the ISO week (or
day); a finding is also skipped while an open task exists for the same
entity and category.
"""

import json
import logging
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional

from config import Config
from constants import (
    ARREARS_PRIORITY, COMPLIANCE_LOOKAHEAD_DAYS, DEFAULT_INSPECTION_INTERVAL_MONTHS, INCOME_TO_RENT_RATIO,
    INSPECTION_INTERVAL_MONTHS, INSURANCE_LOOKAHEAD_DAYS, LEASE_WINDOWS, LISTING_HIGH_PRIORITY_DAYS,
    LISTING_MIN_VIEWS, LISTING_STALE_DAYS, MAINTENANCE_STALE_HOURS, PENDING_ACTION_STALE_HOURS,
)
from tracing import Trace
from agent_engine.autonomy import AutonomyStore, gate
from agent_engine.business import BusinessRecords
from agent_engine.confidence import ConfidenceError, ConfidenceScorer
from agent_engine.db import _parse_ts, _utcnow, log_event
from agent_engine.dispatcher import ToolDispatcher
from agent_engine.embeddings import EmbeddingError, decision_text, get_embedding_provider
from agent_engine.helpers import _summarize_input
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.learning import learn_from_tool_error
from agent_engine.outcomes import OutcomeTracker
from agent_engine.pending import PendingActions
from agent_engine.recorder import get_recorder, new_decision_ref
from agent_engine.tasks import TaskStore, timeline_entry
from agent_engine.tools import get_tool
from agent_engine.types import Disposition

logger = logging.getLogger(__name__)

APPLICATION_WINDOW_HOURS = 24
LEASE_LOOKAHEAD_DAYS = max(days for days, _ in LEASE_WINDOWS)
FIRM_REMINDER_DAYS = 14


def _finding(category: str, entity_type: str, entity_id, title: str, recommendation: str,
             priority: str = 'normal', tool_name: str = None, tool_input: Dict = None,
             description: str = None) -> Dict:
    return {
        'category': category,
        'entity_type': entity_type,
        'entity_id': str(entity_id),
        'title': title,
        'recommendation': recommendation,
        'priority': priority,
        'tool_name': tool_name,
        'tool_input': tool_input or {},
        'description': description,
    }


def _priority_for(value: int, bands) -> Optional[str]:
    """First band whose threshold the value reaches; bands are (threshold, priority)."""
    for threshold, priority in bands:
        if value >= threshold:
            return priority
    return None


def _where(record: Dict) -> str:
    return record.get('address') or 'the property'


def time_bucket(today: date = None, granularity: str = None) -> str:
    today = today or _utcnow().date()
    granularity = granularity or Config.HEARTBEAT_BUCKET
    if granularity == 'day':
        return today.isoformat()
    year, week, _ = today.isocalendar()
    return f"{year}-W{week:02d}"


def idempotency_key(finding: Dict, bucket: str = None) -> str:
    return f"{finding['entity_type']}:{finding['entity_id']}:{finding['category']}:{bucket or time_bucket()}"


# ---------------------------------------------------------------------------
# Domain scanners
# ---------------------------------------------------------------------------

def scan_maintenance(user_id: str) -> List[Dict]:
    findings = []
    for request in BusinessRecords.open_unassigned_maintenance(user_id, MAINTENANCE_STALE_HOURS):
        days = request['hours_open'] // 24
        if request.get('urgency') == 'emergency':
            priority = 'urgent'
        elif request['hours_open'] >= 7 * 24:
            priority = 'high'
        else:
            priority = 'normal'
        findings.append(_finding(
            'maintenance', 'maintenance_request', request['id'],
            f"Maintenance waiting for a trade: {request['title']}",
            f"'{request['title']}' at {_where(request)} has been open for {days} days "
            f"({request['hours_open']} hours) with no trade assigned. Triage it and get a trade booked.",
            priority, 'triage_maintenance', {'request_id': request['id']},
            request.get('description')))
    return findings


def scan_tenant_finding(user_id: str) -> List[Dict]:
    findings = []
    for application in BusinessRecords.recent_applications(user_id, APPLICATION_WINDOW_HOURS):
        income = application.get('annual_income')
        rent = application.get('weekly_rent')
        if income and rent:
            ratio = income / (rent * 52)
            if ratio >= INCOME_TO_RENT_RATIO:
                assessment = (f"Their income is {ratio:.1f}x the annual rent, above the "
                              f"{INCOME_TO_RENT_RATIO}x benchmark. Consider shortlisting.")
                priority = 'high'
            else:
                assessment = (f"Their income is {ratio:.1f}x the annual rent, below the "
                              f"{INCOME_TO_RENT_RATIO}x benchmark. Review references before deciding.")
                priority = 'normal'
        else:
            assessment = "No income was provided, so affordability needs checking before shortlisting."
            priority = 'normal'
        findings.append(_finding(
            'tenant_finding', 'application', application['id'],
            f"New application from {application['applicant_name']}",
            f"{application['applicant_name']} applied for {_where(application)}. {assessment}",
            priority, 'score_application', {'application_id': application['id']}))
    return findings


def scan_lease_management(user_id: str) -> List[Dict]:
    findings = []
    for tenancy in BusinessRecords.leases_ending_within(user_id, LEASE_LOOKAHEAD_DAYS):
        days = tenancy['days_until_end']
        priority = next((p for window, p in LEASE_WINDOWS if days <= window), 'normal')
        new_end = date.fromisoformat(str(tenancy['lease_end'])[:10]) + timedelta(days=365)
        findings.append(_finding(
            'lease_management', 'tenancy', tenancy['id'],
            f"Lease ending in {days} days: {tenancy['tenant_name']}",
            f"The lease for {tenancy['tenant_name']} at {_where(tenancy)} ends on {tenancy['lease_end']} "
            f"({days} days away). Decide whether to offer a 12 month renewal or prepare to re-let.",
            priority, 'renew_lease', {'tenancy_id': tenancy['id'], 'new_end_date': new_end.isoformat()}))
    return findings


def scan_rent_collection(user_id: str) -> List[Dict]:
    findings = []
    for arrears in BusinessRecords.open_arrears(user_id):
        days = arrears['days_overdue']
        if days < 1 or arrears.get('payment_plan'):
            continue
        tone = 'firm' if days >= FIRM_REMINDER_DAYS else 'friendly'
        tenant = arrears.get('tenant_name') or 'The tenant'
        findings.append(_finding(
            'rent_collection', 'arrears', arrears['id'],
            f"Rent overdue {days} days: {tenant}",
            f"{tenant} at {_where(arrears)} is {days} days behind with ${arrears['amount']:.2f} "
            f"outstanding. Send a {tone} rent reminder.",
            _priority_for(days, ARREARS_PRIORITY) or 'normal',
            'send_rent_reminder', {'arrears_id': arrears['id'], 'tone': tone}))
    return findings


def scan_compliance(user_id: str) -> List[Dict]:
    findings = []
    for item in BusinessRecords.compliance_due(user_id, COMPLIANCE_LOOKAHEAD_DAYS):
        days = item['days_until_due']
        label = item['item_type'].replace('_', ' ')
        if days < 0:
            timing = f"is {-days} days overdue (due {item['due_date']})"
            priority = 'urgent'
        else:
            timing = f"is due in {days} days ({item['due_date']})"
            priority = 'high' if days <= 7 else 'normal'
        findings.append(_finding(
            'compliance', 'compliance_item', item['id'],
            f"Compliance {label} due at {_where(item)}",
            f"The {label} check at {_where(item)} {timing}. Book it and record the result once done.",
            priority, 'draft_message',
            {'recipient': 'compliance provider',
             'purpose': f"Book the {label} check at {_where(item)} before {item['due_date']}"}))
    return findings


def scan_listings(user_id: str) -> List[Dict]:
    findings = []
    for listing in BusinessRecords.stale_listings(user_id, LISTING_STALE_DAYS, LISTING_MIN_VIEWS):
        days = listing['days_listed']
        findings.append(_finding(
            'listings', 'listing', listing['id'],
            f"Listing not getting views: {_where(listing)}",
            f"The listing for {_where(listing)} has been live {days} days with only "
            f"{listing.get('view_count') or 0} views. Check the asking rent against comparable "
            f"properties and refresh the photos and description.",
            'high' if days >= LISTING_HIGH_PRIORITY_DAYS else 'normal',
            'suggest_rent_price', {'property_id': listing['property_id']}))
    return findings


def _months_ago(today: date, months: int) -> date:
    return today - timedelta(days=round(months * 30.44))


def scan_inspections(user_id: str) -> List[Dict]:
    findings = []
    today = _utcnow().date()
    for inspection in BusinessRecords.overdue_inspections(user_id):
        findings.append(_finding(
            'inspections', 'inspection', inspection['id'],
            f"Inspection overdue at {_where(inspection)}",
            f"The {inspection['inspection_type']} inspection at {_where(inspection)} was scheduled for "
            f"{inspection['scheduled_date']} and is {inspection['days_overdue']} days overdue. "
            f"Reschedule it and give the tenant notice.",
            'high', 'schedule_inspection',
            {'property_id': inspection['property_id'],
             'scheduled_date': (today + timedelta(days=7)).isoformat(),
             'inspection_type': inspection['inspection_type']}))

    for tenancy in BusinessRecords.get_tenancies(user_id):
        prop = BusinessRecords.get_property(user_id, tenancy['property_id'])
        if prop is None:
            continue
        months = INSPECTION_INTERVAL_MONTHS.get((prop.get('state') or '').upper(),
                                                DEFAULT_INSPECTION_INTERVAL_MONTHS)
        last = BusinessRecords.last_routine_inspection(user_id, prop['id'])
        if last and last['status'] == 'scheduled':
            continue
        since = str(last['scheduled_date'] if last else tenancy['lease_start'] or '')
        if not since or date.fromisoformat(since[:10]) > _months_ago(today, months):
            continue
        findings.append(_finding(
            'inspections', 'property', prop['id'],
            f"Routine inspection due at {prop['address']}",
            f"No routine inspection at {prop['address']} since {since[:10]}; "
            f"{prop.get('state') or 'this state'} allows one every {months} months. "
            f"Schedule the next routine inspection.",
            'normal', 'schedule_inspection',
            {'property_id': prop['id'], 'scheduled_date': (today + timedelta(days=14)).isoformat(),
             'inspection_type': 'routine'}))
    return findings


def scan_insurance(user_id: str) -> List[Dict]:
    findings = []
    for policy in BusinessRecords.expiring_insurance(user_id, INSURANCE_LOOKAHEAD_DAYS):
        days = policy['days_until_expiry']
        insurer = policy.get('provider') or 'the insurer'
        timing = f"expired {-days} days ago" if days < 0 else f"expires in {days} days"
        findings.append(_finding(
            'insurance', 'insurance_policy', policy['id'],
            f"Landlord insurance renewal: {_where(policy)}",
            f"The landlord insurance for {_where(policy)} with {insurer} {timing} "
            f"({policy['expiry_date']}). Renew it or arrange replacement cover before it lapses.",
            'urgent' if days <= 7 else 'high', 'draft_message',
            {'recipient': insurer,
             'purpose': f"Request renewal of the landlord insurance for {_where(policy)}"}))
    return findings


def scan_bonds(user_id: str) -> List[Dict]:
    findings = []
    for tenancy in BusinessRecords.unlodged_bonds(user_id):
        amount = tenancy.get('bond_amount')
        bond = f"${amount:.2f} bond" if amount else "bond"
        findings.append(_finding(
            'bonds', 'tenancy', tenancy['id'],
            f"Bond not lodged: {tenancy['tenant_name']}",
            f"The {bond} for {tenancy['tenant_name']} at {_where(tenancy)} was due for lodgement on "
            f"{tenancy['bond_due_date']} ({tenancy['days_overdue']} days ago). Lodge it with the "
            f"{tenancy.get('state') or 'state'} bond authority.",
            'urgent', 'lodge_bond', {'tenancy_id': tenancy['id']}))
    return findings


def scan_general(user_id: str) -> List[Dict]:
    findings = []
    now = _utcnow()
    for action in PendingActions.stale(user_id, PENDING_ACTION_STALE_HOURS):
        hours = int((now - _parse_ts(action['created_at'])).total_seconds() // 3600)
        findings.append(_finding(
            'general', 'pending_action', action['id'],
            f"Awaiting your approval: {action['description']}",
            f"'{action['description']}' has been waiting for your approval for {hours} hours. "
            f"Approve or reject it so the agent can move on.",
            'normal'))
    return findings


SCANNERS: Dict[str, Callable[[str], List[Dict]]] = {
    'maintenance': scan_maintenance,
    'tenant_finding': scan_tenant_finding,
    'lease_management': scan_lease_management,
    'rent_collection': scan_rent_collection,
    'compliance': scan_compliance,
    'listings': scan_listings,
    'inspections': scan_inspections,
    'insurance': scan_insurance,
    'bonds': scan_bonds,
    'general': scan_general,
}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class HeartbeatScanner:
    """Scan, gate and turn findings into tasks."""

    @staticmethod
    def _new_summary() -> Dict:
        return {
            'ok': True,
            'processed': 0,
            'findings': 0,
            'tasks_created': 0,
            'actions_auto_executed': 0,
            'actions_drafted': 0,
            'blocked': 0,
            'skipped_duplicates': 0,
            'outcomes_recorded': 0,
            'rules_decayed': 0,
            'errors': [],
        }

    @staticmethod
    def _score(user_id: str, tool, finding: Dict, summary_text: str):
        """Returns (factors, composite, embedding). Failed scoring counts as zero confidence."""
        embedding = None
        try:
            embedding = get_embedding_provider().embed(
                decision_text(tool.name, finding['recommendation'], summary_text))
        except EmbeddingError as e:
            logger.warning(f"Heartbeat embedding failed for {tool.name}: {e}")
        try:
            factors = ConfidenceScorer.score(user_id, tool.name, finding['category'], embedding)
        except ConfidenceError as e:
            logger.warning(f"Heartbeat finding {finding['entity_id']} scored as 0: {e}")
            return None, 0.0, embedding
        return factors, (factors['composite'] if factors else None), embedding

    @staticmethod
    def process_finding(user_id: str, settings, finding: Dict, summary: Dict):
        category = finding['category']
        key = idempotency_key(finding)
        if TaskStore.open_task_exists(user_id, category, finding['entity_id']) or TaskStore.key_exists(key):
            summary['skipped_duplicates'] += 1
            return

        tool = get_tool(finding['tool_name']) if finding.get('tool_name') else None
        factors, composite, embedding, summary_text = None, None, None, None
        if tool:
            summary_text = _summarize_input(finding['tool_input'])
            factors, composite, embedding = HeartbeatScanner._score(user_id, tool, finding, summary_text)
        result = gate(settings, category, composite, tool.required_level if tool else None)
        disposition = result.disposition
        # nothing to draft or execute without a tool
        if tool is None and (disposition == Disposition.DRAFT or disposition.executes):
            disposition = Disposition.SUGGEST

        decision_ref = new_decision_ref() if tool else None
        if disposition == Disposition.BLOCK:
            summary['blocked'] += 1
            if tool:
                get_recorder().record(user_id, tool.name, category, summary_text, finding['tool_input'],
                                      finding['recommendation'], factors, disposition.value, embedding,
                                      decision_ref=decision_ref)
            return

        executes = tool is not None and disposition.executes
        detected = timeline_entry('detected', reasoning=result.reason,
                                  data={'composite': composite} if composite is not None else None)
        task_id = TaskStore.create_task(
            user_id, category, finding['title'], finding['recommendation'], key,
            description=finding.get('description'), priority=finding['priority'],
            related_entity_type=finding['entity_type'], related_entity_id=finding['entity_id'],
            status='in_progress' if executes else 'pending_input', timeline=[detected],
            decision_ref=decision_ref, disposition=disposition.value)
        if task_id is None:
            summary['skipped_duplicates'] += 1
            return
        summary['tasks_created'] += 1

        auto_executed = False
        if executes:
            run = ToolDispatcher.run(user_id, tool.name, finding['tool_input'])
            if run['success']:
                auto_executed = True
                summary['actions_auto_executed'] += 1
                TaskStore.append_timeline(task_id, user_id, timeline_entry(
                    f"executed {tool.name}", data={'result': run['data']}),
                    status='completed', was_auto_executed=True)
            else:
                learn_from_tool_error(user_id, run['error_type'], tool.name, run['error'],
                                      summary_text, category)
                TaskStore.append_timeline(task_id, user_id, timeline_entry(
                    f"executed {tool.name}", status='failed', reasoning=run['error']),
                    status='pending_input')
        elif disposition == Disposition.DRAFT:
            action_id = PendingActions.create(user_id, tool.name, finding['tool_input'], finding['title'],
                                              category, decision_ref=decision_ref)
            summary['actions_drafted'] += 1
            TaskStore.append_timeline(task_id, user_id, timeline_entry(
                f"drafted {tool.name}", status='awaiting_approval', data={'pending_action_id': action_id}))

        if tool:
            get_recorder().record(user_id, tool.name, category, summary_text, finding['tool_input'],
                                  finding['recommendation'], factors, disposition.value, embedding,
                                  was_auto_executed=auto_executed, decision_ref=decision_ref)

    @staticmethod
    def scan_user(user_id: str, summary: Dict):
        """Run every domain scanner for one user. Errors are collected, never raised."""
        settings = AutonomyStore.get_settings(user_id)
        for category, scanner in SCANNERS.items():
            try:
                findings = scanner(user_id)
            except Exception as e:
                logger.error(f"Heartbeat scanner {category} failed for {user_id}: {e}")
                summary['errors'].append(f"[user:{user_id}] {category}: {e}")
                continue
            summary['findings'] += len(findings)
            for finding in findings:
                try:
                    HeartbeatScanner.process_finding(user_id, settings, finding, summary)
                except Exception as e:
                    logger.error(f"Heartbeat finding {category}/{finding['entity_id']} failed: {e}")
                    summary['errors'].append(f"[user:{user_id}] {category}/{finding['entity_id']}: {e}")

        try:
            summary['outcomes_recorded'] += OutcomeTracker.run(user_id)
        except Exception as e:
            logger.error(f"Outcome tracking failed for {user_id}: {e}")
            summary['errors'].append(f"[user:{user_id}] outcomes: {e}")
        try:
            summary['rules_decayed'] += KnowledgeStore.decay_stale_rules(user_id)
        except Exception as e:
            logger.error(f"Rule decay failed for {user_id}: {e}")
            summary['errors'].append(f"[user:{user_id}] decay: {e}")
        summary['processed'] += 1

    @staticmethod
    def run(user_id: str = None) -> Dict:
        """
        Sweep one user, or every user with autonomy settings or properties.
        Returns the run summary; ok is False when any step failed.
        """
        trace = Trace('heartbeat', user_id=user_id)
        summary = HeartbeatScanner._new_summary()
        if user_id:
            users = [user_id]
        else:
            users = sorted(set(AutonomyStore.users_with_settings()) | set(BusinessRecords.owners_with_properties()))
        trace.step('users', count=len(users))

        for uid in users:
            try:
                HeartbeatScanner.scan_user(uid, summary)
            except Exception as e:
                logger.error(f"Heartbeat failed for {uid}: {e}")
                summary['errors'].append(f"[user:{uid}] {e}")
            trace.step('user_scanned', user=uid)

        summary['ok'] = not summary['errors']
        log_event('heartbeat', 'run', json.dumps({
            'user_id': user_id, 'processed': summary['processed'], 'tasks_created': summary['tasks_created'],
            'auto_executed': summary['actions_auto_executed'], 'errors': len(summary['errors']),
        }))
        trace.finish(**{k: v for k, v in summary.items() if k != 'errors'})
        return summary
