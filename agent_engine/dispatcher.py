"""
Agent Engine — Tool dispatcher
===============================
Executes registered tools against the owner's business records and the
knowledge store, and classifies tool failures into the four learning
error types.
"""

import hashlib
import logging
import statistics
import time
from datetime import date
from typing import Callable, Dict

from constants import (
    CONTEXT_MISSING_PATTERNS, FACTUAL_ERROR_PATTERNS, INCOME_TO_RENT_RATIO, TOOL_MISUSE_PATTERNS,
)
from db import get_integrity_error
from agent_engine.business import BusinessRecords
from agent_engine.db import _ts
from agent_engine.embeddings import get_embedding_provider
from agent_engine.genome import ToolGenome
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.learning import infer_category
from agent_engine.tasks import TaskStore, timeline_entry
from agent_engine.tools import get_tool
from agent_engine.types import ErrorType

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """A tool could not complete; the message is what the model and learner see."""


def classify_tool_error(tool_name: str, tool_input, error_message: str) -> ErrorType:
    """Map a tool failure message to one of the four learning error types."""
    text = (error_message or '').lower()
    if any(p in text for p in TOOL_MISUSE_PATTERNS):
        return ErrorType.TOOL_MISUSE
    if 'invalid' in text and ('parameter' in text or 'input' in text):
        return ErrorType.TOOL_MISUSE
    if 'expected' in text and 'got' in text:
        return ErrorType.TOOL_MISUSE
    if any(p in text for p in CONTEXT_MISSING_PATTERNS):
        return ErrorType.CONTEXT_MISSING
    if any(p in text for p in FACTUAL_ERROR_PATTERNS):
        return ErrorType.FACTUAL_ERROR
    return ErrorType.REASONING_ERROR


def _found(record, what: str, record_id):
    if not record:
        raise ToolExecutionError(f"{what} {record_id} not found")
    return record


def _parse_date(value: str, field: str) -> date:
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ToolExecutionError(f"Invalid date for {field}: {value!r} (expected YYYY-MM-DD)")


# ---------------------------------------------------------------------------
# Query handlers
# ---------------------------------------------------------------------------

def _get_properties(user_id, args):
    properties = BusinessRecords.get_properties(user_id, args.get('status'))
    return {'properties': properties, 'count': len(properties)}


def _get_property(user_id, args):
    prop = _found(BusinessRecords.get_property(user_id, args['property_id']), 'Property', args['property_id'])
    prop['tenancy'] = BusinessRecords.get_tenancy(user_id, property_id=prop['id'])
    return prop


def _get_maintenance_requests(user_id, args):
    requests = BusinessRecords.get_maintenance_requests(user_id, args.get('status'))
    return {'requests': requests, 'count': len(requests)}


def _get_tenancy(user_id, args):
    if not args.get('tenancy_id') and not args.get('property_id'):
        raise ToolExecutionError("Missing required parameter: tenancy_id or property_id")
    tenancy = BusinessRecords.get_tenancy(user_id, args.get('tenancy_id'), args.get('property_id'))
    return _found(tenancy, 'Tenancy', args.get('tenancy_id') or args.get('property_id'))


def _get_arrears(user_id, args):
    arrears = BusinessRecords.open_arrears(user_id)
    return {'arrears': arrears, 'total_outstanding': round(sum(a['amount'] for a in arrears), 2)}


def _get_listings(user_id, args):
    return {'listings': BusinessRecords.get_listings(user_id, args.get('status'))}


def _get_applications(user_id, args):
    return {'applications': BusinessRecords.get_applications(user_id, args.get('listing_id'))}


def _get_inspections(user_id, args):
    return {'inspections': BusinessRecords.get_inspections(user_id, args.get('property_id'))}


def _get_compliance_status(user_id, args):
    return {'items': BusinessRecords.get_compliance_items(user_id, args.get('property_id'))}


def _get_tasks(user_id, args):
    return {'tasks': TaskStore.list_tasks(user_id, args.get('category'))}


# ---------------------------------------------------------------------------
# Action handlers
# ---------------------------------------------------------------------------

def _create_maintenance(user_id, args):
    _found(BusinessRecords.get_property(user_id, args['property_id']), 'Property', args['property_id'])
    request_id = BusinessRecords.add_maintenance_request(
        user_id, args['property_id'], args['title'], args.get('description'),
        urgency=args.get('urgency') or 'routine')
    return {'request_id': request_id, 'status': 'submitted'}


def _assign_trade(user_id, args):
    request = _found(BusinessRecords.get_maintenance_request(user_id, args['request_id']),
                     'Maintenance request', args['request_id'])
    if request['status'] in ('completed', 'cancelled'):
        raise ToolExecutionError(f"Maintenance request is {request['status']}; a trade cannot be assigned")
    BusinessRecords.assign_trade(user_id, request['id'], args['trade_name'])
    return {'request_id': request['id'], 'assigned_trade': args['trade_name']}


def _update_maintenance_status(user_id, args):
    _found(BusinessRecords.get_maintenance_request(user_id, args['request_id']),
           'Maintenance request', args['request_id'])
    BusinessRecords.update_maintenance_status(user_id, args['request_id'], args['status'])
    return {'request_id': args['request_id'], 'status': args['status']}


def _open_arrears(user_id, arrears_id):
    arrears = _found(BusinessRecords.get_arrears(user_id, arrears_id), 'Arrears record', arrears_id)
    if arrears['is_resolved']:
        raise ToolExecutionError(f"Arrears record {arrears_id} is already resolved")
    tenancy = BusinessRecords.get_tenancy(user_id, arrears['tenancy_id']) or {}
    return arrears, tenancy


def _send_rent_reminder(user_id, args):
    arrears, tenancy = _open_arrears(user_id, args['arrears_id'])
    name = tenancy.get('tenant_name') or 'there'
    if args.get('tone') == 'firm':
        body = (f"Dear {name}, rent of ${arrears['amount']:.2f} is now {arrears['days_overdue']} days overdue. "
                f"Please pay the outstanding amount within 7 days or contact us to discuss a payment plan.")
    else:
        body = (f"Hi {name}, a friendly reminder that rent of ${arrears['amount']:.2f} is "
                f"{arrears['days_overdue']} days overdue. If you've already paid, please ignore this message.")
    message_id = BusinessRecords.record_message(
        user_id, body, recipient=tenancy.get('tenant_email'), channel='email', subject='Rent reminder',
        related_entity_type='arrears', related_entity_id=arrears['id'])
    return {'message_id': message_id, 'arrears_id': arrears['id'], 'days_overdue': arrears['days_overdue']}


def _send_breach_notice(user_id, args):
    arrears, tenancy = _open_arrears(user_id, args['arrears_id'])
    body = (f"Notice to remedy breach: rent of ${arrears['amount']:.2f} has been unpaid for "
            f"{arrears['days_overdue']} days. You are required to pay the full amount within 14 days.")
    message_id = BusinessRecords.record_message(
        user_id, body, recipient=tenancy.get('tenant_email'), channel='email',
        subject='Notice to remedy breach', related_entity_type='arrears', related_entity_id=arrears['id'])
    return {'message_id': message_id, 'arrears_id': arrears['id']}


def _create_payment_plan(user_id, args):
    arrears, _ = _open_arrears(user_id, args['arrears_id'])
    BusinessRecords.set_payment_plan(user_id, arrears['id'], args['plan'])
    return {'arrears_id': arrears['id'], 'payment_plan': args['plan']}


def _send_message(user_id, args):
    tenancy = _found(BusinessRecords.get_tenancy(user_id, args['tenancy_id']), 'Tenancy', args['tenancy_id'])
    message_id = BusinessRecords.record_message(
        user_id, args['body'], recipient=tenancy.get('tenant_email'), subject=args.get('subject'),
        related_entity_type='tenancy', related_entity_id=tenancy['id'])
    return {'message_id': message_id}


def _renew_lease(user_id, args):
    tenancy = _found(BusinessRecords.get_tenancy(user_id, args['tenancy_id']), 'Tenancy', args['tenancy_id'])
    new_end = _parse_date(args['new_end_date'], 'new_end_date')
    if tenancy.get('lease_end') and new_end <= date.fromisoformat(str(tenancy['lease_end'])[:10]):
        raise ToolExecutionError("new_end_date out of range: it must be after the current lease end")
    values = {'lease_end': new_end.isoformat()}
    if args.get('weekly_rent'):
        values['weekly_rent'] = float(args['weekly_rent'])
    BusinessRecords.update_tenancy(user_id, tenancy['id'], **values)
    BusinessRecords.record_message(
        user_id, f"Your lease has been renewed until {new_end.isoformat()}.",
        recipient=tenancy.get('tenant_email'), subject='Lease renewal',
        related_entity_type='tenancy', related_entity_id=tenancy['id'])
    return {'tenancy_id': tenancy['id'], **values}


def _terminate_lease(user_id, args):
    tenancy = _found(BusinessRecords.get_tenancy(user_id, args['tenancy_id']), 'Tenancy', args['tenancy_id'])
    BusinessRecords.update_tenancy(user_id, tenancy['id'], status='ending')
    BusinessRecords.record_message(
        user_id, f"Notice of termination. Reason: {args.get('reason') or 'end of lease'}.",
        recipient=tenancy.get('tenant_email'), subject='Notice of termination',
        related_entity_type='tenancy', related_entity_id=tenancy['id'])
    return {'tenancy_id': tenancy['id'], 'status': 'ending'}


def _schedule_inspection(user_id, args):
    _found(BusinessRecords.get_property(user_id, args['property_id']), 'Property', args['property_id'])
    scheduled = _parse_date(args['scheduled_date'], 'scheduled_date')
    inspection_id = BusinessRecords.add_inspection(
        user_id, args['property_id'], scheduled.isoformat(), args.get('inspection_type') or 'routine')
    return {'inspection_id': inspection_id, 'scheduled_date': scheduled.isoformat()}


def _record_compliance(user_id, args):
    if not BusinessRecords.complete_compliance_item(user_id, args['item_id']):
        raise ToolExecutionError(f"Compliance item {args['item_id']} not found")
    return {'item_id': args['item_id'], 'status': 'completed'}


def _lodge_bond(user_id, args):
    tenancy = _found(BusinessRecords.get_tenancy(user_id, args['tenancy_id']), 'Tenancy', args['tenancy_id'])
    if tenancy.get('bond_status') == 'lodged':
        raise ToolExecutionError(f"Bond for tenancy {tenancy['id']} already exists with the authority")
    BusinessRecords.update_tenancy(user_id, tenancy['id'], bond_status='lodged', bond_lodged_at=_ts())
    return {'tenancy_id': tenancy['id'], 'bond_status': 'lodged'}


def _set_application(status):
    def handler(user_id, args):
        _found(BusinessRecords.get_application(user_id, args['application_id']),
               'Application', args['application_id'])
        BusinessRecords.set_application_status(user_id, args['application_id'], status)
        return {'application_id': args['application_id'], 'status': status}
    return handler


def _update_listing(user_id, args):
    _found(BusinessRecords.get_listing(user_id, args['listing_id']), 'Listing', args['listing_id'])
    values = {k: args[k] for k in ('weekly_rent', 'status') if args.get(k) is not None}
    if not values:
        raise ToolExecutionError("Missing required parameter: weekly_rent or status")
    BusinessRecords.update_listing(user_id, args['listing_id'], **values)
    return {'listing_id': args['listing_id'], **values}


# ---------------------------------------------------------------------------
# Generate / external / integration handlers
# ---------------------------------------------------------------------------

_TRADE_KEYWORDS = [
    (('leak', 'tap', 'toilet', 'pipe', 'drain', 'hot water', 'plumb'), 'plumber'),
    (('power', 'electric', 'light', 'switch', 'outlet', 'smoke alarm'), 'electrician'),
    (('lock', 'key', 'door'), 'locksmith'),
    (('air con', 'aircon', 'heating', 'hvac'), 'hvac technician'),
]
_URGENT_KEYWORDS = ('flood', 'gas', 'burst', 'no hot water', 'sparking', 'fire', 'sewage')


def _draft_message(user_id, args):
    recipient = args.get('recipient') or 'the tenant'
    return {'draft': f"Hello {recipient},\n\n{args['purpose'].strip()}\n\nKind regards", 'sent': False}


def _triage_maintenance(user_id, args):
    request = _found(BusinessRecords.get_maintenance_request(user_id, args['request_id']),
                     'Maintenance request', args['request_id'])
    text = f"{request['title']} {request.get('description') or ''}".lower()
    trade = next((t for words, t in _TRADE_KEYWORDS if any(w in text for w in words)), 'handyman')
    urgency = 'emergency' if any(w in text for w in _URGENT_KEYWORDS) else request.get('urgency') or 'routine'
    return {'request_id': request['id'], 'suggested_trade': trade, 'urgency': urgency}


def _score_application(user_id, args):
    app = _found(BusinessRecords.get_application(user_id, args['application_id']),
                 'Application', args['application_id'])
    if not app.get('annual_income') or not app.get('weekly_rent'):
        raise ToolExecutionError("No data for income or listing rent on this application")
    ratio = app['annual_income'] / (app['weekly_rent'] * 52)
    return {
        'application_id': app['id'],
        'income_to_rent_ratio': round(ratio, 2),
        'meets_threshold': ratio >= INCOME_TO_RENT_RATIO,
        'score': round(min(1.0, ratio / (INCOME_TO_RENT_RATIO * 2)), 2),
    }


def _suggest_rent_price(user_id, args):
    prop = _found(BusinessRecords.get_property(user_id, args['property_id']), 'Property', args['property_id'])
    rents = [p['weekly_rent'] for p in BusinessRecords.get_properties(user_id, limit=500)
             if p['weekly_rent'] and p.get('state') == prop.get('state') and p['id'] != prop['id']]
    if not rents:
        raise ToolExecutionError("No data for comparable properties in this state")
    return {'property_id': prop['id'], 'suggested_weekly_rent': round(statistics.median(rents), 2),
            'comparables': len(rents)}


_NOTICE_TEMPLATES = {
    'entry': "Notice of entry: access to the property is required for an inspection.",
    'rent_increase': "Notice of rent increase: your weekly rent will change from the date stated.",
    'termination': "Notice of termination of tenancy.",
    'breach': "Notice to remedy breach of the tenancy agreement.",
}


def _generate_notice(user_id, args):
    tenancy = _found(BusinessRecords.get_tenancy(user_id, args['tenancy_id']), 'Tenancy', args['tenancy_id'])
    template = _NOTICE_TEMPLATES.get(args['notice_type'])
    if not template:
        raise ToolExecutionError(f"Invalid parameter notice_type: expected one of "
                                 f"{', '.join(_NOTICE_TEMPLATES)}, got {args['notice_type']!r}")
    return {'tenancy_id': tenancy['id'], 'notice': f"To {tenancy['tenant_name']}: {template}"}


def _request_quote(user_id, args):
    request = _found(BusinessRecords.get_maintenance_request(user_id, args['request_id']),
                     'Maintenance request', args['request_id'])
    body = f"Quote requested for: {request['title']}. {request.get('description') or ''}".strip()
    message_id = BusinessRecords.record_message(
        user_id, body, recipient=args.get('trade_email') or args['trade_name'], channel='email',
        subject='Quote request', related_entity_type='maintenance_request', related_entity_id=request['id'])
    return {'message_id': message_id, 'request_id': request['id']}


def _get_market_data(user_id, args):
    rents = BusinessRecords.rents_in_state(args['state'].upper())
    if not rents:
        raise ToolExecutionError(f"No data for state {args['state']}")
    return {'state': args['state'].upper(), 'samples': len(rents),
            'median_weekly_rent': round(statistics.median(rents), 2),
            'min_weekly_rent': min(rents), 'max_weekly_rent': max(rents)}


def _send_via(channel):
    def handler(user_id, args):
        message_id = BusinessRecords.record_message(
            user_id, args['body'], recipient=args['to'], channel=channel, subject=args.get('subject'))
        return {'message_id': message_id, 'channel': channel, 'queued': True}
    return handler


def _workflow_arrears_escalation(user_id, args):
    reminder = _send_rent_reminder(user_id, {'arrears_id': args['arrears_id'], 'tone': 'firm'})
    task_id = None
    if reminder['days_overdue'] >= 14:
        task_id = TaskStore.create_task(
            user_id, 'rent_collection', 'Consider a breach notice',
            f"Rent is {reminder['days_overdue']} days overdue and a firm reminder has been sent. "
            f"Review whether to issue a formal breach notice.",
            idempotency_key=f"escalation:{args['arrears_id']}",
            priority='urgent', related_entity_type='arrears', related_entity_id=args['arrears_id'],
            timeline=[timeline_entry('firm_reminder_sent', data={'message_id': reminder['message_id']})])
    return {'reminder': reminder, 'follow_up_task_id': task_id}


# ---------------------------------------------------------------------------
# Memory / planning handlers
# ---------------------------------------------------------------------------

def _remember(user_id, args):
    category = args.get('category') or infer_category(f"{args['key']} {args['value']}")
    preference_id = KnowledgeStore.upsert_preference(user_id, category, args['key'], args['value'],
                                                     source='explicit')
    return {'preference_id': preference_id, 'key': args['key'], 'category': category}


def _recall(user_id, args):
    vector = get_embedding_provider().embed(args['query'])
    matches = KnowledgeStore.search_similar_preferences(vector, user_id)
    return {'preferences': [{'key': m['preference_key'], 'value': m['value'], 'category': m['category'],
                             'similarity': m['similarity']} for m in matches]}


def _search_precedent(user_id, args):
    vector = get_embedding_provider().embed(args['query'])
    matches = KnowledgeStore.search_similar_decisions(vector, user_id, threshold=0.6, count=5)
    return {'precedents': [{'tool_name': m['tool_name'], 'input_summary': m['input_summary'],
                            'owner_feedback': m['owner_feedback'], 'similarity': m['similarity']}
                           for m in matches]}


def _get_owner_rules(user_id, args):
    rules = KnowledgeStore.get_active_rules(user_id, args.get('category'))
    return {'rules': [{'rule': r['rule_text'], 'category': r['category'], 'confidence': r['confidence']}
                      for r in rules]}


def _plan_task(user_id, args):
    key_source = f"{args['title']}|{args.get('category') or 'general'}".encode('utf-8')
    task_id = TaskStore.create_task(
        user_id, args.get('category') or 'general', args['title'], args['recommendation'],
        idempotency_key=f"plan:{user_id}:{hashlib.sha1(key_source).hexdigest()[:16]}",
        priority=args.get('priority') or 'normal',
        timeline=[timeline_entry('planned', reasoning=args['recommendation'])])
    if task_id is None:
        raise ToolExecutionError("A task with this title already exists")
    return {'task_id': task_id}


_HANDLERS: Dict[str, Callable] = {
    'get_properties': _get_properties,
    'get_property': _get_property,
    'get_maintenance_requests': _get_maintenance_requests,
    'get_tenancy': _get_tenancy,
    'get_arrears': _get_arrears,
    'get_listings': _get_listings,
    'get_applications': _get_applications,
    'get_inspections': _get_inspections,
    'get_compliance_status': _get_compliance_status,
    'get_tasks': _get_tasks,
    'create_maintenance': _create_maintenance,
    'assign_trade': _assign_trade,
    'update_maintenance_status': _update_maintenance_status,
    'send_rent_reminder': _send_rent_reminder,
    'send_breach_notice': _send_breach_notice,
    'create_payment_plan': _create_payment_plan,
    'send_message': _send_message,
    'renew_lease': _renew_lease,
    'terminate_lease': _terminate_lease,
    'schedule_inspection': _schedule_inspection,
    'record_compliance': _record_compliance,
    'lodge_bond': _lodge_bond,
    'shortlist_application': _set_application('shortlisted'),
    'reject_application': _set_application('rejected'),
    'update_listing': _update_listing,
    'draft_message': _draft_message,
    'triage_maintenance': _triage_maintenance,
    'score_application': _score_application,
    'suggest_rent_price': _suggest_rent_price,
    'generate_notice': _generate_notice,
    'request_quote': _request_quote,
    'get_market_data': _get_market_data,
    'send_email': _send_via('email'),
    'send_sms': _send_via('sms'),
    'workflow_arrears_escalation': _workflow_arrears_escalation,
    'remember': _remember,
    'recall': _recall,
    'search_precedent': _search_precedent,
    'get_owner_rules': _get_owner_rules,
    'plan_task': _plan_task,
}


class ToolDispatcher:
    """Validates and runs tool calls."""

    @staticmethod
    def execute(user_id: str, tool_name: str, tool_input: Dict = None) -> Dict:
        """Run one tool. Raises ToolExecutionError on any failure."""
        tool = get_tool(tool_name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {tool_name}")
        args = dict(tool_input or {})
        missing = [p for p in tool.required if args.get(p) in (None, '')]
        if missing:
            raise ToolExecutionError(f"Missing required parameter(s) for {tool_name}: {', '.join(missing)}")
        handler = _HANDLERS.get(tool_name)
        if handler is None:
            raise ToolExecutionError(f"Tool {tool_name} is not yet implemented")
        try:
            return handler(user_id, args)
        except ToolExecutionError:
            raise
        except get_integrity_error() as e:
            raise ToolExecutionError(f"Constraint violation in {tool_name}: {e}") from e
        except (TypeError, ValueError) as e:
            raise ToolExecutionError(f"Invalid input for {tool_name}: {e}") from e

    @staticmethod
    def run(user_id: str, tool_name: str, tool_input: Dict = None) -> Dict:
        """
        Execute and record the outcome in the tool genome.
        Returns {success, data | error, error_type?, duration_ms}.
        """
        tool = get_tool(tool_name)
        start = time.time()
        try:
            data = ToolDispatcher.execute(user_id, tool_name, tool_input)
            result = {'success': True, 'data': data}
        except ToolExecutionError as e:
            error_type = classify_tool_error(tool_name, tool_input, str(e))
            logger.info(f"Tool {tool_name} failed ({error_type.value}): {e}")
            result = {'success': False, 'error': str(e), 'error_type': error_type.value}
        result['duration_ms'] = round((time.time() - start) * 1000, 1)

        if tool is not None and tool.category != 'query':
            ToolGenome.record_execution(user_id, tool_name, result['success'], result['duration_ms'],
                                        error=result.get('error'), params=tool_input)
        return result
