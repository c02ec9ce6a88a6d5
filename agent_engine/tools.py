"""
Agent Engine — Tool registry
=============================
Every tool the agent can call, with the metadata the gate and scorer need:
tool category, the business domain it acts in, the autonomy level it
requires to run without approval, and whether confidence scoring applies.

confidence_exempt is an explicit per-tool property. It defaults to True
only for read-only categories (query, memory, planning); the scorer reads
the flag and never infers exemption from the category name.
"""

from typing import Dict, List, Optional

from constants import DEFAULT_EXEMPT_TOOL_CATEGORIES, TOOL_CATEGORIES


class ToolSpec:
    """Registration record for one tool."""

    def __init__(self, name: str, category: str, required_level: int, description: str,
                 parameters: Dict = None, required: List[str] = None, domain: str = 'general',
                 risk_level: str = 'none', reversible: bool = False,
                 confidence_exempt: Optional[bool] = None, source_freshness: str = 'live'):
        if category not in TOOL_CATEGORIES:
            raise ValueError(f"Unknown tool category for {name}: {category}")
        if not 0 <= required_level <= 4:
            raise ValueError(f"required_level out of range for {name}: {required_level}")
        self.name = name
        self.category = category
        self.required_level = required_level
        self.description = description
        self.parameters = parameters or {}
        self.required = list(required or [])
        self.domain = domain
        self.risk_level = risk_level
        self.reversible = reversible
        self.confidence_exempt = (category in DEFAULT_EXEMPT_TOOL_CATEGORIES
                                  if confidence_exempt is None else confidence_exempt)
        self.source_freshness = source_freshness

    def openai_schema(self) -> Dict:
        return {
            'type': 'function',
            'function': {
                'name': self.name,
                'description': self.description,
                'parameters': {
                    'type': 'object',
                    'properties': self.parameters,
                    'required': self.required,
                },
            },
        }

    def __repr__(self):
        return f"ToolSpec({self.name!r}, category={self.category!r}, required_level={self.required_level})"


def _s(description: str, **extra) -> Dict:
    return dict(type='string', description=description, **extra)


def _n(description: str) -> Dict:
    return {'type': 'number', 'description': description}


_TOOLS = [
    # --- Query (read-only) ---
    ToolSpec('get_properties', 'query', 4, "List the owner's properties",
             {'status': _s('Filter by status', enum=['active', 'vacant', 'all'])}),
    ToolSpec('get_property', 'query', 4, 'Get one property with its active tenancy',
             {'property_id': _s('Property id')}, ['property_id']),
    ToolSpec('get_maintenance_requests', 'query', 4, 'List maintenance requests',
             {'status': _s('Filter by status')}, domain='maintenance'),
    ToolSpec('get_tenancy', 'query', 4, 'Get a tenancy by id or by property',
             {'tenancy_id': _s('Tenancy id'), 'property_id': _s('Or look up by property')},
             domain='lease_management'),
    ToolSpec('get_arrears', 'query', 4, 'List unresolved rent arrears with days overdue',
             domain='rent_collection'),
    ToolSpec('get_listings', 'query', 4, 'List listings',
             {'status': _s('Filter by status')}, domain='listings'),
    ToolSpec('get_applications', 'query', 4, 'List tenancy applications',
             {'listing_id': _s('Filter by listing')}, domain='tenant_finding'),
    ToolSpec('get_inspections', 'query', 4, 'List inspections',
             {'property_id': _s('Filter by property')}, domain='inspections'),
    ToolSpec('get_compliance_status', 'query', 4, 'List compliance items and due dates',
             {'property_id': _s('Filter by property')}, domain='compliance'),
    ToolSpec('get_tasks', 'query', 4, 'List open agent tasks',
             {'category': _s('Filter by category')}),

    # --- Actions (side effects on business records) ---
    ToolSpec('create_maintenance', 'action', 2, 'Log a maintenance request for a property',
             {'property_id': _s('Property id'), 'title': _s('Short title'),
              'description': _s('Details'),
              'urgency': _s('Urgency', enum=['emergency', 'urgent', 'routine'])},
             ['property_id', 'title'], domain='maintenance', risk_level='low', reversible=True),
    ToolSpec('assign_trade', 'action', 2, 'Assign a tradesperson to a maintenance request',
             {'request_id': _s('Maintenance request id'), 'trade_name': _s('Trade business name')},
             ['request_id', 'trade_name'], domain='maintenance', risk_level='medium', reversible=True),
    ToolSpec('update_maintenance_status', 'action', 2, 'Change a maintenance request status',
             {'request_id': _s('Maintenance request id'),
              'status': _s('New status', enum=['acknowledged', 'awaiting_quote', 'in_progress',
                                               'completed', 'cancelled'])},
             ['request_id', 'status'], domain='maintenance', risk_level='low', reversible=True),
    ToolSpec('send_rent_reminder', 'action', 3, 'Send a rent reminder for an arrears record',
             {'arrears_id': _s('Arrears id'), 'tone': _s('Tone', enum=['friendly', 'firm'])},
             ['arrears_id'], domain='rent_collection', risk_level='low'),
    ToolSpec('send_breach_notice', 'action', 0, 'Send a formal breach notice for unpaid rent',
             {'arrears_id': _s('Arrears id')}, ['arrears_id'],
             domain='rent_collection', risk_level='high'),
    ToolSpec('create_payment_plan', 'action', 1, 'Agree a payment plan for an arrears record',
             {'arrears_id': _s('Arrears id'), 'plan': _s('Plan terms')},
             ['arrears_id', 'plan'], domain='rent_collection', risk_level='medium', reversible=True),
    ToolSpec('send_message', 'action', 2, 'Send a message to a tenant',
             {'tenancy_id': _s('Tenancy id'), 'subject': _s('Subject'), 'body': _s('Message body')},
             ['tenancy_id', 'body'], domain='general', risk_level='medium'),
    ToolSpec('renew_lease', 'action', 1, 'Offer a lease renewal to the tenant',
             {'tenancy_id': _s('Tenancy id'), 'new_end_date': _s('New lease end (YYYY-MM-DD)'),
              'weekly_rent': _n('Weekly rent for the renewed term')},
             ['tenancy_id', 'new_end_date'], domain='lease_management', risk_level='medium'),
    ToolSpec('terminate_lease', 'action', 0, 'Issue a lease termination',
             {'tenancy_id': _s('Tenancy id'), 'reason': _s('Reason')},
             ['tenancy_id'], domain='lease_management', risk_level='high'),
    ToolSpec('schedule_inspection', 'action', 3, 'Schedule an inspection',
             {'property_id': _s('Property id'), 'scheduled_date': _s('Date (YYYY-MM-DD)'),
              'inspection_type': _s('Type', enum=['routine', 'entry', 'exit'])},
             ['property_id', 'scheduled_date'], domain='inspections', risk_level='low', reversible=True),
    ToolSpec('record_compliance', 'action', 2, 'Mark a compliance item as completed',
             {'item_id': _s('Compliance item id')}, ['item_id'],
             domain='compliance', risk_level='low', reversible=True),
    ToolSpec('lodge_bond', 'action', 1, 'Lodge a tenancy bond with the state authority',
             {'tenancy_id': _s('Tenancy id')}, ['tenancy_id'], domain='bonds', risk_level='high'),
    ToolSpec('shortlist_application', 'action', 2, 'Shortlist a tenancy application',
             {'application_id': _s('Application id')}, ['application_id'],
             domain='tenant_finding', risk_level='medium', reversible=True),
    ToolSpec('reject_application', 'action', 1, 'Reject a tenancy application',
             {'application_id': _s('Application id'), 'reason': _s('Reason')},
             ['application_id'], domain='tenant_finding', risk_level='high'),
    ToolSpec('update_listing', 'action', 2, 'Update listing rent or status',
             {'listing_id': _s('Listing id'), 'weekly_rent': _n('New weekly rent'),
              'status': _s('New status', enum=['active', 'paused', 'leased'])},
             ['listing_id'], domain='listings', risk_level='medium', reversible=True),

    # --- Generate (drafts and analysis) ---
    ToolSpec('draft_message', 'generate', 3, 'Draft a message for review without sending it',
             {'recipient': _s('Recipient'), 'purpose': _s('What the message is for')},
             ['purpose']),
    ToolSpec('triage_maintenance', 'generate', 3, 'Assess urgency and suggested trade for a request',
             {'request_id': _s('Maintenance request id')}, ['request_id'], domain='maintenance'),
    ToolSpec('score_application', 'generate', 3, 'Score an application on income-to-rent ratio',
             {'application_id': _s('Application id')}, ['application_id'], domain='tenant_finding'),
    ToolSpec('suggest_rent_price', 'generate', 2, "Suggest a weekly rent from the owner's portfolio",
             {'property_id': _s('Property id')}, ['property_id'], domain='listings',
             source_freshness='inferred'),
    ToolSpec('generate_notice', 'generate', 0, 'Generate a formal notice document',
             {'tenancy_id': _s('Tenancy id'), 'notice_type': _s('Notice type')},
             ['tenancy_id', 'notice_type'], domain='lease_management', risk_level='high'),

    # --- External ---
    ToolSpec('request_quote', 'external', 1, 'Ask a trade for a quote on a maintenance request',
             {'request_id': _s('Maintenance request id'), 'trade_name': _s('Trade business name'),
              'trade_email': _s('Trade email')},
             ['request_id', 'trade_name'], domain='maintenance', risk_level='medium'),
    ToolSpec('get_market_data', 'external', 3, 'Rent statistics for comparable properties in a state',
             {'state': _s('State code, e.g. NSW')}, ['state'], domain='listings',
             source_freshness='cached'),

    # --- Integration ---
    ToolSpec('send_email', 'integration', 2, 'Send an email through the mail provider',
             {'to': _s('Recipient email'), 'subject': _s('Subject'), 'body': _s('Body')},
             ['to', 'subject', 'body'], risk_level='low'),
    ToolSpec('send_sms', 'integration', 1, 'Send an SMS through the SMS provider',
             {'to': _s('Recipient phone'), 'body': _s('Body')}, ['to', 'body'], risk_level='low'),

    # --- Workflow ---
    ToolSpec('workflow_arrears_escalation', 'workflow', 1,
             'Escalate an arrears record: reminder now, breach notice task if unpaid',
             {'arrears_id': _s('Arrears id')}, ['arrears_id'],
             domain='rent_collection', risk_level='high'),

    # --- Memory ---
    ToolSpec('remember', 'memory', 4, 'Store an owner preference for future decisions',
             {'key': _s('Preference key, e.g. preferred_plumber'), 'value': _s('Value'),
              'category': _s('Category')}, ['key', 'value']),
    ToolSpec('recall', 'memory', 4, 'Recall stored preferences relevant to a query',
             {'query': _s('What to recall')}, ['query']),
    ToolSpec('search_precedent', 'memory', 4, 'Find similar past decisions and how the owner responded',
             {'query': _s('Describe the action being considered')}, ['query']),

    # --- Planning ---
    ToolSpec('get_owner_rules', 'planning', 4, 'List the rules learned from the owner',
             {'category': _s('Filter by category')}),
    ToolSpec('plan_task', 'planning', 3, 'Create a tracked task with a recommendation',
             {'title': _s('Task title'), 'recommendation': _s('Recommended next step'),
              'category': _s('Domain category'),
              'priority': _s('Priority', enum=['urgent', 'high', 'normal', 'low'])},
             ['title', 'recommendation']),
]

TOOL_REGISTRY: Dict[str, ToolSpec] = {tool.name: tool for tool in _TOOLS}


def get_tool(name: str) -> Optional[ToolSpec]:
    return TOOL_REGISTRY.get(name)


def tools_in_category(category: str) -> List[str]:
    return [name for name, tool in TOOL_REGISTRY.items() if tool.category == category]


def confidence_exempt_tools() -> List[str]:
    return [name for name, tool in TOOL_REGISTRY.items() if tool.confidence_exempt]


def openai_tool_schemas(categories=None) -> List[Dict]:
    """Registry rendered as OpenAI function-calling tool specs."""
    return [tool.openai_schema() for tool in TOOL_REGISTRY.values()
            if categories is None or tool.category in categories]
