"""
Constants and static data for the property agent engine.
Centralizes autonomy presets, confidence weights, keyword mappings and
scanner thresholds.
"""

# Tool categories (how a tool touches the world)
TOOL_CATEGORIES = [
    'query', 'action', 'generate', 'external', 'integration',
    'workflow', 'memory', 'planning',
]

# Tool categories whose tools are confidence-exempt unless registered otherwise
DEFAULT_EXEMPT_TOOL_CATEGORIES = {'query', 'memory', 'planning'}

# Business domains the heartbeat scans
DOMAIN_CATEGORIES = [
    'maintenance', 'tenant_finding', 'lease_management', 'rent_collection',
    'compliance', 'listings', 'inspections', 'insurance', 'bonds', 'general',
]

# Autonomy level per category for each named preset. 'custom' starts from
# balanced and applies per-category overrides.
AUTONOMY_PRESETS = {
    'cautious': {
        'query': 4, 'action': 1, 'generate': 2, 'external': 1,
        'integration': 1, 'workflow': 0, 'memory': 4, 'planning': 3,
        'maintenance': 1, 'tenant_finding': 1, 'lease_management': 0,
        'rent_collection': 1, 'compliance': 1, 'listings': 1,
        'inspections': 1, 'insurance': 0, 'bonds': 0, 'general': 1,
    },
    'balanced': {
        'query': 4, 'action': 2, 'generate': 3, 'external': 3,
        'integration': 2, 'workflow': 1, 'memory': 4, 'planning': 3,
        'maintenance': 2, 'tenant_finding': 2, 'lease_management': 1,
        'rent_collection': 2, 'compliance': 1, 'listings': 2,
        'inspections': 2, 'insurance': 1, 'bonds': 1, 'general': 2,
    },
    'hands_off': {
        'query': 4, 'action': 3, 'generate': 4, 'external': 4,
        'integration': 3, 'workflow': 2, 'memory': 4, 'planning': 3,
        'maintenance': 3, 'tenant_finding': 3, 'lease_management': 2,
        'rent_collection': 3, 'compliance': 2, 'listings': 3,
        'inspections': 3, 'insurance': 2, 'bonds': 2, 'general': 3,
    },
}
PRESET_NAMES = ('cautious', 'balanced', 'hands_off', 'custom')
DEFAULT_PRESET = 'balanced'
DEFAULT_CATEGORY_LEVEL = 2

# Composite confidence below this demotes the effective autonomy level
DEFAULT_CONFIDENCE_MINIMUM = 0.6
CATEGORY_CONFIDENCE_MINIMUMS = {
    'rent_collection': 0.7,
    'bonds': 0.7,
    'lease_management': 0.7,
    'compliance': 0.7,
    'insurance': 0.7,
    'action': 0.7,
    'integration': 0.7,
    'generate': 0.5,
}
# Composite below this demotes two levels instead of one
SEVERE_CONFIDENCE_FLOOR = 0.3

# Confidence factor weights (sum to 1.0)
CONFIDENCE_WEIGHTS = {
    'historical_accuracy': 0.30,
    'source_quality': 0.10,
    'precedent_alignment': 0.20,
    'rule_alignment': 0.15,
    'golden_alignment': 0.10,
    'outcome_track': 0.15,
}
CONFIDENCE_FACTORS = list(CONFIDENCE_WEIGHTS)

# Neutral values when there is no evidence yet
CONFIDENCE_DEFAULTS = {
    'historical_accuracy': 0.8,
    'precedent_alignment': 0.7,
    'rule_alignment': 0.8,
    'golden_alignment': 0.5,
    'outcome_track': 0.7,
}

# Reliability of the data a tool category acts on
SOURCE_QUALITY = {
    'query': 0.95,
    'memory': 0.90,
    'generate': 0.75,
    'action': 0.85,
    'external': 0.65,
    'integration': 0.60,
    'workflow': 0.70,
    'planning': 0.80,
}
DEFAULT_SOURCE_QUALITY = 0.70

FRESHNESS_MULTIPLIERS = {
    'live': 1.0,
    'cached': 0.85,
    'stale': 0.70,
    'inferred': 0.60,
}

# Error-message fragments per error class, checked in this order
TOOL_MISUSE_PATTERNS = [
    'unknown tool', 'not yet implemented', 'missing required',
]
CONTEXT_MISSING_PATTERNS = [
    'not found', 'no data', 'does not exist', 'no rows', 'permission denied',
    'access denied', 'no matching',
]
FACTUAL_ERROR_PATTERNS = [
    'constraint', 'duplicate', 'already exists', 'violates', 'out of range',
    'invalid date', 'type mismatch',
]

# Keyword routing for corrections and rules
CATEGORY_KEYWORDS = {
    'maintenance': ['maintenance', 'repair', 'plumb', 'electric', 'trade', 'fix', 'leak', 'broken'],
    'financial': ['rent', 'payment', 'arrears', 'money', 'invoice', 'cost', 'price', 'bond', 'fee'],
    'scheduling': ['inspection', 'schedule', 'time', 'date', 'appointment', 'booking'],
    'tenant_relations': ['tenant', 'applicant', 'application', 'lease', 'tenancy'],
    'compliance': ['compliance', 'smoke', 'pool', 'safety', 'regulation', 'law', 'legal'],
    'communication': ['message', 'email', 'sms', 'notify', 'tone', 'reply', 'formal'],
}

# Phrases that mark a chat message as a correction of the agent's last action
CORRECTION_PHRASES = [
    "no, ", "no that", "that's wrong", "that is wrong", "that's not right",
    "actually,", "actually ", "i said", "i meant", "not what i", "don't do that",
    "do not do that", "wrong ", "incorrect",
]

# Routine inspection interval in months by state
INSPECTION_INTERVAL_MONTHS = {'QLD': 3, 'WA': 3, 'SA': 4}
DEFAULT_INSPECTION_INTERVAL_MONTHS = 6

# Heartbeat thresholds
MAINTENANCE_STALE_HOURS = 72
LEASE_WINDOWS = [(14, 'urgent'), (30, 'high'), (60, 'normal')]
ARREARS_PRIORITY = [(14, 'urgent'), (7, 'high')]
INCOME_TO_RENT_RATIO = 2.5
LISTING_STALE_DAYS = 7
LISTING_MIN_VIEWS = 10
LISTING_HIGH_PRIORITY_DAYS = 21
COMPLIANCE_LOOKAHEAD_DAYS = 14
INSURANCE_LOOKAHEAD_DAYS = 30
PENDING_ACTION_STALE_HOURS = 48

OPEN_TASK_STATUSES = ('pending_input', 'in_progress', 'scheduled', 'paused')
TASK_STATUSES = OPEN_TASK_STATUSES + ('completed', 'cancelled')
TASK_PRIORITIES = ('urgent', 'high', 'normal', 'low')
