"""
Agent Engine — Business records
================================
The property-management records the engine reasons about: properties,
maintenance requests, tenancies (with bond state), arrears, listings,
applications, inspections, compliance items, insurance policies, and the
outbound message log that tool actions write to.

The engine treats these as opaque rows owned by owner_id. Dates are ISO
'YYYY-MM-DD' strings; timestamps use the engine's UTC format.
"""

import logging
import uuid
from datetime import date, timedelta
from typing import Dict, List, Optional

from db import get_db
from agent_engine.db import _get_conn, _parse_ts, _ts, _ts_ago, _utcnow

logger = logging.getLogger(__name__)

# Business tables a record id may belong to, keyed by the entity type the
# engine stores on tasks and decisions.
ENTITY_TABLES = {
    'property': 'properties',
    'maintenance_request': 'maintenance_requests',
    'tenancy': 'tenancies',
    'arrears': 'arrears',
    'listing': 'listings',
    'application': 'applications',
    'inspection': 'inspections',
    'compliance_item': 'compliance_items',
    'insurance_policy': 'insurance_policies',
}

OPEN_MAINTENANCE_STATUSES = ('submitted', 'acknowledged', 'awaiting_quote')


def _today() -> date:
    return _utcnow().date()


def _iso(d: date) -> str:
    return d.isoformat()


def _days_since(iso_date: str) -> int:
    return (_today() - date.fromisoformat(str(iso_date)[:10])).days


def _days_until(iso_date: str) -> int:
    return (date.fromisoformat(str(iso_date)[:10]) - _today()).days


def _new_id() -> str:
    return str(uuid.uuid4())


def init_business_tables():
    """Create the business record tables (idempotent)."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS properties (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                address TEXT NOT NULL,
                state TEXT,
                status TEXT DEFAULT 'active',
                weekly_rent REAL,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS maintenance_requests (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                urgency TEXT DEFAULT 'routine',
                status TEXT DEFAULT 'submitted',
                assigned_trade TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS tenancies (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                tenant_name TEXT NOT NULL,
                tenant_email TEXT,
                lease_start DATE,
                lease_end DATE,
                weekly_rent REAL,
                status TEXT DEFAULT 'active',
                bond_amount REAL,
                bond_status TEXT DEFAULT 'pending',
                bond_due_date DATE,
                bond_lodged_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS arrears (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                tenancy_id TEXT NOT NULL,
                amount REAL NOT NULL,
                first_overdue_date DATE NOT NULL,
                is_resolved INTEGER DEFAULT 0,
                resolved_at TIMESTAMP,
                payment_plan TEXT,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS listings (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                title TEXT,
                weekly_rent REAL,
                status TEXT DEFAULT 'draft',
                view_count INTEGER DEFAULT 0,
                published_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS applications (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                listing_id TEXT NOT NULL,
                applicant_name TEXT NOT NULL,
                annual_income REAL,
                status TEXT DEFAULT 'submitted',
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS inspections (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                inspection_type TEXT DEFAULT 'routine',
                scheduled_date DATE NOT NULL,
                status TEXT DEFAULT 'scheduled',
                completed_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS compliance_items (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                item_type TEXT NOT NULL,
                due_date DATE NOT NULL,
                status TEXT DEFAULT 'pending',
                completed_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS insurance_policies (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                property_id TEXT NOT NULL,
                provider TEXT,
                expiry_date DATE NOT NULL,
                status TEXT DEFAULT 'active',
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS outbound_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                recipient TEXT,
                channel TEXT DEFAULT 'in_app',
                subject TEXT,
                body TEXT NOT NULL,
                related_entity_type TEXT,
                related_entity_id TEXT,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_maint_owner ON maintenance_requests(owner_id, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_tenancies_owner ON tenancies(owner_id, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_arrears_owner ON arrears(owner_id, is_resolved)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_messages_entity ON outbound_messages(related_entity_id)')


def _insert(table: str, values: Dict) -> str:
    columns = ', '.join(values)
    placeholders = ', '.join('?' for _ in values)
    with get_db() as conn:
        conn.execute(f'INSERT INTO {table} ({columns}) VALUES ({placeholders})', list(values.values()))
    return values.get('id')


def _rows(sql: str, params=()) -> List[Dict]:
    conn = _get_conn()
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def _row(sql: str, params=()) -> Optional[Dict]:
    conn = _get_conn()
    row = conn.execute(sql, params).fetchone()
    conn.close()
    return dict(row) if row else None


def _update(table: str, record_id: str, owner_id: str, values: Dict) -> int:
    assignments = ', '.join(f"{column} = ?" for column in values)
    with get_db() as conn:
        cursor = conn.execute(
            f'UPDATE {table} SET {assignments} WHERE id = ? AND owner_id = ?',
            list(values.values()) + [record_id, owner_id])
        return cursor.rowcount


class BusinessRecords:
    """Reads and writes over the owner's business records."""

    # --- Owners ---

    @staticmethod
    def owners_with_properties() -> List[str]:
        return [r['owner_id'] for r in _rows('SELECT DISTINCT owner_id FROM properties')]

    @staticmethod
    def entity_exists(owner_id: str, entity_type: str, entity_id: str) -> bool:
        table = ENTITY_TABLES.get(entity_type)
        if not table:
            return False
        return _row(f'SELECT id FROM {table} WHERE id = ? AND owner_id = ?', (entity_id, owner_id)) is not None

    # --- Properties ---

    @staticmethod
    def add_property(owner_id: str, address: str, state: str = None, weekly_rent: float = None,
                     property_id: str = None, status: str = 'active') -> str:
        return _insert('properties', {
            'id': property_id or _new_id(), 'owner_id': owner_id, 'address': address,
            'state': state, 'status': status, 'weekly_rent': weekly_rent, 'created_at': _ts(),
        })

    @staticmethod
    def get_properties(owner_id: str, status: str = None, limit: int = 50) -> List[Dict]:
        if status and status != 'all':
            return _rows('SELECT * FROM properties WHERE owner_id = ? AND status = ? ORDER BY address LIMIT ?',
                         (owner_id, status, limit))
        return _rows('SELECT * FROM properties WHERE owner_id = ? ORDER BY address LIMIT ?', (owner_id, limit))

    @staticmethod
    def get_property(owner_id: str, property_id: str) -> Optional[Dict]:
        return _row('SELECT * FROM properties WHERE id = ? AND owner_id = ?', (property_id, owner_id))

    @staticmethod
    def rents_in_state(state: str) -> List[float]:
        """Weekly rents across all owners' properties in a state."""
        rows = _rows('SELECT weekly_rent FROM properties WHERE state = ? AND weekly_rent IS NOT NULL', (state,))
        return [r['weekly_rent'] for r in rows]

    # --- Maintenance ---

    @staticmethod
    def add_maintenance_request(owner_id: str, property_id: str, title: str, description: str = None,
                                urgency: str = 'routine', status: str = 'submitted',
                                assigned_trade: str = None, created_at: str = None,
                                request_id: str = None) -> str:
        created = created_at or _ts()
        return _insert('maintenance_requests', {
            'id': request_id or _new_id(), 'owner_id': owner_id, 'property_id': property_id,
            'title': title, 'description': description, 'urgency': urgency, 'status': status,
            'assigned_trade': assigned_trade, 'created_at': created, 'updated_at': created,
        })

    @staticmethod
    def get_maintenance_requests(owner_id: str, status: str = None, limit: int = 50) -> List[Dict]:
        if status and status != 'all':
            return _rows('''
                SELECT * FROM maintenance_requests WHERE owner_id = ? AND status = ?
                ORDER BY created_at DESC LIMIT ?
            ''', (owner_id, status, limit))
        return _rows('SELECT * FROM maintenance_requests WHERE owner_id = ? ORDER BY created_at DESC LIMIT ?',
                     (owner_id, limit))

    @staticmethod
    def get_maintenance_request(owner_id: str, request_id: str) -> Optional[Dict]:
        return _row('SELECT * FROM maintenance_requests WHERE id = ? AND owner_id = ?', (request_id, owner_id))

    @staticmethod
    def open_unassigned_maintenance(owner_id: str, older_than_hours: float) -> List[Dict]:
        """Open requests older than the threshold that still have no trade assigned."""
        placeholders = ', '.join('?' for _ in OPEN_MAINTENANCE_STATUSES)
        rows = _rows(f'''
            SELECT m.*, p.address FROM maintenance_requests m
            LEFT JOIN properties p ON p.id = m.property_id
            WHERE m.owner_id = ? AND m.status IN ({placeholders})
              AND (m.assigned_trade IS NULL OR m.assigned_trade = '')
              AND m.created_at < ?
            ORDER BY m.created_at
        ''', [owner_id, *OPEN_MAINTENANCE_STATUSES, _ts_ago(hours=older_than_hours)])
        now = _utcnow()
        for row in rows:
            row['hours_open'] = int((now - _parse_ts(row['created_at'])).total_seconds() // 3600)
        return rows

    @staticmethod
    def assign_trade(owner_id: str, request_id: str, trade_name: str) -> int:
        return _update('maintenance_requests', request_id, owner_id, {
            'assigned_trade': trade_name, 'status': 'awaiting_quote', 'updated_at': _ts(),
        })

    @staticmethod
    def update_maintenance_status(owner_id: str, request_id: str, status: str) -> int:
        values = {'status': status, 'updated_at': _ts()}
        if status == 'completed':
            values['completed_at'] = _ts()
        return _update('maintenance_requests', request_id, owner_id, values)

    # --- Tenancies & bonds ---

    @staticmethod
    def add_tenancy(owner_id: str, property_id: str, tenant_name: str, lease_start: str, lease_end: str,
                    weekly_rent: float, tenant_email: str = None, bond_amount: float = None,
                    bond_status: str = 'pending', bond_due_date: str = None, status: str = 'active',
                    tenancy_id: str = None) -> str:
        return _insert('tenancies', {
            'id': tenancy_id or _new_id(), 'owner_id': owner_id, 'property_id': property_id,
            'tenant_name': tenant_name, 'tenant_email': tenant_email, 'lease_start': lease_start,
            'lease_end': lease_end, 'weekly_rent': weekly_rent, 'status': status,
            'bond_amount': bond_amount, 'bond_status': bond_status, 'bond_due_date': bond_due_date,
            'created_at': _ts(),
        })

    @staticmethod
    def get_tenancies(owner_id: str, status: str = 'active') -> List[Dict]:
        if status and status != 'all':
            return _rows('SELECT * FROM tenancies WHERE owner_id = ? AND status = ? ORDER BY lease_end',
                         (owner_id, status))
        return _rows('SELECT * FROM tenancies WHERE owner_id = ? ORDER BY lease_end', (owner_id,))

    @staticmethod
    def get_tenancy(owner_id: str, tenancy_id: str = None, property_id: str = None) -> Optional[Dict]:
        if tenancy_id:
            return _row('SELECT * FROM tenancies WHERE id = ? AND owner_id = ?', (tenancy_id, owner_id))
        if property_id:
            return _row('''
                SELECT * FROM tenancies WHERE property_id = ? AND owner_id = ? AND status = 'active'
                ORDER BY lease_start DESC LIMIT 1
            ''', (property_id, owner_id))
        return None

    @staticmethod
    def leases_ending_within(owner_id: str, days: int) -> List[Dict]:
        today = _today()
        rows = _rows('''
            SELECT t.*, p.address FROM tenancies t
            LEFT JOIN properties p ON p.id = t.property_id
            WHERE t.owner_id = ? AND t.status = 'active'
              AND t.lease_end IS NOT NULL AND t.lease_end >= ? AND t.lease_end <= ?
            ORDER BY t.lease_end
        ''', (owner_id, _iso(today), _iso(today + timedelta(days=days))))
        for row in rows:
            row['days_until_end'] = _days_until(row['lease_end'])
        return rows

    @staticmethod
    def update_tenancy(owner_id: str, tenancy_id: str, **values) -> int:
        return _update('tenancies', tenancy_id, owner_id, values)

    @staticmethod
    def unlodged_bonds(owner_id: str) -> List[Dict]:
        """Active tenancies whose bond is past its lodgement due date and not lodged."""
        rows = _rows('''
            SELECT t.*, p.address, p.state FROM tenancies t
            LEFT JOIN properties p ON p.id = t.property_id
            WHERE t.owner_id = ? AND t.status = 'active'
              AND t.bond_status <> 'lodged' AND t.bond_due_date IS NOT NULL AND t.bond_due_date < ?
        ''', (owner_id, _iso(_today())))
        for row in rows:
            row['days_overdue'] = _days_since(row['bond_due_date'])
        return rows

    # --- Arrears ---

    @staticmethod
    def add_arrears(owner_id: str, tenancy_id: str, amount: float, first_overdue_date: str,
                    arrears_id: str = None) -> str:
        return _insert('arrears', {
            'id': arrears_id or _new_id(), 'owner_id': owner_id, 'tenancy_id': tenancy_id,
            'amount': amount, 'first_overdue_date': first_overdue_date, 'is_resolved': 0,
            'created_at': _ts(),
        })

    @staticmethod
    def open_arrears(owner_id: str) -> List[Dict]:
        rows = _rows('''
            SELECT a.*, t.tenant_name, t.tenant_email, t.property_id, p.address FROM arrears a
            LEFT JOIN tenancies t ON t.id = a.tenancy_id
            LEFT JOIN properties p ON p.id = t.property_id
            WHERE a.owner_id = ? AND a.is_resolved = 0
            ORDER BY a.first_overdue_date
        ''', (owner_id,))
        for row in rows:
            row['days_overdue'] = _days_since(row['first_overdue_date'])
        return rows

    @staticmethod
    def get_arrears(owner_id: str, arrears_id: str) -> Optional[Dict]:
        row = _row('SELECT * FROM arrears WHERE id = ? AND owner_id = ?', (arrears_id, owner_id))
        if row:
            row['days_overdue'] = _days_since(row['first_overdue_date'])
        return row

    @staticmethod
    def resolve_arrears(owner_id: str, arrears_id: str) -> int:
        return _update('arrears', arrears_id, owner_id, {'is_resolved': 1, 'resolved_at': _ts()})

    @staticmethod
    def set_payment_plan(owner_id: str, arrears_id: str, plan: str) -> int:
        return _update('arrears', arrears_id, owner_id, {'payment_plan': plan})

    # --- Listings & applications ---

    @staticmethod
    def add_listing(owner_id: str, property_id: str, title: str = None, weekly_rent: float = None,
                    status: str = 'active', view_count: int = 0, published_at: str = None,
                    listing_id: str = None) -> str:
        return _insert('listings', {
            'id': listing_id or _new_id(), 'owner_id': owner_id, 'property_id': property_id,
            'title': title, 'weekly_rent': weekly_rent, 'status': status, 'view_count': view_count,
            'published_at': published_at or (_ts() if status == 'active' else None), 'created_at': _ts(),
        })

    @staticmethod
    def get_listings(owner_id: str, status: str = None) -> List[Dict]:
        if status and status != 'all':
            return _rows('SELECT * FROM listings WHERE owner_id = ? AND status = ?', (owner_id, status))
        return _rows('SELECT * FROM listings WHERE owner_id = ?', (owner_id,))

    @staticmethod
    def get_listing(owner_id: str, listing_id: str) -> Optional[Dict]:
        return _row('SELECT * FROM listings WHERE id = ? AND owner_id = ?', (listing_id, owner_id))

    @staticmethod
    def stale_listings(owner_id: str, min_days: int = 7, max_views: int = 10) -> List[Dict]:
        rows = _rows('''
            SELECT l.*, p.address FROM listings l
            LEFT JOIN properties p ON p.id = l.property_id
            WHERE l.owner_id = ? AND l.status = 'active' AND l.published_at IS NOT NULL
              AND l.published_at < ? AND COALESCE(l.view_count, 0) < ?
        ''', (owner_id, _ts_ago(days=min_days), max_views))
        for row in rows:
            row['days_listed'] = _days_since(row['published_at'])
        return rows

    @staticmethod
    def update_listing(owner_id: str, listing_id: str, **values) -> int:
        return _update('listings', listing_id, owner_id, values)

    @staticmethod
    def add_application(owner_id: str, listing_id: str, applicant_name: str, annual_income: float = None,
                        status: str = 'submitted', created_at: str = None, application_id: str = None) -> str:
        return _insert('applications', {
            'id': application_id or _new_id(), 'owner_id': owner_id, 'listing_id': listing_id,
            'applicant_name': applicant_name, 'annual_income': annual_income, 'status': status,
            'created_at': created_at or _ts(),
        })

    @staticmethod
    def recent_applications(owner_id: str, within_hours: float = 24) -> List[Dict]:
        return _rows('''
            SELECT a.*, l.weekly_rent, l.property_id, p.address FROM applications a
            LEFT JOIN listings l ON l.id = a.listing_id
            LEFT JOIN properties p ON p.id = l.property_id
            WHERE a.owner_id = ? AND a.status = 'submitted' AND a.created_at >= ?
            ORDER BY a.created_at DESC
        ''', (owner_id, _ts_ago(hours=within_hours)))

    @staticmethod
    def get_applications(owner_id: str, listing_id: str = None) -> List[Dict]:
        if listing_id:
            return _rows('SELECT * FROM applications WHERE owner_id = ? AND listing_id = ? ORDER BY created_at DESC',
                         (owner_id, listing_id))
        return _rows('SELECT * FROM applications WHERE owner_id = ? ORDER BY created_at DESC', (owner_id,))

    @staticmethod
    def get_application(owner_id: str, application_id: str) -> Optional[Dict]:
        return _row('''
            SELECT a.*, l.weekly_rent FROM applications a
            LEFT JOIN listings l ON l.id = a.listing_id
            WHERE a.id = ? AND a.owner_id = ?
        ''', (application_id, owner_id))

    @staticmethod
    def set_application_status(owner_id: str, application_id: str, status: str) -> int:
        return _update('applications', application_id, owner_id, {'status': status})

    # --- Inspections ---

    @staticmethod
    def add_inspection(owner_id: str, property_id: str, scheduled_date: str, inspection_type: str = 'routine',
                       status: str = 'scheduled', completed_at: str = None, inspection_id: str = None) -> str:
        return _insert('inspections', {
            'id': inspection_id or _new_id(), 'owner_id': owner_id, 'property_id': property_id,
            'inspection_type': inspection_type, 'scheduled_date': scheduled_date, 'status': status,
            'completed_at': completed_at, 'created_at': _ts(),
        })

    @staticmethod
    def get_inspections(owner_id: str, property_id: str = None) -> List[Dict]:
        if property_id:
            return _rows('SELECT * FROM inspections WHERE owner_id = ? AND property_id = ? ORDER BY scheduled_date DESC',
                         (owner_id, property_id))
        return _rows('SELECT * FROM inspections WHERE owner_id = ? ORDER BY scheduled_date DESC', (owner_id,))

    @staticmethod
    def get_inspection(owner_id: str, inspection_id: str) -> Optional[Dict]:
        return _row('SELECT * FROM inspections WHERE id = ? AND owner_id = ?', (inspection_id, owner_id))

    @staticmethod
    def overdue_inspections(owner_id: str) -> List[Dict]:
        rows = _rows('''
            SELECT i.*, p.address FROM inspections i
            LEFT JOIN properties p ON p.id = i.property_id
            WHERE i.owner_id = ? AND i.status = 'scheduled' AND i.scheduled_date < ?
        ''', (owner_id, _iso(_today())))
        for row in rows:
            row['days_overdue'] = _days_since(row['scheduled_date'])
        return rows

    @staticmethod
    def last_routine_inspection(owner_id: str, property_id: str) -> Optional[Dict]:
        return _row('''
            SELECT * FROM inspections
            WHERE owner_id = ? AND property_id = ? AND inspection_type = 'routine'
              AND status IN ('completed', 'scheduled')
            ORDER BY scheduled_date DESC LIMIT 1
        ''', (owner_id, property_id))

    # --- Compliance ---

    @staticmethod
    def add_compliance_item(owner_id: str, property_id: str, item_type: str, due_date: str,
                            status: str = 'pending', item_id: str = None) -> str:
        return _insert('compliance_items', {
            'id': item_id or _new_id(), 'owner_id': owner_id, 'property_id': property_id,
            'item_type': item_type, 'due_date': due_date, 'status': status, 'created_at': _ts(),
        })

    @staticmethod
    def compliance_due(owner_id: str, within_days: int = 14) -> List[Dict]:
        rows = _rows('''
            SELECT c.*, p.address FROM compliance_items c
            LEFT JOIN properties p ON p.id = c.property_id
            WHERE c.owner_id = ? AND c.status <> 'completed' AND c.due_date <= ?
            ORDER BY c.due_date
        ''', (owner_id, _iso(_today() + timedelta(days=within_days))))
        for row in rows:
            row['days_until_due'] = _days_until(row['due_date'])
        return rows

    @staticmethod
    def get_compliance_items(owner_id: str, property_id: str = None) -> List[Dict]:
        if property_id:
            return _rows('SELECT * FROM compliance_items WHERE owner_id = ? AND property_id = ? ORDER BY due_date',
                         (owner_id, property_id))
        return _rows('SELECT * FROM compliance_items WHERE owner_id = ? ORDER BY due_date', (owner_id,))

    @staticmethod
    def complete_compliance_item(owner_id: str, item_id: str) -> int:
        return _update('compliance_items', item_id, owner_id, {'status': 'completed', 'completed_at': _ts()})

    # --- Insurance ---

    @staticmethod
    def add_insurance_policy(owner_id: str, property_id: str, expiry_date: str, provider: str = None,
                             status: str = 'active', policy_id: str = None) -> str:
        return _insert('insurance_policies', {
            'id': policy_id or _new_id(), 'owner_id': owner_id, 'property_id': property_id,
            'provider': provider, 'expiry_date': expiry_date, 'status': status, 'created_at': _ts(),
        })

    @staticmethod
    def expiring_insurance(owner_id: str, within_days: int = 30) -> List[Dict]:
        today = _today()
        rows = _rows('''
            SELECT i.*, p.address FROM insurance_policies i
            LEFT JOIN properties p ON p.id = i.property_id
            WHERE i.owner_id = ? AND i.status = 'active' AND i.expiry_date <= ?
            ORDER BY i.expiry_date
        ''', (owner_id, _iso(today + timedelta(days=within_days))))
        for row in rows:
            row['days_until_expiry'] = _days_until(row['expiry_date'])
        return rows

    # --- Outbound messages ---

    @staticmethod
    def record_message(owner_id: str, body: str, recipient: str = None, channel: str = 'in_app',
                       subject: str = None, related_entity_type: str = None,
                       related_entity_id: str = None) -> int:
        with get_db() as conn:
            cursor = conn.execute('''
                INSERT INTO outbound_messages
                (owner_id, recipient, channel, subject, body, related_entity_type, related_entity_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (owner_id, recipient, channel, subject, body, related_entity_type, related_entity_id, _ts()))
            return cursor.lastrowid

    @staticmethod
    def get_messages(owner_id: str, related_entity_id: str = None) -> List[Dict]:
        if related_entity_id:
            return _rows('SELECT * FROM outbound_messages WHERE owner_id = ? AND related_entity_id = ? ORDER BY id',
                         (owner_id, related_entity_id))
        return _rows('SELECT * FROM outbound_messages WHERE owner_id = ? ORDER BY id', (owner_id,))
