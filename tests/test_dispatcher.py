"""
Tests for tool execution and failure classification.
"""

from datetime import date, timedelta

import pytest

from agent_engine.business import BusinessRecords
from agent_engine.dispatcher import ToolDispatcher, ToolExecutionError, classify_tool_error
from agent_engine.genome import ToolGenome
from agent_engine.knowledge_store import KnowledgeStore
from agent_engine.tasks import TaskStore
from agent_engine.tools import confidence_exempt_tools, get_tool, openai_tool_schemas
from agent_engine.types import ErrorType

OWNER = 'owner-1'


class TestClassifyToolError:
    """Test message-based error classification."""

    @pytest.mark.parametrize('message, expected', [
        ('Unknown tool: fly_drone', ErrorType.TOOL_MISUSE),
        ('Missing required parameter(s) for assign_trade: trade_name', ErrorType.TOOL_MISUSE),
        ('Invalid input for renew_lease: bad value', ErrorType.TOOL_MISUSE),
        ('Tenancy t1 not found', ErrorType.CONTEXT_MISSING),
        ('No data for comparable properties in this state', ErrorType.CONTEXT_MISSING),
        ('new_end_date out of range: it must be after the current lease end', ErrorType.FACTUAL_ERROR),
        ('A task with this title already exists', ErrorType.FACTUAL_ERROR),
        ('Constraint violation in plan_task', ErrorType.FACTUAL_ERROR),
        ('The tenant would not appreciate this', ErrorType.REASONING_ERROR),
    ])
    def test_classification(self, message, expected):
        assert classify_tool_error('any_tool', {}, message) == expected


class TestExecute:
    """Test individual tool handlers."""

    def test_unknown_tool(self):
        with pytest.raises(ToolExecutionError, match='Unknown tool'):
            ToolDispatcher.execute(OWNER, 'fly_drone', {})

    def test_missing_required_parameter(self, business):
        with pytest.raises(ToolExecutionError, match='Missing required'):
            ToolDispatcher.execute(OWNER, 'assign_trade', {'request_id': business['request_id']})

    def test_get_properties(self, business):
        result = ToolDispatcher.execute(OWNER, 'get_properties', {})
        assert result['count'] == 1
        assert ToolDispatcher.execute('someone-else', 'get_properties', {})['count'] == 0

    def test_assign_trade(self, business):
        result = ToolDispatcher.execute(OWNER, 'assign_trade', {'request_id': business['request_id'],
                                                                'trade_name': 'Acme Plumbing'})
        assert result['assigned_trade'] == 'Acme Plumbing'
        request = BusinessRecords.get_maintenance_request(OWNER, business['request_id'])
        assert request['status'] == 'awaiting_quote'

    def test_triage_suggests_plumber(self, business):
        result = ToolDispatcher.execute(OWNER, 'triage_maintenance', {'request_id': business['request_id']})
        assert result['suggested_trade'] == 'plumber'

    def test_renew_lease(self, business):
        tenancy = BusinessRecords.get_tenancy(OWNER, business['tenancy_id'])
        new_end = (date.fromisoformat(tenancy['lease_end']) + timedelta(days=365)).isoformat()
        result = ToolDispatcher.execute(OWNER, 'renew_lease', {'tenancy_id': business['tenancy_id'],
                                                               'new_end_date': new_end})
        assert result['lease_end'] == new_end
        assert BusinessRecords.get_tenancy(OWNER, business['tenancy_id'])['lease_end'] == new_end

    def test_renew_lease_earlier_date_rejected(self, business):
        with pytest.raises(ToolExecutionError, match='out of range'):
            ToolDispatcher.execute(OWNER, 'renew_lease', {'tenancy_id': business['tenancy_id'],
                                                          'new_end_date': '2020-01-01'})

    def test_renew_lease_bad_date(self, business):
        with pytest.raises(ToolExecutionError, match='Invalid date'):
            ToolDispatcher.execute(OWNER, 'renew_lease', {'tenancy_id': business['tenancy_id'],
                                                          'new_end_date': 'next year'})

    def test_lodged_bond_cannot_be_lodged_again(self, business):
        with pytest.raises(ToolExecutionError, match='already exists'):
            ToolDispatcher.execute(OWNER, 'lodge_bond', {'tenancy_id': business['tenancy_id']})

    def test_score_application(self, business):
        listing_id = BusinessRecords.add_listing(OWNER, business['property_id'], 'Harbour apartment', 650.0)
        application_id = BusinessRecords.add_application(OWNER, listing_id, 'Jo Smith', annual_income=101400.0)
        result = ToolDispatcher.execute(OWNER, 'score_application', {'application_id': application_id})
        assert result['income_to_rent_ratio'] == 3.0
        assert result['meets_threshold'] is True

    def test_score_application_without_income(self, business):
        listing_id = BusinessRecords.add_listing(OWNER, business['property_id'], 'Harbour apartment', 650.0)
        application_id = BusinessRecords.add_application(OWNER, listing_id, 'Jo Smith')
        with pytest.raises(ToolExecutionError, match='No data'):
            ToolDispatcher.execute(OWNER, 'score_application', {'application_id': application_id})

    def test_suggest_rent_price(self, business):
        BusinessRecords.add_property(OWNER, '5 Bay St', 'NSW', 700.0)
        BusinessRecords.add_property(OWNER, '9 Bay St', 'NSW', 800.0)
        BusinessRecords.add_property(OWNER, '1 River Rd', 'QLD', 400.0)
        result = ToolDispatcher.execute(OWNER, 'suggest_rent_price', {'property_id': business['property_id']})
        assert result['suggested_weekly_rent'] == 750.0
        assert result['comparables'] == 2

    def test_workflow_escalation_creates_follow_up(self, business):
        arrears_id = BusinessRecords.add_arrears(
            OWNER, business['tenancy_id'], 1300.0, (date.today() - timedelta(days=20)).isoformat())
        result = ToolDispatcher.execute(OWNER, 'workflow_arrears_escalation', {'arrears_id': arrears_id})
        assert result['follow_up_task_id'] is not None
        assert 'overdue' in BusinessRecords.get_messages(OWNER, arrears_id)[0]['body']

    def test_remember_and_recall(self):
        ToolDispatcher.execute(OWNER, 'remember', {'key': 'preferred_plumber', 'value': 'Acme Plumbing',
                                                   'category': 'maintenance'})
        result = ToolDispatcher.execute(OWNER, 'recall', {'query': 'maintenance preferred plumber Acme Plumbing'})
        assert result['preferences'][0]['value'] == 'Acme Plumbing'
        assert KnowledgeStore.get_preferences(OWNER)[0]['source'] == 'explicit'

    def test_plan_task_duplicate(self):
        args = {'title': 'Review insurance', 'recommendation': 'Compare landlord insurance quotes before renewal'}
        first = ToolDispatcher.execute(OWNER, 'plan_task', args)
        assert TaskStore.get_task(first['task_id'], OWNER)['title'] == 'Review insurance'
        with pytest.raises(ToolExecutionError, match='already exists'):
            ToolDispatcher.execute(OWNER, 'plan_task', args)


class TestRun:
    """Test run() result shape and genome bookkeeping."""

    def test_success_updates_genome(self, business):
        result = ToolDispatcher.run(OWNER, 'triage_maintenance', {'request_id': business['request_id']})
        assert result['success'] is True
        assert result['duration_ms'] >= 0
        assert ToolGenome.get(OWNER, 'triage_maintenance')['successful_executions'] == 1

    def test_failure_classified(self, business):
        result = ToolDispatcher.run(OWNER, 'renew_lease', {'tenancy_id': business['tenancy_id'],
                                                           'new_end_date': '2020-01-01'})
        assert result['success'] is False
        assert result['error_type'] == 'FACTUAL_ERROR'
        assert ToolGenome.get(OWNER, 'renew_lease')['failed_executions'] == 1

    def test_query_tools_skip_genome(self, business):
        ToolDispatcher.run(OWNER, 'get_properties', {})
        assert ToolGenome.get(OWNER, 'get_properties') is None


class TestToolRegistry:
    """Test the tool registry."""

    def test_tool_metadata(self):
        tool = get_tool('send_rent_reminder')
        assert (tool.category, tool.required_level, tool.domain) == ('action', 3, 'rent_collection')
        assert get_tool('nope') is None

    def test_exempt_tools(self):
        exempt = confidence_exempt_tools()
        assert 'get_properties' in exempt
        assert 'remember' in exempt
        assert 'send_rent_reminder' not in exempt

    def test_openai_schemas(self):
        schemas = openai_tool_schemas()
        names = {s['function']['name'] for s in schemas}
        assert 'draft_message' in names
        schema = next(s for s in schemas if s['function']['name'] == 'draft_message')
        assert 'purpose' in schema['function']['parameters']['required']
