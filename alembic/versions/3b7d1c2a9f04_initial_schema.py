"""Initial schema — agent engine and business record tables.

Sources:
  - agent_engine/db.py        (agent_decisions, agent_rules, agent_preferences,
                                agent_corrections, agent_outcomes, agent_tasks,
                                tool_genome, agent_autonomy_settings,
                                autonomy_graduation, agent_golden_examples,
                                agent_conversations, agent_messages,
                                agent_pending_actions, agent_events,
                                retention_log)
  - agent_engine/business.py  (properties, maintenance_requests, tenancies,
                                arrears, listings, applications, inspections,
                                compliance_items, insurance_policies,
                                outbound_messages)

Revision ID: 3b7d1c2a9f04
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "3b7d1c2a9f04"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _auto_pk():
    """Auto-increment integer PK (AUTOINCREMENT on SQLite, SERIAL on Postgres)."""
    return sa.Column("id", sa.Integer, primary_key=True, autoincrement=True)


def _text_pk():
    """Business records carry ids assigned by the upstream system."""
    return sa.Column("id", sa.Text, primary_key=True)


def _ts_default():
    """CURRENT_TIMESTAMP default usable on both dialects."""
    return sa.text("CURRENT_TIMESTAMP")


# ---------------------------------------------------------------------------
# upgrade
# ---------------------------------------------------------------------------

def upgrade() -> None:
    # ==================================================================
    # agent_engine/db.py tables
    # ==================================================================

    op.create_table(
        "agent_decisions",
        _auto_pk(),
        sa.Column("decision_ref", sa.Text, nullable=False, unique=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("conversation_id", sa.Integer),
        sa.Column("sequence", sa.Integer, server_default=sa.text("0")),
        sa.Column("tool_name", sa.Text, nullable=False),
        sa.Column("category", sa.Text, nullable=False),
        sa.Column("input_summary", sa.Text),
        sa.Column("tool_input", sa.Text),
        sa.Column("reasoning", sa.Text),
        sa.Column("confidence_factors", sa.Text),
        sa.Column("confidence", sa.Float),
        sa.Column("disposition", sa.Text),
        sa.Column("embedding", sa.Text),
        sa.Column("owner_feedback", sa.Text),
        sa.Column("owner_correction", sa.Text),
        sa.Column("feedback_at", sa.TIMESTAMP),
        sa.Column("was_auto_executed", sa.Integer, server_default=sa.text("0")),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_decisions_user_tool", "agent_decisions", ["user_id", "tool_name", "category"])
    op.create_index("idx_decisions_created", "agent_decisions", ["created_at"])

    op.create_table(
        "agent_rules",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("rule_text", sa.Text, nullable=False),
        sa.Column("category", sa.Text, server_default="general"),
        sa.Column("embedding", sa.Text, nullable=False),
        sa.Column("confidence", sa.Float, nullable=False, server_default=sa.text("0.5")),
        sa.Column("active", sa.Integer, server_default=sa.text("1")),
        sa.Column("source", sa.Text),
        sa.Column("reinforcement_count", sa.Integer, server_default=sa.text("0")),
        sa.Column("last_reinforced_at", sa.TIMESTAMP, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_rules_user_active", "agent_rules", ["user_id", "active"])

    op.create_table(
        "agent_preferences",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("category", sa.Text, nullable=False),
        sa.Column("preference_key", sa.Text, nullable=False),
        sa.Column("value", sa.Text),
        sa.Column("source", sa.Text),
        sa.Column("confidence", sa.Float, server_default=sa.text("0.7")),
        sa.Column("embedding", sa.Text, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
        sa.UniqueConstraint("user_id", "preference_key"),
    )
    op.create_index("idx_prefs_user", "agent_preferences", ["user_id", "category"])

    op.create_table(
        "agent_corrections",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("decision_id", sa.Integer),
        sa.Column("original_action", sa.Text, nullable=False),
        sa.Column("correction_text", sa.Text, nullable=False),
        sa.Column("context_snapshot", sa.Text),
        sa.Column("category", sa.Text, server_default="general"),
        sa.Column("embedding", sa.Text, nullable=False),
        sa.Column("pattern_matched", sa.Integer, server_default=sa.text("0")),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_corrections_user", "agent_corrections", ["user_id", "pattern_matched"])

    op.create_table(
        "agent_outcomes",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("decision_id", sa.Integer, nullable=False, unique=True),
        sa.Column("tool_name", sa.Text),
        sa.Column("category", sa.Text),
        sa.Column("success", sa.Integer, nullable=False),
        sa.Column("outcome_type", sa.Text, nullable=False),
        sa.Column("detail", sa.Text),
        sa.Column("measured_at", sa.TIMESTAMP, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_outcomes_user_tool", "agent_outcomes", ["user_id", "tool_name"])

    op.create_table(
        "agent_tasks",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("category", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("recommendation", sa.Text, nullable=False),
        sa.Column("priority", sa.Text, server_default="normal"),
        sa.Column("timeline", sa.Text),
        sa.Column("status", sa.Text, server_default="pending_input"),
        sa.Column("related_entity_type", sa.Text),
        sa.Column("related_entity_id", sa.Text),
        sa.Column("idempotency_key", sa.Text, nullable=False, unique=True),
        sa.Column("decision_ref", sa.Text),
        sa.Column("disposition", sa.Text),
        sa.Column("was_auto_executed", sa.Integer, server_default=sa.text("0")),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_tasks_entity", "agent_tasks", ["user_id", "related_entity_id", "category"])

    op.create_table(
        "tool_genome",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("tool_name", sa.Text, nullable=False),
        sa.Column("total_executions", sa.Integer, server_default=sa.text("0")),
        sa.Column("successful_executions", sa.Integer, server_default=sa.text("0")),
        sa.Column("failed_executions", sa.Integer, server_default=sa.text("0")),
        sa.Column("success_rate_ema", sa.Float, server_default=sa.text("0.9")),
        sa.Column("avg_duration_ms", sa.Float, server_default=sa.text("0")),
        sa.Column("failure_patterns", sa.Text),
        sa.Column("parameter_insights", sa.Text),
        sa.Column("last_executed_at", sa.TIMESTAMP),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
        sa.UniqueConstraint("user_id", "tool_name"),
    )

    op.create_table(
        "agent_autonomy_settings",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False, unique=True),
        sa.Column("preset", sa.Text, nullable=False, server_default="balanced"),
        sa.Column("category_overrides", sa.Text),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "autonomy_graduation",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("category", sa.Text, nullable=False),
        sa.Column("consecutive_approvals", sa.Integer, server_default=sa.text("0")),
        sa.Column("total_approvals", sa.Integer, server_default=sa.text("0")),
        sa.Column("total_rejections", sa.Integer, server_default=sa.text("0")),
        sa.Column("backoff_multiplier", sa.Float, server_default=sa.text("1.0")),
        sa.Column("last_rejection_at", sa.TIMESTAMP),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
        sa.UniqueConstraint("user_id", "category"),
    )

    op.create_table(
        "agent_golden_examples",
        _auto_pk(),
        sa.Column("user_id", sa.Text),
        sa.Column("tool_name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("embedding", sa.Text),
        sa.Column("active", sa.Integer, server_default=sa.text("1")),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "agent_conversations",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("title", sa.Text),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "agent_messages",
        _auto_pk(),
        sa.Column("conversation_id", sa.Integer, nullable=False),
        sa.Column("role", sa.Text, nullable=False),
        sa.Column("content", sa.Text),
        sa.Column("tool_calls", sa.Text),
        sa.Column("tokens_used", sa.Integer, server_default=sa.text("0")),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_messages_conv", "agent_messages", ["conversation_id"])

    op.create_table(
        "agent_pending_actions",
        _auto_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("conversation_id", sa.Integer),
        sa.Column("decision_ref", sa.Text),
        sa.Column("tool_name", sa.Text, nullable=False),
        sa.Column("tool_input", sa.Text),
        sa.Column("description", sa.Text),
        sa.Column("category", sa.Text),
        sa.Column("status", sa.Text, server_default="pending"),
        sa.Column("result", sa.Text),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
        sa.Column("resolved_at", sa.TIMESTAMP),
    )
    op.create_index("idx_pending_user", "agent_pending_actions", ["user_id", "status"])

    op.create_table(
        "agent_events",
        _auto_pk(),
        sa.Column("subsystem", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("details", sa.Text),
        sa.Column("severity", sa.Text, server_default="info"),
        sa.Column("timestamp", sa.TIMESTAMP, server_default=_ts_default()),
    )
    op.create_index("idx_events_time", "agent_events", ["timestamp"])

    op.create_table(
        "retention_log",
        _auto_pk(),
        sa.Column("table_name", sa.Text, nullable=False),
        sa.Column("rows_affected", sa.Integer, server_default=sa.text("0")),
        sa.Column("detail", sa.Text),
        sa.Column("timestamp", sa.TIMESTAMP, server_default=_ts_default()),
    )

    # ==================================================================
    # agent_engine/business.py tables
    # ==================================================================

    op.create_table(
        "properties",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("address", sa.Text, nullable=False),
        sa.Column("state", sa.Text),
        sa.Column("status", sa.Text, server_default="active"),
        sa.Column("weekly_rent", sa.Float),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "maintenance_requests",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("property_id", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("urgency", sa.Text, server_default="routine"),
        sa.Column("status", sa.Text, server_default="submitted"),
        sa.Column("assigned_trade", sa.Text),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP, nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP),
    )
    op.create_index("idx_maint_owner", "maintenance_requests", ["owner_id", "status"])

    op.create_table(
        "tenancies",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("property_id", sa.Text, nullable=False),
        sa.Column("tenant_name", sa.Text, nullable=False),
        sa.Column("tenant_email", sa.Text),
        sa.Column("lease_start", sa.Date),
        sa.Column("lease_end", sa.Date),
        sa.Column("weekly_rent", sa.Float),
        sa.Column("status", sa.Text, server_default="active"),
        sa.Column("bond_amount", sa.Float),
        sa.Column("bond_status", sa.Text, server_default="pending"),
        sa.Column("bond_due_date", sa.Date),
        sa.Column("bond_lodged_at", sa.TIMESTAMP),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_tenancies_owner", "tenancies", ["owner_id", "status"])

    op.create_table(
        "arrears",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("tenancy_id", sa.Text, nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("first_overdue_date", sa.Date, nullable=False),
        sa.Column("is_resolved", sa.Integer, server_default=sa.text("0")),
        sa.Column("resolved_at", sa.TIMESTAMP),
        sa.Column("payment_plan", sa.Text),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_arrears_owner", "arrears", ["owner_id", "is_resolved"])

    op.create_table(
        "listings",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("property_id", sa.Text, nullable=False),
        sa.Column("title", sa.Text),
        sa.Column("weekly_rent", sa.Float),
        sa.Column("status", sa.Text, server_default="draft"),
        sa.Column("view_count", sa.Integer, server_default=sa.text("0")),
        sa.Column("published_at", sa.TIMESTAMP),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "applications",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("listing_id", sa.Text, nullable=False),
        sa.Column("applicant_name", sa.Text, nullable=False),
        sa.Column("annual_income", sa.Float),
        sa.Column("status", sa.Text, server_default="submitted"),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "inspections",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("property_id", sa.Text, nullable=False),
        sa.Column("inspection_type", sa.Text, server_default="routine"),
        sa.Column("scheduled_date", sa.Date, nullable=False),
        sa.Column("status", sa.Text, server_default="scheduled"),
        sa.Column("completed_at", sa.TIMESTAMP),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "compliance_items",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("property_id", sa.Text, nullable=False),
        sa.Column("item_type", sa.Text, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("status", sa.Text, server_default="pending"),
        sa.Column("completed_at", sa.TIMESTAMP),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "insurance_policies",
        _text_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("property_id", sa.Text, nullable=False),
        sa.Column("provider", sa.Text),
        sa.Column("expiry_date", sa.Date, nullable=False),
        sa.Column("status", sa.Text, server_default="active"),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )

    op.create_table(
        "outbound_messages",
        _auto_pk(),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("recipient", sa.Text),
        sa.Column("channel", sa.Text, server_default="in_app"),
        sa.Column("subject", sa.Text),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("related_entity_type", sa.Text),
        sa.Column("related_entity_id", sa.Text),
        sa.Column("created_at", sa.TIMESTAMP, nullable=False),
    )
    op.create_index("idx_messages_entity", "outbound_messages", ["related_entity_id"])


# ---------------------------------------------------------------------------
# downgrade
# ---------------------------------------------------------------------------

def downgrade() -> None:
    tables = [
        "outbound_messages",
        "insurance_policies",
        "compliance_items",
        "inspections",
        "applications",
        "listings",
        "arrears",
        "tenancies",
        "maintenance_requests",
        "properties",
        "retention_log",
        "agent_events",
        "agent_pending_actions",
        "agent_messages",
        "agent_conversations",
        "agent_golden_examples",
        "autonomy_graduation",
        "agent_autonomy_settings",
        "tool_genome",
        "agent_tasks",
        "agent_outcomes",
        "agent_corrections",
        "agent_preferences",
        "agent_rules",
        "agent_decisions",
    ]
    for table in tables:
        op.drop_table(table)
