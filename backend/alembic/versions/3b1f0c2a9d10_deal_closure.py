"""deal_closure

Revision ID: 3b1f0c2a9d10
Revises:
Create Date: 2026-10-19 10:12:44.318204
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3b1f0c2a9d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(14, 2)
PERCENT = sa.Numeric(9, 4)


def _fk(column: str, target: str, ondelete: str = "CASCADE") -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint([column], [target], ondelete=ondelete)


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("organizations"):
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("slug", sa.String, nullable=False, unique=True),
            sa.Column("name", sa.String, nullable=False),
        )

    if not insp.has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("name", sa.String, nullable=True),
            sa.Column("email", sa.String, nullable=False),
            sa.Column("password_hash", sa.String, nullable=False),
            sa.Column("role_name", sa.String, nullable=False),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            sa.UniqueConstraint("organization_id", "email", name="uix_user_org_email"),
        )
        op.create_index("ix_users_org_role", "users", ["organization_id", "role_name"])

    if not insp.has_table("roles"):
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("name", sa.String, nullable=False),
            sa.Column("permissions", sa.Text, nullable=True),
            _fk("organization_id", "organizations.id"),
            sa.UniqueConstraint("organization_id", "name", name="uix_role_org_name"),
        )

    if not insp.has_table("pipelines"):
        op.create_table(
            "pipelines",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("name", sa.String, nullable=False),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
        )

    if not insp.has_table("stages"):
        op.create_table(
            "stages",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("pipeline_id", sa.Integer, nullable=False),
            sa.Column("name", sa.String, nullable=False),
            sa.Column("order_index", sa.Integer, nullable=False),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("pipeline_id", "pipelines.id"),
        )

    if not insp.has_table("teams"):
        op.create_table(
            "teams",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("name", sa.String, nullable=False),
            _fk("organization_id", "organizations.id"),
        )

    if not insp.has_table("team_members"):
        op.create_table(
            "team_members",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("team_id", sa.Integer, nullable=False),
            sa.Column("user_id", sa.Integer, nullable=False),
            sa.Column("is_leader", sa.Boolean, nullable=False, server_default=sa.false()),
            _fk("team_id", "teams.id"),
            _fk("user_id", "users.id"),
            sa.UniqueConstraint("team_id", "user_id", name="uix_team_member"),
        )

    if not insp.has_table("team_pipelines"):
        op.create_table(
            "team_pipelines",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("team_id", sa.Integer, nullable=False),
            sa.Column("pipeline_id", sa.Integer, nullable=False),
            _fk("team_id", "teams.id"),
            _fk("pipeline_id", "pipelines.id"),
            sa.UniqueConstraint("team_id", "pipeline_id", name="uix_team_pipeline"),
        )

    if not insp.has_table("properties"):
        op.create_table(
            "properties",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("title", sa.String, nullable=False),
            sa.Column("price", MONEY, nullable=True),
            sa.Column("commission_percentage", PERCENT, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
        )

    if not insp.has_table("leads"):
        op.create_table(
            "leads",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("assigned_user_id", sa.Integer, nullable=True),
            sa.Column("property_id", sa.Integer, nullable=True),
            sa.Column("pipeline_id", sa.Integer, nullable=True),
            sa.Column("stage_id", sa.Integer, nullable=True),
            sa.Column("name", sa.String, nullable=False),
            sa.Column("source", sa.String, nullable=True),
            sa.Column("deal_status", sa.String(10), nullable=False, server_default="open"),
            sa.Column("won_at", sa.DateTime, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("assigned_user_id", "users.id", "SET NULL"),
            _fk("property_id", "properties.id", "SET NULL"),
            _fk("pipeline_id", "pipelines.id", "SET NULL"),
            _fk("stage_id", "stages.id", "SET NULL"),
            sa.CheckConstraint("deal_status IN ('open','won','lost')", name="ck_lead_deal_status"),
        )
        op.create_index("ix_leads_org", "leads", ["organization_id"])

    # one counter row per organization
    if not insp.has_table("contract_sequences"):
        op.create_table(
            "contract_sequences",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("last_number", sa.Integer, nullable=False, server_default="0"),
            _fk("organization_id", "organizations.id"),
            sa.UniqueConstraint("organization_id", name="uix_contract_sequence_org"),
        )

    if not insp.has_table("contracts"):
        op.create_table(
            "contracts",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("contract_number", sa.String(32), nullable=False),
            sa.Column("contract_type", sa.String(20), nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("lead_id", sa.Integer, nullable=True),
            sa.Column("property_id", sa.Integer, nullable=True),
            sa.Column("value", MONEY, nullable=False),
            sa.Column("down_payment", MONEY, nullable=False),
            sa.Column("installments", sa.Integer, nullable=False),
            sa.Column("commission_percentage", PERCENT, nullable=False),
            sa.Column("commission_value", MONEY, nullable=False),
            sa.Column("client_name", sa.String, nullable=True),
            sa.Column("payment_conditions", sa.Text, nullable=True),
            sa.Column("signing_date", sa.Date, nullable=True),
            sa.Column("created_by", sa.Integer, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("lead_id", "leads.id", "SET NULL"),
            _fk("property_id", "properties.id", "SET NULL"),
            _fk("created_by", "users.id", "SET NULL"),
            sa.UniqueConstraint("organization_id", "contract_number", name="uix_contract_org_number"),
            sa.CheckConstraint("installments >= 1", name="ck_contract_installments"),
        )
        op.create_index("ix_contracts_lead", "contracts", ["lead_id"])

    if not insp.has_table("financial_entries"):
        op.create_table(
            "financial_entries",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("contract_id", sa.Integer, nullable=True),
            sa.Column("lead_id", sa.Integer, nullable=True),
            sa.Column("type", sa.String(12), nullable=False),
            sa.Column("category", sa.String, nullable=True),
            sa.Column("description", sa.Text, nullable=True),
            sa.Column("amount", MONEY, nullable=False),
            sa.Column("due_date", sa.Date, nullable=True),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("installment_number", sa.Integer, nullable=True),
            sa.Column("total_installments", sa.Integer, nullable=True),
            sa.Column("created_by", sa.Integer, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("contract_id", "contracts.id"),
            _fk("lead_id", "leads.id", "SET NULL"),
            _fk("created_by", "users.id", "SET NULL"),
            sa.CheckConstraint("type IN ('receivable','payable')", name="ck_entry_type"),
        )
        op.create_index("ix_entries_contract", "financial_entries", ["contract_id"])

    if not insp.has_table("contract_brokers"):
        op.create_table(
            "contract_brokers",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("contract_id", sa.Integer, nullable=False),
            sa.Column("user_id", sa.Integer, nullable=False),
            sa.Column("commission_percentage", PERCENT, nullable=False),
            _fk("contract_id", "contracts.id"),
            _fk("user_id", "users.id"),
            sa.UniqueConstraint("contract_id", "user_id", name="uix_contract_broker"),
        )

    if not insp.has_table("commissions"):
        op.create_table(
            "commissions",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("contract_id", sa.Integer, nullable=True),
            sa.Column("lead_id", sa.Integer, nullable=True),
            sa.Column("user_id", sa.Integer, nullable=False),
            sa.Column("property_id", sa.Integer, nullable=True),
            sa.Column("base_value", MONEY, nullable=True),
            sa.Column("percentage", PERCENT, nullable=True),
            sa.Column("calculated_value", MONEY, nullable=True),
            sa.Column("amount", MONEY, nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("forecast_date", sa.Date, nullable=True),
            sa.Column("notes", sa.Text, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("contract_id", "contracts.id"),
            _fk("lead_id", "leads.id", "SET NULL"),
            _fk("user_id", "users.id"),
            _fk("property_id", "properties.id", "SET NULL"),
        )
        op.create_index("ix_commissions_contract", "commissions", ["contract_id"])

    if not insp.has_table("closure_requests"):
        op.create_table(
            "closure_requests",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("lead_id", sa.Integer, nullable=False),
            sa.Column("request_token", sa.String(64), nullable=True),
            sa.Column("status", sa.String(24), nullable=False),
            sa.Column("contract_id", sa.Integer, nullable=True),
            sa.Column("contract_number", sa.String(32), nullable=True),
            sa.Column("installments_created", sa.Integer, nullable=True),
            sa.Column("down_payment_created", sa.Boolean, nullable=True),
            sa.Column("failed_step", sa.String(16), nullable=True),
            sa.Column("last_error", sa.Text, nullable=True),
            sa.Column("created_by", sa.Integer, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("lead_id", "leads.id"),
            _fk("contract_id", "contracts.id", "SET NULL"),
            _fk("created_by", "users.id", "SET NULL"),
            sa.UniqueConstraint("organization_id", "lead_id", name="uix_closure_org_lead"),
        )
        op.create_index("ix_closure_status", "closure_requests", ["organization_id", "status"])

    if not insp.has_table("audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=True),
            sa.Column("user_id", sa.Integer, nullable=True),
            sa.Column("action", sa.String, nullable=False),
            sa.Column("entity_type", sa.String, nullable=True),
            sa.Column("entity_id", sa.String, nullable=True),
            sa.Column("old_data", sa.JSON, nullable=True),
            sa.Column("new_data", sa.JSON, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("user_id", "users.id", "SET NULL"),
        )
        op.create_index("ix_audit_entity", "audit_logs", ["entity_type", "entity_id"])

    if not insp.has_table("notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("organization_id", sa.Integer, nullable=False),
            sa.Column("user_id", sa.Integer, nullable=False),
            sa.Column("lead_id", sa.Integer, nullable=True),
            sa.Column("title", sa.String, nullable=False),
            sa.Column("content", sa.Text, nullable=True),
            sa.Column("type", sa.String(20), nullable=False),
            sa.Column("read_at", sa.DateTime, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
            _fk("organization_id", "organizations.id"),
            _fk("user_id", "users.id"),
            _fk("lead_id", "leads.id"),
        )
        op.create_index("ix_notifications_user", "notifications", ["user_id"])


def downgrade() -> None:
    for table in (
        "notifications",
        "audit_logs",
        "closure_requests",
        "commissions",
        "contract_brokers",
        "financial_entries",
        "contracts",
        "contract_sequences",
        "leads",
        "properties",
        "team_pipelines",
        "team_members",
        "teams",
        "stages",
        "pipelines",
        "roles",
        "users",
        "organizations",
    ):
        op.drop_table(table)
