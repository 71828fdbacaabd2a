# [BEGIN FILE] backend/dealdesk/models/__init__.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Date,
    ForeignKey,
    UniqueConstraint,
    Index,
    CheckConstraint,
    func,
    Numeric,
    Boolean,
    JSON,
)
from sqlalchemy.orm import declarative_base, relationship
from ..core.config import engine

Base = declarative_base()

MONEY = Numeric(14, 2)
PERCENT = Numeric(9, 4)


# =========================
# Core (Organization / User)
# =========================
class Organization(Base):
    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    name = Column(String, nullable=True)
    email = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    role_name = Column(String, nullable=False, default="member")
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uix_user_org_email"),
        Index("ix_users_org_role", "organization_id", "role_name"),
    )


class Role(Base):
    __tablename__ = "roles"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    permissions = Column(Text, nullable=True)  # "deals:close,contracts:read"

    __table_args__ = (UniqueConstraint("organization_id", "name", name="uix_role_org_name"),)


# =========================
# Teams (notification fan-out)
# =========================
class Team(Base):
    __tablename__ = "teams"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)


class TeamMember(Base):
    __tablename__ = "team_members"
    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_leader = Column(Boolean, nullable=False, default=False, server_default="0")

    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uix_team_member"),)


class TeamPipeline(Base):
    __tablename__ = "team_pipelines"
    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (UniqueConstraint("team_id", "pipeline_id", name="uix_team_pipeline"),)


# =========================
# Pipeline / Stage / Property
# =========================
class Pipeline(Base):
    __tablename__ = "pipelines"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Stage(Base):
    __tablename__ = "stages"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False)

    name = Column(String, nullable=False)
    order_index = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, server_default=func.now())


class Property(Base):
    __tablename__ = "properties"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    price = Column(MONEY, nullable=True)
    commission_percentage = Column(PERCENT, nullable=True)

    created_at = Column(DateTime, server_default=func.now())


# =========================
# Leads
# =========================
class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    assigned_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="SET NULL"), nullable=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="SET NULL"), nullable=True)
    stage_id = Column(Integer, ForeignKey("stages.id", ondelete="SET NULL"), nullable=True)

    name = Column(String, nullable=False)
    source = Column(String, nullable=True)

    deal_status = Column(String(10), nullable=False, default="open", server_default="open")  # open | won | lost
    won_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    assigned_user = relationship("User", lazy="selectin")

    __table_args__ = (
        CheckConstraint("deal_status IN ('open','won','lost')", name="ck_lead_deal_status"),
        Index("ix_leads_org", "organization_id"),
    )


# =========================
# Contracts
# =========================
class ContractSequence(Base):
    __tablename__ = "contract_sequences"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    last_number = Column(Integer, nullable=False, default=0)

    # one running counter per organization; a second row would fork numbering
    __table_args__ = (UniqueConstraint("organization_id", name="uix_contract_sequence_org"),)


class Contract(Base):
    __tablename__ = "contracts"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    contract_number = Column(String(32), nullable=False)
    contract_type = Column(String(20), nullable=False, default="sale")
    status = Column(String(20), nullable=False, default="active")

    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="SET NULL"), nullable=True)

    value = Column(MONEY, nullable=False)
    down_payment = Column(MONEY, nullable=False, default=0)
    installments = Column(Integer, nullable=False, default=1)
    commission_percentage = Column(PERCENT, nullable=False, default=0)
    commission_value = Column(MONEY, nullable=False, default=0)

    client_name = Column(String, nullable=True)
    payment_conditions = Column(Text, nullable=True)
    signing_date = Column(Date, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    entries = relationship("FinancialEntry", back_populates="contract", lazy="selectin")
    brokers = relationship("ContractBroker", back_populates="contract", lazy="selectin")
    commissions = relationship("Commission", back_populates="contract", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("organization_id", "contract_number", name="uix_contract_org_number"),
        CheckConstraint("installments >= 1", name="ck_contract_installments"),
        Index("ix_contracts_lead", "lead_id"),
    )


class FinancialEntry(Base):
    __tablename__ = "financial_entries"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=True)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)

    type = Column(String(12), nullable=False)  # receivable | payable
    category = Column(String, nullable=True)   # Entrada | Parcela | Comissão
    description = Column(Text, nullable=True)
    amount = Column(MONEY, nullable=False)
    due_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="pending")

    installment_number = Column(Integer, nullable=True)  # 0 = down payment
    total_installments = Column(Integer, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    contract = relationship("Contract", back_populates="entries", lazy="selectin")

    __table_args__ = (
        CheckConstraint("type IN ('receivable','payable')", name="ck_entry_type"),
        Index("ix_entries_contract", "contract_id"),
    )


class ContractBroker(Base):
    __tablename__ = "contract_brokers"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    commission_percentage = Column(PERCENT, nullable=False)

    contract = relationship("Contract", back_populates="brokers", lazy="selectin")

    __table_args__ = (UniqueConstraint("contract_id", "user_id", name="uix_contract_broker"),)


class Commission(Base):
    __tablename__ = "commissions"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=True)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="SET NULL"), nullable=True)

    base_value = Column(MONEY, nullable=True)
    percentage = Column(PERCENT, nullable=True)
    calculated_value = Column(MONEY, nullable=True)
    amount = Column(MONEY, nullable=False)

    status = Column(String(20), nullable=False, default="forecast")
    forecast_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    contract = relationship("Contract", back_populates="commissions", lazy="selectin")

    __table_args__ = (Index("ix_commissions_contract", "contract_id"),)


# =========================
# Closure claims (idempotency + progress log)
# =========================
class ClosureRequest(Base):
    __tablename__ = "closure_requests"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    request_token = Column(String(64), nullable=True)

    # claimed -> contract_created -> entries_created -> commissions_created -> completed | failed
    # failed -> resuming -> ... when retried with the same request_token
    # | failed
    status = Column(String(24), nullable=False, default="claimed")
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="SET NULL"), nullable=True)
    contract_number = Column(String(32), nullable=True)
    installments_created = Column(Integer, nullable=True)
    down_payment_created = Column(Boolean, nullable=True)
    failed_step = Column(String(16), nullable=True)  # entries | commissions | lead
    last_error = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "lead_id", name="uix_closure_org_lead"),
        Index("ix_closure_status", "organization_id", "status"),
    )


# =========================
# Audit / Notifications
# =========================
class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    old_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="CASCADE"), nullable=True)

    title = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    type = Column(String(20), nullable=False, default="lead")
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (Index("ix_notifications_user", "user_id"),)


# =========================
# Create all (idempotent)
# =========================
Base.metadata.create_all(bind=engine)
# [END FILE] backend/dealdesk/models/__init__.py
