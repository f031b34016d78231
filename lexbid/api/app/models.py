from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    String,
    DateTime,
    Text,
    JSON,
    Integer,
    Float,
    ForeignKey,
    Boolean,
    Index,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from enum import Enum as PyEnum
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# STATUS VOCABULARIES
# Columns store the plain string values so that bulk UPDATEs stay portable.
# ============================================================================


class Role(str, PyEnum):
    CLIENT = "CLIENT"
    ATTORNEY = "ATTORNEY"
    ADMIN = "ADMIN"


class CaseStatus(str, PyEnum):
    OPEN = "OPEN"
    MATCHING = "MATCHING"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class Urgency(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class FeeMode(str, PyEnum):
    CONSULTATION = "CONSULTATION"
    AGENCY = "AGENCY"
    STAGED = "STAGED"
    HOURLY = "HOURLY"
    CUSTOM = "CUSTOM"


class BidStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class ConversationStatus(str, PyEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class EngagementStatus(str, PyEnum):
    """
    Sub-states after PENDING_ATTORNEY are driven by the engagement workflow;
    this core only creates the record, resets it on re-selection, and cancels
    a superseded pending confirmation.
    """

    DRAFT = "DRAFT"
    PENDING_ATTORNEY = "PENDING_ATTORNEY"
    PENDING_CLIENT = "PENDING_CLIENT"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class SenderRole(str, PyEnum):
    CLIENT = "CLIENT"
    ATTORNEY = "ATTORNEY"
    SYSTEM = "SYSTEM"


OPEN_CASE_STATUSES = (CaseStatus.OPEN.value, CaseStatus.MATCHING.value)
TERMINAL_CASE_STATUSES = (CaseStatus.CLOSED.value, CaseStatus.CANCELLED.value)

# Engagement statuses that count towards an attorney's exposure load
EXPOSURE_ENGAGEMENT_STATUSES = (
    EngagementStatus.DRAFT.value,
    EngagementStatus.PENDING_CLIENT.value,
    EngagementStatus.PENDING_ATTORNEY.value,
    EngagementStatus.ACTIVE.value,
)
PENDING_ENGAGEMENT_STATUSES = (
    EngagementStatus.DRAFT.value,
    EngagementStatus.PENDING_CLIENT.value,
    EngagementStatus.PENDING_ATTORNEY.value,
)


# ============================================================================
# PROFILES
# ============================================================================


class ClientProfile(Base):
    __tablename__ = "client_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, unique=True, index=True
    )
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


class AttorneyProfile(Base):
    __tablename__ = "attorney_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, unique=True, index=True
    )
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    specialties: Mapped[list[AttorneySpecialty]] = relationship(
        "AttorneySpecialty", back_populates="attorney", cascade="all, delete-orphan"
    )
    service_areas: Mapped[list[AttorneyServiceArea]] = relationship(
        "AttorneyServiceArea", back_populates="attorney", cascade="all, delete-orphan"
    )


class AttorneySpecialty(Base):
    __tablename__ = "attorney_specialties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    attorney_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("attorney_profiles.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(64), nullable=False)

    attorney: Mapped[AttorneyProfile] = relationship(
        "AttorneyProfile", back_populates="specialties"
    )

    __table_args__ = (
        UniqueConstraint(
            "attorney_profile_id", "category", name="uq_attorney_specialty"
        ),
    )


class AttorneyServiceArea(Base):
    __tablename__ = "attorney_service_areas"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    attorney_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("attorney_profiles.id", ondelete="CASCADE"), nullable=False
    )
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    zip_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    attorney: Mapped[AttorneyProfile] = relationship(
        "AttorneyProfile", back_populates="service_areas"
    )

    __table_args__ = (Index("idx_service_areas_attorney", "attorney_profile_id"),)


# ============================================================================
# CASES AND BIDS
# ============================================================================


class Case(Base):
    """A posted legal matter seeking attorney bids."""

    __tablename__ = "cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_profiles.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description_masked: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    zip_code: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    urgency: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Urgency.MEDIUM.value
    )  # Uses Urgency values
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=CaseStatus.OPEN.value
    )  # Uses CaseStatus values
    fee_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    budget_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    budget_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    quote_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Denormalized pointer; Bid.status == ACCEPTED is the source of truth
    selected_bid_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("bids.id", use_alter=True, name="fk_cases_selected_bid_id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    bids: Mapped[list[Bid]] = relationship(
        "Bid", back_populates="case", foreign_keys="Bid.case_id"
    )

    __table_args__ = (
        Index("idx_cases_status_created", "status", "created_at"),
        Index("idx_cases_category", "category"),
        Index("idx_cases_state", "state_code"),
    )


class Bid(Base):
    """An attorney's offer against a case. One per (case, attorney)."""

    __tablename__ = "bids"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id"), nullable=False
    )
    attorney_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("attorney_profiles.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=BidStatus.PENDING.value
    )  # Uses BidStatus values
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    fee_quote_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    fee_quote_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    fee_mode: Mapped[str] = mapped_column(
        String(16), nullable=False, default=FeeMode.CUSTOM.value
    )
    service_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    includes_consultation: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    contacted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    case: Mapped[Case] = relationship(
        "Case", back_populates="bids", foreign_keys=[case_id]
    )
    versions: Mapped[list[BidVersion]] = relationship(
        "BidVersion", back_populates="bid", order_by="BidVersion.version"
    )

    __table_args__ = (
        UniqueConstraint("case_id", "attorney_profile_id", name="uq_bid_case_attorney"),
        Index("idx_bids_case_status", "case_id", "status"),
    )


class BidVersion(Base):
    """Immutable snapshot of a bid after each mutating transition."""

    __tablename__ = "bid_versions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bids.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    fee_quote_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    fee_quote_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    fee_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    service_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    includes_consultation: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    bid: Mapped[Bid] = relationship("Bid", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("bid_id", "version", name="uq_bid_version"),
    )


class CaseStatusLog(Base):
    """Append-only case timeline entries."""

    __tablename__ = "case_status_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    operator_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


# ============================================================================
# CONVERSATIONS AND ENGAGEMENTS
# ============================================================================


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bids.id"), nullable=False, unique=True
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id"), nullable=False, index=True
    )
    client_profile_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    attorney_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConversationStatus.OPEN.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    messages: Mapped[list[ConversationMessage]] = relationship(
        "ConversationMessage", back_populates="conversation"
    )


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id"), nullable=False, index=True
    )
    sender_role: Mapped[str] = mapped_column(String(16), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    conversation: Mapped[Conversation] = relationship(
        "Conversation", back_populates="messages"
    )


class EngagementConfirmation(Base):
    __tablename__ = "engagement_confirmations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bids.id"), nullable=False, unique=True
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id"), nullable=False, index=True
    )
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("conversations.id"), nullable=True
    )
    client_profile_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    attorney_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(24), nullable=False, default=EngagementStatus.PENDING_ATTORNEY.value
    )  # Uses EngagementStatus values
    fee_mode: Mapped[str] = mapped_column(
        String(16), nullable=False, default=FeeMode.CUSTOM.value
    )
    fee_amount_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    fee_amount_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    includes_consultation: Mapped[bool] = mapped_column(Boolean, default=True)
    service_boundary: Mapped[str] = mapped_column(String(16), default="CUSTOM")
    service_scope_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    non_legal_advice_ack: Mapped[bool] = mapped_column(Boolean, default=False)
    no_attorney_client_relationship_ack: Mapped[bool] = mapped_column(
        Boolean, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ============================================================================
# RISK SIGNALS
# Written by the content-rule engine, dispute desk and report intake.
# ============================================================================


class ContentRuleEvent(Base):
    __tablename__ = "content_rule_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("cases.id"), nullable=True, index=True
    )
    rule_key: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class DisputeTicket(Base):
    __tablename__ = "dispute_tickets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("cases.id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="OPEN")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class ConversationReport(Base):
    __tablename__ = "conversation_reports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id"), nullable=False, index=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


# ============================================================================
# OPERATOR CONFIGURATION
# ============================================================================


class RankingConfig(Base):
    """Case hall ranking coefficients, one row per feed key.

    Weight columns come in A/B pairs; penalties are stored as positive numbers
    and subtracted by the scorer.
    """

    __tablename__ = "ranking_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    active_variant: Mapped[str] = mapped_column(String(1), nullable=False, default="A")
    ab_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ab_rollout_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=50)

    weight_unquoted_a: Mapped[int] = mapped_column(Integer, default=140)
    weight_unquoted_b: Mapped[int] = mapped_column(Integer, default=140)
    weight_quoteable_a: Mapped[int] = mapped_column(Integer, default=100)
    weight_quoteable_b: Mapped[int] = mapped_column(Integer, default=100)
    weight_soon_deadline_a: Mapped[int] = mapped_column(Integer, default=70)
    weight_soon_deadline_b: Mapped[int] = mapped_column(Integer, default=70)
    weight_urgent_a: Mapped[int] = mapped_column(Integer, default=80)
    weight_urgent_b: Mapped[int] = mapped_column(Integer, default=80)
    weight_high_a: Mapped[int] = mapped_column(Integer, default=50)
    weight_high_b: Mapped[int] = mapped_column(Integer, default=50)
    weight_category_match_a: Mapped[int] = mapped_column(Integer, default=60)
    weight_category_match_b: Mapped[int] = mapped_column(Integer, default=60)
    weight_state_match_a: Mapped[int] = mapped_column(Integer, default=40)
    weight_state_match_b: Mapped[int] = mapped_column(Integer, default=40)
    weight_recency_max_boost_a: Mapped[int] = mapped_column(Integer, default=30)
    weight_recency_max_boost_b: Mapped[int] = mapped_column(Integer, default=30)
    weight_bid_crowding_penalty_a: Mapped[int] = mapped_column(Integer, default=8)
    weight_bid_crowding_penalty_b: Mapped[int] = mapped_column(Integer, default=8)
    bid_crowding_penalty_cap_a: Mapped[int] = mapped_column(Integer, default=48)
    bid_crowding_penalty_cap_b: Mapped[int] = mapped_column(Integer, default=48)

    category_whitelist: Mapped[list[str]] = mapped_column(JSON, default=list)
    category_blacklist: Mapped[list[str]] = mapped_column(JSON, default=list)
    whitelist_boost: Mapped[int] = mapped_column(Integer, default=0)
    non_whitelist_penalty: Mapped[int] = mapped_column(Integer, default=0)
    blacklist_penalty: Mapped[int] = mapped_column(Integer, default=0)

    attorney_exposure_soft_cap: Mapped[int] = mapped_column(Integer, default=0)
    attorney_exposure_penalty_per_extra: Mapped[int] = mapped_column(
        Integer, default=0
    )

    high_risk_penalty: Mapped[int] = mapped_column(Integer, default=0)
    high_risk_rule_hit_threshold: Mapped[int] = mapped_column(Integer, default=0)
    high_risk_report_threshold: Mapped[int] = mapped_column(Integer, default=0)
    high_risk_dispute_threshold: Mapped[int] = mapped_column(Integer, default=0)

    max_per_category_in_top_n: Mapped[int] = mapped_column(Integer, default=0)
    category_exposure_window: Mapped[int] = mapped_column(Integer, default=10)

    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class OpsPrioritySetting(Base):
    """Weights for the administrator ops-priority queue."""

    __tablename__ = "ops_priority_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    high_value_base_weight: Mapped[int] = mapped_column(Integer, default=30)
    high_value_reason_weight: Mapped[int] = mapped_column(Integer, default=5)
    first_bid_overdue_published_weight: Mapped[int] = mapped_column(
        Integer, default=35
    )
    first_message_overdue_weight: Mapped[int] = mapped_column(Integer, default=25)
    quoted_not_selected_weight: Mapped[int] = mapped_column(Integer, default=15)
    selected_no_conversation_weight: Mapped[int] = mapped_column(Integer, default=20)
    urgent_weight: Mapped[int] = mapped_column(Integer, default=10)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class AdminActionLog(Base):
    __tablename__ = "admin_action_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
