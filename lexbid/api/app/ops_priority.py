"""
Operations priority for the admin case queue.

``score_ops_priority`` is a pure weighted scorer over per-case operational
signals (funnel stage, response SLAs, value flags). ``build_ops_queue`` loads
those signals in bulk and sorts/filters/paginates the queue. Nothing in this
module writes to the database.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .config import settings
from .marketplace_schemas import OpsQueueQuery
from .models import (
    Bid,
    Case,
    Conversation,
    ConversationMessage,
    EngagementConfirmation,
    EngagementStatus,
    OpsPrioritySetting,
    OPEN_CASE_STATUSES,
    SenderRole,
    Urgency,
    as_utc,
)

logger = logging.getLogger(__name__)

OPS_SETTINGS_KEY = "default"
SLA_WINDOW_MINUTES = 24 * 60

STAGE_PUBLISHED = "PUBLISHED"
STAGE_QUOTED = "QUOTED"
STAGE_SELECTED = "SELECTED"
STAGE_CONTACTED = "CONTACTED"
STAGE_ENGAGED = "ENGAGED"

ENGAGED_STATUSES = (
    EngagementStatus.ACTIVE.value,
    EngagementStatus.PENDING_CLIENT.value,
    EngagementStatus.PENDING_ATTORNEY.value,
)

HIGH_BUDGET = "HIGH_BUDGET"
HIGH_URGENCY = "HIGH_URGENCY"
HOT_CATEGORY = "HOT_CATEGORY"

TAG_FIRST_BID_OVERDUE = "SLA_OVERDUE:FIRST_BID_24H"
TAG_FIRST_MESSAGE_OVERDUE = "SLA_OVERDUE:FIRST_MESSAGE_24H"
TAG_QUOTED_NOT_SELECTED = "BOTTLENECK:QUOTED_NOT_SELECTED"
TAG_SELECTED_NO_CONVERSATION = "BOTTLENECK:SELECTED_NO_CONVERSATION"
TAG_URGENT = "URGENCY:URGENT"

ABNORMAL_MISSING_SUMMARY = "missing_masked_summary"
ABNORMAL_BUDGET_RANGE = "budget_range_invalid"
ABNORMAL_EXPIRED_OPEN = "expired_but_still_open"


@dataclass(frozen=True)
class OpsWeights:
    high_value_base_weight: int = 30
    high_value_reason_weight: int = 5
    first_bid_overdue_published_weight: int = 35
    first_message_overdue_weight: int = 25
    quoted_not_selected_weight: int = 15
    selected_no_conversation_weight: int = 20
    urgent_weight: int = 10

    @classmethod
    def from_row(cls, row: Optional[OpsPrioritySetting]) -> "OpsWeights":
        if row is None:
            return cls()
        defaults = cls()
        values = {}
        for name in cls.__dataclass_fields__:
            raw = getattr(row, name, None)
            values[name] = int(raw) if raw is not None else getattr(defaults, name)
        return cls(**values)


@dataclass(frozen=True)
class CaseOpsSignals:
    case_id: uuid.UUID
    status: str
    urgency: str
    category: str
    created_at: datetime
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    quote_deadline: Optional[datetime] = None
    description_masked: Optional[str] = None
    selected_bid_id: Optional[uuid.UUID] = None
    bid_count: int = 0
    conversation_count: int = 0
    first_bid_at: Optional[datetime] = None
    first_conversation_at: Optional[datetime] = None
    first_attorney_message_at: Optional[datetime] = None
    latest_engagement_status: Optional[str] = None


@dataclass(frozen=True)
class OpsPriority:
    conversion_stage: str
    score: int
    reasons: tuple[str, ...]
    high_value_reasons: tuple[str, ...]
    abnormal_reasons: tuple[str, ...]
    first_bid_minutes: Optional[int]
    first_attorney_message_minutes: Optional[int]
    first_bid_overdue: bool
    first_message_overdue: bool
    sla_overdue_minutes: int

    @property
    def is_high_value(self) -> bool:
        return bool(self.high_value_reasons)


def _minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes, rounded half up, never negative."""
    delta = (as_utc(end) - as_utc(start)).total_seconds() / 60.0
    return max(0, int(math.floor(delta + 0.5)))


def conversion_stage(signals: CaseOpsSignals) -> str:
    if signals.latest_engagement_status in ENGAGED_STATUSES:
        return STAGE_ENGAGED
    if signals.conversation_count > 0:
        return STAGE_CONTACTED
    if signals.selected_bid_id is not None:
        return STAGE_SELECTED
    if signals.bid_count > 0:
        return STAGE_QUOTED
    return STAGE_PUBLISHED


def high_value_reasons(
    signals: CaseOpsSignals, high_budget_threshold: float, hot_categories: Iterable[str]
) -> tuple[str, ...]:
    reasons: list[str] = []
    budget = signals.budget_max if signals.budget_max is not None else signals.budget_min
    if float(budget or 0) >= high_budget_threshold:
        reasons.append(HIGH_BUDGET)
    if signals.urgency in (Urgency.HIGH.value, Urgency.URGENT.value):
        reasons.append(HIGH_URGENCY)
    if str(signals.category).upper() in {c.upper() for c in hot_categories}:
        reasons.append(HOT_CATEGORY)
    return tuple(reasons)


def abnormal_reasons(signals: CaseOpsSignals, now: datetime) -> tuple[str, ...]:
    reasons: list[str] = []
    if not signals.description_masked:
        reasons.append(ABNORMAL_MISSING_SUMMARY)
    if (
        signals.budget_min is not None
        and signals.budget_max is not None
        and signals.budget_min > signals.budget_max
    ):
        reasons.append(ABNORMAL_BUDGET_RANGE)
    deadline = as_utc(signals.quote_deadline)
    if deadline is not None and deadline < now and signals.status in OPEN_CASE_STATUSES:
        reasons.append(ABNORMAL_EXPIRED_OPEN)
    return tuple(reasons)


def score_ops_priority(
    signals: CaseOpsSignals,
    weights: OpsWeights,
    now: datetime,
    high_budget_threshold: float = 5000.0,
    hot_categories: Iterable[str] = (),
) -> OpsPriority:
    stage = conversion_stage(signals)
    value_reasons = high_value_reasons(signals, high_budget_threshold, hot_categories)

    first_bid_minutes = (
        _minutes_between(signals.created_at, signals.first_bid_at)
        if signals.first_bid_at is not None
        else None
    )
    first_message_minutes = (
        _minutes_between(signals.created_at, signals.first_attorney_message_at)
        if signals.first_attorney_message_at is not None
        else None
    )
    first_bid_overdue = first_bid_minutes is None or first_bid_minutes > SLA_WINDOW_MINUTES
    first_message_overdue = (
        first_message_minutes is None or first_message_minutes > SLA_WINDOW_MINUTES
    )

    score = 0
    reasons: list[str] = []
    if value_reasons:
        score += weights.high_value_base_weight + len(value_reasons) * weights.high_value_reason_weight
        reasons.extend(f"HIGH_VALUE:{r}" for r in value_reasons)
    if first_bid_overdue and stage == STAGE_PUBLISHED:
        score += weights.first_bid_overdue_published_weight
        reasons.append(TAG_FIRST_BID_OVERDUE)
    if first_message_overdue and stage in (STAGE_SELECTED, STAGE_CONTACTED):
        score += weights.first_message_overdue_weight
        reasons.append(TAG_FIRST_MESSAGE_OVERDUE)
    if stage == STAGE_QUOTED and signals.selected_bid_id is None:
        score += weights.quoted_not_selected_weight
        reasons.append(TAG_QUOTED_NOT_SELECTED)
    if stage == STAGE_SELECTED and signals.conversation_count == 0:
        score += weights.selected_no_conversation_weight
        reasons.append(TAG_SELECTED_NO_CONVERSATION)
    if signals.urgency == Urgency.URGENT.value:
        score += weights.urgent_weight
        reasons.append(TAG_URGENT)

    age_minutes = _minutes_between(signals.created_at, now)

    def overdue_by(elapsed: Optional[int]) -> int:
        if elapsed is None:
            return max(0, age_minutes - SLA_WINDOW_MINUTES)
        return max(0, elapsed - SLA_WINDOW_MINUTES)

    return OpsPriority(
        conversion_stage=stage,
        score=score,
        reasons=tuple(reasons),
        high_value_reasons=value_reasons,
        abnormal_reasons=abnormal_reasons(signals, now),
        first_bid_minutes=first_bid_minutes,
        first_attorney_message_minutes=first_message_minutes,
        first_bid_overdue=first_bid_overdue,
        first_message_overdue=first_message_overdue,
        sla_overdue_minutes=max(overdue_by(first_bid_minutes), overdue_by(first_message_minutes)),
    )


# ---------------------------------------------------------------------------
# Admin queue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OpsQueueItem:
    case: Case
    signals: CaseOpsSignals
    priority: OpsPriority


@dataclass
class OpsQueue:
    items: list[OpsQueueItem]
    total: int
    page: int
    page_size: int
    bottleneck_summary: dict[str, int] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return max(math.ceil(self.total / self.page_size), 1)


def load_ops_weights(db: Session) -> OpsWeights:
    row = db.execute(
        select(OpsPrioritySetting).where(OpsPrioritySetting.key == OPS_SETTINGS_KEY)
    ).scalar_one_or_none()
    return OpsWeights.from_row(row)


def get_or_create_ops_settings(db: Session) -> OpsPrioritySetting:
    row = db.execute(
        select(OpsPrioritySetting).where(OpsPrioritySetting.key == OPS_SETTINGS_KEY)
    ).scalar_one_or_none()
    if row is None:
        row = OpsPrioritySetting(key=OPS_SETTINGS_KEY)
        db.add(row)
        db.flush()
    return row


def _queue_conditions(query: OpsQueueQuery) -> list[Any]:
    conditions: list[Any] = []
    if query.status:
        conditions.append(Case.status == query.status)
    if query.category:
        conditions.append(Case.category == query.category)
    if query.state_code:
        conditions.append(Case.state_code == query.state_code)
    if query.q:
        pattern = f"%{query.q.strip()}%"
        matches = [Case.title.ilike(pattern), Case.description.ilike(pattern)]
        try:
            matches.append(Case.id == uuid.UUID(query.q.strip()))
        except ValueError:
            pass
        conditions.append(or_(*matches))
    return conditions


def _load_ops_signals(db: Session, cases: Sequence[Case]) -> list[CaseOpsSignals]:
    case_ids = [c.id for c in cases]
    if not case_ids:
        return []

    bid_stats = {
        case_id: (int(count), first_at)
        for case_id, count, first_at in db.execute(
            select(Bid.case_id, func.count(Bid.id), func.min(Bid.created_at))
            .where(Bid.case_id.in_(case_ids))
            .group_by(Bid.case_id)
        ).all()
    }
    conversation_stats = {
        case_id: (int(count), first_at)
        for case_id, count, first_at in db.execute(
            select(
                Conversation.case_id,
                func.count(Conversation.id),
                func.min(Conversation.created_at),
            )
            .where(Conversation.case_id.in_(case_ids))
            .group_by(Conversation.case_id)
        ).all()
    }
    first_messages = dict(
        db.execute(
            select(Conversation.case_id, func.min(ConversationMessage.created_at))
            .select_from(ConversationMessage)
            .join(Conversation, ConversationMessage.conversation_id == Conversation.id)
            .where(
                Conversation.case_id.in_(case_ids),
                ConversationMessage.sender_role == SenderRole.ATTORNEY.value,
            )
            .group_by(Conversation.case_id)
        ).all()
    )
    latest_engagement: dict[uuid.UUID, str] = {}
    for case_id, status in db.execute(
        select(EngagementConfirmation.case_id, EngagementConfirmation.status)
        .where(EngagementConfirmation.case_id.in_(case_ids))
        .order_by(EngagementConfirmation.created_at.desc())
    ).all():
        latest_engagement.setdefault(case_id, status)

    signals: list[CaseOpsSignals] = []
    for c in cases:
        bid_count, first_bid_at = bid_stats.get(c.id, (0, None))
        conversation_count, first_conversation_at = conversation_stats.get(c.id, (0, None))
        signals.append(
            CaseOpsSignals(
                case_id=c.id,
                status=c.status,
                urgency=c.urgency,
                category=c.category,
                created_at=as_utc(c.created_at),
                budget_min=c.budget_min,
                budget_max=c.budget_max,
                quote_deadline=as_utc(c.quote_deadline),
                description_masked=c.description_masked,
                selected_bid_id=c.selected_bid_id,
                bid_count=bid_count,
                conversation_count=conversation_count,
                first_bid_at=as_utc(first_bid_at),
                first_conversation_at=as_utc(first_conversation_at),
                first_attorney_message_at=as_utc(first_messages.get(c.id)),
                latest_engagement_status=latest_engagement.get(c.id),
            )
        )
    return signals


def _keep(item: OpsQueueItem, query: OpsQueueQuery) -> bool:
    p = item.priority
    if query.abnormal_only and not p.abnormal_reasons:
        return False
    if query.abnormal_type and query.abnormal_type not in p.abnormal_reasons:
        return False
    if query.high_value_only and not p.is_high_value:
        return False
    if query.conversion_stage and p.conversion_stage != query.conversion_stage:
        return False
    if query.sla_overdue == "first_bid_24h" and not p.first_bid_overdue:
        return False
    if query.sla_overdue == "first_message_24h" and not p.first_message_overdue:
        return False
    return True


def _sort_key(item: OpsQueueItem, sort: str) -> tuple:
    updated = -as_utc(item.case.updated_at).timestamp()
    if sort == "ops_priority":
        return (-item.priority.score, updated)
    if sort == "sla_overdue_desc":
        return (-item.priority.sla_overdue_minutes, updated)
    return (updated,)


def build_ops_queue(
    db: Session, query: OpsQueueQuery, now: Optional[datetime] = None
) -> OpsQueue:
    now = now or datetime.now(timezone.utc)
    weights = load_ops_weights(db)
    conditions = _queue_conditions(query)
    in_memory = query.needs_post_filter or query.export_all

    stmt = select(Case).where(*conditions).order_by(Case.updated_at.desc())
    if in_memory:
        stmt = stmt.limit(settings.ADMIN_EXPORT_LIMIT)
        total = 0
    else:
        total = db.execute(
            select(func.count()).select_from(Case).where(*conditions)
        ).scalar_one()
        stmt = stmt.offset((query.page - 1) * query.page_size).limit(query.page_size)

    cases = list(db.execute(stmt).scalars().all())
    hot = settings.ops_hot_categories
    items = [
        OpsQueueItem(
            case=case,
            signals=signals,
            priority=score_ops_priority(
                signals, weights, now, settings.OPS_HIGH_BUDGET_THRESHOLD, hot
            ),
        )
        for case, signals in zip(cases, _load_ops_signals(db, cases))
    ]
    items = [item for item in items if _keep(item, query)]
    items.sort(key=lambda item: _sort_key(item, query.sort))

    stages = Counter(item.priority.conversion_stage for item in items)
    summary = {
        "quoted_not_selected": stages[STAGE_QUOTED],
        "selected_no_conversation": stages[STAGE_SELECTED],
        "contacted_not_engaged": stages[STAGE_CONTACTED],
    }

    if in_memory:
        total = len(items)
        if not query.export_all:
            start = (query.page - 1) * query.page_size
            items = items[start : start + query.page_size]

    return OpsQueue(
        items=items,
        total=total,
        page=query.page,
        page_size=query.page_size,
        bottleneck_summary=summary,
    )

