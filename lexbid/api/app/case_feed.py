"""
Case hall feed assembly.

One request = one ``build_case_feed`` call:

1. resolve the attorney context and the ranking config snapshot (once each)
2. pick the A/B variant for the attorney
3. fetch candidate cases with the caller's filters applied in SQL
4. bulk-load bid counts, the attorney's own bids and risk signals
5. order by the requested strategy (``recommended`` runs the scorer)
6. demote high-risk cases, then apply the category exposure cap
7. apply the recommendation-reason filter, then paginate

Every per-case signal is read with a single ``IN (...)`` query over the
candidate ids; nothing here issues one query per case.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.orm import Session

from .case_redaction import summarize_case_description
from .case_scoring import (
    REASON_EXPOSURE_CAP,
    REASON_HIGH_RISK,
    AttorneyContext,
    CaseCandidate,
    rank_candidates,
    score_case,
)
from .config import settings
from .geo import mask_zip
from .marketplace_schemas import HallQuery
from .models import (
    AttorneyServiceArea,
    AttorneySpecialty,
    Bid,
    BidStatus,
    Case,
    ContentRuleEvent,
    Conversation,
    ConversationReport,
    ConversationStatus,
    DisputeTicket,
    EngagementConfirmation,
    EXPOSURE_ENGAGEMENT_STATUSES,
    OPEN_CASE_STATUSES,
    as_utc,
)
from .ranking_config import (
    RankingConfigSnapshot,
    Variant,
    assign_variant,
    load_ranking_config,
)

logger = logging.getLogger(__name__)

HINT_RULE_HIT = "content rule hit"
HINT_DISPUTE_RISK = "dispute risk"
HINT_INSUFFICIENT_DETAILS = "insufficient details"
MIN_DETAIL_CHARS = 20
MAX_RISK_HINTS = 3

DB_PAGINATED_SORTS = ("latest", "deadline_asc")


@dataclass(frozen=True)
class RiskSignals:
    rule_hits: int = 0
    report_count: int = 0
    dispute_count: int = 0
    high_risk: bool = False


@dataclass(frozen=True)
class CaseFeedItem:
    id: uuid.UUID
    title: str
    category: str
    state_code: str
    city: Optional[str]
    zip_code_masked: str
    urgency: str
    status: str
    fee_mode: Optional[str]
    budget_min: Optional[float]
    budget_max: Optional[float]
    quote_deadline: Optional[datetime]
    quote_count: int
    has_my_bid: bool
    risk_signals: RiskSignals
    recommendation_reasons: tuple[str, ...]
    risk_hints: tuple[str, ...]
    description_masked: str
    created_at: datetime
    score: Optional[float] = None


@dataclass(frozen=True)
class Pagination:
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(math.ceil(self.total / self.page_size), 1)


@dataclass(frozen=True)
class RankingExperiment:
    config_enabled: bool
    variant: Variant
    ab_enabled: bool


@dataclass
class CaseFeed:
    items: list[CaseFeedItem]
    pagination: Pagination
    sort: str
    ranking_experiment: Optional[RankingExperiment] = None


@dataclass
class _CaseSignals:
    bid_counts: dict[uuid.UUID, int] = field(default_factory=dict)
    my_bid_case_ids: set[uuid.UUID] = field(default_factory=set)
    rule_hits: dict[uuid.UUID, int] = field(default_factory=dict)
    disputes: dict[uuid.UUID, int] = field(default_factory=dict)
    reports: dict[uuid.UUID, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Attorney context
# ---------------------------------------------------------------------------


def load_attorney_context(db: Session, attorney_profile_id: uuid.UUID) -> AttorneyContext:
    """Specialties, service areas and exposure load, read once per request."""
    specialties = db.execute(
        select(AttorneySpecialty.category).where(
            AttorneySpecialty.attorney_profile_id == attorney_profile_id
        )
    ).scalars().all()
    areas = db.execute(
        select(AttorneyServiceArea.state_code, AttorneyServiceArea.zip_code)
        .where(AttorneyServiceArea.attorney_profile_id == attorney_profile_id)
        .order_by(AttorneyServiceArea.created_at.asc())
    ).all()

    open_conversations = db.execute(
        select(func.count(Conversation.id)).where(
            Conversation.attorney_profile_id == attorney_profile_id,
            Conversation.status == ConversationStatus.OPEN.value,
        )
    ).scalar_one()
    live_engagements = db.execute(
        select(func.count(EngagementConfirmation.id)).where(
            EngagementConfirmation.attorney_profile_id == attorney_profile_id,
            EngagementConfirmation.status.in_(EXPOSURE_ENGAGEMENT_STATUSES),
        )
    ).scalar_one()

    return AttorneyContext(
        attorney_profile_id=attorney_profile_id,
        specialties=frozenset(specialties),
        service_states=frozenset(state for state, _ in areas if state),
        nearest_zip=next((zip_code for _, zip_code in areas if zip_code), None),
        exposure_load=int(open_conversations) + int(live_engagements),
    )


# ---------------------------------------------------------------------------
# Candidate query
# ---------------------------------------------------------------------------


def _candidate_conditions(
    query: HallQuery, attorney_profile_id: Optional[uuid.UUID], now: datetime
) -> list[Any]:
    conditions: list[Any] = [Case.status.in_(OPEN_CASE_STATUSES)]
    if query.category:
        conditions.append(Case.category == query.category)
    if query.state_code:
        conditions.append(Case.state_code == query.state_code)
    if query.zip_prefix:
        conditions.append(Case.zip_code.startswith(query.zip_prefix, autoescape=True))
    if query.urgency:
        conditions.append(Case.urgency == query.urgency.value)
    if query.fee_mode:
        conditions.append(Case.fee_mode == query.fee_mode.value)
    if query.budget_min is not None:
        conditions.append(
            or_(Case.budget_max >= query.budget_min, Case.budget_min >= query.budget_min)
        )
    if query.budget_max is not None:
        conditions.append(
            or_(Case.budget_min.is_(None), Case.budget_min <= query.budget_max)
        )
    if query.quoteable_only:
        conditions.append(or_(Case.quote_deadline.is_(None), Case.quote_deadline > now))
    if query.deadline_window == "overdue":
        conditions.append(Case.quote_deadline <= now)
    elif query.deadline_window in ("24h", "7d"):
        span = timedelta(hours=24) if query.deadline_window == "24h" else timedelta(days=7)
        conditions.append(
            and_(Case.quote_deadline > now, Case.quote_deadline <= now + span)
        )
    if query.mine_bid_only and attorney_profile_id is not None:
        conditions.append(
            exists().where(
                Bid.case_id == Case.id,
                Bid.attorney_profile_id == attorney_profile_id,
            )
        )
    return conditions


def _load_signals(
    db: Session,
    case_ids: Sequence[uuid.UUID],
    attorney_profile_id: Optional[uuid.UUID],
) -> _CaseSignals:
    signals = _CaseSignals()
    if not case_ids:
        return signals

    signals.bid_counts = {
        case_id: int(count)
        for case_id, count in db.execute(
            select(Bid.case_id, func.count(Bid.id))
            .where(Bid.case_id.in_(case_ids), Bid.status != BidStatus.WITHDRAWN.value)
            .group_by(Bid.case_id)
        ).all()
    }
    if attorney_profile_id is not None:
        signals.my_bid_case_ids = set(
            db.execute(
                select(Bid.case_id).where(
                    Bid.case_id.in_(case_ids),
                    Bid.attorney_profile_id == attorney_profile_id,
                )
            ).scalars()
        )

    signals.rule_hits = {
        case_id: int(count)
        for case_id, count in db.execute(
            select(ContentRuleEvent.case_id, func.count(ContentRuleEvent.id))
            .where(ContentRuleEvent.case_id.in_(case_ids))
            .group_by(ContentRuleEvent.case_id)
        ).all()
    }
    signals.disputes = {
        case_id: int(count)
        for case_id, count in db.execute(
            select(DisputeTicket.case_id, func.count(DisputeTicket.id))
            .where(DisputeTicket.case_id.in_(case_ids))
            .group_by(DisputeTicket.case_id)
        ).all()
    }
    signals.reports = {
        case_id: int(count)
        for case_id, count in db.execute(
            select(Conversation.case_id, func.count(ConversationReport.id))
            .select_from(ConversationReport)
            .join(Conversation, ConversationReport.conversation_id == Conversation.id)
            .where(Conversation.case_id.in_(case_ids))
            .group_by(Conversation.case_id)
        ).all()
    }
    return signals


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def apply_exposure_cap(
    items: list[CaseFeedItem], per_category_cap: int, window: int
) -> list[CaseFeedItem]:
    """Fill the first ``window`` slots from the ranked stream with at most
    ``per_category_cap`` items of one category.

    Items that would exceed the cap are held back, tagged, and appended to the
    tail in relative order. When the stream runs out before the window is
    full, the held-back items follow directly.
    """
    if per_category_cap <= 0:
        return items
    window = max(window, 1)
    counts: Counter[str] = Counter()
    head: list[CaseFeedItem] = []
    overflow: list[CaseFeedItem] = []
    stream = iter(items)
    for item in stream:
        if counts[item.category] >= per_category_cap:
            overflow.append(
                replace(
                    item,
                    recommendation_reasons=item.recommendation_reasons
                    + (REASON_EXPOSURE_CAP,),
                )
            )
            continue
        counts[item.category] += 1
        head.append(item)
        if len(head) >= window:
            break
    return head + list(stream) + overflow


def demote_high_risk(items: list[CaseFeedItem]) -> list[CaseFeedItem]:
    safe = [item for item in items if not item.risk_signals.high_risk]
    risky = [
        replace(
            item,
            recommendation_reasons=item.recommendation_reasons + (REASON_HIGH_RISK,),
        )
        for item in items
        if item.risk_signals.high_risk
    ]
    return safe + risky


def filter_by_reasons(
    items: list[CaseFeedItem], required: Sequence[str]
) -> list[CaseFeedItem]:
    if not required:
        return items
    return [
        item
        for item in items
        if all(reason in item.recommendation_reasons for reason in required)
    ]


def _risk_hints(signals: RiskSignals, description_masked: Optional[str]) -> tuple[str, ...]:
    hints: list[str] = []
    if signals.rule_hits > 0:
        hints.append(HINT_RULE_HIT)
    if signals.report_count > 0 or signals.dispute_count > 0:
        hints.append(HINT_DISPUTE_RISK)
    if not description_masked or len(description_masked.strip()) < MIN_DETAIL_CHARS:
        hints.append(HINT_INSUFFICIENT_DETAILS)
    return tuple(hints[:MAX_RISK_HINTS])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_case_feed(
    db: Session,
    attorney_profile_id: Optional[uuid.UUID],
    query: HallQuery,
    now: Optional[datetime] = None,
) -> CaseFeed:
    now = now or datetime.now(timezone.utc)
    config = load_ranking_config(db)
    attorney = (
        load_attorney_context(db, attorney_profile_id) if attorney_profile_id else None
    )
    variant = assign_variant(config, attorney_profile_id)
    recommended = query.sort == "recommended"

    conditions = _candidate_conditions(query, attorney_profile_id, now)
    db_paginated = query.sort in DB_PAGINATED_SORTS and not query.export_all

    stmt = select(Case).where(*conditions)
    if query.sort == "deadline_asc":
        stmt = stmt.order_by(Case.quote_deadline.asc().nulls_last(), Case.created_at.desc())
    else:
        stmt = stmt.order_by(Case.created_at.desc())

    if db_paginated:
        total = db.execute(
            select(func.count()).select_from(Case).where(*conditions)
        ).scalar_one()
        stmt = stmt.offset((query.page - 1) * query.page_size).limit(query.page_size)
    else:
        total = 0
        stmt = stmt.limit(settings.HALL_CANDIDATE_LIMIT)

    cases = list(db.execute(stmt).scalars().all())
    signals = _load_signals(db, [c.id for c in cases], attorney_profile_id)
    by_id = {c.id: c for c in cases}

    candidates = [
        CaseCandidate(
            id=c.id,
            category=c.category,
            state_code=c.state_code,
            zip_code=c.zip_code,
            urgency=c.urgency,
            quote_deadline=as_utc(c.quote_deadline),
            created_at=as_utc(c.created_at),
            bid_count=signals.bid_counts.get(c.id, 0),
            has_my_bid=c.id in signals.my_bid_case_ids,
        )
        for c in cases
    ]

    if recommended:
        ordered = rank_candidates(candidates, attorney, config, variant, now)
    else:
        ordered = [
            (c, score_case(c, attorney, config, variant, now))
            for c in _explicit_order(candidates, by_id, query.sort)
        ]

    items = [
        _build_item(
            by_id[candidate.id],
            candidate,
            result.reasons,
            result.score,
            signals,
            config,
            recommended,
        )
        for candidate, result in ordered
    ]

    if recommended and config.active:
        # Demote first so the cap is checked against the final window
        if config.high_risk_penalty > 0:
            items = demote_high_risk(items)
        items = apply_exposure_cap(
            items, config.max_per_category_in_top_n, config.category_exposure_window
        )
    if recommended:
        items = filter_by_reasons(items, query.recommendation_reasons)

    if not db_paginated:
        total = len(items)
        if not query.export_all:
            start = (query.page - 1) * query.page_size
            items = items[start : start + query.page_size]

    logger.debug(
        f"Case hall: sort={query.sort} variant={variant} config_active={config.active} "
        f"candidates={len(cases)} returned={len(items)}"
    )

    return CaseFeed(
        items=items,
        pagination=Pagination(page=query.page, page_size=query.page_size, total=total),
        sort=query.sort,
        ranking_experiment=(
            RankingExperiment(
                config_enabled=config.active,
                variant=variant,
                ab_enabled=config.ab_enabled,
            )
            if recommended
            else None
        ),
    )


def _explicit_order(
    candidates: list[CaseCandidate], by_id: dict[uuid.UUID, Case], sort: str
) -> list[CaseCandidate]:
    def newest(c: CaseCandidate) -> float:
        return -c.created_at.timestamp()

    if sort == "quotes_desc":
        return sorted(candidates, key=lambda c: (-c.bid_count, newest(c)))
    if sort == "low_competition":
        return sorted(candidates, key=lambda c: (c.bid_count, newest(c)))
    if sort == "budget_desc":

        def budget(c: CaseCandidate) -> float:
            row = by_id[c.id]
            value = row.budget_max if row.budget_max is not None else row.budget_min
            return float(value or 0)

        return sorted(candidates, key=lambda c: (-budget(c), newest(c)))
    # latest / deadline_asc keep the database order
    return candidates


def _build_item(
    case: Case,
    candidate: CaseCandidate,
    reasons: tuple[str, ...],
    score: float,
    signals: _CaseSignals,
    config: RankingConfigSnapshot,
    recommended: bool,
) -> CaseFeedItem:
    rule_hits = signals.rule_hits.get(case.id, 0)
    report_count = signals.reports.get(case.id, 0)
    dispute_count = signals.disputes.get(case.id, 0)
    risk = RiskSignals(
        rule_hits=rule_hits,
        report_count=report_count,
        dispute_count=dispute_count,
        high_risk=config.is_high_risk(rule_hits, report_count, dispute_count),
    )
    description_masked = case.description_masked or summarize_case_description(
        case.description, settings.HALL_DESCRIPTION_SUMMARY_CHARS
    )
    return CaseFeedItem(
        id=case.id,
        title=case.title,
        category=case.category,
        state_code=case.state_code,
        city=case.city,
        zip_code_masked=mask_zip(case.zip_code),
        urgency=case.urgency,
        status=case.status,
        fee_mode=case.fee_mode,
        budget_min=case.budget_min,
        budget_max=case.budget_max,
        quote_deadline=candidate.quote_deadline,
        quote_count=candidate.bid_count,
        has_my_bid=candidate.has_my_bid,
        risk_signals=risk,
        recommendation_reasons=reasons,
        risk_hints=_risk_hints(risk, description_masked),
        description_masked=description_masked,
        created_at=candidate.created_at,
        score=round(score, 4) if recommended else None,
    )
