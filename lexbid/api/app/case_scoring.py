"""
Case hall scoring.

``score_case`` is a pure function of its inputs: no I/O, no clock reads, no
randomness. The feed assembler builds the inputs once per request and calls
it for each candidate.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .geo import zip3_proximity_score
from .models import Urgency, as_utc
from .ranking_config import (
    ALREADY_BID_PENALTY,
    MEDIUM_URGENCY_BOOST,
    NOT_QUOTEABLE_PENALTY,
    RankingConfigSnapshot,
    Variant,
)

REASON_UNQUOTED = "unquoted"
REASON_QUOTEABLE = "quoteable"
REASON_SOON_DEADLINE = "24h deadline"
REASON_CATEGORY_MATCH = "category match"
REASON_STATE_MATCH = "state match"
REASON_WHITELISTED = "whitelisted category"
REASON_BLACKLISTED = "blacklisted category (demoted)"
REASON_NEARBY = "nearby"
REASON_EXPOSURE_CAP = "category exposure cap"
REASON_HIGH_RISK = "high risk (demoted)"

SOON_DEADLINE_WINDOW = timedelta(hours=24)


def urgency_reason(urgency: str) -> str:
    return f"urgency {urgency}"


@dataclass(frozen=True)
class CaseCandidate:
    """The fields of a case the scorer looks at, plus its bid signals."""

    id: uuid.UUID
    category: str
    state_code: str
    zip_code: Optional[str]
    urgency: str
    quote_deadline: Optional[datetime]
    created_at: datetime
    bid_count: int = 0
    has_my_bid: bool = False


@dataclass(frozen=True)
class AttorneyContext:
    """Per-request view of the attorney asking for the feed."""

    attorney_profile_id: uuid.UUID
    specialties: frozenset[str] = field(default_factory=frozenset)
    service_states: frozenset[str] = field(default_factory=frozenset)
    nearest_zip: Optional[str] = None
    exposure_load: int = 0


@dataclass(frozen=True)
class CaseScore:
    score: float
    reasons: tuple[str, ...]


def is_quoteable(quote_deadline: Optional[datetime], now: datetime) -> bool:
    deadline = as_utc(quote_deadline)
    return deadline is None or deadline > now


def is_deadline_soon(quote_deadline: Optional[datetime], now: datetime) -> bool:
    deadline = as_utc(quote_deadline)
    return deadline is not None and now < deadline <= now + SOON_DEADLINE_WINDOW


def score_case(
    candidate: CaseCandidate,
    attorney: Optional[AttorneyContext],
    config: RankingConfigSnapshot,
    variant: Variant,
    now: datetime,
) -> CaseScore:
    weights = config.weights_for(variant)
    reasons: list[str] = []
    score = 0.0

    quoteable = is_quoteable(candidate.quote_deadline, now)
    soon = is_deadline_soon(candidate.quote_deadline, now)

    score += -ALREADY_BID_PENALTY if candidate.has_my_bid else weights.unquoted
    score += weights.quoteable if quoteable else -NOT_QUOTEABLE_PENALTY
    if soon:
        score += weights.soon_deadline

    if candidate.urgency == Urgency.URGENT.value:
        score += weights.urgent
    elif candidate.urgency == Urgency.HIGH.value:
        score += weights.high
    elif candidate.urgency == Urgency.MEDIUM.value:
        score += MEDIUM_URGENCY_BOOST

    specialty_match = attorney is not None and candidate.category in attorney.specialties
    state_match = attorney is not None and candidate.state_code in attorney.service_states
    if specialty_match:
        score += weights.category_match
    if state_match:
        score += weights.state_match

    age_hours = max((now - as_utc(candidate.created_at)).total_seconds() / 3600.0, 0.0)
    score += max(weights.recency_max_boost - age_hours, 0.0)

    proximity = 0
    if attorney is not None and candidate.zip_code and attorney.nearest_zip:
        proximity = zip3_proximity_score(candidate.zip_code, attorney.nearest_zip)
    score += proximity

    score -= min(candidate.bid_count * weights.bid_crowding_penalty, weights.bid_crowding_cap)

    whitelisted = False
    blacklisted = False
    if config.active:
        if config.category_whitelist:
            whitelisted = candidate.category in config.category_whitelist
            score += config.whitelist_boost if whitelisted else -config.non_whitelist_penalty
        if candidate.category in config.category_blacklist:
            blacklisted = True
            score -= config.blacklist_penalty
        if attorney is not None:
            over = max(attorney.exposure_load - config.attorney_exposure_soft_cap, 0)
            score -= over * config.attorney_exposure_penalty_per_extra

    if attorney is not None:
        if not candidate.has_my_bid:
            reasons.append(REASON_UNQUOTED)
        if quoteable:
            reasons.append(REASON_QUOTEABLE)
        if soon:
            reasons.append(REASON_SOON_DEADLINE)
        if specialty_match:
            reasons.append(REASON_CATEGORY_MATCH)
        if state_match:
            reasons.append(REASON_STATE_MATCH)
        if whitelisted:
            reasons.append(REASON_WHITELISTED)
        if blacklisted:
            reasons.append(REASON_BLACKLISTED)
        if proximity > 0:
            reasons.append(REASON_NEARBY)
    if candidate.urgency in (Urgency.URGENT.value, Urgency.HIGH.value):
        reasons.append(urgency_reason(candidate.urgency))

    return CaseScore(score=score, reasons=tuple(reasons))


def rank_candidates(
    candidates: Iterable[CaseCandidate],
    attorney: Optional[AttorneyContext],
    config: RankingConfigSnapshot,
    variant: Variant,
    now: datetime,
) -> list[tuple[CaseCandidate, CaseScore]]:
    """Score every candidate; order by score desc, then newest first."""
    scored = [(c, score_case(c, attorney, config, variant, now)) for c in candidates]
    scored.sort(key=lambda pair: (-pair[1].score, -as_utc(pair[0].created_at).timestamp()))
    return scored
