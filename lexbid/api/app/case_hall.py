"""
Case Hall - attorney-facing feed of open cases

Anonymous visitors get the plain sorted list; an authenticated attorney also
gets personalised reasons, ``has_my_bid`` and the recommended ranking.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .case_feed import CaseFeed, CaseFeedItem, build_case_feed
from .config import settings
from .marketplace_schemas import (
    DbSession,
    HallItemResponse,
    HallQuery,
    HallResponse,
    PaginationResponse,
    RankingExperimentResponse,
    RiskSignalsResponse,
    parse_flag,
    split_csv,
)
from .security import OptionalActor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/marketplace/cases", tags=["case-hall"])

HALL_SORTS = {
    "latest",
    "quotes_desc",
    "deadline_asc",
    "recommended",
    "budget_desc",
    "low_competition",
}


def _to_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _build_item_response(item: CaseFeedItem) -> HallItemResponse:
    return HallItemResponse(
        id=str(item.id),
        title=item.title,
        category=item.category,
        state_code=item.state_code,
        city=item.city,
        zip_code_masked=item.zip_code_masked,
        urgency=item.urgency,
        status=item.status,
        fee_mode=item.fee_mode,
        budget_min=item.budget_min,
        budget_max=item.budget_max,
        quote_deadline=item.quote_deadline,
        quote_count=item.quote_count,
        has_my_bid=item.has_my_bid,
        risk_signals=RiskSignalsResponse(
            rule_hits=item.risk_signals.rule_hits,
            report_count=item.risk_signals.report_count,
            dispute_count=item.risk_signals.dispute_count,
            high_risk=item.risk_signals.high_risk,
        ),
        recommendation_reasons=list(item.recommendation_reasons),
        risk_hints=list(item.risk_hints),
        score=item.score,
        description_masked=item.description_masked,
        created_at=item.created_at,
    )


def _build_hall_response(feed: CaseFeed) -> HallResponse:
    experiment = feed.ranking_experiment
    return HallResponse(
        items=[_build_item_response(item) for item in feed.items],
        count=len(feed.items),
        sort=feed.sort,
        pagination=PaginationResponse(
            page=feed.pagination.page,
            page_size=feed.pagination.page_size,
            total=feed.pagination.total,
            total_pages=feed.pagination.total_pages,
        ),
        ranking_experiment=(
            RankingExperimentResponse(
                config_enabled=experiment.config_enabled,
                variant=experiment.variant,
                ab_enabled=experiment.ab_enabled,
            )
            if experiment
            else None
        ),
    )


@router.get("/hall", response_model=HallResponse)
def get_case_hall(
    db: DbSession,
    actor: OptionalActor,
    category: Optional[str] = Query(None),
    state_code: Optional[str] = Query(None, alias="stateCode"),
    zip_prefix: Optional[str] = Query(None, alias="zipPrefix"),
    urgency: Optional[str] = Query(None),
    fee_mode: Optional[str] = Query(None, alias="feeMode"),
    budget_min: Optional[str] = Query(None, alias="budgetMin"),
    budget_max: Optional[str] = Query(None, alias="budgetMax"),
    mine_bid_only: Optional[str] = Query(None, alias="mineBidOnly"),
    deadline_window: Optional[str] = Query(None, alias="deadlineWindow"),
    quoteable_only: Optional[str] = Query(None, alias="quoteableOnly"),
    recommendation_reasons: Optional[str] = Query(None, alias="recommendationReasons"),
    sort: Optional[str] = Query(None),
    page: int = Query(1),
    page_size: int = Query(settings.HALL_DEFAULT_PAGE_SIZE, alias="pageSize"),
    export_all: Optional[str] = Query(None, alias="exportAll"),
):
    """Ranked/sorted feed of open cases."""
    try:
        query = HallQuery(
            category=category,
            state_code=state_code,
            zip_prefix=zip_prefix,
            urgency=urgency.upper() if urgency else None,
            fee_mode=fee_mode.upper() if fee_mode else None,
            budget_min=_to_float(budget_min),
            budget_max=_to_float(budget_max),
            mine_bid_only=parse_flag(mine_bid_only),
            deadline_window=(
                deadline_window if deadline_window in ("24h", "7d", "overdue") else None
            ),
            quoteable_only=parse_flag(quoteable_only),
            recommendation_reasons=tuple(split_csv(recommendation_reasons)),
            sort=sort if sort in HALL_SORTS else "latest",
            page=max(page, 1),
            page_size=min(max(page_size, 1), settings.HALL_MAX_PAGE_SIZE),
            export_all=parse_flag(export_all),
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Validation failed",
                "code": "INVALID_FILTER",
                "details": exc.errors(include_url=False, include_context=False),
            },
        )

    attorney_profile_id = actor.attorney_profile_id if actor else None
    try:
        feed = build_case_feed(db, attorney_profile_id, query)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("GET /api/marketplace/cases/hall failed")
        raise HTTPException(status_code=500, detail="Internal server error")
    return _build_hall_response(feed)
