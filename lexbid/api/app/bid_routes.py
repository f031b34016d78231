"""
Bid transition endpoints: submit, respond, withdraw and select.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from .bid_lifecycle import (
    BidDraft,
    SelectionResult,
    respond_to_case,
    select_bid,
    submit_bid,
    withdraw_bid,
)
from .marketplace_errors import MarketplaceError, to_http_exception
from .marketplace_schemas import (
    BidResponse,
    BidSubmitRequest,
    CaseSummaryResponse,
    DbSession,
    RespondRequest,
    SelectBidRequest,
    SelectBidResponse,
    parse_uuid,
)
from .models import Bid, FeeMode
from .security import AttorneyDep, ClientDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["marketplace-bids"])


def _build_bid_response(bid: Bid) -> BidResponse:
    return BidResponse(
        id=str(bid.id),
        case_id=str(bid.case_id),
        attorney_profile_id=str(bid.attorney_profile_id),
        status=bid.status,
        version=bid.version,
        message=bid.message,
        fee_quote_min=bid.fee_quote_min,
        fee_quote_max=bid.fee_quote_max,
        fee_mode=bid.fee_mode,
        service_scope=bid.service_scope,
        estimated_days=bid.estimated_days,
        includes_consultation=bool(bid.includes_consultation),
        updated_at=bid.updated_at,
    )


def _build_selection_response(result: SelectionResult) -> SelectBidResponse:
    return SelectBidResponse(
        case=CaseSummaryResponse(
            id=str(result.case.id),
            status=result.case.status,
            updated_at=result.case.updated_at,
        ),
        selected_bid_id=str(result.selected_bid_id),
        attorney_profile_id=str(result.attorney_profile_id),
        conversation_id=str(result.conversation_id) if result.conversation_id else None,
        engagement_confirmation_id=str(result.engagement_confirmation_id),
        rejected_bid_ids=[str(bid_id) for bid_id in result.rejected_bid_ids],
        previous_selected_bid_id=(
            str(result.previous_selected_bid_id)
            if result.previous_selected_bid_id
            else None
        ),
    )


def _internal_error(route: str) -> HTTPException:
    logger.exception(f"{route} failed")
    return HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "/api/marketplace/cases/{case_id}/select-bid", response_model=SelectBidResponse
)
def select_case_bid(
    case_id: str,
    body: SelectBidRequest,
    db: DbSession,
    client: ClientDep,
):
    """Client picks the winning bid for their case."""
    try:
        case_uuid = parse_uuid(case_id, "case_id")
        bid_uuid = parse_uuid(body.bid_id, "bidId")
        result = select_bid(
            db,
            case_uuid,
            bid_uuid,
            client,
            create_conversation=body.create_conversation,
        )
        return _build_selection_response(result)
    except MarketplaceError as exc:
        raise to_http_exception(exc)
    except SQLAlchemyError:
        raise _internal_error("POST /api/marketplace/cases/{case_id}/select-bid")


@router.post("/api/marketplace/bids/{bid_id}/withdraw")
def withdraw_case_bid(
    bid_id: str,
    db: DbSession,
    attorney: AttorneyDep,
):
    try:
        bid = withdraw_bid(db, parse_uuid(bid_id, "bid_id"), attorney)
        return {"ok": True, "bid": _build_bid_response(bid)}
    except MarketplaceError as exc:
        raise to_http_exception(exc)
    except SQLAlchemyError:
        raise _internal_error("POST /api/marketplace/bids/{bid_id}/withdraw")


@router.post("/api/marketplace/cases/{case_id}/bids")
def submit_case_bid(
    case_id: str,
    body: BidSubmitRequest,
    db: DbSession,
    attorney: AttorneyDep,
):
    """Create or resubmit the attorney's priced bid on a case."""
    fee_min, fee_max = body.fee_range()
    draft = BidDraft(
        message=body.proposal_text,
        fee_quote_min=fee_min,
        fee_quote_max=fee_max,
        fee_mode=(body.fee_mode or FeeMode.CUSTOM).value,
        service_scope=body.service_scope,
        estimated_days=body.estimated_days,
        includes_consultation=bool(body.includes_consultation),
    )
    try:
        bid = submit_bid(db, parse_uuid(case_id, "case_id"), attorney, draft)
        return {"ok": True, "bid": _build_bid_response(bid)}
    except MarketplaceError as exc:
        raise to_http_exception(exc)
    except SQLAlchemyError:
        raise _internal_error("POST /api/marketplace/cases/{case_id}/bids")


@router.post("/api/cases/{case_id}/respond")
def respond_case(
    case_id: str,
    body: RespondRequest,
    db: DbSession,
    attorney: AttorneyDep,
):
    """Message-only response; opens (or reopens) the attorney's bid."""
    try:
        bid = respond_to_case(db, parse_uuid(case_id, "case_id"), attorney, body.message)
        return {"ok": True, "bid_id": str(bid.id)}
    except MarketplaceError as exc:
        raise to_http_exception(exc)
    except SQLAlchemyError:
        raise _internal_error("POST /api/cases/{case_id}/respond")
