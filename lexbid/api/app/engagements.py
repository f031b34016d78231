"""
Conversation and engagement confirmation records opened by a bid selection.

Both records are keyed by ``bid_id`` (unique), so each ``ensure_*`` call
either creates the single row for a bid or brings the existing one back to
its starting state. Callers own the transaction; nothing here commits.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import (
    Bid,
    Case,
    Conversation,
    ConversationStatus,
    EngagementConfirmation,
    EngagementStatus,
    FeeMode,
    PENDING_ENGAGEMENT_STATUSES,
)

logger = logging.getLogger(__name__)

SERVICE_SCOPE_PENDING_SUMMARY = (
    "The attorney confirms the final service scope (consultation, documents, "
    "court appearance or full representation) before the engagement takes effect."
)


def get_conversation_for_bid(db: Session, bid_id: uuid.UUID) -> Optional[Conversation]:
    return db.execute(
        select(Conversation).where(Conversation.bid_id == bid_id)
    ).scalar_one_or_none()


def get_engagement_for_bid(
    db: Session, bid_id: uuid.UUID
) -> Optional[EngagementConfirmation]:
    return db.execute(
        select(EngagementConfirmation).where(EngagementConfirmation.bid_id == bid_id)
    ).scalar_one_or_none()


def ensure_conversation(
    db: Session, case: Case, bid: Bid, client_profile_id: uuid.UUID
) -> Conversation:
    conversation = get_conversation_for_bid(db, bid.id)
    if conversation is None:
        conversation = Conversation(
            bid_id=bid.id,
            case_id=case.id,
            client_profile_id=client_profile_id,
            attorney_profile_id=bid.attorney_profile_id,
            status=ConversationStatus.OPEN.value,
        )
        db.add(conversation)
        db.flush()
        logger.info(f"Opened conversation {conversation.id} for bid {bid.id}")
    elif conversation.status != ConversationStatus.OPEN.value:
        conversation.status = ConversationStatus.OPEN.value
        logger.info(f"Reopened conversation {conversation.id} for bid {bid.id}")
    return conversation


def ensure_engagement_confirmation(
    db: Session,
    case: Case,
    bid: Bid,
    client_profile_id: uuid.UUID,
    conversation_id: Optional[uuid.UUID],
    now: datetime,
) -> EngagementConfirmation:
    """Create the bid's confirmation, or reset it to await the attorney.

    Either way the fee range is re-seeded from the bid's current quote.
    """
    engagement = get_engagement_for_bid(db, bid.id)
    if engagement is None:
        engagement = EngagementConfirmation(
            bid_id=bid.id,
            includes_consultation=True,
            service_boundary="CUSTOM",
            created_at=now,
        )
        db.add(engagement)

    engagement.case_id = case.id
    engagement.conversation_id = conversation_id
    engagement.client_profile_id = client_profile_id
    engagement.attorney_profile_id = bid.attorney_profile_id
    engagement.status = EngagementStatus.PENDING_ATTORNEY.value
    engagement.fee_mode = FeeMode.CUSTOM.value
    engagement.fee_amount_min = bid.fee_quote_min
    engagement.fee_amount_max = bid.fee_quote_max
    engagement.non_legal_advice_ack = True
    engagement.no_attorney_client_relationship_ack = True
    engagement.service_scope_summary = SERVICE_SCOPE_PENDING_SUMMARY
    engagement.updated_at = now
    db.flush()
    return engagement


def cancel_pending_engagement(db: Session, bid_id: uuid.UUID, now: datetime) -> bool:
    """Cancel a superseded selection's confirmation if it is still pending."""
    engagement = get_engagement_for_bid(db, bid_id)
    if engagement is None or engagement.status not in PENDING_ENGAGEMENT_STATUSES:
        return False
    engagement.status = EngagementStatus.CANCELLED.value
    engagement.updated_at = now
    logger.info(f"Cancelled engagement confirmation {engagement.id} for bid {bid_id}")
    return True
