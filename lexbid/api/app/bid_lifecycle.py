"""
Bid lifecycle: submit/respond, withdraw and select.

Bid states::

    PENDING -> ACCEPTED | REJECTED | WITHDRAWN
    REJECTED | WITHDRAWN -> PENDING        (resubmission)

``Bid.status == ACCEPTED`` is the source of truth for the winning bid;
``Case.selected_bid_id`` is a pointer maintained in the same transaction.
Every mutating transition bumps ``Bid.version`` by exactly one and appends a
matching ``BidVersion`` row.

Each public operation is one unit of work. It locks the case row first, then
the bids it touches, runs all guards before writing, and commits everything
or rolls everything back.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.orm import Session, aliased

from .engagements import (
    cancel_pending_engagement,
    ensure_conversation,
    ensure_engagement_confirmation,
    get_conversation_for_bid,
    get_engagement_for_bid,
)
from .marketplace_errors import ConflictError, ForbiddenError, NotFoundError
from .models import (
    Bid,
    BidStatus,
    BidVersion,
    Case,
    CaseStatus,
    CaseStatusLog,
    EngagementStatus,
    FeeMode,
    TERMINAL_CASE_STATUSES,
    as_utc,
)
from .security import Actor

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit on success; roll back on any exception and re-raise."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _lock_case(db: Session, case_id: uuid.UUID) -> Optional[Case]:
    return db.execute(
        select(Case)
        .where(Case.id == case_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _version_row(bid: Bid) -> dict:
    return {
        "id": uuid.uuid4(),
        "bid_id": bid.id,
        "version": bid.version,
        "message": bid.message,
        "fee_quote_min": bid.fee_quote_min,
        "fee_quote_max": bid.fee_quote_max,
        "fee_mode": bid.fee_mode,
        "service_scope": bid.service_scope,
        "estimated_days": bid.estimated_days,
        "includes_consultation": bid.includes_consultation,
        "status": bid.status,
    }


def _append_version(db: Session, bid: Bid, now: datetime) -> BidVersion:
    version = BidVersion(**_version_row(bid), created_at=now)
    db.add(version)
    return version


# ---------------------------------------------------------------------------
# Submit / respond
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BidDraft:
    """What an attorney sends. ``priced`` is False for message-only responses,
    which leave any existing quote fields untouched."""

    message: str
    priced: bool = True
    fee_quote_min: Optional[float] = None
    fee_quote_max: Optional[float] = None
    fee_mode: str = FeeMode.CUSTOM.value
    service_scope: Optional[str] = None
    estimated_days: Optional[int] = None
    includes_consultation: bool = False


def _apply_draft(bid: Bid, draft: BidDraft) -> None:
    bid.message = draft.message
    if draft.priced:
        bid.fee_quote_min = draft.fee_quote_min
        bid.fee_quote_max = draft.fee_quote_max
        bid.fee_mode = draft.fee_mode
        bid.service_scope = draft.service_scope
        bid.estimated_days = draft.estimated_days
        bid.includes_consultation = draft.includes_consultation


def _create_bid(
    db: Session,
    case: Case,
    attorney_profile_id: uuid.UUID,
    draft: BidDraft,
    now: datetime,
) -> Bid:
    bid = Bid(
        case_id=case.id,
        attorney_profile_id=attorney_profile_id,
        status=BidStatus.PENDING.value,
        version=1,
        fee_mode=FeeMode.CUSTOM.value,
        includes_consultation=False,
        contacted_at=now,
        created_at=now,
        updated_at=now,
    )
    _apply_draft(bid, draft)
    db.add(bid)
    db.flush()
    _append_version(db, bid, now)
    logger.info(f"Attorney {attorney_profile_id} bid {bid.id} on case {case.id}")
    return bid


def _reopen_bid(db: Session, bid: Bid, draft: BidDraft, now: datetime) -> Bid:
    previous_status = bid.status
    _apply_draft(bid, draft)
    bid.status = BidStatus.PENDING.value
    bid.version = bid.version + 1
    bid.contacted_at = now
    bid.updated_at = now
    db.flush()
    _append_version(db, bid, now)
    logger.info(
        f"Bid {bid.id} resubmitted ({previous_status} -> PENDING, v{bid.version})"
    )
    return bid


def ensure_bid(
    db: Session,
    case_id: uuid.UUID,
    attorney_profile_id: uuid.UUID,
    draft: BidDraft,
    now: Optional[datetime] = None,
) -> Bid:
    """Create the attorney's bid on a case or reopen the existing one."""
    now = _now(now)
    with unit_of_work(db):
        case = _lock_case(db, case_id)
        if case is None:
            raise NotFoundError("CASE_NOT_FOUND", "Case not found.")
        if case.status in TERMINAL_CASE_STATUSES:
            raise ConflictError("CASE_NOT_OPEN", "Case is not accepting bids.")
        deadline = as_utc(case.quote_deadline)
        if deadline is not None and deadline < now:
            raise ConflictError("QUOTE_DEADLINE_PASSED", "Quote deadline has passed.")

        existing = db.execute(
            select(Bid)
            .where(
                Bid.case_id == case_id,
                Bid.attorney_profile_id == attorney_profile_id,
            )
            .with_for_update()
        ).scalar_one_or_none()

        if existing is None:
            bid = _create_bid(db, case, attorney_profile_id, draft, now)
        else:
            if (
                existing.status == BidStatus.ACCEPTED.value
                or case.selected_bid_id == existing.id
            ):
                raise ConflictError(
                    "BID_ACCEPTED", "A selected bid cannot be resubmitted."
                )
            bid = _reopen_bid(db, existing, draft, now)
    return bid


def submit_bid(
    db: Session,
    case_id: uuid.UUID,
    actor: Actor,
    draft: BidDraft,
    now: Optional[datetime] = None,
) -> Bid:
    if actor.attorney_profile_id is None:
        raise ForbiddenError("ATTORNEY_ONLY", "Only attorneys can submit bids.")
    return ensure_bid(db, case_id, actor.attorney_profile_id, draft, now)


def respond_to_case(
    db: Session,
    case_id: uuid.UUID,
    actor: Actor,
    message: str,
    now: Optional[datetime] = None,
) -> Bid:
    if actor.attorney_profile_id is None:
        raise ForbiddenError(
            "ATTORNEY_ONLY", "Only attorneys can respond to cases."
        )
    draft = BidDraft(message=message, priced=False)
    return ensure_bid(db, case_id, actor.attorney_profile_id, draft, now)


# ---------------------------------------------------------------------------
# Withdraw
# ---------------------------------------------------------------------------


def withdraw_bid(
    db: Session,
    bid_id: uuid.UUID,
    actor: Actor,
    now: Optional[datetime] = None,
) -> Bid:
    now = _now(now)
    with unit_of_work(db):
        case_id = db.execute(
            select(Bid.case_id).where(Bid.id == bid_id)
        ).scalar_one_or_none()
        if case_id is None:
            raise NotFoundError("BID_NOT_FOUND", "Bid not found.")

        case = _lock_case(db, case_id)
        if case is None:
            raise NotFoundError("CASE_NOT_FOUND", "Case not found.")
        bid = db.execute(
            select(Bid)
            .where(Bid.id == bid_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

        if bid.attorney_profile_id != actor.attorney_profile_id:
            raise ForbiddenError("FORBIDDEN_BID_OWNER", "You do not own this bid.")
        if bid.status == BidStatus.WITHDRAWN.value:
            raise ConflictError("ALREADY_WITHDRAWN", "Bid already withdrawn.")
        if bid.status == BidStatus.ACCEPTED.value:
            raise ConflictError(
                "BID_ACCEPTED", "Accepted/selected bid cannot be withdrawn."
            )
        if case.selected_bid_id == bid.id:
            raise ConflictError(
                "BID_SELECTED", "Accepted/selected bid cannot be withdrawn."
            )

        bid.status = BidStatus.WITHDRAWN.value
        bid.version = bid.version + 1
        bid.updated_at = now
        db.flush()
        _append_version(db, bid, now)
        db.add(
            CaseStatusLog(
                case_id=case.id,
                from_status=case.status,
                to_status=case.status,
                operator_id=actor.user_id,
                reason=f"Attorney withdrew bid {bid.id}",
                created_at=now,
            )
        )
    logger.info(f"Bid {bid.id} withdrawn by attorney {actor.attorney_profile_id}")
    return bid


# ---------------------------------------------------------------------------
# Select
# ---------------------------------------------------------------------------


@dataclass
class SelectionResult:
    case: Case
    selected_bid_id: uuid.UUID
    attorney_profile_id: uuid.UUID
    conversation_id: Optional[uuid.UUID]
    engagement_confirmation_id: uuid.UUID
    rejected_bid_ids: list[uuid.UUID] = field(default_factory=list)
    previous_selected_bid_id: Optional[uuid.UUID] = None


def _reject_other_bids(
    db: Session, case_id: uuid.UUID, keep_bid_id: uuid.UUID, now: datetime
) -> list[uuid.UUID]:
    """Reject every other live bid of the case with one batch UPDATE.

    Previously ACCEPTED bids are included, so a re-selection cannot leave two
    winners behind.
    """
    live = (BidStatus.PENDING.value, BidStatus.ACCEPTED.value)
    ids = list(
        db.execute(
            select(Bid.id)
            .where(Bid.case_id == case_id, Bid.id != keep_bid_id, Bid.status.in_(live))
            .with_for_update()
        ).scalars()
    )
    if not ids:
        return []

    db.execute(
        update(Bid)
        .where(Bid.id.in_(ids), Bid.status.in_(live))
        .values(
            status=BidStatus.REJECTED.value,
            version=Bid.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    rejected = db.execute(
        select(Bid)
        .where(Bid.id.in_(ids), Bid.status == BidStatus.REJECTED.value)
        .execution_options(populate_existing=True)
    ).scalars().all()
    db.execute(
        insert(BidVersion),
        [dict(_version_row(bid), created_at=now) for bid in rejected],
    )
    return [bid.id for bid in rejected]


def _accept_bid(db: Session, bid: Bid, now: datetime) -> bool:
    """Move the target to ACCEPTED. Returns False when it already was."""
    if bid.status == BidStatus.ACCEPTED.value:
        return False
    result = db.execute(
        update(Bid)
        .where(Bid.id == bid.id, Bid.status != BidStatus.WITHDRAWN.value)
        .values(
            status=BidStatus.ACCEPTED.value,
            version=Bid.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConflictError(
            "BID_WITHDRAWN_CONCURRENTLY", "Bid was withdrawn while being selected."
        )
    db.refresh(bid)
    _append_version(db, bid, now)
    return True


def select_bid(
    db: Session,
    case_id: uuid.UUID,
    bid_id: uuid.UUID,
    actor: Actor,
    create_conversation: bool = True,
    now: Optional[datetime] = None,
) -> SelectionResult:
    now = _now(now)
    with unit_of_work(db):
        # 1. case
        case = _lock_case(db, case_id)
        if case is None:
            raise NotFoundError("CASE_NOT_FOUND", "Case not found.")
        if actor.client_profile_id is None or case.client_profile_id != actor.client_profile_id:
            raise ForbiddenError("FORBIDDEN_CASE_OWNER", "You do not own this case.")
        if case.status in TERMINAL_CASE_STATUSES:
            raise ConflictError(
                "CASE_NOT_SELECTABLE", "Case cannot accept bid selection now."
            )

        # 2. target bid
        target = db.execute(
            select(Bid)
            .where(
                Bid.id == bid_id,
                Bid.case_id == case_id,
                Bid.status != BidStatus.WITHDRAWN.value,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if target is None:
            raise NotFoundError("BID_NOT_FOUND", "Bid not found for this case.")

        previous_bid_id = case.selected_bid_id
        if previous_bid_id is not None:
            current_engagement = get_engagement_for_bid(db, previous_bid_id)
            if (
                current_engagement is not None
                and current_engagement.status == EngagementStatus.ACTIVE.value
            ):
                raise ConflictError(
                    "ENGAGEMENT_ACTIVE",
                    "The selected attorney's engagement is already active.",
                )
        from_status = case.status

        # 3-4. bids
        rejected_ids = _reject_other_bids(db, case_id, target.id, now)
        _accept_bid(db, target, now)

        # 5. case pointer
        case.status = CaseStatus.MATCHING.value
        case.selected_bid_id = target.id
        case.updated_at = now

        # 6. conversation
        if create_conversation:
            conversation = ensure_conversation(db, case, target, case.client_profile_id)
        else:
            conversation = get_conversation_for_bid(db, target.id)
        conversation_id = conversation.id if conversation is not None else None

        # 7. engagement
        if previous_bid_id is not None and previous_bid_id != target.id:
            cancel_pending_engagement(db, previous_bid_id, now)
        engagement = ensure_engagement_confirmation(
            db, case, target, case.client_profile_id, conversation_id, now
        )

        # 8. timeline
        if previous_bid_id is None:
            reason = f"Selected bid {target.id}"
        elif previous_bid_id == target.id:
            reason = f"Re-selected bid {target.id}"
        else:
            reason = f"Changed selected bid to {target.id}"
        db.add(
            CaseStatusLog(
                case_id=case.id,
                from_status=from_status,
                to_status=CaseStatus.MATCHING.value,
                operator_id=actor.user_id,
                reason=reason,
                created_at=now,
            )
        )
        db.flush()

        result = SelectionResult(
            case=case,
            selected_bid_id=target.id,
            attorney_profile_id=target.attorney_profile_id,
            conversation_id=conversation_id,
            engagement_confirmation_id=engagement.id,
            rejected_bid_ids=rejected_ids,
            previous_selected_bid_id=previous_bid_id,
        )
    logger.info(
        f"Case {case_id}: {reason}; rejected {len(rejected_ids)} other bid(s)"
    )
    return result


# ---------------------------------------------------------------------------
# Consistency scan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectionInconsistency:
    case_id: uuid.UUID
    kind: str
    selected_bid_id: Optional[uuid.UUID]
    bid_id: Optional[uuid.UUID]
    bid_status: Optional[str] = None


def find_selection_inconsistencies(db: Session) -> list[SelectionInconsistency]:
    """Cases where ``selected_bid_id`` and the ACCEPTED bid disagree."""
    findings: list[SelectionInconsistency] = []

    pointed = aliased(Bid)
    rows = db.execute(
        select(Case.id, Case.selected_bid_id, pointed.id, pointed.case_id, pointed.status)
        .outerjoin(pointed, pointed.id == Case.selected_bid_id)
        .where(
            Case.selected_bid_id.is_not(None),
            or_(
                pointed.id.is_(None),
                pointed.case_id != Case.id,
                pointed.status != BidStatus.ACCEPTED.value,
            ),
        )
    ).all()
    for case_id, selected_id, bid_id, bid_case_id, bid_status in rows:
        if bid_id is None or bid_case_id != case_id:
            kind = "selected_bid_missing"
        else:
            kind = "selected_bid_not_accepted"
        findings.append(
            SelectionInconsistency(
                case_id=case_id,
                kind=kind,
                selected_bid_id=selected_id,
                bid_id=bid_id,
                bid_status=bid_status,
            )
        )

    rows = db.execute(
        select(Case.id, Case.selected_bid_id, Bid.id)
        .join(Bid, Bid.case_id == Case.id)
        .where(
            Bid.status == BidStatus.ACCEPTED.value,
            or_(
                Case.selected_bid_id.is_(None),
                and_(Case.selected_bid_id.is_not(None), Case.selected_bid_id != Bid.id),
            ),
        )
    ).all()
    for case_id, selected_id, bid_id in rows:
        findings.append(
            SelectionInconsistency(
                case_id=case_id,
                kind="accepted_bid_not_selected",
                selected_bid_id=selected_id,
                bid_id=bid_id,
                bid_status=BidStatus.ACCEPTED.value,
            )
        )

    if findings:
        logger.warning(f"Selection consistency scan found {len(findings)} issue(s)")
    return findings
