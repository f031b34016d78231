"""
Admin marketplace endpoints

- ranking (recommendation) config for the case hall
- ops priority weights
- ops case queue with SLA/bottleneck scoring
- selection consistency scan
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .bid_lifecycle import find_selection_inconsistencies
from .marketplace_schemas import (
    DbSession,
    OpsPrioritySettingsUpdate,
    OpsQueueQuery,
    RankingConfigUpdate,
    parse_flag,
)
from .models import AdminActionLog, OpsPrioritySetting, RankingConfig
from .ops_priority import OpsQueueItem, build_ops_queue, get_or_create_ops_settings
from .ranking_config import clear_ranking_config_cache, get_or_create_ranking_config
from .security import Actor, AdminDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/marketplace/admin", tags=["admin-marketplace"])

_HIDDEN_COLUMNS = {"id"}


def _row_as_dict(row: Any) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for column in row.__table__.columns:
        if column.key in _HIDDEN_COLUMNS:
            continue
        value = getattr(row, column.key)
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        data[column.key] = value
    return data


def _apply_update(row: Any, changes: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Apply ``changes`` to ``row`` and return ``{field: {old, new}}`` for the
    fields whose value actually changed."""
    diff: dict[str, dict[str, Any]] = {}
    for key, new_value in changes.items():
        old_value = getattr(row, key)
        if old_value != new_value:
            diff[key] = {"old": old_value, "new": new_value}
            setattr(row, key, new_value)
    return diff


def _log_admin_action(
    db: Session,
    admin: Actor,
    entity_id: str,
    action: str,
    details: dict[str, Any],
) -> None:
    db.add(
        AdminActionLog(
            admin_user_id=admin.user_id,
            entity_type="CASE",
            entity_id=entity_id,
            action=action,
            details=details,
        )
    )


# ---------------------------------------------------------------------------
# Ranking config
# ---------------------------------------------------------------------------


@router.get("/recommendation-config")
def get_recommendation_config(db: DbSession, admin: AdminDep):
    try:
        config = get_or_create_ranking_config(db)
        db.commit()
        return {"ok": True, "config": _row_as_dict(config)}
    except SQLAlchemyError:
        db.rollback()
        logger.exception("GET /api/marketplace/admin/recommendation-config failed")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/recommendation-config")
def update_recommendation_config(
    body: RankingConfigUpdate, db: DbSession, admin: AdminDep
):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    try:
        config: RankingConfig = get_or_create_ranking_config(db)
        diff = _apply_update(config, changes)
        config.updated_by = admin.user_id
        if diff:
            _log_admin_action(
                db,
                admin,
                config.key,
                "RECOMMENDATION_CONFIG_UPDATE",
                {"key": config.key, "diff": diff},
            )
        db.commit()
        db.refresh(config)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("PATCH /api/marketplace/admin/recommendation-config failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    clear_ranking_config_cache()
    logger.info(
        f"Admin {admin.user_id} updated ranking config '{config.key}': {sorted(diff)}"
    )
    return {"ok": True, "config": _row_as_dict(config)}


# ---------------------------------------------------------------------------
# Ops priority weights
# ---------------------------------------------------------------------------


@router.get("/ops-priority-settings")
def get_ops_priority_settings(db: DbSession, admin: AdminDep):
    try:
        row = get_or_create_ops_settings(db)
        db.commit()
        return {"ok": True, "settings": _row_as_dict(row)}
    except SQLAlchemyError:
        db.rollback()
        logger.exception("GET /api/marketplace/admin/ops-priority-settings failed")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/ops-priority-settings")
def update_ops_priority_settings(
    body: OpsPrioritySettingsUpdate, db: DbSession, admin: AdminDep
):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    try:
        row: OpsPrioritySetting = get_or_create_ops_settings(db)
        diff = _apply_update(row, changes)
        if diff:
            _log_admin_action(
                db,
                admin,
                str(row.id),
                "OPS_PRIORITY_SETTINGS_UPDATE",
                {"key": row.key, "diff": diff},
            )
        db.commit()
        db.refresh(row)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("PATCH /api/marketplace/admin/ops-priority-settings failed")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"ok": True, "settings": _row_as_dict(row)}


# ---------------------------------------------------------------------------
# Ops queue
# ---------------------------------------------------------------------------


def _build_queue_item(item: OpsQueueItem) -> dict[str, Any]:
    case = item.case
    signals = item.signals
    priority = item.priority
    return {
        "id": str(case.id),
        "title": case.title,
        "category": case.category,
        "state_code": case.state_code,
        "city": case.city,
        "status": case.status,
        "urgency": case.urgency,
        "quote_deadline": signals.quote_deadline,
        "quote_count": signals.bid_count,
        "conversation_count": signals.conversation_count,
        "selected_bid_id": str(case.selected_bid_id) if case.selected_bid_id else None,
        "budget_min": case.budget_min,
        "budget_max": case.budget_max,
        "fee_mode": case.fee_mode,
        "created_at": signals.created_at,
        "updated_at": case.updated_at,
        "abnormal_reasons": list(priority.abnormal_reasons),
        "high_value": {
            "is_high_value": priority.is_high_value,
            "reasons": list(priority.high_value_reasons),
        },
        "response_sla": {
            "first_bid_at": signals.first_bid_at,
            "first_bid_minutes": priority.first_bid_minutes,
            "first_attorney_message_at": signals.first_attorney_message_at,
            "first_attorney_message_minutes": priority.first_attorney_message_minutes,
            "first_conversation_at": signals.first_conversation_at,
        },
        "conversion_stage": priority.conversion_stage,
        "sla_overdue": {
            "first_bid_24h": priority.first_bid_overdue,
            "first_attorney_message_24h": priority.first_message_overdue,
        },
        "sla_overdue_duration_minutes": priority.sla_overdue_minutes,
        "ops_priority_score": priority.score,
        "ops_priority_reasons": list(priority.reasons),
    }


@router.get("/cases")
def list_ops_cases(
    db: DbSession,
    admin: AdminDep,
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    state_code: Optional[str] = Query(None, alias="stateCode"),
    q: Optional[str] = Query(None),
    abnormal_only: Optional[str] = Query(None, alias="abnormalOnly"),
    abnormal_type: Optional[str] = Query(None, alias="abnormalType"),
    sla_overdue: Optional[str] = Query(None, alias="slaOverdue"),
    sort: str = Query("updated_desc"),
    high_value_only: Optional[str] = Query(None, alias="highValueOnly"),
    conversion_stage: Optional[str] = Query(None, alias="conversionStage"),
    export_all: Optional[str] = Query(None, alias="exportAll"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, alias="pageSize"),
):
    """Admin case queue with ops priority scoring."""
    try:
        query = OpsQueueQuery(
            status=status or None,
            category=category or None,
            state_code=state_code,
            q=q.strip() if q and q.strip() else None,
            abnormal_only=parse_flag(abnormal_only),
            abnormal_type=abnormal_type.strip() if abnormal_type else None,
            sla_overdue=sla_overdue or None,
            sort=sort,
            high_value_only=parse_flag(high_value_only),
            conversion_stage=conversion_stage or None,
            export_all=parse_flag(export_all),
            page=page,
            page_size=min(max(page_size, 1), 100),
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

    try:
        queue = build_ops_queue(db, query)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("GET /api/marketplace/admin/cases failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "ok": True,
        "items": [_build_queue_item(item) for item in queue.items],
        "bottleneck_summary": queue.bottleneck_summary,
        "pagination": {
            "page": queue.page,
            "page_size": queue.page_size,
            "total": queue.total,
            "total_pages": queue.total_pages,
        },
    }


@router.get("/selection-consistency")
def selection_consistency(db: DbSession, admin: AdminDep):
    """Cases whose selected bid pointer and ACCEPTED bid disagree."""
    findings = find_selection_inconsistencies(db)
    return {
        "ok": not findings,
        "count": len(findings),
        "items": [
            {
                "case_id": str(f.case_id),
                "kind": f.kind,
                "selected_bid_id": str(f.selected_bid_id) if f.selected_bid_id else None,
                "bid_id": str(f.bid_id) if f.bid_id else None,
                "bid_status": f.bid_status,
            }
            for f in findings
        ],
    }
