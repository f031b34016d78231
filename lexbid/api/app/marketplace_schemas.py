"""
Marketplace Schemas - request/response models and shared aliases

Request bodies accept the camelCase field names used by the web client
(``bidId``, ``createConversation``...) as well as snake_case.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Literal, Optional

from fastapi import Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from .db import get_db
from .marketplace_errors import RequestValidationFailed
from .models import FeeMode, Urgency

# ---------------------------------------------------------------------------
# Shared type aliases
# ---------------------------------------------------------------------------

DbSession = Annotated[Session, Depends(get_db)]

HallSort = Literal[
    "latest", "quotes_desc", "deadline_asc", "recommended", "budget_desc", "low_competition"
]
DeadlineWindow = Literal["24h", "7d", "overdue"]
OpsSort = Literal["updated_desc", "ops_priority", "sla_overdue_desc"]
ConversionStage = Literal["PUBLISHED", "QUOTED", "SELECTED", "CONTACTED", "ENGAGED"]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_uuid(value: Optional[str], field: str) -> Optional[uuid.UUID]:
    """Parse UUID strings and surface a 400 instead of 500 on bad input."""
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise RequestValidationFailed(
            "INVALID_ID", f"Invalid {field} format. Expected UUID."
        )


def parse_flag(value: Optional[str]) -> bool:
    """Query-string booleans: ``1`` and ``true`` switch a flag on."""
    if value is None:
        return False
    return value.strip().lower() in ("1", "true")


def split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Case hall
# ---------------------------------------------------------------------------


class HallQuery(BaseModel):
    """Validated case hall filters. Built once at the request boundary."""

    model_config = ConfigDict(frozen=True)

    category: Optional[str] = None
    state_code: Optional[str] = None
    zip_prefix: Optional[str] = None
    urgency: Optional[Urgency] = None
    fee_mode: Optional[FeeMode] = None
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    mine_bid_only: bool = False
    deadline_window: Optional[DeadlineWindow] = None
    quoteable_only: bool = False
    recommendation_reasons: tuple[str, ...] = ()
    sort: HallSort = "latest"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=12, ge=1, le=50)
    export_all: bool = False

    @field_validator("state_code")
    @classmethod
    def upper_state(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else None

    @field_validator("category", "zip_prefix")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class RiskSignalsResponse(BaseModel):
    rule_hits: int
    report_count: int
    dispute_count: int
    high_risk: bool


class HallItemResponse(BaseModel):
    id: str
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
    risk_signals: RiskSignalsResponse
    recommendation_reasons: list[str]
    risk_hints: list[str]
    score: Optional[float] = None
    description_masked: str
    created_at: datetime


class PaginationResponse(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class RankingExperimentResponse(BaseModel):
    config_enabled: bool
    variant: Literal["A", "B"]
    ab_enabled: bool


class HallResponse(BaseModel):
    items: list[HallItemResponse]
    count: int
    sort: str
    pagination: PaginationResponse
    ranking_experiment: Optional[RankingExperimentResponse] = None


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------


class SelectBidRequest(CamelModel):
    bid_id: str = Field(min_length=1)
    create_conversation: bool = True

    @field_validator("bid_id")
    @classmethod
    def strip_bid_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("bidId is required")
        return v


class BidSubmitRequest(CamelModel):
    proposal_text: str = Field(min_length=10, max_length=3000)
    price_amount: Optional[float] = Field(default=None, gt=0)
    price_min: Optional[float] = Field(default=None, gt=0)
    price_max: Optional[float] = Field(default=None, gt=0)
    fee_mode: Optional[FeeMode] = None
    service_scope: Optional[str] = Field(default=None, max_length=2000)
    estimated_days: Optional[int] = Field(default=None, gt=0, le=365)
    includes_consultation: Optional[bool] = None

    @field_validator("proposal_text", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def require_price(self) -> "BidSubmitRequest":
        if self.price_amount is None and self.price_min is None and self.price_max is None:
            raise ValueError("At least one price field is required.")
        return self

    def fee_range(self) -> tuple[Optional[float], Optional[float]]:
        low = self.price_amount if self.price_amount is not None else self.price_min
        if self.price_amount is not None:
            high = self.price_amount
        elif self.price_max is not None:
            high = self.price_max
        else:
            high = self.price_min
        return low, high


class RespondRequest(CamelModel):
    message: str = Field(min_length=10, max_length=1200)

    @field_validator("message", mode="before")
    @classmethod
    def strip_message(cls, v):
        return v.strip() if isinstance(v, str) else v


class BidResponse(BaseModel):
    id: str
    case_id: str
    attorney_profile_id: str
    status: str
    version: int
    message: str
    fee_quote_min: Optional[float]
    fee_quote_max: Optional[float]
    fee_mode: str
    service_scope: Optional[str]
    estimated_days: Optional[int]
    includes_consultation: bool
    updated_at: Optional[datetime]


class CaseSummaryResponse(BaseModel):
    id: str
    status: str
    updated_at: Optional[datetime]


class SelectBidResponse(BaseModel):
    case: CaseSummaryResponse
    selected_bid_id: str
    attorney_profile_id: str
    conversation_id: Optional[str]
    engagement_confirmation_id: str
    rejected_bid_ids: list[str]
    previous_selected_bid_id: Optional[str]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

# Positive factors; penalties have their own fields below
Weight = Annotated[int, Field(ge=0, le=500)]


class RankingConfigUpdate(CamelModel):
    """Partial update; omitted fields keep their stored value."""

    enabled: Optional[bool] = None
    active_variant: Optional[Literal["A", "B"]] = None
    ab_enabled: Optional[bool] = None
    ab_rollout_percent: Optional[int] = Field(default=None, ge=0, le=100)

    weight_unquoted_a: Optional[Weight] = None
    weight_unquoted_b: Optional[Weight] = None
    weight_quoteable_a: Optional[Weight] = None
    weight_quoteable_b: Optional[Weight] = None
    weight_soon_deadline_a: Optional[Weight] = None
    weight_soon_deadline_b: Optional[Weight] = None
    weight_urgent_a: Optional[Weight] = None
    weight_urgent_b: Optional[Weight] = None
    weight_high_a: Optional[Weight] = None
    weight_high_b: Optional[Weight] = None
    weight_category_match_a: Optional[Weight] = None
    weight_category_match_b: Optional[Weight] = None
    weight_state_match_a: Optional[Weight] = None
    weight_state_match_b: Optional[Weight] = None
    weight_recency_max_boost_a: Optional[int] = Field(default=None, ge=0, le=500)
    weight_recency_max_boost_b: Optional[int] = Field(default=None, ge=0, le=500)
    weight_bid_crowding_penalty_a: Optional[int] = Field(default=None, ge=0, le=100)
    weight_bid_crowding_penalty_b: Optional[int] = Field(default=None, ge=0, le=100)
    bid_crowding_penalty_cap_a: Optional[int] = Field(default=None, ge=0, le=500)
    bid_crowding_penalty_cap_b: Optional[int] = Field(default=None, ge=0, le=500)

    category_whitelist: Optional[list[str]] = Field(default=None, max_length=50)
    category_blacklist: Optional[list[str]] = Field(default=None, max_length=50)
    non_whitelist_penalty: Optional[int] = Field(default=None, ge=0, le=500)
    blacklist_penalty: Optional[int] = Field(default=None, ge=0, le=1000)
    whitelist_boost: Optional[int] = Field(default=None, ge=0, le=500)

    attorney_exposure_soft_cap: Optional[int] = Field(default=None, ge=0, le=200)
    attorney_exposure_penalty_per_extra: Optional[int] = Field(
        default=None, ge=0, le=200
    )

    high_risk_penalty: Optional[int] = Field(default=None, ge=0, le=1000)
    high_risk_rule_hit_threshold: Optional[int] = Field(default=None, ge=0, le=20)
    high_risk_report_threshold: Optional[int] = Field(default=None, ge=0, le=20)
    high_risk_dispute_threshold: Optional[int] = Field(default=None, ge=0, le=20)

    max_per_category_in_top_n: Optional[int] = Field(default=None, ge=0, le=50)
    category_exposure_window: Optional[int] = Field(default=None, ge=1, le=100)

    @field_validator("category_whitelist", "category_blacklist", mode="before")
    @classmethod
    def coerce_category_list(cls, v):
        # The admin form posts a comma-separated string
        if isinstance(v, str):
            v = split_csv(v)
        if isinstance(v, list):
            cleaned = [str(item).strip() for item in v if str(item).strip()]
            for item in cleaned:
                if len(item) > 40:
                    raise ValueError("category names are limited to 40 characters")
            return cleaned
        return v


class OpsPrioritySettingsUpdate(CamelModel):
    high_value_base_weight: Optional[int] = Field(default=None, ge=0, le=200)
    high_value_reason_weight: Optional[int] = Field(default=None, ge=0, le=50)
    first_bid_overdue_published_weight: Optional[int] = Field(
        default=None, ge=0, le=200
    )
    first_message_overdue_weight: Optional[int] = Field(default=None, ge=0, le=200)
    quoted_not_selected_weight: Optional[int] = Field(default=None, ge=0, le=200)
    selected_no_conversation_weight: Optional[int] = Field(
        default=None, ge=0, le=200
    )
    urgent_weight: Optional[int] = Field(default=None, ge=0, le=100)


class OpsQueueQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Optional[str] = None
    category: Optional[str] = None
    state_code: Optional[str] = None
    q: Optional[str] = None
    abnormal_only: bool = False
    abnormal_type: Optional[str] = None
    sla_overdue: Optional[Literal["first_bid_24h", "first_message_24h"]] = None
    sort: OpsSort = "updated_desc"
    high_value_only: bool = False
    conversion_stage: Optional[ConversionStage] = None
    export_all: bool = False
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @field_validator("state_code")
    @classmethod
    def upper_state(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else None

    @property
    def needs_post_filter(self) -> bool:
        return bool(
            self.abnormal_only
            or self.abnormal_type
            or self.high_value_only
            or self.conversion_stage
            or self.sla_overdue
            or self.sort != "updated_desc"
        )
