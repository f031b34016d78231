"""
Ranking configuration for the case hall.

The ``ranking_configs`` row is owned by operators and may change at any time;
every feed request takes one immutable ``RankingConfigSnapshot`` of it and
uses only that snapshot for the rest of the request. A missing, disabled or
malformed row degrades to the neutral defaults below; loading never raises.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .models import RankingConfig

logger = logging.getLogger(__name__)

Variant = Literal["A", "B"]

# Fixed contributions that are not operator-tunable
ALREADY_BID_PENALTY = 120
NOT_QUOTEABLE_PENALTY = 200
MEDIUM_URGENCY_BOOST = 20


@dataclass(frozen=True)
class VariantWeights:
    unquoted: float = 140
    quoteable: float = 100
    soon_deadline: float = 70
    urgent: float = 80
    high: float = 50
    category_match: float = 60
    state_match: float = 40
    recency_max_boost: float = 30
    bid_crowding_penalty: float = 8
    bid_crowding_cap: float = 48


DEFAULT_WEIGHTS = VariantWeights()

# (snapshot attribute, row column prefix) for each A/B weight pair
_WEIGHT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("unquoted", "weight_unquoted"),
    ("quoteable", "weight_quoteable"),
    ("soon_deadline", "weight_soon_deadline"),
    ("urgent", "weight_urgent"),
    ("high", "weight_high"),
    ("category_match", "weight_category_match"),
    ("state_match", "weight_state_match"),
    ("recency_max_boost", "weight_recency_max_boost"),
    ("bid_crowding_penalty", "weight_bid_crowding_penalty"),
    ("bid_crowding_cap", "bid_crowding_penalty_cap"),
)


@dataclass(frozen=True)
class RankingConfigSnapshot:
    """Immutable view of one ranking config row (or of the defaults)."""

    exists: bool = False
    enabled: bool = False
    active_variant: Variant = "A"
    ab_enabled: bool = False
    ab_rollout_percent: int = 50
    weights_a: VariantWeights = DEFAULT_WEIGHTS
    weights_b: VariantWeights = DEFAULT_WEIGHTS
    category_whitelist: frozenset[str] = field(default_factory=frozenset)
    category_blacklist: frozenset[str] = field(default_factory=frozenset)
    whitelist_boost: float = 0
    non_whitelist_penalty: float = 0
    blacklist_penalty: float = 0
    attorney_exposure_soft_cap: int = 0
    attorney_exposure_penalty_per_extra: float = 0
    high_risk_penalty: float = 0
    high_risk_rule_hit_threshold: int = 0
    high_risk_report_threshold: int = 0
    high_risk_dispute_threshold: int = 0
    max_per_category_in_top_n: int = 0
    category_exposure_window: int = 10

    @property
    def active(self) -> bool:
        """Config-driven ranking applies only to a present, enabled row."""
        return self.exists and self.enabled

    def weights_for(self, variant: Variant) -> VariantWeights:
        if not self.active:
            return DEFAULT_WEIGHTS
        return self.weights_b if variant == "B" else self.weights_a

    def is_high_risk(self, rule_hits: int, report_count: int, dispute_count: int) -> bool:
        if not self.active:
            return False
        checks = (
            (rule_hits, self.high_risk_rule_hit_threshold),
            (report_count, self.high_risk_report_threshold),
            (dispute_count, self.high_risk_dispute_threshold),
        )
        return any(threshold > 0 and count >= threshold for count, threshold in checks)

    @classmethod
    def defaults(cls) -> "RankingConfigSnapshot":
        return cls()

    @classmethod
    def from_row(cls, row: RankingConfig) -> "RankingConfigSnapshot":
        def variant_weights(suffix: str) -> VariantWeights:
            values: dict[str, float] = {}
            for attr, column in _WEIGHT_COLUMNS:
                raw = getattr(row, f"{column}_{suffix}")
                values[attr] = float(raw) if raw is not None else getattr(DEFAULT_WEIGHTS, attr)
            return VariantWeights(**values)

        return cls(
            exists=True,
            enabled=row.enabled is not False,
            active_variant="B" if row.active_variant == "B" else "A",
            ab_enabled=bool(row.ab_enabled),
            ab_rollout_percent=_int(row.ab_rollout_percent, 50),
            weights_a=variant_weights("a"),
            weights_b=variant_weights("b"),
            category_whitelist=frozenset(_string_list(row.category_whitelist)),
            category_blacklist=frozenset(_string_list(row.category_blacklist)),
            whitelist_boost=float(row.whitelist_boost or 0),
            non_whitelist_penalty=float(row.non_whitelist_penalty or 0),
            blacklist_penalty=float(row.blacklist_penalty or 0),
            attorney_exposure_soft_cap=_int(row.attorney_exposure_soft_cap, 0),
            attorney_exposure_penalty_per_extra=float(
                row.attorney_exposure_penalty_per_extra or 0
            ),
            high_risk_penalty=float(row.high_risk_penalty or 0),
            high_risk_rule_hit_threshold=_int(row.high_risk_rule_hit_threshold, 0),
            high_risk_report_threshold=_int(row.high_risk_report_threshold, 0),
            high_risk_dispute_threshold=_int(row.high_risk_dispute_threshold, 0),
            max_per_category_in_top_n=_int(row.max_per_category_in_top_n, 0),
            category_exposure_window=_int(row.category_exposure_window, 10),
        )


def _int(value: Any, default: int) -> int:
    return int(value) if value is not None else default


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


# ---------------------------------------------------------------------------
# A/B assignment
# ---------------------------------------------------------------------------


def hash_to_bucket(value: str) -> int:
    """Stable bucket in [0, 100) for an identifier.

    ``h = h * 31 + ord(c)`` over the characters, truncated to 32 bits, then
    reduced modulo 100. The same string always lands in the same bucket, on
    every host and across restarts.
    """
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h % 100


def assign_variant(config: RankingConfigSnapshot, attorney_id: Any | None) -> Variant:
    if config.ab_enabled and attorney_id:
        return "B" if hash_to_bucket(str(attorney_id)) < config.ab_rollout_percent else "A"
    return config.active_variant


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_cache_lock = threading.Lock()
_cache: dict[str, tuple[float, RankingConfigSnapshot]] = {}


def clear_ranking_config_cache() -> None:
    with _cache_lock:
        _cache.clear()


def load_ranking_config(db: Session, key: str | None = None) -> RankingConfigSnapshot:
    """Read the config for ``key`` once; fall back to defaults on any problem."""
    key = key or settings.RANKING_FEED_KEY
    ttl = settings.RANKING_CONFIG_CACHE_TTL_SECONDS
    if ttl > 0:
        with _cache_lock:
            cached = _cache.get(key)
        if cached and time.monotonic() - cached[0] < ttl:
            return cached[1]

    snapshot = _read_snapshot(db, key)

    if ttl > 0:
        with _cache_lock:
            _cache[key] = (time.monotonic(), snapshot)
    return snapshot


def _read_snapshot(db: Session, key: str) -> RankingConfigSnapshot:
    try:
        row = db.execute(
            select(RankingConfig).where(RankingConfig.key == key)
        ).scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.warning(f"Ranking config '{key}' unavailable, using defaults: {exc}")
        db.rollback()
        return RankingConfigSnapshot.defaults()

    if row is None:
        return RankingConfigSnapshot.defaults()
    try:
        return RankingConfigSnapshot.from_row(row)
    except (TypeError, ValueError) as exc:
        logger.warning(f"Ranking config '{key}' is malformed, using defaults: {exc}")
        return RankingConfigSnapshot.defaults()


def get_or_create_ranking_config(db: Session, key: str | None = None) -> RankingConfig:
    key = key or settings.RANKING_FEED_KEY
    row = db.execute(
        select(RankingConfig).where(RankingConfig.key == key)
    ).scalar_one_or_none()
    if row is None:
        row = RankingConfig(key=key, category_whitelist=[], category_blacklist=[])
        db.add(row)
        db.flush()
        logger.info(f"Created ranking config '{key}' with default weights")
    return row
