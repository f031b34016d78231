import os
import sys
import unittest
import uuid
from datetime import datetime, timedelta, timezone


# Provide minimal env for Settings validation during import.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

# Ensure `api` package is importable when running from repo root.
TEST_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if TEST_ROOT not in sys.path:
    sys.path.insert(0, TEST_ROOT)


from api.app.case_scoring import (  # noqa: E402
    AttorneyContext,
    CaseCandidate,
    rank_candidates,
    score_case,
)
from api.app.ranking_config import (  # noqa: E402
    RankingConfigSnapshot,
    VariantWeights,
    assign_variant,
    hash_to_bucket,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
DEFAULTS = RankingConfigSnapshot.defaults()


def candidate(**overrides):
    values = dict(
        id=uuid.uuid4(),
        category="FAMILY",
        state_code="NY",
        zip_code="10001",
        urgency="LOW",
        quote_deadline=None,
        created_at=NOW,
        bid_count=0,
        has_my_bid=False,
    )
    values.update(overrides)
    return CaseCandidate(**values)


def attorney(**overrides):
    values = dict(
        attorney_profile_id=uuid.uuid4(),
        specialties=frozenset({"IMMIGRATION"}),
        service_states=frozenset({"CA"}),
        nearest_zip=None,
        exposure_load=0,
    )
    values.update(overrides)
    return AttorneyContext(**values)


class TestScoreCase(unittest.TestCase):
    def test_anonymous_baseline(self):
        result = score_case(candidate(), None, DEFAULTS, "A", NOW)
        # unquoted 140 + quoteable 100 + full recency 30
        self.assertEqual(result.score, 270)
        self.assertEqual(result.reasons, ())

    def test_immigration_match_reasons(self):
        c = candidate(
            category="IMMIGRATION",
            state_code="CA",
            urgency="URGENT",
            quote_deadline=NOW + timedelta(hours=12),
            created_at=NOW - timedelta(hours=2),
        )
        result = score_case(c, attorney(), DEFAULTS, "A", NOW)
        for reason in ("unquoted", "quoteable", "24h deadline", "category match"):
            self.assertIn(reason, result.reasons)
        self.assertIn("state match", result.reasons)
        self.assertIn("urgency URGENT", result.reasons)
        self.assertEqual(result.score, 140 + 100 + 70 + 80 + 60 + 40 + 28)

    def test_existing_bid_is_penalised(self):
        c = candidate(urgency="MEDIUM", has_my_bid=True)
        result = score_case(c, attorney(), DEFAULTS, "A", NOW)
        self.assertEqual(result.score, -120 + 100 + 20 + 30)
        self.assertNotIn("unquoted", result.reasons)

    def test_passed_deadline_is_not_quoteable(self):
        c = candidate(quote_deadline=NOW - timedelta(hours=1))
        result = score_case(c, attorney(), DEFAULTS, "A", NOW)
        self.assertEqual(result.score, 140 - 200 + 30)
        self.assertNotIn("quoteable", result.reasons)
        self.assertNotIn("24h deadline", result.reasons)

    def test_crowding_penalty_is_capped(self):
        few = score_case(candidate(bid_count=2), None, DEFAULTS, "A", NOW)
        many = score_case(candidate(bid_count=50), None, DEFAULTS, "A", NOW)
        self.assertEqual(few.score, 270 - 16)
        self.assertEqual(many.score, 270 - 48)

    def test_nearby_zip_prefix(self):
        c = candidate(zip_code="95112")
        result = score_case(c, attorney(nearest_zip="95113"), DEFAULTS, "A", NOW)
        self.assertIn("nearby", result.reasons)
        self.assertEqual(result.score, 270 + 20)

    def test_lists_ignored_when_config_missing_or_disabled(self):
        disabled = RankingConfigSnapshot(
            exists=True,
            enabled=False,
            category_blacklist=frozenset({"FAMILY"}),
            blacklist_penalty=500,
            weights_a=VariantWeights(unquoted=0),
        )
        result = score_case(candidate(), attorney(), disabled, "A", NOW)
        self.assertEqual(result.score, 270)
        self.assertNotIn("blacklisted category (demoted)", result.reasons)

    def test_active_config_lists_and_exposure(self):
        config = RankingConfigSnapshot(
            exists=True,
            enabled=True,
            category_whitelist=frozenset({"FAMILY"}),
            whitelist_boost=25,
            non_whitelist_penalty=10,
            category_blacklist=frozenset({"CRIMINAL_DEFENSE"}),
            blacklist_penalty=100,
            attorney_exposure_soft_cap=2,
            attorney_exposure_penalty_per_extra=5,
        )
        busy = attorney(exposure_load=5)
        whitelisted = score_case(candidate(), busy, config, "A", NOW)
        self.assertEqual(whitelisted.score, 270 + 25 - 15)
        self.assertIn("whitelisted category", whitelisted.reasons)

        blacklisted = score_case(
            candidate(category="CRIMINAL_DEFENSE"), busy, config, "A", NOW
        )
        self.assertEqual(blacklisted.score, 270 - 10 - 100 - 15)
        self.assertIn("blacklisted category (demoted)", blacklisted.reasons)

    def test_variant_b_weights(self):
        config = RankingConfigSnapshot(
            exists=True, enabled=True, weights_b=VariantWeights(unquoted=10)
        )
        a = score_case(candidate(), None, config, "A", NOW)
        b = score_case(candidate(), None, config, "B", NOW)
        self.assertEqual(a.score - b.score, 130)

    def test_scoring_is_deterministic(self):
        c = candidate(quote_deadline=NOW + timedelta(hours=3), bid_count=3)
        first = score_case(c, attorney(), DEFAULTS, "A", NOW)
        second = score_case(c, attorney(), DEFAULTS, "A", NOW)
        self.assertEqual(first, second)


class TestRankCandidates(unittest.TestCase):
    def test_ties_break_newest_first(self):
        older = candidate(created_at=NOW - timedelta(hours=50))
        newer = candidate(created_at=NOW - timedelta(hours=40))
        ranked = rank_candidates([older, newer], None, DEFAULTS, "A", NOW)
        self.assertEqual([c.id for c, _ in ranked], [newer.id, older.id])

    def test_higher_score_first(self):
        plain = candidate()
        urgent = candidate(urgency="URGENT", created_at=NOW - timedelta(hours=1))
        ranked = rank_candidates([plain, urgent], None, DEFAULTS, "A", NOW)
        self.assertEqual(ranked[0][0].id, urgent.id)


class TestVariantAssignment(unittest.TestCase):
    def test_hash_to_bucket_contract(self):
        self.assertEqual(hash_to_bucket("abc"), 54)
        self.assertEqual(hash_to_bucket(""), 0)
        value = str(uuid.uuid4())
        self.assertEqual(hash_to_bucket(value), hash_to_bucket(value))
        self.assertTrue(0 <= hash_to_bucket(value) < 100)

    def test_rollout_threshold(self):
        config = RankingConfigSnapshot(
            exists=True, enabled=True, ab_enabled=True, ab_rollout_percent=54
        )
        self.assertEqual(assign_variant(config, "abc"), "A")
        wider = RankingConfigSnapshot(
            exists=True, enabled=True, ab_enabled=True, ab_rollout_percent=55
        )
        self.assertEqual(assign_variant(wider, "abc"), "B")

    def test_stable_across_requests(self):
        config = RankingConfigSnapshot(
            exists=True, enabled=True, ab_enabled=True, ab_rollout_percent=50
        )
        attorney_id = uuid.uuid4()
        seen = {assign_variant(config, attorney_id) for _ in range(20)}
        self.assertEqual(len(seen), 1)

    def test_ab_disabled_uses_active_variant(self):
        config = RankingConfigSnapshot(exists=True, enabled=True, active_variant="B")
        self.assertEqual(assign_variant(config, "abc"), "B")
        self.assertEqual(assign_variant(DEFAULTS, None), "A")

    def test_full_rollout_and_zero_rollout(self):
        attorney_id = uuid.uuid4()
        everyone = RankingConfigSnapshot(
            exists=True, enabled=True, ab_enabled=True, ab_rollout_percent=100
        )
        nobody = RankingConfigSnapshot(
            exists=True, enabled=True, ab_enabled=True, ab_rollout_percent=0
        )
        self.assertEqual(assign_variant(everyone, attorney_id), "B")
        self.assertEqual(assign_variant(nobody, attorney_id), "A")


if __name__ == "__main__":
    unittest.main()
