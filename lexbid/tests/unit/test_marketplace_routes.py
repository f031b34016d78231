import unittest
import uuid

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from marketplace_fixtures import (
    make_attorney,
    make_bid,
    make_case,
    make_client,
    memory_session_factory,
)

from api.app.db import get_db
from api.app.main import app
from api.app.marketplace_errors import RequestValidationFailed
from api.app.marketplace_schemas import parse_uuid
from api.app.models import AdminActionLog, Bid, BidStatus, RankingConfig, Role
from api.app.security import sign_actor_token


def auth(user_id, role, profile_id=None):
    return {"Authorization": f"Bearer {sign_actor_token(user_id, role, profile_id)}"}


class RoutesTestBase(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = memory_session_factory()

        def override_get_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.http = TestClient(app)

        with self.Session() as db:
            client = make_client(db)
            other_client = make_client(db)
            lawyer1 = make_attorney(db, specialties=["IMMIGRATION"], states=["CA"])
            lawyer2 = make_attorney(db)
            case = make_case(db, client)
            b1 = make_bid(db, case, lawyer1)
            b2 = make_bid(db, case, lawyer2)
            db.commit()
            self.case_id = str(case.id)
            self.b1_id = str(b1.id)
            self.b2_id = str(b2.id)
            self.client_headers = auth(client.user_id, Role.CLIENT, client.id)
            self.other_client_headers = auth(
                other_client.user_id, Role.CLIENT, other_client.id
            )
            self.lawyer1_headers = auth(lawyer1.user_id, Role.ATTORNEY, lawyer1.id)
            self.lawyer2_headers = auth(lawyer2.user_id, Role.ATTORNEY, lawyer2.id)
        self.admin_id = uuid.uuid4()
        self.admin_headers = auth(self.admin_id, Role.ADMIN)

    def tearDown(self):
        app.dependency_overrides.pop(get_db, None)
        self.engine.dispose()

    def select(self, bid_id, headers=None):
        return self.http.post(
            f"/api/marketplace/cases/{self.case_id}/select-bid",
            json={"bidId": bid_id},
            headers=headers or self.client_headers,
        )


class TestHealthAndHall(RoutesTestBase):
    def test_health_and_chain_id(self):
        response = self.http.get("/health", headers={"x-chain-id": "chain-123"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")
        self.assertEqual(response.headers["X-Chain-ID"], "chain-123")

    def test_anonymous_hall(self):
        response = self.http.get("/api/marketplace/cases/hall")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["items"][0]["quote_count"], 2)
        self.assertFalse(body["items"][0]["has_my_bid"])
        self.assertIsNone(body["ranking_experiment"])

    def test_recommended_hall_for_attorney(self):
        response = self.http.get(
            "/api/marketplace/cases/hall",
            params={"sort": "recommended", "recommendationReasons": "category match"},
            headers=self.lawyer1_headers,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 1)
        self.assertTrue(body["items"][0]["has_my_bid"])
        self.assertIn("category match", body["items"][0]["recommendation_reasons"])
        self.assertEqual(body["ranking_experiment"]["variant"], "A")

    def test_invalid_filter(self):
        response = self.http.get("/api/marketplace/cases/hall", params={"urgency": "soon"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "INVALID_FILTER")

    def test_bad_token_is_treated_as_anonymous(self):
        response = self.http.get(
            "/api/marketplace/cases/hall", headers={"Authorization": "Bearer nope"}
        )
        self.assertEqual(response.status_code, 200)


class TestBidRoutes(RoutesTestBase):
    def test_select_then_withdraw_conflict(self):
        response = self.select(self.b1_id)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["selected_bid_id"], self.b1_id)
        self.assertEqual(body["case"]["status"], "MATCHING")
        self.assertEqual(body["rejected_bid_ids"], [self.b2_id])
        self.assertIsNotNone(body["conversation_id"])

        response = self.http.post(
            f"/api/marketplace/bids/{self.b1_id}/withdraw", headers=self.lawyer1_headers
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["code"], "BID_ACCEPTED")

    def test_select_requires_owner_and_client_role(self):
        response = self.select(self.b1_id, headers=self.other_client_headers)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"]["code"], "FORBIDDEN_CASE_OWNER")

        response = self.select(self.b1_id, headers=self.lawyer1_headers)
        self.assertEqual(response.status_code, 403)

        response = self.http.post(
            f"/api/marketplace/cases/{self.case_id}/select-bid", json={"bidId": self.b1_id}
        )
        self.assertIn(response.status_code, (401, 403))

    def test_invalid_ids(self):
        response = self.select("not-a-uuid")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "INVALID_ID")

        response = self.select(str(uuid.uuid4()))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"]["code"], "BID_NOT_FOUND")

    def test_withdraw_twice(self):
        url = f"/api/marketplace/bids/{self.b2_id}/withdraw"
        first = self.http.post(url, headers=self.lawyer2_headers)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["bid"]["status"], "WITHDRAWN")
        self.assertEqual(first.json()["bid"]["version"], 2)

        second = self.http.post(url, headers=self.lawyer2_headers)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["detail"]["code"], "ALREADY_WITHDRAWN")

    def test_submit_and_respond(self):
        response = self.http.post(
            f"/api/marketplace/cases/{self.case_id}/bids",
            json={
                "proposalText": "Flat fee covering the full renewal filing.",
                "priceMin": 400,
                "priceMax": 650,
                "feeMode": "STAGED",
                "estimatedDays": 14,
            },
            headers=self.lawyer2_headers,
        )
        self.assertEqual(response.status_code, 200)
        bid = response.json()["bid"]
        self.assertEqual(bid["id"], self.b2_id)
        self.assertEqual(bid["version"], 2)
        self.assertEqual((bid["fee_quote_min"], bid["fee_quote_max"]), (400.0, 650.0))
        self.assertEqual(bid["fee_mode"], "STAGED")

        missing_price = self.http.post(
            f"/api/marketplace/cases/{self.case_id}/bids",
            json={"proposalText": "I can help with this matter."},
            headers=self.lawyer2_headers,
        )
        self.assertEqual(missing_price.status_code, 422)

        respond = self.http.post(
            f"/api/cases/{self.case_id}/respond",
            json={"message": "Happy to discuss by phone."},
            headers=self.lawyer1_headers,
        )
        self.assertEqual(respond.status_code, 200)
        self.assertEqual(respond.json()["bid_id"], self.b1_id)


class TestAdminRoutes(RoutesTestBase):
    def test_requires_admin(self):
        response = self.http.get(
            "/api/marketplace/admin/recommendation-config", headers=self.client_headers
        )
        self.assertEqual(response.status_code, 403)

    def test_update_recommendation_config(self):
        response = self.http.get(
            "/api/marketplace/admin/recommendation-config", headers=self.admin_headers
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["config"]["weight_unquoted_a"], 140)

        response = self.http.patch(
            "/api/marketplace/admin/recommendation-config",
            json={
                "abEnabled": True,
                "abRolloutPercent": 20,
                "categoryBlacklist": "CRIMINAL_DEFENSE, TAX",
            },
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        config = response.json()["config"]
        self.assertTrue(config["ab_enabled"])
        self.assertEqual(config["category_blacklist"], ["CRIMINAL_DEFENSE", "TAX"])

        with self.Session() as db:
            row = db.execute(select(RankingConfig)).scalar_one()
            self.assertEqual(row.ab_rollout_percent, 20)
            log = db.execute(select(AdminActionLog)).scalar_one()
            self.assertEqual(log.action, "RECOMMENDATION_CONFIG_UPDATE")
            self.assertEqual(log.admin_user_id, self.admin_id)
            self.assertEqual(log.details["diff"]["ab_rollout_percent"], {"old": 50, "new": 20})

    def test_config_bounds_rejected(self):
        response = self.http.patch(
            "/api/marketplace/admin/recommendation-config",
            json={"abRolloutPercent": 150},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 422)

    def test_negative_factor_weight_rejected(self):
        for field in ("weightUnquotedA", "weightCategoryMatchB", "weightUrgentA"):
            response = self.http.patch(
                "/api/marketplace/admin/recommendation-config",
                json={field: -10},
                headers=self.admin_headers,
            )
            self.assertEqual(response.status_code, 422, field)

        with self.Session() as db:
            self.assertEqual(
                db.execute(select(func.count(AdminActionLog.id))).scalar_one(), 0
            )

        response = self.http.patch(
            "/api/marketplace/admin/recommendation-config",
            json={"weightUnquotedA": 0},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["config"]["weight_unquoted_a"], 0)

    def test_ops_settings_and_queue(self):
        response = self.http.patch(
            "/api/marketplace/admin/ops-priority-settings",
            json={"urgentWeight": 40},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["settings"]["urgent_weight"], 40)

        response = self.http.get(
            "/api/marketplace/admin/cases",
            params={"sort": "ops_priority", "conversionStage": "QUOTED"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["pagination"]["total"], 1)
        self.assertEqual(body["items"][0]["conversion_stage"], "QUOTED")
        self.assertEqual(body["bottleneck_summary"]["quoted_not_selected"], 1)

        bad = self.http.get(
            "/api/marketplace/admin/cases",
            params={"sort": "random"},
            headers=self.admin_headers,
        )
        self.assertEqual(bad.status_code, 400)

    def test_selection_consistency(self):
        self.select(self.b1_id)
        response = self.http.get(
            "/api/marketplace/admin/selection-consistency", headers=self.admin_headers
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True, "count": 0, "items": []})

        with self.Session() as db:
            bid = db.get(Bid, uuid.UUID(self.b1_id))
            bid.status = BidStatus.PENDING.value
            db.commit()
        response = self.http.get(
            "/api/marketplace/admin/selection-consistency", headers=self.admin_headers
        )
        self.assertEqual(response.json()["items"][0]["kind"], "selected_bid_not_accepted")


class TestParseUuid(unittest.TestCase):
    def test_valid_blank_and_malformed(self):
        value = uuid.uuid4()
        self.assertEqual(parse_uuid(str(value), "case_id"), value)
        self.assertIsNone(parse_uuid("", "case_id"))
        self.assertIsNone(parse_uuid(None, "case_id"))
        with self.assertRaises(RequestValidationFailed) as ctx:
            parse_uuid("12-34", "bidId")
        self.assertEqual(ctx.exception.code, "INVALID_ID")
        self.assertIn("bidId", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
