import os
import shutil
import tempfile
import threading
import unittest
import uuid
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select

from marketplace_fixtures import (
    NOW,
    attorney_actor,
    client_actor,
    file_session_factory,
    make_attorney,
    make_bid,
    make_case,
    make_client,
    memory_session_factory,
)

from api.app.bid_lifecycle import (
    BidDraft,
    find_selection_inconsistencies,
    respond_to_case,
    select_bid,
    submit_bid,
    withdraw_bid,
)
from api.app.marketplace_errors import ConflictError, ForbiddenError, NotFoundError
from api.app.models import (
    Bid,
    BidStatus,
    BidVersion,
    Case,
    CaseStatus,
    CaseStatusLog,
    Conversation,
    EngagementConfirmation,
    EngagementStatus,
)


class LifecycleTestBase(unittest.TestCase):
    def setUp(self):
        self.engine, Session = memory_session_factory()
        self.db = Session()
        self.client_profile = make_client(self.db)
        self.client = client_actor(self.client_profile)
        self.lawyer1 = make_attorney(self.db)
        self.lawyer2 = make_attorney(self.db)
        self.case = make_case(self.db, self.client_profile)
        self.b1 = make_bid(self.db, self.case, self.lawyer1)
        self.b2 = make_bid(self.db, self.case, self.lawyer2)
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def versions(self, bid_id):
        return list(
            self.db.execute(
                select(BidVersion.version)
                .where(BidVersion.bid_id == bid_id)
                .order_by(BidVersion.version)
            ).scalars()
        )

    def refreshed(self, obj):
        self.db.expire_all()
        return self.db.get(type(obj), obj.id)


class TestSelectBid(LifecycleTestBase):
    def test_select_accepts_target_and_rejects_others(self):
        result = select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)

        case = self.refreshed(self.case)
        b1 = self.refreshed(self.b1)
        b2 = self.refreshed(self.b2)
        self.assertEqual(case.status, CaseStatus.MATCHING.value)
        self.assertEqual(case.selected_bid_id, b1.id)
        self.assertEqual(b1.status, BidStatus.ACCEPTED.value)
        self.assertEqual(b2.status, BidStatus.REJECTED.value)
        self.assertEqual((b1.version, b2.version), (2, 2))
        self.assertEqual(self.versions(b2.id), [2])
        self.assertEqual(result.rejected_bid_ids, [b2.id])
        self.assertIsNone(result.previous_selected_bid_id)

        conversation = self.db.get(Conversation, result.conversation_id)
        self.assertEqual(conversation.bid_id, b1.id)
        engagement = self.db.get(EngagementConfirmation, result.engagement_confirmation_id)
        self.assertEqual(engagement.status, EngagementStatus.PENDING_ATTORNEY.value)
        self.assertEqual(engagement.fee_amount_min, 500.0)

        log = self.db.execute(select(CaseStatusLog)).scalar_one()
        self.assertEqual(log.from_status, CaseStatus.OPEN.value)
        self.assertEqual(log.to_status, CaseStatus.MATCHING.value)
        self.assertEqual(log.reason, f"Selected bid {b1.id}")

    def test_reselect_same_bid_is_idempotent(self):
        first = select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        second = select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)

        self.assertEqual(first.engagement_confirmation_id, second.engagement_confirmation_id)
        self.assertEqual(first.conversation_id, second.conversation_id)
        self.assertEqual(second.rejected_bid_ids, [])
        self.assertEqual(self.refreshed(self.b1).version, 2)
        self.assertEqual(self.refreshed(self.b2).version, 2)
        self.assertEqual(
            self.db.execute(select(func.count(Conversation.id))).scalar_one(), 1
        )
        reasons = self.db.execute(
            select(CaseStatusLog.reason).order_by(CaseStatusLog.created_at)
        ).scalars().all()
        self.assertIn(f"Re-selected bid {self.b1.id}", reasons)

    def test_changing_selection_leaves_one_winner(self):
        select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        # B2 was rejected; the attorney resubmits and the client switches.
        submit_bid(
            self.db,
            self.case.id,
            attorney_actor(self.lawyer2),
            BidDraft(message="Revised offer with a lower fee.", fee_quote_min=300.0, fee_quote_max=300.0),
            now=NOW,
        )
        result = select_bid(self.db, self.case.id, self.b2.id, self.client, now=NOW)

        self.assertEqual(result.previous_selected_bid_id, self.b1.id)
        self.assertEqual(result.rejected_bid_ids, [self.b1.id])
        accepted = self.db.execute(
            select(Bid.id).where(Bid.status == BidStatus.ACCEPTED.value)
        ).scalars().all()
        self.assertEqual(accepted, [self.b2.id])
        self.assertEqual(self.refreshed(self.case).selected_bid_id, self.b2.id)

        old_engagement = self.db.execute(
            select(EngagementConfirmation).where(EngagementConfirmation.bid_id == self.b1.id)
        ).scalar_one()
        self.assertEqual(old_engagement.status, EngagementStatus.CANCELLED.value)
        self.assertEqual(find_selection_inconsistencies(self.db), [])

    def test_active_engagement_blocks_reselection(self):
        result = select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        engagement = self.db.get(EngagementConfirmation, result.engagement_confirmation_id)
        engagement.status = EngagementStatus.ACTIVE.value
        self.db.commit()

        with self.assertRaises(ConflictError) as ctx:
            select_bid(self.db, self.case.id, self.b2.id, self.client, now=NOW)
        self.assertEqual(ctx.exception.code, "ENGAGEMENT_ACTIVE")
        self.assertEqual(self.refreshed(self.case).selected_bid_id, self.b1.id)

    def test_select_guards(self):
        stranger = client_actor(make_client(self.db))
        self.db.commit()

        with self.assertRaises(NotFoundError) as ctx:
            select_bid(self.db, uuid.uuid4(), self.b1.id, self.client)
        self.assertEqual(ctx.exception.code, "CASE_NOT_FOUND")

        with self.assertRaises(ForbiddenError) as ctx:
            select_bid(self.db, self.case.id, self.b1.id, stranger)
        self.assertEqual(ctx.exception.code, "FORBIDDEN_CASE_OWNER")

        with self.assertRaises(NotFoundError) as ctx:
            select_bid(self.db, self.case.id, uuid.uuid4(), self.client)
        self.assertEqual(ctx.exception.code, "BID_NOT_FOUND")

        self.case.status = CaseStatus.CLOSED.value
        self.db.commit()
        with self.assertRaises(ConflictError) as ctx:
            select_bid(self.db, self.case.id, self.b1.id, self.client)
        self.assertEqual(ctx.exception.code, "CASE_NOT_SELECTABLE")

    def test_withdrawn_bid_cannot_be_selected(self):
        withdraw_bid(self.db, self.b1.id, attorney_actor(self.lawyer1), now=NOW)
        with self.assertRaises(NotFoundError):
            select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        self.assertIsNone(self.refreshed(self.case).selected_bid_id)

    def test_without_conversation(self):
        result = select_bid(
            self.db, self.case.id, self.b1.id, self.client, create_conversation=False
        )
        self.assertIsNone(result.conversation_id)
        self.assertEqual(
            self.db.execute(select(func.count(Conversation.id))).scalar_one(), 0
        )

    def test_failure_after_writes_rolls_back_everything(self):
        with patch(
            "api.app.bid_lifecycle.ensure_engagement_confirmation",
            side_effect=RuntimeError("engagement store unavailable"),
        ):
            with self.assertRaises(RuntimeError):
                select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)

        case = self.refreshed(self.case)
        self.assertEqual(case.status, CaseStatus.OPEN.value)
        self.assertIsNone(case.selected_bid_id)
        for bid in (self.b1, self.b2):
            bid = self.refreshed(bid)
            self.assertEqual(bid.status, BidStatus.PENDING.value)
            self.assertEqual(bid.version, 1)
        for model in (Conversation, EngagementConfirmation, BidVersion, CaseStatusLog):
            count = self.db.execute(select(func.count(model.id))).scalar_one()
            self.assertEqual(count, 0, model.__name__)

        # The session is usable again and the same selection now succeeds
        result = select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        self.assertEqual(result.rejected_bid_ids, [self.b2.id])


class TestWithdrawBid(LifecycleTestBase):
    def test_withdraw_blocked_on_selection(self):
        select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)

        with self.assertRaises(ConflictError) as ctx:
            withdraw_bid(self.db, self.b1.id, attorney_actor(self.lawyer1), now=NOW)
        self.assertIn(ctx.exception.code, ("BID_ACCEPTED", "BID_SELECTED"))
        b1 = self.refreshed(self.b1)
        self.assertEqual(b1.status, BidStatus.ACCEPTED.value)
        self.assertEqual(b1.version, 2)

    def test_rewithdraw_is_conflict(self):
        bid = withdraw_bid(self.db, self.b2.id, attorney_actor(self.lawyer2), now=NOW)
        self.assertEqual(bid.status, BidStatus.WITHDRAWN.value)
        self.assertEqual(bid.version, 2)

        with self.assertRaises(ConflictError) as ctx:
            withdraw_bid(self.db, self.b2.id, attorney_actor(self.lawyer2), now=NOW)
        self.assertEqual(ctx.exception.code, "ALREADY_WITHDRAWN")
        self.assertEqual(self.refreshed(self.b2).version, 2)
        self.assertEqual(self.versions(self.b2.id), [2])

        log = self.db.execute(select(CaseStatusLog)).scalar_one()
        self.assertEqual(log.from_status, log.to_status)
        self.assertEqual(log.reason, f"Attorney withdrew bid {self.b2.id}")

    def test_only_owner_can_withdraw(self):
        with self.assertRaises(ForbiddenError) as ctx:
            withdraw_bid(self.db, self.b2.id, attorney_actor(self.lawyer1))
        self.assertEqual(ctx.exception.code, "FORBIDDEN_BID_OWNER")

        with self.assertRaises(NotFoundError) as ctx:
            withdraw_bid(self.db, uuid.uuid4(), attorney_actor(self.lawyer1))
        self.assertEqual(ctx.exception.code, "BID_NOT_FOUND")


class TestSubmitBid(LifecycleTestBase):
    def test_new_bid_starts_at_version_one(self):
        lawyer = make_attorney(self.db)
        self.db.commit()
        bid = submit_bid(
            self.db,
            self.case.id,
            attorney_actor(lawyer),
            BidDraft(message="Flat fee for the whole filing.", fee_quote_min=800.0, fee_quote_max=800.0),
            now=NOW,
        )
        self.assertEqual(bid.version, 1)
        self.assertEqual(bid.status, BidStatus.PENDING.value)
        self.assertEqual(self.versions(bid.id), [1])

    def test_resubmit_after_withdraw_bumps_version(self):
        actor = attorney_actor(self.lawyer2)
        withdraw_bid(self.db, self.b2.id, actor, now=NOW)
        bid = respond_to_case(self.db, self.case.id, actor, "Still available to help.", now=NOW)

        self.assertEqual(bid.id, self.b2.id)
        self.assertEqual(bid.status, BidStatus.PENDING.value)
        self.assertEqual(bid.version, 3)
        # message-only responses keep the quote
        self.assertEqual(bid.fee_quote_min, 500.0)
        self.assertEqual(self.versions(bid.id), [2, 3])

    def test_versions_strictly_increase(self):
        actor = attorney_actor(self.lawyer2)
        seen = [self.refreshed(self.b2).version]
        withdraw_bid(self.db, self.b2.id, actor, now=NOW)
        seen.append(self.refreshed(self.b2).version)
        submit_bid(self.db, self.case.id, actor, BidDraft(message="Back again."), now=NOW)
        seen.append(self.refreshed(self.b2).version)
        select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        seen.append(self.refreshed(self.b2).version)
        self.assertEqual(seen, [1, 2, 3, 4])

    def test_submit_guards(self):
        lawyer = make_attorney(self.db)
        late = make_case(
            self.db, self.client_profile, quote_deadline=NOW - timedelta(hours=1)
        )
        self.db.commit()
        actor = attorney_actor(lawyer)

        with self.assertRaises(ConflictError) as ctx:
            submit_bid(self.db, late.id, actor, BidDraft(message="Too late?"), now=NOW)
        self.assertEqual(ctx.exception.code, "QUOTE_DEADLINE_PASSED")

        with self.assertRaises(ForbiddenError):
            submit_bid(self.db, self.case.id, self.client, BidDraft(message="Hi"), now=NOW)

        select_bid(self.db, self.case.id, self.b1.id, self.client, now=NOW)
        with self.assertRaises(ConflictError) as ctx:
            submit_bid(
                self.db, self.case.id, attorney_actor(self.lawyer1), BidDraft(message="Edit")
            )
        self.assertEqual(ctx.exception.code, "BID_ACCEPTED")

        self.case.status = CaseStatus.CANCELLED.value
        self.db.commit()
        with self.assertRaises(ConflictError) as ctx:
            submit_bid(self.db, self.case.id, actor, BidDraft(message="Hello"), now=NOW)
        self.assertEqual(ctx.exception.code, "CASE_NOT_OPEN")


class TestSelectionConsistency(LifecycleTestBase):
    def test_scan_reports_each_kind(self):
        self.assertEqual(find_selection_inconsistencies(self.db), [])

        # pointer to a bid that is not ACCEPTED
        self.case.selected_bid_id = self.b1.id
        # ACCEPTED bid on a case that points nowhere
        other_case = make_case(self.db, self.client_profile)
        make_bid(self.db, other_case, self.lawyer1, status=BidStatus.ACCEPTED.value)
        self.db.commit()

        kinds = sorted(f.kind for f in find_selection_inconsistencies(self.db))
        self.assertEqual(kinds, ["accepted_bid_not_selected", "selected_bid_not_accepted"])


class TestConcurrentSelection(unittest.TestCase):
    """Racing selections on a real file database leave one winner."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.engine, self.Session = file_session_factory(
            os.path.join(self.tmpdir, "race.db")
        )
        with self.Session() as db:
            client = make_client(db)
            case = make_case(db, client)
            bids = [make_bid(db, case, make_attorney(db)) for _ in range(4)]
            db.commit()
            self.client = client_actor(client)
            self.case_id = case.id
            self.bid_ids = [b.id for b in bids]

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_single_winner(self):
        barrier = threading.Barrier(len(self.bid_ids))
        errors = []

        def attempt(bid_id):
            with self.Session() as db:
                barrier.wait()
                try:
                    select_bid(db, self.case_id, bid_id, self.client)
                except Exception as exc:  # lock contention losers
                    errors.append(exc)

        threads = [threading.Thread(target=attempt, args=(b,)) for b in self.bid_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertLess(len(errors), len(self.bid_ids))
        with self.Session() as db:
            accepted = db.execute(
                select(Bid.id).where(
                    Bid.case_id == self.case_id, Bid.status == BidStatus.ACCEPTED.value
                )
            ).scalars().all()
            case = db.get(Case, self.case_id)
            self.assertEqual(len(accepted), 1)
            self.assertEqual(case.selected_bid_id, accepted[0])
            self.assertEqual(find_selection_inconsistencies(db), [])


if __name__ == "__main__":
    unittest.main()
