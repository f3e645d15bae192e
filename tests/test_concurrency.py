from __future__ import annotations

import os
import tempfile
import threading
import unittest
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from instantwin.db.engine import get_sessionmaker, make_engine
from instantwin.db.transactions import run_transaction
from instantwin.draw import DrawOrchestrator
from instantwin.errors import (
    ConflictError,
    CouponLimitExceeded,
    LimitReached,
    TransientFailure,
)
from instantwin.models import (
    Base,
    Campaign,
    ChanceOverride,
    ClaimedGrant,
    ParticipationRecord,
    Prize,
)
from instantwin.workflows import (
    add_prize,
    claim_ticket,
    create_campaign,
    create_ticket,
    use_coupon,
)


def run_together(target, count):
    """Start ``count`` threads that call ``target(index)`` at the same moment."""
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        try:
            results[index] = target(index)
        except Exception as exc:  # collected for assertions
            results[index] = exc

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


class ConcurrencyTests(unittest.TestCase):
    def setUp(self) -> None:
        # Threads need a shared file; every in-memory connection is its own database
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine = make_engine(f"sqlite:///{self.path}")
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)

    def tearDown(self) -> None:
        self.engine.dispose()
        os.remove(self.path)

    def _records(self, campaign_id: int) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count(ParticipationRecord.id)).where(
                    ParticipationRecord.campaign_id == campaign_id
                )
            )

    def test_last_unit_goes_to_one_user(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Last", overall_win_probability=100)
            prize = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=100, stock=1)

        orchestrator = DrawOrchestrator(self.Session)
        results = run_together(
            lambda i: orchestrator.participate(campaign.id, f"user-{i}")[0], 2
        )

        winners = [r for r in results if r.prize_id == prize.id]
        self.assertEqual(len(winners), 1)
        self.assertEqual(sum(1 for r in results if r.is_loss), 1)
        with self.Session() as session:
            self.assertEqual(session.get(Prize, prize.id).stock, 0)

    def test_stock_is_never_oversold(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Rush", overall_win_probability=100)
            prize = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=3)

        orchestrator = DrawOrchestrator(self.Session)
        results = run_together(
            lambda i: orchestrator.participate(campaign.id, f"user-{i}")[0], 8
        )

        self.assertTrue(all(isinstance(r, ParticipationRecord) for r in results))
        self.assertEqual(sum(1 for r in results if r.prize_id == prize.id), 3)
        with self.Session() as session:
            stored = session.get(Prize, prize.id)
            self.assertEqual(stored.stock, 0)
            self.assertEqual(stored.winners_count, 3)
        self.assertEqual(self._records(campaign.id), 8)

    def test_same_user_cannot_exceed_limit(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Once", participation_limit_per_user=1)
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        orchestrator = DrawOrchestrator(self.Session)
        results = run_together(lambda i: orchestrator.participate(campaign.id, "u1"), 4)

        self.assertEqual(sum(1 for r in results if isinstance(r, list)), 1)
        self.assertEqual(sum(1 for r in results if isinstance(r, LimitReached)), 3)
        self.assertEqual(self._records(campaign.id), 1)

    def test_ticket_claimed_once_under_contention(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Gate", require_ticket=True)
            ticket = create_ticket(session, campaign, "Gate", chances_to_grant=3)

        results = run_together(
            lambda i: claim_ticket(self.Session, campaign.id, "u1", ticket.token), 4
        )

        self.assertEqual(sum(1 for r in results if not r.already_claimed), 1)
        with self.Session() as session:
            self.assertEqual(ChanceOverride.extra_for_user(session, campaign.id, "u1"), 3)

    def test_coupon_uses_stop_at_limit(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Coupon", overall_win_probability=100)
            add_prize(
                session, campaign, "e-coupon", "c", "Coupon",
                probability=1, unlimited_stock=True, coupon_usage_limit=2,
            )
        (record,) = DrawOrchestrator(self.Session).participate(campaign.id, "u1")

        results = run_together(lambda i: use_coupon(self.Session, record.id, "u1"), 5)

        self.assertEqual(sum(1 for r in results if isinstance(r, CouponLimitExceeded)), 3)
        with self.Session() as session:
            stored = session.get(ParticipationRecord, record.id)
            self.assertEqual(stored.coupon_used_count, 2)
            self.assertEqual(len(stored.coupon_usage_history), 2)


class RunTransactionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        self.Session = get_sessionmaker(self.engine)
        Base.metadata.create_all(self.engine)
        with self.Session.begin() as session:
            campaign = Campaign(name="Tx", status="published")
            session.add(campaign)
            session.flush()
            self.campaign_id = campaign.id

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_retries_conflicts_then_succeeds(self) -> None:
        calls = []

        def work(session):
            calls.append(session)
            if len(calls) < 3:
                raise ConflictError("lost the race")
            return "done"

        self.assertEqual(run_transaction(self.Session, work, max_attempts=3, backoff=0), "done")
        self.assertEqual(len(calls), 3)

    def test_gives_up_with_transient_failure(self) -> None:
        def work(session):
            raise ConflictError("always")

        with self.assertRaises(TransientFailure) as ctx:
            run_transaction(self.Session, work, max_attempts=2, backoff=0)
        self.assertIsInstance(ctx.exception.__cause__, ConflictError)

    def test_business_errors_are_not_retried(self) -> None:
        calls = []

        def work(session):
            calls.append(1)
            raise LimitReached()

        with self.assertRaises(LimitReached):
            run_transaction(self.Session, work, max_attempts=5, backoff=0)
        self.assertEqual(calls, [1])

    def _marker(self, user_id):
        return ClaimedGrant(
            campaign_id=self.campaign_id,
            user_id=user_id,
            source_key="ticket:1",
            source_type="ticket",
            chances_granted=1,
        )

    def test_duplicate_claim_marker_is_retried(self) -> None:
        calls = []

        def work(session):
            calls.append(1)
            session.add(self._marker("u1"))
            if len(calls) == 1:
                # a concurrent claim inserted the same marker first
                session.add(self._marker("u1"))
            session.flush()
            return len(calls)

        self.assertEqual(run_transaction(self.Session, work, max_attempts=3, backoff=0), 2)

    def test_other_integrity_errors_propagate_at_once(self) -> None:
        calls = []

        def work(session):
            calls.append(1)
            session.add(
                ParticipationRecord(
                    campaign_id=self.campaign_id,
                    user_id=None,
                    won_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
                    prize_key="loss",
                    prize_snapshot={"key": "loss"},
                )
            )
            session.flush()

        with self.assertRaises(IntegrityError):
            run_transaction(self.Session, work, max_attempts=5, backoff=0)
        self.assertEqual(calls, [1])

if __name__ == "__main__":
    unittest.main()
