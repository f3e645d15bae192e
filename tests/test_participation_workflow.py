from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from instantwin.draw import DrawOrchestrator, summarize_results
from instantwin.errors import (
    CampaignClosed,
    CampaignNotFound,
    CooldownActive,
    IncompleteForm,
    InvalidIdentity,
    LimitReached,
    OutOfStock,
    TicketRequired,
)
from instantwin.models import Base, ParticipationRecord, Prize, PrizeUrl
from instantwin.workflows import (
    add_prize,
    claim_ticket,
    create_campaign,
    create_ticket,
    get_balance,
    list_results,
    winners_report,
)


class ScriptedRandom:
    """Returns the given floats in order, repeating the last one."""

    def __init__(self, *values: float) -> None:
        self._values = list(values)
        self._index = 0

    def random(self) -> float:
        value = self._values[min(self._index, len(self._values) - 1)]
        self._index += 1
        return value


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class ParticipationWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine, future=True, expire_on_commit=False
        )
        self.clock = FakeClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))

    def tearDown(self) -> None:
        self.engine.dispose()

    def _orchestrator(self, *values: float) -> DrawOrchestrator:
        return DrawOrchestrator(
            self.Session, rng=ScriptedRandom(*(values or (0.1,))), clock=self.clock
        )

    def _record_count(self, campaign_id: int) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count(ParticipationRecord.id)).where(
                    ParticipationRecord.campaign_id == campaign_id
                )
            )

    def _prize(self, prize_id: int) -> Prize:
        with self.Session() as session:
            return session.get(Prize, prize_id)

    def test_second_draw_over_limit_is_refused(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(
                session, "Limit", overall_win_probability=100, participation_limit_per_user=1
            )
            prize = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=5)

        orchestrator = self._orchestrator()
        records = orchestrator.participate(campaign.id, "u1")
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].prize_id, prize.id)

        with self.assertRaises(LimitReached):
            orchestrator.participate(campaign.id, "u1")
        self.assertEqual(self._record_count(campaign.id), 1)
        self.assertEqual(self._prize(prize.id).stock, 4)
        self.assertEqual(self._prize(prize.id).winners_count, 1)

    def test_ticket_grants_three_draws(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Tickets", require_ticket=True)
            add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=10)
            ticket = create_ticket(session, campaign, "Gate", chances_to_grant=3)

        orchestrator = self._orchestrator()
        with self.assertRaises(TicketRequired):
            orchestrator.participate(campaign.id, "u1")

        self.assertFalse(claim_ticket(self.Session, campaign.id, "u1", ticket.token).already_claimed)
        self.assertTrue(claim_ticket(self.Session, campaign.id, "u1", ticket.token).already_claimed)
        self.assertEqual(get_balance(self.Session, campaign.id, "u1").available, 3)

        for _ in range(3):
            self.assertEqual(len(orchestrator.participate(campaign.id, "u1")), 1)
        with self.assertRaises(LimitReached):
            orchestrator.participate(campaign.id, "u1")
        self.assertEqual(self._record_count(campaign.id), 3)

    def test_use_multiple_draws_every_available_chance(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Batch", participation_limit_per_user=3)
            add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=10)

        records = self._orchestrator().participate(campaign.id, "u1", use_multiple=True)
        self.assertEqual(len(records), 3)
        self.assertEqual(get_balance(self.Session, campaign.id, "u1").available, 0)

    def test_unlimited_batch_draws_once(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Unlimited")
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        records = self._orchestrator().participate(campaign.id, "u1", use_multiple=True)
        self.assertEqual(len(records), 1)
        self.assertIsNone(get_balance(self.Session, campaign.id, "u1").available)

    def test_cooldown_blocks_until_interval_elapsed(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Cooldown", participation_interval_hours=1)
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        orchestrator = self._orchestrator()
        first_at = self.clock.now
        orchestrator.participate(campaign.id, "u1")

        self.clock.now = first_at + timedelta(minutes=59)
        with self.assertRaises(CooldownActive) as ctx:
            orchestrator.participate(campaign.id, "u1")
        self.assertEqual(ctx.exception.retry_after, first_at + timedelta(hours=1))
        self.assertEqual(ctx.exception.code, "cooldown")

        self.clock.now = first_at + timedelta(hours=1, seconds=1)
        self.assertEqual(len(orchestrator.participate(campaign.id, "u1")), 1)

    def test_duplicate_prevention_then_consolation(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Distinct", prevent_duplicate_prizes=True)
            first = add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)
            second = add_prize(session, campaign, "e-coupon", "b", "Prize B", unlimited_stock=True, probability=1)
            add_prize(session, campaign, "url", "gift", "Thanks", unlimited_stock=True,
                      is_consolation=True, shared_url="https://example.com/gift")

        orchestrator = self._orchestrator()
        won = [orchestrator.participate(campaign.id, "u1")[0] for _ in range(4)]
        self.assertEqual([r.prize_id for r in won[:2]], [first.id, second.id])
        for record in won[2:]:
            self.assertTrue(record.is_consolation_prize)
            self.assertEqual(record.prize_key, "gift")
            self.assertEqual(record.assigned_url, "https://example.com/gift")

    def test_url_pool_hands_out_each_url_once(self) -> None:
        urls = ["https://example.com/1", "https://example.com/2"]
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Urls")
            prize = add_prize(session, campaign, "url", "dl", "Download", probability=1, urls=urls)

        orchestrator = self._orchestrator()
        records = [orchestrator.participate(campaign.id, f"u{i}")[0] for i in range(3)]
        self.assertEqual(sorted(r.assigned_url for r in records[:2]), urls)
        self.assertTrue(records[2].is_loss)
        self.assertEqual(self._prize(prize.id).stock, 0)
        with self.Session() as session:
            assigned = session.scalars(
                select(PrizeUrl.assigned_user_id).where(PrizeUrl.prize_id == prize.id)
            ).all()
        self.assertEqual(sorted(assigned), ["u0", "u1"])

    def test_prevent_participation_when_everything_is_gone(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(
                session, "Gone", out_of_stock_behavior="prevent_participation"
            )
            add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=0)

        with self.assertRaises(OutOfStock):
            self._orchestrator().participate(campaign.id, "u1")
        self.assertEqual(self._record_count(campaign.id), 0)

    def test_loss_with_consolation_gift(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Gift", overall_win_probability=0)
            add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=1)
            add_prize(session, campaign, "e-coupon", "gift", "Thanks", stock=1, is_consolation=True)

        orchestrator = self._orchestrator()
        first = orchestrator.participate(campaign.id, "u1")[0]
        self.assertTrue(first.is_consolation_prize)
        second = orchestrator.participate(campaign.id, "u2")[0]
        self.assertTrue(second.is_loss)
        self.assertEqual(second.prize_snapshot["key"], "loss")

    def test_closed_campaigns_refuse_draws(self) -> None:
        with self.Session.begin() as session:
            draft = create_campaign(session, "Draft", status="draft")
            ended = create_campaign(
                session, "Ended", application_end=self.clock.now - timedelta(days=1)
            )

        orchestrator = self._orchestrator()
        for campaign in (draft, ended):
            with self.assertRaises(CampaignClosed):
                orchestrator.participate(campaign.id, "u1")
        with self.assertRaises(CampaignNotFound):
            orchestrator.participate(12345, "u1")

    def test_questionnaire_required_on_first_draw(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(
                session,
                "Survey",
                questionnaire_fields=[{"id": "age", "question": "Age", "required": True}],
            )
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        orchestrator = self._orchestrator()
        with self.assertRaises(IncompleteForm) as ctx:
            orchestrator.participate(campaign.id, "u1", answers={"age": " "})
        self.assertEqual(ctx.exception.missing, ["age"])

        record = orchestrator.participate(campaign.id, "u1", answers={"age": "20s"})[0]
        self.assertEqual(record.questionnaire_answers, {"age": "20s"})
        # only the first participation is checked
        self.assertEqual(len(orchestrator.participate(campaign.id, "u1")), 1)

    def test_results_and_winners_report(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Report", participation_limit_per_user=2)
            add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=5)
            add_prize(session, campaign, "url", "gift", "Thanks", unlimited_stock=True,
                      is_consolation=True, shared_url="https://example.com/gift")

        orchestrator = self._orchestrator()
        first = orchestrator.participate(campaign.id, "u1")[0]
        self.clock.now += timedelta(minutes=1)
        second = orchestrator.participate(campaign.id, "u1")[0]

        results = list_results(self.Session, campaign.id, "u1")
        self.assertEqual([r.id for r in results], [second.id, first.id])
        self.assertEqual(list_results(self.Session, campaign.id, "u2"), [])

        report = winners_report(self.Session, campaign.id)
        self.assertEqual([row["prize_key"] for row in report], ["a", "gift"])
        self.assertEqual(report[0]["winners_count"], 2)
        self.assertEqual(report[0]["stock"], 3)
        self.assertIsNone(report[1]["stock"])
        self.assertEqual(winners_report(self.Session, 999), [])

    def test_blank_or_missing_user_id_is_rejected(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Identity")
            add_prize(session, campaign, "e-coupon", "a", "Prize A", unlimited_stock=True, probability=1)

        orchestrator = self._orchestrator()
        for user_id in ("", "   ", None):
            with self.assertRaises(InvalidIdentity):
                orchestrator.participate(campaign.id, user_id)
        with self.assertRaises(InvalidIdentity):
            get_balance(self.Session, campaign.id, "")
        with self.assertRaises(InvalidIdentity):
            list_results(self.Session, campaign.id, None)
        self.assertEqual(self._record_count(campaign.id), 0)

    def test_summary_orders_wins_by_rank(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(
                session, "Ranks", participation_limit_per_user=3, prevent_duplicate_prizes=True
            )
            add_prize(session, campaign, "e-coupon", "b", "Second", rank="2", probability=1, stock=5)
            add_prize(session, campaign, "e-coupon", "a", "First", rank="1", probability=1, stock=5)

        records = self._orchestrator().participate(campaign.id, "u1", use_multiple=True)
        summary = summarize_results(records)
        self.assertEqual([r.prize_key for r in summary.wins], ["a", "b"])
        self.assertEqual(len(summary.losses), 1)
        self.assertEqual(summary.consolations, [])
        self.assertEqual(summary.total, 3)


if __name__ == "__main__":
    unittest.main()
