from __future__ import annotations

import unittest
from datetime import datetime, timezone

from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from instantwin.draw import InventoryAllocator, load_rules
from instantwin.draw.probability import DrawOutcome, eligible_prizes
from instantwin.models import Base, Prize
from instantwin.workflows import add_prize, create_campaign


class ScriptedRandom:
    """Returns the given floats in order, repeating the last one."""

    def __init__(self, *values: float) -> None:
        self._values = list(values)
        self._index = 0

    def random(self) -> float:
        value = self._values[min(self._index, len(self._values) - 1)]
        self._index += 1
        return value


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class StaleStockAllocationTests(unittest.TestCase):
    """A prize chosen from an earlier stock read may be gone by allocation time."""

    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine, future=True, expire_on_commit=False
        )

    def tearDown(self) -> None:
        self.engine.dispose()

    def _empty(self, session, *prizes: Prize) -> None:
        # another session took the last units after eligibility was computed
        for prize in prizes:
            session.execute(
                update(Prize)
                .where(Prize.id == prize.id)
                .values(stock=0)
                .execution_options(synchronize_session=False)
            )

    def _allocate(self, session, campaign, chosen_key: str):
        rules = load_rules(session, campaign.id)
        eligible = eligible_prizes(rules, now=NOW)
        chosen = next(p for p in eligible if p.key == chosen_key)
        return rules, eligible, chosen

    def test_lost_race_reselects_another_eligible_prize(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Race")
            first = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=1)
            second = add_prize(session, campaign, "e-coupon", "b", "Prize B", probability=1, stock=1)
            rules, eligible, chosen = self._allocate(session, campaign, "a")
            self._empty(session, first)

            record = InventoryAllocator(session, rng=ScriptedRandom(0.1)).allocate(
                rules, DrawOutcome(True, chosen), "u1", now=NOW, eligible=eligible
            )

            self.assertEqual(record.prize_id, second.id)
            self.assertFalse(record.is_consolation_prize)
            session.expire_all()
            self.assertEqual(session.get(Prize, second.id).stock, 0)
            self.assertEqual(session.get(Prize, first.id).winners_count, 0)

    def test_lost_race_without_alternatives_downgrades_to_consolation(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Race")
            only = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=1)
            gift = add_prize(session, campaign, "e-coupon", "gift", "Thanks", stock=1, is_consolation=True)
            rules, eligible, chosen = self._allocate(session, campaign, "a")
            self._empty(session, only)

            record = InventoryAllocator(session, rng=ScriptedRandom(0.1)).allocate(
                rules, DrawOutcome(True, chosen), "u1", now=NOW, eligible=eligible
            )

            self.assertTrue(record.is_consolation_prize)
            self.assertEqual(record.prize_id, gift.id)
            session.expire_all()
            self.assertEqual(session.get(Prize, gift.id).stock, 0)

    def test_lost_race_with_consolation_gone_is_a_loss(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Race")
            only = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=1)
            gift = add_prize(session, campaign, "e-coupon", "gift", "Thanks", stock=1, is_consolation=True)
            rules, eligible, chosen = self._allocate(session, campaign, "a")
            self._empty(session, only, gift)

            record = InventoryAllocator(session, rng=ScriptedRandom(0.1)).allocate(
                rules, DrawOutcome(True, chosen), "u1", now=NOW, eligible=eligible
            )

            self.assertTrue(record.is_loss)
            self.assertFalse(record.is_consolation_prize)
            self.assertEqual(record.prize_snapshot["key"], "loss")
            session.expire_all()
            self.assertEqual(session.get(Prize, gift.id).winners_count, 0)

    def test_lost_race_skips_consolation_when_switched_off(self) -> None:
        with self.Session.begin() as session:
            campaign = create_campaign(session, "Race", consolation_on_exhausted_stock=False)
            only = add_prize(session, campaign, "e-coupon", "a", "Prize A", probability=1, stock=1)
            add_prize(session, campaign, "e-coupon", "gift", "Thanks", stock=1, is_consolation=True)
            rules, eligible, chosen = self._allocate(session, campaign, "a")
            self._empty(session, only)

            record = InventoryAllocator(session, rng=ScriptedRandom(0.1)).allocate(
                rules, DrawOutcome(True, chosen), "u1", now=NOW, eligible=eligible
            )

            self.assertTrue(record.is_loss)


if __name__ == "__main__":
    unittest.main()
