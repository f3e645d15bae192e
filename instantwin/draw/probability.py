"""Pure decision functions for a single draw.

Nothing here touches the database. Callers supply the rules snapshot, the
live stock they read inside their transaction and a random source.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from ..rules import CampaignRules, PrizeSnapshot

StockMap = Mapping[int, Optional[int]]
"""prize id -> remaining stock (``None`` for unlimited prizes)."""


class RandomSource(Protocol):
    def random(self) -> float:  # pragma: no cover - protocol
        ...


_SYSTEM_RANDOM = secrets.SystemRandom()


def default_rng() -> RandomSource:
    return _SYSTEM_RANDOM


@dataclass(frozen=True)
class DrawOutcome:
    """What one draw decided, before inventory is allocated.

    Attributes
    ----------
    is_win : bool
        Result of the first stage (``r1 < overall_win_probability``).
    prize : Optional[PrizeSnapshot]
        Prize to allocate, ``None`` for a plain loss.
    is_consolation : bool
        ``True`` when ``prize`` is the participation gift rather than a
        regular prize.
    """

    is_win: bool
    prize: Optional[PrizeSnapshot]
    is_consolation: bool = False

    @property
    def is_loss(self) -> bool:
        return self.prize is None


def _remaining(prize: PrizeSnapshot, stock: Optional[StockMap]) -> Optional[int]:
    if stock is None or prize.id not in stock:
        return None
    return stock[prize.id]


def _in_stock(prize: PrizeSnapshot, stock: Optional[StockMap]) -> bool:
    if prize.unlimited_stock:
        return True
    return prize.has_stock(_remaining(prize, stock))


def eligible_prizes(
    rules: CampaignRules,
    *,
    now: datetime,
    stock: Optional[StockMap] = None,
    held_prize_ids: Iterable[int] = (),
) -> list[PrizeSnapshot]:
    """Regular prizes a draw may award right now.

    A prize is eligible when it is configured, inside its validity window,
    in stock (or unlimited) and, with ``prevent_duplicate_prizes``, not
    already held by the participant.
    """

    held = set(held_prize_ids) if rules.prevent_duplicate_prizes else set()
    return [
        prize
        for prize in rules.prizes
        if prize.is_configured
        and prize.is_date_valid(now)
        and _in_stock(prize, stock)
        and prize.id not in held
    ]


def available_consolation(
    rules: CampaignRules,
    *,
    now: datetime,
    stock: Optional[StockMap] = None,
) -> Optional[PrizeSnapshot]:
    """The consolation prize when it is configured, valid and in stock."""

    prize = rules.consolation_prize
    if prize is None or not prize.is_configured:
        return None
    if not prize.is_date_valid(now) or not _in_stock(prize, stock):
        return None
    return prize


def any_stock_left(rules: CampaignRules, stock: Optional[StockMap] = None) -> bool:
    """Whether any configured prize, consolation included, can still be handed out."""

    return any(p.is_configured and _in_stock(p, stock) for p in rules.all_prizes)


def weighted_choice(
    prizes: Sequence[PrizeSnapshot], rng: RandomSource
) -> Optional[PrizeSnapshot]:
    """Pick one prize proportionally to its weight.

    Prizes with a missing or non-positive weight are never picked. Returns
    ``None`` when the total weight is zero.
    """

    weighted = [p for p in prizes if p.weight > 0]
    total = sum(p.weight for p in weighted)
    if total <= 0:
        return None

    r2 = rng.random() * total
    cumulative = 0.0
    for prize in weighted:
        cumulative += prize.weight
        if r2 < cumulative:
            return prize
    # float rounding can leave r2 a hair above the final bound
    return weighted[-1]


def draw(
    rules: CampaignRules,
    eligible: Sequence[PrizeSnapshot],
    rng: Optional[RandomSource] = None,
    *,
    now: Optional[datetime] = None,
    stock: Optional[StockMap] = None,
) -> DrawOutcome:
    """Decide the outcome of one draw.

    Stage 1 rolls ``r1`` in ``[0, 100)`` against the overall win probability.
    Stage 2 picks among ``eligible`` by weight. Consolation is awarded when
    the first stage loses and ``consolation_on_loss`` is set, or when it wins
    but nothing is allocatable and ``consolation_on_exhausted_stock`` is set.
    A winning draw whose eligible prizes all weigh zero is a plain loss.

    Parameters
    ----------
    rules : CampaignRules
        Campaign snapshot.
    eligible : Sequence[PrizeSnapshot]
        Output of :func:`eligible_prizes`.
    rng : Optional[RandomSource], default: None
        Source of uniform floats in ``[0, 1)``; cryptographic by default.
    now : Optional[datetime], default: None
        Reference time for the consolation prize's validity window.
    stock : Optional[StockMap], default: None
        Live stock used to check the consolation prize.
    """

    rng = rng or default_rng()
    now = now or datetime.now(timezone.utc)

    r1 = rng.random() * 100
    is_win = r1 < rules.overall_win_probability

    if not is_win:
        if rules.consolation_on_loss:
            gift = available_consolation(rules, now=now, stock=stock)
            if gift is not None:
                return DrawOutcome(is_win=False, prize=gift, is_consolation=True)
        return DrawOutcome(is_win=False, prize=None)

    if not eligible:
        if rules.consolation_on_exhausted_stock:
            gift = available_consolation(rules, now=now, stock=stock)
            if gift is not None:
                return DrawOutcome(is_win=True, prize=gift, is_consolation=True)
        return DrawOutcome(is_win=True, prize=None)

    prize = weighted_choice(eligible, rng)
    if prize is None:
        return DrawOutcome(is_win=True, prize=None)
    return DrawOutcome(is_win=True, prize=prize)


__all__ = [
    "DrawOutcome",
    "RandomSource",
    "StockMap",
    "any_stock_left",
    "available_consolation",
    "default_rng",
    "draw",
    "eligible_prizes",
    "weighted_choice",
]
