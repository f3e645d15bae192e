"""Chance ledger: how many draws a participant may still make, and when."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..db.utils import as_utc
from ..models import ChanceOverride, ParticipationRecord
from ..rules import CampaignRules


@dataclass(frozen=True)
class ChanceBalance:
    """A participant's standing in one campaign.

    Attributes
    ----------
    available : Optional[int]
        Draws left; ``None`` when the campaign is unlimited for this user.
    extra_chances : int
        Chances granted through tickets, approvals or admins.
    consumed : int
        Draws already made.
    next_available_at : Optional[datetime]
        End of the current cooldown, or ``None`` when no cooldown is running.
    """

    available: Optional[int]
    extra_chances: int
    consumed: int
    next_available_at: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        return self.available is None

    @property
    def can_draw(self) -> bool:
        return self.available is None or self.available > 0


def base_limit(rules: CampaignRules) -> int:
    """Chances every participant starts with (``0`` doubles as "unbounded")."""

    if rules.is_gated:
        return 0
    return max(rules.participation_limit_per_user, 0)


def is_unlimited(rules: CampaignRules) -> bool:
    return not rules.is_gated and rules.participation_limit_per_user <= 0


def available_chances(
    rules: CampaignRules, override_extra: int, consumed_count: int
) -> Optional[int]:
    """Return the draws a participant may still make.

    ``effective = base_limit + override_extra``; the result is
    ``max(0, effective - consumed_count)``, or ``None`` when the campaign
    puts no cap on this participant.
    """

    if is_unlimited(rules):
        return None
    effective = base_limit(rules) + max(override_extra, 0)
    return max(0, effective - consumed_count)


def next_available_time(
    rules: CampaignRules, last_participation: Optional[datetime]
) -> Optional[datetime]:
    """Instant before which new draws are blocked, or ``None`` without a cooldown."""

    if last_participation is None:
        return None
    if rules.participation_interval.total_seconds() <= 0:
        return None
    return as_utc(last_participation) + rules.participation_interval


def load_balance(
    session: Session,
    rules: CampaignRules,
    user_id: str,
    *,
    now: datetime,
) -> ChanceBalance:
    """Read the user's override and history and compute a :class:`ChanceBalance`."""

    extra = ChanceOverride.extra_for_user(session, rules.campaign_id, user_id)
    consumed = ParticipationRecord.count_for_user(session, rules.campaign_id, user_id)
    latest = ParticipationRecord.latest_for_user(session, rules.campaign_id, user_id)
    next_at = next_available_time(rules, latest.won_at if latest else None)
    if next_at is not None and next_at <= as_utc(now):
        next_at = None
    return ChanceBalance(
        available=available_chances(rules, extra, consumed),
        extra_chances=extra,
        consumed=consumed,
        next_available_at=next_at,
    )


__all__ = [
    "ChanceBalance",
    "available_chances",
    "base_limit",
    "is_unlimited",
    "load_balance",
    "next_available_time",
]
