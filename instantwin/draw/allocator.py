"""Inventory allocation for decided draws.

Every stock change is a single guarded ``UPDATE`` (``... WHERE stock > 0``)
executed in the caller's transaction, so two sessions racing for the last
unit cannot both succeed. A draw that loses such a race is re-resolved
against the remaining prizes instead of overselling.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from ..models import LOSS_PRIZE_KEY, ParticipationRecord, Prize, PrizeUrl
from ..rules import (
    LOSS_SNAPSHOT,
    CampaignRules,
    ECouponSnapshot,
    MailDeliverySnapshot,
    PrizeSnapshot,
    UrlSnapshot,
)
from .probability import (
    DrawOutcome,
    RandomSource,
    StockMap,
    available_consolation,
    default_rng,
    weighted_choice,
)

logger = logging.getLogger(__name__)

# Upper bound on pooled-URL candidates tried before a URL prize counts as exhausted.
URL_ASSIGN_ATTEMPTS = 5


class InventoryAllocator:
    """Turns a :class:`DrawOutcome` into a persisted :class:`ParticipationRecord`."""

    def __init__(self, session: Session, *, rng: Optional[RandomSource] = None) -> None:
        self._session = session
        self._rng = rng or default_rng()

    def live_stock(self, rules: CampaignRules) -> dict[int, Optional[int]]:
        """Read the current stock of every prize in the campaign.

        Unlimited prizes map to ``None``.
        """

        rows = self._session.execute(
            select(Prize.id, Prize.stock, Prize.unlimited_stock).where(
                Prize.campaign_id == rules.campaign_id
            )
        ).all()
        return {
            prize_id: (None if unlimited else int(stock or 0))
            for prize_id, stock, unlimited in rows
        }

    def allocate(
        self,
        rules: CampaignRules,
        outcome: DrawOutcome,
        user_id: str,
        *,
        now: datetime,
        eligible: Sequence[PrizeSnapshot] = (),
        stock: Optional[StockMap] = None,
        answers: Optional[dict[str, Any]] = None,
    ) -> ParticipationRecord:
        """Claim inventory for ``outcome`` and persist the participation record.

        When the chosen prize has run out since ``eligible`` was computed, the
        draw is re-resolved by weight among the other eligible prizes, then
        falls back to the consolation prize (when ``consolation_on_exhausted_stock``
        allows it) and finally to a loss.

        Parameters
        ----------
        rules : CampaignRules
            Snapshot the outcome was decided with.
        outcome : DrawOutcome
            Result of :func:`instantwin.draw.probability.draw`.
        user_id : str
            Participant receiving the prize.
        now : datetime
            Timestamp written to the record and to assigned URLs.
        eligible : Sequence[PrizeSnapshot]
            Prizes that were eligible for this draw; used for re-selection.
        stock : Optional[StockMap]
            Live stock read earlier in this transaction.
        answers : Optional[dict[str, Any]]
            Questionnaire answers stored on the record.

        Returns
        -------
        ParticipationRecord
            The flushed record.
        """

        prize = outcome.prize
        is_consolation = outcome.is_consolation
        assigned_url: Optional[str] = None
        remaining = [p for p in eligible if prize is None or p.id != prize.id]
        tried_consolation = is_consolation

        while prize is not None:
            claimed, assigned_url = self._claim_unit(prize, user_id, now)
            if claimed:
                break

            logger.warning(
                f"Prize {prize.key} of campaign {rules.campaign_id} ran out during "
                f"allocation for user {user_id}; re-resolving"
            )
            if is_consolation:
                prize, is_consolation = None, False
                continue

            prize = weighted_choice(remaining, self._rng)
            if prize is not None:
                remaining = [p for p in remaining if p.id != prize.id]
                continue

            if rules.consolation_on_exhausted_stock and not tried_consolation:
                tried_consolation = True
                prize = available_consolation(rules, now=now, stock=stock)
                is_consolation = prize is not None

        record = ParticipationRecord(
            campaign_id=rules.campaign_id,
            user_id=user_id,
            won_at=now,
            prize_id=prize.id if prize is not None else None,
            prize_key=prize.key if prize is not None else LOSS_PRIZE_KEY,
            prize_snapshot=prize.to_dict() if prize is not None else dict(LOSS_SNAPSHOT),
            is_consolation_prize=is_consolation,
            assigned_url=assigned_url,
            coupon_used_count=0,
            coupon_usage_history=[],
            questionnaire_answers=dict(answers) if answers else None,
        )
        self._session.add(record)
        self._session.flush()

        if prize is None:
            logger.debug(f"User {user_id} lost a draw in campaign {rules.campaign_id}")
        else:
            logger.info(
                f"Allocated {'consolation ' if is_consolation else ''}prize {prize.key} "
                f"of campaign {rules.campaign_id} to user {user_id} (record {record.id})"
            )
        return record

    # ------------------------------------------------------------------
    # per-type inventory handling

    def _claim_unit(
        self, prize: PrizeSnapshot, user_id: str, now: datetime
    ) -> tuple[bool, Optional[str]]:
        """Take one unit of ``prize``; returns ``(claimed, assigned_url)``."""

        if isinstance(prize, UrlSnapshot):
            return self._claim_url(prize, user_id, now)
        if isinstance(prize, (ECouponSnapshot, MailDeliverySnapshot)):
            return self._claim_counted(prize), None
        raise TypeError(f"Unsupported prize snapshot: {prize.__class__.__name__}")

    def _claim_counted(self, prize: PrizeSnapshot) -> bool:
        stmt = update(Prize).where(Prize.id == prize.id)
        if prize.unlimited_stock:
            stmt = stmt.values(winners_count=Prize.winners_count + 1)
        else:
            stmt = stmt.where(Prize.stock > 0).values(
                stock=Prize.stock - 1,
                winners_count=Prize.winners_count + 1,
            )
        result = self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _claim_url(
        self, prize: UrlSnapshot, user_id: str, now: datetime
    ) -> tuple[bool, Optional[str]]:
        if prize.unlimited_stock:
            return self._claim_counted(prize), prize.shared_url

        for _ in range(URL_ASSIGN_ATTEMPTS):
            candidate = self._session.execute(
                select(PrizeUrl.id, PrizeUrl.url)
                .where(PrizeUrl.prize_id == prize.id, PrizeUrl.assigned_at.is_(None))
                .order_by(PrizeUrl.id.desc())
                .limit(1)
                .with_for_update(skip_locked=True)
            ).first()
            if candidate is None:
                return False, None

            url_id, url = candidate
            taken = self._session.execute(
                update(PrizeUrl)
                .where(PrizeUrl.id == url_id, PrizeUrl.assigned_at.is_(None))
                .values(assigned_user_id=user_id, assigned_at=now)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                continue

            self._session.execute(
                update(Prize)
                .where(Prize.id == prize.id)
                .values(
                    stock=case((Prize.stock > 0, Prize.stock - 1), else_=0),
                    winners_count=Prize.winners_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return True, url
        return False, None


__all__ = ["InventoryAllocator", "URL_ASSIGN_ATTEMPTS"]
