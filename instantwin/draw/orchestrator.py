"""Entry point for participating in a campaign."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from ..db.transactions import run_transaction
from ..db.utils import as_utc, utcnow
from ..errors import (
    ApprovalPending,
    ApprovalRequired,
    CampaignClosed,
    CampaignNotFound,
    CooldownActive,
    IncompleteForm,
    LimitReached,
    OutOfStock,
    TicketRequired,
    TransientFailure,
    require_user_id,
)
from ..models import (
    Campaign,
    ChanceOverride,
    ClaimedGrant,
    ParticipationRecord,
    ParticipationRequest,
)
from ..rules import CampaignRules, OutOfStockBehavior, missing_required_fields
from .allocator import InventoryAllocator
from .ledger import ChanceBalance, available_chances, load_balance, next_available_time
from .probability import RandomSource, any_stock_left, default_rng, draw, eligible_prizes

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def load_rules(session: Session, campaign_id: int) -> CampaignRules:
    """Snapshot ``campaign_id`` or raise :class:`CampaignNotFound`."""

    campaign = Campaign.get(session, campaign_id)
    if campaign is None:
        raise CampaignNotFound(campaign_id)
    return CampaignRules.from_campaign(campaign)


def check_gates(session: Session, rules: CampaignRules, user_id: str) -> None:
    """Raise when an approval or ticket requirement blocks ``user_id``.

    Approval is checked before tickets. A user who has claimed a ticket but
    used up its chances is not blocked here; the ledger reports that as
    :class:`LimitReached`.
    """

    if rules.require_form_approval:
        request = ParticipationRequest.latest_for_user(
            session, rules.campaign_id, user_id
        )
        if request is None or request.status == "rejected":
            raise ApprovalRequired()
        if request.status == "pending":
            raise ApprovalPending()

    if rules.require_ticket:
        # event-monitor tokens stand in for a ticket
        if not (
            ClaimedGrant.has_any(session, rules.campaign_id, user_id, source_type="ticket")
            or ClaimedGrant.has_any(session, rules.campaign_id, user_id, source_type="event")
        ):
            raise TicketRequired()


@dataclass(frozen=True)
class DrawSummary:
    """Records of one participation call grouped for display."""

    wins: list[ParticipationRecord] = field(default_factory=list)
    consolations: list[ParticipationRecord] = field(default_factory=list)
    losses: list[ParticipationRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.wins) + len(self.consolations) + len(self.losses)


def _rank_key(record: ParticipationRecord) -> tuple[str, int, int]:
    snapshot = record.prize_snapshot or {}
    return (str(snapshot.get("rank") or ""), int(snapshot.get("position") or 0), record.id or 0)


def summarize_results(records: Sequence[ParticipationRecord]) -> DrawSummary:
    """Group ``records`` into regular wins (best rank first), consolations and losses."""

    wins = sorted((r for r in records if r.is_regular_win), key=_rank_key)
    consolations = [r for r in records if r.is_consolation_prize]
    losses = [r for r in records if r.is_loss]
    return DrawSummary(wins=wins, consolations=consolations, losses=losses)


class DrawOrchestrator:
    """Runs participation requests against a campaign.

    Each chance is drawn in its own transaction, so a batch draw commits its
    chances one by one. The per-user :class:`ChanceOverride` row is locked at
    the start of each transaction and the consumed count is re-read under
    that lock, which keeps concurrent requests from the same user within the
    limit.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        rng: Optional[RandomSource] = None,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        """Create an orchestrator.

        Parameters
        ----------
        session_factory : sessionmaker
            Factory used to open one session per transaction.
        rng : Optional[RandomSource], default: None
            Random source for both draw stages. Tests pass a scripted one.
        clock : Optional[Clock], default: None
            Returns the current aware datetime.
        max_attempts : Optional[int], default: None
            Retry budget per transaction; see :func:`run_transaction`.
        """

        self._session_factory = session_factory
        self._rng = rng or default_rng()
        self._clock = clock or utcnow
        self._max_attempts = max_attempts

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # read side

    def balance(self, campaign_id: int, user_id: str) -> ChanceBalance:
        """Current :class:`ChanceBalance` of ``user_id``, gates ignored."""

        require_user_id(user_id)

        def work(session: Session) -> ChanceBalance:
            rules = load_rules(session, campaign_id)
            return load_balance(session, rules, user_id, now=self._now())

        return run_transaction(
            self._session_factory,
            work,
            max_attempts=self._max_attempts,
            label=f"balance {campaign_id}/{user_id}",
        )

    # ------------------------------------------------------------------
    # participation

    def participate(
        self,
        campaign_id: int,
        user_id: str,
        *,
        use_multiple: bool = False,
        answers: Optional[dict[str, Any]] = None,
    ) -> list[ParticipationRecord]:
        """Consume one chance, or every remaining chance, and draw for each.

        Parameters
        ----------
        campaign_id : int
            Campaign to participate in.
        user_id : str
            Participant.
        use_multiple : bool, default: False
            Draw once per available chance. With an unlimited balance a
            single draw is made.
        answers : Optional[dict[str, Any]], default: None
            Questionnaire answers; required fields are enforced on the
            user's first participation and stored on every record.

        Returns
        -------
        list[ParticipationRecord]
            One record per chance consumed, in draw order. A batch stops early
            when a concurrent request from the same user consumes the rest
            of the chances.

        Raises
        ------
        InvalidIdentity
            ``user_id`` is not a non-blank string.
        CampaignNotFound
            The campaign does not exist.
        CampaignClosed, ApprovalRequired, ApprovalPending, TicketRequired,
        LimitReached, CooldownActive, OutOfStock
            A campaign rule blocks the draw before any chance was consumed.
        IncompleteForm
            Required questionnaire answers are missing.
        TransientFailure
            A transaction kept conflicting; ``completed`` holds the records
            committed before the failure.
        """

        require_user_id(user_id)
        rules, balance = run_transaction(
            self._session_factory,
            partial(self._prepare, campaign_id=campaign_id, user_id=user_id),
            max_attempts=self._max_attempts,
            label=f"prepare {campaign_id}/{user_id}",
        )

        if balance.consumed == 0 and rules.questionnaire_fields:
            missing = missing_required_fields(rules.questionnaire_fields, answers)
            if missing:
                raise IncompleteForm(
                    f"Missing questionnaire answers: {', '.join(missing)}", missing
                )

        if use_multiple and not balance.unlimited:
            count = balance.available
        else:
            count = 1

        records: list[ParticipationRecord] = []
        for index in range(count):
            try:
                record = run_transaction(
                    self._session_factory,
                    partial(
                        self._draw_once,
                        rules=rules,
                        user_id=user_id,
                        check_cooldown=index == 0,
                        answers=answers,
                    ),
                    max_attempts=self._max_attempts,
                    label=f"draw {campaign_id}/{user_id}",
                )
            except TransientFailure as exc:
                raise TransientFailure(str(exc), completed=records) from exc
            except (LimitReached, OutOfStock):
                if records:
                    break
                raise
            records.append(record)

        logger.info(
            f"User {user_id} drew {len(records)} chance(s) in campaign {campaign_id}"
        )
        return records

    def _prepare(
        self, session: Session, *, campaign_id: int, user_id: str
    ) -> tuple[CampaignRules, ChanceBalance]:
        now = self._now()
        rules = load_rules(session, campaign_id)
        if not rules.is_accepting(now):
            raise CampaignClosed()
        check_gates(session, rules, user_id)

        balance = load_balance(session, rules, user_id, now=now)
        if not balance.can_draw:
            raise LimitReached()
        if balance.next_available_at is not None:
            raise CooldownActive(balance.next_available_at)
        return rules, balance

    def _draw_once(
        self,
        session: Session,
        *,
        rules: CampaignRules,
        user_id: str,
        check_cooldown: bool,
        answers: Optional[dict[str, Any]],
    ) -> ParticipationRecord:
        now = self._now()
        override = ChanceOverride.lock_for_user(session, rules.campaign_id, user_id)
        consumed = ParticipationRecord.count_for_user(
            session, rules.campaign_id, user_id
        )
        remaining = available_chances(rules, override.extra_chances, consumed)
        if remaining is not None and remaining <= 0:
            raise LimitReached()

        if check_cooldown:
            latest = ParticipationRecord.latest_for_user(
                session, rules.campaign_id, user_id
            )
            next_at = next_available_time(rules, latest.won_at if latest else None)
            if next_at is not None and now < next_at:
                raise CooldownActive(next_at)

        allocator = InventoryAllocator(session, rng=self._rng)
        stock = allocator.live_stock(rules)
        if (
            rules.out_of_stock_behavior is OutOfStockBehavior.PREVENT_PARTICIPATION
            and not any_stock_left(rules, stock)
        ):
            raise OutOfStock()

        held = (
            ParticipationRecord.held_prize_ids(session, rules.campaign_id, user_id)
            if rules.prevent_duplicate_prizes
            else set()
        )
        eligible = eligible_prizes(rules, now=now, stock=stock, held_prize_ids=held)
        outcome = draw(rules, eligible, self._rng, now=now, stock=stock)
        return allocator.allocate(
            rules,
            outcome,
            user_id,
            now=now,
            eligible=eligible,
            stock=stock,
            answers=answers,
        )


def participate(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    *,
    use_multiple: bool = False,
    answers: Optional[dict[str, Any]] = None,
    rng: Optional[RandomSource] = None,
    clock: Optional[Clock] = None,
) -> list[ParticipationRecord]:
    """Shortcut for ``DrawOrchestrator(...).participate(...)``."""

    orchestrator = DrawOrchestrator(session_factory, rng=rng, clock=clock)
    return orchestrator.participate(
        campaign_id, user_id, use_multiple=use_multiple, answers=answers
    )


__all__ = [
    "Clock",
    "DrawOrchestrator",
    "DrawSummary",
    "check_gates",
    "load_rules",
    "participate",
    "summarize_results",
]
