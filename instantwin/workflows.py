"""High-level operations for campaign setup, participation and redemption.

Setup helpers take an open session and only flush; committing is left to the
caller. Participation, claim and coupon operations take a session factory
because they manage their own retried transactions.
"""

from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session, sessionmaker

from .claims import (
    ClaimResult,
    GrantSource,
    claim,
    claim_event_token,
    claim_ticket,
    create_ticket,
    grant_extra_chances,
    issue_event_token,
    reset_extra_chances,
    review_participation_request,
    submit_participation_request,
)
from .coupons import (
    CouponUsage,
    coupon_state,
    set_shipping_address,
    use_coupon,
    use_coupon_for_prize,
)
from .db.transactions import run_transaction
from .errors import require_user_id
from .draw import ChanceBalance, DrawOrchestrator, participate, summarize_results
from .models import (
    Campaign,
    ECouponPrize,
    MailDeliveryPrize,
    ParticipationRecord,
    Prize,
    UrlPrize,
)
from .rules import OutOfStockBehavior, PrizeType


def create_campaign(
    session: Session,
    name: str,
    *,
    overall_win_probability: Optional[float] = None,
    participation_limit_per_user: int = 0,
    participation_interval_hours: int = 0,
    participation_interval_minutes: int = 0,
    prevent_duplicate_prizes: bool = False,
    out_of_stock_behavior: str = OutOfStockBehavior.SHOW_LOSS.value,
    require_ticket: bool = False,
    require_form_approval: bool = False,
    status: str = "published",
    **extra: Any,
) -> Campaign:
    """Create a campaign and flush it so it has an id.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    name : str
        Display name.
    overall_win_probability : Optional[float], default: None
        Percent (0-100) that a draw enters the prize branch; ``None`` means 100.
    participation_limit_per_user : int, default: 0
        Base draws per user, ``0`` for unlimited.
    out_of_stock_behavior : str
        ``"show_loss"`` or ``"prevent_participation"``.
    **extra
        Any other :class:`Campaign` column (application window, form
        definitions, event mode settings, consolation switches).

    Returns
    -------
    Campaign
        The flushed campaign.
    """

    if overall_win_probability is not None and not 0 <= overall_win_probability <= 100:
        raise ValueError("overall_win_probability must be between 0 and 100")
    if participation_limit_per_user < 0:
        raise ValueError("participation_limit_per_user must not be negative")
    OutOfStockBehavior(out_of_stock_behavior)

    campaign = Campaign(
        name=name,
        status=status,
        overall_win_probability=overall_win_probability,
        participation_limit_per_user=participation_limit_per_user,
        participation_interval_hours=participation_interval_hours,
        participation_interval_minutes=participation_interval_minutes,
        prevent_duplicate_prizes=prevent_duplicate_prizes,
        out_of_stock_behavior=out_of_stock_behavior,
        require_ticket=require_ticket,
        require_form_approval=require_form_approval,
        **extra,
    )
    session.add(campaign)
    session.flush()
    return campaign


def add_prize(
    session: Session,
    campaign: Campaign,
    prize_type: str,
    prize_key: str,
    title: str,
    *,
    probability: Optional[float] = None,
    stock: int = 0,
    unlimited_stock: bool = False,
    rank: str = "",
    is_consolation: bool = False,
    urls: Optional[Iterable[str]] = None,
    **extra: Any,
) -> Prize:
    """Attach a prize of ``prize_type`` to ``campaign``.

    For finite URL prizes ``urls`` fills the pool and the stock follows the
    number of URLs added on top of ``stock``. Type-specific columns such as
    ``available_stores`` or ``shipping_fields`` go through ``extra``.
    """

    kind = PrizeType(prize_type)
    if stock < 0:
        raise ValueError("stock must not be negative")
    if is_consolation and campaign.consolation_prize is not None:
        raise ValueError("Campaign already has a consolation prize")

    common = dict(
        prize_key=prize_key,
        title=title,
        rank=rank,
        probability=probability,
        stock=stock,
        unlimited_stock=unlimited_stock,
        is_consolation=is_consolation,
        position=len(campaign.prizes),
    )
    common.update(extra)
    if kind is PrizeType.E_COUPON:
        prize: Prize = ECouponPrize(**common)
    elif kind is PrizeType.URL:
        prize = UrlPrize(**common)
    else:
        prize = MailDeliveryPrize(**common)

    campaign.prizes.append(prize)
    if urls is not None:
        if not isinstance(prize, UrlPrize):
            raise ValueError("Only URL prizes take a URL pool")
        prize.add_urls(list(urls))
    session.flush()
    return prize


def get_balance(
    session_factory: sessionmaker, campaign_id: int, user_id: str
) -> ChanceBalance:
    """Chances left and cooldown end for ``user_id``."""

    return DrawOrchestrator(session_factory).balance(campaign_id, user_id)


def list_results(
    session_factory: sessionmaker, campaign_id: int, user_id: str
) -> list[ParticipationRecord]:
    """Every record of ``user_id`` in ``campaign_id``, most recent first."""

    require_user_id(user_id)
    return run_transaction(
        session_factory,
        lambda session: ParticipationRecord.list_for_user(session, campaign_id, user_id),
        label=f"list results {campaign_id}/{user_id}",
    )


def winners_report(
    session_factory: sessionmaker, campaign_id: int
) -> list[dict[str, Any]]:
    """Per-prize winner counts and remaining stock, in display order."""

    def work(session: Session) -> list[dict[str, Any]]:
        campaign = Campaign.get(session, campaign_id)
        if campaign is None:
            return []
        return [
            {
                "prize_key": p.prize_key,
                "title": p.title,
                "type": p.type,
                "is_consolation": p.is_consolation,
                "winners_count": p.winners_count,
                "stock": None if p.unlimited_stock else p.stock,
            }
            for p in campaign.prizes
        ]

    return run_transaction(session_factory, work, label=f"winners report {campaign_id}")


__all__ = [
    "ClaimResult",
    "CouponUsage",
    "GrantSource",
    "add_prize",
    "claim",
    "claim_event_token",
    "claim_ticket",
    "coupon_state",
    "create_campaign",
    "create_ticket",
    "get_balance",
    "grant_extra_chances",
    "issue_event_token",
    "list_results",
    "participate",
    "reset_extra_chances",
    "review_participation_request",
    "set_shipping_address",
    "submit_participation_request",
    "summarize_results",
    "use_coupon",
    "use_coupon_for_prize",
    "winners_report",
]
