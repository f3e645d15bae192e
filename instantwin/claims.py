"""Granting extra chances exactly once per source.

Every grant runs in one transaction that locks the user's
:class:`~instantwin.models.ChanceOverride` row, checks the
:class:`~instantwin.models.ClaimedGrant` marker, then increments the override
and writes the marker together. Claiming the same source twice, in sequence
or concurrently, grants its chances once.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from .db.transactions import run_transaction
from .db.utils import as_utc, utcnow
from .errors import (
    CampaignNotFound,
    ConflictError,
    IncompleteForm,
    InvalidGrantSource,
    RecordNotFound,
    RequestAlreadySubmitted,
    ValidationError,
    require_user_id,
)
from .models import (
    Campaign,
    ChanceOverride,
    ClaimedGrant,
    EventToken,
    ParticipationRequest,
    ParticipationTicket,
)
from .rules import CampaignRules, missing_required_fields

logger = logging.getLogger(__name__)

# How long an event token shown on a monitor stays redeemable.
EVENT_TOKEN_TTL = timedelta(seconds=30)


class GrantKind(str, Enum):
    TICKET = "ticket"
    EVENT = "event"
    REQUEST = "request"


@dataclass(frozen=True)
class GrantSource:
    """Something a user can redeem for chances.

    ``reference`` is the ticket token, the event token or the request id.
    """

    kind: GrantKind
    reference: Any

    @classmethod
    def ticket(cls, token: str) -> "GrantSource":
        return cls(GrantKind.TICKET, token)

    @classmethod
    def event(cls, token: str) -> "GrantSource":
        return cls(GrantKind.EVENT, token)

    @classmethod
    def request(cls, request_id: int) -> "GrantSource":
        return cls(GrantKind.REQUEST, request_id)


@dataclass(frozen=True)
class ClaimResult:
    source_key: str
    chances_granted: int
    already_claimed: bool = False


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def _get_campaign(session: Session, campaign_id: int) -> Campaign:
    campaign = Campaign.get(session, campaign_id)
    if campaign is None:
        raise CampaignNotFound(campaign_id)
    return campaign


def _default_chances(campaign: Campaign) -> int:
    limit = campaign.participation_limit_per_user or 0
    return limit if limit > 0 else 1


def _existing_claim(
    session: Session, campaign_id: int, user_id: str, source_key: str
) -> Optional[ClaimResult]:
    """Lock the user's override and return the earlier claim of ``source_key``, if any."""

    ChanceOverride.lock_for_user(session, campaign_id, user_id)
    marker = ClaimedGrant.get(session, campaign_id, user_id, source_key)
    if marker is None:
        return None
    logger.debug(f"User {user_id} already claimed {source_key} in campaign {campaign_id}")
    return ClaimResult(
        source_key=source_key,
        chances_granted=marker.chances_granted,
        already_claimed=True,
    )


def _record_grant(
    session: Session,
    campaign_id: int,
    user_id: str,
    source_key: str,
    kind: GrantKind,
    chances: int,
    now: datetime,
) -> ClaimResult:
    override = ChanceOverride.lock_for_user(session, campaign_id, user_id)
    override.extra_chances = (override.extra_chances or 0) + chances
    session.add(
        ClaimedGrant(
            campaign_id=campaign_id,
            user_id=user_id,
            source_key=source_key,
            source_type=kind.value,
            chances_granted=chances,
            claimed_at=now,
        )
    )
    session.flush()
    logger.info(
        f"Granted {chances} chance(s) to user {user_id} in campaign {campaign_id} "
        f"from {source_key}"
    )
    return ClaimResult(source_key=source_key, chances_granted=chances)


# ---------------------------------------------------------------------------
# tickets


def claim_ticket(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    token: str,
    *,
    now: Optional[datetime] = None,
) -> ClaimResult:
    """Redeem a participation ticket for ``user_id``.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory used to open the claim transaction.
    campaign_id : int
        Campaign the ticket belongs to.
    user_id : str
        Participant redeeming the ticket.
    token : str
        The ticket's token (usually read from a QR code).
    now : Optional[datetime], default: None
        Claim timestamp.

    Returns
    -------
    ClaimResult
        ``already_claimed`` is set when this user redeemed the ticket before.

    Raises
    ------
    InvalidIdentity
        ``user_id`` is not a non-blank string.
    CampaignNotFound
        The campaign does not exist.
    InvalidGrantSource
        The token is unknown or the ticket has been deactivated.
    """

    require_user_id(user_id)

    def work(session: Session) -> ClaimResult:
        campaign = _get_campaign(session, campaign_id)
        ticket = ParticipationTicket.get_by_token(session, campaign_id, token)
        if ticket is None:
            raise InvalidGrantSource("Unknown participation ticket")

        source_key = f"ticket:{ticket.id}"
        existing = _existing_claim(session, campaign_id, user_id, source_key)
        if existing is not None:
            return existing
        if not ticket.active:
            raise InvalidGrantSource("This participation ticket is no longer active")

        chances = (
            ticket.chances_to_grant
            if ticket.chances_to_grant is not None
            else _default_chances(campaign)
        )
        result = _record_grant(
            session, campaign_id, user_id, source_key, GrantKind.TICKET, chances, _now(now)
        )
        session.execute(
            update(ParticipationTicket)
            .where(ParticipationTicket.id == ticket.id)
            .values(usage_count=ParticipationTicket.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result

    return run_transaction(
        session_factory, work, label=f"claim ticket {campaign_id}/{user_id}"
    )


def create_ticket(
    session: Session,
    campaign: Campaign,
    label: str,
    *,
    chances_to_grant: Optional[int] = None,
    token: Optional[str] = None,
) -> ParticipationTicket:
    """Add a ticket to ``campaign`` with a random token unless one is given."""

    if chances_to_grant is not None and chances_to_grant < 0:
        raise ValueError("chances_to_grant must not be negative")
    ticket = ParticipationTicket(
        label=label,
        token=token or secrets.token_urlsafe(16),
        chances_to_grant=chances_to_grant,
        usage_count=0,
        active=True,
    )
    campaign.tickets.append(ticket)
    session.flush()
    return ticket


# ---------------------------------------------------------------------------
# event mode


def issue_event_token(
    session_factory: sessionmaker,
    campaign_id: int,
    *,
    chances: Optional[int] = None,
    ttl: timedelta = EVENT_TOKEN_TTL,
    now: Optional[datetime] = None,
) -> EventToken:
    """Create a short-lived token for the event monitor of ``campaign_id``."""

    def work(session: Session) -> EventToken:
        campaign = _get_campaign(session, campaign_id)
        if not campaign.event_mode_enabled:
            raise InvalidGrantSource("Event mode is not enabled for this campaign")
        issued_at = _now(now)
        event_token = EventToken(
            campaign_id=campaign_id,
            token=secrets.token_urlsafe(16),
            chances=chances or campaign.event_chances_to_grant or 1,
            expires_at=issued_at + ttl,
        )
        session.add(event_token)
        session.flush()
        logger.debug(f"Issued event token for campaign {campaign_id}, expires {event_token.expires_at}")
        return event_token

    return run_transaction(session_factory, work, label=f"issue event token {campaign_id}")


def claim_event_token(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    token: str,
    *,
    now: Optional[datetime] = None,
) -> ClaimResult:
    """Redeem an event token. Each token can be redeemed by a single user."""

    require_user_id(user_id)

    def work(session: Session) -> ClaimResult:
        _get_campaign(session, campaign_id)
        source_key = f"event:{token}"
        existing = _existing_claim(session, campaign_id, user_id, source_key)
        if existing is not None:
            return existing

        claimed_at = _now(now)
        event_token = EventToken.get_by_token(session, campaign_id, token)
        if event_token is None:
            raise InvalidGrantSource("Unknown event token")
        if event_token.claimed_by_user_id is not None:
            raise InvalidGrantSource("This event token has already been used")
        if event_token.is_expired(reference_time=claimed_at):
            raise InvalidGrantSource("This event token has expired")

        taken = session.execute(
            update(EventToken)
            .where(EventToken.id == event_token.id, EventToken.claimed_by_user_id.is_(None))
            .values(claimed_by_user_id=user_id, claimed_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount != 1:
            raise ConflictError(f"Event token {event_token.id} was claimed concurrently")

        return _record_grant(
            session,
            campaign_id,
            user_id,
            source_key,
            GrantKind.EVENT,
            event_token.chances,
            claimed_at,
        )

    return run_transaction(
        session_factory, work, label=f"claim event token {campaign_id}/{user_id}"
    )


# ---------------------------------------------------------------------------
# approval requests


def submit_participation_request(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    form_data: dict[str, Any],
    *,
    now: Optional[datetime] = None,
) -> ParticipationRequest:
    """File an approval request for a campaign that requires one.

    Raises
    ------
    ValidationError
        The campaign does not take approval requests.
    IncompleteForm
        Required approval-form fields are missing.
    RequestAlreadySubmitted
        A pending or approved request already exists.
    """

    require_user_id(user_id)

    def work(session: Session) -> ParticipationRequest:
        campaign = _get_campaign(session, campaign_id)
        if not campaign.require_form_approval:
            raise ValidationError("This campaign does not take participation requests")

        ChanceOverride.lock_for_user(session, campaign_id, user_id)
        latest = ParticipationRequest.latest_for_user(session, campaign_id, user_id)
        if latest is not None and latest.status in ("pending", "approved"):
            raise RequestAlreadySubmitted()

        rules = CampaignRules.from_campaign(campaign)
        missing = missing_required_fields(rules.approval_form_fields, form_data)
        if missing:
            raise IncompleteForm(f"Missing required fields: {', '.join(missing)}", missing)

        request = ParticipationRequest(
            campaign_id=campaign_id,
            user_id=user_id,
            form_data=dict(form_data or {}),
            status="pending",
            created_at=_now(now),
        )
        session.add(request)
        session.flush()
        logger.info(f"User {user_id} submitted participation request {request.id}")
        return request

    return run_transaction(
        session_factory, work, label=f"submit request {campaign_id}/{user_id}"
    )


def review_participation_request(
    session_factory: sessionmaker,
    request_id: int,
    *,
    approve: bool,
    reviewer: Optional[str] = None,
    chances_to_grant: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ParticipationRequest:
    """Approve or reject a pending request.

    Approval grants chances in the same transaction as the status change,
    through the same exactly-once path as tickets. Approving an already
    approved request changes nothing.
    """

    def work(session: Session) -> ParticipationRequest:
        request = session.get(ParticipationRequest, request_id)
        if request is None:
            raise RecordNotFound(f"Participation request {request_id} does not exist")
        if request.status == "approved" and approve:
            return request
        if request.status != "pending":
            raise ValidationError(
                f"Participation request {request_id} has already been {request.status}"
            )

        campaign = _get_campaign(session, request.campaign_id)
        reviewed_at = _now(now)
        granted = None
        if approve:
            granted = (
                chances_to_grant
                if chances_to_grant is not None
                else _default_chances(campaign)
            )

        changed = session.execute(
            update(ParticipationRequest)
            .where(
                ParticipationRequest.id == request_id,
                ParticipationRequest.status == "pending",
            )
            .values(
                status="approved" if approve else "rejected",
                reviewed_at=reviewed_at,
                reviewed_by=reviewer,
                chances_granted=granted,
            )
            .execution_options(synchronize_session=False)
        )
        if changed.rowcount != 1:
            raise ConflictError(f"Participation request {request_id} was reviewed concurrently")

        if approve:
            source_key = f"request:{request_id}"
            if _existing_claim(session, campaign.id, request.user_id, source_key) is None:
                _record_grant(
                    session,
                    campaign.id,
                    request.user_id,
                    source_key,
                    GrantKind.REQUEST,
                    granted,
                    reviewed_at,
                )

        session.refresh(request)
        logger.info(
            f"Participation request {request_id} {request.status} by {reviewer or 'unknown'}"
        )
        return request

    return run_transaction(session_factory, work, label=f"review request {request_id}")


def _claim_approved_request(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    request_id: int,
    now: Optional[datetime],
) -> ClaimResult:
    def work(session: Session) -> ClaimResult:
        campaign = _get_campaign(session, campaign_id)
        source_key = f"request:{request_id}"
        existing = _existing_claim(session, campaign_id, user_id, source_key)
        if existing is not None:
            return existing

        request = session.get(ParticipationRequest, request_id)
        if (
            request is None
            or request.campaign_id != campaign_id
            or request.user_id != user_id
            or request.status != "approved"
        ):
            raise InvalidGrantSource("The participation request is not approved")
        chances = (
            request.chances_granted
            if request.chances_granted is not None
            else _default_chances(campaign)
        )
        return _record_grant(
            session, campaign_id, user_id, source_key, GrantKind.REQUEST, chances, _now(now)
        )

    return run_transaction(
        session_factory, work, label=f"claim request {campaign_id}/{user_id}"
    )


def claim(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    source: GrantSource,
    *,
    now: Optional[datetime] = None,
) -> ClaimResult:
    """Redeem any :class:`GrantSource` for ``user_id``."""

    require_user_id(user_id)

    if source.kind is GrantKind.TICKET:
        return claim_ticket(session_factory, campaign_id, user_id, source.reference, now=now)
    if source.kind is GrantKind.EVENT:
        return claim_event_token(
            session_factory, campaign_id, user_id, source.reference, now=now
        )
    if source.kind is GrantKind.REQUEST:
        return _claim_approved_request(
            session_factory, campaign_id, user_id, int(source.reference), now
        )
    raise InvalidGrantSource(f"Unsupported grant source: {source.kind!r}")


# ---------------------------------------------------------------------------
# admin adjustments


def grant_extra_chances(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    amount: int,
    *,
    granted_by: Optional[str] = None,
) -> int:
    """Add ``amount`` chances to ``user_id``; returns the new extra-chance total."""

    require_user_id(user_id)

    if amount <= 0:
        raise ValidationError("amount must be a positive number of chances")

    def work(session: Session) -> int:
        _get_campaign(session, campaign_id)
        override = ChanceOverride.lock_for_user(session, campaign_id, user_id)
        override.extra_chances = (override.extra_chances or 0) + amount
        session.flush()
        logger.info(
            f"{granted_by or 'admin'} granted {amount} chance(s) to user {user_id} "
            f"in campaign {campaign_id}"
        )
        return override.extra_chances

    return run_transaction(
        session_factory, work, label=f"grant chances {campaign_id}/{user_id}"
    )


def reset_extra_chances(
    session_factory: sessionmaker, campaign_id: int, user_id: str
) -> int:
    """Drop every extra chance of ``user_id``; returns the previous total.

    Claim markers are kept, so already redeemed sources stay redeemed.
    """

    require_user_id(user_id)

    def work(session: Session) -> int:
        _get_campaign(session, campaign_id)
        override = ChanceOverride.get_for_user(session, campaign_id, user_id, for_update=True)
        if override is None:
            return 0
        previous = override.extra_chances
        override.extra_chances = 0
        session.flush()
        logger.info(f"Reset extra chances of user {user_id} in campaign {campaign_id}")
        return previous

    return run_transaction(
        session_factory, work, label=f"reset chances {campaign_id}/{user_id}"
    )


__all__ = [
    "EVENT_TOKEN_TTL",
    "ClaimResult",
    "GrantKind",
    "GrantSource",
    "claim",
    "claim_event_token",
    "claim_ticket",
    "create_ticket",
    "grant_extra_chances",
    "issue_event_token",
    "reset_extra_chances",
    "review_participation_request",
    "submit_participation_request",
]
