"""Exception hierarchy shared by the draw, claim and coupon workflows.

Three families are distinguished:

* :class:`ValidationError` - the request itself is wrong (blank user id,
  unknown campaign, bad token, someone else's record). Reported immediately,
  never retried.
* :class:`ConflictError` - a transaction lost a race against another
  session. Retried by :func:`instantwin.db.transactions.run_transaction` and
  surfaced as :class:`TransientFailure` once the retry budget is spent.
* :class:`BusinessRuleViolation` - a campaign rule blocks the action (limit
  reached, cooldown, stock, coupon usage). Carries a stable ``code`` so the
  presentation layer can pick a user-facing message. Never retried.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class InstantWinError(Exception):
    """Base class for every error raised by this package."""


# --- validation ------------------------------------------------------------


class ValidationError(InstantWinError, ValueError):
    """The request references something that does not exist or is not allowed."""


class InvalidIdentity(ValidationError):
    """The caller did not supply a usable user id."""

    def __init__(self, user_id: Any) -> None:
        super().__init__(f"User id must be a non-blank string, got {user_id!r}")
        self.user_id = user_id


def require_user_id(user_id: Any) -> str:
    """Return ``user_id`` unchanged or raise :class:`InvalidIdentity`."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidIdentity(user_id)
    return user_id


class CampaignNotFound(ValidationError):
    def __init__(self, campaign_id: Any) -> None:
        super().__init__(f"Campaign {campaign_id!r} does not exist")
        self.campaign_id = campaign_id


class InvalidGrantSource(ValidationError):
    """A ticket, event token or request cannot be redeemed for chances."""


class RecordNotFound(ValidationError):
    pass


class NotRecordOwner(ValidationError):
    pass


class IncompleteForm(ValidationError):
    """Required questionnaire, approval or shipping fields are missing."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class InvalidStore(ValidationError):
    pass


# --- transactional conflicts ---------------------------------------------------


class ConflictError(InstantWinError):
    """A concurrent writer changed the data this transaction depended on."""


class TransientFailure(InstantWinError):
    """The retry budget for a conflicting transaction was exhausted.

    ``completed`` holds whatever the caller had already committed before the
    failing step (for example the records of earlier chances in a batch).
    """

    def __init__(self, message: str, completed: Optional[list] = None) -> None:
        super().__init__(message)
        self.completed = list(completed or [])


# --- business rules ---------------------------------------------------------


class BusinessRuleViolation(InstantWinError):
    code = "business_rule"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)


class LimitReached(BusinessRuleViolation):
    """The participation limit has been reached."""

    code = "limit_reached"


class CooldownActive(BusinessRuleViolation):
    """The participation interval has not elapsed yet."""

    code = "cooldown"

    def __init__(self, retry_after: datetime) -> None:
        super().__init__(f"Participation is possible again at {retry_after.isoformat()}")
        self.retry_after = retry_after


class TicketRequired(BusinessRuleViolation):
    """A participation ticket must be claimed before drawing."""

    code = "ticket_required"


class ApprovalRequired(BusinessRuleViolation):
    """An approved participation request is required before drawing."""

    code = "approval_required"


class ApprovalPending(BusinessRuleViolation):
    """The participation request is still under review."""

    code = "approval_pending"


class OutOfStock(BusinessRuleViolation):
    """Every prize has run out of stock."""

    code = "out_of_stock"


class CampaignClosed(BusinessRuleViolation):
    """The campaign is not accepting participation right now."""

    code = "campaign_closed"


class StoreAlreadyUsed(BusinessRuleViolation):
    """The coupon has already been used at this store."""

    code = "store_already_used"


class CouponLimitExceeded(BusinessRuleViolation):
    """The coupon has no uses left."""

    code = "coupon_limit_exceeded"


class CouponNotUsable(BusinessRuleViolation):
    """The record does not hold a coupon that can be used now."""

    code = "coupon_not_usable"


class RequestAlreadySubmitted(BusinessRuleViolation):
    """A participation request is already pending or approved."""

    code = "request_already_submitted"


class ShippingAlreadyProvided(BusinessRuleViolation):
    """A shipping address has already been registered for this record."""

    code = "shipping_already_provided"


__all__ = [
    "InstantWinError",
    "ValidationError",
    "InvalidIdentity",
    "require_user_id",
    "CampaignNotFound",
    "InvalidGrantSource",
    "RecordNotFound",
    "NotRecordOwner",
    "IncompleteForm",
    "InvalidStore",
    "ConflictError",
    "TransientFailure",
    "BusinessRuleViolation",
    "LimitReached",
    "CooldownActive",
    "TicketRequired",
    "ApprovalRequired",
    "ApprovalPending",
    "OutOfStock",
    "CampaignClosed",
    "StoreAlreadyUsed",
    "CouponLimitExceeded",
    "CouponNotUsable",
    "RequestAlreadySubmitted",
    "ShippingAlreadyProvided",
]
