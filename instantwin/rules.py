"""Immutable snapshots of campaign configuration.

The draw engine never reads campaign rows directly. A :class:`CampaignRules`
value is built once per call with :meth:`CampaignRules.from_campaign` and
passed explicitly to every engine function, so a single call sees one
consistent configuration even if an admin edits the campaign meanwhile.

Prizes are a tagged variant: :class:`ECouponSnapshot`, :class:`UrlSnapshot`
and :class:`MailDeliverySnapshot` share :class:`PrizeSnapshot` and only carry
the fields that make sense for their type.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Optional

from .db.utils import as_utc, dt_iso, parse_iso

if TYPE_CHECKING:
    from .models import Campaign, Prize


class PrizeType(str, Enum):
    E_COUPON = "e-coupon"
    URL = "url"
    MAIL_DELIVERY = "mail-delivery"


class OutOfStockBehavior(str, Enum):
    SHOW_LOSS = "show_loss"
    PREVENT_PARTICIPATION = "prevent_participation"


DEFAULT_COUPON_USAGE_LIMIT = 1


@dataclass(frozen=True)
class ShippingField:
    id: str
    label: str
    enabled: bool = True
    required: bool = False


@dataclass(frozen=True)
class FormField:
    """A questionnaire or approval-form field definition."""

    id: str
    label: str
    type: str = "text"
    required: bool = False
    options: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormField":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data.get("question") or data["id"]),
            type=str(data.get("type") or "text"),
            required=bool(data.get("required", False)),
            options=tuple(data.get("options") or ()),
        )


@dataclass(frozen=True)
class PrizeSnapshot:
    """Type-independent view of a prize at snapshot time.

    Attributes
    ----------
    id : int
        Database id of the prize row.
    key : str
        Campaign-unique public key, copied onto participation records.
    probability : Optional[float]
        Weight inside the won branch; ``None`` or ``<= 0`` is never selected.
    stock : int
        Remaining stock when the snapshot was taken. Allocation re-reads the
        live value; this one is only used for eligibility previews.
    """

    prize_type: ClassVar[PrizeType]

    id: int
    key: str
    title: str
    rank: str = ""
    position: int = 0
    probability: Optional[float] = None
    stock: int = 0
    unlimited_stock: bool = False
    winners_count: int = 0
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_consolation: bool = False

    @property
    def weight(self) -> float:
        if self.probability is None:
            return 0.0
        return max(float(self.probability), 0.0)

    @property
    def is_configured(self) -> bool:
        """A prize needs a non-blank title to be awarded."""
        return bool(self.title and self.title.strip())

    def is_date_valid(self, now: datetime) -> bool:
        now = as_utc(now)
        if self.valid_from is not None and now < as_utc(self.valid_from):
            return False
        if self.valid_to is not None and now > as_utc(self.valid_to):
            return False
        return True

    def has_stock(self, remaining: Optional[int] = None) -> bool:
        """Whether the prize can still be allocated.

        ``remaining`` overrides the snapshot stock with a fresher reading.
        """
        if self.unlimited_stock:
            return True
        current = self.stock if remaining is None else remaining
        return current > 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.prize_type.value
        data["valid_from"] = dt_iso(self.valid_from)
        data["valid_to"] = dt_iso(self.valid_to)
        for key, value in list(data.items()):
            if isinstance(value, tuple):
                data[key] = list(value)
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "PrizeSnapshot":
        """Rebuild the snapshot stored on a participation record."""

        prize_type = PrizeType(data.get("type", PrizeType.URL.value))
        cls = SNAPSHOT_TYPES[prize_type]
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        kwargs["valid_from"] = parse_iso(data.get("valid_from"))
        kwargs["valid_to"] = parse_iso(data.get("valid_to"))
        if prize_type is PrizeType.E_COUPON:
            kwargs["available_stores"] = tuple(data.get("available_stores") or ())
        elif prize_type is PrizeType.MAIL_DELIVERY:
            kwargs["shipping_fields"] = tuple(
                ShippingField(**f) if isinstance(f, dict) else f
                for f in data.get("shipping_fields") or ()
            )
        return cls(**kwargs)


@dataclass(frozen=True)
class ECouponSnapshot(PrizeSnapshot):
    prize_type: ClassVar[PrizeType] = PrizeType.E_COUPON

    coupon_terms: Optional[str] = None
    available_stores: tuple[str, ...] = ()
    coupon_usage_limit: int = DEFAULT_COUPON_USAGE_LIMIT
    prevent_reusing_at_same_store: bool = False


@dataclass(frozen=True)
class UrlSnapshot(PrizeSnapshot):
    prize_type: ClassVar[PrizeType] = PrizeType.URL

    shared_url: Optional[str] = None


@dataclass(frozen=True)
class MailDeliverySnapshot(PrizeSnapshot):
    prize_type: ClassVar[PrizeType] = PrizeType.MAIL_DELIVERY

    shipping_fields: tuple[ShippingField, ...] = ()

    @property
    def required_shipping_fields(self) -> list[ShippingField]:
        return [f for f in self.shipping_fields if f.enabled and f.required]


SNAPSHOT_TYPES: dict[PrizeType, type[PrizeSnapshot]] = {
    PrizeType.E_COUPON: ECouponSnapshot,
    PrizeType.URL: UrlSnapshot,
    PrizeType.MAIL_DELIVERY: MailDeliverySnapshot,
}

# A lost draw is stored with this in place of a prize snapshot.
LOSS_SNAPSHOT: dict[str, Any] = {
    "id": None,
    "key": "loss",
    "title": "Loss",
    "rank": "-",
    "type": None,
    "unlimited_stock": True,
}


def snapshot_prize(prize: "Prize") -> PrizeSnapshot:
    """Build the immutable snapshot for an ORM prize row."""

    from .models import ECouponPrize, MailDeliveryPrize, UrlPrize

    common = dict(
        id=prize.id,
        key=prize.prize_key,
        title=prize.title,
        rank=prize.rank or "",
        position=prize.position or 0,
        probability=prize.probability,
        stock=prize.stock or 0,
        unlimited_stock=bool(prize.unlimited_stock),
        winners_count=prize.winners_count or 0,
        valid_from=as_utc(prize.valid_from),
        valid_to=as_utc(prize.valid_to),
        description=prize.description,
        image_url=prize.image_url,
        is_consolation=bool(prize.is_consolation),
    )
    if isinstance(prize, ECouponPrize):
        return ECouponSnapshot(
            **common,
            coupon_terms=prize.coupon_terms,
            available_stores=tuple(prize.available_stores or ()),
            coupon_usage_limit=prize.coupon_usage_limit or DEFAULT_COUPON_USAGE_LIMIT,
            prevent_reusing_at_same_store=bool(prize.prevent_reusing_at_same_store),
        )
    if isinstance(prize, UrlPrize):
        return UrlSnapshot(**common, shared_url=prize.shared_url)
    if isinstance(prize, MailDeliveryPrize):
        return MailDeliverySnapshot(
            **common,
            shipping_fields=tuple(
                ShippingField(
                    id=str(f["id"]),
                    label=str(f.get("label") or f["id"]),
                    enabled=bool(f.get("enabled", True)),
                    required=bool(f.get("required", False)),
                )
                for f in prize.shipping_fields or ()
            ),
        )
    raise TypeError(f"Unsupported prize type: {prize.__class__.__name__}")


@dataclass(frozen=True)
class CampaignRules:
    """Everything the engine needs to know about a campaign for one call.

    Attributes
    ----------
    overall_win_probability : float
        Percent chance (0-100) that a draw enters the prize branch.
    prizes : tuple[PrizeSnapshot, ...]
        Regular prizes in display order.
    consolation_prize : Optional[PrizeSnapshot]
        Participation gift awarded when no regular prize is won.
    participation_limit_per_user : int
        Base number of draws per user; ``0`` means unlimited unless a ticket
        or approval requirement forces the base to zero.
    participation_interval : timedelta
        Minimum time between a user's draws. Zero disables the cooldown.
    """

    campaign_id: int
    overall_win_probability: float = 100.0
    prizes: tuple[PrizeSnapshot, ...] = ()
    consolation_prize: Optional[PrizeSnapshot] = None
    participation_limit_per_user: int = 0
    participation_interval: timedelta = field(default_factory=timedelta)
    prevent_duplicate_prizes: bool = False
    out_of_stock_behavior: OutOfStockBehavior = OutOfStockBehavior.SHOW_LOSS
    consolation_on_loss: bool = True
    consolation_on_exhausted_stock: bool = True
    require_ticket: bool = False
    require_form_approval: bool = False
    status: str = "published"
    application_start: Optional[datetime] = None
    application_end: Optional[datetime] = None
    questionnaire_fields: tuple[FormField, ...] = ()
    approval_form_fields: tuple[FormField, ...] = ()
    event_mode_enabled: bool = False
    event_chances_to_grant: Optional[int] = None

    @classmethod
    def from_campaign(cls, campaign: "Campaign") -> "CampaignRules":
        """Snapshot ``campaign`` and its prizes."""

        probability = campaign.overall_win_probability
        interval = timedelta(
            hours=campaign.participation_interval_hours or 0,
            minutes=campaign.participation_interval_minutes or 0,
        )
        consolation = campaign.consolation_prize
        return cls(
            campaign_id=campaign.id,
            overall_win_probability=100.0 if probability is None else float(probability),
            prizes=tuple(snapshot_prize(p) for p in campaign.main_prizes),
            consolation_prize=snapshot_prize(consolation) if consolation else None,
            participation_limit_per_user=campaign.participation_limit_per_user or 0,
            participation_interval=interval,
            prevent_duplicate_prizes=bool(campaign.prevent_duplicate_prizes),
            out_of_stock_behavior=OutOfStockBehavior(
                campaign.out_of_stock_behavior or OutOfStockBehavior.SHOW_LOSS.value
            ),
            consolation_on_loss=bool(campaign.consolation_on_loss),
            consolation_on_exhausted_stock=bool(campaign.consolation_on_exhausted_stock),
            require_ticket=bool(campaign.require_ticket),
            require_form_approval=bool(campaign.require_form_approval),
            status=campaign.status,
            application_start=as_utc(campaign.application_start),
            application_end=as_utc(campaign.application_end),
            questionnaire_fields=tuple(
                FormField.from_dict(f) for f in campaign.questionnaire_fields or ()
            ),
            approval_form_fields=tuple(
                FormField.from_dict(f) for f in campaign.approval_form_fields or ()
            ),
            event_mode_enabled=bool(campaign.event_mode_enabled),
            event_chances_to_grant=campaign.event_chances_to_grant,
        )

    @property
    def is_gated(self) -> bool:
        """Chances come only from tickets or approvals."""
        return self.require_ticket or self.require_form_approval

    @property
    def default_grant(self) -> int:
        """Chances granted by a source that does not specify its own amount."""
        limit = self.participation_limit_per_user
        return limit if limit > 0 else 1

    @property
    def all_prizes(self) -> tuple[PrizeSnapshot, ...]:
        if self.consolation_prize is None:
            return self.prizes
        return self.prizes + (self.consolation_prize,)

    def is_accepting(self, now: datetime) -> bool:
        """Published and inside the application window."""
        if self.status != "published":
            return False
        now = as_utc(now)
        if self.application_start is not None and now < self.application_start:
            return False
        if self.application_end is not None and now > self.application_end:
            return False
        return True


def missing_required_fields(fields: Iterable[Any], data: Optional[dict[str, Any]]) -> list[str]:
    """Ids of required, enabled ``fields`` that have no usable value in ``data``."""

    data = data or {}
    missing = []
    for f in fields:
        if not f.required or not getattr(f, "enabled", True):
            continue
        value = data.get(f.id)
        if value is None:
            missing.append(f.id)
        elif isinstance(value, str) and not value.strip():
            missing.append(f.id)
        elif isinstance(value, (list, tuple, dict)) and not value:
            missing.append(f.id)
    return missing


__all__ = [
    "PrizeType",
    "OutOfStockBehavior",
    "ShippingField",
    "FormField",
    "PrizeSnapshot",
    "ECouponSnapshot",
    "UrlSnapshot",
    "MailDeliverySnapshot",
    "SNAPSHOT_TYPES",
    "LOSS_SNAPSHOT",
    "CampaignRules",
    "snapshot_prize",
    "missing_required_fields",
    "DEFAULT_COUPON_USAGE_LIMIT",
]
