"""Redeeming won e-coupons and collecting shipping addresses for won goods."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .db.transactions import run_transaction
from .db.utils import as_utc, dt_iso, utcnow
from .errors import (
    ConflictError,
    CouponLimitExceeded,
    CouponNotUsable,
    IncompleteForm,
    InvalidStore,
    NotRecordOwner,
    RecordNotFound,
    ShippingAlreadyProvided,
    StoreAlreadyUsed,
    ValidationError,
    require_user_id,
)
from .models import ParticipationRecord
from .rules import (
    DEFAULT_COUPON_USAGE_LIMIT,
    ECouponSnapshot,
    MailDeliverySnapshot,
    PrizeSnapshot,
    missing_required_fields,
)

logger = logging.getLogger(__name__)

# Store recorded for coupons that are not tied to a store list.
DEFAULT_STORE_LABEL = "unspecified"


class CouponState(str, Enum):
    UNUSED = "unused"
    PARTIALLY_USED = "partially_used"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class CouponUsage:
    """Outcome of a coupon use.

    ``already_applied`` is set when the idempotency key had been used before
    and nothing changed.
    """

    record: ParticipationRecord
    store: Optional[str]
    used_count: int
    usage_limit: int
    already_applied: bool = False

    @property
    def remaining(self) -> int:
        return max(self.usage_limit - self.used_count, 0)

    @property
    def state(self) -> CouponState:
        return _state(self.used_count, self.usage_limit)


def _state(used: int, limit: int) -> CouponState:
    if used <= 0:
        return CouponState.UNUSED
    if used >= limit:
        return CouponState.EXHAUSTED
    return CouponState.PARTIALLY_USED


def prize_of(record: ParticipationRecord) -> Optional[PrizeSnapshot]:
    """The prize snapshot stored on ``record``, ``None`` for losses."""

    if record.is_loss or not record.prize_snapshot:
        return None
    return PrizeSnapshot.from_dict(record.prize_snapshot)


def coupon_state(record: ParticipationRecord) -> Optional[CouponState]:
    """Usage state of the coupon held by ``record``; ``None`` when it holds none."""

    prize = prize_of(record)
    if not isinstance(prize, ECouponSnapshot):
        return None
    limit = prize.coupon_usage_limit or DEFAULT_COUPON_USAGE_LIMIT
    return _state(record.coupon_used_count or 0, limit)


def _load_owned_record(
    session: Session, record_id: int, user_id: str
) -> ParticipationRecord:
    stmt = (
        select(ParticipationRecord)
        .where(ParticipationRecord.id == record_id)
        .with_for_update()
    )
    record = session.scalar(stmt)
    if record is None:
        raise RecordNotFound(f"Participation record {record_id} does not exist")
    if record.user_id != user_id:
        raise NotRecordOwner(f"Participation record {record_id} belongs to another user")
    return record


def _resolve_store(prize: ECouponSnapshot, store: Optional[str]) -> str:
    if not prize.available_stores:
        return store or DEFAULT_STORE_LABEL
    if store is None and len(prize.available_stores) == 1:
        return prize.available_stores[0]
    if store not in prize.available_stores:
        raise InvalidStore(f"Coupon cannot be used at store {store!r}")
    return store


def _apply_use(
    session: Session,
    record: ParticipationRecord,
    store: Optional[str],
    idempotency_key: Optional[str],
    now: datetime,
) -> CouponUsage:
    prize = prize_of(record)
    if not isinstance(prize, ECouponSnapshot):
        raise CouponNotUsable("This record does not hold an e-coupon")

    limit = prize.coupon_usage_limit or DEFAULT_COUPON_USAGE_LIMIT
    used = record.coupon_used_count or 0
    history = list(record.coupon_usage_history or [])

    if idempotency_key is not None:
        for entry in history:
            if entry.get("key") == idempotency_key:
                return CouponUsage(
                    record=record,
                    store=entry.get("store"),
                    used_count=used,
                    usage_limit=limit,
                    already_applied=True,
                )

    if not prize.is_date_valid(now):
        raise CouponNotUsable("This coupon is outside its validity period")
    store_label = _resolve_store(prize, store)
    if used >= limit:
        raise CouponLimitExceeded()
    if prize.prevent_reusing_at_same_store and any(
        entry.get("store") == store_label for entry in history
    ):
        raise StoreAlreadyUsed()

    history.append({"store": store_label, "used_at": dt_iso(now), "key": idempotency_key})
    # compare-and-swap on the counter read above
    changed = session.execute(
        update(ParticipationRecord)
        .where(
            ParticipationRecord.id == record.id,
            ParticipationRecord.coupon_used_count == used,
        )
        .values(coupon_used_count=used + 1, coupon_usage_history=history)
        .execution_options(synchronize_session=False)
    )
    if changed.rowcount != 1:
        raise ConflictError(f"Coupon of record {record.id} was used concurrently")

    session.refresh(record)
    logger.info(
        f"User {record.user_id} used coupon {record.prize_key} at {store_label} "
        f"({used + 1}/{limit})"
    )
    return CouponUsage(
        record=record, store=store_label, used_count=used + 1, usage_limit=limit
    )


def use_coupon(
    session_factory: sessionmaker,
    record_id: int,
    user_id: str,
    store: Optional[str] = None,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponUsage:
    """Record one use of the e-coupon won in ``record_id``.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory used to open the transaction.
    record_id : int
        Participation record holding the coupon.
    user_id : str
        Must be the record's owner.
    store : Optional[str], default: None
        Store the coupon is used at. Required when the prize lists several
        stores; ignored labels fall back to ``DEFAULT_STORE_LABEL`` when it
        lists none.
    idempotency_key : Optional[str], default: None
        Client-chosen key; replaying a request with the same key returns
        the earlier result with ``already_applied`` set.
    now : Optional[datetime], default: None
        Usage timestamp.

    Raises
    ------
    InvalidIdentity, RecordNotFound, NotRecordOwner, InvalidStore
        The request is invalid.
    CouponNotUsable
        The record holds no e-coupon or it is outside its validity period.
    CouponLimitExceeded
        All uses have been consumed.
    StoreAlreadyUsed
        The coupon forbids reuse at a store it was already used at.
    """

    require_user_id(user_id)
    used_at = as_utc(now) if now is not None else utcnow()

    def work(session: Session) -> CouponUsage:
        record = _load_owned_record(session, record_id, user_id)
        return _apply_use(session, record, store, idempotency_key, used_at)

    return run_transaction(session_factory, work, label=f"use coupon {record_id}")


def use_coupon_for_prize(
    session_factory: sessionmaker,
    campaign_id: int,
    user_id: str,
    prize_key: str,
    store: Optional[str] = None,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponUsage:
    """Use the oldest coupon of ``prize_key`` held by ``user_id`` that has uses left."""

    require_user_id(user_id)
    used_at = as_utc(now) if now is not None else utcnow()

    def work(session: Session) -> CouponUsage:
        stmt = (
            select(ParticipationRecord)
            .where(
                ParticipationRecord.campaign_id == campaign_id,
                ParticipationRecord.user_id == user_id,
                ParticipationRecord.prize_key == prize_key,
            )
            .order_by(ParticipationRecord.won_at, ParticipationRecord.id)
            .with_for_update()
        )
        records = list(session.scalars(stmt))
        if not records:
            raise RecordNotFound(f"User {user_id} holds no prize {prize_key!r}")

        if idempotency_key is not None:
            for record in records:
                if any(
                    entry.get("key") == idempotency_key
                    for entry in record.coupon_usage_history or []
                ):
                    return _apply_use(session, record, store, idempotency_key, used_at)

        for record in records:
            if coupon_state(record) not in (None, CouponState.EXHAUSTED):
                return _apply_use(session, record, store, idempotency_key, used_at)
        # every coupon is used up; report it through the normal checks
        return _apply_use(session, records[0], store, idempotency_key, used_at)

    return run_transaction(
        session_factory, work, label=f"use coupon {campaign_id}/{user_id}/{prize_key}"
    )


def set_shipping_address(
    session_factory: sessionmaker,
    record_id: int,
    user_id: str,
    address: dict[str, Any],
) -> ParticipationRecord:
    """Store the delivery address for a won mail-delivery prize.

    The address can be given once; required shipping fields must be filled.
    """

    require_user_id(user_id)

    def work(session: Session) -> ParticipationRecord:
        record = _load_owned_record(session, record_id, user_id)
        prize = prize_of(record)
        if not isinstance(prize, MailDeliverySnapshot):
            raise ValidationError("This record does not hold a mail-delivery prize")
        if record.shipping_address:
            raise ShippingAlreadyProvided()

        missing = missing_required_fields(prize.required_shipping_fields, address)
        if missing:
            raise IncompleteForm(
                f"Missing shipping fields: {', '.join(missing)}", missing
            )

        record.shipping_address = {
            f.id: address.get(f.id) for f in prize.shipping_fields if f.enabled
        } or dict(address)
        session.flush()
        logger.info(f"Shipping address registered for record {record_id}")
        return record

    return run_transaction(session_factory, work, label=f"shipping {record_id}")


__all__ = [
    "DEFAULT_STORE_LABEL",
    "CouponState",
    "CouponUsage",
    "coupon_state",
    "prize_of",
    "set_shipping_address",
    "use_coupon",
    "use_coupon_for_prize",
]
