"""Participation history and per-user chance bookkeeping."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from ..db.utils import dt_iso
from .base import Base
from .id_type import ID_TYPE, UTCDateTime

LOSS_PRIZE_KEY = "loss"
"""``prize_key`` stored on records of draws that produced nothing."""


class ParticipationRecord(Base):
    """One consumed chance and what it produced.

    ``prize_snapshot`` is a copy of the prize as it was at draw time so the
    history does not change when an admin later edits the prize. Only the
    coupon-usage and shipping columns change after creation.
    """

    __tablename__ = "participation_records"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    won_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    prize_id: Mapped[Optional[int]] = mapped_column(
        ID_TYPE, ForeignKey("prizes.id", ondelete="SET NULL"), nullable=True
    )
    prize_key: Mapped[str] = mapped_column(String(64), nullable=False)
    prize_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_consolation_prize: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    assigned_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    coupon_used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coupon_usage_history: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list
    )
    """``[{"store", "used_at", "key"}]`` in usage order."""

    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    questionnaire_answers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_participation_campaign_user_won", "campaign_id", "user_id", "won_at"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<ParticipationRecord(id={self.id}, campaign_id={self.campaign_id}, "
            f"user_id='{self.user_id}', prize_key='{self.prize_key}', "
            f"consolation={self.is_consolation_prize})>"
        )

    @property
    def is_loss(self) -> bool:
        return self.prize_key == LOSS_PRIZE_KEY

    @property
    def is_regular_win(self) -> bool:
        return not self.is_loss and not self.is_consolation_prize

    @classmethod
    def count_for_user(cls, session: Session, campaign_id: int, user_id: str) -> int:
        """Number of chances ``user_id`` has consumed in ``campaign_id``."""

        stmt = select(func.count(cls.id)).where(
            cls.campaign_id == campaign_id, cls.user_id == user_id
        )
        return int(session.scalar(stmt) or 0)

    @classmethod
    def latest_for_user(
        cls, session: Session, campaign_id: int, user_id: str
    ) -> Optional["ParticipationRecord"]:
        stmt = (
            select(cls)
            .where(cls.campaign_id == campaign_id, cls.user_id == user_id)
            .order_by(cls.won_at.desc(), cls.id.desc())
            .limit(1)
        )
        return session.scalar(stmt)

    @classmethod
    def held_prize_ids(
        cls, session: Session, campaign_id: int, user_id: str
    ) -> set[int]:
        """Ids of regular (non-consolation) prizes the user has already won."""

        stmt = select(cls.prize_id).where(
            cls.campaign_id == campaign_id,
            cls.user_id == user_id,
            cls.prize_id.isnot(None),
            cls.is_consolation_prize.is_(False),
        )
        return {pid for pid in session.scalars(stmt) if pid is not None}

    @classmethod
    def list_for_user(
        cls, session: Session, campaign_id: int, user_id: str
    ) -> list["ParticipationRecord"]:
        """A user's records for a campaign, most recent first."""

        stmt = (
            select(cls)
            .where(cls.campaign_id == campaign_id, cls.user_id == user_id)
            .order_by(cls.won_at.desc(), cls.id.desc())
        )
        return list(session.scalars(stmt))

    def to_json(self) -> dict[str, Any]:
        """Return a JSON-serializable representation of the record."""

        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "user_id": self.user_id,
            "won_at": dt_iso(self.won_at),
            "prize_key": self.prize_key,
            "prize": self.prize_snapshot,
            "is_consolation_prize": self.is_consolation_prize,
            "assigned_url": self.assigned_url,
            "coupon_used_count": self.coupon_used_count,
            "coupon_usage_history": list(self.coupon_usage_history or []),
            "shipping_address": self.shipping_address,
            "questionnaire_answers": self.questionnaire_answers,
        }


class ChanceOverride(Base):
    """Extra chances granted to one user on top of the campaign's base limit.

    The row also serves as the per-user lock that serialises draws and claims
    for the same (campaign, user) pair.
    """

    __tablename__ = "chance_overrides"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    extra_chances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("campaign_id", "user_id", name="uq_chance_override_user"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<ChanceOverride(campaign_id={self.campaign_id}, user_id='{self.user_id}', "
            f"extra_chances={self.extra_chances})>"
        )

    @classmethod
    def get_for_user(
        cls, session: Session, campaign_id: int, user_id: str, *, for_update: bool = False
    ) -> Optional["ChanceOverride"]:
        stmt = select(cls).where(cls.campaign_id == campaign_id, cls.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    @classmethod
    def lock_for_user(
        cls, session: Session, campaign_id: int, user_id: str
    ) -> "ChanceOverride":
        """Return the user's override row locked for update, creating it if needed.

        A concurrent creation surfaces as ``IntegrityError`` at flush time, which
        the transaction runner treats as a conflict and retries.
        """

        override = cls.get_for_user(session, campaign_id, user_id, for_update=True)
        if override is None:
            override = cls(campaign_id=campaign_id, user_id=user_id, extra_chances=0)
            session.add(override)
            session.flush()
        return override

    @classmethod
    def extra_for_user(cls, session: Session, campaign_id: int, user_id: str) -> int:
        override = cls.get_for_user(session, campaign_id, user_id)
        return override.extra_chances if override is not None else 0
