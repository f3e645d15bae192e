"""Prize rows, one table with a row per prize and a subclass per prize type."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE, UTCDateTime

if TYPE_CHECKING:
    from .campaign import Campaign


class Prize(Base):
    """Common columns of every prize.

    ``stock`` and ``winners_count`` are only ever changed by the inventory
    allocator through guarded ``UPDATE`` statements.
    """

    __tablename__ = "prizes"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    prize_key: Mapped[str] = mapped_column(String(64), nullable=False)
    """Campaign-unique identifier copied onto participation records."""

    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    rank: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    probability: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    """Weight inside the won branch. Missing or zero means never selected."""

    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlimited_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    winners_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    valid_to: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    is_consolation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    campaign: Mapped["Campaign"] = relationship(back_populates="prizes")

    __mapper_args__ = {"polymorphic_on": "type"}

    __table_args__ = (
        UniqueConstraint("campaign_id", "prize_key", name="uq_prize_campaign_key"),
        Index("ix_prizes_campaign_position", "campaign_id", "position"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<{self.__class__.__name__}(id={self.id}, key='{self.prize_key}', "
            f"stock={self.stock}, unlimited={self.unlimited_stock}, "
            f"winners={self.winners_count})>"
        )

    @classmethod
    def get_by_key(
        cls, session: Session, campaign_id: int, prize_key: str
    ) -> Optional["Prize"]:
        """Fetch a campaign's prize by its public key."""

        stmt = select(Prize).where(
            Prize.campaign_id == campaign_id, Prize.prize_key == prize_key
        )
        return session.scalar(stmt)


class ECouponPrize(Prize):
    """Electronic coupon redeemable at one of ``available_stores``."""

    coupon_terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    available_stores: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    coupon_usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    prevent_reusing_at_same_store: Mapped[Optional[bool]] = mapped_column(
        Boolean, nullable=True
    )

    __mapper_args__ = {"polymorphic_identity": "e-coupon"}


class UrlPrize(Prize):
    """A link handed to the winner.

    Finite URL prizes hand out one pooled :class:`PrizeUrl` per winner and keep
    ``stock`` equal to the number of unassigned URLs. Unlimited ones give every
    winner ``shared_url``.
    """

    shared_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    urls: Mapped[list["PrizeUrl"]] = relationship(
        back_populates="prize",
        cascade="all, delete-orphan",
        order_by="PrizeUrl.id",
    )

    __mapper_args__ = {"polymorphic_identity": "url"}

    def add_urls(self, urls: list[str]) -> int:
        """Append non-blank ``urls`` to the pool and grow ``stock`` to match.

        Returns the number of URLs added.
        """
        cleaned = [u.strip() for u in urls if u and u.strip()]
        for url in cleaned:
            self.urls.append(PrizeUrl(url=url))
        self.stock = (self.stock or 0) + len(cleaned)
        return len(cleaned)


class MailDeliveryPrize(Prize):
    """Physical prize shipped to an address captured after the win."""

    shipping_fields: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    """``[{"id", "label", "enabled", "required"}]``."""

    __mapper_args__ = {"polymorphic_identity": "mail-delivery"}


class PrizeUrl(Base):
    """One single-use URL in a :class:`UrlPrize` pool."""

    __tablename__ = "prize_urls"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    prize_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("prizes.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    assigned_user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    prize: Mapped["UrlPrize"] = relationship(back_populates="urls")

    __table_args__ = (Index("ix_prize_urls_prize_assigned", "prize_id", "assigned_at"),)

    @classmethod
    def count_unassigned(cls, session: Session, prize_id: int) -> int:
        stmt = select(func.count(cls.id)).where(
            cls.prize_id == prize_id, cls.assigned_at.is_(None)
        )
        return int(session.scalar(stmt) or 0)


PRIZE_TYPES = {
    "e-coupon": ECouponPrize,
    "url": UrlPrize,
    "mail-delivery": MailDeliveryPrize,
}
