"""Sources of extra chances and the markers that make claiming them idempotent."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE, UTCDateTime

if TYPE_CHECKING:
    from .campaign import Campaign


class ClaimedGrant(Base):
    """Existence marker for "``user_id`` already redeemed ``source_key``"."""

    __tablename__ = "claimed_grants"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source_key: Mapped[str] = mapped_column(String(191), nullable=False)
    """``ticket:<id>``, ``event:<token>`` or ``request:<id>``."""

    source_type: Mapped[str] = mapped_column(String(16), nullable=False)
    chances_granted: Mapped[int] = mapped_column(Integer, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint(
            "campaign_id", "user_id", "source_key", name="uq_claimed_grant_source"
        ),
    )

    @classmethod
    def get(
        cls, session: Session, campaign_id: int, user_id: str, source_key: str
    ) -> Optional["ClaimedGrant"]:
        stmt = select(cls).where(
            cls.campaign_id == campaign_id,
            cls.user_id == user_id,
            cls.source_key == source_key,
        )
        return session.scalar(stmt)

    @classmethod
    def has_any(
        cls,
        session: Session,
        campaign_id: int,
        user_id: str,
        source_type: Optional[str] = None,
    ) -> bool:
        stmt = select(cls.id).where(
            cls.campaign_id == campaign_id, cls.user_id == user_id
        )
        if source_type is not None:
            stmt = stmt.where(cls.source_type == source_type)
        return session.scalar(stmt.limit(1)) is not None


class ParticipationTicket(Base):
    """A shareable ticket (usually a QR code) that grants chances once per user."""

    __tablename__ = "participation_tickets"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    chances_to_grant: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    campaign: Mapped["Campaign"] = relationship(back_populates="tickets")

    @classmethod
    def get_by_token(
        cls, session: Session, campaign_id: int, token: str
    ) -> Optional["ParticipationTicket"]:
        stmt = select(cls).where(cls.campaign_id == campaign_id, cls.token == token)
        return session.scalar(stmt)


class EventToken(Base):
    """Short-lived single-use token shown on an event monitor."""

    __tablename__ = "event_tokens"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    chances: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    claimed_by_user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    campaign: Mapped["Campaign"] = relationship(back_populates="event_tokens")

    @classmethod
    def get_by_token(
        cls, session: Session, campaign_id: int, token: str
    ) -> Optional["EventToken"]:
        stmt = select(cls).where(cls.campaign_id == campaign_id, cls.token == token)
        return session.scalar(stmt)

    def is_expired(self, *, reference_time: Optional[datetime] = None) -> bool:
        ref = reference_time or datetime.now(timezone.utc)
        return self.expires_at <= ref


class ParticipationRequest(Base):
    """A participant's application to join a campaign that requires approval."""

    __tablename__ = "participation_requests"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    form_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    """``pending``, ``approved`` or ``rejected``."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    chances_granted: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_participation_requests_campaign_user", "campaign_id", "user_id"),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<ParticipationRequest(id={self.id}, campaign_id={self.campaign_id}, "
            f"user_id='{self.user_id}', status='{self.status}')>"
        )

    @classmethod
    def latest_for_user(
        cls, session: Session, campaign_id: int, user_id: str
    ) -> Optional["ParticipationRequest"]:
        """Most recently created request of ``user_id`` for ``campaign_id``."""

        stmt = (
            select(cls)
            .where(cls.campaign_id == campaign_id, cls.user_id == user_id)
            .order_by(cls.created_at.desc(), cls.id.desc())
            .limit(1)
        )
        return session.scalar(stmt)
