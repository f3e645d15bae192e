"""Campaign configuration rows read by the draw engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    Float,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .base import Base
from .id_type import ID_TYPE, UTCDateTime

if TYPE_CHECKING:
    from .grants import EventToken, ParticipationTicket
    from .prize import Prize


class Campaign(Base):
    """An instant-win campaign and the rules its draws are evaluated with."""

    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    """One of ``draft``, ``published`` or ``archived``."""

    application_start: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    application_end: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    overall_win_probability: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True
    )
    """Chance (0-100) that a draw enters the prize branch. ``None`` means 100."""

    participation_limit_per_user: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    """Draws per user; ``0`` is unlimited unless ticket/approval gating applies."""

    participation_interval_hours: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    participation_interval_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    prevent_duplicate_prizes: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    out_of_stock_behavior: Mapped[str] = mapped_column(
        String(32), nullable=False, default="show_loss"
    )
    """``show_loss`` keeps drawing (losses) or ``prevent_participation`` refuses draws."""

    consolation_on_loss: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    consolation_on_exhausted_stock: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    require_ticket: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    require_form_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    approval_form_fields: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    """``[{"id", "label", "type", "required"}]`` shown on the approval request form."""

    questionnaire_fields: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    """``[{"id", "question", "type", "options", "required"}]`` asked before a first draw."""

    event_mode_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    event_chances_to_grant: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    prizes: Mapped[list["Prize"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="Prize.position",
    )
    tickets: Mapped[list["ParticipationTicket"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan"
    )
    event_tokens: Mapped[list["EventToken"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Campaign(id={self.id}, name='{self.name}', status='{self.status}', "
            f"overall_win_probability={self.overall_win_probability})>"
        )

    @property
    def main_prizes(self) -> list["Prize"]:
        """Regular prizes in display order."""
        return [p for p in self.prizes if not p.is_consolation]

    @property
    def consolation_prize(self) -> Optional["Prize"]:
        for prize in self.prizes:
            if prize.is_consolation:
                return prize
        return None

    @classmethod
    def get(cls, session: Session, campaign_id: int) -> Optional["Campaign"]:
        """Fetch a campaign by primary key."""

        return session.get(cls, campaign_id)
