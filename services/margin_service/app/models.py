"""SQLAlchemy models for the margin service."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for margin ORM models."""


class MarginRule(Base):
    __tablename__ = "margin_rules"
    __table_args__ = (
        UniqueConstraint("name", name="uq_margin_rule_name"),
        Index("ix_margin_rules_status_priority", "status", "priority"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    calculation_type: Mapped[str] = mapped_column(String(16), nullable=False, default="percentage")
    # Percent stored in hundredths of a percent, money in minor units.
    percent_basis_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    fixed_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    conditions_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    applied_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_revenue_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class HotelLocation(Base):
    """Country/city pairs of the hotels the platform sells."""

    __tablename__ = "hotel_locations"
    __table_args__ = (UniqueConstraint("country_code", "city", name="uq_hotel_location"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False, index=True)
    city: Mapped[str] = mapped_column(String(128), nullable=False)


class MarginApplication(Base):
    """One recorded margin per booking; the unique booking id makes recording idempotent."""

    __tablename__ = "margin_applications"
    __table_args__ = (UniqueConstraint("booking_id", name="uq_margin_application_booking"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Null when the booking was priced with the default margin.
    rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    margin_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
