"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Profile(Base):
    """
    ORM model for profiles table.

    One row per account: identity, tier and one-shot flags.
    """

    __tablename__ = "profiles"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Identity
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    # Plan
    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")

    # Preferences
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Europe/London")

    # Referrals
    referral_code: Mapped[str] = mapped_column(String(32), nullable=False)

    # Sell wizard first-item-free pass
    first_item_pass_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("email", name="uq_profiles_email"),
        UniqueConstraint("referral_code", name="uq_profiles_referral_code"),
        Index("idx_profiles_subscription_tier", "subscription_tier"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Profile(id={self.id}, email={self.email}, tier={self.subscription_tier})>"


class UsageCredits(Base):
    """
    ORM model for usage_credits table.

    The usage ledger: labelled counters pooled against one credits_limit.
    Counters only move through atomic UPDATE statements.
    """

    __tablename__ = "usage_credits"

    # Primary Key (one ledger per account)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        primary_key=True,
    )

    # Counters
    price_checks_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    optimizations_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vintography_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ceiling (tier allotment plus packs, referrals and promotions)
    credits_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=5)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price_checks_used >= 0", name="ck_price_checks_non_negative"),
        CheckConstraint("optimizations_used >= 0", name="ck_optimizations_non_negative"),
        CheckConstraint("vintography_used >= 0", name="ck_vintography_non_negative"),
        CheckConstraint("credits_limit >= 0", name="ck_credits_limit_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        used = self.price_checks_used + self.optimizations_used + self.vintography_used
        return f"<UsageCredits(user_id={self.user_id}, used={used}, limit={self.credits_limit})>"


class PaymentEventRecord(Base):
    """
    ORM model for payment_events table.

    Dedup ledger for at-least-once webhook delivery. A row is inserted in
    the same transaction as the change it guards.
    """

    __tablename__ = "payment_events"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Dedup key (event:<id> or credit_pack:<transaction id>)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)

    # Event details
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Audit timestamp
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_payment_events_dedup_key"),
        Index("idx_payment_events_account_id", "account_id"),
        Index("idx_payment_events_applied_at", "applied_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<PaymentEventRecord(dedup_key={self.dedup_key}, type={self.event_type})>"


class Referral(Base):
    """
    ORM model for referrals table.

    An account can be referred at most once.
    """

    __tablename__ = "referrals"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    referrer_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    referee_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    referral_code: Mapped[str] = mapped_column(String(32), nullable=False)
    credits_awarded: Mapped[int] = mapped_column(Integer, nullable=False)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("referee_id", name="uq_referrals_referee"),
        CheckConstraint("referrer_id <> referee_id", name="ck_referrals_not_self"),
        CheckConstraint("credits_awarded >= 0", name="ck_referrals_credits_non_negative"),
        Index("idx_referrals_referrer_id", "referrer_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Referral(referrer={self.referrer_id}, referee={self.referee_id})>"
