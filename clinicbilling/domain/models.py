from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class UtcDateTime(TypeDecorator):
    # Store UTC and always hand back aware datetimes, including on SQLite.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted; pass an aware UTC datetime")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # A clinic holds at most one open subscription; cancelled records stay as history.
        Index(
            "uq_subscriptions_tenant_open",
            "tenant_id",
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
    )

    # One lifecycle record per clinic; tier here is what entitlement checks read.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    tier: Mapped[str] = mapped_column(String)
    intelligence_addon: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    billing_cycle: Mapped[str] = mapped_column(String)
    current_period_start: Mapped[datetime] = mapped_column(UtcDateTime)
    current_period_end: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    # Amount charged for the current tier and cycle, locked at payment time.
    price_at_snapshot: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String, default="INR")
    auto_pay_enabled: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    grace_started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True, index=True)
    # Gateway-issued token only; card data never reaches this service.
    payment_method_token: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_method_type: Mapped[str | None] = mapped_column(String, nullable=True)
    tier_selected: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    # Consecutive gateway transport failures for the current renewal.
    renewal_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    last_renewal_error: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=utc_now, onupdate=utc_now, server_default=func.now()
    )

    # Stale writes fail with StaleDataError instead of silently overwriting.
    __mapper_args__ = {"version_id_col": version}


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # At most one paid payment per gateway id, enforced below the application check.
        Index(
            "uq_payments_gateway_paid",
            "gateway_payment_id",
            unique=True,
            postgresql_where=text("status = 'paid'"),
            sqlite_where=text("status = 'paid'"),
        ),
        Index("ix_payments_subscription_created", "subscription_id", "created_at"),
    )

    # Append-only ledger; rows are never updated after insert.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subscription_id: Mapped[str] = mapped_column(String, ForeignKey("subscriptions.id"))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String, default="manual")
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    tier: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())


class TenantFeatureOverride(Base):
    __tablename__ = "tenant_feature_overrides"

    # Operator overrides win over tier-derived access in both directions.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    feature_key: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=utc_now, onupdate=utc_now, server_default=func.now()
    )


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    # Transition history written in the same transaction as the state change.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    subscription_id: Mapped[str] = mapped_column(String, ForeignKey("subscriptions.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    from_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    to_tier: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())
