from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Enum, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TokenStatus(str, enum.Enum):
    ACTIVE = "active"
    INVALID = "invalid"
    REVOKED = "revoked"


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class WebhookEventStatus(str, enum.Enum):
    PROCESSED = "processed"
    FAILED = "failed"


class Merchant(Base):
    """
    One connected shop/user pairing.

    `access_token` is a secret: it is only read server-side and must never be
    serialized into a response or a log line.
    """

    __tablename__ = "shopify_merchants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    shop_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    access_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    scopes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_status: Mapped[TokenStatus] = mapped_column(
        Enum(TokenStatus, native_enum=False), default=TokenStatus.ACTIVE
    )
    token_last_validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False), default=SubscriptionStatus.TRIAL
    )
    charge_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    trial_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    trial_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return (
            f"Merchant(id={self.id!r}, user_id={self.user_id!r}, shop_domain={self.shop_domain!r}, "
            f"token_status={self.token_status!r}, subscription_status={self.subscription_status!r})"
        )


class WebhookEvent(Base):
    """
    Append-only webhook ledger.

    A row's existence is the idempotency signal for its `webhook_id`; rows
    are never updated after insertion.
    """

    __tablename__ = "shopify_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    webhook_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True, index=True)
    shop_domain: Mapped[str] = mapped_column(String(255), index=True)
    topic: Mapped[str] = mapped_column(String(128), index=True)
    status: Mapped[WebhookEventStatus] = mapped_column(Enum(WebhookEventStatus, native_enum=False))
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


Index("ix_shopify_merchants_shop_token_status", Merchant.shop_domain, Merchant.token_status)
