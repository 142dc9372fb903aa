from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    Merchant,
    SubscriptionStatus,
    TokenStatus,
    WebhookEvent,
    WebhookEventStatus,
)


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even when the column is declared
    with DateTime(timezone=True). Treat naive values as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc_aware(now) if now else datetime.now(timezone.utc)


class MerchantStateError(RuntimeError):
    pass


class ShopifyRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Merchants

    def get_merchant(self, user_id: str) -> Optional[Merchant]:
        key = str(user_id or "").strip()
        if not key:
            return None
        return self.session.scalar(select(Merchant).where(Merchant.user_id == key))

    def list_merchants_by_shop(self, shop_domain: str) -> list[Merchant]:
        normalized = str(shop_domain or "").strip().lower()
        if not normalized:
            return []
        query = select(Merchant).where(Merchant.shop_domain == normalized).order_by(Merchant.updated_at.desc())
        return list(self.session.scalars(query).all())

    def get_active_merchant_by_shop(self, shop_domain: str) -> Optional[Merchant]:
        for merchant in self.list_merchants_by_shop(shop_domain):
            if merchant.token_status == TokenStatus.ACTIVE:
                return merchant
        return None

    def create_merchant(
        self,
        user_id: str,
        *,
        trial_days: int = 14,
        now: Optional[datetime] = None,
    ) -> Merchant:
        key = str(user_id or "").strip()
        if not key:
            raise MerchantStateError("user_id is required")
        if self.get_merchant(key) is not None:
            raise MerchantStateError(f"merchant already exists: {key}")
        current = _now(now)
        merchant = Merchant(
            user_id=key,
            token_status=TokenStatus.ACTIVE,
            subscription_status=SubscriptionStatus.TRIAL,
            trial_start=current,
            trial_end=current + timedelta(days=max(0, int(trial_days))),
            created_at=current,
            updated_at=current,
        )
        self.session.add(merchant)
        self.session.flush()
        return merchant

    def get_or_create_merchant(
        self,
        user_id: str,
        *,
        trial_days: int = 14,
        now: Optional[datetime] = None,
    ) -> Merchant:
        existing = self.get_merchant(user_id)
        if existing is not None:
            return existing
        return self.create_merchant(user_id, trial_days=trial_days, now=now)

    def connect_shop(
        self,
        user_id: str,
        *,
        shop_domain: str,
        access_token: str,
        scopes: Optional[str] = None,
        trial_days: int = 14,
        now: Optional[datetime] = None,
    ) -> Merchant:
        """
        Store a freshly exchanged token on the user's merchant row.

        Any other merchant still holding an active token for the same shop is
        demoted to revoked, so a domain has at most one active holder.
        """

        normalized_shop = str(shop_domain or "").strip().lower()
        if not normalized_shop:
            raise MerchantStateError("shop_domain is required")
        if not access_token:
            raise MerchantStateError("access_token is required")
        current = _now(now)
        merchant = self.get_or_create_merchant(user_id, trial_days=trial_days, now=current)

        self.session.execute(
            update(Merchant)
            .where(
                Merchant.shop_domain == normalized_shop,
                Merchant.token_status == TokenStatus.ACTIVE,
                Merchant.id != merchant.id,
            )
            .values(access_token=None, token_status=TokenStatus.REVOKED, updated_at=current)
            .execution_options(synchronize_session="fetch")
        )

        merchant.shop_domain = normalized_shop
        merchant.access_token = access_token
        merchant.scopes = scopes or None
        merchant.token_status = TokenStatus.ACTIVE
        merchant.token_last_validated_at = current
        merchant.updated_at = current
        self.session.flush()
        return merchant

    def activate_subscription(self, user_id: str, *, charge_id: str, now: Optional[datetime] = None) -> Merchant:
        merchant = self.get_merchant(user_id)
        if merchant is None:
            raise MerchantStateError(f"merchant not found: {user_id}")
        merchant.subscription_status = SubscriptionStatus.ACTIVE
        merchant.charge_id = str(charge_id)
        merchant.updated_at = _now(now)
        self.session.flush()
        return merchant

    def set_subscription_status(
        self,
        user_id: str,
        status: SubscriptionStatus,
        *,
        now: Optional[datetime] = None,
    ) -> Merchant:
        merchant = self.get_merchant(user_id)
        if merchant is None:
            raise MerchantStateError(f"merchant not found: {user_id}")
        merchant.subscription_status = status
        merchant.updated_at = _now(now)
        self.session.flush()
        return merchant

    def mark_token_invalid(self, user_id: str, *, now: Optional[datetime] = None) -> Optional[Merchant]:
        merchant = self.get_merchant(user_id)
        if merchant is None:
            return None
        current = _now(now)
        merchant.token_status = TokenStatus.INVALID
        merchant.token_last_validated_at = current
        merchant.updated_at = current
        self.session.flush()
        return merchant

    def touch_token_validated(self, user_id: str, *, now: Optional[datetime] = None) -> Optional[Merchant]:
        merchant = self.get_merchant(user_id)
        if merchant is None:
            return None
        merchant.token_last_validated_at = _now(now)
        self.session.flush()
        return merchant

    def revoke_shop_tokens(self, shop_domain: str, *, now: Optional[datetime] = None) -> int:
        """Clear tokens for the shop. Rows already revoked are left untouched."""

        normalized = str(shop_domain or "").strip().lower()
        if not normalized:
            return 0
        current = _now(now)
        result = self.session.execute(
            update(Merchant)
            .where(Merchant.shop_domain == normalized, Merchant.token_status != TokenStatus.REVOKED)
            .values(
                access_token=None,
                token_status=TokenStatus.REVOKED,
                token_last_validated_at=current,
                updated_at=current,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return int(result.rowcount or 0)

    def purge_shop_data(self, shop_domain: str, *, now: Optional[datetime] = None) -> int:
        """
        Remove shop-scoped platform data held for the domain.

        Runs inside a SAVEPOINT so a partial purge never commits. Credentials
        and subscription state are left to their owners (token revocation and
        billing); re-running on an already purged shop is a no-op.
        """

        normalized = str(shop_domain or "").strip().lower()
        if not normalized:
            return 0
        current = _now(now)
        with self.session.begin_nested():
            result = self.session.execute(
                update(Merchant)
                .where(
                    Merchant.shop_domain == normalized,
                    (Merchant.scopes.is_not(None)) | (Merchant.charge_id.is_not(None)),
                )
                .values(scopes=None, charge_id=None, updated_at=current)
                .execution_options(synchronize_session="fetch")
            )
        return int(result.rowcount or 0)

    # Webhook ledger

    def get_webhook_event(self, webhook_id: str) -> Optional[WebhookEvent]:
        key = str(webhook_id or "").strip()
        if not key:
            return None
        return self.session.scalar(select(WebhookEvent).where(WebhookEvent.webhook_id == key))

    def record_webhook_event(
        self,
        *,
        webhook_id: Optional[str],
        shop_domain: str,
        topic: str,
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Append a ledger row.

        Returns False when the unique constraint on `webhook_id` rejects the
        insert: a concurrent delivery already recorded the event.
        """

        event = WebhookEvent(
            webhook_id=str(webhook_id).strip() or None if webhook_id else None,
            shop_domain=str(shop_domain or "").strip().lower(),
            topic=str(topic or "").strip(),
            status=status,
            error_message=error_message,
            created_at=_now(now),
        )
        try:
            with self.session.begin_nested():
                self.session.add(event)
                self.session.flush()
        except IntegrityError:
            return False
        return True

    def list_webhook_events(
        self,
        *,
        webhook_id: Optional[str] = None,
        shop_domain: Optional[str] = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        query = select(WebhookEvent).order_by(WebhookEvent.created_at.asc())
        if webhook_id:
            query = query.where(WebhookEvent.webhook_id == str(webhook_id).strip())
        if shop_domain:
            query = query.where(WebhookEvent.shop_domain == str(shop_domain).strip().lower())
        query = query.limit(max(1, int(limit)))
        return list(self.session.scalars(query).all())
