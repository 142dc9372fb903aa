from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlencode

from config import ShopifySettings
from observability import get_logger, log_event

from .client import ChargeRequest, ShopifyApiClient
from .db import SessionFactory, session_scope
from .errors import MerchantNotFound, ShopNotConnected, ValidationError
from .models import SubscriptionStatus, TokenStatus
from .repository import ShopifyRepository

_LOGGER = get_logger("lynkscope.shopify.billing")
_FINAL_SUBSCRIPTION_STATES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


@dataclass(frozen=True)
class ChargeCreated:
    charge_id: str
    confirmation_url: str


@dataclass(frozen=True)
class NeedsConnection:
    reason: str = "shop not connected"


@dataclass(frozen=True)
class ConfirmResult:
    user_id: str
    charge_id: str
    subscription_status: SubscriptionStatus


@dataclass(frozen=True)
class CancelResult:
    remote_cancelled: bool
    already_cancelled: bool = False


@dataclass(frozen=True)
class _ConnectedShop:
    shop_domain: str
    access_token: str
    charge_id: Optional[str]
    subscription_status: SubscriptionStatus


def _is_numeric_id(value: Optional[str]) -> bool:
    raw = str(value or "").strip()
    return bool(raw) and raw.isdigit()


class BillingOrchestrator:
    """
    Recurring-charge lifecycle for a merchant.

    `create_charge` only talks to the platform; nothing is persisted until
    `confirm_charge` succeeds remotely. `cancel` always lands the merchant in
    `cancelled`, whatever the remote call does.
    """

    def __init__(
        self,
        settings: ShopifySettings,
        client: ShopifyApiClient,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.session_factory = session_factory

    def _load_connected(self, user_id: str) -> Optional[_ConnectedShop]:
        with session_scope(self.session_factory) as session:
            merchant = ShopifyRepository(session).get_merchant(user_id)
            if merchant is None or not merchant.shop_domain or not merchant.access_token:
                return None
            if merchant.token_status != TokenStatus.ACTIVE:
                return None
            return _ConnectedShop(
                shop_domain=merchant.shop_domain,
                access_token=merchant.access_token,
                charge_id=merchant.charge_id,
                subscription_status=merchant.subscription_status,
            )

    def confirm_return_url(self, user_id: str) -> str:
        return f"{self.settings.confirm_charge_url}?{urlencode({'user_id': user_id})}"

    def create_charge(self, user_id: str, return_url: Optional[str] = None) -> Union[ChargeCreated, NeedsConnection]:
        connected = self._load_connected(user_id)
        if connected is None:
            return NeedsConnection()

        request = ChargeRequest(
            name=self.settings.plan_name,
            price=self.settings.plan_price,
            return_url=return_url or self.confirm_return_url(user_id),
            trial_days=0,
            test=self.settings.test_mode,
        )
        created = self.client.create_recurring_charge(connected.shop_domain, connected.access_token, request)
        log_event(
            _LOGGER,
            logging.INFO,
            "shopify.billing.charge_created",
            user_id=user_id,
            shop_domain=connected.shop_domain,
            charge_id=created.charge_id,
            test=request.test,
        )
        return ChargeCreated(charge_id=created.charge_id, confirmation_url=created.confirmation_url)

    def confirm_charge(self, charge_id: str, user_id: str) -> ConfirmResult:
        connected = self._load_connected(user_id)
        if connected is None:
            raise ShopNotConnected("no connected shop for this account")
        if not _is_numeric_id(charge_id):
            raise ValidationError("charge_id must be numeric")
        normalized_charge_id = str(charge_id).strip()

        self.client.activate_recurring_charge(connected.shop_domain, connected.access_token, normalized_charge_id)

        with session_scope(self.session_factory) as session:
            merchant = ShopifyRepository(session).activate_subscription(user_id, charge_id=normalized_charge_id)
            status = merchant.subscription_status
        log_event(
            _LOGGER,
            logging.INFO,
            "shopify.billing.subscription_activated",
            user_id=user_id,
            shop_domain=connected.shop_domain,
            charge_id=normalized_charge_id,
        )
        return ConfirmResult(user_id=user_id, charge_id=normalized_charge_id, subscription_status=status)

    def cancel(self, user_id: str) -> CancelResult:
        with session_scope(self.session_factory) as session:
            merchant = ShopifyRepository(session).get_merchant(user_id)
            if merchant is None:
                raise MerchantNotFound("no subscription found for this account")
            if merchant.subscription_status in _FINAL_SUBSCRIPTION_STATES:
                return CancelResult(remote_cancelled=False, already_cancelled=True)

        connected = self._load_connected(user_id)
        remote_cancelled = False
        if connected is not None and _is_numeric_id(connected.charge_id):
            try:
                self.client.cancel_recurring_charge(
                    connected.shop_domain,
                    connected.access_token,
                    str(connected.charge_id),
                )
                remote_cancelled = True
            except Exception as exc:  # noqa: BLE001
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "shopify.billing.remote_cancel_failed",
                    user_id=user_id,
                    shop_domain=connected.shop_domain,
                    charge_id=connected.charge_id,
                    error=str(exc),
                )

        with session_scope(self.session_factory) as session:
            ShopifyRepository(session).set_subscription_status(user_id, SubscriptionStatus.CANCELLED)
        log_event(
            _LOGGER,
            logging.INFO,
            "shopify.billing.subscription_cancelled",
            user_id=user_id,
            remote_cancelled=remote_cancelled,
        )
        return CancelResult(remote_cancelled=remote_cancelled)
