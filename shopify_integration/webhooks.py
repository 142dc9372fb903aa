from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Final, Mapping, Optional

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .domains import clean_shop_domain
from .models import WebhookEventStatus
from .repository import ShopifyRepository
from .tokens import TokenLifecycleManager

HEADER_SHOP_DOMAIN: Final[str] = "x-shopify-shop-domain"
HEADER_HMAC: Final[str] = "x-shopify-hmac-sha256"
HEADER_TOPIC: Final[str] = "x-shopify-topic"
HEADER_WEBHOOK_ID: Final[str] = "x-shopify-webhook-id"
_REQUIRED_HEADERS: Final[tuple[str, ...]] = (HEADER_SHOP_DOMAIN, HEADER_HMAC, HEADER_TOPIC)

TOPIC_APP_UNINSTALLED: Final[str] = "app/uninstalled"

_LOGGER = get_logger("lynkscope.shopify.webhooks")

ShopPurger = Callable[[str], Any]


def compute_webhook_hmac(payload: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as sent in `X-Shopify-Hmac-Sha256`."""

    digest = hmac.new(str(secret or "").encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_hmac(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify a webhook signature over the raw request bytes.

    - Accepts the platform's base64 digest or a hex digest.
    - Constant-time compare: uses `hmac.compare_digest` on the decoded bytes.
    """

    secret_key = str(secret or "").encode("utf-8")
    provided = str(signature or "").strip()
    if not secret_key or not provided:
        return False
    expected = hmac.new(secret_key, payload, hashlib.sha256).digest()

    candidates: list[bytes] = []
    try:
        candidates.append(base64.b64decode(provided, validate=True))
    except (binascii.Error, ValueError):
        pass
    try:
        candidates.append(bytes.fromhex(provided))
    except ValueError:
        pass
    return any(hmac.compare_digest(expected, candidate) for candidate in candidates)


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class WebhookIngester:
    """
    Verifies, de-duplicates and dispatches platform webhooks.

    Deliveries are at-least-once; a ledger row keyed by `webhook_id` makes
    processing at-most-once. Nothing is parsed or recorded before the
    signature over the raw body checks out.
    """

    def __init__(
        self,
        secret: str,
        tokens: TokenLifecycleManager,
        session_factory: Optional[SessionFactory] = None,
        *,
        purge_shop_data: Optional[ShopPurger] = None,
    ) -> None:
        self._secret = secret
        self.tokens = tokens
        self.session_factory = session_factory
        self._purge = purge_shop_data or self._purge_from_store

    def _purge_from_store(self, shop_domain: str) -> int:
        with session_scope(self.session_factory) as session:
            return ShopifyRepository(session).purge_shop_data(shop_domain)

    def handle(self, method: str, headers: Mapping[str, str], raw_body: bytes) -> WebhookOutcome:
        if str(method or "").upper() != "POST":
            return WebhookOutcome(405, {"error": "method not allowed"})

        lowered = {str(key).lower(): str(value) for key, value in headers.items()}
        missing = [name for name in _REQUIRED_HEADERS if not lowered.get(name, "").strip()]
        if missing:
            return WebhookOutcome(400, {"error": "missing required headers", "missing": missing})

        if not verify_webhook_hmac(raw_body, lowered[HEADER_HMAC], self._secret):
            log_event(
                _LOGGER,
                logging.WARNING,
                "shopify.webhook.signature_rejected",
                shop_domain=lowered[HEADER_SHOP_DOMAIN],
                topic=lowered[HEADER_TOPIC],
            )
            return WebhookOutcome(403, {"error": "invalid signature"})

        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body else {}
        except (UnicodeDecodeError, ValueError):
            return WebhookOutcome(400, {"error": "invalid JSON"})

        shop_domain = clean_shop_domain(lowered[HEADER_SHOP_DOMAIN])
        if shop_domain is None:
            return WebhookOutcome(400, {"error": "invalid shop domain"})

        topic = lowered[HEADER_TOPIC].strip()
        webhook_id = lowered.get(HEADER_WEBHOOK_ID, "").strip() or None

        if webhook_id:
            with session_scope(self.session_factory) as session:
                seen = ShopifyRepository(session).get_webhook_event(webhook_id) is not None
            if seen:
                log_event(
                    _LOGGER,
                    logging.INFO,
                    "shopify.webhook.duplicate",
                    webhook_id=webhook_id,
                    shop_domain=shop_domain,
                    topic=topic,
                )
                return WebhookOutcome(200, {"received": True, "note": "already processed"})

        try:
            self._dispatch(topic, shop_domain, payload)
        except Exception as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "shopify.webhook.failed",
                webhook_id=webhook_id,
                shop_domain=shop_domain,
                topic=topic,
                error=str(exc),
            )
            self._record(webhook_id, shop_domain, topic, WebhookEventStatus.FAILED, error_message=str(exc))
            return WebhookOutcome(500, {"error": "processing failed"})

        self._record(webhook_id, shop_domain, topic, WebhookEventStatus.PROCESSED)
        log_event(
            _LOGGER,
            logging.INFO,
            "shopify.webhook.processed",
            webhook_id=webhook_id,
            shop_domain=shop_domain,
            topic=topic,
        )
        return WebhookOutcome(200, {"received": True})

    def _dispatch(self, topic: str, shop_domain: str, payload: Any) -> None:
        _ = payload
        if topic == TOPIC_APP_UNINSTALLED:
            self._purge(shop_domain)
            self.tokens.revoke(shop_domain)
            return
        log_event(_LOGGER, logging.INFO, "shopify.webhook.ignored", shop_domain=shop_domain, topic=topic)

    def _record(
        self,
        webhook_id: Optional[str],
        shop_domain: str,
        topic: str,
        status: WebhookEventStatus,
        *,
        error_message: Optional[str] = None,
    ) -> None:
        with session_scope(self.session_factory) as session:
            inserted = ShopifyRepository(session).record_webhook_event(
                webhook_id=webhook_id,
                shop_domain=shop_domain,
                topic=topic,
                status=status,
                error_message=error_message,
            )
        if not inserted:
            log_event(
                _LOGGER,
                logging.INFO,
                "shopify.webhook.already_recorded",
                webhook_id=webhook_id,
                shop_domain=shop_domain,
                topic=topic,
            )
