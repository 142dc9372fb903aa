from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

from config import ShopifySettings
from observability import get_logger, log_event

from .client import ShopifyApiClient
from .db import SessionFactory, session_scope
from .domains import normalize_shop_domain
from .errors import InvalidState, RequestExpired, ShopNotConnected, SignatureError
from .repository import ShopifyRepository

CALLBACK_TIMESTAMP_TOLERANCE_SECONDS = 300
_CALLBACK_UNSIGNED_PARAMS = frozenset({"hmac", "signature"})

_LOGGER = get_logger("lynkscope.shopify.oauth")


@dataclass(frozen=True)
class InstallLink:
    install_url: str
    shop: str


@dataclass(frozen=True)
class OAuthState:
    user_id: str
    issued_at_ms: int
    nonce: str


@dataclass(frozen=True)
class ShopConnection:
    user_id: str
    shop_domain: str
    scopes: Optional[str] = None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _canonical_state_payload(user_id: str, issued_at_ms: int, nonce: str) -> bytes:
    body = {"userId": user_id, "issuedAt": issued_at_ms, "nonce": nonce}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_callback_hmac(query_params: Mapping[str, Any], secret: str) -> str:
    """
    Hex HMAC-SHA256 over the callback query string.

    `hmac` and `signature` are excluded; the remaining params are sorted by
    key and joined as `k=v&k=v`.
    """

    message = "&".join(
        f"{key}={query_params[key]}" for key in sorted(query_params) if key not in _CALLBACK_UNSIGNED_PARAMS
    )
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class OAuthConnector:
    def __init__(
        self,
        settings: ShopifySettings,
        client: ShopifyApiClient,
        session_factory: Optional[SessionFactory] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.client = client
        self.session_factory = session_factory
        self._clock = clock

    # State

    def encode_state(self, user_id: str) -> str:
        issued_at_ms = int(self._clock() * 1000)
        nonce = secrets.token_urlsafe(16)
        body: Dict[str, Any] = {"userId": user_id, "issuedAt": issued_at_ms, "nonce": nonce}
        if self.settings.sign_state:
            body["sig"] = self._state_tag(user_id, issued_at_ms, nonce)
        return _b64url_encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))

    def _state_tag(self, user_id: str, issued_at_ms: int, nonce: str) -> str:
        payload = _canonical_state_payload(user_id, issued_at_ms, nonce)
        return hmac.new(self.settings.client_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def decode_state(self, state: str) -> OAuthState:
        raw = str(state or "").strip()
        if not raw:
            raise InvalidState("missing state")
        try:
            body = json.loads(_b64url_decode(raw).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise InvalidState("malformed state") from exc
        if not isinstance(body, dict):
            raise InvalidState("malformed state")

        user_id = str(body.get("userId") or "").strip()
        nonce = str(body.get("nonce") or "").strip()
        issued_at = body.get("issuedAt")
        if not user_id or not nonce or isinstance(issued_at, bool) or not isinstance(issued_at, (int, float)):
            raise InvalidState("state is missing required fields")
        if isinstance(issued_at, float) and not math.isfinite(issued_at):
            raise InvalidState("state issuedAt is not a finite number")
        issued_at_ms = int(issued_at)

        if self.settings.sign_state:
            provided = str(body.get("sig") or "")
            expected = self._state_tag(user_id, issued_at_ms, nonce)
            if not provided or not hmac.compare_digest(expected, provided):
                raise InvalidState("state signature mismatch")

        now_ms = int(self._clock() * 1000)
        if issued_at_ms > now_ms:
            raise InvalidState("state issued in the future")
        if now_ms - issued_at_ms > self.settings.state_max_age_seconds * 1000:
            raise RequestExpired("state expired")
        return OAuthState(user_id=user_id, issued_at_ms=issued_at_ms, nonce=nonce)

    # Install links

    def build_install_url(self, user_id: str, raw_shop_domain: str) -> InstallLink:
        shop = normalize_shop_domain(raw_shop_domain)
        query = urlencode(
            {
                "client_id": self.settings.client_id,
                "scope": self.settings.scopes,
                "redirect_uri": self.settings.oauth_redirect_uri,
                "state": self.encode_state(user_id),
            }
        )
        return InstallLink(install_url=f"https://{shop}/admin/oauth/authorize?{query}", shop=shop)

    def build_reauthorize_url(self, user_id: str) -> InstallLink:
        with session_scope(self.session_factory) as session:
            merchant = ShopifyRepository(session).get_merchant(user_id)
            shop_domain = merchant.shop_domain if merchant is not None else None
        if not shop_domain:
            raise ShopNotConnected("no shop connected for this account")
        return self.build_install_url(user_id, shop_domain)

    # Callback

    def verify_callback_hmac(self, query_params: Mapping[str, Any]) -> None:
        provided = str(query_params.get("hmac") or "").strip().lower()
        if not provided:
            raise SignatureError("callback is missing hmac")
        expected = compute_callback_hmac(query_params, self.settings.client_secret)
        if not hmac.compare_digest(expected, provided):
            raise SignatureError("callback hmac mismatch")

    def verify_callback_timestamp(self, timestamp: Any) -> None:
        try:
            issued = int(str(timestamp).strip())
        except (TypeError, ValueError) as exc:
            raise RequestExpired("callback timestamp is missing or malformed") from exc
        if abs(self._clock() - issued) > CALLBACK_TIMESTAMP_TOLERANCE_SECONDS:
            raise RequestExpired("callback timestamp outside tolerance")

    def handle_callback(
        self,
        code: str,
        shop: str,
        state: str,
        query_params: Optional[Mapping[str, Any]] = None,
    ) -> ShopConnection:
        """
        Complete an install: verify, exchange the code once, persist the shop.

        With `query_params` the HMAC is always checked; the timestamp window
        only applies when the callback carries a timestamp, since the HMAC
        already covers every parameter that was sent.
        """

        if query_params is not None:
            self.verify_callback_hmac(query_params)
            timestamp = query_params.get("timestamp")
            if timestamp not in {None, ""}:
                self.verify_callback_timestamp(timestamp)

        shop_domain = normalize_shop_domain(shop)
        decoded = self.decode_state(state)
        if not str(code or "").strip():
            raise InvalidState("missing authorization code")

        grant = self.client.exchange_access_token(shop_domain, code)

        with session_scope(self.session_factory) as session:
            ShopifyRepository(session).connect_shop(
                decoded.user_id,
                shop_domain=shop_domain,
                access_token=grant.access_token,
                scopes=grant.scope,
                trial_days=self.settings.trial_days,
            )
        log_event(
            _LOGGER,
            logging.INFO,
            "shopify.oauth.connected",
            user_id=decoded.user_id,
            shop_domain=shop_domain,
            scopes=grant.scope,
        )
        return ShopConnection(user_id=decoded.user_id, shop_domain=shop_domain, scopes=grant.scope)
