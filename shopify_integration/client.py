from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Final, Optional

import httpx

from config import ShopifySettings
from observability import get_logger, log_event

from .errors import (
    InvalidResponse,
    OAuthExchangeError,
    RateLimitExceeded,
    RemoteAuthError,
    RetryAborted,
    TerminalRemoteError,
    TransientRemoteError,
    ValidationError,
)

RATE_LIMIT_HEADER: Final[str] = "X-Shopify-Shop-Api-Call-Limit"
ACCESS_TOKEN_HEADER: Final[str] = "X-Shopify-Access-Token"
DEFAULT_RETRY_AFTER_SECONDS: Final[float] = 2.0
BACKOFF_BASE_MS: Final[int] = 1000
BACKOFF_CAP_MS: Final[int] = 10000

_LOGGER = get_logger("lynkscope.shopify.client")


@dataclass(frozen=True)
class RateLimitSnapshot:
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass(frozen=True)
class ApiResponse:
    data: Dict[str, Any] = field(default_factory=dict)
    rate_limit: Optional[RateLimitSnapshot] = None


@dataclass(frozen=True)
class ChargeRequest:
    name: str
    price: float
    return_url: str
    trial_days: int = 0
    test: bool = False


@dataclass(frozen=True)
class CreatedCharge:
    charge_id: str
    confirmation_url: str


@dataclass(frozen=True)
class ShopInfo:
    id: str
    name: str
    domain: str


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    scope: Optional[str] = None

    def __repr__(self) -> str:
        return f"AccessGrant(scope={self.scope!r})"


def parse_rate_limit(value: Optional[str]) -> Optional[RateLimitSnapshot]:
    """Parse the `used/limit` call-limit header; anything malformed yields None."""

    raw = str(value or "").strip()
    if "/" not in raw:
        return None
    used_raw, limit_raw = raw.split("/", 1)
    try:
        used = int(used_raw.strip())
        limit = int(limit_raw.strip())
    except ValueError:
        return None
    if used < 0 or limit <= 0:
        return None
    return RateLimitSnapshot(used=used, limit=limit)


def backoff_seconds(attempt: int) -> float:
    delay_ms = min(BACKOFF_BASE_MS * (2 ** max(0, attempt - 1)), BACKOFF_CAP_MS)
    return delay_ms / 1000.0


def _retry_after_seconds(value: Optional[str]) -> float:
    raw = str(value or "").strip()
    if not raw:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        parsed = float(raw)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
    if parsed < 0:
        return DEFAULT_RETRY_AFTER_SECONDS
    return parsed


def _error_detail(resp: httpx.Response) -> str:
    text = resp.text or ""
    try:
        body = resp.json()
    except ValueError:
        return text[:500]
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, dict) and errors.get("message"):
            return str(errors["message"])
        if errors:
            return errors if isinstance(errors, str) else json.dumps(errors, ensure_ascii=False)
        if body.get("message"):
            return str(body["message"])
    return text[:500]


def _require_mapping(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise InvalidResponse(f"response is missing '{key}'")
    return value


class ShopifyApiClient:
    """
    Thin Admin REST client with retry handling.

    429 responses honor `Retry-After`; 5xx and transport failures back off
    exponentially. Other 4xx responses are surfaced on the first attempt.
    The call-limit header is parsed for callers but never used to throttle.

    All waits go through one `threading.Event`, so `shutdown()` interrupts
    any pending backoff with `RetryAborted`.
    """

    def __init__(
        self,
        settings: ShopifySettings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.settings = settings
        self._http = httpx.Client(
            timeout=settings.http_timeout_seconds,
            transport=transport,
            trust_env=False,
        )
        self._stopping = threading.Event()
        self._sleep = sleep

    def _wait(self, seconds: float) -> None:
        if self._stopping.is_set():
            raise RetryAborted("client is shutting down")
        if self._sleep is not None:
            self._sleep(seconds)
            return
        if self._stopping.wait(timeout=max(0.0, seconds)):
            raise RetryAborted("client is shutting down")

    def shutdown(self) -> None:
        self._stopping.set()
        self._http.close()

    close = shutdown

    def api_url(self, shop_domain: str, endpoint: str) -> str:
        path = str(endpoint or "").lstrip("/")
        return f"https://{shop_domain}/admin/api/{self.settings.api_version}/{path}"

    def request(
        self,
        shop_domain: str,
        token: str,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        max_retries: int = 3,
    ) -> ApiResponse:
        if not str(shop_domain or "").strip():
            raise ValidationError("shop_domain is required")
        if not str(token or "").strip():
            raise ValidationError("access token is required")
        if not str(endpoint or "").strip():
            raise ValidationError("endpoint is required")

        url = self.api_url(shop_domain.strip(), endpoint)
        verb = str(method or "GET").upper()
        headers = {
            ACCESS_TOKEN_HEADER: token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        content = json.dumps(body, ensure_ascii=False).encode("utf-8") if body is not None else None
        attempts = max(1, int(max_retries))

        for attempt in range(1, attempts + 1):
            try:
                resp = self._http.request(verb, url, headers=headers, content=content)
            except httpx.TransportError as exc:
                if attempt >= attempts:
                    log_event(
                        _LOGGER,
                        logging.ERROR,
                        "shopify.api.network_failed",
                        shop_domain=shop_domain,
                        endpoint=endpoint,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise TransientRemoteError(
                        f"Shopify API request failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = backoff_seconds(attempt)
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "shopify.api.retry",
                    shop_domain=shop_domain,
                    endpoint=endpoint,
                    attempt=attempt,
                    reason="network",
                    delay_seconds=delay,
                )
                self._wait(delay)
                continue

            snapshot = parse_rate_limit(resp.headers.get(RATE_LIMIT_HEADER))
            status = resp.status_code

            if status == 429:
                if attempt >= attempts:
                    raise RateLimitExceeded(
                        f"Shopify API rate limit exceeded after {attempt} attempts",
                        status_code=status,
                    )
                delay = _retry_after_seconds(resp.headers.get("Retry-After"))
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "shopify.api.retry",
                    shop_domain=shop_domain,
                    endpoint=endpoint,
                    attempt=attempt,
                    reason="rate_limited",
                    status_code=status,
                    delay_seconds=delay,
                )
                self._wait(delay)
                continue

            if status >= 500:
                if attempt >= attempts:
                    raise TransientRemoteError(
                        f"Shopify API error {status} after {attempt} attempts: {_error_detail(resp)}",
                        status_code=status,
                    )
                delay = backoff_seconds(attempt)
                log_event(
                    _LOGGER,
                    logging.WARNING,
                    "shopify.api.retry",
                    shop_domain=shop_domain,
                    endpoint=endpoint,
                    attempt=attempt,
                    reason="server_error",
                    status_code=status,
                    delay_seconds=delay,
                )
                self._wait(delay)
                continue

            if status >= 400:
                message = f"Shopify API error {status}: {_error_detail(resp)}"
                if status in {401, 403}:
                    raise RemoteAuthError(message, status_code=status)
                raise TerminalRemoteError(message, status_code=status)

            if not resp.content:
                return ApiResponse(data={}, rate_limit=snapshot)
            try:
                data = resp.json()
            except ValueError as exc:
                raise InvalidResponse(f"Shopify API returned non-JSON body (status={status})") from exc
            if not isinstance(data, dict):
                raise InvalidResponse(f"Shopify API returned unexpected payload type: {type(data).__name__}")
            return ApiResponse(data=data, rate_limit=snapshot)

        # The loop always returns or raises on its final attempt.
        raise TransientRemoteError("Shopify API request exhausted retries")

    # Derived operations

    def create_recurring_charge(self, shop_domain: str, token: str, charge: ChargeRequest) -> CreatedCharge:
        payload = {
            "recurring_application_charge": {
                "name": charge.name,
                "price": charge.price,
                "return_url": charge.return_url,
                "trial_days": charge.trial_days,
                "test": charge.test,
            }
        }
        resp = self.request(shop_domain, token, "recurring_application_charges.json", method="POST", body=payload)
        created = _require_mapping(resp.data, "recurring_application_charge")
        charge_id = created.get("id")
        confirmation_url = str(created.get("confirmation_url") or "").strip()
        if charge_id in {None, ""} or not confirmation_url:
            raise InvalidResponse("recurring charge response is missing id or confirmation_url")
        return CreatedCharge(charge_id=str(charge_id), confirmation_url=confirmation_url)

    def activate_recurring_charge(self, shop_domain: str, token: str, charge_id: str) -> Dict[str, Any]:
        resp = self.request(
            shop_domain,
            token,
            f"recurring_application_charges/{charge_id}/activate.json",
            method="POST",
            body={"recurring_application_charge": {"id": charge_id}},
        )
        return _require_mapping(resp.data, "recurring_application_charge")

    def cancel_recurring_charge(self, shop_domain: str, token: str, charge_id: str) -> None:
        self.request(shop_domain, token, f"recurring_application_charges/{charge_id}.json", method="DELETE")

    def get_shop_info(self, shop_domain: str, token: str) -> ShopInfo:
        resp = self.request(shop_domain, token, "shop.json")
        shop = _require_mapping(resp.data, "shop")
        if shop.get("id") in {None, ""}:
            raise InvalidResponse("shop response is missing id")
        return ShopInfo(
            id=str(shop["id"]),
            name=str(shop.get("name") or ""),
            domain=str(shop.get("domain") or shop.get("myshopify_domain") or shop_domain),
        )

    def exchange_access_token(self, shop_domain: str, code: str) -> AccessGrant:
        """Trade a one-shot authorization code for an access token. Never retried."""

        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "code": code,
        }
        try:
            resp = self._http.post(url, json=payload, headers={"Accept": "application/json"})
        except httpx.TransportError as exc:
            raise OAuthExchangeError(f"token exchange request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise OAuthExchangeError(f"token exchange failed with status {resp.status_code}: {_error_detail(resp)}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise OAuthExchangeError("token exchange returned a non-JSON body") from exc
        access_token = str((data or {}).get("access_token") or "").strip() if isinstance(data, dict) else ""
        if not access_token:
            raise OAuthExchangeError("token exchange response is missing access_token")
        scope = data.get("scope")
        return AccessGrant(access_token=access_token, scope=str(scope) if scope else None)
