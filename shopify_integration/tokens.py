from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from observability import get_logger, log_event

from .client import ShopifyApiClient
from .db import SessionFactory, session_scope
from .errors import RemoteAuthError
from .models import TokenStatus
from .repository import ShopifyRepository

_LOGGER = get_logger("lynkscope.shopify.tokens")
_AUTH_FAILURE_MARKERS = ("401", "403", "invalid", "revoked")


class TokenValidation(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class ShopCredentials:
    shop_domain: str
    access_token: str

    def __repr__(self) -> str:
        return f"ShopCredentials(shop_domain={self.shop_domain!r})"


def _looks_like_auth_failure(exc: Exception) -> bool:
    if isinstance(exc, RemoteAuthError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _AUTH_FAILURE_MARKERS)


class TokenLifecycleManager:
    def __init__(self, client: ShopifyApiClient, session_factory: Optional[SessionFactory] = None) -> None:
        self.client = client
        self.session_factory = session_factory

    def validate(self, shop_domain: str, access_token: str) -> TokenValidation:
        try:
            self.client.get_shop_info(shop_domain, access_token)
        except Exception as exc:  # noqa: BLE001
            outcome = TokenValidation.INVALID if _looks_like_auth_failure(exc) else TokenValidation.INDETERMINATE
            log_event(
                _LOGGER,
                logging.WARNING,
                "shopify.token.validation_failed",
                shop_domain=shop_domain,
                outcome=outcome.value,
                error=str(exc),
            )
            return outcome
        return TokenValidation.VALID

    def get_valid_token(
        self,
        user_id: str,
        *,
        treat_indeterminate_as_valid: bool = True,
    ) -> Optional[ShopCredentials]:
        """
        Return usable credentials for the user's shop, or None.

        An indeterminate validation (network failure, 5xx) fails open and
        returns the stored credentials unless the caller opts out; only a
        definite auth rejection marks the token invalid.
        """

        with session_scope(self.session_factory) as session:
            merchant = ShopifyRepository(session).get_merchant(user_id)
            if merchant is None or not merchant.shop_domain or not merchant.access_token:
                return None
            if merchant.token_status != TokenStatus.ACTIVE:
                return None
            credentials = ShopCredentials(shop_domain=merchant.shop_domain, access_token=merchant.access_token)

        outcome = self.validate(credentials.shop_domain, credentials.access_token)

        if outcome == TokenValidation.INVALID:
            with session_scope(self.session_factory) as session:
                ShopifyRepository(session).mark_token_invalid(user_id)
            log_event(
                _LOGGER,
                logging.WARNING,
                "shopify.token.marked_invalid",
                user_id=user_id,
                shop_domain=credentials.shop_domain,
            )
            return None

        if outcome == TokenValidation.INDETERMINATE:
            return credentials if treat_indeterminate_as_valid else None

        with session_scope(self.session_factory) as session:
            ShopifyRepository(session).touch_token_validated(user_id)
        return credentials

    def revoke(self, shop_domain: str) -> int:
        with session_scope(self.session_factory) as session:
            revoked = ShopifyRepository(session).revoke_shop_tokens(shop_domain)
        log_event(_LOGGER, logging.INFO, "shopify.token.revoked", shop_domain=shop_domain, revoked=revoked)
        return revoked
