from __future__ import annotations

from typing import Optional


class ShopifyError(RuntimeError):
    pass


class ValidationError(ShopifyError):
    """Malformed input: bad domain, bad JSON, missing fields. Never retried."""


class InvalidShopDomain(ValidationError):
    pass


class InvalidState(ValidationError):
    """OAuth `state` that is malformed, mis-tagged or issued in the future."""


class RequestExpired(ValidationError):
    """OAuth state or callback timestamp outside its freshness window."""


class RemoteError(ShopifyError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """429, 5xx or network failure that outlived the retry budget."""


class RateLimitExceeded(TransientRemoteError):
    pass


class RetryAborted(TransientRemoteError):
    """A backoff wait was interrupted because the client is shutting down."""


class TerminalRemoteError(RemoteError):
    """A 4xx other than 429. Surfaced to the caller, never retried."""


class RemoteAuthError(TerminalRemoteError):
    """401/403 from the platform: the access token is invalid or revoked."""


class InvalidResponse(ShopifyError):
    pass


class SignatureError(ShopifyError):
    pass


class OAuthExchangeError(ShopifyError):
    pass


class ShopNotConnected(ShopifyError):
    pass


class MerchantNotFound(ShopifyError):
    pass
