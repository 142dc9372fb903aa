from .billing import (
    BillingOrchestrator,
    CancelResult,
    ChargeCreated,
    ConfirmResult,
    NeedsConnection,
)
from .client import (
    AccessGrant,
    ApiResponse,
    ChargeRequest,
    CreatedCharge,
    RateLimitSnapshot,
    ShopifyApiClient,
    ShopInfo,
)
from .db import (
    DatabaseSettings,
    ENGINE,
    SessionLocal,
    build_session_factory,
    run_migrations,
    check_db,
    init_db,
    session_scope,
)
from .domains import clean_shop_domain, normalize_shop_domain
from .errors import (
    InvalidResponse,
    InvalidShopDomain,
    InvalidState,
    MerchantNotFound,
    OAuthExchangeError,
    RateLimitExceeded,
    RemoteAuthError,
    RemoteError,
    RequestExpired,
    RetryAborted,
    ShopifyError,
    ShopNotConnected,
    SignatureError,
    TerminalRemoteError,
    TransientRemoteError,
    ValidationError,
)
from .models import (
    Base,
    Merchant,
    SubscriptionStatus,
    TokenStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from .oauth import InstallLink, OAuthConnector, OAuthState, ShopConnection
from .repository import MerchantStateError, ShopifyRepository
from .tokens import ShopCredentials, TokenLifecycleManager, TokenValidation
from .webhooks import (
    WebhookIngester,
    WebhookOutcome,
    compute_webhook_hmac,
    verify_webhook_hmac,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "ENGINE",
    "SessionLocal",
    "Merchant",
    "WebhookEvent",
    "TokenStatus",
    "SubscriptionStatus",
    "WebhookEventStatus",
    "ShopifyRepository",
    "MerchantStateError",
    "ShopifyApiClient",
    "ApiResponse",
    "RateLimitSnapshot",
    "ChargeRequest",
    "CreatedCharge",
    "ShopInfo",
    "AccessGrant",
    "OAuthConnector",
    "OAuthState",
    "InstallLink",
    "ShopConnection",
    "BillingOrchestrator",
    "ChargeCreated",
    "NeedsConnection",
    "ConfirmResult",
    "CancelResult",
    "TokenLifecycleManager",
    "TokenValidation",
    "ShopCredentials",
    "WebhookIngester",
    "WebhookOutcome",
    "compute_webhook_hmac",
    "verify_webhook_hmac",
    "clean_shop_domain",
    "normalize_shop_domain",
    "ShopifyError",
    "ValidationError",
    "InvalidShopDomain",
    "InvalidState",
    "RequestExpired",
    "RemoteError",
    "TransientRemoteError",
    "RateLimitExceeded",
    "RetryAborted",
    "TerminalRemoteError",
    "RemoteAuthError",
    "InvalidResponse",
    "SignatureError",
    "OAuthExchangeError",
    "ShopNotConnected",
    "MerchantNotFound",
    "build_session_factory",
    "run_migrations",
    "check_db",
    "init_db",
    "session_scope",
]
