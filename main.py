from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.concurrency import run_in_threadpool

from auth import AuthError, AuthIdentity, decode_access_token, extract_bearer_token
from config import (
    API_HOST,
    API_PORT,
    APP_VERSION,
    AUTH_TOKEN_SECRET,
    CORS_ORIGINS,
    STARTUP_BOOTSTRAP_ENABLED,
    load_shopify_settings,
)
from errors import explain_error, redirect_flag
from observability import configure_json_logging, get_logger, log_event
from shopify_integration import (
    BillingOrchestrator,
    InvalidShopDomain,
    InvalidState,
    MerchantNotFound,
    NeedsConnection,
    OAuthConnector,
    OAuthExchangeError,
    RequestExpired,
    SessionLocal,
    ShopifyApiClient,
    ShopifyError,
    ShopNotConnected,
    SignatureError,
    TokenLifecycleManager,
    ValidationError,
    WebhookIngester,
    check_db,
    init_db,
)

configure_json_logging(level=logging.INFO)
APP_LOGGER = get_logger("lynkscope.api")

SHOPIFY_SETTINGS = load_shopify_settings()
SHOPIFY_CLIENT = ShopifyApiClient(SHOPIFY_SETTINGS)
SESSION_FACTORY = SessionLocal


def _oauth_connector() -> OAuthConnector:
    return OAuthConnector(SHOPIFY_SETTINGS, SHOPIFY_CLIENT, SESSION_FACTORY)


def _billing_orchestrator() -> BillingOrchestrator:
    return BillingOrchestrator(SHOPIFY_SETTINGS, SHOPIFY_CLIENT, SESSION_FACTORY)


def _webhook_ingester() -> WebhookIngester:
    tokens = TokenLifecycleManager(SHOPIFY_CLIENT, SESSION_FACTORY)
    return WebhookIngester(SHOPIFY_SETTINGS.client_secret, tokens, SESSION_FACTORY)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if not AUTH_TOKEN_SECRET:
        raise RuntimeError("AUTH_TOKEN_SECRET is required")
    SHOPIFY_SETTINGS.require()
    if STARTUP_BOOTSTRAP_ENABLED:
        init_db()
    yield
    SHOPIFY_CLIENT.shutdown()


app = FastAPI(title="LynkScope Shopify Integration", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["X-Trace-Id"],
)


PUBLIC_AUTH_PATHS = {
    "/health",
    "/shopify/oauth/callback",
    "/shopify/billing/confirm-charge",
    "/shopify/webhooks",
    "/docs",
    "/redoc",
    "/openapi.json",
}


def _is_public_path(path: str) -> bool:
    normalized = path or "/"
    if normalized in PUBLIC_AUTH_PATHS:
        return True
    return normalized.startswith("/docs/") or normalized.startswith("/redoc/")


def _request_user_id(request: Request) -> str:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity.user_id
    return "anonymous"


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
        user_id=_request_user_id(request),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if request.method.upper() == "OPTIONS" or _is_public_path(request.url.path):
        return await call_next(request)
    try:
        token = extract_bearer_token(request.headers.get("Authorization"))
        identity = decode_access_token(token, AUTH_TOKEN_SECRET)
    except AuthError as exc:
        return JSONResponse(status_code=401, content={"error": "UNAUTHORIZED", "message": str(exc)})
    request.state.auth_identity = identity
    return await call_next(request)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        user_id=_request_user_id(request),
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def get_current_identity(request: Request) -> AuthIdentity:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity
    raise HTTPException(status_code=401, detail="unauthorized")


def _error_response(status_code: int, code: str, *, message: Optional[str] = None, **extra: Any) -> JSONResponse:
    described = explain_error(code) or {}
    content: Dict[str, Any] = {
        "error": described.get("message", code),
        "error_code": code,
        "message": message or described.get("hint", ""),
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _settings_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{SHOPIFY_SETTINGS.app_url}/settings?{urlencode(params)}", status_code=302)


def _dashboard_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{SHOPIFY_SETTINGS.app_url}/dashboard?{urlencode(params)}", status_code=302)


def _callback_error_code(exc: ShopifyError) -> str:
    if isinstance(exc, RequestExpired):
        return "REQUEST_EXPIRED"
    if isinstance(exc, InvalidState):
        return "INVALID_STATE"
    if isinstance(exc, InvalidShopDomain):
        return "INVALID_SHOP_DOMAIN"
    if isinstance(exc, SignatureError):
        return "INVALID_SIGNATURE"
    if isinstance(exc, ValidationError):
        return "INVALID_REQUEST"
    return "AUTHORIZATION_FAILED"


class ShopifyInstallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shop_domain: str = Field(default="", alias="shopDomain")

    @field_validator("shop_domain", mode="before")
    @classmethod
    def _coerce_shop_domain(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class ShopifyInstallResponse(BaseModel):
    installUrl: str
    shop: str


class ShopifyChargeResponse(BaseModel):
    confirmationUrl: str


class ShopifyCancelResponse(BaseModel):
    success: bool
    message: str


@app.get("/health")
def health() -> dict:
    try:
        db_ok = check_db(SESSION_FACTORY)
    except Exception as exc:  # noqa: BLE001
        log_event(APP_LOGGER, logging.WARNING, "health.db_failed", error=str(exc))
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "db": "ok" if db_ok else "error", "version": APP_VERSION}


@app.post("/shopify/oauth/install", response_model=ShopifyInstallResponse)
def shopify_install(
    payload: ShopifyInstallRequest,
    identity: AuthIdentity = Depends(get_current_identity),
):
    try:
        link = _oauth_connector().build_install_url(identity.user_id, payload.shop_domain)
    except InvalidShopDomain as exc:
        return _error_response(400, "INVALID_SHOP_DOMAIN", message=str(exc))
    log_event(APP_LOGGER, logging.INFO, "shopify.oauth.install_requested", user_id=identity.user_id, shop_domain=link.shop)
    return ShopifyInstallResponse(installUrl=link.install_url, shop=link.shop)


@app.post("/shopify/oauth/reauthorize", response_model=ShopifyInstallResponse)
def shopify_reauthorize(identity: AuthIdentity = Depends(get_current_identity)):
    try:
        link = _oauth_connector().build_reauthorize_url(identity.user_id)
    except ShopNotConnected as exc:
        return _error_response(404, "SHOP_NOT_CONNECTED", message=str(exc))
    return ShopifyInstallResponse(installUrl=link.install_url, shop=link.shop)


@app.get("/shopify/oauth/callback")
def shopify_oauth_callback(
    request: Request,
    code: str = Query(""),
    shop: str = Query(""),
    state: str = Query(""),
) -> RedirectResponse:
    query_params = dict(request.query_params)
    try:
        _oauth_connector().handle_callback(code, shop, state, query_params=query_params)
    except ShopifyError as exc:
        error_code = _callback_error_code(exc)
        log_event(
            APP_LOGGER,
            logging.WARNING if not isinstance(exc, OAuthExchangeError) else logging.ERROR,
            "shopify.oauth.callback_failed",
            shop_domain=shop,
            error_code=error_code,
            error=str(exc),
        )
        return _settings_redirect(error=redirect_flag(error_code))
    return _settings_redirect(shop_connected="true")


@app.post("/shopify/billing/create-charge", response_model=ShopifyChargeResponse)
def shopify_create_charge(identity: AuthIdentity = Depends(get_current_identity)):
    try:
        result = _billing_orchestrator().create_charge(identity.user_id)
    except ShopifyError as exc:
        log_event(
            APP_LOGGER,
            logging.ERROR,
            "shopify.billing.create_charge_failed",
            user_id=identity.user_id,
            error=str(exc),
        )
        return _error_response(502, "CHARGE_CREATION_FAILED", message=f"Failed to create charge: {exc}")
    if isinstance(result, NeedsConnection):
        return _error_response(400, "SHOP_NOT_CONNECTED", needsConnection=True)
    return ShopifyChargeResponse(confirmationUrl=result.confirmation_url)


@app.get("/shopify/billing/confirm-charge")
def shopify_confirm_charge(
    charge_id: str = Query(""),
    user_id: str = Query(""),
) -> RedirectResponse:
    if not charge_id.strip() or not user_id.strip():
        return _dashboard_redirect(error=redirect_flag("INVALID_REQUEST"))
    try:
        _billing_orchestrator().confirm_charge(charge_id, user_id)
    except ShopNotConnected:
        return _dashboard_redirect(error=redirect_flag("SHOP_NOT_CONNECTED"))
    except ShopifyError as exc:
        log_event(
            APP_LOGGER,
            logging.ERROR,
            "shopify.billing.activation_failed",
            user_id=user_id,
            charge_id=charge_id,
            error=str(exc),
        )
        return _dashboard_redirect(error=redirect_flag("ACTIVATION_FAILED"))
    return _dashboard_redirect(subscription_activated="true")


@app.post("/shopify/billing/cancel", response_model=ShopifyCancelResponse)
def shopify_cancel(identity: AuthIdentity = Depends(get_current_identity)):
    try:
        result = _billing_orchestrator().cancel(identity.user_id)
    except MerchantNotFound as exc:
        return _error_response(404, "MERCHANT_NOT_FOUND", message=str(exc))
    message = "Subscription already cancelled" if result.already_cancelled else "Subscription cancelled"
    return ShopifyCancelResponse(success=True, message=message)


@app.api_route("/shopify/webhooks", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def shopify_webhooks(request: Request) -> JSONResponse:
    raw = await request.body()
    outcome = await run_in_threadpool(_webhook_ingester().handle, request.method, dict(request.headers), raw)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=API_HOST, port=API_PORT)
