from __future__ import annotations

import io
import json
import logging

import pytest

from config import ConfigError, ShopifySettings
from errors import explain_error, redirect_flag
from observability import JsonLogFormatter, log_event


def _capture_logger(name: str) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonLogFormatter())
    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.propagate = False
    logger.setLevel(logging.INFO)
    return logger, stream


def test_settings_require_lists_missing_keys() -> None:
    settings = ShopifySettings(client_id="", client_secret=" ", app_url="https://app.example", public_base_url="")

    assert settings.missing() == ("SHOPIFY_CLIENT_ID", "SHOPIFY_CLIENT_SECRET", "PUBLIC_BASE_URL")
    with pytest.raises(ConfigError, match="SHOPIFY_CLIENT_ID, SHOPIFY_CLIENT_SECRET, PUBLIC_BASE_URL"):
        settings.require()


def test_settings_derive_callback_urls_and_defaults() -> None:
    settings = ShopifySettings(
        client_id="id",
        client_secret="secret",
        app_url="https://app.example",
        public_base_url="https://api.example",
    )

    assert settings.require() is settings
    assert settings.oauth_redirect_uri == "https://api.example/shopify/oauth/callback"
    assert settings.confirm_charge_url == "https://api.example/shopify/billing/confirm-charge"
    assert settings.api_version == "2024-01"
    assert settings.plan_name == "LynkScope Pro"
    assert settings.plan_price == 20.0
    assert settings.trial_days == 14
    assert settings.sign_state is False


def test_log_event_redacts_secret_fields() -> None:
    logger, stream = _capture_logger("lynkscope.test.redaction")

    log_event(
        logger,
        logging.INFO,
        "shopify.test.event",
        shop_domain="demo-shop.myshopify.com",
        access_token="shpat_secret_value",
        details={"client_secret": "abc", "topic": "app/uninstalled"},
    )

    payload = json.loads(stream.getvalue().strip())
    assert payload["message"] == "shopify.test.event"
    assert payload["shop_domain"] == "demo-shop.myshopify.com"
    assert payload["access_token"] == "[redacted]"
    assert payload["details"] == {"client_secret": "[redacted]", "topic": "app/uninstalled"}
    assert "shpat_secret_value" not in stream.getvalue()


def test_error_codes_map_to_redirect_flags() -> None:
    assert explain_error("SHOP_NOT_CONNECTED")["message"] == "Shop not connected"
    assert explain_error(None) is None
    assert redirect_flag("ACTIVATION_FAILED") == "activation_failed"
    assert redirect_flag("SOMETHING_ELSE") == "unexpected_error"
