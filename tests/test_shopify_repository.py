from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shopify_integration import (
    MerchantStateError,
    ShopifyRepository,
    SubscriptionStatus,
    TokenStatus,
    WebhookEventStatus,
    build_session_factory,
    init_db,
    session_scope,
)

SHOP = "demo-shop.myshopify.com"


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_db(engine)
    return engine, session_factory


def test_create_merchant_starts_trial_window() -> None:
    engine, sf = _make_db()
    started = datetime(2026, 1, 1, tzinfo=timezone.utc)

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        merchant = repo.create_merchant("user-1", trial_days=14, now=started)
        assert merchant.subscription_status == SubscriptionStatus.TRIAL
        assert merchant.trial_end - merchant.trial_start == timedelta(days=14)
        with pytest.raises(MerchantStateError):
            repo.create_merchant("user-1")
        assert repo.get_or_create_merchant("user-1").id == merchant.id
    engine.dispose()


def test_record_webhook_event_rejects_duplicate_ids() -> None:
    engine, sf = _make_db()

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        assert repo.record_webhook_event(
            webhook_id="wh-1",
            shop_domain=SHOP,
            topic="app/uninstalled",
            status=WebhookEventStatus.PROCESSED,
        )
        # Conflicting insert is swallowed by its savepoint; the outer transaction survives.
        assert not repo.record_webhook_event(
            webhook_id="wh-1",
            shop_domain=SHOP,
            topic="app/uninstalled",
            status=WebhookEventStatus.FAILED,
            error_message="late duplicate",
        )
        assert repo.record_webhook_event(
            webhook_id=None,
            shop_domain=SHOP,
            topic="orders/create",
            status=WebhookEventStatus.PROCESSED,
        )

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        events = repo.list_webhook_events()
        assert len(events) == 2
        stored = repo.get_webhook_event("wh-1")
        assert stored is not None
        assert stored.status == WebhookEventStatus.PROCESSED
        assert repo.list_webhook_events(webhook_id="wh-1")[0].id == stored.id
    engine.dispose()


def test_purge_shop_data_is_scoped_and_repeatable() -> None:
    engine, sf = _make_db()

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        repo.connect_shop("user-1", shop_domain=SHOP, access_token="shpat_a", scopes="read_products")
        repo.activate_subscription("user-1", charge_id="42")
        repo.connect_shop("user-2", shop_domain="other-shop.myshopify.com", access_token="shpat_b", scopes="read_orders")

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        assert repo.purge_shop_data(SHOP) == 1
        assert repo.purge_shop_data(SHOP) == 0

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        purged = repo.get_merchant("user-1")
        untouched = repo.get_merchant("user-2")
        assert purged.scopes is None
        assert purged.charge_id is None
        assert purged.access_token == "shpat_a"
        assert purged.subscription_status == SubscriptionStatus.ACTIVE
        assert untouched.scopes == "read_orders"
    engine.dispose()


def test_revoke_shop_tokens_touches_only_matching_shop() -> None:
    engine, sf = _make_db()

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        repo.connect_shop("user-1", shop_domain=SHOP, access_token="shpat_a")
        repo.connect_shop("user-2", shop_domain="other-shop.myshopify.com", access_token="shpat_b")

    with session_scope(sf) as session:
        assert ShopifyRepository(session).revoke_shop_tokens(SHOP.upper()) == 1

    with session_scope(sf) as session:
        repo = ShopifyRepository(session)
        assert repo.get_merchant("user-1").token_status == TokenStatus.REVOKED
        assert repo.get_merchant("user-2").token_status == TokenStatus.ACTIVE
        assert repo.get_merchant("user-2").access_token == "shpat_b"
    engine.dispose()
