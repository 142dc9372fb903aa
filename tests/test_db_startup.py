from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool

from shopify_integration import DatabaseSettings, build_session_factory, check_db, init_db


def test_init_db_requires_postgres_in_production() -> None:
    settings = DatabaseSettings(url="sqlite:///tmp/test.db", app_env="production")
    with pytest.raises(RuntimeError, match="PostgreSQL"):
        init_db(settings=settings)


def test_production_accepts_postgres_urls() -> None:
    DatabaseSettings(url="postgresql+psycopg2://u:p@db:5432/lynkscope", app_env="prod").require_supported_backend()
    DatabaseSettings(url="postgresql://u:p@db/lynkscope", app_env="production").require_supported_backend()


def test_in_memory_sqlite_shares_one_connection() -> None:
    memory = DatabaseSettings(url="sqlite+pysqlite:///:memory:")
    assert memory.in_memory is True
    assert memory.sqlite_path() is None
    assert memory.engine_options()["poolclass"] is StaticPool

    on_disk = DatabaseSettings(url="sqlite:///data/lynkscope.db")
    assert on_disk.in_memory is False
    assert "poolclass" not in on_disk.engine_options()
    assert on_disk.sqlite_path() == (Path.cwd() / "data" / "lynkscope.db").resolve()

    postgres = DatabaseSettings(url="postgresql://u:p@db/lynkscope")
    assert "connect_args" not in postgres.engine_options()


def test_build_session_factory_creates_sqlite_parent_dir(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "store.db"
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{db_path}")
    assert db_path.parent.is_dir()
    assert check_db(session_factory) is True
    engine.dispose()


def test_init_db_allows_engine_override_for_tests(tmp_path: Path) -> None:
    db_path = tmp_path / "shopify_startup_test.db"
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{db_path}")
    init_db(engine)

    tables = set(inspect(engine).get_table_names())
    assert {"shopify_merchants", "shopify_webhook_events"} <= tables
    assert check_db(session_factory) is True
    engine.dispose()


def test_alembic_migration_creates_schema(tmp_path: Path) -> None:
    db_url = f"sqlite+pysqlite:///{tmp_path / 'migrated.db'}"
    init_db(settings=DatabaseSettings(url=db_url, app_env="dev"))

    engine, _session_factory = build_session_factory(db_url)
    inspector = inspect(engine)
    assert {"shopify_merchants", "shopify_webhook_events"} <= set(inspector.get_table_names())
    unique_indexes = {
        item["name"] for item in inspector.get_indexes("shopify_webhook_events") if item.get("unique")
    }
    assert "ix_shopify_webhook_events_webhook_id" in unique_indexes
    engine.dispose()
