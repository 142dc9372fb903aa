from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]

_PRODUCTION_ENVS = frozenset({"prod", "production"})


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings for the merchant store and the webhook ledger."""

    url: str
    echo: bool = False
    app_env: str = "dev"

    @classmethod
    def from_config(cls) -> "DatabaseSettings":
        return cls(url=DATABASE_URL, echo=DATABASE_ECHO, app_env=APP_ENV)

    @property
    def backend(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def is_production(self) -> bool:
        return str(self.app_env or "").strip().lower() in _PRODUCTION_ENVS

    @property
    def in_memory(self) -> bool:
        return self.backend == "sqlite" and make_url(self.url).database in {None, "", ":memory:"}

    def sqlite_path(self) -> Path | None:
        if self.backend != "sqlite" or self.in_memory:
            return None
        path = Path(str(make_url(self.url).database)).expanduser()
        return path if path.is_absolute() else (Path.cwd() / path).resolve()

    def require_supported_backend(self) -> None:
        if self.is_production and self.backend != "postgresql":
            raise RuntimeError("DATABASE_URL must be PostgreSQL in production")

    def engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"future": True, "echo": self.echo, "pool_pre_ping": True}
        if self.backend == "sqlite":
            options["connect_args"] = {"check_same_thread": False}
            if self.in_memory:
                # Every session must share the one connection holding the database.
                options["poolclass"] = StaticPool
        return options


def build_session_factory(database: str | DatabaseSettings) -> tuple[Engine, SessionFactory]:
    settings = database if isinstance(database, DatabaseSettings) else DatabaseSettings(url=database, echo=DATABASE_ECHO)
    sqlite_path = settings.sqlite_path()
    if sqlite_path is not None:
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(settings.url, **settings.engine_options())
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


DATABASE = DatabaseSettings.from_config()
ENGINE, SessionLocal = build_session_factory(DATABASE)


def run_migrations(settings: DatabaseSettings, revision: str = "head") -> None:
    root = Path(ROOT_DIR).resolve()
    config_path = root / "alembic.ini"
    if not config_path.exists():
        raise RuntimeError(f"missing alembic.ini: {config_path}")
    alembic_cfg = AlembicConfig(str(config_path))
    alembic_cfg.set_main_option("script_location", str(root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.url)
    command.upgrade(alembic_cfg, revision)


def init_db(engine: Engine | None = None, *, settings: DatabaseSettings | None = None) -> None:
    """
    Bring the schema up to date.

    An explicit engine gets a direct `create_all` (isolated test databases).
    Otherwise the configured database is migrated with Alembic, and
    production refuses anything but PostgreSQL.
    """

    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    settings = settings or DATABASE
    settings.require_supported_backend()
    run_migrations(settings)


def check_db(session_factory: SessionFactory | None = None) -> bool:
    with (session_factory or SessionLocal)() as session:
        session.execute(text("SELECT 1"))
    return True


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    """Commit on success, roll back on any error, always close."""

    with (session_factory or SessionLocal)() as session, session.begin():
        yield session
