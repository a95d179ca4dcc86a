"""
Database engine and session factory.

SQLite is the default backend. Worker threads share one engine, so the
pysqlite connection is opened with check_same_thread disabled and a busy
timeout long enough for concurrent claim attempts to queue instead of
failing outright.
"""

from typing import Optional

import structlog
from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from recurring_ledger.config import DatabaseSettings, get_settings
from recurring_ledger.models.ledger import SupportedCurrency
from recurring_ledger.services.storage.tables import Base, CurrencyORM


logger = structlog.get_logger()


DEFAULT_CURRENCIES = [
    SupportedCurrency(code="USD", name="US Dollar", symbol="$"),
    SupportedCurrency(code="EUR", name="Euro", symbol="€"),
    SupportedCurrency(code="GBP", name="British Pound", symbol="£"),
    SupportedCurrency(code="JPY", name="Japanese Yen", symbol="¥"),
    SupportedCurrency(code="CAD", name="Canadian Dollar", symbol="CA$"),
    SupportedCurrency(code="MXN", name="Mexican Peso", symbol="MX$"),
    SupportedCurrency(code="NIO", name="Nicaraguan Córdoba", symbol="C$"),
    SupportedCurrency(code="INR", name="Indian Rupee", symbol="₹"),
]


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_from_settings(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Build the SQLAlchemy engine described by the database settings."""
    settings = settings or get_settings().database

    connect_args = {}
    is_sqlite = settings.url.startswith("sqlite")
    if is_sqlite:
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.sqlite_busy_timeout_seconds,
        }

    engine = create_engine(
        settings.url,
        echo=settings.echo,
        connect_args=connect_args,
        future=True,
    )

    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Objects stay readable after commit; repositories convert to pydantic anyway
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_db(engine: Engine, seed_currencies: bool = True) -> None:
    """
    Create every table that does not exist yet.

    With seed_currencies, the default ISO currency rows are inserted when
    missing so accounts can be opened straight away.
    """
    Base.metadata.create_all(engine)

    if not seed_currencies:
        return

    factory = create_session_factory(engine)
    with factory() as session:
        existing = set(session.scalars(select(CurrencyORM.code)))
        added = 0
        for currency in DEFAULT_CURRENCIES:
            if currency.code not in existing:
                session.add(
                    CurrencyORM(code=currency.code, name=currency.name, symbol=currency.symbol)
                )
                added += 1
        session.commit()

    logger.info("database_initialized", url=str(engine.url), currencies_seeded=added)
