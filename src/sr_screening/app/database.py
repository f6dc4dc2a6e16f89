"""Database setup.

Engine and session factory are created lazily from settings on first use, so
importing this module never opens a connection.

.. code-block:: python

    with get_session_factory().begin() as session:
        session.add(record)
"""

from __future__ import annotations

import functools

from sqlalchemy import Engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import create_engine
from sqlmodel.orm.session import Session as SQLModelSession

from sr_screening.app.config import Settings, get_settings
from sr_screening.core.models import SQLModelBase


def create_db_engine(settings: Settings) -> Engine:
    """Engine for ``settings.DATABASE_URL``. SQLite gets no pool arguments."""
    if settings.DATABASE_URL.startswith("sqlite"):
        return create_engine(url=settings.DATABASE_URL, echo=False)
    return create_engine(
        url=settings.DATABASE_URL,
        echo=False,
        pool_size=10,  # Number of connections to maintain in the pool
        max_overflow=20,  # Additional connections beyond pool_size
        pool_timeout=30,  # Seconds to wait for a connection from the pool
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,  # Validate connections before use
    )


@functools.cache
def get_engine() -> Engine:
    return create_db_engine(get_settings())


def make_session_factory(engine: Engine) -> sessionmaker[SQLModelSession]:
    """`sessionmaker` context manager for sync sessions.

    Usage: ``with session_factory.begin() as session:`` to auto-commit and rollback
    on exit.
    """
    return sessionmaker(bind=engine, class_=SQLModelSession, expire_on_commit=False)


@functools.cache
def get_session_factory() -> sessionmaker[SQLModelSession]:
    return make_session_factory(get_engine())


def session_factory_for(settings: Settings | None = None) -> sessionmaker[SQLModelSession]:
    """Session factory for explicit settings, the cached global one otherwise."""
    if settings is None:
        return get_session_factory()
    return make_session_factory(create_db_engine(settings))


def create_tables(engine: Engine | None = None) -> None:
    SQLModelBase.metadata.create_all(engine or get_engine())
