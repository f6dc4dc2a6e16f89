"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Generator

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from sr_screening.app.agents.fallback import ProviderTier
from sr_screening.app.config import Settings
from sr_screening.app.database import create_tables, make_session_factory
from sr_screening.core.schemas import Criteria, Reference


@pytest.fixture
def settings() -> Settings:
    """Settings with every provider configured and no retry delays."""
    return Settings(
        _env_file=None,  # pyright: ignore [reportCallIssue]
        openai_api_key="sk-test-openai",
        google_api_key="test-google",
        openrouter_api_key="sk-or-test",
        database_url="sqlite://",
        retry_base_delay=0.0,
        pacing_interval=0.0,
        log_file=None,
    )


@pytest.fixture
def reference() -> Reference:
    return Reference(
        id="ref-1",
        title="Exercise therapy for chronic low back pain: a randomized controlled trial",
        abstract="Adults with chronic low back pain were randomized to exercise or usual care. Pain at 12 weeks improved.",
        authors=["Smith J", "Doe A"],
        journal="Spine",
        year=2021,
        doi="10.1000/spine.2021.1",
    )


@pytest.fixture
def references() -> list[Reference]:
    return [
        Reference(id=f"ref-{i}", title=f"Study {i}", abstract=f"Abstract {i}", authors="Author")
        for i in range(1, 4)
    ]


@pytest.fixture
def criteria() -> Criteria:
    return Criteria(
        population="Adults with chronic low back pain",
        intervention="Exercise therapy",
        comparator="Usual care",
        outcome="Pain intensity",
        timeframe_start="2000",
        timeframe_end="2024",
        study_designs=["RCT", "Cluster RCT"],
        inclusion_criteria=["Adults aged 18+", "Randomized design"],
        exclusion_criteria=["Animal studies"],
    )


@pytest.fixture
def tiers() -> list[ProviderTier]:
    return [
        ProviderTier("primary", "openai:gpt-4o", "google:gemini-1.5-pro"),
        ProviderTier("secondary", "openrouter:anthropic/claude-3.5-sonnet", "openai:gpt-4o-mini"),
        ProviderTier("tertiary", "google:gemini-1.5-flash", "google:gemini-1.5-flash"),
    ]


@pytest.fixture
def db_engine() -> Generator[sa.Engine, None, None]:
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: sa.Engine) -> sessionmaker[Session]:
    return make_session_factory(db_engine)
