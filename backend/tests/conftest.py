"""Shared pytest fixtures for the bulk action engine test suite.

Provides:
- File-backed async SQLite database per test (savepoints and concurrent
  writers behave as they do in production)
- Session factory
- Explicit Settings
- Executor wired with an in-memory dispatcher and an event recorder
- Seeded Contact (soft-deletable) and Tag (hard delete only) records
"""

import os

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from actions.registry import ActionRegistry  # noqa: E402
from app.config import Settings  # noqa: E402
from db.session import close_db, create_db_engine, create_session_factory, init_db  # noqa: E402
from engine.dispatch import CollectingDispatcher  # noqa: E402
from engine.executor import ActionExecutor  # noqa: E402
from engine.progress import ProgressTracker  # noqa: E402
from engine.undo import UndoManager  # noqa: E402
from notifications.channels import CallbackChannel  # noqa: E402
from notifications.manager import build_notification_manager  # noqa: E402
from sample_models import Contact, Tag  # noqa: E402


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'bulk.db'}",
        DEFAULT_BATCH_SIZE=2,
        EXPORT_DIRECTORY=str(tmp_path / "exports"),
        BROADCAST_THROTTLE_MS=0,
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    """Fresh database file with every table created."""
    engine = create_db_engine(settings.DATABASE_URL)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> ActionRegistry:
    return ActionRegistry()


@pytest.fixture
def dispatcher() -> CollectingDispatcher:
    return CollectingDispatcher()


@pytest.fixture
def events() -> list:
    """(event, snapshot, extra) tuples seen by the notification manager."""
    return []


@pytest.fixture
def notifications(session_factory, settings, events):
    manager = build_notification_manager(session_factory, settings)
    manager.register_channel(
        CallbackChannel([lambda event, snapshot, extra: events.append((event, snapshot, extra))])
    )
    return manager


@pytest.fixture
def executor(session_factory, settings, registry, dispatcher, notifications) -> ActionExecutor:
    return ActionExecutor(
        session_factory,
        registry=registry,
        dispatcher=dispatcher,
        settings=settings,
        notifications=notifications,
        progress=ProgressTracker(settings),
        undo=UndoManager(session_factory, settings, notifications),
    )


@pytest.fixture
def run_dispatched(executor, dispatcher):
    """Process every dispatched unit in order, as a single worker would."""

    async def _run():
        results = []
        while dispatcher.units:
            for unit in dispatcher.drain():
                results.append(await executor.process_unit(unit))
        return results

    return _run


# ---------------------------------------------------------------------------
# Test data
# ---------------------------------------------------------------------------

CONTACT_ROWS = [
    ("Ada", "ada@example.com", "active", 10),
    ("Brian", "brian@example.com", "active", 20),
    ("Chen", "chen@example.com", "inactive", 30),
    ("Dana", None, "inactive", 40),
    ("Eve", "eve@example.com", "active", 50),
]


@pytest_asyncio.fixture
async def contacts(session_factory) -> list[str]:
    """Five contacts; returns their ids in insertion order."""
    async with session_factory() as session:
        async with session.begin():
            rows = [
                Contact(name=name, email=email, status=status, score=score)
                for name, email, status, score in CONTACT_ROWS
            ]
            session.add_all(rows)
    return [row.id for row in rows]


@pytest_asyncio.fixture
async def tags(session_factory) -> list[int]:
    async with session_factory() as session:
        async with session.begin():
            rows = [Tag(label=label) for label in ("red", "green", "blue")]
            session.add_all(rows)
    return [row.id for row in rows]
