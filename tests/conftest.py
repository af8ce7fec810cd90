"""
Core pytest configuration and fixtures for DuckBake testing.

This module provides shared test fixtures, configuration, and utilities
that support the pillar-based testing architecture.
"""

import asyncio
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Optional

import pytest
from duckbake.config import Settings
from duckbake.llm import LLM
from duckbake.models import ASSISTANT_ROLE, USER_ROLE, ChatMessage, StreamEvent

PROJECT_ID = "sales"

BAR_BLOCK = (
    "```duckbake\n"
    '{"sql": "SELECT region, SUM(amount) AS total FROM orders '
    'GROUP BY region ORDER BY region", "viz": "bar", "xKey": "region", "yKey": "total"}\n'
    "```"
)


# ===== FAKE PILLARS =====


class ScriptedLLM(LLM):
    """Streams a fixed list of events and records the messages it was sent.

    ``script`` items are strings (chunks) or ``StreamEvent`` objects. A final
    ``done`` is appended unless the script already ends with a terminal
    event. ``delay`` sleeps before each item; ``gate`` is awaited before the
    first item, which lets a test act while the turn is mid-stream.
    """

    def __init__(self, script=None, delay: float = 0.0, gate: Optional[asyncio.Event] = None):
        self.model = "scripted"
        self.script = list(script or [])
        self.delay = delay
        self.gate = gate
        self.calls: List[list] = []

    async def stream_chat(self, messages, model=None, **kwargs):
        self.calls.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        terminated = False
        for item in self.script:
            if self.delay:
                await asyncio.sleep(self.delay)
            event = StreamEvent.chunk(item) if isinstance(item, str) else item
            yield event
            if event.kind != "chunk":
                terminated = True
                break
        if not terminated:
            yield StreamEvent.done()


class FailingStore:
    """Store double whose writes always fail."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def append_message(self, project_id, conversation_id, message):
        from duckbake.exceptions import PersistenceError

        raise PersistenceError("disk full")


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def sample_messages() -> List[ChatMessage]:
    """A short analysis conversation, with one command block."""
    return [
        ChatMessage(role=USER_ROLE, content="Show me sales by region"),
        ChatMessage(
            role=ASSISTANT_ROLE,
            content="Here's the breakdown of sales by region:\n\n" + BAR_BLOCK,
        ),
        ChatMessage(role=USER_ROLE, content="Thanks!"),
        ChatMessage(role=ASSISTANT_ROLE, content="You're welcome."),
    ]


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """Directory holding one SQLite database per project."""
    directory = tmp_path / "projects"
    directory.mkdir()
    return directory


def seed_orders(data_dir: Path, project_id: str = PROJECT_ID) -> Path:
    """Create an ``orders`` table with four rows."""
    path = data_dir / f"{project_id}.db"
    with closing(sqlite3.connect(path)) as conn, conn:
        conn.executescript(
            """
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY,
                region TEXT NOT NULL,
                amount REAL
            );
            INSERT INTO orders (region, amount) VALUES
                ('East', 100.0), ('West', 50.0), ('East', 25.0), ('North', 10.0);
            """
        )
    return path


@pytest.fixture
def seeded_dir(data_dir) -> Path:
    seed_orders(data_dir)
    return data_dir


# ===== PILLAR IMPLEMENTATION FIXTURES =====


@pytest.fixture
def settings(data_dir) -> Settings:
    """Settings isolated from the environment, with no timeouts."""
    return Settings(
        _env_file=None,
        data_dir=data_dir,
        coalesce_interval_ms=1.0,
        stream_idle_timeout=0,
        query_timeout=0,
    )


@pytest.fixture
def query_backend(seeded_dir):
    from duckbake.query import SQLite

    return SQLite(data_dir=seeded_dir, sample_rows=3)


@pytest.fixture
def all_store_implementations(tmp_path):
    """All store implementations for contract testing."""
    from duckbake import store

    return [
        ("InMemory", store.InMemory()),
        ("SQLite", store.SQLite(tmp_path / "conversations.db")),
    ]


# ===== APP FIXTURES =====


@pytest.fixture
def make_app(settings, query_backend):
    """
    Factory for DuckBake apps with predictable pillars.

    Avoids external dependencies: the model is scripted, conversations live
    in memory and queries run against a seeded SQLite file.
    """
    from duckbake import DuckBake
    from duckbake.store import InMemory

    def _make(llm=None, **pillars):
        pillars.setdefault("store", InMemory())
        pillars.setdefault("query", query_backend)
        return DuckBake(
            llm=llm or ScriptedLLM(["Done."]),
            settings=settings,
            project_id=PROJECT_ID,
            **pillars,
        )

    return _make


@pytest.fixture
def test_app(make_app):
    """An app whose model answers with one bar chart block."""
    return make_app(ScriptedLLM(["Here's the breakdown:\n\n", BAR_BLOCK]))


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
