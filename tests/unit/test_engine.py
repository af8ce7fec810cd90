"""Unit tests for the engine module."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from duckbake.config import Settings
from duckbake.engine import Engine, Streaming
from duckbake.exceptions import SearchError
from duckbake.models import (
    ASSISTANT_ROLE,
    ChatMessage,
    DocumentSearchResult,
    IntentResult,
    QueryResult,
    SemanticSearchResult,
    TurnState,
)
from duckbake.session import Session

from conftest import BAR_BLOCK


class TestEngineBase:
    """Test the abstract Engine base class."""

    def test_engine_is_abstract(self):
        with pytest.raises(TypeError, match="Can't instantiate abstract class"):
            Engine()

    def test_engine_with_app_reference(self):
        mock_app = Mock()

        class ConcreteEngine(Engine):
            async def handle_message(self, user_input, model=None):
                return None

        engine = ConcreteEngine(mock_app)
        assert engine.app is mock_app

    def test_engine_without_app_reference(self):
        """Engine can be created before the app and bound later."""
        engine = Streaming()
        assert engine.app is None
        assert engine.state is TurnState.IDLE

        mock_app = Mock()
        engine.app = mock_app
        assert engine.app is mock_app


class TestStreamingEngine:
    """Test the Streaming engine against mocked pillars."""

    @pytest.fixture
    def mock_app(self):
        app = Mock()
        app.settings = Settings(_env_file=None, stream_idle_timeout=0, query_timeout=0)
        app.session = Session("sales")

        app.retrieval = Mock()
        app.retrieval.vectorized_tables = AsyncMock(return_value=["orders", "customers"])
        app.retrieval.search_similar_rows = AsyncMock(
            side_effect=lambda project_id, table, text, limit: (
                [SemanticSearchResult(row_id=1, content="East", similarity=0.8)]
                if table == "orders"
                else []
            )
        )
        app.retrieval.search_similar_document_chunks = AsyncMock(
            return_value=[
                DocumentSearchResult(
                    document_id="d1", document_name="handbook.pdf", content="x", similarity=0.5
                )
            ]
        )

        app.query = Mock()
        app.query.dialect = "SQLite"
        app.query.get_project_context = AsyncMock(side_effect=RuntimeError("locked"))
        return app

    @pytest.fixture
    def engine(self, mock_app):
        return Streaming(mock_app)

    def test_search_for_data_intent(self, engine, mock_app):
        data_hits, doc_hits = asyncio.run(
            engine._search("sales", "total sales", IntentResult(intent="sql", confidence=1.0))
        )

        assert list(data_hits) == ["orders"]
        assert doc_hits == []
        mock_app.retrieval.search_similar_rows.assert_any_await(
            "sales", "orders", "total sales", mock_app.settings.row_search_limit
        )
        mock_app.retrieval.search_similar_document_chunks.assert_not_awaited()

    def test_search_for_document_intent(self, engine, mock_app):
        data_hits, doc_hits = asyncio.run(
            engine._search("sales", "the handbook", IntentResult(intent="document", confidence=1.0))
        )

        assert data_hits == {}
        assert [d.document_name for d in doc_hits] == ["handbook.pdf"]
        mock_app.retrieval.vectorized_tables.assert_not_awaited()

    def test_listing_tables_failure_is_not_fatal(self, engine, mock_app):
        mock_app.retrieval.vectorized_tables = AsyncMock(side_effect=SearchError("offline"))

        data_hits, doc_hits = asyncio.run(
            engine._search("sales", "anything", IntentResult(intent="both", confidence=0.5))
        )

        assert data_hits == {}
        assert len(doc_hits) == 1

    def test_project_context_failure_gives_no_schema(self, engine):
        assert asyncio.run(engine._project_context("sales")) is None

    def test_state_listener_unsubscribe(self, engine):
        seen = []
        unsubscribe = engine.on_state(seen.append)

        engine._transition(TurnState.CLASSIFYING)
        unsubscribe()
        engine._transition(TurnState.IDLE)

        assert seen == [TurnState.CLASSIFYING]
        assert not engine.is_busy

    def test_rehydrate_is_skipped_while_busy(self, engine, mock_app):
        mock_app.session.set_current_conversation("c1")
        mock_app.session.set_messages([ChatMessage(role=ASSISTANT_ROLE, content=BAR_BLOCK)])
        mock_app.query.run_query = AsyncMock()
        engine.state = TurnState.STREAMING

        assert asyncio.run(engine.rehydrate()) == {}
        mock_app.query.run_query.assert_not_awaited()

    def test_rehydrate_keeps_results_written_meanwhile(self, engine, mock_app):
        session = mock_app.session
        session.set_current_conversation("c1")
        old = ChatMessage(role=ASSISTANT_ROLE, content=BAR_BLOCK)
        session.set_messages([old])
        session.set_results("new", [])

        async def run_query(project_id, sql):
            engine.state = TurnState.STREAMING
            return QueryResult(columns=["n"], rows=[{"n": 1}], row_count=1)

        mock_app.query.run_query = run_query

        rebuilt = asyncio.run(engine.rehydrate())

        assert list(rebuilt) == [old.id]
        assert set(session.results) == {old.id, "new"}

    def test_rehydrate_without_project(self, engine, mock_app):
        mock_app.session.reset_for_project(None)
        assert asyncio.run(engine.rehydrate()) == {}
