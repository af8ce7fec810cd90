"""
The main entrypoint for the DuckBake package.

This module contains the primary DuckBake class, which wires the pillars of
the chat orchestrator together: the LLM provider, the conversation store, the
analytical query backend, semantic retrieval, the turn engine and the session
state they share.
"""

from typing import Optional

from . import engine, llm, query, retrieval, session, store
from .config import Settings, configure_logging, get_settings
from .exceptions import (
    DuckBakeError,
    ModelNotAvailable,
    PersistenceError,
    ProjectNotFound,
    QueryError,
    SearchError,
    TurnInProgress,
)
from .models import ChatMessage, Conversation, TurnResult, TurnState

__all__ = [
    "DuckBake",
    "Settings",
    "get_settings",
    "configure_logging",
    "ChatMessage",
    "Conversation",
    "TurnResult",
    "TurnState",
    "DuckBakeError",
    "ModelNotAvailable",
    "PersistenceError",
    "ProjectNotFound",
    "QueryError",
    "SearchError",
    "TurnInProgress",
]


class DuckBake:
    """
    The chat orchestrator for one local analytics workspace.

    This class holds the injected pillar components and exposes the turn
    operations of its engine. The constructor uses concrete default
    implementations, so it runs against a local Ollama server out of the box
    while every pillar stays replaceable.
    """

    def __init__(
        self,
        llm: Optional[llm.LLM] = None,
        store: Optional[store.Store] = None,
        query: Optional[query.Query] = None,
        retrieval: Optional[retrieval.Retrieval] = None,
        engine: Optional[engine.Engine] = None,
        session: Optional[session.Session] = None,
        settings: Optional[Settings] = None,
        project_id: Optional[str] = None,
    ) -> None:
        """
        Initialize the orchestrator with configurable pillars.

        Parameters
        ----------
        llm : llm.LLM, optional
            Streaming chat provider. Defaults to llm.Ollama().
        store : store.Store, optional
            Persistence for conversations and messages.
            Defaults to store.InMemory().
        query : query.Query, optional
            Analytical backend that runs command blocks and describes tables.
            Defaults to query.SQLite() under the ``data_dir`` setting.
        retrieval : retrieval.Retrieval, optional
            Semantic search over rows and documents.
            Defaults to retrieval.NoRetrieval().
        engine : engine.Engine, optional
            Turn orchestration. Defaults to engine.Streaming().
        session : session.Session, optional
            Shared turn-local state. Defaults to a fresh session.
        settings : Settings, optional
            Defaults to the environment-driven settings.
        project_id : str, optional
            Project to select when a new session is created.

        Examples
        --------
        Basic usage with defaults:

        >>> app = DuckBake(project_id="sales")  # doctest: +SKIP

        Custom configuration:

        >>> app = DuckBake(
        ...     llm=llm.Echo(),
        ...     store=store.SQLite(db_path="conversations.db"),
        ...     project_id="sales",
        ... )  # doctest: +SKIP
        """
        self.settings = settings if settings is not None else get_settings()

        if llm:
            self.llm = llm
        else:
            try:
                from .llm import Ollama

                self.llm = Ollama(
                    default_model=self.settings.model, host=self.settings.ollama_host
                )
            except ImportError:
                import warnings

                warnings.warn(
                    "DuckBake is running with a simple Echo LLM because the 'ollama' package is not installed. "
                    'For the default Ollama integration, install with: pip install "duckbake[default]"',
                    UserWarning,
                )
                from .llm import Echo

                self.llm = Echo()

        store_module = globals()["store"]
        query_module = globals()["query"]
        retrieval_module = globals()["retrieval"]
        engine_module = globals()["engine"]
        session_module = globals()["session"]

        self.store = store if store is not None else store_module.InMemory()
        self.query = (
            query
            if query is not None
            else query_module.SQLite(
                data_dir=self.settings.data_dir, sample_rows=self.settings.sample_rows
            )
        )
        self.retrieval = (
            retrieval if retrieval is not None else retrieval_module.NoRetrieval()
        )
        self.session = (
            session if session is not None else session_module.Session(project_id)
        )
        self.engine = engine if engine is not None else engine_module.Streaming()
        self.engine.app = self

    async def send(self, user_input: str, model: Optional[str] = None) -> TurnResult:
        """Runs one chat turn in the selected conversation."""
        return await self.engine.handle_message(user_input, model=model)

    def cancel(self) -> bool:
        return self.engine.cancel()
