"""
Turn orchestration.

A turn moves through a fixed sequence of states::

    Idle -> Classifying -> Searching -> AwaitingModel -> Streaming
         -> Finalizing -> ExecutingCommands -> Idle

Any failure returns the engine to ``Idle``. Search failures, malformed
command blocks, failing queries and persistence failures are recovered
locally; only a model-stream error aborts the turn, and then no assistant
message is created.

Switching project or conversation mid-turn abandons the turn. Every event
that arrives afterwards is checked against the selection captured when the
turn started and dropped if it no longer matches.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .blocks import extract
from .context import build_context, build_messages, build_system_prompt
from .exceptions import DuckBakeError, TurnInProgress
from .intent import classify, wants_data, wants_documents
from .models import (
    CHUNK,
    DONE,
    USER_ROLE,
    ChatMessage,
    DocumentSearchResult,
    IntentResult,
    ProjectContext,
    SemanticSearchResult,
    StreamEvent,
    StreamingState,
    TurnResult,
    TurnState,
    VisualizationResult,
)
from .rehydrate import execute_blocks, rehydrate
from .streaming import StreamingBuffer
from .titles import generate_title

logger = logging.getLogger(__name__)

StateListener = Callable[[TurnState], None]


class Engine(ABC):
    """Drives chat turns against the pillars of a ``DuckBake`` app."""

    def __init__(self, app=None):
        self.app = app

    @abstractmethod
    async def handle_message(
        self, user_input: str, model: Optional[str] = None
    ) -> TurnResult:
        """Runs one turn for ``user_input`` in the selected conversation."""
        pass


@dataclass
class _Turn:
    project_id: str
    conversation_id: str
    buffer: StreamingBuffer
    abandoned: asyncio.Event = field(default_factory=asyncio.Event)


class Streaming(Engine):
    """The default engine: streams the model reply, then runs its commands."""

    def __init__(self, app=None):
        super().__init__(app)
        self.state = TurnState.IDLE
        self._turn: Optional[_Turn] = None
        self._state_listeners: List[StateListener] = []

    # --- observation ---
    def on_state(self, listener: StateListener) -> Callable[[], None]:
        """Calls ``listener`` with every state transition."""
        self._state_listeners.append(listener)

        def unsubscribe():
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    @property
    def is_busy(self) -> bool:
        return self.state is not TurnState.IDLE

    def _transition(self, state: TurnState) -> None:
        if state is self.state:
            return
        logger.debug("Turn state %s -> %s", self.state.value, state.value)
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    def _is_live(self, turn: _Turn) -> bool:
        return (
            self._turn is turn
            and not turn.abandoned.is_set()
            and self.app.session.is_current(turn.project_id, turn.conversation_id)
        )

    # --- turn ---
    async def handle_message(self, user_input, model=None):
        content = (user_input or "").strip()
        if not content:
            raise ValueError("Cannot send an empty message")
        if self.is_busy:
            raise TurnInProgress("A turn is already in progress")

        app = self.app
        session = app.session
        project_id = session.project_id
        if project_id is None:
            raise DuckBakeError("No project selected")

        self._transition(TurnState.CLASSIFYING)
        turn = None
        try:
            conversation_id = session.current_conversation_id
            if conversation_id is None:
                conversation = await app.store.create_conversation(
                    project_id, generate_title(content)
                )
                session.add_conversation(conversation)
                conversation_id = conversation.id

            turn = _Turn(project_id, conversation_id, self._new_buffer())
            self._turn = turn

            history = list(session.messages)
            user_message = ChatMessage(role=USER_ROLE, content=content)
            session.add_message(user_message)
            await self._persist(turn, user_message)

            intent = classify(content)
            logger.info(
                "Turn started in %s (intent=%s, confidence=%.2f)",
                conversation_id,
                intent.intent,
                intent.confidence,
            )
            result = TurnResult(
                conversation_id=conversation_id, user_message=user_message, intent=intent
            )

            self._transition(TurnState.SEARCHING)
            data_hits, doc_hits = await self._search(project_id, content, intent)
            schema = await self._project_context(project_id)
            if not self._is_live(turn):
                return self._abandoned(result)

            system_prompt = build_system_prompt(
                build_context(schema, data_hits, doc_hits), app.query.dialect
            )
            messages = build_messages(
                system_prompt, history + [user_message], app.settings.history_limit
            )

            self._transition(TurnState.AWAITING_MODEL)
            turn.buffer.start_streaming()
            outcome, error = await self._consume(turn, messages, model)

            if outcome == "abandoned":
                return self._abandoned(result)
            if outcome == "error":
                logger.error("Model stream failed: %s", error)
                turn.buffer.cancel()
                result.error = error
                return result

            self._transition(TurnState.FINALIZING)
            assistant_message = turn.buffer.finalize(str(uuid.uuid4()))
            session.add_message(assistant_message)
            await self._persist(turn, assistant_message)
            result.assistant_message = assistant_message

            self._transition(TurnState.EXECUTING_COMMANDS)
            blocks = extract(assistant_message.content).blocks
            if blocks:
                result.results = await self._execute(turn, assistant_message.id, blocks)
                if self._is_live(turn):
                    session.emit_invalidation()
            if not self._is_live(turn):
                result.stale = True
            return result
        finally:
            if turn is not None:
                turn.buffer.cancel()
            if turn is None or self._turn is turn:
                self._turn = None
                self._transition(TurnState.IDLE)

    def _new_buffer(self) -> StreamingBuffer:
        settings = self.app.settings
        buffer = StreamingBuffer(
            interval_ms=settings.coalesce_interval_ms,
            max_bytes=settings.coalesce_max_bytes,
        )
        buffer.subscribe(self.app.session.set_streaming)
        return buffer

    def _abandoned(self, result: TurnResult) -> TurnResult:
        logger.warning("Turn in %s abandoned after selection changed", result.conversation_id)
        result.stale = True
        return result

    async def _persist(self, turn: _Turn, message: ChatMessage) -> None:
        # The in-memory message stays the source of truth if saving fails.
        try:
            await self.app.store.append_message(
                turn.project_id, turn.conversation_id, message
            )
        except Exception as e:
            logger.warning("Failed to save %s message: %s", message.role, e)

    async def _search(
        self, project_id: str, query_text: str, intent: IntentResult
    ) -> Tuple[Dict[str, List[SemanticSearchResult]], List[DocumentSearchResult]]:
        retrieval = self.app.retrieval
        settings = self.app.settings

        tables: List[str] = []
        if wants_data(intent):
            try:
                tables = await retrieval.vectorized_tables(project_id)
            except Exception as e:
                logger.warning("Failed to list vectorized tables: %s", e)

        searches = [
            retrieval.search_similar_rows(
                project_id, table, query_text, settings.row_search_limit
            )
            for table in tables
        ]
        if wants_documents(intent):
            searches.append(
                retrieval.search_similar_document_chunks(
                    project_id, query_text, settings.document_search_limit
                )
            )

        outcomes = await asyncio.gather(*searches, return_exceptions=True)

        data_hits: Dict[str, List[SemanticSearchResult]] = {}
        for table, outcome in zip(tables, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Semantic search failed for %s: %s", table, outcome)
            elif outcome:
                data_hits[table] = outcome

        doc_hits: List[DocumentSearchResult] = []
        if wants_documents(intent):
            outcome = outcomes[-1]
            if isinstance(outcome, Exception):
                logger.warning("Document search failed: %s", outcome)
            else:
                doc_hits = list(outcome)
        return data_hits, doc_hits

    async def _project_context(self, project_id: str) -> Optional[ProjectContext]:
        try:
            return await self.app.query.get_project_context(project_id)
        except Exception as e:
            logger.warning("Failed to load project context: %s", e)
            return None

    async def _consume(
        self, turn: _Turn, messages, model: Optional[str]
    ) -> Tuple[str, Optional[str]]:
        """Feed the model stream into the turn's buffer.

        Returns ``("done", None)``, ``("error", message)`` or
        ``("abandoned", None)``.
        """
        timeout = self.app.settings.stream_idle_timeout
        stream = self.app.llm.stream_chat(messages, model=model)
        events = stream.__aiter__()
        abandoned = asyncio.ensure_future(turn.abandoned.wait())
        pending_event = None
        try:
            while True:
                pending_event = asyncio.ensure_future(events.__anext__())
                done, _ = await asyncio.wait(
                    {pending_event, abandoned},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if abandoned in done or not self._is_live(turn):
                    return "abandoned", None
                if pending_event not in done:
                    return "error", (
                        f"Model stream timed out after {timeout} seconds of inactivity"
                    )

                try:
                    event: StreamEvent = pending_event.result()
                except StopAsyncIteration:
                    event = StreamEvent.done()
                except Exception as e:
                    return "error", str(e) or type(e).__name__
                pending_event = None

                if event.kind == CHUNK:
                    if self.state is TurnState.AWAITING_MODEL:
                        self._transition(TurnState.STREAMING)
                    turn.buffer.append_chunk(event.content)
                elif event.kind == DONE:
                    return "done", None
                else:
                    return "error", event.error or "Model stream failed"
        finally:
            abandoned.cancel()
            if pending_event is not None and not pending_event.done():
                pending_event.cancel()
                await asyncio.gather(pending_event, return_exceptions=True)
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _execute(
        self, turn: _Turn, message_id: str, blocks
    ) -> List[VisualizationResult]:
        session = self.app.session
        async with session.results_lock:
            results = await execute_blocks(
                self.app.query,
                turn.project_id,
                blocks,
                timeout=self.app.settings.query_timeout,
                cancelled=lambda: not self._is_live(turn),
            )
            if self._is_live(turn):
                session.set_results(message_id, results)
        return results

    # --- selection ---
    def cancel(self) -> bool:
        """Abandon the in-flight turn, if any. Never raises."""
        turn = self._turn
        if turn is None:
            return False
        logger.info("Cancelling turn in %s", turn.conversation_id)
        turn.abandoned.set()
        turn.buffer.cancel()
        self._turn = None
        self.app.session.set_streaming(StreamingState())
        self._transition(TurnState.IDLE)
        return True

    async def rehydrate(self) -> Dict[str, List[VisualizationResult]]:
        """Rebuild results for the loaded messages of the current conversation."""
        if self.is_busy:
            logger.warning("Skipping rehydration while a turn is in progress")
            return {}

        session = self.app.session
        project_id = session.project_id
        conversation_id = session.current_conversation_id
        if project_id is None:
            return {}

        # A turn started meanwhile in the same conversation waits on the lock
        # to write its own results, so only a selection change cancels.
        def cancelled():
            return not session.is_current(project_id, conversation_id)

        async with session.results_lock:
            results = await rehydrate(
                session.messages,
                self.app.query,
                project_id,
                timeout=self.app.settings.query_timeout,
                cancelled=cancelled,
            )
            if cancelled():
                return {}
            session.replace_results({**session.results, **results})
        return results

    async def load_conversation(self, conversation_id: str) -> Dict[str, List[VisualizationResult]]:
        """Select a conversation, load its messages and rebuild its results."""
        self.cancel()
        session = self.app.session
        project_id = session.project_id
        session.set_current_conversation(conversation_id)

        conversation = await self.app.store.get_conversation(project_id, conversation_id)
        if not session.is_current(project_id, conversation_id):
            return {}
        session.set_messages(conversation.messages)
        return await self.rehydrate()

    async def switch_project(self, project_id: str) -> Dict[str, List[VisualizationResult]]:
        """Reset all turn-local state and load the project's conversation list."""
        self.cancel()
        session = self.app.session
        session.reset_for_project(project_id)
        await self.refresh_conversations()
        return await self.rehydrate()

    async def refresh_conversations(self) -> None:
        session = self.app.session
        project_id = session.project_id
        conversations = await self.app.store.list_conversations(project_id)
        if session.project_id == project_id:
            session.set_conversations(conversations)

    async def new_conversation(self, title: Optional[str] = None):
        self.cancel()
        session = self.app.session
        conversation = await self.app.store.create_conversation(session.project_id, title)
        session.add_conversation(conversation)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        session = self.app.session
        if self._turn is not None and self._turn.conversation_id == conversation_id:
            self.cancel()
        await self.app.store.delete_conversation(session.project_id, conversation_id)
        session.remove_conversation(conversation_id)
