"""
Turn-local state for one open project.

``Session`` is the conversation store the orchestrator reads and mutates: the
selected project and conversation, the loaded messages, the state of the
in-flight stream, and the cache of visualization results keyed by message id.
It is an explicit object handed to the engine, never a module-level global.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .models import (
    ChatMessage,
    Conversation,
    StreamingState,
    VisualizationResult,
)

logger = logging.getLogger(__name__)

PROJECT_CONTEXT = "project-context"
TABLES = "tables"

InvalidationListener = Callable[[str, List[str]], None]
StreamingListener = Callable[[StreamingState], None]


class Session:
    """Mutable state for the active project.

    Parameters
    ----------
    project_id : str, optional
        The project to start with.

    Notes
    -----
    ``results_lock`` is the single-writer lock for ``results``. Live command
    execution and rehydration both hold it while they execute and write.
    """

    def __init__(self, project_id: Optional[str] = None):
        self.project_id = project_id
        self.current_conversation_id: Optional[str] = None
        self.conversations: List[Conversation] = []
        self.messages: List[ChatMessage] = []
        self.streaming = StreamingState()
        self.results: Dict[str, List[VisualizationResult]] = {}
        self.results_lock = asyncio.Lock()
        self._invalidation_listeners: List[InvalidationListener] = []
        self._streaming_listeners: List[StreamingListener] = []

    # --- selection ---
    def reset_for_project(self, project_id: Optional[str]) -> None:
        self.project_id = project_id
        self.current_conversation_id = None
        self.conversations = []
        self.messages = []
        self.results = {}
        self.set_streaming(StreamingState())

    def set_current_conversation(self, conversation_id: Optional[str]) -> None:
        self.current_conversation_id = conversation_id
        self.messages = []
        self.results = {}
        self.set_streaming(StreamingState())

    def is_current(self, project_id: Optional[str], conversation_id: Optional[str]) -> bool:
        """True if the selection still matches the given ids."""
        return (
            self.project_id == project_id
            and self.current_conversation_id == conversation_id
        )

    # --- conversations ---
    def set_conversations(self, conversations: Iterable[Conversation]) -> None:
        self.conversations = list(conversations)

    def add_conversation(self, conversation: Conversation) -> None:
        """Prepend ``conversation`` and select it."""
        self.conversations = [conversation] + [
            c for c in self.conversations if c.id != conversation.id
        ]
        self.set_current_conversation(conversation.id)

    def update_conversation(self, conversation_id: str, **updates) -> None:
        self.conversations = [
            c.model_copy(update=updates) if c.id == conversation_id else c
            for c in self.conversations
        ]

    def remove_conversation(self, conversation_id: str) -> None:
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.current_conversation_id == conversation_id:
            self.set_current_conversation(None)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return next((c for c in self.conversations if c.id == conversation_id), None)

    # --- messages ---
    def add_message(self, message: ChatMessage) -> None:
        self.messages = self.messages + [message]

    def set_messages(self, messages: Iterable[ChatMessage]) -> None:
        self.messages = list(messages)

    def clear_messages(self) -> None:
        self.messages = []
        self.current_conversation_id = None
        self.results = {}

    # --- streaming ---
    def set_streaming(self, state: StreamingState) -> None:
        self.streaming = state
        for listener in list(self._streaming_listeners):
            listener(state)

    def subscribe_streaming(self, listener: StreamingListener) -> Callable[[], None]:
        self._streaming_listeners.append(listener)
        return lambda: self._discard(self._streaming_listeners, listener)

    # --- visualization results ---
    def set_results(self, message_id: str, results: List[VisualizationResult]) -> None:
        self.results = {**self.results, message_id: list(results)}

    def replace_results(self, results: Mapping[str, List[VisualizationResult]]) -> None:
        self.results = {k: list(v) for k, v in results.items()}

    def get_results(self, message_id: str) -> List[VisualizationResult]:
        return self.results.get(message_id, [])

    # --- cache invalidation ---
    def subscribe_invalidation(self, listener: InvalidationListener) -> Callable[[], None]:
        """``listener(project_id, keys)`` runs when dependent views go stale."""
        self._invalidation_listeners.append(listener)
        return lambda: self._discard(self._invalidation_listeners, listener)

    def emit_invalidation(self, keys: Optional[List[str]] = None) -> None:
        keys = keys or [PROJECT_CONTEXT, TABLES]
        logger.debug("Invalidating %s for project %s", keys, self.project_id)
        for listener in list(self._invalidation_listeners):
            listener(self.project_id, keys)

    @staticmethod
    def _discard(listeners, listener) -> None:
        if listener in listeners:
            listeners.remove(listener)
