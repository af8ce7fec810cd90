"""
Coalescing buffer for streamed model output.

Tokens can arrive far faster than anything watching the stream needs to
update. ``StreamingBuffer`` absorbs chunks into a pending buffer and flushes
them to observers at most once per coalescing interval, or as soon as the
pending text reaches ``max_bytes``, whichever comes first. All chunks that
arrive within one interval become a single observable update.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .models import ASSISTANT_ROLE, ChatMessage, StreamingState

logger = logging.getLogger(__name__)

StreamingObserver = Callable[[StreamingState], None]


class StreamingBuffer:
    """Accumulates chunks for one in-flight turn.

    Parameters
    ----------
    interval_ms : float, default=16.0
        Coalescing interval. The default matches one 60 Hz frame.
    max_bytes : int, optional
        Flush immediately once this many UTF-8 bytes are pending. ``None``
        disables the size trigger.

    Notes
    -----
    Flushes are scheduled on the running asyncio loop. Called outside an
    event loop there is no clock to align to, so every chunk flushes
    immediately.
    """

    def __init__(self, interval_ms: float = 16.0, max_bytes: Optional[int] = 4096):
        self.interval = interval_ms / 1000.0
        self.max_bytes = max_bytes
        self.is_streaming = False
        self.content = ""
        self._pending: List[str] = []
        self._pending_bytes = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._observers: List[StreamingObserver] = []

    @property
    def state(self) -> StreamingState:
        return StreamingState(
            is_streaming=self.is_streaming, streaming_content=self.content
        )

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def subscribe(self, observer: StreamingObserver) -> Callable[[], None]:
        """Register ``observer`` for flushed updates; returns an unsubscriber."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def start_streaming(self) -> None:
        self._reset()
        self.is_streaming = True
        self._notify()

    def append_chunk(self, text: str) -> None:
        if not self.is_streaming:
            logger.debug("Ignoring chunk received while not streaming")
            return
        if not text:
            return

        self._pending.append(text)
        self._pending_bytes += len(text.encode("utf-8"))

        if self.max_bytes is not None and self._pending_bytes >= self.max_bytes:
            self.flush()
            return

        if self._handle is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.flush()
                return
            self._handle = loop.call_later(self.interval, self.flush)

    def flush(self) -> None:
        """Apply all pending chunks as one update."""
        self._cancel_timer()
        if not self._pending:
            return
        self.content += "".join(self._pending)
        logger.debug(
            "Flushed %d chunk(s), %d byte(s)", len(self._pending), self._pending_bytes
        )
        self._pending.clear()
        self._pending_bytes = 0
        self._notify()

    def finalize(self, message_id: str) -> ChatMessage:
        """Flush what is left and turn the streamed text into a message."""
        self.flush()
        message = ChatMessage(
            id=message_id,
            role=ASSISTANT_ROLE,
            content=self.content,
            created_at=datetime.now(timezone.utc),
        )
        self._reset()
        self._notify()
        return message

    def cancel(self) -> None:
        """Drop pending and streamed text and return to idle."""
        was_streaming = self.is_streaming
        self._reset()
        if was_streaming:
            self._notify()

    def _reset(self) -> None:
        self._cancel_timer()
        self._pending.clear()
        self._pending_bytes = 0
        self.content = ""
        self.is_streaming = False

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _notify(self) -> None:
        state = self.state
        for observer in list(self._observers):
            observer(state)
