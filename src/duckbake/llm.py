"""Concrete implementations for LLM providers."""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from .exceptions import ModelNotAvailable
from .models import StreamEvent

logger = logging.getLogger(__name__)


class LLM(ABC):
    """Abstract Base Class for all LLM providers."""

    model: str

    @abstractmethod
    def stream_chat(
        self, messages: List[Dict[str, Any]], model: Optional[str] = None, **kwargs: Any
    ) -> AsyncIterator[StreamEvent]:
        """Streams a chat completion as a sequence of events.

        Implementations are async generators. They yield zero or more
        ``chunk`` events followed by exactly one terminal event, ``done`` or
        ``error``. Backend failures are reported as an ``error`` event rather
        than raised.

        Parameters
        ----------
        messages : List[Dict[str, Any]]
            Role/content dictionaries, system prompt first.
        model : str, optional
            The model to use. Defaults to the provider's default model.
        **kwargs : Any
            Provider-specific options passed to the SDK.

        Yields
        ------
        StreamEvent
            ``chunk`` events in delivery order, then ``done`` or ``error``.
        """
        pass

    async def list_models(self) -> List[str]:
        """Names of the models this provider can serve."""
        return [self.model]

    async def check_status(self) -> bool:
        """Whether the backend is reachable."""
        return True


class Ollama(LLM):
    def __init__(self, default_model: Optional[str] = None, host: Optional[str] = None):
        from ollama import AsyncClient

        from .config import get_settings

        settings = get_settings()
        self.client = AsyncClient(host=host or settings.ollama_host)
        self.model = default_model or settings.model

    async def stream_chat(self, messages, model=None, **kwargs):
        try:
            stream = await self.client.chat(
                model=model or self.model, messages=messages, stream=True, **kwargs
            )
            async for part in stream:
                content = part["message"]["content"]
                if content:
                    yield StreamEvent.chunk(content)
                if part.get("done"):
                    break
        except Exception as e:
            logger.warning("Ollama stream failed: %s", e)
            yield StreamEvent.failure(str(e))
            return
        yield StreamEvent.done()

    async def list_models(self) -> List[str]:
        try:
            response = await self.client.list()
        except ConnectionError as e:
            raise ModelNotAvailable(str(e)) from e
        return [m["model"] for m in response["models"]]

    async def check_status(self) -> bool:
        try:
            await self.client.list()
        except Exception as e:
            logger.info("Ollama not reachable: %s", e)
            return False
        return True


class OpenAI(LLM):
    """Any OpenAI-compatible server, such as LM Studio or llama.cpp."""

    def __init__(
        self,
        default_model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        from openai import AsyncOpenAI

        from .config import get_settings

        settings = get_settings()
        self.client = AsyncOpenAI(
            base_url=base_url or f"{settings.ollama_host.rstrip('/')}/v1",
            api_key=api_key or os.environ.get("OPENAI_API_KEY", "not-needed"),
        )
        self.model = default_model or settings.model

    async def stream_chat(self, messages, model=None, **kwargs):
        try:
            stream = await self.client.chat.completions.create(
                model=model or self.model, messages=messages, stream=True, **kwargs
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield StreamEvent.chunk(delta)
        except Exception as e:
            logger.warning("OpenAI-compatible stream failed: %s", e)
            yield StreamEvent.failure(str(e))
            return
        yield StreamEvent.done()

    async def list_models(self) -> List[str]:
        page = await self.client.models.list()
        return [m.id for m in page.data]

    async def check_status(self) -> bool:
        try:
            await self.client.models.list()
        except Exception as e:
            logger.info("OpenAI-compatible server not reachable: %s", e)
            return False
        return True


class Echo(LLM):
    """Streams the user's prompt back in small chunks. For development and tests."""

    def __init__(
        self, default_model: str = "echo-v1", chunk_size: int = 8, delay: float = 0.0
    ):
        self.model = default_model
        self.chunk_size = chunk_size
        self.delay = delay

    async def stream_chat(self, messages, model=None, **kwargs):
        user_prompt = messages[-1]["content"] if messages else "No message provided"
        content = f"**Echo LLM - static response for testing**\n\n_Your prompt:_\n\n{user_prompt}"

        for start in range(0, len(content), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamEvent.chunk(content[start : start + self.chunk_size])
        yield StreamEvent.done()
