from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from ragfuse.core.config import LLMConfig
from ragfuse.core.errors import ModelCallError

LOGGER = logging.getLogger(__name__)

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


class ChatModel(Protocol):
    async def generate(self, messages: Sequence[ChatMessage]) -> str: ...


class GeminiChatModel:
    def __init__(self, *, api_key: str, model: str) -> None:
        from google import genai

        self._client = genai.Client(api_key=api_key)
        self._model = model

    async def generate(self, messages: Sequence[ChatMessage]) -> str:
        from google.genai import types

        system_parts = [item.content for item in messages if item.role == SYSTEM]
        contents = [
            types.Content(
                role="model" if item.role == ASSISTANT else "user",
                parts=[types.Part(text=item.content)],
            )
            for item in messages
            if item.role != SYSTEM
        ]
        config = (
            types.GenerateContentConfig(system_instruction="\n".join(system_parts))
            if system_parts
            else None
        )
        response = await self._client.aio.models.generate_content(
            model=self._model,
            contents=contents,
            config=config,
        )
        return response.text or ""


async def call_model(
    chat_model: ChatModel,
    messages: Sequence[ChatMessage],
    *,
    operation: str,
    timeout_seconds: float | None = None,
) -> str:
    try:
        if timeout_seconds is None:
            return await chat_model.generate(messages)
        return await asyncio.wait_for(
            chat_model.generate(messages), timeout=timeout_seconds
        )
    except asyncio.TimeoutError as exc:
        raise ModelCallError(
            f"{operation} timed out after {timeout_seconds}s", operation=operation
        ) from exc
    except Exception as exc:  # noqa: BLE001
        raise ModelCallError(
            f"{operation} failed ({exc.__class__.__name__})", operation=operation
        ) from exc


def build_chat_model(config: LLMConfig) -> ChatModel | None:
    if config.backend != "google" or not config.api_key:
        return None
    try:
        return GeminiChatModel(api_key=config.api_key, model=config.model)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning(
            "Chat model unavailable",
            extra={"backend": config.backend, "model": config.model},
            exc_info=exc,
        )
        return None
