from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from ragfuse.app.llm.providers import (
    ASSISTANT,
    SYSTEM,
    USER,
    ChatMessage,
    ChatModel,
    call_model,
)
from ragfuse.app.retrieval.contracts import QueryBundle
from ragfuse.core.config import DEFAULT_NUM_VARIANTS
from ragfuse.core.errors import ModelCallError

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 10

REWRITE_SYSTEM_PROMPT = "You are a query optimization assistant for a search system."
REWRITE_PROMPT = (
    "Rewrite the user's query so it is clear, complete and self-contained for "
    "document retrieval. If the query is already clear, return it unchanged.\n"
    "{history}"
    "Query: {query}\n\n"
    "Return only the rewritten query, without explanation."
)
EXPAND_SYSTEM_PROMPT = "You are a query expansion assistant for a search system."
EXPAND_PROMPT = (
    "Generate {count} alternative phrasings of the query below that keep its "
    "meaning but vary the wording, to improve retrieval recall.\n\n"
    "Query: {query}\n\n"
    "Write one query per line without numbering."
)
DECOMPOSE_SYSTEM_PROMPT = "You are a query decomposition assistant for a search system."
DECOMPOSE_PROMPT = (
    "Break the complex query below into simple sub-queries that can each be "
    "searched independently.\n\n"
    "Query: {query}\n\n"
    "Write one sub-query per line without numbering."
)

_BULLET_PREFIX = re.compile(r"^[-—•]\s*")
_NUMBER_PREFIX = re.compile(r"^\d+\s*[.)、]\s*")


def strip_list_marker(line: str) -> str:
    stripped = _BULLET_PREFIX.sub("", line.strip(), count=1)
    return _NUMBER_PREFIX.sub("", stripped, count=1).strip()


def parse_query_lines(text: str, *, exclude: str | None = None) -> list[str]:
    queries: list[str] = []
    for raw_line in text.splitlines():
        line = strip_list_marker(raw_line)
        if not line or line == exclude or line in queries:
            continue
        queries.append(line)
    return queries


def _history_block(history: Sequence[ChatMessage]) -> str:
    lines: list[str] = []
    for message in list(history)[-MAX_HISTORY_MESSAGES:]:
        content = message.content.strip()
        if not content:
            continue
        role = {ASSISTANT: "Assistant", SYSTEM: "System"}.get(message.role, "User")
        lines.append(f"{role}: {content}")
    if not lines:
        return ""
    return "Conversation history:\n" + "\n".join(lines) + "\n\n"


class Rewriter:
    def __init__(
        self,
        chat_model: ChatModel | None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._chat_model = chat_model
        self._timeout_seconds = timeout_seconds

    async def rewrite(
        self,
        query: str,
        history: Sequence[ChatMessage] = (),
    ) -> str:
        if self._chat_model is None:
            return query

        messages = [
            ChatMessage(SYSTEM, REWRITE_SYSTEM_PROMPT),
            ChatMessage(
                USER,
                REWRITE_PROMPT.format(query=query, history=_history_block(history)),
            ),
        ]
        try:
            output = await call_model(
                self._chat_model,
                messages,
                operation="rewrite",
                timeout_seconds=self._timeout_seconds,
            )
        except ModelCallError as exc:
            LOGGER.warning(
                "Query rewrite failed", extra={"stage": "rewrite"}, exc_info=exc
            )
            return query

        rewritten = output.strip()
        return rewritten if rewritten else query


class Expander:
    def __init__(
        self,
        chat_model: ChatModel | None,
        num_variants: int = DEFAULT_NUM_VARIANTS,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._chat_model = chat_model
        self._num_variants = num_variants if num_variants > 0 else DEFAULT_NUM_VARIANTS
        self._timeout_seconds = timeout_seconds

    async def expand(self, query: str, num_variants: int | None = None) -> list[str]:
        """Return the query followed by up to ``num_variants`` paraphrases."""
        if self._chat_model is None:
            return [query]

        count = (
            num_variants if num_variants and num_variants > 0 else self._num_variants
        )
        messages = [
            ChatMessage(SYSTEM, EXPAND_SYSTEM_PROMPT),
            ChatMessage(USER, EXPAND_PROMPT.format(count=count, query=query)),
        ]
        try:
            output = await call_model(
                self._chat_model,
                messages,
                operation="expand",
                timeout_seconds=self._timeout_seconds,
            )
        except ModelCallError as exc:
            LOGGER.warning(
                "Query expansion failed", extra={"stage": "expand"}, exc_info=exc
            )
            return [query]

        variants = parse_query_lines(output, exclude=query)[:count]
        return [query, *variants]


class Decomposer:
    def __init__(
        self,
        chat_model: ChatModel | None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._chat_model = chat_model
        self._timeout_seconds = timeout_seconds

    async def decompose(self, query: str) -> list[str]:
        if self._chat_model is None:
            return [query]

        messages = [
            ChatMessage(SYSTEM, DECOMPOSE_SYSTEM_PROMPT),
            ChatMessage(USER, DECOMPOSE_PROMPT.format(query=query)),
        ]
        try:
            output = await call_model(
                self._chat_model,
                messages,
                operation="decompose",
                timeout_seconds=self._timeout_seconds,
            )
        except ModelCallError as exc:
            LOGGER.warning(
                "Query decomposition failed",
                extra={"stage": "decompose"},
                exc_info=exc,
            )
            return [query]

        return parse_query_lines(output) or [query]


class QueryOptimizer:
    def __init__(
        self,
        chat_model: ChatModel | None,
        num_variants: int = DEFAULT_NUM_VARIANTS,
        *,
        enable_rewrite: bool = True,
        enable_expand: bool = True,
        include_original: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        self._rewriter = Rewriter(chat_model, timeout_seconds=timeout_seconds)
        self._expander = Expander(
            chat_model, num_variants, timeout_seconds=timeout_seconds
        )
        self._enable_rewrite = enable_rewrite
        self._enable_expand = enable_expand
        self._include_original = include_original

    async def optimize(
        self,
        query: str,
        history: Sequence[ChatMessage] = (),
    ) -> QueryBundle:
        rewritten = query
        if self._enable_rewrite:
            rewritten = await self._rewriter.rewrite(query, history)

        expanded = [rewritten]
        if self._enable_expand:
            expanded = await self._expander.expand(rewritten)

        return QueryBundle.of(
            query, expanded, include_original=self._include_original
        )
