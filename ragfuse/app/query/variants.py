from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from ragfuse.app.llm.providers import ChatModel
from ragfuse.app.query.service import Decomposer, Expander

DEFAULT_MAX_QUERIES = 5


class QueryGenerator(Protocol):
    async def generate(self, query: str) -> list[str]: ...


def _unique(queries: Sequence[str]) -> list[str]:
    unique: list[str] = []
    for query in queries:
        if query and query not in unique:
            unique.append(query)
    return unique


def whitespace_variants(query: str) -> list[str]:
    tokens = query.split()
    if len(tokens) <= 1:
        return [query]
    return _unique([query, " ".join(tokens)])


def lowercase_variants(query: str) -> list[str]:
    return _unique([query, query.lower()])


@dataclass(frozen=True)
class PrefixSuffixVariants:
    prefixes: tuple[str, ...] = tuple()
    suffixes: tuple[str, ...] = tuple()

    def __call__(self, query: str) -> list[str]:
        queries = [query]
        queries.extend(f"{prefix} {query}" for prefix in self.prefixes)
        queries.extend(f"{query} {suffix}" for suffix in self.suffixes)
        return queries


class StaticQueryGenerator:
    """Adapts a synchronous variant function to the generator protocol."""

    def __init__(self, variants: Callable[[str], list[str]]) -> None:
        self._variants = variants

    async def generate(self, query: str) -> list[str]:
        return self._variants(query) or [query]


class LLMQueryGenerator:
    def __init__(
        self,
        chat_model: ChatModel,
        max_queries: int = DEFAULT_MAX_QUERIES,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._max_queries = max_queries if max_queries > 0 else DEFAULT_MAX_QUERIES
        # The original query takes one of the slots.
        self._expander = Expander(
            chat_model,
            max(self._max_queries - 1, 1),
            timeout_seconds=timeout_seconds,
        )

    async def generate(self, query: str) -> list[str]:
        queries = await self._expander.expand(query)
        return queries[: self._max_queries]


class DecomposingQueryGenerator:
    def __init__(
        self,
        chat_model: ChatModel,
        *,
        include_original: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        self._decomposer = Decomposer(chat_model, timeout_seconds=timeout_seconds)
        self._include_original = include_original

    async def generate(self, query: str) -> list[str]:
        parts = await self._decomposer.decompose(query)
        if self._include_original:
            return _unique([query, *parts])
        return parts
