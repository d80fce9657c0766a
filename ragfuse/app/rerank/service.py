from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Protocol

from ragfuse.app.llm.providers import SYSTEM, USER, ChatMessage, ChatModel, call_model
from ragfuse.app.ranking.scoring import jaccard, tokenize
from ragfuse.app.retrieval.contracts import RetrievedDocument
from ragfuse.app.rerank.composite import CompositeScoreReranker
from ragfuse.core.config import (
    DEFAULT_LLM_RERANK_TOP_N,
    MMRConfig,
    PipelineConfig,
    RerankerKind,
)
from ragfuse.core.errors import ModelCallError

LOGGER = logging.getLogger(__name__)

RERANK_PREVIEW_CHARS = 200
RERANK_SYSTEM_PROMPT = "You are a search result reranking assistant."
RERANK_PROMPT = (
    "Order the retrieved documents by relevance to the query, most relevant "
    "first.\n\n"
    "Query: {query}\n\n"
    "Documents:\n{documents}\n"
    "Answer with the document numbers separated by commas, for example 1,3,2."
)

_TOKEN_SEPARATOR = re.compile(r"[,，、\s]+")
_DIGIT_RUN = re.compile(r"\d+")


class Reranker(Protocol):
    async def rerank(
        self,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument]: ...


class ScoreReranker:
    name = "score"

    async def rerank(
        self,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument]:
        _ = query
        return sorted(documents, key=lambda document: document.score, reverse=True)


def apply_mmr(
    documents: Sequence[RetrievedDocument],
    config: MMRConfig | None = None,
) -> list[RetrievedDocument]:
    """Greedy maximal marginal relevance selection.

    Each step picks the candidate maximising
    ``lambda * score - (1 - lambda) * max_jaccard(candidate, selected)``.
    Ties go to the earlier candidate.
    """
    resolved = config or MMRConfig()
    if resolved.k <= 0 or not documents:
        return []

    limit = min(resolved.k, len(documents))
    relevance_weight = resolved.lambda_
    diversity_weight = 1.0 - resolved.lambda_
    remaining = [(document, tokenize(document.content)) for document in documents]
    selected: list[tuple[RetrievedDocument, set[str]]] = []
    while len(selected) < limit and remaining:
        best_index = 0
        best_score = float("-inf")
        for index, (document, tokens) in enumerate(remaining):
            redundancy = max(
                (jaccard(tokens, chosen) for _, chosen in selected), default=0.0
            )
            score = relevance_weight * document.score - diversity_weight * redundancy
            if score > best_score:
                best_index, best_score = index, score
        selected.append(remaining.pop(best_index))
    return [document for document, _ in selected]


class MMRReranker:
    name = "mmr"

    def __init__(self, config: MMRConfig | None = None) -> None:
        self._config = config or MMRConfig()

    async def rerank(
        self,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument]:
        _ = query
        return apply_mmr(documents, self._config)

    @property
    def config(self) -> MMRConfig:
        return self._config


def parse_rerank_indices(text: str, candidate_count: int) -> list[int]:
    """Read a 1-based ordering from model output as 0-based indices.

    Zero, out-of-range and repeated numbers are skipped.
    """
    indices: list[int] = []
    for token in _TOKEN_SEPARATOR.split(text):
        match = _DIGIT_RUN.search(token)
        if match is None:
            continue
        position = int(match.group())
        if position < 1 or position > candidate_count:
            continue
        if position - 1 in indices:
            continue
        indices.append(position - 1)
    return indices


def _preview(content: str, limit: int = RERANK_PREVIEW_CHARS) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


class LLMReranker:
    name = "llm"

    def __init__(
        self,
        chat_model: ChatModel | None,
        top_n: int = DEFAULT_LLM_RERANK_TOP_N,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._chat_model = chat_model
        self._top_n = top_n if top_n > 0 else DEFAULT_LLM_RERANK_TOP_N
        self._timeout_seconds = timeout_seconds

    async def rerank(
        self,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument]:
        if self._chat_model is None or len(documents) <= self._top_n:
            return list(documents)

        listing = "".join(
            f"{position}. {_preview(document.content)}\n"
            for position, document in enumerate(documents, start=1)
        )
        messages = [
            ChatMessage(SYSTEM, RERANK_SYSTEM_PROMPT),
            ChatMessage(USER, RERANK_PROMPT.format(query=query, documents=listing)),
        ]
        try:
            output = await call_model(
                self._chat_model,
                messages,
                operation="rerank",
                timeout_seconds=self._timeout_seconds,
            )
        except ModelCallError as exc:
            LOGGER.warning("LLM rerank failed", extra={"stage": "rerank"}, exc_info=exc)
            return list(documents[: self._top_n])

        indices = parse_rerank_indices(output, len(documents))[: self._top_n]
        if not indices:
            return list(documents[: self._top_n])
        return [documents[index] for index in indices]


@dataclass(frozen=True)
class RerankerEntry:
    name: str
    reranker: Reranker
    weight: float = 1.0


class CompositeReranker:
    """Fuses the orderings of several rerankers.

    Each member sees the full candidate list; a document at rank ``r`` in a
    member's output earns ``weight / (r + 1)``. Every input document starts at
    zero, so documents a member leaves out are ranked last rather than lost.
    """

    name = "composite"

    def __init__(
        self,
        entries: Sequence[RerankerEntry] = (),
        *,
        top_n: int | None = None,
        concurrent: bool = True,
    ) -> None:
        self._entries = list(entries)
        self._top_n = top_n
        self._concurrent = concurrent

    def add(
        self, name: str, reranker: Reranker, weight: float = 1.0
    ) -> CompositeReranker:
        self._entries.append(RerankerEntry(name, reranker, weight))
        return self

    @property
    def entries(self) -> list[RerankerEntry]:
        return list(self._entries)

    async def _run_entry(
        self,
        entry: RerankerEntry,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument] | None:
        try:
            return await entry.reranker.rerank(query, documents)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "Reranker failed", extra={"reranker": entry.name}, exc_info=exc
            )
            return None

    async def rerank(
        self,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument]:
        if not self._entries or not documents:
            return list(documents)

        if self._concurrent:
            outputs = await asyncio.gather(
                *(self._run_entry(entry, query, documents) for entry in self._entries)
            )
        else:
            outputs = [
                await self._run_entry(entry, query, documents)
                for entry in self._entries
            ]

        if all(output is None for output in outputs):
            return list(documents)

        positions = _CandidatePositions(documents)
        scores = {index: 0.0 for index in positions.indices}
        for entry, output in zip(self._entries, outputs):
            if output is None:
                continue
            claimed: set[int] = set()
            for rank, document in enumerate(output):
                index = positions.locate(document, claimed)
                if index is None:
                    continue
                claimed.add(index)
                scores[index] += entry.weight / (rank + 1)

        ranked = sorted(scores, key=lambda index: (-scores[index], index))
        fused = [documents[index].with_score(scores[index]) for index in ranked]
        if self._top_n is not None and self._top_n > 0:
            return fused[: self._top_n]
        return fused


class _CandidatePositions:
    """Maps reranker output back to the input position it came from.

    Rerankers may return copies, so documents without an id are matched by
    identity first and then by content and source.
    """

    def __init__(self, documents: Sequence[RetrievedDocument]) -> None:
        self.indices: list[int] = []
        self._by_id: dict[str, int] = {}
        self._by_identity: dict[int, int] = {}
        self._by_content: dict[tuple[str, str | None], list[int]] = {}
        for index, document in enumerate(documents):
            if document.id:
                if document.id in self._by_id:
                    continue
                self._by_id[document.id] = index
            else:
                self._by_identity[id(document)] = index
                content_key = (document.content, document.source_name)
                self._by_content.setdefault(content_key, []).append(index)
            self.indices.append(index)

    def locate(self, document: RetrievedDocument, claimed: set[int]) -> int | None:
        if document.id:
            index = self._by_id.get(document.id)
            return None if index in claimed else index
        index = self._by_identity.get(id(document))
        if index is not None and index not in claimed:
            return index
        content_key = (document.content, document.source_name)
        for index in self._by_content.get(content_key, ()):
            if index not in claimed:
                return index
        return None


def widen_to_top_k(
    entries: Sequence[RerankerEntry], top_k: int
) -> list[RerankerEntry]:
    """Raise MMR selection sizes so a diversity pass never truncates below top_k."""
    widened: list[RerankerEntry] = []
    for entry in entries:
        reranker = entry.reranker
        if isinstance(reranker, MMRReranker) and 0 < reranker.config.k < top_k:
            reranker = MMRReranker(replace(reranker.config, k=top_k))
            entry = replace(entry, reranker=reranker)
        widened.append(entry)
    return widened


def build_reranker(
    kind: RerankerKind,
    config: PipelineConfig,
    chat_model: ChatModel | None = None,
    *,
    timeout_seconds: float | None = None,
) -> Reranker:
    if kind == RerankerKind.MMR:
        return MMRReranker(config.mmr)
    if kind == RerankerKind.LLM:
        return LLMReranker(
            chat_model, config.llm_rerank_top_n, timeout_seconds=timeout_seconds
        )
    if kind == RerankerKind.COMPOSITE_SCORE:
        return CompositeScoreReranker(config.composite)
    return ScoreReranker()


def build_rerank_chain(
    config: PipelineConfig,
    chat_model: ChatModel | None = None,
    *,
    timeout_seconds: float | None = None,
) -> list[RerankerEntry]:
    return [
        RerankerEntry(
            step.kind.value,
            build_reranker(
                step.kind, config, chat_model, timeout_seconds=timeout_seconds
            ),
            step.weight,
        )
        for step in config.rerank_chain
    ]
