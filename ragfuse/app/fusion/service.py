"""Fusion of independently ranked document lists.

Every strategy takes an ordered mapping of source key to ranked documents and
returns one ranked list in which no two documents share a non-empty id. Source
order matters for tie-breaking, round-robin interleaving and concatenation
precedence. Inputs are never mutated.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ragfuse.app.retrieval.contracts import (
    FusionStrategy,
    RetrievedDocument,
    document_key,
)
from ragfuse.core.config import DEFAULT_RRF_K, FusionAlgorithm, FusionConfig

SOURCE_KEY_SEPARATOR = "::"

FusionInput = Mapping[str, Sequence[RetrievedDocument]]


def source_key(backend_name: str, query_variant: str | None = None) -> str:
    if query_variant is None:
        return backend_name
    return f"{backend_name}{SOURCE_KEY_SEPARATOR}{query_variant}"


def backend_of(key: str) -> str:
    return key.split(SOURCE_KEY_SEPARATOR, 1)[0]


@dataclass
class _Accumulator:
    document: RetrievedDocument
    order: int
    score: float = 0.0
    count: int = 0
    best_rank: int = 0


def _accumulate(
    results: FusionInput,
    contribution,
) -> list[_Accumulator]:
    entries: dict[object, _Accumulator] = {}
    for source, documents in results.items():
        for rank, document in enumerate(documents):
            key = document_key(document)
            entry = entries.get(key)
            if entry is None:
                entry = _Accumulator(
                    document=document, order=len(entries), best_rank=rank
                )
                entries[key] = entry
            entry.score += contribution(source, rank, document)
            entry.count += 1
            entry.best_rank = min(entry.best_rank, rank)
    return list(entries.values())


def _ranked(entries: list[_Accumulator]) -> list[RetrievedDocument]:
    ordered = sorted(entries, key=lambda entry: (-entry.score, entry.order))
    return [entry.document.with_score(entry.score) for entry in ordered]


@dataclass(frozen=True)
class ReciprocalRankFusion:
    k: int = DEFAULT_RRF_K
    name: str = "rrf"

    def __call__(self, results: FusionInput) -> list[RetrievedDocument]:
        entries = _accumulate(
            results, lambda _source, rank, _doc: 1.0 / (self.k + rank + 1)
        )
        return _ranked(entries)


@dataclass(frozen=True)
class WeightedFusion:
    weights: Mapping[str, float] = field(default_factory=dict)
    name: str = "weighted"

    def weight_for(self, source: str) -> float:
        weight = self.weights.get(source)
        if weight is None:
            weight = self.weights.get(backend_of(source))
        # A zero weight is treated as unset.
        return weight if weight else 1.0

    def __call__(self, results: FusionInput) -> list[RetrievedDocument]:
        entries = _accumulate(
            results, lambda source, _rank, doc: doc.score * self.weight_for(source)
        )
        return _ranked(entries)


@dataclass(frozen=True)
class RoundRobinFusion:
    name: str = "round_robin"

    def __call__(self, results: FusionInput) -> list[RetrievedDocument]:
        lists = list(results.values())
        longest = max((len(documents) for documents in lists), default=0)
        seen: set[object] = set()
        fused: list[RetrievedDocument] = []
        for position in range(longest):
            for documents in lists:
                if position >= len(documents):
                    continue
                document = documents[position]
                key = document_key(document)
                if key in seen:
                    continue
                seen.add(key)
                fused.append(document)
        return fused


@dataclass(frozen=True)
class ConcatFusion:
    name: str = "concat"

    def __call__(self, results: FusionInput) -> list[RetrievedDocument]:
        seen: set[object] = set()
        fused: list[RetrievedDocument] = []
        for documents in results.values():
            for document in documents:
                key = document_key(document)
                if key in seen:
                    continue
                seen.add(key)
                fused.append(document)
        return fused


@dataclass(frozen=True)
class MultiQueryWeightedFusion:
    """Rewards documents returned for many query variants.

    score = occurrence_weight * occurrences + position_weight / (best_rank + 1)
    """

    occurrence_weight: float = 0.7
    position_weight: float = 0.3
    name: str = "multi_query_weighted"

    def __call__(self, results: FusionInput) -> list[RetrievedDocument]:
        entries = _accumulate(results, lambda _source, _rank, _doc: 0.0)
        for entry in entries:
            entry.score = (
                entry.count * self.occurrence_weight
                + self.position_weight / (entry.best_rank + 1)
            )
        return _ranked(entries)


def build_fusion(config: FusionConfig | None = None) -> FusionStrategy:
    resolved = config or FusionConfig()
    if resolved.algorithm == FusionAlgorithm.WEIGHTED:
        return WeightedFusion(weights=resolved.weights)
    if resolved.algorithm == FusionAlgorithm.ROUND_ROBIN:
        return RoundRobinFusion()
    if resolved.algorithm == FusionAlgorithm.CONCAT:
        return ConcatFusion()
    if resolved.algorithm == FusionAlgorithm.MULTI_QUERY_WEIGHTED:
        return MultiQueryWeightedFusion()
    return ReciprocalRankFusion(k=resolved.rrf_k)


def fusion_name(strategy: FusionStrategy) -> str:
    return getattr(strategy, "name", strategy.__class__.__name__)
