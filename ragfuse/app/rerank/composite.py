from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ragfuse.app.retrieval.contracts import RetrievedDocument
from ragfuse.core.config import CompositeScoreConfig

BASE_SCORE_KEY = "base_score"
POSITION_PRIOR_KEY = "position_prior"


@dataclass(frozen=True)
class ScoredCandidate:
    document: RetrievedDocument
    source: str
    base_score: float = 0.0
    position_prior: float = 0.0


def _clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def composite_score(
    candidate: ScoredCandidate,
    config: CompositeScoreConfig,
) -> float:
    prior = candidate.position_prior if candidate.position_prior > 0 else 1.0
    combined = (
        config.model_weight * candidate.document.score
        + config.base_weight * candidate.base_score
        + config.weight_for_source(candidate.source)
    )
    return _clamp(combined * prior)


def apply_composite_score(
    candidates: Sequence[ScoredCandidate],
    config: CompositeScoreConfig | None = None,
) -> list[ScoredCandidate]:
    resolved = config or CompositeScoreConfig()
    rescored = [
        ScoredCandidate(
            document=candidate.document.with_score(
                composite_score(candidate, resolved)
            ),
            source=candidate.source,
            base_score=candidate.base_score,
            position_prior=candidate.position_prior,
        )
        for candidate in candidates
    ]
    return sorted(rescored, key=lambda item: item.document.score, reverse=True)


def _metadata_float(document: RetrievedDocument, key: str, default: float) -> float:
    value = document.metadata.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def candidate_from_document(document: RetrievedDocument) -> ScoredCandidate:
    return ScoredCandidate(
        document=document,
        source=document.source_name,
        base_score=_metadata_float(document, BASE_SCORE_KEY, document.score),
        position_prior=_metadata_float(document, POSITION_PRIOR_KEY, 0.0),
    )


class CompositeScoreReranker:
    name = "composite_score"

    def __init__(self, config: CompositeScoreConfig | None = None) -> None:
        self._config = config or CompositeScoreConfig()

    async def rerank(
        self,
        query: str,
        documents: Sequence[RetrievedDocument],
    ) -> list[RetrievedDocument]:
        _ = query
        candidates = [candidate_from_document(document) for document in documents]
        return [
            candidate.document
            for candidate in apply_composite_score(candidates, self._config)
        ]
