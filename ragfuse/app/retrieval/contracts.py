from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Protocol


@dataclass(frozen=True)
class RetrievedDocument:
    id: str
    content: str
    score: float = 0.0
    metadata: Mapping[str, Any] = field(default_factory=dict)
    source_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", float(self.score))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def with_score(self, score: float) -> RetrievedDocument:
        return replace(self, score=score)

    def with_source(self, source_name: str) -> RetrievedDocument:
        return replace(self, source_name=source_name)

    def with_metadata(self, **values: Any) -> RetrievedDocument:
        return replace(self, metadata={**self.metadata, **values})

    @property
    def title(self) -> str | None:
        title = self.metadata.get("title")
        return title if isinstance(title, str) and title else None


def document_key(document: RetrievedDocument) -> object:
    """Identity used for duplicate detection.

    Documents without an id never collide with each other.
    """
    if document.id:
        return document.id
    return ("anonymous", id(document))


@dataclass(frozen=True)
class QueryBundle:
    original: str
    variants: tuple[str, ...]

    @classmethod
    def of(
        cls,
        original: str,
        extra: Iterable[str] = (),
        *,
        include_original: bool = True,
    ) -> QueryBundle:
        variants: list[str] = []
        candidates = [original, *extra] if include_original else list(extra)
        for candidate in candidates:
            normalized = candidate.strip()
            if normalized and normalized not in variants:
                variants.append(normalized)
        if not variants:
            variants.append(original)
        return cls(original=original, variants=tuple(variants))

    @property
    def primary(self) -> str:
        return self.variants[0]


@dataclass(frozen=True)
class BackendResult:
    backend_name: str
    query_variant: str
    documents: tuple[RetrievedDocument, ...] = tuple()
    error: BaseException | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class Retriever(Protocol):
    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]: ...


class FusionStrategy(Protocol):
    def __call__(
        self, results: Mapping[str, Sequence[RetrievedDocument]]
    ) -> list[RetrievedDocument]: ...
