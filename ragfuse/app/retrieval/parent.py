from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence

from ragfuse.app.retrieval.contracts import RetrievedDocument, Retriever
from ragfuse.core.errors import ConfigError

DEFAULT_PARENT_ID_KEY = "parent_id"

ParentGetter = Callable[[Sequence[str]], Awaitable[list[RetrievedDocument]]]


class MappingParentGetter:
    def __init__(self, documents: Mapping[str, RetrievedDocument]) -> None:
        self._documents = dict(documents)

    @classmethod
    def from_documents(
        cls, documents: Sequence[RetrievedDocument]
    ) -> MappingParentGetter:
        return cls({document.id: document for document in documents if document.id})

    async def __call__(self, ids: Sequence[str]) -> list[RetrievedDocument]:
        return [self._documents[item] for item in ids if item in self._documents]


class ParentRetriever:
    """Searches child chunks and returns the parent documents they point at."""

    def __init__(
        self,
        retriever: Retriever | None,
        parent_getter: ParentGetter | None,
        parent_id_key: str = DEFAULT_PARENT_ID_KEY,
    ) -> None:
        if retriever is None:
            raise ConfigError("ParentRetriever requires a child retriever")
        if parent_getter is None:
            raise ConfigError("ParentRetriever requires a parent getter")
        if not parent_id_key:
            raise ConfigError("ParentRetriever requires a parent id key")
        self._retriever = retriever
        self._parent_getter = parent_getter
        self._parent_id_key = parent_id_key

    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        children = await self._retriever.retrieve(query, top_k)
        parent_ids: list[str] = []
        best_scores: dict[str, float] = {}
        for child in children:
            parent_id = child.metadata.get(self._parent_id_key)
            if not isinstance(parent_id, str) or not parent_id:
                continue
            if parent_id not in best_scores:
                parent_ids.append(parent_id)
                best_scores[parent_id] = child.score
            else:
                best_scores[parent_id] = max(best_scores[parent_id], child.score)
        if not parent_ids:
            return []

        parents = await self._parent_getter(parent_ids)
        # Parents inherit the best score among their matching children.
        return [
            parent.with_score(best_scores.get(parent.id, parent.score))
            for parent in parents
        ][:top_k]
