from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from ragfuse.app.ranking.scoring import overlap_score
from ragfuse.app.retrieval.contracts import RetrievedDocument


class InMemoryRetriever:
    """Keyword-overlap search over a fixed document list."""

    def __init__(
        self,
        documents: Sequence[RetrievedDocument],
        *,
        name: str = "memory",
        min_score: float = 0.0,
    ) -> None:
        self._documents = tuple(documents)
        self._name = name
        self._min_score = min_score

    @property
    def name(self) -> str:
        return self._name

    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        scored = [
            (overlap_score(query, document.content), document)
            for document in self._documents
        ]
        ranked = sorted(scored, key=lambda item: item[0], reverse=True)
        return [
            document.with_score(score).with_source(document.source_name or self._name)
            for score, document in ranked
            if score > self._min_score
        ][:top_k]


@dataclass(frozen=True)
class HttpSearchRetriever:
    """Posts ``{"query", "top_k"}`` to a JSON search endpoint.

    The endpoint answers with a list of rows (or ``{"documents": [...]}``) that
    carry ``id``, ``content``, ``score`` and optional ``metadata``.
    """

    endpoint: str
    name: str = "http"
    api_key: str | None = None
    timeout_seconds: float = 20.0
    extra_payload: Mapping[str, Any] = field(default_factory=dict)
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        payload = {**self.extra_payload, "query": query, "top_k": top_k}
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self.transport
        ) as client:
            response = await client.post(
                self.endpoint,
                headers=self._headers(),
                content=json.dumps(payload),
            )
        response.raise_for_status()
        return parse_search_rows(response.json(), source_name=self.name)[:top_k]


def parse_search_rows(body: Any, *, source_name: str) -> list[RetrievedDocument]:
    rows = body.get("documents") if isinstance(body, dict) else body
    if not isinstance(rows, list):
        return []

    documents: list[RetrievedDocument] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        doc_id = row.get("id")
        content = row.get("content")
        score = row.get("score", 0.0)
        metadata = row.get("metadata")
        if not isinstance(content, str):
            continue
        if isinstance(doc_id, int):
            doc_id = str(doc_id)
        if not isinstance(doc_id, str):
            doc_id = ""
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = 0.0
        documents.append(
            RetrievedDocument(
                id=doc_id,
                content=content,
                score=float(score),
                metadata=metadata if isinstance(metadata, dict) else {},
                source_name=source_name,
            )
        )
    return documents
