from __future__ import annotations

from typing import Any, TypedDict

from ragfuse.app.llm.providers import ChatMessage
from ragfuse.app.retrieval.contracts import (
    BackendResult,
    QueryBundle,
    RetrievedDocument,
)

# Stage updates to these keys are appended instead of replacing the value.
ACCUMULATING_KEYS = frozenset({"telemetry_events", "errors"})


class PipelineState(TypedDict, total=False):
    request_id: str
    query: str
    history: list[ChatMessage]
    top_k: int
    bundle: QueryBundle | None
    backend_results: list[BackendResult]
    fused_documents: list[RetrievedDocument]
    unique_documents: list[RetrievedDocument]
    removed_duplicates: int
    documents: list[RetrievedDocument]
    telemetry_events: list[dict[str, Any]]
    errors: list[str]


def create_initial_state(
    query: str,
    request_id: str = "unknown",
    top_k: int = 10,
    history: list[ChatMessage] | None = None,
) -> PipelineState:
    return {
        "request_id": request_id,
        "query": query,
        "history": list(history or []),
        "top_k": top_k,
        "bundle": None,
        "backend_results": [],
        "fused_documents": [],
        "unique_documents": [],
        "removed_duplicates": 0,
        "documents": [],
        "telemetry_events": [],
        "errors": [],
    }


def apply_update(state: PipelineState, update: PipelineState) -> None:
    for key, value in update.items():
        if key in ACCUMULATING_KEYS:
            state.setdefault(key, []).extend(value)  # type: ignore[misc]
        else:
            state[key] = value  # type: ignore[literal-required]
