from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ragfuse.core.config import DEFAULT_TOP_K


class HistoryMessage(BaseModel):
    role: str = Field(min_length=1)
    content: str


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1, le=100)
    enable_optimize: bool | None = None
    enable_rerank: bool | None = None
    enable_multi_query: bool | None = None
    history: list[HistoryMessage] = Field(default_factory=list)


class RetrievedPassage(BaseModel):
    id: str
    content: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_name: str = ""


class RetrieveResponse(BaseModel):
    query: str
    documents: list[RetrievedPassage]
    total: int
    request_id: str
    variants: list[str] = Field(default_factory=list)
    failed_backends: list[str] = Field(default_factory=list)
