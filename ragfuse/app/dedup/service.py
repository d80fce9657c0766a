from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass

from ragfuse.app.ranking.scoring import jaccard, tokenize
from ragfuse.app.retrieval.contracts import RetrievedDocument, document_key
from ragfuse.core.config import DEFAULT_DEDUP_THRESHOLD, DedupConfig


@dataclass(frozen=True)
class DedupResult:
    unique: tuple[RetrievedDocument, ...]
    removed_count: int


def normalize_content(content: str) -> str:
    return " ".join(content.lower().split())


def content_signature(content: str) -> str:
    normalized = normalize_content(content)
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


def dedup_by_id(documents: Sequence[RetrievedDocument]) -> DedupResult:
    seen: set[object] = set()
    unique: list[RetrievedDocument] = []
    for document in documents:
        key = document_key(document)
        if key in seen:
            continue
        seen.add(key)
        unique.append(document)
    return DedupResult(tuple(unique), len(documents) - len(unique))


def dedup_by_signature(documents: Sequence[RetrievedDocument]) -> DedupResult:
    seen: set[str] = set()
    unique: list[RetrievedDocument] = []
    for document in documents:
        signature = content_signature(document.content)
        if signature in seen:
            continue
        seen.add(signature)
        unique.append(document)
    return DedupResult(tuple(unique), len(documents) - len(unique))


def dedup_by_similarity(
    documents: Sequence[RetrievedDocument],
    threshold: float = DEFAULT_DEDUP_THRESHOLD,
) -> DedupResult:
    accepted: list[RetrievedDocument] = []
    accepted_tokens: list[set[str]] = []
    for document in documents:
        tokens = tokenize(document.content)
        if any(jaccard(tokens, other) >= threshold for other in accepted_tokens):
            continue
        accepted.append(document)
        accepted_tokens.append(tokens)
    return DedupResult(tuple(accepted), len(documents) - len(accepted))


def deduplicate(
    documents: Sequence[RetrievedDocument],
    config: DedupConfig | None = None,
) -> DedupResult:
    resolved = config or DedupConfig()
    current: tuple[RetrievedDocument, ...] = tuple(documents)
    removed = 0
    if resolved.by_signature:
        result = dedup_by_signature(current)
        current, removed = result.unique, removed + result.removed_count
    if resolved.by_similarity:
        result = dedup_by_similarity(current, resolved.threshold)
        current, removed = result.unique, removed + result.removed_count
    return DedupResult(current, removed)
