from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ragfuse.app.retrieval.contracts import RetrievedDocument

DEFAULT_PREVIEW_CHARS = 500
EMPTY_CONTEXT = "No relevant documents found."
CONTEXT_HEADER = "Relevant documents for the query:\n\n"


def _preview(content: str, limit: int) -> str:
    if limit <= 0 or len(content) <= limit:
        return content
    return content[:limit] + "..."


def render_context(
    documents: Sequence[RetrievedDocument],
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> str:
    if not documents:
        return EMPTY_CONTEXT

    lines = [CONTEXT_HEADER]
    for position, document in enumerate(documents, start=1):
        lines.append(f"[{position}] {_preview(document.content, preview_chars)}\n")
        if document.title:
            lines.append(f"    Title: {document.title}\n")
        if document.score > 0:
            lines.append(f"    Relevance: {document.score:.2f}\n")
        lines.append("\n")
    return "".join(lines)


@dataclass(frozen=True)
class RetrievalStats:
    total_results: int = 0
    unique_results: int = 0
    average_score: float = 0.0
    top_score: float = 0.0
    bottom_score: float = 0.0
    sources: dict[str, int] = field(default_factory=dict)


def _source_of(document: RetrievedDocument) -> str | None:
    source = document.metadata.get("source")
    if isinstance(source, str) and source:
        return source
    return document.source_name or None


def calculate_stats(documents: Sequence[RetrievedDocument]) -> RetrievalStats:
    if not documents:
        return RetrievalStats()

    scores = [document.score for document in documents]
    sources: dict[str, int] = {}
    for document in documents:
        source = _source_of(document)
        if source is not None:
            sources[source] = sources.get(source, 0) + 1
    unique_ids = {document.id for document in documents if document.id}
    anonymous = sum(1 for document in documents if not document.id)
    return RetrievalStats(
        total_results=len(documents),
        unique_results=len(unique_ids) + anonymous,
        average_score=sum(scores) / len(scores),
        top_score=max(scores),
        bottom_score=min(scores),
        sources=sources,
    )


def format_stats(stats: RetrievalStats | None) -> str:
    if stats is None:
        return ""

    lines = [
        "=== Retrieval stats ===",
        f"{'Total results':<20}: {stats.total_results}",
        f"{'Unique results':<20}: {stats.unique_results}",
        f"{'Average score':<20}: {stats.average_score:.4f}",
        f"{'Top score':<20}: {stats.top_score:.4f}",
        f"{'Bottom score':<20}: {stats.bottom_score:.4f}",
    ]
    if stats.sources:
        lines.append("")
        lines.append("Sources:")
        for source, count in sorted(stats.sources.items()):
            lines.append(f"  - {source}: {count}")
    return "\n".join(lines) + "\n"
