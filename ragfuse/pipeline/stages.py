from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from time import perf_counter

from ragfuse.app.dedup.service import dedup_by_id, deduplicate
from ragfuse.app.fusion.service import fusion_name
from ragfuse.app.query.service import QueryOptimizer
from ragfuse.app.query.variants import QueryGenerator
from ragfuse.app.rerank.service import (
    CompositeReranker,
    RerankerEntry,
    widen_to_top_k,
)
from ragfuse.app.retrieval.contracts import FusionStrategy, QueryBundle
from ragfuse.app.retrieval.dispatcher import (
    RouterRetriever,
    fusion_input,
    successful_results,
)
from ragfuse.core.config import DedupConfig

from .state import PipelineState

LOGGER = logging.getLogger(__name__)

Stage = Callable[[PipelineState], Awaitable[PipelineState]]


def make_optimize_stage(
    optimizer: QueryOptimizer | None = None,
    query_generator: QueryGenerator | None = None,
) -> Stage:
    async def _stage(state: PipelineState) -> PipelineState:
        query = state.get("query", "")
        started = perf_counter()
        strategy = "none"
        if query_generator is not None:
            strategy = "generator"
            try:
                generated = await query_generator.generate(query)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning(
                    "Query generation failed",
                    extra={"stage": "optimize"},
                    exc_info=exc,
                )
                generated = [query]
            bundle = QueryBundle.of(query, generated)
        elif optimizer is not None:
            strategy = "optimizer"
            bundle = await optimizer.optimize(query, state.get("history", []))
        else:
            bundle = QueryBundle.of(query)
        return {
            "bundle": bundle,
            "telemetry_events": [
                {
                    "event": "query_optimized",
                    "strategy": strategy,
                    "variants": len(bundle.variants),
                    "duration_ms": _duration_ms(started),
                }
            ],
        }

    return _stage


def make_retrieve_stage(
    router: RouterRetriever,
    backend_top_k: int | None = None,
) -> Stage:
    async def _stage(state: PipelineState) -> PipelineState:
        bundle = state.get("bundle") or QueryBundle.of(state.get("query", ""))
        top_k = backend_top_k or state.get("top_k", 10)
        started = perf_counter()
        results = await router.dispatch(bundle.variants, top_k)
        failures = [result for result in results if not result.ok]
        # Raises when every unit failed.
        successful_results(results)
        return {
            "backend_results": results,
            "errors": [
                f"{result.backend_name}: {result.error.__class__.__name__}"
                for result in failures
            ],
            "telemetry_events": [
                {
                    "event": "retrieval_completed",
                    "units": len(results),
                    "failed_units": len(failures),
                    "count": sum(len(result.documents) for result in results),
                    "duration_ms": _duration_ms(started),
                }
            ],
        }

    return _stage


def make_fuse_stage(fusion: FusionStrategy) -> Stage:
    async def _stage(state: PipelineState) -> PipelineState:
        started = perf_counter()
        fused = fusion(fusion_input(state.get("backend_results", [])))
        return {
            "fused_documents": fused,
            "telemetry_events": [
                {
                    "event": "fusion_completed",
                    "algorithm": fusion_name(fusion),
                    "count": len(fused),
                    "duration_ms": _duration_ms(started),
                }
            ],
        }

    return _stage


def make_dedup_stage(config: DedupConfig) -> Stage:
    async def _stage(state: PipelineState) -> PipelineState:
        started = perf_counter()
        by_id = dedup_by_id(state.get("fused_documents", []))
        result = deduplicate(by_id.unique, config)
        removed = by_id.removed_count + result.removed_count
        return {
            "unique_documents": list(result.unique),
            "removed_duplicates": removed,
            "telemetry_events": [
                {
                    "event": "dedup_completed",
                    "count": len(result.unique),
                    "removed": removed,
                    "duration_ms": _duration_ms(started),
                }
            ],
        }

    return _stage


def make_rerank_stage(
    entries: Sequence[RerankerEntry],
    *,
    combine: bool = False,
) -> Stage:
    async def _stage(state: PipelineState) -> PipelineState:
        query = state.get("query", "")
        documents = state.get("unique_documents", [])
        members = widen_to_top_k(entries, state.get("top_k", 10))
        started = perf_counter()
        if combine:
            reranked = await CompositeReranker(members).rerank(query, documents)
        else:
            reranked = list(documents)
            for entry in members:
                try:
                    reranked = await entry.reranker.rerank(query, reranked)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning(
                        "Reranker failed",
                        extra={"reranker": entry.name},
                        exc_info=exc,
                    )
        return {
            "documents": reranked,
            "telemetry_events": [
                {
                    "event": "rerank_completed",
                    "rerankers": [entry.name for entry in entries],
                    "combined": combine,
                    "count": len(reranked),
                    "duration_ms": _duration_ms(started),
                }
            ],
        }

    return _stage


async def skip_rerank_stage(state: PipelineState) -> PipelineState:
    return {
        "documents": list(state.get("unique_documents", [])),
        "telemetry_events": [{"event": "rerank_skipped"}],
    }


async def finalize_stage(state: PipelineState) -> PipelineState:
    top_k = state.get("top_k", 10)
    documents = state.get("documents", [])[:top_k]
    return {
        "documents": documents,
        "telemetry_events": [
            {
                "event": "pipeline_completed",
                "count": len(documents),
                "errors": len(state.get("errors", [])),
            }
        ],
    }


def _duration_ms(started: float) -> int:
    return int((perf_counter() - started) * 1000)
