from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from time import perf_counter

from ragfuse.app.fusion.service import (
    MultiQueryWeightedFusion,
    ReciprocalRankFusion,
    source_key,
)
from ragfuse.app.llm.providers import ChatModel
from ragfuse.app.query.variants import (
    DEFAULT_MAX_QUERIES,
    LLMQueryGenerator,
    QueryGenerator,
)
from ragfuse.app.retrieval.contracts import (
    BackendResult,
    FusionStrategy,
    QueryBundle,
    RetrievedDocument,
    Retriever,
)
from ragfuse.app.routing.selectors import AllSelector, RouteSelector
from ragfuse.core.errors import BackendError, ConfigError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchUnit:
    backend_name: str
    query: str
    retriever: Retriever | None


async def _run_unit(
    unit: DispatchUnit,
    top_k: int,
    semaphore: asyncio.Semaphore | None,
) -> BackendResult:
    if unit.retriever is None:
        return BackendResult(
            backend_name=unit.backend_name,
            query_variant=unit.query,
            error=BackendError(
                f"Unknown backend '{unit.backend_name}'",
                backend_name=unit.backend_name,
                query=unit.query,
            ),
        )

    started = perf_counter()
    try:
        if semaphore is None:
            returned = await unit.retriever.retrieve(unit.query, top_k)
        else:
            async with semaphore:
                returned = await unit.retriever.retrieve(unit.query, top_k)
        documents = tuple(
            _stamp_source(document, unit.backend_name) for document in returned
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning(
            "Backend retrieval failed",
            extra={"backend": unit.backend_name, "query_variant": unit.query},
            exc_info=exc,
        )
        return BackendResult(
            backend_name=unit.backend_name,
            query_variant=unit.query,
            error=exc,
            duration_ms=_duration_ms(started),
        )

    return BackendResult(
        backend_name=unit.backend_name,
        query_variant=unit.query,
        documents=documents,
        duration_ms=_duration_ms(started),
    )


async def dispatch(
    units: Sequence[DispatchUnit],
    top_k: int,
    max_concurrency: int | None = None,
) -> list[BackendResult]:
    """Run every unit concurrently and wait for all of them.

    Results come back in unit order. A failing unit is recorded with its error
    and never cancels its siblings.
    """
    if not units:
        return []
    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
    return list(
        await asyncio.gather(*(_run_unit(unit, top_k, semaphore) for unit in units))
    )


def successful_results(results: Sequence[BackendResult]) -> list[BackendResult]:
    succeeded = [result for result in results if result.ok]
    if results and not succeeded:
        first = results[0]
        if isinstance(first.error, BackendError):
            raise first.error
        raise BackendError(
            f"All {len(results)} retrieval units failed; "
            f"first failure from '{first.backend_name}' "
            f"({first.error.__class__.__name__})",
            backend_name=first.backend_name,
            query=first.query_variant,
        ) from first.error
    return succeeded


def fusion_input(
    results: Sequence[BackendResult],
    *,
    by_variant: bool | None = None,
) -> dict[str, list[RetrievedDocument]]:
    """Key each successful result list for fusion.

    Keys carry the query variant whenever more than one variant was dispatched.
    """
    if by_variant is None:
        by_variant = len({result.query_variant for result in results}) > 1
    keyed: dict[str, list[RetrievedDocument]] = {}
    for result in results:
        if not result.ok:
            continue
        key = source_key(
            result.backend_name, result.query_variant if by_variant else None
        )
        keyed.setdefault(key, []).extend(result.documents)
    return keyed


class RouterRetriever:
    def __init__(
        self,
        backends: Mapping[str, Retriever],
        selector: RouteSelector | None = None,
        fusion: FusionStrategy | None = None,
        *,
        max_concurrency: int | None = None,
    ) -> None:
        if not backends:
            raise ConfigError("RouterRetriever requires at least one backend")
        if any(backend is None for backend in backends.values()):
            raise ConfigError("RouterRetriever backends must not be None")
        self._backends = dict(backends)
        self._selector = selector or AllSelector()
        self._fusion = fusion or ReciprocalRankFusion()
        self._max_concurrency = max_concurrency

    @property
    def backend_names(self) -> list[str]:
        return list(self._backends)

    def route(self, query: str) -> list[str]:
        selected = self._selector.select(query, self.backend_names)
        if not selected:
            return self.backend_names
        return list(dict.fromkeys(selected))

    def plan(self, queries: Sequence[str]) -> list[DispatchUnit]:
        units: list[DispatchUnit] = []
        for query in queries:
            for name in self.route(query):
                units.append(DispatchUnit(name, query, self._backends.get(name)))
        return units

    async def dispatch(
        self,
        queries: Sequence[str],
        top_k: int,
    ) -> list[BackendResult]:
        return await dispatch(self.plan(queries), top_k, self._max_concurrency)

    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        results = successful_results(await self.dispatch([query], top_k))
        return self._fusion(fusion_input(results))[:top_k]


class MultiQueryRetriever:
    def __init__(
        self,
        backend: Retriever | None,
        chat_model: ChatModel | None = None,
        query_generator: QueryGenerator | None = None,
        *,
        max_queries: int = DEFAULT_MAX_QUERIES,
        fusion: FusionStrategy | None = None,
        backend_name: str = "default",
        max_concurrency: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        if backend is None:
            raise ConfigError("MultiQueryRetriever requires a backend")
        if query_generator is None and chat_model is None:
            raise ConfigError(
                "MultiQueryRetriever requires a chat model or a query generator"
            )
        self._backend = backend
        self._backend_name = backend_name
        self._generator = query_generator or LLMQueryGenerator(
            chat_model, max_queries, timeout_seconds=timeout_seconds
        )
        self._max_queries = max_queries if max_queries > 0 else DEFAULT_MAX_QUERIES
        self._fusion = fusion or MultiQueryWeightedFusion()
        self._max_concurrency = max_concurrency

    async def queries(self, query: str) -> QueryBundle:
        try:
            generated = await self._generator.generate(query)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "Query generation failed",
                extra={"backend": self._backend_name},
                exc_info=exc,
            )
            generated = [query]
        bundle = QueryBundle.of(query, generated)
        return QueryBundle(bundle.original, bundle.variants[: self._max_queries])

    async def dispatch(
        self,
        bundle: QueryBundle,
        top_k: int,
    ) -> list[BackendResult]:
        units = [
            DispatchUnit(self._backend_name, variant, self._backend)
            for variant in bundle.variants
        ]
        return await dispatch(units, top_k, self._max_concurrency)

    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        bundle = await self.queries(query)
        results = successful_results(await self.dispatch(bundle, top_k))
        return self._fusion(fusion_input(results, by_variant=True))[:top_k]


def _stamp_source(
    document: RetrievedDocument,
    backend_name: str,
) -> RetrievedDocument:
    if not isinstance(document, RetrievedDocument):
        raise BackendError(
            f"Backend '{backend_name}' returned {type(document).__name__} rows",
            backend_name=backend_name,
        )
    if document.source_name:
        return document
    return document.with_source(backend_name)


def _duration_ms(started: float) -> int:
    return int((perf_counter() - started) * 1000)
