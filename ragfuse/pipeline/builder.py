from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace

from ragfuse.app.fusion.service import build_fusion
from ragfuse.app.llm.providers import ChatModel
from ragfuse.app.query.service import QueryOptimizer
from ragfuse.app.query.variants import LLMQueryGenerator, QueryGenerator
from ragfuse.app.rerank.service import build_rerank_chain
from ragfuse.app.retrieval.contracts import FusionStrategy, Retriever
from ragfuse.app.retrieval.dispatcher import RouterRetriever
from ragfuse.app.routing.selectors import RouteSelector
from ragfuse.core.config import (
    FusionConfig,
    MMRConfig,
    PipelineConfig,
    RerankerKind,
    RerankStep,
)
from ragfuse.core.errors import ConfigError

from .pipeline import RetrievalPipeline
from .stages import (
    finalize_stage,
    make_dedup_stage,
    make_fuse_stage,
    make_optimize_stage,
    make_rerank_stage,
    make_retrieve_stage,
    skip_rerank_stage,
)
from .telemetry import EventNotifier


class PipelineBuilder:
    def __init__(
        self,
        backends: Mapping[str, Retriever],
        config: PipelineConfig | None = None,
    ) -> None:
        self._backends = dict(backends)
        self._config = config or PipelineConfig()
        self._chat_model: ChatModel | None = None
        self._selector: RouteSelector | None = None
        self._fusion: FusionStrategy | None = None
        self._query_generator: QueryGenerator | None = None
        self._notifier: EventNotifier | None = None
        self._timeout_seconds: float | None = None

    def with_config(self, config: PipelineConfig) -> PipelineBuilder:
        self._config = config
        return self

    def with_chat_model(
        self,
        chat_model: ChatModel | None,
        *,
        timeout_seconds: float | None = None,
    ) -> PipelineBuilder:
        self._chat_model = chat_model
        self._timeout_seconds = timeout_seconds
        return self

    def with_selector(self, selector: RouteSelector) -> PipelineBuilder:
        self._selector = selector
        return self

    def with_fusion(self, fusion: FusionStrategy | FusionConfig) -> PipelineBuilder:
        if isinstance(fusion, FusionConfig):
            self._config = replace(self._config, fusion=fusion)
            self._fusion = None
        else:
            self._fusion = fusion
        return self

    def with_rewrite(self, enabled: bool = True) -> PipelineBuilder:
        self._config = replace(self._config, enable_rewrite=enabled)
        return self

    def with_expand(self, num_variants: int | None = None) -> PipelineBuilder:
        self._config = replace(
            self._config,
            enable_expand=True,
            num_variants=num_variants or self._config.num_variants,
        )
        return self

    def with_multi_query(
        self, query_generator: QueryGenerator | None = None
    ) -> PipelineBuilder:
        self._config = replace(self._config, enable_multi_query=True)
        self._query_generator = query_generator
        return self

    def with_rerankers(
        self,
        *steps: RerankStep | RerankerKind | str,
        combine: bool = False,
    ) -> PipelineBuilder:
        chain = tuple(
            step if isinstance(step, RerankStep) else RerankStep(RerankerKind(step))
            for step in steps
        )
        self._config = replace(
            self._config,
            enable_rerank=bool(chain),
            rerank_chain=chain,
            combine_rerankers=combine,
        )
        return self

    def with_diversity(self, lambda_: float, k: int) -> PipelineBuilder:
        self._config = replace(self._config, mmr=MMRConfig(k=k, lambda_=lambda_))
        return self

    def with_top_k(self, top_k: int) -> PipelineBuilder:
        self._config = replace(self._config, top_k=top_k)
        return self

    def with_max_concurrency(self, max_concurrency: int | None) -> PipelineBuilder:
        self._config = replace(self._config, max_concurrency=max_concurrency)
        return self

    def with_notifier(self, notifier: EventNotifier) -> PipelineBuilder:
        self._notifier = notifier
        return self

    def build(self) -> RetrievalPipeline:
        config = self._config
        router = RouterRetriever(
            self._backends,
            selector=self._selector,
            max_concurrency=config.max_concurrency,
        )
        fusion = self._fusion or build_fusion(config.fusion)

        stages = [
            ("optimize", self._optimize_stage(config)),
            ("retrieve", make_retrieve_stage(router, config.backend_top_k)),
            ("fuse", make_fuse_stage(fusion)),
            ("dedup", make_dedup_stage(config.dedup)),
        ]
        if config.enable_rerank and config.rerank_chain:
            entries = build_rerank_chain(
                config, self._chat_model, timeout_seconds=self._timeout_seconds
            )
            stages.append(
                ("rerank", make_rerank_stage(entries, combine=config.combine_rerankers))
            )
        else:
            stages.append(("rerank", skip_rerank_stage))
        stages.append(("finalize", finalize_stage))
        return RetrievalPipeline(stages, config, notifier=self._notifier)

    def _optimize_stage(self, config: PipelineConfig):
        if config.enable_multi_query:
            generator = self._query_generator
            if generator is None and self._chat_model is not None:
                generator = LLMQueryGenerator(
                    self._chat_model,
                    config.num_variants + 1,
                    timeout_seconds=self._timeout_seconds,
                )
            if generator is None:
                raise ConfigError(
                    "Multi-query retrieval requires a chat model or a query generator"
                )
            return make_optimize_stage(query_generator=generator)

        if config.enable_rewrite or config.enable_expand:
            optimizer = QueryOptimizer(
                self._chat_model,
                config.num_variants,
                enable_rewrite=config.enable_rewrite,
                enable_expand=config.enable_expand,
                timeout_seconds=self._timeout_seconds,
            )
            return make_optimize_stage(optimizer=optimizer)
        return make_optimize_stage()


def basic_pipeline(
    backends: Mapping[str, Retriever],
    chat_model: ChatModel | None = None,
) -> RetrievalPipeline:
    return PipelineBuilder(backends).with_chat_model(chat_model).build()


def advanced_pipeline(
    backends: Mapping[str, Retriever],
    chat_model: ChatModel | None = None,
) -> RetrievalPipeline:
    return (
        PipelineBuilder(backends)
        .with_chat_model(chat_model)
        .with_rewrite()
        .with_expand(3)
        .with_rerankers(RerankerKind.SCORE, RerankerKind.MMR)
        .with_diversity(lambda_=0.5, k=5)
        .build()
    )


def search_optimized_pipeline(
    backends: Mapping[str, Retriever],
    chat_model: ChatModel | None = None,
) -> RetrievalPipeline:
    return (
        PipelineBuilder(backends)
        .with_chat_model(chat_model)
        .with_rewrite()
        .with_rerankers(RerankerKind.SCORE)
        .build()
    )


def recall_optimized_pipeline(
    backends: Mapping[str, Retriever],
    chat_model: ChatModel | None = None,
) -> RetrievalPipeline:
    return (
        PipelineBuilder(backends)
        .with_chat_model(chat_model)
        .with_expand(5)
        .with_rerankers(RerankerKind.SCORE, RerankerKind.MMR)
        .with_diversity(lambda_=0.3, k=5)
        .build()
    )


PRESETS = {
    "basic": basic_pipeline,
    "advanced": advanced_pipeline,
    "search_optimized": search_optimized_pipeline,
    "recall_optimized": recall_optimized_pipeline,
}


def build_preset(
    name: str,
    backends: Mapping[str, Retriever],
    chat_model: ChatModel | None = None,
) -> RetrievalPipeline:
    try:
        factory = PRESETS[name]
    except KeyError as exc:
        raise ConfigError(f"Unknown pipeline preset '{name}'") from exc
    return factory(backends, chat_model)
