from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from uuid import uuid4

from ragfuse.app.llm.providers import ChatMessage, ChatModel, build_chat_model
from ragfuse.app.query.variants import QueryGenerator
from ragfuse.app.response.service import render_context
from ragfuse.app.retrieval.contracts import RetrievedDocument, Retriever
from ragfuse.app.routing.selectors import RouteSelector
from ragfuse.core.config import AppConfig, PipelineConfig
from ragfuse.models import RetrievedPassage, RetrieveRequest, RetrieveResponse
from ragfuse.pipeline import (
    EventNotifier,
    PipelineBuilder,
    PipelineState,
    RetrievalPipeline,
)

LOGGER = logging.getLogger(__name__)


class RetrievalService:
    def __init__(
        self,
        backends: Mapping[str, Retriever],
        config: AppConfig,
        *,
        chat_model: ChatModel | None = None,
        selector: RouteSelector | None = None,
        query_generator: QueryGenerator | None = None,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._backends = dict(backends)
        self._config = config
        self._chat_model = chat_model or build_chat_model(config.llm)
        self._selector = selector
        self._query_generator = query_generator
        self._notifier = notifier
        self._pipelines: dict[tuple[bool, ...], RetrievalPipeline] = {}
        # Fail fast on invalid wiring.
        self._pipeline_for(config.pipeline)

    async def retrieve(self, request: RetrieveRequest) -> RetrieveResponse:
        request_id = uuid4().hex
        state = await self._run(request, request_id)
        documents = state.get("documents", [])[: request.top_k]
        bundle = state.get("bundle")
        return RetrieveResponse(
            query=request.query,
            documents=[_passage(document) for document in documents],
            total=len(documents),
            request_id=request_id,
            variants=list(bundle.variants) if bundle is not None else [],
            failed_backends=sorted(
                {
                    result.backend_name
                    for result in state.get("backend_results", [])
                    if not result.ok
                }
            ),
        )

    async def retrieve_context(self, request: RetrieveRequest) -> str:
        state = await self._run(request, uuid4().hex)
        return render_context(state.get("documents", [])[: request.top_k])

    async def _run(self, request: RetrieveRequest, request_id: str) -> PipelineState:
        pipeline = self._pipeline_for(self._request_config(request))
        return await pipeline.run(
            request.query,
            top_k=request.top_k,
            history=[
                ChatMessage(message.role, message.content)
                for message in request.history
            ],
            request_id=request_id,
        )

    def _request_config(self, request: RetrieveRequest) -> PipelineConfig:
        config = self._config.pipeline
        if request.enable_optimize is not None:
            config = replace(
                config,
                enable_rewrite=request.enable_optimize,
                enable_expand=request.enable_optimize,
            )
        if request.enable_rerank is not None:
            config = replace(config, enable_rerank=request.enable_rerank)
        if request.enable_multi_query is not None:
            config = replace(config, enable_multi_query=request.enable_multi_query)
        return config

    def _pipeline_for(self, config: PipelineConfig) -> RetrievalPipeline:
        key = _override_key(config)
        pipeline = self._pipelines.get(key)
        if pipeline is not None:
            return pipeline

        builder = PipelineBuilder(self._backends, config).with_chat_model(
            self._chat_model, timeout_seconds=self._config.llm.timeout_seconds
        )
        if self._selector is not None:
            builder.with_selector(self._selector)
        if self._query_generator is not None and config.enable_multi_query:
            builder.with_multi_query(self._query_generator)
        if self._notifier is not None:
            builder.with_notifier(self._notifier)
        pipeline = builder.build()
        self._pipelines[key] = pipeline
        LOGGER.info(
            "Retrieval pipeline built",
            extra={"stages": pipeline.stage_names, "backends": list(self._backends)},
        )
        return pipeline


def _override_key(config: PipelineConfig) -> tuple[bool, ...]:
    return (
        config.enable_rewrite,
        config.enable_expand,
        config.enable_rerank,
        config.enable_multi_query,
    )


def _passage(document: RetrievedDocument) -> RetrievedPassage:
    return RetrievedPassage(
        id=document.id,
        content=document.content,
        score=document.score,
        metadata=dict(document.metadata),
        source_name=document.source_name,
    )
