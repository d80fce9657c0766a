import pytest
from pydantic import ValidationError

from ragfuse.app.retrieval.backends import InMemoryRetriever
from ragfuse.app.retrieval.contracts import RetrievedDocument
from ragfuse.core.config import AppConfig, LLMConfig, PipelineConfig
from ragfuse.core.errors import BackendError, ConfigError
from ragfuse.models import RetrieveRequest
from ragfuse.service import RetrievalService


class _FailingRetriever:
    async def retrieve(self, query: str, top_k: int) -> list[RetrievedDocument]:
        raise RuntimeError("backend down")


class _ScriptedChatModel:
    def __init__(self, *outputs: str) -> None:
        self._outputs = list(outputs)

    async def generate(self, messages) -> str:
        _ = messages
        return self._outputs.pop(0)


def _config(**pipeline_overrides) -> AppConfig:
    return AppConfig(
        app_name="ragfuse",
        environment="test",
        pipeline=PipelineConfig(**pipeline_overrides),
        llm=LLMConfig(),
    )


@pytest.mark.asyncio
async def test_retrieve_returns_ranked_passages(corpus) -> None:
    service = RetrievalService(
        {"kb": InMemoryRetriever(corpus), "broken": _FailingRetriever()},
        _config(),
    )

    response = await service.retrieve(RetrieveRequest(query="alpha launch", top_k=1))

    assert response.total == 1
    assert response.documents[0].id in {"alpha-timeline", "alpha-owner"}
    assert response.variants == ["alpha launch"]
    assert response.failed_backends == ["broken"]
    assert response.request_id


@pytest.mark.asyncio
async def test_retrieve_applies_request_overrides(corpus) -> None:
    model = _ScriptedChatModel("project alpha launch", "alpha ship date")
    service = RetrievalService(
        {"kb": InMemoryRetriever(corpus)},
        _config(num_variants=1),
        chat_model=model,
    )

    response = await service.retrieve(
        RetrieveRequest(query="alpha?", enable_optimize=True, enable_rerank=False)
    )

    assert response.variants == ["alpha?", "project alpha launch", "alpha ship date"]
    assert response.total >= 1


@pytest.mark.asyncio
async def test_retrieve_propagates_total_backend_failure() -> None:
    service = RetrievalService({"broken": _FailingRetriever()}, _config())

    with pytest.raises(BackendError):
        await service.retrieve(RetrieveRequest(query="alpha"))


@pytest.mark.asyncio
async def test_retrieve_context_renders_numbered_block(corpus) -> None:
    service = RetrievalService({"kb": InMemoryRetriever(corpus)}, _config())

    context = await service.retrieve_context(RetrieveRequest(query="alpha launch"))

    assert context.startswith("Relevant documents for the query:")
    assert "[1] " in context
    assert "Title: Alpha timeline" in context


def test_service_fails_fast_on_invalid_wiring() -> None:
    with pytest.raises(ConfigError):
        RetrievalService({}, _config())
    with pytest.raises(ConfigError):
        RetrievalService(
            {"kb": InMemoryRetriever([])}, _config(enable_multi_query=True)
        )


def test_retrieve_request_validation() -> None:
    with pytest.raises(ValidationError):
        RetrieveRequest(query="")
    with pytest.raises(ValidationError):
        RetrieveRequest(query="alpha", top_k=0)
    assert RetrieveRequest(query="alpha").top_k == 10
