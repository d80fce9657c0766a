from dataclasses import replace

import pytest

from ragfuse.core.config import (
    FusionAlgorithm,
    FusionConfig,
    PipelineConfig,
    RerankerKind,
    RerankStep,
    load_app_config,
    load_pipeline_config,
)
from ragfuse.core.errors import ConfigError


def test_pipeline_config_defaults() -> None:
    config = PipelineConfig()

    assert config.top_k == 10
    assert config.num_variants == 3
    assert config.fusion_algorithm == FusionAlgorithm.RRF
    assert config.fusion.rrf_k == 60
    assert config.dedup_threshold == 0.85
    assert config.mmr.k == 10 and config.mmr.lambda_ == 0.7
    assert config.composite.model_weight == 0.6
    assert config.composite.weight_for_source("web_search") == 0.95
    assert config.composite.weight_for_source("vector") == 0.1
    assert config.rerank_chain == (RerankStep(RerankerKind.SCORE),)
    assert config.effective_backend_top_k == 10


@pytest.mark.parametrize(
    "overrides",
    [{"top_k": 0}, {"num_variants": 0}, {"max_concurrency": 0}],
)
def test_pipeline_config_rejects_invalid_values(overrides) -> None:
    with pytest.raises(ConfigError):
        PipelineConfig(**overrides)


def test_config_values_are_immutable() -> None:
    config = FusionConfig(weights={"vector": 2.0})

    with pytest.raises(TypeError):
        config.weights["vector"] = 3.0  # type: ignore[index]
    with pytest.raises(ConfigError):
        FusionConfig(rrf_k=-1)
    assert replace(PipelineConfig(), top_k=3).top_k == 3


def test_load_pipeline_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("RAGFUSE_ENABLE_REWRITE", "yes")
    monkeypatch.setenv("RAGFUSE_TOP_K", "4")
    monkeypatch.setenv("RAGFUSE_FUSION_ALGORITHM", "ROUND_ROBIN")
    monkeypatch.setenv("RAGFUSE_RERANK_CHAIN", "score, mmr:0.5, bogus")
    monkeypatch.setenv("RAGFUSE_DEDUP_THRESHOLD", "0.9")

    config = load_pipeline_config()

    assert config.enable_rewrite is True
    assert config.top_k == 4
    assert config.fusion_algorithm == FusionAlgorithm.ROUND_ROBIN
    assert config.rerank_chain == (
        RerankStep(RerankerKind.SCORE),
        RerankStep(RerankerKind.MMR, 0.5),
    )
    assert config.dedup_threshold == 0.9


def test_load_pipeline_config_ignores_malformed_values(monkeypatch) -> None:
    monkeypatch.setenv("RAGFUSE_ENABLE_REWRITE", "maybe")
    monkeypatch.setenv("RAGFUSE_TOP_K", "-3")
    monkeypatch.setenv("RAGFUSE_FUSION_ALGORITHM", "magic")
    monkeypatch.setenv("RAGFUSE_DEDUP_THRESHOLD", "lots")
    monkeypatch.setenv("RAGFUSE_MMR_LAMBDA", "7")

    config = load_pipeline_config()

    assert config.enable_rewrite is False
    assert config.top_k == 10
    assert config.fusion_algorithm == FusionAlgorithm.RRF
    assert config.dedup_threshold == 0.85
    assert config.mmr.lambda_ == 1.0


def test_load_app_config_reads_llm_settings(monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("APP_NAME", raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
    monkeypatch.setenv("RAGFUSE_LLM_BACKEND", "google")
    monkeypatch.setenv("RAGFUSE_LLM_TIMEOUT_SECONDS", "2.5")

    config = load_app_config()

    assert config.llm.backend == "google"
    assert config.llm.api_key == "google-key"
    assert config.llm.timeout_seconds == 2.5
    assert config.app_name == "ragfuse"
