from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from ragfuse.core.errors import ConfigError

DEFAULT_TOP_K = 10
DEFAULT_RRF_K = 60
DEFAULT_NUM_VARIANTS = 3
DEFAULT_DEDUP_THRESHOLD = 0.85
DEFAULT_LLM_RERANK_TOP_N = 5


class FusionAlgorithm(str, Enum):
    RRF = "rrf"
    WEIGHTED = "weighted"
    ROUND_ROBIN = "round_robin"
    CONCAT = "concat"
    MULTI_QUERY_WEIGHTED = "multi_query_weighted"


class RerankerKind(str, Enum):
    SCORE = "score"
    MMR = "mmr"
    LLM = "llm"
    COMPOSITE_SCORE = "composite_score"


def _frozen_mapping(values: Mapping[str, float]) -> Mapping[str, float]:
    return MappingProxyType({str(key): float(value) for key, value in values.items()})


@dataclass(frozen=True)
class FusionConfig:
    algorithm: FusionAlgorithm = FusionAlgorithm.RRF
    rrf_k: int = DEFAULT_RRF_K
    weights: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.rrf_k < 0:
            raise ConfigError("rrf_k must be non-negative")
        object.__setattr__(self, "algorithm", FusionAlgorithm(self.algorithm))
        object.__setattr__(self, "weights", _frozen_mapping(self.weights))


@dataclass(frozen=True)
class DedupConfig:
    threshold: float = DEFAULT_DEDUP_THRESHOLD
    by_signature: bool = True
    by_similarity: bool = True

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigError("dedup threshold must be within [0, 1]")


@dataclass(frozen=True)
class MMRConfig:
    """Maximal marginal relevance settings.

    ``lambda_`` = 1.0 ranks by relevance only, 0.0 by diversity only.
    """

    k: int = DEFAULT_TOP_K
    lambda_: float = 0.7

    def __post_init__(self) -> None:
        if not 0.0 <= self.lambda_ <= 1.0:
            raise ConfigError("MMR lambda must be within [0, 1]")


@dataclass(frozen=True)
class CompositeScoreConfig:
    model_weight: float = 0.6
    base_weight: float = 0.3
    source_weight: float = 0.1
    source_weights: Mapping[str, float] = field(
        default_factory=lambda: {"web_search": 0.95}
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "source_weights", _frozen_mapping(self.source_weights)
        )

    def weight_for_source(self, source_name: str) -> float:
        return self.source_weights.get(source_name, self.source_weight)


@dataclass(frozen=True)
class RerankStep:
    kind: RerankerKind
    weight: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RerankerKind(self.kind))


@dataclass(frozen=True)
class PipelineConfig:
    enable_rewrite: bool = False
    enable_expand: bool = False
    num_variants: int = DEFAULT_NUM_VARIANTS
    enable_multi_query: bool = False
    enable_rerank: bool = True
    top_k: int = DEFAULT_TOP_K
    backend_top_k: int | None = None
    fusion: FusionConfig = field(default_factory=FusionConfig)
    rerank_chain: tuple[RerankStep, ...] = (RerankStep(RerankerKind.SCORE),)
    combine_rerankers: bool = False
    dedup: DedupConfig = field(default_factory=DedupConfig)
    mmr: MMRConfig = field(default_factory=MMRConfig)
    composite: CompositeScoreConfig = field(default_factory=CompositeScoreConfig)
    llm_rerank_top_n: int = DEFAULT_LLM_RERANK_TOP_N
    max_concurrency: int | None = None

    def __post_init__(self) -> None:
        if self.top_k <= 0:
            raise ConfigError("top_k must be positive")
        if self.num_variants <= 0:
            raise ConfigError("num_variants must be positive")
        if self.max_concurrency is not None and self.max_concurrency <= 0:
            raise ConfigError("max_concurrency must be positive when set")
        object.__setattr__(self, "rerank_chain", tuple(self.rerank_chain))

    @property
    def fusion_algorithm(self) -> FusionAlgorithm:
        return self.fusion.algorithm

    @property
    def dedup_threshold(self) -> float:
        return self.dedup.threshold

    @property
    def effective_backend_top_k(self) -> int:
        return self.backend_top_k or self.top_k


@dataclass(frozen=True)
class LLMConfig:
    backend: str = "none"
    model: str = "gemini-2.5-flash"
    api_key: str | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class AppConfig:
    app_name: str
    environment: str
    pipeline: PipelineConfig
    llm: LLMConfig


def _read_optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if not value:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _read_bool_env(name: str, default: bool) -> bool:
    value = _read_optional_env(name)
    if value is None:
        return default
    normalized = value.lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _read_int_env(name: str, default: int) -> int:
    value = _read_optional_env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float_env(name: str, default: float) -> float:
    value = _read_optional_env(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    if parsed < 0:
        return default
    if parsed > 1:
        return 1.0
    return parsed


def _read_optional_timeout_env(name: str) -> float | None:
    value = _read_optional_env(name)
    if value is None:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _read_fusion_algorithm_env(name: str) -> FusionAlgorithm:
    value = _read_optional_env(name)
    if value is None:
        return FusionAlgorithm.RRF
    try:
        return FusionAlgorithm(value.lower())
    except ValueError:
        return FusionAlgorithm.RRF


def _read_rerank_chain_env(name: str) -> tuple[RerankStep, ...]:
    value = _read_optional_env(name)
    if value is None:
        return (RerankStep(RerankerKind.SCORE),)
    steps: list[RerankStep] = []
    for item in value.split(","):
        kind, _, weight = item.strip().partition(":")
        try:
            steps.append(
                RerankStep(RerankerKind(kind.lower()), float(weight) if weight else 1.0)
            )
        except ValueError:
            continue
    return tuple(steps) or (RerankStep(RerankerKind.SCORE),)


def load_pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        enable_rewrite=_read_bool_env("RAGFUSE_ENABLE_REWRITE", default=False),
        enable_expand=_read_bool_env("RAGFUSE_ENABLE_EXPAND", default=False),
        num_variants=_read_int_env(
            "RAGFUSE_NUM_VARIANTS", default=DEFAULT_NUM_VARIANTS
        ),
        enable_multi_query=_read_bool_env("RAGFUSE_ENABLE_MULTI_QUERY", default=False),
        enable_rerank=_read_bool_env("RAGFUSE_ENABLE_RERANK", default=True),
        top_k=_read_int_env("RAGFUSE_TOP_K", default=DEFAULT_TOP_K),
        fusion=FusionConfig(
            algorithm=_read_fusion_algorithm_env("RAGFUSE_FUSION_ALGORITHM"),
            rrf_k=_read_int_env("RAGFUSE_RRF_K", default=DEFAULT_RRF_K),
        ),
        rerank_chain=_read_rerank_chain_env("RAGFUSE_RERANK_CHAIN"),
        combine_rerankers=_read_bool_env("RAGFUSE_COMBINE_RERANKERS", default=False),
        dedup=DedupConfig(
            threshold=_read_float_env(
                "RAGFUSE_DEDUP_THRESHOLD", default=DEFAULT_DEDUP_THRESHOLD
            )
        ),
        mmr=MMRConfig(
            k=_read_int_env("RAGFUSE_MMR_K", default=DEFAULT_TOP_K),
            lambda_=_read_float_env("RAGFUSE_MMR_LAMBDA", default=0.7),
        ),
        llm_rerank_top_n=_read_int_env(
            "RAGFUSE_LLM_RERANK_TOP_N", default=DEFAULT_LLM_RERANK_TOP_N
        ),
    )


def load_app_config() -> AppConfig:
    return AppConfig(
        app_name=os.getenv("APP_NAME", "ragfuse"),
        environment=os.getenv("APP_ENV", "development"),
        pipeline=load_pipeline_config(),
        llm=LLMConfig(
            backend=os.getenv("RAGFUSE_LLM_BACKEND", "none").strip() or "none",
            model=os.getenv("RAGFUSE_LLM_MODEL", "gemini-2.5-flash").strip()
            or "gemini-2.5-flash",
            api_key=_read_optional_env("GEMINI_API_KEY")
            or _read_optional_env("GOOGLE_API_KEY"),
            timeout_seconds=_read_optional_timeout_env("RAGFUSE_LLM_TIMEOUT_SECONDS"),
        ),
    )
