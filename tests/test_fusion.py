import pytest

from ragfuse.app.fusion.service import (
    ConcatFusion,
    MultiQueryWeightedFusion,
    ReciprocalRankFusion,
    RoundRobinFusion,
    WeightedFusion,
    backend_of,
    build_fusion,
    fusion_name,
    source_key,
)
from ragfuse.app.retrieval.contracts import RetrievedDocument
from ragfuse.core.config import FusionAlgorithm, FusionConfig


def _doc(doc_id: str, score: float = 0.0, content: str | None = None) -> RetrievedDocument:
    return RetrievedDocument(id=doc_id, content=content or f"content {doc_id}", score=score)


def _ids(documents: list[RetrievedDocument]) -> list[str]:
    return [document.id for document in documents]


def test_rrf_is_deterministic_across_runs() -> None:
    results = {
        "vector": [_doc("a", 0.9), _doc("b", 0.8), _doc("c", 0.7)],
        "keyword": [_doc("c", 5.0), _doc("d", 4.0), _doc("a", 3.0)],
    }
    fusion = ReciprocalRankFusion()

    first = fusion(results)
    second = fusion(results)

    assert _ids(first) == _ids(second)
    assert [document.score for document in first] == [
        document.score for document in second
    ]


def test_rrf_document_in_more_lists_ranks_higher() -> None:
    results = {
        "vector": [_doc("solo"), _doc("shared")],
        "keyword": [_doc("other"), _doc("shared")],
    }

    fused = ReciprocalRankFusion()(results)

    assert fused[0].id == "shared"
    assert fused[0].score == pytest.approx(2 / 62)


def test_rrf_breaks_ties_by_first_seen_order() -> None:
    results = {
        "vector": [_doc("a"), _doc("b")],
        "keyword": [_doc("c"), _doc("d")],
    }

    fused = ReciprocalRankFusion(k=60)(results)

    assert _ids(fused) == ["a", "c", "b", "d"]
    assert fused[0].score == pytest.approx(1 / 61)


def test_rrf_does_not_mutate_inputs() -> None:
    vector = [_doc("a", 0.9), _doc("b", 0.5)]
    results = {"vector": vector}

    ReciprocalRankFusion()(results)

    assert _ids(vector) == ["a", "b"]
    assert vector[0].score == 0.9


def test_weighted_fusion_prefers_weighted_source() -> None:
    results = {
        "trusted": [_doc("weighted", 0.5)],
        "plain": [_doc("raw", 0.9)],
    }

    fused = WeightedFusion(weights={"trusted": 2.0, "plain": 1.0})(results)

    assert _ids(fused) == ["weighted", "raw"]
    assert fused[0].score == pytest.approx(1.0)


def test_weighted_fusion_defaults_missing_weight_to_one() -> None:
    fusion = WeightedFusion(weights={"vector": 3.0})

    assert fusion.weight_for("keyword") == 1.0
    assert fusion.weight_for("vector::alpha") == 3.0
    assert WeightedFusion(weights={"vector": 0.0}).weight_for("vector") == 1.0


def test_weighted_fusion_accumulates_across_sources() -> None:
    results = {
        "vector": [_doc("a", 0.4), _doc("b", 0.6)],
        "keyword": [_doc("a", 0.4)],
    }

    fused = WeightedFusion()(results)

    assert _ids(fused) == ["a", "b"]
    assert fused[0].score == pytest.approx(0.8)


def test_round_robin_interleaves_sources() -> None:
    results = {
        "src1": [_doc("a1"), _doc("a2")],
        "src2": [_doc("b1"), _doc("b2")],
    }

    fused = RoundRobinFusion()(results)

    assert _ids(fused) == ["a1", "b1", "a2", "b2"]


def test_round_robin_skips_short_sources_and_duplicates() -> None:
    results = {
        "src1": [_doc("a"), _doc("b"), _doc("c")],
        "src2": [_doc("b")],
    }

    fused = RoundRobinFusion()(results)

    assert _ids(fused) == ["a", "b", "c"]


def test_concat_keeps_first_seen_copy() -> None:
    first = _doc("shared", 0.1, content="first copy")
    results = {
        "src1": [_doc("a"), first],
        "src2": [_doc("shared", 0.9, content="second copy"), _doc("b")],
    }

    fused = ConcatFusion()(results)

    assert _ids(fused) == ["a", "shared", "b"]
    assert fused[1].content == "first copy"
    assert fused[1].score == 0.1


def test_documents_without_id_are_never_merged() -> None:
    results = {
        "src1": [RetrievedDocument(id="", content="same")],
        "src2": [RetrievedDocument(id="", content="same")],
    }

    assert len(ConcatFusion()(results)) == 2
    assert len(ReciprocalRankFusion()(results)) == 2


def test_multi_query_weighted_fusion_rewards_repeated_hits() -> None:
    results = {
        "kb::alpha": [_doc("a"), _doc("b")],
        "kb::alpha launch": [_doc("b"), _doc("c")],
    }

    fused = MultiQueryWeightedFusion()(results)

    assert _ids(fused) == ["b", "a", "c"]
    assert fused[0].score == pytest.approx(2 * 0.7 + 0.3)
    assert fused[1].score == pytest.approx(0.7 + 0.3)


def test_empty_input_fuses_to_empty_list() -> None:
    assert ReciprocalRankFusion()({}) == []
    assert RoundRobinFusion()({"a": []}) == []


def test_build_fusion_selects_algorithm() -> None:
    assert isinstance(build_fusion(), ReciprocalRankFusion)
    assert build_fusion(FusionConfig(rrf_k=10)).k == 10
    weighted = build_fusion(
        FusionConfig(algorithm=FusionAlgorithm.WEIGHTED, weights={"vector": 2.0})
    )
    assert isinstance(weighted, WeightedFusion)
    assert weighted.weight_for("vector") == 2.0
    assert isinstance(
        build_fusion(FusionConfig(algorithm="round_robin")), RoundRobinFusion
    )
    assert fusion_name(build_fusion(FusionConfig(algorithm="concat"))) == "concat"


def test_source_key_round_trips_backend_name() -> None:
    key = source_key("vector", "alpha launch")

    assert key == "vector::alpha launch"
    assert backend_of(key) == "vector"
    assert source_key("vector") == "vector"
