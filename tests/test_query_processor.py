import asyncio

import pytest

from ragfuse.app.llm.providers import ASSISTANT, USER, ChatMessage
from ragfuse.app.query.service import (
    Decomposer,
    Expander,
    QueryOptimizer,
    Rewriter,
    parse_query_lines,
    strip_list_marker,
)
from ragfuse.app.query.variants import (
    DecomposingQueryGenerator,
    LLMQueryGenerator,
    PrefixSuffixVariants,
    StaticQueryGenerator,
    lowercase_variants,
    whitespace_variants,
)


class _ScriptedChatModel:
    def __init__(self, *outputs: str | Exception) -> None:
        self._outputs = list(outputs)
        self.calls: list[list[ChatMessage]] = []

    async def generate(self, messages) -> str:
        self.calls.append(list(messages))
        output = self._outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output


class _SlowChatModel:
    async def generate(self, messages) -> str:
        _ = messages
        await asyncio.sleep(1)
        return "too late"


def test_strip_list_marker_removes_numbering_and_bullets() -> None:
    assert strip_list_marker("1. alpha launch") == "alpha launch"
    assert strip_list_marker("2) alpha launch") == "alpha launch"
    assert strip_list_marker("3、alpha launch") == "alpha launch"
    assert strip_list_marker("- alpha launch") == "alpha launch"
    assert strip_list_marker("— alpha launch") == "alpha launch"
    assert strip_list_marker("• alpha launch") == "alpha launch"
    assert strip_list_marker("2024 roadmap") == "2024 roadmap"


def test_parse_query_lines_skips_blank_duplicate_and_original_lines() -> None:
    text = "1. alpha launch date\n\n2. alpha\n- alpha launch date\n• when does alpha ship"

    assert parse_query_lines(text, exclude="alpha") == [
        "alpha launch date",
        "when does alpha ship",
    ]


@pytest.mark.asyncio
async def test_rewriter_returns_model_output() -> None:
    model = _ScriptedChatModel("  When does Project Alpha launch?  ")

    rewritten = await Rewriter(model).rewrite("alpha launch?")

    assert rewritten == "When does Project Alpha launch?"


@pytest.mark.asyncio
async def test_rewriter_falls_back_on_failure_and_blank_output() -> None:
    failing = _ScriptedChatModel(RuntimeError("model down"))
    blank = _ScriptedChatModel("   ")

    assert await Rewriter(failing).rewrite("alpha") == "alpha"
    assert await Rewriter(blank).rewrite("alpha") == "alpha"
    assert await Rewriter(None).rewrite("alpha") == "alpha"


@pytest.mark.asyncio
async def test_rewriter_falls_back_on_timeout() -> None:
    rewriter = Rewriter(_SlowChatModel(), timeout_seconds=0.01)

    assert await rewriter.rewrite("alpha") == "alpha"


@pytest.mark.asyncio
async def test_rewriter_includes_recent_history() -> None:
    model = _ScriptedChatModel("When does Project Alpha launch?")
    history = [ChatMessage(USER, f"question {index}") for index in range(12)]
    history.append(ChatMessage(ASSISTANT, "Alpha ships in May."))

    await Rewriter(model).rewrite("and alpha?", history)

    prompt = model.calls[0][-1].content
    assert "User: question 3\n" in prompt
    assert "User: question 11" in prompt
    assert "Assistant: Alpha ships in May." in prompt
    assert "question 2\n" not in prompt


@pytest.mark.asyncio
async def test_expander_returns_original_first_and_caps_variants() -> None:
    model = _ScriptedChatModel(
        "1. alpha release date\n2. alpha launch\n3. alpha ship date\n4. extra"
    )

    expanded = await Expander(model, num_variants=2).expand("alpha launch")

    assert expanded == ["alpha launch", "alpha release date", "alpha ship date"]


@pytest.mark.asyncio
async def test_expander_falls_back_when_model_fails_or_output_empty() -> None:
    failing = _ScriptedChatModel(RuntimeError("boom"))
    empty = _ScriptedChatModel("\n\n")

    assert await Expander(failing).expand("alpha") == ["alpha"]
    assert await Expander(empty).expand("alpha") == ["alpha"]


@pytest.mark.asyncio
async def test_decomposer_splits_into_sub_queries() -> None:
    model = _ScriptedChatModel("1. alpha owner\n2. alpha launch date")

    assert await Decomposer(model).decompose("who owns alpha and when") == [
        "alpha owner",
        "alpha launch date",
    ]
    assert await Decomposer(None).decompose("alpha") == ["alpha"]


@pytest.mark.asyncio
async def test_optimizer_rewrites_then_expands_rewritten_query() -> None:
    model = _ScriptedChatModel(
        "Project Alpha launch date",
        "alpha release timeline\nwhen does alpha ship",
    )

    bundle = await QueryOptimizer(model, num_variants=2).optimize("alpha launch?")

    assert bundle.original == "alpha launch?"
    assert bundle.variants == (
        "alpha launch?",
        "Project Alpha launch date",
        "alpha release timeline",
        "when does alpha ship",
    )
    assert "Project Alpha launch date" in model.calls[1][-1].content


@pytest.mark.asyncio
async def test_optimizer_survives_total_model_failure() -> None:
    model = _ScriptedChatModel(RuntimeError("down"), RuntimeError("down"))

    bundle = await QueryOptimizer(model).optimize("alpha launch")

    assert bundle.variants == ("alpha launch",)


@pytest.mark.asyncio
async def test_optimizer_can_exclude_original_query() -> None:
    model = _ScriptedChatModel("Project Alpha launch date")

    bundle = await QueryOptimizer(
        model, enable_expand=False, include_original=False
    ).optimize("alpha?")

    assert bundle.variants == ("Project Alpha launch date",)


def test_deterministic_variant_generators() -> None:
    assert whitespace_variants("alpha   launch  date") == [
        "alpha   launch  date",
        "alpha launch date",
    ]
    assert whitespace_variants("alpha") == ["alpha"]
    assert lowercase_variants("Alpha Launch") == ["Alpha Launch", "alpha launch"]
    assert lowercase_variants("alpha") == ["alpha"]


def test_prefix_suffix_variants_count_and_order() -> None:
    variants = PrefixSuffixVariants(
        prefixes=("what is", "explain"), suffixes=("timeline",)
    )("alpha")

    assert variants == ["alpha", "what is alpha", "explain alpha", "alpha timeline"]


@pytest.mark.asyncio
async def test_static_query_generator_wraps_variant_function() -> None:
    generator = StaticQueryGenerator(lowercase_variants)

    assert await generator.generate("Alpha") == ["Alpha", "alpha"]


@pytest.mark.asyncio
async def test_llm_query_generator_caps_total_queries() -> None:
    model = _ScriptedChatModel("one\ntwo\nthree\nfour")

    queries = await LLMQueryGenerator(model, max_queries=3).generate("alpha")

    assert queries == ["alpha", "one", "two"]


@pytest.mark.asyncio
async def test_decomposing_generator_prepends_original() -> None:
    model = _ScriptedChatModel("alpha owner\nalpha launch")

    queries = await DecomposingQueryGenerator(model).generate("alpha owner and launch")

    assert queries == ["alpha owner and launch", "alpha owner", "alpha launch"]
