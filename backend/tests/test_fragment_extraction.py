"""
Tests for fragment extraction (oracle path and keyword fallback).
"""
import asyncio
import threading

import pytest

from services_float_ast import parse_conversation_to_float_ast
from services_floatql import QueryValidationError
from services_fragment_extraction import (
    aextract_fragments,
    clamp_max_fragments,
    extract_fragments,
    extract_fragments_fallback,
    query_words,
)
from services_logging import get_recent_events
from tests.mock_helpers import MEMORY_CHAT, SCENARIO_A, SCENARIO_B, FakeOracle


@pytest.fixture
def memory_ast(event_log):
    return parse_conversation_to_float_ast(MEMORY_CHAT, "Memory", use_oracle_concepts=False)


def _events(event_log):
    return get_recent_events(log_file=event_log / "fragment_extractions.jsonl")


def test_scenario_c_no_matches_is_empty(event_log):
    ast = parse_conversation_to_float_ast(SCENARIO_B, "Help", use_oracle_concepts=False)
    assert extract_fragments(ast, "greeting patterns", 10, use_oracle=False) == []


def test_scenario_c_only_matching_nodes(event_log):
    ast = parse_conversation_to_float_ast(
        SCENARIO_B + "\nAssistant: Common greeting patterns include hello.", "Help", use_oracle_concepts=False
    )

    fragments = extract_fragments(ast, "greeting patterns", 10, use_oracle=False)

    assert [f.text for f in fragments] == ["Common greeting patterns include hello."]
    assert fragments[0].keywords == ["greeting", "patterns"]
    assert fragments[0].relevance == "Contains 2 query term(s)"
    assert fragments[0].category == "General"


def test_fallback_ranks_by_score_then_index(memory_ast):
    fragments = extract_fragments(memory_ast, "summary store retrieval", 10, use_oracle=False)
    texts = [f.text for f in fragments]

    # node 1 matches all three words, nodes 2 to 5 match two each
    assert texts[0].startswith("A memory system needs retrieval")
    assert [f.relevance for f in fragments] == [
        "Contains 3 query term(s)",
        "Contains 2 query term(s)",
        "Contains 2 query term(s)",
        "Contains 2 query term(s)",
        "Contains 2 query term(s)",
    ]
    assert texts[1].startswith("How would retrieval")


def test_fallback_is_deterministic(memory_ast):
    first = extract_fragments(memory_ast, "memory sqlite", 10, use_oracle=False)
    second = extract_fragments(memory_ast, "memory sqlite", 10, use_oracle=False)
    assert [f.model_dump() for f in first] == [f.model_dump() for f in second]


def test_query_words_are_deduplicated():
    assert query_words("Memory memory  MEMORY store") == ["memory", "store"]


def test_repeated_query_words_do_not_inflate_scores(memory_ast):
    fragments = extract_fragments(memory_ast, "sqlite sqlite", 10, use_oracle=False)
    assert {f.relevance for f in fragments} == {"Contains 1 query term(s)"}


def test_clamp_max_fragments(monkeypatch):
    monkeypatch.setattr("services_fragment_extraction.MAX_FRAGMENTS", 20)
    monkeypatch.setattr("services_fragment_extraction.DEFAULT_FRAGMENTS", 10)

    assert clamp_max_fragments(None) == 10
    assert clamp_max_fragments(500) == 20
    assert clamp_max_fragments(-3) == 0
    assert clamp_max_fragments(5) == 5


def test_count_never_exceeds_ceiling(memory_ast, monkeypatch):
    monkeypatch.setattr("services_fragment_extraction.MAX_FRAGMENTS", 2)
    fragments = extract_fragments(memory_ast, "summary", 50, use_oracle=False)
    assert len(fragments) == 2


def test_zero_fragments_skips_oracle(memory_ast, event_log):
    oracle = FakeOracle([])
    assert extract_fragments(memory_ast, "memory", 0, oracle=oracle, use_oracle=True) == []
    assert oracle.calls == []
    assert _events(event_log)[0]["path"] == "skipped"


def test_oracle_fragments_are_used_and_truncated(memory_ast, event_log):
    oracle = FakeOracle(
        [
            {"text": "Retrieval scores each summary", "relevance": "core idea", "keywords": ["retrieval", "retrieval"], "category": "Design"},
            {"text": "Sqlite works", "relevance": 0.7, "keywords": ["sqlite"], "category": "Storage"},
            {"text": "extra", "relevance": "noise", "keywords": [], "category": "Misc"},
        ]
    )

    fragments = extract_fragments(memory_ast, "retrieval", 2, oracle=oracle, use_oracle=True)

    assert [f.category for f in fragments] == ["Design", "Storage"]
    assert fragments[0].keywords == ["retrieval"]
    assert fragments[1].relevance == 0.7
    assert 'related to: "retrieval"' in oracle.prompt
    assert "Sqlite works; the summary store stays small." in oracle.prompt
    event = _events(event_log)[0]
    assert event["path"] == "oracle" and event["fragment_count"] == 2


def test_oracle_envelope_is_accepted(memory_ast):
    oracle = FakeOracle({"fragments": [{"text": "Sqlite works", "relevance": "db", "keywords": [], "category": "Storage"}]})
    fragments = extract_fragments(memory_ast, "sqlite", 5, oracle=oracle, use_oracle=True)
    assert [f.text for f in fragments] == ["Sqlite works"]


@pytest.mark.parametrize(
    "oracle",
    [
        FakeOracle("this is not json"),
        FakeOracle([{"text": "", "relevance": "x", "keywords": [], "category": "y"}]),
        FakeOracle([{"text": "missing category", "relevance": "x"}]),
        FakeOracle([{"text": "no keywords", "relevance": "r", "category": "c"}]),
        FakeOracle([{"text": "made up", "relevance": "r", "keywords": [], "category": "c", "bogus": 1}]),
        FakeOracle({"answer": "wrong shape"}),
        FakeOracle(error=ConnectionError("down")),
    ],
)
def test_bad_oracle_replies_fall_back(memory_ast, event_log, oracle):
    fragments = extract_fragments(memory_ast, "sqlite", 10, oracle=oracle, use_oracle=True)

    assert [f.category for f in fragments] == ["General", "General"]
    event = _events(event_log)[0]
    assert event["path"] == "fallback"
    assert event["degrade_reason"]


def test_oracle_timeout_falls_back(memory_ast, event_log):
    release = threading.Event()
    oracle = FakeOracle([], delay_event=release)
    try:
        fragments = extract_fragments(memory_ast, "sqlite", 10, oracle=oracle, use_oracle=True, timeout_s=0.05)
    finally:
        release.set()

    assert len(fragments) == 2
    assert _events(event_log)[0]["degrade_reason"].startswith("timeout")


def test_unconfigured_oracle_falls_back(memory_ast, event_log):
    # conftest's fake key keeps the model router offline
    fragments = extract_fragments(memory_ast, "sqlite", 10, use_oracle=True)

    assert len(fragments) == 2
    assert _events(event_log)[0]["degrade_reason"] == "oracle unavailable"


def test_where_scopes_base_text(memory_ast):
    fragments = extract_fragments(memory_ast, "summary", 10, use_oracle=False, where={"role": "human"})
    assert len(fragments) == 2
    assert all("summary" in f.text for f in fragments)


def test_invalid_where_is_rejected(memory_ast):
    with pytest.raises(QueryValidationError):
        extract_fragments(memory_ast, "summary", 10, use_oracle=False, where={"colour": "red"})


def test_fallback_on_raw_nodes():
    ast_nodes = parse_conversation_to_float_ast(SCENARIO_A, "Hi", use_oracle_concepts=False).nodes
    fragments = extract_fragments_fallback(ast_nodes, "how hello", 10)
    assert [f.text for f in fragments] == ["Hello", "How are you?"]


def test_async_extraction_uses_oracle(memory_ast):
    oracle = FakeOracle([{"text": "Sqlite works", "relevance": "db", "keywords": ["sqlite"], "category": "Storage"}])
    fragments = asyncio.run(aextract_fragments(memory_ast, "sqlite", 3, oracle=oracle, use_oracle=True))
    assert [f.category for f in fragments] == ["Storage"]


def test_async_timeout_falls_back(memory_ast):
    release = threading.Event()
    oracle = FakeOracle([], delay_event=release)

    async def run():
        try:
            return await aextract_fragments(memory_ast, "sqlite", 10, oracle=oracle, use_oracle=True, timeout_s=0.05)
        finally:
            # let the abandoned worker thread finish before the loop shuts down
            release.set()

    fragments = asyncio.run(run())
    assert [f.category for f in fragments] == ["General", "General"]


def test_async_extraction_can_be_cancelled(memory_ast):
    release = threading.Event()
    oracle = FakeOracle([], delay_event=release)

    async def run():
        task = asyncio.create_task(aextract_fragments(memory_ast, "sqlite", 10, oracle=oracle, use_oracle=True))
        await asyncio.sleep(0.05)
        task.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

    asyncio.run(run())
    assert memory_ast.nodes[4].content.raw.startswith("Let's keep")


@pytest.mark.parametrize("query,max_fragments", [("sqlite", 5), ("sqlite", 0)])
def test_async_event_log_writes_run_off_the_loop_thread(memory_ast, monkeypatch, query, max_fragments):
    writers = []
    monkeypatch.setattr(
        "services_fragment_extraction.log_extraction_event",
        lambda *args, **kwargs: writers.append(threading.get_ident()),
    )

    async def run():
        loop_thread = threading.get_ident()
        await aextract_fragments(memory_ast, query, max_fragments, use_oracle=False)
        return loop_thread

    loop_thread = asyncio.run(run())
    assert len(writers) == 1
    assert writers[0] != loop_thread
