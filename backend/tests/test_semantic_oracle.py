"""
Tests for the semantic oracle boundary and the model router behind it.
"""
from types import SimpleNamespace
from typing import List

import pytest
from pydantic import TypeAdapter

from services_model_router import TASK_EXTRACT, TASK_FRAGMENTS, ModelRouter, clean_api_key
from services_semantic_oracle import (
    ModelRouterOracle,
    OracleDegrade,
    OracleOk,
    ask_oracle,
    call_oracle,
    default_oracle,
    parse_oracle_json,
)
from tests.mock_helpers import FakeOracle

WORDS = TypeAdapter(List[str])


class RecordingRouter:
    """Stands in for ModelRouter; remembers the keyword arguments it was called with."""

    def __init__(self, reply="[]"):
        self.reply = reply
        self.kwargs = None

    def completion(self, **kwargs):
        self.kwargs = kwargs
        return self.reply


def test_parse_plain_json():
    assert parse_oracle_json('["a", "b"]', WORDS) == OracleOk(["a", "b"])


def test_parse_fenced_json():
    raw = '```json\n["a"]\n```'
    assert parse_oracle_json(raw, WORDS) == OracleOk(["a"])


def test_parse_envelope():
    assert parse_oracle_json('{"items": ["x"]}', WORDS, envelope_key="items") == OracleOk(["x"])


@pytest.mark.parametrize(
    "raw,reason",
    [
        (None, "empty response"),
        ("   ", "empty response"),
        ("not json", "invalid json"),
        ('{"items": 3}', "shape mismatch"),
    ],
)
def test_parse_failures_degrade(raw, reason):
    result = parse_oracle_json(raw, WORDS, envelope_key="items")
    assert isinstance(result, OracleDegrade)
    assert result.reason.startswith(reason)


def test_call_without_oracle_degrades():
    assert call_oracle(None, []) == OracleDegrade("oracle unavailable")


def test_call_transport_error_degrades():
    result = call_oracle(FakeOracle(error=RuntimeError("boom")), [])
    assert result == OracleDegrade("transport error: boom")


def test_ask_oracle_validates_reply():
    oracle = FakeOracle(["one", "two"])
    result = ask_oracle(oracle, [{"role": "user", "content": "list"}], WORDS)
    assert result == OracleOk(["one", "two"])
    assert oracle.prompt == "list"


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, None),
        ("", None),
        ("test-key-sk-1234567890", None),
        ('  "sk-abc"  ', "sk-abc"),
        ("'sk-xyz'", "sk-xyz"),
    ],
)
def test_clean_api_key(raw, expected):
    assert clean_api_key(raw) == expected


def test_router_without_key_is_unavailable():
    router = ModelRouter(api_key="test-key-sk-1234567890")
    assert not router.available
    with pytest.raises(ValueError):
        router.completion([{"role": "user", "content": "hi"}])


def test_default_oracle_is_none_when_router_offline():
    # conftest installs a key the router refuses
    assert default_oracle(TASK_FRAGMENTS) is None


def test_task_settings():
    router = ModelRouter(api_key=None)
    assert router.settings_for(TASK_EXTRACT).model
    assert router.settings_for("unknown-task").model == router.settings_for("other-unknown").model


def test_router_oracle_passes_task_and_overrides():
    router = RecordingRouter(reply='["ok"]')
    oracle = ModelRouterOracle(task_type=TASK_FRAGMENTS, max_tokens=50, router=router)

    assert oracle.complete([{"role": "user", "content": "q"}]) == '["ok"]'
    assert router.kwargs["task_type"] == TASK_FRAGMENTS
    assert router.kwargs["max_tokens"] == 50
    assert router.kwargs["temperature"] is None


class _FakeCompletions:
    def __init__(self):
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="[]"))])


def test_completion_uses_task_settings_unless_overridden():
    completions = _FakeCompletions()
    router = ModelRouter(api_key=None)
    router.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))

    assert router.completion([{"role": "user", "content": "q"}], task_type=TASK_FRAGMENTS) == "[]"
    settings = router.settings_for(TASK_FRAGMENTS)
    assert completions.kwargs == {
        "model": settings.model,
        "messages": [{"role": "user", "content": "q"}],
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
    }

    router.completion([{"role": "user", "content": "q"}], task_type=TASK_EXTRACT, temperature=0.0, max_tokens=10)
    assert completions.kwargs["temperature"] == 0.0
    assert completions.kwargs["max_tokens"] == 10
