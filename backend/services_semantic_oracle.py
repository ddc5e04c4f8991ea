"""
Boundary to the external semantic oracle.

Every oracle call resolves to either `OracleOk(value)` or `OracleDegrade(reason)`.
Transport errors, timeouts, malformed JSON and shape mismatches all become a
`OracleDegrade`; callers branch on the result and run their deterministic path.
Nothing in this module raises for oracle failures.
"""
from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import TypeAdapter, ValidationError

from config import ORACLE_TIMEOUT_SECONDS
from services_model_router import TASK_EXTRACT, ModelRouter, model_router

logger = logging.getLogger("float_ast")

Messages = List[Dict[str, str]]


class SemanticOracle(Protocol):
    """Anything that can answer a chat-style prompt with text."""

    def complete(self, messages: Messages) -> Optional[str]:
        ...


class ModelRouterOracle:
    """Oracle backed by the OpenAI model router."""

    def __init__(
        self,
        task_type: str = TASK_EXTRACT,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        router: Optional[ModelRouter] = None,
    ) -> None:
        self.task_type = task_type
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.router = router or model_router

    def complete(self, messages: Messages) -> Optional[str]:
        return self.router.completion(
            messages=messages,
            task_type=self.task_type,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


def default_oracle(task_type: str = TASK_EXTRACT) -> Optional[SemanticOracle]:
    """Return the router-backed oracle, or None when no client is configured."""
    if not model_router.available:
        return None
    return ModelRouterOracle(task_type=task_type)


@dataclass(frozen=True)
class OracleOk:
    value: Any


@dataclass(frozen=True)
class OracleDegrade:
    reason: str


OracleResult = Union[OracleOk, OracleDegrade]

# Shared pool for sync callers; a timed-out call is abandoned, not joined.
_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="semantic-oracle")


def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_oracle_json(
    raw: Optional[str],
    adapter: TypeAdapter,
    envelope_key: Optional[str] = None,
) -> OracleResult:
    """
    Decode an oracle reply and validate it against `adapter`.

    Args:
        raw: Raw text returned by the oracle
        adapter: Pydantic TypeAdapter describing the expected shape
        envelope_key: Accept `{envelope_key: <payload>}` as well as a bare payload

    Returns:
        OracleOk with the validated value, or OracleDegrade naming the failure
    """
    if raw is None or not str(raw).strip():
        return OracleDegrade("empty response")

    try:
        parsed = json.loads(_strip_code_fence(str(raw)))
    except json.JSONDecodeError as e:
        return OracleDegrade(f"invalid json: {e.msg}")

    if envelope_key and isinstance(parsed, dict) and envelope_key in parsed:
        parsed = parsed[envelope_key]

    try:
        value = adapter.validate_python(parsed)
    except ValidationError as e:
        return OracleDegrade(f"shape mismatch: {e.error_count()} error(s)")

    return OracleOk(value)


def call_oracle(
    oracle: Optional[SemanticOracle],
    messages: Messages,
    timeout_s: Optional[float] = None,
) -> OracleResult:
    """Run one oracle call on a worker thread with a bounded wait."""
    if oracle is None:
        return OracleDegrade("oracle unavailable")

    timeout = ORACLE_TIMEOUT_SECONDS if timeout_s is None else timeout_s
    future = _EXECUTOR.submit(oracle.complete, messages)
    try:
        raw = future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        return OracleDegrade(f"timeout after {timeout}s")
    except Exception as e:
        return OracleDegrade(f"transport error: {e}")

    return OracleOk(raw)


async def acall_oracle(
    oracle: Optional[SemanticOracle],
    messages: Messages,
    timeout_s: Optional[float] = None,
) -> OracleResult:
    """
    Async variant of `call_oracle`.

    Cancelling the awaiting task propagates CancelledError to the caller; the
    worker thread is abandoned and its result discarded.
    """
    if oracle is None:
        return OracleDegrade("oracle unavailable")

    timeout = ORACLE_TIMEOUT_SECONDS if timeout_s is None else timeout_s
    try:
        raw = await asyncio.wait_for(asyncio.to_thread(oracle.complete, messages), timeout=timeout)
    except asyncio.TimeoutError:
        return OracleDegrade(f"timeout after {timeout}s")
    except Exception as e:
        return OracleDegrade(f"transport error: {e}")

    return OracleOk(raw)


def _validated(result: OracleResult, adapter: TypeAdapter, envelope_key: Optional[str], label: str) -> OracleResult:
    if isinstance(result, OracleOk):
        result = parse_oracle_json(result.value, adapter, envelope_key=envelope_key)
    if isinstance(result, OracleDegrade):
        logger.warning(f"[oracle] {label} degraded to fallback: {result.reason}")
    return result


def ask_oracle(
    oracle: Optional[SemanticOracle],
    messages: Messages,
    adapter: TypeAdapter,
    *,
    envelope_key: Optional[str] = None,
    timeout_s: Optional[float] = None,
    label: str = "oracle call",
) -> OracleResult:
    """Call the oracle and validate its reply in one step."""
    return _validated(call_oracle(oracle, messages, timeout_s), adapter, envelope_key, label)


async def aask_oracle(
    oracle: Optional[SemanticOracle],
    messages: Messages,
    adapter: TypeAdapter,
    *,
    envelope_key: Optional[str] = None,
    timeout_s: Optional[float] = None,
    label: str = "oracle call",
) -> OracleResult:
    result = await acall_oracle(oracle, messages, timeout_s)
    return _validated(result, adapter, envelope_key, label)
