"""
Routes semantic oracle prompts to an OpenAI chat model.

Each oracle task (concept extraction, fragment extraction) has its own model and
sampling settings, overridable through MODEL_<TASK> env vars. The router owns the
single OpenAI client; when no usable key is configured the client stays unset and
callers are expected to take their deterministic path.
"""
import os
import logging
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from openai import OpenAI
from config import OPENAI_API_KEY, ORACLE_TIMEOUT_SECONDS

logger = logging.getLogger("float_ast")

TASK_EXTRACT = "extract"      # concepts from conversation nodes
TASK_FRAGMENTS = "fragments"  # query-relevant fragments


@dataclass(frozen=True)
class TaskSettings:
    model: str
    temperature: float = 0.3
    max_tokens: int = 2000


TASK_SETTINGS: Dict[str, TaskSettings] = {
    TASK_EXTRACT: TaskSettings(model=os.getenv("MODEL_EXTRACT", "gpt-4o"), temperature=0.2),
    TASK_FRAGMENTS: TaskSettings(model=os.getenv("MODEL_FRAGMENTS", "gpt-4o-mini"), temperature=0.3),
}

_FALLBACK_SETTINGS = TaskSettings(model=os.getenv("MODEL_FALLBACK", "gpt-4o-mini"))


def clean_api_key(raw: Optional[str]) -> Optional[str]:
    """Strip whitespace and stray quotes copied from .env files; None unless it looks like an OpenAI key."""
    if not raw:
        return None
    cleaned = raw.strip().strip('"').strip("'")
    return cleaned if cleaned.startswith("sk-") else None


class ModelRouter:
    def __init__(self, api_key: Optional[str] = OPENAI_API_KEY, timeout: float = ORACLE_TIMEOUT_SECONDS) -> None:
        self.client: Optional[OpenAI] = None
        key = clean_api_key(api_key)
        if key:
            try:
                # max_retries=0: one attempt per request, failures degrade immediately
                self.client = OpenAI(api_key=key, timeout=timeout, max_retries=0)
            except Exception as e:
                logger.error(f"[model_router] Failed to init OpenAI client: {e}")
        if not self.client:
            logger.warning("[model_router] OPENAI_API_KEY not set or invalid, oracle calls will degrade")

    @property
    def available(self) -> bool:
        return self.client is not None

    def settings_for(self, task_type: str) -> TaskSettings:
        return TASK_SETTINGS.get(task_type, _FALLBACK_SETTINGS)

    def completion(
        self,
        messages: List[Dict[str, str]],
        task_type: str = TASK_EXTRACT,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Optional[str]:
        """
        Run one chat completion for `task_type` and return the message text.

        Raises when the client is missing or the request fails; the oracle
        boundary turns those into degrade results.
        """
        if not self.client:
            raise ValueError("[model_router] OpenAI client not initialised. Check OPENAI_API_KEY.")

        settings = self.settings_for(task_type)
        kwargs: Dict[str, Any] = {
            "model": settings.model,
            "messages": messages,
            "temperature": settings.temperature if temperature is None else temperature,
            "max_tokens": settings.max_tokens if max_tokens is None else max_tokens,
        }
        try:
            response = self.client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error(f"[model_router] completion failed (task={task_type} model={settings.model}): {e}")
            raise
        return response.choices[0].message.content


model_router = ModelRouter()
