from __future__ import annotations

import logging
import os
from typing import Any, Optional, Protocol

from prioritization_platform.core.config import model_for_role


log = logging.getLogger("prioritization_platform.llm")


class Agent(Protocol):
    """Anything that turns a prompt into raw response text (generator or evaluator)."""

    async def generate(self, prompt: str) -> str: ...


class OpenAIAgent:
    """Thin wrapper around the OpenAI Responses API (JSON object output)."""

    def __init__(
        self,
        *,
        role: str,
        system_prompt: str,
        default_model: str,
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.role = role
        self.system_prompt = system_prompt
        self.model = model_for_role(role, default_model)
        self._base_url = base_url or os.getenv("OPENAI_BASE_URL") or None
        self._temperature = temperature
        self._client: Any = None

        self.calls = 0
        self.input_tokens = 0
        self.output_tokens = 0

        # Monitoring hook: how often each model was used.
        self.models_used: dict[str, int] = {}

    def is_configured(self) -> bool:
        return bool(os.getenv("OPENAI_API_KEY"))

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.is_configured():
            raise RuntimeError("OPENAI_API_KEY is not set")

        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(base_url=self._base_url) if self._base_url else AsyncOpenAI()
        return self._client

    async def generate(self, prompt: str) -> str:
        client = self._get_client()
        self.models_used[self.model] = self.models_used.get(self.model, 0) + 1

        kwargs: dict[str, Any] = {"text": {"format": {"type": "json_object"}}}
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature

        response = await client.responses.create(
            model=self.model,
            input=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            **kwargs,
        )

        self.calls += 1
        self._accumulate_usage(response)
        text = extract_output_text(response)
        log.debug("agent response | role=%s | model=%s | chars=%d", self.role, self.model, len(text))
        return text

    def _accumulate_usage(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return

        def get(k: str) -> int:
            if isinstance(usage, dict):
                return int(usage.get(k, 0) or 0)
            return int(getattr(usage, k, 0) or 0)

        self.input_tokens += get("input_tokens")
        self.output_tokens += get("output_tokens")


def extract_output_text(resp: Any) -> str:
    """Pull the response text out of whichever SDK shape came back."""
    raw = getattr(resp, "output_text", None)
    if isinstance(raw, str) and raw.strip():
        return raw

    items = getattr(resp, "output", None)
    if items is None and hasattr(resp, "model_dump"):
        items = resp.model_dump().get("output")

    texts: list[str] = []
    for item in items if isinstance(items, list) else []:
        content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
        for c in content if isinstance(content, list) else []:
            t = c.get("text") if isinstance(c, dict) else getattr(c, "text", None)
            if isinstance(t, str) and t.strip():
                texts.append(t)
    if texts:
        return "\n".join(texts)

    return str(resp)
