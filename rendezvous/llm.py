"""Completion engine client.

A thin async wrapper over the Anthropic and OpenAI-compatible SDKs that
always reports token usage, plus a defensive JSON parser for structured
responses.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from rendezvous.errors import LLMCallError, MalformedResponseError

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r'```(?:json)?\s*(\{.*\})\s*```', re.DOTALL)

DEFAULT_USER_MESSAGE = "Respond according to the instructions above."


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )


@dataclass
class Completion:
    text: str
    usage: Usage = field(default_factory=Usage)
    model: str = ""


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self,
        system: str,
        user: str = DEFAULT_USER_MESSAGE,
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int = 2048,
        json_mode: bool = False,
    ) -> Completion:
        """Send system+user message to the LLM and return text with usage."""
        model = model or self.model
        try:
            if self.provider == "anthropic":
                kwargs: dict[str, Any] = {}
                if temperature is not None:
                    kwargs["temperature"] = temperature
                response = await self._client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    **kwargs,
                )
                text = response.content[0].text.strip() if response.content else ""
                usage = Usage(
                    prompt_tokens=response.usage.input_tokens,
                    completion_tokens=response.usage.output_tokens,
                    total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                )
            else:
                kwargs = {}
                if temperature is not None:
                    kwargs["temperature"] = temperature
                if json_mode:
                    kwargs["response_format"] = {"type": "json_object"}
                response = await self._client.chat.completions.create(
                    model=model,
                    max_tokens=max_tokens,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    **kwargs,
                )
                text = response.choices[0].message.content or ""
                u = response.usage
                usage = Usage(
                    prompt_tokens=getattr(u, "prompt_tokens", 0) or 0,
                    completion_tokens=getattr(u, "completion_tokens", 0) or 0,
                    total_tokens=getattr(u, "total_tokens", 0) or 0,
                )
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        return Completion(text=text, usage=usage, model=model)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a completion into a JSON object, tolerating Markdown fences."""
    candidate = (text or "").strip()
    m = _FENCE_RE.search(candidate)
    if m:
        candidate = m.group(1)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"LLM returned invalid JSON: {candidate[:200]}", raw=text) from exc
    if not isinstance(data, dict):
        raise MalformedResponseError(
            f"Expected a JSON object, got {type(data).__name__}", raw=text,
        )
    return data


def estimate_cost(total_tokens: int, per_1k: float = 0.01) -> float:
    """Rough blended cost estimate in USD."""
    return round(total_tokens / 1000 * per_1k, 6)
