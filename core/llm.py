"""
Text completion — the only path from the engine to an AI model.

Components receive a TextCompletionService in their constructor; nothing
in the engine holds a module-level client. LLMCompletionService talks to
Anthropic or OpenAI and bounds every call with a timeout kept below the
processing-lock TTL, so a hung request cannot outlive the lock.
"""
from __future__ import annotations

import abc
import asyncio
import json
import structlog
from typing import Any, Optional

from pydantic import BaseModel

from config.settings import LLMConfig

logger = structlog.get_logger()


class CompletionError(Exception):
    """Any failure to obtain usable text from the completion service."""


class Completion(BaseModel):
    content: str
    model: Optional[str] = None
    usage_metadata: dict[str, int] = {}


class TextCompletionService(abc.ABC):
    """Abstract text completion capability."""

    model_name: Optional[str] = None

    @abc.abstractmethod
    async def invoke(
        self, prompt: str, max_tokens: int = None, temperature: float = None,
    ) -> Completion:
        ...

    @abc.abstractmethod
    async def invoke_with_system_prompt(
        self, system: str, user: str, max_tokens: int = None, temperature: float = None,
    ) -> Completion:
        ...


def parse_json_reply(text: str) -> Any:
    """
    Parse a JSON object out of a model reply, tolerating ``` fences.
    Raises ValueError when there is no JSON to be had.
    """
    result = (text or "").strip()
    if result.startswith("```"):
        result = result.split("```")[1].strip()
        if result.startswith("json"):
            result = result[4:].strip()
    if not result.startswith(("{", "[")):
        start, end = result.find("{"), result.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("no JSON object in reply")
        result = result[start:end + 1]
    return json.loads(result)


class LLMCompletionService(TextCompletionService):
    """
    Completion service backed by Claude or OpenAI.
    The provider SDK is imported on first use.
    """

    def __init__(self, config: LLMConfig, timeout_seconds: float = None):
        self._config = config
        self._provider = config.provider or "anthropic"
        self._timeout = timeout_seconds or config.timeout_seconds
        self._client = None
        self.model_name = config.model

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self._config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
            logger.info("llm_client_initialized", provider=self._provider,
                        model=self._config.model)
        return self._client

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> Completion:
        """Unified call for both Anthropic and OpenAI APIs."""
        client = self._get_client()
        max_tokens = max_tokens or self._config.max_tokens
        temperature = temperature if temperature is not None else self._config.temperature

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            oai_messages = ([{"role": "system", "content": system}] if system else []) + messages
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=oai_messages,
            )
            usage = response.usage
            return Completion(
                content=response.choices[0].message.content or "",
                model=response.model,
                usage_metadata={
                    "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                    "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                    "total_tokens": getattr(usage, "total_tokens", 0) or 0,
                },
            )

        # Anthropic: system prompt is a separate parameter
        kwargs: dict[str, Any] = {}
        if system:
            kwargs["system"] = system
        response = await client.messages.create(
            model=self._config.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
            **kwargs,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = response.usage
        prompt_tokens = getattr(usage, "input_tokens", 0) or 0
        completion_tokens = getattr(usage, "output_tokens", 0) or 0
        return Completion(
            content=text,
            model=response.model,
            usage_metadata={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )

    async def _complete(self, system: str, user: str, max_tokens, temperature) -> Completion:
        try:
            completion = await asyncio.wait_for(
                self._call_llm(system, [{"role": "user", "content": user}],
                               max_tokens=max_tokens, temperature=temperature),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("llm_call_timed_out", timeout_seconds=self._timeout)
            raise CompletionError(f"completion timed out after {self._timeout}s") from e
        except Exception as e:
            logger.warning("llm_call_failed", provider=self._provider, error=str(e))
            raise CompletionError(str(e)) from e

        if not completion.content.strip():
            raise CompletionError("empty completion")
        return completion

    async def invoke(
        self, prompt: str, max_tokens: int = None, temperature: float = None,
    ) -> Completion:
        return await self._complete("", prompt, max_tokens, temperature)

    async def invoke_with_system_prompt(
        self, system: str, user: str, max_tokens: int = None, temperature: float = None,
    ) -> Completion:
        return await self._complete(system, user, max_tokens, temperature)
