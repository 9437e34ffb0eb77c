"""
Multi-provider streaming model client.

Supports:
- Anthropic (Claude Opus, Sonnet, Haiku) - including custom endpoints
- OpenAI (GPT-4o, o-series)

Both providers are adapted to the same StreamEvent sequence so the chunk
processor never sees SDK types.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import anthropic
import openai
from dotenv import load_dotenv

from ..config import ModelConfig
from ..stream.events import ReasoningDelta, StreamEvent, TextDelta, ToolCall, ToolResult
from ..types import ConversationMessage, TagstreamError

logger = logging.getLogger(__name__)

# Auto-load .env from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)


class LLMError(TagstreamError):
    """LLM call failed."""

    pass


class Provider(Enum):
    """LLM provider."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class ToolSpec:
    """A tool the model may call. name is the qualified "{server}__{tool}" key."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]


class ModelClient(Protocol):
    """Streams one model turn as provider-neutral events."""

    def stream(
        self,
        messages: list[ConversationMessage],
        system: str | None = None,
        tools: list[ToolSpec] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


# Model registry with provider info
MODEL_REGISTRY: dict[str, tuple[Provider, str]] = {
    # Anthropic models
    "opus": (Provider.ANTHROPIC, "claude-opus-4-5-20251101"),
    "sonnet": (Provider.ANTHROPIC, "claude-sonnet-4-20250514"),
    "haiku": (Provider.ANTHROPIC, "claude-haiku-4-5-20251001"),
    # OpenAI models
    "gpt-4o": (Provider.OPENAI, "gpt-4o"),
    "gpt-4o-mini": (Provider.OPENAI, "gpt-4o-mini"),
    "o3-mini": (Provider.OPENAI, "o3-mini"),
}


def resolve_model(model: str) -> tuple[Provider, str]:
    """Resolve model shorthand to (provider, full_model_id)."""
    if model in MODEL_REGISTRY:
        return MODEL_REGISTRY[model]
    # Guess provider from model name
    if model.startswith("claude") or model.startswith("glm"):
        return (Provider.ANTHROPIC, model)
    if model.startswith(("gpt-", "o1", "o3", "o4")):
        return (Provider.OPENAI, model)
    # Default to Anthropic
    return (Provider.ANTHROPIC, model)


class AnthropicModelClient:
    """Anthropic Messages API, streamed."""

    def __init__(
        self,
        model: str,
        max_tokens: int = 8192,
        temperature: float = 0.0,
        thinking_budget: int | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        tool_executor: ToolExecutor | None = None,
    ):
        # Support both ANTHROPIC_API_KEY and ANTHROPIC_AUTH_TOKEN
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_AUTH_TOKEN")
        if not self.api_key:
            raise LLMError(
                "Anthropic API key required. Set ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN environment variable."
            )
        # Support custom base URL for alternative endpoints
        self.base_url = base_url or os.environ.get("ANTHROPIC_BASE_URL")
        client_kwargs: dict[str, Any] = {"api_key": self.api_key}
        if self.base_url:
            client_kwargs["base_url"] = self.base_url
        self.client = anthropic.AsyncAnthropic(**client_kwargs)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.thinking_budget = thinking_budget
        self.tool_executor = tool_executor

    def _request_params(
        self,
        messages: list[ConversationMessage],
        system: str | None,
        tools: list[ToolSpec] | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": list(messages),
        }
        if system:
            params["system"] = system
        if self.thinking_budget:
            # Extended thinking requires the default temperature.
            params["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}
        else:
            params["temperature"] = self.temperature
        if tools:
            params["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
        return params

    async def stream(
        self,
        messages: list[ConversationMessage],
        system: str | None = None,
        tools: list[ToolSpec] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        params = self._request_params(messages, system, tools)
        try:
            async with self.client.messages.stream(**params) as stream:
                async for event in stream:
                    if event.type == "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta":
                            yield TextDelta(delta.text)
                        elif delta.type == "thinking_delta":
                            yield ReasoningDelta(delta.thinking)
                    elif event.type == "content_block_stop":
                        block = event.content_block
                        if block.type == "tool_use":
                            tool_input = dict(block.input or {})
                            yield ToolCall(block.name, tool_input)
                            if self.tool_executor is not None:
                                output = await self.tool_executor(block.name, tool_input)
                                yield ToolResult(block.name, output)
        except anthropic.APIError as e:
            raise LLMError(f"Anthropic API error: {e}") from e


class OpenAIModelClient:
    """OpenAI Chat Completions API, streamed."""

    def __init__(
        self,
        model: str,
        max_tokens: int = 8192,
        temperature: float = 0.0,
        api_key: str | None = None,
        base_url: str | None = None,
        tool_executor: ToolExecutor | None = None,
    ):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise LLMError("OpenAI API key required. Set OPENAI_API_KEY environment variable.")
        client_kwargs: dict[str, Any] = {"api_key": self.api_key}
        base_url = base_url or os.environ.get("OPENAI_BASE_URL")
        if base_url:
            client_kwargs["base_url"] = base_url
        self.client = openai.AsyncOpenAI(**client_kwargs)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.tool_executor = tool_executor

    def _request_params(
        self,
        messages: list[ConversationMessage],
        system: str | None,
        tools: list[ToolSpec] | None,
    ) -> dict[str, Any]:
        # OpenAI uses system message in messages array
        full_messages: list[dict[str, Any]] = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        params: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "stream": True,
        }
        # Reasoning models use max_completion_tokens and reject temperature
        if self.model.startswith(("o1", "o3", "o4", "gpt-5")):
            params["max_completion_tokens"] = self.max_tokens
        else:
            params["max_tokens"] = self.max_tokens
            params["temperature"] = self.temperature
        if tools:
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in tools
            ]
        return params

    async def stream(
        self,
        messages: list[ConversationMessage],
        system: str | None = None,
        tools: list[ToolSpec] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        params = self._request_params(messages, system, tools)
        pending_calls: dict[int, dict[str, str]] = {}
        try:
            response = await self.client.chat.completions.create(**params)
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield ReasoningDelta(reasoning)
                if delta.content:
                    yield TextDelta(delta.content)
                for call in delta.tool_calls or []:
                    entry = pending_calls.setdefault(call.index, {"name": "", "arguments": ""})
                    if call.function and call.function.name:
                        entry["name"] += call.function.name
                    if call.function and call.function.arguments:
                        entry["arguments"] += call.function.arguments
        except openai.OpenAIError as e:
            raise LLMError(f"OpenAI API error: {e}") from e

        for index in sorted(pending_calls):
            entry = pending_calls[index]
            try:
                tool_input = json.loads(entry["arguments"] or "{}")
            except json.JSONDecodeError:
                logger.warning(f"Tool call {entry['name']} had unparseable arguments")
                tool_input = {}
            yield ToolCall(entry["name"], tool_input)
            if self.tool_executor is not None:
                output = await self.tool_executor(entry["name"], tool_input)
                yield ToolResult(entry["name"], output)


def create_model_client(config: ModelConfig, tool_executor: ToolExecutor | None = None) -> ModelClient:
    """Build the client for config.model."""
    provider, model_id = resolve_model(config.model)
    logger.info(f"Using {provider.value} model {model_id}")
    if provider == Provider.OPENAI:
        return OpenAIModelClient(
            model=model_id,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            tool_executor=tool_executor,
        )
    return AnthropicModelClient(
        model=model_id,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        thinking_budget=config.thinking_budget,
        tool_executor=tool_executor,
    )


__all__ = [
    "AnthropicModelClient",
    "LLMError",
    "MODEL_REGISTRY",
    "ModelClient",
    "OpenAIModelClient",
    "Provider",
    "ToolExecutor",
    "ToolSpec",
    "create_model_client",
    "resolve_model",
]
