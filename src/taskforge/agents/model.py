"""Model access for the generation loop."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from anthropic import AsyncAnthropic

from taskforge.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """A tool request made by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelTurn:
    """One assistant response.

    ``content`` holds the assistant blocks in order, ready to be appended to
    the conversation as the assistant message.
    """

    content: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def text(self) -> list[str]:
        return [block["text"] for block in self.content if block["type"] == "text"]

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=block["id"], name=block["name"], input=block.get("input") or {})
            for block in self.content
            if block["type"] == "tool_use"
        ]


class ModelClient(Protocol):
    """Anything that can answer a conversation with optional tool requests."""

    model: str

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        ...


class AnthropicModelClient:
    """Messages API client with tool use."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        if client is None:
            if api_key is None and settings.anthropic_api_key:
                api_key = settings.anthropic_api_key.get_secret_value()
            client = AsyncAnthropic(api_key=api_key)
        self.client = client
        self.model = model or settings.default_model
        self.max_tokens = max_tokens or settings.generation_max_tokens

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        logger.debug(f"Calling {self.model} with {len(messages)} messages")

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools

        response = await self.client.messages.create(**kwargs)

        content = []
        for block in response.content:
            if block.type == "text":
                content.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                content.append(
                    {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
                )

        logger.debug(
            f"Model response: stop_reason={response.stop_reason}, "
            f"tokens={response.usage.input_tokens}/{response.usage.output_tokens}"
        )
        return ModelTurn(
            content=content,
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
