import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ToolCall:
    """A structured request from the model to invoke a named tool."""

    id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class ModelReply:
    """One provider response: plain text, tool calls, or both."""

    text: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class BaseLLM(ABC):
    """Abstract base class for language-model providers.

    Messages use the OpenAI chat layout: ``{"role", "content"}`` dicts with
    roles system/user/assistant, assistant messages optionally carrying
    ``tool_calls`` and ``{"role": "tool", "tool_call_id", "name", "content"}``
    results. Providers convert to their own wire format.
    """

    name: str = "base"

    @abstractmethod
    async def complete(self, messages: list[dict], tools: Optional[list] = None) -> ModelReply:
        """Send one request.

        Args:
            messages: Conversation so far, system prompt first.
            tools: ToolSpec objects the model may call, or None for plain text.

        Raises:
            ProviderFailure: on transport errors, timeouts, or malformed replies.
        """
        ...

    @property
    def is_configured(self) -> bool:
        return True


def assistant_tool_message(reply: ModelReply) -> dict:
    """Assistant message echoing the tool calls a reply asked for."""
    return {
        "role": "assistant",
        "content": reply.text,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in reply.tool_calls
        ],
    }


def tool_result_message(call: ToolCall, result: dict) -> dict:
    return {
        "role": "tool",
        "tool_call_id": call.id,
        "name": call.name,
        "content": json.dumps(result, default=str),
    }


def create_provider(name: str, config) -> BaseLLM:
    """Build a provider by name from the app config.

    Args:
        name: "gemini" or "openai".
        config: AppConfig holding API keys and model settings.
    """
    providers = config.providers
    if name == "gemini":
        from llm.providers.gemini_provider import GeminiProvider
        return GeminiProvider(
            api_key=config.api_keys.gemini,
            model=providers.gemini_model,
            temperature=providers.temperature,
            max_output_tokens=providers.max_output_tokens,
        )
    if name == "openai":
        from llm.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(
            api_key=config.api_keys.openai,
            model=providers.openai_model,
            temperature=providers.temperature,
            max_tokens=providers.max_output_tokens,
        )
    raise ValueError(f"Unknown language-model provider: {name}")
