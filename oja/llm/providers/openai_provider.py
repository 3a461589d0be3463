import json
from typing import Optional

from loguru import logger

from core.errors import ProviderFailure
from llm.base import BaseLLM, ModelReply, ToolCall


class OpenAIProvider(BaseLLM):
    """OpenAI chat completions with optional function calling."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 500,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    @staticmethod
    def _tool_schema(tools) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    @staticmethod
    def convert_messages(messages: list[dict]) -> list[dict]:
        """Tool results carry no name field on this API."""
        return [
            {k: v for k, v in msg.items() if k != "name"} if msg["role"] == "tool" else msg
            for msg in messages
        ]

    async def complete(self, messages: list[dict], tools: Optional[list] = None) -> ModelReply:
        if not self.api_key:
            raise ProviderFailure(self.name, "API key not configured")

        self._ensure_client()

        kwargs = {
            "model": self.model,
            "messages": self.convert_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = self._tool_schema(tools)

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error("OpenAI request error: {}", e)
            raise ProviderFailure(self.name, str(e)) from e

        if not response.choices:
            raise ProviderFailure(self.name, "response had no choices")

        message = response.choices[0].message
        calls = []
        for raw in message.tool_calls or []:
            try:
                arguments = json.loads(raw.function.arguments or "{}")
            except ValueError as e:
                raise ProviderFailure(self.name, f"malformed arguments for {raw.function.name}") from e
            calls.append(ToolCall(id=raw.id, name=raw.function.name, arguments=arguments))

        return ModelReply(text=message.content or None, tool_calls=calls)
