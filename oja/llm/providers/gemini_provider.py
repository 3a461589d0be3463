import json
from typing import Optional

from loguru import logger

from core.errors import ProviderFailure
from llm.base import BaseLLM, ModelReply, ToolCall


class GeminiProvider(BaseLLM):
    """Google Gemini provider with function calling."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        temperature: float = 0.3,
        max_output_tokens: int = 500,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._genai = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _ensure_client(self):
        if self._genai is None:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self._genai = genai

    @staticmethod
    def convert_messages(messages: list[dict]) -> tuple[str, list[dict]]:
        """Convert OpenAI-style messages to Gemini contents.

        Gemini takes the system prompt as ``system_instruction`` and uses
        roles user/model. Function results travel as user turns holding
        ``function_response`` parts; consecutive results share one turn.
        """
        system_msg = ""
        contents: list[dict] = []
        for msg in messages:
            role = msg["role"]
            if role == "system":
                system_msg = msg["content"]
            elif role == "user":
                contents.append({"role": "user", "parts": [{"text": msg["content"]}]})
            elif role == "assistant":
                parts = []
                if msg.get("content"):
                    parts.append({"text": msg["content"]})
                for call in msg.get("tool_calls") or []:
                    fn = call["function"]
                    parts.append({"function_call": {"name": fn["name"], "args": json.loads(fn["arguments"])}})
                contents.append({"role": "model", "parts": parts})
            elif role == "tool":
                result = json.loads(msg["content"])
                if not isinstance(result, dict):
                    result = {"result": result}
                part = {"function_response": {"name": msg["name"], "response": result}}
                last = contents[-1] if contents else None
                if last and last["role"] == "user" and "function_response" in last["parts"][0]:
                    last["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
        return system_msg, contents

    @classmethod
    def _schema(cls, schema: dict) -> dict:
        out = {}
        for key, value in schema.items():
            if key == "properties":
                out[key] = {name: cls._schema(prop) for name, prop in value.items()}
            elif key == "items":
                out[key] = cls._schema(value)
            else:
                out[key] = value
        if "enum" in out and out.get("type") == "string":
            out["format"] = "enum"
        return out

    @classmethod
    def _function_declarations(cls, tools) -> list[dict]:
        declarations = []
        for tool in tools:
            declaration = {"name": tool.name, "description": tool.description}
            if tool.parameters.get("properties"):
                declaration["parameters"] = cls._schema(tool.parameters)
            declarations.append(declaration)
        return [{"function_declarations": declarations}]

    async def complete(self, messages: list[dict], tools: Optional[list] = None) -> ModelReply:
        if not self.api_key:
            raise ProviderFailure(self.name, "API key not configured")

        self._ensure_client()
        system_msg, contents = self.convert_messages(messages)

        try:
            model = self._genai.GenerativeModel(
                self.model,
                system_instruction=system_msg or None,
                tools=self._function_declarations(tools) if tools else None,
                generation_config={
                    "temperature": self.temperature,
                    "max_output_tokens": self.max_output_tokens,
                },
            )
            response = await model.generate_content_async(contents)
        except Exception as e:
            logger.error("Gemini request error: {}", e)
            raise ProviderFailure(self.name, str(e)) from e

        if not response.candidates:
            raise ProviderFailure(self.name, "response had no candidates")

        texts = []
        calls = []
        for index, part in enumerate(response.candidates[0].content.parts):
            if part.function_call and part.function_call.name:
                fn = part.function_call
                arguments = type(fn).to_dict(fn).get("args") or {}
                calls.append(ToolCall(id=f"{fn.name}-{index}", name=fn.name, arguments=arguments))
            elif part.text:
                texts.append(part.text)

        text = "".join(texts).strip()
        return ModelReply(text=text or None, tool_calls=calls)
