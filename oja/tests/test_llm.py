"""Tests for prompts, the tool catalog and provider message conversion."""
import json

import pytest

from core.config import AppConfig
from core.state import ScreenContext
from llm.base import ModelReply, ToolCall, assistant_tool_message, create_provider, tool_result_message
from llm.prompts import build_fallback_prompt, build_system_prompt
from llm.providers.gemini_provider import GeminiProvider
from llm.providers.openai_provider import OpenAIProvider
from tools.catalog import ToolCatalog, ToolKind, ToolSpec, default_catalog


class TestPrompts:
    def test_default_prompt(self):
        prompt = build_system_prompt(ScreenContext())
        assert "Oja" in prompt
        assert "British English" in prompt
        assert "Active list: none" in prompt

    def test_context_in_prompt(self):
        context = ScreenContext(
            current_screen="list",
            active_list_id="l1",
            active_list_name="Weekly Shop",
            active_list_budget=50,
            active_list_spent=12.5,
            user_name="Ada",
        )
        prompt = build_system_prompt(context)
        assert '"Weekly Shop" (id: l1)' in prompt
        assert "£50.00 (spent £12.50)" in prompt
        assert "Ada" in prompt

    def test_fallback_prompt(self):
        prompt = build_fallback_prompt(ScreenContext(), "how much is milk?")
        assert 'The user said: "how much is milk?"' in prompt
        assert "cannot look up" in prompt


class TestToolCatalog:
    def test_default_catalog(self):
        catalog = default_catalog()
        assert len(catalog) == 19
        assert "get_pantry_items" in catalog
        assert catalog.requires_confirmation("delete_list")
        assert catalog.requires_confirmation("remove_list_item")
        assert not catalog.requires_confirmation("add_items_to_list")
        assert not catalog.requires_confirmation("no_such_tool")

    def test_names_by_kind(self):
        catalog = default_catalog()
        assert len(catalog.names(ToolKind.READ)) == 12
        assert len(catalog.names(ToolKind.WRITE)) == 7

    def test_register_and_unregister(self):
        catalog = ToolCatalog()
        catalog.register(ToolSpec(name="get_recipes", description="Recipe ideas"))
        assert "get_recipes" in catalog
        catalog.unregister("get_recipes")
        assert "get_recipes" not in catalog

    def test_read_tool_cannot_require_confirmation(self):
        with pytest.raises(ValueError):
            ToolCatalog([ToolSpec(name="peek", description="x", requires_confirmation=True)])

    def test_confirm_prompt_with_missing_argument(self):
        spec = default_catalog().get("delete_list")
        assert spec.describe_pending({}) == "Delete your that list? This can't be undone."
        assert spec.describe_pending({"listName": "Party"}) == "Delete your Party list? This can't be undone."


class TestMessageHelpers:
    def test_tool_round_trip_messages(self):
        reply = ModelReply(tool_calls=[ToolCall("c1", "get_streaks", {"type": "shopping"})])
        echoed = assistant_tool_message(reply)
        assert echoed["tool_calls"][0]["function"]["name"] == "get_streaks"
        assert json.loads(echoed["tool_calls"][0]["function"]["arguments"]) == {"type": "shopping"}

        result = tool_result_message(reply.tool_calls[0], {"days": 4})
        assert result["tool_call_id"] == "c1"
        assert json.loads(result["content"]) == {"days": 4}


class TestGeminiConversion:
    def test_convert_messages(self):
        call = ToolCall("c1", "get_pantry_items", {"status": "low"})
        messages = [
            {"role": "system", "content": "You are Oja."},
            {"role": "user", "content": "what's low?"},
            assistant_tool_message(ModelReply(tool_calls=[call])),
            tool_result_message(call, {"items": ["Milk"]}),
            tool_result_message(ToolCall("c2", "get_streaks"), ["not", "a", "dict"]),
        ]

        system, contents = GeminiProvider.convert_messages(messages)

        assert system == "You are Oja."
        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[1]["parts"] == [{"function_call": {"name": "get_pantry_items", "args": {"status": "low"}}}]
        results = contents[2]["parts"]
        assert results[0]["function_response"] == {"name": "get_pantry_items", "response": {"items": ["Milk"]}}
        assert results[1]["function_response"]["response"] == {"result": ["not", "a", "dict"]}

    def test_function_declarations(self):
        declarations = GeminiProvider._function_declarations(default_catalog().tools)[0]["function_declarations"]
        by_name = {d["name"]: d for d in declarations}

        assert "parameters" not in by_name["get_active_lists"]
        stock = by_name["update_stock_level"]["parameters"]["properties"]["stockLevel"]
        assert stock["format"] == "enum"


class TestOpenAIConversion:
    def test_tool_results_drop_name(self):
        call = ToolCall("c1", "get_streaks")
        converted = OpenAIProvider.convert_messages([
            {"role": "user", "content": "hi"},
            tool_result_message(call, {"days": 4}),
        ])
        assert converted[0] == {"role": "user", "content": "hi"}
        assert "name" not in converted[1]
        assert converted[1]["tool_call_id"] == "c1"


class TestProviders:
    def test_create_provider(self):
        config = AppConfig()
        assert isinstance(create_provider("gemini", config), GeminiProvider)
        assert isinstance(create_provider("openai", config), OpenAIProvider)
        with pytest.raises(ValueError):
            create_provider("claude", config)

    @pytest.mark.asyncio
    async def test_unconfigured_provider_fails(self):
        from core.errors import ProviderFailure

        provider = OpenAIProvider(api_key="")
        assert not provider.is_configured
        with pytest.raises(ProviderFailure):
            await provider.complete([{"role": "user", "content": "hi"}])
