"""Tests for the tool-calling dispatcher."""
import asyncio
import json

import pytest

from core.errors import ConfirmationRequired, ProviderFailure, ToolExecutionFailure
from core.state import ConversationTurn, PendingAction, Role, ScreenContext
from fakes import FakeExecutor, ScriptedLLM, call, text
from llm.dispatcher import (
    APOLOGY_TEXT,
    DONE_TEXT,
    EMPTY_TRANSCRIPT_TEXT,
    ROUND_LIMIT_TEXT,
    ToolCallingDispatcher,
)
from tools.catalog import default_catalog


def make_dispatcher(primary, secondary=None, executor=None, timeout=2.0):
    return ToolCallingDispatcher(
        primary=primary,
        secondary=secondary,
        catalog=default_catalog(),
        executor=executor or FakeExecutor(),
        timeout=timeout,
    )


def tool_messages(messages):
    return [m for m in messages if m["role"] == "tool"]


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_read_tool_then_answer(self):
        primary = ScriptedLLM("gemini", [call("get_pantry_items", status="low"), text("You're low on milk.")])
        executor = FakeExecutor({"get_pantry_items": {"items": [{"name": "Milk", "stockLevel": "low"}]}})
        dispatcher = make_dispatcher(primary, executor=executor)

        result = await dispatcher.process("what's running low?", ScreenContext())

        assert result.succeeded
        assert result.text == "You're low on milk."
        assert result.provider == "gemini"
        assert executor.calls == [("get_pantry_items", {"status": "low"})]

        followup, tools = primary.requests[1]
        assert tools is not None
        fed_back = tool_messages(followup)
        assert len(fed_back) == 1
        assert json.loads(fed_back[0]["content"])["items"][0]["name"] == "Milk"

    @pytest.mark.asyncio
    async def test_prompt_carries_history_and_context(self):
        primary = ScriptedLLM("gemini", [text("Sure.")])
        dispatcher = make_dispatcher(primary)
        history = (ConversationTurn(Role.USER, "hi"), ConversationTurn(Role.ASSISTANT, "Hello!"))
        context = ScreenContext(current_screen="list", active_list_id="l1", active_list_name="Weekly Shop")

        await dispatcher.process("add bread", context, history)

        messages, _ = primary.requests[0]
        assert messages[0]["role"] == "system"
        assert "Weekly Shop" in messages[0]["content"]
        assert messages[1:] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "add bread"},
        ]

    @pytest.mark.asyncio
    async def test_round_limit(self):
        primary = ScriptedLLM("gemini", [call("get_streaks") for _ in range(4)])
        executor = FakeExecutor()
        dispatcher = make_dispatcher(primary, executor=executor)

        result = await dispatcher.process("how am I doing?", ScreenContext())

        assert result.text == ROUND_LIMIT_TEXT
        assert len(executor.calls) == 3
        assert len(primary.requests) == 4

    @pytest.mark.asyncio
    async def test_confirmation_required_call_is_held(self):
        reply = call("delete_list", listId="l1", listName="Weekly Shop")
        primary = ScriptedLLM("gemini", [reply])
        executor = FakeExecutor()
        dispatcher = make_dispatcher(primary, executor=executor)

        result = await dispatcher.process("delete my weekly shop list", ScreenContext())

        assert executor.calls == []
        assert result.pending_action == PendingAction(
            "delete_list",
            {"listId": "l1", "listName": "Weekly Shop"},
            "Delete your Weekly Shop list? This can't be undone.",
        )
        assert result.text == "Delete your Weekly Shop list? This can't be undone."

    @pytest.mark.asyncio
    async def test_held_round_executes_nothing(self):
        reply = call("add_items_to_list", items=[{"name": "bread"}])
        reply.tool_calls.append(call("remove_list_item", "call-2", itemName="milk").tool_calls[0])
        executor = FakeExecutor()
        dispatcher = make_dispatcher(ScriptedLLM("gemini", [reply]), executor=executor)

        result = await dispatcher.process("swap milk for bread", ScreenContext())

        assert executor.calls == []
        assert result.pending_action.action_name == "remove_list_item"
        assert result.text == "Remove milk from your list?"

    @pytest.mark.asyncio
    async def test_tool_failure_is_fed_back(self):
        primary = ScriptedLLM("gemini", [call("get_savings_jar"), text("I couldn't check your savings.")])
        executor = FakeExecutor(failures={"get_savings_jar"})
        dispatcher = make_dispatcher(primary, executor=executor)

        result = await dispatcher.process("how much have I saved?", ScreenContext())

        assert result.text == "I couldn't check your savings."
        fed_back = tool_messages(primary.requests[1][0])
        assert "error" in json.loads(fed_back[0]["content"])

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        primary = ScriptedLLM("gemini", [call("launch_rockets"), text("I can't do that.")])
        executor = FakeExecutor()
        dispatcher = make_dispatcher(primary, executor=executor)

        result = await dispatcher.process("launch the rockets", ScreenContext())

        assert result.text == "I can't do that."
        assert executor.calls == []
        fed_back = tool_messages(primary.requests[1][0])
        assert "Unknown function" in fed_back[0]["content"]

    @pytest.mark.asyncio
    async def test_empty_transcript(self):
        primary = ScriptedLLM("gemini")
        result = await make_dispatcher(primary).process("   ", ScreenContext())
        assert result.text == EMPTY_TRANSCRIPT_TEXT
        assert primary.requests == []


class TestFallback:
    @pytest.mark.asyncio
    async def test_secondary_answers_when_primary_fails(self):
        primary = ScriptedLLM("gemini", [ProviderFailure(ProviderFailure.PRIMARY, "503")])
        secondary = ScriptedLLM("openai", [text("Milk is usually about £1.15.")])
        dispatcher = make_dispatcher(primary, secondary)

        result = await dispatcher.process("how much is milk?", ScreenContext())

        assert result.succeeded
        assert result.provider == "openai"
        assert result.text == "Milk is usually about £1.15."
        messages, tools = secondary.requests[0]
        assert tools is None
        assert len(messages) == 1
        assert "how much is milk?" in messages[0]["content"]

    @pytest.mark.asyncio
    async def test_failure_mid_loop_restarts_on_secondary(self):
        primary = ScriptedLLM("gemini", [call("get_active_lists"), RuntimeError("connection reset")])
        secondary = ScriptedLLM("openai", [text("Check the Lists tab.")])
        executor = FakeExecutor()
        dispatcher = make_dispatcher(primary, secondary, executor)

        result = await dispatcher.process("what lists do I have?", ScreenContext())

        assert result.text == "Check the Lists tab."
        assert executor.calls == [("get_active_lists", {})]

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        primary = ScriptedLLM("gemini", [text("too late")], gate=asyncio.Event())
        secondary = ScriptedLLM("openai", [text("Here you go.")])
        dispatcher = make_dispatcher(primary, secondary, timeout=0.05)

        result = await dispatcher.process("hello", ScreenContext())

        assert result.provider == "openai"

    @pytest.mark.asyncio
    async def test_both_providers_fail(self):
        primary = ScriptedLLM("gemini", [ProviderFailure(ProviderFailure.PRIMARY)])
        secondary = ScriptedLLM("openai", [ProviderFailure(ProviderFailure.SECONDARY)])
        dispatcher = make_dispatcher(primary, secondary)

        result = await dispatcher.process("hello", ScreenContext())

        assert result.failed
        assert result.text == APOLOGY_TEXT
        assert result.error == ProviderFailure.user_message

    @pytest.mark.asyncio
    async def test_no_secondary_configured(self):
        primary = ScriptedLLM("gemini", [ProviderFailure(ProviderFailure.PRIMARY)])
        result = await make_dispatcher(primary).process("hello", ScreenContext())
        assert result.failed
        assert result.text == APOLOGY_TEXT


class TestPendingExecution:
    @pytest.mark.asyncio
    async def test_execute_pending(self):
        executor = FakeExecutor({"delete_list": {"success": True, "message": "Deleted your Weekly Shop list."}})
        dispatcher = make_dispatcher(ScriptedLLM("gemini"), executor=executor)

        message = await dispatcher.execute_pending(PendingAction("delete_list", {"listId": "l1"}))

        assert message == "Deleted your Weekly Shop list."
        assert executor.calls == [("delete_list", {"listId": "l1"})]

    @pytest.mark.asyncio
    async def test_execute_pending_defaults_to_done(self):
        executor = FakeExecutor({"remove_list_item": {}})
        dispatcher = make_dispatcher(ScriptedLLM("gemini"), executor=executor)
        assert await dispatcher.execute_pending(PendingAction("remove_list_item", {"itemName": "milk"})) == DONE_TEXT

    @pytest.mark.asyncio
    async def test_rejected_action_raises(self):
        executor = FakeExecutor({"delete_list": {"success": False, "message": "List not found"}})
        dispatcher = make_dispatcher(ScriptedLLM("gemini"), executor=executor)
        with pytest.raises(ToolExecutionFailure):
            await dispatcher.execute_pending(PendingAction("delete_list", {"listName": "Party"}))

    @pytest.mark.asyncio
    async def test_unconfirmed_run_refused(self):
        executor = FakeExecutor()
        dispatcher = make_dispatcher(ScriptedLLM("gemini"), executor=executor)
        with pytest.raises(ConfirmationRequired):
            await dispatcher.run_tool("delete_list", {"listId": "l1"})
        assert executor.calls == []
