import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from loguru import logger

from core.errors import ConfirmationRequired, ProviderFailure, ToolExecutionFailure
from core.history import to_messages
from core.state import ConversationTurn, PendingAction, ScreenContext
from llm.base import BaseLLM, ModelReply, assistant_tool_message, tool_result_message
from llm.prompts import build_fallback_prompt, build_system_prompt
from tools.catalog import ToolCatalog
from tools.executor import ToolExecutionService

MAX_TOOL_ROUNDS = 3

EMPTY_TRANSCRIPT_TEXT = "I didn't catch that. Try again?"
NO_ANSWER_TEXT = "Sorry, I couldn't process that."
ROUND_LIMIT_TEXT = "Sorry, I couldn't finish that. Could you try asking another way?"
FALLBACK_EMPTY_TEXT = "I'm having a bit of trouble. Try again in a moment?"
APOLOGY_TEXT = "I'm having trouble right now. You can still use the app normally!"
DONE_TEXT = "Done!"


@dataclass
class DispatchResult:
    text: str
    pending_action: Optional[PendingAction] = None
    provider: Optional[str] = None
    failed: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.failed


class ToolCallingDispatcher:
    """Runs one user utterance through the language model and its tools.

    The primary provider gets the tool catalog and may request tool calls,
    which are executed one at a time and fed back, for at most
    ``max_rounds`` rounds. Calls to tools that require confirmation stop the
    loop and come back as a PendingAction instead of being executed. If the
    primary provider fails anywhere in the loop, the whole request is retried
    once on the secondary provider with a reduced, tool-less prompt.
    """

    def __init__(
        self,
        primary: BaseLLM,
        secondary: Optional[BaseLLM],
        catalog: ToolCatalog,
        executor: ToolExecutionService,
        max_rounds: int = MAX_TOOL_ROUNDS,
        timeout: float = 15.0,
    ):
        self.primary = primary
        self.secondary = secondary
        self.catalog = catalog
        self.executor = executor
        self.max_rounds = max_rounds
        self.timeout = timeout

    async def process(
        self,
        transcript: str,
        context: ScreenContext,
        history: Sequence[ConversationTurn] = (),
    ) -> DispatchResult:
        if not transcript.strip():
            return DispatchResult(text=EMPTY_TRANSCRIPT_TEXT)

        t_start = time.monotonic()
        try:
            result = await self._run_tool_loop(transcript, context, history)
            logger.info("[TIMING] {} answered in {:.1f}s", self.primary.name, time.monotonic() - t_start)
            return result
        except (ProviderFailure, asyncio.TimeoutError) as e:
            logger.warning("[LLM] Primary provider failed, trying fallback: {}", e)
        except Exception as e:
            logger.exception("[LLM] Unexpected primary provider error, trying fallback: {}", e)

        return await self._fallback(transcript, context)

    async def _ask(self, provider: BaseLLM, messages: list[dict], tools=None) -> ModelReply:
        return await asyncio.wait_for(provider.complete(messages, tools), timeout=self.timeout)

    async def _run_tool_loop(
        self,
        transcript: str,
        context: ScreenContext,
        history: Sequence[ConversationTurn],
    ) -> DispatchResult:
        messages = [{"role": "system", "content": build_system_prompt(context)}]
        messages.extend(to_messages(history))
        messages.append({"role": "user", "content": transcript})

        tools = self.catalog.tools
        reply = await self._ask(self.primary, messages, tools)

        rounds = 0
        while reply.wants_tools:
            if rounds >= self.max_rounds:
                logger.warning("[LLM] Tool-call limit ({}) reached without an answer", self.max_rounds)
                return DispatchResult(text=ROUND_LIMIT_TEXT, provider=self.primary.name)
            rounds += 1

            held = next((c for c in reply.tool_calls if self.catalog.requires_confirmation(c.name)), None)
            if held is not None:
                spec = self.catalog.get(held.name)
                prompt = spec.describe_pending(held.arguments)
                logger.info("[LLM] Round {}: holding '{}' for confirmation", rounds, held.name)
                return DispatchResult(
                    text=prompt,
                    pending_action=PendingAction(held.name, dict(held.arguments), prompt),
                    provider=self.primary.name,
                )

            messages.append(assistant_tool_message(reply))
            for call in reply.tool_calls:
                logger.info("[LLM] Round {}: tool call {}", rounds, call.name)
                result = await self._execute(call.name, call.arguments)
                messages.append(tool_result_message(call, result))

            reply = await self._ask(self.primary, messages, tools)

        return DispatchResult(text=reply.text or NO_ANSWER_TEXT, provider=self.primary.name)

    async def _execute(self, name: str, arguments: dict, confirmed: bool = False) -> dict:
        """Run one tool call; failures become a result the model can read."""
        if name not in self.catalog:
            return {"error": f"Unknown function: {name}"}
        try:
            return await self.run_tool(name, arguments, confirmed=confirmed)
        except ToolExecutionFailure as e:
            logger.warning("[TOOL] {} failed: {}", name, e)
            return {"error": f"The {name} operation failed. {e}"}

    async def run_tool(self, name: str, arguments: dict, confirmed: bool = False) -> dict:
        """Execute a tool against the backend, enforcing confirmation."""
        if self.catalog.requires_confirmation(name) and not confirmed:
            raise ConfirmationRequired(name)
        return await self.executor.execute(name, arguments)

    async def _fallback(self, transcript: str, context: ScreenContext) -> DispatchResult:
        if self.secondary is None:
            error = ProviderFailure(ProviderFailure.PRIMARY, "no fallback provider configured")
            return DispatchResult(text=APOLOGY_TEXT, failed=True, error=error.user_message)

        messages = [{"role": "user", "content": build_fallback_prompt(context, transcript)}]
        try:
            reply = await self._ask(self.secondary, messages)
        except Exception as e:
            logger.error("[LLM] Fallback provider failed too: {}", e)
            error = ProviderFailure(ProviderFailure.SECONDARY, str(e))
            return DispatchResult(text=APOLOGY_TEXT, failed=True, error=error.user_message)

        logger.info("[LLM] Answered by fallback provider {}", self.secondary.name)
        return DispatchResult(text=reply.text or FALLBACK_EMPTY_TEXT, provider=self.secondary.name)

    async def execute_pending(self, action: PendingAction) -> str:
        """Execute a held action after the user confirmed it.

        Raises:
            ToolExecutionFailure: if the backend could not perform it.
        """
        logger.info("[TOOL] Executing confirmed action {}", action.action_name)
        result = await self.run_tool(action.action_name, action.parameters, confirmed=True)
        if result.get("success") is False:
            raise ToolExecutionFailure(action.action_name, result.get("message", "rejected"))
        return result.get("message") or DONE_TEXT
