"""Hand-written stand-ins for engines, providers and players used across tests."""
import asyncio
from typing import Optional

from audio.capture import CaptureController, CaptureEvent, CaptureEventType, SpeechEngine
from audio.cascade import SpeechSynthesisCascade
from audio.cues import CueSink
from audio.tts import DeviceSpeech, SynthesisProvider
from core.errors import ProviderFailure, SynthesisFailure, ToolExecutionFailure
from core.rate_limiter import MemoryRateLimitStore, RateLimiter
from core.session import VoiceAssistant
from llm.base import BaseLLM, ModelReply, ToolCall
from llm.dispatcher import ToolCallingDispatcher
from tools.catalog import default_catalog
from tools.executor import ToolExecutionService


class FakeEngine(SpeechEngine):
    def __init__(self, available: bool = True, permission: bool = True):
        self._available = available
        self.permission = permission
        self.emit = None
        self.starts = 0
        self.stops = 0

    @property
    def available(self) -> bool:
        return self._available

    async def request_permission(self) -> bool:
        return self.permission

    def start(self, emit, locale, interim_results):
        self.emit = emit
        self.starts += 1
        emit(CaptureEvent(CaptureEventType.START))

    def stop(self):
        self.stops += 1

    def say(self, text: str, partials=()):
        for partial in partials:
            self.emit(CaptureEvent(CaptureEventType.PARTIAL, partial))
        self.emit(CaptureEvent(CaptureEventType.FINAL, text))
        self.emit(CaptureEvent(CaptureEventType.END))

    def fail(self, error: str = "no-speech"):
        self.emit(CaptureEvent(CaptureEventType.ERROR, error=error))
        self.emit(CaptureEvent(CaptureEventType.END))


class FakePlayer:
    def __init__(self, duration: float = 0.0):
        self.duration = duration
        self.played = []
        self.stops = 0

    async def play(self, wav_bytes: bytes) -> bool:
        self.played.append(wav_bytes)
        await asyncio.sleep(self.duration)
        return True

    async def play_file(self, path) -> bool:
        self.played.append(path)
        return True

    def stop(self) -> None:
        self.stops += 1


class FakeSynth(SynthesisProvider):
    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.calls = []

    async def synthesize(self, text, voice) -> bytes:
        self.calls.append(text)
        if self.fail:
            raise SynthesisFailure(f"{self.name} unavailable")
        return f"{self.name}-audio".encode()


class FakeDevice(DeviceSpeech):
    def __init__(self, available: bool = True, ok: bool = True):
        self._available = available
        self.ok = ok
        self.spoken = []
        self.stops = 0

    @property
    def available(self) -> bool:
        return self._available

    async def speak(self, text: str) -> bool:
        self.spoken.append(text)
        return self.ok

    def stop(self) -> None:
        self.stops += 1


class ScriptedLLM(BaseLLM):
    """Returns queued replies in order; queued exceptions are raised instead."""

    def __init__(self, name: str, replies=(), gate: Optional[asyncio.Event] = None):
        self.name = name
        self.replies = list(replies)
        self.gate = gate
        self.requests = []

    async def complete(self, messages, tools=None) -> ModelReply:
        self.requests.append((list(messages), tools))
        if self.gate is not None:
            await self.gate.wait()
        if not self.replies:
            raise ProviderFailure(self.name, "no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeExecutor(ToolExecutionService):
    def __init__(self, results: Optional[dict] = None, failures=()):
        self.results = results or {}
        self.failures = set(failures)
        self.calls = []
        self.closed = False

    async def execute(self, name, arguments) -> dict:
        self.calls.append((name, dict(arguments)))
        if name in self.failures:
            raise ToolExecutionFailure(name, "backend said no")
        return self.results.get(name, {"success": True})

    async def close(self) -> None:
        self.closed = True


class RecordingCues(CueSink):
    def __init__(self):
        self.cues = []

    def cue(self, kind) -> None:
        self.cues.append(kind)


def text(value: str) -> ModelReply:
    return ModelReply(text=value)


def call(name: str, call_id: str = "call-1", **arguments) -> ModelReply:
    return ModelReply(tool_calls=[ToolCall(call_id, name, arguments)])


def make_assistant(
    primary: Optional[BaseLLM] = None,
    secondary: Optional[BaseLLM] = None,
    executor: Optional[ToolExecutionService] = None,
    engine: Optional[SpeechEngine] = None,
    player: Optional[FakePlayer] = None,
    limiter: Optional[RateLimiter] = None,
    continuous: bool = True,
    resume_delay: float = 0.05,
) -> VoiceAssistant:
    dispatcher = ToolCallingDispatcher(
        primary=primary or ScriptedLLM("primary"),
        secondary=secondary,
        catalog=default_catalog(),
        executor=executor or FakeExecutor(),
        timeout=2.0,
    )
    speech = SpeechSynthesisCascade(
        providers=[FakeSynth("azure")],
        player=player or FakePlayer(),
        device=FakeDevice(),
    )
    return VoiceAssistant(
        capture=CaptureController(engine if engine is not None else FakeEngine()),
        limiter=limiter or RateLimiter(MemoryRateLimitStore(), cooldown_seconds=0),
        dispatcher=dispatcher,
        speech=speech,
        cues=RecordingCues(),
        continuous=continuous,
        resume_delay=resume_delay,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
