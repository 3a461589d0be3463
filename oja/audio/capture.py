import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Optional, TextIO

from loguru import logger

from core.errors import CaptureUnavailable, PermissionDenied


class CaptureEventType(str, Enum):
    START = "start"
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"
    END = "end"


@dataclass(frozen=True)
class CaptureEvent:
    type: CaptureEventType
    text: str = ""
    error: Optional[str] = None


EventCallback = Callable[[CaptureEvent], None]


class SpeechEngine(ABC):
    """Platform speech-to-text engine.

    Engines report events through the ``emit`` callback given to ``start``,
    from any thread.
    """

    @property
    @abstractmethod
    def available(self) -> bool:
        ...

    @abstractmethod
    async def request_permission(self) -> bool:
        ...

    @abstractmethod
    def start(self, emit: EventCallback, locale: str, interim_results: bool) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class CaptureController:
    """Runs single recognition passes on a speech engine.

    Each pass emits zero or more partial transcripts, then exactly one final
    transcript or error, then one end event. Events arriving out of that
    order, or from a pass that was already stopped, are dropped.
    """

    def __init__(self, engine: Optional[SpeechEngine], locale: str = "en-GB", interim_results: bool = True):
        self.engine = engine
        self.locale = locale
        self.interim_results = interim_results
        self._listener: Optional[EventCallback] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pass_id = 0
        self._listening = False
        self._settled = False  # final or error already delivered this pass

    @property
    def available(self) -> bool:
        return self.engine is not None and self.engine.available

    @property
    def listening(self) -> bool:
        return self._listening

    def set_listener(self, listener: Optional[EventCallback]) -> None:
        self._listener = listener

    async def start(self) -> None:
        """Begin one recognition pass.

        Raises:
            CaptureUnavailable: no speech engine on this host.
            PermissionDenied: the user refused microphone access.
        """
        if not self.available:
            raise CaptureUnavailable("speech engine not present")
        if self._listening:
            self.stop()

        if not await self.engine.request_permission():
            raise PermissionDenied("microphone permission refused")

        self._loop = asyncio.get_running_loop()
        self._pass_id += 1
        self._listening = True
        self._settled = False
        logger.debug("[CAPTURE] Pass {} starting ({})", self._pass_id, self.locale)
        self.engine.start(partial(self._from_engine, self._pass_id), self.locale, self.interim_results)

    def stop(self) -> None:
        """Abort the current pass. Safe to call when not listening."""
        if not self._listening:
            return
        try:
            self.engine.stop()
        except Exception as e:
            logger.warning("[CAPTURE] Engine stop failed: {}", e)
        self._end()

    def _from_engine(self, pass_id: int, event: CaptureEvent) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._dispatch(pass_id, event)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._dispatch, pass_id, event)

    def _dispatch(self, pass_id: int, event: CaptureEvent) -> None:
        if pass_id != self._pass_id or not self._listening:
            return

        if event.type == CaptureEventType.END:
            self._end()
            return
        if event.type in (CaptureEventType.PARTIAL, CaptureEventType.FINAL, CaptureEventType.ERROR):
            if self._settled:
                logger.debug("[CAPTURE] Dropping late {} event", event.type.value)
                return
            if event.type != CaptureEventType.PARTIAL:
                self._settled = True
        self._emit(event)

    def _end(self) -> None:
        self._listening = False
        self._emit(CaptureEvent(CaptureEventType.END))

    def _emit(self, event: CaptureEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception as e:
            logger.exception("[CAPTURE] Listener failed on {} event: {}", event.type.value, e)


class ConsoleSpeechEngine(SpeechEngine):
    """Treats a typed line on stdin as a spoken utterance.

    Useful on hosts without a microphone. One reader thread feeds every
    pass; lines typed while no pass is active are ignored.
    """

    def __init__(self, stream: TextIO = sys.stdin, prompt: str = "you> "):
        self.stream = stream
        self.prompt = prompt
        self._emit: Optional[EventCallback] = None
        self._interim = True
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    @property
    def available(self) -> bool:
        return not self._closed

    async def request_permission(self) -> bool:
        return True

    def start(self, emit: EventCallback, locale: str, interim_results: bool) -> None:
        with self._lock:
            self._emit = emit
            self._interim = interim_results
        emit(CaptureEvent(CaptureEventType.START))
        print(self.prompt, end="", flush=True)
        if self._thread is None:
            self._thread = threading.Thread(target=self._read_loop, name="console-capture", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            self._emit = None

    def _take_emit(self) -> Optional[EventCallback]:
        with self._lock:
            emit, self._emit = self._emit, None
            return emit

    def _read_loop(self) -> None:
        for line in self.stream:
            emit = self._take_emit()
            if emit is None:
                continue
            text = line.strip()
            if self._interim:
                words = text.split()
                for i in range(1, len(words)):
                    emit(CaptureEvent(CaptureEventType.PARTIAL, " ".join(words[:i])))
            emit(CaptureEvent(CaptureEventType.FINAL, text))
            emit(CaptureEvent(CaptureEventType.END))

        self._closed = True
        emit = self._take_emit()
        if emit is not None:
            emit(CaptureEvent(CaptureEventType.ERROR, error="end of input"))
            emit(CaptureEvent(CaptureEventType.END))
