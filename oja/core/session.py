import asyncio
import re
from functools import partial
from typing import Optional

from loguru import logger

from audio.capture import CaptureController, CaptureEvent, CaptureEventType
from audio.cascade import SpeechOutcome, SpeechSynthesisCascade, SynthesisAttempt
from audio.cues import Cue, CueSink
from core.continuous import RESUME_DELAY_SECONDS, ContinuousConversation
from core.errors import (
    CaptureUnavailable,
    ConfirmationRequired,
    PermissionDenied,
    ToolExecutionFailure,
)
from core.history import MAX_HISTORY, ConversationHistory
from core.rate_limiter import RateLimiter
from core.state import PendingAction, ScreenContext, Session, SessionState, StateListener
from llm.dispatcher import APOLOGY_TEXT, DispatchResult, ToolCallingDispatcher

CAPTURE_ERROR_TEXT = "Couldn't hear you clearly. Tap the mic and try again?"
ACTION_FAILED_TEXT = ToolExecutionFailure.user_message
UNEXPECTED_ERROR_TEXT = "Something went wrong. Try again?"

_YES_WORDS = {"yes", "yeah", "yep", "yup", "confirm", "sure", "ok", "okay", "go", "do"}
_NO_WORDS = {"no", "nope", "nah", "cancel", "stop", "don't", "dont", "never", "nevermind", "wait"}


def classify_confirmation(text: str) -> Optional[bool]:
    """Read a short spoken reply as yes (True), no (False) or neither (None)."""
    words = re.findall(r"[a-z']+", text.lower())
    if not words or len(words) > 4:
        return None
    if words[0] in _NO_WORDS:
        return False
    if words[0] in _YES_WORDS:
        return True
    return None


class VoiceAssistant:
    """The voice-assistant session engine.

    Composes capture, rate limiting, the tool-calling dispatcher, the
    conversation history, speech synthesis and continuous conversation into
    one session state machine::

        IDLE -> LISTENING -> PROCESSING -> SPEAKING -> IDLE
                                 |
                                 +-> AWAITING_CONFIRMATION -> PROCESSING | IDLE

    Only one session is open at a time. Work that outlives a close (an
    in-flight provider call, a scheduled re-listen) checks that its session
    is still the open one before touching anything.
    """

    def __init__(
        self,
        capture: CaptureController,
        limiter: RateLimiter,
        dispatcher: ToolCallingDispatcher,
        speech: SpeechSynthesisCascade,
        cues: Optional[CueSink] = None,
        max_history: int = MAX_HISTORY,
        continuous: bool = True,
        resume_delay: float = RESUME_DELAY_SECONDS,
    ):
        self.capture = capture
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.speech = speech
        self.cues = cues or CueSink()
        self.history = ConversationHistory(max_history)
        self.context = ScreenContext()
        self.continuous = ContinuousConversation(
            should_resume=self._can_resume,
            resume=partial(self.start_listening, automatic=True),
            delay=resume_delay,
            enabled=continuous,
        )
        self.session: Optional[Session] = None
        self.current_attempt: Optional[SynthesisAttempt] = None

        self._state_listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()
        # Action parked while the mic is open for a spoken yes/no
        self._held_for_voice: Optional[PendingAction] = None

        self.capture.set_listener(self._on_capture_event)

    # ── Session lifecycle ──────────────────────────────────────────────

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)
        if self.session is not None:
            self.session.listeners.append(listener)

    def open(self, context: Optional[ScreenContext] = None) -> Session:
        """Open a new session, closing any session that is still open."""
        if self.session is not None and self.session.is_open:
            self.close()

        if context is not None:
            self.context = context
        self.history.reset()
        self.session = Session(
            capture_available=self.capture.available,
            device_speech_available=self.speech.device_available,
            listeners=list(self._state_listeners),
        )
        logger.info(
            "Session opened (capture={}, device speech={})",
            self.session.capture_available,
            self.session.device_speech_available,
        )
        return self.session

    def close(self) -> None:
        """Close the session: stop capture and speech, drop pending work."""
        session = self.session
        if session is not None:
            session.is_open = False
        self.continuous.cancel()
        self.capture.stop()
        self.speech.stop()
        self._held_for_voice = None
        self.history.reset()
        if session is not None and session.state != SessionState.CLOSED:
            session.set_state(SessionState.CLOSED)
            logger.info("Session closed.")

    @property
    def active_session(self) -> Optional[Session]:
        session = self.session
        return session if session is not None and session.is_open else None

    def _is_current(self, session: Session) -> bool:
        return session is self.session and session.is_open

    def update_context(self, context: ScreenContext) -> None:
        self.context = context

    def reset_conversation(self) -> None:
        """Forget the conversation so far (the session stays open)."""
        self.history.reset()
        self._held_for_voice = None
        session = self.active_session
        if session is None:
            return
        session.transcript = ""
        session.partial_transcript = ""
        session.last_response_text = ""
        session.last_error = None
        if session.state in (SessionState.AWAITING_CONFIRMATION, SessionState.ERROR):
            session.set_state(SessionState.IDLE)
        logger.info("Conversation reset.")

    # ── Listening ──────────────────────────────────────────────────────

    async def start_listening(self, automatic: bool = False) -> bool:
        """Open the mic for one utterance. Returns True if listening started."""
        session = self.active_session
        if session is None:
            return False
        if session.is_busy:
            logger.debug("Ignoring listen request while {}", session.state.value)
            return False
        if not session.capture_available:
            session.last_error = CaptureUnavailable.user_message
            return False

        self.continuous.cancel()
        self.speech.stop()
        self.capture.stop()
        if session.state == SessionState.AWAITING_CONFIRMATION:
            self._held_for_voice = session.pending_action

        self.cues.cue(Cue.AUTO_LISTEN if automatic else Cue.LISTEN)
        session.transcript = ""
        session.partial_transcript = ""
        session.last_error = None
        session.set_state(SessionState.LISTENING)

        try:
            await self.capture.start()
        except (PermissionDenied, CaptureUnavailable) as e:
            logger.warning("Capture could not start: {}", e)
            if self._is_current(session):
                self._restore_after_listen(session)
                session.last_error = e.user_message
                self.cues.cue(Cue.ERROR)
            return False

        if not self._is_current(session):
            self.capture.stop()
            return False
        logger.info("Listening{}...", " (continuous)" if automatic else "")
        return True

    def stop_listening(self) -> None:
        self.capture.stop()

    def _restore_after_listen(self, session: Session) -> None:
        held, self._held_for_voice = self._held_for_voice, None
        if held is not None:
            session.hold(held)
        else:
            session.set_state(SessionState.IDLE)

    def _on_capture_event(self, event: CaptureEvent) -> None:
        session = self.active_session
        if session is None:
            return

        if event.type == CaptureEventType.START:
            session.last_error = None
        elif event.type == CaptureEventType.PARTIAL:
            session.partial_transcript = event.text
        elif event.type == CaptureEventType.FINAL:
            if session.state != SessionState.LISTENING:
                return
            session.transcript = event.text
            session.partial_transcript = ""
            held, self._held_for_voice = self._held_for_voice, None
            self._route(session, event.text, held)
        elif event.type == CaptureEventType.ERROR:
            logger.warning("[CAPTURE] Recognition error: {}", event.error)
            if session.state != SessionState.LISTENING:
                return
            if self._held_for_voice is not None:
                self._restore_after_listen(session)
                session.last_error = CAPTURE_ERROR_TEXT
            else:
                self._fail(session, CAPTURE_ERROR_TEXT)
        elif event.type == CaptureEventType.END:
            if session.state == SessionState.LISTENING:
                self._restore_after_listen(session)

    async def submit_transcript(self, text: str) -> bool:
        """Handle a typed utterance as if it were a final transcript.

        Returns False if the session is closed or busy processing.
        """
        session = self.active_session
        if session is None or session.state == SessionState.PROCESSING:
            return False
        if session.state == SessionState.LISTENING:
            self.capture.stop()

        self.speech.stop()
        self.continuous.cancel()
        session.transcript = text
        session.partial_transcript = ""
        held = session.pending_action if session.state == SessionState.AWAITING_CONFIRMATION else None
        task = self._route(session, text, held)
        if task is not None:
            await task
        return True

    # ── Processing ─────────────────────────────────────────────────────

    def _route(self, session: Session, text: str, held: Optional[PendingAction]) -> Optional[asyncio.Task]:
        if not text.strip():
            # Silence keeps a held action waiting
            if held is not None:
                session.hold(held)
            else:
                session.set_state(SessionState.IDLE)
            return None

        if held is not None:
            decision = classify_confirmation(text)
            if decision is not None:
                session.hold(held)
                if decision:
                    return self._spawn(self.confirm())
                self.cancel()
                return None
            logger.info("Reply was not a yes/no; dropping held action {}", held.action_name)

        decision = self.limiter.check_and_reserve()
        if not decision.allowed:
            error = decision.to_error()
            logger.info("Request rate-limited: {}", error.reason)
            session.set_state(SessionState.IDLE)
            session.last_error = error.user_message
            self.cues.cue(Cue.ERROR)
            return None

        session.set_state(SessionState.PROCESSING)
        logger.debug("User said: '{}'", text)
        return self._spawn(self._process_utterance(session, text, self.history.generation))

    async def _process_utterance(self, session: Session, text: str, generation: int) -> None:
        try:
            result = await self.dispatcher.process(text, self.context, self.history.snapshot())
        except Exception as e:
            logger.exception("Dispatcher raised: {}", e)
            result = DispatchResult(text=APOLOGY_TEXT, failed=True, error=UNEXPECTED_ERROR_TEXT)

        if not self._is_current(session):
            logger.info("Session closed while processing; discarding response.")
            return

        session.last_response_text = result.text
        if result.failed:
            session.set_state(SessionState.ERROR)
            session.last_error = result.error or UNEXPECTED_ERROR_TEXT
            self.cues.cue(Cue.ERROR)
            self._speak(session, result.text, resume=False)
            return

        if self.history.generation == generation:
            self.history.append_exchange(text, result.text)
        else:
            logger.info("Conversation reset while processing; exchange not recorded.")
        self.cues.cue(Cue.SUCCESS)
        if result.pending_action is not None:
            session.hold(result.pending_action)
            self._speak(session, result.text, resume=False)
            return

        session.set_state(SessionState.SPEAKING)
        self._speak(session, result.text, resume=True)

    async def confirm(self) -> bool:
        """Execute the action awaiting confirmation."""
        session = self.active_session
        if session is None or session.state != SessionState.AWAITING_CONFIRMATION:
            return False
        action = session.pending_action
        if action is None:
            return False

        self.speech.stop()
        self.continuous.cancel()
        self.cues.cue(Cue.CONFIRM)
        session.set_state(SessionState.PROCESSING)

        try:
            message = await self.dispatcher.execute_pending(action)
        except (ToolExecutionFailure, ConfirmationRequired) as e:
            logger.warning("Confirmed action {} failed: {}", action.action_name, e)
            if self._is_current(session):
                self._fail(session, ACTION_FAILED_TEXT)
            return False
        except Exception as e:
            logger.exception("Confirmed action {} raised: {}", action.action_name, e)
            if self._is_current(session):
                self._fail(session, ACTION_FAILED_TEXT)
            return False

        if not self._is_current(session):
            logger.info("Session closed while executing {}; not speaking result.", action.action_name)
            return True

        session.last_response_text = message
        self.cues.cue(Cue.SUCCESS)
        session.set_state(SessionState.SPEAKING)
        self._speak(session, message, resume=True)
        return True

    def cancel(self) -> bool:
        """Drop the action awaiting confirmation without executing it."""
        session = self.active_session
        if session is None or session.state != SessionState.AWAITING_CONFIRMATION:
            return False
        action = session.pending_action
        self.speech.stop()
        session.set_state(SessionState.IDLE)
        self.cues.cue(Cue.CANCEL)
        logger.info("Cancelled pending action {}", action.action_name if action else "?")
        self.continuous.schedule()
        return True

    # ── Speech ─────────────────────────────────────────────────────────

    def _speak(self, session: Session, text: str, resume: bool) -> None:
        if not self._is_current(session):
            return
        attempt = self.speech.speak(text)
        self.current_attempt = attempt
        attempt.completion.add_done_callback(
            lambda fut: self._on_spoken(session, attempt, resume, fut.result())
        )

    def _on_spoken(
        self, session: Session, attempt: SynthesisAttempt, resume: bool, outcome: SpeechOutcome
    ) -> None:
        if not self._is_current(session) or attempt is not self.current_attempt:
            return
        if session.state == SessionState.ERROR:
            session.set_state(SessionState.IDLE)
        elif session.state == SessionState.SPEAKING:
            session.set_state(SessionState.IDLE)
            if resume and outcome != SpeechOutcome.CANCELLED:
                self.continuous.schedule()

    def _can_resume(self) -> bool:
        session = self.active_session
        return (
            session is not None
            and session.capture_available
            and session.pending_action is None
            and session.state == SessionState.IDLE
        )

    # ── Helpers ────────────────────────────────────────────────────────

    def _fail(self, session: Session, message: str) -> None:
        """Surface a failure to the user and return to IDLE."""
        session.set_state(SessionState.ERROR)
        session.last_error = message
        self.cues.cue(Cue.ERROR)
        session.set_state(SessionState.IDLE)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight utterance work to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def snapshot(self) -> dict:
        session = self.session
        data = session.to_dict() if session is not None else {"state": SessionState.CLOSED.value, "is_open": False}
        data["history"] = [t.to_message() for t in self.history.snapshot()]
        data["remaining_today"] = self.limiter.remaining_today()
        data["context"] = self.context.model_dump()
        return data

    async def shutdown(self) -> None:
        self.close()
        for task in list(self._tasks):
            task.cancel()
        await self.speech.close()
        await self.dispatcher.executor.close()
        logger.info("Voice assistant shut down.")
