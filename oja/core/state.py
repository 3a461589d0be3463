from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import BaseModel


class SessionState(str, Enum):
    IDLE = "idle"                                    # Open, waiting for the user
    LISTENING = "listening"                          # Capture pass in progress
    PROCESSING = "processing"                        # Dispatcher round trip
    SPEAKING = "speaking"                            # Response being played
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # Destructive action held
    ERROR = "error"                                  # User-visible failure
    CLOSED = "closed"                                # Terminal


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    text: str

    def to_message(self) -> dict:
        return {"role": self.role.value, "content": self.text}


@dataclass(frozen=True)
class PendingAction:
    """A tool call held back until the user confirms it."""

    action_name: str
    parameters: dict = field(default_factory=dict)
    confirm_label: str = ""


class ScreenContext(BaseModel):
    """What the user is looking at when they speak."""

    current_screen: str = "home"
    active_list_id: Optional[str] = None
    active_list_name: Optional[str] = None
    active_list_budget: Optional[float] = None
    active_list_spent: Optional[float] = None
    active_lists_count: Optional[int] = None
    low_stock_count: Optional[int] = None
    user_name: Optional[str] = None


StateListener = Callable[[SessionState, SessionState], Any]


@dataclass
class Session:
    """State of one open assistant interaction."""

    state: SessionState = SessionState.IDLE
    transcript: str = ""
    partial_transcript: str = ""
    last_response_text: str = ""
    pending_action: Optional[PendingAction] = None
    last_error: Optional[str] = None
    is_open: bool = True

    # Capability flags, checked once when the session is created
    capture_available: bool = False
    device_speech_available: bool = False

    listeners: list[StateListener] = field(default_factory=list, repr=False)

    def set_state(self, state: SessionState) -> None:
        previous = self.state
        if previous == state:
            return
        if state != SessionState.AWAITING_CONFIRMATION:
            self.pending_action = None
        self.state = state
        logger.debug("[SESSION] {} -> {}", previous.value, state.value)
        for listener in list(self.listeners):
            try:
                listener(previous, state)
            except Exception as e:
                logger.warning("State listener failed: {}", e)

    def hold(self, action: PendingAction) -> None:
        """Park a confirmation-required action and enter AWAITING_CONFIRMATION."""
        self.set_state(SessionState.AWAITING_CONFIRMATION)
        self.pending_action = action

    @property
    def is_busy(self) -> bool:
        return self.state in (SessionState.LISTENING, SessionState.PROCESSING)

    def to_dict(self) -> dict:
        pending = None
        if self.pending_action is not None:
            pending = {
                "action_name": self.pending_action.action_name,
                "parameters": self.pending_action.parameters,
                "confirm_label": self.pending_action.confirm_label,
            }
        return {
            "state": self.state.value,
            "transcript": self.transcript,
            "partial_transcript": self.partial_transcript,
            "last_response_text": self.last_response_text,
            "pending_action": pending,
            "last_error": self.last_error,
            "is_open": self.is_open,
            "capture_available": self.capture_available,
            "device_speech_available": self.device_speech_available,
        }
