from collections import deque

from loguru import logger

from core.state import ConversationTurn, Role

MAX_HISTORY = 12  # 6 exchanges (user + assistant each)


class ConversationHistory:
    """Rolling buffer of conversation turns shared across requests in a session.

    The oldest turns are evicted first once the cap is reached, so the
    provider always sees the most recent exchanges.
    """

    def __init__(self, max_turns: int = MAX_HISTORY):
        if max_turns < 2:
            raise ValueError("History must hold at least one exchange")
        self.max_turns = max_turns
        self._turns: deque[ConversationTurn] = deque(maxlen=max_turns)
        # Bumped on every reset; requests started earlier must not write back
        self.generation = 0

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def append_exchange(self, user_text: str, assistant_text: str) -> None:
        """Record one user/assistant round trip."""
        self._turns.append(ConversationTurn(Role.USER, user_text))
        self._turns.append(ConversationTurn(Role.ASSISTANT, assistant_text))
        logger.debug("[HISTORY] {} turns in conversation", len(self._turns))

    def snapshot(self) -> tuple[ConversationTurn, ...]:
        """Immutable copy, safe to hand to an in-flight request."""
        return tuple(self._turns)

    def reset(self) -> None:
        if self._turns:
            logger.debug("Conversation history cleared ({} turns)", len(self._turns))
        self._turns.clear()
        self.generation += 1

    def __len__(self) -> int:
        return len(self._turns)


def to_messages(turns) -> list[dict]:
    """Convert turns to provider message dicts."""
    return [turn.to_message() for turn in turns]
