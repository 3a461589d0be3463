"""Tests for the rolling conversation history."""
import pytest

from core.history import MAX_HISTORY, ConversationHistory, to_messages
from core.state import ConversationTurn, Role


class TestConversationHistory:
    def test_capped_at_twelve_turns(self):
        history = ConversationHistory()
        for i in range(7):
            history.append_exchange(f"question {i}", f"answer {i}")

        assert len(history) == MAX_HISTORY == 12
        turns = history.snapshot()
        # Oldest exchange evicted first
        assert turns[0] == ConversationTurn(Role.USER, "question 1")
        assert turns[-1] == ConversationTurn(Role.ASSISTANT, "answer 6")

    def test_snapshot_is_unaffected_by_later_turns(self):
        history = ConversationHistory()
        history.append_exchange("hi", "hello")
        snapshot = history.snapshot()

        history.append_exchange("what's low?", "Milk.")
        assert len(snapshot) == 2
        assert isinstance(snapshot, tuple)

    def test_reset(self):
        history = ConversationHistory()
        history.append(ConversationTurn(Role.USER, "hi"))
        history.reset()
        assert len(history) == 0

    def test_too_small_cap_rejected(self):
        with pytest.raises(ValueError):
            ConversationHistory(max_turns=1)

    def test_to_messages(self):
        turns = [ConversationTurn(Role.USER, "hi"), ConversationTurn(Role.ASSISTANT, "hello")]
        assert to_messages(turns) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]
