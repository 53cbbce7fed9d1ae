"""Rolling conversation history with a token budget, optionally mirrored to the session log."""

import logging
from pathlib import Path
from typing import Callable, Optional

from memory import session_log
from memory.short_term import Memory, Role

logger = logging.getLogger(__name__)


class RollingHistory:
    """
    Ordered (user, assistant, ...) turns of the live conversation.
    When a session name is set, every append and ejection is written through
    to the session log so reloads see the same history.
    """

    def __init__(
        self,
        max_tokens: int,
        count_tokens: Callable[[str], int],
        session_name: Optional[str] = None,
        db_path: Optional[Path] = None,
    ):
        self.max_tokens = max_tokens
        self.count_tokens = count_tokens
        self.session_name = session_name
        self.db_path = db_path
        self.turns: list[Memory] = []

    @classmethod
    def load(
        cls,
        session_name: str,
        max_tokens: int,
        count_tokens: Callable[[str], int],
        db_path: Optional[Path] = None,
    ) -> "RollingHistory":
        session_log.init_db(db_path)
        session_log.ensure_conversation(session_name, db_path)
        history = cls(max_tokens, count_tokens, session_name=session_name, db_path=db_path)
        history.turns = [t.to_memory() for t in session_log.fetch_history(session_name, db_path)]
        return history

    def __len__(self) -> int:
        return len(self.turns)

    def append(self, memory: Memory) -> None:
        self.turns.append(memory)
        if self.session_name:
            session_log.append_turn(self.session_name, memory.role, memory.content, self.db_path)

    def total_tokens(self, preamble: Optional[list[Memory]] = None) -> int:
        messages = list(preamble or []) + self.turns
        return sum(self.count_tokens(m.content) for m in messages)

    def should_eject(self, preamble: Optional[list[Memory]] = None) -> bool:
        total = self.total_tokens(preamble)
        logger.debug("Session token count %d of %d allotted", total, self.max_tokens)
        return total > self.max_tokens

    def pop_oldest_pair(self) -> tuple[Memory, Optional[Memory]]:
        """Remove the oldest turn and, if it is a user turn followed by a reply, that reply too."""
        if not self.turns:
            raise IndexError("pop from empty history")
        first = self.turns.pop(0)
        second = None
        if first.role == Role.USER and self.turns and self.turns[0].role == Role.ASSISTANT:
            second = self.turns.pop(0)
        if self.session_name:
            session_log.remove_oldest_turns(self.session_name, 1 if second is None else 2, self.db_path)
        return first, second
