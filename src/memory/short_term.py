"""Working memory ("brain") - token-bounded buffer of recent memories for the preamble."""

import json
import logging
import warnings
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator

from memory.errors import BudgetExhaustedWarning

logger = logging.getLogger(__name__)

BRAIN_ABOUT = (
    "This JSON object is a representation of our conversation leading up to this point. "
    "This object represents your memories."
)
BRAIN_INTRO = (
    "Below is a JSON representation of our conversation leading up to this point. "
    'Please only respond to this message with "Ok.":\n'
)
ACKNOWLEDGEMENT = "Ok"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Memory:
    """A single role-tagged snippet of conversation."""
    role: Role
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Memory":
        return cls(role=Role(data["role"]), content=str(data["content"]))


class WorkingMemory:
    """
    Holds the most recent memories within a token budget.
    Logic: append new -> while over budget, drop oldest (never the last survivor).
    """

    def __init__(self, max_tokens: int, template, count_tokens: Callable[[str], int]):
        self.max_tokens = max_tokens
        self.template = template
        self.count_tokens = count_tokens
        self.memories: deque[Memory] = deque()

    def __len__(self) -> int:
        return len(self.memories)

    def __iter__(self) -> Iterator[Memory]:
        return iter(self.memories)

    def add_memory(self, memory: Memory) -> bool:
        """Append a memory and evict until the budget holds. Returns False if still over budget."""
        self.memories.append(memory)
        return self.enforce_budget()

    def total_tokens(self) -> int:
        return sum(self.count_tokens(m.content) for m in self.memories)

    def enforce_budget(self) -> bool:
        # running total tracks every removal
        total = self.total_tokens()
        while total > self.max_tokens and len(self.memories) > 1:
            evicted = self.memories.popleft()
            total -= self.count_tokens(evicted.content)
            logger.debug("Evicted oldest memory (%d tokens left of %d)", total, self.max_tokens)

        if total > self.max_tokens:
            msg = (
                f"Single memory of {total} tokens exceeds the working memory budget "
                f"of {self.max_tokens}; keeping it as the only entry"
            )
            logger.warning(msg)
            warnings.warn(msg, BudgetExhaustedWarning, stacklevel=3)
            return False
        return True

    def clear(self):
        self.memories.clear()

    def get_serialized(self) -> str:
        """Body of the preamble's user message: fixed intro + JSON of the queue."""
        state = {
            "about": BRAIN_ABOUT,
            "memories": [m.to_dict() for m in self.memories],
        }
        return BRAIN_INTRO + json.dumps(state)

    def build_preamble(self) -> list[Memory]:
        """System prompt, serialized brain, scripted acknowledgement."""
        brain_json = self.get_serialized()
        logger.debug("State of brain: %s", brain_json)
        return [
            Memory(Role.SYSTEM, self.template.system_prompt),
            Memory(Role.USER, brain_json),
            Memory(Role.ASSISTANT, ACKNOWLEDGEMENT),
        ]


def build_brainless_preamble(template) -> list[Memory]:
    """Preamble used when no working memory is in play: just the system prompt."""
    return [Memory(Role.SYSTEM, template.system_prompt)]
