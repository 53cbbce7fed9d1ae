"""Prompt template handed in by the caller."""

from dataclasses import dataclass, field
from typing import Optional

from memory.short_term import Memory


@dataclass
class ChatTemplate:
    system_prompt: str
    messages: list[Memory] = field(default_factory=list)
    response_format: Optional[dict] = None
    pre_user_message_content: Optional[str] = None
    post_user_message_content: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ChatTemplate":
        return cls(
            system_prompt=data.get("system_prompt", ""),
            messages=[Memory.from_dict(m) for m in data.get("messages") or []],
            response_format=data.get("response_format"),
            pre_user_message_content=data.get("pre_user_message_content"),
            post_user_message_content=data.get("post_user_message_content"),
        )

    def wrap_question(self, question: str) -> str:
        """Apply the template's pre/post content around a user question."""
        if self.pre_user_message_content:
            question = f"{self.pre_user_message_content} {question}"
        if self.post_user_message_content:
            question = f"{question} {self.post_user_message_content}"
        return question
