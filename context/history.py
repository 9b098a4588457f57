"""
Message Log — the ordered, append-only conversation shown to the user.

The display layer reads it; the turn controller is the only writer.
Entries are frozen Message models, so nothing can change after append.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterator, Optional

from models.schemas import Message, MessageRole

logger = structlog.get_logger()


class MessageLog:

    def __init__(self):
        self._messages: list[Message] = []

    def append(self, message: Message) -> Message:
        self._messages.append(message)
        logger.debug("message_appended", role=message.role.value, is_error=message.is_error)
        return message

    def add_user(self, content: str) -> Message:
        return self.append(Message(role=MessageRole.USER, content=content))

    def add_assistant(self, content: str, is_error: bool = False) -> Message:
        return self.append(Message(role=MessageRole.ASSISTANT, content=content, is_error=is_error))

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def to_list(self) -> list[dict[str, Any]]:
        return [m.model_dump(mode="json") for m in self._messages]

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]
