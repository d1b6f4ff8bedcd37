"""
HistoryStore: the single ordered log of a conversation.

Append-only. The only in-place mutation allowed is growth of the assistant
message that is currently streaming; once closed it is frozen like the rest.
The system message, if any, is always first and there is at most one.
"""

from __future__ import annotations

import logging

from vidchat.models import ASSISTANT, SYSTEM, Message

logger = logging.getLogger(__name__)


class HistoryStore:

    def __init__(self, system_prompt: str = ""):
        self._messages: list[Message] = []
        self._open: Message | None = None
        if system_prompt:
            self.set_system(system_prompt)

    def __len__(self) -> int:
        """Number of non-system messages."""
        return sum(1 for m in self._messages if m.role != SYSTEM)

    @property
    def system(self) -> Message | None:
        if self._messages and self._messages[0].role == SYSTEM:
            return self._messages[0]
        return None

    @property
    def streaming(self) -> Message | None:
        """The assistant message still growing, if any."""
        return self._open

    def set_system(self, text: str) -> Message:
        return self.append(Message(role=SYSTEM, content=text))

    def append(self, message: Message) -> Message:
        if self._open is not None:
            raise RuntimeError("Cannot append while an assistant message is streaming")
        if message.role == SYSTEM:
            # Later system messages replace the active one
            if self.system is not None:
                self._messages[0] = message
            else:
                self._messages.insert(0, message)
            return message
        self._messages.append(message)
        return message

    def snapshot(self, include_system: bool = True) -> list[Message]:
        return [
            m for m in self._messages
            if include_system or m.role != SYSTEM
        ]

    def clear(self, keep_system: bool = True):
        system = self.system if keep_system else None
        self._messages = [system] if system else []
        self._open = None

    # --- streaming assistant message ------------------------------------

    def open_assistant(self, provider: str = "", model: str = "") -> Message:
        if self._open is not None:
            raise RuntimeError("An assistant message is already streaming")
        message = Message(role=ASSISTANT, content="", provider=provider, model=model)
        self._messages.append(message)
        self._open = message
        return message

    def grow(self, delta: str):
        if self._open is None:
            raise RuntimeError("No assistant message is streaming")
        self._open.content = f"{self._open.content}{delta}"

    def close(self, text: str | None = None) -> Message:
        """Freeze the streaming message, optionally with the authoritative final text."""
        if self._open is None:
            raise RuntimeError("No assistant message is streaming")
        message = self._open
        if text is not None:
            message.content = text
        self._open = None
        return message

    def discard_open(self) -> Message | None:
        """Drop a streaming message that will not complete."""
        message = self._open
        if message is None:
            return None
        self._open = None
        self._messages = [m for m in self._messages if m is not message]
        logger.debug("Discarded partial assistant message (%d chars)", len(message.text))
        return message
