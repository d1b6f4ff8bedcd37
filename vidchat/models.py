"""
Data models for conversations.
These define the shape of data flowing between the orchestrator and the
provider adapters. Each adapter translates to and from its own wire shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from vidchat.media import MediaBundle, to_source_ref

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
ROLES = (SYSTEM, USER, ASSISTANT)

PRIMARY = "primary"
SECONDARY = "secondary"
PROVIDERS = (PRIMARY, SECONDARY)


def alternate(provider: str) -> str:
    """The other provider."""
    if provider == PRIMARY:
        return SECONDARY
    if provider == SECONDARY:
        return PRIMARY
    raise ValueError(f"Unknown provider: {provider!r}")


@dataclass
class Part:
    """
    One typed piece of message content.
    kind is "text", "image" or "video"; media parts carry source refs
    (URL or data URL). A video part holds one source or a list of frames.
    """
    kind: str
    text: str = ""
    sources: list[str] = field(default_factory=list)

    @classmethod
    def text_part(cls, text: str) -> "Part":
        return cls(kind="text", text=text)

    @classmethod
    def image_part(cls, source: str) -> "Part":
        return cls(kind="image", sources=[to_source_ref(source)])

    @classmethod
    def video_part(cls, sources: str | list[str]) -> "Part":
        if isinstance(sources, str):
            return cls(kind="video", sources=[to_source_ref(sources, "video/mp4")])
        return cls(kind="video", sources=[to_source_ref(s) for s in sources])

    @property
    def is_media(self) -> bool:
        return self.kind != "text"


@dataclass
class Message:
    """A single message in a conversation."""
    role: str = USER
    content: str | list[Part] = ""
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    provider: str = ""       # which provider produced it (assistant messages)
    model: str = ""

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role!r}")

    @property
    def parts(self) -> list[Part]:
        if isinstance(self.content, str):
            return [Part.text_part(self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """All text parts joined; media is skipped."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if p.kind == "text" and p.text)

    @property
    def has_media(self) -> bool:
        return any(p.is_media for p in self.parts)

    def text_only(self) -> "Message":
        return Message(
            role=self.role,
            content=self.text,
            id=self.id,
            timestamp=self.timestamp,
            provider=self.provider,
            model=self.model,
        )

    @classmethod
    def from_bundle(cls, bundle: MediaBundle, role: str = USER) -> "Message":
        """Media parts first, then the text part."""
        if not bundle.has_media:
            return cls(role=role, content=bundle.text)
        parts: list[Part] = []
        if bundle.video:
            parts.append(Part.video_part(bundle.video))
        if bundle.frames:
            parts.append(Part.video_part(bundle.frames))
        parts.extend(Part.image_part(img) for img in bundle.images)
        if bundle.text.strip():
            parts.append(Part.text_part(bundle.text))
        return cls(role=role, content=parts)


@dataclass
class StreamChunk:
    """One unit emitted while a response streams in."""
    delta_text: str = ""
    cumulative_text: str = ""
    done: bool = False
    error: str | None = None
    reasoning_delta: str = ""


@dataclass
class ChatResult:
    """Normalized result of one adapter call."""
    text: str
    raw: Any = None
    provider: str = ""
    model: str = ""
    latency_ms: float = 0.0
    reasoning: str = ""
    user_message: Message | None = None
    assistant_message: Message | None = None


@dataclass
class TurnResult:
    """What the orchestrator hands back for a completed turn."""
    text: str
    provider: str
    round_index: int
    failed_over: bool = False
    degraded: bool = False
    reasoning: str = ""
    latency_ms: float = 0.0
