"""
Secondary text provider — Volcengine Ark chat completions.

Text only. Media never reaches the wire: the orchestrator degrades media turns
before calling, and any stray media handed in directly is dropped here.
Reasoning mode asks Ark for the full response (reasoning + final answer).
"""

from __future__ import annotations

import logging

from vidchat.backends.base import ChatOptions, ProviderAdapter
from vidchat.media import MediaBundle
from vidchat.models import SECONDARY, USER, Message

logger = logging.getLogger(__name__)


class SecondaryTextAdapter(ProviderAdapter):
    """Ark chat completions, plain string message content."""

    provider = SECONDARY
    supports_media = False

    def __init__(self, *args, reasoning: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.reasoning = reasoning

    def prepare_user_message(self, bundle: MediaBundle) -> Message:
        if bundle.has_media:
            logger.warning(
                "Provider '%s' is text-only; dropping %d attached media item(s)",
                self.name,
                len(bundle.frames) + len(bundle.images) + (1 if bundle.video else 0),
            )
        return Message(role=USER, content=bundle.text)

    def to_native(self, message: Message) -> dict:
        # Media parts are lost here; text parts always survive
        return {"role": message.role, "content": message.text}

    def from_native(self, payload: dict) -> Message:
        content = payload.get("content", "")
        if isinstance(content, list):
            content = "\n".join(
                item.get("text", "")
                for item in content
                if isinstance(item, dict) and item.get("text")
            )
        return Message(role=payload["role"], content=content or "")

    def build_payload(
        self, messages: list[dict], model: str, stream: bool, options: ChatOptions
    ) -> dict:
        reasoning = options.reasoning or self.reasoning
        return {
            "model": model,
            "messages": messages,
            "stream": stream,
            "parameters": {
                "temperature": options.temperature if options.temperature is not None else 0.7,
                "top_p": options.top_p if options.top_p is not None else 0.95,
                "top_k": 50,
                "response_mode": "all" if reasoning else "final_result",
            },
        }

    def extract_text(self, data: dict) -> str:
        # Some Ark deployments answer reasoning-mode requests with a bare final_result
        if isinstance(data, dict) and isinstance(data.get("final_result"), str):
            return data["final_result"]
        return super().extract_text(data)

    def extract_reasoning(self, data: dict) -> str:
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            reasoning = (choices[0].get("message") or {}).get("reasoning_content")
            if isinstance(reasoning, str):
                return reasoning
        reasoning = data.get("reasoning")
        if isinstance(reasoning, list):
            return "\n".join(str(step) for step in reasoning)
        return reasoning if isinstance(reasoning, str) else ""
