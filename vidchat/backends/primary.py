"""
Primary multimodal provider — DashScope (Qwen) in OpenAI-compatible mode.

Accepts text, images, a video URL, or a list of key frames standing in for a
video. The omni model family only answers over SSE, so streaming is forced
for it no matter what the caller asked for.
"""

from __future__ import annotations

import logging

from vidchat.backends.base import ChatOptions, ProviderAdapter
from vidchat.media import MediaBundle, check_frames
from vidchat.models import PRIMARY, Message, Part

logger = logging.getLogger(__name__)

OMNI_PREFIX = "qwen-omni"

DEFAULT_VIDEO_PROMPT = (
    "You are a video analysis assistant. Analyse the content of the video "
    "and answer the user's questions about it."
)


def is_omni_model(model: str) -> bool:
    return model.startswith(OMNI_PREFIX)


def _is_video_source(source: str) -> bool:
    """A single video source (URL or video data URL) rather than an image frame."""
    return not source.startswith("data:image")


class PrimaryMultimodalAdapter(ProviderAdapter):
    """DashScope compatible-mode chat completions."""

    provider = PRIMARY
    supports_media = True
    default_model = "qwen-omni-turbo"
    video_system_prompt = DEFAULT_VIDEO_PROMPT

    def stream_required(self, model: str) -> bool:
        return is_omni_model(model)

    def prepare_user_message(self, bundle: MediaBundle) -> Message:
        if bundle.frames:
            check_frames(bundle.frames)
        return super().prepare_user_message(bundle)

    def to_native(self, message: Message) -> dict:
        content = []
        for part in message.parts:
            if part.kind == "text":
                content.append({"type": "text", "text": part.text})
            elif part.kind == "image":
                content.append({"type": "image_url", "image_url": {"url": part.sources[0]}})
            elif part.kind == "video":
                if len(part.sources) == 1 and _is_video_source(part.sources[0]):
                    content.append({"type": "video_url", "video_url": {"url": part.sources[0]}})
                else:
                    content.append({"type": "video", "video": list(part.sources)})
        return {"role": message.role, "content": content}

    def from_native(self, payload: dict) -> Message:
        content = payload.get("content", "")
        if isinstance(content, str):
            return Message(role=payload["role"], content=content)

        parts = []
        for item in content:
            kind = item.get("type", "text")
            if kind == "text":
                parts.append(Part.text_part(item.get("text", "")))
            elif kind == "image_url":
                image = item.get("image_url")
                url = image.get("url", "") if isinstance(image, dict) else image
                parts.append(Part(kind="image", sources=[url]))
            elif kind == "video":
                video = item.get("video")
                sources = video if isinstance(video, list) else [video]
                parts.append(Part(kind="video", sources=list(sources)))
            elif kind == "video_url":
                parts.append(Part(kind="video", sources=[item["video_url"]["url"]]))
            else:
                logger.debug("Dropping unsupported content part type '%s'", kind)
        return Message(role=payload["role"], content=parts)

    def build_payload(
        self, messages: list[dict], model: str, stream: bool, options: ChatOptions
    ) -> dict:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": options.temperature if options.temperature is not None else 0.7,
            "top_p": options.top_p if options.top_p is not None else 0.8,
            "stream": stream,
        }
        if is_omni_model(model):
            # Omni models currently only produce text output over this API
            payload["modalities"] = ["text"]
        return payload
