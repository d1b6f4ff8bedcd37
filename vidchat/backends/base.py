"""
Base provider adapter.
Both vendors implement this interface so the orchestrator can treat them
uniformly: shared Message history in, normalized text out, typed errors on
failure. Vendor differences live in message translation and payload shape.
"""

from __future__ import annotations

import abc
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from vidchat.errors import (
    ApiError,
    ProviderUnavailableError,
    ResponseShapeError,
    TransportError,
)
from vidchat.media import MediaBundle
from vidchat.models import ASSISTANT, SYSTEM, ChatResult, Message, StreamChunk
from vidchat.stream import StreamDecoder

logger = logging.getLogger(__name__)


@dataclass
class ChatOptions:
    """Per-call options. Unset sampling values fall back to the adapter's defaults."""
    stream: bool = True
    model: str = ""
    on_delta: Callable[[StreamChunk], Any] | None = None
    system_prompt: str = ""       # replaces the conversation's system message for this call
    system_addendum: str = ""     # appended to the effective system prompt
    reasoning: bool = False
    temperature: float | None = None
    top_p: float | None = None


def extract_message_text(data: dict) -> str | None:
    """choices[0].message.content as text; None if the shape is wrong."""
    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type", "text") == "text"
        ]
        return "".join(texts) if texts else None
    return None


class ProviderAdapter(abc.ABC):
    """
    Abstract base for the two chat providers.

    Holds the adapter's own native chat history (self.history). The
    orchestrator pushes translated history into it whenever this adapter
    becomes active; chat() records each successful exchange.
    """

    provider: str = ""
    supports_media: bool = False
    default_model: str = ""
    video_system_prompt: str = ""   # replaces the session prompt on video turns, if set

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120,
        relay_url: str = "",
        buffered: bool = False,
        system_prompt: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        wire=None,
    ):
        self.name = name
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.model = model or self.default_model
        self.timeout = timeout
        self.relay_url = relay_url
        self.buffered = buffered
        self.system_prompt = system_prompt
        self.transport = transport
        self.wire = wire
        self.history: list[dict] = []
        self.initialized = False

    @property
    def endpoint(self) -> str:
        return f"{self.url}/chat/completions"

    def initialize(self) -> bool:
        """Validate credentials and model. Returns False instead of raising."""
        if not self.api_key:
            logger.error("Provider '%s' init failed: no API key configured", self.name)
            self.initialized = False
            return False
        if not self.model:
            logger.error("Provider '%s' init failed: no model configured", self.name)
            self.initialized = False
            return False
        self.initialized = True
        logger.info(
            "Provider '%s' ready: model=%s via %s",
            self.name, self.model, "relay" if self.relay_url else "direct",
        )
        return True

    # ------------------------------------------------------------------
    # Vendor shape
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def to_native(self, message: Message) -> dict:
        """Translate a shared Message into this vendor's message dict."""
        ...

    @abc.abstractmethod
    def from_native(self, payload: dict) -> Message:
        """Translate a vendor message dict back into a shared Message."""
        ...

    @abc.abstractmethod
    def build_payload(
        self, messages: list[dict], model: str, stream: bool, options: ChatOptions
    ) -> dict:
        """Request body for the chat-completions endpoint."""
        ...

    def stream_required(self, model: str) -> bool:
        """Whether the vendor only serves this model over a stream."""
        return False

    def prepare_user_message(self, bundle: MediaBundle) -> Message:
        return Message.from_bundle(bundle)

    def extract_text(self, data: dict) -> str:
        text = extract_message_text(data)
        if text is None:
            raise ResponseShapeError(
                f"No message content in response: {json.dumps(data)[:200]}",
                provider=self.provider,
            )
        return text

    def extract_reasoning(self, data: dict) -> str:
        return ""

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def sync_history(self, messages: list[Message]):
        """Replace the native history with a translation of shared messages."""
        self.history = [self.to_native(m) for m in messages if m.role != SYSTEM]
        logger.debug("Provider '%s' history synced (%d messages)", self.name, len(self.history))

    def export_history(self) -> list[Message]:
        return [self.from_native(m) for m in self.history]

    def clear_history(self):
        self.history = []

    def build_messages(
        self, context: list[Message], user_message: Message, options: ChatOptions
    ) -> list[dict]:
        """System prompt, then prior turns, then the new user message."""
        system = options.system_prompt
        if not system:
            system = next((m.text for m in context if m.role == SYSTEM), "") or self.system_prompt
        if options.system_addendum:
            system = f"{system}\n\n{options.system_addendum}" if system else options.system_addendum

        native = []
        if system:
            native.append(self.to_native(Message(role=SYSTEM, content=system)))
        native.extend(self.to_native(m) for m in context if m.role != SYSTEM)
        native.append(self.to_native(user_message))
        return native

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: list[Message] | None,
        prompt: str | MediaBundle,
        options: ChatOptions | None = None,
    ) -> ChatResult:
        """
        Send one user turn.
        messages is the shared conversation so far; None means use this
        adapter's own history.
        """
        if not self.initialized:
            raise ProviderUnavailableError(self.provider, "not initialized")

        options = options or ChatOptions()
        bundle = MediaBundle.coerce(prompt)
        user_message = self.prepare_user_message(bundle)
        context = self.export_history() if messages is None else list(messages)

        model = options.model or self.model
        stream = options.stream or self.stream_required(model)
        native_messages = self.build_messages(context, user_message, options)
        payload = self.build_payload(native_messages, model, stream, options)

        if self.wire:
            self.wire.log(
                "request",
                content=bundle.text,
                provider=self.provider,
                model=model,
                stream=stream,
                media=len(bundle.frames) + len(bundle.images) + (1 if bundle.video else 0),
                messages=len(native_messages),
            )

        t0 = time.monotonic()
        if stream:
            text, reasoning, raw = await self._stream(payload, options.on_delta)
        else:
            text, reasoning, raw = await self._complete(payload)
        latency = (time.monotonic() - t0) * 1000

        assistant_message = Message(
            role=ASSISTANT, content=text, provider=self.provider, model=model
        )
        self.history = [self.to_native(m) for m in context if m.role != SYSTEM]
        self.history.append(self.to_native(user_message))
        self.history.append(self.to_native(assistant_message))

        logger.info(
            "Provider '%s' answered in %.0fms (%d chars, stream=%s)",
            self.name, latency, len(text), stream,
        )
        if self.wire:
            self.wire.log(
                "response",
                content=text,
                provider=self.provider,
                model=model,
                latency_ms=round(latency, 1),
            )

        return ChatResult(
            text=text,
            raw=raw,
            provider=self.provider,
            model=model,
            latency_ms=latency,
            reasoning=reasoning,
            user_message=user_message,
            assistant_message=assistant_message,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _request_args(self, payload: dict, stream: bool) -> tuple[str, dict, dict]:
        """(url, json body, headers), wrapped in the relay envelope when a relay is set."""
        if self.relay_url:
            envelope = {
                "url": self.endpoint,
                "data": payload,
                "headers": self._headers(),
                "stream": stream,
            }
            return self.relay_url, envelope, {"Content-Type": "application/json"}
        return self.endpoint, payload, self._headers()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _transport_error(self, exc: Exception) -> TransportError:
        if isinstance(exc, httpx.TimeoutException):
            logger.warning("Provider '%s' timed out after %ss", self.name, self.timeout)
            return TransportError(f"Timeout after {self.timeout}s", provider=self.provider)
        logger.warning("Provider '%s' transport failure: %s", self.name, exc)
        return TransportError(f"{type(exc).__name__}: {exc}", provider=self.provider)

    def _api_error(self, status: int, body: str) -> ApiError:
        logger.warning("Provider '%s' returned HTTP %d: %.200s", self.name, status, body)
        return ApiError(status, body, provider=self.provider)

    async def _complete(self, payload: dict) -> tuple[str, str, dict]:
        """Non-streaming call."""
        url, body, headers = self._request_args(payload, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e

        if resp.status_code >= 400:
            raise self._api_error(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ResponseShapeError(
                f"Response is not JSON: {resp.text[:200]}", provider=self.provider
            ) from e
        return self.extract_text(data), self.extract_reasoning(data), data

    async def _stream(
        self, payload: dict, on_delta: Callable[[StreamChunk], Any] | None
    ) -> tuple[str, str, dict]:
        """
        Streaming call. With buffered=True the whole SSE body is read first and
        decoded in one pass; otherwise chunks are decoded as they arrive.
        """
        url, body, headers = self._request_args(payload, stream=True)
        decoder = StreamDecoder()

        def emit(chunk: StreamChunk, status: int):
            if chunk.error:
                raise self._api_error(status, chunk.error)
            if on_delta:
                on_delta(chunk)

        try:
            async with self._client() as client:
                if self.buffered:
                    resp = await client.post(url, json=body, headers=headers)
                    if resp.status_code >= 400:
                        raise self._api_error(resp.status_code, resp.text)
                    for chunk in decoder.decode_text(resp.content):
                        emit(chunk, resp.status_code)
                else:
                    async with client.stream("POST", url, json=body, headers=headers) as resp:
                        if resp.status_code >= 400:
                            error_body = await resp.aread()
                            raise self._api_error(
                                resp.status_code, error_body.decode("utf-8", errors="replace")
                            )
                        async for chunk in decoder.decode(resp.aiter_bytes()):
                            emit(chunk, resp.status_code)
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e

        if not decoder.cumulative_text and not decoder.reasoning_text:
            raise ResponseShapeError(
                f"Stream carried no text ({decoder.frames_seen} frames, "
                f"{decoder.frames_skipped} malformed)",
                provider=self.provider,
            )
        raw = {
            "frames": decoder.frames_seen,
            "skipped": decoder.frames_skipped,
            "done": decoder.done,
        }
        return decoder.cumulative_text, decoder.reasoning_text, raw

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r} model={self.model!r}>"
