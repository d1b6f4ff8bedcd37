"""
SSE stream decoding.

Both vendors frame streamed completions as

    data: {"choices":[{"delta":{"content":"..."}}]}\n\n
    ...
    data: [DONE]\n\n

but network reads do not line up with frame boundaries, so the decoder keeps
a pending buffer, processes every complete frame, and holds back the tail.
The same decoder handles the buffered case (whole body already in memory) in
one pass, so both transports produce the same cumulative text.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterator, Callable

from vidchat.models import StreamChunk

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
FRAME_SEPARATOR = "\n\n"


def extract_delta_text(payload: dict) -> str:
    """
    Pull the incremental text out of a chat-completion chunk.
    delta.content is either a string or a list of {type: "text", text} parts.
    """
    choices = payload.get("choices") or []
    if not choices:
        return ""
    delta = (choices[0] or {}).get("delta") or {}
    content = delta.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type", "text") == "text"
        )
    return ""


def extract_reasoning_text(payload: dict) -> str:
    choices = payload.get("choices") or []
    if not choices:
        return ""
    delta = (choices[0] or {}).get("delta") or {}
    reasoning = delta.get("reasoning_content")
    return reasoning if isinstance(reasoning, str) else ""


def _frame_payload(segment: str) -> str | None:
    """
    Collect the data: field of one SSE frame.
    Multi-line data fields are joined with newlines; comments and other
    fields (event:, id:, retry:) are ignored. None if the frame has no data.
    """
    data_lines = []
    for line in segment.split("\n"):
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
    if not data_lines:
        return None
    return "\n".join(data_lines).strip()


class StreamDecoder:
    """
    Incremental SSE → StreamChunk decoder.

    feed() accepts str or bytes pieces of any size and returns the chunks that
    became complete. finish() flushes whatever is left at end of stream and
    always ends with a done chunk.
    """

    def __init__(
        self,
        extract: Callable[[dict], str] = extract_delta_text,
        extract_reasoning: Callable[[dict], str] | None = extract_reasoning_text,
    ):
        self.extract = extract
        self.extract_reasoning = extract_reasoning
        self.cumulative_text = ""
        self.reasoning_text = ""
        self.done = False
        self.frames_seen = 0
        self.frames_skipped = 0
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: str | bytes) -> list[StreamChunk]:
        if self.done:
            return []
        if isinstance(data, bytes):
            data = self._utf8.decode(data)
        self._buffer = (self._buffer + data).replace("\r\n", "\n")

        chunks: list[StreamChunk] = []
        *complete, self._buffer = self._buffer.split(FRAME_SEPARATOR)
        for segment in complete:
            chunks.extend(self._process(segment))
            if self.done:
                self._buffer = ""
                break
        return chunks

    def finish(self) -> list[StreamChunk]:
        """End of input: parse any trailing frame, then signal done."""
        if self.done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        chunks = []
        if tail.strip():
            chunks.extend(self._process(tail.replace("\r\n", "\n").strip("\n")))
        if not self.done:
            chunks.append(self._done_chunk())
        return chunks

    def decode_text(self, text: str | bytes) -> list[StreamChunk]:
        """Buffered transport: run a whole body through the decoder at once."""
        return self.feed(text) + self.finish()

    async def decode(self, source: AsyncIterator[str | bytes]) -> AsyncIterator[StreamChunk]:
        """Streaming transport: decode pieces as they arrive."""
        async for piece in source:
            for chunk in self.feed(piece):
                yield chunk
            if self.done:
                return
        for chunk in self.finish():
            yield chunk

    # ------------------------------------------------------------------

    def _done_chunk(self) -> StreamChunk:
        self.done = True
        return StreamChunk(delta_text="", cumulative_text=self.cumulative_text, done=True)

    def _process(self, segment: str) -> list[StreamChunk]:
        payload = _frame_payload(segment)
        if payload is None or payload == "":
            return []
        self.frames_seen += 1

        if payload == DONE_SENTINEL:
            return [self._done_chunk()]

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            self.frames_skipped += 1
            logger.warning("Skipping malformed SSE frame (%s): %.120s", e, payload)
            return []
        if not isinstance(data, dict):
            self.frames_skipped += 1
            logger.warning("Skipping non-object SSE frame: %.120s", payload)
            return []

        if data.get("error"):
            err = data["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            return [StreamChunk(cumulative_text=self.cumulative_text, error=message)]

        delta = self.extract(data)
        reasoning = self.extract_reasoning(data) if self.extract_reasoning else ""
        if not delta and not reasoning:
            return []

        self.cumulative_text += delta
        self.reasoning_text += reasoning
        return [StreamChunk(
            delta_text=delta,
            cumulative_text=self.cumulative_text,
            reasoning_delta=reasoning,
        )]
