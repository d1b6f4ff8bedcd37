"""
Tests for the provider adapters.
Run with: pytest tests/test_backends.py
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from vidchat.backends import ADAPTERS, ChatOptions, PrimaryMultimodalAdapter, SecondaryTextAdapter
from vidchat.backends.primary import DEFAULT_VIDEO_PROMPT
from vidchat.errors import (
    ApiError,
    InsufficientFramesError,
    ProviderUnavailableError,
    ResponseShapeError,
    TransportError,
)
from vidchat.media import MediaBundle
from vidchat.models import ASSISTANT, PRIMARY, SECONDARY, USER, Message

PRIMARY_URL = "https://dashscope.test/compatible-mode/v1"
SECONDARY_URL = "https://ark.test/api/v3"


def _sse(*pieces) -> str:
    frames = [
        "data: " + json.dumps({"choices": [{"delta": {"content": p}}]}) + "\n\n"
        for p in pieces
    ]
    return "".join(frames) + "data: [DONE]\n\n"


def _completion(text: str, **message_extra) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text, **message_extra}}]}


def _sse_response(*pieces) -> httpx.Response:
    return httpx.Response(200, text=_sse(*pieces), headers={"content-type": "text/event-stream"})


def _primary(handler, model="qwen-vl-max", **kwargs) -> PrimaryMultimodalAdapter:
    adapter = PrimaryMultimodalAdapter(
        name="dashscope",
        url=PRIMARY_URL,
        api_key="pk",
        model=model,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    assert adapter.initialize()
    return adapter


def _secondary(handler, **kwargs) -> SecondaryTextAdapter:
    adapter = SecondaryTextAdapter(
        name="ark",
        url=SECONDARY_URL,
        api_key="sk",
        model="doubao-test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    assert adapter.initialize()
    return adapter


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, i: int = -1) -> dict:
        return json.loads(self.requests[i].content)


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def test_adapter_map():
    assert ADAPTERS[PRIMARY] is PrimaryMultimodalAdapter
    assert ADAPTERS[SECONDARY] is SecondaryTextAdapter
    assert PrimaryMultimodalAdapter.supports_media
    assert not SecondaryTextAdapter.supports_media


def test_initialize_needs_key_and_model():
    assert not PrimaryMultimodalAdapter(name="p", url=PRIMARY_URL).initialize()
    assert not SecondaryTextAdapter(name="s", url=SECONDARY_URL, api_key="sk").initialize()
    ready = PrimaryMultimodalAdapter(name="p", url=PRIMARY_URL, api_key="pk")
    assert ready.initialize()
    assert ready.model == "qwen-omni-turbo"


@pytest.mark.asyncio
async def test_chat_before_initialize_rejected():
    adapter = PrimaryMultimodalAdapter(name="p", url=PRIMARY_URL)
    with pytest.raises(ProviderUnavailableError):
        await adapter.chat([], "hi")


# ---------------------------------------------------------------------------
# Primary adapter
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_primary_non_stream_completion():
    rec = Recorder(httpx.Response(200, json=_completion("a cat")))
    adapter = _primary(rec)

    result = await adapter.chat([], "what is it?", ChatOptions(stream=False, system_prompt="sys"))

    assert result.text == "a cat"
    assert result.provider == PRIMARY
    req = rec.requests[0]
    assert str(req.url) == f"{PRIMARY_URL}/chat/completions"
    assert req.headers["authorization"] == "Bearer pk"
    body = rec.body()
    assert body["stream"] is False
    assert body["temperature"] == 0.7
    assert body["top_p"] == 0.8
    assert "modalities" not in body
    assert body["messages"][0] == {"role": "system", "content": [{"type": "text", "text": "sys"}]}
    assert body["messages"][1]["content"] == [{"type": "text", "text": "what is it?"}]
    assert len(adapter.history) == 2


@pytest.mark.asyncio
async def test_omni_model_forces_stream():
    rec = Recorder(_sse_response("He", "llo"))
    adapter = _primary(rec, model="qwen-omni-turbo")
    seen = []

    result = await adapter.chat([], "hi", ChatOptions(stream=False, on_delta=seen.append))

    body = rec.body()
    assert body["stream"] is True
    assert body["modalities"] == ["text"]
    assert result.text == "Hello"
    assert [c.delta_text for c in seen if c.delta_text] == ["He", "llo"]
    assert seen[-1].done


@pytest.mark.asyncio
async def test_buffered_and_streamed_agree():
    pieces = ("Frames ", "show ", "a ", "kitchen.")
    streamed_deltas, buffered_deltas = [], []

    streamed = await _primary(Recorder(_sse_response(*pieces))).chat(
        [], "q", ChatOptions(on_delta=streamed_deltas.append)
    )
    buffered = await _primary(Recorder(_sse_response(*pieces)), buffered=True).chat(
        [], "q", ChatOptions(on_delta=buffered_deltas.append)
    )

    assert streamed.text == buffered.text == "Frames show a kitchen."
    assert [c.delta_text for c in streamed_deltas] == [c.delta_text for c in buffered_deltas]


@pytest.mark.asyncio
async def test_primary_media_translation():
    rec = Recorder(httpx.Response(200, json=_completion("ok")))
    adapter = _primary(rec)
    bundle = MediaBundle(text="compare", images=["aW1n"], video="https://cdn.test/clip.mp4")

    await adapter.chat([], bundle, ChatOptions(stream=False))

    content = rec.body()["messages"][-1]["content"]
    assert content[0] == {"type": "video_url", "video_url": {"url": "https://cdn.test/clip.mp4"}}
    assert content[1] == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,aW1n"}}
    assert content[2] == {"type": "text", "text": "compare"}

    # Native history translates back to typed parts
    restored = adapter.export_history()[0]
    assert [p.kind for p in restored.parts] == ["video", "image", "text"]


@pytest.mark.asyncio
async def test_primary_frames_minimum():
    rec = Recorder(_sse_response("ok"))
    adapter = _primary(rec)

    with pytest.raises(InsufficientFramesError) as exc:
        await adapter.chat([], MediaBundle(text="what happens?", frames=["a", "b", "c"]))
    assert exc.value.count == 3
    assert rec.requests == []

    result = await adapter.chat(
        [],
        MediaBundle(text="what happens?", frames=["a", "b", "c", "d"]),
        ChatOptions(system_prompt=adapter.video_system_prompt, system_addendum="Current video time: 01:05"),
    )
    assert result.text == "ok"
    body = rec.body()
    system = body["messages"][0]["content"][0]["text"]
    assert system == f"{DEFAULT_VIDEO_PROMPT}\n\nCurrent video time: 01:05"
    video = body["messages"][-1]["content"][0]
    assert video["type"] == "video"
    assert len(video["video"]) == 4


def test_video_system_prompt_per_vendor():
    assert PrimaryMultimodalAdapter.video_system_prompt == DEFAULT_VIDEO_PROMPT
    assert SecondaryTextAdapter.video_system_prompt == ""


@pytest.mark.asyncio
async def test_chat_without_messages_uses_own_history():
    rec = Recorder(httpx.Response(200, json=_completion("first answer")))
    adapter = _primary(rec)

    await adapter.chat(None, "first", ChatOptions(stream=False))
    await adapter.chat(None, "second", ChatOptions(stream=False))

    texts = [m["content"][0]["text"] for m in rec.body()["messages"] if m["role"] != "system"]
    assert texts == ["first", "first answer", "second"]


# ---------------------------------------------------------------------------
# Secondary adapter
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_secondary_payload_and_media_drop():
    rec = Recorder(httpx.Response(200, json=_completion("text answer")))
    adapter = _secondary(rec)

    bundle = MediaBundle(text="and then?", frames=["a", "b", "c", "d"])
    result = await adapter.chat([], bundle, ChatOptions(stream=False))

    assert result.text == "text answer"
    assert result.user_message.content == "and then?"
    body = rec.body()
    assert body["messages"][-1] == {"role": "user", "content": "and then?"}
    assert body["parameters"] == {
        "temperature": 0.7,
        "top_p": 0.95,
        "top_k": 50,
        "response_mode": "final_result",
    }


@pytest.mark.asyncio
async def test_secondary_reasoning_mode():
    rec = Recorder(httpx.Response(200, json=_completion("42", reasoning_content="because")))
    adapter = _secondary(rec)

    result = await adapter.chat([], "why?", ChatOptions(stream=False, reasoning=True))

    assert rec.body()["parameters"]["response_mode"] == "all"
    assert result.text == "42"
    assert result.reasoning == "because"


@pytest.mark.asyncio
async def test_secondary_final_result_fallback():
    rec = Recorder(httpx.Response(200, json={"final_result": "done", "reasoning": ["a", "b"]}))
    result = await _secondary(rec).chat([], "q", ChatOptions(stream=False))
    assert result.text == "done"
    assert result.reasoning == "a\nb"


def test_secondary_history_sync_flattens_media():
    adapter = SecondaryTextAdapter(name="ark", url=SECONDARY_URL, api_key="sk", model="m")
    history = [
        Message(role="system", content="sys"),
        Message.from_bundle(MediaBundle(text="describe", frames=["a", "b", "c", "d"])),
        Message(role=ASSISTANT, content="a beach"),
    ]
    adapter.sync_history(history)
    assert adapter.history == [
        {"role": USER, "content": "describe"},
        {"role": ASSISTANT, "content": "a beach"},
    ]


# ---------------------------------------------------------------------------
# Transport and errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_relay_envelope():
    rec = Recorder(_sse_response("via relay"))
    adapter = _primary(rec, relay_url="http://relay.local:8767/proxy")

    result = await adapter.chat([], "hi", ChatOptions(stream=True))

    assert result.text == "via relay"
    req = rec.requests[0]
    assert str(req.url) == "http://relay.local:8767/proxy"
    assert "authorization" not in req.headers
    envelope = rec.body()
    assert envelope["url"] == f"{PRIMARY_URL}/chat/completions"
    assert envelope["stream"] is True
    assert envelope["headers"]["Authorization"] == "Bearer pk"
    assert envelope["data"]["model"] == "qwen-vl-max"


@pytest.mark.asyncio
async def test_http_error_maps_to_api_error():
    rec = Recorder(httpx.Response(429, text="x" * 800))
    with pytest.raises(ApiError) as exc:
        await _primary(rec).chat([], "hi", ChatOptions(stream=False))
    assert exc.value.status == 429
    assert exc.value.provider == PRIMARY
    assert len(exc.value.body) == 800
    assert str(exc.value) == "HTTP 429: " + "x" * 500


@pytest.mark.asyncio
async def test_http_error_on_stream():
    rec = Recorder(httpx.Response(503, text="overloaded"))
    with pytest.raises(ApiError) as exc:
        await _secondary(rec).chat([], "hi", ChatOptions(stream=True))
    assert exc.value.status == 503
    assert exc.value.body == "overloaded"


@pytest.mark.asyncio
async def test_connection_failure_maps_to_transport_error():
    rec = Recorder(httpx.ConnectError("connection refused"))
    with pytest.raises(TransportError) as exc:
        await _primary(rec).chat([], "hi", ChatOptions(stream=True))
    assert "ConnectError" in str(exc.value)


@pytest.mark.asyncio
async def test_timeout_maps_to_transport_error():
    """Timeouts surface as TransportError, not httpx exceptions."""
    adapter = PrimaryMultimodalAdapter(name="p", url=PRIMARY_URL, api_key="pk", model="qwen-vl-max", timeout=5)
    adapter.initialize()

    mock_client = AsyncMock()
    mock_client.post.side_effect = httpx.ReadTimeout("slow")

    with patch("vidchat.backends.base.httpx.AsyncClient") as MockClient:
        MockClient.return_value.__aenter__ = AsyncMock(return_value=mock_client)
        MockClient.return_value.__aexit__ = AsyncMock(return_value=False)
        with pytest.raises(TransportError) as exc:
            await adapter.chat([], "hi", ChatOptions(stream=False))

    assert str(exc.value) == "Timeout after 5s"


@pytest.mark.asyncio
async def test_bad_response_shapes():
    with pytest.raises(ResponseShapeError):
        await _primary(Recorder(httpx.Response(200, text="<html>"))).chat(
            [], "hi", ChatOptions(stream=False)
        )
    with pytest.raises(ResponseShapeError):
        await _primary(Recorder(httpx.Response(200, json={"id": "x"}))).chat(
            [], "hi", ChatOptions(stream=False)
        )


@pytest.mark.asyncio
async def test_empty_stream_is_shape_error():
    rec = Recorder(httpx.Response(200, text="data: [DONE]\n\n"))
    with pytest.raises(ResponseShapeError):
        await _primary(rec).chat([], "hi", ChatOptions(stream=True))


@pytest.mark.asyncio
async def test_error_frame_mid_stream():
    body = _sse("partial").replace("data: [DONE]", 'data: {"error": {"message": "quota exceeded"}}')
    rec = Recorder(httpx.Response(200, text=body))
    adapter = _secondary(rec)

    with pytest.raises(ApiError) as exc:
        await adapter.chat([], "hi", ChatOptions(stream=True))
    assert "quota exceeded" in str(exc.value)
    # Failed exchanges are not recorded
    assert adapter.history == []
