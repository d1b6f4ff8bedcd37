"""
Tests for HistoryStore and the shared message model.
Run with: pytest tests/test_history.py
"""

from dataclasses import fields

import pytest

from vidchat.history import HistoryStore
from vidchat.media import MediaBundle
from vidchat.models import ASSISTANT, SYSTEM, USER, Message, alternate


class TestHistoryStore:

    def test_append_keeps_order(self):
        store = HistoryStore()
        store.append(Message(role=USER, content="q1"))
        store.append(Message(role=ASSISTANT, content="a1"))
        store.append(Message(role=USER, content="q2"))
        assert [m.text for m in store.snapshot()] == ["q1", "a1", "q2"]
        assert len(store) == 3

    def test_system_message_stays_first_and_is_replaced(self):
        store = HistoryStore("first prompt")
        store.append(Message(role=USER, content="hi"))
        store.set_system("second prompt")

        msgs = store.snapshot()
        assert msgs[0].role == SYSTEM
        assert msgs[0].text == "second prompt"
        assert sum(1 for m in msgs if m.role == SYSTEM) == 1
        assert len(store) == 1
        assert [m.text for m in store.snapshot(include_system=False)] == ["hi"]

    def test_snapshot_is_a_copy(self):
        store = HistoryStore()
        store.append(Message(role=USER, content="hi"))
        snap = store.snapshot()
        snap.clear()
        assert len(store) == 1

    def test_clear_keeps_system(self):
        store = HistoryStore("sys")
        store.append(Message(role=USER, content="hi"))
        store.clear()
        assert len(store) == 0
        assert store.system.text == "sys"

        store.clear(keep_system=False)
        assert store.snapshot() == []


class TestStreamingMessage:

    def test_open_grow_close(self):
        store = HistoryStore()
        store.append(Message(role=USER, content="hi"))
        msg = store.open_assistant(provider="primary", model="m")
        store.grow("Hel")
        store.grow("lo")
        assert store.streaming is msg
        assert store.snapshot()[-1].text == "Hello"

        closed = store.close("Hello!")
        assert closed.text == "Hello!"
        assert store.streaming is None
        assert closed.provider == "primary"

    def test_append_while_streaming_rejected(self):
        store = HistoryStore()
        store.open_assistant()
        with pytest.raises(RuntimeError):
            store.append(Message(role=USER, content="too soon"))
        with pytest.raises(RuntimeError):
            store.open_assistant()

    def test_grow_without_open_rejected(self):
        store = HistoryStore()
        with pytest.raises(RuntimeError):
            store.grow("x")
        with pytest.raises(RuntimeError):
            store.close()

    def test_discard_removes_only_the_open_message(self):
        store = HistoryStore()
        # Two messages with equal content; only the open one may go
        store.append(Message(role=ASSISTANT, content=""))
        store.open_assistant()
        store.grow("partial")
        dropped = store.discard_open()

        assert dropped.text == "partial"
        assert store.streaming is None
        assert len(store) == 1
        assert store.discard_open() is None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_message_from_bundle_media_first():
    bundle = MediaBundle(text="what is this?", images=["aGVsbG8="], frames=["f1", "f2"])
    msg = Message.from_bundle(bundle)

    kinds = [p.kind for p in msg.parts]
    assert kinds == ["video", "image", "text"]
    assert msg.parts[0].sources == ["data:image/jpeg;base64,f1", "data:image/jpeg;base64,f2"]
    assert msg.parts[1].sources == ["data:image/jpeg;base64,aGVsbG8="]
    assert msg.has_media
    assert msg.text == "what is this?"


def test_message_text_only_keeps_identity():
    msg = Message.from_bundle(MediaBundle(text="describe", video="https://example.com/v.mp4"))
    plain = msg.text_only()
    assert plain.content == "describe"
    assert plain.id == msg.id
    assert not plain.has_media


def test_partial_reply_is_dropped_not_flagged():
    # An unfinished stream leaves nothing behind; there is no truncated marker to set
    assert "truncated" not in {f.name for f in fields(Message)}
    store = HistoryStore()
    store.append(Message(role=USER, content="q"))
    store.open_assistant(provider="primary")
    store.grow("half an ans")

    dropped = store.discard_open()

    assert dropped.text == "half an ans"
    assert [m.role for m in store.snapshot()] == [USER]


def test_message_rejects_unknown_role():
    with pytest.raises(ValueError):
        Message(role="tool", content="x")


def test_alternate():
    assert alternate("primary") == "secondary"
    assert alternate("secondary") == "primary"
    with pytest.raises(ValueError):
        alternate("tertiary")
