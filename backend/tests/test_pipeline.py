"""Tests for the send-message pipeline."""

import asyncio

import pytest

from muro_chat.db.database import ChatStore
from muro_chat.db.models import MessageRole, MessageStatus
from muro_chat.errors import NotFoundError, StorageError, ValidationError
from muro_chat.pipeline import CANCELLED_REASON, MessagePipeline

from conftest import FakeChatModel, RacingStore, count_rows, fake_client


class FlakyStore(ChatStore):
    """Store whose finalization updates always fail."""

    async def complete_message(self, message_id, content):
        raise RuntimeError("disk full")

    async def fail_message(self, message_id, error_message, content=""):
        raise RuntimeError("disk full")


def _pipeline(store, model, **kwargs) -> MessagePipeline:
    return MessagePipeline(store, fake_client(model), instructions="be brief", **kwargs)


async def _send(pipeline, conversation_id, text):
    reply = await pipeline.send_message(conversation_id, text)
    return reply, [event async for event in reply]


def test_success_streams_chunks_then_done(store, run):
    conv = run(store.create_conversation())
    fragments = ["The ", "bid ", "is ", "fine."]
    reply, events = run(_send(_pipeline(store, FakeChatModel(fragments)), conv.id, "  Hello  "))

    assert [e.event for e in events] == ["chunk"] * 4 + ["done"]
    assert [e.data["content"] for e in events[:-1]] == fragments
    assert events[-1].data == {"messageId": reply.message_id, "content": "The bid is fine."}
    assert reply.finished

    user, assistant = run(store.list_messages(conv.id))
    assert (user.role, user.status, user.content) == (MessageRole.USER, MessageStatus.SENT, "Hello")
    assert assistant.id == reply.message_id
    assert (assistant.role, assistant.status) == (MessageRole.ASSISTANT, MessageStatus.SENT)
    assert assistant.content == "The bid is fine."
    assert assistant.error_message is None


def test_prompt_contains_history_and_new_message_once(store, run):
    conv = run(store.create_conversation())
    run(_send(_pipeline(store, FakeChatModel(["first reply"])), conv.id, "first"))

    model = FakeChatModel(["second reply"])
    run(_send(_pipeline(store, model), conv.id, "second"))

    prompt = model.calls[0]
    assert [m.content for m in prompt] == ["be brief", "first", "first reply", "second"]


def test_generation_failure_marks_placeholder_failed(store, run):
    conv = run(store.create_conversation())
    model = FakeChatModel(["par", "tial"], error=RuntimeError("Rate limit reached"), error_after=2)
    reply, events = run(_send(_pipeline(store, model), conv.id, "Hello"))

    assert [e.event for e in events] == ["chunk", "chunk", "error"]
    assert events[-1].data == {"error": "AI service is busy. Please try again in a moment."}

    assistant = run(store.list_messages(conv.id))[1]
    assert assistant.status == MessageStatus.FAILED
    assert assistant.error_message == "AI service is busy. Please try again in a moment."
    assert assistant.content == "partial"


def test_empty_generation_is_failure(store, run):
    conv = run(store.create_conversation())
    _, events = run(_send(_pipeline(store, FakeChatModel([])), conv.id, "Hello"))

    assert [e.event for e in events] == ["error"]
    assert run(store.list_messages(conv.id))[1].status == MessageStatus.FAILED


@pytest.mark.parametrize("text", ["", "   \n\t ", None, 42])
def test_invalid_content_has_no_side_effects(store, db_path, run, text):
    conv = run(store.create_conversation())
    model = FakeChatModel(["x"])

    with pytest.raises(ValidationError):
        run(_pipeline(store, model).send_message(conv.id, text))

    assert model.calls == []
    assert count_rows(db_path, "SELECT COUNT(*) FROM messages") == 0


def test_length_boundary(store):
    pipeline = _pipeline(store, FakeChatModel(["ok"]))

    assert pipeline.validate_content("a" * 10000) == "a" * 10000
    with pytest.raises(ValidationError):
        pipeline.validate_content("a" * 10001)

    # Surrounding whitespace does not count towards the limit
    assert pipeline.validate_content(" " + "a" * 10000 + " ") == "a" * 10000


def test_unknown_conversation(store, db_path, run):
    model = FakeChatModel(["x"])
    with pytest.raises(NotFoundError):
        run(_pipeline(store, model).send_message("missing", "Hello"))
    assert model.calls == []
    assert count_rows(db_path, "SELECT COUNT(*) FROM messages") == 0


def test_setup_failure_raises_storage_error(store, db_path, run, monkeypatch):
    conv = run(store.create_conversation())
    monkeypatch.setattr(store, "_new_id", lambda: "same-id")
    model = FakeChatModel(["x"])

    with pytest.raises(StorageError):
        run(_pipeline(store, model).send_message(conv.id, "Hello"))
    assert model.calls == []
    assert count_rows(db_path, "SELECT COUNT(*) FROM messages") == 0


def test_finalization_failure_still_delivers_terminal_event(db_path, run):
    store = FlakyStore(db_path)
    run(store.init_db())
    conv = run(store.create_conversation())

    reply, events = run(_send(_pipeline(store, FakeChatModel(["Hi"])), conv.id, "Hello"))
    assert [e.event for e in events] == ["chunk", "done"]

    # Persisting the outcome failed: the row is left at sending
    assert run(store.list_messages(conv.id))[1].status == MessageStatus.SENDING

    _, events = run(_send(_pipeline(store, FakeChatModel([], error=RuntimeError("x"))), conv.id, "Again"))
    assert [e.event for e in events] == ["error"]


def test_consumer_leaving_early_cancels_and_fails_placeholder(store, run):
    conv = run(store.create_conversation())
    model = FakeChatModel(["a", "b", "c"])

    async def consume_one():
        reply = await _pipeline(store, model).send_message(conv.id, "Hello")
        events = reply.__aiter__()
        first = await events.__anext__()
        await events.aclose()
        return reply, first

    reply, first = run(consume_one())
    assert first.event == "chunk"
    assert not reply.finished

    assistant = run(store.list_messages(conv.id))[1]
    assert assistant.status == MessageStatus.FAILED
    assert assistant.error_message == CANCELLED_REASON
    assert assistant.content == ""


def test_cancel_after_terminal_event_does_not_undo(store, run):
    conv = run(store.create_conversation())
    reply, events = run(_send(_pipeline(store, FakeChatModel(["done"])), conv.id, "Hello"))
    reply.cancel()
    reply.cancel()

    assert events[-1].event == "done"
    assert run(store.list_messages(conv.id))[1].status == MessageStatus.SENT


def test_concurrent_sends_keep_their_own_rows(store, run):
    conv = run(store.create_conversation())

    async def both():
        first = _send(_pipeline(store, FakeChatModel(["one", "!"])), conv.id, "A")
        second = _send(_pipeline(store, FakeChatModel(["two", "?"])), conv.id, "B")
        return await asyncio.gather(first, second)

    (reply_a, events_a), (reply_b, events_b) = run(both())
    assert events_a[-1].data["content"] == "one!"
    assert events_b[-1].data["content"] == "two?"

    by_id = {m.id: m for m in run(store.list_messages(conv.id))}
    assert len(by_id) == 4
    assert by_id[reply_a.message_id].content == "one!"
    assert by_id[reply_b.message_id].content == "two?"


def test_chat_deleted_after_existence_check_is_not_found(db_path, run):
    store = RacingStore(db_path)
    run(store.init_db())
    conv = run(store.create_conversation())
    model = FakeChatModel(["x"])

    with pytest.raises(NotFoundError):
        run(_pipeline(store, model).send_message(conv.id, "Hello"))
    assert model.calls == []
    assert count_rows(db_path, "SELECT COUNT(*) FROM messages") == 0


def test_cancel_requested_before_leaving_is_logged(store, run, captured_logs):
    conv = run(store.create_conversation())

    async def cancel_after_first():
        reply = await _pipeline(store, FakeChatModel(["a", "b"])).send_message(conv.id, "Hello")
        async for event in reply:
            assert not event.is_terminal
            reply.cancel()
        return reply

    reply = run(cancel_after_first())
    assert not reply.finished
    assert run(store.list_messages(conv.id))[1].error_message == CANCELLED_REASON

    cancelled = [e for e in captured_logs if e["event"] == "回复流在终止事件前被取消"]
    assert len(cancelled) == 1
    assert cancelled[0]["cancel_requested"] is True
    assert cancelled[0]["message_id"] == reply.message_id
