import asyncio

import pytest

from chat_core.controller import ConversationController, describe_user_message
from chat_core.domain.exceptions import BackendError, ConnectivityError, ConversationCreationError
from chat_core.domain.models import Attachment, ChatReply, Message
from chat_core.session.reducer import Phase
from chat_core.tests.fakes import FakeBackend, SettingsStub


def _controller(backend, store, cfg=None, **kw):
    return ConversationController(backend, store, cfg=cfg or SettingsStub(), **kw)


@pytest.mark.asyncio
async def test_send_streams_reply_and_persists(store):
    backend = FakeBackend(['{"token": "Hi"}', '{"token": " there"}', '{"done": true, "tokens_used": 2}'])
    controller = _controller(backend, store)

    assert await controller.send_message("hello") is True

    assert controller.conversation_id == "c-1"
    assert [(m.role, m.content) for m in controller.messages] == [("user", "hello"), ("assistant", "Hi there")]
    assert controller.messages[-1].tokens == 2
    assert controller.loading is False
    assert controller.session is None
    saved = store.load()
    assert saved.last_conversation_id == "c-1"
    assert saved.conversations["c-1"].messages == list(controller.messages)


@pytest.mark.asyncio
async def test_send_reuses_active_conversation(store):
    backend = FakeBackend(['{"token": "x"}', '{"done": true}'])
    controller = _controller(backend, store)
    await controller.send_message("one")
    await controller.send_message("two")
    assert backend.created == 1
    assert [c[0] for c in backend.stream_calls] == ["c-1", "c-1"]


@pytest.mark.asyncio
async def test_empty_send_is_rejected(store):
    backend = FakeBackend()
    controller = _controller(backend, store)
    assert await controller.send_message("   ") is False
    assert await controller.send_message(None) is False
    assert controller.messages == ()
    assert backend.created == 0


@pytest.mark.asyncio
async def test_second_send_while_streaming_is_rejected(store):
    backend = FakeBackend(['{"token": "Wor"}'], hold=True, late_frames=['{"token": "ld"}', '{"done": true}'])
    controller = _controller(backend, store)
    first = asyncio.ensure_future(controller.send_message("hello"))
    await backend.reached_hold.wait()
    before = controller.messages

    assert await controller.send_message("again") is False
    assert controller.messages == before
    assert len(backend.stream_calls) == 1

    backend.release.set()
    assert await first is True
    assert controller.messages[-1].content == "World"


@pytest.mark.asyncio
async def test_typing_until_first_token(store):
    backend = FakeBackend(hold=True, late_frames=['{"token": "a"}', '{"done": true}'])
    controller = _controller(backend, store)
    task = asyncio.ensure_future(controller.send_message("hello"))
    await backend.reached_hold.wait()
    snap = controller.snapshot()
    assert snap.loading is True
    assert snap.typing is True
    backend.release.set()
    await task
    assert controller.snapshot().typing is False


@pytest.mark.asyncio
async def test_stop_stream_mid_stream_keeps_partial_reply(store):
    backend = FakeBackend(['{"token": "Wor"}'], hold=True, late_frames=['{"token": "ld"}', '{"done": true}'])
    controller = _controller(backend, store)
    task = asyncio.ensure_future(controller.send_message("hello"))
    await backend.reached_hold.wait()
    session = controller.session

    controller.stop_stream()
    assert controller.loading is False
    backend.release.set()
    assert await task is True

    assert session.phase is Phase.CANCELLED
    assert backend.open_streams == 0
    assert [(m.role, m.content) for m in controller.messages] == [("user", "hello"), ("assistant", "Wor")]
    assert store.load().conversations["c-1"].messages[-1].content == "Wor"


@pytest.mark.asyncio
async def test_stop_stream_is_idempotent(store):
    controller = _controller(FakeBackend(), store)
    controller.stop_stream()
    controller.stop_stream()
    assert controller.loading is False
    assert controller.typing is False
    assert controller.messages == ()


@pytest.mark.asyncio
async def test_creation_failure_leaves_log_untouched(store):
    error = ConversationCreationError(code="CONVERSATION_CREATE_FAILED", message="quota exceeded")
    backend = FakeBackend(create_error=error)
    welcome = (Message(role="assistant", content="Welcome"),)
    controller = _controller(backend, store, initial_messages=welcome)

    with pytest.raises(ConversationCreationError) as exc:
        await controller.ensure_conversation()
    assert exc.value.message == "quota exceeded"

    with pytest.raises(ConversationCreationError):
        await controller.send_message("hi")
    assert controller.messages == welcome
    assert controller.conversation_id is None
    assert controller.loading is False
    assert backend.stream_calls == []


@pytest.mark.asyncio
async def test_ensure_conversation_seeds_shown_messages(store):
    welcome = (Message(role="assistant", content="Welcome"),)
    controller = _controller(FakeBackend(), store, initial_messages=welcome)
    assert await controller.ensure_conversation() == "c-1"
    assert store.load().conversations["c-1"].messages == list(welcome)


@pytest.mark.asyncio
async def test_controller_restores_last_conversation(store):
    store.upsert("c-old", [Message(role="user", content="earlier")])
    controller = _controller(FakeBackend(), store)
    assert controller.conversation_id == "c-old"
    assert [m.content for m in controller.messages] == ["earlier"]


@pytest.mark.asyncio
async def test_start_new_conversation_keeps_old_ones(store):
    backend = FakeBackend(['{"token": "x"}'], hold=True)
    controller = _controller(backend, store)
    task = asyncio.ensure_future(controller.send_message("first"))
    await backend.reached_hold.wait()

    new_id = await controller.start_new_conversation()
    await task

    assert new_id == "c-2"
    assert controller.conversation_id == "c-2"
    assert controller.messages == ()
    assert controller.loading is False
    assert backend.open_streams == 0
    saved = store.load()
    assert [m.content for m in saved.conversations["c-1"].messages] == ["first", "x"]
    assert saved.last_conversation_id == "c-2"


@pytest.mark.asyncio
async def test_late_creation_does_not_replace_new_conversation(store):
    backend = FakeBackend(hold_create=True)
    controller = _controller(backend, store)
    task = asyncio.ensure_future(controller.send_message("hello"))
    await backend.create_reached.wait()

    new_id = await controller.start_new_conversation()
    backend.create_release.set()
    assert await task is False

    assert new_id == "c-2"
    assert controller.conversation_id == "c-2"
    assert controller.messages == ()
    assert controller.loading is False
    assert backend.stream_calls == []
    saved = store.load()
    assert saved.last_conversation_id == "c-2"
    assert "c-1" not in saved.conversations


@pytest.mark.asyncio
async def test_overlapping_new_conversations_keep_the_latest(store):
    backend = FakeBackend(hold_create=True)
    controller = _controller(backend, store)
    first = asyncio.ensure_future(controller.start_new_conversation())
    await backend.create_reached.wait()

    assert await controller.start_new_conversation() == "c-2"
    backend.create_release.set()
    assert await first == "c-2"

    assert controller.conversation_id == "c-2"
    assert store.load().last_conversation_id == "c-2"


@pytest.mark.asyncio
async def test_attachment_exchange_appends_reply(store):
    backend = FakeBackend(reply=ChatReply(response="A summary", tokens_used=7))
    controller = _controller(backend, store)
    att = Attachment(name="report.pdf", data=b"%PDF")

    assert await controller.send_message("summarize", attachment=att) is True

    assert backend.attachment_calls == [("c-1", "report.pdf", "summarize")]
    assert backend.stream_calls == []
    user, reply = controller.messages
    assert user.content == "summarize\n[Attachment: report.pdf]"
    assert (reply.role, reply.content, reply.tokens) == ("assistant", "A summary", 7)


@pytest.mark.asyncio
async def test_attachment_only_send(store):
    backend = FakeBackend()
    controller = _controller(backend, store)
    await controller.send_message(attachment=Attachment(name="a.txt", data=b"x"))
    assert backend.attachment_calls == [("c-1", "a.txt", None)]
    assert controller.messages[0].content == "[Attachment: a.txt]"


@pytest.mark.asyncio
async def test_attachment_backend_error_is_shown_verbatim(store):
    backend = FakeBackend(reply_error=BackendError(code="BACKEND_ERROR", message="file too large"))
    controller = _controller(backend, store)
    await controller.send_message(attachment=Attachment(name="big.bin", data=b"0"))
    assert (controller.messages[-1].role, controller.messages[-1].content) == ("error", "file too large")


@pytest.mark.asyncio
async def test_attachment_connectivity_error_is_generic(store):
    backend = FakeBackend(reply_error=ConnectivityError(code="NETWORK_ERROR", message="refused"))
    controller = _controller(backend, store)
    await controller.send_message("x", attachment=Attachment(name="a.txt", data=b"x"))
    assert controller.messages[-1].content == SettingsStub.connectivity_error_message


@pytest.mark.asyncio
async def test_attachment_cancel_appends_nothing(store):
    backend = FakeBackend(hold_reply=True)
    controller = _controller(backend, store)
    task = asyncio.ensure_future(controller.send_message("x", attachment=Attachment(name="a.txt", data=b"x")))
    await backend.reached_hold.wait()
    assert controller.typing is True

    controller.stop_stream()
    assert await task is True
    assert [m.role for m in controller.messages] == ["user"]
    assert controller.loading is False


@pytest.mark.asyncio
async def test_plain_json_exchange_when_streaming_disabled(store):
    cfg = SettingsStub()
    cfg.stream_responses = False
    backend = FakeBackend(reply=ChatReply(response="pong", tokens_used=1, conversation_id="c-other"))
    controller = _controller(backend, store, cfg=cfg)
    await controller.send_message("ping")
    assert backend.message_calls == [("c-1", "ping")]
    assert controller.messages[-1].content == "pong"
    assert controller.conversation_id == "c-1"


@pytest.mark.asyncio
async def test_snapshot_strips_thinking(store):
    backend = FakeBackend(['{"token": "<think>carry"}', '{"token": " the one</think>4"}', '{"done": true}'])
    controller = _controller(backend, store)
    await controller.send_message("2+2")
    snap = controller.snapshot()
    assert snap.messages[-1].content == "4"
    assert snap.messages[-1].thinking == "carry the one"
    assert controller.messages[-1].content == "<think>carry the one</think>4"


@pytest.mark.asyncio
async def test_check_health_updates_status(store):
    controller = _controller(FakeBackend(), store)
    assert controller.snapshot().status.label == "Disconnected"
    await controller.check_health()
    assert controller.snapshot().status.label == "LLM Ready"


@pytest.mark.asyncio
async def test_aclose_tears_down_open_stream(store):
    backend = FakeBackend(['{"token": "a"}'], hold=True)
    async with _controller(backend, store) as controller:
        task = asyncio.ensure_future(controller.send_message("hello"))
        await backend.reached_hold.wait()
    assert backend.open_streams == 0
    assert backend.aclosed is True
    assert controller.loading is False
    assert await task is True


@pytest.mark.asyncio
async def test_cancelling_caller_releases_connection(store):
    backend = FakeBackend(['{"token": "a"}'], hold=True)
    controller = _controller(backend, store)
    task = asyncio.ensure_future(controller.send_message("hello"))
    await backend.reached_hold.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)
    assert controller.loading is False
    assert controller.busy is False


@pytest.mark.asyncio
async def test_send_rejected_until_cancelled_stream_is_torn_down(store):
    backend = FakeBackend(['{"token": "a"}'], hold=True)
    controller = _controller(backend, store)
    first = asyncio.ensure_future(controller.send_message("hello"))
    await backend.reached_hold.wait()

    controller.stop_stream()
    assert controller.loading is False
    assert controller.busy is True
    assert await controller.send_message("again") is False
    assert len(backend.stream_calls) == 1

    assert await first is True
    assert backend.open_streams == 0
    assert controller.busy is False


def test_describe_user_message():
    att = Attachment(name="a.png", data=b"")
    assert describe_user_message("hi", None) == "hi"
    assert describe_user_message("", att) == "[Attachment: a.png]"
    assert describe_user_message("look", att) == "look\n[Attachment: a.png]"
