import asyncio
import tempfile
from pathlib import Path

import httpx
import pytest

from chat_core.domain.events import ErrorEvent, Finish, TextDelta, ToolCall, ToolResult
from chat_core.domain.exceptions import InvalidInputError
from chat_core.domain.models import SessionStatus, TerminalReason
from chat_core.infrastructure.storage.json_store import JsonHistoryStore
from chat_core.providers.http_transport import HttpChatTransport
from chat_core.providers.streaming import StreamingRequest
from chat_core.session.chat_session import ChatSession
from chat_core.session.classifier import ErrorKind


class FakeTransport:
    """按脚本回放事件；脚本中的 asyncio.Event 表示“等到放行再继续”。"""

    name = "fake"

    def __init__(self, *scripts):
        self._scripts = list(scripts)
        self.calls = []
        self.requests = []

    def send(self, messages, model_id, *, temperature=None):
        self.calls.append(([m.text for m in messages], model_id))
        script = self._scripts.pop(0)

        async def source():
            for item in script:
                if isinstance(item, asyncio.Event):
                    await item.wait()
                else:
                    yield item

        request = StreamingRequest(source)
        self.requests.append(request)
        return request


class SettingsStub:
    events_url = "http://localhost:3000/api/chat"
    http_timeout = 1.0
    connect_timeout = 1.0
    temperature = None
    system_prompt = None


async def wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_hello_scenario_completes():
    transport = FakeTransport([TextDelta(text="Hi"), TextDelta(text=" there"), Finish(reason="stop")])
    session = ChatSession(transport, model_id="llama3.2")
    seen = []
    session.subscribe(lambda snap: seen.append(snap.status))

    task = session.submit("hello", "m1")
    assert session.status is SessionStatus.SUBMITTED
    assert session.is_busy
    reply = await task

    assert reply.text == "Hi there"
    assert reply.terminal_reason is TerminalReason.COMPLETED
    assert session.status is SessionStatus.READY
    assert session.terminal_reason is TerminalReason.COMPLETED
    assert session.error is None
    assert session.model_id == "m1"
    assert transport.calls == [(["hello"], "m1")]
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert seen[0] is SessionStatus.SUBMITTED
    assert SessionStatus.STREAMING in seen
    assert seen[-1] is SessionStatus.READY


@pytest.mark.asyncio
async def test_cancel_after_first_delta():
    gate = asyncio.Event()
    transport = FakeTransport([TextDelta(text="Hi"), gate, TextDelta(text=" there"), Finish()])
    session = ChatSession(transport, model_id="m1")

    task = session.submit("hello")
    await wait_until(lambda: session.status is SessionStatus.STREAMING)
    session.cancel()
    gate.set()
    reply = await task

    assert reply.text == "Hi"
    assert reply.terminal_reason is TerminalReason.CANCELLED
    assert session.status is SessionStatus.READY
    assert session.terminal_reason is TerminalReason.CANCELLED
    assert session.error is None
    assert transport.requests[0].cancelled
    assert session.messages[-1].text == "Hi"


@pytest.mark.asyncio
async def test_cancel_wins_over_finish_in_flight():
    # 读取任务一次性把 "Hi" 和 finish 都放进队列；处理 "Hi" 时就取消
    transport = FakeTransport([TextDelta(text="Hi"), Finish()])
    session = ChatSession(transport, model_id="m1")

    def on_change(snap):
        if snap.status is SessionStatus.STREAMING and snap.messages[-1].text == "Hi":
            session.cancel()

    session.subscribe(on_change)
    reply = await session.submit("hello")

    assert reply.terminal_reason is TerminalReason.CANCELLED
    assert session.terminal_reason is TerminalReason.CANCELLED
    assert reply.text == "Hi"


@pytest.mark.asyncio
async def test_cancel_when_idle_is_noop():
    session = ChatSession(FakeTransport(), model_id="m1")
    session.cancel()
    assert session.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_connection_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        session = ChatSession(HttpChatTransport(SettingsStub(), client=client), model_id="m1")
        reply = await session.submit("hello")

    assert session.status is SessionStatus.ERROR
    assert session.terminal_reason is TerminalReason.ERRORED
    assert session.error.kind is ErrorKind.NETWORK
    assert reply.parts == []
    assert reply.closed
    user, assistant = session.messages
    assert user.text == "hello"
    assert assistant.terminal_reason is TerminalReason.ERRORED
    assert assistant.parts == []


@pytest.mark.asyncio
async def test_submit_while_busy_is_rejected():
    gate = asyncio.Event()
    transport = FakeTransport([TextDelta(text="Hi"), gate, Finish()])
    session = ChatSession(transport, model_id="m1")

    task = session.submit("hello")
    before = session.messages
    with pytest.raises(InvalidInputError) as exc:
        session.submit("again")
    assert exc.value.code == "SESSION_BUSY"
    assert [m.id for m in session.messages] == [m.id for m in before]
    assert len(transport.calls) == 1

    gate.set()
    await task
    assert session.status is SessionStatus.READY


@pytest.mark.asyncio
async def test_blank_input_rejected():
    session = ChatSession(FakeTransport(), model_id="m1")
    with pytest.raises(InvalidInputError):
        session.submit("   ")
    with pytest.raises(InvalidInputError):
        session.submit("hello", "")
    assert session.messages == ()
    assert session.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_upstream_error_event_keeps_partial_output():
    transport = FakeTransport([TextDelta(text="par"), ErrorEvent(message="model crashed", origin="upstream")])
    session = ChatSession(transport, model_id="m1")
    reply = await session.submit("hello")

    assert session.status is SessionStatus.ERROR
    assert session.error.kind is ErrorKind.UPSTREAM
    assert session.error.detail == "model crashed"
    assert reply.text == "par"
    assert reply.terminal_reason is TerminalReason.ERRORED


@pytest.mark.asyncio
async def test_finish_with_error_reason_is_upstream_error():
    session = ChatSession(FakeTransport([TextDelta(text="x"), Finish(reason="error")]), model_id="m1")
    await session.submit("hello")
    assert session.status is SessionStatus.ERROR
    assert session.error.kind is ErrorKind.UPSTREAM


@pytest.mark.asyncio
async def test_stream_end_without_finish_is_protocol_error():
    session = ChatSession(FakeTransport([TextDelta(text="Hi")]), model_id="m1")
    reply = await session.submit("hello")
    assert session.status is SessionStatus.ERROR
    assert session.error.kind is ErrorKind.PROTOCOL
    assert session.error.code == "UNEXPECTED_EOF"
    assert reply.text == "Hi"


@pytest.mark.asyncio
async def test_unmatched_tool_result_is_protocol_error():
    transport = FakeTransport(
        [
            TextDelta(text="calling"),
            ToolCall(id="t1", name="search", arguments={}),
            ToolResult(id="t2", result={}),
            Finish(),
        ]
    )
    session = ChatSession(transport, model_id="m1")
    reply = await session.submit("hello")

    assert session.status is SessionStatus.ERROR
    assert session.error.kind is ErrorKind.PROTOCOL
    assert session.error.code == "UNMATCHED_TOOL_RESULT"
    assert reply.text == "calling"
    assert len(reply.tool_invocations) == 1


@pytest.mark.asyncio
async def test_retry_resends_last_user_message():
    transport = FakeTransport(
        [ErrorEvent(message="boom", origin="upstream")],
        [TextDelta(text="ok"), Finish()],
    )
    session = ChatSession(transport, model_id="m1")
    await session.submit("hello")
    assert session.status is SessionStatus.ERROR

    session.select_model("m2")
    reply = await session.retry()

    assert reply.text == "ok"
    assert session.status is SessionStatus.READY
    assert transport.calls == [(["hello"], "m1"), (["hello"], "m2")]
    assert [(m.role, m.text) for m in session.messages] == [("user", "hello"), ("assistant", "ok")]


@pytest.mark.asyncio
async def test_retry_without_history_rejected():
    session = ChatSession(FakeTransport(), model_id="m1")
    with pytest.raises(InvalidInputError):
        session.retry()


@pytest.mark.asyncio
async def test_second_turn_sends_full_history():
    transport = FakeTransport(
        [TextDelta(text="Hi"), Finish()],
        [TextDelta(text="Fine"), Finish()],
    )
    session = ChatSession(transport, model_id="m1")
    await session.submit("hello")
    await session.submit("how are you")
    assert transport.calls[1] == (["hello", "Hi", "how are you"], "m1")
    assert len(session.messages) == 4


@pytest.mark.asyncio
async def test_deadline_expiry_is_network_error():
    gate = asyncio.Event()
    transport = FakeTransport([TextDelta(text="slow"), gate, Finish()])
    session = ChatSession(transport, model_id="m1")

    reply = await session.submit("hello", deadline=0.01)

    assert session.status is SessionStatus.ERROR
    assert session.terminal_reason is TerminalReason.ERRORED
    assert session.error.kind is ErrorKind.NETWORK
    assert session.error.code == "DEADLINE_EXCEEDED"
    assert reply.text == "slow"
    assert transport.requests[0].cancelled


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_exchange():
    session = ChatSession(FakeTransport([TextDelta(text="Hi"), Finish()]), model_id="m1")

    def broken(snap):
        raise RuntimeError("listener bug")

    session.subscribe(broken)
    reply = await session.submit("hello")
    assert reply.terminal_reason is TerminalReason.COMPLETED


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications():
    session = ChatSession(FakeTransport([Finish()]), model_id="m1")
    seen = []
    unsubscribe = session.subscribe(seen.append)
    unsubscribe()
    await session.submit("hello")
    assert seen == []


@pytest.mark.asyncio
async def test_history_saved_and_restored():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d))
        session = ChatSession(FakeTransport([TextDelta(text="Hi"), Finish()]), model_id="m1", history_store=store)
        await session.submit("hello")

        restored = ChatSession(FakeTransport(), model_id="m1", history_store=store)
        restored.restore()
        assert restored.status is SessionStatus.READY
        assert restored.conversation_id == session.conversation_id
        assert [m.text for m in restored.messages] == ["hello", "Hi"]

        restored.clear()
        assert restored.status is SessionStatus.IDLE
        assert len(store.load_history()) == 0


@pytest.mark.asyncio
async def test_cancel_before_first_event():
    gate = asyncio.Event()
    transport = FakeTransport([gate, TextDelta(text="late"), Finish()])
    session = ChatSession(transport, model_id="m1")

    task = session.submit("hello")
    for _ in range(5):
        await asyncio.sleep(0)
    assert session.status is SessionStatus.SUBMITTED
    session.cancel()
    gate.set()
    reply = await task

    assert session.status is SessionStatus.READY
    assert session.terminal_reason is TerminalReason.CANCELLED
    assert session.error is None
    assert reply.parts == []
    assert reply.closed
    assert reply.terminal_reason is TerminalReason.CANCELLED
    assert session.messages[-1].parts == []


@pytest.mark.asyncio
async def test_connection_dropped_mid_stream_is_protocol_error():
    async def body():
        yield b'{"type":"text-delta","text":"Hi"}\n{"type":"text-del'
        raise httpx.RemoteProtocolError("peer closed connection without sending complete message body")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        session = ChatSession(HttpChatTransport(SettingsStub(), client=client), model_id="m1")
        reply = await session.submit("hello")

    assert session.status is SessionStatus.ERROR
    assert session.error.kind is ErrorKind.PROTOCOL
    assert session.error.code == "TRUNCATED_STREAM"
    assert reply.text == "Hi"
    assert reply.terminal_reason is TerminalReason.ERRORED


@pytest.mark.asyncio
async def test_rejected_send_keeps_model_selection():
    class RejectingTransport:
        name = "rejecting"

        def send(self, messages, model_id, *, temperature=None):
            raise InvalidInputError("model is not served here", code="EMPTY_MODEL")

    session = ChatSession(RejectingTransport(), model_id="m1")
    with pytest.raises(InvalidInputError):
        session.submit("hello", "m2")

    assert session.model_id == "m1"
    assert session.messages == ()
    assert session.status is SessionStatus.IDLE
