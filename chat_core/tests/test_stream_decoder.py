import pytest

from chat_core.domain.events import ErrorEvent, Finish, TextDelta, ToolCall, ToolResult
from chat_core.domain.exceptions import ProtocolError
from chat_core.providers.decoder import StreamDecoder, decode_stream


def _decode_all(*chunks):
    decoder = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.close())
    return events


def test_typed_events_in_order():
    body = (
        b'{"type":"text-delta","text":"Hi"}\n'
        b'{"type":"tool-call","id":"t1","name":"search","arguments":{"q":"x"}}\n'
        b'{"type":"tool-result","id":"t1","result":{"hits":1}}\n'
        b'{"type":"text-delta","text":" there"}\n'
        b'{"type":"finish","reason":"stop"}\n'
    )
    events = _decode_all(body)
    assert events == [
        TextDelta(text="Hi"),
        ToolCall(id="t1", name="search", arguments={"q": "x"}),
        ToolResult(id="t1", result={"hits": 1}),
        TextDelta(text=" there"),
        Finish(reason="stop"),
    ]


def test_chunk_boundaries_have_no_meaning():
    body = '{"type":"text-delta","text":"héllo"}\n{"type":"finish"}\n'.encode("utf-8")
    # 在多字节字符中间切分
    split = body.index("é".encode("utf-8")) + 1
    events = _decode_all(body[:3], body[3:split], body[split:])
    assert events == [TextDelta(text="héllo"), Finish(reason="stop")]


def test_sse_framing_and_control_frames_ignored():
    body = (
        b": keep-alive\n"
        b"event: message\n"
        b'data: {"type":"start"}\n'
        b"\n"
        b'data: {"type":"text-delta","delta":"ok"}\n'
        b'data: {"type":"finish","finishReason":"length"}\n'
        b"data: [DONE]\n"
    )
    assert _decode_all(body) == [TextDelta(text="ok"), Finish(reason="length")]


def test_ui_stream_tool_aliases():
    body = (
        b'{"type":"tool-input-available","toolCallId":"c1","toolName":"calc","input":"{\\"a\\": 1}"}\n'
        b'{"type":"tool-output-available","toolCallId":"c1","output":3}\n'
    )
    assert _decode_all(body) == [
        ToolCall(id="c1", name="calc", arguments={"a": 1}),
        ToolResult(id="c1", result=3),
    ]


def test_malformed_and_unknown_lines_become_stream_errors():
    events = _decode_all(b"not json\n", b'{"type":"mystery"}\n')
    assert [e.code for e in events] == ["MALFORMED_EVENT", "UNKNOWN_EVENT"]
    assert all(isinstance(e, ErrorEvent) and e.origin == "stream" for e in events)


def test_upstream_error_event():
    (event,) = _decode_all(b'{"type":"error","message":"model not found","code":"404"}\n')
    assert event == ErrorEvent(message="model not found", code="404", origin="upstream", structured=True)


def test_final_line_without_newline_is_accepted():
    assert _decode_all(b'{"type":"finish"}') == [Finish(reason="stop")]


def test_truncated_final_line_is_reported():
    (event,) = _decode_all(b'{"type":"text-delta","text":"Hi"}\n{"type":"text-del')[1:]
    assert isinstance(event, ErrorEvent)
    assert event.code == "TRUNCATED_STREAM"
    assert event.origin == "stream"


def test_ollama_ndjson_chunks():
    body = (
        b'{"model":"llama3.2","message":{"role":"assistant","content":"Hi"},"done":false}\n'
        b'{"model":"llama3.2","message":{"role":"assistant","content":"",'
        b'"tool_calls":[{"function":{"name":"weather","arguments":{"city":"Paris"}}}]},"done":false}\n'
        b'{"model":"llama3.2","message":{"role":"assistant","content":""},"done":true,"done_reason":"stop"}\n'
    )
    assert _decode_all(body) == [
        TextDelta(text="Hi"),
        ToolCall(id="call_0", name="weather", arguments={"city": "Paris"}),
        Finish(reason="stop"),
    ]


def test_ollama_error_chunk():
    (event,) = _decode_all(b'{"error":"model \\"nope\\" not found"}\n')
    assert event.origin == "upstream"
    assert "not found" in event.message


def test_feed_after_close_raises():
    decoder = StreamDecoder()
    decoder.close()
    with pytest.raises(ProtocolError):
        decoder.feed(b"{}\n")


@pytest.mark.asyncio
async def test_decode_stream_over_async_chunks():
    async def chunks():
        yield b'{"type":"text-delta","te'
        yield b'xt":"a"}\n{"type":"finish"}\n'

    events = [e async for e in decode_stream(chunks())]
    assert events == [TextDelta(text="a"), Finish(reason="stop")]


def test_invalid_utf8_is_reported():
    decoder = StreamDecoder()
    (event,) = decoder.feed(b"\xff\n")
    assert isinstance(event, ErrorEvent)
    assert event.code == "INVALID_ENCODING"
    assert event.origin == "stream"
    assert decoder.close() == []


def test_stream_ending_inside_multibyte_character():
    decoder = StreamDecoder()
    assert decoder.feed(b'{"type":"text-delta","text":"\xc3') == []
    (event,) = decoder.close()
    assert event.code == "TRUNCATED_STREAM"
    assert event.origin == "stream"


@pytest.mark.parametrize(
    "line",
    [
        b'{"message": "oops"}\n',
        b'{"message": {"content": 42}, "done": false}\n',
        b'{"message": {"content": "", "tool_calls": "x"}, "done": false}\n',
        b'{"message": {"content": "", "tool_calls": ["x"]}, "done": false}\n',
        b'{"message": {"content": "", "tool_calls": [{"function": "x"}]}, "done": false}\n',
        b'{"message": {"content": "", "tool_calls": [{"function": {"arguments": {}}}]}, "done": false}\n',
    ],
)
def test_ollama_chunk_with_unexpected_shape_is_malformed(line):
    (event,) = StreamDecoder().feed(line)
    assert isinstance(event, ErrorEvent)
    assert event.code == "MALFORMED_EVENT"
    assert event.origin == "stream"
