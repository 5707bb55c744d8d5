"""流式响应解码器。

把分块到达的响应体解析为离散的 ProtocolEvent：

1. 分块边界没有语义：不完整的行（以及被截断的 UTF-8 字节）先缓冲，
   直到拿到完整的一行再解析。
2. 每行一个 JSON 对象；兼容 SSE 的 ``data:`` 前缀，忽略 ``event:`` /
   ``id:`` / 注释行、空行以及 ``[DONE]``。
3. 同时识别两种行格式：
   - 类型化事件（带 ``type`` 字段），包括 AI SDK UI 消息流的别名；
   - Ollama /api/chat 的 NDJSON 分块（``message`` / ``done`` / ``error``）。
4. 事件顺序严格等于字节到达顺序；无法解析的完整行、未知事件类型、
   以及流结束时仍未完成的半行，都会产出 origin="stream" 的错误事件，
   不会被静默丢弃。
"""

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Union

from chat_core.domain.events import (
    ErrorEvent,
    Finish,
    ProtocolEvent,
    TextDelta,
    ToolCall,
    ToolResult,
)
from chat_core.domain.exceptions import ProtocolError


# AI SDK UI 消息流中只起控制作用、不产生内容的帧
CONTROL_FRAME_TYPES = frozenset(
    {
        "start",
        "start-step",
        "finish-step",
        "text-start",
        "text-end",
        "reasoning-start",
        "reasoning-delta",
        "reasoning-end",
        "tool-input-start",
        "tool-input-delta",
        "message-metadata",
    }
)

FINISH_REASONS = {"stop", "length", "error"}


class StreamDecoder:
    """增量解码器，一个实例只服务一条响应流，不可重启。"""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer = ""
        self._closed = False
        self._ollama_tool_calls = 0

    def feed(self, chunk: Union[bytes, str]) -> List[ProtocolEvent]:
        """喂入一个物理分块，返回其中完整行对应的 0..n 个事件。"""

        if self._closed:
            raise ProtocolError("decoder already closed", code="DECODER_CLOSED")
        if isinstance(chunk, bytes):
            try:
                text = self._utf8.decode(chunk)
            except UnicodeDecodeError as exc:
                self._closed = True
                return [self._stream_error(f"invalid utf-8 in stream: {exc}", "INVALID_ENCODING")]
        else:
            text = chunk
        self._buffer += text

        events: List[ProtocolEvent] = []
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1 :]
            events.extend(self._parse_line(line))
        return events

    def close(self) -> List[ProtocolEvent]:
        """流结束：处理缓冲区中剩余的最后一行。"""

        if self._closed:
            return []
        self._closed = True
        try:
            self._buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError:
            return [self._stream_error("stream ended inside a utf-8 sequence", "TRUNCATED_STREAM")]
        rest, self._buffer = self._buffer, ""
        if not rest.strip():
            return []
        payload = self._strip_framing(rest)
        if payload is None:
            return []
        # 服务端可能省略最后的换行：能完整解析就接受，否则视为中途截断
        try:
            obj = json.loads(payload)
        except json.JSONDecodeError:
            return [self._stream_error("stream ended in the middle of an event", "TRUNCATED_STREAM")]
        return self._parse_object(obj)

    # ---- helpers -------------------------------------------------

    @staticmethod
    def _strip_framing(line: str):
        s = line.strip()
        if not s or s.startswith(":"):
            return None
        if s.startswith(("event:", "id:", "retry:")):
            return None
        if s.startswith("data:"):
            s = s[5:].strip()
        if not s or s == "[DONE]":
            return None
        return s

    def _parse_line(self, line: str) -> List[ProtocolEvent]:
        payload = self._strip_framing(line)
        if payload is None:
            return []
        try:
            obj = json.loads(payload)
        except json.JSONDecodeError as exc:
            return [self._stream_error(f"malformed event line: {exc.msg}", "MALFORMED_EVENT")]
        return self._parse_object(obj)

    def _parse_object(self, obj: Any) -> List[ProtocolEvent]:
        if not isinstance(obj, dict):
            return [self._stream_error("event payload is not an object", "MALFORMED_EVENT")]
        if "type" in obj:
            return self._parse_typed(obj)
        if "message" in obj or "done" in obj:
            return self._parse_ollama(obj)
        if "error" in obj:
            return [self._upstream_error(obj.get("error"), obj.get("code"))]
        return [self._stream_error("unrecognised event payload", "UNKNOWN_EVENT")]

    def _parse_typed(self, obj: Dict[str, Any]) -> List[ProtocolEvent]:
        kind = obj.get("type")
        if kind in CONTROL_FRAME_TYPES:
            return []
        if kind == "text-delta":
            text = obj.get("text", obj.get("delta"))
            if not isinstance(text, str):
                return [self._stream_error("text-delta without text", "MALFORMED_EVENT")]
            return [TextDelta(text=text)]
        if kind in ("tool-call", "tool-input-available"):
            call_id = obj.get("id", obj.get("toolCallId"))
            name = obj.get("name", obj.get("toolName"))
            if not call_id or not name:
                return [self._stream_error("tool-call without id or name", "MALFORMED_EVENT")]
            arguments = obj.get("arguments", obj.get("input")) or {}
            return [ToolCall(id=str(call_id), name=str(name), arguments=_as_arguments(arguments))]
        if kind in ("tool-result", "tool-output-available"):
            call_id = obj.get("id", obj.get("toolCallId"))
            if not call_id:
                return [self._stream_error("tool-result without id", "MALFORMED_EVENT")]
            return [ToolResult(id=str(call_id), result=obj.get("result", obj.get("output")))]
        if kind == "error":
            return [self._upstream_error(obj.get("message", obj.get("errorText")), obj.get("code"))]
        if kind == "finish":
            reason = obj.get("reason", obj.get("finishReason")) or "stop"
            if reason not in FINISH_REASONS:
                reason = "stop"
            return [Finish(reason=reason)]
        return [self._stream_error(f"unknown event type: {kind!r}", "UNKNOWN_EVENT")]

    def _parse_ollama(self, obj: Dict[str, Any]) -> List[ProtocolEvent]:
        if obj.get("error"):
            return [self._upstream_error(obj.get("error"), obj.get("code"))]
        events: List[ProtocolEvent] = []
        message = obj.get("message") or {}
        if not isinstance(message, dict):
            return [self._stream_error("ollama chunk message is not an object", "MALFORMED_EVENT")]
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            return [self._stream_error("ollama chunk content is not a string", "MALFORMED_EVENT")]
        if content:
            events.append(TextDelta(text=content))
        tool_calls = message.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            return [self._stream_error("ollama tool_calls is not a list", "MALFORMED_EVENT")]
        for call in tool_calls:
            func = call.get("function") if isinstance(call, dict) else None
            if not isinstance(func, dict) or not func.get("name"):
                return [self._stream_error("ollama tool call without function name", "MALFORMED_EVENT")]
            call_id = call.get("id") or f"call_{self._ollama_tool_calls}"
            self._ollama_tool_calls += 1
            events.append(
                ToolCall(
                    id=str(call_id),
                    name=str(func["name"]),
                    arguments=_as_arguments(func.get("arguments")),
                )
            )
        if obj.get("done"):
            reason = obj.get("done_reason") or "stop"
            events.append(Finish(reason=reason if reason in FINISH_REASONS else "stop"))
        return events

    @staticmethod
    def _stream_error(message: str, code: str) -> ErrorEvent:
        return ErrorEvent(message=message, code=code, origin="stream")

    @staticmethod
    def _upstream_error(message: Any, code: Any) -> ErrorEvent:
        return ErrorEvent(
            message=str(message or "upstream error"),
            code=str(code) if code else None,
            origin="upstream",
            structured=True,
        )


def _as_arguments(raw: Any) -> Dict[str, Any]:
    """解析工具调用的 arguments 字段。

    部分服务会把 arguments 作为 JSON 字符串返回，这里做一层
    json.loads 尝试，失败时保留原始字符串到 `_raw`，避免信息丢失。
    """

    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"_raw": raw}
    return {}


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[ProtocolEvent]:
    """把异步字节分块序列解码为惰性、有限、不可重启的事件序列。"""

    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.close():
        yield event
