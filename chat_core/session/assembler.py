"""消息组装器。

把解码后的 ProtocolEvent 依次折叠进当前助手消息的 Part 序列：

- text-delta: 追加到末尾仍处于打开状态的文本片段，否则新开一个文本片段。
- tool-call: 追加一个尚无结果的 ToolInvocationPart。
- tool-result: 回填最近一个 ID 匹配且尚无结果的工具调用；找不到时抛出
  AssemblyError，消息保持不变。
- finish / error: 关闭消息，之后到达的任何事件都记录告警并丢弃。

组装器本身不生成 ID、不读时钟，同一事件序列回放到空消息上
总是得到完全相同的结果。
"""

from dataclasses import replace

from chat_core.domain.events import ErrorEvent, Finish, ProtocolEvent, TextDelta, ToolCall, ToolResult
from chat_core.domain.exceptions import AssemblyError
from chat_core.domain.models import Message, TextPart, ToolInvocationPart
from chat_core.infrastructure.logging.logger import logger


class MessageAssembler:
    def apply(self, event: ProtocolEvent, message: Message) -> Message:
        if message.closed:
            logger.warning(
                "Discarded event after message closed",
                extra={"extra": {"message_id": message.id, "event": event.kind}},
            )
            return message

        if isinstance(event, TextDelta):
            self._append_text(message, event.text)
        elif isinstance(event, ToolCall):
            self._open_invocation(message, event)
        elif isinstance(event, ToolResult):
            self._fill_result(message, event)
        elif isinstance(event, Finish):
            message.closed = True
            message.finish_reason = event.reason
        elif isinstance(event, ErrorEvent):
            message.closed = True
            message.finish_reason = "error"
        else:
            raise AssemblyError(f"unsupported event: {event!r}", code="UNSUPPORTED_EVENT", message_id=message.id)
        return message

    @staticmethod
    def _append_text(message: Message, text: str) -> None:
        if not text:
            return
        parts = message.parts
        if parts and isinstance(parts[-1], TextPart):
            parts[-1] = TextPart(text=parts[-1].text + text)
        else:
            parts.append(TextPart(text=text))

    @staticmethod
    def _open_invocation(message: Message, event: ToolCall) -> None:
        for part in message.parts:
            if isinstance(part, ToolInvocationPart) and part.id == event.id and part.is_open:
                raise AssemblyError(
                    f"tool-call {event.id!r} is already open",
                    code="DUPLICATE_TOOL_CALL",
                    message_id=message.id,
                )
        message.parts.append(ToolInvocationPart(id=event.id, name=event.name, arguments=dict(event.arguments)))

    @staticmethod
    def _fill_result(message: Message, event: ToolResult) -> None:
        for idx in range(len(message.parts) - 1, -1, -1):
            part = message.parts[idx]
            if isinstance(part, ToolInvocationPart) and part.id == event.id and part.is_open:
                # None 表示“尚无结果”，空结果统一记为 {}
                result = event.result if event.result is not None else {}
                message.parts[idx] = replace(part, result=result)
                return
        raise AssemblyError(
            f"tool-result {event.id!r} has no matching open tool invocation",
            code="UNMATCHED_TOOL_RESULT",
            message_id=message.id,
        )
