"""流式协议事件。

StreamDecoder 把线上字节流解码为以下事件，Transport 负责产出，
MessageAssembler 与 ChatSession 负责消费。事件与 UI 无关。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Union


FinishReason = Literal["stop", "length", "error"]

# 错误事件的来源，是错误分类的结构化依据：
# - connection: 连接无法建立、超时或中途断开
# - http: 服务端返回非 2xx 状态码
# - stream: 字节流无法解码（非法 JSON、未知事件类型、截断）
# - upstream: 推理服务在流中显式报告的错误事件
# - deadline: 外部截止时间到期
ErrorOrigin = Literal["connection", "http", "stream", "upstream", "deadline"]


@dataclass(frozen=True)
class TextDelta:
    text: str
    kind: Literal["text-delta"] = field(default="text-delta", init=False)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]
    kind: Literal["tool-call"] = field(default="tool-call", init=False)


@dataclass(frozen=True)
class ToolResult:
    id: str
    result: Any
    kind: Literal["tool-result"] = field(default="tool-result", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    """终止性错误事件。

    - structured: 服务端是否给出了结构化的错误负载（JSON 中的 error 字段），
      分类时优先使用结构化信号。
    """

    message: str
    code: Optional[str] = None
    origin: ErrorOrigin = "upstream"
    http_status: Optional[int] = None
    structured: bool = False
    kind: Literal["error"] = field(default="error", init=False)


@dataclass(frozen=True)
class Finish:
    reason: FinishReason = "stop"
    kind: Literal["finish"] = field(default="finish", init=False)


ProtocolEvent = Union[TextDelta, ToolCall, ToolResult, ErrorEvent, Finish]
