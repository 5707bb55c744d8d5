"""统一的消息与状态数据模型。

本模块定义了会话核心在各组件之间共享的标准数据结构：

- Part: 消息内容片段，封闭的标签联合（TextPart / ToolInvocationPart / FilePart）。
- Message: 一条对话消息（user/assistant/system），由有序的 Part 组成。
- SessionStatus / TerminalReason: 会话状态机的状态与交互的终止原因。

序列化（to_dict / from_dict）同时用于请求体与历史持久化，
字段命名沿用线上协议的 camelCase（createdAt、mimeType 等）。
"""

import base64
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4


# 消息角色类型
Role = Literal["system", "user", "assistant"]


class SessionStatus(str, Enum):
    """会话状态机的离散状态。"""

    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    READY = "ready"
    ERROR = "error"


class TerminalReason(str, Enum):
    """一次交互停止产出 Part 的原因。"""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(frozen=True)
class TextPart:
    """纯文本片段。"""

    text: str
    type: Literal["text"] = field(default="text", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolInvocationPart:
    """一次工具调用；result 为 None 表示结果尚未返回。"""

    id: str
    name: str
    arguments: Dict[str, Any]
    result: Optional[Any] = None
    type: Literal["toolInvocation"] = field(default="toolInvocation", init=False)

    @property
    def is_open(self) -> bool:
        return self.result is None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
        }
        if self.result is not None:
            payload["result"] = self.result
        return payload


@dataclass(frozen=True)
class FilePart:
    """文件附件（例如发给视觉模型的图片）。"""

    mime_type: str
    data: bytes
    type: Literal["file"] = field(default="file", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "mimeType": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
        }


Part = Union[TextPart, ToolInvocationPart, FilePart]


def part_from_dict(data: Dict[str, Any]) -> Part:
    """按 type 标签还原 Part，未知类型直接报错而不是静默丢弃。"""

    kind = data.get("type")
    if kind == "text":
        return TextPart(text=str(data.get("text") or ""))
    if kind == "toolInvocation":
        return ToolInvocationPart(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            arguments=dict(data.get("arguments") or {}),
            result=data.get("result"),
        )
    if kind == "file":
        return FilePart(
            mime_type=str(data.get("mimeType") or "application/octet-stream"),
            data=base64.b64decode(data.get("data") or ""),
        )
    raise ValueError(f"Unknown part type: {kind!r}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class Message:
    """一条对话消息。

    - parts: 有序片段列表。正在流式生成的助手消息只允许追加，
      不允许重写或重排；其余消息一旦创建即视为终态。
    - closed: 是否已进入终态（finish / 取消 / 出错之后为 True）。
    - terminal_reason: 助手消息的终止原因，用户/系统消息为 None。
    - finish_reason: 服务端 finish 事件携带的原因（stop/length/error）。
    - model: 生成该消息时选中的模型 ID（仅用于展示与持久化）。
    """

    id: str
    role: Role
    parts: List[Part] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    model: Optional[str] = None
    closed: bool = False
    terminal_reason: Optional[TerminalReason] = None
    finish_reason: Optional[str] = None

    @classmethod
    def create(
        cls,
        role: Role,
        parts: Optional[List[Part]] = None,
        *,
        model: Optional[str] = None,
        closed: bool = False,
    ) -> "Message":
        return cls(
            id=f"m-{uuid4().hex}",
            role=role,
            parts=list(parts or []),
            model=model,
            closed=closed,
        )

    @property
    def text(self) -> str:
        """拼接所有文本片段，仅用于展示。"""

        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def files(self) -> List[FilePart]:
        return [p for p in self.parts if isinstance(p, FilePart)]

    @property
    def tool_invocations(self) -> List[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    def snapshot(self) -> "Message":
        """返回一个只读用途的副本，调用方修改副本不会影响会话内部状态。"""

        return replace(self, parts=list(self.parts))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "parts": [p.to_dict() for p in self.parts],
            "createdAt": _format_ts(self.created_at),
        }
        if self.model:
            payload["model"] = self.model
        if self.terminal_reason is not None:
            payload["terminalReason"] = self.terminal_reason.value
        if self.finish_reason:
            payload["finishReason"] = self.finish_reason
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        reason = data.get("terminalReason")
        return cls(
            id=str(data["id"]),
            role=data["role"],
            parts=[part_from_dict(p) for p in data.get("parts") or []],
            created_at=_parse_ts(data["createdAt"]) if data.get("createdAt") else _utcnow(),
            model=data.get("model"),
            # 从持久化恢复的消息都属于已经结束的交互
            closed=True,
            terminal_reason=TerminalReason(reason) if reason else None,
            finish_reason=data.get("finishReason"),
        )
