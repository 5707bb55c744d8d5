"""错误分类。

把底层失败（网络、HTTP、字节流解码、上游推理服务报告的错误）映射为
展示层使用的小型分类：network / protocol / upstream / cancelled。

分类只看可观察的结构化信号（ErrorEvent.origin、HTTP 状态码、
是否有结构化错误负载、异常类型）；只有在完全没有结构化信号时，
才退回到对错误文本做关键字匹配。
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

import httpx

from chat_core.domain.events import ErrorEvent
from chat_core.domain.exceptions import AssemblyError, BusinessError, ProtocolError


class ErrorKind(str, Enum):
    NETWORK = "network"
    PROTOCOL = "protocol"
    UPSTREAM = "upstream"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ErrorCopy:
    title: str
    description: str
    suggestions: Tuple[str, ...] = ()


ERROR_COPY = {
    ErrorKind.NETWORK: ErrorCopy(
        title="Network Connection Error",
        description="Unable to connect to the Ollama server. Please check your connection and try again.",
        suggestions=(
            "Make sure Ollama is running locally",
            "Check if the server is accessible at http://localhost:11434",
            "Verify your network connection",
        ),
    ),
    ErrorKind.PROTOCOL: ErrorCopy(
        title="Stream Error",
        description="The response from the server could not be understood. Output received so far has been kept.",
        suggestions=(
            "Please try again",
            "Check the server logs for more details",
        ),
    ),
    ErrorKind.UPSTREAM: ErrorCopy(
        title="Model Error",
        description="The selected AI model encountered an error.",
        suggestions=(
            "Try switching to a different model",
            "Ensure the model is properly installed",
            "Check if the model supports your request",
        ),
    ),
    ErrorKind.CANCELLED: ErrorCopy(
        title="Stopped",
        description="The response was stopped before it finished.",
    ),
}

# 代理层在推理进程不可用时返回的状态码
_UNAVAILABLE_STATUSES = frozenset({502, 503, 504})


@dataclass(frozen=True)
class ClassifiedError:
    """分类后的错误，展示层只依赖这里的字段。

    - message: 由分类派生的人类可读描述。
    - detail: 原始错误文本，仅用于“详情”展示与日志。
    """

    kind: ErrorKind
    title: str
    message: str
    detail: str = ""
    code: Optional[str] = None
    http_status: Optional[int] = None
    suggestions: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "detail": self.detail,
            "code": self.code,
            "http_status": self.http_status,
            "suggestions": list(self.suggestions),
        }


Failure = Union[ErrorEvent, BaseException, None]


def classify(failure: Failure) -> ClassifiedError:
    """把一次失败映射为 ClassifiedError；None 表示用户主动取消。"""

    if failure is None or isinstance(failure, asyncio.CancelledError):
        return _build(ErrorKind.CANCELLED, detail="", code="CANCELLED")
    if isinstance(failure, ErrorEvent):
        return _build(
            _kind_for_event(failure),
            detail=failure.message,
            code=failure.code,
            http_status=failure.http_status,
        )
    if isinstance(failure, (AssemblyError, ProtocolError)):
        return _build(ErrorKind.PROTOCOL, detail=failure.message, code=failure.code)
    if isinstance(failure, httpx.TransportError):
        return _build(ErrorKind.NETWORK, detail=str(failure), code="NETWORK_ERROR")
    if isinstance(failure, httpx.HTTPStatusError):
        status = failure.response.status_code
        kind = ErrorKind.NETWORK if status in _UNAVAILABLE_STATUSES else ErrorKind.UPSTREAM
        return _build(kind, detail=str(failure), code=f"HTTP_{status}", http_status=status)
    if isinstance(failure, BusinessError):
        return _build(_kind_from_text(failure.message), detail=failure.message, code=failure.code)
    return _build(_kind_from_text(str(failure)), detail=str(failure), code=failure.__class__.__name__)


def _kind_for_event(event: ErrorEvent) -> ErrorKind:
    if event.origin in ("connection", "deadline"):
        return ErrorKind.NETWORK
    if event.origin == "stream":
        return ErrorKind.PROTOCOL
    if event.origin == "http":
        if event.http_status in _UNAVAILABLE_STATUSES and not event.structured:
            return ErrorKind.NETWORK
        return ErrorKind.UPSTREAM
    return ErrorKind.UPSTREAM


def _kind_from_text(text: str) -> ErrorKind:
    # 没有任何结构化信号时的兜底
    lowered = (text or "").lower()
    if any(key in lowered for key in ("network", "fetch", "connection", "timeout", "timed out")):
        return ErrorKind.NETWORK
    if "model" in lowered or "ollama" in lowered:
        return ErrorKind.UPSTREAM
    return ErrorKind.PROTOCOL


def _build(
    kind: ErrorKind,
    *,
    detail: str,
    code: Optional[str] = None,
    http_status: Optional[int] = None,
) -> ClassifiedError:
    copy = ERROR_COPY[kind]
    return ClassifiedError(
        kind=kind,
        title=copy.title,
        message=copy.description,
        detail=detail,
        code=code,
        http_status=http_status,
        suggestions=copy.suggestions,
    )
