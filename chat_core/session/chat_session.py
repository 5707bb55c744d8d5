"""会话状态机。

ChatSession 是唯一持有会话状态的组件：

- 保存 Conversation，接受用户提交，驱动 Transport，把解码后的事件
  交给 MessageAssembler，并对外暴露离散的 status 与 cancel/retry 操作。
- 任意时刻最多一个进行中的交互（exchange）；忙碌时再次 submit 会立即失败，
  不排队、不交错。
- 所有工作都在同一个事件循环上完成，只在等待下一个事件时挂起，不需要锁。
- 当前正在生成的助手消息只由本类修改，外部拿到的都是快照。

状态流转::

    idle ──submit──> submitted ──首个事件──> streaming ──finish──> ready
                          │                      │
                          ├──────error───────────┴──> error
                          └──────cancel──────────────> ready (cancelled)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, HistoryStore
from chat_core.domain.events import ErrorEvent, Finish, ProtocolEvent
from chat_core.domain.exceptions import AssemblyError, BusinessError, InvalidInputError
from chat_core.domain.models import FilePart, Message, SessionStatus, TerminalReason, TextPart
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ChatTransport
from chat_core.providers.streaming import StreamingRequest
from chat_core.session.assembler import MessageAssembler
from chat_core.session.classifier import ClassifiedError, Failure, classify


@dataclass(frozen=True)
class SessionSnapshot:
    """某一时刻会话的只读视图，推送给订阅者。"""

    status: SessionStatus
    messages: Tuple[Message, ...]
    model_id: str
    terminal_reason: Optional[TerminalReason] = None
    error: Optional[ClassifiedError] = None

    @property
    def is_busy(self) -> bool:
        return self.status in (SessionStatus.SUBMITTED, SessionStatus.STREAMING)


Listener = Callable[[SessionSnapshot], None]


class _Exchange:
    """一次交互：从用户提交到助手消息进入终态。"""

    def __init__(self, assistant: Message, request: StreamingRequest, model_id: str):
        self.assistant = assistant
        self.request = request
        self.model_id = model_id
        self.trace_id = f"tr-{uuid4().hex}"
        self.closed = False
        self.event_count = 0
        self.started_at = time.monotonic()
        self.deadline_handle: Optional[asyncio.TimerHandle] = None


class ChatSession:
    def __init__(
        self,
        transport: ChatTransport,
        *,
        model_id: Optional[str] = None,
        history_store: Optional[HistoryStore] = None,
        assembler: Optional[MessageAssembler] = None,
        temperature: Optional[float] = None,
        deadline: Optional[float] = None,
    ):
        self._transport = transport
        self._model_id = model_id or settings.default_model
        self._store = history_store
        self._assembler = assembler or MessageAssembler()
        self._temperature = temperature
        self._deadline = deadline if deadline is not None else settings.request_deadline
        self._conversation = Conversation()
        self._status = SessionStatus.IDLE
        self._terminal_reason: Optional[TerminalReason] = None
        self._error: Optional[ClassifiedError] = None
        self._exchange: Optional[_Exchange] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    # ---- observation ---------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def terminal_reason(self) -> Optional[TerminalReason]:
        """最近一次交互的终止原因：completed / cancelled / errored。"""

        return self._terminal_reason

    @property
    def error(self) -> Optional[ClassifiedError]:
        return self._error

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def conversation_id(self) -> str:
        return self._conversation.id

    @property
    def is_busy(self) -> bool:
        return self._status in (SessionStatus.SUBMITTED, SessionStatus.STREAMING)

    @property
    def active_request(self) -> Optional[StreamingRequest]:
        return self._exchange.request if self._exchange else None

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._conversation.snapshot()

    @property
    def current_message(self) -> Optional[Message]:
        """正在生成的助手消息快照；没有进行中的交互时为 None。"""

        return self._exchange.assistant.snapshot() if self._exchange else None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            messages=self._conversation.snapshot(),
            model_id=self._model_id,
            terminal_reason=self._terminal_reason,
            error=self._error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """订阅状态变化；返回取消订阅的函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- operations ----------------------------------------------

    def submit(
        self,
        text: str,
        model_id: Optional[str] = None,
        *,
        attachments: Sequence[FilePart] = (),
        deadline: Optional[float] = None,
    ) -> "asyncio.Task[Message]":
        """提交一条用户消息并开始一次交互。

        必须在运行中的事件循环里调用。校验失败时同步抛出
        InvalidInputError，会话内容保持不变。返回的 Task 在交互进入终态后
        完成，结果是助手消息的快照；交互失败不会让 Task 抛异常，
        失败信息见 session.error。
        """

        if self.is_busy:
            raise InvalidInputError("a request is already in flight", code="SESSION_BUSY")
        if not text or not text.strip():
            raise InvalidInputError("message text must not be empty", code="EMPTY_INPUT")
        model = model_id if model_id is not None else self._model_id
        if not model or not model.strip():
            raise InvalidInputError("model id must not be empty", code="EMPTY_MODEL")
        for item in attachments:
            if not isinstance(item, FilePart):
                raise InvalidInputError(f"unsupported attachment: {item!r}", code="INVALID_ATTACHMENT")
        loop = asyncio.get_running_loop()

        user = Message.create("user", [TextPart(text=text), *attachments], model=model, closed=True)
        history = [*self._conversation, user]
        return self._start_exchange(loop, history, model, new_user=user, deadline=deadline)

    def cancel(self) -> None:
        """用户主动停止；不在 submitted/streaming 状态时是 no-op。"""

        exchange = self._exchange
        if exchange is None or not self.is_busy:
            return
        self._log(logging.INFO, "Exchange cancelled by user", self._ctx(exchange), events=exchange.event_count)
        self._finalize(exchange, TerminalReason.CANCELLED, SessionStatus.READY, cancel_request=True)

    def retry(self, *, deadline: Optional[float] = None) -> "asyncio.Task[Message]":
        """在 error / ready 状态下，用当前选中的模型重新生成最后一条用户消息的回答。

        最后一条用户消息之后的助手消息会被移除；用户消息本身原样保留，不会重复追加。
        """

        if self.is_busy:
            raise InvalidInputError("a request is already in flight", code="SESSION_BUSY")
        if self._status not in (SessionStatus.ERROR, SessionStatus.READY):
            raise InvalidInputError(f"cannot retry from status {self._status.value}", code="NOTHING_TO_RETRY")
        messages = list(self._conversation)
        user_idx = next((i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"), None)
        if user_idx is None:
            raise InvalidInputError("there is no user message to retry", code="NOTHING_TO_RETRY")
        loop = asyncio.get_running_loop()

        trailing = messages[user_idx + 1 :]
        drop_last = len(trailing) == 1 and trailing[0].role == "assistant"
        if trailing and not drop_last:
            raise InvalidInputError("conversation does not end with the last exchange", code="NOTHING_TO_RETRY")
        return self._start_exchange(loop, messages[: user_idx + 1], self._model_id, drop_last=drop_last, deadline=deadline)

    def select_model(self, model_id: str) -> None:
        """切换模型选择；只影响之后的提交，不影响进行中的交互。"""

        if not model_id or not model_id.strip():
            raise InvalidInputError("model id must not be empty", code="EMPTY_MODEL")
        self._model_id = model_id
        self._notify()

    def clear(self) -> None:
        """开始一个新的空会话。"""

        if self.is_busy:
            raise InvalidInputError("cannot clear while a request is in flight", code="SESSION_BUSY")
        self._conversation = Conversation()
        self._status = SessionStatus.IDLE
        self._terminal_reason = None
        self._error = None
        self._save_history()
        self._notify()

    def restore(self) -> None:
        """从历史存储恢复会话（会话边界调用）。"""

        if self.is_busy:
            raise InvalidInputError("cannot restore while a request is in flight", code="SESSION_BUSY")
        if self._store is None:
            return
        self._conversation = self._store.load_history()
        self._status = SessionStatus.READY if len(self._conversation) else SessionStatus.IDLE
        self._terminal_reason = None
        self._error = None
        self._log(
            logging.INFO,
            "Restored history",
            {"conversation_id": self._conversation.id},
            message_count=len(self._conversation),
        )
        self._notify()

    def close(self) -> None:
        """结束会话：停止进行中的交互并保存历史。"""

        self.cancel()
        self._save_history()

    # ---- exchange lifecycle --------------------------------------

    def _start_exchange(
        self,
        loop: asyncio.AbstractEventLoop,
        history: List[Message],
        model_id: str,
        *,
        new_user: Optional[Message] = None,
        drop_last: bool = False,
        deadline: Optional[float] = None,
    ) -> "asyncio.Task[Message]":
        # send() 只做输入校验并返回句柄，连接在第一次拉取事件时才建立；
        # 因此先调用它，校验失败时会话内容与模型选择都保持不变。
        request = self._transport.send(history, model_id, temperature=self._temperature)
        self._model_id = model_id

        if drop_last:
            self._conversation.pop_last()
        if new_user is not None:
            self._conversation.append(new_user)
        assistant = Message.create("assistant", model=self._model_id)
        self._conversation.append(assistant)

        exchange = _Exchange(assistant, request, self._model_id)
        self._exchange = exchange
        self._terminal_reason = None
        self._error = None
        self._status = SessionStatus.SUBMITTED

        timeout = deadline if deadline is not None else self._deadline
        if timeout:
            exchange.deadline_handle = loop.call_later(timeout, self._expire, exchange)
        self._task = loop.create_task(self._run_exchange(exchange))
        self._log(
            logging.INFO,
            "Submitted exchange",
            self._ctx(exchange),
            transport=getattr(self._transport, "name", "?"),
            message_count=len(history),
            retry=new_user is None,
            deadline=timeout,
        )
        self._notify()
        return self._task

    async def _run_exchange(self, exchange: _Exchange) -> Message:
        request = exchange.request
        try:
            async for event in request:
                if exchange.closed:
                    # 取消生效之后才交付的事件：观察到但不生效
                    self._log(logging.DEBUG, "Ignored event after exchange closed", self._ctx(exchange), event=event.kind)
                    break
                self._handle_event(exchange, event)
                if exchange.closed:
                    break
            if not exchange.closed:
                self._fail(
                    exchange,
                    ErrorEvent(message="stream ended before finish", code="UNEXPECTED_EOF", origin="stream"),
                )
        except asyncio.CancelledError:
            if not exchange.closed:
                self._finalize(exchange, TerminalReason.CANCELLED, SessionStatus.READY, cancel_request=True)
            raise
        except Exception as exc:
            # 传输层的原始异常不直接暴露给调用方，分类后记录在 session.error
            if not exchange.closed:
                self._log(logging.ERROR, "Exchange failed with exception", self._ctx(exchange), error=repr(exc))
                self._fail(exchange, exc)
        finally:
            request.close()
        return exchange.assistant.snapshot()

    def _handle_event(self, exchange: _Exchange, event: ProtocolEvent) -> None:
        exchange.event_count += 1
        message = exchange.assistant

        if isinstance(event, ErrorEvent):
            self._assembler.apply(event, message)
            self._fail(exchange, event)
            return

        if self._status is SessionStatus.SUBMITTED:
            self._status = SessionStatus.STREAMING
            self._log(
                logging.INFO,
                "First event received",
                self._ctx(exchange),
                latency_seconds=round(time.monotonic() - exchange.started_at, 3),
            )

        try:
            self._assembler.apply(event, message)
        except AssemblyError as exc:
            # 之前已组装好的 Part 保留，不回滚
            self._fail(exchange, exc)
            return

        if isinstance(event, Finish):
            if event.reason == "error":
                self._fail(
                    exchange,
                    ErrorEvent(message="model finished with an error", code="FINISH_ERROR", origin="upstream"),
                )
            else:
                self._finalize(exchange, TerminalReason.COMPLETED, SessionStatus.READY)
            return
        self._notify()

    def _expire(self, exchange: _Exchange) -> None:
        """外部截止时间到期：等同于 cancel()，但按 network 错误结束。"""

        if exchange.closed:
            return
        self._log(logging.WARNING, "Exchange deadline exceeded", self._ctx(exchange), events=exchange.event_count)
        error = classify(ErrorEvent(message="deadline exceeded", code="DEADLINE_EXCEEDED", origin="deadline"))
        self._finalize(exchange, TerminalReason.ERRORED, SessionStatus.ERROR, error, cancel_request=True)

    def _fail(self, exchange: _Exchange, failure: Failure) -> None:
        error = classify(failure)
        self._log(
            logging.WARNING,
            "Exchange failed",
            self._ctx(exchange),
            kind=error.kind.value,
            code=error.code,
            http_status=error.http_status,
            detail=error.detail,
        )
        self._finalize(exchange, TerminalReason.ERRORED, SessionStatus.ERROR, error)

    def _finalize(
        self,
        exchange: _Exchange,
        reason: TerminalReason,
        status: SessionStatus,
        error: Optional[ClassifiedError] = None,
        *,
        cancel_request: bool = False,
    ) -> None:
        if exchange.closed:
            return
        exchange.closed = True
        message = exchange.assistant
        message.closed = True
        message.terminal_reason = reason
        if exchange.deadline_handle is not None:
            exchange.deadline_handle.cancel()
        if cancel_request:
            exchange.request.cancel()
        else:
            exchange.request.close()
        if self._exchange is exchange:
            self._exchange = None

        self._terminal_reason = reason
        self._error = error
        self._status = status
        self._log(
            logging.INFO,
            "Exchange finished",
            self._ctx(exchange),
            terminal_reason=reason.value,
            status=status.value,
            events=exchange.event_count,
            parts=len(message.parts),
            elapsed_seconds=round(time.monotonic() - exchange.started_at, 3),
        )
        self._save_history()
        self._notify()

    # ---- helpers -------------------------------------------------

    def _save_history(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save_history(self._conversation)
        except BusinessError as e:
            # 持久化失败不改变交互结果
            self._log(
                logging.ERROR,
                "Failed to save history",
                {"conversation_id": self._conversation.id},
                code=e.code,
                error=e.message,
            )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Session listener failed")

    def _ctx(self, exchange: _Exchange) -> Dict[str, Any]:
        return {
            "trace_id": exchange.trace_id,
            "conversation_id": self._conversation.id,
            "message_id": exchange.assistant.id,
            "model": exchange.model_id,
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
