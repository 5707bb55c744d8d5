"""进行中的流式请求句柄。

Transport.send() 返回 StreamingRequest：它既是 ProtocolEvent 的异步迭代器，
又持有本次请求的取消能力。

实现方式：第一次拉取事件时启动一个读取任务，读取任务把解码后的事件
按到达顺序放入 FIFO 队列，消费方从队列中取事件。取消时直接取消读取任务
（httpx 的 async with 随之退出并释放连接），并放入结束标记唤醒消费方。
"""

import asyncio
from typing import AsyncIterator, Callable, Optional

from chat_core.domain.events import ProtocolEvent


_END = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException):
        self.exc = exc


class StreamingRequest:
    """一次 send() 对应的事件流与取消句柄。"""

    def __init__(self, source_factory: Callable[[], AsyncIterator[ProtocolEvent]], *, label: str = ""):
        self._source_factory = source_factory
        self.label = label
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._finished = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """是否在自然结束之前被取消。"""

        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "StreamingRequest":
        return self

    async def __anext__(self) -> ProtocolEvent:
        if self._finished:
            raise StopAsyncIteration
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._pump())
        item = await self._queue.get()
        if item is _END or self._finished:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.exc
        return item  # type: ignore[return-value]

    def cancel(self) -> None:
        """幂等；自然结束之后调用是 no-op。取消后不再交付任何事件。"""

        self._release(cancelled=True)

    def close(self) -> None:
        """消费方已拿到终态事件后释放连接，不计为取消。"""

        self._release(cancelled=False)

    def _release(self, cancelled: bool) -> None:
        if self._finished:
            return
        self._finished = True
        self._cancelled = cancelled
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self._queue.put_nowait(_END)

    async def _pump(self) -> None:
        source = self._source_factory()
        try:
            async for event in source:
                self._queue.put_nowait(event)
        except Exception as exc:
            # 交给消费方在 __anext__ 中重新抛出，由会话统一分类
            self._queue.put_nowait(_Failure(exc))
        finally:
            await _aclose(source)
            self._queue.put_nowait(_END)


async def _aclose(source: AsyncIterator[ProtocolEvent]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()
