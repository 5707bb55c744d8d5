"""Transport 抽象接口。

ChatSession 不直接依赖具体的 HTTP 细节，而是依赖此协议：

- 每种推理服务实现一个 ChatTransport（如 OllamaTransport）。
- 负责：把完整的会话消息与模型 ID 转成 HTTP 请求，并把响应
  解码为 ProtocolEvent 序列；连接失败、非 2xx 等情况以单个终止性
  ErrorEvent 的形式出现在序列里，而不是同步抛出异常。

这样可以在不改会话状态机的前提下接入更多推理服务。
"""

from typing import Optional, Protocol, Sequence

from chat_core.domain.models import Message
from chat_core.providers.streaming import StreamingRequest


class ChatTransport(Protocol):
    """聊天传输适配器协议。

    实现者需要提供：
    - name: 适配器名称，用于日志。
    - send(messages, model_id): 发起一次流式请求；只有输入约束被违反时
      才会同步抛出 InvalidInputError。每次调用恰好对应一个网络连接，
      从不自动重试。
    """

    name: str

    def send(
        self,
        messages: Sequence[Message],
        model_id: str,
        *,
        temperature: Optional[float] = None,
    ) -> StreamingRequest:
        ...
