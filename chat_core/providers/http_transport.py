"""类型化事件流的 HTTP 传输适配器。

本模块负责：

1. 接收完整的会话消息列表与模型 ID。
2. 将其转换为 ``POST {messages, model, temperature?}`` 请求体。
3. 通过 httpx.AsyncClient 以流式方式读取响应，交给 StreamDecoder 解码。
4. 把网络异常、非 2xx 状态码转换为单个终止性 ErrorEvent。

其他推理服务（如 Ollama 原生接口）只需继承本类并覆盖
endpoint 与请求体构造即可，参见 ollama_client.py。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chat_core.domain.events import ErrorEvent, ProtocolEvent
from chat_core.domain.exceptions import InvalidInputError
from chat_core.domain.models import Message, TextPart
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.decoder import decode_stream
from chat_core.providers.streaming import StreamingRequest


class HttpChatTransport:
    """类型化事件流端点的客户端实现。

    - name: 适配器名称（供日志使用）。
    - send: 对外统一调用入口，返回 StreamingRequest。
    - client: 可选的共享 AsyncClient（测试时注入 MockTransport）；
      不传时每次 send 都新建并在流结束后关闭自己的 client。
    """

    name = "events"

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        # Settings 里包含 endpoint、超时、温度、系统提示词等配置
        self._settings = settings
        self._client = client

    def send(
        self,
        messages: Sequence[Message],
        model_id: str,
        *,
        temperature: Optional[float] = None,
    ) -> StreamingRequest:
        if not messages:
            raise InvalidInputError("conversation must contain at least one message", code="EMPTY_CONVERSATION")
        if not model_id or not model_id.strip():
            raise InvalidInputError("model id must not be empty", code="EMPTY_MODEL")
        payload = self._build_payload(self._with_system_prompt(messages), model_id, temperature)
        url = self._endpoint()
        logger.debug(
            "Prepared chat request",
            extra={"extra": {"transport": self.name, "url": url, "model": model_id, "message_count": len(messages)}},
        )
        return StreamingRequest(lambda: self._stream_events(url, payload), label=f"{self.name}:{model_id}")

    # ---- request -------------------------------------------------

    def _endpoint(self) -> str:
        return self._settings.events_url

    def _build_payload(self, messages: List[Message], model_id: str, temperature: Optional[float]) -> Dict[str, Any]:
        """将消息列表转成类型化事件端点所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "messages": [m.to_dict() for m in messages],
            "model": model_id,
        }
        temp = self._temperature(temperature)
        if temp is not None:
            payload["temperature"] = temp
        return payload

    def _temperature(self, temperature: Optional[float]) -> Optional[float]:
        if temperature is not None:
            return temperature
        return getattr(self._settings, "temperature", None)

    def _with_system_prompt(self, messages: Sequence[Message]) -> List[Message]:
        prompt = getattr(self._settings, "system_prompt", None)
        if not prompt:
            return list(messages)
        system = Message.create("system", [TextPart(text=prompt)], closed=True)
        return [system, *messages]

    def _new_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            getattr(self._settings, "http_timeout", 30.0),
            connect=getattr(self._settings, "connect_timeout", 5.0),
        )
        return httpx.AsyncClient(timeout=timeout, trust_env=False)

    # ---- response ------------------------------------------------

    async def _stream_events(self, url: str, payload: Dict[str, Any]) -> AsyncIterator[ProtocolEvent]:
        owns_client = self._client is None
        client = self._client or self._new_client()
        emitted = 0
        try:
            async with client.stream(
                "POST",
                url,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/x-ndjson, text/event-stream",
                },
            ) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    yield self._http_error(resp.status_code, body)
                    return
                async for event in decode_stream(resp.aiter_bytes()):
                    emitted += 1
                    yield event
        except httpx.DecodingError as e:
            yield ErrorEvent(message=str(e) or "response body could not be decoded", code="DECODING_ERROR", origin="stream")
        except httpx.RequestError as e:
            # 超时、拒绝连接、连接中途断开等
            yield self._interrupted(e, emitted)
        finally:
            if owns_client:
                await client.aclose()

    @staticmethod
    def _interrupted(exc: httpx.RequestError, emitted: int) -> ErrorEvent:
        """连接失败或中断。

        - 还没有收到任何事件：连接问题（超时、拒绝连接、DNS 失败等）。
        - 已经收到事件后断开：流被截断，缓冲中的半行随之丢失。
        """

        detail = str(exc) or exc.__class__.__name__
        if emitted:
            return ErrorEvent(message=f"stream interrupted: {detail}", code="TRUNCATED_STREAM", origin="stream")
        if isinstance(exc, httpx.TimeoutException):
            return ErrorEvent(message=detail, code="TIMEOUT", origin="connection")
        return ErrorEvent(message=detail, code="NETWORK_ERROR", origin="connection")

    @staticmethod
    def _http_error(status_code: int, body: bytes) -> ErrorEvent:
        """把非 2xx 响应转换为错误事件，尽量保留服务端的结构化错误负载。"""

        text = body.decode("utf-8", errors="replace").strip()
        message: Optional[str] = None
        code: Optional[str] = None
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                message = err.get("message")
                code = err.get("code") or err.get("type")
            elif err:
                message = str(err)
                code = data.get("code")
            elif data.get("message"):
                message = str(data["message"])
                code = data.get("code")
        structured = message is not None
        return ErrorEvent(
            message=message or text or f"HTTP {status_code}",
            code=str(code) if code else f"HTTP_{status_code}",
            origin="http",
            http_status=status_code,
            structured=structured,
        )
