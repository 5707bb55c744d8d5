"""Ollama 传输适配器。

与 HttpChatTransport 共用流式读取与错误转换逻辑，只负责：

1. 把内部 Message 转成 Ollama /api/chat 的消息格式
   （文本拼接为 content，图片附件转 base64 放入 images，
   工具调用与结果分别对应 tool_calls 与 role="tool" 消息）。
2. 构造 ``{model, messages, stream: true, options}`` 请求体。

响应是 NDJSON，由 StreamDecoder 识别 Ollama 分块格式。
"""

import base64
import json
from typing import Any, Dict, List, Optional

from chat_core.domain.models import Message
from chat_core.providers.http_transport import HttpChatTransport


class OllamaTransport(HttpChatTransport):
    name = "ollama"

    def _endpoint(self) -> str:
        return f"{self._settings.ollama_base_url}/api/chat"

    def _build_payload(self, messages: List[Message], model_id: str, temperature: Optional[float]) -> Dict[str, Any]:
        msgs: List[Dict[str, Any]] = []
        for m in messages:
            msgs.extend(self._message_to_payload(m))
        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": msgs,
            "stream": True,
        }
        temp = self._temperature(temperature)
        if temp is not None:
            payload["options"] = {"temperature": temp}
        return payload

    def _message_to_payload(self, message: Message) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.text}
        images = [
            base64.b64encode(f.data).decode("ascii")
            for f in message.files
            if f.mime_type.startswith("image/")
        ]
        if images:
            payload["images"] = images
        invocations = message.tool_invocations
        if invocations:
            payload["tool_calls"] = [
                {"function": {"name": call.name, "arguments": call.arguments}}
                for call in invocations
            ]
        items = [payload]
        # Ollama 通过 role="tool" 的独立消息回传工具结果
        for call in invocations:
            if call.result is None:
                continue
            content = call.result if isinstance(call.result, str) else json.dumps(call.result, ensure_ascii=False)
            items.append({"role": "tool", "content": content, "tool_name": call.name})
        return items
