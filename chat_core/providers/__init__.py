"""推理服务集成层。

该包下的模块负责：
- 定义 Transport 抽象接口 (base) 与请求句柄 (streaming)。
- 把响应字节流解码为协议事件 (decoder)。
- 提供具体的传输实现 (http_transport、ollama_client)。
- 维护模型目录 (registry)。
"""

from typing import Optional

import httpx

from chat_core.config.settings import settings
from chat_core.providers.base import ChatTransport
from chat_core.providers.http_transport import HttpChatTransport
from chat_core.providers.ollama_client import OllamaTransport


def create_transport(name: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> ChatTransport:
    """根据名称创建 Transport 实例，默认取配置中的 transport。"""

    transport_name = (name or getattr(settings, "transport", "ollama")).lower()
    if transport_name == "events":
        return HttpChatTransport(settings, client=client)
    return OllamaTransport(settings, client=client)
