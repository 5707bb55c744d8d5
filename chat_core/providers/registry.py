"""模型目录。

本模块把“本地服务上已安装的模型”映射为带展示信息的 ModelInfo：

- MODEL_CATALOG: 已知模型的静态配置（展示名、上下文长度、能力标签）。
- OllamaModelCatalog: 查询 ``GET /api/tags``，把 ``name:tag`` 映射到静态配置。

会话核心把这些信息当作不透明的元数据，从不用它校验线上协议。
"""

from typing import Dict, List, Mapping, Optional

import httpx

from chat_core.domain.conversation import ModelInfo
from chat_core.infrastructure.logging.logger import logger


DEFAULT_MODEL_ID = "llama3.2"

MODEL_CATALOG: Mapping[str, ModelInfo] = {
    "llama3.2": ModelInfo(
        id="llama3.2",
        display_name="Llama 3.2",
        description="Efficient Llama model",
        context_length=128000,
        capabilities=("chat", "code"),
    ),
    "llama3.3": ModelInfo(
        id="llama3.3",
        display_name="Llama 3.3",
        description="Latest Llama model with 128K context",
        context_length=128000,
        capabilities=("chat", "code", "reasoning"),
    ),
    "mistral": ModelInfo(
        id="mistral",
        display_name="Mistral",
        description="Efficient 7B model",
        context_length=32000,
        capabilities=("chat", "code"),
    ),
    "gemma2": ModelInfo(
        id="gemma2",
        display_name="Gemma 2",
        description="Google's efficient model",
        context_length=8192,
        capabilities=("chat", "creative"),
    ),
    "qwen2.5": ModelInfo(
        id="qwen2.5",
        display_name="Qwen 2.5",
        description="Alibaba's versatile model",
        context_length=32000,
        capabilities=("chat", "code", "math"),
    ),
    "deepseek-r1": ModelInfo(
        id="deepseek-r1",
        display_name="DeepSeek R1",
        description="Reasoning-focused model",
        context_length=64000,
        capabilities=("reasoning", "code", "analysis"),
    ),
    "phi3": ModelInfo(
        id="phi3",
        display_name="Phi 3",
        description="Microsoft's lightweight model",
        context_length=128000,
        capabilities=("chat", "code", "lightweight"),
    ),
    "llava": ModelInfo(
        id="llava",
        display_name="LLaVA",
        description="Vision-language model",
        context_length=4096,
        capabilities=("vision", "chat", "image-analysis"),
        supports_images=True,
    ),
}


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    """根据 ID 查找模型配置，忽略 ``:tag`` 后缀。"""

    return MODEL_CATALOG.get(model_id.split(":", 1)[0])


class OllamaModelCatalog:
    """从本地 Ollama 服务读取已安装模型列表。"""

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client

    async def list_models(self) -> List[ModelInfo]:
        """返回已安装且已知的模型，保持服务端返回顺序并去重。

        - 一个已知模型都没有时，回退到默认模型。
        - 服务不可用或响应异常时记录日志并回退到 llama3.3。
        """

        url = f"{self._settings.ollama_base_url}/api/tags"
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to fetch models", extra={"extra": {"url": url, "error": str(e)}})
            return [MODEL_CATALOG["llama3.3"]]
        finally:
            if owns_client:
                await client.aclose()

        seen: Dict[str, ModelInfo] = {}
        for item in data.get("models") or []:
            info = get_model_info(str(item.get("name") or ""))
            if info is not None and info.id not in seen:
                seen[info.id] = info
        if not seen:
            return [MODEL_CATALOG[DEFAULT_MODEL_ID]]
        return list(seen.values())
