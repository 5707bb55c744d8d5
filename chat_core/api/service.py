"""对外 API 服务模块。

提供简化的函数接口供上层应用（命令行、Web 路由等）调用，
返回值都是可直接 JSON 序列化的 dict。
"""

from typing import Any, Dict, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import HistoryStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonHistoryStore
from chat_core.providers import create_transport
from chat_core.providers.registry import OllamaModelCatalog
from chat_core.session.chat_session import ChatSession


_store: Optional[HistoryStore] = None
_session: Optional[ChatSession] = None


def get_default_session() -> ChatSession:
    """获取默认的 ChatSession 实例（单例），首次创建时恢复历史。"""
    global _store, _session
    if _store is None:
        _store = JsonHistoryStore(root=settings.storage_root)
    if _session is None:
        _session = ChatSession(
            create_transport(),
            model_id=settings.default_model,
            history_store=_store,
        )
        _session.restore()
    return _session


def reset_default_session() -> None:
    """关闭并丢弃默认会话，下次调用 get_default_session 时重新创建。"""
    global _store, _session
    if _session is not None:
        _session.close()
    _store = None
    _session = None


async def send_message(text: str, model_id: Optional[str] = None) -> Dict[str, Any]:
    """发送一条消息并等待本次交互结束。

    Args:
        text: 用户输入内容
        model_id: 模型ID（可选，不提供则沿用当前选择）

    Returns:
        包含会话状态、终止原因、助手消息与分类错误的字典

    Raises:
        InvalidInputError: 输入为空或会话忙碌
    """
    session = get_default_session()
    try:
        assistant = await session.submit(text, model_id)
    except Exception as e:
        logger.error(f"Send message failed: {e}", extra={"extra": {
            "conversation_id": session.conversation_id,
            "model": model_id or session.model_id,
            "error": str(e),
        }})
        raise

    error = session.error
    return {
        "conversation_id": session.conversation_id,
        "status": session.status.value,
        "terminal_reason": session.terminal_reason.value if session.terminal_reason else None,
        "assistant_message": {
            **assistant.to_dict(),
            "text": assistant.text,
        },
        "error": error.to_dict() if error else None,
    }


async def list_models() -> list[Dict[str, Any]]:
    """列出本地推理服务上可用的模型。"""
    catalog = OllamaModelCatalog(settings)
    models = await catalog.list_models()
    return [
        {
            "id": m.id,
            "display_name": m.display_name,
            "description": m.description,
            "context_length": m.context_length,
            "capabilities": list(m.capabilities),
            "supports_images": m.supports_images,
        }
        for m in models
    ]


def get_conversation_messages() -> list[Dict[str, Any]]:
    """获取当前会话的所有消息。"""
    session = get_default_session()
    return [
        {
            **m.to_dict(),
            "text": m.text,
        }
        for m in session.messages
    ]
