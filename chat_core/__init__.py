"""Chat Core 顶层包。

该包提供本地流式聊天的会话核心实现，
包括配置加载、领域模型、流式协议解码、Transport 适配、
会话状态机、错误分类与历史持久化等能力。
"""

from chat_core.session.chat_session import ChatSession, SessionSnapshot

__all__ = ["ChatSession", "SessionSnapshot"]
