"""Chat Core 顶层包。

该包实现流式对话客户端的核心：事件流解复用、传输会话、
会话状态存储、发送编排以及本地持久化。
"""

from chat_core.api.service import ChatService

__all__ = ["ChatService"]
