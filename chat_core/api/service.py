"""对外 API 服务模块。

ChatService 把持久化适配器、ConversationStore、ApiClient 与 SendOrchestrator
组装在一起，提供带显式生命周期的简化接口供 UI 层调用::

    async with ChatService() as chat:
        thread_id = chat.create_thread()
        await chat.send(thread_id, "hello")
        print(chat.get_thread_messages(thread_id))

UI 层只通过只读视图与 subscribe 读取状态，通过这里的命令修改状态。
"""

from typing import Any, Callable, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.models import Message, content_to_dict, format_timestamp
from chat_core.domain.persistence import PersistenceAdapter
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.services.api_client import ApiClient
from chat_core.services.history import HistoryLoader
from chat_core.services.send_orchestrator import SendOrchestrator
from chat_core.store.conversation_store import ConversationStore


class ChatService:
    def __init__(
        self,
        cfg=settings,
        adapter: Optional[PersistenceAdapter] = None,
        api_client: Optional[ApiClient] = None,
    ):
        self._settings = cfg
        self._adapter = adapter or JsonPersistenceAdapter(root=cfg.storage_root, cfg=cfg)
        self._api = api_client or ApiClient(cfg)
        self.store = ConversationStore(self._adapter, cfg)
        self._orchestrator = SendOrchestrator(self.store, self._api, cfg)
        self._history = HistoryLoader(self.store, self._adapter, self._api)
        self.store.hydrate()

    async def __aenter__(self) -> "ChatService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._orchestrator.cancel()
        self.store.close()
        await self._api.aclose()

    # ---- 线程管理 ----

    def create_thread(self) -> str:
        return self.store.create_thread()

    async def open_thread(self, thread_id: str) -> List[Dict[str, Any]]:
        """激活线程并加载历史，返回消息列表。"""
        if self.store.has_thread(thread_id):
            self.store.set_active_thread(thread_id)
        await self._history.load(thread_id)
        if self.store.active_thread_id != thread_id:
            self.store.set_active_thread(thread_id)
        return self.get_thread_messages(thread_id)

    def delete_thread(self, thread_id: str) -> None:
        self.store.delete_thread(thread_id)

    def clear_thread(self, thread_id: str) -> None:
        self.store.clear_thread(thread_id)

    def list_threads(self) -> List[Dict[str, Any]]:
        """列出所有线程，最近活跃的在前。

        Returns:
            线程列表，每项包含 id, title, preview, created_at, last_message_at, message_count
        """
        return [
            {
                "id": t.id,
                "title": t.title,
                "preview": t.preview,
                "created_at": format_timestamp(t.created_at),
                "last_message_at": format_timestamp(t.last_message_at),
                "message_count": t.message_count,
                "active": t.id == self.store.active_thread_id,
            }
            for t in self.store.list_threads()
        ]

    def get_thread_messages(self, thread_id: str) -> List[Dict[str, Any]]:
        """获取线程的所有消息，agent 消息的 text 以流式缓冲为准。"""
        return [self._message_view(m) for m in self.store.get_messages(thread_id)]

    # ---- 对话 ----

    async def send(self, thread_id: str, text: str) -> Optional[Message]:
        return await self._orchestrator.send(thread_id, text)

    def cancel(self) -> bool:
        return self._orchestrator.cancel()

    @property
    def is_streaming(self) -> bool:
        return self.store.is_streaming

    def subscribe(self, listener: Callable[[ConversationStore], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def _message_view(self, message: Message) -> Dict[str, Any]:
        content = content_to_dict(message.content)
        streaming = self.store.streaming_text(message.id) is not None
        if streaming:
            content["text"] = self.store.display_text(message)
        return {
            "message_id": message.id,
            "message_type": message.message_type,
            "timestamp": format_timestamp(message.timestamp),
            "content": content,
            "is_streaming": streaming,
        }
