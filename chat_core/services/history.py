"""线程历史加载。

按优先级依次尝试：内存中已有的消息 -> 本地持久化 -> 服务端历史接口。
"""

import logging
from typing import List

from chat_core.domain.models import Message
from chat_core.domain.persistence import PersistenceAdapter
from chat_core.infrastructure.logging.logger import log_event
from chat_core.services.api_client import ApiClient
from chat_core.store.conversation_store import ConversationStore


class HistoryLoader:
    def __init__(self, store: ConversationStore, adapter: PersistenceAdapter, api_client: ApiClient):
        self._store = store
        self._adapter = adapter
        self._api = api_client

    async def load(self, thread_id: str) -> List[Message]:
        """加载线程历史并写入 store，返回消息序列。

        Raises:
            TransportError / ParseError: 需要访问服务端且请求失败时。
        """
        in_memory = self._store.get_messages(thread_id)
        if in_memory:
            return in_memory

        local = self._adapter.read_messages(thread_id)
        if local:
            self._store.load_thread_history(thread_id, local)
            log_event(logging.INFO, "Loaded thread from local storage", {"thread_id": thread_id}, count=len(local))
            return self._store.get_messages(thread_id)

        history = await self._api.get_thread_history(thread_id)
        self._store.load_thread_history(thread_id, history.messages)
        log_event(logging.INFO, "Loaded thread from server", {"thread_id": thread_id}, count=len(history.messages))
        return self._store.get_messages(thread_id)
