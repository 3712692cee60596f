from typing import List, Optional, Protocol, Sequence

from chat_core.domain.models import Message
from chat_core.domain.thread import ThreadIndex


class PersistenceAdapter(Protocol):
    """本地持久化抽象。

    所有方法都是尽力而为：读失败或数据损坏视为"不存在"，写失败只记录日志，
    调用方永远不会收到异常。写入是按线程 id 的整体覆盖。
    """

    def read_thread_index(self) -> Optional[ThreadIndex]:
        ...

    def write_thread_index(self, index: ThreadIndex) -> None:
        ...

    def read_messages(self, thread_id: str) -> List[Message]:
        ...

    def write_messages(self, thread_id: str, messages: Sequence[Message]) -> None:
        ...

    def clear_thread(self, thread_id: str) -> None:
        ...

    def clear_all(self) -> None:
        ...
