"""线程元数据与本地持久化记录。

- ThreadMetadata: 线程列表中展示的一条记录（标题、预览、时间等）。
- ThreadIndex: 持久化的线程索引 ``{version, threads, activeThreadId, lastSyncedAt}``。
- derive_metadata: 由完整消息序列推导标题/预览/最后消息时间/消息数。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from chat_core.domain.models import Message, UserContent, format_timestamp, parse_timestamp


ELLIPSIS = "..."


@dataclass(frozen=True)
class ThreadMetadata:
    id: str
    created_at: datetime
    last_message_at: datetime
    title: str
    preview: str = ""
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": format_timestamp(self.created_at),
            "lastMessageAt": format_timestamp(self.last_message_at),
            "title": self.title,
            "preview": self.preview,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadMetadata":
        return cls(
            id=str(data["id"]),
            created_at=parse_timestamp(data["createdAt"]),
            last_message_at=parse_timestamp(data["lastMessageAt"]),
            title=str(data.get("title") or ""),
            preview=str(data.get("preview") or ""),
            message_count=int(data.get("messageCount") or 0),
        )


@dataclass
class ThreadIndex:
    """持久化的线程索引记录。"""

    version: int
    threads: Dict[str, ThreadMetadata] = field(default_factory=dict)
    active_thread_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "threads": {tid: meta.to_dict() for tid, meta in self.threads.items()},
            "activeThreadId": self.active_thread_id,
            "lastSyncedAt": format_timestamp(self.last_synced_at) if self.last_synced_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadIndex":
        raw_threads = data.get("threads") or {}
        if not isinstance(raw_threads, dict):
            raise ValueError("threads must be a mapping")
        synced = data.get("lastSyncedAt")
        return cls(
            version=int(data["version"]),
            threads={str(tid): ThreadMetadata.from_dict(meta) for tid, meta in raw_threads.items()},
            active_thread_id=data.get("activeThreadId"),
            last_synced_at=parse_timestamp(synced) if synced else None,
        )


def truncate(text: str, limit: int, marker: str = "") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def derive_metadata(
    thread: ThreadMetadata,
    messages: Sequence[Message],
    *,
    default_title: str,
    title_max_length: int,
    preview_max_length: int,
) -> ThreadMetadata:
    """根据完整消息序列重新计算线程元数据。

    - title: 第一条 user 消息，超过 title_max_length 截断并追加 "..."；
      没有 user 消息时为 default_title。
    - preview: 最后一条带文本的消息（user/agent），截断到 preview_max_length。
    - last_message_at: 最后一条消息的时间戳；空序列保持原值。
    """
    title = default_title
    for message in messages:
        if isinstance(message.content, UserContent):
            title = truncate(message.content.text, title_max_length, ELLIPSIS)
            break

    preview = ""
    for message in reversed(messages):
        text = message.text
        if text is not None:
            preview = truncate(text, preview_max_length)
            break

    last_message_at = messages[-1].timestamp if messages else thread.last_message_at
    return replace(
        thread,
        title=title,
        preview=preview,
        last_message_at=last_message_at,
        message_count=len(messages),
    )
