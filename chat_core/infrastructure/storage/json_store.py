import contextlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import StorageError
from chat_core.domain.models import Message, format_timestamp, message_from_dict, message_to_dict
from chat_core.domain.persistence import PersistenceAdapter
from chat_core.domain.thread import ThreadIndex
from chat_core.infrastructure.logging.logger import log_event


_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class JsonPersistenceAdapter(PersistenceAdapter):
    """基于 JSON 文件的持久化适配器。

    目录结构::

        <root>/threads.json              线程索引
        <root>/messages/<thread_id>.json 每个线程一份消息历史

    每次写入都先写临时文件再 os.replace，保证读到的要么是旧值要么是新值。
    """

    def __init__(self, root: str | Path | None = None, cfg=settings):
        self._settings = cfg
        self._root = Path(root or cfg.storage_root).resolve()
        self._index_path = self._root / "threads.json"
        self._msg_root = self._root / "messages"
        try:
            self._msg_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._warn("init", StorageError(code="STORE_INIT_ERROR", message=str(e)), root=str(self._root))

    # ---- 线程索引 ----

    def read_thread_index(self) -> Optional[ThreadIndex]:
        try:
            data = self._read_json(self._index_path)
            if data is None:
                return None
            index = ThreadIndex.from_dict(data)
        except StorageError as e:
            self._warn("read_thread_index", e)
            return None
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self._warn("read_thread_index", StorageError(code="STORE_CORRUPT", message=str(e)))
            return None
        if index.version != self._settings.storage_version:
            self._warn(
                "read_thread_index",
                StorageError(code="STORE_VERSION_MISMATCH", message=f"version {index.version}"),
            )
            return None
        return index

    def write_thread_index(self, index: ThreadIndex) -> None:
        try:
            self._write_json(self._index_path, index.to_dict())
        except StorageError as e:
            self._warn("write_thread_index", e)

    # ---- 消息历史 ----

    def read_messages(self, thread_id: str) -> List[Message]:
        try:
            data = self._read_json(self._messages_path(thread_id))
            if data is None:
                return []
            return [message_from_dict(item) for item in data.get("messages") or []]
        except StorageError as e:
            self._warn("read_messages", e, thread_id=thread_id)
            return []
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self._warn("read_messages", StorageError(code="STORE_CORRUPT", message=str(e)), thread_id=thread_id)
            return []

    def write_messages(self, thread_id: str, messages: Sequence[Message]) -> None:
        try:
            payload = {
                "threadId": thread_id,
                "messages": [message_to_dict(m) for m in messages],
                "lastUpdated": format_timestamp(datetime.now(timezone.utc)),
            }
            self._write_json(self._messages_path(thread_id), payload)
        except StorageError as e:
            self._warn("write_messages", e, thread_id=thread_id)

    def clear_thread(self, thread_id: str) -> None:
        try:
            self._messages_path(thread_id).unlink(missing_ok=True)
        except StorageError as e:
            self._warn("clear_thread", e, thread_id=thread_id)
        except OSError as e:
            self._warn("clear_thread", StorageError(code="STORE_DELETE_ERROR", message=str(e)), thread_id=thread_id)

    def clear_all(self) -> None:
        try:
            self._index_path.unlink(missing_ok=True)
            for path in self._msg_root.glob("*.json"):
                path.unlink(missing_ok=True)
        except OSError as e:
            self._warn("clear_all", StorageError(code="STORE_DELETE_ERROR", message=str(e)))

    # ---- 辅助方法 ----

    def _messages_path(self, thread_id: str) -> Path:
        if not _SAFE_KEY.match(thread_id or ""):
            raise StorageError(code="STORE_INVALID_KEY", message=f"invalid thread id: {thread_id!r}")
        return self._msg_root / f"{thread_id}.json"

    @staticmethod
    def _read_json(path: Path) -> Optional[Dict[str, Any]]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(code="STORE_CORRUPT", message=str(e))
        if not isinstance(data, dict):
            raise StorageError(code="STORE_CORRUPT", message=f"{path.name} is not a JSON object")
        return data

    @staticmethod
    def _write_json(path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _warn(operation: str, error: StorageError, **fields: Any) -> None:
        log_event(
            logging.WARNING,
            "Storage operation failed",
            {"operation": operation, "code": error.code},
            error=error.message,
            **fields,
        )
