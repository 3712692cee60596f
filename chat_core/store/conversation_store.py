"""会话状态存储。

ConversationStore 是会话状态的唯一事实来源：线程元数据、每个线程的消息序列、
正在流式生成的 agent 消息缓冲，以及"是否正在流式输出"的会话标记。

它是一个显式构造的服务对象（而非进程级单例），由 SendOrchestrator 与只读订阅者
通过引用共享。所有方法都是同步的纯状态变换，运行在单一事件循环上，不需要加锁。

生命周期::

    store = ConversationStore(adapter)
    store.hydrate()      # 从持久化恢复线程索引
    ...
    store.close()        # 结束未完成的 turn、写回索引、清空订阅者

状态迁移：

- create_thread / set_active_thread / load_thread_history / clear_thread / delete_thread
- begin_turn: 追加乐观 user 消息，会话标记 -> streaming
- apply_event: 按解复用器产出的顺序应用入站事件（agent_text / tool_call /
  tool_result / done / error）
- fail_turn: 传输失败，会话标记 -> idle，并追加一条合成的 agent 错误消息
- end_turn: 流结束或取消后收尾，保证没有缓冲跨越 turn 存活

任何改变线程消息序列的操作都会在返回前把该线程的完整序列写入持久化适配器，
并在同一次操作内重新计算标题/预览/最后消息时间/消息数。
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.events import (
    AgentTextEvent,
    DoneEvent,
    ErrorEvent,
    InboundEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import (
    AgentContent,
    Message,
    ToolCallContent,
    ToolResultContent,
    agent_message,
    generate_message_id,
    generate_thread_id,
    user_message,
    utcnow,
)
from chat_core.domain.persistence import PersistenceAdapter
from chat_core.domain.thread import ThreadIndex, ThreadMetadata, derive_metadata
from chat_core.infrastructure.logging.logger import log_event


Listener = Callable[["ConversationStore"], None]


@dataclass(frozen=True)
class SessionFlag:
    """当前是否有 turn 正在流式输出，以及它所属的线程。"""

    streaming: bool = False
    thread_id: Optional[str] = None


@dataclass
class Turn:
    """一次发送-流式响应交换的状态。

    agent_message_id 指向本 turn 当前正在累积文本的 agent 消息；
    finalize 之后重置为 None，后续的 agent_text 会开启一条新的 agent 消息。
    """

    thread_id: str
    user_message_id: str
    agent_message_id: Optional[str] = None
    id: str = field(default_factory=lambda: f"turn-{uuid4().hex}")


class ConversationStore:
    def __init__(self, adapter: PersistenceAdapter, cfg=settings):
        self._adapter = adapter
        self._settings = cfg
        self._threads: Dict[str, ThreadMetadata] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._locations: Dict[str, str] = {}  # message_id -> thread_id
        self._buffers: Dict[str, str] = {}  # agent message_id -> accumulated text
        self._active_thread_id: Optional[str] = None
        self._session = SessionFlag()
        self._turn: Optional[Turn] = None
        self._listeners: List[Listener] = []

    # ---- 生命周期 ----

    def hydrate(self) -> None:
        """从持久化的线程索引恢复线程列表与当前激活线程。"""
        index = self._adapter.read_thread_index()
        if index is None:
            return
        self._threads = dict(index.threads)
        active = index.active_thread_id
        self._active_thread_id = active if active in self._threads else None
        if self._active_thread_id:
            self._ensure_loaded(self._active_thread_id)
        log_event(
            logging.INFO,
            "Hydrated conversation store",
            {},
            thread_count=len(self._threads),
            active_thread_id=self._active_thread_id,
        )
        self._notify()

    def close(self) -> None:
        if self._turn is not None:
            self.end_turn(self._turn, keep_partial=True)
        self._save_index()
        self._buffers.clear()
        self._listeners.clear()

    # ---- 订阅 ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册只读订阅者，每次状态变化后调用。返回取消订阅函数。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 只读视图 ----

    @property
    def active_thread_id(self) -> Optional[str]:
        return self._active_thread_id

    @property
    def session(self) -> SessionFlag:
        return self._session

    @property
    def is_streaming(self) -> bool:
        return self._session.streaming

    @property
    def current_turn(self) -> Optional[Turn]:
        return self._turn

    def get_thread(self, thread_id: str) -> ThreadMetadata:
        try:
            return self._threads[thread_id]
        except KeyError:
            raise BusinessError(code="THREAD_NOT_FOUND", message=thread_id, http_status=404)

    def has_thread(self, thread_id: str) -> bool:
        return thread_id in self._threads

    def list_threads(self) -> List[ThreadMetadata]:
        """按最后消息时间倒序返回线程列表。"""
        return sorted(self._threads.values(), key=lambda t: t.last_message_at, reverse=True)

    def get_messages(self, thread_id: str) -> List[Message]:
        return list(self._messages.get(thread_id, ()))

    def find_message(self, message_id: str) -> Optional[Message]:
        thread_id = self._locations.get(message_id)
        if thread_id is None:
            return None
        for message in self._messages.get(thread_id, ()):
            if message.id == message_id:
                return message
        return None

    def streaming_text(self, message_id: str) -> Optional[str]:
        return self._buffers.get(message_id)

    def streaming_message_ids(self) -> List[str]:
        return list(self._buffers)

    def display_text(self, message: Message) -> Optional[str]:
        """展示用文本：流式缓冲存在时以缓冲为准。"""
        buffered = self._buffers.get(message.id)
        if buffered is not None:
            return buffered
        return message.text

    # ---- 线程命令 ----

    def create_thread(self) -> str:
        thread_id = generate_thread_id()
        now = utcnow()
        self._threads[thread_id] = ThreadMetadata(
            id=thread_id,
            created_at=now,
            last_message_at=now,
            title=self._settings.default_thread_title,
        )
        self._messages[thread_id] = []
        self._active_thread_id = thread_id
        self._save_index()
        log_event(logging.INFO, "Created thread", {"thread_id": thread_id})
        self._notify()
        return thread_id

    def set_active_thread(self, thread_id: str) -> None:
        self.get_thread(thread_id)
        self._active_thread_id = thread_id
        self._ensure_loaded(thread_id)
        self._save_index()
        self._notify()

    def load_thread_history(self, thread_id: str, messages: List[Message]) -> None:
        """用完整历史替换线程的消息序列（本地持久化或服务端历史）。

        线程不存在时会先登记一条元数据。
        """
        self._guard_no_turn(thread_id)
        seen = set()
        for message in messages:
            owner = self._locations.get(message.id)
            if message.id in seen or (owner is not None and owner != thread_id):
                raise ValidationError(code="DUPLICATE_MESSAGE_ID", message=message.id, thread_id=thread_id)
            seen.add(message.id)

        if thread_id not in self._threads:
            created = messages[0].timestamp if messages else utcnow()
            self._threads[thread_id] = ThreadMetadata(
                id=thread_id,
                created_at=created,
                last_message_at=created,
                title=self._settings.default_thread_title,
            )

        for message in self._messages.get(thread_id, ()):
            self._locations.pop(message.id, None)
        self._messages[thread_id] = list(messages)
        for message in messages:
            self._locations[message.id] = thread_id

        self._refresh_metadata(thread_id)
        self._adapter.write_messages(thread_id, self._messages[thread_id])
        self._save_index()
        self._notify()

    def clear_thread(self, thread_id: str) -> None:
        self.get_thread(thread_id)
        self._guard_no_turn(thread_id)
        self._drop_messages(thread_id)
        self._messages[thread_id] = []
        self._adapter.clear_thread(thread_id)
        self._refresh_metadata(thread_id)
        self._save_index()
        self._notify()

    def delete_thread(self, thread_id: str) -> None:
        self.get_thread(thread_id)
        self._guard_no_turn(thread_id)
        self._drop_messages(thread_id)
        self._messages.pop(thread_id, None)
        del self._threads[thread_id]
        if self._active_thread_id == thread_id:
            self._active_thread_id = None
        self._adapter.clear_thread(thread_id)
        self._save_index()
        log_event(logging.INFO, "Deleted thread", {"thread_id": thread_id})
        self._notify()

    # ---- 消息命令 ----

    def add_message(self, thread_id: str, message: Message) -> None:
        self.get_thread(thread_id)
        if message.id in self._locations:
            raise ValidationError(code="DUPLICATE_MESSAGE_ID", message=message.id, thread_id=thread_id)
        sequence = self._ensure_loaded(thread_id)
        sequence.append(message)
        self._locations[message.id] = thread_id
        self._commit(thread_id)

    def open_agent_stream(self, thread_id: str) -> Message:
        """追加一条空文本的 agent 消息，并为其创建流式缓冲。"""
        message = agent_message("")
        self.add_message(thread_id, message)
        self._buffers[message.id] = ""
        return message

    def append_stream_chunk(self, message_id: str, chunk: str) -> None:
        if message_id not in self._buffers:
            raise ValidationError(code="NO_STREAMING_BUFFER", message=message_id)
        self._buffers[message_id] += chunk
        self._notify()

    def finalize_streaming_message(self, message_id: str) -> bool:
        """把缓冲文本写入 agent 消息并丢弃缓冲。

        缓冲不存在时什么也不做（重复 finalize 是安全的）。返回是否真正执行了写入。
        """
        text = self._buffers.pop(message_id, None)
        if text is None:
            return False
        thread_id = self._locations.get(message_id)
        if thread_id is None:
            self._notify()
            return False
        sequence = self._messages[thread_id]
        for position, message in enumerate(sequence):
            if message.id == message_id and isinstance(message.content, AgentContent):
                sequence[position] = message.with_text(text)
                break
        self._commit(thread_id)
        return True

    def discard_streaming_message(self, message_id: str) -> bool:
        if self._buffers.pop(message_id, None) is None:
            return False
        self._notify()
        return True

    def set_streaming(self, streaming: bool, thread_id: Optional[str] = None) -> None:
        self._session = SessionFlag(streaming=streaming, thread_id=thread_id if streaming else None)
        self._notify()

    # ---- turn 状态机 ----

    def begin_turn(self, thread_id: str, text: str) -> Turn:
        """开始一次 turn：追加乐观 user 消息并进入 streaming。

        Raises:
            ValidationError: 已有未结束的 turn（任意线程）。
            BusinessError: 线程不存在。
        """
        if self._turn is not None:
            raise ValidationError(
                code="TURN_IN_PROGRESS",
                message="another turn is still streaming",
                thread_id=self._turn.thread_id,
            )
        self.get_thread(thread_id)
        message = user_message(text)
        self.add_message(thread_id, message)
        self._turn = Turn(thread_id=thread_id, user_message_id=message.id)
        self.set_streaming(True, thread_id)
        log_event(logging.INFO, "Turn started", {"thread_id": thread_id, "turn_id": self._turn.id})
        return self._turn

    def apply_event(self, turn: Turn, event: InboundEvent) -> None:
        """按到达顺序应用一个入站事件。"""
        self._guard_current(turn)
        match event:
            case AgentTextEvent(chunk=chunk):
                if turn.agent_message_id is None:
                    if not self._session.streaming:
                        log_event(
                            logging.WARNING,
                            "Agent text after turn went idle",
                            {"thread_id": turn.thread_id, "turn_id": turn.id},
                        )
                    turn.agent_message_id = self.open_agent_stream(turn.thread_id).id
                self.append_stream_chunk(turn.agent_message_id, chunk)
            case ToolCallEvent(tool_call_id=call_id, tool_name=name, arguments=args):
                content = ToolCallContent(tool_call_id=call_id, tool_name=name, arguments=args)
                self.add_message(turn.thread_id, Message(id=generate_message_id(), content=content, timestamp=utcnow()))
            case ToolResultEvent(tool_result_id=result_id, tool_call_id=call_id, result=result):
                content = ToolResultContent(tool_result_id=result_id, tool_call_id=call_id, result=result)
                self.add_message(turn.thread_id, Message(id=generate_message_id(), content=content, timestamp=utcnow()))
            case DoneEvent():
                self._close_buffer(turn, keep=True)
                self._go_idle(turn)
                log_event(logging.INFO, "Turn done", {"thread_id": turn.thread_id, "turn_id": turn.id})
            case ErrorEvent(error=error, synthetic=synthetic):
                log_event(
                    logging.WARNING,
                    "Stream reported error",
                    {"thread_id": turn.thread_id, "turn_id": turn.id},
                    error=error,
                    synthetic=synthetic,
                )
                self._close_buffer(turn, keep=True)
                self._go_idle(turn)

    def fail_turn(self, turn: Turn, description: str) -> Message:
        """传输失败：结束 turn 并追加一条合成的 agent 错误消息。"""
        self._close_buffer(turn, keep=True)
        self._go_idle(turn)
        if self._turn is turn:
            self._turn = None
        message = agent_message(f"Error: {description}")
        self.add_message(turn.thread_id, message)
        log_event(
            logging.ERROR,
            "Turn failed",
            {"thread_id": turn.thread_id, "turn_id": turn.id},
            error=description,
        )
        return message

    def end_turn(self, turn: Turn, keep_partial: bool = True) -> None:
        """流结束或被取消后收尾。对同一个 turn 重复调用是安全的。"""
        if self._turn is not turn:
            return
        self._close_buffer(turn, keep=keep_partial)
        self._go_idle(turn)
        self._turn = None
        log_event(logging.INFO, "Turn ended", {"thread_id": turn.thread_id, "turn_id": turn.id})
        self._notify()

    # ---- 辅助方法 ----

    def _close_buffer(self, turn: Turn, keep: bool) -> None:
        message_id, turn.agent_message_id = turn.agent_message_id, None
        if message_id is None:
            return
        if keep:
            self.finalize_streaming_message(message_id)
        else:
            self.discard_streaming_message(message_id)

    def _go_idle(self, turn: Turn) -> None:
        if self._session.streaming and self._session.thread_id == turn.thread_id:
            self.set_streaming(False)

    def _guard_current(self, turn: Turn) -> None:
        if self._turn is not turn:
            raise ValidationError(code="TURN_NOT_ACTIVE", message=turn.id, thread_id=turn.thread_id)

    def _guard_no_turn(self, thread_id: str) -> None:
        if self._turn is not None and self._turn.thread_id == thread_id:
            raise ValidationError(code="TURN_IN_PROGRESS", message="thread has a streaming turn", thread_id=thread_id)

    def _ensure_loaded(self, thread_id: str) -> List[Message]:
        sequence = self._messages.get(thread_id)
        if sequence is not None:
            return sequence
        stored = self._adapter.read_messages(thread_id)
        sequence = []
        for message in stored:
            if message.id in self._locations:
                log_event(
                    logging.WARNING,
                    "Skipped duplicate stored message",
                    {"thread_id": thread_id},
                    message_id=message.id,
                )
                continue
            sequence.append(message)
            self._locations[message.id] = thread_id
        self._messages[thread_id] = sequence
        return sequence

    def _drop_messages(self, thread_id: str) -> None:
        for message in self._messages.get(thread_id, ()):
            self._locations.pop(message.id, None)
            self._buffers.pop(message.id, None)

    def _commit(self, thread_id: str) -> None:
        self._adapter.write_messages(thread_id, self._messages[thread_id])
        self._refresh_metadata(thread_id)
        self._save_index()
        self._notify()

    def _refresh_metadata(self, thread_id: str) -> None:
        self._threads[thread_id] = derive_metadata(
            self._threads[thread_id],
            self._messages.get(thread_id, []),
            default_title=self._settings.default_thread_title,
            title_max_length=self._settings.title_max_length,
            preview_max_length=self._settings.preview_max_length,
        )

    def _save_index(self) -> None:
        self._adapter.write_thread_index(
            ThreadIndex(
                version=self._settings.storage_version,
                threads=dict(self._threads),
                active_thread_id=self._active_thread_id,
                last_synced_at=utcnow(),
            )
        )

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                log_event(logging.ERROR, "Store listener failed", {}, error=str(e))
