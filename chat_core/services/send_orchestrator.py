"""单次 turn 的编排。

send() 的步骤：

1. 追加乐观 user 消息，会话标记 -> streaming（ConversationStore.begin_turn）；
2. 发出 POST 请求；
3. 打开 TransportSession，按顺序把每个入站事件交给 store；
4. 请求或读取过程中任何异常 -> 会话标记 -> idle，并追加一条合成的 agent 错误消息；
5. 正常结束或被取消 -> 收尾（end_turn）。

cancel() 中断尚未返回的请求或正在进行的读取，并把会话标记置为 idle，不直接 finalize 缓冲；
缓冲在 send() 退出时按 ``finalize_on_cancel`` 决定保留还是丢弃。
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Callable, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import log_event, logger
from chat_core.services.api_client import ApiClient
from chat_core.store.conversation_store import ConversationStore
from chat_core.streaming.transport import TransportSession


class SendOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        api_client: ApiClient,
        cfg=settings,
        session_factory: Callable[[], TransportSession] = TransportSession,
    ):
        self._store = store
        self._api = api_client
        self._settings = cfg
        self._session_factory = session_factory
        self._session: Optional[TransportSession] = None

    @property
    def active_session(self) -> Optional[TransportSession]:
        return self._session

    async def send(self, thread_id: str, text: str) -> Optional[Message]:
        """执行一次完整的 turn，返回乐观插入的 user 消息；空文本直接忽略。

        Raises:
            ValidationError: 已有未结束的 turn。
            BusinessError: 线程不存在。
        """
        text = (text or "").strip()
        if not text:
            return None

        turn = self._store.begin_turn(thread_id, text)
        session = self._session_factory()
        self._session = session
        log_ctx = {"thread_id": thread_id, "turn_id": turn.id}
        try:
            response = await session.guard(self._api.send_message(thread_id, text))
            if response is not None:
                async with aclosing(session.events(response)) as events:
                    async for event in events:
                        self._store.apply_event(turn, event)
        except asyncio.CancelledError:
            self._store.end_turn(turn, keep_partial=self._settings.finalize_on_cancel)
            raise
        except BusinessError as e:
            if session.cancelled:
                self._end_cancelled(turn, log_ctx, e.message)
            else:
                log_event(logging.ERROR, "Send failed", log_ctx, code=e.code, error=e.message)
                self._store.fail_turn(turn, e.message)
        except Exception as e:
            if session.cancelled:
                self._end_cancelled(turn, log_ctx, str(e))
            else:
                logger.exception("Unexpected send failure", extra={"extra": log_ctx})
                self._store.fail_turn(turn, str(e) or type(e).__name__)
        else:
            keep = self._settings.finalize_on_cancel if session.cancelled else True
            self._store.end_turn(turn, keep_partial=keep)
        finally:
            if self._session is session:
                self._session = None
        return self._store.find_message(turn.user_message_id)

    def cancel(self) -> bool:
        """中断当前 turn 的传输。没有进行中的 turn 时返回 False。"""
        session = self._session
        if session is None:
            return False
        session.cancel()
        self._store.set_streaming(False)
        turn = self._store.current_turn
        log_event(logging.INFO, "Send cancelled", {"thread_id": turn.thread_id if turn else None})
        return True

    def _end_cancelled(self, turn, log_ctx, error: str) -> None:
        # 取消之后的传输错误不是失败，不追加错误消息
        log_event(logging.INFO, "Ignored error after cancel", log_ctx, error=error)
        self._store.end_turn(turn, keep_partial=self._settings.finalize_on_cancel)
