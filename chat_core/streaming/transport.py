"""流式传输会话。

TransportSession 负责一次请求/响应对的读取生命周期：

- 打开响应 body 的读取器，循环读取片段并交给 StreamDemultiplexer；
- 以异步生成器的形式按序产出入站事件（``events``），或同步转发给回调（``open``）；
- ``cancel()`` 可在任意时刻从外部调用：正在等待的读取被中断，读取循环正常结束，
  不把中断当成错误抛出；
- 任何退出路径（正常结束、异常、取消）都只释放一次读取器并重置缓冲。
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import httpx

from chat_core.domain.events import InboundEvent
from chat_core.domain.exceptions import TransportError, ValidationError
from chat_core.infrastructure.logging.logger import log_event
from chat_core.streaming.demux import StreamDemultiplexer


EventSink = Callable[[InboundEvent], None]
T = TypeVar("T")


async def _next_fragment(fragments: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await fragments.__anext__()
    except StopAsyncIteration:
        return None


async def _discard(task: "asyncio.Future[Any]") -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class TransportSession:
    def __init__(self, demultiplexer: Optional[StreamDemultiplexer] = None):
        self._demux = demultiplexer or StreamDemultiplexer()
        self._cancel_event = asyncio.Event()
        self._response: Any = None
        self._fragments: Optional[AsyncIterator[bytes]] = None
        self._opened = False
        self._released = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def released(self) -> bool:
        return self._released

    def cancel(self) -> None:
        """请求中断读取循环。可重复调用。"""
        if not self._cancel_event.is_set():
            log_event(logging.INFO, "Transport session cancelled", {})
        self._cancel_event.set()

    async def guard(self, request: Awaitable[T]) -> Optional[T]:
        """在取消信号下等待一个请求（例如发出 POST 并等待响应头）。

        cancel() 先于请求完成时中断请求并返回 None；请求本身的异常原样抛出。
        """
        task = asyncio.ensure_future(request)
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await _discard(cancel_wait)
            if not task.done():
                await _discard(task)
        if task.cancelled():
            log_event(logging.INFO, "Request interrupted by cancel", {})
            return None
        return task.result()

    async def open(self, response: Any, sink: EventSink) -> None:
        """驱动读取循环，把每个事件同步、按序交给 sink。"""
        async with aclosing(self.events(response)) as events:
            async for event in events:
                sink(event)

    async def events(self, response: Any) -> AsyncIterator[InboundEvent]:
        """按到达顺序逐个产出事件，直到流结束或被取消。

        Raises:
            TransportError: 响应没有可读 body，或读取过程中网络失败。
        """
        self._attach(response)
        read: Optional[asyncio.Task] = None
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while not self._cancel_event.is_set():
                read = asyncio.ensure_future(_next_fragment(self._fragments))
                done, _ = await asyncio.wait({read, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                if read not in done:
                    await _discard(read)
                    break
                try:
                    fragment = read.result()
                except (httpx.HTTPError, httpx.StreamError) as e:
                    if self._cancel_event.is_set():
                        break
                    raise TransportError(code="STREAM_READ_ERROR", message=str(e)) from e
                finally:
                    read = None
                if fragment is None:
                    break
                for event in self._demux.feed(fragment):
                    yield event
        finally:
            if read is not None:
                await _discard(read)
            await _discard(cancel_wait)
            await self._release()

    def _attach(self, response: Any) -> None:
        if self._opened:
            raise ValidationError(code="SESSION_ALREADY_OPEN", message="transport session can only be opened once")
        self._opened = True
        if response is None or not hasattr(response, "aiter_bytes"):
            self._released = True
            raise TransportError(code="NO_RESPONSE_BODY", message="No response body available for event stream")
        self._response = response
        self._fragments = response.aiter_bytes()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        fragments, self._fragments = self._fragments, None
        response, self._response = self._response, None
        self._demux.reset()
        try:
            if fragments is not None and hasattr(fragments, "aclose"):
                await fragments.aclose()
            if response is not None:
                await response.aclose()
        except (httpx.HTTPError, httpx.StreamError, RuntimeError) as e:
            log_event(logging.DEBUG, "Ignored error while releasing stream", {}, error=str(e))
