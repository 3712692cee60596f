"""Agent 后端 HTTP 客户端。

只负责构造请求与映射错误，不解析事件流：

- ``GET  {prefix}/threads/{id}`` -> ``{thread_id, messages: Message[]}``
- ``POST {prefix}/threads/{id}``，body ``{text}`` -> 事件流响应（以 stream 模式返回，
  由 TransportSession 负责读取与关闭）
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ParseError, TransportError
from chat_core.domain.models import Message, message_from_dict
from chat_core.infrastructure.logging.logger import log_event


@dataclass
class ThreadHistory:
    thread_id: str
    messages: List[Message]


class ApiClient:
    def __init__(self, cfg=settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = cfg
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)
        return self._client

    def _url(self, thread_id: str) -> str:
        return f"{self._settings.api_base_url}{self._settings.api_prefix}/threads/{thread_id}"

    async def get_thread_history(self, thread_id: str) -> ThreadHistory:
        url = self._url(thread_id)
        try:
            resp = await self._http().get(url)
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e), url=url)
        if resp.status_code >= 400:
            raise TransportError(
                code="HTTP_ERROR",
                message=f"HTTP {resp.status_code}: {resp.reason_phrase}",
                http_status=resp.status_code,
                url=url,
            )
        try:
            data = resp.json()
            messages = [message_from_dict(item) for item in data.get("messages") or []]
            return ThreadHistory(thread_id=str(data.get("thread_id") or thread_id), messages=messages)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(code="INVALID_HISTORY", message=str(e), thread_id=thread_id)

    async def send_message(self, thread_id: str, text: str) -> httpx.Response:
        """发送一条消息，返回尚未读取 body 的流式响应。"""
        url = self._url(thread_id)
        client = self._http()
        request = client.build_request(
            "POST",
            url,
            json={"text": text},
            headers={"Accept": "text/event-stream"},
        )
        try:
            resp = await client.send(request, stream=True)
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e), url=url)
        if resp.status_code >= 400:
            await resp.aclose()
            raise TransportError(
                code="HTTP_ERROR",
                message=f"HTTP {resp.status_code}: {resp.reason_phrase}",
                http_status=resp.status_code,
                url=url,
            )
        log_event(logging.INFO, "Opened event stream", {"thread_id": thread_id}, status=resp.status_code)
        return resp

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
