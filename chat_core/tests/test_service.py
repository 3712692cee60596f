"""测试 ChatService 的组装与生命周期。"""

import json
import tempfile

import httpx
import pytest

from chat_core.api.service import ChatService
from chat_core.domain.exceptions import TransportError
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.services.api_client import ApiClient


class SettingsStub:
    api_base_url = "http://agent.test"
    api_prefix = "/api/v1"
    http_timeout = 5.0
    storage_version = 1
    default_thread_title = "New Thread"
    title_max_length = 50
    preview_max_length = 100
    finalize_on_cancel = True

    def __init__(self, root):
        self.storage_root = root


def frame(event, payload):
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


async def body(*chunks):
    for chunk in chunks:
        yield chunk


def handler(request):
    if request.method == "GET":
        return httpx.Response(404)
    text = json.loads(request.content)["text"]
    return httpx.Response(
        200,
        content=body(frame("agent_text", {"chunk": f"echo: {text}"}), frame("done", {})),
    )


def _service(root):
    cfg = SettingsStub(root)
    api = ApiClient(cfg, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return ChatService(cfg, adapter=JsonPersistenceAdapter(root=root, cfg=cfg), api_client=api)


@pytest.mark.asyncio
async def test_send_and_reopen_from_disk():
    with tempfile.TemporaryDirectory() as tmp:
        async with _service(tmp) as chat:
            tid = chat.create_thread()
            await chat.send(tid, "ping")
            messages = chat.get_thread_messages(tid)
            assert [m["content"]["text"] for m in messages] == ["ping", "echo: ping"]
            assert not any(m["is_streaming"] for m in messages)
            assert chat.is_streaming is False

        async with _service(tmp) as chat:
            threads = chat.list_threads()
            assert [t["id"] for t in threads] == [tid]
            assert threads[0]["title"] == "ping"
            assert threads[0]["preview"] == "echo: ping"
            assert threads[0]["message_count"] == 2
            assert threads[0]["active"] is True
            messages = await chat.open_thread(tid)
            assert [m["message_type"] for m in messages] == ["user", "agent"]


@pytest.mark.asyncio
async def test_open_unknown_thread_surfaces_server_error():
    with tempfile.TemporaryDirectory() as tmp:
        async with _service(tmp) as chat:
            with pytest.raises(TransportError):
                await chat.open_thread("missing")
            assert chat.list_threads() == []


@pytest.mark.asyncio
async def test_subscribe_and_delete():
    with tempfile.TemporaryDirectory() as tmp:
        async with _service(tmp) as chat:
            calls = []
            unsubscribe = chat.subscribe(lambda store: calls.append(store.is_streaming))
            tid = chat.create_thread()
            await chat.send(tid, "hi")
            assert True in calls
            assert calls[-1] is False
            unsubscribe()
            count = len(calls)
            chat.delete_thread(tid)
            assert len(calls) == count
            assert chat.list_threads() == []
            assert chat.cancel() is False
