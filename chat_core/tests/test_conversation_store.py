"""测试会话状态存储。"""

import logging
import tempfile
from pathlib import Path

import pytest

from chat_core.domain.events import AgentTextEvent, DoneEvent, ErrorEvent, ToolCallEvent, ToolResultEvent
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import AgentContent, ToolCallContent, ToolResultContent, UserContent, user_message
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.store.conversation_store import ConversationStore


class SettingsStub:
    storage_root = ".storage"
    storage_version = 1
    default_thread_title = "New Thread"
    title_max_length = 50
    preview_max_length = 100


class FakeAdapter:
    """记录写入次数的内存适配器。"""

    def __init__(self):
        self.index = None
        self.messages = {}
        self.writes = []

    def read_thread_index(self):
        return self.index

    def write_thread_index(self, index):
        self.index = index

    def read_messages(self, thread_id):
        return list(self.messages.get(thread_id, []))

    def write_messages(self, thread_id, messages):
        self.messages[thread_id] = list(messages)
        self.writes.append(thread_id)

    def clear_thread(self, thread_id):
        self.messages.pop(thread_id, None)

    def clear_all(self):
        self.index = None
        self.messages.clear()


def _store(adapter=None):
    return ConversationStore(adapter or FakeAdapter(), SettingsStub())


def test_create_thread_becomes_active():
    store = _store()
    tid = store.create_thread()
    assert store.active_thread_id == tid
    thread = store.get_thread(tid)
    assert thread.title == "New Thread"
    assert thread.message_count == 0
    assert store.get_messages(tid) == []


def test_add_message_updates_metadata_and_writes_through():
    adapter = FakeAdapter()
    store = _store(adapter)
    tid = store.create_thread()
    store.add_message(tid, user_message("x" * 60))
    thread = store.get_thread(tid)
    assert thread.title == "x" * 50 + "..."
    assert thread.preview == "x" * 60
    assert thread.message_count == 1
    assert [m.id for m in adapter.messages[tid]] == [m.id for m in store.get_messages(tid)]
    assert adapter.index.threads[tid].title == thread.title


def test_add_message_rejects_duplicate_ids_and_unknown_threads():
    store = _store()
    tid = store.create_thread()
    msg = user_message("hi")
    store.add_message(tid, msg)
    with pytest.raises(ValidationError):
        store.add_message(tid, msg)
    with pytest.raises(BusinessError) as exc:
        store.add_message("missing", user_message("hi"))
    assert exc.value.code == "THREAD_NOT_FOUND"


def test_turn_streams_and_finalizes_on_done():
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "hello")
    assert store.session.streaming is True
    assert store.session.thread_id == tid

    store.apply_event(turn, AgentTextEvent(chunk="Hel"))
    agent_id = turn.agent_message_id
    store.apply_event(turn, AgentTextEvent(chunk="lo"))
    agent = store.find_message(agent_id)
    assert agent.content == AgentContent(text="")
    assert store.display_text(agent) == "Hello"

    store.apply_event(turn, DoneEvent())
    assert store.find_message(agent_id).content == AgentContent(text="Hello")
    assert store.streaming_text(agent_id) is None
    assert store.is_streaming is False
    assert store.get_thread(tid).preview == "Hello"


def test_finalize_is_idempotent():
    store = _store()
    tid = store.create_thread()
    msg = store.open_agent_stream(tid)
    store.append_stream_chunk(msg.id, "abc")
    assert store.finalize_streaming_message(msg.id) is True
    assert store.finalize_streaming_message(msg.id) is False
    assert store.find_message(msg.id).text == "abc"
    assert store.streaming_message_ids() == []
    assert [m.id for m in store.get_messages(tid)] == [msg.id]


def test_append_requires_open_buffer():
    store = _store()
    tid = store.create_thread()
    msg = store.open_agent_stream(tid)
    store.finalize_streaming_message(msg.id)
    with pytest.raises(ValidationError):
        store.append_stream_chunk(msg.id, "late")


def test_one_buffer_per_agent_message():
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "go")
    for chunk in ("a", "b", "c"):
        store.apply_event(turn, AgentTextEvent(chunk=chunk))
    assert store.streaming_message_ids() == [turn.agent_message_id]
    assert store.streaming_text(turn.agent_message_id) == "abc"


def test_tool_events_append_immediately_in_order():
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "ls")
    store.apply_event(turn, AgentTextEvent(chunk="checking"))
    store.apply_event(turn, ToolCallEvent(tool_call_id="c1", tool_name="ls", arguments={"p": "."}))
    store.apply_event(turn, ToolResultEvent(tool_result_id="r1", tool_call_id="c1", result={"ok": True}))
    store.apply_event(turn, DoneEvent())
    kinds = [m.message_type for m in store.get_messages(tid)]
    assert kinds == ["user", "agent", "tool_call", "tool_result"]
    msgs = store.get_messages(tid)
    assert msgs[1].text == "checking"
    assert msgs[2].content == ToolCallContent(tool_call_id="c1", tool_name="ls", arguments={"p": "."})
    assert msgs[3].content == ToolResultContent(tool_result_id="r1", tool_call_id="c1", result={"ok": True})


def test_agent_text_after_finalize_opens_new_message(monkeypatch):
    warnings = []
    monkeypatch.setattr(
        "chat_core.store.conversation_store.log_event",
        lambda level, message, ctx, **fields: warnings.append(message) if level == logging.WARNING else None,
    )
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "q")
    store.apply_event(turn, AgentTextEvent(chunk="one"))
    store.apply_event(turn, ErrorEvent(error="bad payload", synthetic=True))
    assert store.is_streaming is False
    store.apply_event(turn, AgentTextEvent(chunk="two"))
    store.end_turn(turn)
    texts = [m.text for m in store.get_messages(tid)]
    assert texts == ["q", "one", "two"]
    assert "Agent text after turn went idle" in warnings


def test_error_event_finalizes_buffer_without_error_message():
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "q")
    store.apply_event(turn, AgentTextEvent(chunk="partial"))
    store.apply_event(turn, ErrorEvent(error="model overloaded"))
    msgs = store.get_messages(tid)
    assert [m.text for m in msgs] == ["q", "partial"]
    assert store.is_streaming is False


def test_fail_turn_appends_error_message():
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "q")
    store.fail_turn(turn, "HTTP 500: Internal Server Error")
    msgs = store.get_messages(tid)
    assert msgs[-1].content == AgentContent(text="Error: HTTP 500: Internal Server Error")
    assert store.is_streaming is False
    assert store.current_turn is None


def test_end_turn_discard_keeps_empty_agent_message():
    store = _store()
    tid = store.create_thread()
    turn = store.begin_turn(tid, "q")
    store.apply_event(turn, AgentTextEvent(chunk="half"))
    agent_id = turn.agent_message_id
    store.end_turn(turn, keep_partial=False)
    assert store.streaming_text(agent_id) is None
    assert store.find_message(agent_id).text == ""
    store.end_turn(turn)
    assert store.current_turn is None


def test_concurrent_turn_rejected():
    store = _store()
    t1 = store.create_thread()
    t2 = store.create_thread()
    store.begin_turn(t1, "first")
    with pytest.raises(ValidationError) as exc:
        store.begin_turn(t2, "second")
    assert exc.value.code == "TURN_IN_PROGRESS"
    assert store.get_messages(t2) == []


def test_delete_thread_purges_messages():
    adapter = FakeAdapter()
    store = _store(adapter)
    tid = store.create_thread()
    store.add_message(tid, user_message("bye"))
    store.delete_thread(tid)
    assert store.active_thread_id is None
    assert not store.has_thread(tid)
    assert tid not in adapter.messages
    assert tid not in adapter.index.threads


def test_delete_streaming_thread_rejected():
    store = _store()
    tid = store.create_thread()
    store.begin_turn(tid, "q")
    with pytest.raises(ValidationError):
        store.delete_thread(tid)


def test_clear_thread_resets_metadata():
    store = _store()
    tid = store.create_thread()
    store.add_message(tid, user_message("hello"))
    store.clear_thread(tid)
    assert store.get_messages(tid) == []
    assert store.get_thread(tid).title == "New Thread"
    assert store.get_thread(tid).message_count == 0


def test_list_threads_most_recent_first():
    store = _store()
    older = store.create_thread()
    newer = store.create_thread()
    store.add_message(older, user_message("bump"))
    assert [t.id for t in store.list_threads()] == [older, newer]


def test_subscribers_notified_until_unsubscribed():
    store = _store()
    seen = []
    unsubscribe = store.subscribe(lambda s: seen.append(s.is_streaming))
    tid = store.create_thread()
    store.begin_turn(tid, "q")
    assert seen and seen[-1] is True
    count = len(seen)
    unsubscribe()
    store.set_streaming(False)
    assert len(seen) == count


def test_failing_subscriber_does_not_break_mutation():
    store = _store()

    def broken(_store):
        raise RuntimeError("ui crashed")

    store.subscribe(broken)
    tid = store.create_thread()
    store.add_message(tid, user_message("still works"))
    assert len(store.get_messages(tid)) == 1


def test_reload_preserves_order_and_active_thread():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = ConversationStore(JsonPersistenceAdapter(root=root, cfg=SettingsStub()), SettingsStub())
        tid = store.create_thread()
        turn = store.begin_turn(tid, "first question")
        store.apply_event(turn, AgentTextEvent(chunk="ans"))
        store.apply_event(turn, AgentTextEvent(chunk="wer"))
        store.apply_event(turn, ToolCallEvent(tool_call_id="c", tool_name="grep"))
        store.apply_event(turn, DoneEvent())
        store.end_turn(turn)
        expected = store.get_messages(tid)
        store.close()

        reloaded = ConversationStore(JsonPersistenceAdapter(root=root, cfg=SettingsStub()), SettingsStub())
        reloaded.hydrate()
        assert reloaded.active_thread_id == tid
        assert reloaded.get_messages(tid) == expected
        assert reloaded.get_messages(tid)[1].text == "answer"
        assert reloaded.get_thread(tid).title == "first question"
        assert reloaded.get_thread(tid).message_count == 3


def test_set_active_thread_reads_through():
    adapter = FakeAdapter()
    store = _store(adapter)
    tid = store.create_thread()
    store.add_message(tid, user_message("persisted"))

    other = store.create_thread()

    fresh = _store(adapter)
    fresh.hydrate()
    assert fresh.active_thread_id == other
    assert fresh.get_messages(tid) == []
    fresh.set_active_thread(tid)
    assert [m.content for m in fresh.get_messages(tid)] == [UserContent(text="persisted")]


def test_load_thread_history_registers_unknown_thread():
    store = _store()
    history = [user_message("from server"), user_message("again")]
    store.load_thread_history("srv-thread", history)
    thread = store.get_thread("srv-thread")
    assert thread.title == "from server"
    assert thread.message_count == 2
    assert store.get_messages("srv-thread") == history


def test_empty_history_resets_metadata():
    store = _store()
    store.load_thread_history("srv-thread", [user_message("from server"), user_message("again")])
    store.load_thread_history("srv-thread", [])
    thread = store.get_thread("srv-thread")
    assert thread.title == "New Thread"
    assert thread.preview == ""
    assert thread.message_count == 0
    assert store.get_messages("srv-thread") == []
