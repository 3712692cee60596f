"""从事件流解码出的入站事件。

线上协议（服务端 -> 客户端）::

    event: <type>
    data: <json-payload>
    <空行>

``<type>`` 取值 agent_text / tool_call / tool_result / done / error。
InboundEvent 是五种事件的联合类型；解码失败时由解复用器在本地合成一个
``ErrorEvent(synthetic=True)``。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Union

from chat_core.domain.exceptions import ParseError


EventType = Literal["agent_text", "tool_call", "tool_result", "done", "error"]
EVENT_TYPES = ("agent_text", "tool_call", "tool_result", "done", "error")


@dataclass(frozen=True)
class AgentTextEvent:
    chunk: str
    thread_id: Optional[str] = None
    message_id: Optional[str] = None
    type: Literal["agent_text"] = "agent_text"


@dataclass(frozen=True)
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResultEvent:
    tool_result_id: str
    tool_call_id: str
    result: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True)
class DoneEvent:
    type: Literal["done"] = "done"


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    synthetic: bool = False
    type: Literal["error"] = "error"


InboundEvent = Union[AgentTextEvent, ToolCallEvent, ToolResultEvent, DoneEvent, ErrorEvent]


def _require_str(data: Dict[str, Any], key: str, event_type: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ParseError(
            code="INVALID_EVENT_PAYLOAD",
            message=f"'{event_type}' event requires string field '{key}'",
            event_type=event_type,
        )
    return value


def _object(data: Dict[str, Any], key: str, event_type: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(
            code="INVALID_EVENT_PAYLOAD",
            message=f"'{event_type}' event field '{key}' must be an object",
            event_type=event_type,
        )
    return value


def event_from_payload(event_type: str, data: Any) -> Optional[InboundEvent]:
    """把 ``event:`` 名称与解码后的 JSON 载荷合成为强类型事件。

    Returns:
        对应的事件；未知事件类型返回 None。

    Raises:
        ParseError: 载荷不是 JSON 对象，或缺少必需字段。
    """
    if event_type not in EVENT_TYPES:
        return None
    if not isinstance(data, dict):
        raise ParseError(
            code="INVALID_EVENT_PAYLOAD",
            message=f"'{event_type}' event payload must be a JSON object",
            event_type=event_type,
        )
    match event_type:
        case "agent_text":
            return AgentTextEvent(
                chunk=_require_str(data, "chunk", event_type),
                thread_id=data.get("thread_id"),
                message_id=data.get("message_id"),
            )
        case "tool_call":
            return ToolCallEvent(
                tool_call_id=_require_str(data, "tool_call_id", event_type),
                tool_name=_require_str(data, "tool_name", event_type),
                arguments=_object(data, "arguments", event_type),
            )
        case "tool_result":
            return ToolResultEvent(
                tool_result_id=_require_str(data, "tool_result_id", event_type),
                tool_call_id=_require_str(data, "tool_call_id", event_type),
                result=_object(data, "result", event_type),
            )
        case "done":
            return DoneEvent()
        case "error":
            error = data.get("error")
            return ErrorEvent(error=str(error) if error is not None else "Unknown error")
    return None
