"""统一的消息数据模型。

本模块定义了会话状态引擎内部共享的标准数据结构：

- UserContent / AgentContent / ToolCallContent / ToolResultContent:
  消息内容的四种变体，组成带标签的联合类型 MessageContent。
  每个变体都带有固定的 ``type`` 标签，消费方通过 ``match`` 做穷尽匹配，
  而不是依赖继承体系。
- Message: 一条会话消息（id + 内容变体 + 时间戳）。

同时提供 id 生成、时间戳、以及与线上/持久化 JSON 结构之间的转换函数。
线上结构与后端 API 保持一致::

    {"message_id": ..., "message_type": ..., "timestamp": ..., "content": {"type": ..., ...}}
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union
from uuid import uuid4


MessageType = Literal["user", "agent", "tool_call", "tool_result"]


@dataclass(frozen=True)
class UserContent:
    text: str
    type: Literal["user"] = "user"


@dataclass(frozen=True)
class AgentContent:
    text: str
    type: Literal["agent"] = "agent"


@dataclass(frozen=True)
class ToolCallContent:
    tool_call_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResultContent:
    tool_result_id: str
    tool_call_id: str
    result: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_result"] = "tool_result"


MessageContent = Union[UserContent, AgentContent, ToolCallContent, ToolResultContent]


@dataclass(frozen=True)
class Message:
    """一条会话消息。

    - id: 全局唯一。乐观插入/流式生成的消息由客户端生成（``msg_<uuid>``），
      历史记录中的消息使用服务端 id。
    - content: 四种内容变体之一。
    - timestamp: 带时区的创建时间。

    消息一旦追加到线程序列中，位置即不可变；只有 agent 消息的 text
    会在 finalize 时被整体替换一次（通过 ``with_text`` 生成新对象）。
    """

    id: str
    content: MessageContent
    timestamp: datetime

    @property
    def message_type(self) -> MessageType:
        return self.content.type

    @property
    def text(self) -> Optional[str]:
        """返回 user/agent 消息的文本，工具类消息返回 None。"""
        match self.content:
            case UserContent(text=text) | AgentContent(text=text):
                return text
            case ToolCallContent() | ToolResultContent():
                return None

    def with_text(self, text: str) -> "Message":
        if not isinstance(self.content, AgentContent):
            raise TypeError(f"only agent messages can be rewritten, got {self.message_type}")
        return replace(self, content=replace(self.content, text=text))


def generate_thread_id() -> str:
    return str(uuid4())


def generate_message_id() -> str:
    return f"msg_{uuid4()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(raw: str) -> datetime:
    ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def user_message(text: str, message_id: Optional[str] = None) -> Message:
    return Message(id=message_id or generate_message_id(), content=UserContent(text=text), timestamp=utcnow())


def agent_message(text: str = "", message_id: Optional[str] = None) -> Message:
    return Message(id=message_id or generate_message_id(), content=AgentContent(text=text), timestamp=utcnow())


# ---- JSON 转换 ----


def content_to_dict(content: MessageContent) -> Dict[str, Any]:
    match content:
        case UserContent(text=text):
            return {"type": "user", "text": text}
        case AgentContent(text=text):
            return {"type": "agent", "text": text}
        case ToolCallContent(tool_call_id=call_id, tool_name=name, arguments=args):
            return {"type": "tool_call", "tool_call_id": call_id, "tool_name": name, "arguments": args}
        case ToolResultContent(tool_result_id=result_id, tool_call_id=call_id, result=result):
            return {"type": "tool_result", "tool_result_id": result_id, "tool_call_id": call_id, "result": result}
    raise TypeError(f"unknown message content: {content!r}")


def content_from_dict(data: Dict[str, Any]) -> MessageContent:
    kind = data.get("type")
    match kind:
        case "user":
            return UserContent(text=str(data["text"]))
        case "agent":
            return AgentContent(text=str(data.get("text") or ""))
        case "tool_call":
            return ToolCallContent(
                tool_call_id=str(data["tool_call_id"]),
                tool_name=str(data["tool_name"]),
                arguments=dict(data.get("arguments") or {}),
            )
        case "tool_result":
            return ToolResultContent(
                tool_result_id=str(data["tool_result_id"]),
                tool_call_id=str(data["tool_call_id"]),
                result=dict(data.get("result") or {}),
            )
    raise ValueError(f"unknown message content type: {kind!r}")


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "message_id": message.id,
        "message_type": message.message_type,
        "timestamp": format_timestamp(message.timestamp),
        "content": content_to_dict(message.content),
    }


def message_from_dict(data: Dict[str, Any]) -> Message:
    """把 JSON 结构还原为 Message。

    结构不完整时抛出 KeyError / ValueError / TypeError，由调用方决定如何处理。
    """
    content = content_from_dict(data["content"])
    return Message(
        id=str(data["message_id"]),
        content=content,
        timestamp=parse_timestamp(data["timestamp"]),
    )
