"""事件流解复用器。

把任意切分的文本/字节片段还原为完整的入站事件。片段边界可以落在任何位置：
UTF-8 多字节字符中间、字段名中间、JSON 载荷中间。

处理规则：
- 每次收到片段先追加到残留缓冲区，再按换行切分；最后一段（可能为空）
  不处理，作为新的残留，因为它可能是不完整的一行。
- ``event:`` 行设置待定事件名（去除首尾空白）。
- ``data:`` 行在存在待定事件名且载荷非空时按 JSON 解析；成功则产出事件，
  失败则产出一个合成的 ``error`` 事件并继续处理。处理完 data 行后清空待定事件名。
- 空行清空待定事件名，不产出任何事件。
- 其他行忽略。
"""

import codecs
import json
import logging
from typing import List, Optional

from chat_core.domain.events import ErrorEvent, InboundEvent, event_from_payload
from chat_core.domain.exceptions import ParseError
from chat_core.infrastructure.logging.logger import log_event


EVENT_FIELD = "event:"
DATA_FIELD = "data:"


class StreamDemultiplexer:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_event: Optional[str] = None

    @property
    def pending_text(self) -> str:
        """尚未组成完整行的残留文本。"""
        return self._buffer

    def feed(self, fragment: bytes | str) -> List[InboundEvent]:
        """喂入一个片段，返回本次新产生的完整事件（按到达顺序）。"""
        if isinstance(fragment, (bytes, bytearray)):
            text = self._decoder.decode(bytes(fragment))
        else:
            text = fragment
        if not text:
            return []

        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events: List[InboundEvent] = []
        for line in lines:
            event = self._process_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def reset(self) -> None:
        """丢弃残留缓冲与待定事件名。"""
        self._decoder.reset()
        self._buffer = ""
        self._pending_event = None

    def _process_line(self, line: str) -> Optional[InboundEvent]:
        if line.startswith(EVENT_FIELD):
            self._pending_event = line[len(EVENT_FIELD):].strip()
            return None

        if line.startswith(DATA_FIELD):
            event_type, self._pending_event = self._pending_event, None
            payload = line[len(DATA_FIELD):].strip()
            if not event_type or not payload:
                return None
            return self._decode(event_type, payload)

        if line == "":
            self._pending_event = None
        return None

    @staticmethod
    def _decode(event_type: str, payload: str) -> Optional[InboundEvent]:
        try:
            data = json.loads(payload)
            event = event_from_payload(event_type, data)
        except json.JSONDecodeError as e:
            log_event(logging.WARNING, "Failed to parse event data", {"event_type": event_type}, error=str(e))
            return ErrorEvent(error=f"Failed to parse event data: {e}", synthetic=True)
        except ParseError as e:
            log_event(logging.WARNING, "Invalid event payload", {"event_type": event_type, "code": e.code}, error=e.message)
            return ErrorEvent(error=f"Failed to parse event data: {e.message}", synthetic=True)
        if event is None:
            log_event(logging.WARNING, "Dropped unknown event type", {"event_type": event_type})
        return event
