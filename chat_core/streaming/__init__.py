"""事件流处理。

- demux: 把任意切分的片段还原为入站事件。
- transport: 一次流式响应的读取生命周期与取消。
"""

from chat_core.streaming.demux import StreamDemultiplexer
from chat_core.streaming.transport import TransportSession

__all__ = ["StreamDemultiplexer", "TransportSession"]
