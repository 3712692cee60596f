"""领域层模型与协议。

包含：
- models: 消息内容联合类型、Message 以及 JSON 转换。
- events: 从事件流解码出的入站事件。
- thread: 线程元数据、线程索引与元数据推导。
- persistence: PersistenceAdapter 抽象。
- exceptions: 业务异常类型定义。
"""
