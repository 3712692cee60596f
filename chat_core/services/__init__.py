"""与后端交互的服务层：HTTP 客户端、历史加载与发送编排。"""
