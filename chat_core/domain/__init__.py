"""领域层模型与协议。

包含：
- models: Message / Part 等消息模型，以及会话状态枚举。
- events: 流式协议事件（text-delta、tool-call、tool-result、error、finish）。
- conversation: 会话容器，以及 HistoryStore / ModelCatalog 协作者协议。
- exceptions: 业务异常类型定义。
"""
