"""领域层模型与协议。

包含：
- models: Message / Attachment / ChatReply / HealthStatus。
- conversation: 会话与本地缓存模型及 ConversationStore 抽象。
- message_log: 当前会话的有序消息列表。
- events: 流式事件及其解码。
- thinking: 思考片段的提取与剥离。
- exceptions: 业务异常类型定义。
"""
