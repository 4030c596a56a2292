"""Chat Core 顶层包。

该包提供聊天前端的会话核心：把后端的增量事件流整理成连贯、
可持久化的对话记录，并支持取消、附件交换与中途失败的恢复。
包括配置加载、领域模型、后端适配、流会话状态机与本地缓存。
"""

from chat_core.controller import ChatSnapshot, ConversationController

__all__ = ["ChatSnapshot", "ConversationController"]
