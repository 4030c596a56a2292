"""对外 API 服务模块。

提供组装好的控制器供上层应用（界面、命令行等）使用。
不持有全局单例：每次调用都按配置新建后端客户端与本地存储。
"""

from typing import Optional, Sequence

from chat_core.backend.http_client import HttpBackendClient
from chat_core.config.settings import settings
from chat_core.controller import ConversationController
from chat_core.domain.models import Message
from chat_core.infrastructure.storage.json_store import JsonConversationStore


def create_controller(cfg=None, initial_messages: Optional[Sequence[Message]] = None) -> ConversationController:
    """按配置创建 ConversationController。

    Args:
        cfg: 配置对象，默认使用全局 settings。
        initial_messages: 尚未登记会话时已展示的消息（例如欢迎语），
            首次创建会话时会一并写入存储。

    Returns:
        新的控制器；使用完毕后应 await controller.aclose()，
        或直接 async with create_controller() as controller。
    """
    cfg = cfg or settings
    store = JsonConversationStore(root=cfg.storage_root, key=cfg.storage_key)
    backend = HttpBackendClient(cfg)
    return ConversationController(
        backend,
        store,
        cfg=cfg,
        initial_messages=tuple(initial_messages) if initial_messages else None,
    )
