"""统一的消息与交换数据模型。

本模块定义了控制器、流会话与存储之间共享的标准数据结构：

- Message: 对话中的一条消息（user/assistant/error）。
- Attachment: 随消息一起上传的文件。
- ChatReply: 非流式交换（JSON 或附件）返回的统一结果。
- HealthStatus: 后端健康检查结果。

后端 JSON 与这些模型之间的转换只发生在 backend 与 storage 层，
上层代码不直接读取原始 JSON。
"""

import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from chat_core.domain.exceptions import ValidationError


# 消息角色：error 角色用于在对话中直接展示失败信息
Role = Literal["user", "assistant", "error"]
ROLES = ("user", "assistant", "error")


def token_count(value: Any) -> Optional[int]:
    """把后端报告的 token 用量规整为非负整数，无法识别时返回 None。

    JSON 里的 2.0 这类整数值浮点数按整数处理，布尔值不算。
    """

    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        return None
    return value


@dataclass(frozen=True)
class Message:
    """一条对话消息。

    - id: 仅流式助手消息需要（后续增量按 id 更新），其余消息可为空。
    - role: 消息角色。
    - content: 原始文本内容（可能包含思考片段）。
    - tokens: 后端报告的 token 用量。
    - thinking: 思考片段文本。

    消息不可变，更新通过 dataclasses.replace 生成新对象。
    """

    role: Role
    content: str
    id: Optional[str] = None
    tokens: Optional[int] = None
    thinking: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.id is not None:
            payload["id"] = self.id
        if self.tokens is not None:
            payload["tokens"] = self.tokens
        if self.thinking is not None:
            payload["thinking"] = self.thinking
        return payload

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """从持久化 JSON 还原消息，结构不合法时抛 ValueError。"""

        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        role = data.get("role")
        content = data.get("content")
        if role not in ROLES:
            raise ValueError(f"unknown role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        msg_id = data.get("id")
        if msg_id is not None and not isinstance(msg_id, str):
            raise ValueError("id must be a string")
        tokens = data.get("tokens")
        if tokens is not None:
            tokens = token_count(tokens)
            if tokens is None:
                raise ValueError("tokens must be a non-negative integer")
        thinking = data.get("thinking")
        if thinking is not None and not isinstance(thinking, str):
            raise ValueError("thinking must be a string")
        return cls(role=role, content=content, id=msg_id, tokens=tokens, thinking=thinking)


@dataclass
class Attachment:
    """一次附件交换上传的文件。"""

    name: str
    data: bytes
    content_type: str = "application/octet-stream"

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError(code="INVALID_ATTACHMENT", message="Attachment name must not be empty")

    @classmethod
    def from_path(cls, path: str | Path) -> "Attachment":
        p = Path(path)
        guessed, _ = mimetypes.guess_type(p.name)
        return cls(name=p.name, data=p.read_bytes(), content_type=guessed or "application/octet-stream")


@dataclass
class ChatReply:
    """非流式交换的结果。

    response 为助手回复；后端返回的错误以 BackendError 抛出，不在这里出现。
    conversation_id 为部分后端版本回显的会话 id，仅用于兼容检查。
    """

    response: str = ""
    tokens_used: Optional[int] = None
    conversation_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthStatus:
    """后端健康状态。"""

    connected: bool = False
    model_loaded: bool = False

    @property
    def label(self) -> str:
        if not self.connected:
            return "Disconnected"
        return "LLM Ready" if self.model_loaded else "Mock Mode"
