"""流式事件模型与解码。

后端事件流的每条 data 都是一个 JSON 对象，语义字段三选一：

- {"token": "..."}                       -> TokenEvent
- {"error": "..."}                       -> ErrorEvent
- {"done": true, "tokens_used"?, "thinking"?} -> DoneEvent

decode_event 只在边界调用一次，之后的代码只处理这些类型。
无法解析或没有语义字段的帧返回 None，由调用方当作传输噪声丢弃。

ConnectionLost 与 CancelRequested 不来自线路，而是会话自身产生的信号。
"""

import json
from dataclasses import dataclass
from typing import Optional, Union

from chat_core.domain.models import token_count


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class DoneEvent:
    tokens_used: Optional[int] = None
    thinking: Optional[str] = None


@dataclass(frozen=True)
class ConnectionLost:
    reason: str = ""


@dataclass(frozen=True)
class CancelRequested:
    pass


WireEvent = Union[TokenEvent, ErrorEvent, DoneEvent]
SessionEvent = Union[TokenEvent, ErrorEvent, DoneEvent, ConnectionLost, CancelRequested]


def decode_event(raw: str) -> Optional[WireEvent]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None

    token = data.get("token")
    if isinstance(token, str) and token:
        return TokenEvent(text=token)

    error = data.get("error")
    if isinstance(error, str) and error:
        return ErrorEvent(message=error)

    if data.get("done") is True:
        tokens_used = token_count(data.get("tokens_used"))
        thinking = data.get("thinking")
        if not isinstance(thinking, str) or not thinking:
            thinking = None
        return DoneEvent(tokens_used=tokens_used, thinking=thinking)

    return None
