"""流式会话的状态机（纯函数实现）。

    Idle -> Connecting -> Streaming -> {Completed | Errored | Cancelled}

reduce(state, event) 返回新的状态与一组副作用，不触碰网络也不修改消息列表；
StreamSession 负责把副作用应用到 MessageLog 并关闭连接。
终止状态收到任何事件都原样返回、不产生副作用。
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Tuple, Union

from chat_core.domain.events import (
    CancelRequested,
    ConnectionLost,
    DoneEvent,
    ErrorEvent,
    SessionEvent,
    TokenEvent,
)
from chat_core.domain.models import Message


class Phase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.ERRORED, Phase.CANCELLED)


@dataclass(frozen=True)
class SessionState:
    conversation_id: str
    message_id: str
    phase: Phase = Phase.IDLE
    first_token_seen: bool = False
    connectivity_message: str = "Failed to connect to backend. Is the server running?"


# ---- 副作用 ----


@dataclass(frozen=True)
class AppendMessage:
    message: Message


@dataclass(frozen=True)
class ExtendContent:
    message_id: str
    fragment: str


@dataclass(frozen=True)
class PatchMessage:
    message_id: str
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CloseConnection:
    pass


Effect = Union[AppendMessage, ExtendContent, PatchMessage, CloseConnection]


def connect(state: SessionState) -> SessionState:
    if state.phase is not Phase.IDLE:
        return state
    return replace(state, phase=Phase.CONNECTING)


def reduce(state: SessionState, event: SessionEvent) -> Tuple[SessionState, List[Effect]]:
    if state.phase.terminal:
        return state, []

    if isinstance(event, CancelRequested):
        return replace(state, phase=Phase.CANCELLED), [CloseConnection()]

    if isinstance(event, TokenEvent):
        if not state.first_token_seen:
            msg = Message(role="assistant", content=event.text, id=state.message_id)
            return replace(state, phase=Phase.STREAMING, first_token_seen=True), [AppendMessage(msg)]
        return replace(state, phase=Phase.STREAMING), [ExtendContent(state.message_id, event.text)]

    if isinstance(event, ErrorEvent):
        effects: List[Effect]
        if state.first_token_seen:
            effects = [PatchMessage(state.message_id, {"role": "error", "content": event.message})]
        else:
            effects = [AppendMessage(Message(role="error", content=event.message))]
        effects.append(CloseConnection())
        return replace(state, phase=Phase.ERRORED), effects

    if isinstance(event, DoneEvent):
        effects = []
        if state.first_token_seen:
            effects.append(
                PatchMessage(state.message_id, {"tokens": event.tokens_used, "thinking": event.thinking})
            )
        effects.append(CloseConnection())
        return replace(state, phase=Phase.COMPLETED), effects

    if isinstance(event, ConnectionLost):
        effects = []
        if not state.first_token_seen:
            effects.append(AppendMessage(Message(role="error", content=state.connectivity_message)))
        effects.append(CloseConnection())
        return replace(state, phase=Phase.ERRORED), effects

    return state, []
