"""单次流式交换的会话对象。

StreamSession 持有一条事件流连接的整个生命周期：

1. open() 打开连接（Idle -> Connecting），逐条解码事件并交给 reducer。
2. reducer 返回的副作用在这里应用到 MessageLog。
3. 任何终止状态（完成/出错/取消）都会关闭连接；close() 可在任意时刻调用。

无法解析的帧直接丢弃，不影响会话状态。
"""

import asyncio
from contextlib import aclosing
from dataclasses import replace
from typing import Optional
from uuid import uuid4

from chat_core.backend.base import BackendClient
from chat_core.domain.events import CancelRequested, ConnectionLost, ErrorEvent, SessionEvent, decode_event
from chat_core.domain.exceptions import BackendError, ConnectivityError
from chat_core.domain.message_log import MessageLog
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.reducer import (
    AppendMessage,
    CloseConnection,
    Effect,
    ExtendContent,
    PatchMessage,
    Phase,
    SessionState,
    connect,
    reduce,
)


class StreamSession:
    def __init__(
        self,
        backend: BackendClient,
        log: MessageLog,
        conversation_id: str,
        *,
        message_id: Optional[str] = None,
        connectivity_message: Optional[str] = None,
    ):
        self._backend = backend
        self._log = log
        state = SessionState(conversation_id=conversation_id, message_id=message_id or f"m-{uuid4().hex}")
        if connectivity_message:
            state = replace(state, connectivity_message=connectivity_message)
        self._state = state
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def active(self) -> bool:
        return not self._state.phase.terminal

    @property
    def first_token_seen(self) -> bool:
        return self._state.first_token_seen

    @property
    def message_id(self) -> str:
        return self._state.message_id

    async def open(self, text: str) -> SessionState:
        """打开事件流并一直消费到终止状态，返回最终状态。"""

        if self._state.phase is not Phase.IDLE:
            return self._state
        self._task = asyncio.current_task()
        self._state = connect(self._state)
        self._emit("stream.connecting")
        try:
            async with aclosing(self._backend.stream(self._state.conversation_id, text)) as frames:
                async for raw in frames:
                    if not self.active:
                        break
                    event = decode_event(raw)
                    if event is None:
                        logger.debug("stream.noise", extra={"extra": self._ctx(frame=raw[:64])})
                        continue
                    self.dispatch(event)
                    if not self.active:
                        break
        except BackendError as e:
            self.dispatch(ErrorEvent(message=e.message))
        except ConnectivityError as e:
            logger.warning("stream.connection_lost", extra={"extra": self._ctx(error=e.message)})
            self.dispatch(ConnectionLost(reason=e.message))
        except asyncio.CancelledError:
            self.close()
            raise
        else:
            if self.active:
                # 服务端在 done/error 之前关闭了连接
                self.dispatch(ConnectionLost(reason="stream ended"))
        finally:
            self._task = None
        return self._state

    def dispatch(self, event: SessionEvent) -> None:
        """把事件送入状态机并应用副作用；终止状态下什么也不做。"""

        before = self._state.phase
        self._state, effects = reduce(self._state, event)
        for effect in effects:
            self._apply(effect)
        if self._state.phase is not before and self._state.phase.terminal:
            self._emit(f"stream.{self._state.phase.value}")

    def close(self) -> None:
        """取消会话。可重复调用；已处于终止状态时只确保连接被释放。"""

        self.dispatch(CancelRequested())
        self._release()

    def _apply(self, effect: Effect) -> None:
        if isinstance(effect, AppendMessage):
            self._log.append(effect.message)
        elif isinstance(effect, ExtendContent):
            self._log.update_by_id(
                effect.message_id, lambda m: replace(m, content=m.content + effect.fragment)
            )
        elif isinstance(effect, PatchMessage):
            self._log.update_by_id(effect.message_id, lambda m: replace(m, **effect.changes))
        elif isinstance(effect, CloseConnection):
            self._release()

    def _release(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # 在读取循环内部终止时，循环会自行退出并关闭连接
            return
        task.cancel()

    def _emit(self, message: str) -> None:
        logger.info(message, extra={"extra": self._ctx()})

    def _ctx(self, **fields) -> dict:
        payload = {
            "conversation_id": self._state.conversation_id,
            "message_id": self._state.message_id,
            "phase": self._state.phase.value,
        }
        payload.update(fields)
        return payload
