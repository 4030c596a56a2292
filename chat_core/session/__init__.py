"""流式会话：纯状态机 (reducer) 与连接管理 (stream_session)。"""

from chat_core.session.reducer import Phase, SessionState, reduce
from chat_core.session.stream_session import StreamSession

__all__ = ["Phase", "SessionState", "StreamSession", "reduce"]
