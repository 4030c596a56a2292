import json
import os
from pathlib import Path
from typing import Optional, Sequence
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore, StoreState
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger


def _copy_state(state: StoreState) -> StoreState:
    return StoreState(
        conversations={cid: Conversation(id=c.id, messages=list(c.messages)) for cid, c in state.conversations.items()},
        last_conversation_id=state.last_conversation_id,
    )


class JsonConversationStore(ConversationStore):
    """把全部会话缓存在一个 JSON 文件里，键名固定。

    缓存不是数据源：读取失败视为空，写入失败只记日志。
    整个进程只有这一个写者，所以文件内容在内存里保留一份，
    upsert 只改内存副本再整体覆盖写出，不再回读文件。
    """

    def __init__(self, root: str | Path | None = None, key: str | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._path = self._root / f"{key or settings.storage_key}.json"
        self._state: Optional[StoreState] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StoreState:
        try:
            self._state = self._read()
        except OSError as e:
            # 读不到不代表文件为空，内存副本保持原样
            logger.warning("store.load.failed", extra={"extra": {"path": str(self._path), "error": str(e)}})
            return StoreState()
        return _copy_state(self._state)

    def save(self, state: StoreState) -> None:
        self._state = _copy_state(state)
        self._write(self._state)

    def upsert(self, conversation_id: str, messages: Sequence[Message]) -> None:
        if self._state is None:
            try:
                self._state = self._read()
            except OSError as e:
                # 此时写出会覆盖掉其他会话；跳过本次，下次 upsert 会带上完整消息重试
                logger.warning(
                    "store.upsert.skipped",
                    extra={"extra": {"path": str(self._path), "conversation_id": conversation_id, "error": str(e)}},
                )
                return
        self._state.conversations[conversation_id] = Conversation(id=conversation_id, messages=list(messages))
        self._state.last_conversation_id = conversation_id
        self._write(self._state)

    def _read(self) -> StoreState:
        """读取并解析文件。文件不存在或内容损坏返回空状态，其余 OSError 向上抛出。"""

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return StoreState.from_dict(data)
        except FileNotFoundError:
            return StoreState()
        except ValueError as e:
            # json.JSONDecodeError 与 UnicodeDecodeError 都是 ValueError
            logger.warning("store.load.corrupt", extra={"extra": {"path": str(self._path), "error": str(e)}})
            return StoreState()

    def _write(self, state: StoreState) -> None:
        tmp_path = self._root / f"{self._path.stem}.{uuid4().hex}.json.tmp"
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("store.save.failed", extra={"extra": {"path": str(self._path), "error": str(e)}})
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
