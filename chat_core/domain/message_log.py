"""当前会话的有序消息列表。

所有修改都经过 append / update_by_id，每次修改后若存在活动会话 id，
立即整体写回 ConversationStore。写入在调用方所在的事件循环里同步完成，
因此落盘顺序与修改顺序一致。
"""

from typing import Callable, Iterable, List, Optional, Tuple

from chat_core.domain.conversation import ConversationStore
from chat_core.domain.models import Message


MessageUpdater = Callable[[Message], Message]


class MessageLog:
    def __init__(
        self,
        store: ConversationStore,
        conversation_id: Optional[str] = None,
        messages: Optional[Iterable[Message]] = None,
    ):
        self._store = store
        self._conversation_id = conversation_id
        self._messages: List[Message] = list(messages or [])

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    def append(self, message: Message) -> None:
        self._messages.append(message)
        self._persist()

    def update_by_id(self, message_id: str, updater: MessageUpdater) -> bool:
        """用 updater(旧消息) 替换 id 匹配的消息，找不到时不做任何事。"""

        for idx, current in enumerate(self._messages):
            if current.id == message_id:
                self._messages[idx] = updater(current)
                self._persist()
                return True
        return False

    def reset(self, conversation_id: Optional[str], messages: Optional[Iterable[Message]] = None) -> None:
        """切换到另一个会话，不触发持久化。"""

        self._conversation_id = conversation_id
        self._messages = list(messages or [])

    def bind(self, conversation_id: str) -> None:
        """绑定会话 id，并把当前已展示的消息登记到存储。"""

        self._conversation_id = conversation_id
        self._persist()

    def _persist(self) -> None:
        if self._conversation_id:
            self._store.upsert(self._conversation_id, self._messages)
