from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import Message


@dataclass
class Conversation:
    id: str
    messages: List[Message] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "messages": [m.to_dict() for m in self.messages]}

    @classmethod
    def from_dict(cls, data: Any) -> "Conversation":
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            raise ValueError("conversation must be an object with a string id")
        raw_messages = data.get("messages") or []
        if not isinstance(raw_messages, list):
            raise ValueError("messages must be a list")
        return cls(id=data["id"], messages=[Message.from_dict(m) for m in raw_messages])


@dataclass
class StoreState:
    """本地缓存的完整内容。

    若 last_conversation_id 非空，则 conversations 中必定存在对应条目。
    """

    conversations: Dict[str, Conversation] = field(default_factory=dict)
    last_conversation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversations": {cid: conv.to_dict() for cid, conv in self.conversations.items()},
            "lastConversationId": self.last_conversation_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StoreState":
        if not isinstance(data, dict):
            raise ValueError("store must be an object")
        raw_convs = data.get("conversations") or {}
        if not isinstance(raw_convs, dict):
            raise ValueError("conversations must be an object")
        conversations = {}
        for key, raw in raw_convs.items():
            conv = Conversation.from_dict(raw)
            if conv.id != key:
                raise ValueError(f"conversation key {key!r} does not match id {conv.id!r}")
            conversations[key] = conv
        last_id = data.get("lastConversationId")
        if last_id is not None and not isinstance(last_id, str):
            raise ValueError("lastConversationId must be a string or null")
        if last_id is not None and last_id not in conversations:
            last_id = None
        return cls(conversations=conversations, last_conversation_id=last_id)


class ConversationStore(Protocol):
    def load(self) -> StoreState:
        ...

    def save(self, state: StoreState) -> None:
        ...

    def upsert(self, conversation_id: str, messages: Sequence[Message]) -> None:
        ...
