from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from .exceptions import BusinessError
from .models import Message, Role


@dataclass
class Conversation:
    """有序消息序列：插入顺序即对话顺序，消息 ID 在会话内唯一。"""

    id: str = field(default_factory=lambda: f"c-{uuid4().hex}")
    messages: List[Message] = field(default_factory=list)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)

    def append(self, message: Message) -> None:
        if any(m.id == message.id for m in self.messages):
            raise BusinessError(code="DUPLICATE_MESSAGE_ID", message=message.id)
        self.messages.append(message)

    def last(self, role: Optional[Role] = None) -> Optional[Message]:
        for message in reversed(self.messages):
            if role is None or message.role == role:
                return message
        return None

    def pop_last(self) -> Message:
        if not self.messages:
            raise BusinessError(code="EMPTY_CONVERSATION", message="conversation has no messages")
        return self.messages.pop()

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(m.snapshot() for m in self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "messages": [m.to_dict() for m in self.messages]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        conv = cls(id=str(data.get("id") or f"c-{uuid4().hex}"))
        for item in data.get("messages") or []:
            conv.append(Message.from_dict(item))
        return conv


@dataclass(frozen=True)
class ModelInfo:
    """模型目录中的一项，对会话核心而言是不透明的元数据。"""

    id: str
    display_name: str
    description: str = ""
    context_length: int = 0
    capabilities: Sequence[str] = ()
    supports_images: bool = False


class HistoryStore(Protocol):
    """历史持久化协作者，只在会话边界调用，流式过程中从不调用。"""

    def load_history(self) -> Conversation:
        ...

    def save_history(self, conversation: Conversation) -> None:
        ...


class ModelCatalog(Protocol):
    async def list_models(self) -> List[ModelInfo]:
        ...
