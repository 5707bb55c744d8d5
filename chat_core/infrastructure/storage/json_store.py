import json
import os
from pathlib import Path
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, HistoryStore
from chat_core.domain.exceptions import BusinessError


class JsonHistoryStore(HistoryStore):
    """把整个会话保存为 ``<storage_root>/history.json``。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "history.json"

    @property
    def path(self) -> Path:
        return self._path

    def load_history(self) -> Conversation:
        if not self._path.exists():
            return Conversation()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return Conversation.from_dict(data)
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def save_history(self, conversation: Conversation) -> None:
        tmp_path = self._root / f"history.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(conversation.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except Exception as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
