import tempfile
from pathlib import Path

import pytest

from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Message, TerminalReason, TextPart
from chat_core.infrastructure.storage.json_store import JsonHistoryStore


def test_json_store_save_and_load():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonHistoryStore(root=root)
        conv = Conversation(id="c1")
        conv.append(Message.create("user", [TextPart(text="hello")], closed=True))
        reply = Message.create("assistant", [TextPart(text="Hi")], model="llama3.2")
        reply.terminal_reason = TerminalReason.CANCELLED
        conv.append(reply)

        store.save_history(conv)
        assert (root / "history.json").exists()
        assert list(root.glob("*.tmp")) == []

        loaded = store.load_history()
        assert loaded.id == "c1"
        assert [m.text for m in loaded] == ["hello", "Hi"]
        assert loaded.last().terminal_reason is TerminalReason.CANCELLED


def test_json_store_missing_file_is_empty():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d))
        assert len(store.load_history()) == 0


def test_json_store_corrupt_file():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d))
        store.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(BusinessError) as exc:
            store.load_history()
        assert exc.value.code == "STORE_READ_ERROR"
