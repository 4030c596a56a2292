import tempfile
from pathlib import Path

import pytest

from chat_core.infrastructure.storage.json_store import JsonConversationStore


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as d:
        yield JsonConversationStore(root=Path(d) / ".storage", key="test-chat")
