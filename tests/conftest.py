import pytest

from coachstream.services.chat_store import ConversationStore


@pytest.fixture
def store(tmp_path):
    return ConversationStore(db_path=tmp_path / "chat.db", user_id="user-a")
