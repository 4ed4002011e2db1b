"""Tests for the coachstream CLI commands."""

import json

import pytest
from typer.testing import CliRunner

from coachstream.cli.commands import chat as chat_command
from coachstream.cli.main import app
from coachstream.services.chat_store import ConversationStore

from streaming_fakes import FakeEndpoint, make_transport, sse_body

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "chat.db"


@pytest.fixture
def cli_store(db_path):
    return ConversationStore(db_path=db_path, user_id="cli-user")


def invoke(db_path, *args, input=None):
    return runner.invoke(app, ["--db", str(db_path), "--user", "cli-user", *args], input=input)


class TestConversationsCommands:
    def test_list_empty(self, db_path):
        result = invoke(db_path, "conversations", "list")
        assert result.exit_code == 0
        assert "Keine Gespräche gefunden." in result.output

    def test_list_json(self, db_path, cli_store):
        conversation_id = cli_store.create_conversation()
        cli_store.append_message(conversation_id, "user", "Hallo Coach")

        result = invoke(db_path, "conversations", "list", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data[0]["id"] == conversation_id
        assert data[0]["title"] == "Hallo Coach"

    def test_list_is_scoped_to_user(self, db_path):
        ConversationStore(db_path=db_path, user_id="someone-else").create_conversation()

        result = invoke(db_path, "conversations", "list")

        assert "Keine Gespräche gefunden." in result.output

    def test_show(self, db_path, cli_store):
        conversation_id = cli_store.create_conversation()
        cli_store.append_message(conversation_id, "user", "Wie verbessere ich meine Haut?")
        cli_store.append_message(conversation_id, "assistant", "Trink mehr Wasser.")

        result = invoke(db_path, "conversations", "show", conversation_id)

        assert result.exit_code == 0
        assert "[Du] Wie verbessere ich meine Haut?" in result.output
        assert "[Coach] Trink mehr Wasser." in result.output

    def test_show_unknown(self, db_path):
        result = invoke(db_path, "conversations", "show", "missing")
        assert result.exit_code == 1
        assert "Gespräch nicht gefunden" in result.output

    def test_rename_archive_unarchive(self, db_path, cli_store):
        conversation_id = cli_store.create_conversation()

        assert invoke(db_path, "conversations", "rename", conversation_id, "Schlaf").exit_code == 0
        assert cli_store.get_conversation(conversation_id).title == "Schlaf"

        result = invoke(db_path, "conversations", "archive", conversation_id)
        assert "Archiviert." in result.output
        assert cli_store.get_conversation(conversation_id).archived

        archived = invoke(db_path, "conversations", "list", "--archived")
        assert "(archiviert)" in archived.output

        result = invoke(db_path, "conversations", "unarchive", conversation_id)
        assert "Wiederhergestellt." in result.output
        assert not cli_store.get_conversation(conversation_id).archived

    def test_delete_requires_confirmation(self, db_path, cli_store):
        conversation_id = cli_store.create_conversation()

        declined = invoke(db_path, "conversations", "delete", conversation_id, input="n\n")
        assert declined.exit_code == 1
        assert cli_store.get_conversation(conversation_id) is not None

        confirmed = invoke(db_path, "conversations", "delete", conversation_id, "--yes")
        assert confirmed.exit_code == 0
        assert cli_store.get_conversation(conversation_id) is None

    def test_delete_all(self, db_path, cli_store):
        cli_store.create_conversation()
        cli_store.create_conversation()

        result = invoke(db_path, "conversations", "delete-all", "--yes")

        assert result.exit_code == 0
        assert "2 Gespräche gelöscht." in result.output
        assert cli_store.list_conversations() == []


class TestChatCommand:
    def test_requires_token(self, db_path, monkeypatch):
        monkeypatch.delenv("COACH_API_TOKEN", raising=False)
        result = invoke(db_path, "chat", input="/exit\n")
        assert result.exit_code == 1
        assert "Kein Token" in result.output

    def test_streams_reply_and_persists_turn(self, db_path, cli_store, monkeypatch):
        endpoint = FakeEndpoint([sse_body("Trink", " mehr Wasser.")])
        monkeypatch.setattr(chat_command, "build_transport", lambda config: make_transport(endpoint))

        result = invoke(db_path, "--token", "t", "chat", input="Wie verbessere ich meine Haut?\n/exit\n")

        assert result.exit_code == 0, result.output
        assert "Trink mehr Wasser." in result.output
        conversations = cli_store.list_conversations()
        assert len(conversations) == 1
        assert [(m.role, m.content) for m in cli_store.load_messages(conversations[0].id)] == [
            ("user", "Wie verbessere ich meine Haut?"),
            ("assistant", "Trink mehr Wasser."),
        ]

    def test_error_is_reported_and_loop_continues(self, db_path, monkeypatch):
        endpoint = FakeEndpoint(status_code=429, body=json.dumps({"error": "Rate limit erreicht."}).encode())
        monkeypatch.setattr(chat_command, "build_transport", lambda config: make_transport(endpoint))

        result = invoke(db_path, "--token", "t", "chat", input="Hallo\nNoch mal\n/exit\n")

        assert result.exit_code == 0
        assert "Rate limit erreicht." in result.output
        assert len(endpoint.requests) == 2

    def test_crisis_notice_is_shown(self, db_path, monkeypatch):
        endpoint = FakeEndpoint([sse_body("Ich höre dir zu.")])
        monkeypatch.setattr(chat_command, "build_transport", lambda config: make_transport(endpoint))

        result = invoke(db_path, "--token", "t", "chat", input="Ich fühle mich hoffnungslos\n/exit\n")

        assert "Du bist nicht allein." in result.output
        assert "0800 111 0 111" in result.output

    def test_continue_unknown_conversation(self, db_path, monkeypatch):
        monkeypatch.setattr(chat_command, "build_transport", lambda config: make_transport(FakeEndpoint()))

        result = invoke(db_path, "--token", "t", "chat", "--conversation", "missing", input="/exit\n")

        assert result.exit_code == 1
        assert "Gespräch nicht gefunden" in result.output

    def test_continue_stored_conversation(self, db_path, cli_store, monkeypatch):
        conversation_id = cli_store.create_conversation()
        cli_store.append_message(conversation_id, "user", "Erste Frage")
        cli_store.append_message(conversation_id, "assistant", "Erste Antwort")
        endpoint = FakeEndpoint([sse_body("Zweite Antwort")])
        monkeypatch.setattr(chat_command, "build_transport", lambda config: make_transport(endpoint))

        result = invoke(db_path, "--token", "t", "chat", "-c", conversation_id, input="Zweite Frage\n/exit\n")

        assert result.exit_code == 0, result.output
        assert "[Coach] Erste Antwort" in result.output
        assert len(endpoint.request_json()["messages"]) == 3
        assert len(cli_store.load_messages(conversation_id)) == 4
