"""Terminal renderer for coach conversations and streamed replies."""

from __future__ import annotations

from datetime import datetime

from coachstream.core.crisis import build_crisis_notice_message
from coachstream.schemas.chat import Conversation, Message
from coachstream.services.errors import APIError
from coachstream.cli.lib.safe_output import emoji, safe_print, safe_print_err


def format_timestamp(ts: str) -> str:
    """Format ISO timestamp to readable format."""
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return ts


class ChatRenderer:
    """Render chat turns with a stable block structure."""

    _ROLE_LABEL = {
        "user": "Du",
        "assistant": "Coach",
    }

    def render_prompt_hint(self) -> None:
        safe_print("Schreib deine Nachricht. Strg+C stoppt die Antwort, /new startet neu, /retry wiederholt, /exit beendet.")

    def render_assistant_start(self) -> None:
        safe_print(f"{emoji('💬', '[COACH]')} ", end="", flush=True)

    def render_token(self, content: str) -> None:
        """Render incremental token without newline."""
        safe_print(content, end="", flush=True)

    def render_assistant_end(self) -> None:
        safe_print("")

    def render_cancelled(self) -> None:
        safe_print(f"{emoji('⏹', '[STOP]')} Antwort gestoppt.")

    def render_crisis_notice(self) -> None:
        safe_print("\n" + "-" * 60)
        safe_print(f"{emoji('💙', '[HILFE]')} " + build_crisis_notice_message().rstrip())
        safe_print("-" * 60)

    def render_error(self, error: APIError | str) -> None:
        """Render error block to stderr."""
        text = error.user_friendly_message() if isinstance(error, APIError) else error
        safe_print_err(f"\n{emoji('❌', '[ERROR]')} {text}")
        if isinstance(error, APIError):
            safe_print_err("Mit /retry kannst du es erneut versuchen.")

    def render_messages(self, messages: list[Message]) -> None:
        if not messages:
            safe_print("(keine Nachrichten)")
            return
        for message in messages:
            label = self._ROLE_LABEL.get(message.role, message.role)
            safe_print(f"[{label}] {message.content}")

    def render_conversations(self, conversations: list[Conversation]) -> None:
        if not conversations:
            safe_print("Keine Gespräche gefunden.")
            return
        for conversation in conversations:
            marker = " (archiviert)" if conversation.archived else ""
            safe_print(
                f"{conversation.id}  {format_timestamp(conversation.updated_at)}  "
                f"{conversation.title}{marker}"
            )
