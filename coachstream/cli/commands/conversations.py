"""Conversations command - list and manage stored coaching conversations."""

import json

import typer

from coachstream.cli.commands.chat import build_store
from coachstream.cli.lib.chat_renderer import ChatRenderer
from coachstream.cli.lib.safe_output import safe_print
from coachstream.services.chat_store import ConversationStoreError

conversations_app = typer.Typer(help="Manage stored coaching conversations")


def _not_found(conversation_id: str) -> None:
    ChatRenderer().render_error(f"Gespräch nicht gefunden: {conversation_id}")
    raise typer.Exit(code=1)


@conversations_app.command("list")
def list_conversations(
    ctx: typer.Context,
    archived: bool = typer.Option(False, "--archived", help="Show archived conversations instead."),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of conversations to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List conversations, most recently active first."""
    conversations = build_store(ctx.obj).list_conversations(archived=archived, limit=limit)
    if json_output:
        safe_print(json.dumps([c.model_dump() for c in conversations], ensure_ascii=False, indent=2))
        return
    ChatRenderer().render_conversations(conversations)


@conversations_app.command("show")
def show_conversation(ctx: typer.Context, conversation_id: str) -> None:
    """Print every message of a conversation in order."""
    store = build_store(ctx.obj)
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        _not_found(conversation_id)
    safe_print(f"# {conversation.title}")
    ChatRenderer().render_messages(store.load_messages(conversation_id))


@conversations_app.command("rename")
def rename_conversation(ctx: typer.Context, conversation_id: str, title: str) -> None:
    """Rename a conversation."""
    try:
        renamed = build_store(ctx.obj).rename_conversation(conversation_id, title)
    except ValueError as e:
        ChatRenderer().render_error(str(e))
        raise typer.Exit(code=1)
    if not renamed:
        _not_found(conversation_id)
    safe_print(f"Umbenannt: {title.strip()}")


@conversations_app.command("archive")
def archive_conversation(ctx: typer.Context, conversation_id: str) -> None:
    """Archive a conversation."""
    if not build_store(ctx.obj).archive_conversation(conversation_id):
        _not_found(conversation_id)
    safe_print("Archiviert.")


@conversations_app.command("unarchive")
def unarchive_conversation(ctx: typer.Context, conversation_id: str) -> None:
    """Move a conversation back out of the archive."""
    if not build_store(ctx.obj).unarchive_conversation(conversation_id):
        _not_found(conversation_id)
    safe_print("Wiederhergestellt.")


@conversations_app.command("delete")
def delete_conversation(
    ctx: typer.Context,
    conversation_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete a conversation and all of its messages."""
    if not yes:
        typer.confirm("Gespräch wirklich löschen?", abort=True)
    if not build_store(ctx.obj).delete_conversation(conversation_id):
        _not_found(conversation_id)
    safe_print("Gelöscht.")


@conversations_app.command("delete-all")
def delete_all_conversations(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete every conversation of the configured user."""
    if not yes:
        typer.confirm("Alle Gespräche wirklich löschen?", abort=True)
    try:
        removed = build_store(ctx.obj).delete_all_conversations()
    except ConversationStoreError as e:
        ChatRenderer().render_error(str(e))
        raise typer.Exit(code=1)
    safe_print(f"{removed} Gespräche gelöscht.")
