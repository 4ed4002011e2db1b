"""Chat command - interactive coaching session with live token rendering."""

import asyncio
import logging
import signal
from contextlib import contextmanager
from typing import Iterator, Optional

import typer

from coachstream.cli.lib.chat_renderer import ChatRenderer
from coachstream.core.config import CoachConfig
from coachstream.services.chat_session import ChatSessionController, SessionState, TurnResult
from coachstream.services.chat_store import ConversationNotFoundError, ConversationStore
from coachstream.services.transport import StreamingTransport

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"/exit", "/quit"}


def build_transport(config: CoachConfig) -> StreamingTransport:
    return StreamingTransport(
        endpoint_url=config.endpoint_url,
        token_provider=lambda: config.api_token,
        timeout=config.timeout,
        idle_timeout=config.idle_timeout,
    )


def build_store(config: CoachConfig) -> ConversationStore:
    return ConversationStore(db_path=config.db_path, user_id=config.user_id)


@contextmanager
def _interrupt_cancels(controller: ChatSessionController) -> Iterator[None]:
    """Route Ctrl+C to ``controller.cancel`` while a reply is streaming."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        # Windows event loops and non-main threads cannot install handlers.
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _report(renderer: ChatRenderer, controller: ChatSessionController, result: Optional[TurnResult]) -> None:
    if result is None:
        return
    if result.outcome is SessionState.ERRORED:
        renderer.render_error(result.error or "Nachricht konnte nicht gesendet werden")
        return
    renderer.render_assistant_end()
    if result.outcome is SessionState.CANCELLED:
        renderer.render_cancelled()
    if controller.crisis_detected:
        renderer.render_crisis_notice()
        controller.dismiss_crisis_notice()


async def run_chat_loop(
    controller: ChatSessionController,
    renderer: ChatRenderer,
    conversation_id: Optional[str] = None,
) -> None:
    if conversation_id:
        renderer.render_messages(controller.open_conversation(conversation_id))

    renderer.render_prompt_hint()
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break

        text = line.strip()
        if not text:
            continue
        if text in EXIT_COMMANDS:
            break
        if text == "/new":
            controller.new_conversation()
            continue

        with _interrupt_cancels(controller):
            if text == "/retry":
                renderer.render_assistant_start()
                result = await controller.retry()
                if result is None:
                    renderer.render_assistant_end()
            else:
                renderer.render_assistant_start()
                result = await controller.send_turn(text)
        _report(renderer, controller, result)


async def _run(config: CoachConfig, conversation_id: Optional[str]) -> None:
    renderer = ChatRenderer()
    async with build_transport(config) as transport:
        controller = ChatSessionController(
            transport=transport,
            store=build_store(config),
            on_delta=lambda fragment, _message: renderer.render_token(fragment),
        )
        await run_chat_loop(controller, renderer, conversation_id)


def chat(
    ctx: typer.Context,
    conversation_id: Optional[str] = typer.Option(
        None,
        "--conversation",
        "-c",
        help="Continue a stored conversation instead of starting a new one.",
    ),
) -> None:
    """Start an interactive coaching chat."""
    config: CoachConfig = ctx.obj
    if not config.api_token:
        ChatRenderer().render_error("Kein Token gesetzt (COACH_API_TOKEN oder --token).")
        raise typer.Exit(code=1)
    try:
        asyncio.run(_run(config, conversation_id))
    except ConversationNotFoundError:
        ChatRenderer().render_error(f"Gespräch nicht gefunden: {conversation_id}")
        raise typer.Exit(code=1)
