"""
Chat session controller.

Drives one logical turn at a time: persist the user message, stream the
assistant reply into an in-memory placeholder, then persist the result once.

    IDLE -> SENDING -> STREAMING -> COMPLETED | CANCELLED | ERRORED -> IDLE

Transitions go through ``transition()``, a pure function over
``TRANSITIONS``; the controller never assigns ``state`` any other way.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from coachstream.core import crisis
from coachstream.schemas.chat import Message
from coachstream.services.chat_store import (
    ConversationNotFoundError,
    ConversationStore,
    ConversationStoreError,
)
from coachstream.services.errors import APIError, StreamCancelled
from coachstream.services.transport import CancelToken, StreamingTransport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class SessionEvent(str, Enum):
    SEND = "send"
    STREAM_OPENED = "stream_opened"
    STREAM_ENDED = "stream_ended"
    CANCEL = "cancel"
    FAIL = "fail"
    FINALIZED = "finalized"


TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.IDLE, SessionEvent.SEND): SessionState.SENDING,
    (SessionState.SENDING, SessionEvent.STREAM_OPENED): SessionState.STREAMING,
    (SessionState.STREAMING, SessionEvent.STREAM_ENDED): SessionState.COMPLETED,
    (SessionState.STREAMING, SessionEvent.CANCEL): SessionState.CANCELLED,
    (SessionState.STREAMING, SessionEvent.FAIL): SessionState.ERRORED,
    (SessionState.COMPLETED, SessionEvent.FINALIZED): SessionState.IDLE,
    (SessionState.CANCELLED, SessionEvent.FINALIZED): SessionState.IDLE,
    (SessionState.ERRORED, SessionEvent.FINALIZED): SessionState.IDLE,
}


class InvalidTransition(Exception):
    def __init__(self, state: SessionState, event: SessionEvent):
        self.state = state
        self.event = event
        super().__init__(f"no transition from {state.value!r} on {event.value!r}")


class SessionBusyError(RuntimeError):
    """A turn is in flight; the requested session change was refused."""


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None


@dataclass
class TurnResult:
    """Outcome of one ``send_turn`` or ``retry`` call."""

    outcome: SessionState
    conversation_id: Optional[str]
    message: Optional[Message] = None
    user_crisis: bool = False
    assistant_crisis: bool = False
    error: Optional[APIError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not SessionState.ERRORED


DeltaListener = Callable[[str, Message], None]
StateListener = Callable[[SessionState], None]


class ChatSessionController:
    """
    Owns the in-memory message list of the active conversation.

    One controller drives at most one stream. ``send_turn`` while a turn is
    in flight returns None without touching messages, storage or network.
    Store failures are logged and never roll back in-memory state.
    """

    def __init__(
        self,
        transport: StreamingTransport,
        store: ConversationStore,
        on_delta: Optional[DeltaListener] = None,
        on_state_change: Optional[StateListener] = None,
    ):
        self.transport = transport
        self.store = store
        self.on_delta = on_delta
        self.on_state_change = on_state_change

        self.state = SessionState.IDLE
        self.conversation_id: Optional[str] = None
        self.messages: list[Message] = []
        self.crisis_detected = False
        self.last_error: Optional[APIError] = None
        self._cancel: Optional[CancelToken] = None

    @property
    def is_busy(self) -> bool:
        return self.state is not SessionState.IDLE

    def _fire(self, event: SessionEvent) -> SessionState:
        self.state = transition(self.state, event)
        logger.debug("session %s: %s -> %s", self.conversation_id, event.value, self.state.value)
        if self.on_state_change is not None:
            self.on_state_change(self.state)
        return self.state

    def _ensure_conversation(self) -> Optional[str]:
        if self.conversation_id is None:
            try:
                self.conversation_id = self.store.create_conversation()
            except ConversationStoreError:
                logger.exception("create_conversation failed")
                return None
        return self.conversation_id

    def _persist(self, role: str, content: str) -> bool:
        conversation_id = self._ensure_conversation()
        if conversation_id is None:
            return False
        try:
            self.store.append_message(conversation_id, role, content)
        except ConversationStoreError:
            logger.exception("append_message failed: %s (%s)", conversation_id, role)
            return False
        return True

    def _remove_message(self, message: Message) -> None:
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index] is message:
                del self.messages[index]
                return

    def _finalize(self, placeholder: Message, user_crisis: bool, persist_reply: bool) -> TurnResult:
        outcome = self.state
        placeholder.finalize()
        assistant_crisis = bool(placeholder.content) and crisis.scan(placeholder.content)
        if assistant_crisis:
            self.crisis_detected = True
        if persist_reply:
            self._persist("assistant", placeholder.content)
        else:
            logger.warning("reply not persisted: conversation has no stored user turn")
        self._fire(SessionEvent.FINALIZED)
        return TurnResult(
            outcome=outcome,
            conversation_id=self.conversation_id,
            message=placeholder,
            user_crisis=user_crisis,
            assistant_crisis=assistant_crisis,
        )

    def _fail(self, placeholder: Message, error: APIError, user_crisis: bool) -> TurnResult:
        self._fire(SessionEvent.FAIL)
        self._remove_message(placeholder)
        self.last_error = error
        logger.warning("turn failed for %s: %s", self.conversation_id, error.message)
        self._fire(SessionEvent.FINALIZED)
        return TurnResult(
            outcome=SessionState.ERRORED,
            conversation_id=self.conversation_id,
            user_crisis=user_crisis,
            error=error,
        )

    async def _stream_reply(self, user_crisis: bool, persist_reply: bool) -> TurnResult:
        history = list(self.messages)
        placeholder = Message(role="assistant", content="", is_streaming=True)
        self.messages.append(placeholder)
        self._cancel = CancelToken()
        self._fire(SessionEvent.STREAM_OPENED)

        try:
            async with aclosing(self.transport.stream(history, self._cancel)) as deltas:
                async for delta in deltas:
                    placeholder.append(delta.content)
                    if self.on_delta is not None:
                        self.on_delta(delta.content, placeholder)
        except StreamCancelled:
            self._fire(SessionEvent.CANCEL)
            return self._finalize(placeholder, user_crisis, persist_reply)
        except asyncio.CancelledError:
            # Task torn down from outside: keep what arrived, then propagate.
            self._fire(SessionEvent.CANCEL)
            self._finalize(placeholder, user_crisis, persist_reply)
            raise
        except APIError as e:
            return self._fail(placeholder, e, user_crisis)
        except Exception as e:
            self._fail(placeholder, APIError(f"Unexpected error: {e}"), user_crisis)
            raise
        finally:
            self._cancel = None

        self._fire(SessionEvent.STREAM_ENDED)
        return self._finalize(placeholder, user_crisis, persist_reply)

    async def send_turn(self, text: str) -> Optional[TurnResult]:
        """
        Run one turn for ``text``, typed or transcribed alike.

        Returns:
            TurnResult, or None when ``text`` is blank or a turn is in flight
        """
        if self.is_busy:
            logger.info("send_turn ignored: turn in flight (%s)", self.state.value)
            return None
        if not text or not text.strip():
            return None
        text = text.strip()

        user_crisis = crisis.scan(text)
        if user_crisis:
            self.crisis_detected = True

        self._fire(SessionEvent.SEND)
        self.last_error = None
        self.messages.append(Message(role="user", content=text))
        # a reply is stored only into a conversation that holds this turn's user message
        user_persisted = self._persist("user", text)
        return await self._stream_reply(user_crisis, persist_reply=user_persisted)

    async def retry(self) -> Optional[TurnResult]:
        """
        Re-stream a reply for the trailing user message after a failed turn.

        The user message is already stored, so nothing new is persisted
        before the request. Returns None when there is nothing to retry.
        """
        if self.is_busy or not self.messages or self.messages[-1].role != "user":
            return None
        self._fire(SessionEvent.SEND)
        self.last_error = None
        return await self._stream_reply(user_crisis=False, persist_reply=self.conversation_id is not None)

    def cancel(self) -> bool:
        """Stop the running stream; partial content is kept and persisted."""
        if self._cancel is None or self._cancel.cancelled:
            return False
        self._cancel.cancel()
        return True

    def dismiss_crisis_notice(self) -> None:
        self.crisis_detected = False

    def new_conversation(self) -> None:
        """Start a fresh session; the conversation row is created on the first turn."""
        if self.is_busy:
            raise SessionBusyError("cannot start a new conversation while a turn is in flight")
        self.conversation_id = None
        self.messages.clear()
        self.crisis_detected = False
        self.last_error = None

    def open_conversation(self, conversation_id: str) -> list[Message]:
        """Replace the in-memory list with the stored sequence of ``conversation_id``."""
        if self.is_busy:
            raise SessionBusyError("cannot switch conversations while a turn is in flight")
        if self.store.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        loaded = self.store.load_messages(conversation_id)
        self.conversation_id = conversation_id
        self.messages[:] = loaded
        self.crisis_detected = False
        self.last_error = None
        return self.messages

    def _forget_if_active(self, conversation_id: str) -> None:
        if conversation_id == self.conversation_id and not self.is_busy:
            self.new_conversation()

    def delete_conversation(self, conversation_id: str) -> bool:
        if conversation_id == self.conversation_id and self.is_busy:
            raise SessionBusyError("cannot delete the conversation that is streaming")
        deleted = self.store.delete_conversation(conversation_id)
        if deleted:
            self._forget_if_active(conversation_id)
        return deleted

    def archive_conversation(self, conversation_id: str) -> bool:
        if conversation_id == self.conversation_id and self.is_busy:
            raise SessionBusyError("cannot archive the conversation that is streaming")
        archived = self.store.archive_conversation(conversation_id)
        if archived:
            self._forget_if_active(conversation_id)
        return archived

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        return self.store.rename_conversation(conversation_id, title)
