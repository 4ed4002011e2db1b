from coachstream.core.crisis import scan as scan_for_crisis
from coachstream.schemas.chat import Conversation, Message
from coachstream.services.chat_session import ChatSessionController, SessionState, TurnResult
from coachstream.services.chat_store import ConversationStore
from coachstream.services.transport import CancelToken, StreamingTransport

__version__ = "0.1.0"

__all__ = [
    "CancelToken",
    "ChatSessionController",
    "Conversation",
    "ConversationStore",
    "Message",
    "SessionState",
    "StreamingTransport",
    "TurnResult",
    "scan_for_crisis",
]
