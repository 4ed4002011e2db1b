from coachstream.services.chat_session import ChatSessionController
from coachstream.services.chat_store import ConversationStore
from coachstream.services.sse_parser import SSEStreamParser
from coachstream.services.transport import StreamingTransport

__all__ = [
    "ChatSessionController",
    "ConversationStore",
    "SSEStreamParser",
    "StreamingTransport",
]
