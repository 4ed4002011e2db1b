from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

Role = Literal["user", "assistant"]

DEFAULT_CONVERSATION_TITLE = "Neues Gespräch"


class Message(BaseModel):
    role: Role
    content: str = ""
    is_streaming: bool = False

    def append(self, fragment: str) -> None:
        """Append a streamed fragment; only legal while the message is streaming."""
        if not self.is_streaming:
            raise ValueError("cannot append to a finalized message")
        self.content += fragment

    def finalize(self) -> None:
        self.is_streaming = False

    def to_wire(self) -> dict[str, str]:
        """Request payload form: role and content only."""
        return {"role": self.role, "content": self.content}


class Conversation(BaseModel):
    id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    archived: bool = False
    created_at: str
    updated_at: str


class ContentDelta(BaseModel):
    type: Literal["delta"] = "delta"
    content: str


class StreamDone(BaseModel):
    type: Literal["done"] = "done"


class StreamError(BaseModel):
    type: Literal["error"] = "error"
    message: str
    status_code: int | None = None


class ChatRequest(BaseModel):
    messages: list[dict[str, Any]]

    @classmethod
    def from_history(cls, history: list[Message]) -> "ChatRequest":
        return cls(messages=[message.to_wire() for message in history])
