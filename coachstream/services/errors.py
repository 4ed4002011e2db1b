"""
Stream and transport error classes.

``StreamCancelled`` is not an ``APIError``: a stopped stream ends the turn
as cancelled, never as errored.
"""

from typing import Optional


class APIError(Exception):
    """Base exception for inference endpoint errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_text: str = ""):
        self.message = message
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(self.message)

    def user_friendly_message(self) -> str:
        """Returns a user-friendly error message."""
        return self.message


class NetworkError(APIError):
    """The request never got a response, or the stream dropped unexpectedly."""

    def user_friendly_message(self) -> str:
        return (
            f"[ERROR] Verbindung zum Coach fehlgeschlagen\n\n"
            f"Error: {self.message}\n\n"
            f"Bitte prüfe deine Internetverbindung und versuche es erneut."
        )


class StreamTimeoutError(NetworkError):
    """Connect timeout, or no bytes within the configured idle window."""

    def user_friendly_message(self) -> str:
        return (
            f"[TIMEOUT] Der Coach antwortet gerade nicht\n\n"
            f"Error: {self.message}\n\n"
            f"Bitte versuche es in einem Moment erneut."
        )


class HTTPStatusError(APIError):
    """Non-2xx response, or an error event delivered inside the stream."""

    def user_friendly_message(self) -> str:
        status = self.status_code or "Unknown"
        return f"[SERVER ERROR] (HTTP {status})\n\nError: {self.message}"


class MalformedFrameError(APIError):
    """A ``data:`` payload that is not valid JSON. Recovered by the parser, never surfaced."""


class StreamCancelled(Exception):
    """The caller's cancel token fired while the stream was open."""

    def __init__(self, message: str = "stream cancelled by user"):
        self.message = message
        super().__init__(message)
