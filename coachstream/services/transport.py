"""
Streaming transport for the coach inference endpoint.

Wraps httpx.AsyncClient: one POST per turn carrying the whole history, the
response body read chunk by chunk through SSEStreamParser, every pending read
raced against the caller's CancelToken.
"""

import asyncio
import inspect
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, Union

import httpx

from coachstream.schemas.chat import ChatRequest, ContentDelta, Message, StreamDone, StreamError
from coachstream.services.errors import (
    APIError,
    HTTPStatusError,
    MalformedFrameError,
    NetworkError,
    StreamCancelled,
    StreamTimeoutError,
)
from coachstream.services.sse_parser import SSEStreamParser

logger = logging.getLogger(__name__)

__all__ = [
    "APIError",
    "CancelToken",
    "HTTPStatusError",
    "MalformedFrameError",
    "NetworkError",
    "StreamCancelled",
    "StreamTimeoutError",
    "StreamingTransport",
    "TokenProvider",
]

TokenProvider = Callable[[], Union[str, Awaitable[str]]]

_SENSITIVE_HEADERS = ("authorization", "x-api-key", "apikey")


class CancelToken:
    """One-shot cancellation flag that can be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def _next_chunk(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class StreamingTransport:
    """
    Client for the streaming chat-completions endpoint.

    Features:
    - Bearer credential fetched from a token provider on every call
    - Non-2xx bodies turned into HTTPStatusError with the server's ``error`` text
    - Cooperative cancellation checked around every read, closing the socket
    - Optional idle-read timeout bounding a stalled stream
    """

    def __init__(
        self,
        endpoint_url: str,
        token_provider: TokenProvider,
        timeout: float = 30.0,
        idle_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            endpoint_url: Full URL of the inference function
            token_provider: Returns (or resolves to) the bearer token
            timeout: Connect/write/pool timeout in seconds
            idle_timeout: Max seconds between two body reads; None waits forever
            transport: Optional httpx transport, e.g. MockTransport in tests
        """
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self._token_provider = token_provider

        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()

    def _log_request(self, method: str, url: str, headers: dict[str, str], message_count: int) -> None:
        """Log request details (without sensitive headers)."""
        safe_headers = {
            k: ("***" if k.lower() in _SENSITIVE_HEADERS else v) for k, v in headers.items()
        }
        logger.debug("%s %s | messages: %d | headers: %s", method, url, message_count, safe_headers)

    def _stream_timeout(self) -> httpx.Timeout:
        # Read timeout is the gap allowed between body chunks, not the total.
        return httpx.Timeout(
            connect=self.timeout,
            read=self.idle_timeout,
            write=self.timeout,
            pool=self.timeout,
        )

    async def _resolve_token(self) -> str:
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        if not token:
            raise APIError("Not authenticated")
        return token

    @staticmethod
    async def _await_or_cancel(awaitable: Awaitable, cancel: CancelToken):
        """Await ``awaitable`` unless ``cancel`` fires first; cancellation wins ties."""
        if cancel.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise StreamCancelled()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if waiter in done:
            work.cancel()
            results = await asyncio.gather(work, return_exceptions=True)
            if isinstance(results[0], httpx.Response):
                await results[0].aclose()
            raise StreamCancelled()

        waiter.cancel()
        return work.result()

    @staticmethod
    def _http_error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError, UnicodeDecodeError):
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            if isinstance(error, str) and error:
                return error
        return f"Request failed: {response.status_code}"

    async def stream(
        self,
        history: Sequence[Message],
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[ContentDelta]:
        """
        Send ``history`` and yield content deltas as they arrive.

        The sequence ends on ``data: [DONE]`` or when the server closes the
        body. It cannot be restarted; call ``stream`` again to retry.

        Raises:
            StreamCancelled: ``cancel`` fired before the stream ended
            HTTPStatusError: Non-2xx status, or an error event in the stream
            StreamTimeoutError: Connect timeout or idle-read timeout
            NetworkError: Connection failure or stream dropped mid-body
        """
        cancel = cancel or CancelToken()
        payload = ChatRequest.from_history(list(history)).model_dump()

        token = await self._await_or_cancel(self._resolve_token(), cancel)
        headers = {"Authorization": f"Bearer {token}"}
        self._log_request("POST", self.endpoint_url, headers, len(payload["messages"]))

        request = self._client.build_request(
            "POST",
            self.endpoint_url,
            json=payload,
            headers=headers,
            timeout=self._stream_timeout(),
        )

        try:
            response = await self._await_or_cancel(self._client.send(request, stream=True), cancel)
        except httpx.TimeoutException as e:
            raise StreamTimeoutError("Connection timeout: server may be unreachable") from e
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or type(e).__name__) from e

        delta_count = 0
        try:
            if not response.is_success:
                await self._await_or_cancel(response.aread(), cancel)
                response_text = response.text
                message = self._http_error_message(response)
                logger.error("Stream request failed: HTTP %s: %s", response.status_code, message)
                raise HTTPStatusError(
                    message,
                    status_code=response.status_code,
                    response_text=response_text,
                )

            parser = SSEStreamParser()
            chunks = response.aiter_bytes().__aiter__()
            while not parser.done:
                chunk = await self._await_or_cancel(_next_chunk(chunks), cancel)
                frames = parser.feed(chunk) if chunk is not None else parser.finish()
                for frame in frames:
                    if isinstance(frame, StreamDone):
                        break
                    if isinstance(frame, StreamError):
                        raise HTTPStatusError(frame.message, status_code=frame.status_code)
                    delta_count += 1
                    yield frame
                    if cancel.cancelled:
                        raise StreamCancelled()
                if chunk is None:
                    break

            logger.debug(
                "Stream finished (%s) after %d deltas",
                "done" if parser.done else "eof",
                delta_count,
            )
        except httpx.TimeoutException as e:
            raise StreamTimeoutError(
                f"No data received for {self.idle_timeout}s" if self.idle_timeout else "Stream timeout"
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Stream interrupted: {str(e) or type(e).__name__}") from e
        finally:
            await response.aclose()
