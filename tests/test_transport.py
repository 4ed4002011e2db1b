"""
Unit tests for StreamingTransport.

HTTP is faked with httpx.MockTransport; bodies are scripted chunk lists so
network-read boundaries are under test control.
"""

import asyncio
import json

import httpx
import pytest

from coachstream.schemas.chat import Message
from coachstream.services.transport import (
    APIError,
    CancelToken,
    HTTPStatusError,
    NetworkError,
    StreamCancelled,
    StreamTimeoutError,
)

from streaming_fakes import DONE, ENDPOINT_URL, FakeEndpoint, delta_event, make_transport, sse_body

HISTORY = [
    Message(role="user", content="Wie verbessere ich meine Haut?"),
    Message(role="assistant", content="Mehr Schlaf.", is_streaming=False),
    Message(role="user", content="Und sonst?"),
]


async def _collect(transport, history=HISTORY, cancel=None) -> list[str]:
    async with transport:
        return [delta.content async for delta in transport.stream(history, cancel)]


class TestTransportRequest:
    """Test the outbound request shape."""

    def test_posts_history_with_bearer_token(self) -> None:
        endpoint = FakeEndpoint([DONE])
        asyncio.run(_collect(make_transport(endpoint, token="tok-123")))

        request = endpoint.requests[0]
        assert request.method == "POST"
        assert str(request.url) == ENDPOINT_URL
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert request.headers["Content-Type"] == "application/json"

    def test_body_carries_role_and_content_only(self) -> None:
        endpoint = FakeEndpoint([DONE])
        asyncio.run(_collect(make_transport(endpoint)))

        assert endpoint.request_json() == {
            "messages": [
                {"role": "user", "content": "Wie verbessere ich meine Haut?"},
                {"role": "assistant", "content": "Mehr Schlaf."},
                {"role": "user", "content": "Und sonst?"},
            ]
        }

    def test_async_token_provider(self) -> None:
        endpoint = FakeEndpoint([DONE])

        async def token() -> str:
            return "async-tok"

        transport = make_transport(endpoint)
        transport._token_provider = token
        asyncio.run(_collect(transport))

        assert endpoint.requests[0].headers["Authorization"] == "Bearer async-tok"

    def test_missing_token_fails_before_request(self) -> None:
        endpoint = FakeEndpoint([DONE])

        with pytest.raises(APIError, match="Not authenticated"):
            asyncio.run(_collect(make_transport(endpoint, token="")))
        assert endpoint.requests == []

    def test_idle_timeout_maps_to_read_timeout(self) -> None:
        transport = make_transport(FakeEndpoint(), timeout=5.0, idle_timeout=12.0)
        timeout = transport._stream_timeout()

        assert timeout.connect == 5.0
        assert timeout.read == 12.0
        asyncio.run(transport.aclose())


class TestTransportStreaming:
    """Test delta extraction from the response body."""

    def test_yields_deltas_in_order(self) -> None:
        endpoint = FakeEndpoint([sse_body("Trink", " mehr Wasser.")])
        assert asyncio.run(_collect(make_transport(endpoint))) == ["Trink", " mehr Wasser."]

    def test_frame_split_across_reads(self) -> None:
        raw = sse_body("Trink", " mehr Wasser.")
        whole = asyncio.run(_collect(make_transport(FakeEndpoint([raw]))))

        for cut in (3, 17, len(raw) // 2, len(raw) - 4):
            split = asyncio.run(_collect(make_transport(FakeEndpoint([raw[:cut], raw[cut:]]))))
            assert split == whole

    def test_stops_reading_after_done(self) -> None:
        endpoint = FakeEndpoint([delta_event("a"), DONE, delta_event("never")], hang=True)
        assert asyncio.run(_collect(make_transport(endpoint))) == ["a"]
        assert endpoint.streams[0].closed

    def test_end_of_stream_without_done(self) -> None:
        endpoint = FakeEndpoint([delta_event("a"), delta_event("b")])
        assert asyncio.run(_collect(make_transport(endpoint))) == ["a", "b"]

    def test_done_with_zero_deltas(self) -> None:
        assert asyncio.run(_collect(make_transport(FakeEndpoint([DONE])))) == []

    def test_error_event_in_stream(self) -> None:
        error_line = b"data: " + json.dumps({"error": {"message": "Credits aufgebraucht.", "code": 402}}).encode() + b"\n\n"
        endpoint = FakeEndpoint([delta_event("a"), error_line])

        with pytest.raises(HTTPStatusError) as exc_info:
            asyncio.run(_collect(make_transport(endpoint)))
        assert exc_info.value.status_code == 402
        assert exc_info.value.message == "Credits aufgebraucht."


class TestTransportErrors:
    """Test failure mapping to the error taxonomy."""

    def test_http_error_uses_body_error_field(self) -> None:
        endpoint = FakeEndpoint(status_code=429, body=json.dumps({"error": "Rate limit erreicht. Bitte warte einen Moment."}).encode())

        with pytest.raises(HTTPStatusError) as exc_info:
            asyncio.run(_collect(make_transport(endpoint)))
        assert exc_info.value.status_code == 429
        assert exc_info.value.message == "Rate limit erreicht. Bitte warte einen Moment."

    def test_redirect_is_not_followed_as_success(self) -> None:
        endpoint = FakeEndpoint(status_code=302)
        endpoint.headers = {"location": "https://coach.test/elsewhere"}

        with pytest.raises(HTTPStatusError) as exc_info:
            asyncio.run(_collect(make_transport(endpoint)))
        assert exc_info.value.status_code == 302
        assert exc_info.value.message == "Request failed: 302"

    def test_http_error_with_unparseable_body(self) -> None:
        endpoint = FakeEndpoint(status_code=500, body=b"<html>oops</html>")

        with pytest.raises(HTTPStatusError) as exc_info:
            asyncio.run(_collect(make_transport(endpoint)))
        assert exc_info.value.message == "Request failed: 500"
        assert "oops" in exc_info.value.response_text

    def test_connection_refused(self) -> None:
        endpoint = FakeEndpoint(raise_on_send=httpx.ConnectError("Connection refused"))

        with pytest.raises(NetworkError):
            asyncio.run(_collect(make_transport(endpoint)))

    def test_connect_timeout(self) -> None:
        endpoint = FakeEndpoint(raise_on_send=httpx.ConnectTimeout("timed out"))

        with pytest.raises(StreamTimeoutError):
            asyncio.run(_collect(make_transport(endpoint)))

    def test_dropped_mid_stream(self) -> None:
        endpoint = FakeEndpoint([delta_event("a")], stream_error=httpx.ReadError("connection reset"))

        with pytest.raises(NetworkError, match="Stream interrupted"):
            asyncio.run(_collect(make_transport(endpoint)))

    def test_idle_read_timeout(self) -> None:
        endpoint = FakeEndpoint([delta_event("a")], stream_error=httpx.ReadTimeout("no data"))

        with pytest.raises(StreamTimeoutError):
            asyncio.run(_collect(make_transport(endpoint, idle_timeout=3.0)))

    def test_cancelled_is_not_an_api_error(self) -> None:
        assert not issubclass(StreamCancelled, APIError)


class TestTransportCancellation:
    """Test cooperative cancellation."""

    def test_cancel_while_read_pending(self) -> None:
        endpoint = FakeEndpoint([delta_event("d1"), delta_event("d2")], hang=True)
        received: list[str] = []

        async def run() -> None:
            cancel = CancelToken()
            async with make_transport(endpoint) as transport:
                async for delta in transport.stream(HISTORY, cancel):
                    received.append(delta.content)
                    if len(received) == 2:
                        asyncio.get_running_loop().call_later(0.01, cancel.cancel)

        with pytest.raises(StreamCancelled):
            asyncio.run(run())
        assert received == ["d1", "d2"]
        assert endpoint.streams[0].closed

    def test_cancel_between_frames(self) -> None:
        endpoint = FakeEndpoint([sse_body("d1", "d2", "d3")])
        received: list[str] = []

        async def run() -> None:
            cancel = CancelToken()
            async with make_transport(endpoint) as transport:
                async for delta in transport.stream(HISTORY, cancel):
                    received.append(delta.content)
                    if delta.content == "d2":
                        cancel.cancel()

        with pytest.raises(StreamCancelled):
            asyncio.run(run())
        assert received == ["d1", "d2"]

    def test_cancelled_before_start_sends_nothing(self) -> None:
        endpoint = FakeEndpoint([DONE])
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(StreamCancelled):
            asyncio.run(_collect(make_transport(endpoint), cancel=cancel))
        assert endpoint.requests == []
