"""Tests for the httpx-backed transport."""

import json

import httpx
import pytest

from reqflow.primitives.errors import TransportError
from reqflow.primitives.http_client import HttpTransport, decode_body


def make_transport(handler):
    return HttpTransport(transport=httpx.MockTransport(handler))


class TestDecodeBody:
    """Response body decoding."""

    def test_json_content_type(self):
        response = httpx.Response(200, json={"id": 1})
        assert decode_body(response) == {"id": 1}

    def test_json_without_content_type(self):
        """Bodies that look like JSON are parsed regardless of headers."""
        response = httpx.Response(200, content=b"[1, 2]", headers={"content-type": "text/plain"})
        assert decode_body(response) == [1, 2]

    def test_invalid_json_falls_back_to_text(self):
        response = httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})
        assert decode_body(response) == "{not json"

    def test_plain_text(self):
        assert decode_body(httpx.Response(200, text="hello")) == "hello"


class TestHttpTransport:
    """Request building and error mapping."""

    @pytest.mark.asyncio
    async def test_json_body(self):
        """dict bodies go out as JSON with the given headers."""
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(201, json={"ok": True}, headers={"X-Trace": "t1"})

        async with make_transport(handler) as transport:
            response = await transport.send("post", "http://api.test/items", {"Authorization": "Bearer t"}, {"a": 1}, 1000)

        assert seen == {"method": "POST", "body": {"a": 1}, "auth": "Bearer t"}
        assert response.status == 201
        assert response.body == {"ok": True}
        assert response.headers["x-trace"] == "t1"
        assert response.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_raw_body(self):
        """Strings are sent as-is; other scalars are stringified."""
        bodies = []

        def handler(request):
            bodies.append(request.content)
            return httpx.Response(200, text="done")

        async with make_transport(handler) as transport:
            first = await transport.send("PUT", "http://api.test/a", {}, "plain text", None)
            await transport.send("PUT", "http://api.test/a", {}, 42, None)
            await transport.send("GET", "http://api.test/a", {}, None, None)

        assert bodies == [b"plain text", b"42", b""]
        assert first.body == "done"

    @pytest.mark.asyncio
    async def test_timeout_is_milliseconds(self):
        timeouts = []

        def handler(request):
            timeouts.append(request.extensions["timeout"]["read"])
            return httpx.Response(200)

        async with make_transport(handler) as transport:
            await transport.send("GET", "http://api.test/", {}, None, 2500)

        assert timeouts == [2.5]

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_response(self):
        """HTTP error statuses are responses, never transport errors."""
        async with make_transport(lambda request: httpx.Response(503, json={"error": "busy"})) as transport:
            response = await transport.send("GET", "http://api.test/", {}, None, None)

        assert response.status == 503
        assert response.body == {"error": "busy"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc, kind",
        [
            (httpx.ReadTimeout("slow"), "timeout"),
            (httpx.ConnectError("refused"), "connect"),
            (httpx.RemoteProtocolError("garbled"), "protocol"),
        ],
    )
    async def test_error_mapping(self, exc, kind):
        def handler(request):
            raise exc

        transport = make_transport(handler)
        with pytest.raises(TransportError) as info:
            await transport.send("GET", "http://api.test/", {}, None, None)
        await transport.close()

        assert info.value.kind == kind
        assert info.value.cause is exc

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url, headers, body",
        [
            ("http://api.test/", {"X-User": "J\u00f6rg \u2713"}, None),
            ("http://api.test:abc/", {}, None),
            ("http://api.test/", {}, {"when": object()}),
        ],
        ids=["non-ascii-header", "invalid-url", "unserializable-body"],
    )
    async def test_unbuildable_request(self, url, headers, body):
        """Requests httpx refuses to build surface as protocol errors without a call."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        async with make_transport(handler) as transport:
            with pytest.raises(TransportError) as info:
                await transport.send("POST", url, headers, body, None)

        assert info.value.kind == "protocol"
        assert info.value.message.startswith("Invalid request")
        assert calls == []

    @pytest.mark.asyncio
    async def test_close_keeps_injected_client(self):
        """A caller-supplied client is not closed by the transport."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        transport = HttpTransport(client=client)

        await transport.send("GET", "http://api.test/", {}, None, None)
        await transport.close()

        assert not client.is_closed
        await client.aclose()
