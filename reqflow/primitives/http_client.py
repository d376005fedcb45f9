"""HTTP transport backed by httpx.

Implements the ``send`` capability the scheduler consumes: given a resolved
request, return a Response or raise TransportError.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from reqflow.constants import DEFAULT_TIMEOUT_MS
from reqflow.models import Response
from reqflow.primitives.errors import TransportError

logger = logging.getLogger(__name__)


class Transport:
    """Interface for anything able to issue a resolved request."""

    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout: Optional[float],
    ) -> Response:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def decode_body(response: httpx.Response) -> Any:
    """JSON when the response says so (or looks like it), otherwise text."""
    text = response.text
    content_type = response.headers.get("content-type", "")
    stripped = text.strip()
    if "json" in content_type or stripped.startswith(("{", "[")):
        try:
            return json.loads(text)
        except (json.JSONDecodeError, ValueError):
            return text
    return text


class HttpTransport(Transport):
    """Transport issuing requests through a pooled ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_connections: int = 20,
        max_keepalive_connections: int = 10,
        follow_redirects: bool = True,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self._limits = httpx.Limits(
            max_keepalive_connections=max_keepalive_connections,
            max_connections=max_connections,
        )
        self._follow_redirects = follow_redirects
        self._verify = verify
        self._transport = transport

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=self._limits,
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_MS / 1000),
                follow_redirects=self._follow_redirects,
                verify=self._verify,
                transport=self._transport,
            )
        return self._client

    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout: Optional[float],
    ) -> Response:
        """Issue one request.

        Args:
            method: HTTP method.
            url: Fully resolved URL.
            headers: Resolved request headers.
            body: dict/list bodies are sent as JSON, anything else as raw content.
            timeout: Timeout in milliseconds (None uses the client default).

        Raises:
            TransportError: On connection failures, timeouts, protocol errors and
                requests httpx cannot build (bad URL, non-ASCII header values).
        """
        client = await self._get_client()
        request_kwargs: Dict[str, Any] = {"headers": headers}
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["content"] = body if isinstance(body, (str, bytes)) else str(body)
        if timeout is not None:
            request_kwargs["timeout"] = timeout / 1000

        try:
            request = client.build_request(method.upper(), url, **request_kwargs)
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            # UnicodeEncodeError from non-ASCII header values lands here too
            raise TransportError(f"Invalid request: {e}", kind="protocol", cause=e)

        start = time.perf_counter()
        try:
            response = await client.send(request)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", kind="timeout", cause=e)
        except httpx.ConnectError as e:
            raise TransportError(f"Connection failed: {e}", kind="connect", cause=e)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"HTTP error: {e}", kind="protocol", cause=e)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.debug(f"{method.upper()} {url} -> {response.status_code} in {duration_ms:.1f}ms")
        return Response(
            status=response.status_code,
            headers=response.headers,
            body=decode_body(response),
            duration_ms=duration_ms,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
