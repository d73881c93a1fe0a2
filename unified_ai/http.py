"""Minimal HTTP transport shared by all provider adapters.

Wraps a lazily created ``httpx.AsyncClient``. Error translation is left to
the adapters: non-2xx responses raise ``httpx.HTTPStatusError`` after the body
has been read, and connection problems surface as ``httpx.RequestError``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Union

import httpx

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

Body = Union[Dict[str, Any], list, str, bytes, None]


def parse_body(response: httpx.Response) -> Body:
    """Decode a response body according to its content type.

    JSON becomes Python objects, ``text/*`` becomes ``str`` and anything else
    is returned as raw ``bytes``. An unparseable JSON body falls back to text.
    """
    content_type = response.headers.get("content-type", "").lower()
    if not response.content:
        return None
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    if content_type.startswith("text/") or "xml" in content_type:
        return response.text
    return response.content


class HTTPClient:
    """Thin async HTTP client with base URL, default headers and a timeout."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Prefix for every request path.
            headers: Headers sent with every request (auth goes here).
            timeout: Per-request transport timeout in seconds.
            transport: Optional httpx transport (``httpx.MockTransport`` in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Body:
        """Send a request and return the decoded body.

        Raises:
            httpx.HTTPStatusError: On a non-2xx status.
            httpx.RequestError: On connection failures and timeouts.
        """
        client = self._get_client()
        response = await client.request(method, path, json=json, params=params, headers=headers)
        response.raise_for_status()
        return parse_body(response)

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> Body:
        return await self.request("POST", path, json=json, **kwargs)

    async def get(self, path: str, **kwargs: Any) -> Body:
        return await self.request("GET", path, **kwargs)

    @asynccontextmanager
    async def open_stream(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming response; the connection is released on exit.

        The body of an error response is read before raising so adapters can
        extract the provider's message.
        """
        client = self._get_client()
        request_headers = {"Accept": "text/event-stream", **(headers or {})}
        async with client.stream(
            method, path, json=json, params=params, headers=request_headers
        ) as response:
            if response.is_error:
                await response.aread()
                response.raise_for_status()
            yield response

    async def stream(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[str]:
        """Yield decoded text chunks as they arrive."""
        async with self.open_stream(method, path, json=json, params=params, headers=headers) as response:
            async for chunk in response.aiter_text():
                if chunk:
                    yield chunk

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


async def iter_lines(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Reassemble newline-delimited lines from arbitrary text chunks.

    Lines are yielded without their terminator; a trailing partial line is
    flushed when the chunk source ends.
    """
    buffer = ""
    async for chunk in chunks:
        buffer += chunk
        while True:
            index = buffer.find("\n")
            if index < 0:
                break
            line, buffer = buffer[:index], buffer[index + 1:]
            yield line.rstrip("\r")
    if buffer:
        yield buffer.rstrip("\r")
