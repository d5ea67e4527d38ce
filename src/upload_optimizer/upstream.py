"""
HTTP client for the upstream server.

Two kinds of traffic leave the proxy:

- rebuilt multipart uploads carrying the (possibly replaced) file, sent from
  worker threads with a synchronous client;
- everything else, passed through unmodified from the event loop with an
  asynchronous client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, BinaryIO, Dict, Iterable, List, Optional, Tuple

import httpx

from .errors import UpstreamError

logger = logging.getLogger(__name__)

# Regenerated for the rebuilt multipart body or owned by the connection to upstream
UPLOAD_EXCLUDED_HEADERS = frozenset({"host", "content-length", "content-type", "transfer-encoding"})

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Dropped from passthrough responses since httpx hands back framed bodies
RESPONSE_EXCLUDED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}


@dataclass
class UpstreamForm:
    """
    Everything from the intercepted request needed to rebuild it upstream.

    Attributes:
        path: Request path, forwarded as-is
        query: Raw query string without '?'
        fields: Non-file form fields in their original order
        field_name: Name of the form field carrying the file
        headers: Original request headers as (name, value) pairs
    """

    path: str
    field_name: str
    query: str = ""
    fields: List[Tuple[str, str]] = field(default_factory=list)
    headers: List[Tuple[str, str]] = field(default_factory=list)

    def forwarded_headers(self) -> List[Tuple[str, str]]:
        return [(name, value) for name, value in self.headers if name.lower() not in UPLOAD_EXCLUDED_HEADERS]

    def field_data(self) -> Dict[str, List[str]]:
        data: Dict[str, List[str]] = {}
        for name, value in self.fields:
            data.setdefault(name, []).append(value)
        return data


def filter_response_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    filtered: Dict[str, str] = {}
    for name, value in headers:
        if name.lower() in RESPONSE_EXCLUDED_HEADERS:
            continue
        filtered[name] = value
    return filtered


class UpstreamClient:
    """
    Wraps the httpx clients used to talk to the upstream server.

    Args:
        base_url: Upstream root, e.g. ``http://immich-server:2283``
        timeout: Seconds per network operation; None disables timeouts since
            uploads of large videos can legitimately take long
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        async_transport: Optional transport for the passthrough client
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        async_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport, follow_redirects=False)
        self._async_client = httpx.AsyncClient(timeout=timeout, transport=async_transport, follow_redirects=False)

    def url_for(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        return f"{url}?{query}" if query else url

    def forward_upload(
        self,
        form: UpstreamForm,
        filename: str,
        content: BinaryIO,
        content_type: str = "application/octet-stream",
    ) -> httpx.Response:
        """
        POST the rebuilt multipart form upstream.

        The returned response is streaming: the caller must read or close it.

        Raises:
            UpstreamError: If the request could not be sent
        """
        request = self._client.build_request(
            "POST",
            self.url_for(form.path, form.query),
            headers=form.forwarded_headers(),
            data=form.field_data(),
            files=[(form.field_name, (filename, content, content_type))],
        )
        try:
            return self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"unable to POST to upstream: {exc}") from exc

    async def proxy(
        self,
        method: str,
        path: str,
        query: str,
        headers: Iterable[Tuple[str, str]],
        body: Optional[AsyncIterable[bytes]] = None,
    ) -> httpx.Response:
        """
        Send a request upstream unmodified apart from hop-by-hop headers.

        Raises:
            UpstreamError: If the request could not be sent
        """
        forwarded = [(name, value) for name, value in headers if name.lower() not in HOP_BY_HOP_HEADERS | {"host"}]
        request = self._async_client.build_request(method, self.url_for(path, query), headers=forwarded, content=body)
        try:
            return await self._async_client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"unable to reach upstream: {exc}") from exc

    def close(self) -> None:
        self._client.close()

    async def aclose(self) -> None:
        await self._async_client.aclose()
