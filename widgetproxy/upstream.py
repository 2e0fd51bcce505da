# widgetproxy/upstream.py
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping, Sequence

import httpx

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

HeaderValue = str | Sequence[str]


@dataclass(frozen=True)
class UpstreamRequestSpec:
    method: str
    url: str
    # Lower-cased names; repeated names carry multi-valued headers.
    headers: tuple[tuple[str, str], ...] = ()
    params: tuple[tuple[str, str], ...] = ()

    @classmethod
    def build(
        cls,
        method: str,
        url: str,
        headers: Mapping[str, HeaderValue] | None = None,
        params: Mapping[str, str] | Sequence[tuple[str, str]] | None = None,
    ) -> "UpstreamRequestSpec":
        merged: dict[str, list[str]] = {}
        for name, value in (headers or {}).items():
            values = [value] if isinstance(value, str) else list(value)
            # Later keys win regardless of the case they were written in.
            merged[name.lower()] = values
        items = tuple((name, v) for name, values in merged.items() for v in values)

        if params is None:
            query: tuple[tuple[str, str], ...] = ()
        elif isinstance(params, Mapping):
            query = tuple((str(k), str(v)) for k, v in params.items())
        else:
            query = tuple((str(k), str(v)) for k, v in params)

        return cls(method=method.upper(), url=url, headers=items, params=query)

    def header(self, name: str) -> str | None:
        name = name.lower()
        for key, value in self.headers:
            if key == name:
                return value
        return None


@dataclass
class UpstreamResponse:
    status_code: int
    headers: httpx.Headers
    # Set for buffered fetches; raw bytes exactly as sent (still encoded).
    body: bytes | None = None
    _response: httpx.Response | None = field(default=None, repr=False)

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        if self.body is not None:
            yield self.body
            return
        async for chunk in self._response.aiter_raw():
            yield chunk

    async def aclose(self) -> None:
        if self._response is not None:
            await self._response.aclose()


class UpstreamClient:
    """Issues one outbound request per inbound request over a shared AsyncClient.

    httpx selects the plain or TLS transport from the URL scheme. Bodies are
    read with ``aiter_raw`` so content-encoding is left untouched.
    """

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 30.0) -> None:
        self.http_client = http_client
        self.timeout = timeout

    async def _send(self, spec: UpstreamRequestSpec, follow_redirects: bool) -> httpx.Response:
        try:
            request = self.http_client.build_request(
                method=spec.method,
                url=spec.url,
                headers=list(spec.headers),
                params=list(spec.params) or None,
                timeout=self.timeout,
            )
            return await self.http_client.send(
                request, stream=True, follow_redirects=follow_redirects
            )
        except (httpx.TransportError, httpx.InvalidURL) as exc:
            logger.error("Upstream unavailable for %s %s: %s", spec.method, spec.url, exc)
            raise UpstreamUnavailable(str(exc) or exc.__class__.__name__) from exc

    async def open(self, spec: UpstreamRequestSpec) -> UpstreamResponse:
        """Start a request and return with the body still unread (stream mode).

        The caller owns the returned response and must ``aclose`` it.
        """
        start = time.monotonic()
        response = await self._send(spec, follow_redirects=False)
        logger.info(
            "Upstream %s %s -> %s (%.0fms, streaming)",
            spec.method, spec.url, response.status_code, (time.monotonic() - start) * 1000,
        )
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            _response=response,
        )

    async def fetch(self, spec: UpstreamRequestSpec) -> UpstreamResponse:
        """Fetch the whole response body into memory, undecoded."""
        start = time.monotonic()
        response = await self._send(spec, follow_redirects=True)
        try:
            body = b"".join([chunk async for chunk in response.aiter_raw()])
        except httpx.TransportError as exc:
            logger.error("Upstream read failed for %s %s: %s", spec.method, spec.url, exc)
            raise UpstreamUnavailable(str(exc) or exc.__class__.__name__) from exc
        finally:
            await response.aclose()

        logger.info(
            "Upstream %s %s -> %s (%.0fms, %d bytes)",
            spec.method, spec.url, response.status_code,
            (time.monotonic() - start) * 1000, len(body),
        )
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            body=body,
        )
