"""HTTP transport: one aiohttp session per client,
network failures mapped to TransportError."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

import aiohttp
from multidict import CIMultiDict
from yarl import URL

from .constants import REQUEST_TIMEOUT
from .errors import TransportError
from .request import WireRequest

log = logging.getLogger('instacore')


@dataclass
class RawResponse:
    status: int
    headers: CIMultiDict = field(
        default_factory=CIMultiDict)
    body: bytes = b''
    reason: str = ''


@runtime_checkable
class Transport(Protocol):
    async def send(
            self, request: WireRequest,
            timeout: float) -> RawResponse: ...

    async def close(self) -> None: ...


class AiohttpTransport:
    """Executes wire requests on a lazily created
    aiohttp session. Bodies are returned exactly
    as received, compressed or not."""

    def __init__(
            self,
            connector: Optional[
                aiohttp.BaseConnector] = None,
            proxy: Optional[str] = None):
        self._connector = connector
        self.proxy = proxy
        self._cookie_jar = aiohttp.CookieJar(
            unsafe=True)
        self._session: Optional[
            aiohttp.ClientSession] = None

    async def _get_session(
            self) -> aiohttp.ClientSession:
        if (self._session is None
                or self._session.closed):
            self._session = aiohttp.ClientSession(
                connector=self._connector,
                connector_owner=(
                    self._connector is None),
                cookie_jar=self._cookie_jar,
                auto_decompress=False)
        return self._session

    async def close(self) -> None:
        if (self._session
                and not self._session.closed):
            await self._session.close()
            self._session = None

    async def send(
            self, request: WireRequest,
            timeout: float = REQUEST_TIMEOUT
    ) -> RawResponse:
        session = await self._get_session()
        kw = {
            'headers': request.headers,
            'timeout': aiohttp.ClientTimeout(
                total=timeout),
        }
        if self.proxy:
            kw['proxy'] = self.proxy
        if request.body is not None:
            kw['data'] = request.body

        try:
            async with session.request(
                    request.method,
                    URL(request.url, encoded=True),
                    **kw) as resp:
                body = await resp.read()
                log.debug(
                    f'{request.method}'
                    f' {request.endpoint}'
                    f' -> {resp.status}'
                    f' ({len(body)} bytes)')
                return RawResponse(
                    status=resp.status,
                    headers=CIMultiDict(
                        resp.headers),
                    body=body,
                    reason=resp.reason or '')
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f'Timeout after {timeout}s',
                endpoint=request.endpoint) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(
                f'{type(exc).__name__}: {exc}',
                endpoint=request.endpoint) from exc

