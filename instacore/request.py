"""Request specs and the wire request builder.

Header precedence, lowest first:
    1. default app headers (locale, device
       capabilities, timing telemetry)
    2. the session header bag
    3. the spec's extra headers
Headers named in the spec's ignore list are
dropped after the merge, whatever their source.
Empty values are never sent.
"""

import enum
import gzip
import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any, Awaitable, Callable, Dict, Mapping,
    Optional, Tuple,
)
from urllib.parse import urlencode

from multidict import CIMultiDict

from .constants import (
    API_URL,
    API_URL_B,
    API_URL_V2,
    API_URL_V2_B,
    BASE_URL,
    BLOKS_VERSION_ID,
    CONNECTION_TYPE,
    FB_ANALYTICS_APP_ID,
    IG_CAPABILITIES,
    LOCALE,
    OMIT_API_IGNORED_HEADERS,
    SIGNED_BODY_PREFIX,
    TOKEN_REFRESH_MARGIN,
)
from .session import SessionState

log = logging.getLogger('instacore')

FORM_CONTENT_TYPE = (
    'application/x-www-form-urlencoded;'
    ' charset=UTF-8')


class ApiVariant(enum.Enum):
    V1 = API_URL
    V1_B = API_URL_B
    V2 = API_URL_V2
    V2_B = API_URL_V2_B
    OMIT_API = BASE_URL


@dataclass(frozen=True)
class RequestSpec:
    endpoint: str
    method: str = 'GET'
    params: Mapping[str, Any] = field(
        default_factory=dict)
    # Raw body for uploads; takes precedence
    # over params on POST.
    data: Optional[bytes] = None
    signed: bool = False
    gzip: bool = False
    extra_headers: Mapping[str, str] = field(
        default_factory=dict)
    ignore_headers: Tuple[str, ...] = ()
    variant: ApiVariant = ApiVariant.V1
    ignore_429: bool = False
    connection: str = 'close'
    timestamp: str = ''

    @property
    def is_post(self) -> bool:
        return self.method.upper() == 'POST'


@dataclass
class WireRequest:
    method: str
    url: str
    headers: CIMultiDict
    body: Optional[bytes]
    endpoint: str


# ============================================
#  BODY ENCODING
# ============================================

def canonical_json(params: Mapping[str, Any]) -> str:
    return json.dumps(
        params, sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False)


def sign_body(params: Mapping[str, Any]) -> str:
    return SIGNED_BODY_PREFIX + canonical_json(params)


def encode_signed_body(
        params: Mapping[str, Any]) -> str:
    """Form body with the single field
    ``signed_body=SIGNATURE.<json>``."""
    return urlencode(
        {'signed_body': sign_body(params)})


def to_param(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list, tuple)):
        return canonical_json(value)
    if value is None:
        return ''
    return str(value)


def encode_params(
        params: Mapping[str, Any]) -> str:
    return urlencode([
        (k, to_param(params[k]))
        for k in sorted(params)])


def prepare_data(
        state: SessionState,
        **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        '_uuid': state.identity.uuid}
    if state.logged_in:
        data['_uid'] = str(state.account_id)
    data.update(extra)
    return data


def local_time_offset() -> str:
    offset = datetime.now().astimezone().utcoffset()
    seconds = int(offset.total_seconds()) if offset else 0
    return str(seconds)


# ============================================
#  SIGNER
# ============================================

class RequestSigner:

    def __init__(
            self, locale: str = LOCALE,
            refresh_margin: int = (
                TOKEN_REFRESH_MARGIN),
            rng: Optional[random.Random] = None):
        self.locale = locale
        self.refresh_margin = refresh_margin
        self._rng = rng or random.Random()

    def default_headers(
            self, state: SessionState,
            timestamp: str,
            connection: str) -> Dict[str, str]:
        rnd = self._rng.randint
        ident = state.identity
        return {
            'Accept-Language': self.locale,
            'Accept-Encoding': 'gzip,deflate',
            'Connection': connection,
            'User-Agent': state.user_agent,
            'X-Ig-App-Locale': self.locale,
            'X-Ig-Device-Locale': self.locale,
            'X-Ig-Mapped-Locale': self.locale,
            'X-Ig-App-Id': FB_ANALYTICS_APP_ID,
            'X-Ig-Device-Id': ident.uuid,
            'X-Ig-Family-Device-Id': (
                ident.family_id),
            'X-Ig-Android-Id': ident.device_id,
            'X-Ig-Timezone-Offset': (
                local_time_offset()),
            'X-Ig-Capabilities': IG_CAPABILITIES,
            'X-Ig-Connection-Type': CONNECTION_TYPE,
            'X-Pigeon-Session-Id': (
                ident.pigeon_session_id),
            'X-Pigeon-Rawclienttime': (
                f'{timestamp}.{rnd(100, 900)}'),
            'X-Ig-Bandwidth-Speed-KBPS': (
                f'{rnd(1000, 9000)}.000'),
            'X-Ig-Bandwidth-TotalBytes-B': str(
                rnd(1000000, 5000000)),
            'X-Ig-Bandwidth-Totaltime-Ms': str(
                rnd(200, 800)),
            'X-Ig-App-Startup-Country': 'unknown',
            'X-Bloks-Version-Id': BLOKS_VERSION_ID,
            'X-Bloks-Is-Layout-Rtl': 'false',
            'X-Bloks-Is-Panorama-Enabled': 'true',
            'X-Fb-Http-Engine': 'Liger',
            'X-Fb-Client-Ip': 'True',
            'X-Fb-Server-Cluster': 'True',
            'Ig-Intended-User-Id': str(
                state.account_id),
        }

    @staticmethod
    def build_url(spec: RequestSpec) -> str:
        if spec.endpoint.startswith(
                ('http://', 'https://')):
            return spec.endpoint
        return (
            spec.variant.value
            + spec.endpoint.lstrip('/'))

    def build(
            self, spec: RequestSpec,
            state: SessionState) -> WireRequest:
        """Build the wire request. Reads the
        session, never mutates it."""
        timestamp = (
            spec.timestamp
            or str(int(time.time())))
        url = self.build_url(spec)
        method = 'POST' if spec.is_post else 'GET'

        body: Optional[bytes] = None
        content_encoding = ''
        if spec.is_post:
            if spec.data is not None:
                body = bytes(spec.data)
            elif spec.signed:
                body = encode_signed_body(
                    spec.params).encode('utf-8')
            else:
                body = encode_params(
                    spec.params).encode('utf-8')
            if spec.gzip:
                body = gzip.compress(body)
                content_encoding = 'gzip'
        else:
            if spec.signed:
                query = encode_signed_body(
                    spec.params)
            else:
                query = encode_params(spec.params)
            if query:
                sep = '&' if '?' in url else '?'
                url = f'{url}{sep}{query}'

        ignored = {
            h.lower() for h in spec.ignore_headers}
        if spec.variant is ApiVariant.OMIT_API:
            ignored.update(
                h.lower()
                for h in OMIT_API_IGNORED_HEADERS)

        merged: CIMultiDict = CIMultiDict()
        layers = (
            self.default_headers(
                state, timestamp,
                spec.connection),
            state.headers_snapshot(),
            dict(spec.extra_headers),
        )
        for layer in layers:
            for key, value in layer.items():
                merged[key] = value
        if spec.is_post:
            merged.setdefault(
                'Content-Type', FORM_CONTENT_TYPE)
        if content_encoding:
            merged['Content-Encoding'] = (
                content_encoding)

        headers: CIMultiDict = CIMultiDict(
            (k, v) for k, v in merged.items()
            if v and k.lower() not in ignored)

        return WireRequest(
            method=method, url=url,
            headers=headers, body=body,
            endpoint=spec.endpoint)

    async def prepare(
            self, spec: RequestSpec,
            state: SessionState,
            refresh: Callable[[], Awaitable[Any]]
    ) -> WireRequest:
        """Refresh the token first if the
        watermark has been passed, then build."""
        await state.ensure_fresh(
            refresh, margin=self.refresh_margin)
        return self.build(spec, state)
