import base64
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qsl, urlsplit

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from multidict import CIMultiDict

from instacore.client import Client
from instacore.config import ClientConfig
from instacore.device import DeviceIdentity
from instacore.recovery import DefaultRecoveryPolicy
from instacore.request import WireRequest
from instacore.session import SessionState
from instacore.transport import RawResponse


@pytest.fixture
def anyio_backend():
    return 'asyncio'


Body = Union[bytes, dict, list]


def make_response(
        status: int = 200, body: Body = b'{}',
        headers: Optional[Dict[str, str]] = None
) -> RawResponse:
    if not isinstance(body, bytes):
        body = json.dumps(body).encode('utf-8')
    return RawResponse(
        status=status,
        headers=CIMultiDict(headers or {}),
        body=body)


class FakeTransport:
    """Scripted transport. Responses are queued
    per endpoint; endpoints with nothing queued
    answer from ``sticky`` or with ``200 {}``."""

    def __init__(self):
        self.requests: List[WireRequest] = []
        self.queued: Dict[str, list] = defaultdict(list)
        self.sticky: Dict[str, RawResponse] = {}
        self.closed = False

    def queue(self, endpoint: str, *responses) -> None:
        self.queued[endpoint].extend(responses)

    def always(self, endpoint: str,
               response: RawResponse) -> None:
        self.sticky[endpoint] = response

    def sent(self, endpoint: str) -> List[WireRequest]:
        return [r for r in self.requests
                if r.endpoint == endpoint]

    async def send(self, request: WireRequest,
                   timeout: float) -> RawResponse:
        self.requests.append(request)
        pending = self.queued.get(request.endpoint)
        if pending:
            item = pending.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if request.endpoint in self.sticky:
            return self.sticky[request.endpoint]
        return make_response()

    async def close(self) -> None:
        self.closed = True


def form_fields(request: WireRequest) -> Dict[str, str]:
    if request.method == 'POST':
        raw = request.body.decode('utf-8')
    else:
        raw = urlsplit(request.url).query
    return dict(parse_qsl(raw, keep_blank_values=True))


def signed_params(request: WireRequest) -> Any:
    value = form_fields(request)['signed_body']
    assert value.startswith('SIGNATURE.')
    return json.loads(value[len('SIGNATURE.'):])


@pytest.fixture
def identity():
    return DeviceIdentity(
        device_id='android-0123456789abcdef',
        uuid='11111111-1111-4111-8111-111111111111',
        phone_id='22222222-2222-4222-8222-222222222222',
        family_id='33333333-3333-4333-8333-333333333333',
        ad_id='44444444-4444-4444-8444-444444444444',
        pigeon_session_id=(
            'UFS-55555555-5555-4555-8555-555555555555-0'),
    )


@pytest.fixture
def state(identity):
    return SessionState(
        username='alice', identity=identity,
        password='hunter2')


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)
    return DefaultRecoveryPolicy(sleep=fake_sleep)


@pytest.fixture
def client(state, transport, policy):
    return Client(
        state, transport=transport,
        config=ClientConfig(), policy=policy)


@pytest.fixture(scope='session')
def rsa_private_key():
    return rsa.generate_private_key(
        public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def public_key_b64(rsa_private_key):
    pem = rsa_private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo)
    return base64.b64encode(pem).decode('ascii')
