import asyncio
import time
import uuid

import pytest
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from conftest import FakeTransport, make_response, signed_params
from instacore.cipher import decode_envelope
from instacore.client import BootstrapTask, Client
from instacore.device import jazoest
from instacore.constants import (
    URL_2FA_CHECK_TRUSTED,
    URL_2FA_LOGIN,
    URL_ACTIVITY_RECENT,
    URL_BANYAN,
    URL_CONTACT_PREFILL,
    URL_GET_PREFILL,
    URL_INBOX,
    URL_LOGIN,
    URL_LOGOUT,
    URL_SYNC,
    URL_TIMELINE,
    URL_ZR_TOKEN,
)
from instacore.errors import (
    GenericAPIError,
    InvalidCredentialsError,
    SessionError,
)
from instacore.request import RequestSpec
from instacore.session import SessionState
from instacore.totp import generate_totp
from instacore.twofactor import TwoFactorContext

pytestmark = pytest.mark.anyio

TOTP_SEED = 'JBSWY3DPEHPK3PXP'
LOGGED_IN = {
    'logged_in_user': {'pk': 42, 'username': 'alice'},
    'session_flush_nonce': 'flush',
    'status': 'ok',
}
AUTH = 'Bearer IGT:2:' + 'z' * 30


@pytest.fixture
def login_transport(public_key_b64):
    transport = FakeTransport()
    transport.always(URL_ZR_TOKEN, make_response(200, {
        'token': {'request_time': time.time(), 'ttl': 3600}}))
    transport.always(URL_SYNC, make_response(200, {}, headers={
        'ig-set-password-encryption-pub-key': public_key_b64,
        'ig-set-password-encryption-key-id': '41',
        'ig-set-authorization': AUTH,
        'ig-set-x-mid': 'mid',
    }))
    return transport


def endpoints(transport):
    return [r.endpoint for r in transport.requests]


async def test_login_flow(
        state, login_transport, policy, rsa_private_key):
    transport = login_transport
    transport.queue(URL_LOGIN, make_response(200, LOGGED_IN))
    client = Client(state, transport=transport, policy=policy)

    await client.login()

    assert endpoints(transport)[:6] == [
        URL_ZR_TOKEN, URL_SYNC, URL_GET_PREFILL,
        URL_CONTACT_PREFILL, URL_SYNC, URL_LOGIN]
    assert state.account_id == 42
    assert state.rank_token == f'42_{state.identity.uuid}'
    assert state.session_token == 'flush'
    assert state.password == ''
    assert state.public_key_id == 41
    assert state.header('X-Mid') == 'mid'
    assert state.token_expiry > time.time()

    (login,) = transport.sent(URL_LOGIN)
    params = signed_params(login)
    assert params['username'] == 'alice'
    assert params['device_id'] == state.identity.device_id
    assert params['guid'] == state.identity.uuid
    assert params['phone_id'] == state.identity.family_id
    assert params['login_attempt_count'] == '0'
    assert params['jazoest'] == jazoest(
        state.identity.device_id)

    parts = decode_envelope(params['enc_password'])
    assert parts.key_id == 41
    key = rsa_private_key.decrypt(
        parts.wrapped_key, padding.PKCS1v15())
    plain = AESGCM(key).decrypt(
        parts.nonce, parts.ciphertext + parts.tag,
        parts.timestamp.encode())
    assert plain == b'hunter2'

    # bootstrap ran after login
    assert URL_TIMELINE in endpoints(transport)
    assert URL_INBOX in endpoints(transport)


async def test_sync_sends_no_authorization(
        state, login_transport, policy):
    state.set_header('Authorization', AUTH)
    client = Client(state, transport=login_transport, policy=policy)
    await client.sync()
    (sync,) = login_transport.sent(URL_SYNC)
    assert 'Authorization' not in sync.headers


async def test_prefill_tolerates_failures(
        state, login_transport, policy, sleeps):
    login_transport.queue(URL_GET_PREFILL, make_response(429))
    login_transport.queue(URL_CONTACT_PREFILL, make_response(500))
    client = Client(state, transport=login_transport, policy=policy)
    await client.prefill()
    assert sleeps == []


async def test_login_bad_password(state, login_transport, policy):
    login_transport.queue(URL_LOGIN, make_response(400, {
        'message': 'The password you entered is incorrect.',
        'error_type': 'bad_password'}))
    client = Client(state, transport=login_transport, policy=policy)
    with pytest.raises(InvalidCredentialsError):
        await client.login()
    assert state.password == ''
    assert not state.logged_in


async def test_login_without_key(state, policy):
    client = Client(state, transport=FakeTransport(), policy=policy)
    with pytest.raises(SessionError):
        await client.login()


async def test_login_without_password(identity, policy):
    state = SessionState(username='alice', identity=identity)
    client = Client(state, transport=FakeTransport(), policy=policy)
    with pytest.raises(SessionError):
        await client.login()


async def test_login_body_without_user(
        state, login_transport, policy):
    login_transport.queue(URL_LOGIN, make_response(200, {}))
    client = Client(state, transport=login_transport, policy=policy)
    with pytest.raises(GenericAPIError):
        await client.login()


# ============================================
#  TWO-FACTOR
# ============================================

TWO_FACTOR_BODY = {
    'message': 'two_factor_required',
    'two_factor_info': {
        'two_factor_identifier': 'tfid',
        'username': 'alice',
        'pk': 42,
        'totp_two_factor_on': True,
    },
    'status': 'fail',
}


async def test_two_factor_login_with_totp_seed(
        state, login_transport, policy):
    state.totp_seed = TOTP_SEED
    transport = login_transport
    transport.queue(
        URL_LOGIN,
        make_response(400, TWO_FACTOR_BODY),
        make_response(200, LOGGED_IN))
    transport.queue(URL_2FA_LOGIN, make_response(200, LOGGED_IN))
    client = Client(state, transport=transport, policy=policy)

    await client.login()

    assert state.account_id == 42
    assert len(transport.sent(URL_LOGIN)) == 2
    (two_factor,) = transport.sent(URL_2FA_LOGIN)
    params = signed_params(two_factor)
    assert params['two_factor_identifier'] == 'tfid'
    assert params['verification_method'] == '3'
    assert params['trust_this_device'] == '1'
    code = params['verification_code']
    assert len(code) == 6 and code.isdigit()
    now = time.time()
    assert code in (
        generate_totp(TOTP_SEED, now),
        generate_totp(TOTP_SEED, now - 30))
    assert 'Authorization' not in two_factor.headers
    assert two_factor.headers['X-Ig-Www-Claim'] == '0'
    assert two_factor.headers['Ig-Intended-User-Id'] == '0'
    assert params['waterfall_id'] != state.identity.phone_id
    uuid.UUID(params['waterfall_id'])
    # the app is opened once, by the two-factor login
    assert len(transport.sent(URL_TIMELINE)) == 1
    assert len(transport.sent(URL_INBOX)) == 1


async def test_two_factor_caller_code(state, policy):
    transport = FakeTransport()
    transport.queue(URL_2FA_LOGIN, make_response(200, LOGGED_IN))
    client = Client(
        state, transport=transport, policy=policy,
        code_provider=lambda ctx: '123456')
    await client.two_factor.login(
        TwoFactorContext(identifier='tfid'))
    params = signed_params(transport.sent(URL_2FA_LOGIN)[0])
    assert params['verification_code'] == '123456'
    assert params['verification_method'] == '1'
    assert state.account_id == 42


async def test_two_factor_async_code_provider(state, policy):
    transport = FakeTransport()
    transport.queue(URL_2FA_LOGIN, make_response(200, LOGGED_IN))

    async def provider(ctx):
        return '654321'

    client = Client(
        state, transport=transport, policy=policy,
        code_provider=provider)
    await client.two_factor.login(TwoFactorContext())
    params = signed_params(transport.sent(URL_2FA_LOGIN)[0])
    assert params['verification_code'] == '654321'


async def test_two_factor_invalid_code(state, policy):
    transport = FakeTransport()
    transport.queue(URL_2FA_LOGIN, make_response(400, {
        'message': 'Please check the code we sent you and try again.'}))
    client = Client(state, transport=transport, policy=policy)
    with pytest.raises(InvalidCredentialsError):
        await client.two_factor.login(
            TwoFactorContext(), code='000000')


# ============================================
#  BOOTSTRAP
# ============================================

@pytest.fixture
def logged_in(state):
    state.set_account(42, 'alice')
    return state


async def test_open_app_advisory_failures(
        logged_in, transport, policy):
    transport.queue(URL_BANYAN, make_response(500))
    client = Client(logged_in, transport=transport, policy=policy)
    outcome = await client.open_app()
    errors = dict(outcome)
    assert isinstance(errors['banyan'], GenericAPIError)
    assert errors['timeline'] is None
    assert len(outcome) == len(client.bootstrap_tasks())


@pytest.mark.parametrize('endpoint', [
    URL_TIMELINE, URL_ACTIVITY_RECENT, URL_INBOX])
async def test_open_app_fatal_failures(
        logged_in, transport, policy, endpoint):
    transport.queue(endpoint, make_response(500))
    client = Client(logged_in, transport=transport, policy=policy)
    with pytest.raises(GenericAPIError) as info:
        await client.open_app()
    assert info.value.endpoint == endpoint
    # every task still ran
    assert URL_BANYAN in endpoints(transport)


async def test_run_bootstrap_collects_results(
        logged_in, transport, policy):
    transport.queue('b/', make_response(400, {'message': 'x'}))
    client = Client(logged_in, transport=transport, policy=policy)
    outcome = await client.run_bootstrap([
        BootstrapTask('a', RequestSpec(endpoint='a/')),
        BootstrapTask('b', RequestSpec(endpoint='b/')),
    ])
    assert outcome[0] == ('a', None)
    assert outcome[1][0] == 'b'
    assert isinstance(outcome[1][1], GenericAPIError)


# ============================================
#  TOKEN REFRESH
# ============================================

async def test_expired_watermark_refreshes_before_request(
        state, transport, policy):
    state.set_watermark(time.time() - 100, 50)
    transport.always(URL_ZR_TOKEN, make_response(200, {
        'token': {'request_time': time.time(), 'ttl': 3600}}))
    client = Client(state, transport=transport, policy=policy)

    await client.send(RequestSpec(endpoint='feed/x/'))
    await client.send(RequestSpec(endpoint='feed/x/'))

    assert endpoints(transport) == [
        URL_ZR_TOKEN, 'feed/x/', 'feed/x/']
    assert not state.token_expired()


async def test_refresh_failure_does_not_block_request(
        state, transport, policy):
    state.set_watermark(time.time() - 100, 50)
    transport.always(URL_ZR_TOKEN, make_response(500))
    client = Client(state, transport=transport, policy=policy)
    resp = await client.send(RequestSpec(endpoint='feed/x/'))
    assert resp.ok
    assert state.token_expiry == -1


# ============================================
#  SESSION LIFECYCLE
# ============================================

async def test_from_snapshot_makes_no_requests(
        logged_in, transport):
    logged_in.set_header('Authorization', AUTH)
    blob = Client(logged_in, transport=transport).export()
    restored = Client.from_snapshot(blob, transport=transport)
    assert transport.requests == []
    assert restored.state.account_id == 42
    assert restored.state.header('Authorization') == AUTH
    assert restored.export() == blob

    b64 = Client.from_snapshot(
        restored.export_b64(), transport=transport)
    assert b64.export() == blob


async def test_logout_clears_account(logged_in, transport, policy):
    logged_in.set_header('Authorization', AUTH)
    client = Client(logged_in, transport=transport, policy=policy)
    await client.logout()
    assert transport.sent(URL_LOGOUT)
    assert not logged_in.logged_in
    assert logged_in.header('Authorization') is None


async def test_send_json_invalid_body(client, transport):
    transport.queue('x/', make_response(200, b'not json'))
    with pytest.raises(GenericAPIError):
        await client.send_json(RequestSpec(endpoint='x/'))


async def test_context_manager_closes_transport(state, transport):
    async with Client(state, transport=transport):
        pass
    assert transport.closed


# ============================================
#  TRUSTED DEVICE APPROVAL
# ============================================

async def test_check_trusted_pending(state, transport, policy):
    transport.queue(URL_2FA_CHECK_TRUSTED, make_response(
        200, {'review_status': 0, 'status': 'ok'}))
    client = Client(state, transport=transport, policy=policy)
    approved = await client.two_factor.check_trusted(
        TwoFactorContext(identifier='tfid'))
    assert approved is False
    (check,) = transport.sent(URL_2FA_CHECK_TRUSTED)
    assert check.method == 'GET'
    assert 'two_factor_identifier=tfid' in check.url
    assert transport.sent(URL_2FA_LOGIN) == []
    assert not state.logged_in


@pytest.mark.parametrize('review_status', [1, 2])
async def test_check_trusted_approved_logs_in(
        state, transport, policy, review_status):
    transport.queue(URL_2FA_CHECK_TRUSTED, make_response(
        200, {'review_status': review_status}))
    transport.queue(URL_2FA_LOGIN, make_response(200, LOGGED_IN))
    client = Client(state, transport=transport, policy=policy)
    approved = await client.two_factor.check_trusted(
        TwoFactorContext(identifier='tfid'))
    assert approved is True
    (two_factor,) = transport.sent(URL_2FA_LOGIN)
    params = signed_params(two_factor)
    assert params['verification_code'] == ''
    assert params['two_factor_identifier'] == 'tfid'
    assert state.account_id == 42


# ============================================
#  REFRESH ORDERING
# ============================================

class SlowTokenTransport(FakeTransport):

    def __init__(self):
        super().__init__()
        self.log = []

    async def send(self, request, timeout):
        self.log.append(('start', request.endpoint))
        if request.endpoint == URL_ZR_TOKEN:
            await asyncio.sleep(0.05)
        resp = await super().send(request, timeout)
        self.log.append(('end', request.endpoint))
        return resp


async def test_requests_go_out_after_refresh(state, policy):
    state.set_watermark(time.time() - 100, 50)
    transport = SlowTokenTransport()
    transport.always(URL_ZR_TOKEN, make_response(200, {
        'token': {'request_time': time.time(), 'ttl': 3600}}))
    client = Client(state, transport=transport, policy=policy)

    await asyncio.gather(
        client.send(RequestSpec(endpoint='a/')),
        client.send(RequestSpec(endpoint='b/')))

    refreshed = transport.log.index(('end', URL_ZR_TOKEN))
    assert transport.log[0] == ('start', URL_ZR_TOKEN)
    assert transport.log.index(('start', 'a/')) > refreshed
    assert transport.log.index(('start', 'b/')) > refreshed
    assert len(transport.sent(URL_ZR_TOKEN)) == 1
