import gzip
import json
from urllib.parse import parse_qsl, urlsplit

import pytest

from conftest import form_fields, signed_params
from instacore.request import (
    ApiVariant,
    RequestSigner,
    RequestSpec,
    canonical_json,
    encode_signed_body,
    prepare_data,
)


@pytest.fixture
def signer():
    return RequestSigner()


@pytest.mark.parametrize('params', [
    {},
    {'username': 'alice'},
    {'b': 1, 'a': {'nested': [1, 2, {'x': True}]}},
])
def test_signed_body_is_exact(signer, state, params):
    wire = signer.build(RequestSpec(
        endpoint='accounts/login/', method='POST',
        signed=True, params=params), state)
    fields = parse_qsl(
        wire.body.decode(), keep_blank_values=True)
    assert fields == [(
        'signed_body', 'SIGNATURE.' + canonical_json(params))]
    assert wire.body.startswith(b'signed_body=SIGNATURE.')


def test_canonical_json_is_sorted_and_compact():
    assert canonical_json({'b': 1, 'a': 'é'}) == (
        '{"a":"é","b":1}')


def test_encode_signed_body_empty():
    assert encode_signed_body({}) == (
        'signed_body=SIGNATURE.%7B%7D')


def test_get_query_params(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='/feed/timeline/',
        params={'b': 'x y', 'a': True}), state)
    parts = urlsplit(wire.url)
    assert wire.method == 'GET'
    assert wire.body is None
    assert parts.path == '/api/v1/feed/timeline/'
    assert parse_qsl(parts.query) == [
        ('a', 'true'), ('b', 'x y')]


def test_signed_get(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='qp/get_cooldowns/', signed=True), state)
    assert signed_params(wire) == {}


def test_form_post(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='x/', method='POST',
        params={'k': 'v'}), state)
    assert form_fields(wire) == {'k': 'v'}
    assert wire.headers['Content-Type'].startswith(
        'application/x-www-form-urlencoded')


def test_raw_body_sent_as_is(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='upload/', method='POST',
        data=b'\x00\x01binary',
        params={'ignored': '1'},
        extra_headers={
            'Content-Type': 'application/octet-stream'}),
        state)
    assert wire.body == b'\x00\x01binary'
    assert wire.headers['Content-Type'] == (
        'application/octet-stream')


def test_gzip_body(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='x/', method='POST', signed=True,
        gzip=True, params={'a': 1}), state)
    assert wire.headers['Content-Encoding'] == 'gzip'
    assert gzip.decompress(wire.body) == (
        b'signed_body=SIGNATURE.%7B%22a%22%3A1%7D')


def test_no_content_type_on_get(signer, state):
    wire = signer.build(RequestSpec(endpoint='x/'), state)
    assert 'Content-Type' not in wire.headers


def test_header_precedence(signer, state):
    state.set_header('X-Ig-Capabilities', 'from-bag')
    state.set_header('X-Mid', 'bag-mid')
    wire = signer.build(RequestSpec(
        endpoint='x/',
        extra_headers={'X-Mid': 'overlay-mid'}), state)
    assert wire.headers['X-Ig-Capabilities'] == 'from-bag'
    assert wire.headers['X-Mid'] == 'overlay-mid'
    assert wire.headers['X-Ig-Www-Claim'] == '0'
    assert wire.headers['X-Ig-Connection-Type'] == 'WIFI'


def test_deny_list_beats_every_layer(signer, state):
    state.set_header('Authorization', 'Bearer IGT:2:abc')
    wire = signer.build(RequestSpec(
        endpoint='x/',
        extra_headers={'X-Pigeon-Session-Id': 'overlay'},
        ignore_headers=(
            'authorization', 'X-Pigeon-Session-Id',
            'User-Agent')), state)
    assert 'Authorization' not in wire.headers
    assert 'X-Pigeon-Session-Id' not in wire.headers
    assert 'User-Agent' not in wire.headers


def test_empty_values_not_sent(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='x/',
        extra_headers={'X-Ig-App-Startup-Country': ''}),
        state)
    assert 'X-Ig-App-Startup-Country' not in wire.headers
    assert all(v for v in wire.headers.values())


def test_intended_user_id(signer, state):
    wire = signer.build(RequestSpec(endpoint='x/'), state)
    assert wire.headers['Ig-Intended-User-Id'] == '0'
    state.set_account(42, 'alice')
    wire = signer.build(RequestSpec(endpoint='x/'), state)
    assert wire.headers['Ig-Intended-User-Id'] == '42'


def test_device_headers(signer, state, identity):
    wire = signer.build(RequestSpec(
        endpoint='x/', timestamp='1700000000'), state)
    h = wire.headers
    assert h['User-Agent'] == state.user_agent
    assert h['X-Ig-Device-Id'] == identity.uuid
    assert h['X-Ig-Android-Id'] == identity.device_id
    assert h['X-Ig-Family-Device-Id'] == identity.family_id
    assert h['X-Pigeon-Session-Id'] == (
        identity.pigeon_session_id)
    assert h['X-Pigeon-Rawclienttime'].startswith(
        '1700000000.')
    assert h['Connection'] == 'close'


def test_telemetry_jitter_ranges(signer, state):
    for _ in range(20):
        h = signer.build(
            RequestSpec(endpoint='x/'), state).headers
        kbps = float(h['X-Ig-Bandwidth-Speed-KBPS'])
        assert 1000 <= kbps <= 9000
        assert 1000000 <= int(
            h['X-Ig-Bandwidth-TotalBytes-B']) <= 5000000
        assert 200 <= int(
            h['X-Ig-Bandwidth-Totaltime-Ms']) <= 800


@pytest.mark.parametrize('variant, prefix', [
    (ApiVariant.V1, 'https://i.instagram.com/api/v1/'),
    (ApiVariant.V1_B, 'https://b.i.instagram.com/api/v1/'),
    (ApiVariant.V2, 'https://i.instagram.com/api/v2/'),
    (ApiVariant.V2_B, 'https://b.i.instagram.com/api/v2/'),
    (ApiVariant.OMIT_API, 'https://i.instagram.com/'),
])
def test_variant_hosts(signer, state, variant, prefix):
    wire = signer.build(RequestSpec(
        endpoint='x/', variant=variant), state)
    assert wire.url == prefix + 'x/'


def test_omit_api_drops_bandwidth_headers(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='challenge/', variant=ApiVariant.OMIT_API),
        state)
    assert 'X-Ig-Bandwidth-Speed-KBPS' not in wire.headers
    assert 'X-Ig-Bandwidth-TotalBytes-B' not in wire.headers


def test_absolute_endpoint_passes_through(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='https://www.instagram.com/x/'), state)
    assert wire.url == 'https://www.instagram.com/x/'


def test_build_does_not_mutate_state(signer, state):
    before = state.headers_snapshot()
    signer.build(RequestSpec(
        endpoint='x/', method='POST', signed=True,
        extra_headers={'X-Mid': 'm'}), state)
    assert state.headers_snapshot() == before
    assert state.token_expiry == -1


def test_prepare_data(state, identity):
    assert prepare_data(state, a=1) == {
        '_uuid': identity.uuid, 'a': 1}
    state.set_account(42)
    assert prepare_data(state)['_uid'] == '42'


def test_signed_body_nested_json_string(signer, state):
    wire = signer.build(RequestSpec(
        endpoint='x/', method='POST', signed=True,
        params={'usages': '["a"]'}), state)
    assert signed_params(wire) == {'usages': '["a"]'}
    assert json.loads(
        form_fields(wire)['signed_body'][10:]) == {
        'usages': '["a"]'}


@pytest.mark.anyio
async def test_prepare_refreshes_expired_token(
        signer, state):
    state.set_watermark(0, 10)
    calls = []

    async def refresh():
        calls.append(True)
        state.set_watermark(4102444800, 0)

    await signer.prepare(
        RequestSpec(endpoint='x/'), state, refresh)
    await signer.prepare(
        RequestSpec(endpoint='x/'), state, refresh)
    assert calls == [True]
