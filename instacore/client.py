"""Client facade: the single request primitive,
the login flow and the post-login bootstrap."""

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

from .challenge import (
    ChallengeResolver,
    CheckpointResolver,
    WebAutomation,
)
from .cipher import encrypt_password
from .classifier import Response, ResponseClassifier
from .config import ClientConfig
from .constants import (
    AUTHORIZATION_HEADER,
    PUB_KEY_HEADER,
    PUB_KEY_ID_HEADER,
    URL_ACCOUNT_FAMILY,
    URL_ACTIVITY_RECENT,
    URL_BANYAN,
    URL_BOOTSTRAP_SCORES,
    URL_CONTACT_POINT_SIGNALS,
    URL_CONTACT_PREFILL,
    URL_COOLDOWNS,
    URL_DISCOVER,
    URL_FETCH_CONFIG,
    URL_GET_PREFILL,
    URL_INBOX,
    URL_LOG_ATTRIBUTION,
    URL_LOGIN,
    URL_LOGOUT,
    URL_MEDIA_BLOCKED,
    URL_NDX_STEPS,
    URL_NOTIF_BADGE,
    URL_PUSH_PERMISSIONS,
    URL_SYNC,
    URL_TIMELINE,
    URL_ZR_TOKEN,
    ZR_TOKEN_IGNORED_HEADERS,
)
from .device import GALAXY_S10, DeviceProfile, jazoest
from .errors import (
    ApiError,
    AppError,
    GenericAPIError,
    SessionError,
    TransportError,
)
from .recovery import (
    DefaultRecoveryPolicy,
    RecoveryAttempt,
    RecoveryPolicy,
)
from .request import (
    RequestSigner,
    RequestSpec,
    local_time_offset,
    prepare_data,
)
from .session import SessionState, truncate_header
from .transport import AiohttpTransport, Transport
from .twofactor import CodeProvider, TwoFactorResolver

log = logging.getLogger('instacore')

DEFAULT_COUNTRY_CODES = json.dumps(
    [{'country_code': '1', 'source': ['default']}],
    separators=(',', ':'))

BOOTSTRAP_SURFACES = (
    'autocomplete_user_list',
    'coefficient_besties_list_ranking',
    'coefficient_rank_recipient_user_suggestion',
    'coefficient_ios_section_test_bootstrap_ranking',
    'coefficient_direct_recipients_ranking_variant_2',
)


@dataclass(frozen=True)
class BootstrapTask:
    name: str
    spec: RequestSpec
    fatal: bool = False


class Client:

    def __init__(
            self, state: SessionState,
            transport: Optional[Transport] = None,
            config: Optional[ClientConfig] = None,
            policy: Optional[RecoveryPolicy] = None,
            automation: Optional[
                WebAutomation] = None,
            code_provider: Optional[
                CodeProvider] = None):
        self.config = config or ClientConfig()
        self.config.validate()
        self.state = state
        self.transport = transport or AiohttpTransport(
            proxy=self.config.proxy or None)
        self.signer = RequestSigner(
            locale=self.config.locale,
            refresh_margin=(
                self.config.token_refresh_margin))
        self.classifier = ResponseClassifier()
        self.policy = policy or DefaultRecoveryPolicy(
            cooldown=(
                self.config.too_many_requests_cooldown),
            max_attempts=(
                self.config.max_recovery_attempts))
        self.challenge = ChallengeResolver(
            self, automation,
            self.config.automation_timeout)
        self.checkpoint = CheckpointResolver(
            state, automation,
            self.config.checkpoint_timeout)
        self.two_factor = TwoFactorResolver(
            self, code_provider)
        # Completed open_app runs
        self.app_opens = 0

    @classmethod
    def create(
            cls, username: str, password: str,
            totp_seed: str = '',
            profile: DeviceProfile = GALAXY_S10,
            **kw) -> 'Client':
        return cls(SessionState.new(
            username, password, profile,
            totp_seed), **kw)

    @classmethod
    def from_snapshot(
            cls, blob: Union[bytes, str],
            **kw) -> 'Client':
        """Restore a client from ``export()``
        output, raw or base64. No network."""
        if isinstance(blob, str):
            state = SessionState.import_b64(blob)
        else:
            state = SessionState.import_(blob)
        log.info(
            f'Restored session for'
            f' {state.username}'
            f' ({state.account_id})')
        return cls(state, **kw)

    @classmethod
    def from_file(cls, path: str, **kw) -> 'Client':
        return cls(SessionState.load(path), **kw)

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> 'Client':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ============================================
    #  REQUESTS
    # ============================================

    async def dispatch(
            self, spec: RequestSpec,
            count: int = 0,
            recover: bool = True) -> Response:
        """Send once and hand a failure to the
        recovery policy. Never raises classified
        errors; they ride on the response."""
        request = await self.signer.prepare(
            spec, self.state, self.refresh_token)
        try:
            raw = await self.transport.send(
                request, self.config.request_timeout)
        except TransportError as exc:
            log.warning(
                f'{spec.endpoint}: {exc}')
            response = Response.from_transport_error(
                spec.endpoint, exc)
        else:
            response = self.classifier.classify(
                raw, spec.endpoint, self.state)
            if self.config.debug:
                log.debug(
                    f'{spec.endpoint}'
                    f' <- {response.status}'
                    f' {truncate_header(response.text(), 200)}')

        if response.error is None or not recover:
            return response
        return await self.policy.resolve(
            RecoveryAttempt(
                client=self, spec=spec,
                response=response,
                count=count + 1))

    async def send(
            self, spec: RequestSpec,
            recover: bool = True) -> Response:
        response = await self.dispatch(
            spec, recover=recover)
        if response.error is not None:
            raise response.error
        return response

    async def send_json(
            self, spec: RequestSpec,
            recover: bool = True) -> Any:
        response = await self.send(spec, recover)
        try:
            return response.json()
        except (ValueError, UnicodeDecodeError) as exc:
            raise GenericAPIError(
                f'Invalid JSON body: {exc}',
                endpoint=spec.endpoint,
                status=response.status) from exc

    # ============================================
    #  LOGIN FLOW
    # ============================================

    async def refresh_token(self) -> None:
        """Fetch a zero-rating token and move the
        expiry watermark. Failures are logged and
        the request that triggered it proceeds."""
        ident = self.state.identity
        try:
            resp = await self.send(
                RequestSpec(
                    endpoint=URL_ZR_TOKEN,
                    params={
                        'device_id': ident.device_id,
                        'token_hash': '',
                        'custom_device_id': ident.uuid,
                        'fetch_reason': 'token_expired',
                    },
                    ignore_headers=(
                        ZR_TOKEN_IGNORED_HEADERS)),
                recover=False)
            token = resp.json().get('token') or {}
            self.state.set_watermark(
                float(token['request_time']),
                float(token['ttl']))
        except ApiError as exc:
            log.warning(f'Token refresh: {exc}')
        except (KeyError, TypeError, ValueError,
                AttributeError) as exc:
            log.warning(
                f'Token refresh: bad response'
                f' ({type(exc).__name__}: {exc})')

    async def sync(self) -> Response:
        ident = self.state.identity
        if self.state.logged_in:
            params = prepare_data(
                self.state,
                id=str(self.state.account_id),
                _id=str(self.state.account_id),
                server_config_retrieval='1')
        else:
            params = {
                'id': ident.uuid,
                'server_config_retrieval': '1',
            }
        resp = await self.send(RequestSpec(
            endpoint=URL_SYNC,
            method='POST',
            signed=True,
            params=params,
            ignore_headers=(AUTHORIZATION_HEADER,)))

        key = resp.headers.get(PUB_KEY_HEADER, '')
        key_id = resp.headers.get(
            PUB_KEY_ID_HEADER, '')
        if key and key_id:
            try:
                self.state.set_password_key(
                    key, int(key_id))
                log.debug(
                    f'Password key id {key_id}')
            except ValueError:
                log.warning(
                    f'Sync: bad key id {key_id!r}')
        return resp

    async def _best_effort(
            self, spec: RequestSpec) -> None:
        try:
            await self.send(spec)
        except ApiError as exc:
            log.warning(f'{spec.endpoint}: {exc}')

    async def prefill(self) -> None:
        ident = self.state.identity
        await self._best_effort(RequestSpec(
            endpoint=URL_GET_PREFILL,
            method='POST',
            signed=True,
            ignore_429=True,
            params={
                'android_device_id': ident.device_id,
                'phone_id': ident.family_id,
                'usages': (
                    '["account_recovery_omnibox"]'),
                'device_id': ident.uuid,
            }))
        await self._best_effort(RequestSpec(
            endpoint=URL_CONTACT_PREFILL,
            method='POST',
            signed=True,
            ignore_429=True,
            params={
                'phone_id': ident.family_id,
                'usage': 'prefill',
            }))

    async def login(self) -> Response:
        state = self.state
        if not state.password:
            raise SessionError(
                'No password stored for login')
        log.info(f'Logging in as {state.username}')
        await self.refresh_token()
        await self.sync()
        await self.prefill()
        await self.sync()
        if not state.public_key:
            raise SessionError(
                'Sync returned no password'
                ' encryption key')

        ident = state.identity
        timestamp = str(int(time.time()))
        enc_password = encrypt_password(
            state.password, state.public_key,
            state.public_key_id, timestamp)
        spec = RequestSpec(
            endpoint=URL_LOGIN,
            method='POST',
            signed=True,
            timestamp=timestamp,
            params={
                'jazoest': jazoest(ident.device_id),
                'country_codes': DEFAULT_COUNTRY_CODES,
                'phone_id': ident.family_id,
                'enc_password': enc_password,
                'username': state.username,
                'adid': ident.ad_id,
                'guid': ident.uuid,
                'device_id': ident.device_id,
                'google_tokens': '[]',
                'login_attempt_count': '0',
            })
        state.password = ''
        opens = self.app_opens
        resp = await self.send(spec)
        # A two-factor recovery already logged in
        # and opened the app.
        if self.app_opens == opens:
            self.verify_login(resp)
            await self.open_app()
        return resp

    def verify_login(self, resp: Response) -> None:
        """Adopt the account identity from a login
        response body."""
        try:
            payload = resp.json()
        except (ValueError, UnicodeDecodeError) as exc:
            raise GenericAPIError(
                f'Invalid login body: {exc}',
                endpoint=resp.endpoint,
                status=resp.status) from exc
        user = (payload.get('logged_in_user')
                if isinstance(payload, dict)
                else None)
        if not isinstance(user, dict) or not user.get(
                'pk'):
            raise GenericAPIError(
                'Login response without'
                ' logged_in_user',
                endpoint=resp.endpoint,
                status=resp.status,
                payload=payload)
        self.state.set_account(
            int(user['pk']),
            str(user.get('username', '')))
        self.state.session_token = str(
            payload.get('session_flush_nonce') or '')
        log.info(
            f'Logged in as {self.state.username}'
            f' ({self.state.account_id})')

    async def logout(self) -> None:
        ident = self.state.identity
        await self.send(RequestSpec(
            endpoint=URL_LOGOUT,
            method='POST',
            signed=True,
            params=prepare_data(
                self.state,
                phone_id=ident.family_id,
                guid=ident.uuid,
                device_id=ident.device_id,
                one_tap_app_login=True)))
        log.info(f'Logged out {self.state.username}')
        self.state.account_id = 0
        self.state.rank_token = ''
        self.state.session_token = ''
        self.state.set_header(
            AUTHORIZATION_HEADER, '')

    # ============================================
    #  BOOTSTRAP
    # ============================================

    def bootstrap_tasks(self) -> List[BootstrapTask]:
        state = self.state
        ident = state.identity
        return [
            BootstrapTask('account_family', RequestSpec(
                endpoint=URL_ACCOUNT_FAMILY)),
            BootstrapTask('ndx_steps', RequestSpec(
                endpoint=URL_NDX_STEPS)),
            BootstrapTask('timeline', RequestSpec(
                endpoint=URL_TIMELINE,
                method='POST',
                params={
                    'reason': 'cold_start_fetch',
                    'is_pull_to_refresh': '0',
                    'phone_id': ident.family_id,
                    'device_id': ident.uuid,
                    '_uuid': ident.uuid,
                    'battery_level': '100',
                    'is_charging': '1',
                    'will_sound_on': '0',
                    'timezone_offset': (
                        local_time_offset()),
                }), fatal=True),
            BootstrapTask('notification_badge', RequestSpec(
                endpoint=URL_NOTIF_BADGE,
                method='POST',
                params={
                    'phone_id': ident.family_id,
                    'user_ids': str(state.account_id),
                    'device_id': ident.uuid,
                    '_uuid': ident.uuid,
                })),
            BootstrapTask('banyan', RequestSpec(
                endpoint=URL_BANYAN,
                params={
                    'views': (
                        '["direct_user_search_nullstate",'
                        '"reshare_share_sheet",'
                        '"direct_user_search_keypressed"]'),
                })),
            BootstrapTask('media_blocked', RequestSpec(
                endpoint=URL_MEDIA_BLOCKED)),
            BootstrapTask('cooldowns', RequestSpec(
                endpoint=URL_COOLDOWNS,
                signed=True)),
            BootstrapTask('discover', RequestSpec(
                endpoint=URL_DISCOVER,
                params={
                    'is_prefetch': 'true',
                    'omit_cover_media': 'true',
                    'module': 'explore_popular',
                    'session_id': (
                        ident.pigeon_session_id),
                    'timezone_offset': '0',
                })),
            BootstrapTask('fetch_config', RequestSpec(
                endpoint=URL_FETCH_CONFIG)),
            BootstrapTask('bootstrap_scores', RequestSpec(
                endpoint=URL_BOOTSTRAP_SCORES,
                params={
                    'surfaces': json.dumps(
                        BOOTSTRAP_SURFACES,
                        separators=(',', ':')),
                })),
            BootstrapTask('recent_activity', RequestSpec(
                endpoint=URL_ACTIVITY_RECENT,
                params={'mark_as_seen': 'false'}),
                fatal=True),
            BootstrapTask('log_attribution', RequestSpec(
                endpoint=URL_LOG_ATTRIBUTION,
                method='POST',
                signed=True,
                params={'adid': ident.ad_id})),
            BootstrapTask('push_permissions', RequestSpec(
                endpoint=URL_PUSH_PERMISSIONS,
                method='POST',
                params={
                    'enabled': 'true',
                    'device_id': ident.uuid,
                    '_uuid': ident.uuid,
                })),
            BootstrapTask('inbox', RequestSpec(
                endpoint=URL_INBOX,
                params={
                    'visual_message_return_type': (
                        'unseen'),
                    'persistentBadging': 'true',
                    'limit': '0',
                }), fatal=True),
            BootstrapTask('contact_point_signals', RequestSpec(
                endpoint=URL_CONTACT_POINT_SIGNALS,
                method='POST',
                signed=True,
                params=prepare_data(
                    state,
                    phone_id=ident.family_id,
                    device_id=ident.uuid,
                    google_tokens='[]'))),
        ]

    async def run_bootstrap(
            self, tasks: List[BootstrapTask]
    ) -> List[Tuple[str, Optional[AppError]]]:
        """Run ``tasks`` concurrently and collect
        (name, error) pairs. Raises the first fatal
        failure after every task has finished."""
        results = await asyncio.gather(
            *(self.send(t.spec) for t in tasks),
            return_exceptions=True)
        outcome: List[
            Tuple[str, Optional[AppError]]] = []
        fatal: List[Tuple[str, AppError]] = []
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                if not isinstance(result, AppError):
                    raise result
                outcome.append((task.name, result))
                if task.fatal:
                    fatal.append((task.name, result))
                else:
                    log.warning(
                        f'Bootstrap {task.name}:'
                        f' {result}')
            else:
                outcome.append((task.name, None))
        if fatal:
            name, error = fatal[0]
            log.error(f'Bootstrap {name}: {error}')
            raise error
        return outcome

    async def open_app(
            self
    ) -> List[Tuple[str, Optional[AppError]]]:
        await self.refresh_token()
        await self.sync()
        outcome = await self.run_bootstrap(
            self.bootstrap_tasks())
        failed = sum(1 for _, e in outcome if e)
        log.info(
            f'Bootstrap done: {len(outcome)} calls,'
            f' {failed} failed')
        self.app_opens += 1
        return outcome

    # ============================================
    #  PERSISTENCE
    # ============================================

    def export(self) -> bytes:
        return self.state.export()

    def export_b64(self) -> str:
        return base64.b64encode(
            self.export()).decode('ascii')

    def save(self, path: Optional[str] = None) -> str:
        path = path or self.config.session_path
        self.state.save(path)
        return path
