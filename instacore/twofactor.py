"""Two-factor login with a caller code, a code
provider or a stored TOTP seed."""

import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING, Any, Awaitable, Callable, Optional,
    Tuple, Union,
)

from .constants import URL_2FA_CHECK_TRUSTED, URL_2FA_LOGIN
from .errors import TwoFactorNoCodeError
from .request import RequestSpec
from .totp import generate_totp

if TYPE_CHECKING:
    from .classifier import Response
    from .client import Client

log = logging.getLogger('instacore')

METHOD_SMS = '1'
METHOD_TOTP = '3'

# Headers the server rejects on the two-factor
# login call
TWO_FACTOR_IGNORED_HEADERS = (
    'Ig-U-Shbts',
    'Ig-U-Shbid',
    'Ig-U-Rur',
    'Authorization',
)

TWO_FACTOR_EXTRA_HEADERS = {
    'X-Ig-Www-Claim': '0',
    'Ig-Intended-User-Id': '0',
}


@dataclass(frozen=True)
class TwoFactorContext:
    identifier: str = ''
    username: str = ''
    account_id: int = 0
    totp_enabled: bool = False
    sms_enabled: bool = False
    whatsapp_enabled: bool = False
    obfuscated_phone: str = ''

    @classmethod
    def from_payload(
            cls, data: Any) -> 'TwoFactorContext':
        if not isinstance(data, dict):
            return cls()
        try:
            account_id = int(data.get('pk') or 0)
        except (TypeError, ValueError):
            account_id = 0
        return cls(
            identifier=str(data.get(
                'two_factor_identifier', '')),
            username=str(data.get('username', '')),
            account_id=account_id,
            totp_enabled=bool(data.get(
                'totp_two_factor_on', False)),
            sms_enabled=bool(data.get(
                'sms_two_factor_on', False)),
            whatsapp_enabled=bool(data.get(
                'whatsapp_two_factor_on', False)),
            obfuscated_phone=str(data.get(
                'obfuscated_phone_number', '')),
        )


CodeProvider = Callable[
    [TwoFactorContext],
    Union[Optional[str], Awaitable[Optional[str]]]]


class TwoFactorResolver:
    """Completes a two-factor login with a caller
    code, a code from ``code_provider``, or a TOTP
    code derived from the session's seed."""

    def __init__(
            self, client: 'Client',
            code_provider: Optional[
                CodeProvider] = None):
        self.client = client
        self.code_provider = code_provider

    async def _resolve_code(
            self, context: TwoFactorContext,
            code: Optional[str]
    ) -> Tuple[str, str]:
        if code:
            return code, METHOD_SMS
        if self.code_provider is not None:
            result = self.code_provider(context)
            if inspect.isawaitable(result):
                result = await result
            if result:
                return str(result), METHOD_SMS
        seed = self.client.state.totp_seed
        if seed:
            return generate_totp(seed), METHOD_TOTP
        raise TwoFactorNoCodeError(
            'No 2FA code given and no TOTP seed'
            ' stored')

    async def login(
            self, context: TwoFactorContext,
            code: Optional[str] = None
    ) -> 'Response':
        code, method = await self._resolve_code(
            context, code)
        return await self._submit(
            context, code, method)

    async def _submit(
            self, context: TwoFactorContext,
            code: str, method: str
    ) -> 'Response':
        state = self.client.state
        ident = state.identity
        log.info(
            f'Submitting 2FA code for'
            f' {context.username or state.username}'
            f' (method {method})')
        resp = await self.client.send(
            RequestSpec(
                endpoint=URL_2FA_LOGIN,
                method='POST',
                signed=True,
                params={
                    'verification_code': code,
                    'phone_id': ident.family_id,
                    'two_factor_identifier': (
                        context.identifier),
                    'username': (
                        context.username
                        or state.username),
                    'trust_this_device': '1',
                    'guid': ident.uuid,
                    'device_id': ident.device_id,
                    'waterfall_id': str(uuid.uuid4()),
                    'verification_method': method,
                },
                extra_headers=TWO_FACTOR_EXTRA_HEADERS,
                ignore_headers=(
                    TWO_FACTOR_IGNORED_HEADERS)),
            recover=False)
        self.client.verify_login(resp)
        await self.client.open_app()
        return resp

    async def check_trusted(
            self, context: TwoFactorContext) -> bool:
        """Poll once for approval from a trusted
        device. Completes the login when
        approved."""
        state = self.client.state
        payload = await self.client.send_json(
            RequestSpec(
                endpoint=URL_2FA_CHECK_TRUSTED,
                params={
                    'two_factor_identifier': (
                        context.identifier),
                    'username': (
                        context.username
                        or state.username),
                    'device_id': (
                        state.identity.device_id),
                }),
            recover=False)
        approved = (
            isinstance(payload, dict)
            and payload.get(
                'review_status', 0) != 0)
        log.info(
            f'Trusted device approval:'
            f' {"yes" if approved else "pending"}')
        if approved:
            await self._submit(
                context, '', METHOD_SMS)
        return approved
