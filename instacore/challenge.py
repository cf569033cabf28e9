"""Challenge and checkpoint resolution.

Challenges are tried programmatically first: the
current step is fetched and, when it is one of the
known choice steps, answered directly. Anything
else is handed to the injected WebAutomation,
which owns all browser control.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from typing import (
    TYPE_CHECKING, Any, Dict, Optional, Protocol,
    runtime_checkable,
)

from .constants import AUTOMATION_TIMEOUT, CHECKPOINT_TIMEOUT
from .errors import (
    ApiError,
    AppError,
    AutomationError,
    ChallengeResolutionError,
    SessionError,
)
from .request import RequestSpec, prepare_data
from .session import SessionState

if TYPE_CHECKING:
    from .client import Client

log = logging.getLogger('instacore')

STEP_SELECT_VERIFY_METHOD = 'select_verify_method'
STEP_DELTA_LOGIN_REVIEW = 'delta_login_review'

# "It was me"
CHOICE_IT_WAS_ME = '0'


@runtime_checkable
class WebAutomation(Protocol):
    async def resolve(self, url: str) -> None: ...


@dataclass(frozen=True)
class ChallengeContext:
    url: str = ''
    api_path: str = ''
    step_name: str = ''
    choice: str = ''
    user_id: int = 0
    nonce_code: str = ''
    lock: bool = False
    logout: bool = False
    native_flow: bool = False
    raw_context: Dict[str, Any] = field(
        default_factory=dict, compare=False)

    @classmethod
    def from_payload(
            cls, data: Any) -> 'ChallengeContext':
        if not isinstance(data, dict):
            return cls()
        ctx = data.get('challenge_context')
        if isinstance(ctx, str):
            try:
                ctx = json.loads(ctx)
            except json.JSONDecodeError:
                ctx = {}
        if not isinstance(ctx, dict):
            ctx = {}
        step_data = ctx.get('step_data') or {}
        try:
            user_id = int(
                ctx.get('user_id')
                or data.get('user_id') or 0)
        except (TypeError, ValueError):
            user_id = 0
        return cls(
            url=str(data.get('url', '')),
            api_path=str(data.get('api_path', '')),
            step_name=str(
                ctx.get('step_name')
                or data.get('step_name', '')),
            choice=str(
                step_data.get('choice', '')
                if isinstance(step_data, dict)
                else ''),
            user_id=user_id,
            nonce_code=str(
                ctx.get('nonce_code', '')),
            lock=bool(data.get('lock', False)),
            logout=bool(data.get('logout', False)),
            native_flow=bool(
                data.get('native_flow', False)),
            raw_context=ctx,
        )

    def with_step(
            self, payload: Dict[str, Any]
    ) -> 'ChallengeContext':
        """Merge a step response into this
        context."""
        step_data = payload.get('step_data') or {}
        ctx = payload.get('challenge_context')
        if isinstance(ctx, str):
            try:
                ctx = json.loads(ctx)
            except json.JSONDecodeError:
                ctx = None
        return replace(
            self,
            step_name=str(payload.get(
                'step_name', self.step_name)),
            choice=str(
                step_data.get('choice', self.choice)
                if isinstance(step_data, dict)
                else self.choice),
            raw_context=(
                ctx if isinstance(ctx, dict)
                else self.raw_context),
        )

    @property
    def endpoint(self) -> str:
        return (self.api_path or self.url).lstrip('/')


# ============================================
#  CHALLENGE
# ============================================

class ChallengeResolver:

    def __init__(
            self, client: 'Client',
            automation: Optional[
                WebAutomation] = None,
            timeout: float = AUTOMATION_TIMEOUT):
        self.client = client
        self.automation = automation
        self.timeout = timeout

    @property
    def state(self) -> SessionState:
        return self.client.state

    async def fetch_step(
            self, context: ChallengeContext
    ) -> ChallengeContext:
        payload = await self.client.send_json(
            RequestSpec(
                endpoint=context.endpoint,
                params={
                    'guid': self.state.identity.uuid,
                    'device_id': (
                        self.state.identity.device_id),
                    'challenge_context': json.dumps(
                        context.raw_context),
                }),
            recover=False)
        if not isinstance(payload, dict):
            return context
        return context.with_step(payload)

    async def select_verify_method(
            self, context: ChallengeContext,
            choice: str,
            replay: bool = False) -> Any:
        endpoint = context.endpoint
        if replay:
            endpoint = endpoint.replace(
                'challenge/', 'challenge/replay/', 1)
        return await self.client.send_json(
            RequestSpec(
                endpoint=endpoint,
                method='POST',
                signed=True,
                params=prepare_data(
                    self.state,
                    choice=choice,
                    guid=self.state.identity.uuid,
                    device_id=(
                        self.state.identity
                        .device_id))),
            recover=False)

    async def send_security_code(
            self, context: ChallengeContext,
            code: str) -> Any:
        """Submit the code sent to the user after
        choosing a verify method."""
        payload = await self.client.send_json(
            RequestSpec(
                endpoint=context.endpoint,
                method='POST',
                signed=True,
                params=prepare_data(
                    self.state,
                    security_code=code,
                    guid=self.state.identity.uuid,
                    device_id=(
                        self.state.identity
                        .device_id))),
            recover=False)
        user = (payload.get('logged_in_user')
                if isinstance(payload, dict)
                else None)
        if isinstance(user, dict) and user.get('pk'):
            self.state.set_account(
                int(user['pk']),
                str(user.get('username', '')))
            log.info(
                f'Challenge passed, logged in as'
                f' {self.state.username}')
        return payload

    async def resolve(
            self, context: ChallengeContext) -> None:
        url = context.url or context.api_path
        if context.endpoint:
            try:
                context = await self.fetch_step(
                    context)
            except ApiError as exc:
                log.warning(
                    f'Challenge step fetch: {exc}')

        step = context.step_name
        log.info(
            f'Challenge step'
            f' "{step or "<unknown>"}" at {url}')
        try:
            if step == STEP_SELECT_VERIFY_METHOD:
                await self.select_verify_method(
                    context,
                    context.choice
                    or CHOICE_IT_WAS_ME)
                return
            if step == STEP_DELTA_LOGIN_REVIEW:
                await self.select_verify_method(
                    context, CHOICE_IT_WAS_ME)
                return
        except ApiError as exc:
            raise ChallengeResolutionError(
                url, str(exc)) from exc

        await self._run_automation(
            url, self.timeout,
            f'unhandled step "{step}"')

    async def _run_automation(
            self, url: str, timeout: float,
            reason: str) -> None:
        if self.automation is None:
            raise ChallengeResolutionError(
                url,
                f'{reason}, no automation'
                f' configured')
        log.info(
            f'Opening {url} in browser automation'
            f' (timeout {timeout}s)')
        try:
            await asyncio.wait_for(
                self.automation.resolve(url),
                timeout)
        except asyncio.TimeoutError as exc:
            raise ChallengeResolutionError(
                url,
                f'automation timed out after'
                f' {timeout}s') from exc
        except AutomationError as exc:
            raise ChallengeResolutionError(
                url, str(exc)) from exc


# ============================================
#  CHECKPOINT
# ============================================

class CheckpointResolver:
    """Runs the cookie-consent automation at most
    once per session."""

    def __init__(
            self, state: SessionState,
            automation: Optional[
                WebAutomation] = None,
            timeout: float = CHECKPOINT_TIMEOUT):
        self.state = state
        self.automation = automation
        self.timeout = timeout

    async def resolve(self, url: str) -> None:
        if not self.state.checkpoint_guard.claim():
            raise SessionError(
                'Checkpoint automation already ran'
                ' for this session')
        if self.automation is None:
            raise ChallengeResolutionError(
                url, 'no automation configured')
        log.info(
            f'Accepting checkpoint at {url}')
        try:
            await asyncio.wait_for(
                self.automation.resolve(url),
                self.timeout)
        except asyncio.TimeoutError as exc:
            raise ChallengeResolutionError(
                url,
                f'checkpoint timed out after'
                f' {self.timeout}s') from exc
        except AppError as exc:
            raise ChallengeResolutionError(
                url, str(exc)) from exc
        self.state.checkpoint_solved = True
        log.info(f'Checkpoint {url} accepted')
