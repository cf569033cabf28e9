"""Bounded retry state machine.

The client hands every failed, classified response
to a RecoveryPolicy together with the spec that
produced it. The policy either resolves the cause
and calls ``attempt.retry()``, or returns the
response unchanged so the client raises its
error.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import (
    TYPE_CHECKING, Awaitable, Callable, Dict,
    Optional, Protocol, runtime_checkable,
)

from .classifier import Response
from .constants import (
    MAX_RECOVERY_ATTEMPTS,
    TOO_MANY_REQUESTS_COOLDOWN,
)
from .errors import (
    AppError,
    ChallengeResolutionError,
    ErrorKind,
    TwoFactorNoCodeError,
)
from .request import RequestSpec

if TYPE_CHECKING:
    from .client import Client

log = logging.getLogger('instacore')


@dataclass
class RecoveryAttempt:
    client: 'Client'
    spec: RequestSpec
    response: Response
    count: int

    @property
    def error(self) -> Optional[AppError]:
        return self.response.error

    async def retry(self) -> Response:
        return await self.client.dispatch(
            self.spec, self.count)

    def propagate(
            self,
            error: Optional[AppError] = None
    ) -> Response:
        if error is None:
            return self.response
        return self.response.with_error(error)


@runtime_checkable
class RecoveryPolicy(Protocol):
    async def resolve(
            self, attempt: RecoveryAttempt
    ) -> Response: ...


Handler = Callable[
    [RecoveryAttempt], Awaitable[Response]]


class DefaultRecoveryPolicy:

    def __init__(
            self,
            cooldown: float = (
                TOO_MANY_REQUESTS_COOLDOWN),
            max_attempts: int = (
                MAX_RECOVERY_ATTEMPTS),
            sleep: Callable[
                [float], Awaitable[None]
            ] = asyncio.sleep):
        self.cooldown = cooldown
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._handlers: Dict[ErrorKind, Handler] = {
            ErrorKind.TOO_MANY_REQUESTS: (
                self._on_too_many_requests),
            ErrorKind.CHALLENGE_REQUIRED: (
                self._on_challenge),
            ErrorKind.CHECKPOINT_REQUIRED: (
                self._on_checkpoint),
            ErrorKind.CHECKPOINT_PASSED: (
                self._on_checkpoint_passed),
            ErrorKind.TWO_FACTOR_REQUIRED: (
                self._on_two_factor),
        }

    async def resolve(
            self, attempt: RecoveryAttempt
    ) -> Response:
        error = attempt.error
        if error is None:
            return attempt.response
        if attempt.count > self.max_attempts:
            log.warning(
                f'{attempt.spec.endpoint}: giving'
                f' up after {attempt.count - 1}'
                f' recovery attempts ({error})')
            return attempt.propagate()
        kind = getattr(error, 'kind', None)
        handler = self._handlers.get(kind)
        if handler is None:
            log.debug(
                f'{attempt.spec.endpoint}:'
                f' propagating {error}')
            return attempt.propagate()
        return await handler(attempt)

    # ---- handlers ----

    async def _on_too_many_requests(
            self, attempt: RecoveryAttempt
    ) -> Response:
        if attempt.spec.ignore_429:
            log.debug(
                f'{attempt.spec.endpoint}: 429'
                f' ignored')
            return replace(
                attempt.response,
                body=b'', error=None)
        log.warning(
            f'{attempt.spec.endpoint}: too many'
            f' requests, sleeping'
            f' {self.cooldown}s'
            f' (attempt {attempt.count})')
        await self._sleep(self.cooldown)
        return await attempt.retry()

    async def _on_challenge(
            self, attempt: RecoveryAttempt
    ) -> Response:
        error = attempt.error
        context = getattr(error, 'context', None)
        url = getattr(context, 'url', '') or ''
        log.info(
            f'{attempt.spec.endpoint}: challenge'
            f' required, resolving')
        try:
            await attempt.client.challenge.resolve(
                context)
        except ChallengeResolutionError as exc:
            log.warning(f'{exc}')
            return attempt.propagate(exc)
        except AppError as exc:
            wrapped = ChallengeResolutionError(
                url, str(exc))
            wrapped.__cause__ = exc
            log.warning(f'{wrapped}')
            return attempt.propagate(wrapped)
        return await attempt.retry()

    async def _on_checkpoint(
            self, attempt: RecoveryAttempt
    ) -> Response:
        url = getattr(attempt.error, 'url', '')
        log.info(
            f'{attempt.spec.endpoint}: checkpoint'
            f' required at {url}')
        try:
            await attempt.client.checkpoint.resolve(
                url)
        except AppError as exc:
            log.warning(f'Checkpoint: {exc}')
            return attempt.propagate(exc)
        return await attempt.retry()

    async def _on_checkpoint_passed(
            self, attempt: RecoveryAttempt
    ) -> Response:
        log.info(
            f'{attempt.spec.endpoint}: checkpoint'
            f' already passed, retrying')
        return await attempt.retry()

    async def _on_two_factor(
            self, attempt: RecoveryAttempt
    ) -> Response:
        context = getattr(
            attempt.error, 'context', None)
        log.info(
            f'{attempt.spec.endpoint}: two-factor'
            f' required')
        try:
            await attempt.client.two_factor.login(
                context)
        except TwoFactorNoCodeError:
            log.warning(
                'Two-factor required but no code'
                ' source available')
            return attempt.propagate()
        except AppError as exc:
            log.warning(f'Two-factor login: {exc}')
            return attempt.propagate(exc)
        return await attempt.retry()
