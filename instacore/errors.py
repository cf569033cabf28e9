"""Exception types.

Every failure the server can report is classified
into exactly one ErrorKind and raised as the
matching ApiError subclass. Errors that are not
reported by the server (bad config, local crypto
failures, resolver failures) derive from AppError
directly.
"""

import enum
from typing import Any, Optional


class AppError(Exception):
    """Base application error."""


class ConfigError(AppError):
    """Missing or invalid configuration."""


class CipherError(AppError):
    """Password envelope could not be built."""


class SessionError(AppError):
    """Session state missing or malformed."""


class AutomationError(AppError):
    """Browser automation reported failure."""


class TwoFactorNoCodeError(AppError):
    """No 2FA code given and no TOTP seed stored."""


class ChallengeResolutionError(AppError):
    def __init__(self, url: str, reason: str = ''):
        msg = (
            f'Failed to resolve challenge'
            f' {url or "<unknown>"}')
        if reason:
            msg = f'{msg}: {reason}'
        super().__init__(msg)
        self.url = url


# ============================================
#  CLASSIFIED ERRORS
# ============================================

class ErrorKind(enum.Enum):
    TRANSPORT = 'transport'
    TOO_MANY_REQUESTS = 'too_many_requests'
    TRANSIENT_SERVER_ERROR = 'transient_server_error'
    LOGGED_OUT = 'logged_out'
    LOGIN_REQUIRED = 'login_required'
    CHALLENGE_REQUIRED = 'challenge_required'
    CHECKPOINT_REQUIRED = 'checkpoint_required'
    CHECKPOINT_PASSED = 'checkpoint_passed'
    TWO_FACTOR_REQUIRED = 'two_factor_required'
    INVALID_CREDENTIALS = 'invalid_credentials'
    GENERIC = 'generic'


class ApiError(AppError):
    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(
            self, message: str = '',
            error_type: str = '',
            endpoint: str = '',
            status: int = 0,
            payload: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.endpoint = endpoint
        self.status = status
        self.payload = payload

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.status:
            parts.append(f'status={self.status}')
        if self.endpoint:
            parts.append(f'endpoint={self.endpoint}')
        if self.error_type:
            parts.append(f'type={self.error_type}')
        if self.message:
            parts.append(self.message)
        return ' '.join(parts)


class TransportError(ApiError):
    kind = ErrorKind.TRANSPORT


class TooManyRequestsError(ApiError):
    kind = ErrorKind.TOO_MANY_REQUESTS


class TransientServerError(ApiError):
    kind = ErrorKind.TRANSIENT_SERVER_ERROR


class LoggedOutError(ApiError):
    kind = ErrorKind.LOGGED_OUT


class LoginRequiredError(ApiError):
    kind = ErrorKind.LOGIN_REQUIRED


class ChallengeRequiredError(ApiError):
    kind = ErrorKind.CHALLENGE_REQUIRED

    def __init__(self, *args, context=None, **kw):
        super().__init__(*args, **kw)
        self.context = context


class CheckpointRequiredError(ApiError):
    kind = ErrorKind.CHECKPOINT_REQUIRED

    def __init__(self, *args, url: str = '', **kw):
        super().__init__(*args, **kw)
        self.url = url


class CheckpointPassedError(ApiError):
    kind = ErrorKind.CHECKPOINT_PASSED


class TwoFactorRequiredError(ApiError):
    kind = ErrorKind.TWO_FACTOR_REQUIRED

    def __init__(self, *args, context=None, **kw):
        super().__init__(*args, **kw)
        self.context = context


class InvalidCredentialsError(ApiError):
    kind = ErrorKind.INVALID_CREDENTIALS


class GenericAPIError(ApiError):
    kind = ErrorKind.GENERIC
