"""Maps raw responses to success or one classified
error kind.

Status dispatch:
    200, 202  success
    400       structured failure, see _classify_400
    403       login_required or generic
    429       too many requests
    503       transient, try later
    other     generic, except the transcode sentinel
              which is success with an empty body
"""

import gzip
import json
import logging
import zlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from multidict import CIMultiDict

from .challenge import ChallengeContext
from .constants import (
    MSG_BAD_PASSWORD,
    MSG_CHALLENGE_REQUIRED,
    MSG_CHECKPOINT_CHALLENGE,
    MSG_CHECKPOINT_REQUIRED,
    MSG_INVALID_CODE,
    MSG_LOGGED_OUT_TITLE,
    MSG_LOGIN_REQUIRED,
    MSG_TRANSCODE_PENDING,
    MSG_TRY_LATER,
    MSG_TWO_FACTOR_REQUIRED,
)
from .errors import (
    ApiError,
    AppError,
    ChallengeRequiredError,
    CheckpointPassedError,
    CheckpointRequiredError,
    GenericAPIError,
    InvalidCredentialsError,
    LoggedOutError,
    LoginRequiredError,
    TooManyRequestsError,
    TransientServerError,
    TransportError,
    TwoFactorRequiredError,
)
from .session import SessionState
from .transport import RawResponse
from .twofactor import TwoFactorContext

log = logging.getLogger('instacore')

SUCCESS_STATUSES = (200, 202)


@dataclass
class Response:
    status: int
    headers: CIMultiDict = field(
        default_factory=CIMultiDict)
    body: bytes = b''
    endpoint: str = ''
    error: Optional[AppError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def json(self) -> Any:
        if not self.body:
            return {}
        return json.loads(self.body)

    def text(self) -> str:
        return self.body.decode('utf-8', 'replace')

    def with_error(
            self,
            error: Optional[AppError]) -> 'Response':
        return replace(self, error=error)

    @classmethod
    def from_transport_error(
            cls, endpoint: str,
            error: TransportError) -> 'Response':
        return cls(
            status=0, endpoint=endpoint,
            error=error)


def parse_json(body: bytes) -> Dict[str, Any]:
    """Decode a JSON object body; anything else
    yields an empty dict."""
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError,
            UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def decode_body(raw: RawResponse) -> bytes:
    encoding = raw.headers.get(
        'Content-Encoding', '').lower()
    if encoding == 'gzip':
        return gzip.decompress(raw.body)
    if encoding == 'deflate':
        return zlib.decompress(raw.body)
    return raw.body


def failure_message(data: Dict[str, Any]) -> str:
    return str(
        data.get('error_type')
        or data.get('message') or '')


class ResponseClassifier:

    def classify(
            self, raw: RawResponse, endpoint: str,
            state: SessionState) -> Response:
        """Harvest headers into ``state``, decode
        the body and classify the status."""
        updated = state.merge_response_headers(
            raw.headers)
        if updated:
            log.debug(
                f'{endpoint}: updated headers'
                f' {", ".join(updated)}')

        try:
            body = decode_body(raw)
        except (OSError, EOFError,
                zlib.error) as exc:
            return Response(
                status=raw.status,
                headers=raw.headers,
                body=raw.body,
                endpoint=endpoint,
                error=TransportError(
                    f'Undecodable body: {exc}',
                    endpoint=endpoint,
                    status=raw.status))

        error = self.classify_status(
            raw.status, body, endpoint, state,
            reason=raw.reason)
        if (raw.status not in SUCCESS_STATUSES
                and error is None):
            body = b''
        return Response(
            status=raw.status,
            headers=raw.headers,
            body=body,
            endpoint=endpoint,
            error=error)

    def classify_status(
            self, status: int, body: bytes,
            endpoint: str, state: SessionState,
            reason: str = '') -> Optional[ApiError]:
        if status in SUCCESS_STATUSES:
            return None
        data = parse_json(body)
        if status == 400:
            return self._classify_400(
                data, body, endpoint, state)
        if status == 403:
            if failure_message(data) == (
                    MSG_LOGIN_REQUIRED):
                return self._login_required(
                    data, endpoint, status)
            return self._generic(
                data, body, endpoint, status,
                reason)
        if status == 429:
            return TooManyRequestsError(
                failure_message(data)
                or 'Too many requests',
                endpoint=endpoint, status=status,
                payload=data)
        if status == 503:
            return TransientServerError(
                MSG_TRY_LATER, endpoint=endpoint,
                status=status, payload=data)
        if (status != 500
                and data.get('message') == (
                    MSG_TRANSCODE_PENDING)):
            log.debug(
                f'{endpoint}: transcode pending')
            return None
        return self._generic(
            data, body, endpoint, status, reason)

    def _classify_400(
            self, data: Dict[str, Any],
            body: bytes, endpoint: str,
            state: SessionState) -> ApiError:
        msg = failure_message(data)
        kw = dict(
            error_type=str(
                data.get('error_type', '')),
            endpoint=endpoint, status=400,
            payload=data)

        if msg == MSG_LOGIN_REQUIRED:
            return self._login_required(
                data, endpoint, 400)
        if msg in (MSG_BAD_PASSWORD,
                   MSG_INVALID_CODE):
            return InvalidCredentialsError(
                str(data.get('message', msg)), **kw)
        if msg == MSG_CHECKPOINT_REQUIRED:
            url = str(
                data.get('checkpoint_url')
                or (data.get('challenge') or {})
                .get('url', ''))
            if state.checkpoint_solved:
                return CheckpointPassedError(
                    msg, **kw)
            return CheckpointRequiredError(
                msg, url=url, **kw)
        if msg in (MSG_CHALLENGE_REQUIRED,
                   MSG_CHECKPOINT_CHALLENGE):
            return ChallengeRequiredError(
                msg,
                context=ChallengeContext.from_payload(
                    data.get('challenge')),
                **kw)
        if msg == MSG_TWO_FACTOR_REQUIRED:
            return TwoFactorRequiredError(
                msg,
                context=TwoFactorContext.from_payload(
                    data.get('two_factor_info')),
                **kw)
        return self._generic(
            data, body, endpoint, 400, '')

    @staticmethod
    def _login_required(
            data: Dict[str, Any], endpoint: str,
            status: int) -> ApiError:
        cls = (
            LoggedOutError
            if data.get('error_title') == (
                MSG_LOGGED_OUT_TITLE)
            else LoginRequiredError)
        return cls(
            MSG_LOGIN_REQUIRED,
            error_type=str(
                data.get('error_type', '')),
            endpoint=endpoint, status=status,
            payload=data)

    @staticmethod
    def _generic(
            data: Dict[str, Any], body: bytes,
            endpoint: str, status: int,
            reason: str) -> GenericAPIError:
        message = str(data.get('message') or '')
        if not message and not data:
            message = body.decode(
                'utf-8', 'replace').strip()
        return GenericAPIError(
            message,
            error_type=str(
                data.get('error_type')
                or reason or status),
            endpoint=endpoint, status=status,
            payload=data or None)
