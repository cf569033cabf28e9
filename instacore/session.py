"""Per-identity session state.

A SessionState is shared by every request issued
for one account. The header bag is guarded by a
thread lock with no awaits inside the critical
sections. The token watermark is read without a
lock; it is only rewritten under the refresh lock,
which is held for the whole refresh round trip so
concurrent requests trigger a single refresh and
wait for it before going out.
"""

import asyncio
import base64
import binascii
import contextvars
import json
import logging
import os
import sys
import threading
import time
from typing import (
    Any, Awaitable, Callable, Dict, List,
    Mapping, Optional,
)

from .constants import (
    AUTHORIZATION_HEADER,
    DEFAULT_HEADER_BAG,
    HARVESTED_HEADERS,
    LOG_HEADER_CHARS,
    TOKEN_REFRESH_MARGIN,
)
from .device import GALAXY_S10, DeviceIdentity, DeviceProfile
from .errors import SessionError

log = logging.getLogger('instacore')

SNAPSHOT_VERSION = 1

# Watermark value meaning "no token expiry known"
NO_WATERMARK = -1

# Set inside the task running a token refresh so
# the refresh request itself does not wait on the
# lock it is holding.
_refreshing: contextvars.ContextVar[bool] = (
    contextvars.ContextVar(
        'instacore_refreshing', default=False))


def truncate_header(value: str,
                    length: int = LOG_HEADER_CHARS) -> str:
    """Truncate header value for safe logging."""
    if not value:
        return '<empty>'
    if len(value) <= length:
        return value
    return f'{value[:length]}...'


def auth_token_strength(value: str) -> int:
    """Length of the payload segment of a
    ``Bearer IGT:<v>:<payload>`` token.

    Heuristic, not a documented token format.
    Returns -1 when the value has no payload
    segment.
    """
    parts = value.split(':')
    if len(parts) < 3:
        return -1
    return len(parts[2])


class OneShotFlag:
    """Boolean that can be claimed exactly once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        with self._lock:
            return self._claimed


class SessionState:

    def __init__(
            self, username: str,
            identity: DeviceIdentity,
            profile: DeviceProfile = GALAXY_S10,
            password: str = '',
            headers: Optional[
                Mapping[str, str]] = None,
            token_expiry: int = NO_WATERMARK,
            account_id: int = 0,
            rank_token: str = '',
            session_token: str = '',
            totp_seed: str = ''):
        self.username = username
        self.identity = identity
        self.profile = profile
        self.password = password
        self.account_id = account_id
        self.rank_token = rank_token
        self.session_token = session_token
        self.totp_seed = totp_seed
        self.public_key = ''
        self.public_key_id = 0
        self.checkpoint_guard = OneShotFlag()
        self.checkpoint_solved = False

        self._header_lock = threading.Lock()
        self._headers: Dict[str, str] = dict(
            DEFAULT_HEADER_BAG
            if headers is None else headers)

        self._token_expiry = int(token_expiry)
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def new(cls, username: str, password: str,
            profile: DeviceProfile = GALAXY_S10,
            totp_seed: str = '') -> 'SessionState':
        return cls(
            username=username,
            identity=DeviceIdentity.generate(
                username, password),
            profile=profile,
            password=password,
            totp_seed=totp_seed)

    # ---- account ----

    @property
    def logged_in(self) -> bool:
        return self.account_id != 0

    @property
    def user_agent(self) -> str:
        return self.profile.user_agent

    def set_account(
            self, account_id: int,
            username: str = '') -> None:
        self.account_id = int(account_id)
        if username:
            self.username = username
        self.rank_token = (
            f'{self.account_id}'
            f'_{self.identity.uuid}')

    def set_password_key(
            self, public_key: str,
            key_id: int) -> None:
        self.public_key = public_key
        self.public_key_id = int(key_id)

    # ---- header bag ----

    def header(self, name: str) -> Optional[str]:
        with self._header_lock:
            return self._headers.get(name)

    def headers_snapshot(self) -> Dict[str, str]:
        with self._header_lock:
            return dict(self._headers)

    def set_header(
            self, name: str, value: str) -> None:
        with self._header_lock:
            if value:
                self._headers[name] = value
            else:
                self._headers.pop(name, None)

    def merge_response_headers(
            self, headers: Mapping[str, str]
    ) -> List[str]:
        """Copy server-issued values into the
        header bag. Returns the updated keys."""
        lowered: Dict[str, str] = {}
        for key, value in headers.items():
            lowered.setdefault(key.lower(), value)

        updated: List[str] = []
        with self._header_lock:
            for src, dst in HARVESTED_HEADERS:
                value = lowered.get(src.lower(), '')
                if not value:
                    continue
                if dst == AUTHORIZATION_HEADER:
                    old = self._headers.get(dst, '')
                    if old and (
                            auth_token_strength(old)
                            > auth_token_strength(
                                value)):
                        log.debug(
                            f'Ignoring weaker auth'
                            f' token'
                            f' {truncate_header(value)}')
                        continue
                if self._headers.get(dst) != value:
                    self._headers[dst] = value
                    updated.append(dst)
        return updated

    # ---- token watermark ----

    @property
    def token_expiry(self) -> int:
        return self._token_expiry

    def set_watermark(
            self, request_time: float,
            ttl: float) -> None:
        self._token_expiry = int(request_time + ttl)
        log.debug(
            f'Token watermark ->'
            f' {self._token_expiry}')

    def token_expired(
            self, now: Optional[float] = None,
            margin: int = TOKEN_REFRESH_MARGIN
    ) -> bool:
        expiry = self._token_expiry
        if expiry == NO_WATERMARK:
            return False
        if now is None:
            now = time.time()
        return now > expiry - margin

    async def ensure_fresh(
            self,
            refresh: Callable[[], Awaitable[Any]],
            now: Optional[float] = None,
            margin: int = TOKEN_REFRESH_MARGIN
    ) -> bool:
        """Run ``refresh`` if the watermark has
        been passed, or wait for one already in
        flight. Returns True if this call
        performed the refresh."""
        if _refreshing.get():
            return False
        if (not self._refresh_lock.locked()
                and not self.token_expired(now, margin)):
            return False
        async with self._refresh_lock:
            if not self.token_expired(now, margin):
                return False
            # A failed refresh leaves no watermark.
            self._token_expiry = NO_WATERMARK
            log.info('Token near expiry, refreshing')
            marker = _refreshing.set(True)
            try:
                await refresh()
            finally:
                _refreshing.reset(marker)
            return True

    # ---- persistence ----

    def to_dict(self) -> dict:
        return {
            'version': SNAPSHOT_VERSION,
            'account_id': self.account_id,
            'username': self.username,
            'device': self.identity.to_dict(),
            'device_profile': self.profile.to_dict(),
            'rank_token': self.rank_token,
            'session_token': self.session_token,
            'token_expiry': self._token_expiry,
            'header_options': self.headers_snapshot(),
            'totp_seed': self.totp_seed,
        }

    @classmethod
    def from_dict(
            cls, data: Any) -> 'SessionState':
        if not isinstance(data, dict):
            raise SessionError(
                'Snapshot root not dict')
        version = data.get('version')
        if version != SNAPSHOT_VERSION:
            raise SessionError(
                f'Unsupported snapshot'
                f' version {version}')
        try:
            headers = data.get('header_options') or {}
            if not isinstance(headers, dict):
                raise SessionError(
                    'header_options not dict')
            return cls(
                username=data['username'],
                identity=DeviceIdentity.from_dict(
                    data['device']),
                profile=DeviceProfile.from_dict(
                    data.get('device_profile') or {}),
                headers={
                    str(k): str(v)
                    for k, v in headers.items()},
                token_expiry=int(data.get(
                    'token_expiry', NO_WATERMARK)),
                account_id=int(
                    data.get('account_id', 0)),
                rank_token=data.get(
                    'rank_token', ''),
                session_token=data.get(
                    'session_token', ''),
                totp_seed=data.get(
                    'totp_seed', ''),
            )
        except (KeyError, TypeError,
                ValueError) as exc:
            raise SessionError(
                f'Malformed snapshot: {exc}') from exc

    def export(self) -> bytes:
        return json.dumps(
            self.to_dict(), sort_keys=True,
            separators=(',', ':')).encode('utf-8')

    def export_b64(self) -> str:
        return base64.b64encode(
            self.export()).decode('ascii')

    @classmethod
    def import_(cls, blob: bytes) -> 'SessionState':
        try:
            data = json.loads(blob)
        except (json.JSONDecodeError,
                UnicodeDecodeError) as exc:
            raise SessionError(
                f'Snapshot JSON: {exc}') from exc
        return cls.from_dict(data)

    @classmethod
    def import_b64(
            cls, text: str) -> 'SessionState':
        try:
            blob = base64.b64decode(
                text, validate=True)
        except binascii.Error as exc:
            raise SessionError(
                f'Snapshot base64: {exc}') from exc
        return cls.import_(blob)

    def save(self, path: str) -> None:
        tmp = f'{path}.tmp'
        with open(tmp, 'wb') as f:
            f.write(self.export())
        if (sys.platform == 'win32'
                and os.path.exists(path)):
            os.remove(path)
        os.rename(tmp, path)
        log.info(f'Session saved to {path}')

    @classmethod
    def load(cls, path: str) -> 'SessionState':
        with open(path, 'rb') as f:
            return cls.import_(f.read())
