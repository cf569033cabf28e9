"""Client configuration from config.json and
INSTACORE_* environment variables."""

import json
import logging
import os
from dataclasses import dataclass, fields, replace

from .constants import (
    AUTOMATION_TIMEOUT,
    CHECKPOINT_TIMEOUT,
    LOCALE,
    MAX_RECOVERY_ATTEMPTS,
    REQUEST_TIMEOUT,
    TOKEN_REFRESH_MARGIN,
    TOO_MANY_REQUESTS_COOLDOWN,
)
from .errors import ConfigError

log = logging.getLogger('instacore')

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class ClientConfig:
    request_timeout: float = REQUEST_TIMEOUT
    max_recovery_attempts: int = MAX_RECOVERY_ATTEMPTS
    too_many_requests_cooldown: float = (
        TOO_MANY_REQUESTS_COOLDOWN)
    token_refresh_margin: int = TOKEN_REFRESH_MARGIN
    automation_timeout: float = AUTOMATION_TIMEOUT
    checkpoint_timeout: float = CHECKPOINT_TIMEOUT
    locale: str = LOCALE
    proxy: str = ''
    session_path: str = 'session.json'
    debug: bool = False

    def validate(self) -> None:
        bad = []
        for name in ('request_timeout',
                     'automation_timeout',
                     'checkpoint_timeout'):
            if getattr(self, name) <= 0:
                bad.append(name)
        if self.max_recovery_attempts < 0:
            bad.append('max_recovery_attempts')
        if self.too_many_requests_cooldown < 0:
            bad.append('too_many_requests_cooldown')
        if self.token_refresh_margin < 0:
            bad.append('token_refresh_margin')
        if not self.locale:
            bad.append('locale')
        if bad:
            raise ConfigError(
                'Invalid: ' + ', '.join(bad))

    def with_overrides(self, **kw) -> 'ClientConfig':
        return replace(self, **kw)


def _convert(name: str, value):
    kind = {
        f.name: f.type for f in fields(ClientConfig)}[name]
    if kind is bool:
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        return bool(value)
    return kind(value)


def load_config(path: str = 'config.json') -> ClientConfig:
    overrides = {}
    valid_keys = {f.name for f in fields(ClientConfig)}
    if os.path.exists(path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError('root is not an object')
            unknown = [k for k in raw if k not in valid_keys]
            if unknown:
                log.warning(
                    f'Config: unknown keys:'
                    f' {", ".join(sorted(unknown))}')
            overrides = {
                k: v for k, v in raw.items()
                if k in valid_keys}
            log.info(f'Config: {path}')
        except (json.JSONDecodeError, ValueError,
                OSError) as exc:
            log.warning(f'Config error: {exc}')

    for name in valid_keys:
        val = os.environ.get(
            f'INSTACORE_{name.upper()}')
        if val:
            overrides[name] = val

    converted = {}
    for name, value in overrides.items():
        try:
            converted[name] = _convert(name, value)
        except (TypeError, ValueError):
            log.warning(
                f'Config: bad value for {name}:'
                f' {value!r}')
    return ClientConfig(**converted)
