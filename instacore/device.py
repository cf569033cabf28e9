"""Device profile and persisted device identity."""

import hashlib
import logging
import uuid
from dataclasses import dataclass, fields
from typing import Any, Dict

from .constants import (
    APP_VERSION,
    APP_VERSION_CODE,
    DEVICE_ID_SEED,
    LOCALE,
)

log = logging.getLogger('instacore')


def _md5(text: str) -> str:
    return hashlib.md5(
        text.encode('utf-8')).hexdigest()


def _new_uuid() -> str:
    return str(uuid.uuid4())


def generate_device_id(
        username: str, password: str) -> str:
    """Stable per-account id, so repeated logins
    present the same device."""
    digest = _md5(
        _md5(username + password)
        + DEVICE_ID_SEED)
    return f'android-{digest[:16]}'


def jazoest(value: str) -> str:
    return '2' + str(
        sum(value.encode('utf-8')))


# ============================================
#  DEVICE PROFILE
# ============================================

@dataclass(frozen=True)
class DeviceProfile:
    manufacturer: str = 'samsung'
    model: str = 'SM-G975F'
    code_name: str = 'beyond2'
    android_version: int = 30
    android_release: int = 11
    screen_dpi: str = '560dpi'
    screen_resolution: str = '1440x2898'
    chipset: str = 'exynos9820'

    @property
    def user_agent(self) -> str:
        return (
            f'Instagram {APP_VERSION} Android'
            f' ({self.android_version}'
            f'/{self.android_release};'
            f' {self.screen_dpi};'
            f' {self.screen_resolution};'
            f' {self.manufacturer};'
            f' {self.model};'
            f' {self.code_name};'
            f' {self.chipset};'
            f' {LOCALE}; {APP_VERSION_CODE})')

    def to_dict(self) -> dict:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)}

    @classmethod
    def from_dict(
            cls, data: Dict[str, Any]
    ) -> 'DeviceProfile':
        valid_names = {
            f.name for f in fields(cls)}
        return cls(**{
            k: v for k, v in data.items()
            if k in valid_names})


GALAXY_S10 = DeviceProfile()


# ============================================
#  DEVICE IDENTITY
# ============================================

@dataclass(frozen=True)
class DeviceIdentity:
    """Identifiers presented to the server for
    the lifetime of a session."""

    device_id: str
    uuid: str
    phone_id: str
    family_id: str
    ad_id: str
    pigeon_session_id: str

    @classmethod
    def generate(
            cls, username: str,
            password: str) -> 'DeviceIdentity':
        ident = cls(
            device_id=generate_device_id(
                username, password),
            uuid=_new_uuid(),
            phone_id=_new_uuid(),
            family_id=_new_uuid(),
            ad_id=_new_uuid(),
            pigeon_session_id=(
                f'UFS-{_new_uuid()}-0'),
        )
        log.debug(
            f'Generated device'
            f' {ident.device_id}'
            f' (uuid={ident.uuid})')
        return ident

    def to_dict(self) -> dict:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)}

    @classmethod
    def from_dict(
            cls, data: Dict[str, Any]
    ) -> 'DeviceIdentity':
        valid_names = {
            f.name for f in fields(cls)}
        missing = valid_names - data.keys()
        if missing:
            raise KeyError(
                f'Device identity missing'
                f' {sorted(missing)}')
        return cls(**{
            k: data[k] for k in valid_names})
