"""RFC 4226 / RFC 6238 one-time passwords."""

import base64
import binascii
import hashlib
import hmac
import struct
import time
from typing import Optional

from .constants import TOTP_DIGITS, TOTP_STEP_SECONDS


class TOTPError(ValueError):
    """Secret is not valid base32."""


def decode_secret(secret: str) -> bytes:
    clean = secret.replace(' ', '').upper()
    clean += '=' * (-len(clean) % 8)
    try:
        return base64.b32decode(clean)
    except (binascii.Error, ValueError) as exc:
        raise TOTPError(
            f'Invalid TOTP secret: {exc}') from exc


def generate_hotp(
        secret: str, counter: int,
        digits: int = TOTP_DIGITS) -> str:
    key = decode_secret(secret)
    digest = hmac.new(
        key, struct.pack('>Q', counter),
        hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    (chunk,) = struct.unpack(
        '>I', digest[offset:offset + 4])
    code = (chunk & 0x7FFFFFFF) % (10 ** digits)
    return str(code).zfill(digits)


def generate_totp(
        secret: str,
        for_time: Optional[float] = None,
        step: int = TOTP_STEP_SECONDS,
        digits: int = TOTP_DIGITS) -> str:
    if for_time is None:
        for_time = time.time()
    return generate_hotp(
        secret, int(for_time) // step, digits)
