"""Password envelope for the login endpoint.

The password is sealed with a one-off AES-256-GCM
key, and that key is wrapped for the server with
RSA PKCS#1 v1.5. Binary layout (all fields
concatenated, then base64 encoded):

    [version:1][key_id:1][nonce:12]
    [wrapped_len:2 LE][wrapped_key][tag:16]
    [ciphertext]

The result is framed as
``#PWD_INSTAGRAM:4:<timestamp>:<base64>``.
"""

import base64
import binascii
import os
import struct
import time
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    PWD_ENVELOPE_PREFIX,
    PWD_ENVELOPE_VERSION,
    PWD_PAYLOAD_VERSION,
)
from .errors import CipherError

AES_KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EnvelopeParts:
    timestamp: str
    version: int
    key_id: int
    nonce: bytes
    wrapped_key: bytes
    tag: bytes
    ciphertext: bytes


def load_public_key(
        encoded: str) -> rsa.RSAPublicKey:
    """Decode the base64-wrapped PEM key the
    server hands out in the sync response."""
    try:
        pem = base64.b64decode(encoded)
        key = serialization.load_pem_public_key(
            pem)
    except (binascii.Error, ValueError,
            UnsupportedAlgorithm) as exc:
        raise CipherError(
            f'Public key decode: {exc}') from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise CipherError(
            f'Public key is not RSA:'
            f' {type(key).__name__}')
    return key


def encrypt_password(
        password: str, public_key: str,
        key_id: int,
        timestamp: Optional[str] = None) -> str:
    if not timestamp:
        timestamp = str(int(time.time()))
    if not 0 <= int(key_id) <= 0xFF:
        raise CipherError(
            f'Key id {key_id} does not fit'
            f' in one byte')

    rsa_key = load_public_key(public_key)
    sym_key = os.urandom(AES_KEY_BYTES)
    nonce = os.urandom(NONCE_BYTES)

    wrapped = rsa_key.encrypt(
        sym_key, padding.PKCS1v15())

    # AESGCM returns ciphertext || tag
    sealed = AESGCM(sym_key).encrypt(
        nonce, password.encode('utf-8'),
        timestamp.encode('utf-8'))
    ciphertext = sealed[:-TAG_BYTES]
    tag = sealed[-TAG_BYTES:]

    payload = b''.join((
        bytes((PWD_PAYLOAD_VERSION, int(key_id))),
        nonce,
        struct.pack('<H', len(wrapped)),
        wrapped,
        tag,
        ciphertext,
    ))
    encoded = base64.b64encode(
        payload).decode('ascii')
    return (
        f'{PWD_ENVELOPE_PREFIX}'
        f':{PWD_ENVELOPE_VERSION}'
        f':{timestamp}:{encoded}')


def decode_envelope(envelope: str) -> EnvelopeParts:
    """Split an envelope into its fields without
    decrypting anything."""
    try:
        prefix, version, ts, encoded = (
            envelope.split(':', 3))
    except ValueError:
        raise CipherError(
            'Envelope has too few fields')
    if (prefix != PWD_ENVELOPE_PREFIX
            or version != str(
                PWD_ENVELOPE_VERSION)):
        raise CipherError(
            f'Unknown envelope'
            f' {prefix}:{version}')
    try:
        raw = base64.b64decode(
            encoded, validate=True)
    except binascii.Error as exc:
        raise CipherError(
            f'Envelope base64: {exc}') from exc

    header = 2 + NONCE_BYTES + 2
    if len(raw) < header + TAG_BYTES:
        raise CipherError('Envelope truncated')
    nonce = raw[2:2 + NONCE_BYTES]
    (wrapped_len,) = struct.unpack(
        '<H', raw[2 + NONCE_BYTES:header])
    wrapped_end = header + wrapped_len
    if len(raw) < wrapped_end + TAG_BYTES:
        raise CipherError('Envelope truncated')
    return EnvelopeParts(
        timestamp=ts,
        version=raw[0],
        key_id=raw[1],
        nonce=nonce,
        wrapped_key=raw[header:wrapped_end],
        tag=raw[wrapped_end:
                wrapped_end + TAG_BYTES],
        ciphertext=raw[wrapped_end + TAG_BYTES:],
    )
