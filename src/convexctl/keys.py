"""Instance secret and admin key generation.

An instance secret is 32 random bytes rendered as hex. Admin keys are derived
from the secret and the instance name: an AES-128 key is derived from the
secret with KBKDF (HMAC-SHA256, counter mode, purpose label ``"admin key"``),
a small protobuf payload is sealed with AES-GCM using the format version byte
as associated data, and the result is rendered as
``<instance_name>|<hex(version || nonce || ciphertext)>``.

The derivation is an external contract with the backend executable. Callers
targeting a backend with a different scheme pass their own
:data:`AdminKeyDeriver`.
"""
from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.kbkdf import CounterLocation, KBKDFHMAC, Mode

DEFAULT_INSTANCE_NAME = "convex-local"
ADMIN_KEY_PURPOSE = "admin key"
ADMIN_KEY_VERSION = 1
SECRET_BYTES = 32
NONCE_BYTES = 12
KEY_BYTES = 16

_INSTANCE_NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")

AdminKeyDeriver = Callable[[str, str], str]


class CredentialError(RuntimeError):
    """Raised when credentials are malformed or inconsistent."""


@dataclass(frozen=True, slots=True)
class CredentialPair:
    """Instance secret and admin key bound to one instance name."""

    instance_name: str
    instance_secret: str
    admin_key: str

    def __repr__(self) -> str:
        """Keep secrets out of reprs and tracebacks."""
        return f"CredentialPair(instance_name={self.instance_name!r}, instance_secret=***, admin_key=***)"


def validate_instance_name(name: str) -> str:
    """Return *name* stripped, or raise when it is not a valid instance name."""
    normalized = name.strip()
    if not normalized:
        raise CredentialError("Instance name must be a non-empty string.")
    if not _INSTANCE_NAME_PATTERN.match(normalized):
        raise CredentialError(
            f"Invalid instance name '{normalized}'. Use lowercase letters, digits and hyphens."
        )
    return normalized


def generate_instance_secret() -> str:
    """Return a fresh hex encoded instance secret."""
    return secrets.token_hex(SECRET_BYTES)


def derive_admin_key(instance_name: str, instance_secret: str) -> str:
    """Derive an admin key for *instance_name* from *instance_secret*."""
    cipher = AESGCM(_derive_key(instance_secret, ADMIN_KEY_PURPOSE))
    payload = _encode_payload(issued_s=int(time.time()), instance_name=instance_name)
    nonce = secrets.token_bytes(NONCE_BYTES)
    version = bytes([ADMIN_KEY_VERSION])
    sealed = cipher.encrypt(nonce, payload, version)
    return f"{instance_name}|{(version + nonce + sealed).hex()}"


def verify_admin_key(admin_key: str, instance_name: str, instance_secret: str) -> bool:
    """Return True when *admin_key* was derived from this name and secret."""
    prefix, separator, token_hex = admin_key.partition("|")
    if not separator or prefix != instance_name:
        return False
    try:
        token = bytes.fromhex(token_hex)
        key = _derive_key(instance_secret, ADMIN_KEY_PURPOSE)
    except (ValueError, CredentialError):
        return False
    if len(token) <= 1 + NONCE_BYTES or token[0] != ADMIN_KEY_VERSION:
        return False
    nonce = token[1 : 1 + NONCE_BYTES]
    try:
        payload = AESGCM(key).decrypt(nonce, token[1 + NONCE_BYTES :], token[:1])
    except InvalidTag:
        return False
    fields = _decode_payload(payload)
    return fields.get(2) == instance_name.encode("utf-8")


def generate_key_pair(
    instance_name: str = DEFAULT_INSTANCE_NAME,
    *,
    derive: AdminKeyDeriver = derive_admin_key,
) -> CredentialPair:
    """Generate a fresh secret and the admin key derived from it."""
    name = validate_instance_name(instance_name)
    secret = generate_instance_secret()
    return CredentialPair(instance_name=name, instance_secret=secret, admin_key=derive(name, secret))


def resolve_credentials(
    instance_name: str = DEFAULT_INSTANCE_NAME,
    instance_secret: str | None = None,
    admin_key: str | None = None,
    *,
    derive: AdminKeyDeriver = derive_admin_key,
) -> CredentialPair:
    """Return credentials for *instance_name*, generating only what is missing.

    Caller supplied values are never replaced: a supplied secret and admin key
    are returned as-is, and a supplied secret without a key only gains a
    derived key. An admin key without its secret cannot be honoured.
    """
    name = validate_instance_name(instance_name)
    if instance_secret and admin_key:
        return CredentialPair(instance_name=name, instance_secret=instance_secret, admin_key=admin_key)
    if admin_key:
        raise CredentialError("An admin key was supplied without the instance secret it was derived from.")
    if instance_secret:
        _derive_key(instance_secret, ADMIN_KEY_PURPOSE)
        return CredentialPair(
            instance_name=name,
            instance_secret=instance_secret,
            admin_key=derive(name, instance_secret),
        )
    return generate_key_pair(name, derive=derive)


# ----------------------------------------------------------------------
# Internal helpers
# ----------------------------------------------------------------------


def _derive_key(instance_secret: str, purpose: str) -> bytes:
    try:
        secret_bytes = bytes.fromhex(instance_secret)
    except ValueError as exc:
        raise CredentialError("Instance secret must be a hex encoded string.") from exc
    if not secret_bytes:
        raise CredentialError("Instance secret must not be empty.")
    kdf = KBKDFHMAC(
        algorithm=hashes.SHA256(),
        mode=Mode.CounterMode,
        length=KEY_BYTES,
        rlen=4,
        llen=4,
        location=CounterLocation.BeforeFixed,
        label=purpose.encode("utf-8"),
        context=b"",
        fixed=None,
    )
    return kdf.derive(secret_bytes)


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _encode_payload(*, issued_s: int, instance_name: str) -> bytes:
    # field 1: issued_s (varint), field 2: instance_name (length delimited)
    name_bytes = instance_name.encode("utf-8")
    return (
        _encode_varint((1 << 3) | 0)
        + _encode_varint(issued_s)
        + _encode_varint((2 << 3) | 2)
        + _encode_varint(len(name_bytes))
        + name_bytes
    )


def _decode_varint(data: bytes, offset: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while offset < len(data):
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
    raise ValueError("truncated varint")


def _decode_payload(data: bytes) -> dict[int, int | bytes]:
    fields: dict[int, int | bytes] = {}
    offset = 0
    try:
        while offset < len(data):
            tag, offset = _decode_varint(data, offset)
            number, wire_type = tag >> 3, tag & 0x07
            if wire_type == 0:
                fields[number], offset = _decode_varint(data, offset)
            elif wire_type == 2:
                length, offset = _decode_varint(data, offset)
                fields[number] = data[offset : offset + length]
                offset += length
            else:
                break
    except ValueError:
        return {}
    return fields


__all__ = [
    "ADMIN_KEY_PURPOSE",
    "AdminKeyDeriver",
    "CredentialError",
    "CredentialPair",
    "DEFAULT_INSTANCE_NAME",
    "derive_admin_key",
    "generate_instance_secret",
    "generate_key_pair",
    "resolve_credentials",
    "validate_instance_name",
    "verify_admin_key",
]
