from __future__ import annotations

import base64
import binascii
import json
import os
import re
from datetime import datetime, UTC
from typing import Any, Dict, Literal, Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ValidationError


KEY_LENGTH = 16
GCM_NONCE_LENGTH = 12
GCM_TAG_LENGTH = 16
CBC_IV_LENGTH = 16

Scheme = Literal["gcm", "cbc"]

_B64_NOISE = re.compile(r"[\\\s]")


class EnvelopeError(RuntimeError):
    """Base error for envelope decoding and decryption."""


class DecodeError(EnvelopeError):
    """An envelope field is missing or is not valid base64."""


class CryptoError(EnvelopeError):
    """Authentication or decryption failed."""


class ParseError(EnvelopeError):
    """Decrypted bytes are not a UTF-8 JSON object or array."""


class Envelope(BaseModel):
    """
    Encrypted wire payload.

    Fields
    - d: base64 blob. In the GCM scheme, the first 16 decoded bytes are the
      AES key and the rest is ciphertext. In the CBC scheme, the whole blob
      is ciphertext.
    - n: base64 nonce (GCM) or IV (CBC).
    - t: base64 authentication tag (GCM) or an ISO-8601 timestamp (CBC).
    """

    d: str
    n: str
    t: str = ""

    @classmethod
    def looks_like(cls, value: Any) -> bool:
        return isinstance(value, dict) and isinstance(value.get("d"), str) and isinstance(value.get("n"), str)

    @classmethod
    def parse(cls, value: Any) -> "Envelope":
        if isinstance(value, Envelope):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as ve:
            raise DecodeError(f"Missing required envelope fields: {ve}") from ve


class EnvelopeCodec(Protocol):
    scheme: str

    def decrypt(self, envelope: Envelope | Dict[str, Any]) -> Any: ...

    def encrypt(self, data: Any, key: bytes) -> Envelope: ...


def b64decode(value: str, *, field: str = "field") -> bytes:
    """Strictly decode base64 after dropping backslashes and whitespace.

    The remote has been seen to emit escaped strings; anything else that is
    not base64 raises DecodeError.
    """
    cleaned = _B64_NOISE.sub("", value or "")
    if not cleaned:
        raise DecodeError(f"Envelope {field} is empty")
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Envelope {field} is not valid base64") from exc


def b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _dump_json(data: Any) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def _load_json(plaintext: bytes) -> Any:
    try:
        value = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError("Failed to parse decrypted data") from exc
    if not isinstance(value, (dict, list)):
        raise ParseError(f"Decrypted data is {type(value).__name__}, expected object or array")
    return value


def _check_key(key: bytes) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise ValueError(f"key must be {KEY_LENGTH} bytes")
    return bytes(key)


class GcmEnvelopeCodec:
    """
    Authenticated envelope scheme (default).

    The key travels inside `d` as a 16-byte prefix of the ciphertext; `n` is
    the 12-byte GCM nonce and `t` the 16-byte tag. AES-128-GCM, 128-bit tag.
    """

    scheme = "gcm"

    def decrypt(self, envelope: Envelope | Dict[str, Any]) -> Any:
        env = Envelope.parse(envelope)
        raw = b64decode(env.d, field="d")
        nonce = b64decode(env.n, field="n")
        tag = b64decode(env.t, field="t")

        if len(raw) <= KEY_LENGTH:
            raise DecodeError("Envelope d is too short to hold key and ciphertext")
        if len(tag) != GCM_TAG_LENGTH:
            raise DecodeError(f"Envelope t must decode to {GCM_TAG_LENGTH} bytes")
        key, ciphertext = raw[:KEY_LENGTH], raw[KEY_LENGTH:]
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Envelope authentication failed") from exc
        except ValueError as exc:  # nonce length out of range
            raise DecodeError(f"Envelope n is unusable: {exc}") from exc
        return _load_json(plaintext)

    def encrypt(self, data: Any, key: bytes) -> Envelope:
        key = _check_key(key)
        nonce = os.urandom(GCM_NONCE_LENGTH)
        sealed = AESGCM(key).encrypt(nonce, _dump_json(data), None)
        ciphertext, tag = sealed[:-GCM_TAG_LENGTH], sealed[-GCM_TAG_LENGTH:]
        return Envelope(d=b64encode(key + ciphertext), n=b64encode(nonce), t=b64encode(tag))


class CbcEnvelopeCodec:
    """
    Legacy non-authenticated scheme: AES-CBC with PKCS7 padding.

    `d` is the full ciphertext, `n` the IV and `t` a timestamp that is not
    checked. With a shared `key` configured, that key is used for both
    directions. Without one, the key is taken from the first 16 bytes of the
    decoded `d`, as older servers did; such envelopes cannot be produced by
    `encrypt`, which always needs an explicit key.
    """

    scheme = "cbc"

    def __init__(self, key: Optional[bytes] = None) -> None:
        self._key = _check_key(key) if key is not None else None

    def decrypt(self, envelope: Envelope | Dict[str, Any]) -> Any:
        env = Envelope.parse(envelope)
        ciphertext = b64decode(env.d, field="d")
        iv = b64decode(env.n, field="n")

        if len(iv) != CBC_IV_LENGTH:
            raise DecodeError(f"Envelope n must decode to {CBC_IV_LENGTH} bytes for CBC")
        if not ciphertext or len(ciphertext) % 16:
            raise DecodeError("Envelope d is not a whole number of AES blocks")

        key = self._key if self._key is not None else ciphertext[:KEY_LENGTH]
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise CryptoError("Envelope padding check failed") from exc
        if not plaintext:
            raise CryptoError("Decryption resulted in empty plaintext")
        return _load_json(plaintext)

    def encrypt(self, data: Any, key: Optional[bytes] = None) -> Envelope:
        key = _check_key(key if key is not None else self._key)  # type: ignore[arg-type]
        iv = os.urandom(CBC_IV_LENGTH)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(_dump_json(data)) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        stamp = datetime.now(UTC).isoformat(timespec="milliseconds")
        return Envelope(d=b64encode(ciphertext), n=b64encode(iv), t=stamp)


def codec_for_scheme(scheme: str, *, key: Optional[bytes] = None) -> EnvelopeCodec:
    """Return the codec strategy for `scheme` ("gcm" or "cbc")."""
    if scheme == "gcm":
        return GcmEnvelopeCodec()
    if scheme == "cbc":
        return CbcEnvelopeCodec(key)
    raise ValueError(f"Unknown envelope scheme: {scheme!r}")


__all__ = [
    "CbcEnvelopeCodec",
    "CryptoError",
    "DecodeError",
    "Envelope",
    "EnvelopeCodec",
    "EnvelopeError",
    "GcmEnvelopeCodec",
    "ParseError",
    "codec_for_scheme",
]
