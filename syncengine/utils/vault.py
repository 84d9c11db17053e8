"""AES-256-GCM sealing of provider credentials.

Stored blobs are laid out as ``iv(12) | tag(16) | ciphertext``. Rows written
by older clients reach us in several encodings (raw bytes, ``\\x`` hex from
Postgres ``bytea``, a JSON ``{"type": "Buffer", "data": [...]}`` wrapper and
plain base64); all of them are normalized before decryption.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import re
import threading
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from syncengine.errors import ConfigurationError, CredentialDecryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]+$")


def parse_key(raw_key: str | None) -> bytes:
    """Accept a 64-char hex key, a 32-char literal key, or base64."""
    if not raw_key:
        raise ConfigurationError("Missing ENCRYPTION_KEY environment variable.")
    if HEX_KEY_RE.match(raw_key) and len(raw_key) == KEY_LENGTH * 2:
        key = bytes.fromhex(raw_key)
    elif len(raw_key) == KEY_LENGTH:
        key = raw_key.encode("utf-8")
    else:
        try:
            key = base64.b64decode(raw_key, validate=False)
        except binascii.Error as exc:
            raise ConfigurationError("ENCRYPTION_KEY is not valid base64.") from exc
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(f"ENCRYPTION_KEY must be {KEY_LENGTH} bytes after decoding.")
    return key


def _buffer_json(text: str) -> bytes | None:
    if not (text.startswith("{") and '"type":"Buffer"' in text.replace(" ", "")):
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    data = parsed.get("data") if isinstance(parsed, dict) else None
    if isinstance(data, list):
        return bytes(data)
    return None


def normalize_payload(payload: Any) -> bytes:
    """Turn any accepted stored encoding into the raw sealed bytes."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, memoryview):
        return payload.tobytes()
    if isinstance(payload, str):
        text = payload.strip()
        if text.startswith("\\x"):
            try:
                raw = bytes.fromhex(text[2:])
            except ValueError as exc:
                raise CredentialDecryptionError("malformed hex payload") from exc
            try:
                wrapped = _buffer_json(raw.decode("utf-8"))
            except UnicodeDecodeError:
                wrapped = None
            return wrapped if wrapped is not None else raw
        wrapped = _buffer_json(text)
        if wrapped is not None:
            return wrapped
        try:
            return base64.b64decode(text, validate=False)
        except binascii.Error as exc:
            raise CredentialDecryptionError("malformed base64 payload") from exc
    raise CredentialDecryptionError(f"unsupported payload type {type(payload).__name__}")


class CredentialVault:
    """Seals and opens credential blobs with one process-wide key.

    The key is immutable once the vault is built. ``key_for`` is the seam
    for per-tenant keys; every tenant currently shares the process key.
    """

    def __init__(self, raw_key: str | None) -> None:
        self._key = parse_key(raw_key)
        self._aead = AESGCM(self._key)

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self._key).hexdigest()[:16]

    def key_for(self, tenant_id: str | None = None) -> bytes:
        return self._key

    def encrypt(self, plaintext: str, tenant_id: str | None = None) -> bytes:
        aead = self._aead if tenant_id is None else AESGCM(self.key_for(tenant_id))
        iv = os.urandom(IV_LENGTH)
        sealed = aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return iv + tag + ciphertext

    def encrypt_text(self, plaintext: str, tenant_id: str | None = None) -> str:
        """Sealed blob as base64, the encoding written to text columns."""
        return base64.b64encode(self.encrypt(plaintext, tenant_id)).decode("ascii")

    def decrypt(self, payload: Any, tenant_id: str | None = None) -> str | None:
        if payload is None or payload == "" or payload == b"":
            return None
        buffer = normalize_payload(payload)
        if len(buffer) < IV_LENGTH + TAG_LENGTH:
            logger.warning(
                "Credential payload too short (%s bytes) for tenant %s [key %s]",
                len(buffer),
                tenant_id,
                self.fingerprint,
            )
            raise CredentialDecryptionError("payload too short to contain IV and auth tag")
        iv = buffer[:IV_LENGTH]
        tag = buffer[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = buffer[IV_LENGTH + TAG_LENGTH :]
        aead = self._aead if tenant_id is None else AESGCM(self.key_for(tenant_id))
        try:
            plaintext = aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning(
                "Credential decryption failed for tenant %s (%s bytes) [key %s]",
                tenant_id,
                len(buffer),
                self.fingerprint,
            )
            raise CredentialDecryptionError("authentication tag mismatch") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialDecryptionError("plaintext is not UTF-8") from exc


_vault: CredentialVault | None = None
_vault_lock = threading.Lock()


def get_vault(raw_key: str | None = None) -> CredentialVault:
    """Return the process vault, building it on first use."""
    global _vault
    if _vault is None:
        with _vault_lock:
            if _vault is None:
                _vault = CredentialVault(raw_key or os.environ.get("ENCRYPTION_KEY"))
    return _vault


def reset_vault() -> None:
    global _vault
    with _vault_lock:
        _vault = None
