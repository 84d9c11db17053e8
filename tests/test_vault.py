import base64
import json

import pytest

from syncengine.errors import ConfigurationError, CredentialDecryptionError
from syncengine.utils.vault import CredentialVault, get_vault, parse_key, reset_vault


def test_encrypt_text_round_trip(vault):
    sealed = vault.encrypt_text("shpat_secret")
    assert sealed != "shpat_secret"
    assert vault.decrypt(sealed, "tenant-1") == "shpat_secret"


@pytest.mark.parametrize(
    "encode",
    [
        lambda raw: raw,
        lambda raw: memoryview(raw),
        lambda raw: "\\x" + raw.hex(),
        lambda raw: base64.b64encode(raw).decode(),
        lambda raw: json.dumps({"type": "Buffer", "data": list(raw)}),
        lambda raw: "\\x" + json.dumps({"type": "Buffer", "data": list(raw)}).encode().hex(),
    ],
    ids=["bytes", "memoryview", "bytea-hex", "base64", "buffer-json", "hex-wrapped-buffer-json"],
)
def test_decrypt_accepts_stored_encodings(vault, encode):
    raw = vault.encrypt("ya29.token")
    assert vault.decrypt(encode(raw)) == "ya29.token"


def test_empty_payload_is_absent(vault):
    assert vault.decrypt(None) is None
    assert vault.decrypt("") is None


def test_short_payload_fails(vault):
    with pytest.raises(CredentialDecryptionError, match="re-authenticate"):
        vault.decrypt(b"\x00" * 27)


def test_wrong_key_fails_without_leaking_plaintext(vault, other_vault, caplog):
    sealed = other_vault.encrypt_text("super-secret")
    with pytest.raises(CredentialDecryptionError) as excinfo:
        vault.decrypt(sealed, "tenant-1")
    assert "re-authenticate" in str(excinfo.value)
    assert "super-secret" not in caplog.text
    assert vault.fingerprint in caplog.text


def test_tampered_ciphertext_fails(vault):
    raw = bytearray(vault.encrypt("token"))
    raw[-1] ^= 0x01
    with pytest.raises(CredentialDecryptionError):
        vault.decrypt(bytes(raw))


def test_parse_key_formats():
    assert len(parse_key("a" * 64)) == 32
    assert parse_key("k" * 32) == b"k" * 32
    assert parse_key(base64.b64encode(b"z" * 32).decode()) == b"z" * 32


@pytest.mark.parametrize("raw_key", [None, "", "short", base64.b64encode(b"x" * 16).decode()])
def test_parse_key_rejects_bad_keys(raw_key):
    with pytest.raises(ConfigurationError):
        parse_key(raw_key)


def test_fingerprint_is_stable():
    assert CredentialVault("a" * 64).fingerprint == CredentialVault("a" * 64).fingerprint
    assert len(CredentialVault("a" * 64).fingerprint) == 16


def test_process_vault_is_built_once():
    reset_vault()
    try:
        first = get_vault("b" * 64)
        assert get_vault("c" * 64) is first
    finally:
        reset_vault()
