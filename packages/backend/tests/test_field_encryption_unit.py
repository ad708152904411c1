from __future__ import annotations

import base64
from dataclasses import dataclass

import pytest

from app.security.field_encryption import (
    NONCE_SIZE,
    FieldDecryptionError,
    decrypt_fields,
    decrypt_value,
    derive_key,
    encrypt_fields,
    encrypt_value,
)


PASSPHRASE = "correct horse battery staple"


@dataclass
class _Row:
    payload: str
    note: str
    untouched: str = "plain"

    def encrypted_fields(self) -> tuple[str, ...]:
        return ("payload", "note")


def test_derived_key_is_ascii_md5_hex() -> None:
    key = derive_key("secret")

    assert key == b"5ebe2294ecd0e0f08eab7690d2a6ee69"
    assert len(key) == 32


def test_derive_key_requires_passphrase() -> None:
    with pytest.raises(ValueError):
        derive_key("")


def test_encrypt_value_uses_fresh_nonce() -> None:
    first = encrypt_value("webhook body", PASSPHRASE)
    second = encrypt_value("webhook body", PASSPHRASE)

    assert first != second
    assert len(base64.b64decode(first)) == NONCE_SIZE + len("webhook body") + 16
    assert decrypt_value(first, PASSPHRASE) == "webhook body"


def test_empty_string_passes_through() -> None:
    assert encrypt_value("", PASSPHRASE) == ""
    assert decrypt_value("", PASSPHRASE) == ""


@pytest.mark.parametrize("ciphertext", ["not base64!!", base64.b64encode(b"short").decode("ascii")])
def test_decrypt_rejects_malformed_ciphertext(ciphertext) -> None:
    with pytest.raises(FieldDecryptionError):
        decrypt_value(ciphertext, PASSPHRASE)


def test_decrypt_with_wrong_passphrase_fails_authentication() -> None:
    ciphertext = encrypt_value("{\"id\":\"evt_1\"}", PASSPHRASE)

    with pytest.raises(FieldDecryptionError):
        decrypt_value(ciphertext, "another passphrase")


def test_encrypt_fields_only_touches_declared_non_empty_fields() -> None:
    row = _Row(payload="{\"type\":\"RENEWAL\"}", note="")

    encrypt_fields(row, PASSPHRASE)

    assert row.payload != "{\"type\":\"RENEWAL\"}"
    assert row.note == ""
    assert row.untouched == "plain"

    decrypt_fields(row, PASSPHRASE)

    assert row.payload == "{\"type\":\"RENEWAL\"}"
