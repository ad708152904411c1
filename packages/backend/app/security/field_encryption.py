"""At-rest encryption for server-side structured fields.

Ciphertext layout is ``base64(nonce || AES-GCM(nonce, plaintext))``. The AES key is the
hexadecimal MD5 digest of the passphrase taken as ASCII bytes (32 bytes, so AES-256), which
keeps rows written by earlier deployments readable.

Vault item payloads and wrapped item keys never pass through here: they are client ciphertext.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_SIZE = 12


class FieldDecryptionError(Exception):
    pass


class EncryptedModel(Protocol):
    def encrypted_fields(self) -> tuple[str, ...]: ...


def derive_key(passphrase: str) -> bytes:
    if not passphrase:
        raise ValueError("encryption passphrase must not be empty")
    return hashlib.md5(passphrase.encode("utf-8")).hexdigest().encode("ascii")


def encrypt_value(plaintext: str, passphrase: str) -> str:
    if plaintext == "":
        return ""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(derive_key(passphrase)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_value(ciphertext: str, passphrase: str) -> str:
    if ciphertext == "":
        return ""
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FieldDecryptionError("ciphertext is not valid base64") from exc
    if len(raw) < NONCE_SIZE:
        raise FieldDecryptionError("ciphertext is shorter than the nonce")

    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plaintext = AESGCM(derive_key(passphrase)).decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise FieldDecryptionError("ciphertext failed authentication") from exc
    return plaintext.decode("utf-8")


def encrypt_fields(model: EncryptedModel, passphrase: str) -> None:
    for field_name in model.encrypted_fields():
        value = getattr(model, field_name)
        if value:
            setattr(model, field_name, encrypt_value(value, passphrase))


def decrypt_fields(model: EncryptedModel, passphrase: str) -> None:
    for field_name in model.encrypted_fields():
        value = getattr(model, field_name)
        if value:
            setattr(model, field_name, decrypt_value(value, passphrase))
