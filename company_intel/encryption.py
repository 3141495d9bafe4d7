from __future__ import annotations

import base64
import binascii
import json
import os
from collections.abc import Mapping
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 12
TAG_LENGTH = 16


class ConfigDecryptionError(ValueError):
    pass


class ConfigCipher:
    """AES-256-GCM for connector and provider configs at rest.

    Wire layout is ``base64(iv[12] + tag[16] + ciphertext)``.
    """

    def __init__(self, key_hex: str) -> None:
        raw = key_hex.strip()
        if len(raw) != 64:
            raise ValueError("INTEL_ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        try:
            key = bytes.fromhex(raw)
        except ValueError as exc:
            raise ValueError("INTEL_ENCRYPTION_KEY must be hex encoded") from exc
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigDecryptionError("ciphertext is not valid base64") from exc
        if len(combined) < IV_LENGTH + TAG_LENGTH:
            raise ConfigDecryptionError("ciphertext too short")
        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = combined[IV_LENGTH + TAG_LENGTH :]
        try:
            plain = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise ConfigDecryptionError("ciphertext failed authentication") from exc
        return plain.decode("utf-8")

    def encrypt_object(self, obj: Any) -> str:
        return self.encrypt(json.dumps(obj, ensure_ascii=True, sort_keys=True))

    def decrypt_object(self, token: str) -> Any:
        try:
            return json.loads(self.decrypt(token))
        except json.JSONDecodeError as exc:
            raise ConfigDecryptionError("decrypted config is not valid JSON") from exc


def create_cipher_from_env(environ: Mapping[str, str] | None = None) -> ConfigCipher:
    env = os.environ if environ is None else environ
    key = env.get("INTEL_ENCRYPTION_KEY", "").strip()
    if not key:
        raise ValueError("INTEL_ENCRYPTION_KEY must be set")
    return ConfigCipher(key)
