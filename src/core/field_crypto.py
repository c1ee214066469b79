from __future__ import annotations

import hashlib
import os
import secrets
from typing import Optional

try:
    from cryptography.exceptions import InvalidTag
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "cryptography is required for field encryption. "
        "Install dependencies with: pip install -e . "
        f"Original error: {type(e).__name__}: {e}"
    ) from e


IV_BYTES = 12
TAG_BYTES = 16


class FieldCryptoError(Exception):
    pass


def _secret(secret: Optional[str]) -> str:
    if secret is not None:
        return secret
    return (os.environ.get("SECRET_ENCRYPTION_KEY") or "").strip()


def _aesgcm(secret: str) -> AESGCM:
    return AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())


def encrypt_field(value: str, secret: Optional[str] = None) -> str:
    """
    AES-256-GCM with a SHA-256 derived key, serialised as ``iv:tag:cipher`` in hex.

    Without a configured secret the value is returned unchanged.
    """
    key = _secret(secret)
    if not key:
        return value
    iv = secrets.token_bytes(IV_BYTES)
    sealed = _aesgcm(key).encrypt(iv, value.encode("utf-8"), None)
    cipher, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"


def decrypt_field(value: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    key = _secret(secret)
    if not key or not value:
        return value
    parts = value.split(":")
    if len(parts) != 3:
        raise FieldCryptoError("Encrypted field is not in iv:tag:cipher form.")
    try:
        iv, tag, cipher = (bytes.fromhex(p) for p in parts)
    except ValueError as e:
        raise FieldCryptoError("Encrypted field is not valid hex.") from e
    try:
        out = _aesgcm(key).decrypt(iv, cipher + tag, None)
    except InvalidTag as e:
        raise FieldCryptoError("Failed to decrypt field (wrong SECRET_ENCRYPTION_KEY?).") from e
    return out.decode("utf-8")


def mask_secret(value: Optional[str], *, keep_last: int = 4) -> str:
    if value is None:
        return "—"
    v = str(value)
    if v == "":
        return "—"
    k = max(0, int(keep_last))
    suffix = v[-k:] if k and len(v) >= k else v
    return ("*" * 10) + suffix
