"""Credential encryption for integration config blobs."""

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from functools import lru_cache
from typing import Any, Dict, Iterable
import base64

ENCRYPTED_PREFIX = "enc:"


@lru_cache(maxsize=8)
def generate_key(password: str, salt: str) -> bytes:
    """Derive a Fernet key from a password and a fixed salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def encrypt_token(token: str, encryption_key: str, salt: str) -> str:
    """Encrypt a credential value."""
    f = Fernet(generate_key(encryption_key, salt))
    return ENCRYPTED_PREFIX + f.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str, encryption_key: str, salt: str) -> str:
    """Decrypt a credential value. Values without the prefix are returned unchanged."""
    if not encrypted_token.startswith(ENCRYPTED_PREFIX):
        return encrypted_token
    f = Fernet(generate_key(encryption_key, salt))
    try:
        return f.decrypt(encrypted_token[len(ENCRYPTED_PREFIX):].encode()).decode()
    except InvalidToken as e:
        raise ValueError("Credential could not be decrypted with the configured key") from e


def seal_secrets(data: Dict[str, Any], secret_fields: Iterable[str], encryption_key: str, salt: str) -> Dict[str, Any]:
    """Return a copy of ``data`` with secret string fields encrypted."""
    sealed = dict(data)
    for field in secret_fields:
        value = sealed.get(field)
        if isinstance(value, str) and value and not value.startswith(ENCRYPTED_PREFIX):
            sealed[field] = encrypt_token(value, encryption_key, salt)
    return sealed


def unseal_secrets(data: Dict[str, Any], secret_fields: Iterable[str], encryption_key: str, salt: str) -> Dict[str, Any]:
    """Return a copy of ``data`` with secret string fields decrypted."""
    unsealed = dict(data)
    for field in secret_fields:
        value = unsealed.get(field)
        if isinstance(value, str) and value:
            unsealed[field] = decrypt_token(value, encryption_key, salt)
    return unsealed
