"""Encryption of credentials stored at rest (API keys, tokens, connector secrets)."""

from cryptography.fernet import Fernet

from builder.core.config import settings


def _get_fernet(key: str | None) -> Fernet:
    if not key:
        raise ValueError("Encryption key is required")
    return Fernet(key.encode())


def encrypt_data(data: str, key: str | None) -> str:
    """Encrypt a string with Fernet.

    Args:
        data: Plaintext to encrypt
        key: Base64-encoded 32-byte Fernet key

    Returns:
        URL-safe base64 ciphertext

    Raises:
        ValueError: If the key is missing or malformed
    """
    return _get_fernet(key).encrypt(data.encode()).decode()


def decrypt_data(encrypted_data: str, key: str | None) -> str:
    """Decrypt a Fernet ciphertext produced by encrypt_data.

    Raises:
        ValueError: If the key is missing or malformed
        cryptography.fernet.InvalidToken: If the ciphertext was not produced with this key
    """
    return _get_fernet(key).decrypt(encrypted_data.encode()).decode()


def encrypt_secret(data: str) -> str:
    """Encrypt a value with the configured ENCRYPTION_KEY."""
    return encrypt_data(data, settings.encryption_key)


def decrypt_secret(encrypted_data: str) -> str:
    """Decrypt a value with the configured ENCRYPTION_KEY."""
    return decrypt_data(encrypted_data, settings.encryption_key)
