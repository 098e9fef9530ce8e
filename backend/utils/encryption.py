"""
Encryption utilities for secure token storage.
Uses Fernet symmetric encryption to protect sensitive OAuth tokens.
"""

from typing import Optional

from cryptography.fernet import Fernet
from config import settings


def _get_cipher() -> Fernet:
    """
    Get Fernet cipher instance using encryption key from settings.

    Returns:
        Fernet: Cipher instance for encryption/decryption

    Raises:
        ValueError: If encryption key is not configured
    """
    if not settings.ENCRYPTION_KEY:
        raise ValueError(
            "ENCRYPTION_KEY not configured. "
            "Generate one using: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
        )

    key = settings.ENCRYPTION_KEY
    if isinstance(key, str):
        key = key.encode()

    return Fernet(key)


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """
    Encrypt an OAuth token for storage on a MailAccount.

    Args:
        token: Plain text token, or None when the provider did not issue one

    Returns:
        Encrypted token as base64 string, or None
    """
    if token is None:
        return None
    cipher = _get_cipher()
    return cipher.encrypt(token.encode()).decode()


def decrypt_token(encrypted: Optional[str]) -> Optional[str]:
    """
    Decrypt a token previously stored with encrypt_token.

    Raises:
        cryptography.fernet.InvalidToken: If token is invalid or corrupted
    """
    if encrypted is None:
        return None
    cipher = _get_cipher()
    return cipher.decrypt(encrypted.encode()).decode()
