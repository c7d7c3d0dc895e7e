"""
Symmetric encryption helpers for credential storage.

This module encrypts account passwords at rest using Fernet (AES-128 in CBC
mode with HMAC). The key is taken from ``config.SECRET_KEY`` when set, and
otherwise read from (or generated into) ``config.SECRET_KEY_PATH``.
"""
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from mail_engine import config
from mail_engine.utils.errors import DecryptionError


logger = logging.getLogger(__name__)


def _get_or_create_key() -> bytes:
    """
    Get the encryption key, generating and persisting one if missing.

    Returns:
        The encryption key as bytes.
    """
    if config.SECRET_KEY:
        return config.SECRET_KEY.encode("ascii")

    key_file = config.SECRET_KEY_PATH
    key_file.parent.mkdir(parents=True, exist_ok=True)

    if key_file.exists():
        key = key_file.read_bytes().strip()
        try:
            Fernet(key)
            return key
        except (ValueError, TypeError) as e:
            # Regenerating would orphan every stored password
            raise DecryptionError(f"Secret key file {key_file} is corrupted") from e

    key = Fernet.generate_key()
    key_file.write_bytes(key)
    try:
        os.chmod(key_file, 0o600)
    except OSError:
        logger.warning("Could not restrict permissions on %s", key_file)
    logger.info("Generated new secret key at %s", key_file)
    return key


def _get_cipher() -> Fernet:
    return Fernet(_get_or_create_key())


def encrypt_text(text: str) -> str:
    """
    Encrypt a text string.

    Args:
        text: The text to encrypt.

    Returns:
        The Fernet token as an ASCII string, suitable for a TEXT column.

    Raises:
        ValueError: If text is empty.
    """
    if not text:
        raise ValueError("Cannot encrypt empty text")
    return _get_cipher().encrypt(text.encode("utf-8")).decode("ascii")


def decrypt_text(token: str) -> str:
    """
    Decrypt a token produced by ``encrypt_text``.

    Raises:
        DecryptionError: If the token is empty, corrupted or was made with
            another key.
    """
    if not token:
        raise DecryptionError("Cannot decrypt empty data")
    try:
        data = _get_cipher().decrypt(token.encode("ascii"))
    except InvalidToken as e:
        raise DecryptionError("Decryption failed: invalid or corrupted data") from e
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError(f"Decrypted data is not valid UTF-8: {e}") from e


def encrypt_optional(text: Optional[str]) -> Optional[str]:
    """Encrypt ``text`` or return None when there is nothing to store."""
    return encrypt_text(text) if text else None


def decrypt_optional(token: Optional[str]) -> str:
    """Decrypt ``token`` or return an empty string when none is stored."""
    return decrypt_text(token) if token else ""
