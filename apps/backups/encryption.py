"""
Encryption and checksum utilities for backup artifacts.

Artifacts are compressed first and then, when enabled, encrypted:
Dump Directory -> tar.gz (level 9) -> Fernet (AES-128-CBC + HMAC-SHA256) -> Storage

The SHA-256 checksum recorded on a backup is always taken over the file as
stored on disk, so it can be checked before anything is decrypted.
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional, Union

from django.conf import settings

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB chunks

PathLike = Union[str, Path]


class EncryptionError(Exception):
    """Raised when encryption operations fail."""

    pass


def get_encryption_key(key: Optional[str] = None) -> bytes:
    """
    Get the encryption key, falling back to Django settings.

    The key must be a 32-byte URL-safe base64-encoded Fernet key.
    Generate a new key with: Fernet.generate_key()

    Raises:
        ValueError: If encryption key is not configured
    """
    key = key or getattr(settings, "BACKUP_ENCRYPTION_KEY", None)

    if not key:
        raise ValueError(
            "BACKUP_ENCRYPTION_KEY not configured in settings. "
            "Generate a key with: from cryptography.fernet import Fernet; Fernet.generate_key()"
        )

    if isinstance(key, str):
        key = key.encode("utf-8")

    return key


def encrypt_file(input_path: PathLike, output_path: PathLike, key: Optional[str] = None) -> Path:
    """
    Encrypt a file with Fernet.

    Returns:
        Path to the encrypted file

    Raises:
        EncryptionError: If encryption fails
        FileNotFoundError: If input file doesn't exist
    """
    input_file = Path(input_path)
    output_file = Path(output_path)

    if not input_file.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    try:
        fernet = Fernet(get_encryption_key(key))

        with open(input_file, "rb") as f_in:
            plaintext = f_in.read()

        ciphertext = fernet.encrypt(plaintext)

        with open(output_file, "wb") as f_out:
            f_out.write(ciphertext)

    except Exception as e:
        logger.error(f"Failed to encrypt {input_path}: {e}")
        raise EncryptionError(f"Encryption failed: {e}") from e

    logger.info(f"Encrypted {input_file.name} -> {output_file.name}")
    return output_file


def decrypt_file(input_path: PathLike, output_path: PathLike, key: Optional[str] = None) -> Path:
    """
    Decrypt a file encrypted with :func:`encrypt_file`.

    Raises:
        EncryptionError: If the key is wrong, the file was tampered with, or IO fails
        FileNotFoundError: If input file doesn't exist
    """
    input_file = Path(input_path)
    output_file = Path(output_path)

    if not input_file.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    try:
        fernet = Fernet(get_encryption_key(key))

        with open(input_file, "rb") as f_in:
            ciphertext = f_in.read()

        try:
            plaintext = fernet.decrypt(ciphertext)
        except InvalidToken:
            raise EncryptionError("Invalid encryption key or corrupted file")

        with open(output_file, "wb") as f_out:
            f_out.write(plaintext)

    except EncryptionError:
        raise
    except Exception as e:
        logger.error(f"Failed to decrypt {input_path}: {e}")
        raise EncryptionError(f"Decryption failed: {e}") from e

    logger.info(f"Decrypted {input_file.name} -> {output_file.name}")
    return output_file


def calculate_checksum(file_path: PathLike) -> str:
    """
    Calculate the SHA-256 checksum of a file.

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    file = Path(file_path)
    if not file.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    hasher = hashlib.sha256()
    with open(file, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)

    checksum = hasher.hexdigest()
    logger.debug(f"Calculated sha256 checksum for {file_path}: {checksum}")
    return checksum


def verify_checksum(file_path: PathLike, expected_checksum: str) -> bool:
    """
    Verify the SHA-256 checksum of a file.

    Returns:
        True if checksum matches, False otherwise (including a missing file)
    """
    try:
        actual_checksum = calculate_checksum(file_path)
    except OSError as e:
        logger.error(f"Failed to verify checksum for {file_path}: {e}")
        return False

    matches = actual_checksum.lower() == (expected_checksum or "").lower()
    if matches:
        logger.info(f"Checksum verified for {file_path}")
    else:
        logger.warning(
            f"Checksum mismatch for {file_path}: "
            f"expected {expected_checksum}, got {actual_checksum}"
        )
    return matches
