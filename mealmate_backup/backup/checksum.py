"""
Checksum helpers for backup artifacts (SHA-256, hex encoded).
"""

import hashlib
import hmac


CHUNK_SIZE = 1024 * 1024


class ChecksumError(Exception):
    """Raised when a checksum cannot be computed or does not match."""
    pass


def calculate_checksum(file_path: str) -> str:
    """
    Compute the SHA-256 digest of a file.

    Args:
        file_path: Path to the file

    Returns:
        Hex digest string

    Raises:
        ChecksumError: If the file cannot be read
    """
    digest = hashlib.sha256()
    try:
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                digest.update(chunk)
    except OSError as e:
        raise ChecksumError(f"Failed to compute checksum for {file_path}: {e}")
    return digest.hexdigest()


def verify_checksum(file_path: str, expected: str) -> None:
    """
    Verify a file against an expected hex digest.

    Raises:
        ChecksumError: If the digest differs or the file cannot be read
    """
    actual = calculate_checksum(file_path)
    if not hmac.compare_digest(actual, expected.lower()):
        raise ChecksumError(
            f"Checksum mismatch for {file_path}: expected {expected}, got {actual}"
        )
