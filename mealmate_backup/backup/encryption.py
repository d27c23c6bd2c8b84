"""
Encryption stage for backup artifacts.

Uses AES-256-GCM with a key derived from the configured passphrase via
PBKDF2-HMAC-SHA256. Every artifact gets its own random salt and nonce prefix,
stored in a small header in front of the ciphertext:

    MAGIC (4) | version (1) | iterations (4) | salt (16) | nonce prefix (8) | chunk size (4)

The plaintext is streamed in chunks of `chunk size` bytes, each sealed
separately (ciphertext + 16-byte tag). A chunk's nonce is the prefix followed
by its 4-byte index, and its associated data is the header, the index, and a
final-chunk flag, so reordered, dropped, or appended chunks fail to
authenticate. All integers are big endian.
"""

import os
import struct
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .compression import ENCRYPTED_EXTENSION


MAGIC = b'MMBK'
FORMAT_VERSION = 1
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 8
TAG_SIZE = 16
KDF_ITERATIONS = 480000  # OWASP recommended iterations for 2023+
CHUNK_SIZE = 1024 * 1024
MAX_CHUNK_SIZE = 64 * 1024 * 1024

_HEADER = struct.Struct(f'>4sBI{SALT_SIZE}s{NONCE_PREFIX_SIZE}sI')
HEADER_SIZE = _HEADER.size
_CHUNK_INDEX = struct.Struct('>I')
_CHUNK_AAD = struct.Struct('>I?')


class EncryptionError(Exception):
    """Raised when encrypting an artifact fails."""
    pass


class DecryptionError(EncryptionError):
    """Raised when decrypting an artifact fails."""
    pass


class MissingKeyError(DecryptionError):
    """Raised when an encrypted artifact is restored without a configured key."""
    pass


def _chunk_nonce(prefix: bytes, index: int) -> bytes:
    return prefix + _CHUNK_INDEX.pack(index)


def _chunk_aad(header: bytes, index: int, final: bool) -> bytes:
    return header + _CHUNK_AAD.pack(index, final)


def _remove_if_exists(path: str):
    if os.path.exists(path):
        os.remove(path)


class ArtifactCipher:
    """Encrypts and decrypts artifact files with a passphrase."""

    def __init__(self, passphrase: str, iterations: int = KDF_ITERATIONS,
                 chunk_size: int = CHUNK_SIZE):
        """
        Args:
            passphrase: Configured encryption key
            iterations: PBKDF2 iterations used for newly encrypted artifacts
            chunk_size: Plaintext bytes sealed per chunk for newly encrypted artifacts
        """
        if not passphrase:
            raise MissingKeyError("Encryption key not provided")
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}")
        self._passphrase = passphrase.encode()
        self.iterations = iterations
        self.chunk_size = chunk_size

    def _derive_key(self, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(self._passphrase)

    def encrypt_file(self, source_path: str, remove_source: bool = True) -> str:
        """
        Encrypt a file next to itself ({source_path}.enc).

        Args:
            source_path: File to encrypt
            remove_source: Delete the plaintext file once encryption succeeded

        Returns:
            Path to the encrypted file

        Raises:
            EncryptionError: If encryption fails
        """
        encrypted_path = f"{source_path}{ENCRYPTED_EXTENSION}"

        try:
            with open(source_path, 'rb') as src, open(encrypted_path, 'wb') as dst:
                salt = os.urandom(SALT_SIZE)
                prefix = os.urandom(NONCE_PREFIX_SIZE)
                header = _HEADER.pack(MAGIC, FORMAT_VERSION, self.iterations, salt, prefix,
                                      self.chunk_size)
                aesgcm = AESGCM(self._derive_key(salt, self.iterations))
                dst.write(header)

                # One chunk of lookahead tells which chunk is the last one
                index = 0
                chunk = src.read(self.chunk_size)
                while True:
                    next_chunk = src.read(self.chunk_size)
                    final = not next_chunk
                    dst.write(aesgcm.encrypt(
                        _chunk_nonce(prefix, index), chunk, _chunk_aad(header, index, final)
                    ))
                    if final:
                        break
                    chunk = next_chunk
                    index += 1
        except Exception as e:
            _remove_if_exists(encrypted_path)
            raise EncryptionError(f"Backup encryption failed: {e}")

        if remove_source:
            os.remove(source_path)

        return encrypted_path

    def decrypt_file(self, encrypted_path: str, output_path: Optional[str] = None) -> str:
        """
        Decrypt an artifact.

        Args:
            encrypted_path: Path to the .enc file
            output_path: Destination (default: encrypted_path without .enc)

        Returns:
            Path to the decrypted file

        Raises:
            DecryptionError: If the artifact is malformed, the key is wrong,
                or the ciphertext was tampered with. No output is left behind.
        """
        if output_path is None:
            if not encrypted_path.endswith(ENCRYPTED_EXTENSION):
                raise DecryptionError(f"Not an encrypted artifact: {encrypted_path}")
            output_path = encrypted_path[:-len(ENCRYPTED_EXTENSION)]

        try:
            src = open(encrypted_path, 'rb')
        except OSError as e:
            raise DecryptionError(f"Backup decryption failed: {e}")

        with src:
            header = src.read(_HEADER.size)
            if len(header) < _HEADER.size:
                raise DecryptionError("Backup decryption failed: artifact is truncated")

            magic, version, iterations, salt, prefix, chunk_size = _HEADER.unpack(header)
            if magic != MAGIC or version != FORMAT_VERSION or not 0 < chunk_size <= MAX_CHUNK_SIZE:
                raise DecryptionError("Backup decryption failed: unrecognized artifact format")

            aesgcm = AESGCM(self._derive_key(salt, iterations))
            segment_size = chunk_size + TAG_SIZE

            try:
                with open(output_path, 'wb') as dst:
                    index = 0
                    segment = src.read(segment_size)
                    while True:
                        next_segment = src.read(segment_size)
                        final = not next_segment
                        dst.write(aesgcm.decrypt(
                            _chunk_nonce(prefix, index), segment, _chunk_aad(header, index, final)
                        ))
                        if final:
                            break
                        segment = next_segment
                        index += 1
            except InvalidTag:
                _remove_if_exists(output_path)
                raise DecryptionError(
                    "Backup decryption failed: wrong key or corrupted artifact"
                )
            except (OSError, ValueError, struct.error) as e:
                _remove_if_exists(output_path)
                raise DecryptionError(f"Backup decryption failed: {e}")

        return output_path
