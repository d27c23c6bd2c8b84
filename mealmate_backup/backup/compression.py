"""
Compression stage for backup artifacts, plus artifact naming helpers.

Artifacts follow the naming scheme:
    {prefix}_backup_{YYYY-MM-DD}_{HH-MM-SS}.dump[.gz][.enc]

The extension chain records which staging transformations ran, and is what
the restore path uses to decide which reversal steps to apply.
"""

import os
import gzip
import shutil
from datetime import datetime
from typing import Optional


DUMP_EXTENSION = '.dump'
GZIP_EXTENSION = '.gz'
ENCRYPTED_EXTENSION = '.enc'


class CompressionError(Exception):
    """Raised when compressing or decompressing an artifact fails."""
    pass


def compress_file(source_path: str, remove_source: bool = True) -> str:
    """
    Gzip a file next to itself ({source_path}.gz).

    Args:
        source_path: File to compress
        remove_source: Delete the uncompressed file once the archive is complete

    Returns:
        Path to the compressed file

    Raises:
        CompressionError: If compression fails
    """
    if not os.path.isfile(source_path):
        raise CompressionError(f"File not found: {source_path}")

    compressed_path = f"{source_path}{GZIP_EXTENSION}"

    try:
        with open(source_path, 'rb') as src, gzip.open(compressed_path, 'wb') as dst:
            shutil.copyfileobj(src, dst)
    except Exception as e:
        _remove_partial(compressed_path)
        raise CompressionError(f"Backup compression failed: {e}")

    if remove_source:
        os.remove(source_path)

    return compressed_path


def decompress_file(compressed_path: str, output_path: Optional[str] = None) -> str:
    """
    Gunzip a file.

    Args:
        compressed_path: Path to the .gz file
        output_path: Destination (default: compressed_path without .gz)

    Returns:
        Path to the decompressed file

    Raises:
        CompressionError: If decompression fails
    """
    if output_path is None:
        if not compressed_path.endswith(GZIP_EXTENSION):
            raise CompressionError(f"Not a gzip artifact: {compressed_path}")
        output_path = compressed_path[:-len(GZIP_EXTENSION)]

    try:
        with gzip.open(compressed_path, 'rb') as src, open(output_path, 'wb') as dst:
            shutil.copyfileobj(src, dst)
    except Exception as e:
        _remove_partial(output_path)
        raise CompressionError(f"Backup decompression failed: {e}")

    return output_path


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass


def generate_backup_filename(prefix: str, timestamp: Optional[datetime] = None) -> str:
    """
    Generate the base (uncompressed, unencrypted) artifact filename.

    Format: {prefix}_backup_{YYYY-MM-DD}_{HH-MM-SS}.dump

    Args:
        prefix: Product prefix (e.g. 'mealmate')
        timestamp: Backup timestamp (default: now)

    Returns:
        Filename (without path)
    """
    timestamp = timestamp or datetime.now()
    safe_prefix = _sanitize_prefix(prefix)

    date_str = timestamp.strftime('%Y-%m-%d')
    time_str = timestamp.strftime('%H-%M-%S')
    return f"{safe_prefix}_backup_{date_str}_{time_str}{DUMP_EXTENSION}"


def is_encrypted_artifact(path: str) -> bool:
    return path.endswith(ENCRYPTED_EXTENSION)


def is_compressed_artifact(path: str) -> bool:
    """True if the artifact is gzip compressed (ignoring a trailing .enc)."""
    if is_encrypted_artifact(path):
        path = path[:-len(ENCRYPTED_EXTENSION)]
    return path.endswith(GZIP_EXTENSION)


def strip_artifact_extension(filename: str) -> str:
    """
    Strip the staging extension chain from an artifact filename.

    'x.dump.gz.enc' -> 'x'

    Args:
        filename: Artifact filename with extensions

    Returns:
        Filename without the .dump/.gz/.enc chain
    """
    for extension in (ENCRYPTED_EXTENSION, GZIP_EXTENSION, DUMP_EXTENSION):
        if filename.endswith(extension):
            filename = filename[:-len(extension)]
    return filename


def get_artifact_size(artifact_path: str) -> int:
    """
    Get the size of an artifact in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(artifact_path)
    except FileNotFoundError:
        raise CompressionError(f"Artifact not found: {artifact_path}")
    except Exception as e:
        raise CompressionError(f"Failed to get artifact size: {e}")


def artifact_pattern(prefix: str) -> str:
    """Glob pattern matching every artifact produced for a prefix."""
    return f"{_sanitize_prefix(prefix)}_backup_*"


def _sanitize_prefix(prefix: str) -> str:
    # Replace spaces and special chars with underscores
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in prefix
    )
