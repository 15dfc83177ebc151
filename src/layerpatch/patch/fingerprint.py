"""
Content fingerprints used to decide whether two byte streams are equal.

The digest is an equality oracle only; collision resistance against an
attacker is not a concern here.
"""

import hashlib
from typing import IO

from layerpatch.constants import FINGERPRINT_ALGORITHM, FINGERPRINT_CHUNK_SIZE

from .interfaces import Pathish


def fingerprint_stream(stream: IO[bytes]) -> bytes:
    """
    Compute the digest of everything remaining in a binary stream.

    Reads in fixed-size chunks so large files are never loaded whole.
    Read errors propagate to the caller.

    Returns:
        bytes: The raw 20-byte SHA-1 digest.
    """
    digest = hashlib.new(FINGERPRINT_ALGORITHM)
    for chunk in iter(lambda: stream.read(FINGERPRINT_CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.digest()


def fingerprint_file(file_path: Pathish) -> bytes:
    """Compute the digest of a file on disk."""
    with open(file_path, "rb") as f:
        return fingerprint_stream(f)
