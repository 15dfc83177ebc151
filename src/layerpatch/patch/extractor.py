"""
Change-aware archive extraction.

Patch archives always carry full replacement files. Writing only the files
whose content differs from what is already installed keeps repeated runs of an
already-applied patch free of writes and timestamp churn.
"""

import os
import shutil
from pathlib import Path

from layerpatch.constants import RESERVED_ARTIFACTS
from layerpatch.exceptions import PathValidationError
from layerpatch.log_utils import logger

from .archive import ArchiveReader
from .fingerprint import fingerprint_file, fingerprint_stream
from .interfaces import ArchiveEntry, EntryOutcome, ExtractionStats, Pathish


def _is_within_base(real_base_dir: str, candidate: str) -> bool:
    """
    Determine whether the candidate path resides within the given base directory.

    Returns:
        True if the candidate path is inside `real_base_dir`, False otherwise.
    """
    try:
        return os.path.commonpath([real_base_dir, candidate]) == real_base_dir
    except ValueError:
        return False


def safe_extract_path(extract_dir: Pathish, member_path: str) -> Path:
    """
    Resolve where an archive member must be written, refusing directory traversal.

    Parameters:
        extract_dir: Destination root of the installation.
        member_path: Archive-internal path of the member.

    Returns:
        Path: Absolute, normalized path inside extract_dir.

    Raises:
        PathValidationError: If the member is absolute, contains a null byte,
            resolves outside extract_dir, or targets a reserved artifact name.
    """
    if not member_path or "\x00" in member_path:
        raise PathValidationError("Invalid archive member name", path=member_path)

    normalized = member_path.replace("\\", "/")
    if normalized.startswith("/") or os.path.isabs(member_path):
        raise PathValidationError(
            f"Archive member '{member_path}' uses an absolute path", path=member_path
        )

    first_part = normalized.split("/", 1)[0]
    if first_part in RESERVED_ARTIFACTS:
        raise PathValidationError(
            f"Archive member '{member_path}' collides with a reserved layerpatch file",
            path=member_path,
        )

    real_extract_dir = os.path.realpath(extract_dir)
    resolved = os.path.realpath(os.path.join(real_extract_dir, normalized))
    if resolved == real_extract_dir or not _is_within_base(real_extract_dir, resolved):
        raise PathValidationError(
            f"Unsafe extraction path '{member_path}' is outside base '{extract_dir}'",
            path=member_path,
        )
    return Path(resolved)


class ChangeAwareExtractor:
    """
    Materializes archive entries under a destination root, skipping unchanged files.

    For every entry:
    - no file at the target path: create parent directories and write it;
    - a file exists with identical content: leave it untouched;
    - a file exists with different content: overwrite it in place.

    Any I/O failure propagates and aborts the archive application; files
    written before the failure stay in place.
    """

    def __init__(self, destination_root: Pathish):
        self.destination_root = Path(destination_root)

    def needs_extraction(self, entry: ArchiveEntry, target: Path) -> bool:
        """
        Decide whether the entry must be written to target.

        A declared entry size that differs from the existing file is enough to
        decide without hashing; otherwise both contents are fingerprinted.
        """
        if not target.is_file():
            return True

        if entry.size is not None and entry.size != target.stat().st_size:
            return True

        with entry.open() as source:
            entry_digest = fingerprint_stream(source)
        return entry_digest != fingerprint_file(target)

    def apply_entry(self, entry: ArchiveEntry) -> EntryOutcome:
        """Extract a single entry unless the installed file already matches it."""
        if entry.is_dir:
            return EntryOutcome.SKIPPED

        target = safe_extract_path(self.destination_root, entry.path)
        if not self.needs_extraction(entry, target):
            logger.debug(f"Unchanged: {entry.path}")
            return EntryOutcome.SKIPPED

        target.parent.mkdir(parents=True, exist_ok=True)
        self._write_entry(entry, target)
        logger.debug(f"Extracted {entry.path}")
        return EntryOutcome.EXTRACTED

    def _write_entry(self, entry: ArchiveEntry, target: Path) -> None:
        with entry.open() as source, open(target, "wb") as out:
            shutil.copyfileobj(source, out)

    def apply_archive(self, reader: ArchiveReader) -> ExtractionStats:
        """
        Apply every entry of an open archive.

        Returns:
            ExtractionStats: Paths that were written and paths that were skipped.
        """
        stats = ExtractionStats()
        for entry in reader.iter_entries():
            stats.record(entry.path, self.apply_entry(entry))

        logger.info(
            f"Extracted {stats.extracted_count} file(s), "
            f"{stats.skipped_count} already up to date"
        )
        return stats
