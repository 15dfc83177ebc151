"""
Core data structures for the layerpatch patch engine.

This module defines the value types shared by the archive readers, the
change-aware extractor, the version resolver and the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Callable, List, Optional, Union
from urllib.parse import urlsplit

from layerpatch.constants import (
    PATCH_7Z_ARTIFACT,
    PATCH_ZIP_ARTIFACT,
    SEVEN_ZIP_EXTENSION,
    ZIP_EXTENSION,
)

Pathish = Union[str, Path]

SEVEN_ZIP_SIGNATURE = b"7z\xbc\xaf\x27\x1c"
ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06")


class ArchiveFormat(Enum):
    """Container formats a patch archive can use."""

    ZIP = "zip"
    SEVEN_ZIP = "7z"

    @classmethod
    def from_locator(cls, locator: str) -> Optional["ArchiveFormat"]:
        """
        Select the format from the locator's file-extension suffix.

        Query strings and fragments are ignored. Returns None when the locator
        carries no recognizable suffix (e.g. a cloud share link).
        """
        path = urlsplit(locator).path or locator
        lowered = path.lower()
        if lowered.endswith(SEVEN_ZIP_EXTENSION):
            return cls.SEVEN_ZIP
        if lowered.endswith(ZIP_EXTENSION):
            return cls.ZIP
        return None

    @classmethod
    def sniff(cls, archive_path: Pathish) -> Optional["ArchiveFormat"]:
        """Detect the format from the file's leading magic bytes."""
        with open(archive_path, "rb") as f:
            head = f.read(len(SEVEN_ZIP_SIGNATURE))
        if head.startswith(SEVEN_ZIP_SIGNATURE):
            return cls.SEVEN_ZIP
        if any(head.startswith(sig) for sig in ZIP_SIGNATURES):
            return cls.ZIP
        return None

    @classmethod
    def resolve(cls, locator: str, archive_path: Pathish) -> "ArchiveFormat":
        """
        Decide the format of a downloaded archive.

        The locator suffix wins; locators without one fall back to the file's
        magic bytes, and finally to ZIP.
        """
        return cls.from_locator(locator) or cls.sniff(archive_path) or cls.ZIP

    @property
    def artifact_name(self) -> str:
        """Reserved file name the archive is downloaded to."""
        if self is ArchiveFormat.SEVEN_ZIP:
            return PATCH_7Z_ARTIFACT
        return PATCH_ZIP_ARTIFACT


@dataclass(frozen=True)
class Component:
    """A trackable unit of content: the base game or a mod layered on top."""

    name: str
    """Display identifier (not required to be unique)"""

    patch_url: str
    """Locator of the full-replacement archive applied when an update is due"""

    version_url: Optional[str] = None
    """Locator of the remote plain-text version; None means always re-apply"""

    version: Optional[str] = None
    """Last applied version; None until the first successful application"""

    password: Optional[str] = None
    """Credential for encrypted archives, persisted once supplied"""

    install_url: Optional[str] = None
    """Locator of the full install archive used when bootstrapping an installation"""

    @property
    def has_version_tracking(self) -> bool:
        return self.version_url is not None


@dataclass(frozen=True)
class ArchiveEntry:
    """One file inside an open archive. Only valid while its reader is open."""

    path: str
    """Relative path the file must end up at, taken from the archive"""

    is_dir: bool
    opener: Callable[[], IO[bytes]] = field(repr=False, compare=False)
    size: Optional[int] = None
    """Uncompressed size when the container records it"""

    def open(self) -> IO[bytes]:
        """Open a fresh binary stream over the entry's content."""
        return self.opener()


class EntryOutcome(Enum):
    EXTRACTED = "extracted"
    SKIPPED = "skipped"


@dataclass
class ExtractionStats:
    """Counters for one archive application."""

    extracted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def extracted_count(self) -> int:
        return len(self.extracted)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def record(self, path: str, outcome: EntryOutcome) -> None:
        if outcome is EntryOutcome.EXTRACTED:
            self.extracted.append(path)
        else:
            self.skipped.append(path)

    def merge(self, other: "ExtractionStats") -> "ExtractionStats":
        return ExtractionStats(
            extracted=self.extracted + other.extracted,
            skipped=self.skipped + other.skipped,
        )


class ComponentState(Enum):
    """Terminal state of a component that did not abort the run."""

    SKIPPED = "skipped"
    APPLIED = "applied"
