"""
Layerpatch Patch Engine

This package reconciles a layered installation (a base game plus mods applied
on top of it) against the latest published full-replacement patch archives.

Core Components:
- interfaces: Components, archive entries and outcome types
- fingerprint: SHA-1 content fingerprints used as an equality oracle
- archive: zip and 7z readers
- extractor: Change-aware extraction that skips identical files
- version: Base-version rule and component classification
- artifacts: Reserved temporary files and their cleanup
- orchestrator: Ordered application with downstream cascade
"""

from .archive import ArchiveReader, SevenZipArchiveReader, ZipArchiveReader, open_archive
from .artifacts import ScratchPaths, scratch_artifacts
from .extractor import ChangeAwareExtractor, safe_extract_path
from .fingerprint import fingerprint_file, fingerprint_stream
from .interfaces import (
    ArchiveEntry,
    ArchiveFormat,
    Component,
    ComponentState,
    EntryOutcome,
    ExtractionStats,
)
from .orchestrator import ComponentResult, PatchOrchestrator, RunReport
from .version import (
    VersionCheck,
    VersionResolver,
    VersionStatus,
    base_version,
    classify_version,
)

__all__ = [
    # Interfaces
    "ArchiveEntry",
    "ArchiveFormat",
    "Component",
    "ComponentState",
    "EntryOutcome",
    "ExtractionStats",
    # Archives
    "ArchiveReader",
    "ZipArchiveReader",
    "SevenZipArchiveReader",
    "open_archive",
    # Extraction
    "ChangeAwareExtractor",
    "safe_extract_path",
    "fingerprint_file",
    "fingerprint_stream",
    # Versions
    "VersionCheck",
    "VersionResolver",
    "VersionStatus",
    "base_version",
    "classify_version",
    # Orchestration
    "ComponentResult",
    "PatchOrchestrator",
    "RunReport",
    "ScratchPaths",
    "scratch_artifacts",
]
