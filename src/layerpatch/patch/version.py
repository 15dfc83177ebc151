"""
Version classification for tracked components.

Remote versions are plain-text strings published next to the patch archive.
Two versions are compatible when they share a base version: the version with
its final dot-delimited segment replaced by "0".
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from layerpatch.exceptions import IncompatibleVersionError
from layerpatch.log_utils import logger

from .interfaces import Component, Pathish

if TYPE_CHECKING:
    from layerpatch.transport import Transport


class VersionStatus(Enum):
    """Relationship between the recorded and the remote version of a component."""

    UP_TO_DATE = "up_to_date"
    OUTDATED = "outdated"
    INCOMPATIBLE = "incompatible"
    FORCED_DUE = "forced_due"


@dataclass(frozen=True)
class VersionCheck:
    """Outcome of classifying one component."""

    status: VersionStatus
    remote: Optional[str] = None
    """Remote version, or None for untracked components"""

    recorded: Optional[str] = None


def base_version(version: str) -> str:
    """
    Return the base of a version string.

    The final dot-delimited segment is replaced by "0"; a version without a
    dot is its own base.

    >>> base_version("1.2.7")
    '1.2.0'
    >>> base_version("7")
    '7'
    """
    index = version.rfind(".")
    if index == -1:
        return version
    return version[:index] + ".0"


def classify_version(remote: str, recorded: Optional[str]) -> VersionStatus:
    """
    Classify a remote version against the recorded one.

    An empty or missing recorded version is never incompatible: the first
    application of any remote version is an ordinary update.
    """
    current = recorded or ""
    if remote == current:
        return VersionStatus.UP_TO_DATE
    if current and base_version(remote) != base_version(current):
        return VersionStatus.INCOMPATIBLE
    return VersionStatus.OUTDATED


class VersionResolver:
    """
    Fetches remote version strings and classifies components against them.

    With a scratch path the version text is downloaded to that fixed file
    inside the destination root and removed again after it was read. Without
    one it is read in memory, so a dry check writes nothing.
    """

    def __init__(self, transport: "Transport", scratch_path: Optional[Pathish] = None):
        self.transport = transport
        self.scratch_path = Path(scratch_path) if scratch_path is not None else None

    def fetch_remote_version(self, version_url: str) -> str:
        """Fetch the version text from version_url and return it trimmed."""
        if self.scratch_path is None:
            return self.transport.fetch_text(version_url).strip()

        self.transport.download(version_url, self.scratch_path)
        try:
            return self.scratch_path.read_text(encoding="utf-8-sig").strip()
        finally:
            self.scratch_path.unlink(missing_ok=True)

    def resolve(self, component: Component) -> VersionCheck:
        """
        Classify a component.

        Components without a version source are always FORCED_DUE and nothing
        is fetched for them.
        """
        if component.version_url is None:
            return VersionCheck(VersionStatus.FORCED_DUE, None, component.version)

        remote = self.fetch_remote_version(component.version_url)
        status = classify_version(remote, component.version)
        logger.debug(
            f"{component.name}: recorded={component.version!r} remote={remote!r} -> {status.value}"
        )
        return VersionCheck(status, remote, component.version)

    @staticmethod
    def ensure_compatible(component: Component, check: VersionCheck) -> None:
        """
        Raise IncompatibleVersionError when the check crossed a base boundary.
        """
        if check.status is VersionStatus.INCOMPATIBLE:
            raise IncompatibleVersionError(
                component.name, check.recorded or "", check.remote or ""
            )
