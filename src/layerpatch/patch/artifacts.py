"""
Reserved temporary artifacts inside the destination root.

Downloaded archives, the downloaded version text and the 7z staging directory
live at fixed names. scratch_artifacts() guarantees they are gone when an
update run ends, whether it succeeded or not.
"""

import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from layerpatch.constants import (
    PATCH_7Z_ARTIFACT,
    PATCH_ZIP_ARTIFACT,
    STAGING_ARTIFACT,
    VERSION_ARTIFACT,
)
from layerpatch.log_utils import logger

from .interfaces import Pathish


@dataclass(frozen=True)
class ScratchPaths:
    """Absolute locations of the reserved artifacts for one destination root."""

    root: Path

    @property
    def patch_zip(self) -> Path:
        return self.root / PATCH_ZIP_ARTIFACT

    @property
    def patch_7z(self) -> Path:
        return self.root / PATCH_7Z_ARTIFACT

    @property
    def version(self) -> Path:
        return self.root / VERSION_ARTIFACT

    @property
    def staging(self) -> Path:
        return self.root / STAGING_ARTIFACT

    def all(self) -> tuple:
        return (self.patch_zip, self.patch_7z, self.version, self.staging)


def remove_artifacts(paths: ScratchPaths) -> bool:
    """
    Remove every reserved artifact that exists.

    Returns:
        bool: `True` if all artifacts are gone, `False` if any removal failed.
    """
    ok = True
    for path in paths.all():
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif os.path.lexists(path):
                path.unlink()
            else:
                continue
            logger.debug(f"Removed temporary artifact {path.name}")
        except OSError as e:
            logger.warning(f"Could not remove temporary artifact {path}: {e}")
            ok = False
    return ok


@contextmanager
def scratch_artifacts(root: Pathish) -> Iterator[ScratchPaths]:
    """
    Provide the reserved artifact paths for root and clean them up on exit.

    Leftovers from an earlier interrupted run are removed up front as well.
    """
    paths = ScratchPaths(Path(root))
    remove_artifacts(paths)
    try:
        yield paths
    finally:
        remove_artifacts(paths)
