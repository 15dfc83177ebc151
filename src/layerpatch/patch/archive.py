"""
Archive readers for patch containers.

Two container formats are supported, modelled as the closed ArchiveFormat
enum. open_archive() dispatches to the matching reader; every reader yields a
lazy, single-pass sequence of ArchiveEntry objects and skips directories.
"""

import lzma
import os
import shutil
import struct
import tempfile
import zipfile
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Iterator, List, Optional

import py7zr
from py7zr.exceptions import Bad7zFile, CrcError, PasswordRequired

from layerpatch.exceptions import (
    ArchiveEntryError,
    ArchiveError,
    ArchiveFormatError,
    ArchivePasswordError,
    ArchivePasswordRequiredError,
)
from layerpatch.log_utils import logger

from .interfaces import ArchiveEntry, ArchiveFormat, Pathish

# zipfile flag bit 0 marks an encrypted member
_ZIP_ENCRYPTED_FLAG = 0x1

# py7zr failures while decoding a 7z container. Headers or streams decrypted
# with the wrong key surface as parse errors rather than a dedicated exception.
_SEVEN_ZIP_DECODE_ERRORS = (
    Bad7zFile,
    CrcError,
    lzma.LZMAError,
    TypeError,
    ValueError,
    struct.error,
    EOFError,
)


class _GuardedStream:
    """
    Binary stream wrapper that reports decode failures as ArchiveEntryError.

    Zip members only detect corruption (bad CRC, broken deflate data) while
    being read, so the translation has to happen on read() rather than open().
    """

    def __init__(self, stream: IO[bytes], archive_path: str, entry_name: str):
        self._stream = stream
        self._archive_path = archive_path
        self._entry_name = entry_name

    def read(self, size: int = -1) -> bytes:
        try:
            return self._stream.read(size)
        except (zipfile.BadZipFile, zlib.error, lzma.LZMAError, EOFError) as e:
            raise ArchiveEntryError(
                f"Could not decode archive member {self._entry_name}",
                archive_path=self._archive_path,
                entry_name=self._entry_name,
                details=str(e),
            ) from e

    def close(self) -> None:
        self._stream.close()

    def __enter__(self) -> "_GuardedStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ArchiveReader(ABC):
    """
    Base class for archive readers.

    A reader is a context manager over one open container. Its entries can be
    traversed exactly once; a second pass requires reopening the archive.
    """

    def __init__(self, archive_path: Pathish, password: Optional[str] = None):
        self.archive_path = str(archive_path)
        self.password = password
        self._consumed = False

    def iter_entries(self) -> Iterator[ArchiveEntry]:
        """
        Return the lazy sequence of non-directory entries.

        Raises:
            ArchiveError: If the entries were already requested from this reader.
        """
        if self._consumed:
            raise ArchiveError(
                "Archive entries can only be traversed once; reopen the archive",
                archive_path=self.archive_path,
            )
        self._consumed = True
        return self._iter_entries()

    @abstractmethod
    def _iter_entries(self) -> Iterator[ArchiveEntry]:
        """Yield the archive's file entries in container order."""

    @property
    @abstractmethod
    def needs_password(self) -> bool:
        """Whether the archive holds encrypted content."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying container."""

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ZipArchiveReader(ArchiveReader):
    """Reader for zip containers backed by the standard zipfile module."""

    def __init__(self, archive_path: Pathish, password: Optional[str] = None):
        super().__init__(archive_path, password)
        try:
            self._zip = zipfile.ZipFile(self.archive_path, "r")
        except zipfile.BadZipFile as e:
            raise ArchiveFormatError(
                "Not a valid zip archive", archive_path=self.archive_path, details=str(e)
            ) from e

        if self.needs_password and password is None:
            self._zip.close()
            raise ArchivePasswordRequiredError(
                "Archive is encrypted and no password was supplied",
                archive_path=self.archive_path,
            )
        if password is not None:
            self._zip.setpassword(password.encode("utf-8"))

    @property
    def needs_password(self) -> bool:
        return any(
            info.flag_bits & _ZIP_ENCRYPTED_FLAG for info in self._zip.infolist()
        )

    def _open_member(self, info: zipfile.ZipInfo) -> IO[bytes]:
        try:
            stream = self._zip.open(info, "r")
        except RuntimeError as e:
            # zipfile signals both missing and wrong passwords with RuntimeError
            error_cls = (
                ArchivePasswordError
                if self.password is not None
                else ArchivePasswordRequiredError
            )
            raise error_cls(
                f"Could not decrypt archive member {info.filename}",
                archive_path=self.archive_path,
                entry_name=info.filename,
                details=str(e),
            ) from e
        except (NotImplementedError, zipfile.BadZipFile) as e:
            raise ArchiveEntryError(
                f"Could not open archive member {info.filename}",
                archive_path=self.archive_path,
                entry_name=info.filename,
                details=str(e),
            ) from e
        return _GuardedStream(stream, self.archive_path, info.filename)  # type: ignore[return-value]

    def _iter_entries(self) -> Iterator[ArchiveEntry]:
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            yield ArchiveEntry(
                path=info.filename,
                is_dir=False,
                opener=lambda info=info: self._open_member(info),
                size=info.file_size,
            )

    def close(self) -> None:
        self._zip.close()


class SevenZipArchiveReader(ArchiveReader):
    """
    Reader for 7z containers backed by py7zr.

    7z archives are usually solid, so members cannot be decoded independently
    without re-reading the whole stream. On first iteration the archive is
    decoded once into a staging directory and entries open the staged files.
    The staging directory is removed on close().
    """

    def __init__(
        self,
        archive_path: Pathish,
        password: Optional[str] = None,
        staging_dir: Optional[Pathish] = None,
    ):
        super().__init__(archive_path, password)
        self._staging_dir: Optional[Path] = Path(staging_dir) if staging_dir else None
        try:
            self._archive = py7zr.SevenZipFile(
                self.archive_path, mode="r", password=password
            )
        except PasswordRequired as e:
            raise ArchivePasswordRequiredError(
                "Archive headers are encrypted and no password was supplied",
                archive_path=self.archive_path,
            ) from e
        except _SEVEN_ZIP_DECODE_ERRORS as e:
            if password is not None:
                raise ArchivePasswordError(
                    "Archive headers could not be decrypted; the password is probably wrong",
                    archive_path=self.archive_path,
                    details=str(e),
                ) from e
            raise ArchiveFormatError(
                "Not a valid 7z archive", archive_path=self.archive_path, details=str(e)
            ) from e

        if password is None and self.needs_password:
            self._archive.close()
            raise ArchivePasswordRequiredError(
                "Archive is encrypted and no password was supplied",
                archive_path=self.archive_path,
            )

    @property
    def needs_password(self) -> bool:
        return bool(self._archive.needs_password())

    def _stage(self) -> Path:
        if self._staging_dir is None:
            self._staging_dir = Path(tempfile.mkdtemp(prefix="layerpatch-staging-"))
        else:
            self._staging_dir.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Decoding {self.archive_path} into {self._staging_dir}")
        try:
            self._archive.extractall(path=self._staging_dir)
        except (PasswordRequired,) + _SEVEN_ZIP_DECODE_ERRORS as e:
            if self.password is not None and self.needs_password:
                raise ArchivePasswordError(
                    "Archive content could not be decrypted; the password is probably wrong",
                    archive_path=self.archive_path,
                    details=str(e),
                ) from e
            raise ArchiveEntryError(
                "Archive content could not be decoded",
                archive_path=self.archive_path,
                details=str(e),
            ) from e
        return self._staging_dir

    def _iter_entries(self) -> Iterator[ArchiveEntry]:
        members: List = [info for info in self._archive.list() if not info.is_directory]
        if not members:
            return
        staging = self._stage()
        for info in members:
            staged_path = staging / info.filename
            yield ArchiveEntry(
                path=info.filename,
                is_dir=False,
                opener=lambda staged_path=staged_path: open(staged_path, "rb"),
                size=info.uncompressed,
            )

    def close(self) -> None:
        self._archive.close()
        if self._staging_dir is not None and os.path.isdir(self._staging_dir):
            shutil.rmtree(self._staging_dir, ignore_errors=True)


def open_archive(
    archive_path: Pathish,
    archive_format: ArchiveFormat,
    password: Optional[str] = None,
    staging_dir: Optional[Pathish] = None,
) -> ArchiveReader:
    """
    Open a patch archive with the reader matching its format.

    Parameters:
        archive_path: Downloaded archive on disk.
        archive_format: Container format, usually from ArchiveFormat.resolve().
        password: Optional credential for encrypted archives.
        staging_dir: Where 7z content is decoded; a private temp dir when omitted.

    Raises:
        ArchiveFormatError: Malformed or unsupported container.
        ArchivePasswordRequiredError: Encrypted archive opened without a password.
        ArchivePasswordError: Encrypted headers could not be decrypted with the password.
    """
    if archive_format is ArchiveFormat.ZIP:
        return ZipArchiveReader(archive_path, password)
    if archive_format is ArchiveFormat.SEVEN_ZIP:
        return SevenZipArchiveReader(archive_path, password, staging_dir)
    raise ArchiveFormatError(
        f"Unsupported archive format: {archive_format}", archive_path=str(archive_path)
    )
