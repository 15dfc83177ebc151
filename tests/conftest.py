import time
import zipfile
from pathlib import Path

import platformdirs
import py7zr
import pytest
import requests

from layerpatch.exceptions import HTTPError

_NETWORK_BLOCK_MSG = (
    "Network access is blocked during tests. Mock requests.* or Session.request."
)


def _block_network(*_args, **_kwargs):
    """
    Prevent network calls in tests by raising a RuntimeError.

    Raises:
        RuntimeError: with `_NETWORK_BLOCK_MSG` indicating that network access is blocked during tests.
    """
    raise RuntimeError(_NETWORK_BLOCK_MSG)


def pytest_configure(config):
    """Register the markers used across the suite."""
    config.addinivalue_line("markers", "unit: fast, isolated tests")
    config.addinivalue_line(
        "markers", "integration: tests that run several components together"
    )
    config.addinivalue_line("markers", "configuration: configuration file handling")


@pytest.fixture(autouse=True)
def _isolate_test_environment(tmp_path_factory, monkeypatch):
    """
    Point platformdirs and the layerpatch environment variables at a temporary layout.

    File logging is disabled unless a test removes LAYERPATCH_DISABLE_FILE_LOGGING.
    """
    base = tmp_path_factory.mktemp("layerpatch")
    config_dir = base / "config"
    log_dir = base / "state" / "log"

    for path in (config_dir, log_dir):
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_dir))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / "state"))
    monkeypatch.setenv("LAYERPATCH_DISABLE_FILE_LOGGING", "1")
    monkeypatch.delenv("LAYERPATCH_LOG_LEVEL", raising=False)

    monkeypatch.setattr(
        platformdirs, "user_config_dir", lambda *_args, **_kwargs: str(config_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_log_dir", lambda *_args, **_kwargs: str(log_dir)
    )


def pytest_runtest_setup():
    """
    Prevent real network requests during tests by replacing HTTP entry points with blocking callables.
    """
    requests.get = _block_network
    requests.post = _block_network
    requests.head = _block_network
    requests.Session.request = _block_network


@pytest.fixture(autouse=True)
def _mock_time_sleep(monkeypatch):
    """
    Make time.sleep instant for all tests to prevent delays.

    Retry backoff and the CLI exit pause both use time.sleep().
    """
    monkeypatch.setattr(time, "sleep", lambda *_args, **_kwargs: None)


# =============================================================================
# Archive builders
# =============================================================================


def build_zip(path: Path, files: dict) -> Path:
    """Write a zip archive at path holding {archive path: str | bytes}."""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def build_7z(
    path: Path,
    files: dict,
    password: str | None = None,
    header_encryption: bool = False,
) -> Path:
    """
    Write a 7z archive at path holding {archive path: str | bytes}.

    With a password the content is encrypted; the file list stays readable
    unless header_encryption is set.
    """
    staging = path.parent / f"{path.name}.src"
    staging.mkdir()
    with py7zr.SevenZipFile(
        path, "w", password=password, header_encryption=header_encryption
    ) as archive:
        for name, content in files.items():
            source = staging / name
            source.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                content = content.encode("utf-8")
            source.write_bytes(content)
            archive.write(source, arcname=name)
    return path


@pytest.fixture
def make_zip(tmp_path):
    """Factory building zip archives under a private directory."""
    archives = tmp_path / "archives"
    archives.mkdir(exist_ok=True)

    def _make(name: str, files: dict) -> Path:
        return build_zip(archives / name, files)

    return _make


def mark_zip_encrypted(path: Path) -> Path:
    """
    Set the "encrypted" flag on every member of a stored zip archive.

    zipfile cannot write encrypted members, so the flag is patched into the
    local and central directory headers. The data itself stays plain, which
    no password decrypts.
    """
    raw = bytearray(path.read_bytes())
    for signature, flag_offset in ((b"PK\x03\x04", 6), (b"PK\x01\x02", 8)):
        start = raw.find(signature)
        while start != -1:
            raw[start + flag_offset] |= 0x1
            start = raw.find(signature, start + 4)
    path.write_bytes(bytes(raw))
    return path


@pytest.fixture
def make_encrypted_zip(tmp_path):
    """Factory building zip archives whose members are flagged as encrypted."""
    archives = tmp_path / "archives"
    archives.mkdir(exist_ok=True)

    def _make(name: str, files: dict) -> Path:
        path = archives / name
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
            for member, content in files.items():
                zf.writestr(member, content)
        return mark_zip_encrypted(path)

    return _make


@pytest.fixture
def make_7z(tmp_path):
    """Factory building 7z archives under a private directory."""
    archives = tmp_path / "archives"
    archives.mkdir(exist_ok=True)

    def _make(
        name: str,
        files: dict,
        password: str | None = None,
        header_encryption: bool = False,
    ) -> Path:
        return build_7z(archives / name, files, password, header_encryption)

    return _make


# =============================================================================
# Transport double
# =============================================================================


class FakeTransport:
    """
    In-memory stand-in for layerpatch.transport.Transport.

    `resources` maps locators to bytes, str, or an exception instance that is
    raised when the locator is fetched. Every request is recorded in `calls`.
    """

    def __init__(self, resources: dict | None = None):
        self.resources = dict(resources or {})
        self.calls: list = []

    def _body(self, locator: str) -> bytes:
        self.calls.append(locator)
        if locator not in self.resources:
            raise HTTPError(f"Server answered 404 for {locator}", status_code=404, url=locator)
        body = self.resources[locator]
        if isinstance(body, BaseException):
            raise body
        if isinstance(body, Path):
            return body.read_bytes()
        if isinstance(body, str):
            return body.encode("utf-8")
        return body

    def download(self, locator, destination, progress=None) -> int:
        body = self._body(locator)
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(body)
        if progress is not None:
            progress(1.0)
        return len(body)

    def fetch_text(self, locator) -> str:
        return self._body(locator).decode("utf-8-sig")

    def fetched(self, locator) -> bool:
        return locator in self.calls

    def close(self) -> None:
        pass

    def __enter__(self) -> "FakeTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@pytest.fixture
def fake_transport():
    return FakeTransport()
