"""
Custom exceptions for layerpatch.

Every fatal condition of an update run is represented by one of these
exceptions. None of them is retried automatically: the CLI reports the error,
removes temporary artifacts and exits non-zero.
"""


class LayerpatchError(Exception):
    """
    Base exception for all layerpatch errors.

    All custom exceptions should inherit from this class so callers can catch
    every application-specific error in one place.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        """
        Initialize the exception.

        Args:
            message: The primary error message.
            details: Optional additional context about the error.
        """
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(LayerpatchError):
    """
    Exception raised when configuration is invalid or missing.

    This includes:
    - Missing configuration files
    - YAML parsing errors
    - Invalid component records
    """

    pass


class ConfigFileError(ConfigurationError):
    """Exception raised when the configuration file cannot be read or written."""

    def __init__(
        self, message: str, path: str | None = None, details: str | None = None
    ) -> None:
        super().__init__(message, details)
        self.path = path


class ConfigValidationError(ConfigurationError):
    """Exception raised when the configuration document has the wrong shape."""

    pass


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(LayerpatchError):
    """
    Base exception for failures while fetching remote content.

    Attributes:
        url: The locator that was being fetched when the error occurred.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.url = url


class NetworkError(TransportError):
    """
    Exception raised for connection-level failures.

    This includes:
    - Connection timeouts and stalled reads
    - DNS resolution failures
    - Connection refused errors
    - SSL/TLS errors
    """

    pass


class HTTPError(TransportError):
    """
    Exception raised when the server answers with an error status.

    Attributes:
        status_code: The HTTP status code returned by the server.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, url, details)
        self.status_code = status_code


class TruncatedDownloadError(TransportError):
    """
    Exception raised when a stream ends before the announced size was received.

    Attributes:
        expected_size: Size announced by the server.
        received_size: Number of bytes actually received.
    """

    def __init__(
        self,
        url: str | None,
        expected_size: int,
        received_size: int,
    ) -> None:
        super().__init__(
            "Download was truncated",
            url=url,
            details=f"expected {expected_size} bytes, received {received_size}",
        )
        self.expected_size = expected_size
        self.received_size = received_size


class ShareLinkError(TransportError):
    """Exception raised when a cloud share link cannot be resolved to a download."""

    pass


# =============================================================================
# Archive Errors
# =============================================================================


class ArchiveError(LayerpatchError):
    """
    Exception raised for archive-related errors.

    Attributes:
        archive_path: Path to the problematic archive.
    """

    def __init__(
        self,
        message: str,
        archive_path: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.archive_path = archive_path


class ArchiveFormatError(ArchiveError):
    """Exception raised when archive headers are malformed or unsupported."""

    pass


class ArchiveEntryError(ArchiveError):
    """
    Exception raised when a specific archive member cannot be decoded.

    Attributes:
        entry_name: Archive-internal path of the failing member, when known.
    """

    def __init__(
        self,
        message: str,
        archive_path: str | None = None,
        entry_name: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, archive_path, details)
        self.entry_name = entry_name


class ArchivePasswordRequiredError(ArchiveEntryError):
    """Exception raised when an encrypted archive is opened without a password."""

    pass


class ArchivePasswordError(ArchiveEntryError):
    """Exception raised when the supplied archive password is wrong."""

    pass


# =============================================================================
# Version Errors
# =============================================================================


class VersionError(LayerpatchError):
    """Exception raised when version information cannot be used."""

    pass


class IncompatibleVersionError(VersionError):
    """
    Exception raised when a remote version crosses a base-version boundary.

    The installation cannot be updated incrementally; a fresh install of the
    component is required.

    Attributes:
        component: Name of the component that failed the check.
        recorded: Locally recorded version.
        remote: Remote version that was published.
    """

    def __init__(self, component: str, recorded: str, remote: str) -> None:
        super().__init__(
            f"The latest version of {component} is {remote} while this "
            f"installation is on {recorded}",
            details="automatic incremental update is impossible, a fresh install is required",
        )
        self.component = component
        self.recorded = recorded
        self.remote = remote


# =============================================================================
# File System Errors
# =============================================================================


class FileSystemError(LayerpatchError):
    """
    Exception raised for file system-related errors.

    Attributes:
        path: The file path that caused the error.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.path = path


class PathValidationError(FileSystemError):
    """Exception raised when an archive member would land outside the destination."""

    pass
