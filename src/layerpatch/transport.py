"""
Remote content fetching for layerpatch.

Plain HTTP(S) locators are fetched with a retrying requests session. Google
Drive share links are rewritten to the direct download endpoint first, and the
"file is too large to scan for viruses" interstitial page is followed once.
"""

import importlib.metadata
import re
from contextlib import contextmanager
from html import unescape
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple
from urllib.parse import urlencode, urljoin, urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry  # type: ignore

from layerpatch.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONNECT_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    GDRIVE_DIRECT_URL,
    GDRIVE_FILE_ID_PATTERNS,
    GDRIVE_HOSTS,
    GDRIVE_USERCONTENT_HOST,
    MEGA_HOSTS,
    PROGRESS_LOG_STEP_PERCENT,
    RETRY_STATUS_FORCELIST,
)
from layerpatch.exceptions import (
    HTTPError,
    NetworkError,
    ShareLinkError,
    TruncatedDownloadError,
)
from layerpatch.log_utils import logger

ProgressCallback = Callable[[float], None]

_FORM_RX = re.compile(r"<form[^>]*\baction=\"([^\"]+)\"[^>]*>(.*?)</form>", re.S | re.I)
_INPUT_RX = re.compile(r"<input[^>]*>", re.I)
_ATTR_RX = re.compile(r"\b(name|value)=\"([^\"]*)\"", re.I)

# Cache for the User-Agent string to avoid repeated metadata lookups
_USER_AGENT_CACHE = None


def get_user_agent() -> str:
    """
    Get the User-Agent string used for HTTP requests.

    Returns:
        The string `layerpatch/{version}`, or `layerpatch/unknown` when the
        package metadata is not available.
    """
    global _USER_AGENT_CACHE

    if _USER_AGENT_CACHE is None:
        try:
            app_version = importlib.metadata.version("layerpatch")
        except importlib.metadata.PackageNotFoundError:
            app_version = "unknown"

        _USER_AGENT_CACHE = f"layerpatch/{app_version}"

    return _USER_AGENT_CACHE


def is_google_drive_url(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host in GDRIVE_HOSTS or host == GDRIVE_USERCONTENT_HOST


def is_mega_url(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in MEGA_HOSTS)


def resolve_share_link(url: str) -> str:
    """
    Convert a Google Drive view/share URL into a direct download URL.

    Supports formats like:
    - https://drive.google.com/file/d/<ID>/view?usp=sharing
    - https://drive.google.com/open?id=<ID>
    - https://drive.google.com/uc?id=<ID>&export=download

    Other URLs, including ones already pointing at the usercontent endpoint,
    are returned unchanged.

    Raises:
        ShareLinkError: A Google Drive URL that carries no file ID, or a Mega
            link, whose content is encrypted client-side.
    """
    if is_mega_url(url):
        raise ShareLinkError(
            "Mega links are not supported; host the archive on Google Drive "
            "or a plain HTTP(S) server",
            url=url,
        )

    host = (urlsplit(url).hostname or "").lower()
    if host not in GDRIVE_HOSTS:
        return url

    for pattern in GDRIVE_FILE_ID_PATTERNS:
        match = re.search(pattern, url)
        if match:
            return GDRIVE_DIRECT_URL.format(file_id=match.group(1))

    raise ShareLinkError("Google Drive link does not contain a file ID", url=url)


def _confirm_url_from_page(html: str, page_url: str) -> Optional[str]:
    """
    Extract the download confirmation URL from a Google Drive warning page.

    The page holds a form whose hidden inputs (id, export, confirm, uuid)
    must be sent back to the form action to receive the file.
    """
    form = _FORM_RX.search(html)
    if not form:
        return None

    params: Dict[str, str] = {}
    for tag in _INPUT_RX.findall(form.group(2)):
        attrs = {k.lower(): unescape(v) for k, v in _ATTR_RX.findall(tag)}
        if "name" in attrs:
            params[attrs["name"]] = attrs.get("value", "")
    if "id" not in params:
        return None

    action = urljoin(page_url, unescape(form.group(1)))
    return f"{action}?{urlencode(params)}"


def _is_html(response: requests.Response) -> bool:
    return "text/html" in response.headers.get("Content-Type", "").lower()


def _expected_size(response: requests.Response) -> Optional[int]:
    """
    Announced body size, or None when it is unknown.

    A compressed transfer is decoded by requests, so its Content-Length does
    not describe the bytes the caller receives.
    """
    encoding = response.headers.get("Content-Encoding", "identity").lower()
    if encoding not in ("", "identity"):
        return None
    try:
        size = int(response.headers["Content-Length"])
    except (KeyError, ValueError):
        return None
    return size if size >= 0 else None


class Transport:
    """
    Fetches remote bytes for version checks and patch archives.

    Connection failures, stalled reads and retryable status codes are retried
    by urllib3 with exponential backoff; whatever still fails afterwards is
    raised as a TransportError subclass.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = self._create_session()
        return self._session

    @staticmethod
    def _create_session() -> requests.Session:
        session = requests.Session()
        retry_strategy: Retry = Retry(
            total=DEFAULT_CONNECT_RETRIES,
            connect=DEFAULT_CONNECT_RETRIES,
            read=DEFAULT_CONNECT_RETRIES,
            status=DEFAULT_CONNECT_RETRIES,
            backoff_factor=DEFAULT_BACKOFF_FACTOR,
            status_forcelist=list(RETRY_STATUS_FORCELIST),
            allowed_methods=frozenset({"GET", "HEAD"}),
            raise_on_status=False,
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.headers.update({"User-Agent": get_user_agent()})
        return session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get(self, url: str) -> requests.Response:
        logger.debug(f"GET {url}")
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Could not fetch {url}", url=url, details=str(e)) from e

        logger.debug(f"Received HTTP response status code: {response.status_code} for URL: {url}")
        try:
            # Status-based retries have already been applied by urllib3's Retry
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            response.close()
            raise HTTPError(
                f"Server answered {response.status_code} for {url}",
                status_code=response.status_code,
                url=url,
                details=response.reason,
            ) from e
        return response

    def fetch(self, locator: str) -> Tuple[requests.Response, Optional[int]]:
        """
        Open a streaming response for locator.

        Returns:
            The open response (the caller must close it) and the announced
            size in bytes, or None when the server did not announce one.

        Raises:
            NetworkError: Connection failure or timeout.
            HTTPError: Error status after retries.
            ShareLinkError: A share link that does not lead to the file.
        """
        url = resolve_share_link(locator)
        response = self._get(url)

        if is_google_drive_url(url) and _is_html(response):
            page = response.text
            response.close()
            confirm_url = _confirm_url_from_page(page, url)
            if confirm_url is None:
                raise ShareLinkError(
                    "Google Drive returned a web page instead of the file",
                    url=locator,
                    details="the file may be private or over its download quota",
                )
            logger.debug("Following Google Drive download confirmation")
            response = self._get(confirm_url)
            if _is_html(response):
                response.close()
                raise ShareLinkError(
                    "Google Drive did not release the file after confirmation",
                    url=locator,
                )

        return response, _expected_size(response)

    def download(
        self,
        locator: str,
        destination,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Stream locator into the destination file.

        Parameters:
            locator: URL or share link to fetch.
            destination: File path to write; its parent directories are created.
            progress: Optional callback receiving the completed fraction in [0, 1].
                It is only called with intermediate values when the size is known.

        Returns:
            int: Number of bytes written.

        Raises:
            TruncatedDownloadError: The stream ended before the announced size.
            TransportError: Any other fetch failure. The partial file is removed.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        response, expected = self.fetch(locator)

        received = 0
        completed = False
        try:
            with response, open(destination, "wb") as out:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if not chunk:
                        continue
                    out.write(chunk)
                    received += len(chunk)
                    if progress is not None and expected:
                        progress(min(received / expected, 1.0))

            if expected is not None and received < expected:
                raise TruncatedDownloadError(locator, expected, received)
            completed = True
        except requests.exceptions.RequestException as e:
            raise NetworkError(
                f"Download of {locator} was interrupted", url=locator, details=str(e)
            ) from e
        finally:
            if not completed:
                destination.unlink(missing_ok=True)

        if progress is not None:
            progress(1.0)

        size_mb = received / (1024 * 1024)
        if size_mb >= 1.0:
            logger.debug(f"Downloaded {locator} ({size_mb:.1f} MB)")
        else:
            logger.debug(f"Downloaded {locator} ({received} bytes)")
        return received

    def fetch_text(self, locator: str) -> str:
        """Fetch locator and return its body decoded as UTF-8."""
        response, expected = self.fetch(locator)
        try:
            with response:
                body = response.content
        except requests.exceptions.RequestException as e:
            raise NetworkError(
                f"Could not read {locator}", url=locator, details=str(e)
            ) from e
        if expected is not None and len(body) < expected:
            raise TruncatedDownloadError(locator, expected, len(body))
        return body.decode("utf-8-sig", errors="replace")


@contextmanager
def log_progress(description: str) -> Iterator[ProgressCallback]:
    """
    Progress callback that logs a milestone every few percent.

    Used when no interactive progress bar is available.
    """
    last_step = -1

    def report(fraction: float) -> None:
        nonlocal last_step
        step = int(fraction * 100) // PROGRESS_LOG_STEP_PERCENT
        if step > last_step:
            last_step = step
            logger.info(f"{description}: {step * PROGRESS_LOG_STEP_PERCENT}%")

    yield report
