"""Download, validate and unpack release artifacts."""
from __future__ import annotations

import logging
import time
import zipfile
from collections.abc import Callable
from pathlib import Path, PurePosixPath

import httpx

from ..errors import DownloadError
from ..snapshots import set_executable

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_MIN_BYTES = 1_000_000


class ArtifactFetcher:
    """Fetch a release zip over HTTP and unpack it into a scratch directory.

    A download is only accepted when it completed before the deadline, is at
    least ``min_bytes`` long and passes a zip integrity test. On any failure
    the partial file is removed.
    """

    def __init__(
        self,
        *,
        min_bytes: int = DEFAULT_MIN_BYTES,
        executable: str = "bedrock_server",
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_bytes = min_bytes
        self.executable = executable
        self._client = client or httpx.Client(follow_redirects=True)
        self._clock = clock

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def download(self, url: str, destination: Path, timeout: float) -> Path:
        """Stream *url* to *destination* and validate it."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Downloading %s", url)
        try:
            self._stream(url, destination, timeout)
            self._validate(destination)
        except BaseException:
            destination.unlink(missing_ok=True)
            raise
        LOGGER.info("Downloaded %s (%d bytes)", destination.name, destination.stat().st_size)
        return destination

    def _stream(self, url: str, destination: Path, timeout: float) -> None:
        deadline = self._clock() + timeout
        try:
            with self._client.stream("GET", url, timeout=timeout) as response:
                if not response.is_success:
                    raise DownloadError(f"Download failed: HTTP {response.status_code} for {url}")
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        handle.write(chunk)
                        if self._clock() > deadline:
                            raise DownloadError(f"Download did not complete within {timeout:g} seconds.")
        except httpx.TimeoutException as exc:
            raise DownloadError(f"Download timed out after {timeout:g} seconds: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"Download failed: {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Failed to write {destination}: {exc}") from exc

    def _validate(self, archive: Path) -> None:
        size = archive.stat().st_size
        if size < self.min_bytes:
            raise DownloadError(
                f"Downloaded file is too small ({size} bytes, expected at least {self.min_bytes})."
            )
        try:
            with zipfile.ZipFile(archive) as bundle:
                bad_member = bundle.testzip()
        except (zipfile.BadZipFile, OSError) as exc:
            raise DownloadError(f"Downloaded file is not a valid zip archive: {exc}") from exc
        if bad_member is not None:
            raise DownloadError(f"Downloaded archive is corrupt at member {bad_member}.")

    def extract(self, archive: Path, destination: Path) -> Path:
        """Unpack *archive* into *destination* and return it."""
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        root = destination.resolve()
        try:
            with zipfile.ZipFile(archive) as bundle:
                for member in bundle.namelist():
                    parts = PurePosixPath(member).parts
                    target = (destination / member).resolve()
                    if PurePosixPath(member).is_absolute() or ".." in parts or (
                        target != root and root not in target.parents
                    ):
                        raise DownloadError(f"Archive member escapes the extraction directory: {member}")
                bundle.extractall(destination)
        except (zipfile.BadZipFile, OSError) as exc:
            raise DownloadError(f"Failed to extract {archive}: {exc}") from exc

        executable = destination / self.executable
        if executable.is_file():
            set_executable(executable)
        LOGGER.info("Extracted %s into %s", Path(archive).name, destination)
        return destination


__all__ = ["ArtifactFetcher"]
