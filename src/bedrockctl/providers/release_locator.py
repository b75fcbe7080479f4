"""Discover the installed and the latest available server release."""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import httpx

from ..config import ServerConfig, UpstreamConfig
from ..errors import ReleaseLookupError
from ..models import Instance, Ordering, Release, ReleaseVersion

LOGGER = logging.getLogger(__name__)

RELEASE_NOTES_SCAN_LINES = 50
HOW_TO_FILE = "bedrock_server_how_to.html"

_NOTES_VERSION_RE = re.compile(r"\b(\d+\.\d+\.\d+(?:\.\d+)?)\b")
_HOW_TO_VERSION_RE = re.compile(r"Version[:\s]+(\d+\.\d+\.\d+(?:\.\d+)?)")


def probe_installed_version(
    directory: Path,
    *,
    release_notes: str = "release-notes.txt",
) -> ReleaseVersion | None:
    """Return the version found in the files of an installed server, if any."""
    notes = directory / release_notes
    if notes.is_file():
        with notes.open(encoding="utf-8", errors="replace") as handle:
            for index, line in enumerate(handle):
                if index >= RELEASE_NOTES_SCAN_LINES:
                    break
                match = _NOTES_VERSION_RE.search(line)
                if match:
                    LOGGER.debug("Version detected from %s: %s", release_notes, match.group(1))
                    return ReleaseVersion.parse(match.group(1))

    how_to = directory / HOW_TO_FILE
    if how_to.is_file():
        match = _HOW_TO_VERSION_RE.search(how_to.read_text(encoding="utf-8", errors="replace"))
        if match:
            LOGGER.debug("Version detected from %s: %s", HOW_TO_FILE, match.group(1))
            return ReleaseVersion.parse(match.group(1))
    return None


def version_from_url(url: str, prefix: str) -> ReleaseVersion:
    """Extract the version embedded in ``<prefix>-<version>.<ext>`` at the end of *url*."""
    filename = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    match = re.fullmatch(rf"{re.escape(prefix)}-(\d+(?:\.\d+)*)\.[A-Za-z0-9]+", filename)
    if match is None:
        raise ReleaseLookupError(f"Could not extract a version from download URL: {url}")
    return ReleaseVersion.parse(match.group(1))


class ReleaseLocator:
    """Query the upstream manifest and read installed versions."""

    def __init__(
        self,
        upstream: UpstreamConfig,
        server: ServerConfig,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.upstream = upstream
        self.server = server
        self._client = client or httpx.Client(timeout=30.0, follow_redirects=True)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def current_version(self, instance: Instance, reported: str | None = None) -> ReleaseVersion | None:
        """Return the installed version of *instance*, or None when unknown.

        A version reported by the panel wins; otherwise the release notes and
        the bundled how-to page are probed.
        """
        if reported:
            try:
                return ReleaseVersion.parse(reported)
            except ValueError:
                LOGGER.warning("Ignoring unparseable panel version %r for %s", reported, instance.name)
        if not instance.directory.is_dir():
            LOGGER.warning("Server directory does not exist: %s", instance.directory)
            return None
        version = probe_installed_version(instance.directory, release_notes=self.server.release_notes)
        if version is None:
            LOGGER.warning("Could not detect current version in %s", instance.directory)
        return version

    def latest_release(self) -> Release:
        """Fetch the manifest and return the release for the configured platform."""
        try:
            response = self._client.get(self.upstream.manifest_url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise ReleaseLookupError(f"Failed to query release manifest: {exc}") from exc
        if not response.is_success:
            raise ReleaseLookupError(f"Release manifest returned HTTP {response.status_code}.")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ReleaseLookupError("Release manifest is not valid JSON.") from exc

        url = _find_download_url(payload, self.upstream.platform)
        version = version_from_url(url, self.upstream.artifact_prefix)
        LOGGER.info("Latest version found: %s", version)
        return Release(version=version, url=url)

    @staticmethod
    def compare(left: ReleaseVersion, right: ReleaseVersion) -> Ordering:
        """Return how *left* orders against *right*."""
        return left.compare(right)


def _find_download_url(payload: object, platform: str) -> str:
    if not isinstance(payload, Mapping):
        raise ReleaseLookupError("Release manifest must be a JSON object.")

    result = payload.get("result")
    if isinstance(result, Mapping):
        links = result.get("links")
        if not isinstance(links, list):
            raise ReleaseLookupError("Release manifest is missing result.links.")
        for link in links:
            if isinstance(link, Mapping) and link.get("downloadType") == platform:
                url = link.get("downloadUrl")
                if isinstance(url, str) and url.strip():
                    return url.strip()
                raise ReleaseLookupError(f"Manifest entry for {platform} has no downloadUrl.")
        raise ReleaseLookupError(f"No download found for platform {platform}.")

    url = payload.get(platform)
    if isinstance(url, str) and url.strip():
        return url.strip()
    raise ReleaseLookupError(f"No download found for platform {platform}.")


@dataclass
class OfflineReleaseLocator:
    """Release lookup for offline mode.

    The upstream feed is public and still consulted through *delegate*; only
    instance directories that do not exist locally are tolerated and reported
    as the minimum version.
    """

    delegate: ReleaseLocator

    def close(self) -> None:
        """Close the wrapped locator."""
        self.delegate.close()

    def current_version(self, instance: Instance, reported: str | None = None) -> ReleaseVersion | None:
        """Return the installed version, or the minimum for a missing directory."""
        if not reported and not instance.directory.is_dir():
            LOGGER.warning("Offline mode: %s does not exist, assuming version 0", instance.directory)
            return ReleaseVersion.minimum()
        return self.delegate.current_version(instance, reported)

    def latest_release(self) -> Release:
        """Return the latest upstream release."""
        return self.delegate.latest_release()

    @staticmethod
    def compare(left: ReleaseVersion, right: ReleaseVersion) -> Ordering:
        """Return how *left* orders against *right*."""
        return left.compare(right)


__all__ = [
    "OfflineReleaseLocator",
    "ReleaseLocator",
    "probe_installed_version",
    "version_from_url",
]
