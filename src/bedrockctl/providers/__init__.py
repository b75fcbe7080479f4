"""Provider interfaces for bedrockctl."""
from __future__ import annotations

from .artifact_fetcher import ArtifactFetcher
from .control_plane import ControlPlaneClient, OfflineControlPlane
from .release_locator import OfflineReleaseLocator, ReleaseLocator

__all__ = [
    "ArtifactFetcher",
    "ControlPlaneClient",
    "OfflineControlPlane",
    "OfflineReleaseLocator",
    "ReleaseLocator",
]
