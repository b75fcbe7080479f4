"""Exception hierarchy shared by the updater components."""
from __future__ import annotations


class UpdaterError(RuntimeError):
    """Base class for failures raised by bedrockctl components."""


class ConfigError(UpdaterError):
    """Raised when configuration or the instance registry is invalid."""


class ControlPlaneError(UpdaterError):
    """Raised when a control-plane call fails or returns an unusable response."""


class ControlPlaneTimeout(ControlPlaneError):
    """Raised when an instance does not reach the requested state in time."""


class ReleaseLookupError(UpdaterError):
    """Raised when the upstream release feed cannot be read or understood."""


class DownloadError(UpdaterError):
    """Raised when a release artifact cannot be downloaded or validated."""


class SnapshotError(UpdaterError):
    """Raised when snapshot creation, listing or restore fails."""


class ApplyError(UpdaterError):
    """Raised when projecting release files onto an instance fails."""


class VerificationError(UpdaterError):
    """Raised when instances fail post-start verification."""

    def __init__(self, message: str, instances: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.instances = instances


class RollbackIntegrityError(UpdaterError):
    """Raised when a snapshot needed for rollback fails its integrity check."""


__all__ = [
    "ApplyError",
    "ConfigError",
    "ControlPlaneError",
    "ControlPlaneTimeout",
    "DownloadError",
    "ReleaseLookupError",
    "RollbackIntegrityError",
    "SnapshotError",
    "UpdaterError",
    "VerificationError",
]
