"""Project allow-listed release files onto a live instance directory."""
from __future__ import annotations

import logging
import os
import secrets
import shutil
from pathlib import Path

from .archive import compute_checksum
from .errors import ApplyError
from .models import FileProtectionPolicy
from .snapshots import set_executable

LOGGER = logging.getLogger(__name__)


class FileProjector:
    """Copy the ``update_files`` subset of an extracted release into place.

    Only paths listed in the policy's ``update_files`` are ever written. Each
    existing destination is copied aside before it is overwritten and the
    aside copy is put back if the overwrite fails, so a failing file never
    leaves the destination missing or truncated.
    """

    def __init__(self, *, executable: str = "bedrock_server") -> None:
        self.executable = executable

    def apply(self, extracted_dir: Path, instance_dir: Path, policy: FileProtectionPolicy) -> int:
        """Apply the release in *extracted_dir* to *instance_dir*; return files written."""
        extracted_dir = Path(extracted_dir)
        instance_dir = Path(instance_dir)
        if not instance_dir.is_dir():
            raise ApplyError(f"Instance directory does not exist: {instance_dir}")

        applied = 0
        for relative in sorted(policy.update_files):
            if policy.is_preserved(relative):
                LOGGER.warning("Refusing to overwrite preserved path %s", relative)
                continue
            source = extracted_dir / relative
            if not source.is_file():
                LOGGER.warning("File not found in new release, skipping: %s", relative)
                continue
            destination = instance_dir / relative
            _ensure_inside(instance_dir, destination, relative)
            self._replace(source, destination, relative)
            applied += 1

        LOGGER.info("Applied %d file(s) to %s", applied, instance_dir)
        return applied

    def _replace(self, source: Path, destination: Path, relative: str) -> None:
        aside: Path | None = None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if destination.exists():
                aside = destination.with_name(f"{destination.name}.pre-update-{secrets.token_hex(3)}")
                shutil.copy2(destination, aside)
        except OSError as exc:
            raise ApplyError(f"Failed to set aside {relative}: {exc}") from exc

        try:
            shutil.copy2(source, destination)
            if relative == self.executable:
                set_executable(destination)
        except OSError as exc:
            if aside is not None:
                os.replace(aside, destination)
                LOGGER.warning("Restored original file: %s", relative)
            else:
                destination.unlink(missing_ok=True)
            raise ApplyError(f"Failed to copy {relative}: {exc}") from exc

        if aside is not None:
            aside.unlink(missing_ok=True)
        LOGGER.debug("Updated file: %s", relative)


def _ensure_inside(root: Path, candidate: Path, relative: str) -> None:
    resolved_root = root.resolve()
    resolved = candidate.resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise ApplyError(f"Update path escapes the instance directory: {relative}")


def preserved_checksums(instance_dir: Path, policy: FileProtectionPolicy) -> dict[str, str]:
    """Return SHA-256 digests of the preserved files currently present."""
    digests: dict[str, str] = {}
    for relative in sorted(policy.preserve_files):
        path = Path(instance_dir) / relative
        if path.is_file():
            digests[relative] = compute_checksum(path)
    return digests


def changed_preserved_files(
    instance_dir: Path,
    policy: FileProtectionPolicy,
    before: dict[str, str],
) -> list[str]:
    """Return preserved files whose content no longer matches *before*."""
    after = preserved_checksums(instance_dir, policy)
    return sorted(relative for relative, digest in before.items() if after.get(relative) != digest)


def verify_server_files(instance_dir: Path, executable: str) -> list[str]:
    """Return problems that would keep the server from starting."""
    path = Path(instance_dir) / executable
    if not path.is_file():
        return [f"{executable} not found"]
    if not os.access(path, os.X_OK):
        return [f"{executable} is not executable"]
    return []


__all__ = [
    "FileProjector",
    "changed_preserved_files",
    "preserved_checksums",
    "verify_server_files",
]
