"""Point-in-time snapshots of instance directories.

Archives live flat in the backup root as ``backup-<instance>-<stamp>.tar.gz``
with a ``.sha256`` sidecar. They are written under a hidden temporary name and
renamed into place, so a listing never observes a partial archive.
"""
from __future__ import annotations

import logging
import os
import secrets
import shutil
import tempfile
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from .archive import (
    compute_checksum,
    create_archive,
    extract_archive,
    list_archive,
    read_checksum_file,
    write_checksum_file,
)
from .errors import SnapshotError
from .models import SNAPSHOT_PREFIX, SNAPSHOT_SUFFIX, Snapshot

LOGGER = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now()


def set_executable(path: Path) -> None:
    """Add the execute bits that mirror the file's read bits."""
    mode = path.stat().st_mode
    path.chmod(mode | ((mode & 0o444) >> 2) | 0o100)


class SnapshotStore:
    """Create, inspect and restore instance snapshots under *root*."""

    def __init__(
        self,
        root: Path,
        *,
        executable: str = "bedrock_server",
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.root = Path(root).expanduser()
        self.executable = executable
        self._clock = clock

    def ensure_root(self) -> None:
        """Create the backup directory with owner-only permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:
            raise SnapshotError(f"Failed to prepare backup directory {self.root}: {exc}") from exc

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create(self, instance_name: str, source_dir: Path) -> Snapshot:
        """Archive *source_dir* and return the resulting :class:`Snapshot`."""
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise SnapshotError(f"Cannot snapshot {instance_name}: {source_dir} does not exist.")
        self.ensure_root()

        created_at = self._clock().replace(microsecond=0)
        archive_path = self.root / Snapshot.filename_for(instance_name, created_at)
        if archive_path.exists():
            raise SnapshotError(f"Snapshot {archive_path.name} already exists.")

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{archive_path.name}.", suffix=".tmp")
            os.close(tmp_fd)
        except OSError as exc:
            raise SnapshotError(f"Failed to create temporary archive for {instance_name}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            create_archive(source_dir, tmp_path)
            checksum = compute_checksum(tmp_path)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, archive_path)
        except OSError as exc:
            raise SnapshotError(f"Failed to write snapshot for {instance_name}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

        try:
            write_checksum_file(archive_path, checksum)
        except OSError as exc:
            archive_path.unlink(missing_ok=True)
            raise SnapshotError(f"Failed to write checksum for {archive_path.name}: {exc}") from exc

        LOGGER.info("Created snapshot %s", archive_path)
        return Snapshot(instance_name=instance_name, created_at=created_at, archive_path=archive_path)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def verify(self, snapshot: Snapshot) -> bool:
        """Return True when the archive matches its checksum and lists cleanly."""
        archive = snapshot.archive_path
        if not archive.is_file():
            LOGGER.warning("Snapshot %s is missing", archive)
            return False
        try:
            expected = read_checksum_file(snapshot.checksum_path)
            if expected is not None and compute_checksum(archive) != expected:
                LOGGER.warning("Snapshot %s failed checksum verification", archive.name)
                return False
            members = list_archive(archive)
        except (OSError, SnapshotError) as exc:
            LOGGER.warning("Snapshot %s failed integrity scan: %s", archive.name, exc)
            return False
        if not members:
            LOGGER.warning("Snapshot %s is empty", archive.name)
            return False
        return True

    def list(self, instance_name: str | None = None) -> list[Snapshot]:
        """Return snapshots (optionally for one instance) oldest first."""
        if not self.root.exists():
            return []
        snapshots: list[Snapshot] = []
        for path in self.root.glob(f"{SNAPSHOT_PREFIX}*{SNAPSHOT_SUFFIX}"):
            snapshot = Snapshot.from_path(path)
            if snapshot is None:
                continue
            if instance_name is not None and snapshot.instance_name != instance_name:
                continue
            snapshots.append(snapshot)
        snapshots.sort(key=lambda item: (item.stamp, item.instance_name))
        return snapshots

    def latest(self, instance_name: str) -> Snapshot | None:
        """Return the newest snapshot for *instance_name*."""
        snapshots = self.list(instance_name)
        return snapshots[-1] if snapshots else None

    def find(self, name: str) -> Snapshot | None:
        """Return the snapshot whose archive filename is *name*."""
        snapshot = Snapshot.from_path(self.root / name)
        if snapshot is None or not snapshot.archive_path.is_file():
            return None
        return snapshot

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def restore(self, snapshot: Snapshot, target_dir: Path) -> None:
        """Replace *target_dir* with the contents of *snapshot*.

        The current directory is moved to ``<target>.rollback-<stamp>`` and
        only deleted once the extracted tree is in place. Any failure moves it
        back so the target is left exactly as it was.
        """
        archive = snapshot.archive_path
        if not archive.is_file():
            raise SnapshotError(f"Snapshot archive not found: {archive}")
        target_dir = Path(target_dir)
        parent = target_dir.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(dir=str(parent), prefix=f".{target_dir.name}.restore-"))
        except OSError as exc:
            raise SnapshotError(f"Failed to prepare restore of {target_dir}: {exc}") from exc

        side_path: Path | None = None
        if target_dir.exists():
            side_path = self._side_path(target_dir)
            try:
                os.replace(target_dir, side_path)
            except OSError as exc:
                shutil.rmtree(staging, ignore_errors=True)
                raise SnapshotError(f"Failed to move {target_dir} aside: {exc}") from exc
            LOGGER.info("Moved %s aside to %s", target_dir, side_path)

        placed = False
        try:
            extract_archive(archive, staging)
            payload = _single_root(staging, archive.name)
            os.replace(payload, target_dir)
            placed = True
            executable = target_dir / self.executable
            if executable.is_file():
                set_executable(executable)
        except (OSError, SnapshotError) as exc:
            if placed:
                shutil.rmtree(target_dir, ignore_errors=True)
            if side_path is not None:
                os.replace(side_path, target_dir)
                LOGGER.warning("Restore of %s failed; original directory put back", target_dir)
            if isinstance(exc, SnapshotError):
                raise
            raise SnapshotError(f"Failed to restore {target_dir}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        if side_path is not None:
            try:
                shutil.rmtree(side_path)
            except OSError as exc:
                LOGGER.warning("Restored %s but could not remove %s: %s", target_dir, side_path, exc)
        LOGGER.info("Restored %s from %s", target_dir, archive.name)

    def _side_path(self, target_dir: Path) -> Path:
        stamp = self._clock().strftime("%Y%m%d-%H%M%S")
        candidate = target_dir.with_name(f"{target_dir.name}.rollback-{stamp}")
        if candidate.exists():
            candidate = target_dir.with_name(
                f"{target_dir.name}.rollback-{stamp}-{secrets.token_hex(2)}"
            )
        return candidate

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def prune_older_than(self, retention_days: int) -> int:
        """Delete snapshots whose mtime is older than *retention_days*."""
        cutoff = time.time() - timedelta(days=retention_days).total_seconds()
        removed = 0
        for snapshot in self.list():
            try:
                if snapshot.archive_path.stat().st_mtime >= cutoff:
                    continue
                snapshot.archive_path.unlink()
                snapshot.checksum_path.unlink(missing_ok=True)
            except FileNotFoundError:
                continue
            except OSError as exc:
                LOGGER.warning("Could not prune %s: %s", snapshot.archive_path.name, exc)
                continue
            removed += 1
            LOGGER.info("Pruned snapshot %s", snapshot.archive_path.name)
        return removed


def _single_root(staging: Path, archive_name: str) -> Path:
    entries = list(staging.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        raise SnapshotError(f"Snapshot {archive_name} does not contain a single directory.")
    return entries[0]


__all__ = ["SnapshotStore", "set_executable"]
