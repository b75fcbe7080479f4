"""Archive helpers shared by snapshot creation, verification and restore."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

from .errors import SnapshotError


def _tar_binary(action: str) -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise SnapshotError(f"The 'tar' command is required to {action}.")
    return tar_bin


def _run_tar(cmd: list[str], failure: str) -> str:
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar command failed").strip()
        raise SnapshotError(f"{failure}: {message}")
    return result.stdout


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Create a gzip archive of *source_dir* (rooted at its own name) at *archive_path*."""
    tar_bin = _tar_binary("create snapshots")
    cmd = [tar_bin, "-czf", str(archive_path), "-C", str(source_dir.parent), source_dir.name]
    _run_tar(cmd, f"Failed to archive {source_dir}")
    try:
        os.chmod(archive_path, 0o600)
    except OSError:
        pass


def list_archive(archive_path: Path) -> list[str]:
    """Return the member names of *archive_path*, reading it end to end."""
    tar_bin = _tar_binary("inspect snapshots")
    output = _run_tar([tar_bin, "-tzf", str(archive_path)], f"Archive {archive_path.name} is unreadable")
    return [line for line in output.splitlines() if line.strip()]


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Extract *archive_path* into *destination*."""
    tar_bin = _tar_binary("restore snapshots")
    destination.mkdir(parents=True, exist_ok=True)
    _run_tar(
        [tar_bin, "-xzpf", str(archive_path), "-C", str(destination)],
        f"Failed to extract {archive_path.name}",
    )


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o600)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(checksum_path: Path) -> str | None:
    """Return the digest recorded in *checksum_path*, or None when absent or empty."""
    try:
        text = checksum_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text:
        return None
    return text.split()[0].lower()
