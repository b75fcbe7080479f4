"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import shutil
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest

from bedrockctl.models import FileProtectionPolicy, Instance

POLICY = FileProtectionPolicy(
    preserve_files=frozenset({"server.properties", "allowlist.json", "permissions.json"}),
    preserve_directories=frozenset({"worlds", "config"}),
    update_files=frozenset({"bedrock_server", "behavior_packs", "release-notes.txt"}),
)


def _make_server_dir(root: Path, name: str, *, version: str = "1.21.100.1") -> Path:
    directory = root / name
    (directory / "worlds" / "Bedrock level").mkdir(parents=True)
    (directory / "worlds" / "Bedrock level" / "level.dat").write_bytes(b"level-" + name.encode())
    (directory / "server.properties").write_text(f"server-name={name}\n")
    (directory / "allowlist.json").write_text("[]\n")
    (directory / "release-notes.txt").write_text(f"Bedrock Server {version}\n")
    executable = directory / "bedrock_server"
    executable.write_text("#!/bin/sh\necho old\n")
    executable.chmod(0o755)
    return directory


def _make_release_zip(version: str = "1.21.131.1", *, padding: int = 0) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as bundle:
        bundle.writestr("bedrock_server", "#!/bin/sh\necho new\n")
        bundle.writestr("release-notes.txt", f"Bedrock Server {version}\n")
        bundle.writestr("server.properties", "server-name=upstream-default\n")
        if padding:
            bundle.writestr("padding.bin", b"\0" * padding)
    return buffer.getvalue()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def require_tar() -> None:
    """Skip tests that shell out to tar when it is unavailable."""
    if shutil.which("tar") is None:
        pytest.skip("tar binary not available")


@pytest.fixture
def policy() -> FileProtectionPolicy:
    """Return the file protection policy used across tests."""
    return POLICY


@pytest.fixture
def make_server() -> Callable[..., Path]:
    """Return a factory creating a minimal installed server tree."""
    return _make_server_dir


@pytest.fixture
def release_zip() -> Callable[..., bytes]:
    """Return a factory for in-memory release archives."""
    return _make_release_zip


@pytest.fixture
def servers(tmp_path: Path) -> list[Instance]:
    """Create two installed servers and return them as instances."""
    root = tmp_path / "servers"
    return [
        Instance(name="alpha", remote_id="1", directory=_make_server_dir(root, "alpha")),
        Instance(name="beta", remote_id="2", directory=_make_server_dir(root, "beta")),
    ]
