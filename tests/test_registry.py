"""Tests for the instance registry loader."""
from __future__ import annotations

from pathlib import Path

import pytest

from bedrockctl.errors import ConfigError
from bedrockctl.state.registry import load_registry, parse_registry

REGISTRY_YAML = """\
servers:
  - name: survival
    id: 1
    path: {root}/survival
  - name: creative
    id: "2"
    path: {root}/creative
preserve_files: [server.properties, allowlist.json]
preserve_directories: [worlds]
update_files: [bedrock_server, behavior_packs/]
"""


def _base() -> dict[str, object]:
    return {
        "servers": [{"name": "a", "id": 1, "path": "/srv/a"}],
        "preserve_files": ["server.properties"],
        "update_files": ["bedrock_server"],
    }


def test_load_registry_parses_servers_and_policy(tmp_path: Path) -> None:
    """Servers keep file order; paths are normalised."""
    path = tmp_path / "servers.yml"
    path.write_text(REGISTRY_YAML.format(root=tmp_path))

    registry = load_registry(path)

    assert registry.names == ("survival", "creative")
    survival = registry.get("survival")
    assert survival is not None
    assert survival.remote_id == "1"
    assert survival.directory == tmp_path / "survival"
    assert registry.policy.update_files == frozenset({"bedrock_server", "behavior_packs"})
    assert registry.get("missing") is None
    assert registry.to_dict()["preserve_directories"] == ["worlds"]


def test_missing_registry_file_is_config_error(tmp_path: Path) -> None:
    """A missing registry is reported as a configuration problem."""
    with pytest.raises(ConfigError, match="not found"):
        load_registry(tmp_path / "nope.yml")


def test_empty_server_list_rejected() -> None:
    """At least one server must be registered."""
    data = _base()
    data["servers"] = []
    with pytest.raises(ConfigError, match="non-empty 'servers'"):
        parse_registry(data)


def test_duplicate_names_rejected() -> None:
    """Server names are unique."""
    data = _base()
    data["servers"] = [
        {"name": "a", "id": 1, "path": "/srv/a"},
        {"name": "a", "id": 2, "path": "/srv/b"},
    ]
    with pytest.raises(ConfigError, match="Duplicate"):
        parse_registry(data)


@pytest.mark.parametrize("bad", ["/etc/passwd", "../escape", "."])
def test_policy_paths_must_be_relative(bad: str) -> None:
    """Absolute, parent-relative and empty policy paths are rejected."""
    data = _base()
    data["update_files"] = [bad]
    with pytest.raises(ConfigError):
        parse_registry(data)


def test_update_files_must_not_overlap_preserved_paths() -> None:
    """A path cannot be both updated and preserved."""
    data = _base()
    data["preserve_directories"] = ["worlds"]
    data["update_files"] = ["bedrock_server", "worlds/level.dat"]
    with pytest.raises(ConfigError, match="overlaps preserved paths: worlds/level.dat"):
        parse_registry(data)


def test_unknown_keys_rejected() -> None:
    """Unexpected top-level keys are typos."""
    data = _base()
    data["update_file"] = ["x"]
    with pytest.raises(ConfigError, match="Unknown keys"):
        parse_registry(data)


def test_update_files_required() -> None:
    """An empty allow-list would make every update a no-op."""
    data = _base()
    data["update_files"] = []
    with pytest.raises(ConfigError, match="update_files"):
        parse_registry(data)
