"""Helpers for reading the bedrockctl instance registry.

The registry file (``/etc/bedrockctl/servers.yml`` by default) lists the
managed servers and the file protection policy they share::

    servers:
      - name: survival
        id: 1
        path: /var/opt/minecraft/crafty/servers/survival
    preserve_files: [server.properties, allowlist.json, permissions.json]
    preserve_directories: [worlds, config]
    update_files: [bedrock_server, behavior_packs, resource_packs]

JSON is accepted as well since it is a subset of YAML. The file is parsed once
into an immutable :class:`InstanceRegistry`.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to read the bedrockctl registry. Install with `pip install bedrockctl`."
    ) from exc

from ..errors import ConfigError
from ..models import FileProtectionPolicy, Instance

LOGGER = logging.getLogger(__name__)

ALLOWED_KEYS = {"servers", "preserve_files", "preserve_directories", "update_files"}


@dataclass(frozen=True)
class InstanceRegistry:
    """Managed instances in configuration order plus their shared policy."""

    instances: tuple[Instance, ...]
    policy: FileProtectionPolicy

    def get(self, name: str) -> Instance | None:
        """Return the instance called *name* if registered."""
        for instance in self.instances:
            if instance.name == name:
                return instance
        return None

    @property
    def names(self) -> tuple[str, ...]:
        """Return instance names in configuration order."""
        return tuple(instance.name for instance in self.instances)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "servers": [instance.to_dict() for instance in self.instances],
            **self.policy.to_dict(),
        }


def load_registry(path: Path) -> InstanceRegistry:
    """Load and validate the registry stored at *path*."""
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigError(f"Instance registry not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse registry file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read registry file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Registry file {path} must contain a mapping at the top level.")
    return parse_registry(data, source=str(path))


def parse_registry(data: Mapping[str, object], *, source: str = "registry") -> InstanceRegistry:
    """Validate raw registry *data* and build an :class:`InstanceRegistry`."""
    unknown = {str(key) for key in data.keys()} - ALLOWED_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {source}: {joined}.")

    instances = _parse_servers(data.get("servers"), source)
    policy = FileProtectionPolicy(
        preserve_files=frozenset(_parse_paths(data.get("preserve_files"), "preserve_files")),
        preserve_directories=frozenset(
            _parse_paths(data.get("preserve_directories"), "preserve_directories")
        ),
        update_files=frozenset(_parse_paths(data.get("update_files"), "update_files")),
    )
    if not policy.update_files:
        raise ConfigError(f"{source} must list at least one entry under update_files.")
    conflicts = policy.conflicts()
    if conflicts:
        raise ConfigError(
            "update_files overlaps preserved paths: " + ", ".join(conflicts) + "."
        )
    LOGGER.debug("Loaded %d instance(s) from %s", len(instances), source)
    return InstanceRegistry(instances=instances, policy=policy)


def _parse_servers(raw: object, source: str) -> tuple[Instance, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"{source} must define a non-empty 'servers' list.")
    instances: list[Instance] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw):
        label = f"servers[{index}]"
        if not isinstance(entry, Mapping):
            raise ConfigError(f"{label} must be a mapping with name, id and path.")
        name = _require_text(entry.get("name"), f"{label}.name")
        remote_id = _require_text(entry.get("id"), f"{label}.id")
        directory = _require_text(entry.get("path"), f"{label}.path")
        if name in seen:
            raise ConfigError(f"Duplicate server name in {source}: {name}")
        if "/" in name:
            raise ConfigError(f"{label}.name must not contain '/': {name}")
        seen.add(name)
        instances.append(
            Instance(name=name, remote_id=remote_id, directory=Path(directory).expanduser())
        )
    return tuple(instances)


def _parse_paths(raw: object, label: str) -> Iterable[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{label} must be a list of relative paths.")
    return [_normalise_relative(item, label) for item in raw]


def _normalise_relative(value: object, label: str) -> str:
    text = _require_text(value, label)
    path = PurePosixPath(text)
    if path.is_absolute():
        raise ConfigError(f"{label} entries must be relative paths: {text}")
    if ".." in path.parts:
        raise ConfigError(f"{label} entries must not contain '..': {text}")
    normalised = path.as_posix()
    if normalised in {"", "."}:
        raise ConfigError(f"{label} entries must not be empty.")
    return normalised


def _require_text(value: object, label: str) -> str:
    if isinstance(value, bool) or value is None:
        raise ConfigError(f"{label} is required.")
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value.strip()


__all__ = ["InstanceRegistry", "load_registry", "parse_registry"]
