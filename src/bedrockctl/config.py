"""Configuration loader for bedrockctl.

Values are read from multiple sources, later ones winning:

1. Built-in defaults.
2. ``/etc/bedrockctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``BEDROCKCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export BEDROCKCTL_CONTROL_PLANE__TOKEN=...
    export BEDROCKCTL_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to each component's constructor.
"""
from __future__ import annotations

import logging
import os
import stat
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load bedrockctl configuration. Install with "
        "`pip install bedrockctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "BEDROCKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_MANIFEST_URL = "https://net-secondary.web.minecraft-services.net/api/v1.0/download/links"


@dataclass(frozen=True)
class ControlPlaneConfig:
    """Remote panel connection settings."""

    url: str | None = None
    token: str | None = None
    request_timeout: float = 10.0
    poll_interval: float = 2.0
    server_timeout: float = 30.0
    verify_tls: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (token redacted)."""
        return {
            "url": self.url,
            "token": "***" if self.token else None,
            "request_timeout": self.request_timeout,
            "poll_interval": self.poll_interval,
            "server_timeout": self.server_timeout,
            "verify_tls": self.verify_tls,
        }


@dataclass(frozen=True)
class UpstreamConfig:
    """Where releases are discovered and how artifacts are validated."""

    manifest_url: str = DEFAULT_MANIFEST_URL
    platform: str = "serverBedrockLinux"
    artifact_prefix: str = "bedrock-server"
    download_timeout: float = 300.0
    min_artifact_bytes: int = 1_000_000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "manifest_url": self.manifest_url,
            "platform": self.platform,
            "artifact_prefix": self.artifact_prefix,
            "download_timeout": self.download_timeout,
            "min_artifact_bytes": self.min_artifact_bytes,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Snapshot storage and retention."""

    root: Path = Path("/var/backups/bedrockctl")
    retention_days: int = 7

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "retention_days": self.retention_days}


@dataclass(frozen=True)
class ServerConfig:
    """Facts about the server software layout."""

    executable: str = "bedrock_server"
    release_notes: str = "release-notes.txt"
    start_wait: float = 20.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "executable": self.executable,
            "release_notes": self.release_notes,
            "start_wait": self.start_wait,
        }


@dataclass(frozen=True)
class EmailConfig:
    """SMTP delivery settings for notifications."""

    enabled: bool = False
    host: str | None = None
    port: int = 587
    username: str | None = None
    password: str | None = None
    sender: str | None = None
    recipients: tuple[str, ...] = ()
    use_tls: bool = True
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "enabled": self.enabled,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": "***" if self.password else None,
            "sender": self.sender,
            "recipients": list(self.recipients),
            "use_tls": self.use_tls,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for bedrockctl."""

    config_file: Path
    registry_file: Path
    logs_dir: Path
    log_retention_days: int
    scratch_dir: Path | None
    offline: bool
    control_plane: ControlPlaneConfig
    upstream: UpstreamConfig
    backups: BackupConfig
    server: ServerConfig
    email: EmailConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "registry_file": str(self.registry_file),
            "logs_dir": str(self.logs_dir),
            "log_retention_days": self.log_retention_days,
            "scratch_dir": str(self.scratch_dir) if self.scratch_dir else None,
            "offline": self.offline,
            "control_plane": self.control_plane.to_dict(),
            "upstream": self.upstream.to_dict(),
            "backups": self.backups.to_dict(),
            "server": self.server.to_dict(),
            "email": self.email.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/bedrockctl/config.yml",
    "registry_file": "/etc/bedrockctl/servers.yml",
    "logs_dir": "/var/log/bedrockctl",
    "log_retention_days": 30,
    "scratch_dir": None,
    "offline": False,
    "control_plane": {
        "url": None,
        "token": None,
        "request_timeout": 10.0,
        "poll_interval": 2.0,
        "server_timeout": 30.0,
        "verify_tls": True,
    },
    "upstream": {
        "manifest_url": DEFAULT_MANIFEST_URL,
        "platform": "serverBedrockLinux",
        "artifact_prefix": "bedrock-server",
        "download_timeout": 300.0,
        "min_artifact_bytes": 1_000_000,
    },
    "backups": {
        "root": "/var/backups/bedrockctl",
        "retention_days": 7,
    },
    "server": {
        "executable": "bedrock_server",
        "release_notes": "release-notes.txt",
        "start_wait": 20.0,
    },
    "email": {
        "enabled": False,
        "host": None,
        "port": 587,
        "username": None,
        "password": None,
        "sender": None,
        "recipients": [],
        "use_tls": True,
        "timeout": 30.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)
    config = _build_app_config(merged)
    _warn_on_exposed_secrets(config_path, file_values)
    return config


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _warn_on_exposed_secrets(path: Path, file_values: Mapping[str, object]) -> None:
    """Warn when a config file holding secrets is readable by group or others."""
    if not file_values:
        return
    control_plane = file_values.get("control_plane")
    email = file_values.get("email")
    has_secret = (isinstance(control_plane, Mapping) and bool(control_plane.get("token"))) or (
        isinstance(email, Mapping) and bool(email.get("password"))
    )
    if not has_secret:
        return
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except OSError:
        return
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        LOGGER.warning(
            "Config file %s contains secrets but has permissions %04o; recommended: chmod 600.",
            path,
            mode,
        )


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section in ("control_plane", "upstream", "backups", "server", "email"):
        mapping = _as_dict(raw.get(section), section)
        allowed = set(_as_dict(DEFAULTS[section], section).keys())
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    offline = _expect_bool(raw.get("offline"), "offline", default=False)

    scratch_value = raw.get("scratch_dir")
    scratch_dir = _to_path(scratch_value) if scratch_value else None

    log_retention_days = _expect_int(raw.get("log_retention_days"), "log_retention_days", default=30)
    if log_retention_days < 1:
        raise ConfigError("log_retention_days must be at least 1.")

    cp_mapping = _as_dict(raw.get("control_plane"), "control_plane")
    url = _optional_str(cp_mapping.get("url"), "control_plane.url")
    token = _optional_str(cp_mapping.get("token"), "control_plane.token")
    if not offline:
        if not url:
            raise ConfigError("control_plane.url is required unless offline mode is enabled.")
        if not token:
            raise ConfigError("control_plane.token is required unless offline mode is enabled.")
    if url is not None:
        if not url.startswith(("http://", "https://")):
            raise ConfigError("control_plane.url must start with http:// or https://.")
        url = url.rstrip("/")
    control_plane = ControlPlaneConfig(
        url=url,
        token=token,
        request_timeout=_expect_positive_float(
            cp_mapping.get("request_timeout"), "control_plane.request_timeout", default=10.0
        ),
        poll_interval=_expect_positive_float(
            cp_mapping.get("poll_interval"), "control_plane.poll_interval", default=2.0
        ),
        server_timeout=_expect_positive_float(
            cp_mapping.get("server_timeout"), "control_plane.server_timeout", default=30.0
        ),
        verify_tls=_expect_bool(cp_mapping.get("verify_tls"), "control_plane.verify_tls", default=True),
    )

    up_mapping = _as_dict(raw.get("upstream"), "upstream")
    manifest_url = _expect_str(up_mapping.get("manifest_url", DEFAULT_MANIFEST_URL), "upstream.manifest_url")
    if not manifest_url.startswith(("http://", "https://")):
        raise ConfigError("upstream.manifest_url must start with http:// or https://.")
    min_bytes = _expect_int(up_mapping.get("min_artifact_bytes"), "upstream.min_artifact_bytes", default=1_000_000)
    if min_bytes < 0:
        raise ConfigError("upstream.min_artifact_bytes must be non-negative.")
    upstream = UpstreamConfig(
        manifest_url=manifest_url,
        platform=_expect_str(up_mapping.get("platform", "serverBedrockLinux"), "upstream.platform"),
        artifact_prefix=_expect_str(
            up_mapping.get("artifact_prefix", "bedrock-server"), "upstream.artifact_prefix"
        ),
        download_timeout=_expect_positive_float(
            up_mapping.get("download_timeout"), "upstream.download_timeout", default=300.0
        ),
        min_artifact_bytes=min_bytes,
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    retention_days = _expect_int(backups_mapping.get("retention_days"), "backups.retention_days", default=7)
    if retention_days < 1:
        raise ConfigError("backups.retention_days must be at least 1.")
    backups = BackupConfig(
        root=_to_path(backups_mapping.get("root", "/var/backups/bedrockctl")),
        retention_days=retention_days,
    )

    server_mapping = _as_dict(raw.get("server"), "server")
    start_wait_raw = server_mapping.get("start_wait")
    start_wait = 20.0
    if start_wait_raw is not None:
        start_wait = _expect_non_negative_float(start_wait_raw, "server.start_wait")
    server = ServerConfig(
        executable=_expect_str(server_mapping.get("executable", "bedrock_server"), "server.executable"),
        release_notes=_expect_str(
            server_mapping.get("release_notes", "release-notes.txt"), "server.release_notes"
        ),
        start_wait=start_wait,
    )

    email = _build_email_config(_as_dict(raw.get("email"), "email"))

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        registry_file=_to_path(raw.get("registry_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        log_retention_days=log_retention_days,
        scratch_dir=scratch_dir,
        offline=offline,
        control_plane=control_plane,
        upstream=upstream,
        backups=backups,
        server=server,
        email=email,
    )


def _build_email_config(mapping: Mapping[str, object]) -> EmailConfig:
    enabled = _expect_bool(mapping.get("enabled"), "email.enabled", default=False)
    recipients_raw = mapping.get("recipients") or []
    if isinstance(recipients_raw, str):
        recipients = tuple(item.strip() for item in recipients_raw.split(",") if item.strip())
    else:
        recipients = tuple(
            str(item).strip() for item in _as_sequence(recipients_raw, "email.recipients") if str(item).strip()
        )
    port = _expect_int(mapping.get("port"), "email.port", default=587)
    if not 0 < port < 65536:
        raise ConfigError("email.port must be between 1 and 65535.")
    email = EmailConfig(
        enabled=enabled,
        host=_optional_str(mapping.get("host"), "email.host"),
        port=port,
        username=_optional_str(mapping.get("username"), "email.username"),
        password=_optional_str(mapping.get("password"), "email.password"),
        sender=_optional_str(mapping.get("sender"), "email.sender"),
        recipients=recipients,
        use_tls=_expect_bool(mapping.get("use_tls"), "email.use_tls", default=True),
        timeout=_expect_positive_float(mapping.get("timeout"), "email.timeout", default=30.0),
    )
    if email.enabled:
        missing = [
            label
            for label, value in (
                ("email.host", email.host),
                ("email.sender", email.sender),
                ("email.recipients", email.recipients),
            )
            if not value
        ]
        if missing:
            raise ConfigError(
                "Email notifications are enabled but missing: " + ", ".join(missing) + "."
            )
    return email


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigError(f"Expected {key} to resolve to a non-empty string. Got {value!r}.")


def _optional_str(value: object, key: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise ConfigError(f"Expected {key} to be a string. Got {type(value).__name__}.")
    return value.strip() or None


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_non_negative_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "ControlPlaneConfig",
    "EmailConfig",
    "ServerConfig",
    "UpstreamConfig",
    "load_config",
]
