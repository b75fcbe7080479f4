"""Value types shared by the orchestrator and its collaborators."""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import total_ordering
from pathlib import Path, PurePosixPath

from .exit_codes import ExitCode

SNAPSHOT_PREFIX = "backup-"
SNAPSHOT_SUFFIX = ".tar.gz"
SNAPSHOT_TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"

_VERSION_RE = re.compile(r"^\d+(?:\.\d+)*$")
_SNAPSHOT_NAME_RE = re.compile(
    r"^backup-(?P<instance>.+)-(?P<stamp>\d{4}-\d{2}-\d{2}-\d{6})\.tar\.gz$"
)


@dataclass(frozen=True, slots=True)
class Instance:
    """A managed game-server installation registered with the control plane."""

    name: str
    remote_id: str
    directory: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "id": self.remote_id, "path": str(self.directory)}


@dataclass(frozen=True, slots=True)
class FileProtectionPolicy:
    """Which relative paths a release may overwrite and which are off limits."""

    preserve_files: frozenset[str] = frozenset()
    preserve_directories: frozenset[str] = frozenset()
    update_files: frozenset[str] = frozenset()

    def is_preserved(self, relative: str) -> bool:
        """Return True when *relative* is a preserved file or lives in a preserved tree."""
        if relative in self.preserve_files:
            return True
        path = PurePosixPath(relative)
        for directory in self.preserve_directories:
            root = PurePosixPath(directory)
            if path == root or root in path.parents:
                return True
        return False

    def conflicts(self) -> list[str]:
        """Return the update paths that are also preserved."""
        return sorted(path for path in self.update_files if self.is_preserved(path))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "preserve_files": sorted(self.preserve_files),
            "preserve_directories": sorted(self.preserve_directories),
            "update_files": sorted(self.update_files),
        }


class Ordering(Enum):
    """Result of comparing two release versions."""

    LESS = -1
    EQUAL = 0
    GREATER = 1


@total_ordering
@dataclass(frozen=True, slots=True, eq=False)
class ReleaseVersion:
    """Dotted numeric release identifier (``1.21.131.1``).

    Ordering is component-wise and numeric, with missing trailing components
    treated as zero, so ``1.2`` and ``1.2.0.0`` are equal.
    """

    components: tuple[int, ...]

    @classmethod
    def parse(cls, value: str) -> ReleaseVersion:
        """Parse *value* or raise ``ValueError``."""
        text = str(value).strip()
        if not _VERSION_RE.match(text):
            raise ValueError(f"Not a dotted numeric version: {value!r}")
        return cls(tuple(int(part) for part in text.split(".")))

    @classmethod
    def minimum(cls) -> ReleaseVersion:
        """Return the smallest possible version (used when the current one is unknown)."""
        return cls((0,))

    def compare(self, other: ReleaseVersion) -> Ordering:
        """Compare against *other* using zero-padded numeric ordering."""
        width = max(len(self.components), len(other.components))
        left = self.components + (0,) * (width - len(self.components))
        right = other.components + (0,) * (width - len(other.components))
        if left < right:
            return Ordering.LESS
        if left > right:
            return Ordering.GREATER
        return Ordering.EQUAL

    def _normalised(self) -> tuple[int, ...]:
        trimmed = list(self.components)
        while len(trimmed) > 1 and trimmed[-1] == 0:
            trimmed.pop()
        return tuple(trimmed)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReleaseVersion):
            return NotImplemented
        return self.compare(other) is Ordering.EQUAL

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ReleaseVersion):
            return NotImplemented
        return self.compare(other) is Ordering.LESS

    def __hash__(self) -> int:
        return hash(self._normalised())

    def __str__(self) -> str:
        return ".".join(str(part) for part in self.components)


@dataclass(frozen=True, slots=True)
class Release:
    """An upstream release and the location of its artifact."""

    version: ReleaseVersion
    url: str

    @property
    def filename(self) -> str:
        """Return the artifact filename embedded in the URL."""
        return PurePosixPath(self.url.split("?", 1)[0]).name


@dataclass(frozen=True, slots=True)
class Snapshot:
    """A point-in-time archive of one instance directory."""

    instance_name: str
    created_at: datetime
    archive_path: Path

    @staticmethod
    def filename_for(instance_name: str, created_at: datetime) -> str:
        """Return the conventional archive filename."""
        stamp = created_at.strftime(SNAPSHOT_TIMESTAMP_FORMAT)
        return f"{SNAPSHOT_PREFIX}{instance_name}-{stamp}{SNAPSHOT_SUFFIX}"

    @classmethod
    def from_path(cls, path: Path) -> Snapshot | None:
        """Parse an archive path, returning None when it does not follow the convention."""
        match = _SNAPSHOT_NAME_RE.match(path.name)
        if match is None:
            return None
        try:
            created_at = datetime.strptime(match.group("stamp"), SNAPSHOT_TIMESTAMP_FORMAT)
        except ValueError:
            return None
        return cls(
            instance_name=match.group("instance"),
            created_at=created_at,
            archive_path=path,
        )

    @property
    def stamp(self) -> str:
        """Return the timestamp suffix used for ordering."""
        return self.created_at.strftime(SNAPSHOT_TIMESTAMP_FORMAT)

    @property
    def checksum_path(self) -> Path:
        """Return the ``.sha256`` sidecar path."""
        return self.archive_path.with_name(f"{self.archive_path.name}.sha256")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance_name,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "path": str(self.archive_path),
        }


class Phase(Enum):
    """Orchestrator states in their forward order."""

    INITIALIZING = "Initializing"
    CHECKING_VERSION = "CheckingVersion"
    STOPPING_INSTANCES = "StoppingInstances"
    BACKING_UP = "BackingUp"
    DOWNLOADING = "Downloading"
    APPLYING = "Applying"
    STARTING_INSTANCES = "StartingInstances"
    VERIFYING = "Verifying"
    CLEANING_UP = "CleaningUp"
    ROLLING_BACK = "RollingBack"
    DONE = "Done"


class OutcomeKind(Enum):
    """Terminal state of one orchestration run."""

    NO_UPDATE_NEEDED = "no-update-needed"
    DRY_RUN_STOPPED_BEFORE_CHANGE = "dry-run"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class RollbackStatus(Enum):
    """How a failed run left the fleet."""

    NOT_NEEDED = "not-needed"
    COMPLETED = "completed"
    UNAVAILABLE = "unavailable"
    INTEGRITY_ERROR = "integrity-error"
    FAILED = "failed"


_PHASE_EXIT_CODES = {
    Phase.INITIALIZING: ExitCode.CONFIG,
    Phase.CHECKING_VERSION: ExitCode.DOWNLOAD,
    Phase.STOPPING_INSTANCES: ExitCode.APPLY,
    Phase.BACKING_UP: ExitCode.BACKUP,
    Phase.DOWNLOADING: ExitCode.DOWNLOAD,
    Phase.APPLYING: ExitCode.APPLY,
    Phase.STARTING_INSTANCES: ExitCode.START,
    Phase.VERIFYING: ExitCode.START,
}


@dataclass(frozen=True, slots=True)
class RunOptions:
    """Operator flags for one run."""

    dry_run: bool = False
    force: bool = False
    skip_backup: bool = False


@dataclass(frozen=True)
class RunOutcome:
    """The single result produced by an orchestration run."""

    kind: OutcomeKind
    phase: Phase = Phase.DONE
    reason: str = ""
    old_version: ReleaseVersion | None = None
    new_version: ReleaseVersion | None = None
    instances: tuple[str, ...] = ()
    rollback: RollbackStatus = RollbackStatus.NOT_NEEDED
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def failed(
        cls,
        phase: Phase,
        reason: str,
        *,
        instances: Iterable[str] = (),
        rollback: RollbackStatus = RollbackStatus.NOT_NEEDED,
        old_version: ReleaseVersion | None = None,
        new_version: ReleaseVersion | None = None,
        warnings: Sequence[str] = (),
    ) -> RunOutcome:
        """Build a FAILED outcome."""
        return cls(
            kind=OutcomeKind.FAILED,
            phase=phase,
            reason=reason,
            old_version=old_version,
            new_version=new_version,
            instances=tuple(instances),
            rollback=rollback,
            warnings=tuple(warnings),
        )

    @property
    def is_severe(self) -> bool:
        """Return True when the fleet may be left in an unknown state."""
        return self.rollback in {RollbackStatus.FAILED, RollbackStatus.INTEGRITY_ERROR}

    @property
    def exit_code(self) -> ExitCode:
        """Map the outcome onto the CLI exit code contract."""
        if self.kind in {
            OutcomeKind.SUCCESS,
            OutcomeKind.NO_UPDATE_NEEDED,
            OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE,
        }:
            return ExitCode.OK
        return _PHASE_EXIT_CODES.get(self.phase, ExitCode.CONFIG)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "phase": self.phase.value,
            "reason": self.reason,
            "old_version": str(self.old_version) if self.old_version else None,
            "new_version": str(self.new_version) if self.new_version else None,
            "instances": list(self.instances),
            "rollback": self.rollback.value,
            "warnings": list(self.warnings),
            "exit_code": int(self.exit_code),
        }


__all__ = [
    "FileProtectionPolicy",
    "Instance",
    "Ordering",
    "OutcomeKind",
    "Phase",
    "Release",
    "ReleaseVersion",
    "RollbackStatus",
    "RunOptions",
    "RunOutcome",
    "Snapshot",
]
