"""Update orchestration state machine.

One :meth:`Orchestrator.run` moves every configured instance through the
phases below, strictly in order and one instance at a time::

    CheckingVersion -> StoppingInstances -> BackingUp -> Downloading ->
    Applying -> StartingInstances -> Verifying -> CleaningUp -> Done

Failures before Applying only restart what was stopped. Failures from
Applying onwards enter RollingBack: stop all, verify every snapshot, restore
each instance, start all. Every run ends in exactly one :class:`RunOutcome`
and exactly one notification.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import AppConfig
from .errors import (
    ApplyError,
    ControlPlaneError,
    DownloadError,
    ReleaseLookupError,
    RollbackIntegrityError,
    SnapshotError,
    VerificationError,
)
from .logging import OperationScope, StructuredLogger
from .models import (
    FileProtectionPolicy,
    Instance,
    Ordering,
    OutcomeKind,
    Phase,
    Release,
    ReleaseVersion,
    RollbackStatus,
    RunOptions,
    RunOutcome,
    Snapshot,
)
from .notifications import Notifier, build_notification
from .projector import FileProjector, changed_preserved_files, preserved_checksums, verify_server_files
from .providers.artifact_fetcher import ArtifactFetcher
from .snapshots import SnapshotStore

LOGGER = logging.getLogger(__name__)

SKIP_BACKUP_WARNING = "Backups were skipped: rollback is unavailable if the update fails."


class ControlPlane(Protocol):
    """Operations the orchestrator needs from the control plane."""

    def test_connectivity(self) -> bool: ...

    def is_running(self, instance: Instance) -> bool | None: ...

    def reported_version(self, instance: Instance) -> str | None: ...

    def stop(self, instance: Instance, timeout: float | None = None) -> None: ...

    def start(self, instance: Instance, timeout: float | None = None) -> None: ...


class Locator(Protocol):
    """Operations the orchestrator needs to decide whether an update is due."""

    def current_version(self, instance: Instance, reported: str | None = None) -> ReleaseVersion | None: ...

    def latest_release(self) -> Release: ...

    def compare(self, left: ReleaseVersion, right: ReleaseVersion) -> Ordering: ...


@dataclass(frozen=True)
class OrchestratorSettings:
    """Timeouts, delays and retention windows used by a run."""

    server_timeout: float = 30.0
    download_timeout: float = 300.0
    start_wait: float = 20.0
    backup_retention_days: int = 7
    log_retention_days: int = 30
    scratch_dir: Path | None = None
    executable: str = "bedrock_server"

    @classmethod
    def from_config(cls, config: AppConfig) -> OrchestratorSettings:
        """Derive settings from the resolved application config."""
        return cls(
            server_timeout=config.control_plane.server_timeout,
            download_timeout=config.upstream.download_timeout,
            start_wait=config.server.start_wait,
            backup_retention_days=config.backups.retention_days,
            log_retention_days=config.log_retention_days,
            scratch_dir=config.scratch_dir,
            executable=config.server.executable,
        )


@dataclass(frozen=True)
class VersionCheck:
    """Result of comparing the installed version with the latest release."""

    current: ReleaseVersion
    current_known: bool
    release: Release
    update_available: bool


@dataclass
class _RunState:
    options: RunOptions
    phase: Phase = Phase.INITIALIZING
    old_version: ReleaseVersion | None = None
    new_version: ReleaseVersion | None = None
    stopped: list[Instance] = field(default_factory=list)
    snapshots: dict[str, Snapshot] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    scratch: Path | None = None


class Orchestrator:
    """Drive one update run across all configured instances."""

    def __init__(
        self,
        instances: Sequence[Instance],
        policy: FileProtectionPolicy,
        *,
        control_plane: ControlPlane,
        locator: Locator,
        fetcher: ArtifactFetcher,
        snapshots: SnapshotStore,
        projector: FileProjector,
        notifier: Notifier,
        settings: OrchestratorSettings | None = None,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.instances = tuple(instances)
        self.policy = policy
        self.control_plane = control_plane
        self.locator = locator
        self.fetcher = fetcher
        self.snapshots = snapshots
        self.projector = projector
        self.notifier = notifier
        self.settings = settings or OrchestratorSettings()
        self.logger = logger
        self._sleep = sleep
        self._scope: OperationScope | None = None

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------
    def check_version(self) -> VersionCheck:
        """Compare the first instance's version with the latest release.

        Raises :class:`ReleaseLookupError` when the upstream feed fails.
        """
        first = self.instances[0]
        reported = self.control_plane.reported_version(first)
        current = self.locator.current_version(first, reported)
        known = current is not None
        if current is None:
            LOGGER.warning("Could not determine current version; assuming an update is needed")
            current = ReleaseVersion.minimum()
        release = self.locator.latest_release()
        due = self.locator.compare(release.version, current) is Ordering.GREATER
        return VersionCheck(current=current, current_known=known, release=release, update_available=due)

    def run(self, options: RunOptions | None = None, *, scope: OperationScope | None = None) -> RunOutcome:
        """Execute one run and return its outcome after notifying once."""
        state = _RunState(options=options or RunOptions())
        self._scope = scope
        try:
            outcome = self._execute(state)
        finally:
            self._remove_scratch(state)
        self._notify(outcome)
        self._scope = None
        return outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def _execute(self, state: _RunState) -> RunOutcome:
        options = state.options
        if not self.instances:
            return self._failed(state, "No instances configured.")
        if not self.control_plane.test_connectivity():
            return self._failed(state, "Cannot connect to the control plane.")

        self._enter(state, Phase.CHECKING_VERSION)
        try:
            check = self.check_version()
        except ReleaseLookupError as exc:
            return self._failed(state, f"Could not check for updates: {exc}")
        state.old_version = check.current
        state.new_version = check.release.version
        LOGGER.info("Current version: %s, latest: %s", check.current, check.release.version)

        if not check.update_available and not options.force:
            LOGGER.info("No update needed, already running the latest version")
            return self._outcome(state, OutcomeKind.NO_UPDATE_NEEDED)
        if options.dry_run:
            LOGGER.info("Dry run: would update from %s to %s", check.current, check.release.version)
            return self._outcome(state, OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE)

        self._enter(state, Phase.STOPPING_INSTANCES)
        for instance in self.instances:
            try:
                self.control_plane.stop(instance, self.settings.server_timeout)
            except ControlPlaneError as exc:
                self._start_all(state.stopped)
                return self._failed(state, f"Could not stop {instance.name}: {exc}")
            state.stopped.append(instance)

        self._enter(state, Phase.BACKING_UP)
        if options.skip_backup:
            LOGGER.warning(SKIP_BACKUP_WARNING)
            state.warnings.append(SKIP_BACKUP_WARNING)
        else:
            for instance in self.instances:
                try:
                    state.snapshots[instance.name] = self.snapshots.create(instance.name, instance.directory)
                except (SnapshotError, OSError) as exc:
                    self._start_all(self.instances)
                    return self._failed(state, f"Backup of {instance.name} failed: {exc}")

        self._enter(state, Phase.DOWNLOADING)
        try:
            extracted = self._download(state, check.release)
        except DownloadError as exc:
            self._start_all(self.instances)
            return self._failed(state, f"Download failed: {exc}")

        self._enter(state, Phase.APPLYING)
        for instance in self.instances:
            try:
                self._apply(instance, extracted)
            except (ApplyError, OSError) as exc:
                return self._rollback(state, f"Update of {instance.name} failed: {exc}")

        self._enter(state, Phase.STARTING_INSTANCES)
        for instance in self.instances:
            try:
                self.control_plane.start(instance, self.settings.server_timeout)
            except ControlPlaneError as exc:
                return self._rollback(state, f"Could not start {instance.name}: {exc}")

        self._enter(state, Phase.VERIFYING)
        LOGGER.info("Waiting %g seconds for servers to stabilise", self.settings.start_wait)
        self._sleep(self.settings.start_wait)
        try:
            self._verify_running()
        except VerificationError as exc:
            return self._rollback(state, str(exc), affected=exc.instances)

        self._enter(state, Phase.CLEANING_UP)
        self._cleanup(state)
        LOGGER.info("Update to %s completed", state.new_version)
        return self._outcome(state, OutcomeKind.SUCCESS)

    def _download(self, state: _RunState, release: Release) -> Path:
        try:
            if self.settings.scratch_dir is not None:
                self.settings.scratch_dir.mkdir(parents=True, exist_ok=True)
            state.scratch = Path(
                tempfile.mkdtemp(
                    prefix="bedrockctl-",
                    dir=str(self.settings.scratch_dir) if self.settings.scratch_dir else None,
                )
            )
        except OSError as exc:
            raise DownloadError(f"Cannot create scratch directory: {exc}") from exc
        filename = release.filename or f"release-{release.version}.zip"
        archive = self.fetcher.download(release.url, state.scratch / filename, self.settings.download_timeout)
        return self.fetcher.extract(archive, state.scratch / "extracted")

    def _apply(self, instance: Instance, extracted: Path) -> None:
        before = preserved_checksums(instance.directory, self.policy)
        count = self.projector.apply(extracted, instance.directory, self.policy)
        changed = changed_preserved_files(instance.directory, self.policy, before)
        if changed:
            raise ApplyError("Preserved files changed during update: " + ", ".join(changed))
        problems = verify_server_files(instance.directory, self.settings.executable)
        if problems:
            raise ApplyError("; ".join(problems))
        LOGGER.info("Updated %d file(s) for %s", count, instance.name)

    def _verify_running(self) -> None:
        not_running = [
            instance.name for instance in self.instances if self.control_plane.is_running(instance) is not True
        ]
        if not_running:
            raise VerificationError("Servers failed verification: " + ", ".join(not_running), tuple(not_running))

    def _check_snapshots(self, snapshots: dict[str, Snapshot]) -> None:
        corrupt = [name for name, snapshot in snapshots.items() if not self.snapshots.verify(snapshot)]
        if corrupt:
            raise RollbackIntegrityError("Snapshot integrity check failed for " + ", ".join(corrupt))

    def _cleanup(self, state: _RunState) -> None:
        if not state.options.skip_backup:
            try:
                removed = self.snapshots.prune_older_than(self.settings.backup_retention_days)
                LOGGER.info("Pruned %d old snapshot(s)", removed)
            except (SnapshotError, OSError) as exc:
                LOGGER.warning("Snapshot cleanup failed: %s", exc)
        if self.logger is not None:
            try:
                removed = self.logger.prune(self.settings.log_retention_days)
                LOGGER.info("Pruned %d old log file(s)", removed)
            except OSError as exc:
                LOGGER.warning("Log cleanup failed: %s", exc)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def _rollback(self, state: _RunState, reason: str, *, affected: Sequence[str] | None = None) -> RunOutcome:
        failed_phase = state.phase
        LOGGER.warning("%s; rolling back", reason)
        self._step("phase.rolling_back", status="warning", detail=reason)
        instances = tuple(affected) if affected else self._names()

        stop_errors = self._stop_all(self.instances)
        if stop_errors:
            return self._failed(
                state,
                f"{reason}; rollback aborted, could not stop: " + "; ".join(stop_errors),
                rollback=RollbackStatus.FAILED,
                instances=instances,
                phase=failed_phase,
            )

        if not state.snapshots:
            start_errors = self._start_all(self.instances)
            detail = f"{reason}; rollback unavailable because backups were skipped"
            if start_errors:
                detail += "; restart failed: " + "; ".join(start_errors)
            return self._failed(
                state,
                detail,
                rollback=RollbackStatus.UNAVAILABLE,
                instances=instances,
                phase=failed_phase,
            )

        try:
            self._check_snapshots(state.snapshots)
        except RollbackIntegrityError as exc:
            LOGGER.critical("%s; nothing restored", exc)
            return self._failed(
                state,
                f"{reason}; {exc}; nothing was restored and servers were left stopped",
                rollback=RollbackStatus.INTEGRITY_ERROR,
                instances=instances,
                phase=failed_phase,
            )

        errors: list[str] = []
        for instance in self.instances:
            snapshot = state.snapshots[instance.name]
            try:
                self.snapshots.restore(snapshot, instance.directory)
            except (SnapshotError, OSError) as exc:
                LOGGER.error("Restore of %s failed: %s", instance.name, exc)
                errors.append(f"{instance.name}: {exc}")
        errors.extend(self._start_all(self.instances))

        if errors:
            LOGGER.critical("Rollback failed: %s", "; ".join(errors))
            return self._failed(
                state,
                f"{reason}; rollback failed: " + "; ".join(errors),
                rollback=RollbackStatus.FAILED,
                instances=instances,
                phase=failed_phase,
            )
        LOGGER.info("Rollback successful")
        return RunOutcome(
            kind=OutcomeKind.ROLLED_BACK,
            phase=failed_phase,
            reason=reason,
            old_version=state.old_version,
            new_version=state.new_version,
            instances=instances,
            rollback=RollbackStatus.COMPLETED,
            warnings=tuple(state.warnings),
        )

    def _stop_all(self, instances: Sequence[Instance]) -> list[str]:
        errors: list[str] = []
        for instance in instances:
            try:
                self.control_plane.stop(instance, self.settings.server_timeout)
            except ControlPlaneError as exc:
                LOGGER.error("Could not stop %s: %s", instance.name, exc)
                errors.append(f"{instance.name}: {exc}")
        return errors

    def _start_all(self, instances: Sequence[Instance]) -> list[str]:
        errors: list[str] = []
        for instance in instances:
            try:
                self.control_plane.start(instance, self.settings.server_timeout)
            except ControlPlaneError as exc:
                LOGGER.error("Could not start %s: %s", instance.name, exc)
                errors.append(f"{instance.name}: {exc}")
        return errors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _names(self) -> tuple[str, ...]:
        return tuple(instance.name for instance in self.instances)

    def _enter(self, state: _RunState, phase: Phase) -> None:
        state.phase = phase
        LOGGER.info("Phase: %s", phase.value)
        self._step(f"phase.{phase.name.lower()}")

    def _step(self, name: str, *, status: str = "info", detail: str | None = None) -> None:
        if self._scope is not None:
            self._scope.add_step(name, status=status, detail=detail)

    def _outcome(self, state: _RunState, kind: OutcomeKind) -> RunOutcome:
        return RunOutcome(
            kind=kind,
            phase=Phase.DONE,
            old_version=state.old_version,
            new_version=state.new_version,
            instances=self._names(),
            warnings=tuple(state.warnings),
        )

    def _failed(
        self,
        state: _RunState,
        reason: str,
        *,
        rollback: RollbackStatus = RollbackStatus.NOT_NEEDED,
        instances: Sequence[str] | None = None,
        phase: Phase | None = None,
    ) -> RunOutcome:
        LOGGER.error("%s", reason)
        return RunOutcome.failed(
            phase or state.phase,
            reason,
            instances=instances if instances is not None else self._names(),
            rollback=rollback,
            old_version=state.old_version,
            new_version=state.new_version,
            warnings=state.warnings,
        )

    def _remove_scratch(self, state: _RunState) -> None:
        if state.scratch is not None:
            shutil.rmtree(state.scratch, ignore_errors=True)
            state.scratch = None

    def _notify(self, outcome: RunOutcome) -> None:
        log_path = self.logger.path if self.logger is not None else None
        notification = build_notification(outcome, log_path=log_path)
        try:
            delivered = self.notifier.send(notification)
        except Exception as exc:  # noqa: BLE001 - notifier errors are only logged
            LOGGER.error("Notification delivery raised: %s", exc)
            delivered = False
        if not delivered:
            LOGGER.warning("Notification for outcome %s was not delivered", outcome.kind.value)
        self._step("notification", status="success" if delivered else "warning", detail=notification.subject)


__all__ = ["Orchestrator", "OrchestratorSettings", "VersionCheck"]
