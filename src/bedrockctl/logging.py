"""Structured operation logging for bedrockctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. Steps and the final result are collected on the
scope and written as a single JSON record when the scope closes. Records are
appended to one dated JSON-lines file per day under the log directory.

The logger never raises into the caller: when the directory cannot be created
or a write fails it disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import socket
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path

LOGGER = logging.getLogger(__name__)

LOG_FILE_PREFIX = "operations-"
LOG_FILE_SUFFIX = ".jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the result for one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* and describe the operation."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self.actor: dict[str, object] = {
            "user": os.environ.get("USER") or os.environ.get("LOGNAME") or "unknown",
            "host": socket.gethostname(),
            "pid": os.getpid(),
        }
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()
        self._started_at = _now_iso()

    def add_step(self, name: str, *, status: str = "info", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)
        LOGGER.debug("%s: %s [%s] %s", self.command, name, status, detail or "")

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings) if warnings is not None else [message],
            errors=list(errors or []),
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings is not None:
            result["warnings"] = list(warnings)
        if errors is not None:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if backups:
            result["backups"] = [str(item) for item in backups]
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        result = self.result or {"status": "unknown", "message": "No result recorded."}
        return {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "actor": _sanitise(self.actor),
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": _sanitise(self.steps),
            "result": result,
        }


class StructuredLogger:
    """Write operation records to a dated JSON-lines file."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self.log_dir = Path(log_dir).expanduser()
        self._enabled = True
        day = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        self._operations_log_path = self.log_dir / f"{LOG_FILE_PREFIX}{day}{LOG_FILE_SUFFIX}"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled, cannot create %s: %s", self.log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the log file written today."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None and not _is_clean_exit(exc):
                scope.error(f"Unhandled exception: {exc}", errors=[repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def prune(self, retention_days: int) -> int:
        """Delete dated log files older than *retention_days*; return the count."""
        if not self.log_dir.exists():
            return 0
        cutoff = time.time() - timedelta(days=retention_days).total_seconds()
        removed = 0
        for path in sorted(self.log_dir.glob(f"{LOG_FILE_PREFIX}*{LOG_FILE_SUFFIX}")):
            if path == self._operations_log_path:
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        return removed

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


def _is_clean_exit(exc: BaseException) -> bool:
    """Return True for exits that carry their own result (typer/click Exit)."""
    if isinstance(exc, SystemExit):
        return exc.code in (0, None)
    return type(exc).__name__ == "Exit" and getattr(exc, "exit_code", 1) == 0


__all__ = ["OperationScope", "StructuredLogger"]
