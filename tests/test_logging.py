"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from bedrockctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("run", args={"dry_run": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("run") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("status") as op:
        op.success("done", changed=0)


def test_operation_record_contains_steps_and_result(tmp_path: Path) -> None:
    """Each operation appends one JSON line with its steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run", args={"force": True}, target={"kind": "fleet"}) as op:
        op.add_step("phase.stopping_instances", detail="alpha")
        op.success("Run finished: success.", changed=2, context={"path": Path("/srv/alpha")})

    (record,) = _records(logger)
    assert record["command"] == "run"
    assert record["args"] == {"force": True}
    assert record["target"] == {"kind": "fleet"}
    assert record["steps"][0]["name"] == "phase.stopping_instances"  # type: ignore[index]
    assert record["result"] == {
        "status": "success",
        "message": "Run finished: success.",
        "changed": 2,
        "context": {"path": "/srv/alpha"},
    }
    assert logger.path.name.startswith("operations-")


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("snapshots verify") as op:
        op.error("boom", errors=None, rc=2, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["rc"] == 2  # type: ignore[index]
    assert result["context"] == {"value": "{1, 2}"}  # type: ignore[index]


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and propagate."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("run"):
            raise RuntimeError("kaboom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert "kaboom" in record["result"]["message"]  # type: ignore[index]


def test_prune_removes_old_log_files_only(tmp_path: Path) -> None:
    """Old dated files are deleted while today's file is kept."""
    logger = StructuredLogger(tmp_path / "logs")
    with logger.operation("status") as op:
        op.success("ok")

    old = logger.log_dir / "operations-2000-01-01.jsonl"
    old.write_text("{}\n")
    stale = time.time() - 40 * 86400
    os.utime(old, (stale, stale))
    unrelated = logger.log_dir / "notes.txt"
    unrelated.write_text("keep\n")
    os.utime(unrelated, (stale, stale))

    assert logger.prune(30) == 1
    assert not old.exists()
    assert logger.path.exists()
    assert unrelated.exists()
