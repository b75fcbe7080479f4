"""Tests for the bedrockctl command line."""
from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from pathlib import Path

import pytest
from typer.testing import CliRunner

from bedrockctl import __version__, cli
from bedrockctl.cli import app
from bedrockctl.errors import ReleaseLookupError
from bedrockctl.models import (
    OutcomeKind,
    Phase,
    Release,
    ReleaseVersion,
    RunOptions,
    RunOutcome,
)
from bedrockctl.orchestrator import VersionCheck
from bedrockctl.snapshots import SnapshotStore

runner = CliRunner()

MakeServer = Callable[..., Path]


def _prepare_environment(
    tmp_path: Path,
    make_server: MakeServer,
    *,
    registry: bool = True,
    extra_config: str = "",
) -> dict[str, str]:
    """Write an offline config plus registry and return the CLI environment."""
    servers_root = tmp_path / "servers"
    make_server(servers_root, "alpha")
    make_server(servers_root, "beta")

    config_path = tmp_path / "config.yml"
    config_path.write_text(
        "offline: true\n"
        f"registry_file: {tmp_path / 'servers.yml'}\n"
        f"logs_dir: {tmp_path / 'logs'}\n"
        f"scratch_dir: {tmp_path / 'scratch'}\n"
        "backups:\n"
        f"  root: {tmp_path / 'backups'}\n"
        "server:\n"
        "  start_wait: 0\n" + extra_config,
        encoding="utf-8",
    )
    config_path.chmod(0o600)

    if registry:
        (tmp_path / "servers.yml").write_text(
            "servers:\n"
            f"  - {{name: alpha, id: 1, path: {servers_root / 'alpha'}}}\n"
            f"  - {{name: beta, id: 2, path: {servers_root / 'beta'}}}\n"
            "preserve_files: [server.properties, allowlist.json]\n"
            "preserve_directories: [worlds]\n"
            "update_files: [bedrock_server, release-notes.txt]\n",
            encoding="utf-8",
        )
    return {"BEDROCKCTL_CONFIG_FILE": str(config_path)}


def _last_operation(tmp_path: Path) -> dict[str, object]:
    (log_file,) = sorted((tmp_path / "logs").glob("operations-*.jsonl"))
    return json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])


class StubOrchestrator:
    """Stand-in returning canned results for ``run`` and ``check``."""

    def __init__(self, outcome: RunOutcome | None = None, check: VersionCheck | Exception | None = None) -> None:
        self.outcome = outcome
        self.check = check
        self.options: RunOptions | None = None

    def run(self, options: RunOptions | None = None, *, scope: object = None) -> RunOutcome:
        self.options = options
        assert self.outcome is not None
        return self.outcome

    def check_version(self) -> VersionCheck:
        if isinstance(self.check, Exception):
            raise self.check
        assert self.check is not None
        return self.check


def _use_stub(monkeypatch: pytest.MonkeyPatch, stub: StubOrchestrator) -> None:
    monkeypatch.setattr(cli, "_build_orchestrator", lambda runtime, registry: stub)


def test_version_option_outputs_package_version() -> None:
    """CLI ``--version`` flag emits the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help() -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = runner.invoke(app, [])

    assert result.exit_code == 0
    assert "Update orchestrator" in result.stdout


def test_config_show_json(tmp_path: Path, make_server: MakeServer) -> None:
    """`config show --json` emits the resolved configuration."""
    env = _prepare_environment(tmp_path, make_server)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["offline"] is True
    assert payload["backups"]["root"] == str(tmp_path / "backups")
    assert _last_operation(tmp_path)["command"] == "config show"


def test_config_show_table_redacts_secrets(tmp_path: Path, make_server: MakeServer) -> None:
    """The table view never prints secrets."""
    env = _prepare_environment(tmp_path, make_server, extra_config="email:\n  password: hunter2\n")

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0, result.output
    assert "offline" in result.stdout
    assert "hunter2" not in result.stdout


def test_invalid_config_exits_with_config_code(tmp_path: Path, make_server: MakeServer) -> None:
    """Configuration errors exit with code 1."""
    env = _prepare_environment(tmp_path, make_server, extra_config="bogus: 1\n")

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_instances_list_json(tmp_path: Path, make_server: MakeServer) -> None:
    """`instances list --json` reports the registry and the policy."""
    env = _prepare_environment(tmp_path, make_server)

    result = runner.invoke(app, ["instances", "list", "--json"], env=env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert [entry["name"] for entry in payload["instances"]] == ["alpha", "beta"]
    assert payload["instances"][0]["last_snapshot"] is None
    assert payload["update_files"] == ["bedrock_server", "release-notes.txt"]


def test_missing_registry_exits_with_config_code(tmp_path: Path, make_server: MakeServer) -> None:
    """Commands needing the registry fail cleanly when it is absent."""
    env = _prepare_environment(tmp_path, make_server, registry=False)

    result = runner.invoke(app, ["instances", "list"], env=env)

    assert result.exit_code == 1
    assert "Registry error" in result.stdout
    assert _last_operation(tmp_path)["result"]["status"] == "error"  # type: ignore[index]


def test_status_reports_offline_state(tmp_path: Path, make_server: MakeServer) -> None:
    """`status` combines panel state with the installed version."""
    env = _prepare_environment(tmp_path, make_server)

    result = runner.invoke(app, ["status", "--json"], env=env)

    assert result.exit_code == 0, result.output
    rows = json.loads(result.stdout)["servers"]
    assert rows[0] == {
        "name": "alpha",
        "id": "1",
        "running": True,
        "version": "1.21.100.1",
        "path": str(tmp_path / "servers" / "alpha"),
    }


@pytest.mark.parametrize(
    ("outcome", "exit_code"),
    [
        (RunOutcome(kind=OutcomeKind.SUCCESS, instances=("alpha", "beta")), 0),
        (RunOutcome(kind=OutcomeKind.NO_UPDATE_NEEDED), 0),
        (RunOutcome.failed(Phase.BACKING_UP, "disk full"), 2),
        (RunOutcome.failed(Phase.DOWNLOADING, "HTTP 500"), 3),
        (RunOutcome(kind=OutcomeKind.ROLLED_BACK, phase=Phase.APPLYING, reason="copy failed"), 4),
        (RunOutcome(kind=OutcomeKind.ROLLED_BACK, phase=Phase.VERIFYING, reason="beta down"), 5),
    ],
)
def test_run_exit_codes(
    tmp_path: Path,
    make_server: MakeServer,
    monkeypatch: pytest.MonkeyPatch,
    outcome: RunOutcome,
    exit_code: int,
) -> None:
    """`run` exits with the code derived from the outcome."""
    env = _prepare_environment(tmp_path, make_server)
    _use_stub(monkeypatch, StubOrchestrator(outcome))

    result = runner.invoke(app, ["run"], env=env)

    assert result.exit_code == exit_code, result.output
    record = _last_operation(tmp_path)
    assert record["command"] == "run"
    assert record["result"]["status"] == ("success" if exit_code == 0 else "error")  # type: ignore[index]


def test_run_passes_flags_and_emits_json(
    tmp_path: Path, make_server: MakeServer, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Operator flags reach the orchestrator; --json prints the outcome."""
    env = _prepare_environment(tmp_path, make_server)
    stub = StubOrchestrator(
        RunOutcome(
            kind=OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE,
            old_version=ReleaseVersion.parse("1.21.100.1"),
            new_version=ReleaseVersion.parse("1.21.131.1"),
        )
    )
    _use_stub(monkeypatch, stub)

    result = runner.invoke(app, ["run", "--dry-run", "--force", "--json"], env=env)

    assert result.exit_code == 0, result.output
    assert stub.options == RunOptions(dry_run=True, force=True, skip_backup=False)
    payload = json.loads(result.stdout)
    assert payload["kind"] == "dry-run"
    assert payload["new_version"] == "1.21.131.1"


def test_run_skip_backup_warns(tmp_path: Path, make_server: MakeServer, monkeypatch: pytest.MonkeyPatch) -> None:
    """--skip-backup prints a prominent warning."""
    env = _prepare_environment(tmp_path, make_server)
    stub = StubOrchestrator(RunOutcome(kind=OutcomeKind.SUCCESS, warnings=("Backups were skipped",)))
    _use_stub(monkeypatch, stub)

    result = runner.invoke(app, ["run", "--skip-backup"], env=env)

    assert result.exit_code == 0, result.output
    assert stub.options is not None and stub.options.skip_backup is True
    assert "cannot be rolled back" in result.stdout
    assert _last_operation(tmp_path)["result"]["status"] == "warning"  # type: ignore[index]


def test_check_reports_available_update(
    tmp_path: Path, make_server: MakeServer, monkeypatch: pytest.MonkeyPatch
) -> None:
    """`check --json` reports both versions without touching servers."""
    env = _prepare_environment(tmp_path, make_server)
    check = VersionCheck(
        current=ReleaseVersion.parse("1.21.100.1"),
        current_known=True,
        release=Release(version=ReleaseVersion.parse("1.21.131.1"), url="https://x/bedrock-server-1.21.131.1.zip"),
        update_available=True,
    )
    _use_stub(monkeypatch, StubOrchestrator(check=check))

    result = runner.invoke(app, ["check", "--json"], env=env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload == {
        "current": "1.21.100.1",
        "latest": "1.21.131.1",
        "url": "https://x/bedrock-server-1.21.131.1.zip",
        "update_available": True,
    }


def test_check_feed_failure_exits_with_download_code(
    tmp_path: Path, make_server: MakeServer, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A failing feed exits with code 3."""
    env = _prepare_environment(tmp_path, make_server)
    _use_stub(monkeypatch, StubOrchestrator(check=ReleaseLookupError("HTTP 503")))

    result = runner.invoke(app, ["check"], env=env)

    assert result.exit_code == 3
    assert "HTTP 503" in result.stdout


def test_notify_test_uses_log_channel(tmp_path: Path, make_server: MakeServer) -> None:
    """With email disabled the test notification goes to the log."""
    env = _prepare_environment(tmp_path, make_server)

    result = runner.invoke(app, ["notify", "test"], env=env)

    assert result.exit_code == 0, result.output
    assert "via log" in result.stdout


@pytest.mark.usefixtures("require_tar")
class TestSnapshotCommands:
    """Snapshot maintenance commands against a real backup directory."""

    def _snapshot(self, tmp_path: Path) -> SnapshotStore:
        store = SnapshotStore(tmp_path / "backups")
        store.create("alpha", tmp_path / "servers" / "alpha")
        return store

    def test_list_json(self, tmp_path: Path, make_server: MakeServer) -> None:
        """`snapshots list --json` shows existing archives."""
        env = _prepare_environment(tmp_path, make_server)
        self._snapshot(tmp_path)

        result = runner.invoke(app, ["snapshots", "list", "--json"], env=env)

        assert result.exit_code == 0, result.output
        (entry,) = json.loads(result.stdout)["snapshots"]
        assert entry["instance"] == "alpha"

    def test_verify_ok_and_corrupt(self, tmp_path: Path, make_server: MakeServer) -> None:
        """`snapshots verify` exits 0 for intact archives and 2 for damaged ones."""
        env = _prepare_environment(tmp_path, make_server)
        store = self._snapshot(tmp_path)

        ok = runner.invoke(app, ["snapshots", "verify", "alpha"], env=env)
        assert ok.exit_code == 0, ok.output
        assert "intact" in ok.stdout

        latest = store.latest("alpha")
        assert latest is not None
        with latest.archive_path.open("ab") as handle:
            handle.write(b"tampered")
        bad = runner.invoke(app, ["snapshots", "verify", latest.archive_path.name], env=env)
        assert bad.exit_code == 2

        missing = runner.invoke(app, ["snapshots", "verify", "beta"], env=env)
        assert missing.exit_code == 2

    @pytest.mark.mutation_timeout
    def test_restore_with_confirmation(self, tmp_path: Path, make_server: MakeServer) -> None:
        """`snapshots restore` replaces the server directory after confirmation."""
        env = _prepare_environment(tmp_path, make_server)
        self._snapshot(tmp_path)
        properties = tmp_path / "servers" / "alpha" / "server.properties"
        properties.write_text("server-name=changed\n")

        declined = runner.invoke(app, ["snapshots", "restore", "alpha"], env=env, input="n\n")
        assert declined.exit_code == 0, declined.output
        assert properties.read_text() == "server-name=changed\n"

        result = runner.invoke(app, ["snapshots", "restore", "alpha", "--yes"], env=env)
        assert result.exit_code == 0, result.output
        assert properties.read_text() == "server-name=alpha\n"

    def test_restore_unknown_instance(self, tmp_path: Path, make_server: MakeServer) -> None:
        """Restoring an unregistered server is a configuration error."""
        env = _prepare_environment(tmp_path, make_server)

        result = runner.invoke(app, ["snapshots", "restore", "gamma", "--yes"], env=env)

        assert result.exit_code == 1
        assert "Unknown server" in result.stdout

    def test_prune(self, tmp_path: Path, make_server: MakeServer) -> None:
        """`snapshots prune` removes archives past the window."""
        env = _prepare_environment(tmp_path, make_server)
        store = self._snapshot(tmp_path)
        latest = store.latest("alpha")
        assert latest is not None
        stale = time.time() - 5 * 86400
        os.utime(latest.archive_path, (stale, stale))

        result = runner.invoke(app, ["snapshots", "prune", "--days", "2"], env=env)

        assert result.exit_code == 0, result.output
        assert "Removed 1 snapshot(s)" in result.stdout
        assert store.list() == []
