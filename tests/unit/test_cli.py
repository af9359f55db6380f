"""
Command-line interface tests.
"""

import asyncio
import json
import signal

import pytest
import yaml
from typer.testing import CliRunner

from github_runner_controller.cli import _run_controller, app, collect_status, sample_configuration
from github_runner_controller.models.configuration import ControllerConfiguration
from github_runner_controller.models.runner import (
    RepositoryPool,
    RunnerInstance,
    RunnerKind,
    RunnerState,
    ScalingAction,
    ScalingEvent,
    ScalingReason,
)
from github_runner_controller.storage.state_store import SqlStateStore
from github_runner_controller.utils.security import CredentialCipher

REPO = "acme/widgets"


class TestCli:
    """Test the CLI commands that do not start the controller."""

    def setup_method(self):
        self.runner = CliRunner()

    def write_config(self, tmp_path, **overrides):
        data = sample_configuration()
        data["storage"]["database_url"] = f"sqlite:///{tmp_path / 'state.db'}"
        data.update(overrides)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    def test_sample_configuration_is_valid(self):
        config = ControllerConfiguration(**sample_configuration())

        assert [pool.repository for pool in config.pools] == ["example-org/service", "example-org/heavy-builds"]
        assert config.pools[1].profile == "large"

    def test_generate_config_writes_yaml_and_json(self, tmp_path):
        yaml_path = tmp_path / "config.yaml"
        json_path = tmp_path / "config.json"

        result = self.runner.invoke(app, ["generate-config", "--output", str(yaml_path)])
        assert result.exit_code == 0
        result = self.runner.invoke(app, ["generate-config", "-o", str(json_path), "-f", "json"])
        assert result.exit_code == 0

        assert yaml.safe_load(yaml_path.read_text()) == sample_configuration()
        assert json.loads(json_path.read_text()) == sample_configuration()

    def test_validate_reports_pools(self, tmp_path):
        path = self.write_config(tmp_path)

        result = self.runner.invoke(app, ["validate", "--config", str(path)])

        assert result.exit_code == 0
        assert "Configuration validation successful" in result.output
        assert "example-org/heavy-builds: 0 dedicated, up to 5 dynamic, profile large" in result.output
        assert "No security issues found" in result.output

    def test_validate_warns_about_insecure_profile(self, tmp_path):
        data = sample_configuration()
        data["profiles"]["default"]["security_context"]["allow_privilege_escalation"] = True
        path = self.write_config(tmp_path, profiles=data["profiles"])

        result = self.runner.invoke(app, ["validate", "-c", str(path)])

        assert result.exit_code == 0
        assert "Privilege escalation allowed" in result.output
        assert "Security warnings: 1" in result.output

    def test_invalid_configuration_exits_with_location(self, tmp_path):
        data = sample_configuration()
        data["pools"][0]["repository"] = "not-a-repository"
        path = self.write_config(tmp_path, pools=data["pools"])

        result = self.runner.invoke(app, ["validate", "-c", str(path)])

        assert result.exit_code == 1
        assert "pools.0.repository" in result.output

    def test_missing_configuration_file(self, tmp_path):
        result = self.runner.invoke(app, ["validate", "-c", str(tmp_path / "absent.yaml")])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_run_dry_run_does_not_start(self, tmp_path):
        path = self.write_config(tmp_path)

        result = self.runner.invoke(app, ["run", "-c", str(path), "--dry-run"])

        assert result.exit_code == 0
        assert "dry run" in result.output
        assert "Pools configured: 2" in result.output

    def test_status_of_empty_database(self, tmp_path):
        path = self.write_config(tmp_path)

        result = self.runner.invoke(app, ["status", "-c", str(path)])

        assert result.exit_code == 0
        assert "No pools recorded yet" in result.output

    def test_status_as_json(self, tmp_path):
        path = self.write_config(tmp_path)
        store = SqlStateStore.from_url(f"sqlite:///{tmp_path / 'state.db'}", CredentialCipher())
        store.commit(
            pools=[RepositoryPool(repository=REPO, dynamic_count=1)],
            upserts=[RunnerInstance(
                id="runner-1",
                repository=REPO,
                kind=RunnerKind.DYNAMIC,
                state=RunnerState.BUSY,
                runner_name="gh-widgets-dynamic-abc123",
                current_job_id="42",
            )],
            events=[ScalingEvent(
                repository=REPO,
                action=ScalingAction.SCALE_UP,
                reason=ScalingReason.JOB_QUEUED,
                instance_id="runner-1",
            )],
        )
        store.close()

        result = self.runner.invoke(app, ["status", "-c", str(path), "--format", "json"])

        assert result.exit_code == 0
        report = json.loads(result.output[result.output.index("{"):])
        pool = report[REPO]
        assert pool["dynamic"] == 1
        assert pool["runners"][0]["state"] == "busy"
        assert pool["runners"][0]["current_job_id"] == "42"
        assert pool["recent_events"][0]["reason"] == "job-queued"


class TestCollectStatus:
    """Test the status report built from the state store."""

    def test_events_are_limited(self):
        store = SqlStateStore.from_url("sqlite://", CredentialCipher())
        store.commit(pools=[RepositoryPool(repository=REPO)])
        store.commit(events=[
            ScalingEvent(repository=REPO, action=ScalingAction.SCALE_DOWN, reason=ScalingReason.IDLE_TIMEOUT)
            for _ in range(5)
        ])

        report = collect_status(store, events=2)
        store.close()

        assert len(report[REPO]["recent_events"]) == 2
        assert report[REPO]["runners"] == []


class StubController:
    def __init__(self):
        self.started = asyncio.Event()
        self.shutdown = asyncio.Event()
        self.stopped_with = None

    async def start(self):
        self.started.set()
        await self.shutdown.wait()

    def request_shutdown(self):
        self.shutdown.set()

    async def stop(self, terminate_runners=False):
        self.stopped_with = terminate_runners


class TestRunController:
    """Test the long-running controller wrapper."""

    @pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
    async def test_shutdown_signal_stops_controller(self, monkeypatch, signum):
        loop = asyncio.get_running_loop()
        handlers = {}
        monkeypatch.setattr(loop, "add_signal_handler", lambda sig, callback, *args: handlers.__setitem__(sig, (callback, args)))
        monkeypatch.setattr(loop, "remove_signal_handler", lambda sig: handlers.pop(sig, None) is not None)
        controller = StubController()

        task = asyncio.create_task(_run_controller(controller, terminate_on_exit=True))
        await asyncio.wait_for(controller.started.wait(), timeout=5)
        callback, args = handlers[signum]
        callback(*args)
        await asyncio.wait_for(task, timeout=5)

        assert controller.stopped_with is True
        assert handlers == {}
