"""Tests for the command-line interface."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Iterator
from pathlib import Path

import click
import pytest
from click.testing import CliRunner
from cluster_mock import DEPLOYMENT, NAMESPACE, MockCluster, seed_gateway

from converge.cli import (
    EXIT_CANCELLED,
    EXIT_CONVERGED,
    EXIT_FAILED,
    EXIT_USAGE,
    build_config,
    cli,
    parse_variables,
    render_changeset,
    render_result,
)
from converge.client import PermanentAPIError
from converge.config import Config, ConfigurationError
from converge.main import JsonFormatter
from converge.reconciler import Reconciler
from converge.state_store import StateStore


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """The CLI replaces root handlers with one bound to the runner's stdout."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestParseVariables:
    """Tests for parse_variables()."""

    def test_pairs(self) -> None:
        assert parse_variables(("replicas=3", "image=nginx:1.27")) == {
            "replicas": "3",
            "image": "nginx:1.27",
        }

    def test_value_may_contain_equals(self) -> None:
        assert parse_variables(("selector=app=api",)) == {"selector": "app=api"}

    def test_empty_value_allowed(self) -> None:
        assert parse_variables(("suffix=",)) == {"suffix": ""}

    @pytest.mark.parametrize("item", ["replicas", "=3"])
    def test_malformed(self, item: str) -> None:
        with pytest.raises(click.BadParameter):
            parse_variables((item,))


class TestBuildConfig:
    """Tests for build_config()."""

    def test_options_override_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CONVERGE_TARGET", "staging")
        monkeypatch.setenv("CONVERGE_CONCURRENCY", "2")

        config = build_config(
            {"concurrency": 8, "state_dir": str(tmp_path), "variables": ("replicas=3",)}
        )

        assert config.target == "staging"
        assert config.concurrency_limit == 8
        assert config.state_dir == tmp_path
        assert config.variables == {"replicas": "3"}

    def test_no_options_keeps_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONVERGE_MAX_ATTEMPTS", "7")

        config = build_config({"target": None, "variables": ()})

        assert config.max_attempts == 7

    def test_invalid_override_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="concurrency limit"):
            build_config({"concurrency": 0})


class TestRendering:
    """Tests for render_changeset() and render_result()."""

    @pytest.mark.asyncio
    async def test_changeset_lists_actions_and_deltas(
        self, cluster: MockCluster, reconciler: Reconciler
    ) -> None:
        seed_gateway(cluster.state, replicas=5)

        lines = render_changeset(await reconciler.plan())

        assert any("Update" in line and str(DEPLOYMENT) in line for line in lines)
        assert any("spec.replicas" in line for line in lines)
        assert lines[-1] == "Plan: 0 to create, 1 to update, 0 to replace, 0 to delete, 3 unchanged."

    @pytest.mark.asyncio
    async def test_changeset_hides_unchanged_by_default(
        self, cluster: MockCluster, reconciler: Reconciler
    ) -> None:
        seed_gateway(cluster.state)
        changeset = await reconciler.plan()

        assert len(render_changeset(changeset)) == 1
        assert len(render_changeset(changeset, show_unchanged=True)) == 5

    @pytest.mark.asyncio
    async def test_result_names_blockers_and_errors(
        self, cluster: MockCluster, reconciler: Reconciler
    ) -> None:
        cluster.inject("create", DEPLOYMENT, PermanentAPIError("invalid", 422))

        lines = render_result(await reconciler.reconcile())

        assert lines[0] == "Target gateway: Failed after 1 attempt(s)"
        assert any(str(DEPLOYMENT) in line and line.endswith(": invalid") for line in lines)
        assert any("blocked by Deployment/main/api" in line for line in lines)


class TestCommands:
    """Tests for the click commands, wired to MockCluster."""

    @pytest.fixture
    def runner(self) -> CliRunner:
        return CliRunner()

    @pytest.fixture
    def obj(self, cluster: MockCluster) -> dict[str, object]:
        async def factory(config: Config) -> MockCluster:
            return cluster

        return {"client_factory": factory}

    @pytest.fixture
    def args(self, manifests_dir: Path, tmp_path: Path) -> list[str]:
        return [
            "--manifests-dir",
            str(manifests_dir),
            "--state-dir",
            str(tmp_path / "state"),
            "--target",
            "gateway",
            "--backoff",
            "0",
        ]

    def test_plan_on_empty_cluster(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        result = runner.invoke(cli, ["plan", *args], obj=obj)

        assert result.exit_code == EXIT_CONVERGED, result.output
        assert "Plan: 4 to create, 0 to update, 0 to replace, 0 to delete, 0 unchanged." in result.output
        assert cluster.mutations() == []

    def test_apply_converges(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        result = runner.invoke(cli, ["apply", *args], obj=obj)

        assert result.exit_code == EXIT_CONVERGED, result.output
        assert "Target gateway: Converged" in result.output
        assert cluster.state.object_count == 4

    def test_apply_with_variable(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        result = runner.invoke(cli, ["apply", *args, "--var", "replicas=4"], obj=obj)

        assert result.exit_code == EXIT_CONVERGED, result.output
        assert cluster.state.get(DEPLOYMENT)["spec"]["replicas"] == 4

    def test_apply_failure_exit_code(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        cluster.inject("create", NAMESPACE, PermanentAPIError("forbidden", 403))

        result = runner.invoke(cli, ["apply", *args], obj=obj)

        assert result.exit_code == EXIT_FAILED
        assert "forbidden" in result.output

    def test_plan_after_apply_is_empty(
        self, runner: CliRunner, obj: dict[str, object], args: list[str]
    ) -> None:
        runner.invoke(cli, ["apply", *args], obj=obj)

        result = runner.invoke(cli, ["plan", *args], obj=obj)

        assert "Plan: 0 to create, 0 to update, 0 to replace, 0 to delete, 4 unchanged." in result.output

    def test_destroy_with_yes(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        runner.invoke(cli, ["apply", *args], obj=obj)

        result = runner.invoke(cli, ["destroy", *args, "--yes"], obj=obj)

        assert result.exit_code == EXIT_CONVERGED, result.output
        assert cluster.state.object_count == 0

    def test_destroy_declined(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        seed_gateway(cluster.state)

        result = runner.invoke(cli, ["destroy", *args], obj=obj, input="n\n")

        assert result.exit_code != EXIT_CONVERGED
        assert cluster.state.object_count == 4
        assert cluster.calls == []

    def test_plan_destroy_preview(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], cluster: MockCluster
    ) -> None:
        seed_gateway(cluster.state)

        result = runner.invoke(cli, ["plan", *args, "--destroy"], obj=obj)

        assert "Plan: 0 to create, 0 to update, 0 to replace, 4 to delete, 0 unchanged." in result.output
        assert cluster.mutations() == []

    def test_bad_declarations_exit_usage(
        self, runner: CliRunner, obj: dict[str, object], args: list[str], manifests_dir: Path
    ) -> None:
        (manifests_dir / "broken.yaml").write_text("resources: [\n")

        result = runner.invoke(cli, ["apply", *args], obj=obj)

        assert result.exit_code == EXIT_USAGE
        assert "Error:" in result.output

    def test_bad_variable_exit_usage(
        self, runner: CliRunner, obj: dict[str, object], args: list[str]
    ) -> None:
        result = runner.invoke(cli, ["apply", *args, "--var", "replicas"], obj=obj)

        assert result.exit_code == EXIT_USAGE

    def test_invalid_option_exit_usage(
        self, runner: CliRunner, obj: dict[str, object], args: list[str]
    ) -> None:
        result = runner.invoke(cli, ["apply", *args, "--max-attempts", "0"], obj=obj)

        assert result.exit_code == EXIT_USAGE
        assert "max attempts" in result.output

    def test_signal_cancels_apply_gracefully(
        self, runner: CliRunner, args: list[str], cluster: MockCluster, config: Config
    ) -> None:
        """SIGINT mid-pass lets in-flight calls finish, then reports Cancelled."""
        cluster.delays[DEPLOYMENT] = 0.5

        async def factory(config: Config) -> MockCluster:
            asyncio.get_running_loop().call_later(0.05, os.kill, os.getpid(), signal.SIGINT)
            return cluster

        result = runner.invoke(cli, ["apply", *args], obj={"client_factory": factory})

        assert result.exit_code == EXIT_CANCELLED, result.output
        assert "Target gateway: Cancelled" in result.output
        assert cluster.state.exists(DEPLOYMENT)
        assert cluster.closed
        runs = StateStore(config.state_file, config.audit_file).read_runs()
        assert runs[-1].phase == "Cancelled"

    def test_log_format_from_environment(
        self,
        runner: CliRunner,
        obj: dict[str, object],
        args: list[str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("CONVERGE_LOG_FORMAT", "json")

        runner.invoke(cli, ["plan", *args], obj=obj)

        assert isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_log_format_option_overrides_environment(
        self,
        runner: CliRunner,
        obj: dict[str, object],
        args: list[str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("CONVERGE_LOG_FORMAT", "json")

        runner.invoke(cli, ["--log-format", "text", "plan", *args], obj=obj)

        assert not isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_exit_codes_distinct(self) -> None:
        assert len({EXIT_CONVERGED, EXIT_FAILED, EXIT_USAGE, EXIT_CANCELLED}) == 4
