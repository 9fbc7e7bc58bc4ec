"""Tests for logging setup and operator mode."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from cluster_mock import MockCluster

from converge import main as converge_main
from converge.client import TransientAPIError
from converge.config import Config
from converge.main import JsonFormatter, run_operator, setup_logging
from converge.reconciler import Reconciler


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def _record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord("converge.executor", logging.WARNING, __file__, 1, "Action failed", (), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_standard_fields(self) -> None:
        data = json.loads(JsonFormatter().format(self._record()))

        assert data["level"] == "WARNING"
        assert data["message"] == "Action failed"
        assert data["logger"] == "converge.executor"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields_flattened(self) -> None:
        """Structured fields passed via extra= appear at the top level."""
        data = json.loads(JsonFormatter().format(self._record(identity="Deployment/main/api", attempt=2)))

        assert data["identity"] == "Deployment/main/api"
        assert data["attempt"] == 2
        assert "args" not in data
        assert "lineno" not in data

    def test_unserializable_values_stringified(self) -> None:
        data = json.loads(JsonFormatter().format(self._record(path=Path("/tmp/state"))))

        assert data["path"] == "/tmp/state"


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONVERGE_LOG_FORMAT", raising=False)

        setup_logging(logging.DEBUG)

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG

    def test_text_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONVERGE_LOG_FORMAT", "text")

        setup_logging()

        assert not isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_client_loggers_quieted(self) -> None:
        setup_logging(logging.DEBUG, "json")

        assert logging.getLogger("kubernetes_asyncio").level == logging.WARNING
        assert logging.getLogger("aiohttp").level == logging.WARNING


class TestRunOperator:
    """Tests for run_operator()."""

    @pytest.fixture
    def connected(self, cluster: MockCluster, monkeypatch: pytest.MonkeyPatch) -> MockCluster:
        async def connect(config: Config) -> MockCluster:
            return cluster

        monkeypatch.setattr(converge_main, "connect", connect)
        # Stop as soon as the watch loop starts instead of waiting for a signal
        monkeypatch.setattr(converge_main, "install_signal_handlers", lambda r: r.shutdown())
        return cluster

    @pytest.mark.asyncio
    async def test_clean_shutdown(self, config: Config, connected: MockCluster) -> None:
        assert await run_operator(config) == 0
        assert connected.closed

    @pytest.mark.asyncio
    async def test_connect_failure(self, config: Config, monkeypatch: pytest.MonkeyPatch) -> None:
        async def connect(config: Config) -> MockCluster:
            raise TransientAPIError("connection refused")

        monkeypatch.setattr(converge_main, "connect", connect)

        assert await run_operator(config) == 1

    @pytest.mark.asyncio
    async def test_invalid_ignore_rules(
        self, config: Config, connected: MockCluster, tmp_path: Path
    ) -> None:
        rules = tmp_path / "rules.yaml"
        rules.write_text("rules: {}\n")

        assert await run_operator(dataclasses.replace(config, ignore_rules_file=rules)) == 2
        assert connected.closed


class TestWatchLoop:
    """Tests for Reconciler.run() circuit breaker."""

    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(
        self,
        reconciler: Reconciler,
        manifests_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        monkeypatch.setattr("converge.reconciler.MAX_CONSECUTIVE_FAILURES", 1)
        (manifests_dir / "broken.yaml").write_text("resources: [\n")

        async def stop_when_open() -> None:
            while reconciler._circuit_open_until is None:
                await asyncio.sleep(0.01)
            reconciler.shutdown()

        with caplog.at_level("ERROR"):
            await asyncio.wait_for(asyncio.gather(reconciler.run(), stop_when_open()), timeout=5)

        assert "Circuit breaker opened after consecutive failures" in caplog.text
