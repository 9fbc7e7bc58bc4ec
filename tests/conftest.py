"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cluster_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cluster_mock import GATEWAY_MANIFESTS, GATEWAY_WORKLOADS, MockCluster  # noqa: E402

from converge.config import Config  # noqa: E402
from converge.context import ReconcileContext  # noqa: E402
from converge.reconciler import Reconciler  # noqa: E402
from converge.state_store import StateStore  # noqa: E402


@pytest.fixture
def manifests_dir(tmp_path: Path) -> Path:
    """Directory holding the gateway declarations, split over two files."""
    directory = tmp_path / "manifests"
    directory.mkdir()
    (directory / "base.yaml").write_text(GATEWAY_MANIFESTS)
    (directory / "workloads.yaml").write_text(GATEWAY_WORKLOADS)
    return directory


@pytest.fixture
def config(tmp_path: Path, manifests_dir: Path) -> Config:
    """Test configuration: no backoff, state under tmp_path."""
    return Config(
        target="gateway",
        manifests_dir=manifests_dir,
        state_dir=tmp_path / "state",
        backoff_seconds=0,
        max_attempts=3,
    )


@pytest.fixture
def cluster() -> MockCluster:
    return MockCluster()


@pytest.fixture
def store(config: Config) -> StateStore:
    return StateStore(config.state_file, config.audit_file)


@pytest.fixture
def context(config: Config, cluster: MockCluster) -> ReconcileContext:
    return ReconcileContext(config=config, client=cluster)


@pytest.fixture
def reconciler(context: ReconcileContext, store: StateStore) -> Reconciler:
    return Reconciler(context, store)
