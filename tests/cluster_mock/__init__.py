"""In-memory cluster fake for integration testing.

Provides a ClusterClient implementation that enables end-to-end tests of
the diff engine, executor and reconciliation loop without a cluster.

Key Features:
- Object store with server-populated metadata and defaulted fields
- Merge-patch update semantics
- Call recording with start/end ordering and peak concurrency
- Error injection per operation and identity
- Canned declarations (the gateway target) with matching cluster contents

Usage:
    from cluster_mock import MockCluster

    cluster = MockCluster()
    reconciler = build_reconciler(config, cluster)
    result = await reconciler.reconcile()

    assert cluster.state.object_count == 4
"""

from .client import CallRecord, MockCluster
from .scenarios import (
    DEPLOYMENT,
    GATEWAY_MANIFESTS,
    GATEWAY_ORDER,
    GATEWAY_WORKLOADS,
    LABELS,
    NAMESPACE,
    SERVICE,
    VOLUME,
    observe,
    seed_gateway,
)
from .state import MockClusterState, merge_patch

__all__ = [
    "CallRecord",
    "DEPLOYMENT",
    "GATEWAY_MANIFESTS",
    "GATEWAY_ORDER",
    "GATEWAY_WORKLOADS",
    "LABELS",
    "MockCluster",
    "MockClusterState",
    "NAMESPACE",
    "SERVICE",
    "VOLUME",
    "merge_patch",
    "observe",
    "seed_gateway",
]
