"""Tests for resource graph construction and ordering."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from converge.graph import (
    CycleError,
    DuplicateResourceError,
    OutputSlot,
    UnknownReferenceError,
    build_graph,
)
from converge.models import Resource
from converge.spec_loader import load_declarations


def config_map(address: str, name: str, data: dict[str, Any] | None = None, **kwargs: Any) -> Resource:
    return Resource.from_manifest(
        address,
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name},
            "data": data or {},
        },
        **kwargs,
    )


class TestBuildGraph:
    """Tests for build_graph()."""

    def test_gateway_order(self, manifests_dir: Path) -> None:
        """Test that producers come before consumers."""
        graph = build_graph(load_declarations(manifests_dir))

        assert graph.topological_order == [
            "namespace.main",
            "persistent_volume.cfg",
            "deployment.api",
            "service.api",
        ]

    def test_edges_from_references_and_depends_on(self, manifests_dir: Path) -> None:
        """Test that both ${...} references and dependsOn become edges."""
        graph = build_graph(load_declarations(manifests_dir))

        assert graph.dependencies_of("deployment.api") == {"namespace.main", "persistent_volume.cfg"}
        assert graph.dependencies_of("service.api") == {"deployment.api"}
        assert graph.dependencies_of("namespace.main") == set()

    def test_transitive_dependents(self, manifests_dir: Path) -> None:
        """Test walking dependents of a resource."""
        graph = build_graph(load_declarations(manifests_dir))

        assert graph.dependents_of("namespace.main") == {"deployment.api", "service.api"}
        assert graph.dependents_of("namespace.main", transitive=False) == {"deployment.api"}

    def test_address_of_identity(self, manifests_dir: Path) -> None:
        """Test mapping identities back to addresses."""
        graph = build_graph(load_declarations(manifests_dir))
        service = graph.get("service.api")

        assert graph.address_of(service.identity) == "service.api"
        assert len(graph.identities()) == 4

    def test_independent_resources_sorted_by_address(self) -> None:
        """Test deterministic order among unrelated resources."""
        graph = build_graph([config_map("config_map.b", "b"), config_map("config_map.a", "a")])

        assert graph.topological_order == ["config_map.a", "config_map.b"]

    def test_cycle_detected(self) -> None:
        """Test that mutual references are rejected."""
        a = config_map("config_map.a", "a", {"peer": "${config_map.b.metadata.uid}"})
        b = config_map("config_map.b", "b", {"peer": "${config_map.a.metadata.uid}"})

        with pytest.raises(CycleError, match="Circular reference detected"):
            build_graph([a, b])

    def test_self_reference(self) -> None:
        """Test that a resource cannot reference itself."""
        a = config_map("config_map.a", "a", {"me": "${config_map.a.metadata.uid}"})

        with pytest.raises(CycleError, match="references itself"):
            build_graph([a])

    def test_unknown_reference(self) -> None:
        """Test that dangling references are rejected with their location."""
        a = config_map("config_map.a", "a", {"peer": "${config_map.missing.metadata.uid}"})

        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph([a])

        assert "config_map.missing" in str(exc_info.value)
        assert "data.peer" in str(exc_info.value)

    def test_unknown_depends_on(self) -> None:
        """Test that dependsOn must name a declared resource."""
        a = config_map("config_map.a", "a", depends_on=["namespace.gone"])

        with pytest.raises(UnknownReferenceError, match="depends on unknown resource"):
            build_graph([a])

    def test_duplicate_identity(self) -> None:
        """Test that two addresses may not declare the same object."""
        with pytest.raises(DuplicateResourceError, match="both declare ConfigMap/default/same"):
            build_graph([config_map("config_map.a", "same"), config_map("config_map.b", "same")])

    def test_duplicate_address(self) -> None:
        """Test that an address may only appear once."""
        with pytest.raises(DuplicateResourceError, match="Duplicate resource address"):
            build_graph([config_map("config_map.a", "a"), config_map("config_map.a", "b")])

    def test_malformed_reference(self) -> None:
        """Test that references without an attribute path are rejected."""
        a = config_map("config_map.a", "a", {"peer": "${config_map.b}"})

        with pytest.raises(UnknownReferenceError, match="Invalid reference"):
            build_graph([a, config_map("config_map.b", "b")])


class TestOutputSlot:
    """Tests for OutputSlot."""

    def test_write_once(self) -> None:
        """Test that a slot cannot be overwritten."""
        slot = OutputSlot("namespace.main")
        slot.set({"metadata": {"uid": "1"}})

        with pytest.raises(RuntimeError, match="already written"):
            slot.set({"metadata": {"uid": "2"}})
        assert slot.get() == {"metadata": {"uid": "1"}}

    def test_read_before_set(self) -> None:
        """Test that reading an unset slot fails instead of returning nothing."""
        slot = OutputSlot("namespace.main")

        assert slot.is_set is False
        with pytest.raises(RuntimeError, match="not available yet"):
            slot.get()

    @pytest.mark.asyncio
    async def test_wait_returns_value(self) -> None:
        """Test that waiters are released by set()."""
        slot = OutputSlot("namespace.main")
        waiter = asyncio.create_task(slot.wait())
        await asyncio.sleep(0)

        assert not waiter.done()
        slot.set({"metadata": {"uid": "1"}})
        assert await waiter == {"metadata": {"uid": "1"}}

    def test_graph_slots_reset(self, manifests_dir: Path) -> None:
        """Test that reset_slots() gives every resource a fresh slot."""
        graph = build_graph(load_declarations(manifests_dir))
        graph.slot("namespace.main").set({"kind": "Namespace"})

        graph.reset_slots()

        assert graph.slot("namespace.main").is_set is False
        with pytest.raises(KeyError):
            graph.slot("namespace.other")
