"""Resource graph construction and dependency ordering.

This module turns a set of Resources into a directed acyclic graph:
1. Every resource is registered as a node, keyed by declaration address
2. Every ${address.path} reference and dependsOn entry becomes an edge
3. Topological order is computed once, at build time (Kahn's algorithm)
4. Cycles and dangling references are rejected before anything is applied

EXAMPLE:
```yaml
resources:
  persistent_volume.cfg:
    manifest: {apiVersion: v1, kind: PersistentVolume, metadata: {name: cfg}}
  deployment.api:
    manifest:
      metadata:
        annotations:
          volume-id: ${persistent_volume.cfg.metadata.uid}   # edge to the PV
```

Attributes computed only after creation (like metadata.uid above) flow
through OutputSlots: write-once holders filled when the producing
resource's action completes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .models import Reference, Resource, ResourceIdentity

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the resource graph cannot be built."""

    pass


class CycleError(GraphError):
    """Raised when references form a cycle."""

    pass


class UnknownReferenceError(GraphError):
    """Raised when a reference or dependsOn names a resource that does not exist."""

    pass


class DuplicateResourceError(GraphError):
    """Raised when two declarations share an address or an identity."""

    pass


class OutputSlot:
    """Write-once holder for a resource's post-apply observed object.

    Readers wait on the completion signal; the value cannot be read before
    it is set and cannot be replaced afterwards.
    """

    def __init__(self, address: str) -> None:
        self._address = address
        self._value: dict[str, Any] | None = None
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self, value: dict[str, Any]) -> None:
        """Publish the producer's observed object.

        Raises:
            RuntimeError: If the slot was already written.
        """
        if self._event.is_set():
            raise RuntimeError(f"Output slot for '{self._address}' already written")
        self._value = value
        self._event.set()

    def get(self) -> dict[str, Any]:
        """Read the value.

        Raises:
            RuntimeError: If the producer has not completed yet.
        """
        if not self._event.is_set() or self._value is None:
            raise RuntimeError(f"Output of '{self._address}' is not available yet")
        return self._value

    async def wait(self) -> dict[str, Any]:
        """Wait for the completion signal, then return the value."""
        await self._event.wait()
        return self.get()


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resources.

    Built fresh for every reconciliation run by build_graph(); the node and
    edge sets never change afterwards. Only output slots are filled in as
    actions complete.
    """

    resources: dict[str, Resource] = field(default_factory=dict)
    references: list[Reference] = field(default_factory=list)
    topological_order: list[str] = field(default_factory=list)

    # address -> addresses it depends on / addresses depending on it
    _dependencies: dict[str, set[str]] = field(default_factory=dict, repr=False)
    _dependents: dict[str, set[str]] = field(default_factory=dict, repr=False)
    _by_identity: dict[ResourceIdentity, str] = field(default_factory=dict, repr=False)
    _slots: dict[str, OutputSlot] = field(default_factory=dict, repr=False)

    def __contains__(self, address: object) -> bool:
        return address in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, address: str) -> Resource:
        """Resource for an address.

        Raises:
            KeyError: If the address is not in the graph.
        """
        return self.resources[address]

    def address_of(self, identity: ResourceIdentity) -> str | None:
        """Declaration address for an identity, or None if unmanaged."""
        return self._by_identity.get(identity)

    def identities(self) -> set[ResourceIdentity]:
        """All identities in the graph."""
        return set(self._by_identity)

    def dependencies_of(self, address: str) -> set[str]:
        """Addresses this resource directly depends on."""
        return set(self._dependencies.get(address, set()))

    def dependents_of(self, address: str, transitive: bool = True) -> set[str]:
        """Addresses depending on this resource (transitively by default)."""
        direct = self._dependents.get(address, set())
        if not transitive:
            return set(direct)

        seen: set[str] = set()
        stack = list(direct)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents.get(current, set()))
        return seen

    def references_from(self, address: str) -> list[Reference]:
        """References held by a resource's payload."""
        return [ref for ref in self.references if ref.consumer == address]

    def slot(self, address: str) -> OutputSlot:
        """Output slot of a resource, created on first access."""
        if address not in self.resources:
            raise KeyError(address)
        if address not in self._slots:
            self._slots[address] = OutputSlot(address)
        return self._slots[address]

    def reset_slots(self) -> None:
        """Drop all output slots so a new apply phase starts clean."""
        self._slots.clear()


def build_graph(resources: list[Resource]) -> ResourceGraph:
    """Build and order the resource graph.

    Args:
        resources: Resources with variables already substituted.

    Returns:
        A ResourceGraph with its topological order computed.

    Raises:
        DuplicateResourceError: If an address or identity appears twice.
        UnknownReferenceError: If a reference targets a missing resource.
        CycleError: If references form a cycle.
    """
    graph = ResourceGraph()

    for resource in resources:
        if resource.address in graph.resources:
            raise DuplicateResourceError(f"Duplicate resource address: {resource.address}")
        existing = graph._by_identity.get(resource.identity)
        if existing is not None:
            raise DuplicateResourceError(
                f"Resources '{existing}' and '{resource.address}' both declare {resource.identity}"
            )
        graph.resources[resource.address] = resource
        graph._by_identity[resource.identity] = resource.address
        graph._dependencies[resource.address] = set()
        graph._dependents[resource.address] = set()

    for resource in resources:
        try:
            references = resource.references
        except ValueError as e:
            raise UnknownReferenceError(f"Invalid reference in '{resource.address}': {e}") from e

        for ref in references:
            if ref.producer not in graph.resources:
                raise UnknownReferenceError(
                    f"'{resource.address}' references unknown resource '{ref.producer}' "
                    f"(at {ref.consumer_path}: {ref.expression})"
                )
            graph.references.append(ref)
            _add_edge(graph, consumer=resource.address, producer=ref.producer)

        for dep in resource.depends_on:
            if dep not in graph.resources:
                raise UnknownReferenceError(
                    f"'{resource.address}' depends on unknown resource '{dep}'"
                )
            _add_edge(graph, consumer=resource.address, producer=dep)

    graph.topological_order = _topological_sort(graph)

    logger.debug(
        "Built resource graph",
        extra={
            "resources": len(graph.resources),
            "references": len(graph.references),
            "order": graph.topological_order,
        },
    )
    return graph


def _add_edge(graph: ResourceGraph, consumer: str, producer: str) -> None:
    if consumer == producer:
        raise CycleError(f"Resource '{consumer}' references itself")
    graph._dependencies[consumer].add(producer)
    graph._dependents[producer].add(consumer)


def _topological_sort(graph: ResourceGraph) -> list[str]:
    """Kahn's algorithm; dependencies first, ties broken by address."""
    in_degree = {address: len(deps) for address, deps in graph._dependencies.items()}

    result: list[str] = []
    queue = sorted(address for address, degree in in_degree.items() if degree == 0)

    while queue:
        current = queue.pop(0)
        result.append(current)

        for dependent in graph._dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
        # Sort for deterministic ordering among nodes with same in_degree
        queue.sort()

    if len(result) != len(graph.resources):
        cycle_nodes = sorted(address for address, degree in in_degree.items() if degree > 0)
        raise CycleError(f"Circular reference detected involving: {cycle_nodes}")

    return result
