"""Diff engine: desired resource graph vs observed cluster state.

For every resource in the graph (in topological order):
- absent from the observation            -> Create
- present, an immutable field differs    -> RequiresReplace (delete, then create)
- present, other declared fields differ  -> Update, carrying only the changed fields
- present and equivalent                 -> NoOp
Objects observed but no longer declared  -> Delete, after everything else.

Only attributes written in the desired payload are compared; fields the API
server fills in (defaults, status, uid) are not drift. References are
resolved before comparison: from the producer's declared payload, from its
observed object when it is left in place, or as a Deferred placeholder when
the producer is (re)created in this same pass.
"""

from __future__ import annotations

import copy
import logging
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .diff_normalizer import DiffNormalizer
from .graph import ResourceGraph
from .ignore_rules import IgnoreRulesEvaluator
from .models import (
    EXPRESSION_PATTERN,
    MISSING,
    Deferred,
    DeferredText,
    ObservedState,
    Reference,
    Resource,
    ResourceIdentity,
    format_path,
    get_path,
    is_deferred,
    split_reference,
)

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    """Per-resource actions in a change set."""

    CREATE = "Create"
    UPDATE = "Update"
    REQUIRES_REPLACE = "RequiresReplace"
    DELETE = "Delete"
    NO_OP = "NoOp"


# Fields the API server rejects updates to; a change means delete + create
IMMUTABLE_FIELDS: dict[str, tuple[str, ...]] = {
    "PersistentVolume": (
        "spec.hostPath",
        "spec.nfs",
        "spec.csi",
        "spec.local",
        "spec.storageClassName",
        "spec.volumeMode",
    ),
    "PersistentVolumeClaim": (
        "spec.accessModes",
        "spec.storageClassName",
        "spec.volumeName",
        "spec.volumeMode",
        "spec.selector",
    ),
    "Deployment": ("spec.selector",),
    "DaemonSet": ("spec.selector",),
    "StatefulSet": (
        "spec.selector",
        "spec.serviceName",
        "spec.volumeClaimTemplates",
        "spec.podManagementPolicy",
    ),
    "Job": ("spec.selector", "spec.template"),
    "Service": ("spec.clusterIP", "spec.clusterIPs"),
}

# Lower numbers are deleted first: consumers before what they consume
DELETE_PRIORITY: dict[str, int] = {
    "Ingress": 10,
    "HorizontalPodAutoscaler": 10,
    "Service": 20,
    "CronJob": 30,
    "Job": 30,
    "Deployment": 30,
    "StatefulSet": 30,
    "DaemonSet": 30,
    "Pod": 35,
    "ConfigMap": 40,
    "Secret": 40,
    "ServiceAccount": 40,
    "RoleBinding": 45,
    "Role": 46,
    "PersistentVolumeClaim": 50,
    "PersistentVolume": 60,
    "ClusterRoleBinding": 70,
    "ClusterRole": 71,
    "Namespace": 90,
}
DEFAULT_DELETE_PRIORITY = 50


@dataclass(frozen=True)
class PropertyDelta:
    """One changed attribute."""

    path: str
    observed: Any
    desired: Any
    requires_replace: bool = False

    def __str__(self) -> str:
        observed = "<absent>" if self.observed is MISSING else repr(self.observed)
        marker = " (forces replacement)" if self.requires_replace else ""
        return f"{self.path}: {observed} -> {self.desired!r}{marker}"


@dataclass(frozen=True)
class ResourceChange:
    """The action planned for one object.

    `payload` is the desired manifest with references substituted; it may
    still contain Deferred placeholders. `observed` is the object as read
    before diffing. `prerequisites` are the identities whose actions must
    succeed first; `after` are identities that only have to finish first,
    whatever their outcome.
    """

    identity: ResourceIdentity
    action: ChangeAction
    api_version: str
    address: str | None = None
    payload: dict[str, Any] | None = None
    observed: dict[str, Any] | None = field(default=None, repr=False, compare=False)
    delta: tuple[PropertyDelta, ...] = ()
    prerequisites: frozenset[ResourceIdentity] = frozenset()
    after: frozenset[ResourceIdentity] = frozenset()

    @property
    def is_actionable(self) -> bool:
        return self.action != ChangeAction.NO_OP

    @property
    def has_deferred(self) -> bool:
        return _contains_deferred(self.payload)


@dataclass
class ChangeSet:
    """Ordered per-resource actions; Creates/Updates/NoOps first, Deletes last."""

    changes: list[ResourceChange] = field(default_factory=list)

    def __iter__(self) -> Iterator[ResourceChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def get(self, identity: ResourceIdentity) -> ResourceChange | None:
        for change in self.changes:
            if change.identity == identity:
                return change
        return None

    @property
    def actionable(self) -> list[ResourceChange]:
        return [c for c in self.changes if c.is_actionable]

    @property
    def is_converged(self) -> bool:
        """True if nothing needs to be done."""
        return not self.actionable

    def counts(self) -> dict[str, int]:
        """Number of changes per action."""
        counter = Counter(c.action.value for c in self.changes)
        return {action.value: counter.get(action.value, 0) for action in ChangeAction}

    def without(self, identities: set[ResourceIdentity]) -> ChangeSet:
        """Copy of this change set with some identities removed."""
        return ChangeSet([c for c in self.changes if c.identity not in identities])


def compute_changeset(
    graph: ResourceGraph,
    observed: ObservedState,
    *,
    normalizer: DiffNormalizer | None = None,
    ignore_rules: IgnoreRulesEvaluator | None = None,
) -> ChangeSet:
    """Compare the desired graph against an observation.

    Args:
        graph: Desired resources in dependency order.
        observed: Objects currently in the cluster that this target manages.
        normalizer: Semantic equivalence rules.
        ignore_rules: Paths whose differences are not drift.

    Returns:
        The ChangeSet for this pass.
    """
    normalizer = normalizer or DiffNormalizer()
    ignore_rules = ignore_rules or IgnoreRulesEvaluator()

    actions: dict[str, ChangeAction] = {}
    resolved: dict[str, dict[str, Any]] = {}
    changes: list[ResourceChange] = []

    for address in graph.topological_order:
        resource = graph.get(address)
        payload = _resolve_payload(resource, graph, observed, actions, resolved)
        resolved[address] = payload

        current = observed.get(resource.identity)
        delta: tuple[PropertyDelta, ...] = ()
        if current is None:
            action = ChangeAction.CREATE
        else:
            delta = _diff_resource(resource, payload, current, normalizer, ignore_rules)
            if not delta:
                action = ChangeAction.NO_OP
            elif any(d.requires_replace for d in delta):
                action = ChangeAction.REQUIRES_REPLACE
            else:
                action = ChangeAction.UPDATE
        actions[address] = action

        changes.append(
            ResourceChange(
                identity=resource.identity,
                action=action,
                api_version=resource.api_version,
                address=address,
                payload=payload,
                observed=current,
                delta=delta,
                prerequisites=frozenset(
                    graph.get(dep).identity for dep in graph.dependencies_of(address)
                ),
            )
        )

    declared = graph.identities()
    orphans = [i for i in observed.identities() if i not in declared]
    applied = frozenset(c.identity for c in changes)
    changes.extend(_orphan_deletes(orphans, observed, after=applied))

    changeset = ChangeSet(changes)
    logger.info(
        "Computed change set",
        extra={"counts": changeset.counts(), "resources": len(changeset)},
    )
    return changeset


def compute_destroy_changeset(graph: ResourceGraph, observed: ObservedState) -> ChangeSet:
    """Delete-only change set for every observed object of the target.

    Declared objects are deleted after everything that depends on them;
    objects known only from persisted state are ordered by kind.
    """
    declared = [
        graph.get(address)
        for address in reversed(graph.topological_order)
        if graph.get(address).identity in observed
    ]
    declared_identities = {r.identity for r in declared}
    orphans = [i for i in observed.identities() if i not in declared_identities]

    changes = _orphan_deletes(orphans, observed)
    orphan_identities = frozenset(c.identity for c in changes)

    for resource in declared:
        dependents = {
            graph.get(address).identity
            for address in graph.dependents_of(resource.address, transitive=False)
        }
        current = observed.get(resource.identity) or {}
        changes.append(
            ResourceChange(
                identity=resource.identity,
                action=ChangeAction.DELETE,
                api_version=str(current.get("apiVersion") or resource.api_version),
                address=resource.address,
                observed=observed.get(resource.identity),
                prerequisites=frozenset(dependents & declared_identities)
                | _lower_priority(resource.identity, orphan_identities),
            )
        )

    return ChangeSet(changes)


def _orphan_deletes(
    orphans: list[ResourceIdentity],
    observed: ObservedState,
    after: frozenset[ResourceIdentity] = frozenset(),
) -> list[ResourceChange]:
    ordered = sorted(orphans, key=lambda i: (_delete_priority(i), i.sort_key))
    all_orphans = frozenset(ordered)
    deletes: list[ResourceChange] = []
    for identity in ordered:
        current = observed.get(identity) or {}
        deletes.append(
            ResourceChange(
                identity=identity,
                action=ChangeAction.DELETE,
                api_version=str(current.get("apiVersion", "")),
                observed=observed.get(identity),
                prerequisites=_lower_priority(identity, all_orphans),
                after=after,
            )
        )
    return deletes


def _delete_priority(identity: ResourceIdentity) -> int:
    return DELETE_PRIORITY.get(identity.kind, DEFAULT_DELETE_PRIORITY)


def _lower_priority(
    identity: ResourceIdentity, candidates: frozenset[ResourceIdentity]
) -> frozenset[ResourceIdentity]:
    priority = _delete_priority(identity)
    return frozenset(c for c in candidates if _delete_priority(c) < priority)


# =============================================================================
# Reference resolution
# =============================================================================


def _resolve_payload(
    resource: Resource,
    graph: ResourceGraph,
    observed: ObservedState,
    actions: dict[str, ChangeAction],
    resolved: dict[str, dict[str, Any]],
) -> dict[str, Any]:
    refs = {ref.expression: ref for ref in graph.references_from(resource.address)}

    def lookup(ref: Reference) -> Any:
        value = get_path(resolved[ref.producer], ref.producer_path)
        if value is not MISSING:
            if _contains_deferred(value):
                # Read it back from the producer's output instead of chaining
                return Deferred(ref)
            return copy.deepcopy(value)

        if actions[ref.producer] in (ChangeAction.CREATE, ChangeAction.REQUIRES_REPLACE):
            return Deferred(ref)

        producer = graph.get(ref.producer)
        value = get_path(observed.get(producer.identity), ref.producer_path)
        if value is MISSING:
            # Not declared and not observed yet; the producer's apply may set it
            return Deferred(ref)
        return copy.deepcopy(value)

    def walk(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: walk(item) for key, item in value.items()}
        if isinstance(value, list):
            return [walk(item) for item in value]
        if not isinstance(value, str) or "${" not in value:
            return value

        whole = EXPRESSION_PATTERN.fullmatch(value.strip())
        if whole is not None:
            return lookup(refs[whole.group(0)] if whole.group(0) in refs else _ref_for(resource, whole))

        pieces: list[Any] = []
        last = 0
        for match in EXPRESSION_PATTERN.finditer(value):
            pieces.append(value[last:match.start()])
            ref = refs[match.group(0)] if match.group(0) in refs else _ref_for(resource, match)
            pieces.append(lookup(ref))
            last = match.end()
        pieces.append(value[last:])

        if any(isinstance(piece, Deferred) for piece in pieces):
            return DeferredText(tuple(piece for piece in pieces if piece != ""))
        return "".join(_as_text(piece) for piece in pieces)

    return walk(resource.payload)


def _ref_for(resource: Resource, match: Any) -> Reference:
    producer, producer_path = split_reference(match.group(1))
    return Reference(
        consumer=resource.address,
        consumer_path="",
        producer=producer,
        producer_path=producer_path,
        expression=match.group(0),
    )


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def resolve_deferred(value: Any, outputs: dict[str, dict[str, Any]]) -> Any:
    """Replace Deferred placeholders using producers' applied objects.

    Args:
        value: A payload possibly holding Deferred values.
        outputs: address -> observed object after the producer's action.

    Raises:
        LookupError: If a producer output is unavailable or lacks the attribute.
    """
    if isinstance(value, Deferred):
        ref = value.reference
        if ref.producer not in outputs:
            raise LookupError(f"Output of '{ref.producer}' is not available")
        resolved = get_path(outputs[ref.producer], ref.producer_path)
        if resolved is MISSING:
            raise LookupError(
                f"'{ref.producer}' has no attribute '{ref.producer_path}' after apply"
            )
        return copy.deepcopy(resolved)
    if isinstance(value, DeferredText):
        return "".join(_as_text(resolve_deferred(part, outputs)) for part in value.parts)
    if isinstance(value, dict):
        return {key: resolve_deferred(item, outputs) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_deferred(item, outputs) for item in value]
    return value


def _contains_deferred(value: Any) -> bool:
    if is_deferred(value):
        return True
    if isinstance(value, dict):
        return any(_contains_deferred(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_deferred(v) for v in value)
    return False


# =============================================================================
# Structural comparison
# =============================================================================


def _diff_resource(
    resource: Resource,
    desired: dict[str, Any],
    observed: dict[str, Any],
    normalizer: DiffNormalizer,
    ignore_rules: IgnoreRulesEvaluator,
) -> tuple[PropertyDelta, ...]:
    kind = resource.identity.kind
    raw: list[PropertyDelta] = []
    _diff_value(kind, desired, observed, (), normalizer, raw)

    replace_paths = IMMUTABLE_FIELDS.get(kind, ()) + resource.replace_on_change
    deltas: list[PropertyDelta] = []
    for delta in raw:
        ignored, _ = ignore_rules.should_ignore(kind, delta.path)
        if ignored:
            continue
        if any(_overlaps(delta.path, p) for p in replace_paths):
            delta = PropertyDelta(delta.path, delta.observed, delta.desired, requires_replace=True)
        deltas.append(delta)
    return tuple(deltas)


def _overlaps(path: str, prefix: str) -> bool:
    """True if one path lies within the other."""
    for outer, inner in ((prefix, path), (path, prefix)):
        if inner == outer or inner.startswith(outer + ".") or inner.startswith(outer + "["):
            return True
    return False


def _is_empty(value: Any) -> bool:
    return value is None or value is MISSING or (isinstance(value, dict | list | str) and not value)


def _diff_value(
    kind: str,
    desired: Any,
    observed: Any,
    parts: tuple[str | int, ...],
    normalizer: DiffNormalizer,
    deltas: list[PropertyDelta],
) -> None:
    path = format_path(parts)

    if is_deferred(desired):
        deltas.append(PropertyDelta(path, observed, desired))
        return

    if isinstance(desired, dict | list) and not desired and _is_empty(observed):
        return

    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            deltas.append(PropertyDelta(path, observed, desired))
            return
        for key, value in desired.items():
            _diff_value(kind, value, observed.get(key, MISSING), (*parts, key), normalizer, deltas)
        return

    if isinstance(desired, list):
        if not isinstance(observed, list):
            deltas.append(PropertyDelta(path, observed, desired))
            return
        if normalizer.is_unordered(kind, path):
            if not _matches_unordered(kind, desired, observed, parts, normalizer):
                deltas.append(PropertyDelta(path, observed, desired))
            return
        if len(desired) != len(observed):
            deltas.append(PropertyDelta(path, observed, desired))
            return
        for index, (want, have) in enumerate(zip(desired, observed, strict=True)):
            _diff_value(kind, want, have, (*parts, index), normalizer, deltas)
        return

    current = None if observed is MISSING else observed
    equivalent, _ = normalizer.are_equivalent(desired, current, kind, path)
    if not equivalent:
        deltas.append(PropertyDelta(path, observed, desired))


def _matches_unordered(
    kind: str,
    desired: list[Any],
    observed: list[Any],
    parts: tuple[str | int, ...],
    normalizer: DiffNormalizer,
) -> bool:
    """Order-independent comparison: each desired item covers a distinct observed item."""
    if len(desired) != len(observed):
        return False

    unused = list(range(len(observed)))
    for index, want in enumerate(desired):
        for candidate in unused:
            probe: list[PropertyDelta] = []
            _diff_value(kind, want, observed[candidate], (*parts, index), normalizer, probe)
            if not probe:
                unused.remove(candidate)
                break
        else:
            return False
    return True
