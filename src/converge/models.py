"""Data model for declarations, resources and observed state.

These models provide:
1. Type-safe YAML parsing of declaration files (pydantic)
2. Validation at the boundary (fail fast, fail loudly)
3. Runtime value types shared by the graph builder, diff engine and executor
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# Built-in kinds without a namespace. Anything else is namespaced and defaults to
# "default" unless its declaration sets clusterScoped.
CLUSTER_SCOPED_KINDS: frozenset[str] = frozenset(
    {
        "Namespace",
        "Node",
        "PersistentVolume",
        "StorageClass",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "PriorityClass",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "ValidatingWebhookConfiguration",
    }
)

DEFAULT_NAMESPACE = "default"

# ${...} expression, used for variables, locals and cross-resource references
EXPRESSION_PATTERN = re.compile(r"\$\{\s*([^}]+?)\s*\}")

# Declaration address: <type>.<name>, e.g. "deployment.api"
VALID_ADDRESS_PATTERN = r"^[a-z][a-z0-9_]*\.[a-zA-Z0-9][a-zA-Z0-9_-]*$"

_SEGMENT_PATTERN = re.compile(r"^([^\[\]]+)((?:\[\d+\])*)$")


class _Missing:
    """Sentinel for an attribute path that does not exist."""

    def __repr__(self) -> str:
        return "<missing>"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


# =============================================================================
# Attribute paths
# =============================================================================


def parse_path(path: str) -> list[str | int]:
    """Split an attribute path into keys and list indexes.

    "spec.template.spec.containers[0].image" becomes
    ["spec", "template", "spec", "containers", 0, "image"].

    Raises:
        ValueError: If the path is empty or malformed.
    """
    if not path:
        raise ValueError("Attribute path cannot be empty")

    parts: list[str | int] = []
    for segment in path.split("."):
        match = _SEGMENT_PATTERN.match(segment)
        if match is None:
            raise ValueError(f"Malformed attribute path: {path!r}")
        parts.append(match.group(1))
        for index in re.findall(r"\[(\d+)\]", match.group(2)):
            parts.append(int(index))
    return parts


def format_path(parts: list[str | int] | tuple[str | int, ...]) -> str:
    """Inverse of parse_path."""
    rendered = ""
    for part in parts:
        if isinstance(part, int):
            rendered += f"[{part}]"
        elif rendered:
            rendered += f".{part}"
        else:
            rendered = part
    return rendered


def get_path(obj: Any, path: str | list[str | int]) -> Any:
    """Read the value at an attribute path, or MISSING."""
    parts = parse_path(path) if isinstance(path, str) else path
    current = obj
    for part in parts:
        if isinstance(part, int):
            if not isinstance(current, list) or part >= len(current):
                return MISSING
            current = current[part]
        else:
            if not isinstance(current, dict) or part not in current:
                return MISSING
            current = current[part]
    return current


# =============================================================================
# Runtime value types
# =============================================================================


@dataclass(frozen=True)
class ResourceIdentity:
    """Identity of an object in the managed cluster."""

    kind: str
    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        if self.namespace is None:
            return f"{self.kind}/{self.name}"
        return f"{self.kind}/{self.namespace}/{self.name}"

    @property
    def sort_key(self) -> tuple[str, str, str]:
        """Total ordering key (namespace may be None)."""
        return (self.kind, self.namespace or "", self.name)

    @classmethod
    def parse(cls, key: str) -> ResourceIdentity:
        """Parse the string form produced by __str__.

        Raises:
            ValueError: If the key is malformed.
        """
        parts = key.split("/")
        if len(parts) == 2 and all(parts):
            return cls(kind=parts[0], name=parts[1])
        if len(parts) == 3 and all(parts):
            return cls(kind=parts[0], namespace=parts[1], name=parts[2])
        raise ValueError(f"Malformed resource identity: {key!r}")

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], cluster_scoped: bool | None = None) -> ResourceIdentity:
        """Derive identity from a manifest's kind and metadata.

        cluster_scoped overrides the built-in kind list, for custom kinds.

        Raises:
            ValueError: If kind or metadata.name is missing.
        """
        kind = manifest.get("kind")
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name") if isinstance(metadata, dict) else None
        if not kind or not name:
            raise ValueError("Manifest must define kind and metadata.name")

        if cluster_scoped is None:
            cluster_scoped = kind in CLUSTER_SCOPED_KINDS
        namespace = None if cluster_scoped else metadata.get("namespace") or DEFAULT_NAMESPACE
        for value in (kind, name, namespace):
            if value is not None and (not isinstance(value, str) or "${" in value):
                # Identity must be known before anything is applied; use dependsOn for ordering
                raise ValueError(f"kind, metadata.name and metadata.namespace must be plain strings: {value!r}")
        return cls(kind=kind, name=name, namespace=namespace)


@dataclass(frozen=True)
class Reference:
    """Edge from a consuming attribute to a producing resource's output attribute."""

    consumer: str  # address of the resource holding the expression
    consumer_path: str
    producer: str  # address of the resource being referenced
    producer_path: str
    expression: str

    def __str__(self) -> str:
        return f"{self.consumer}:{self.consumer_path} -> {self.producer}.{self.producer_path}"


@dataclass(frozen=True)
class Deferred:
    """Placeholder for a value only known once its producer has been applied."""

    reference: Reference

    def __repr__(self) -> str:
        return f"(known after apply: {self.reference.producer}.{self.reference.producer_path})"


@dataclass(frozen=True)
class DeferredText:
    """A string template whose embedded expressions are partly Deferred.

    `parts` alternates literal text and resolved values or Deferred
    placeholders; the pieces are joined once every placeholder is known.
    """

    parts: tuple[Any, ...]

    def __repr__(self) -> str:
        return "".join(repr(p) if isinstance(p, Deferred) else str(p) for p in self.parts)


def is_deferred(value: Any) -> bool:
    """True for values only known after a producer has been applied."""
    return isinstance(value, Deferred | DeferredText)


def split_reference(body: str) -> tuple[str, str]:
    """Split "deployment.api.spec.replicas" into ("deployment.api", "spec.replicas").

    Raises:
        ValueError: If the expression has no attribute path.
    """
    segments = body.split(".", 2)
    if len(segments) < 3 or not all(segments):
        raise ValueError(f"Reference must be <type>.<name>.<attribute>: {body!r}")
    return f"{segments[0]}.{segments[1]}", segments[2]


def find_references(address: str, payload: Any, path: tuple[str | int, ...] = ()) -> list[Reference]:
    """Collect every ${...} reference embedded in a payload."""
    found: list[Reference] = []

    if isinstance(payload, dict):
        for key, value in payload.items():
            found.extend(find_references(address, value, (*path, key)))
    elif isinstance(payload, list):
        for index, value in enumerate(payload):
            found.extend(find_references(address, value, (*path, index)))
    elif isinstance(payload, str):
        for match in EXPRESSION_PATTERN.finditer(payload):
            producer, producer_path = split_reference(match.group(1))
            found.append(
                Reference(
                    consumer=address,
                    consumer_path=format_path(path),
                    producer=producer,
                    producer_path=producer_path,
                    expression=match.group(0),
                )
            )

    return found


@dataclass(frozen=True)
class Resource:
    """A desired object: identity, declaration address and desired payload.

    The payload is opaque apart from ${...} references, which are
    substituted before comparison and before it is sent to the cluster.
    """

    address: str
    identity: ResourceIdentity
    api_version: str
    payload: dict[str, Any]
    depends_on: tuple[str, ...] = ()
    replace_on_change: tuple[str, ...] = ()

    @cached_property
    def references(self) -> list[Reference]:
        """References found in the payload."""
        return find_references(self.address, self.payload)

    @classmethod
    def from_manifest(
        cls,
        address: str,
        manifest: dict[str, Any],
        depends_on: list[str] | tuple[str, ...] = (),
        replace_on_change: list[str] | tuple[str, ...] = (),
        cluster_scoped: bool | None = None,
    ) -> Resource:
        """Build a resource from a manifest body."""
        return cls(
            address=address,
            identity=ResourceIdentity.from_manifest(manifest, cluster_scoped),
            api_version=str(manifest.get("apiVersion", "")),
            payload=manifest,
            depends_on=tuple(depends_on),
            replace_on_change=tuple(replace_on_change),
        )


@dataclass
class ObservedState:
    """Snapshot of what currently exists in the cluster, keyed by identity."""

    objects: dict[ResourceIdentity, dict[str, Any]] = field(default_factory=dict)

    def __contains__(self, identity: object) -> bool:
        return identity in self.objects

    def __len__(self) -> int:
        return len(self.objects)

    def get(self, identity: ResourceIdentity) -> dict[str, Any] | None:
        """Observed object for an identity, or None if absent."""
        return self.objects.get(identity)

    def identities(self) -> list[ResourceIdentity]:
        """Observed identities in a stable order."""
        return sorted(self.objects, key=lambda i: i.sort_key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "objects": [
                {"identity": str(identity), "object": self.objects[identity]}
                for identity in self.identities()
            ]
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservedState:
        """Inverse of to_dict.

        Raises:
            ValueError: If an entry is malformed.
        """
        objects: dict[ResourceIdentity, dict[str, Any]] = {}
        for entry in data.get("objects", []):
            if not isinstance(entry, dict) or not isinstance(entry.get("object"), dict):
                raise ValueError(f"Malformed observed state entry: {entry!r}")
            objects[ResourceIdentity.parse(str(entry.get("identity", "")))] = entry["object"]
        return cls(objects=objects)


# =============================================================================
# Declaration files
# =============================================================================


class VariableSpec(BaseModel):
    """A declared input variable."""

    model_config = {"extra": "forbid"}

    default: Any = None
    description: str = ""

    @property
    def has_default(self) -> bool:
        """True if a default was written, even an explicit null."""
        return "default" in self.model_fields_set


class ResourceSpec(BaseModel):
    """One resource declaration: a manifest plus lifecycle hints."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    manifest: dict[str, Any]

    # Addresses that must be applied first even without a ${...} reference
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Attribute paths whose change forces delete-then-create
    replace_on_change: list[str] = Field(default_factory=list, alias="replaceOnChange")

    # Scope of a kind missing from CLUSTER_SCOPED_KINDS, such as a cluster-wide CRD
    cluster_scoped: bool | None = Field(default=None, alias="clusterScoped")

    @field_validator("manifest")
    @classmethod
    def validate_manifest(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v.get("apiVersion"):
            raise ValueError("manifest.apiVersion is required")
        if not v.get("kind"):
            raise ValueError("manifest.kind is required")
        metadata = v.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise ValueError("manifest.metadata.name is required")
        return v

    @field_validator("replace_on_change")
    @classmethod
    def validate_paths(cls, v: list[str]) -> list[str]:
        for path in v:
            parse_path(path)
        return v


class ManifestFile(BaseModel):
    """Contents of one declaration file."""

    model_config = {"extra": "forbid"}

    variables: dict[str, VariableSpec] = Field(default_factory=dict)
    locals: dict[str, Any] = Field(default_factory=dict)
    resources: dict[Annotated[str, Field(pattern=VALID_ADDRESS_PATTERN)], ResourceSpec] = Field(
        default_factory=dict
    )
