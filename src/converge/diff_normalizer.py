"""Diff normalization rules engine for desired/observed comparison.

This module handles semantic equivalence between a declared manifest and
the object the API server returns, normalizing differences that are
syntactically different but semantically equivalent.

DESIGN PHILOSOPHY:
- Semantic equivalence: empty list == empty map == null == missing for many fields
- Type coercion: "80" vs 80, "true" vs true
- Quantity awareness: "1Gi" == "1073741824", "500m" == "0.5"
- Order independence: lists whose order carries no meaning (ports, accessModes)

COMMON FALSE POSITIVES HANDLED:
1. Empty annotations/labels vs missing metadata fields
2. Port numbers written as strings
3. Resource quantities in different units
4. Case differences in enum-like fields (protocol)
5. Lists the API server may reorder
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "80" == 80
    NUMERIC_STRING = "numeric_string"

    # Kubernetes resource quantities: "1Gi" == "1024Mi"
    QUANTITY = "quantity"

    # Case normalization for enum-like strings
    CASE_INSENSITIVE = "case_insensitive"

    # Whitespace normalization for multi-line strings
    WHITESPACE_NORMALIZE = "whitespace_normalize"

    # List order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


_BINARY_SUFFIXES: dict[str, int] = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}

_DECIMAL_SUFFIXES: dict[str, Decimal] = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}

_QUANTITY_PATTERN = re.compile(r"^([+-]?[0-9.]+(?:[eE][+-]?[0-9]+)?)(Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE]?)$")


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Object kind to match (supports wildcards, "*" for all)
        path_pattern: Attribute path pattern to match (supports wildcards)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        """Check if this rule applies to a kind and attribute path."""
        if self.kind != "*" and not self._glob_match(kind.lower(), self.kind.lower()):
            return False

        return self.path_pattern == "*" or self._glob_match(
            _strip_indexes(path).lower(), self.path_pattern.lower()
        )

    def _glob_match(self, value: str, pattern: str) -> bool:
        """Simple glob matching with * and ** support."""
        # Convert glob to regex
        regex_pattern = "^"
        i = 0
        while i < len(pattern):
            if pattern[i:i+3] == "**.":
                regex_pattern += "(?:.*\\.)?"
                i += 3
            elif pattern[i:i+2] == "**":
                regex_pattern += ".*"
                i += 2
            elif pattern[i] == "*":
                regex_pattern += "[^.]*"
                i += 1
            elif pattern[i] in r"\.[]{}()+^$|?":
                regex_pattern += "\\" + pattern[i]
                i += 1
            else:
                regex_pattern += pattern[i]
                i += 1
        regex_pattern += "$"

        return bool(re.match(regex_pattern, value))


def _strip_indexes(path: str) -> str:
    return re.sub(r"\[\d+\]", "", path)


# Default normalization rules for common Kubernetes patterns
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    # Empty equivalence
    NormalizationRule(
        kind="*",
        path_pattern="metadata.annotations",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty annotations equal missing annotations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.labels",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty labels equal missing labels",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.env",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty env list is dropped by the API server",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.args",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty args list is dropped by the API server",
    ),

    # Numeric strings
    NormalizationRule(
        kind="*",
        path_pattern="**.port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Ports may be written as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.targetPort",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Numeric target ports may be written as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.containerPort",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Container ports may be written as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="spec.replicas",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Replica counts substituted from variables may be strings",
    ),

    # Quantities
    NormalizationRule(
        kind="*",
        path_pattern="**.resources.requests.*",
        normalization_type=NormalizationType.QUANTITY,
        reason="Resource requests are quantities",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.resources.limits.*",
        normalization_type=NormalizationType.QUANTITY,
        reason="Resource limits are quantities",
    ),
    NormalizationRule(
        kind="PersistentVolume",
        path_pattern="spec.capacity.*",
        normalization_type=NormalizationType.QUANTITY,
        reason="Volume capacity is a quantity",
    ),

    # Case insensitive
    NormalizationRule(
        kind="*",
        path_pattern="**.protocol",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Protocol names may have case variations",
    ),

    # Default values
    NormalizationRule(
        kind="*",
        path_pattern="**.protocol",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "tcp"},
        reason="Protocol defaults to TCP",
    ),
    NormalizationRule(
        kind="Service",
        path_pattern="spec.type",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "ClusterIP"},
        reason="Service type defaults to ClusterIP",
    ),
    NormalizationRule(
        kind="Deployment",
        path_pattern="spec.replicas",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 1},
        reason="Replicas default to 1",
    ),

    # Unordered lists
    NormalizationRule(
        kind="*",
        path_pattern="**.accessModes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Access modes are a set",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="metadata.finalizers",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Finalizers are a set",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.ports",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Ports are matched by content, not position",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.tolerations",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Toleration order has no meaning",
    ),
]


class DiffNormalizer:
    """Normalizes desired and observed values to handle semantic equivalence.

    This class transforms values to detect when differences are only
    syntactic, not semantic.
    """

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules.
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def is_unordered(self, kind: str, path: str) -> bool:
        """True if the list at this path should be compared as a set."""
        return any(
            rule.normalization_type == NormalizationType.ARRAY_UNORDERED
            and rule.matches(kind, path)
            for rule in self._rules
        )

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value

        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)

        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.QUANTITY:
                return self._normalize_quantity(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.WHITESPACE_NORMALIZE:
                return self._normalize_whitespace(value)
            case NormalizationType.DEFAULT_VALUE:
                return self._normalize_default(value, rule.params.get("default"))
            case _:
                # ARRAY_UNORDERED is structural and handled by the comparison
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "" and null all become None for comparison."""
        if value is None:
            return None
        if isinstance(value, str | list | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "on"):
                return True
            if value.lower() in ("false", "no", "off"):
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        """ "80" -> 80, "0.5" -> 0.5; named ports stay strings."""
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return value
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_quantity(self, value: Any) -> Decimal | Any:
        """Convert a Kubernetes quantity to an exact Decimal."""
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return Decimal(str(value))
        if not isinstance(value, str):
            return value

        match = _QUANTITY_PATTERN.match(value.strip())
        if match is None:
            return value
        number, suffix = match.groups()
        try:
            base = Decimal(number)
        except InvalidOperation:
            return value
        if suffix in _BINARY_SUFFIXES:
            return (base * _BINARY_SUFFIXES[suffix]).normalize()
        return (base * _DECIMAL_SUFFIXES[suffix]).normalize()

    def _normalize_case(self, value: Any) -> str | Any:
        if isinstance(value, str):
            return value.lower()
        return value

    def _normalize_whitespace(self, value: Any) -> str | Any:
        if isinstance(value, str):
            value = value.replace("\r\n", "\n").replace("\r", "\n")
            lines = [" ".join(line.split()) for line in value.split("\n")]
            value = "\n".join(lines).strip()
        return value

    def _normalize_default(self, value: Any, default: Any) -> Any:
        if value is None:
            return default
        return value

    def are_equivalent(
        self,
        desired: Any,
        observed: Any,
        kind: str,
        path: str,
    ) -> tuple[bool, str | None]:
        """Check if two scalar values are semantically equivalent.

        Returns:
            Tuple of (are_equivalent, reason_if_equivalent).
        """
        normalized_desired = self.normalize_value(desired, kind, path)
        normalized_observed = self.normalize_value(observed, kind, path)

        if self._scalar_equal(normalized_desired, normalized_observed):
            if self._scalar_equal(desired, observed):
                return True, None
            reason = self._get_equivalence_reason(kind, path)
            logger.debug(
                "Difference normalized away",
                extra={
                    "kind": kind,
                    "path": path,
                    "desired": repr(desired),
                    "observed": repr(observed),
                    "reason": reason,
                },
            )
            return True, reason

        return False, None

    def _scalar_equal(self, a: Any, b: Any) -> bool:
        # bool is an int subclass; True must not equal 1 here
        if isinstance(a, bool) or isinstance(b, bool):
            return a is b
        if isinstance(a, int | float | Decimal) and isinstance(b, int | float | Decimal):
            return Decimal(str(a)) == Decimal(str(b))
        return a == b

    def _get_equivalence_reason(self, kind: str, path: str) -> str:
        for rule in self._rules:
            if rule.matches(kind, path):
                return rule.reason or f"Normalized via {rule.normalization_type.value}"
        return "Values are semantically equivalent after normalization"
