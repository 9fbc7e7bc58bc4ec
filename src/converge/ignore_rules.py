"""Ignore rules framework for drift detection.

Lets a target declare attribute paths whose differences are not drift,
in the spirit of Argo CD's ignoreDifferences. Rules are scoped by kind and
matched against dotted attribute paths.

These rules cut noise from:
- Server-managed metadata (uid, resourceVersion, managedFields)
- Status written back by controllers
- Fields another controller owns (e.g. replicas under an autoscaler)

The same YAML file may also carry extra normalization rules, parsed into
NormalizationRule objects for the DiffNormalizer.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .diff_normalizer import NormalizationRule, NormalizationType

logger = logging.getLogger(__name__)


class IgnoreRulesError(Exception):
    """Raised when ignore rules configuration is invalid."""

    pass


@dataclass(frozen=True)
class IgnoreRule:
    """A single ignore rule for drift detection.

    Attributes:
        kind: Object kind to match (e.g., "Deployment"). "*" matches all kinds.
        paths: Attribute paths to ignore (e.g., "spec.replicas").
               Supports "*" for one segment and "**" for any number.
        reason: Human-readable explanation for audit logging.
    """

    kind: str
    paths: list[str]
    reason: str = ""

    def matches_kind(self, kind: str) -> bool:
        if self.kind == "*":
            return True
        return fnmatch.fnmatch(kind.lower(), self.kind.lower())

    def should_ignore_path(self, path: str) -> bool:
        """Check if an attribute path is covered by this rule.

        A rule path also covers everything beneath it, so "status"
        ignores "status.replicas".
        """
        return any(self._path_matches(path, pattern) for pattern in self.paths)

    def _path_matches(self, path: str, pattern: str) -> bool:
        path_parts = path.replace("[", ".[").split(".")
        pattern_parts = pattern.split(".")
        return self._match_parts(path_parts, [*pattern_parts, "**"])

    def _match_parts(self, path_parts: list[str], pattern_parts: list[str]) -> bool:
        """Recursively match path parts against pattern parts."""
        if not pattern_parts:
            return not path_parts
        if not path_parts:
            return all(p == "**" for p in pattern_parts)

        if pattern_parts[0] == "**":
            if len(pattern_parts) == 1:
                return True
            for i in range(len(path_parts) + 1):
                if self._match_parts(path_parts[i:], pattern_parts[1:]):
                    return True
            return False
        elif pattern_parts[0] == "*" or fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
            return self._match_parts(path_parts[1:], pattern_parts[1:])
        else:
            return False


# Default ignore rules for server-managed fields
DEFAULT_IGNORE_RULES: list[IgnoreRule] = [
    IgnoreRule(
        kind="*",
        paths=[
            "metadata.uid",
            "metadata.resourceVersion",
            "metadata.generation",
            "metadata.creationTimestamp",
            "metadata.managedFields",
            "metadata.selfLink",
            "status",
        ],
        reason="Server-managed fields that change without user action",
    ),
    IgnoreRule(
        kind="PersistentVolume",
        paths=["spec.claimRef"],
        reason="Bound claim is written by the volume controller",
    ),
]


@dataclass
class IgnoreRulesConfig:
    """Configuration for ignore rules.

    Attributes:
        rules: Ignore rules to apply.
        normalization_rules: Extra normalization rules for the DiffNormalizer.
        enable_default_rules: Whether to include built-in rules.
        log_ignored_changes: Whether to log when changes are ignored (for audit).
    """

    rules: list[IgnoreRule] = field(default_factory=list)
    normalization_rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_ignored_changes: bool = True

    def get_effective_rules(self) -> list[IgnoreRule]:
        """Get all rules including defaults if enabled."""
        if self.enable_default_rules:
            return list(DEFAULT_IGNORE_RULES) + list(self.rules)
        return list(self.rules)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> IgnoreRulesConfig:
        """Parse rules from YAML content.

        Expected format:
        ```yaml
        enableDefaultRules: true
        logIgnoredChanges: true
        rules:
          - kind: Deployment
            paths:
              - spec.replicas
            reason: "Replicas owned by the autoscaler"
        normalizations:
          - kind: ConfigMap
            path: data.*
            type: whitespace_normalize
        ```

        Raises:
            IgnoreRulesError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise IgnoreRulesError(f"Invalid YAML in ignore rules: {e}") from e

        if data is None:
            return cls()

        if not isinstance(data, dict):
            raise IgnoreRulesError("Ignore rules must be a YAML object")

        return cls(
            rules=_parse_ignore_rules(data.get("rules", [])),
            normalization_rules=_parse_normalization_rules(data.get("normalizations", [])),
            enable_default_rules=bool(data.get("enableDefaultRules", True)),
            log_ignored_changes=bool(data.get("logIgnoredChanges", True)),
        )

    @classmethod
    def from_file(cls, path: Path) -> IgnoreRulesConfig:
        """Load rules from a YAML file.

        Raises:
            IgnoreRulesError: If file cannot be read or parsed.
        """
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise IgnoreRulesError(f"Cannot read ignore rules file: {e}") from e

        return cls.from_yaml(content)


def _parse_ignore_rules(raw_rules: Any) -> list[IgnoreRule]:
    if not isinstance(raw_rules, list):
        raise IgnoreRulesError("'rules' must be a list")

    rules: list[IgnoreRule] = []
    for i, rule_data in enumerate(raw_rules):
        if not isinstance(rule_data, dict):
            raise IgnoreRulesError(f"Rule {i} must be an object")

        paths = rule_data.get("paths", [])
        if not isinstance(paths, list):
            raise IgnoreRulesError(f"Rule {i}: 'paths' must be a list")
        if not paths:
            raise IgnoreRulesError(f"Rule {i}: 'paths' cannot be empty")
        if not all(isinstance(p, str) for p in paths):
            raise IgnoreRulesError(f"Rule {i}: paths must be strings")

        rules.append(
            IgnoreRule(
                kind=str(rule_data.get("kind", "*")),
                paths=list(paths),
                reason=str(rule_data.get("reason", "")),
            )
        )
    return rules


def _parse_normalization_rules(raw_rules: Any) -> list[NormalizationRule]:
    if not isinstance(raw_rules, list):
        raise IgnoreRulesError("'normalizations' must be a list")

    rules: list[NormalizationRule] = []
    for i, rule_data in enumerate(raw_rules):
        if not isinstance(rule_data, dict) or not rule_data.get("path"):
            raise IgnoreRulesError(f"Normalization {i} must be an object with a 'path'")
        try:
            normalization_type = NormalizationType(rule_data.get("type", ""))
        except ValueError as e:
            valid = [t.value for t in NormalizationType]
            raise IgnoreRulesError(f"Normalization {i}: 'type' must be one of {valid}") from e

        params = {"default": rule_data["default"]} if "default" in rule_data else {}
        rules.append(
            NormalizationRule(
                kind=str(rule_data.get("kind", "*")),
                path_pattern=str(rule_data["path"]),
                normalization_type=normalization_type,
                params=params,
                reason=str(rule_data.get("reason", "")),
            )
        )
    return rules


class IgnoreRulesEvaluator:
    """Evaluates ignore rules against attribute paths."""

    def __init__(self, config: IgnoreRulesConfig | None = None) -> None:
        self._config = config or IgnoreRulesConfig()
        self._rules = self._config.get_effective_rules()

    def should_ignore(self, kind: str, path: str) -> tuple[bool, str | None]:
        """Check if a difference at this path should be ignored.

        Returns:
            Tuple of (should_ignore, reason).
        """
        for rule in self._rules:
            if rule.matches_kind(kind) and rule.should_ignore_path(path):
                if self._config.log_ignored_changes:
                    logger.debug(
                        "Ignoring difference per rule",
                        extra={"kind": kind, "path": path, "reason": rule.reason},
                    )
                return True, rule.reason
        return False, None
