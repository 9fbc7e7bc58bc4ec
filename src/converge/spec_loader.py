"""Declaration loading with validation and variable substitution.

A manifests directory holds any number of YAML files. Each may declare
`variables` (with defaults), `locals` (which may use variables and other
locals, across files) and `resources`. Variables and locals are substituted
here; `${<address>.<path>}` references between resources are left in place
for the graph builder.

Input limits: every file is size-checked before it is read.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import EXPRESSION_PATTERN, ManifestFile, Resource, VariableSpec

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when declaration loading or validation fails."""

    pass


def load_manifest_file(path: Path) -> ManifestFile:
    """Load and validate a single declaration file.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return ManifestFile()

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest file must contain a YAML mapping: {path}")

    try:
        return ManifestFile.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_declarations(
    manifests_dir: Path,
    overrides: dict[str, str] | None = None,
) -> list[Resource]:
    """Load every declaration file in a directory into Resources.

    Args:
        manifests_dir: Directory containing *.yaml / *.yml files.
        overrides: Variable values from the command line (raw strings,
            parsed as YAML scalars so "3" becomes 3).

    Returns:
        Resources in address order, with variables and locals substituted.

    Raises:
        SpecLoadError: On unreadable files, duplicate names, missing
            variables or cyclic locals.
    """
    if not manifests_dir.is_dir():
        raise SpecLoadError(f"Manifests directory does not exist: {manifests_dir}")

    paths = sorted(p for p in manifests_dir.iterdir() if p.suffix in MANIFEST_SUFFIXES)
    if not paths:
        raise SpecLoadError(f"No manifest files found in {manifests_dir}")

    variables: dict[str, VariableSpec] = {}
    locals_: dict[str, Any] = {}
    declarations: dict[str, tuple[Path, Any]] = {}

    for path in paths:
        manifest_file = load_manifest_file(path)

        for name, spec in manifest_file.variables.items():
            if name in variables:
                raise SpecLoadError(f"Variable '{name}' declared more than once (again in {path})")
            variables[name] = spec

        for name, value in manifest_file.locals.items():
            if name in locals_:
                raise SpecLoadError(f"Local '{name}' declared more than once (again in {path})")
            locals_[name] = value

        for address, spec in manifest_file.resources.items():
            if address in declarations:
                previous = declarations[address][0]
                raise SpecLoadError(
                    f"Resource '{address}' declared in both {previous.name} and {path.name}"
                )
            declarations[address] = (path, spec)

    values = {f"var.{k}": v for k, v in resolve_variables(variables, overrides or {}).items()}
    values.update({f"local.{k}": v for k, v in resolve_locals(locals_, values).items()})

    resources: list[Resource] = []
    for address in sorted(declarations):
        path, spec = declarations[address]
        manifest = substitute(copy.deepcopy(spec.manifest), values)
        try:
            resources.append(
                Resource.from_manifest(
                    address,
                    manifest,
                    depends_on=spec.depends_on,
                    replace_on_change=spec.replace_on_change,
                    cluster_scoped=spec.cluster_scoped,
                )
            )
        except ValueError as e:
            raise SpecLoadError(f"Invalid resource '{address}' in {path}: {e}") from e

    logger.info(
        "Loaded declarations",
        extra={
            "manifests_dir": str(manifests_dir),
            "files": len(paths),
            "resources": len(resources),
            "variables": len(variables),
        },
    )
    return resources


def resolve_variables(
    declared: dict[str, VariableSpec],
    overrides: dict[str, str],
) -> dict[str, Any]:
    """Pick each variable's value: override first, then default.

    Raises:
        SpecLoadError: For unknown overrides or variables without a value.
    """
    unknown = sorted(set(overrides) - set(declared))
    if unknown:
        raise SpecLoadError(f"Values given for undeclared variables: {unknown}")

    resolved: dict[str, Any] = {}
    missing: list[str] = []
    for name, spec in declared.items():
        if name in overrides:
            try:
                resolved[name] = yaml.safe_load(overrides[name])
            except yaml.YAMLError:
                resolved[name] = overrides[name]
        elif spec.has_default:
            resolved[name] = spec.default
        else:
            missing.append(name)

    if missing:
        raise SpecLoadError(f"No value for variables without a default: {sorted(missing)}")
    return resolved


def resolve_locals(declared: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Evaluate locals, which may refer to variables and to each other.

    Raises:
        SpecLoadError: On a cycle, an unknown name, or a resource reference.
    """
    resolved: dict[str, Any] = {}
    visiting: list[str] = []

    def evaluate(name: str) -> Any:
        if name in resolved:
            return resolved[name]
        if name in visiting:
            cycle = " -> ".join([*visiting[visiting.index(name):], name])
            raise SpecLoadError(f"Locals form a cycle: {cycle}")
        if name not in declared:
            raise SpecLoadError(f"Reference to undeclared local '{name}'")

        visiting.append(name)
        lookup = dict(values)
        for dependency in _expression_names(declared[name]):
            if dependency.startswith("local."):
                lookup[dependency] = evaluate(dependency.removeprefix("local."))
            elif not dependency.startswith("var."):
                raise SpecLoadError(
                    f"Local '{name}' references '{dependency}'; locals may only use var.* and local.*"
                )
            elif dependency not in values:
                raise SpecLoadError(f"Local '{name}' references undeclared {dependency}")
        visiting.pop()

        resolved[name] = substitute(copy.deepcopy(declared[name]), lookup)
        return resolved[name]

    for local_name in declared:
        evaluate(local_name)
    return resolved


def substitute(value: Any, values: dict[str, Any]) -> Any:
    """Replace ${var.*} / ${local.*} expressions using `values`.

    A string that is exactly one expression takes the referenced value with
    its type; expressions embedded in longer strings are interpolated as text.
    Expressions naming anything not in `values` are left untouched.

    Raises:
        SpecLoadError: If a var/local expression names an unknown value, or a
            structured value is embedded in a string.
    """
    if isinstance(value, dict):
        return {key: substitute(item, values) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, values) for item in value]
    if not isinstance(value, str):
        return value

    whole = EXPRESSION_PATTERN.fullmatch(value.strip())
    if whole is not None and _is_substitutable(whole.group(1), values):
        return copy.deepcopy(values[whole.group(1)])

    def replace(match: Any) -> str:
        name = match.group(1)
        if not _is_substitutable(name, values):
            return match.group(0)
        replacement = values[name]
        if isinstance(replacement, dict | list):
            raise SpecLoadError(f"Cannot embed structured value of {name} in string {value!r}")
        if isinstance(replacement, bool):
            return "true" if replacement else "false"
        return "" if replacement is None else str(replacement)

    return EXPRESSION_PATTERN.sub(replace, value)


def _is_substitutable(name: str, values: dict[str, Any]) -> bool:
    if name in values:
        return True
    if name.startswith(("var.", "local.")):
        raise SpecLoadError(f"Reference to undeclared {name}")
    return False


def _expression_names(value: Any) -> set[str]:
    if isinstance(value, dict):
        return set().union(*(_expression_names(v) for v in value.values()))
    if isinstance(value, list):
        return set().union(*(_expression_names(v) for v in value))
    if isinstance(value, str):
        return {m.group(1) for m in EXPRESSION_PATTERN.finditer(value)}
    return set()
