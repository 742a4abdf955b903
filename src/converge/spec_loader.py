"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_ITEMS_FILE_SIZE_BYTES, MAX_SPEC_FILE_SIZE_BYTES
from .models import BaseSpec, get_spec_class
from .state import DeclaredItem, ObservedItem

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_document(path: Path, max_size: int, label: str) -> Any:
    if not path.exists():
        raise SpecLoadError(f"{label} file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {label.lower()} file {path}: {e}") from e

    if file_size > max_size:
        raise SpecLoadError(f"{label} file exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {label.lower()} file {path}: {e}") from e

    # JSON is a subset of YAML, so one parser covers both
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def load_spec(spec_path: Path) -> BaseSpec:
    """Load and validate a resource spec from YAML.

    The resource kind is read from the document's ``kind`` field, either at
    the top level or next to ``apiVersion`` in a Kubernetes-style wrapper.

    Args:
        spec_path: Path to the spec file.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    raw_data = _read_document(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "Spec")

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    kind = raw_data.get("kind")
    if not kind:
        raise SpecLoadError(f"Spec file must declare a kind: {spec_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = {k: v for k, v in raw_data.items() if k != "kind"}

    try:
        spec_class = get_spec_class(str(kind))
    except ValueError as e:
        raise SpecLoadError(str(e)) from e

    try:
        spec = spec_class.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {spec_path}:\n{format_validation_errors(e)}"
        ) from e

    logger.info("Loaded %s spec from %s", kind, spec_path)
    return spec


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors for readability."""
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return "\n".join(errors)


def load_items(path: Path, *, observed: bool = False) -> list[DeclaredItem] | list[ObservedItem]:
    """Load an item list for offline reconciliation.

    Each entry is a mapping with ``key`` (scalar or list), optional
    ``attributes`` and, for observed lists, an optional ``id``.

    Raises:
        SpecLoadError: If the file is missing, too large or malformed.
    """
    raw_data = _read_document(path, MAX_ITEMS_FILE_SIZE_BYTES, "Items")
    if isinstance(raw_data, dict) and "items" in raw_data:
        raw_data = raw_data["items"]
    if raw_data is None:
        raw_data = []
    if not isinstance(raw_data, list):
        raise SpecLoadError(f"Items file must contain a list: {path}")

    declared: list[DeclaredItem] = []
    inventory: list[ObservedItem] = []
    for index, entry in enumerate(raw_data):
        if not isinstance(entry, dict) or "key" not in entry:
            raise SpecLoadError(f"Item {index} in {path} must be a mapping with a key")
        key = entry["key"]
        key = tuple(key) if isinstance(key, list) else (key,)
        attributes = entry.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise SpecLoadError(f"Item {index} in {path} has non-mapping attributes")
        if observed:
            surrogate_id = entry.get("id")
            inventory.append(
                ObservedItem(
                    key=key,
                    attributes=dict(attributes),
                    surrogate_id=str(surrogate_id) if surrogate_id is not None else None,
                )
            )
        else:
            declared.append(DeclaredItem(key=key, attributes=dict(attributes)))

    logger.debug("Loaded %d items from %s", len(raw_data), path)
    return inventory if observed else declared


def dump_items(items: list[Any]) -> str:
    """Serialize reconciled items as JSON."""
    return json.dumps([item.to_dict() for item in items], indent=2, default=str)
