"""Declarative configuration loading with validation.

Two input formats produce the same DesiredState:

- YAML: the native declarative form (``scopes: [{vpc, security_groups}]``)
- JSON: an exported-state document (scope key -> group id -> group), as
  written by ``sgctl export``

SECURITY: All file operations enforce size limits. Input validation is
performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, ConfigurationError, InputFormat
from .models import DesiredState

logger = logging.getLogger(__name__)

# Scope key used for the classic (non-VPC) scope in exported documents
CLASSIC_SCOPE_KEY = ""


class SpecLoadError(ConfigurationError):
    """Raised when the declarative configuration cannot be loaded or validated."""

    pass


def _read_text(path: Path) -> str:
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(f"File exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e


def _check_document_shape(document: dict[str, Any], source: str) -> None:
    """Check the scope -> group id -> group nesting of an exported document."""
    for scope_key, groups in document.items():
        if not isinstance(groups, dict):
            raise SpecLoadError(f"Scope `{scope_key}` must map group ids to groups in {source}")
        for group_id, group in groups.items():
            if not isinstance(group, dict):
                raise SpecLoadError(f"Group `{group_id}` must be an object in {source}")
            for direction in ("ingress", "egress"):
                rules = group.get(direction) or []
                if not isinstance(rules, list) or not all(isinstance(rule, dict) for rule in rules):
                    raise SpecLoadError(
                        f"`{direction}` of group `{group_id}` must be a list of objects in {source}"
                    )


def load_document(path: Path) -> dict[str, Any]:
    """Load an exported-state JSON document.

    Raises:
        SpecLoadError: If the file is missing, too large, or not shaped like an
            exported document.
    """
    content = _read_text(path)
    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(document, dict):
        raise SpecLoadError(f"Exported document must be a JSON object: {path}")
    _check_document_shape(document, str(path))
    return document


def _validate(data: dict[str, Any], source: str) -> DesiredState:
    try:
        return DesiredState.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def desired_from_document(document: dict[str, Any], source: str = "document") -> DesiredState:
    """Convert an exported-state document into the declarative model.

    Group ids are discarded; groups are matched by name. Egress is dropped
    for the classic scope, where it cannot be managed.
    """
    _check_document_shape(document, source)

    scopes: list[dict[str, Any]] = []
    for scope_key, groups in document.items():
        vpc_id = scope_key or None
        security_groups = []
        for group in groups.values():
            security_groups.append(
                {
                    "name": group.get("name"),
                    "description": group.get("description"),
                    "tags": group.get("tags") or {},
                    "ingress": group.get("ingress") or [],
                    "egress": (group.get("egress") or []) if vpc_id is not None else [],
                }
            )
        scopes.append({"vpc": vpc_id, "security_groups": security_groups})

    return _validate({"scopes": scopes}, source)


def load_desired_state(path: Path, input_format: InputFormat = InputFormat.YAML) -> DesiredState:
    """Load and validate the declarative configuration.

    Args:
        path: Path to the YAML configuration or exported JSON document.
        input_format: Format of the file.

    Returns:
        Validated desired state.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if input_format is InputFormat.JSON:
        desired = desired_from_document(load_document(path), str(path))
    else:
        content = _read_text(path)
        try:
            raw_data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise SpecLoadError(f"Configuration must contain a YAML mapping: {path}")

        desired = _validate(raw_data, str(path))

    logger.info(
        "Loaded desired state from %s",
        path,
        extra={
            "format": input_format.value,
            "scopes": len(desired.scopes),
            "security_groups": sum(len(s.security_groups) for s in desired.scopes),
        },
    )
    return desired
