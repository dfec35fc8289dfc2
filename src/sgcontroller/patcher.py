"""Merge rule descriptions from the declarative source into an export.

The patcher never talks to the provider. For every desired rule with a
description, it locates the same scope, group (by name), direction and
rule (by protocol and port range) in an exported-state document and
overwrites only the rule's description.

Matching is strict: a rule that cannot be found aborts the merge, so that
documentation never silently drifts from the source. The whole document is
patched in memory before anything is written.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

from .exporter import dump_document
from .models import DesiredState, PermissionSpec
from .reconciler import scope_label
from .spec_loader import CLASSIC_SCOPE_KEY, load_document
from .state import Direction

logger = logging.getLogger(__name__)

UPDATED_SUFFIX = "-updated"


class NotFoundError(Exception):
    """Raised when a referenced entity cannot be matched."""

    pass


class PermissionNotFoundError(NotFoundError):
    """Raised when a desired rule has no counterpart in the exported document."""

    def __init__(
        self,
        scope: str,
        sg_name: str,
        direction: Direction,
        permission: PermissionSpec,
    ) -> None:
        self.scope = scope
        self.sg_name = sg_name
        self.direction = direction
        self.permission = permission
        super().__init__(
            "Unable to find permission in the destination:\n"
            f"  VPC: {scope}\n"
            f"  SG: {sg_name}\n"
            f"  Direction: {direction.value}\n"
            f"  Protocol: {permission.protocol}\n"
            f"  Port Range: {permission.port_range}\n"
            f"  Description: {permission.description}"
        )


def _find_group(groups: dict[str, Any], name: str) -> dict[str, Any] | None:
    for group in groups.values():
        if group.get("name") == name:
            return group
    return None


def _find_rule(rules: list[dict[str, Any]], permission: PermissionSpec) -> dict[str, Any] | None:
    port_range = str(permission.port_range) if permission.port_range is not None else None
    for rule in rules:
        if rule.get("protocol") == permission.protocol and rule.get("port_range") == port_range:
            return rule
    return None


def patch_descriptions(desired: DesiredState, document: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of document with descriptions merged from desired.

    Raises:
        PermissionNotFoundError: On the first scope, group or rule miss.
    """
    patched = copy.deepcopy(document)
    merged = 0

    for scope in desired.scopes:
        label = scope_label(scope.vpc)
        groups = patched.get(scope.vpc or CLASSIC_SCOPE_KEY)

        for sg in scope.security_groups:
            for direction in Direction:
                permissions = sg.ingress if direction is Direction.INGRESS else sg.egress
                for permission in permissions:
                    if not permission.description:
                        continue

                    group = _find_group(groups, sg.name) if groups is not None else None
                    rule = _find_rule(group.get(direction.value, []), permission) if group else None
                    if rule is None:
                        error = PermissionNotFoundError(label, sg.name, direction, permission)
                        logger.error(str(error))
                        raise error

                    rule["description"] = permission.description
                    merged += 1

    logger.info("Merged rule descriptions", extra={"descriptions": merged})
    return patched


def updated_path(path: Path) -> Path:
    """Sibling path with the "-updated" suffix before the extension."""
    return path.with_name(f"{path.stem}{UPDATED_SUFFIX}{path.suffix}")


def patch_file(desired: DesiredState, path: Path) -> Path:
    """Patch an exported document file, writing the result next to it.

    The input file is left untouched. Nothing is written if any rule is
    missing.

    Returns:
        Path of the written document.
    """
    document = load_document(path)
    patched = patch_descriptions(desired, document)

    output = updated_path(path)
    output.write_text(dump_document(patched), encoding="utf-8")
    logger.info("Wrote patched document", extra={"path": str(output)})
    return output
