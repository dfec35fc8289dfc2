"""Export live security groups.

The exported-state document maps a scope key (VPC id, or "" for classic) to
a mapping of group id to group:

    {
      "vpc-12345678": {
        "sg-0abc": {
          "name": "web",
          "description": "web servers",
          "owner_id": "123456789012",
          "tags": {"Name": "web"},
          "ingress": [
            {"protocol": "tcp", "port_range": "80..80",
             "ip_ranges": ["0.0.0.0/0"], "groups": [], "description": "http"}
          ],
          "egress": []
        }
      }
    }

The document can be converted to the declarative YAML form, or loaded back
as desired state with ``--format json``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import yaml

from .provider import SecurityGroupProvider
from .spec_loader import CLASSIC_SCOPE_KEY
from .state import PermissionState, SecurityGroupState

logger = logging.getLogger(__name__)


def permission_to_dict(permission: PermissionState) -> dict[str, Any]:
    return {
        "protocol": permission.protocol,
        "port_range": str(permission.port_range) if permission.port_range else None,
        "ip_ranges": sorted(permission.ip_ranges),
        "groups": sorted(permission.groups),
        "description": permission.description,
    }


def group_to_dict(group: SecurityGroupState) -> dict[str, Any]:
    return {
        "name": group.name,
        "description": group.description,
        "owner_id": group.owner_id,
        "tags": dict(sorted(group.tags.items())),
        "ingress": [permission_to_dict(p) for p in group.ingress],
        "egress": [permission_to_dict(p) for p in group.egress] if group.is_vpc else [],
    }


def export_document(provider: SecurityGroupProvider) -> dict[str, Any]:
    """Build the exported-state document from live state."""
    document: dict[str, dict[str, Any]] = {}
    groups = sorted(
        provider.list_security_groups(),
        key=lambda group: (group.vpc_id or CLASSIC_SCOPE_KEY, group.name),
    )
    for group in groups:
        scope_key = group.vpc_id or CLASSIC_SCOPE_KEY
        document.setdefault(scope_key, {})[group.group_id] = group_to_dict(group)

    logger.info(
        "Exported security groups",
        extra={"scopes": len(document), "security_groups": len(groups)},
    )
    return document


def dump_document(document: dict[str, Any]) -> str:
    """Serialize a document as pretty-printed JSON."""
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def _declarative_permission(rule: dict[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {"protocol": rule["protocol"]}
    if rule.get("port_range"):
        converted["port_range"] = rule["port_range"]
    if rule.get("ip_ranges"):
        converted["ip_ranges"] = list(rule["ip_ranges"])
    if rule.get("groups"):
        converted["groups"] = list(rule["groups"])
    if rule.get("description"):
        converted["description"] = rule["description"]
    return converted


def to_declarative(document: dict[str, Any]) -> dict[str, Any]:
    """Convert an exported-state document to the declarative YAML structure."""
    scopes = []
    for scope_key, groups in document.items():
        security_groups = []
        for group in groups.values():
            converted: dict[str, Any] = {
                "name": group["name"],
                "description": group["description"],
            }
            if group.get("tags"):
                converted["tags"] = dict(group["tags"])
            converted["ingress"] = [_declarative_permission(r) for r in group.get("ingress", [])]
            if scope_key != CLASSIC_SCOPE_KEY:
                converted["egress"] = [_declarative_permission(r) for r in group.get("egress", [])]
            security_groups.append(converted)

        scope: dict[str, Any] = {}
        if scope_key != CLASSIC_SCOPE_KEY:
            scope["vpc"] = scope_key
        scope["security_groups"] = security_groups
        scopes.append(scope)
    return {"scopes": scopes}


def dump_declarative(document: dict[str, Any]) -> str:
    """Convert an exported-state document to declarative YAML text."""
    return yaml.safe_dump(to_declarative(document), sort_keys=False, default_flow_style=False)
