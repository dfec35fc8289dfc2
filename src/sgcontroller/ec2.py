"""EC2 security group provider backed by boto3.

Translates between EC2 API shapes (IpPermissions, UserIdGroupPairs, ...)
and the observed/desired models. Reads go through a per-run RunCache;
every write invalidates it.

EC2 groups all sources of one (protocol, port range) into a single
IpPermission, and stores descriptions per source. A permission's
description is therefore written to every source and read back from the
first source that carries one.

Managed prefix lists (``pl-`` ids) are carried alongside source groups in
a permission's ``groups``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import (
    ALL_PROTOCOLS,
    PermissionSpec,
    PortRange,
    SecurityGroupSpec,
    normalize_protocol,
    to_ec2_protocol,
)
from .provider import ProviderError, RunCache
from .state import Direction, PermissionState, SecurityGroupState

logger = logging.getLogger(__name__)

SECURITY_GROUPS_CACHE_KEY = "security_groups"
DRY_RUN_GROUP_ID_PREFIX = "sg-dry-run-"
PREFIX_LIST_ID_PREFIX = "pl-"

# Egress rule EC2 adds to every new VPC security group
DEFAULT_VPC_EGRESS = PermissionState(protocol=ALL_PROTOCOLS, ip_ranges=("0.0.0.0/0",))

_AUTHORIZE = {
    Direction.INGRESS: "authorize_security_group_ingress",
    Direction.EGRESS: "authorize_security_group_egress",
}
_REVOKE = {
    Direction.INGRESS: "revoke_security_group_ingress",
    Direction.EGRESS: "revoke_security_group_egress",
}
_UPDATE_DESCRIPTIONS = {
    Direction.INGRESS: "update_security_group_rule_descriptions_ingress",
    Direction.EGRESS: "update_security_group_rule_descriptions_egress",
}


def _tags_to_dict(tags: list[dict[str, str]] | None) -> dict[str, str]:
    return {tag["Key"]: tag.get("Value", "") for tag in tags or []}


class Ec2SecurityGroupProvider:
    """SecurityGroupProvider implementation for Amazon EC2.

    Args:
        session: boto3 session for the target account and region.
        cache: Read cache for this run (a fresh one is created if omitted).
        dry_run: Log writes instead of performing them.
    """

    def __init__(
        self,
        session: boto3.session.Session,
        cache: RunCache | None = None,
        dry_run: bool = False,
    ) -> None:
        self._session = session
        self._client = session.client("ec2")
        self._cache = cache if cache is not None else RunCache()
        self._dry_run = dry_run
        self._owner_id: str | None = None
        # Groups "created" during a dry run, so later passes can resolve them
        self._dry_run_groups: dict[tuple[str | None, str], SecurityGroupState] = {}

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def owner_id(self) -> str:
        """Account id owning the managed security groups."""
        if self._owner_id is None:
            try:
                identity = self._session.client("sts").get_caller_identity()
            except (ClientError, BotoCoreError) as e:
                raise ProviderError(f"get_caller_identity failed: {e}") from e
            self._owner_id = identity["Account"]
        return self._owner_id

    def list_security_groups(self) -> list[SecurityGroupState]:
        """List all security groups, served from the run cache when possible."""
        return self._cache.get_or_load(SECURITY_GROUPS_CACHE_KEY, self._load_security_groups)

    def _load_security_groups(self) -> list[SecurityGroupState]:
        raw_groups = list(self._describe_security_groups())
        names_by_id = {raw["GroupId"]: (raw.get("VpcId"), raw["GroupName"]) for raw in raw_groups}
        groups = [self._to_group_state(raw, names_by_id) for raw in raw_groups]
        logger.debug("Listed security groups", extra={"count": len(groups)})
        return groups

    def _describe_security_groups(self, **kwargs: Any) -> Iterator[dict[str, Any]]:
        try:
            paginator = self._client.get_paginator("describe_security_groups")
            for page in paginator.paginate(**kwargs):
                yield from page.get("SecurityGroups", [])
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"describe_security_groups failed: {e}") from e

    def _to_group_state(
        self,
        raw: dict[str, Any],
        names_by_id: dict[str, tuple[str | None, str]],
    ) -> SecurityGroupState:
        vpc_id = raw.get("VpcId") or None
        owner_id = raw.get("OwnerId", "")
        return SecurityGroupState(
            group_id=raw["GroupId"],
            name=raw["GroupName"],
            description=raw.get("Description", ""),
            owner_id=owner_id,
            vpc_id=vpc_id,
            tags=_tags_to_dict(raw.get("Tags")),
            ingress=[
                self._to_permission_state(perm, vpc_id, owner_id, names_by_id)
                for perm in raw.get("IpPermissions", [])
            ],
            egress=[
                self._to_permission_state(perm, vpc_id, owner_id, names_by_id)
                for perm in raw.get("IpPermissionsEgress", [])
            ],
        )

    def _to_permission_state(
        self,
        perm: dict[str, Any],
        vpc_id: str | None,
        owner_id: str,
        names_by_id: dict[str, tuple[str | None, str]],
    ) -> PermissionState:
        protocol = normalize_protocol(perm["IpProtocol"])
        port_range = None
        if protocol != ALL_PROTOCOLS and perm.get("FromPort") is not None:
            port_range = PortRange(begin=perm["FromPort"], end=perm["ToPort"])

        descriptions: list[str] = []
        ip_ranges: list[str] = []
        for entry in perm.get("IpRanges", []):
            ip_ranges.append(entry["CidrIp"])
            descriptions.append(entry.get("Description", ""))
        for entry in perm.get("Ipv6Ranges", []):
            ip_ranges.append(entry["CidrIpv6"])
            descriptions.append(entry.get("Description", ""))

        groups: list[str] = []
        for pair in perm.get("UserIdGroupPairs", []):
            group_id = pair["GroupId"]
            same_account = pair.get("UserId", owner_id) == owner_id
            source = names_by_id.get(group_id)
            if same_account and source is not None and source[0] == vpc_id:
                groups.append(source[1])
            else:
                groups.append(group_id)
            descriptions.append(pair.get("Description", ""))
        for entry in perm.get("PrefixListIds", []):
            groups.append(entry["PrefixListId"])
            descriptions.append(entry.get("Description", ""))

        return PermissionState(
            protocol=protocol,
            port_range=port_range,
            ip_ranges=tuple(ip_ranges),
            groups=tuple(groups),
            description=next((d for d in descriptions if d), None),
        )

    def _resolve_group_id(self, vpc_id: str | None, ref: str) -> str:
        """Resolve a source group reference (name in scope, or sg- id) to a group id."""
        if ref.startswith("sg-"):
            return ref
        for group in self.list_security_groups():
            if group.vpc_id == vpc_id and group.name == ref:
                return group.group_id
        pending = self._dry_run_groups.get((vpc_id, ref))
        if pending is not None:
            return pending.group_id
        raise ProviderError(f"Security group `{ref}` not found in `{vpc_id or 'classic'}`")

    # =========================================================================
    # Writes
    # =========================================================================

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        """Invoke a mutating EC2 API call, honoring dry run."""
        if self._dry_run:
            return {}
        try:
            return getattr(self._client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"{operation} failed: {e}") from e
        finally:
            self._cache.invalidate()

    def create_security_group(
        self, name: str, vpc_id: str | None, description: str, tags: dict[str, str]
    ) -> SecurityGroupState:
        logger.info(
            "Create SecurityGroup",
            extra={"sg_name": name, "vpc_id": vpc_id, "dry_run": self._dry_run},
        )

        params: dict[str, Any] = {"GroupName": name, "Description": description}
        if vpc_id is not None:
            params["VpcId"] = vpc_id
        response = self._call("create_security_group", **params)

        if self._dry_run:
            group = SecurityGroupState(
                group_id=f"{DRY_RUN_GROUP_ID_PREFIX}{name}",
                name=name,
                description=description,
                owner_id=self._owner_id or "",
                vpc_id=vpc_id,
                tags=dict(tags),
                egress=[DEFAULT_VPC_EGRESS] if vpc_id is not None else [],
            )
            self._dry_run_groups[(vpc_id, name)] = group
            return group

        group_id = response["GroupId"]
        if tags:
            self._call(
                "create_tags",
                Resources=[group_id],
                Tags=[{"Key": key, "Value": value} for key, value in tags.items()],
            )

        for group in self.list_security_groups():
            if group.group_id == group_id:
                return group
        raise ProviderError(f"Security group `{name}` ({group_id}) not found after creation")

    def update_security_group(
        self, group: SecurityGroupState, spec: SecurityGroupSpec
    ) -> list[str]:
        logger.info(
            "Update SecurityGroup",
            extra={"sg_name": group.name, "vpc_id": group.vpc_id, "dry_run": self._dry_run},
        )
        advisories: list[str] = []

        if group.description != spec.description:
            advisories.append(
                f"`{group.name}`: description cannot be updated in place "
                f"({group.description!r} != {spec.description!r})"
            )

        removed = [key for key in group.tags if key not in spec.tags]
        changed = {key: value for key, value in spec.tags.items() if group.tags.get(key) != value}
        if removed:
            self._call(
                "delete_tags",
                Resources=[group.group_id],
                Tags=[{"Key": key} for key in removed],
            )
        if changed:
            self._call(
                "create_tags",
                Resources=[group.group_id],
                Tags=[{"Key": key, "Value": value} for key, value in changed.items()],
            )
        return advisories

    def delete_security_group(self, group: SecurityGroupState) -> None:
        logger.info(
            "Delete SecurityGroup",
            extra={"sg_name": group.name, "vpc_id": group.vpc_id, "dry_run": self._dry_run},
        )
        self._call("delete_security_group", GroupId=group.group_id)

    def create_permission(
        self, group: SecurityGroupState, direction: Direction, spec: PermissionSpec
    ) -> None:
        self._log_permission("Create", group, direction, spec.key())
        permission = self._ip_permission(
            group, spec.protocol, spec.port_range, spec.ip_ranges, spec.groups, spec.description
        )
        self._call(_AUTHORIZE[direction], GroupId=group.group_id, IpPermissions=[permission])

    def update_permission(
        self,
        group: SecurityGroupState,
        direction: Direction,
        current: PermissionState,
        spec: PermissionSpec,
    ) -> None:
        self._log_permission("Update", group, direction, current.key())

        removed_ranges = [r for r in current.ip_ranges if r not in spec.ip_ranges]
        removed_groups = [g for g in current.groups if g not in spec.groups]
        if removed_ranges or removed_groups:
            permission = self._ip_permission(
                group, current.protocol, current.port_range, removed_ranges, removed_groups,
                current.description,
            )
            self._call(_REVOKE[direction], GroupId=group.group_id, IpPermissions=[permission])

        added_ranges = [r for r in spec.ip_ranges if r not in current.ip_ranges]
        added_groups = [g for g in spec.groups if g not in current.groups]
        if added_ranges or added_groups:
            permission = self._ip_permission(
                group, spec.protocol, spec.port_range, added_ranges, added_groups, spec.description
            )
            self._call(_AUTHORIZE[direction], GroupId=group.group_id, IpPermissions=[permission])

        kept_ranges = [r for r in spec.ip_ranges if r in current.ip_ranges]
        kept_groups = [g for g in spec.groups if g in current.groups]
        if (current.description or None) != spec.description and (kept_ranges or kept_groups):
            permission = self._ip_permission(
                group, spec.protocol, spec.port_range, kept_ranges, kept_groups, spec.description
            )
            self._call(
                _UPDATE_DESCRIPTIONS[direction], GroupId=group.group_id, IpPermissions=[permission]
            )

    def delete_permission(
        self, group: SecurityGroupState, direction: Direction, current: PermissionState
    ) -> None:
        self._log_permission("Delete", group, direction, current.key())
        permission = self._ip_permission(
            group, current.protocol, current.port_range, current.ip_ranges, current.groups,
            current.description,
        )
        self._call(_REVOKE[direction], GroupId=group.group_id, IpPermissions=[permission])

    def _ip_permission(
        self,
        group: SecurityGroupState,
        protocol: str,
        port_range: PortRange | None,
        ip_ranges: Any,
        groups: Any,
        description: str | None,
    ) -> dict[str, Any]:
        """Build an EC2 IpPermission for the given sources."""
        described = {"Description": description} if description else {}
        permission: dict[str, Any] = {"IpProtocol": to_ec2_protocol(protocol)}
        if port_range is not None:
            permission["FromPort"] = port_range.begin
            permission["ToPort"] = port_range.end

        ipv4 = [{"CidrIp": cidr, **described} for cidr in ip_ranges if ":" not in cidr]
        ipv6 = [{"CidrIpv6": cidr, **described} for cidr in ip_ranges if ":" in cidr]
        pairs = [
            {"GroupId": self._resolve_group_id(group.vpc_id, ref), **described}
            for ref in groups
            if not ref.startswith(PREFIX_LIST_ID_PREFIX)
        ]
        prefix_lists = [
            {"PrefixListId": ref, **described} for ref in groups if ref.startswith(PREFIX_LIST_ID_PREFIX)
        ]
        if ipv4:
            permission["IpRanges"] = ipv4
        if ipv6:
            permission["Ipv6Ranges"] = ipv6
        if pairs:
            permission["UserIdGroupPairs"] = pairs
        if prefix_lists:
            permission["PrefixListIds"] = prefix_lists
        return permission

    def _log_permission(
        self, action: str, group: SecurityGroupState, direction: Direction, key: object
    ) -> None:
        logger.info(
            f"{action} Permission",
            extra={
                "sg_name": group.name,
                "vpc_id": group.vpc_id,
                "direction": direction.value,
                "permission": str(key),
                "dry_run": self._dry_run,
            },
        )
