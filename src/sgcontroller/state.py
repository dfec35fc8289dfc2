"""Observed security group state as read from the provider.

Observed entities are snapshots: the provider builds them from API
responses and the reconciler never mutates them. Every write goes through
the provider, which invalidates its read cache.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .keys import GroupKey, PermissionKey
from .models import PermissionSpec, PortRange, SecurityGroupSpec


class Direction(str, Enum):
    """Rule direction within a security group."""

    INGRESS = "ingress"
    EGRESS = "egress"


@dataclass(frozen=True)
class PermissionState:
    """A live ingress or egress rule.

    Attributes:
        protocol: Normalized protocol.
        port_range: Inclusive range, or None when the rule covers all ports.
        ip_ranges: IPv4 and IPv6 CIDR sources.
        groups: Source groups, by name when the group lives in the same
            scope and account, otherwise by group id.
        description: First non-empty description found on the sources.
    """

    protocol: str
    port_range: PortRange | None = None
    ip_ranges: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    description: str | None = None

    def key(self) -> PermissionKey:
        return PermissionKey.build(self.protocol, self.port_range)

    def matches(self, spec: PermissionSpec) -> bool:
        """Full attribute equality against a desired rule."""
        return (
            self.key() == spec.key()
            and sorted(self.ip_ranges) == sorted(spec.ip_ranges)
            and sorted(self.groups) == sorted(spec.groups)
            and (self.description or None) == spec.description
        )


@dataclass
class SecurityGroupState:
    """A live security group and its rules."""

    group_id: str
    name: str
    description: str
    owner_id: str = ""
    vpc_id: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    ingress: list[PermissionState] = field(default_factory=list)
    egress: list[PermissionState] = field(default_factory=list)

    @property
    def is_vpc(self) -> bool:
        return self.vpc_id is not None

    def key(self) -> GroupKey:
        return GroupKey(self.name)

    def permissions(self, direction: Direction) -> list[PermissionState]:
        return self.ingress if direction is Direction.INGRESS else self.egress

    def matches(self, spec: SecurityGroupSpec) -> bool:
        """Equality of the group-level attributes (rules are compared separately)."""
        return self.description == spec.description and self.tags == spec.tags
