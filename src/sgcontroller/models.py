"""Pydantic models for the declarative security group configuration.

These models provide:
1. Type-safe YAML/JSON parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Structural keys used to match desired entities against live ones

Desired models are frozen: they are constructed once per run and never
modified by reconciliation.
"""

from __future__ import annotations

import ipaddress
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .keys import GroupKey, PermissionKey

# =============================================================================
# Protocols and Port Ranges
# =============================================================================

ALL_PROTOCOLS = "all"

# EC2 reports well-known protocols by name and "-1" for all traffic
PROTOCOL_ALIASES: dict[str, str] = {
    "-1": ALL_PROTOCOLS,
    "any": ALL_PROTOCOLS,
    "6": "tcp",
    "17": "udp",
    "1": "icmp",
    "58": "icmpv6",
}

NAMED_PROTOCOLS = frozenset({"tcp", "udp", "icmp", "icmpv6", ALL_PROTOCOLS})

# Protocols for which EC2 always reports a port (or type/code) range
PORTED_PROTOCOLS = frozenset({"tcp", "udp"})
ICMP_PROTOCOLS = frozenset({"icmp", "icmpv6"})

MIN_PORT = -1  # ICMP "any type/code"
MAX_PORT = 65535


def normalize_protocol(value: Any) -> str:
    """Normalize a protocol to its canonical string form.

    Args:
        value: Protocol name or number ("tcp", "TCP", 6, "-1", "50").

    Returns:
        One of the named protocols, or a decimal protocol number string.

    Raises:
        ValueError: If the protocol is not recognized.
    """
    text = str(value).strip().lower()
    text = PROTOCOL_ALIASES.get(text, text)
    if text in NAMED_PROTOCOLS:
        return text
    if text.isdigit() and 0 <= int(text) <= 255:
        return str(int(text))
    raise ValueError(f"unsupported protocol: {value!r}")


def to_ec2_protocol(protocol: str) -> str:
    """Convert a normalized protocol to the EC2 IpProtocol value."""
    return "-1" if protocol == ALL_PROTOCOLS else protocol


class PortRange(BaseModel):
    """Inclusive port range, written literally as "begin..end".

    For ICMP rules begin and end carry the ICMP type and code.
    """

    model_config = {"frozen": True}

    begin: Annotated[int, Field(ge=MIN_PORT, le=MAX_PORT)]
    end: Annotated[int, Field(ge=MIN_PORT, le=MAX_PORT)]

    def __str__(self) -> str:
        return f"{self.begin}..{self.end}"

    @classmethod
    def parse(cls, value: Any) -> PortRange | None:
        """Parse a port range from its literal or shorthand forms.

        Accepts None, a PortRange, an int (single port), "80", "80..90",
        or a two-element list.
        """
        if value is None or isinstance(value, PortRange):
            return value
        if isinstance(value, bool):
            raise ValueError(f"invalid port range: {value!r}")
        try:
            if isinstance(value, int):
                return cls(begin=value, end=value)
            if isinstance(value, list | tuple) and len(value) == 2:
                return cls(begin=int(value[0]), end=int(value[1]))
            if isinstance(value, str):
                begin, sep, end = value.strip().partition("..")
                return cls(begin=int(begin), end=int(end if sep else begin))
        except (ValidationError, ValueError) as e:
            raise ValueError(f"invalid port range: {value!r}") from e
        raise ValueError(f"invalid port range: {value!r}")


def default_port_range(protocol: str) -> PortRange | None:
    """Port range EC2 reports when a rule covers every port of a protocol."""
    if protocol in PORTED_PROTOCOLS:
        return PortRange(begin=0, end=MAX_PORT)
    if protocol in ICMP_PROTOCOLS:
        return PortRange(begin=-1, end=-1)
    return None


# =============================================================================
# Permissions
# =============================================================================


class PermissionSpec(BaseModel):
    """One desired ingress or egress rule."""

    model_config = {"extra": "ignore", "frozen": True}

    protocol: str
    port_range: PortRange | None = Field(None, validate_default=True)
    ip_ranges: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    description: str | None = None

    @field_validator("protocol", mode="before")
    @classmethod
    def validate_protocol(cls, v: Any) -> str:
        return normalize_protocol(v)

    @field_validator("port_range", mode="before")
    @classmethod
    def validate_port_range(cls, v: Any, info: ValidationInfo) -> PortRange | None:
        port_range = PortRange.parse(v)
        protocol = info.data.get("protocol")
        if protocol is None:
            return port_range
        if protocol == ALL_PROTOCOLS and port_range is not None:
            raise ValueError("port_range cannot be set when protocol is 'all'")
        ordered = port_range is None or port_range.begin <= port_range.end
        if protocol in PORTED_PROTOCOLS and not ordered:
            raise ValueError(f"port range begin is greater than end: {port_range}")
        if port_range is None:
            # EC2 reports an explicit full range for these protocols
            return default_port_range(protocol)
        return port_range

    @field_validator("ip_ranges")
    @classmethod
    def validate_cidrs(cls, v: list[str]) -> list[str]:
        for cidr in v:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid CIDR {cidr!r}: {e}") from e
        return v

    @field_validator("description")
    @classmethod
    def empty_description_is_none(cls, v: str | None) -> str | None:
        return v or None

    def key(self) -> PermissionKey:
        """Structural key: (protocol, port range)."""
        return PermissionKey.build(self.protocol, self.port_range)


def _check_unique_permissions(permissions: list[PermissionSpec], direction: str) -> None:
    seen: set[PermissionKey] = set()
    for permission in permissions:
        key = permission.key()
        if key in seen:
            raise ValueError(f"duplicate {direction} permission: {key}")
        seen.add(key)


# =============================================================================
# Security Groups and Scopes
# =============================================================================


class SecurityGroupSpec(BaseModel):
    """Desired security group.

    ``egress`` is reconciled only in a VPC scope. An empty list there removes
    the allow-all egress rule EC2 adds to every new VPC group.
    """

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: Annotated[str, Field(min_length=1, max_length=255)]
    tags: dict[str, str] = Field(default_factory=dict)
    ingress: list[PermissionSpec] = Field(default_factory=list)
    egress: list[PermissionSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_permissions(self) -> SecurityGroupSpec:
        _check_unique_permissions(self.ingress, "ingress")
        _check_unique_permissions(self.egress, "egress")
        return self

    def key(self) -> GroupKey:
        return GroupKey(self.name)


class ScopeSpec(BaseModel):
    """Security groups declared for one VPC, or for the classic scope."""

    model_config = {"extra": "ignore", "frozen": True}

    vpc: str | None = None
    security_groups: list[SecurityGroupSpec] = Field(default_factory=list)

    @field_validator("vpc")
    @classmethod
    def validate_vpc(cls, v: str | None) -> str | None:
        if not v:
            return None
        if not v.startswith("vpc-"):
            raise ValueError(f"vpc must be a VPC id (vpc-...): {v}")
        return v

    @field_validator("security_groups")
    @classmethod
    def validate_unique_names(cls, v: list[SecurityGroupSpec]) -> list[SecurityGroupSpec]:
        names = [group.name for group in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate security group names: {duplicates}")
        return v


class DesiredState(BaseModel):
    """The full declarative configuration for one reconciliation run."""

    model_config = {"extra": "ignore", "frozen": True}

    scopes: list[ScopeSpec] = Field(default_factory=list)

    @field_validator("scopes")
    @classmethod
    def validate_unique_scopes(cls, v: list[ScopeSpec]) -> list[ScopeSpec]:
        seen: set[str | None] = set()
        for scope in v:
            if scope.vpc in seen:
                raise ValueError(f"scope declared more than once: {scope.vpc or 'classic'}")
            seen.add(scope.vpc)
        return v

    def scope(self, vpc_id: str | None) -> ScopeSpec | None:
        """Return the declared scope for a VPC id (None for classic)."""
        for scope in self.scopes:
            if scope.vpc == vpc_id:
                return scope
        return None
