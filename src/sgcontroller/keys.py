"""Structural keys for matching desired and observed entities.

Desired and observed security groups are matched by name, and permissions
within one group and direction by (protocol, port range). Keys are explicit
frozen dataclasses so that two keys compare equal only when every component
has the same normalized value.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")


class _Empty:
    """Sentinel for an absent key component."""

    _instance: _Empty | None = None

    def __new__(cls) -> _Empty:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "EMPTY"

    def __bool__(self) -> bool:
        return False


EMPTY = _Empty()


@dataclass(frozen=True)
class GroupKey:
    """Identity of a security group inside one network scope."""

    name: str


@dataclass(frozen=True)
class PermissionKey:
    """Identity of a permission inside one group and direction.

    Attributes:
        protocol: Normalized protocol string ("tcp", "udp", "all", "50", ...).
        port_range: Literal "begin..end" form, or EMPTY for all ports.
    """

    protocol: str
    port_range: str | _Empty = EMPTY

    @classmethod
    def build(cls, protocol: str, port_range: object | None) -> PermissionKey:
        """Build a key, mapping an absent port range to EMPTY."""
        return cls(protocol, EMPTY if port_range is None else str(port_range))

    def __str__(self) -> str:
        if self.port_range is EMPTY:
            return self.protocol
        return f"{self.protocol} {self.port_range}"


def collect_by_key(
    items: Iterable[T],
    key: Callable[[T], Hashable],
    *,
    has_many: bool = False,
) -> dict[Any, Any]:
    """Index items by a computed key.

    Args:
        items: Entities to index, in order.
        key: Function returning the key for an entity.
        has_many: If True, values are lists of every entity sharing a key
            (e.g. security groups bucketed by VPC). Otherwise the last
            entity for a key wins.

    Returns:
        Insertion-ordered dict of key to entity (or list of entities).
    """
    collected: dict[Any, Any] = {}
    for item in items:
        item_key = key(item)
        if has_many:
            collected.setdefault(item_key, []).append(item)
        else:
            collected[item_key] = item
    return collected
