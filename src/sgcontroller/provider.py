"""Provider interface for reading and writing security groups.

The reconciler only talks to a SecurityGroupProvider. The EC2 implementation
lives in ec2.py; tests use an in-memory implementation.

Read calls may be served from a RunCache for the duration of one run. Every
write invalidates the cache so later reads observe it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable
from typing import Any, Protocol, TypeVar

from .models import PermissionSpec, SecurityGroupSpec
from .state import Direction, PermissionState, SecurityGroupState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderError(Exception):
    """Raised when a provider call fails.

    Provider errors are not retried; they abort the rest of the run.
    """

    pass


class RunCache:
    """Read-through cache for provider queries within one run."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, Any] = {}
        self.hits = 0
        self.misses = 0

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T:
        """Return the cached value for key, loading it on a miss."""
        if key in self._entries:
            self.hits += 1
            return self._entries[key]
        self.misses += 1
        value = loader()
        self._entries[key] = value
        return value

    def invalidate(self) -> None:
        """Drop every cached entry after a write."""
        if self._entries:
            logger.debug("Invalidating provider cache", extra={"entries": len(self._entries)})
        self._entries.clear()


class SecurityGroupProvider(Protocol):
    """Operations the reconciler needs from a cloud provider."""

    @property
    def owner_id(self) -> str: ...

    def list_security_groups(self) -> list[SecurityGroupState]:
        """List every security group visible to the account, in all scopes."""
        ...

    def create_security_group(
        self, name: str, vpc_id: str | None, description: str, tags: dict[str, str]
    ) -> SecurityGroupState:
        """Create a group with no ingress and the provider's default egress."""
        ...

    def update_security_group(
        self, group: SecurityGroupState, spec: SecurityGroupSpec
    ) -> list[str]:
        """Apply mutable group attributes.

        Returns:
            Advisory messages for attributes the provider cannot change.
        """
        ...

    def delete_security_group(self, group: SecurityGroupState) -> None: ...

    def create_permission(
        self, group: SecurityGroupState, direction: Direction, spec: PermissionSpec
    ) -> None: ...

    def update_permission(
        self,
        group: SecurityGroupState,
        direction: Direction,
        current: PermissionState,
        spec: PermissionSpec,
    ) -> None:
        """Converge a rule's sources and description to the desired rule."""
        ...

    def delete_permission(
        self, group: SecurityGroupState, direction: Direction, current: PermissionState
    ) -> None: ...
