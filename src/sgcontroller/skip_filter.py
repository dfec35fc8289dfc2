"""Exclusion filters that scope which security groups are reconciled.

A group is skipped when any of the configured filters excludes it. Filters
are evaluated in a fixed order:

1. Name allow-list: names outside the list are skipped.
2. Name exclude patterns: names matching any regular expression are skipped.
3. Exclude tags: live groups carrying any of the tag keys are skipped.

The tag filter needs a live group. A group that only exists in the
declarative configuration has no live tags yet, so it cannot be excluded by
tag before it is created; once it exists, the tag filter applies to it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from .config import Config
from .state import SecurityGroupState

logger = logging.getLogger(__name__)


class SkipFilter:
    """Decides whether a named security group is excluded from reconciliation."""

    def __init__(
        self,
        sg_names: Iterable[str] | None = None,
        exclude_patterns: Iterable[re.Pattern[str] | str] = (),
        exclude_tags: Iterable[str] = (),
    ) -> None:
        """Initialize the filter.

        Args:
            sg_names: Name allow-list, or None to allow every name.
            exclude_patterns: Regular expressions matched with re.search.
            exclude_tags: Tag keys that exclude a live group.
        """
        self._sg_names = frozenset(sg_names) if sg_names is not None else None
        self._exclude_patterns = [re.compile(p) for p in exclude_patterns]
        self._exclude_tags = frozenset(exclude_tags)

    @classmethod
    def from_config(cls, config: Config) -> SkipFilter:
        return cls(
            sg_names=config.sg_names,
            exclude_patterns=config.exclude_patterns,
            exclude_tags=config.exclude_tags,
        )

    def should_skip(self, name: str, group: SecurityGroupState | None) -> bool:
        """Check if a security group is excluded.

        Args:
            name: Security group name.
            group: The live group, or None if it does not exist yet.

        Returns:
            True if the group must not be touched.
        """
        reason = self._skip_reason(name, group)
        if reason is not None:
            logger.debug("Skipping security group", extra={"sg_name": name, "reason": reason})
            return True
        return False

    def _skip_reason(self, name: str, group: SecurityGroupState | None) -> str | None:
        if self._sg_names is not None and name not in self._sg_names:
            return "not in name allow-list"

        for pattern in self._exclude_patterns:
            if pattern.search(name):
                return f"name matches {pattern.pattern!r}"

        if self._exclude_tags and group is not None:
            excluded = self._exclude_tags & group.tags.keys()
            if excluded:
                return f"tagged {sorted(excluded)}"

        return None
