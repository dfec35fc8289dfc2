"""Security group reconciliation engine.

This module converges live security groups to the declarative configuration:

1. Walk the declared network scopes (VPCs and the classic scope)
2. Per scope, match desired and observed groups by name
3. Create missing groups, update changed ones, then clear and delete
   groups that are no longer declared
4. Per group and direction, match rules by (protocol, port range) and
   apply updates and deletes before creates

Operations are applied eagerly. A provider failure stops the run; changes
made before the failure stay applied.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import CLASSIC_SCOPE_TOKEN, Config
from .keys import GroupKey, PermissionKey, collect_by_key
from .models import DesiredState, PermissionSpec, SecurityGroupSpec
from .provider import ProviderError, SecurityGroupProvider
from .skip_filter import SkipFilter
from .state import Direction, PermissionState, SecurityGroupState

logger = logging.getLogger(__name__)

IMPLICIT_EGRESS_ADVISORY = "`egress any 0.0.0.0/0` is implicitly defined"


def scope_label(vpc_id: str | None) -> str:
    """Human-readable scope name (the VPC id, or "classic")."""
    return vpc_id or CLASSIC_SCOPE_TOKEN


@dataclass
class ChangeSummary:
    """Counts of mutating operations issued during a run."""

    groups_created: int = 0
    groups_updated: int = 0
    groups_deleted: int = 0
    permissions_created: int = 0
    permissions_updated: int = 0
    permissions_deleted: int = 0

    @property
    def total(self) -> int:
        """Total mutating operations."""
        return (
            self.groups_created
            + self.groups_updated
            + self.groups_deleted
            + self.permissions_created
            + self.permissions_updated
            + self.permissions_deleted
        )


@dataclass
class ReconcileResult:
    """Result of a single reconciliation run."""

    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    changes: ChangeSummary = field(default_factory=ChangeSummary)
    scopes_reconciled: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def updated(self) -> bool:
        """Whether any mutating operation was issued."""
        return self.changes.total > 0

    def advise(self, message: str, **extra: object) -> None:
        """Record and log a non-fatal advisory."""
        self.warnings.append(message)
        logger.warning(message, extra=extra)


class PermissionReconciler:
    """Diffs and applies the rules of one group and direction."""

    def __init__(self, provider: SecurityGroupProvider, result: ReconcileResult) -> None:
        self._provider = provider
        self._result = result

    def reconcile(
        self,
        group: SecurityGroupState,
        direction: Direction,
        desired: Sequence[PermissionSpec],
        observed: Sequence[PermissionState],
    ) -> None:
        """Converge observed rules to the desired rules.

        Observed rules are updated or deleted first, then every desired rule
        without an observed counterpart is created, in desired order.
        """
        desired_by_key: dict[PermissionKey, PermissionSpec] = collect_by_key(
            desired, key=lambda permission: permission.key()
        )
        observed_by_key: dict[PermissionKey, PermissionState] = collect_by_key(
            observed, key=lambda permission: permission.key()
        )

        changes = self._result.changes
        for key, current in observed_by_key.items():
            wanted = desired_by_key.get(key)
            if wanted is None:
                self._provider.delete_permission(group, direction, current)
                changes.permissions_deleted += 1
            elif not current.matches(wanted):
                self._provider.update_permission(group, direction, current, wanted)
                changes.permissions_updated += 1

        remaining = [spec for key, spec in desired_by_key.items() if key not in observed_by_key]
        for spec in remaining:
            self._provider.create_permission(group, direction, spec)
            changes.permissions_created += 1


class SecurityGroupReconciler:
    """Diffs and applies the security groups of one network scope.

    Runs four separate passes so that a group is never deleted while a
    same-named group is still being created, and so that rules referencing
    other groups are removed before any group deletion is attempted:

    1. Create missing groups
    2. Update existing groups and their rules
    3. Clear the rules of undeclared groups
    4. Delete undeclared groups
    """

    def __init__(
        self,
        provider: SecurityGroupProvider,
        skip_filter: SkipFilter,
        result: ReconcileResult,
    ) -> None:
        self._provider = provider
        self._skip_filter = skip_filter
        self._result = result
        self._permissions = PermissionReconciler(provider, result)

    def reconcile(
        self,
        vpc_id: str | None,
        desired: Sequence[SecurityGroupSpec],
        observed: Sequence[SecurityGroupState],
    ) -> None:
        desired_by_key: dict[GroupKey, SecurityGroupSpec] = collect_by_key(
            desired, key=lambda group: group.key()
        )
        observed_by_key: dict[GroupKey, SecurityGroupState] = collect_by_key(
            observed, key=lambda group: group.key()
        )

        resolved = self._create_pass(vpc_id, desired_by_key, observed_by_key)
        self._update_pass(vpc_id, desired_by_key, resolved)

        undeclared = [
            group for key, group in observed_by_key.items() if key not in desired_by_key
        ]
        self._clear_pass(vpc_id, undeclared)
        self._delete_pass(undeclared)

    def _create_pass(
        self,
        vpc_id: str | None,
        desired_by_key: dict[GroupKey, SecurityGroupSpec],
        observed_by_key: dict[GroupKey, SecurityGroupState],
    ) -> dict[GroupKey, SecurityGroupState]:
        resolved = dict(observed_by_key)
        for key, spec in desired_by_key.items():
            if key in resolved or self._skip_filter.should_skip(spec.name, None):
                continue

            group = self._provider.create_security_group(
                spec.name, vpc_id, spec.description, dict(spec.tags)
            )
            self._result.changes.groups_created += 1
            self._advise_egress(vpc_id, spec)
            resolved[key] = group
        return resolved

    def _update_pass(
        self,
        vpc_id: str | None,
        desired_by_key: dict[GroupKey, SecurityGroupSpec],
        resolved: dict[GroupKey, SecurityGroupState],
    ) -> None:
        for key, spec in desired_by_key.items():
            group = resolved.get(key)
            if group is None or self._skip_filter.should_skip(spec.name, group):
                continue

            if not group.matches(spec):
                for advisory in self._provider.update_security_group(group, spec):
                    self._result.advise(advisory, sg_name=spec.name, scope=scope_label(vpc_id))
                self._result.changes.groups_updated += 1

            self._permissions.reconcile(group, Direction.INGRESS, spec.ingress, group.ingress)

            if vpc_id is not None:
                self._permissions.reconcile(group, Direction.EGRESS, spec.egress, group.egress)

    def _clear_pass(self, vpc_id: str | None, undeclared: list[SecurityGroupState]) -> None:
        changes = self._result.changes
        for group in undeclared:
            if self._skip_filter.should_skip(group.name, group):
                continue

            for permission in group.ingress:
                self._provider.delete_permission(group, Direction.INGRESS, permission)
                changes.permissions_deleted += 1

            if vpc_id is not None:
                for permission in group.egress:
                    self._provider.delete_permission(group, Direction.EGRESS, permission)
                    changes.permissions_deleted += 1

    def _delete_pass(self, undeclared: list[SecurityGroupState]) -> None:
        for group in undeclared:
            if self._skip_filter.should_skip(group.name, group):
                continue

            self._provider.delete_security_group(group)
            self._result.changes.groups_deleted += 1

    def _advise_egress(self, vpc_id: str | None, spec: SecurityGroupSpec) -> None:
        extra = {"sg_name": spec.name, "scope": scope_label(vpc_id)}
        if vpc_id is None:
            if spec.egress:
                self._result.advise("egress rules are ignored outside a VPC", **extra)
        elif not spec.egress:
            self._result.advise(IMPLICIT_EGRESS_ADVISORY, **extra)


class Reconciler:
    """Walks the declared network scopes and reconciles each one.

    Scopes are processed in declaration order. A declared scope that does
    not exist on the provider side is reported and skipped; nothing is
    deleted for it.
    """

    def __init__(self, config: Config, provider: SecurityGroupProvider) -> None:
        """Initialize reconciler.

        Args:
            config: Validated configuration (filters, scope allow-list, dry run).
            provider: Provider used for every read and write.
        """
        self._config = config
        self._provider = provider
        self._skip_filter = SkipFilter.from_config(config)

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    def apply(self, desired: DesiredState) -> ReconcileResult:
        """Run one reconciliation pass over every declared scope.

        Provider failures are not raised: they are logged and stored on
        ``result.error``, and the remaining scopes are not processed.
        """
        result = ReconcileResult(dry_run=self._config.dry_run)
        logger.info(
            "Starting reconciliation",
            extra={"scopes": len(desired.scopes), "dry_run": self._config.dry_run},
        )

        try:
            observed_by_scope: dict[str | None, list[SecurityGroupState]] = collect_by_key(
                self._provider.list_security_groups(),
                key=lambda group: group.vpc_id,
                has_many=True,
            )

            for scope in desired.scopes:
                label = scope_label(scope.vpc)
                if not self._scope_allowed(scope.vpc):
                    logger.debug("Scope not in allow-list", extra={"scope": label})
                    continue

                observed = observed_by_scope.get(scope.vpc)
                if observed is None:
                    result.advise(f"EC2 `{label}` is not found", scope=label)
                    continue

                logger.info("Reconciling scope", extra={"scope": label})
                SecurityGroupReconciler(self._provider, self._skip_filter, result).reconcile(
                    scope.vpc, scope.security_groups, observed
                )
                result.scopes_reconciled.append(label)
        except ProviderError as e:
            logger.error("Provider error", extra={"error": str(e)})
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    def _scope_allowed(self, vpc_id: str | None) -> bool:
        if self._config.vpcs is None:
            return True
        return any(
            (entry == CLASSIC_SCOPE_TOKEN and vpc_id is None) or entry == vpc_id
            for entry in self._config.vpcs
        )

    def _log_result(self, result: ReconcileResult) -> None:
        extra = {
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "scopes_reconciled": result.scopes_reconciled,
            "groups_created": result.changes.groups_created,
            "groups_updated": result.changes.groups_updated,
            "groups_deleted": result.changes.groups_deleted,
            "permissions_created": result.changes.permissions_created,
            "permissions_updated": result.changes.permissions_updated,
            "permissions_deleted": result.changes.permissions_deleted,
            "warnings": len(result.warnings),
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.updated:
            logger.info("Reconciliation applied changes", extra=extra)
        else:
            logger.info("No changes", extra=extra)
