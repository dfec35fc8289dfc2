"""Configuration management with validation.

All knobs are validated at construction time so that a bad exclude pattern
or scope id fails before any provider call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any


class InputFormat(str, Enum):
    """Supported declarative input formats."""

    YAML = "yaml"
    JSON = "json"  # exported-state document


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Scope allow-list token for security groups outside any VPC
CLASSIC_SCOPE_TOKEN = "classic"

# Security constraints - enforced limits
MAX_SPEC_FILE_SIZE_BYTES = 5 * 1024 * 1024  # 5MB max declarative/exported file
MAX_SECURITY_GROUP_NAME_LENGTH = 255

# Input validation patterns
VALID_VPC_ID_PATTERN = r"^vpc-[0-9a-f]{8,17}$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"


def _split_list(value: str | None) -> tuple[str, ...] | None:
    if value is None:
        return None
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Config:
    """Reconciliation configuration.

    Attributes:
        sg_names: Name allow-list. None disables the check; an empty tuple
            skips every group.
        exclude_sgs: Regular expressions; matching group names are skipped.
        exclude_tags: Tag keys; live groups carrying any of them are skipped.
        vpcs: Scope allow-list of VPC ids, "classic" for the non-VPC scope.
        input_format: Format of the declarative input file.
        dry_run: Log writes instead of performing them.
        aws_profile: Named AWS profile for the boto3 session.
        aws_region: AWS region for the boto3 session.
    """

    sg_names: tuple[str, ...] | None = None
    exclude_sgs: tuple[str, ...] = ()
    exclude_tags: frozenset[str] = field(default_factory=frozenset)
    vpcs: tuple[str, ...] | None = None
    input_format: InputFormat = InputFormat.YAML
    dry_run: bool = False
    aws_profile: str | None = None
    aws_region: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        for name in self.sg_names or ():
            if not name or len(name) > MAX_SECURITY_GROUP_NAME_LENGTH:
                errors.append(f"SG_NAMES contains an invalid security group name: {name!r}")

        for pattern in self.exclude_sgs:
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"EXCLUDE_SGS contains an invalid regular expression {pattern!r}: {e}")

        for vpc in self.vpcs or ():
            if vpc != CLASSIC_SCOPE_TOKEN and not re.match(VALID_VPC_ID_PATTERN, vpc):
                errors.append(f"VPCS entries must be VPC ids or '{CLASSIC_SCOPE_TOKEN}': {vpc}")

        if self.aws_region and not re.match(VALID_REGION_PATTERN, self.aws_region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.aws_region}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def exclude_patterns(self) -> list[re.Pattern[str]]:
        """Compiled exclude patterns."""
        return [re.compile(pattern) for pattern in self.exclude_sgs]

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a copy with non-None overrides applied (e.g. from CLI flags)."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SG_NAMES: Comma separated name allow-list (unset: no allow-list)
            EXCLUDE_SGS: Comma separated regular expressions
            EXCLUDE_TAGS: Comma separated tag keys
            VPCS: Comma separated VPC ids, "classic" for the non-VPC scope
            INPUT_FORMAT: yaml (default) or json
            DRY_RUN: If "true", only log the changes (default: false)
            AWS_PROFILE: Named profile for the boto3 session
            AWS_REGION: Region for the boto3 session
        """

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_format(value: str | None) -> InputFormat:
            if not value:
                return InputFormat.YAML
            try:
                return InputFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in InputFormat]
                raise ConfigurationError(f"INPUT_FORMAT must be one of {valid}: {value}") from e

        return cls(
            sg_names=_split_list(os.environ.get("SG_NAMES")),
            exclude_sgs=_split_list(os.environ.get("EXCLUDE_SGS")) or (),
            exclude_tags=frozenset(_split_list(os.environ.get("EXCLUDE_TAGS")) or ()),
            vpcs=_split_list(os.environ.get("VPCS")),
            input_format=get_format(os.environ.get("INPUT_FORMAT")),
            dry_run=get_bool("DRY_RUN", False),
            aws_profile=os.environ.get("AWS_PROFILE") or None,
            aws_region=os.environ.get("AWS_REGION") or None,
        )


def input_format_for(path: Path) -> InputFormat | None:
    """Infer the input format from a file suffix (None if unknown)."""
    suffix = path.suffix.lower()
    if suffix == ".json":
        return InputFormat.JSON
    if suffix in (".yaml", ".yml"):
        return InputFormat.YAML
    return None
