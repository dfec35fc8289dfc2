"""Entry points for the security group operator.

Each run_* function maps one operation to an exit code:
0 for success, 1 for configuration, provider or lookup errors.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import boto3
from botocore.exceptions import NoRegionError, ProfileNotFound

from .config import Config, ConfigurationError
from .ec2 import Ec2SecurityGroupProvider
from .exporter import dump_declarative, dump_document, export_document
from .patcher import NotFoundError, patch_file
from .provider import ProviderError, RunCache, SecurityGroupProvider
from .reconciler import Reconciler, ReconcileResult
from .spec_loader import load_desired_state

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends extra fields as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{record.levelname}] {record.getMessage()}"
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS
        ]
        if extras:
            line = f"{line} ({', '.join(extras)})"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(json_output: bool = False, level: int = logging.INFO) -> None:
    """Configure logging: JSON lines for automation, text for terminals."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else TextFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_provider(config: Config) -> Ec2SecurityGroupProvider:
    """Create the EC2 provider for a run, with a fresh read cache."""
    try:
        session = boto3.Session(profile_name=config.aws_profile, region_name=config.aws_region)
        return Ec2SecurityGroupProvider(session, cache=RunCache(), dry_run=config.dry_run)
    except (NoRegionError, ProfileNotFound) as e:
        raise ConfigurationError(f"Cannot create AWS session: {e}") from e


def run_apply(
    config: Config,
    path: Path,
    provider: SecurityGroupProvider | None = None,
) -> tuple[int, ReconcileResult | None]:
    """Reconcile live security groups against a declarative file.

    Returns:
        Exit code and the reconciliation result (None if loading failed).
    """
    logger = logging.getLogger(__name__)

    try:
        desired = load_desired_state(path, config.input_format)
    except ConfigurationError as e:
        logger.error("Failed to load configuration", extra={"error": str(e), "path": str(path)})
        return 1, None

    try:
        if provider is None:
            provider = build_provider(config)
    except ConfigurationError as e:
        logger.error("Failed to create provider", extra={"error": str(e)})
        return 1, None

    result = Reconciler(config, provider).apply(desired)
    return (0 if result.success else 1), result


def run_export(
    config: Config,
    output: Path | None,
    convert: bool = False,
    provider: SecurityGroupProvider | None = None,
) -> int:
    """Export live state as JSON, or as declarative YAML when convert is set."""
    logger = logging.getLogger(__name__)

    try:
        if provider is None:
            provider = build_provider(config)
        document = export_document(provider)
    except (ConfigurationError, ProviderError) as e:
        logger.error("Export failed", extra={"error": str(e)})
        return 1

    text = dump_declarative(document) if convert else dump_document(document)
    if output is None:
        sys.stdout.write(text)
    else:
        output.write_text(text, encoding="utf-8")
        logger.info("Wrote export", extra={"path": str(output)})
    return 0


def run_patch(config: Config, path: Path, exported: Path) -> tuple[int, Path | None]:
    """Merge rule descriptions from a declarative file into an exported document."""
    logger = logging.getLogger(__name__)

    try:
        desired = load_desired_state(path, config.input_format)
        output = patch_file(desired, exported)
    except ConfigurationError as e:
        logger.error("Failed to load input", extra={"error": str(e)})
        return 1, None
    except NotFoundError:
        # Already logged with the full coordinate
        return 1, None

    return 0, output

