"""Security group operator CLI (sgctl).

Usage:
    sgctl apply groups.yaml             # Converge live security groups
    sgctl apply groups.yaml --dry-run   # Show what would change
    sgctl export -o exported.json       # Export live state as JSON
    sgctl export --convert              # Export live state as declarative YAML
    sgctl patch groups.yaml exported.json
                                        # Merge rule descriptions into an export

Options fall back to environment variables (see Config.from_env).
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from .config import Config, ConfigurationError, InputFormat, input_format_for
from .main import run_apply, run_export, run_patch, setup_logging

FORMAT_CHOICES = [f.value for f in InputFormat]


def _load_config(ctx: click.Context, **overrides: object) -> Config:
    """Merge CLI flags over environment configuration."""
    try:
        return Config.from_env().with_overrides(
            aws_profile=ctx.obj.get("profile"),
            aws_region=ctx.obj.get("region"),
            **overrides,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _input_format(value: str | None, path: Path) -> InputFormat | None:
    if value is not None:
        return InputFormat(value)
    return input_format_for(path)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="sgctl")
@click.option("--profile", default=None, help="AWS profile to use.")
@click.option("--region", default=None, help="AWS region to use.")
@click.option("--json-logs", is_flag=True, help="Emit structured JSON logs.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    region: str | None,
    json_logs: bool,
    verbose: bool,
) -> None:
    """Reconcile EC2 security groups against a declarative configuration."""
    setup_logging(json_output=json_logs, level=logging.DEBUG if verbose else logging.INFO)
    ctx.ensure_object(dict)
    ctx.obj["profile"] = profile
    ctx.obj["region"] = region


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Log changes without applying them.")
@click.option("--format", "input_format", type=click.Choice(FORMAT_CHOICES), default=None,
              help="Input format (default: from file suffix).")
@click.option("--sg-name", "sg_names", multiple=True, help="Only manage these groups.")
@click.option("--exclude-sg", "exclude_sgs", multiple=True,
              help="Skip groups whose name matches this regular expression.")
@click.option("--exclude-tag", "exclude_tags", multiple=True,
              help="Skip live groups carrying this tag key.")
@click.option("--vpc", "vpcs", multiple=True,
              help="Only manage this VPC ('classic' for groups outside a VPC).")
@click.pass_context
def apply(
    ctx: click.Context,
    file: Path,
    dry_run: bool,
    input_format: str | None,
    sg_names: tuple[str, ...],
    exclude_sgs: tuple[str, ...],
    exclude_tags: tuple[str, ...],
    vpcs: tuple[str, ...],
) -> None:
    """Apply FILE to the live security groups."""
    config = _load_config(
        ctx,
        dry_run=dry_run or None,
        input_format=_input_format(input_format, file),
        sg_names=sg_names or None,
        exclude_sgs=exclude_sgs or None,
        exclude_tags=frozenset(exclude_tags) or None,
        vpcs=vpcs or None,
    )

    exit_code, result = run_apply(config, file)
    if result is not None:
        suffix = " (dry-run)" if config.dry_run else ""
        if result.updated:
            click.echo(f"Security groups updated{suffix}: {result.changes.total} change(s)")
        else:
            click.echo(f"No change{suffix}")
    ctx.exit(exit_code)


@cli.command()
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write to this file instead of stdout.")
@click.option("--convert", is_flag=True, help="Export as declarative YAML instead of JSON.")
@click.pass_context
def export(ctx: click.Context, output: Path | None, convert: bool) -> None:
    """Export live security groups."""
    config = _load_config(ctx)
    ctx.exit(run_export(config, output, convert=convert))


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("exported", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--format", "input_format", type=click.Choice(FORMAT_CHOICES), default=None,
              help="Format of FILE (default: from file suffix).")
@click.pass_context
def patch(ctx: click.Context, file: Path, exported: Path, input_format: str | None) -> None:
    """Merge rule descriptions from FILE into the EXPORTED document."""
    config = _load_config(ctx, input_format=_input_format(input_format, file))

    exit_code, output = run_patch(config, file, exported)
    if output is not None:
        click.echo(f"Wrote {output}")
    ctx.exit(exit_code)


def run() -> None:
    """Entry point for the sgctl console script."""
    cli(obj={})


if __name__ == "__main__":
    run()
