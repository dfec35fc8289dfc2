"""Tests for the sgctl CLI and its entry points."""

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from aws_mock import VPC_ID, MockSecurityGroupProvider
from sgcontroller.cli import cli
from sgcontroller.config import Config
from sgcontroller.main import JsonFormatter, run_apply

CONFIG = f"""\
scopes:
  - vpc: {VPC_ID}
    security_groups:
      - name: web
        description: web
        ingress:
          - protocol: tcp
            port_range: 80
            ip_ranges: ["0.0.0.0/0"]
            description: http
"""


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Undo the handler swap done by the CLI group."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def provider() -> MockSecurityGroupProvider:
    provider = MockSecurityGroupProvider()
    provider.add_group("web", vpc_id=VPC_ID)
    return provider


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "groups.yaml"
    path.write_text(CONFIG)
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestApplyCommand:
    """Tests for sgctl apply."""

    def test_apply_reports_changes(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, config_file: Path
    ) -> None:
        with patch("sgcontroller.main.build_provider", return_value=provider):
            result = runner.invoke(cli, ["apply", str(config_file)], obj={})

        assert result.exit_code == 0
        assert "Security groups updated: 1 change(s)" in result.output
        assert provider.operations == [("create_permission", "web", "ingress", "tcp 80..80")]

    def test_apply_no_change(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, config_file: Path
    ) -> None:
        with patch("sgcontroller.main.build_provider", return_value=provider):
            runner.invoke(cli, ["apply", str(config_file)], obj={})
            result = runner.invoke(cli, ["apply", str(config_file)], obj={})

        assert result.exit_code == 0
        assert "No change" in result.output

    def test_dry_run_flag(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, config_file: Path
    ) -> None:
        with patch("sgcontroller.main.build_provider", return_value=provider) as build:
            result = runner.invoke(cli, ["apply", str(config_file), "--dry-run"], obj={})

        assert result.exit_code == 0
        assert "(dry-run)" in result.output
        assert build.call_args.args[0].dry_run is True

    def test_filters_from_options(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, config_file: Path
    ) -> None:
        with patch("sgcontroller.main.build_provider", return_value=provider) as build:
            result = runner.invoke(
                cli,
                ["apply", str(config_file), "--exclude-sg", "^web$", "--vpc", VPC_ID],
                obj={},
            )

        assert result.exit_code == 0
        config = build.call_args.args[0]
        assert config.exclude_sgs == ("^web$",)
        assert config.vpcs == (VPC_ID,)
        assert provider.operations == []

    def test_environment_is_used(
        self,
        runner: CliRunner,
        provider: MockSecurityGroupProvider,
        config_file: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("SG_NAMES", "db")
        with patch("sgcontroller.main.build_provider", return_value=provider):
            result = runner.invoke(cli, ["apply", str(config_file)], obj={})

        assert result.exit_code == 0
        assert provider.operations == []

    def test_invalid_option(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["apply", str(config_file), "--exclude-sg", "("], obj={})

        assert result.exit_code == 1
        assert "EXCLUDE_SGS" in result.output

    def test_invalid_config_file(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "groups.yaml"
        path.write_text("scopes: [{vpc: subnet-1}]")

        with patch("sgcontroller.main.build_provider") as build:
            result = runner.invoke(cli, ["apply", str(path)], obj={})

        assert result.exit_code == 1
        build.assert_not_called()

    def test_provider_error_exit_code(self, runner: CliRunner, config_file: Path) -> None:
        provider = MockSecurityGroupProvider(fail_on={"list_security_groups"})
        with patch("sgcontroller.main.build_provider", return_value=provider):
            result = runner.invoke(cli, ["apply", str(config_file)], obj={})

        assert result.exit_code == 1

    def test_exported_document_as_input(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, tmp_path: Path
    ) -> None:
        exported = tmp_path / "exported.json"
        with patch("sgcontroller.main.build_provider", return_value=provider):
            runner.invoke(cli, ["export", "-o", str(exported)], obj={})
            result = runner.invoke(cli, ["apply", str(exported)], obj={})

        assert result.exit_code == 0
        assert "No change" in result.output


class TestExportCommand:
    """Tests for sgctl export."""

    def test_export_json(self, runner: CliRunner, provider: MockSecurityGroupProvider, tmp_path: Path) -> None:
        output = tmp_path / "exported.json"
        with patch("sgcontroller.main.build_provider", return_value=provider):
            result = runner.invoke(cli, ["export", "-o", str(output)], obj={})

        assert result.exit_code == 0
        document = json.loads(output.read_text())
        assert [group["name"] for group in document[VPC_ID].values()] == ["web"]

    def test_export_convert(self, runner: CliRunner, provider: MockSecurityGroupProvider, tmp_path: Path) -> None:
        output = tmp_path / "groups.yaml"
        with patch("sgcontroller.main.build_provider", return_value=provider):
            result = runner.invoke(cli, ["export", "--convert", "-o", str(output)], obj={})

        assert result.exit_code == 0
        converted = yaml.safe_load(output.read_text())
        assert converted["scopes"][0]["vpc"] == VPC_ID

    def test_export_provider_error(self, runner: CliRunner, tmp_path: Path) -> None:
        provider = MockSecurityGroupProvider(fail_on={"list_security_groups"})
        output = tmp_path / "exported.json"
        with patch("sgcontroller.main.build_provider", return_value=provider):
            result = runner.invoke(cli, ["export", "-o", str(output)], obj={})

        assert result.exit_code == 1
        assert not output.exists()


class TestPatchCommand:
    """Tests for sgctl patch."""

    def test_patch_writes_updated_file(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, config_file: Path, tmp_path: Path
    ) -> None:
        exported = tmp_path / "exported.json"
        with patch("sgcontroller.main.build_provider", return_value=provider):
            runner.invoke(cli, ["apply", str(config_file)], obj={})
            runner.invoke(cli, ["export", "-o", str(exported)], obj={})

        result = runner.invoke(cli, ["patch", str(config_file), str(exported)], obj={})

        assert result.exit_code == 0
        assert "exported-updated.json" in result.output
        assert (tmp_path / "exported-updated.json").exists()

    def test_patch_missing_rule(
        self, runner: CliRunner, provider: MockSecurityGroupProvider, config_file: Path, tmp_path: Path
    ) -> None:
        exported = tmp_path / "exported.json"
        with patch("sgcontroller.main.build_provider", return_value=provider):
            runner.invoke(cli, ["export", "-o", str(exported)], obj={})

        result = runner.invoke(cli, ["patch", str(config_file), str(exported)], obj={})

        assert result.exit_code == 1
        assert not (tmp_path / "exported-updated.json").exists()


class TestRunApply:
    """Tests for the run_apply entry point."""

    def test_load_failure(self, tmp_path: Path, provider: MockSecurityGroupProvider) -> None:
        exit_code, result = run_apply(Config(), tmp_path / "missing.yaml", provider=provider)

        assert exit_code == 1
        assert result is None

    def test_success(self, config_file: Path, provider: MockSecurityGroupProvider) -> None:
        exit_code, result = run_apply(Config(), config_file, provider=provider)

        assert exit_code == 0
        assert result.changes.permissions_created == 1


class TestJsonFormatter:
    """Tests for structured logging."""

    def test_extra_fields_are_included(self) -> None:
        record = logging.LogRecord("sgcontroller.reconciler", logging.INFO, __file__, 1, "Reconciling scope", None, None)
        record.scope = VPC_ID

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Reconciling scope"
        assert data["level"] == "INFO"
        assert data["scope"] == VPC_ID
        assert data["timestamp"].endswith("Z")
