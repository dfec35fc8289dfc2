"""Tests for exporting live state."""

import json

import pytest
import yaml

from aws_mock import DEFAULT_EGRESS, OWNER_ID, VPC_ID, MockSecurityGroupProvider, permission_state
from sgcontroller.config import Config
from sgcontroller.exporter import dump_declarative, dump_document, export_document, to_declarative
from sgcontroller.models import DesiredState
from sgcontroller.reconciler import Reconciler


@pytest.fixture
def provider() -> MockSecurityGroupProvider:
    provider = MockSecurityGroupProvider()
    provider.add_group(
        "web",
        vpc_id=VPC_ID,
        description="web servers",
        tags={"Team": "frontend", "Env": "prod"},
        ingress=[
            permission_state("tcp", "80..80", ("10.0.0.0/8", "0.0.0.0/0"), description="http"),
            permission_state("tcp", "22..22", groups=("bastion",)),
        ],
        egress=[DEFAULT_EGRESS],
    )
    provider.add_group("bastion", vpc_id=VPC_ID, egress=[DEFAULT_EGRESS])
    provider.add_group("legacy", ingress=[permission_state("icmp", "-1..-1", ("0.0.0.0/0",))])
    return provider


class TestExportDocument:
    """Tests for the exported-state document."""

    def test_scopes_and_group_ids(self, provider: MockSecurityGroupProvider) -> None:
        document = export_document(provider)

        assert list(document) == ["", VPC_ID]
        assert [group["name"] for group in document[VPC_ID].values()] == ["bastion", "web"]
        web_id = provider.get_group("web", VPC_ID).group_id
        assert web_id in document[VPC_ID]

    def test_group_shape(self, provider: MockSecurityGroupProvider) -> None:
        web = export_document(provider)[VPC_ID][provider.get_group("web", VPC_ID).group_id]

        assert web == {
            "name": "web",
            "description": "web servers",
            "owner_id": OWNER_ID,
            "tags": {"Env": "prod", "Team": "frontend"},
            "ingress": [
                {
                    "protocol": "tcp",
                    "port_range": "80..80",
                    "ip_ranges": ["0.0.0.0/0", "10.0.0.0/8"],
                    "groups": [],
                    "description": "http",
                },
                {
                    "protocol": "tcp",
                    "port_range": "22..22",
                    "ip_ranges": [],
                    "groups": ["bastion"],
                    "description": None,
                },
            ],
            "egress": [
                {
                    "protocol": "all",
                    "port_range": None,
                    "ip_ranges": ["0.0.0.0/0"],
                    "groups": [],
                    "description": None,
                }
            ],
        }

    def test_classic_group_has_no_egress(self, provider: MockSecurityGroupProvider) -> None:
        (legacy,) = export_document(provider)[""].values()
        assert legacy["egress"] == []
        assert legacy["ingress"][0]["port_range"] == "-1..-1"

    def test_dump_is_stable_json(self, provider: MockSecurityGroupProvider) -> None:
        text = dump_document(export_document(provider))

        assert text.endswith("}\n")
        assert json.loads(text) == export_document(provider)
        assert dump_document(json.loads(text)) == text


class TestConvert:
    """Tests for converting an export to the declarative form."""

    def test_declarative_structure(self, provider: MockSecurityGroupProvider) -> None:
        converted = to_declarative(export_document(provider))

        classic, vpc = converted["scopes"]
        assert "vpc" not in classic
        assert "egress" not in classic["security_groups"][0]
        assert vpc["vpc"] == VPC_ID
        web = vpc["security_groups"][1]
        assert web["ingress"][1] == {"protocol": "tcp", "port_range": "22..22", "groups": ["bastion"]}
        assert web["egress"] == [{"protocol": "all", "ip_ranges": ["0.0.0.0/0"]}]

    def test_group_without_tags_omits_them(self, provider: MockSecurityGroupProvider) -> None:
        converted = to_declarative(export_document(provider))
        bastion = converted["scopes"][1]["security_groups"][0]
        assert "tags" not in bastion

    def test_converted_config_applies_cleanly(self, provider: MockSecurityGroupProvider) -> None:
        """Applying the converted export to the same account changes nothing."""
        text = dump_declarative(export_document(provider))
        desired = DesiredState.model_validate(yaml.safe_load(text))

        result = Reconciler(Config(), provider).apply(desired)

        assert result.success
        assert not result.updated
        assert provider.operations == []
