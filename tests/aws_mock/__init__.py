"""In-memory security group provider for reconciliation tests.

Usage:
    from aws_mock import MockSecurityGroupProvider

    provider = MockSecurityGroupProvider()
    provider.add_group("web", vpc_id="vpc-0123456789abcdef0")

    result = Reconciler(Config(), provider).apply(desired)

    # Assert on recorded operations and resulting state
    assert provider.operations == [("create_security_group", "vpc-0123456789abcdef0", "app")]
"""

from .provider import (
    DEFAULT_EGRESS,
    OTHER_VPC_ID,
    OWNER_ID,
    VPC_ID,
    MockSecurityGroupProvider,
    permission_state,
)

__all__ = [
    "DEFAULT_EGRESS",
    "OTHER_VPC_ID",
    "OWNER_ID",
    "VPC_ID",
    "MockSecurityGroupProvider",
    "permission_state",
]
