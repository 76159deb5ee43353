"""
Network topology builder
Contains the VPC, subnet groups and the compute/data access-control groups
"""
import logging
from typing import Dict

from .builder import Builder, BuildContext
from .config import Tier
from .errors import ConfigValidationError
from .model import ResourceKind

logger = logging.getLogger(__name__)

VPC_CIDR = "10.0.0.0/16"
MAX_AZS = 2  # RDS subnet groups need two AZs
DATABASE_PORT = 5432

# Redundancy is the only environment-dependent part of the topology
NAT_GATEWAYS: Dict[Tier, int] = {
    Tier.PRODUCTION: 2,
    Tier.NON_PRODUCTION: 1,
}

SUBNET_CONFIGURATION = (
    {"name": "Public", "subnetType": "PUBLIC", "cidrMask": 24},
    {"name": "Private", "subnetType": "PRIVATE_WITH_EGRESS", "cidrMask": 24},
)


def nat_gateway_count(tier: Tier) -> int:
    try:
        return NAT_GATEWAYS[tier]
    except KeyError:
        raise ConfigValidationError(f"No NAT gateway policy for tier '{tier}'", fields=['tier'])


class NetworkTopologyBuilder(Builder):
    """
    Private network shared by every other unit.
    Topology shape is environment-independent.
    """
    name = "network"
    depends_on = ()

    def build(self, ctx: BuildContext) -> None:
        vpc = ctx.add_resource("FinSightVpc", ResourceKind.VPC, {
            "cidr": VPC_CIDR,
            "maxAzs": MAX_AZS,
            "natGateways": nat_gateway_count(ctx.profile.tier),
            "subnetConfiguration": SUBNET_CONFIGURATION,
        })

        subnet_group = ctx.add_resource("PrivateSubnets", ResourceKind.SUBNET_GROUP, {
            "vpc": vpc,
            "subnetType": "PRIVATE_WITH_EGRESS",
        })

        compute_acl = ctx.add_resource("LambdaSecurityGroup", ResourceKind.SECURITY_GROUP, {
            "vpc": vpc,
            "description": "Security group for Lambda functions",
            "allowAllOutbound": True,
        })

        data_acl = ctx.add_resource("RdsSecurityGroup", ResourceKind.SECURITY_GROUP, {
            "vpc": vpc,
            "description": "Security group for RDS database",
            "allowAllOutbound": False,
        })

        # The only cross-group access: compute -> data on the database port
        ctx.add_resource("LambdaToRdsIngress", ResourceKind.INGRESS_RULE, {
            "source": compute_acl,
            "target": data_acl,
            "protocol": "tcp",
            "port": DATABASE_PORT,
            "description": "Allow Lambda to access RDS",
        })

        ctx.output("vpc", vpc)
        ctx.output("subnetGroup", subnet_group)
        ctx.output("computeAcl", compute_acl)
        ctx.output("dataAcl", data_acl)
        ctx.output("databasePort", DATABASE_PORT)

        ctx.export("VpcId", vpc.of("vpc_id"), "VPC ID")
        ctx.export("LambdaSecurityGroupId", compute_acl.of("security_group_id"), "Lambda Security Group ID")
        ctx.export("RdsSecurityGroupId", data_acl.of("security_group_id"), "RDS Security Group ID")

        logger.debug(f"Network topology uses {nat_gateway_count(ctx.profile.tier)} NAT gateways")
