"""
Network Stack resources for FinSight
Renders the VPC, private subnet selection and security groups
"""
from aws_cdk import aws_ec2 as ec2

from finsight_infra.model import Resource


class NetworkResources:
    """
    Network infrastructure renderers.
    This part of the plan rarely changes and is the foundation for the other units.
    """

    def _render_vpc(self, resource: Resource) -> ec2.Vpc:
        return ec2.Vpc(
            self,
            resource.logical_id,
            ip_addresses=ec2.IpAddresses.cidr(resource.get("cidr")),
            max_azs=resource.get("maxAzs"),
            nat_gateways=resource.get("natGateways"),
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=subnet["name"],
                    subnet_type=getattr(ec2.SubnetType, subnet["subnetType"]),
                    cidr_mask=subnet["cidrMask"]
                )
                for subnet in resource.get("subnetConfiguration")
            ]
        )

    def _render_subnet_group(self, resource: Resource) -> ec2.SubnetSelection:
        # A selection, not a construct: consumers place themselves in these subnets
        return ec2.SubnetSelection(
            subnet_type=getattr(ec2.SubnetType, resource.get("subnetType"))
        )

    def _render_security_group(self, resource: Resource) -> ec2.SecurityGroup:
        return ec2.SecurityGroup(
            self,
            resource.logical_id,
            vpc=self.prop(resource, "vpc"),
            description=resource.get("description"),
            allow_all_outbound=resource.get("allowAllOutbound")
        )

    def _render_ingress_rule(self, resource: Resource) -> ec2.Port:
        port = ec2.Port.tcp(resource.get("port"))
        target = self.prop(resource, "target")
        target.add_ingress_rule(
            peer=self.prop(resource, "source"),
            connection=port,
            description=resource.get("description")
        )
        return port
