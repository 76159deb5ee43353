"""
Unit tests for network module
Tests the VPC topology and the compute -> data access rule
"""
import pytest

from finsight_infra.config import Tier
from finsight_infra.errors import ConfigValidationError
from finsight_infra.model import Attr, ResourceKind
from finsight_infra.network import DATABASE_PORT, VPC_CIDR, nat_gateway_count


@pytest.mark.unit
class TestNetworkTopology:
    """Test the network unit of compiled plans"""

    def test_resources(self, dev_plan):
        network = dev_plan.unit('network')

        assert network.depends_on == ()
        assert len(network.resources_of(ResourceKind.VPC)) == 1
        assert len(network.resources_of(ResourceKind.SECURITY_GROUP)) == 2
        assert network.resource('FinSightVpc').get('cidr') == VPC_CIDR
        assert network.resource('FinSightVpc').get('maxAzs') == 2

    def test_data_group_only_reachable_from_compute_group(self, dev_plan):
        network = dev_plan.unit('network')
        rules = network.resources_of(ResourceKind.INGRESS_RULE)

        assert len(rules) == 1
        rule = rules[0]
        assert rule.get('source') == Attr('network', 'LambdaSecurityGroup')
        assert rule.get('target') == Attr('network', 'RdsSecurityGroup')
        assert rule.get('port') == DATABASE_PORT
        assert network.resource('RdsSecurityGroup').get('allowAllOutbound') is False

    def test_outputs(self, dev_plan):
        outputs = dev_plan.unit('network').outputs

        assert outputs['vpc'] == Attr('network', 'FinSightVpc')
        assert outputs['computeAcl'] == Attr('network', 'LambdaSecurityGroup')
        assert outputs['dataAcl'] == Attr('network', 'RdsSecurityGroup')
        assert outputs['databasePort'] == 5432

    def test_exports(self, dev_plan):
        exports = dev_plan.unit('network').exports

        assert set(exports) == {'VpcId', 'LambdaSecurityGroupId', 'RdsSecurityGroupId'}
        assert exports['VpcId'].value == Attr('network', 'FinSightVpc', 'vpc_id')

    def test_nat_gateways_by_tier(self, dev_plan, prod_plan):
        assert dev_plan.unit('network').resource('FinSightVpc').get('natGateways') == 1
        assert prod_plan.unit('network').resource('FinSightVpc').get('natGateways') == 2

    def test_topology_shape_is_environment_independent(self, dev_plan, prod_plan):
        dev_ids = [r.logical_id for r in dev_plan.unit('network').resources]
        prod_ids = [r.logical_id for r in prod_plan.unit('network').resources]

        assert dev_ids == prod_ids

    def test_missing_tier_row(self):
        with pytest.raises(ConfigValidationError):
            nat_gateway_count('staging')

    def test_known_tiers(self):
        assert nat_gateway_count(Tier.PRODUCTION) == 2
        assert nat_gateway_count(Tier.NON_PRODUCTION) == 1
