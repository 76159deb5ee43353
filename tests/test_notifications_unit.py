"""
Unit tests for notifications module
Tests the SES channel, feedback topics and the send permission allow-list
"""
import pytest

from conftest import make_profile_data
from finsight_infra.compiler import compile_plan, default_builders
from finsight_infra.compute import FLEET_CATALOG
from finsight_infra.config import load_profile
from finsight_infra.errors import ConfigValidationError
from finsight_infra.model import Attr, ResourceKind
from finsight_infra.notifications import SENDER_ALLOW_LIST, select_senders


def send_grants(plan):
    return plan.unit('email').resources_of(ResourceKind.POLICY_GRANT)


@pytest.mark.unit
class TestSendPermissions:
    """Test that only allow-listed units may send mail"""

    def test_allow_listed_units_get_grants(self, dev_plan):
        grants = send_grants(dev_plan)

        assert [g.get('grantee') for g in grants] == [
            Attr('api', 'reportsFunction'),
            Attr('api', 'notificationsFunction'),
        ]
        assert dev_plan.unit('email').outputs['senders'] == SENDER_ALLOW_LIST

    def test_grant_is_restricted_to_from_address(self, dev_plan, dev_profile):
        grant = send_grants(dev_plan)[0]

        assert grant.get('actions') == ('ses:SendEmail', 'ses:SendRawEmail')
        assert grant.get('conditions') == {
            'StringEquals': {'ses:FromAddress': dev_profile.ses_config.from_email}
        }

    def test_no_senders_no_grants(self, dev_profile):
        catalog = tuple(spec for spec in FLEET_CATALOG if spec.name not in ('reports', 'notifications'))

        plan = compile_plan(dev_profile, default_builders(catalog))

        assert send_grants(plan) == ()
        assert plan.unit('email').outputs['senders'] == ()

    def test_select_senders_keeps_allow_list_order(self):
        functions = {'notifications': Attr('api', 'n'), 'users': Attr('api', 'u'), 'reports': Attr('api', 'r')}

        assert [name for name, _ in select_senders(functions)] == ['reports', 'notifications']


@pytest.mark.unit
class TestEmailChannel:
    """Test SES configuration and feedback handling"""

    def test_configuration_set(self, dev_plan):
        email = dev_plan.unit('email')

        assert email.resource('ConfigSet').get('configurationSetName') == 'finsight-ses-config-dev'
        assert email.exports['FromEmailAddress'].value == 'noreply@test.finsight.example.com'

    def test_identity_uses_custom_domain_when_present(self, dev_plan, prod_plan):
        assert dev_plan.unit('email').resource('SendingIdentity').get('email') == 'noreply@test.finsight.example.com'
        assert prod_plan.unit('email').resource('SendingIdentity').get('domain') == 'finsight.example.com'

    def test_feedback_destinations(self, dev_plan):
        email = dev_plan.unit('email')
        destinations = {
            r.logical_id: r for r in email.resources_of(ResourceKind.EMAIL_EVENT_DESTINATION)
        }

        assert destinations['BounceDestination'].get('events') == ('BOUNCE',)
        assert destinations['BounceDestination'].get('topic') == Attr('email', 'BounceTopic')
        assert destinations['ComplaintDestination'].get('events') == ('COMPLAINT',)

    def test_subscriptions_by_tier(self, dev_plan, prod_plan):
        def endpoints(plan):
            return sorted(
                r.get('endpoint') for r in plan.unit('email').resources_of(ResourceKind.EMAIL_SUBSCRIPTION)
            )

        assert endpoints(dev_plan) == ['dev-alerts@finsight.local', 'dev-alerts@finsight.local']
        assert endpoints(prod_plan) == ['bounces@finsight.example.com', 'complaints@finsight.example.com']

    def test_sending_rate_above_quota(self):
        data = make_profile_data()
        data['sesConfig'].update(sendingQuota=10, sendingRate=20)

        with pytest.raises(ConfigValidationError) as exc_info:
            compile_plan(load_profile(data))

        assert exc_info.value.fields == ('sesConfig.sendingRate',)
