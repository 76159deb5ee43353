"""
Notification channel provisioner
Contains the SES sending configuration, bounce/complaint feedback topics and send permissions
"""
import logging
from typing import Dict, List, Mapping, Tuple

from .builder import Builder, BuildContext
from .config import EnvironmentProfile, Tier
from .errors import ConfigValidationError
from .model import Attr, ResourceKind

logger = logging.getLogger(__name__)

# Only these fleet units may send mail
SENDER_ALLOW_LIST: Tuple[str, ...] = ("reports", "notifications")
SEND_ACTIONS = ("ses:SendEmail", "ses:SendRawEmail")
FEEDBACK_EVENTS = {
    "Bounce": "BOUNCE",
    "Complaint": "COMPLAINT",
}


def feedback_recipients(profile: EnvironmentProfile) -> Dict[str, List[str]]:
    """Subscriptions for the bounce and complaint topics, per tier"""
    recipients = {
        Tier.PRODUCTION: {
            "Bounce": [profile.ses_config.bounce_email],
            "Complaint": [profile.ses_config.complaint_email],
        },
        Tier.NON_PRODUCTION: {
            "Bounce": [profile.alert_email],
            "Complaint": [profile.alert_email],
        },
    }
    if profile.tier not in recipients:
        raise ConfigValidationError(f"No feedback subscription policy for tier '{profile.tier}'", fields=['tier'])
    return recipients[profile.tier]


def select_senders(functions: Mapping[str, Attr]) -> List[Tuple[str, Attr]]:
    """Allow-listed units that exist in the fleet, in allow-list order"""
    return [(name, functions[name]) for name in SENDER_ALLOW_LIST if name in functions]


class NotificationChannelProvisioner(Builder):
    """Transactional email sending for the mail-sending compute units"""
    name = "email"
    depends_on = ("api",)

    def build(self, ctx: BuildContext) -> None:
        profile = ctx.profile
        environment = profile.environment
        ses = profile.ses_config
        if ses.sending_rate > ses.sending_quota:
            raise ConfigValidationError(
                f"sesConfig.sendingRate ({ses.sending_rate}) exceeds sendingQuota ({ses.sending_quota})",
                fields=['sesConfig.sendingRate'],
            )

        configuration_set_name = f"finsight-ses-config-{environment}"
        configuration_set = ctx.add_resource("ConfigSet", ResourceKind.EMAIL_CONFIGURATION_SET, {
            "configurationSetName": configuration_set_name,
        })

        if profile.has_custom_domain:
            ctx.add_resource("SendingIdentity", ResourceKind.EMAIL_IDENTITY, {
                "domain": profile.custom_domain,
                "configurationSet": configuration_set,
            })
        else:
            ctx.add_resource("SendingIdentity", ResourceKind.EMAIL_IDENTITY, {
                "email": ses.from_email,
                "configurationSet": configuration_set,
            })

        topics: Dict[str, Attr] = {}
        for feedback, recipients in feedback_recipients(profile).items():
            topic = ctx.add_resource(f"{feedback}Topic", ResourceKind.TOPIC, {
                "topicName": f"finsight-{feedback.lower()}-{environment}",
                "displayName": f"FinSight Email {feedback} Notifications",
            })
            for index, address in enumerate(recipients):
                ctx.add_resource(f"{feedback}Subscription{index}", ResourceKind.EMAIL_SUBSCRIPTION, {
                    "topic": topic,
                    "endpoint": address,
                })
            ctx.add_resource(f"{feedback}Destination", ResourceKind.EMAIL_EVENT_DESTINATION, {
                "configurationSet": configuration_set,
                "topic": topic,
                "events": [FEEDBACK_EVENTS[feedback]],
            })
            topics[feedback] = topic

        senders = select_senders(ctx.lookup("api", "functions"))
        for name, function in senders:
            ctx.add_resource(f"{name}SendEmail", ResourceKind.POLICY_GRANT, {
                "grantee": function,
                "actions": SEND_ACTIONS,
                "resources": ["*"],
                "conditions": {"StringEquals": {"ses:FromAddress": ses.from_email}},
            })

        ctx.output("configurationSetName", configuration_set_name)
        ctx.output("fromAddress", ses.from_email)
        ctx.output("bounceTopicArn", topics["Bounce"].of("topic_arn"))
        ctx.output("complaintTopicArn", topics["Complaint"].of("topic_arn"))
        ctx.output("senders", tuple(name for name, _ in senders))
        ctx.output("sendingQuota", ses.sending_quota)
        ctx.output("sendingRate", ses.sending_rate)

        ctx.export("BounceTopicArn", topics["Bounce"].of("topic_arn"), "SES Bounce Topic ARN")
        ctx.export("ComplaintTopicArn", topics["Complaint"].of("topic_arn"), "SES Complaint Topic ARN")
        ctx.export("ConfigurationSetName", configuration_set_name, "SES Configuration Set Name")
        ctx.export("FromEmailAddress", ses.from_email, "From Email Address for sending")

        logger.info(f"Email sending granted to: {', '.join(n for n, _ in senders) or 'none'}")
