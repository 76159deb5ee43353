"""
Email Stack resources for FinSight
Renders the SES configuration set, sending identity and feedback event destinations
"""
from aws_cdk import aws_ses as ses

from finsight_infra.model import Resource


class EmailResources:
    """SES renderers; send permissions are rendered as policy grants by the backend renderers"""

    def _render_email_configuration_set(self, resource: Resource) -> ses.ConfigurationSet:
        return ses.ConfigurationSet(
            self,
            resource.logical_id,
            configuration_set_name=resource.get("configurationSetName")
        )

    def _render_email_identity(self, resource: Resource) -> ses.EmailIdentity:
        if resource.get("domain"):
            identity = ses.Identity.domain(resource.get("domain"))
        else:
            identity = ses.Identity.email(resource.get("email"))
        return ses.EmailIdentity(
            self,
            resource.logical_id,
            identity=identity,
            configuration_set=self.prop(resource, "configurationSet")
        )

    def _render_email_event_destination(self, resource: Resource) -> ses.ConfigurationSetEventDestination:
        configuration_set = self.prop(resource, "configurationSet")
        return configuration_set.add_event_destination(
            resource.logical_id,
            destination=ses.EventDestination.sns_topic(self.prop(resource, "topic")),
            events=[getattr(ses.EmailSendingEvent, event) for event in resource.get("events")]
        )
