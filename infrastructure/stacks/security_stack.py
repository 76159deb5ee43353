"""
Security Stack resources for FinSight
Renders the WAFv2 web ACL and its association with the API stage
"""
import aws_cdk as cdk
from aws_cdk import aws_wafv2 as wafv2

from finsight_infra.model import Resource, thaw


class SecurityResources:
    """WAF renderers; the rule set arrives already ordered and in CloudFormation form"""

    def _render_web_acl(self, resource: Resource) -> cdk.CfnResource:
        return cdk.CfnResource(
            self,
            resource.logical_id,
            type="AWS::WAFv2::WebACL",
            properties=thaw(resource.properties)
        )

    def _render_web_acl_association(self, resource: Resource) -> wafv2.CfnWebACLAssociation:
        return wafv2.CfnWebACLAssociation(
            self,
            resource.logical_id,
            resource_arn=self.as_string(resource.get("resourceArn")),
            web_acl_arn=self.as_string(resource.get("webAclArn"))
        )
