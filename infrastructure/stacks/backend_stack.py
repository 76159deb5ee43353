"""
Backend Stack resources for FinSight
Renders the Lambda fleet, the API Gateway REST API, its token authorizer and routes
"""
import os

from aws_cdk import (
    aws_lambda as _lambda,
    aws_apigateway as apigateway,
    aws_iam as iam,
    Duration,
)

from finsight_infra.model import Resource

RUNTIMES = {
    "provided.al2": _lambda.Runtime.PROVIDED_AL2,
    "nodejs18.x": _lambda.Runtime.NODEJS_18_X,
}


class BackendResources:
    """
    Backend renderers for functions, grants and the REST API.
    This part of the plan changes most often.
    """

    def _render_function(self, resource: Resource) -> _lambda.Function:
        vpc = self.prop(resource, "vpc")
        return _lambda.Function(
            self,
            resource.logical_id,
            runtime=RUNTIMES[resource.get("runtime")],
            handler=resource.get("handler"),
            code=_lambda.Code.from_asset(os.path.join(self.asset_root, resource.get("codePath"))),
            timeout=Duration.seconds(resource.get("timeoutSeconds")),
            memory_size=resource.get("memorySize"),
            vpc=vpc,
            vpc_subnets=self.prop(resource, "subnets") if vpc else None,
            security_groups=self.prop(resource, "securityGroups") if vpc else None,
            environment={
                key: self.as_string(value)
                for key, value in resource.get("environment", {}).items()
            },
            tracing=_lambda.Tracing.ACTIVE if resource.get("tracing") else _lambda.Tracing.DISABLED
        )

    def _render_policy_grant(self, resource: Resource) -> iam.PolicyStatement:
        statement = iam.PolicyStatement(
            actions=list(resource.get("actions")),
            resources=list(resource.get("resources")),
            conditions=self.prop(resource, "conditions")
        )
        self.prop(resource, "grantee").add_to_role_policy(statement)
        return statement

    def _render_rest_api(self, resource: Resource) -> apigateway.RestApi:
        cors = resource.get("cors")
        return apigateway.RestApi(
            self,
            resource.logical_id,
            rest_api_name=resource.get("restApiName"),
            description=resource.get("description"),
            default_cors_preflight_options=apigateway.CorsOptions(
                allow_origins=list(cors["allowOrigins"]),
                allow_methods=list(cors["allowMethods"]),
                allow_headers=list(cors["allowHeaders"]),
                allow_credentials=cors["allowCredentials"]
            ),
            deploy_options=apigateway.StageOptions(
                stage_name=resource.get("stageName"),
                tracing_enabled=resource.get("tracing"),
                metrics_enabled=True
            )
        )

    def _render_authorizer(self, resource: Resource) -> apigateway.TokenAuthorizer:
        return apigateway.TokenAuthorizer(
            self,
            resource.logical_id,
            handler=self.prop(resource, "function"),
            authorizer_name=resource.get("name"),
            identity_source=apigateway.IdentitySource.header(resource.get("identitySource")),
            results_cache_ttl=Duration.seconds(resource.get("resultsCacheTtlSeconds"))
        )

    def _render_route(self, resource: Resource) -> apigateway.Method:
        api = self.prop(resource, "api")
        integration = apigateway.LambdaIntegration(self.prop(resource, "function"))
        endpoint = api.root.resource_for_path(resource.get("path"))

        authorizer = self.prop(resource, "authorizer")
        if authorizer is None:
            return endpoint.add_method(resource.get("method"), integration)
        return endpoint.add_method(
            resource.get("method"),
            integration,
            authorizer=authorizer,
            authorization_type=apigateway.AuthorizationType.CUSTOM
        )
