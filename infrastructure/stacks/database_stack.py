"""
Database Stack resources for FinSight
Renders the RDS PostgreSQL instance and its Secrets Manager credentials
"""
import json

import aws_cdk as cdk
from aws_cdk import (
    aws_ec2 as ec2,
    aws_rds as rds,
    aws_secretsmanager as secretsmanager,
    Duration,
)

from finsight_infra.model import Resource, thaw

POSTGRES_VERSIONS = {
    "15": rds.PostgresEngineVersion.VER_15,
    "16": rds.PostgresEngineVersion.VER_16,
}


def removal_policy(value) -> cdk.RemovalPolicy:
    return getattr(cdk.RemovalPolicy, value.name)


class DatabaseResources:
    """Database renderers: credentials first, then the instance that consumes them"""

    def _render_secret(self, resource: Resource) -> secretsmanager.Secret:
        return secretsmanager.Secret(
            self,
            resource.logical_id,
            secret_name=resource.get("secretName"),
            description="RDS PostgreSQL credentials for FinSight",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template=json.dumps(thaw(resource.get("secretStringTemplate"))),
                generate_string_key=resource.get("generateStringKey"),
                exclude_characters=resource.get("excludeCharacters")
            ),
            removal_policy=removal_policy(resource.get("removalPolicy"))
        )

    def _render_database_instance(self, resource: Resource) -> rds.DatabaseInstance:
        return rds.DatabaseInstance(
            self,
            resource.logical_id,
            engine=rds.DatabaseInstanceEngine.postgres(
                version=POSTGRES_VERSIONS[resource.get("engineVersion")]
            ),
            instance_type=ec2.InstanceType(resource.get("instanceClass")),
            vpc=self.prop(resource, "vpc"),
            vpc_subnets=self.prop(resource, "subnets"),
            security_groups=self.prop(resource, "securityGroups"),
            credentials=rds.Credentials.from_secret(self.prop(resource, "credentials")),
            database_name=resource.get("databaseName"),
            port=resource.get("port"),
            multi_az=resource.get("multiAz"),
            storage_encrypted=resource.get("storageEncrypted"),
            backup_retention=Duration.days(resource.get("backupRetentionDays")),
            deletion_protection=resource.get("deletionProtection"),
            removal_policy=removal_policy(resource.get("removalPolicy")),
            publicly_accessible=False
        )

    def _render_secret_read_grant(self, resource: Resource):
        secret = self.prop(resource, "secret")
        return secret.grant_read(self.prop(resource, "grantee"))
