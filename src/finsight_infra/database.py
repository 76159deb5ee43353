"""
Data store provisioner
Contains the RDS PostgreSQL instance, its generated credentials and the schema init function
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from .builder import Builder, BuildContext
from .config import EnvironmentProfile, Tier
from .errors import ConfigValidationError
from .model import ResourceKind

logger = logging.getLogger(__name__)

DATABASE_NAME = "finsight"
DATABASE_USERNAME = "postgres"
ENGINE_VERSION = "15"
EXCLUDED_PASSWORD_CHARACTERS = '"@/\\'


class RemovalPolicy(str, Enum):
    RETAIN = "retain"
    DESTROY = "destroy"


@dataclass(frozen=True)
class DatabasePolicy:
    instance_class: str
    multi_az: bool
    deletion_protection: bool
    removal_policy: RemovalPolicy
    backup_retention_days: int


# Single source of truth for everything environment-dependent about the database
DATABASE_POLICIES: Dict[Tier, DatabasePolicy] = {
    Tier.PRODUCTION: DatabasePolicy(
        instance_class="t3.small",
        multi_az=True,
        deletion_protection=True,
        removal_policy=RemovalPolicy.RETAIN,
        backup_retention_days=7,
    ),
    Tier.NON_PRODUCTION: DatabasePolicy(
        instance_class="t3.micro",
        multi_az=False,
        deletion_protection=False,
        removal_policy=RemovalPolicy.DESTROY,
        backup_retention_days=7,
    ),
}


def select_policy(tier: Tier) -> DatabasePolicy:
    """Look up the policy row for a tier; a missing row aborts compilation"""
    try:
        return DATABASE_POLICIES[tier]
    except KeyError:
        raise ConfigValidationError(f"No database policy for tier '{tier}'", fields=['tier'])


def check_profile_agrees(profile: EnvironmentProfile, policy: DatabasePolicy) -> None:
    """Reject databaseConfig values that contradict the tier policy"""
    requested = profile.database_config
    conflicts = []
    if requested.instance_type.removeprefix("db.") != policy.instance_class:
        conflicts.append(("databaseConfig.instanceType", requested.instance_type, policy.instance_class))
    if requested.multi_az != policy.multi_az:
        conflicts.append(("databaseConfig.multiAz", requested.multi_az, policy.multi_az))
    if requested.deletion_protection != policy.deletion_protection:
        conflicts.append(
            ("databaseConfig.deletionProtection", requested.deletion_protection, policy.deletion_protection)
        )

    if conflicts:
        details = ', '.join(f"{field}={value!r} (policy: {expected!r})" for field, value, expected in conflicts)
        raise ConfigValidationError(
            f"databaseConfig contradicts the {profile.tier.value} policy: {details}",
            fields=[field for field, _, _ in conflicts],
        )


class DataStoreProvisioner(Builder):
    """Managed database placed in the private subnets behind the data-side group"""
    name = "database"
    depends_on = ("network",)

    def build(self, ctx: BuildContext) -> None:
        profile = ctx.profile
        policy = select_policy(profile.tier)
        check_profile_agrees(profile, policy)

        secret = ctx.add_resource("DatabaseSecret", ResourceKind.SECRET, {
            "secretName": f"finsight-db-credentials-{profile.environment}",
            "secretStringTemplate": {"username": DATABASE_USERNAME},
            "generateStringKey": "password",
            "excludeCharacters": EXCLUDED_PASSWORD_CHARACTERS,
            "removalPolicy": policy.removal_policy,
        })

        database = ctx.add_resource("FinSightDatabase", ResourceKind.DATABASE_INSTANCE, {
            "engine": "postgres",
            "engineVersion": ENGINE_VERSION,
            "instanceClass": policy.instance_class,
            "vpc": ctx.ref("network", "vpc"),
            "subnets": ctx.ref("network", "subnetGroup"),
            "securityGroups": [ctx.ref("network", "dataAcl")],
            "credentials": secret,
            "databaseName": DATABASE_NAME,
            "port": ctx.ref("network", "databasePort"),
            "multiAz": policy.multi_az,
            "storageEncrypted": True,
            "backupRetentionDays": policy.backup_retention_days,
            "deletionProtection": policy.deletion_protection,
            "removalPolicy": policy.removal_policy,
        })

        endpoint_host = database.of("db_instance_endpoint_address")
        credential_ref = secret.of("secret_arn")

        # Schema initialisation runs inside the network with read access to the credentials
        init_function = ctx.add_resource("DbInitFunction", ResourceKind.FUNCTION, {
            "runtime": "nodejs18.x",
            "handler": "index.handler",
            "codePath": "lambda/db-init",
            "vpc": ctx.ref("network", "vpc"),
            "subnets": ctx.ref("network", "subnetGroup"),
            "securityGroups": [ctx.ref("network", "computeAcl")],
            "environment": {
                "DB_SECRET_ARN": credential_ref,
                "DB_ENDPOINT": endpoint_host,
            },
            "memorySize": 256,
            "timeoutSeconds": 300,
            "tracing": profile.tracing,
        })
        ctx.add_resource("DbInitSecretRead", ResourceKind.SECRET_READ_GRANT, {
            "secret": secret,
            "grantee": init_function,
        })

        ctx.output("endpointHost", endpoint_host)
        ctx.output("credentialRef", credential_ref)
        ctx.output("secret", secret)
        ctx.output("instance", database)
        ctx.output("instanceIdentifier", database.of("instance_identifier"))
        ctx.output("databaseName", DATABASE_NAME)

        ctx.export("DatabaseEndpoint", endpoint_host, "RDS PostgreSQL endpoint")
        ctx.export("DatabaseSecretArn", credential_ref, "ARN of database credentials secret")
        ctx.export("DatabaseName", DATABASE_NAME, "Database name")

        logger.debug(
            f"Database policy for {profile.tier.value}: {policy.instance_class}, "
            f"multi_az={policy.multi_az}, removal={policy.removal_policy.value}"
        )
