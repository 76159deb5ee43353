"""
Compute fleet provisioner
Contains the Lambda function catalog, the REST API route table and the token authorizer gate
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .builder import Builder, BuildContext
from .errors import ConfigValidationError, RouteConflictError
from .model import Attr, ResourceKind

logger = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
STAGE_NAME = "prod"
AUTHORIZER_UNIT = "authorizer"
AUTHORIZER_CACHE_TTL_SECONDS = 300

CORS_ALLOW_HEADERS = (
    "Content-Type",
    "Authorization",
    "X-Api-Key",
    "X-Amz-Date",
    "X-Amz-Security-Token",
)

_PATH_SEGMENT = re.compile(r'^(\{[A-Za-z_][A-Za-z0-9_]*\}|[A-Za-z0-9._-]+)$')


@dataclass(frozen=True)
class RouteEntry:
    method: str
    path: str
    auth_required: bool = True

    @property
    def key(self) -> str:
        return f"{self.method} {self.path}"


@dataclass(frozen=True)
class ResourceLimits:
    memory: int
    timeout_seconds: int


@dataclass(frozen=True)
class ComputeUnitSpec:
    """One named compute unit: its routes, optional limit override and own environment"""
    name: str
    routes: Tuple[RouteEntry, ...] = ()
    limits: Optional[ResourceLimits] = None
    env: Mapping[str, str] = field(default_factory=dict)


def _crud(path: str) -> Tuple[RouteEntry, ...]:
    """Collection + item routes, all protected"""
    return (
        RouteEntry("GET", path),
        RouteEntry("POST", path),
        RouteEntry("GET", f"{path}/{{id}}"),
        RouteEntry("PUT", f"{path}/{{id}}"),
        RouteEntry("DELETE", f"{path}/{{id}}"),
    )


FLEET_CATALOG: Tuple[ComputeUnitSpec, ...] = (
    ComputeUnitSpec("users", (
        RouteEntry("GET", "/v1/users/me"),
        RouteEntry("PUT", "/v1/users/me"),
    )),
    ComputeUnitSpec("accounts", _crud("/v1/accounts")),
    ComputeUnitSpec("transactions", _crud("/v1/transactions")),
    ComputeUnitSpec("categories", _crud("/v1/categories")),
    ComputeUnitSpec("budgets", _crud("/v1/budgets")),
    ComputeUnitSpec("reports", (
        RouteEntry("GET", "/v1/reports"),
        RouteEntry("GET", "/v1/reports/summary"),
        RouteEntry("GET", "/v1/reports/budget"),
    )),
    # Same unit serves public and protected routes
    ComputeUnitSpec("auth", (
        RouteEntry("POST", "/v1/auth/callback", auth_required=False),
        RouteEntry("POST", "/v1/auth/refresh", auth_required=False),
        RouteEntry("POST", "/v1/auth/logout"),
        RouteEntry("GET", "/v1/health", auth_required=False),
    )),
    ComputeUnitSpec("notifications", (
        RouteEntry("GET", "/v1/notifications"),
        RouteEntry("POST", "/v1/notifications"),
        RouteEntry("GET", "/v1/notifications/preferences"),
        RouteEntry("PUT", "/v1/notifications/preferences"),
    )),
)

AUTHORIZER_LIMITS = ResourceLimits(memory=256, timeout_seconds=10)


@dataclass(frozen=True)
class Route:
    """Entry of the compiled route table"""
    unit: str
    method: str
    path: str
    auth_required: bool

    @property
    def logical_id(self) -> str:
        # ':' never appears in a valid path segment
        return ":".join(["Route", self.method] + self.path.strip("/").split("/"))


def validate_route(unit: str, entry: RouteEntry) -> None:
    if entry.method not in HTTP_METHODS:
        raise ConfigValidationError(
            f"Unit '{unit}' route {entry.key}: unsupported method '{entry.method}'"
        )
    if not entry.path.startswith("/") or entry.path == "/":
        raise ConfigValidationError(f"Unit '{unit}' route {entry.key}: path must start with '/'")
    for segment in entry.path.strip("/").split("/"):
        if not _PATH_SEGMENT.match(segment):
            raise ConfigValidationError(
                f"Unit '{unit}' route {entry.key}: invalid path segment '{segment}'"
            )


def build_route_table(specs: Iterable[ComputeUnitSpec]) -> Tuple[Route, ...]:
    """
    Flatten unit route entries into one table for the shared endpoint.

    Raises RouteConflictError when a (method, path) pair appears twice,
    whether inside one unit or across units.
    """
    seen: Dict[Tuple[str, str], str] = {}
    table: List[Route] = []
    for spec in specs:
        for entry in spec.routes:
            validate_route(spec.name, entry)
            pair = (entry.method, entry.path)
            if pair in seen:
                raise RouteConflictError(entry.method, entry.path, [seen[pair], spec.name])
            seen[pair] = spec.name
            table.append(Route(spec.name, entry.method, entry.path, entry.auth_required))
    return tuple(table)


def validate_catalog(specs: Iterable[ComputeUnitSpec]) -> None:
    names = set()
    for spec in specs:
        if not re.match(r'^[a-z][a-z0-9]*$', spec.name):
            raise ConfigValidationError(f"Invalid compute unit name '{spec.name}'")
        if spec.name == AUTHORIZER_UNIT:
            raise ConfigValidationError(f"'{AUTHORIZER_UNIT}' is reserved for the authorization gate")
        if spec.name in names:
            raise ConfigValidationError(f"Compute unit '{spec.name}' declared twice")
        names.add(spec.name)


def function_logical_id(unit: str) -> str:
    return f"{unit}Function"


class ComputeFleetProvisioner(Builder):
    """
    Builds the function fleet behind one REST API.

    Every unit gets the same base environment (database endpoint, credential
    reference, environment name) merged with its own, and the profile's
    default limits unless it overrides them.
    """
    name = "api"
    depends_on = ("network", "database")

    def __init__(self, catalog: Iterable[ComputeUnitSpec] = FLEET_CATALOG):
        self.catalog = tuple(catalog)

    def build(self, ctx: BuildContext) -> None:
        profile = ctx.profile
        validate_catalog(self.catalog)
        routes = build_route_table(self.catalog)

        api_name = f"finsight-api-{profile.environment}"
        api = ctx.add_resource("FinSightApi", ResourceKind.REST_API, {
            "restApiName": api_name,
            "description": f"FinSight REST API for {profile.environment}",
            "stageName": STAGE_NAME,
            "tracing": profile.tracing,
            "cors": {
                "allowOrigins": ["*"],
                "allowMethods": sorted(HTTP_METHODS),
                "allowHeaders": CORS_ALLOW_HEADERS,
                "allowCredentials": True,
            },
        })

        # The gate exists only when some route uses it
        gate = None
        if any(route.auth_required for route in routes):
            gate = self._build_authorizer(ctx, api)
        functions = self._build_fleet(ctx)

        for route in routes:
            ctx.add_resource(f"{route.unit}{route.logical_id}", ResourceKind.ROUTE, {
                "api": api,
                "method": route.method,
                "path": route.path,
                "function": functions[route.unit],
                "authorizer": gate if route.auth_required else None,
            })

        bindings: Dict[str, List[str]] = {spec.name: [] for spec in self.catalog}
        for route in routes:
            bindings[route.unit].append(f"{route.method} {route.path}")

        ctx.output("endpoint", api)
        ctx.output("endpointUrl", api.of("url"))
        ctx.output("restApiId", api.of("rest_api_id"))
        ctx.output("apiName", api_name)
        ctx.output("stageName", STAGE_NAME)
        ctx.output("stageArn", api.of("deployment_stage.stage_arn"))
        ctx.output("functions", functions)
        ctx.output("bindings", bindings)

        ctx.export("ApiEndpoint", api.of("url"), "API Gateway endpoint URL")
        ctx.export("ApiId", api.of("rest_api_id"), "API Gateway ID")

        logger.info(f"Compute fleet: {len(functions)} units, {len(routes)} routes")

    def _build_authorizer(self, ctx: BuildContext, api: Attr) -> Attr:
        profile = ctx.profile
        function = ctx.add_resource("AuthorizerFunction", ResourceKind.FUNCTION, {
            "runtime": "nodejs18.x",
            "handler": "index.handler",
            "codePath": "lambda/authorizer",
            "environment": {
                "AUTH0_DOMAIN": profile.auth0_domain,
                "AUTH0_AUDIENCE": profile.auth0_audience,
            },
            "memorySize": AUTHORIZER_LIMITS.memory,
            "timeoutSeconds": AUTHORIZER_LIMITS.timeout_seconds,
            "tracing": profile.tracing,
        })
        return ctx.add_resource("ApiAuthorizer", ResourceKind.AUTHORIZER, {
            "name": f"finsight-authorizer-{profile.environment}",
            "api": api,
            "function": function,
            "type": "TOKEN",
            "identitySource": "Authorization",
            "resultsCacheTtlSeconds": AUTHORIZER_CACHE_TTL_SECONDS,
        })

    def _build_fleet(self, ctx: BuildContext) -> Dict[str, Attr]:
        profile = ctx.profile
        base_env = {
            "DB_SECRET_ARN": ctx.ref("database", "credentialRef"),
            "DB_ENDPOINT": ctx.ref("database", "endpointHost"),
            "ENVIRONMENT": profile.environment,
        }
        default_limits = ResourceLimits(
            memory=profile.lambda_config.memory_size,
            timeout_seconds=profile.lambda_config.timeout,
        )
        secret = ctx.ref("database", "secret")

        functions: Dict[str, Attr] = {}
        for spec in self.catalog:
            limits = spec.limits or default_limits
            environment: Dict[str, Any] = dict(base_env)
            environment.update(spec.env)

            function = ctx.add_resource(function_logical_id(spec.name), ResourceKind.FUNCTION, {
                "runtime": "provided.al2",
                "handler": "bootstrap",
                "codePath": f"lambda/{spec.name}",
                "vpc": ctx.ref("network", "vpc"),
                "subnets": ctx.ref("network", "subnetGroup"),
                "securityGroups": [ctx.ref("network", "computeAcl")],
                "environment": environment,
                "memorySize": limits.memory,
                "timeoutSeconds": limits.timeout_seconds,
                "tracing": profile.tracing,
            })
            ctx.add_resource(f"{spec.name}SecretRead", ResourceKind.SECRET_READ_GRANT, {
                "secret": secret,
                "grantee": function,
            })
            functions[spec.name] = function
        return functions
