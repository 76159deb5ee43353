"""
Plan Stack for FinSight
Renders one compiled deploy unit into a CDK stack
"""
from typing import Any, Dict, Mapping, Optional, Tuple

import aws_cdk as cdk
from aws_cdk import Stack, CfnOutput
from constructs import Construct

from finsight_infra.executor import stack_name
from finsight_infra.model import Attr, DeployUnit, Plan, Resource

from stacks.network_stack import NetworkResources
from stacks.database_stack import DatabaseResources
from stacks.backend_stack import BackendResources
from stacks.security_stack import SecurityResources
from stacks.monitoring_stack import MonitoringResources
from stacks.email_stack import EmailResources


class ConstructRegistry:
    """Constructs rendered so far, keyed by (unit, logical id)"""

    def __init__(self):
        self._constructs: Dict[Tuple[str, str], Any] = {}

    def register(self, unit: str, logical_id: str, construct: Any) -> None:
        self._constructs[(unit, logical_id)] = construct

    def get(self, unit: str, logical_id: str) -> Any:
        try:
            return self._constructs[(unit, logical_id)]
        except KeyError:
            raise KeyError(f"{unit}.{logical_id} has not been rendered")

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._constructs


class PlanUnitStack(
    NetworkResources,
    DatabaseResources,
    BackendResources,
    SecurityResources,
    MonitoringResources,
    EmailResources,
    Stack,
):
    """
    CDK stack holding exactly the resources of one deploy unit.
    Handles to other units resolve to constructs already rendered in
    earlier stacks, which CDK turns into cross-stack exports.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        unit: DeployUnit,
        registry: ConstructRegistry,
        environment: str,
        asset_root: str = ".",
        **kwargs
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.unit = unit
        self.registry = registry
        self.env_name = environment
        self.asset_root = asset_root

        for resource in unit.resources:
            renderer = getattr(self, f"_render_{resource.kind.value}", None)
            if renderer is None:
                raise ValueError(f"No CDK renderer for resource kind '{resource.kind.value}'")
            registry.register(unit.name, resource.logical_id, renderer(resource))

        # CloudFormation Outputs
        for name, export in unit.exports.items():
            CfnOutput(
                self,
                name,
                value=self.as_string(export.value),
                description=export.description,
                export_name=f"{construct_id}-{name}"
            )

    def materialize(self, value: Any) -> Any:
        """Replace resource handles with constructs or their attribute tokens"""
        if isinstance(value, Attr):
            target = self.registry.get(value.unit, value.resource)
            if value.attribute is None:
                return target
            for part in value.attribute.split("."):
                # CloudFormation attribute of a raw CfnResource
                if part[:1].isupper():
                    target = cdk.Token.as_string(target.get_att(part))
                else:
                    target = getattr(target, part)
            return target
        if isinstance(value, Mapping):
            return {key: self.materialize(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.materialize(item) for item in value]
        return value

    def prop(self, resource: Resource, key: str, default: Any = None) -> Any:
        return self.materialize(resource.get(key, default))

    def as_string(self, value: Any) -> str:
        value = self.materialize(value)
        return value if isinstance(value, str) else str(value)


def render_plan(
    scope: Construct,
    plan: Plan,
    asset_root: str = ".",
    env: Optional[cdk.Environment] = None,
) -> Dict[str, PlanUnitStack]:
    """Render every unit in plan order and wire stack dependencies from the plan"""
    registry = ConstructRegistry()
    stacks: Dict[str, PlanUnitStack] = {}
    for unit in plan:
        stack = PlanUnitStack(
            scope,
            stack_name(unit.name, plan.environment),
            unit=unit,
            registry=registry,
            environment=plan.environment,
            asset_root=asset_root,
            env=env,
            description=f"FinSight {unit.name} - {plan.environment} environment"
        )
        for dependency in unit.depends_on:
            stack.add_dependency(stacks[dependency])
        stacks[unit.name] = stack
    return stacks
