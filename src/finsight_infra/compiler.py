"""
Plan compiler
Orders the builders by dependency, runs them, resolves cross references and freezes the plan
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .alerting import AlertingEngine
from .builder import Builder, BuildContext
from .compute import FLEET_CATALOG, ComputeFleetProvisioner, ComputeUnitSpec
from .config import EnvironmentProfile
from .database import DataStoreProvisioner
from .errors import DependencyCycleError, PlanCompilationError, UnresolvedReferenceError
from .model import CrossReference, DeployUnit, Export, InputRef, Plan, Resource, freeze, iter_handles
from .network import NetworkTopologyBuilder
from .notifications import NotificationChannelProvisioner
from .traffic_filter import TrafficFilterEngine

logger = logging.getLogger(__name__)


def default_builders(catalog: Iterable[ComputeUnitSpec] = FLEET_CATALOG) -> List[Builder]:
    """The six FinSight units in declaration order"""
    return [
        NetworkTopologyBuilder(),
        DataStoreProvisioner(),
        ComputeFleetProvisioner(catalog),
        TrafficFilterEngine(),
        AlertingEngine(),
        NotificationChannelProvisioner(),
    ]


def _substitute(value: Any, inputs: Mapping[str, Any]) -> Any:
    if isinstance(value, InputRef):
        return inputs[value.name]
    if isinstance(value, Mapping):
        return {key: _substitute(item, inputs) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(item, inputs) for item in value]
    if isinstance(value, tuple):
        return tuple(_substitute(item, inputs) for item in value)
    return value


class PlanCompiler:
    """
    Turns an EnvironmentProfile into an immutable Plan.

    Units are built one at a time in topological order (declaration order
    breaks ties). A unit sees only the resolved outputs of units it depends
    on; nothing is frozen until every reference and handle has been checked.
    """

    def __init__(self, builders: Optional[Sequence[Builder]] = None):
        self.builders: Tuple[Builder, ...] = tuple(builders if builders is not None else default_builders())

    def resolve_order(self) -> List[Builder]:
        by_name: Dict[str, Builder] = {}
        for builder in self.builders:
            if not builder.name:
                raise PlanCompilationError(f"{builder!r} has no unit name")
            if builder.name in by_name:
                raise PlanCompilationError(f"Unit '{builder.name}' is declared by more than one builder")
            by_name[builder.name] = builder

        for builder in self.builders:
            for dependency in builder.depends_on:
                if dependency not in by_name:
                    raise UnresolvedReferenceError(
                        f"Unit '{builder.name}' depends on unknown unit '{dependency}'"
                    )

        ordered: List[Builder] = []
        placed: Set[str] = set()
        pending = list(self.builders)
        while pending:
            ready = next(
                (b for b in pending if all(dep in placed for dep in b.depends_on)),
                None,
            )
            if ready is None:
                raise DependencyCycleError(self._find_cycle(pending))
            ordered.append(ready)
            placed.add(ready.name)
            pending.remove(ready)
        return ordered

    @staticmethod
    def _find_cycle(pending: Sequence[Builder]) -> List[str]:
        """Walk unplaced dependencies until a unit repeats"""
        remaining = {builder.name: builder for builder in pending}
        path: List[str] = []
        current = pending[0].name
        while current not in path:
            path.append(current)
            current = next(dep for dep in remaining[current].depends_on if dep in remaining)
        return path[path.index(current):] + [current]

    def compile(self, profile: EnvironmentProfile) -> Plan:
        order = self.resolve_order()
        logger.info(
            f"Compiling plan for {profile.environment} ({profile.tier.value}): "
            f"{' -> '.join(b.name for b in order)}"
        )

        produced: Dict[str, Dict[str, Any]] = {}
        drafts: Dict[str, Dict[str, Any]] = {}
        dependencies: Dict[str, Set[str]] = {}
        position: Dict[str, int] = {}
        references: List[CrossReference] = []

        for index, builder in enumerate(order):
            ctx = BuildContext(profile, builder.name, builder.depends_on, produced)
            builder.build(ctx)

            inputs = self._resolve_inputs(ctx, produced, position, index)
            # Read-only once visible to dependents
            outputs = freeze(_substitute(ctx.outputs, inputs))
            drafts[builder.name] = {
                'depends_on': builder.depends_on,
                'resources': {
                    logical_id: (kind, _substitute(properties, inputs))
                    for logical_id, (kind, properties) in ctx.resources.items()
                },
                'inputs': inputs,
                'outputs': outputs,
                'exports': {
                    name: Export(_substitute(export.value, inputs), export.description)
                    for name, export in ctx.exports.items()
                },
            }
            produced[builder.name] = outputs
            position[builder.name] = index
            dependencies[builder.name] = set(builder.depends_on).union(
                *(dependencies[dep] for dep in builder.depends_on)
            )
            references.extend(ctx.references)
            logger.debug(
                f"Built unit {builder.name}: {len(ctx.resources)} resources, "
                f"{len(ctx.outputs)} outputs, {len(ctx.references)} references"
            )

        for name, draft in drafts.items():
            self._check_handles(name, draft, dependencies[name], drafts)

        units = tuple(
            DeployUnit(
                name=builder.name,
                depends_on=drafts[builder.name]['depends_on'],
                resources=tuple(
                    Resource(logical_id, kind, properties)
                    for logical_id, (kind, properties) in drafts[builder.name]['resources'].items()
                ),
                inputs=drafts[builder.name]['inputs'],
                outputs=drafts[builder.name]['outputs'],
                exports=drafts[builder.name]['exports'],
            )
            for builder in order
        )
        plan = Plan(environment=profile.environment, units=units, references=tuple(references))
        logger.info(
            f"Compiled plan for {profile.environment}: {len(plan)} units, "
            f"{sum(len(unit.resources) for unit in plan)} resources, {len(plan.references)} references"
        )
        return plan

    @staticmethod
    def _resolve_inputs(
        ctx: BuildContext,
        produced: Mapping[str, Mapping[str, Any]],
        position: Mapping[str, int],
        index: int,
    ) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for reference in ctx.references:
            producer = reference.producer_unit
            if producer not in ctx.depends_on:
                raise UnresolvedReferenceError(
                    f"Unit '{ctx.unit_name}' references {reference.producer_key} "
                    f"but does not depend on '{producer}'"
                )
            if producer not in produced or position[producer] >= index:
                raise UnresolvedReferenceError(
                    f"Unit '{ctx.unit_name}' references {reference.producer_key} "
                    f"before '{producer}' was built"
                )
            if reference.producer_output not in produced[producer]:
                raise UnresolvedReferenceError(
                    f"Unit '{ctx.unit_name}' references {reference.producer_key} "
                    f"but '{producer}' declares no such output"
                )
            inputs[reference.consumer_input] = produced[producer][reference.producer_output]
        return inputs

    @staticmethod
    def _check_handles(
        name: str,
        draft: Mapping[str, Any],
        reachable: Set[str],
        drafts: Mapping[str, Mapping[str, Any]],
    ) -> None:
        values = [properties for _, properties in draft['resources'].values()]
        values.append(draft['outputs'])
        values.extend(export.value for export in draft['exports'].values())
        for handle in iter_handles(values):
            if handle.unit != name and handle.unit not in reachable:
                raise UnresolvedReferenceError(
                    f"Unit '{name}' holds handle {handle} outside its dependencies"
                )
            if handle.resource not in drafts[handle.unit]['resources']:
                raise UnresolvedReferenceError(
                    f"Unit '{name}' holds handle {handle} to a resource that does not exist"
                )


def compile_plan(profile: EnvironmentProfile, builders: Optional[Sequence[Builder]] = None) -> Plan:
    """Compile the default FinSight plan (or the given builders) for one profile"""
    return PlanCompiler(builders).compile(profile)
