"""
Executor interface
Protocol for whatever materializes a Plan, plus the change-set computation shared by executors
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from .model import Plan

logger = logging.getLogger(__name__)


def stack_name(unit_name: str, environment: str) -> str:
    """Deployed stack name of a unit, shared by every executor"""
    return f"FinSight{unit_name[:1].upper()}{unit_name[1:]}Stack-{environment}"


@dataclass(frozen=True)
class ChangeSet:
    """Resource keys (unit/logicalId) to create, update and delete"""
    creates: Tuple[str, ...] = ()
    updates: Tuple[str, ...] = ()
    deletes: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)

    def summary(self) -> str:
        return f"{len(self.creates)} to create, {len(self.updates)} to update, {len(self.deletes)} to delete"


@dataclass(frozen=True)
class ApplyOutcome:
    environment: str
    fingerprint: str
    changes: ChangeSet
    exports: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class PlanExecutor(Protocol):
    def apply(self, plan: Plan) -> ApplyOutcome:
        ...

    def diff(self, plan: Plan, live_state: Optional[Mapping[str, Any]]) -> ChangeSet:
        ...


def _index_resources(snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    index = {}
    for unit in snapshot.get('units', []):
        for resource in unit.get('resources', []):
            key = f"{unit['name']}/{resource['logicalId']}"
            index[key] = (resource['kind'], resource['properties'])
    return index


def compute_changeset(plan: Plan, live_state: Optional[Mapping[str, Any]]) -> ChangeSet:
    """
    Compare a plan against the snapshot of the plan last applied.

    live_state is a previous Plan.snapshot() (or None for a fresh
    environment). A resource whose kind or properties changed is an update.
    """
    desired = _index_resources(plan.snapshot())
    current = _index_resources(live_state or {})

    creates = tuple(key for key in desired if key not in current)
    updates = tuple(key for key in desired if key in current and desired[key] != current[key])
    deletes = tuple(key for key in current if key not in desired)
    return ChangeSet(creates=creates, updates=updates, deletes=deletes)


class SnapshotExecutor:
    """
    Executor that records applied plans as snapshots instead of calling a
    provider. Reapplying an unchanged plan produces an empty change set.
    """

    def __init__(self, state: Optional[Mapping[str, Any]] = None):
        self.state: Optional[Dict[str, Any]] = dict(state) if state else None

    def diff(self, plan: Plan, live_state: Optional[Mapping[str, Any]]) -> ChangeSet:
        return compute_changeset(plan, live_state)

    def apply(self, plan: Plan) -> ApplyOutcome:
        changes = self.diff(plan, self.state)
        if changes.is_empty:
            logger.info(f"Plan for {plan.environment} is already applied")
        else:
            logger.info(f"Applying plan for {plan.environment}: {changes.summary()}")
        self.state = plan.snapshot()
        return ApplyOutcome(
            environment=plan.environment,
            fingerprint=plan.fingerprint(),
            changes=changes,
            exports=plan.exports(),
        )
