"""
FinSight infrastructure plan compiler
Compiles an environment profile into an ordered plan of deploy units
"""
from .compiler import PlanCompiler, compile_plan, default_builders
from .config import EnvironmentProfile, ProfileLoader, Tier, load_profile
from .errors import (
    ConfigValidationError,
    DependencyCycleError,
    PlanCompilationError,
    ProfileNotFoundError,
    RouteConflictError,
    RuleConflictError,
    ThresholdConfigError,
    UnresolvedReferenceError,
)
from .executor import ApplyOutcome, ChangeSet, PlanExecutor, SnapshotExecutor, compute_changeset, stack_name
from .model import Attr, CrossReference, DeployUnit, Plan, Resource, ResourceKind

__version__ = "1.0.0"

__all__ = [
    "ApplyOutcome",
    "Attr",
    "ChangeSet",
    "ConfigValidationError",
    "CrossReference",
    "DependencyCycleError",
    "DeployUnit",
    "EnvironmentProfile",
    "Plan",
    "PlanCompilationError",
    "PlanCompiler",
    "PlanExecutor",
    "ProfileLoader",
    "ProfileNotFoundError",
    "Resource",
    "ResourceKind",
    "RouteConflictError",
    "RuleConflictError",
    "SnapshotExecutor",
    "ThresholdConfigError",
    "Tier",
    "UnresolvedReferenceError",
    "compile_plan",
    "compute_changeset",
    "default_builders",
    "load_profile",
    "stack_name",
]
