"""
Error taxonomy for plan compilation
Every error is raised before any DeployUnit is finalized
"""
from typing import Iterable, Optional


class PlanCompilationError(Exception):
    """Base class for all compilation failures"""
    pass


class ConfigValidationError(PlanCompilationError):
    """Profile field missing or malformed, or a policy table has no row for a profile value"""

    def __init__(self, message: str, fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.fields = tuple(fields or ())


class DependencyCycleError(PlanCompilationError):
    """Builder dependency graph is not acyclic"""

    def __init__(self, cycle: Iterable[str]):
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class UnresolvedReferenceError(PlanCompilationError):
    """A cross reference names an output that no declared dependency produces"""
    pass


class RuleConflictError(PlanCompilationError):
    """Two security rules share a priority"""

    def __init__(self, priority: int, rule_names: Iterable[str]):
        self.priority = priority
        self.rule_names = tuple(rule_names)
        super().__init__(
            f"Rules {', '.join(self.rule_names)} share priority {priority}"
        )


class RouteConflictError(PlanCompilationError):
    """The same (method, path) pair is bound twice"""

    def __init__(self, method: str, path: str, units: Iterable[str]):
        self.method = method
        self.path = path
        self.units = tuple(units)
        super().__init__(
            f"Route {method} {path} declared more than once (units: {', '.join(self.units)})"
        )


class ThresholdConfigError(PlanCompilationError):
    """Alarm comparator, threshold and missing-data policy are inconsistent"""
    pass


class ProfileNotFoundError(LookupError):
    """No profile exists for the requested environment name"""
    pass
