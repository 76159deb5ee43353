"""
Builder contract
Each builder contributes one deploy unit; it sees only the outputs of the units it depends on
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import EnvironmentProfile
from .errors import PlanCompilationError, UnresolvedReferenceError
from .model import Attr, CrossReference, Export, InputRef, ResourceKind

logger = logging.getLogger(__name__)


class BuildContext:
    """
    Mutable draft of a single deploy unit.

    Builders add resources, outputs and exports here and reach other units
    only through ref() and lookup(), which record CrossReferences.
    """

    def __init__(
        self,
        profile: EnvironmentProfile,
        unit_name: str,
        depends_on: Tuple[str, ...],
        produced: Mapping[str, Mapping[str, Any]],
    ):
        self.profile = profile
        self.unit_name = unit_name
        self.depends_on = tuple(depends_on)
        self._produced = produced
        self.resources: Dict[str, Tuple[ResourceKind, Dict[str, Any]]] = {}
        self.outputs: Dict[str, Any] = {}
        self.exports: Dict[str, Export] = {}
        self.references: List[CrossReference] = []

    def add_resource(
        self,
        logical_id: str,
        kind: ResourceKind,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Attr:
        """Register a resource owned by this unit and return its handle"""
        if logical_id in self.resources:
            raise PlanCompilationError(
                f"Unit '{self.unit_name}' declares resource '{logical_id}' twice"
            )
        self.resources[logical_id] = (kind, dict(properties or {}))
        return Attr(self.unit_name, logical_id)

    def output(self, name: str, value: Any) -> None:
        if name in self.outputs:
            raise PlanCompilationError(f"Unit '{self.unit_name}' declares output '{name}' twice")
        self.outputs[name] = value

    def export(self, name: str, value: Any, description: str = "") -> None:
        self.exports[name] = Export(value=value, description=description)

    def ref(self, unit: str, output: str) -> InputRef:
        """Declare an input fed by another unit's output; resolved after the build"""
        input_name = f"{unit}.{output}"
        self._record(unit, output, input_name)
        return InputRef(self.unit_name, input_name)

    def lookup(self, unit: str, output: str) -> Any:
        """
        Read another unit's output now, for structural decisions such as
        iterating the compute fleet. The read is recorded like ref().
        """
        self._check_available(unit, output)
        self._record(unit, output, f"{unit}.{output}")
        return self._produced[unit][output]

    def _record(self, unit: str, output: str, input_name: str) -> None:
        reference = CrossReference(
            producer_unit=unit,
            producer_output=output,
            consumer_unit=self.unit_name,
            consumer_input=input_name,
        )
        if reference not in self.references:
            self.references.append(reference)

    def _check_available(self, unit: str, output: str) -> None:
        if unit not in self.depends_on:
            raise UnresolvedReferenceError(
                f"Unit '{self.unit_name}' reads {unit}.{output} but does not depend on '{unit}'"
            )
        if unit not in self._produced:
            raise UnresolvedReferenceError(
                f"Unit '{self.unit_name}' reads {unit}.{output} before '{unit}' was built"
            )
        if output not in self._produced[unit]:
            raise UnresolvedReferenceError(
                f"Unit '{self.unit_name}' reads {unit}.{output} but '{unit}' has no such output"
            )


class Builder:
    """Base class for unit builders"""
    name: str = ""
    depends_on: Tuple[str, ...] = ()

    def build(self, ctx: BuildContext) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, depends_on={self.depends_on!r})"
