"""
Plan data model
Resources, deploy units, cross references and the immutable plan handed to the executor
"""
import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple


class ResourceKind(str, Enum):
    """Closed set of resource types a plan may contain"""
    VPC = "vpc"
    SECURITY_GROUP = "security_group"
    INGRESS_RULE = "ingress_rule"
    SUBNET_GROUP = "subnet_group"
    SECRET = "secret"
    DATABASE_INSTANCE = "database_instance"
    FUNCTION = "function"
    SECRET_READ_GRANT = "secret_read_grant"
    POLICY_GRANT = "policy_grant"
    REST_API = "rest_api"
    AUTHORIZER = "authorizer"
    ROUTE = "route"
    WEB_ACL = "web_acl"
    WEB_ACL_ASSOCIATION = "web_acl_association"
    TOPIC = "topic"
    EMAIL_SUBSCRIPTION = "email_subscription"
    ALARM = "alarm"
    DASHBOARD = "dashboard"
    EMAIL_CONFIGURATION_SET = "email_configuration_set"
    EMAIL_IDENTITY = "email_identity"
    EMAIL_EVENT_DESTINATION = "email_event_destination"


@dataclass(frozen=True)
class Attr:
    """
    Symbolic handle to a resource, or to one of its attributes.
    The executor materializes it once the resource exists.
    """
    unit: str
    resource: str
    attribute: Optional[str] = None

    def of(self, attribute: str) -> 'Attr':
        """Handle to an attribute of the same resource"""
        return replace(self, attribute=attribute)

    def __str__(self) -> str:
        path = f"{self.unit}.{self.resource}"
        return f"{path}.{self.attribute}" if self.attribute else path


@dataclass(frozen=True)
class InputRef:
    """Placeholder for a consumer input, replaced during resolution"""
    unit: str
    name: str


@dataclass(frozen=True)
class CrossReference:
    """Named pointer from a producer unit output to a consumer unit input"""
    producer_unit: str
    producer_output: str
    consumer_unit: str
    consumer_input: str

    @property
    def producer_key(self) -> str:
        return f"{self.producer_unit}.{self.producer_output}"


@dataclass(frozen=True)
class Export:
    value: Any
    description: str = ""


@dataclass(frozen=True)
class Resource:
    """Typed, attribute-bearing node owned by exactly one deploy unit"""
    logical_id: str
    kind: ResourceKind
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'properties', freeze(self.properties))

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)


@dataclass(frozen=True)
class DeployUnit:
    """Named group of owned resources with declared outputs"""
    name: str
    depends_on: Tuple[str, ...]
    resources: Tuple[Resource, ...]
    inputs: Mapping[str, Any]
    outputs: Mapping[str, Any]
    exports: Mapping[str, Export]

    def __post_init__(self):
        object.__setattr__(self, 'depends_on', tuple(self.depends_on))
        object.__setattr__(self, 'resources', tuple(self.resources))
        object.__setattr__(self, 'inputs', freeze(self.inputs))
        object.__setattr__(self, 'outputs', freeze(self.outputs))
        object.__setattr__(self, 'exports', MappingProxyType(dict(self.exports)))

    def resource(self, logical_id: str) -> Resource:
        for resource in self.resources:
            if resource.logical_id == logical_id:
                return resource
        raise KeyError(f"Unit '{self.name}' has no resource '{logical_id}'")

    def has_resource(self, logical_id: str) -> bool:
        return any(resource.logical_id == logical_id for resource in self.resources)

    def resources_of(self, kind: ResourceKind) -> Tuple[Resource, ...]:
        return tuple(resource for resource in self.resources if resource.kind is kind)

    def snapshot(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'dependsOn': list(self.depends_on),
            'resources': [
                {
                    'logicalId': resource.logical_id,
                    'kind': resource.kind.value,
                    'properties': serialize(resource.properties),
                }
                for resource in self.resources
            ],
            'inputs': serialize(self.inputs),
            'outputs': serialize(self.outputs),
            'exports': {
                name: {'value': serialize(export.value), 'description': export.description}
                for name, export in self.exports.items()
            },
        }


@dataclass(frozen=True)
class Plan:
    """Immutable, ordered, fully-resolved result of compilation"""
    environment: str
    units: Tuple[DeployUnit, ...]
    references: Tuple[CrossReference, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'units', tuple(self.units))
        object.__setattr__(self, 'references', tuple(self.references))

    def __iter__(self) -> Iterator[DeployUnit]:
        return iter(self.units)

    def __len__(self) -> int:
        return len(self.units)

    @property
    def order(self) -> Tuple[str, ...]:
        return tuple(unit.name for unit in self.units)

    def unit(self, name: str) -> DeployUnit:
        for unit in self.units:
            if unit.name == name:
                return unit
        raise KeyError(f"Plan has no unit '{name}'")

    def exports(self) -> Dict[str, Dict[str, Any]]:
        """Named export values per unit, for the executor and operators"""
        return {
            unit.name: {name: export.value for name, export in unit.exports.items()}
            for unit in self.units
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            'environment': self.environment,
            'units': [unit.snapshot() for unit in self.units],
            'references': [
                {
                    'producer': reference.producer_key,
                    'consumer': f"{reference.consumer_unit}.{reference.consumer_input}",
                }
                for reference in self.references
            ],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.snapshot(), indent=indent, sort_keys=True)

    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_json(indent=None).encode('utf-8')).hexdigest()


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists into read-only equivalents"""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted(freeze(item) for item in value))
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze: plain dicts and lists, handles left untouched"""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    return value


def serialize(value: Any) -> Any:
    """JSON-ready form of a frozen value; handles become {"$ref": "unit.resource.attr"}"""
    if isinstance(value, Attr):
        return {'$ref': str(value)}
    if isinstance(value, InputRef):
        return {'$input': f"{value.unit}.{value.name}"}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


def iter_handles(value: Any) -> Iterator[Attr]:
    """Yield every resource handle nested in a value"""
    if isinstance(value, Attr):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_handles(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_handles(item)
