"""
Traffic filter engine
Compiles the priority-ordered rule catalog into a first-match-wins policy bound to the API stage
"""
import html
import logging
import operator
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote_plus

from .builder import Builder, BuildContext
from .errors import ConfigValidationError, RuleConflictError
from .model import ResourceKind

logger = logging.getLogger(__name__)

ALLOWED_COUNTRIES = ("JP", "US")
BOT_SIGNATURES = ("bot", "crawler")
RATE_LIMIT_PER_IP = 2000
MAX_BODY_BYTES = 8192

_RULE_NAME = re.compile(r'^[A-Za-z0-9_-]{1,128}$')

SQLI_PATTERNS = tuple(re.compile(pattern, re.IGNORECASE) for pattern in (
    r"\bunion\b[\s\S]*?\bselect\b",
    r"\b(insert\s+into|delete\s+from|drop\s+(table|database)|truncate\s+table)\b",
    r"\bupdate\s+\w+\s+set\b",
    r"'\s*(or|and)\s+'?\w+'?\s*(=|like)\s*'?\w+",
    r"\b(or|and)\s+\d+\s*=\s*\d+",
    r"'\s*(--|#|/\*)",
    r";\s*(shutdown|exec|execute|declare)\b",
    r"\b(sleep|benchmark|pg_sleep)\s*\(|\bwaitfor\s+delay\b",
))

XSS_PATTERNS = tuple(re.compile(pattern, re.IGNORECASE) for pattern in (
    r"<\s*/?\s*script\b",
    r"javascript\s*:",
    r"\bon(load|error|click|mouse\w+|focus|blur|submit|key\w+|change|input)\s*=",
    r"<\s*(iframe|object|embed|svg|img)\b[^>]*>",
    r"\bsrcdoc\s*=",
    r"expression\s*\(",
))


class RuleAction(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"

    def to_cfn(self) -> Dict[str, Any]:
        return {self.value.capitalize(): {}}


class TextTransformation(str, Enum):
    """Normalization passes applied, in order, before a statement inspects a field"""
    NONE = "NONE"
    URL_DECODE = "URL_DECODE"
    HTML_ENTITY_DECODE = "HTML_ENTITY_DECODE"
    LOWERCASE = "LOWERCASE"
    COMPRESS_WHITE_SPACE = "COMPRESS_WHITE_SPACE"


_TRANSFORMS: Dict[TextTransformation, Callable[[str], str]] = {
    TextTransformation.NONE: lambda value: value,
    TextTransformation.URL_DECODE: unquote_plus,
    TextTransformation.HTML_ENTITY_DECODE: html.unescape,
    TextTransformation.LOWERCASE: str.lower,
    TextTransformation.COMPRESS_WHITE_SPACE: lambda value: re.sub(r'\s+', ' ', value),
}


def apply_transformations(value: str, transformations: Sequence[TextTransformation]) -> str:
    for transformation in transformations:
        value = _TRANSFORMS[transformation](value)
    return value


def _transformations_cfn(transformations: Sequence[TextTransformation]) -> List[Dict[str, Any]]:
    return [
        {"Priority": priority, "Type": transformation.value}
        for priority, transformation in enumerate(transformations)
    ]


class Comparator(str, Enum):
    EQ = "EQ"
    NE = "NE"
    LE = "LE"
    LT = "LT"
    GE = "GE"
    GT = "GT"

    def compare(self, left: float, right: float) -> bool:
        return _COMPARATORS[self](left, right)


_COMPARATORS = {
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
    Comparator.LE: operator.le,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.GT: operator.gt,
}


class PositionalConstraint(str, Enum):
    EXACTLY = "EXACTLY"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    CONTAINS = "CONTAINS"


@dataclass(frozen=True)
class Request:
    """Request facets a rule can inspect"""
    client_address: str = "0.0.0.0"
    country_code: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""
    query_string: str = ""
    # Requests from the same client address in the current rate window
    recent_request_count: int = 0

    def header(self, name: str) -> str:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return ""


class FieldKind(str, Enum):
    BODY = "body"
    QUERY_STRING = "query_string"
    SINGLE_HEADER = "single_header"


@dataclass(frozen=True)
class FieldToMatch:
    kind: FieldKind
    name: Optional[str] = None

    @classmethod
    def body(cls) -> 'FieldToMatch':
        return cls(FieldKind.BODY)

    @classmethod
    def query_string(cls) -> 'FieldToMatch':
        return cls(FieldKind.QUERY_STRING)

    @classmethod
    def header(cls, name: str) -> 'FieldToMatch':
        return cls(FieldKind.SINGLE_HEADER, name.lower())

    def extract(self, request: Request) -> str:
        if self.kind is FieldKind.BODY:
            return request.body
        if self.kind is FieldKind.QUERY_STRING:
            return request.query_string
        return request.header(self.name or "")

    def to_cfn(self) -> Dict[str, Any]:
        if self.kind is FieldKind.BODY:
            return {"Body": {}}
        if self.kind is FieldKind.QUERY_STRING:
            return {"QueryString": {}}
        return {"SingleHeader": {"Name": self.name}}


class Statement:
    """Node of a rule's boolean matcher tree"""

    def matches(self, request: Request) -> bool:
        raise NotImplementedError

    def to_cfn(self) -> Dict[str, Any]:
        raise NotImplementedError


def _check_children(kind: str, statements: Tuple[Statement, ...]) -> None:
    if len(statements) < 2:
        raise ConfigValidationError(f"{kind} needs at least two statements")


@dataclass(frozen=True)
class And(Statement):
    statements: Tuple[Statement, ...]

    def __post_init__(self):
        object.__setattr__(self, 'statements', tuple(self.statements))
        _check_children("AndStatement", self.statements)

    def matches(self, request: Request) -> bool:
        return all(statement.matches(request) for statement in self.statements)

    def to_cfn(self) -> Dict[str, Any]:
        return {"AndStatement": {"Statements": [s.to_cfn() for s in self.statements]}}


@dataclass(frozen=True)
class Or(Statement):
    statements: Tuple[Statement, ...]

    def __post_init__(self):
        object.__setattr__(self, 'statements', tuple(self.statements))
        _check_children("OrStatement", self.statements)

    def matches(self, request: Request) -> bool:
        return any(statement.matches(request) for statement in self.statements)

    def to_cfn(self) -> Dict[str, Any]:
        return {"OrStatement": {"Statements": [s.to_cfn() for s in self.statements]}}


@dataclass(frozen=True)
class Not(Statement):
    statement: Statement

    def matches(self, request: Request) -> bool:
        return not self.statement.matches(request)

    def to_cfn(self) -> Dict[str, Any]:
        return {"NotStatement": {"Statement": self.statement.to_cfn()}}


def any_of(statements: Iterable[Statement]) -> Statement:
    statements = tuple(statements)
    return statements[0] if len(statements) == 1 else Or(statements)


@dataclass(frozen=True)
class GeoMatch(Statement):
    country_codes: Tuple[str, ...]

    def __post_init__(self):
        codes = tuple(sorted({code.upper() for code in self.country_codes}))
        if not codes:
            raise ConfigValidationError("GeoMatchStatement needs at least one country code")
        object.__setattr__(self, 'country_codes', codes)

    def matches(self, request: Request) -> bool:
        return request.country_code.upper() in self.country_codes

    def to_cfn(self) -> Dict[str, Any]:
        return {"GeoMatchStatement": {"CountryCodes": list(self.country_codes)}}


@dataclass(frozen=True)
class RateBased(Statement):
    """Matches once a client address exceeds `limit` requests in the rate window"""
    limit: int
    aggregate_key_type: str = "IP"

    def __post_init__(self):
        if self.limit < 1:
            raise ConfigValidationError(f"Rate limit must be positive, got {self.limit}")

    def matches(self, request: Request) -> bool:
        return request.recent_request_count > self.limit

    def to_cfn(self) -> Dict[str, Any]:
        return {"RateBasedStatement": {"Limit": self.limit, "AggregateKeyType": self.aggregate_key_type}}


@dataclass(frozen=True)
class SqliMatch(Statement):
    field_to_match: FieldToMatch
    transformations: Tuple[TextTransformation, ...] = (TextTransformation.NONE,)

    def matches(self, request: Request) -> bool:
        value = apply_transformations(self.field_to_match.extract(request), self.transformations)
        return any(pattern.search(value) for pattern in SQLI_PATTERNS)

    def to_cfn(self) -> Dict[str, Any]:
        return {"SqliMatchStatement": {
            "FieldToMatch": self.field_to_match.to_cfn(),
            "TextTransformations": _transformations_cfn(self.transformations),
        }}


@dataclass(frozen=True)
class XssMatch(Statement):
    field_to_match: FieldToMatch
    transformations: Tuple[TextTransformation, ...] = (TextTransformation.NONE,)

    def matches(self, request: Request) -> bool:
        value = apply_transformations(self.field_to_match.extract(request), self.transformations)
        return any(pattern.search(value) for pattern in XSS_PATTERNS)

    def to_cfn(self) -> Dict[str, Any]:
        return {"XssMatchStatement": {
            "FieldToMatch": self.field_to_match.to_cfn(),
            "TextTransformations": _transformations_cfn(self.transformations),
        }}


@dataclass(frozen=True)
class SizeConstraint(Statement):
    """Compares the byte count of a field with a fixed size"""
    field_to_match: FieldToMatch
    comparison_operator: Comparator
    size: int
    transformations: Tuple[TextTransformation, ...] = (TextTransformation.NONE,)

    def matches(self, request: Request) -> bool:
        value = apply_transformations(self.field_to_match.extract(request), self.transformations)
        return self.comparison_operator.compare(len(value.encode('utf-8')), self.size)

    def to_cfn(self) -> Dict[str, Any]:
        return {"SizeConstraintStatement": {
            "FieldToMatch": self.field_to_match.to_cfn(),
            "ComparisonOperator": self.comparison_operator.value,
            "Size": self.size,
            "TextTransformations": _transformations_cfn(self.transformations),
        }}


@dataclass(frozen=True)
class ByteMatch(Statement):
    field_to_match: FieldToMatch
    search_string: str
    positional_constraint: PositionalConstraint = PositionalConstraint.CONTAINS
    transformations: Tuple[TextTransformation, ...] = (TextTransformation.NONE,)

    def __post_init__(self):
        if not self.search_string:
            raise ConfigValidationError("ByteMatchStatement needs a search string")
        lowered = TextTransformation.LOWERCASE in self.transformations
        if lowered and self.search_string != self.search_string.lower():
            raise ConfigValidationError(
                f"Search string '{self.search_string}' can never match a lowercased field"
            )

    def matches(self, request: Request) -> bool:
        value = apply_transformations(self.field_to_match.extract(request), self.transformations)
        constraint = self.positional_constraint
        if constraint is PositionalConstraint.EXACTLY:
            return value == self.search_string
        if constraint is PositionalConstraint.STARTS_WITH:
            return value.startswith(self.search_string)
        if constraint is PositionalConstraint.ENDS_WITH:
            return value.endswith(self.search_string)
        return self.search_string in value

    def to_cfn(self) -> Dict[str, Any]:
        return {"ByteMatchStatement": {
            "SearchString": self.search_string,
            "FieldToMatch": self.field_to_match.to_cfn(),
            "TextTransformations": _transformations_cfn(self.transformations),
            "PositionalConstraint": self.positional_constraint.value,
        }}


def _visibility(metric_name: str) -> Dict[str, Any]:
    return {
        "SampledRequestsEnabled": True,
        "CloudWatchMetricsEnabled": True,
        "MetricName": metric_name,
    }


@dataclass(frozen=True)
class SecurityRule:
    """
    Named, prioritized matcher with an action.
    `environments` restricts the rule to some environments; None applies it everywhere.
    """
    name: str
    priority: int
    statement: Statement
    action: RuleAction = RuleAction.BLOCK
    environments: Optional[Tuple[str, ...]] = None

    def applies_to(self, environment: Optional[str]) -> bool:
        return self.environments is None or environment is None or environment in self.environments

    def to_cfn(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "Priority": self.priority,
            "Statement": self.statement.to_cfn(),
            "Action": self.action.to_cfn(),
            "VisibilityConfig": _visibility(self.name),
        }


@dataclass(frozen=True)
class Decision:
    action: RuleAction
    rule: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.action is RuleAction.BLOCK


@dataclass(frozen=True)
class FilterPolicy:
    """Compiled rule set: ascending priority, first match wins"""
    rules: Tuple[SecurityRule, ...]
    default_action: RuleAction = RuleAction.ALLOW

    @property
    def evaluation_order(self) -> Tuple[str, ...]:
        return tuple(rule.name for rule in self.rules)

    def evaluate(self, request: Request) -> Decision:
        for rule in self.rules:
            if rule.statement.matches(request):
                return Decision(rule.action, rule.name)
        return Decision(self.default_action)

    def to_web_acl(self, name: str, metric_name: str) -> Dict[str, Any]:
        """CloudFormation properties of the equivalent regional WAFv2 web ACL"""
        return {
            "Name": name,
            "Scope": "REGIONAL",
            "DefaultAction": self.default_action.to_cfn(),
            "Rules": [rule.to_cfn() for rule in self.rules],
            "VisibilityConfig": _visibility(metric_name),
        }


def compile_policy(
    rules: Iterable[SecurityRule],
    default_action: RuleAction = RuleAction.ALLOW,
    environment: Optional[str] = None,
) -> FilterPolicy:
    """
    Validate and order a rule set.

    Priorities must be unique across the whole set (RuleConflictError),
    non-negative, and rule names unique (ConfigValidationError).
    """
    rules = tuple(rules)
    names = set()
    by_priority: Dict[int, List[str]] = {}
    for rule in rules:
        if not _RULE_NAME.match(rule.name):
            raise ConfigValidationError(f"Invalid rule name '{rule.name}'")
        if rule.name in names:
            raise ConfigValidationError(f"Rule name '{rule.name}' used twice")
        names.add(rule.name)
        if not isinstance(rule.priority, int) or isinstance(rule.priority, bool) or rule.priority < 0:
            raise ConfigValidationError(f"Rule '{rule.name}' has invalid priority {rule.priority!r}")
        by_priority.setdefault(rule.priority, []).append(rule.name)

    for priority, rule_names in sorted(by_priority.items()):
        if len(rule_names) > 1:
            raise RuleConflictError(priority, rule_names)

    active = sorted(
        (rule for rule in rules if rule.applies_to(environment)),
        key=lambda rule: rule.priority,
    )
    return FilterPolicy(rules=tuple(active), default_action=default_action)


_INJECTION_TRANSFORMS = (TextTransformation.URL_DECODE, TextTransformation.HTML_ENTITY_DECODE)

RULE_CATALOG: Tuple[SecurityRule, ...] = (
    SecurityRule("RateLimitRule", 1, RateBased(RATE_LIMIT_PER_IP)),
    # Block everything outside the allow-listed countries
    SecurityRule("GeoBlockRule", 2, Not(GeoMatch(ALLOWED_COUNTRIES))),
    SecurityRule("SQLInjectionRule", 3, Or((
        SqliMatch(FieldToMatch.body(), _INJECTION_TRANSFORMS),
        SqliMatch(FieldToMatch.query_string(), _INJECTION_TRANSFORMS),
    ))),
    SecurityRule("XSSRule", 4, Or((
        XssMatch(FieldToMatch.body(), _INJECTION_TRANSFORMS),
        XssMatch(FieldToMatch.query_string(), _INJECTION_TRANSFORMS),
    ))),
    SecurityRule("LargeBodyRule", 5, SizeConstraint(
        FieldToMatch.body(), Comparator.GT, MAX_BODY_BYTES,
    )),
    SecurityRule("BadBotRule", 6, any_of(
        ByteMatch(
            FieldToMatch.header("user-agent"),
            signature,
            PositionalConstraint.CONTAINS,
            (TextTransformation.LOWERCASE,),
        )
        for signature in BOT_SIGNATURES
    )),
)


class TrafficFilterEngine(Builder):
    """Web ACL in front of the REST API stage"""
    name = "security"
    depends_on = ("api",)

    def __init__(
        self,
        rules: Iterable[SecurityRule] = RULE_CATALOG,
        default_action: RuleAction = RuleAction.ALLOW,
    ):
        self.rules = tuple(rules)
        self.default_action = default_action

    def build(self, ctx: BuildContext) -> None:
        environment = ctx.profile.environment
        policy = compile_policy(self.rules, self.default_action, environment)

        web_acl = ctx.add_resource(
            "ApiWebAcl",
            ResourceKind.WEB_ACL,
            policy.to_web_acl(
                name=f"finsight-api-waf-{environment}",
                metric_name=f"finsight-waf-{environment}",
            ),
        )
        ctx.add_resource("WebAclAssociation", ResourceKind.WEB_ACL_ASSOCIATION, {
            "webAclArn": web_acl.of("Arn"),
            "resourceArn": ctx.ref("api", "stageArn"),
        })

        ctx.output("webAclId", web_acl.of("Id"))
        ctx.output("webAclArn", web_acl.of("Arn"))
        ctx.output("ruleOrder", policy.evaluation_order)

        ctx.export("WebAclId", web_acl.of("Id"), "WAF Web ACL ID")
        ctx.export("WebAclArn", web_acl.of("Arn"), "WAF Web ACL ARN")

        logger.info(f"Traffic filter for {environment}: {', '.join(policy.evaluation_order)}")
