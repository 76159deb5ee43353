"""
Alerting engine
Generates CloudWatch alarms from the metric template catalog, the shared alert topic and the dashboard
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .builder import Builder, BuildContext
from .config import AlarmOverride, Tier
from .errors import ConfigValidationError, ThresholdConfigError
from .model import Attr, ResourceKind

logger = logging.getLogger(__name__)

PERIOD_MINUTES = 5


class ResourceClass(str, Enum):
    """Kinds of monitored resources; a template applies to exactly one"""
    FUNCTION = "function"
    ENDPOINT = "endpoint"
    DATABASE = "database"


class Polarity(str, Enum):
    HIGHER_IS_WORSE = "higher_is_worse"
    LOWER_IS_WORSE = "lower_is_worse"


class MissingData(str, Enum):
    BREACHING = "breaching"
    NOT_BREACHING = "notBreaching"


class AlarmComparator(str, Enum):
    GREATER_THAN_OR_EQUAL_TO_THRESHOLD = "GreaterThanOrEqualToThreshold"
    GREATER_THAN_THRESHOLD = "GreaterThanThreshold"
    LESS_THAN_THRESHOLD = "LessThanThreshold"
    LESS_THAN_OR_EQUAL_TO_THRESHOLD = "LessThanOrEqualToThreshold"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]


_SYMBOLS = {
    AlarmComparator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD: ">=",
    AlarmComparator.GREATER_THAN_THRESHOLD: ">",
    AlarmComparator.LESS_THAN_THRESHOLD: "<",
    AlarmComparator.LESS_THAN_OR_EQUAL_TO_THRESHOLD: "<=",
}

_POLARITY_RULES = {
    Polarity.HIGHER_IS_WORSE: (
        {AlarmComparator.GREATER_THAN_THRESHOLD, AlarmComparator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD},
        MissingData.NOT_BREACHING,
    ),
    Polarity.LOWER_IS_WORSE: (
        {AlarmComparator.LESS_THAN_THRESHOLD, AlarmComparator.LESS_THAN_OR_EQUAL_TO_THRESHOLD},
        MissingData.BREACHING,
    ),
}


@dataclass(frozen=True)
class MetricTemplate:
    """Single source of comparator/threshold values for one metric"""
    key: str
    resource_class: ResourceClass
    namespace: str
    metric_name: str
    statistic: str
    comparator: AlarmComparator
    threshold: float
    evaluation_periods: int
    missing_data: MissingData
    polarity: Polarity
    description: str
    unit: str = ""
    axis: str = "left"


METRIC_TEMPLATES: Tuple[MetricTemplate, ...] = (
    MetricTemplate(
        "errors", ResourceClass.FUNCTION, "AWS/Lambda", "Errors", "Sum",
        AlarmComparator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD, 5, 2,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "High error rate", "errors",
    ),
    MetricTemplate(
        "duration", ResourceClass.FUNCTION, "AWS/Lambda", "Duration", "Average",
        AlarmComparator.GREATER_THAN_THRESHOLD, 10000, 3,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "High duration", "ms", axis="right",
    ),
    MetricTemplate(
        "requestCount", ResourceClass.ENDPOINT, "AWS/ApiGateway", "Count", "Sum",
        AlarmComparator.GREATER_THAN_THRESHOLD, 10000, 2,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "Unusual API request volume", "requests",
    ),
    MetricTemplate(
        "serverErrors", ResourceClass.ENDPOINT, "AWS/ApiGateway", "5XXError", "Sum",
        AlarmComparator.GREATER_THAN_THRESHOLD, 10, 2,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "High API Gateway server error rate", "errors",
    ),
    MetricTemplate(
        "latency", ResourceClass.ENDPOINT, "AWS/ApiGateway", "Latency", "Average",
        AlarmComparator.GREATER_THAN_THRESHOLD, 5000, 3,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "High API Gateway latency", "ms", axis="right",
    ),
    MetricTemplate(
        "cpu", ResourceClass.DATABASE, "AWS/RDS", "CPUUtilization", "Average",
        AlarmComparator.GREATER_THAN_THRESHOLD, 80, 3,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "High RDS CPU utilization", "%",
    ),
    MetricTemplate(
        "connections", ResourceClass.DATABASE, "AWS/RDS", "DatabaseConnections", "Average",
        AlarmComparator.GREATER_THAN_THRESHOLD, 80, 2,
        MissingData.NOT_BREACHING, Polarity.HIGHER_IS_WORSE, "High RDS connection count", "connections",
    ),
    MetricTemplate(
        "freeStorage", ResourceClass.DATABASE, "AWS/RDS", "FreeStorageSpace", "Average",
        AlarmComparator.LESS_THAN_THRESHOLD, 2000000000, 1,
        MissingData.BREACHING, Polarity.LOWER_IS_WORSE, "Low RDS free storage space", "bytes", axis="right",
    ),
)

# Graphed next to the alarmed metrics but never alarmed
DASHBOARD_ONLY_METRICS: Dict[ResourceClass, Tuple[Tuple[str, str, str], ...]] = {
    ResourceClass.FUNCTION: (("AWS/Lambda", "Invocations", "Sum"),),
    ResourceClass.ENDPOINT: (("AWS/ApiGateway", "4XXError", "Sum"),),
    ResourceClass.DATABASE: (),
}

# Direct email subscription on the shared channel, per tier
ALERT_EMAIL_SUBSCRIPTION: Dict[Tier, bool] = {
    Tier.PRODUCTION: False,
    Tier.NON_PRODUCTION: True,
}


def validate_template(template: MetricTemplate) -> MetricTemplate:
    """Reject comparator/threshold/missing-data combinations that contradict the polarity"""
    comparators, missing = _POLARITY_RULES[template.polarity]
    if template.comparator not in comparators:
        raise ThresholdConfigError(
            f"Template '{template.key}' is {template.polarity.value} but uses {template.comparator.value}"
        )
    if template.missing_data is not missing:
        raise ThresholdConfigError(
            f"Template '{template.key}' is {template.polarity.value} "
            f"but treats missing data as {template.missing_data.value}"
        )
    if template.threshold < 0:
        raise ThresholdConfigError(f"Template '{template.key}' has negative threshold {template.threshold}")
    if template.evaluation_periods < 1:
        raise ThresholdConfigError(
            f"Template '{template.key}' needs at least one evaluation period"
        )
    return template


def effective_templates(
    templates: Iterable[MetricTemplate],
    overrides: Mapping[str, AlarmOverride],
) -> Tuple[MetricTemplate, ...]:
    """Apply profile overrides, then validate every resulting template"""
    templates = tuple(templates)
    keys = [template.key for template in templates]
    if len(set(keys)) != len(keys):
        raise ThresholdConfigError(f"Metric template keys must be unique: {keys}")

    unknown = sorted(set(overrides) - set(keys))
    if unknown:
        raise ConfigValidationError(
            f"alarmOverrides names unknown metrics: {', '.join(unknown)}",
            fields=[f"alarmOverrides.{key}" for key in unknown],
        )

    result = []
    for template in templates:
        override = overrides.get(template.key)
        if override is not None:
            changes: Dict[str, Any] = {}
            if override.threshold is not None:
                changes['threshold'] = override.threshold
            if override.evaluation_periods is not None:
                changes['evaluation_periods'] = override.evaluation_periods
            template = replace(template, **changes)
        result.append(validate_template(template))
    return tuple(result)


@dataclass(frozen=True)
class AlarmTarget:
    name: str
    resource_class: ResourceClass
    dimensions: Mapping[str, Any]


@dataclass(frozen=True)
class Alarm:
    metric: str
    target: str
    namespace: str
    metric_name: str
    statistic: str
    dimensions: Mapping[str, Any]
    threshold: float
    comparator: AlarmComparator
    evaluation_periods: int
    missing_data: MissingData
    notify_channel: Attr
    description: str

    @property
    def logical_id(self) -> str:
        return f"{self.target}{self.metric[:1].upper()}{self.metric[1:]}Alarm"

    def properties(self, environment: str) -> Dict[str, Any]:
        return {
            "alarmName": f"FinSight-{environment}-{self.target}-{self.metric}",
            "alarmDescription": self.description,
            "namespace": self.namespace,
            "metricName": self.metric_name,
            "dimensions": dict(self.dimensions),
            "statistic": self.statistic,
            "periodMinutes": PERIOD_MINUTES,
            "threshold": self.threshold,
            "comparisonOperator": self.comparator,
            "evaluationPeriods": self.evaluation_periods,
            "treatMissingData": self.missing_data,
            "alarmActions": [self.notify_channel],
        }


def generate_alarms(
    targets: Sequence[AlarmTarget],
    templates: Sequence[MetricTemplate],
    channel: Attr,
) -> List[Alarm]:
    """One alarm per (target, template applicable to the target's class)"""
    alarms = []
    for target in targets:
        for template in templates:
            if template.resource_class is not target.resource_class:
                continue
            alarms.append(Alarm(
                metric=template.key,
                target=target.name,
                namespace=template.namespace,
                metric_name=template.metric_name,
                statistic=template.statistic,
                dimensions=target.dimensions,
                threshold=template.threshold,
                comparator=template.comparator,
                evaluation_periods=template.evaluation_periods,
                missing_data=template.missing_data,
                notify_channel=channel,
                description=f"{template.description} for {target.name}",
            ))
    return alarms


def _metric(namespace: str, metric_name: str, statistic: str, dimensions: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "namespace": namespace,
        "metricName": metric_name,
        "statistic": statistic,
        "dimensions": dict(dimensions),
        "periodMinutes": PERIOD_MINUTES,
    }


def _graph(title: str, target: AlarmTarget, templates: Sequence[MetricTemplate]) -> Dict[str, Any]:
    left = [
        _metric(namespace, name, statistic, target.dimensions)
        for namespace, name, statistic in DASHBOARD_ONLY_METRICS[target.resource_class]
    ]
    right = []
    for template in templates:
        if template.resource_class is not target.resource_class:
            continue
        metric = _metric(template.namespace, template.metric_name, template.statistic, target.dimensions)
        (right if template.axis == "right" else left).append(metric)
    return {"type": "graph", "title": title, "width": 12, "height": 6, "left": left, "right": right}


def overview_markdown(environment: str, region: str, templates: Sequence[MetricTemplate]) -> str:
    lines = [
        f"# FinSight System Overview - {environment.upper()}",
        "",
        f"## Environment: {environment}",
        f"## Region: {region}",
        "",
        "### Alert Thresholds:",
    ]
    for template in templates:
        window = template.evaluation_periods * PERIOD_MINUTES
        threshold = " ".join(filter(None, [f"{template.threshold:g}", template.unit]))
        lines.append(
            f"- {template.resource_class.value} {template.metric_name}: "
            f"{template.comparator.symbol}{threshold} for {window} minutes"
        )
    return "\n".join(lines)


def build_dashboard(
    environment: str,
    region: str,
    endpoint: AlarmTarget,
    database: AlarmTarget,
    functions: Sequence[AlarmTarget],
    templates: Sequence[MetricTemplate],
) -> List[List[Dict[str, Any]]]:
    """Fixed row order: overview, endpoint, database, then one row per compute unit"""
    rows = [
        [{"type": "text", "width": 24, "height": 6,
          "markdown": overview_markdown(environment, region, templates)}],
        [_graph("API Gateway Metrics", endpoint, templates)],
        [_graph("RDS Database Metrics", database, templates)],
    ]
    for target in functions:
        rows.append([_graph(f"Lambda: {target.name}", target, templates)])
    return rows


class AlertingEngine(Builder):
    """Alarms for every compute unit, the endpoint and the database, wired to one topic"""
    name = "monitoring"
    depends_on = ("api", "database")

    def __init__(self, templates: Iterable[MetricTemplate] = METRIC_TEMPLATES):
        self.templates = tuple(templates)

    def build(self, ctx: BuildContext) -> None:
        profile = ctx.profile
        environment = profile.environment
        templates = effective_templates(self.templates, profile.alarm_overrides)

        topic = ctx.add_resource("AlertTopic", ResourceKind.TOPIC, {
            "topicName": f"finsight-alerts-{environment}",
            "displayName": "FinSight System Alerts",
        })
        if _alert_email_enabled(profile.tier):
            ctx.add_resource("AlertEmailSubscription", ResourceKind.EMAIL_SUBSCRIPTION, {
                "topic": topic,
                "endpoint": profile.alert_email,
            })

        functions: Mapping[str, Attr] = ctx.lookup("api", "functions")
        endpoint = AlarmTarget("api", ResourceClass.ENDPOINT, {"ApiName": ctx.lookup("api", "apiName")})
        database = AlarmTarget(
            "database", ResourceClass.DATABASE,
            {"DBInstanceIdentifier": ctx.lookup("database", "instanceIdentifier")},
        )
        function_targets = [
            AlarmTarget(name, ResourceClass.FUNCTION, {"FunctionName": handle.of("function_name")})
            for name, handle in functions.items()
        ]

        alarms = generate_alarms(function_targets + [endpoint, database], templates, topic)
        for alarm in alarms:
            ctx.add_resource(alarm.logical_id, ResourceKind.ALARM, alarm.properties(environment))

        dashboard_name = f"FinSight-{environment}"
        ctx.add_resource("FinSightDashboard", ResourceKind.DASHBOARD, {
            "dashboardName": dashboard_name,
            "widgets": build_dashboard(
                environment, profile.region, endpoint, database, function_targets, templates
            ),
        })

        dashboard_url = (
            f"https://{profile.region}.console.aws.amazon.com/cloudwatch/home"
            f"?region={profile.region}#dashboards:name={dashboard_name}"
        )
        ctx.output("alertTopic", topic)
        ctx.output("alertTopicArn", topic.of("topic_arn"))
        ctx.output("dashboardName", dashboard_name)
        ctx.output("alarms", tuple(alarm.logical_id for alarm in alarms))

        ctx.export("DashboardUrl", dashboard_url, "CloudWatch Dashboard URL")
        ctx.export("AlertTopicArn", topic.of("topic_arn"), "SNS Topic ARN for alerts")

        logger.info(f"Generated {len(alarms)} alarms for {environment}")


def _alert_email_enabled(tier: Tier) -> bool:
    try:
        return ALERT_EMAIL_SUBSCRIPTION[tier]
    except KeyError:
        raise ConfigValidationError(f"No alert subscription policy for tier '{tier}'", fields=['tier'])
