"""
Monitoring Stack resources for FinSight
Renders SNS alert topics, CloudWatch alarms and the dashboard
"""
from typing import Any, Dict, List, Mapping

from aws_cdk import (
    aws_cloudwatch as cloudwatch,
    aws_cloudwatch_actions as cw_actions,
    aws_sns as sns,
    aws_sns_subscriptions as sns_subs,
    Duration,
)

from finsight_infra.model import Resource


class MonitoringResources:
    """Topic, alarm and dashboard renderers"""

    def _render_topic(self, resource: Resource) -> sns.Topic:
        return sns.Topic(
            self,
            resource.logical_id,
            topic_name=resource.get("topicName"),
            display_name=resource.get("displayName")
        )

    def _render_email_subscription(self, resource: Resource) -> sns_subs.EmailSubscription:
        subscription = sns_subs.EmailSubscription(resource.get("endpoint"))
        self.prop(resource, "topic").add_subscription(subscription)
        return subscription

    def _metric(self, spec: Mapping[str, Any]) -> cloudwatch.Metric:
        return cloudwatch.Metric(
            namespace=spec["namespace"],
            metric_name=spec["metricName"],
            dimensions_map={
                name: self.as_string(value) for name, value in spec["dimensions"].items()
            },
            statistic=spec["statistic"],
            period=Duration.minutes(spec["periodMinutes"])
        )

    def _render_alarm(self, resource: Resource) -> cloudwatch.Alarm:
        alarm = cloudwatch.Alarm(
            self,
            resource.logical_id,
            alarm_name=resource.get("alarmName"),
            alarm_description=resource.get("alarmDescription"),
            metric=self._metric(resource.properties),
            threshold=resource.get("threshold"),
            evaluation_periods=resource.get("evaluationPeriods"),
            comparison_operator=getattr(
                cloudwatch.ComparisonOperator, resource.get("comparisonOperator").name
            ),
            treat_missing_data=getattr(
                cloudwatch.TreatMissingData, resource.get("treatMissingData").name
            )
        )
        for topic in self.prop(resource, "alarmActions"):
            alarm.add_alarm_action(cw_actions.SnsAction(topic))
        return alarm

    def _widget(self, spec: Mapping[str, Any]) -> cloudwatch.IWidget:
        if spec["type"] == "text":
            return cloudwatch.TextWidget(
                markdown=spec["markdown"],
                width=spec["width"],
                height=spec["height"]
            )
        return cloudwatch.GraphWidget(
            title=spec["title"],
            width=spec["width"],
            height=spec["height"],
            left=[self._metric(metric) for metric in spec["left"]],
            right=[self._metric(metric) for metric in spec["right"]]
        )

    def _render_dashboard(self, resource: Resource) -> cloudwatch.Dashboard:
        dashboard = cloudwatch.Dashboard(
            self,
            resource.logical_id,
            dashboard_name=resource.get("dashboardName")
        )
        rows: List[List[Dict[str, Any]]] = resource.get("widgets")
        for row in rows:
            dashboard.add_widgets(*[self._widget(widget) for widget in row])
        return dashboard
