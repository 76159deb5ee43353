"""
Unit tests for compiler module
Tests dependency ordering, reference resolution and handle validation
"""
import pytest

from finsight_infra.builder import Builder
from finsight_infra.compiler import PlanCompiler, compile_plan, default_builders
from finsight_infra.errors import (
    DependencyCycleError,
    PlanCompilationError,
    UnresolvedReferenceError,
)
from finsight_infra.model import Attr, ResourceKind


class StubBuilder(Builder):
    """Builder driven by a callable, for wiring tests"""

    def __init__(self, name, depends_on=(), build=None):
        self.name = name
        self.depends_on = tuple(depends_on)
        self._build = build

    def build(self, ctx):
        if self._build:
            self._build(ctx)


def producer(ctx):
    topic = ctx.add_resource("Topic", ResourceKind.TOPIC, {"topicName": "t"})
    ctx.output("topic", topic)
    ctx.output("topicArn", topic.of("topic_arn"))


@pytest.mark.unit
class TestResolveOrder:
    """Test topological ordering of builders"""

    def test_default_order(self, dev_plan):
        assert dev_plan.order == ("network", "database", "api", "security", "monitoring", "email")

    def test_declaration_order_breaks_ties(self):
        compiler = PlanCompiler([
            StubBuilder("c", ["a"]),
            StubBuilder("b"),
            StubBuilder("a"),
        ])

        assert [b.name for b in compiler.resolve_order()] == ["b", "a", "c"]

    def test_unknown_dependency(self):
        compiler = PlanCompiler([StubBuilder("api", ["databse"])])

        with pytest.raises(UnresolvedReferenceError):
            compiler.resolve_order()

    def test_cycle_is_named(self):
        compiler = PlanCompiler([
            StubBuilder("network"),
            StubBuilder("a", ["network", "c"]),
            StubBuilder("b", ["a"]),
            StubBuilder("c", ["b"]),
        ])

        with pytest.raises(DependencyCycleError) as exc_info:
            compiler.resolve_order()

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_self_dependency(self):
        with pytest.raises(DependencyCycleError):
            PlanCompiler([StubBuilder("a", ["a"])]).resolve_order()

    def test_duplicate_unit_names(self):
        with pytest.raises(PlanCompilationError):
            PlanCompiler([StubBuilder("a"), StubBuilder("a")]).resolve_order()


@pytest.mark.unit
class TestReferences:
    """Test cross references between units"""

    def test_ref_is_resolved_to_producer_output(self, dev_profile):
        def consumer(ctx):
            ctx.add_resource("Alarm", ResourceKind.ALARM, {"alarmActions": [ctx.ref("events", "topic")]})

        plan = compile_plan(dev_profile, [
            StubBuilder("events", build=producer),
            StubBuilder("watch", ["events"], build=consumer),
        ])
        watch = plan.unit("watch")

        assert watch.resource("Alarm").get("alarmActions") == (Attr("events", "Topic"),)
        assert watch.inputs["events.topic"] == Attr("events", "Topic")
        assert [r.producer_key for r in plan.references] == ["events.topic"]

    def test_reference_outside_depends_on(self, dev_profile):
        def consumer(ctx):
            ctx.add_resource("Alarm", ResourceKind.ALARM, {"alarmActions": [ctx.ref("events", "topic")]})

        with pytest.raises(UnresolvedReferenceError):
            compile_plan(dev_profile, [
                StubBuilder("events", build=producer),
                StubBuilder("watch", build=consumer),
            ])

    def test_lookup_outside_depends_on(self, dev_profile):
        with pytest.raises(UnresolvedReferenceError):
            compile_plan(dev_profile, [
                StubBuilder("events", build=producer),
                StubBuilder("watch", build=lambda ctx: ctx.lookup("events", "topic")),
            ])

    def test_missing_output(self, dev_profile):
        def consumer(ctx):
            ctx.output("arn", ctx.ref("events", "queueArn"))

        with pytest.raises(UnresolvedReferenceError):
            compile_plan(dev_profile, [
                StubBuilder("events", build=producer),
                StubBuilder("watch", ["events"], build=consumer),
            ])

    def test_lookup_returns_value_for_structural_decisions(self, dev_profile):
        def consumer(ctx):
            arn = ctx.lookup("events", "topicArn")
            ctx.output("seen", str(arn))

        plan = compile_plan(dev_profile, [
            StubBuilder("events", build=producer),
            StubBuilder("watch", ["events"], build=consumer),
        ])

        assert plan.unit("watch").outputs["seen"] == "events.Topic.topic_arn"

    def test_lookup_cannot_change_producer_outputs(self, dev_profile):
        def consumer(ctx):
            with pytest.raises(AttributeError):
                ctx.lookup("api", "functions").pop("reports")

        plan = compile_plan(dev_profile, default_builders() + [
            StubBuilder("audit", ["api"], build=consumer),
        ])

        assert "reports" in plan.unit("api").outputs["functions"]

    def test_lookup_value_rejects_item_assignment(self, dev_profile):
        def consumer(ctx):
            ctx.lookup("api", "functions")["extra"] = Attr("api", "usersFunction")

        with pytest.raises(TypeError):
            compile_plan(dev_profile, default_builders() + [
                StubBuilder("audit", ["api"], build=consumer),
            ])

    def test_handle_outside_transitive_dependencies(self, dev_profile):
        def smuggler(ctx):
            ctx.add_resource("Alarm", ResourceKind.ALARM, {"alarmActions": [Attr("events", "Topic")]})

        with pytest.raises(UnresolvedReferenceError):
            compile_plan(dev_profile, [
                StubBuilder("events", build=producer),
                StubBuilder("watch", build=smuggler),
            ])

    def test_handle_to_transitive_dependency_allowed(self, dev_profile):
        plan = compile_plan(dev_profile, [
            StubBuilder("events", build=producer),
            StubBuilder("middle", ["events"]),
            StubBuilder("watch", ["middle"], build=lambda ctx: ctx.output("topic", Attr("events", "Topic"))),
        ])

        assert plan.unit("watch").outputs["topic"] == Attr("events", "Topic")

    def test_handle_to_missing_resource(self, dev_profile):
        with pytest.raises(UnresolvedReferenceError):
            compile_plan(dev_profile, [
                StubBuilder("events", build=lambda ctx: ctx.output("topic", Attr("events", "Nothing"))),
            ])

    def test_duplicate_logical_id(self, dev_profile):
        def twice(ctx):
            ctx.add_resource("Topic", ResourceKind.TOPIC)
            ctx.add_resource("Topic", ResourceKind.TOPIC)

        with pytest.raises(PlanCompilationError):
            compile_plan(dev_profile, [StubBuilder("events", build=twice)])


@pytest.mark.unit
class TestPlan:
    """Test the compiled default plan"""

    def test_every_unit_present(self, dev_plan):
        assert len(dev_plan) == 6
        assert [unit.name for unit in dev_plan] == list(dev_plan.order)

    def test_units_only_depend_on_earlier_units(self, dev_plan):
        seen = set()
        for unit in dev_plan:
            assert set(unit.depends_on) <= seen
            seen.add(unit.name)

    def test_references_point_backwards(self, dev_plan):
        position = {name: index for index, name in enumerate(dev_plan.order)}

        for reference in dev_plan.references:
            assert position[reference.producer_unit] < position[reference.consumer_unit]

    def test_plan_is_immutable(self, dev_plan):
        function = dev_plan.unit('api').resource('usersFunction')

        with pytest.raises(TypeError):
            function.properties['memorySize'] = 1
        with pytest.raises(AttributeError):
            dev_plan.environment = 'prod'

    def test_exports(self, dev_plan):
        exports = dev_plan.exports()

        assert set(exports) == set(dev_plan.order)
        assert exports['email']['ConfigurationSetName'] == 'finsight-ses-config-dev'
        assert exports['api']['ApiEndpoint'] == Attr('api', 'FinSightApi', 'url')

    def test_unknown_unit(self, dev_plan):
        with pytest.raises(KeyError):
            dev_plan.unit('frontend')

    def test_same_profile_same_plan(self, dev_profile):
        first = compile_plan(dev_profile)
        second = compile_plan(dev_profile)

        assert first.to_json() == second.to_json()
        assert first.fingerprint() == second.fingerprint()

    def test_environments_differ(self, dev_plan, prod_plan):
        assert dev_plan.fingerprint() != prod_plan.fingerprint()

    def test_default_builders_are_fresh(self):
        assert default_builders() is not default_builders()
