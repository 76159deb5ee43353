"""
Unit tests for traffic_filter module
Tests rule compilation, first-match evaluation and the rendered web ACL
"""
import pytest

from finsight_infra.compiler import compile_plan
from finsight_infra.errors import ConfigValidationError, RuleConflictError
from finsight_infra.model import Attr
from finsight_infra.traffic_filter import (
    MAX_BODY_BYTES,
    RATE_LIMIT_PER_IP,
    RULE_CATALOG,
    And,
    ByteMatch,
    FieldToMatch,
    GeoMatch,
    Not,
    Or,
    PositionalConstraint,
    Request,
    RuleAction,
    SecurityRule,
    SqliMatch,
    TextTransformation,
    TrafficFilterEngine,
    XssMatch,
    compile_policy,
)
from finsight_infra.compiler import default_builders


def clean_request(**overrides):
    values = {
        "client_address": "203.0.113.10",
        "country_code": "JP",
        "headers": {"User-Agent": "Mozilla/5.0"},
        "body": '{"amount": 1200, "memo": "lunch"}',
        "query_string": "page=1",
        "recent_request_count": 10,
    }
    values.update(overrides)
    return Request(**values)


@pytest.fixture
def catalog_policy():
    return compile_policy(RULE_CATALOG)


@pytest.mark.unit
class TestCompilePolicy:
    """Test rule set validation and ordering"""

    def test_catalog_order(self, catalog_policy):
        assert catalog_policy.evaluation_order == (
            "RateLimitRule", "GeoBlockRule", "SQLInjectionRule",
            "XSSRule", "LargeBodyRule", "BadBotRule",
        )

    def test_sorted_by_priority_not_declaration(self):
        rules = [
            SecurityRule("Second", 20, GeoMatch(("CN",))),
            SecurityRule("First", 10, GeoMatch(("RU",))),
        ]

        assert compile_policy(rules).evaluation_order == ("First", "Second")

    def test_priority_tie(self):
        rules = [
            SecurityRule("RuleA", 1, GeoMatch(("CN",))),
            SecurityRule("RuleB", 1, GeoMatch(("RU",))),
        ]

        with pytest.raises(RuleConflictError) as exc_info:
            compile_policy(rules)

        assert exc_info.value.priority == 1
        assert exc_info.value.rule_names == ("RuleA", "RuleB")

    def test_tie_detected_even_if_environment_filters_one_out(self):
        rules = [
            SecurityRule("RuleA", 1, GeoMatch(("CN",)), environments=("prod",)),
            SecurityRule("RuleB", 1, GeoMatch(("RU",))),
        ]

        with pytest.raises(RuleConflictError):
            compile_policy(rules, environment="dev")

    def test_tie_aborts_compilation(self, dev_profile):
        builders = default_builders()
        builders[3] = TrafficFilterEngine(RULE_CATALOG + (
            SecurityRule("DuplicateRule", 1, GeoMatch(("CN",))),
        ))

        with pytest.raises(RuleConflictError):
            compile_plan(dev_profile, builders)

    @pytest.mark.parametrize('priority', [-1, 1.5, True])
    def test_invalid_priority(self, priority):
        with pytest.raises(ConfigValidationError):
            compile_policy([SecurityRule("Rule", priority, GeoMatch(("CN",)))])

    def test_duplicate_names(self):
        with pytest.raises(ConfigValidationError):
            compile_policy([
                SecurityRule("Rule", 1, GeoMatch(("CN",))),
                SecurityRule("Rule", 2, GeoMatch(("RU",))),
            ])

    def test_environment_predicate(self):
        rules = [
            SecurityRule("Everywhere", 1, GeoMatch(("CN",))),
            SecurityRule("ProdOnly", 2, GeoMatch(("RU",)), environments=("prod",)),
        ]

        assert compile_policy(rules, environment="dev").evaluation_order == ("Everywhere",)
        assert compile_policy(rules, environment="prod").evaluation_order == ("Everywhere", "ProdOnly")

    def test_combinators_need_two_children(self):
        with pytest.raises(ConfigValidationError):
            Or((GeoMatch(("CN",)),))
        with pytest.raises(ConfigValidationError):
            And(())

    def test_lowercase_transform_needs_lowercase_search_string(self):
        with pytest.raises(ConfigValidationError):
            ByteMatch(FieldToMatch.header("user-agent"), "Bot",
                      PositionalConstraint.CONTAINS, (TextTransformation.LOWERCASE,))


@pytest.mark.unit
class TestEvaluation:
    """Test first-match-wins evaluation of the catalog"""

    def test_clean_request_allowed(self, catalog_policy):
        decision = catalog_policy.evaluate(clean_request())

        assert decision.action is RuleAction.ALLOW
        assert decision.rule is None
        assert not decision.blocked

    def test_rate_limit(self, catalog_policy):
        assert catalog_policy.evaluate(
            clean_request(recent_request_count=RATE_LIMIT_PER_IP)
        ).rule is None
        assert catalog_policy.evaluate(
            clean_request(recent_request_count=RATE_LIMIT_PER_IP + 1)
        ).rule == "RateLimitRule"

    @pytest.mark.parametrize('country', ['JP', 'US', 'jp'])
    def test_allowed_countries(self, catalog_policy, country):
        assert not catalog_policy.evaluate(clean_request(country_code=country)).blocked

    @pytest.mark.parametrize('country', ['CN', 'DE', ''])
    def test_other_countries_blocked(self, catalog_policy, country):
        assert catalog_policy.evaluate(clean_request(country_code=country)).rule == "GeoBlockRule"

    @pytest.mark.parametrize('query', [
        "id=1%27%20OR%20%271%27%3D%271",
        "q=1 UNION SELECT password FROM users",
        "id=1;%20DROP%20TABLE%20accounts",
    ])
    def test_sql_injection_in_query(self, catalog_policy, query):
        assert catalog_policy.evaluate(clean_request(query_string=query)).rule == "SQLInjectionRule"

    def test_sql_injection_in_body(self, catalog_policy):
        body = '{"memo": "x\' OR 1=1 --"}'

        assert catalog_policy.evaluate(clean_request(body=body)).rule == "SQLInjectionRule"

    @pytest.mark.parametrize('body', [
        '<script>alert(1)</script>',
        '&lt;script&gt;alert(1)&lt;/script&gt;',
        '<img src=x onerror=alert(1)>',
    ])
    def test_xss(self, catalog_policy, body):
        assert catalog_policy.evaluate(clean_request(body=body)).rule == "XSSRule"

    def test_large_body(self, catalog_policy):
        assert catalog_policy.evaluate(clean_request(body="a" * MAX_BODY_BYTES)).rule is None
        assert catalog_policy.evaluate(clean_request(body="a" * (MAX_BODY_BYTES + 1))).rule == "LargeBodyRule"

    def test_body_size_counts_bytes(self, catalog_policy):
        body = "あ" * (MAX_BODY_BYTES // 3 + 1)

        assert catalog_policy.evaluate(clean_request(body=body)).rule == "LargeBodyRule"

    @pytest.mark.parametrize('agent', ['Googlebot/2.1', 'SomeCrawler', 'BOT'])
    def test_bad_bots(self, catalog_policy, agent):
        request = clean_request(headers={"user-agent": agent})

        assert catalog_policy.evaluate(request).rule == "BadBotRule"

    def test_first_match_wins(self, catalog_policy):
        request = clean_request(
            country_code="CN",
            query_string="q=<script>",
            headers={"User-Agent": "crawler"},
        )

        assert catalog_policy.evaluate(request).rule == "GeoBlockRule"

    def test_default_block_action(self):
        policy = compile_policy([SecurityRule("AllowJapan", 1, GeoMatch(("JP",)), RuleAction.ALLOW)],
                                default_action=RuleAction.BLOCK)

        assert policy.evaluate(clean_request()).action is RuleAction.ALLOW
        assert policy.evaluate(clean_request(country_code="US")).blocked

    def test_not_statement(self):
        statement = Not(GeoMatch(("jp", "us")))

        assert statement.matches(clean_request(country_code="DE"))
        assert not statement.matches(clean_request(country_code="US"))


@pytest.mark.unit
class TestWebAcl:
    """Test the security unit of compiled plans"""

    def test_web_acl_properties(self, dev_plan):
        acl = dev_plan.unit('security').resource('ApiWebAcl')

        assert acl.get('Name') == 'finsight-api-waf-dev'
        assert acl.get('Scope') == 'REGIONAL'
        assert acl.get('DefaultAction') == {'Allow': {}}
        assert [rule['Priority'] for rule in acl.get('Rules')] == [1, 2, 3, 4, 5, 6]

    def test_rule_statements(self, dev_plan):
        rules = {rule['Name']: rule for rule in dev_plan.unit('security').resource('ApiWebAcl').get('Rules')}

        assert rules['RateLimitRule']['Statement']['RateBasedStatement']['Limit'] == RATE_LIMIT_PER_IP
        geo = rules['GeoBlockRule']['Statement']['NotStatement']['Statement']['GeoMatchStatement']
        assert geo['CountryCodes'] == ('JP', 'US')
        assert rules['LargeBodyRule']['Statement']['SizeConstraintStatement']['Size'] == MAX_BODY_BYTES
        assert rules['BadBotRule']['Action'] == {'Block': {}}

    def test_associated_with_api_stage(self, dev_plan):
        association = dev_plan.unit('security').resource('WebAclAssociation')

        assert association.get('resourceArn') == Attr('api', 'FinSightApi', 'deployment_stage.stage_arn')
        assert association.get('webAclArn') == Attr('security', 'ApiWebAcl', 'Arn')

    def test_matcher_shapes(self):
        assert SqliMatch(FieldToMatch.body()).to_cfn()['SqliMatchStatement']['FieldToMatch'] == {'Body': {}}
        assert XssMatch(FieldToMatch.query_string()).to_cfn()['XssMatchStatement']['FieldToMatch'] == {
            'QueryString': {}
        }
        assert FieldToMatch.header("User-Agent").to_cfn() == {'SingleHeader': {'Name': 'user-agent'}}
