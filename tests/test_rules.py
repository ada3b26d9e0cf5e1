"""
DriftScore - Security Rules Tests
Default ruleset classification, tie-breaks, scoping and malformed rules.
"""

from driftscore.detection.differ import diff_configurations
from driftscore.detection.rules import RuleSet, RulesEngine, build_rule, load_ruleset
from driftscore.models import Severity


def _evaluate(engine, old, new, resource_type="s3-bucket", provider="aws", with_state=True):
    changes = diff_configurations(old, new).changes
    return engine.evaluate(
        resource_type, provider,
        changes=changes,
        configuration=new if with_state else None,
    )


def _rule(rule_id, severity, field, operator, value=None, **extra):
    entry = {
        "id": rule_id,
        "severity": severity,
        "drift_type": extra.pop("drift_type", "configuration_change"),
        "condition": {"field": field, "operator": operator, "value": value},
    }
    entry.update(extra)
    return entry


# ═══════════════════════════════════════
# Default ruleset
# ═══════════════════════════════════════

class TestDefaultRuleset:
    def test_loads_every_rule(self, ruleset):
        assert len(ruleset) >= 20
        ids = [r.id for r in ruleset]
        assert len(ids) == len(set(ids))
        assert ruleset.get("encryption_disabled").severity == Severity.CRITICAL

    def test_missing_file_gives_empty_ruleset(self, tmp_path):
        assert len(load_ruleset(str(tmp_path / "nope.yaml"))) == 0

    def test_encryption_disabled_on_bucket(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"encryption": {"enabled": True}},
            {"encryption": {"enabled": False}},
        )
        assert result.severity == Severity.CRITICAL
        assert result.primary.rule_id == "encryption_disabled"
        assert result.primary.drift_type == "encryption"
        assert result.matched_rule_ids == ["encryption_disabled", "encryption_currently_disabled"]
        assert result.errors == ()

    def test_ingress_opened_to_internet(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"ingress": [{"port": 22, "cidr": "10.0.0.0/8"}]},
            {"ingress": [{"port": 22, "cidr": "0.0.0.0/0"}]},
            resource_type="security-group",
        )
        assert result.severity == Severity.CRITICAL
        assert result.primary.rule_id == "open_ingress_to_internet"
        assert result.primary.drift_type == "security_group"
        assert result.primary.field_paths == ("ingress.0.cidr",)

    def test_added_ingress_entry_still_matches(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"ingress": []},
            {"ingress": [{"port": 3389, "cidr": "0.0.0.0/0"}]},
            resource_type="security-group",
        )
        assert result.primary.rule_id == "open_ingress_to_internet"
        assert result.primary.field_paths == ("ingress.0.cidr",)

    def test_tie_break_is_declaration_order(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"policy": {"statement": [{"action": ["s3:GetObject"]}]}},
            {"policy": {"statement": [{"action": ["*"]}]}},
            resource_type="iam-role",
        )
        assert result.severity == Severity.HIGH
        assert "policy_changed" in result.matched_rule_ids
        assert result.primary.rule_id == "iam_wildcard_permission"

    def test_encryption_removed(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"encryption": {"enabled": True}},
            {"encryption": {}},
        )
        assert result.primary.rule_id == "encryption_removed"
        assert result.severity == Severity.CRITICAL

    def test_whole_encryption_block_removed(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"encryption": {"enabled": True}, "name": "b"},
            {"name": "b"},
        )
        assert result.primary.rule_id == "encryption_removed"

    def test_tags_only_is_info(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"tags": {"env": "prod"}},
            {"tags": {"env": "dev"}},
            resource_type="ec2-instance",
        )
        assert result.severity == Severity.INFO
        assert result.primary.rule_id == "tags_changed"

    def test_unrecognised_change_matches_nothing(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"name": "a"},
            {"name": "b"},
            resource_type="ec2-instance",
        )
        assert result.matches == ()
        assert result.severity is None
        assert result.primary is None

    def test_state_rule_respects_resource_type(self, ruleset):
        engine = RulesEngine(ruleset)
        old = {"publicly_accessible": False}
        new = {"publicly_accessible": True}

        on_rds = _evaluate(engine, old, new, resource_type="rds-instance")
        assert "publicly_accessible_database" in on_rds.matched_rule_ids

        on_vm = _evaluate(engine, old, new, resource_type="compute-instance")
        assert "publicly_accessible_database" not in on_vm.matched_rule_ids

    def test_state_rules_need_configuration(self, ruleset):
        result = _evaluate(
            RulesEngine(ruleset),
            {"encryption": {"enabled": True}},
            {"encryption": {"enabled": False}},
            with_state=False,
        )
        assert result.matched_rule_ids == ["encryption_disabled"]


# ═══════════════════════════════════════
# Custom rules
# ═══════════════════════════════════════

class TestCustomRules:
    def test_malformed_rules_are_skipped(self):
        ruleset = RuleSet.from_dicts([
            {"id": "no_condition", "severity": "high"},
            _rule("bad_severity", "urgent", "a", "changed"),
            _rule("good", "low", "a", "changed"),
        ])
        assert [r.id for r in ruleset] == ["good"]

    def test_broken_rule_does_not_stop_others(self):
        ruleset = RuleSet.from_dicts([
            _rule("broken", "critical", "*", "regex", "x"),
            _rule("good", "medium", "a", "changed"),
        ])
        result = _evaluate(RulesEngine(ruleset), {"a": 1}, {"a": 2})
        assert result.matched_rule_ids == ["good"]
        assert result.severity == Severity.MEDIUM
        assert len(result.errors) == 1
        assert "broken" in result.errors[0]

    def test_changed_operator_in_state_scope_is_an_error(self):
        ruleset = RuleSet.from_dicts([_rule("state_changed", "low", "a", "changed", scope="state")])
        result = _evaluate(RulesEngine(ruleset), {"a": 1}, {"a": 2})
        assert result.matches == ()
        assert len(result.errors) == 1

    def test_earliest_declared_wins_among_equal_severity(self):
        ruleset = RuleSet.from_dicts([
            _rule("first", "high", "a", "changed", drift_type="iam_policy"),
            _rule("second", "high", "a", "changed", drift_type="encryption"),
            _rule("lower", "low", "a", "changed"),
        ])
        result = _evaluate(RulesEngine(ruleset), {"a": 1}, {"a": 2})
        assert result.primary.rule_id == "first"
        assert result.primary.drift_type == "iam_policy"

    def test_adding_a_rule_never_lowers_severity(self):
        base = RuleSet.from_dicts([_rule("high_rule", "high", "a", "changed")])
        extended = base.extend([build_rule(_rule("low_rule", "low", "a", "changed"))])
        before = _evaluate(RulesEngine(base), {"a": 1}, {"a": 2})
        after = _evaluate(RulesEngine(extended), {"a": 1}, {"a": 2})
        assert after.severity.rank >= before.severity.rank
        assert after.primary.rule_id == "high_rule"

    def test_provider_filter(self):
        ruleset = RuleSet.from_dicts([
            _rule("gcp_only", "high", "a", "changed", applies_to={"providers": ["GCP"]}),
        ])
        engine = RulesEngine(ruleset)
        assert _evaluate(engine, {"a": 1}, {"a": 2}, provider="aws").matches == ()
        assert _evaluate(engine, {"a": 1}, {"a": 2}, provider="gcp").primary.rule_id == "gcp_only"

    def test_previous_value_is_required(self):
        ruleset = RuleSet.from_dicts([{
            "id": "was_on",
            "severity": "high",
            "condition": {"field": "flag", "operator": "equals", "value": False, "previous": True},
        }])
        engine = RulesEngine(ruleset)
        assert _evaluate(engine, {"flag": True}, {"flag": False}).primary.rule_id == "was_on"
        assert _evaluate(engine, {"flag": None}, {"flag": False}).matches == ()
        assert _evaluate(engine, {}, {"flag": False}).matches == ()

    def test_contains_on_lists_and_strings(self):
        ruleset = RuleSet.from_dicts([_rule("admin", "high", "*polic*", "contains", "administratoraccess")])
        engine = RulesEngine(ruleset)
        as_list = _evaluate(engine, {"policies": []}, {"policies": ["arn:aws:iam::aws:policy/AdministratorAccess"]})
        assert as_list.primary.rule_id == "admin"
        as_str = _evaluate(engine, {"policy": "ReadOnly"}, {"policy": "AdministratorAccess"})
        assert as_str.primary.rule_id == "admin"
