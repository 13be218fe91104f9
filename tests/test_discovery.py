import copy

import pytest

from incremental.analysis import SampleAnalyzer
from incremental.discovery import (
    RuleDiscoveryEngine, ConfidenceCalculator, RuleSetConvergenceDetector,
    make_rule_id, calculate_priority
)
from incremental.models import RuleType, IssueSeverity, ApprovalState


def test_rule_identity_is_type_and_sorted_columns():
    assert make_rule_id(RuleType.CATEGORY_MAPPING, ["b", "a"]) == "category_mapping:a,b"


def test_priority_combines_severity_and_type():
    assert calculate_priority(RuleType.MISSING_VALUE_STRATEGY, IssueSeverity.CRITICAL) == 10
    assert calculate_priority(RuleType.MISSING_VALUE_STRATEGY, IssueSeverity.MEDIUM) == 7
    assert calculate_priority(RuleType.OUTLIER_HANDLING, IssueSeverity.LOW) == 4
    assert calculate_priority(RuleType.WHITESPACE_NORMALIZATION, IssueSeverity.INFO) == 1


def test_discover_messy_table(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    by_id = {r.id: r for r in rules}

    assert "whitespace_normalization:Name" in by_id
    assert "category_mapping:City" in by_id
    assert "date_format_standardization:Joined" in by_id
    assert "numeric_format_standardization:Score" in by_id
    assert "type_conversion:Active" in by_id

    assert not by_id["whitespace_normalization:Name"].requires_hitl
    assert not by_id["date_format_standardization:Joined"].requires_hitl
    assert by_id["category_mapping:City"].requires_hitl
    assert by_id["type_conversion:Active"].parameters["target_type"] == "boolean"
    assert all(r.discovered_in_stage == 1 and r.stages_seen == [1] for r in rules)

    priorities = [r.priority for r in rules]
    assert priorities == sorted(priorities, reverse=True)


def test_missing_age_rule_uses_analysis_types(churn_df):
    analysis = SampleAnalyzer().analyze(churn_df, 1, 1.0)
    rules = RuleDiscoveryEngine().discover(churn_df, analysis, stage=1)
    [rule] = [r for r in rules if r.rule_type == RuleType.MISSING_VALUE_STRATEGY]
    assert rule.column_names == ["Age"]
    assert rule.affected_rows == 150
    assert rule.priority == 7
    assert rule.requires_hitl
    assert rule.parameters["action"] == "impute_median"


def test_merge_keeps_approval_and_updates_confidence(messy_df):
    engine = RuleDiscoveryEngine()
    existing = engine.discover(messy_df, stage=1)
    city = next(r for r in existing if r.id == "category_mapping:City")
    city.approve("merge_categories: Merge categories")

    incoming = engine.discover(messy_df, stage=2)
    merged, new_ids = engine.merge(existing, incoming, stage=2)

    assert new_ids == []
    assert len(merged) == len(existing)
    merged_city = next(r for r in merged if r.id == city.id)
    assert merged_city.approval_state == ApprovalState.APPROVED
    assert merged_city.stages_seen == [1, 2]
    assert merged_city.confidence == pytest.approx(0.975)


def test_merge_appends_new_identities(messy_df, churn_df):
    engine = RuleDiscoveryEngine()
    first = engine.discover(messy_df, stage=1)
    second = engine.discover(churn_df, stage=2)
    merged, new_ids = engine.merge(first, second, stage=2)
    assert "missing_value_strategy:Age" in new_ids
    assert len(merged) == len(first) + len(second)


def test_confidence_calculator_weights(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    existing = next(r for r in rules if r.id == "category_mapping:City")
    incoming = copy.deepcopy(existing)
    existing.confidence = 0.85

    score = ConfidenceCalculator().score(existing, incoming, stage=2)
    assert score.consistency == pytest.approx(0.9)
    assert score.coverage == 1.0
    assert score.stability == 1.0
    assert score.overall == pytest.approx(0.95)
    assert score.level == "medium"

    gap = ConfidenceCalculator().score(existing, incoming, stage=3)
    assert gap.coverage == pytest.approx(2 / 3)


def test_rule_set_convergence(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    detector = RuleSetConvergenceDetector()

    same = detector.compare(rules, copy.deepcopy(rules))
    assert same.change_rate == 0.0
    assert same.converged

    shrunk = detector.compare(rules, rules[1:])
    assert shrunk.removed_rules == [rules[0].id]
    assert shrunk.change_rate == pytest.approx(1 / len(rules))
    assert not shrunk.converged

    assert detector.compare([], []).change_rate == 0.0
    assert detector.compare([], rules).change_rate == 1.0
