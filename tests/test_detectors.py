import numpy as np
import pandas as pd

from incremental.detectors import (
    detect_missing_values, detect_whitespace_issues, detect_format_variations,
    detect_type_inconsistency, detect_outliers, detect_category_variations,
    detect_encoding_issues, detect_business_rule_violations, detect_patterns
)
from incremental.models import PatternType, IssueSeverity


def test_missing_values_include_placeholders():
    series = pd.Series(["a", None, "N/A", " null ", "?", "b", "c", "d", "e", "f"], name="col")
    [pattern] = detect_missing_values(series)
    assert pattern.affected_rows == 4
    assert pattern.severity == IssueSeverity.HIGH
    assert pattern.parameters["placeholder_count"] == 3


def test_missing_value_severity_bands():
    def severity(missing, total=100):
        values = [1.0] * (total - missing) + [np.nan] * missing
        return detect_missing_values(pd.Series(values, name="x"))[0].severity

    assert severity(60) == IssueSeverity.CRITICAL
    assert severity(25) == IssueSeverity.HIGH
    assert severity(10) == IssueSeverity.MEDIUM
    assert severity(2) == IssueSeverity.LOW
    assert detect_missing_values(pd.Series([1, 2, 3], name="x")) == []


def test_whitespace_issues(messy_df):
    [pattern] = detect_whitespace_issues(messy_df["Name"])
    assert pattern.affected_rows == 2
    assert pattern.confidence == 1.0
    assert detect_whitespace_issues(messy_df["City"]) == []


def test_format_variations(messy_df):
    [dates] = detect_format_variations(messy_df["Joined"])
    assert dates.pattern_type == PatternType.DATE_FORMAT_VARIATION
    assert dates.affected_rows == 2
    assert set(dates.parameters["formats"]) == {"iso", "us", "eu"}

    [numbers] = detect_format_variations(messy_df["Score"])
    assert numbers.pattern_type == PatternType.NUMERIC_FORMAT_VARIATION
    assert numbers.affected_rows == 4

    [booleans] = detect_format_variations(messy_df["Active"])
    assert booleans.pattern_type == PatternType.BOOLEAN_FORMAT_VARIATION
    assert booleans.parameters["target_type"] == "boolean"


def test_type_inconsistency():
    series = pd.Series([str(i) for i in range(18)] + ["abc", "n/a?"], name="amount")
    [pattern] = detect_type_inconsistency(series)
    assert pattern.affected_rows == 2
    assert pattern.parameters["target_type"] == "numeric"
    assert pattern.confidence == 0.95

    mostly_clean = pd.Series([str(i) for i in range(99)] + ["abc"], name="amount")
    assert detect_type_inconsistency(mostly_clean) == []


def test_outliers_reported_within_band():
    series = pd.Series(list(range(1, 99)) + [500, 600], name="value")
    [pattern] = detect_outliers(series)
    assert pattern.affected_rows == 2
    assert pattern.examples == ["500", "600"]

    rare = pd.Series(list(range(1, 200)) + [5000], name="value")
    assert detect_outliers(rare) == []
    assert detect_outliers(pd.Series(["a", "b"], name="text")) == []


def test_category_case_variants(messy_df):
    [pattern] = detect_category_variations(messy_df["City"])
    assert pattern.parameters["kind"] == "case"
    assert pattern.affected_rows == 3
    assert pattern.severity == IssueSeverity.LOW


def test_category_near_duplicates():
    series = pd.Series(["Electronics"] * 5 + ["Electronic"] * 2 + ["Garden"] * 4, name="category")
    patterns = detect_category_variations(series)
    similar = [p for p in patterns if p.parameters["kind"] == "similar"]
    assert len(similar) == 1
    assert similar[0].affected_rows == 2
    assert similar[0].confidence == 0.8


def test_too_many_categories_are_skipped():
    series = pd.Series([f"item{i}" for i in range(150)] + ["ITEM1"], name="sku")
    assert detect_category_variations(series) == []


def test_encoding_issues():
    series = pd.Series(["café", "cafÃ©", "naïve", "bad\ufffd"], name="word")
    [pattern] = detect_encoding_issues(series)
    assert pattern.affected_rows == 2


def test_business_rule_violations():
    series = pd.Series(list(range(1, 51)) + [-3, -7], name="quantity")
    [pattern] = detect_business_rule_violations(series)
    assert pattern.affected_rows == 2
    assert pattern.parameters["constraint"] == ">= 0"

    many_negative = pd.Series(list(range(-20, 20)), name="delta")
    assert detect_business_rule_violations(many_negative) == []


def test_detect_patterns_covers_every_column(messy_df):
    columns = {p.column for p in detect_patterns(messy_df)}
    assert columns == {"Name", "City", "Joined", "Score", "Active"}
