"""Turn detected patterns into preprocessing rules and merge them across stages."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional

import pandas as pd

from .detectors import DetectedPattern, detect_patterns
from .models import (
    PreprocessingRule, SampleAnalysis, RuleType, PatternType, IssueSeverity
)

logger = logging.getLogger(__name__)


PATTERN_RULE_TYPES = {
    PatternType.MISSING_VALUE: RuleType.MISSING_VALUE_STRATEGY,
    PatternType.WHITESPACE_ISSUE: RuleType.WHITESPACE_NORMALIZATION,
    PatternType.DATE_FORMAT_VARIATION: RuleType.DATE_FORMAT_STANDARDIZATION,
    PatternType.NUMERIC_FORMAT_VARIATION: RuleType.NUMERIC_FORMAT_STANDARDIZATION,
    PatternType.BOOLEAN_FORMAT_VARIATION: RuleType.TYPE_CONVERSION,
    PatternType.TYPE_INCONSISTENCY: RuleType.TYPE_CONVERSION,
    PatternType.OUTLIER_ANOMALY: RuleType.OUTLIER_HANDLING,
    PatternType.CATEGORY_VARIATION: RuleType.CATEGORY_MAPPING,
    PatternType.ENCODING_ISSUE: RuleType.ENCODING_NORMALIZATION,
    PatternType.BUSINESS_RULE: RuleType.BUSINESS_LOGIC_DECISION,
}

# Unambiguous fixes that never need a person
AUTOMATIC_RULE_TYPES = {
    RuleType.WHITESPACE_NORMALIZATION,
    RuleType.DATE_FORMAT_STANDARDIZATION,
    RuleType.NUMERIC_FORMAT_STANDARDIZATION,
    RuleType.ENCODING_NORMALIZATION,
}

SEVERITY_PRIORITY = {
    IssueSeverity.CRITICAL: 10,
    IssueSeverity.HIGH: 7,
    IssueSeverity.MEDIUM: 5,
    IssueSeverity.LOW: 3,
    IssueSeverity.INFO: 1,
}

TYPE_PRIORITY_BONUS = {
    RuleType.MISSING_VALUE_STRATEGY: 2,
    RuleType.TYPE_CONVERSION: 2,
    RuleType.OUTLIER_HANDLING: 1,
    RuleType.ENCODING_NORMALIZATION: 1,
}


def make_rule_id(rule_type: RuleType, columns: List[str]) -> str:
    """Identity of a rule: its type plus the sorted set of columns it touches."""
    return f"{rule_type.value}:{','.join(sorted(columns))}"


def calculate_priority(rule_type: RuleType, severity: IssueSeverity) -> int:
    priority = SEVERITY_PRIORITY[severity] + TYPE_PRIORITY_BONUS.get(rule_type, 0)
    return max(1, min(10, priority))


def default_parameters(pattern: DetectedPattern, is_numeric: bool) -> Dict:
    """Transformation parameters used until a decision says otherwise."""
    ptype = pattern.pattern_type

    if ptype == PatternType.MISSING_VALUE:
        return {"action": "impute_median" if is_numeric else "impute_mode"}
    if ptype == PatternType.WHITESPACE_ISSUE:
        return {"trim": True, "collapse_spaces": True}
    if ptype == PatternType.DATE_FORMAT_VARIATION:
        return {"target_format": "%Y-%m-%d", "formats": pattern.parameters.get("formats", [])}
    if ptype == PatternType.NUMERIC_FORMAT_VARIATION:
        return {"styles": pattern.parameters.get("styles", [])}
    if ptype in (PatternType.BOOLEAN_FORMAT_VARIATION, PatternType.TYPE_INCONSISTENCY):
        return {"target_type": pattern.parameters.get("target_type", "numeric"), "action": "convert"}
    if ptype == PatternType.OUTLIER_ANOMALY:
        return {"action": "cap", "lower_pct": 1, "upper_pct": 99}
    if ptype == PatternType.CATEGORY_VARIATION:
        similar = pattern.parameters.get("kind") == "similar"
        return {
            "merge_case": True,
            "similarity_threshold": pattern.parameters.get("similarity_threshold") if similar else None,
        }
    if ptype == PatternType.ENCODING_ISSUE:
        return {"target_encoding": "utf-8"}
    if ptype == PatternType.BUSINESS_RULE:
        return {"constraint": pattern.parameters.get("constraint", ">= 0"), "action": "keep"}
    return {}


def pattern_to_rule(pattern: DetectedPattern, stage: int, is_numeric: bool = False) -> PreprocessingRule:
    rule_type = PATTERN_RULE_TYPES[pattern.pattern_type]
    return PreprocessingRule(
        id=make_rule_id(rule_type, [pattern.column]),
        rule_type=rule_type,
        column_names=[pattern.column],
        description=pattern.description,
        pattern_type=pattern.pattern_type,
        requires_hitl=rule_type not in AUTOMATIC_RULE_TYPES,
        priority=calculate_priority(rule_type, pattern.severity),
        discovered_in_stage=stage,
        confidence=pattern.confidence,
        affected_rows=pattern.affected_rows,
        total_rows=pattern.total_rows,
        examples=list(pattern.examples),
        parameters=default_parameters(pattern, is_numeric),
        stages_seen=[stage]
    )


def _fold(existing: PreprocessingRule, other: PreprocessingRule) -> None:
    # Two patterns with one identity in the same stage
    existing.description = f"{existing.description}; {other.description}"
    existing.affected_rows = max(existing.affected_rows, other.affected_rows)
    existing.confidence = max(existing.confidence, other.confidence)
    existing.priority = max(existing.priority, other.priority)
    existing.examples = (existing.examples + other.examples)[:5]
    for key, value in other.parameters.items():
        if existing.parameters.get(key) is None:
            existing.parameters[key] = value


def sort_rules(rules: List[PreprocessingRule]) -> List[PreprocessingRule]:
    """Highest priority first, then most affected rows, then id."""
    return sorted(rules, key=lambda r: (-r.priority, -r.affected_rows, r.id))


@dataclass
class ConfidenceScore:
    consistency: float
    coverage: float
    stability: float
    overall: float

    @property
    def level(self) -> str:
        if self.overall >= 0.98:
            return "high"
        if self.overall >= 0.90:
            return "medium"
        return "low"


class ConfidenceCalculator:
    """
    Confidence of a rule that has been observed over several stages.

    consistency: mean detector confidence of the two observations
    coverage: share of stages since discovery in which the rule was seen
    stability: 1 - change in the share of affected rows
    """

    CONSISTENCY_WEIGHT = 0.5
    COVERAGE_WEIGHT = 0.3
    STABILITY_WEIGHT = 0.2

    def score(
        self,
        existing: PreprocessingRule,
        incoming: PreprocessingRule,
        stage: int
    ) -> ConfidenceScore:
        consistency = (existing.confidence + incoming.confidence) / 2
        stages_seen = set(existing.stages_seen) | {stage}
        span = stage - existing.discovered_in_stage + 1
        coverage = min(1.0, len(stages_seen) / span) if span > 0 else 1.0
        stability = max(0.0, 1.0 - abs(incoming.affected_ratio - existing.affected_ratio))

        overall = (
            self.CONSISTENCY_WEIGHT * consistency
            + self.COVERAGE_WEIGHT * coverage
            + self.STABILITY_WEIGHT * stability
        )
        return ConfidenceScore(
            consistency=consistency,
            coverage=coverage,
            stability=stability,
            overall=max(0.0, min(1.0, overall))
        )


@dataclass
class RuleSetChange:
    new_rules: List[str] = field(default_factory=list)
    modified_rules: List[str] = field(default_factory=list)
    removed_rules: List[str] = field(default_factory=list)
    change_rate: float = 0.0
    converged: bool = False


class RuleSetConvergenceDetector:
    """Tracks how much the rule set still changes from one stage to the next."""

    def __init__(self, threshold: float = 0.02):
        self.threshold = threshold

    def compare(
        self,
        previous: List[PreprocessingRule],
        current: List[PreprocessingRule]
    ) -> RuleSetChange:
        before = {r.id: r for r in previous}
        after = {r.id: r for r in current}

        change = RuleSetChange(
            new_rules=sorted(set(after) - set(before)),
            removed_rules=sorted(set(before) - set(after))
        )
        for rule_id in sorted(set(before) & set(after)):
            old, new = before[rule_id], after[rule_id]
            rows_moved = abs(new.affected_rows - old.affected_rows) > 0.1 * max(old.affected_rows, 1)
            if abs(new.confidence - old.confidence) > 0.05 or rows_moved:
                change.modified_rules.append(rule_id)

        changed = len(change.new_rules) + len(change.modified_rules) + len(change.removed_rules)
        if before:
            change.change_rate = changed / len(before)
        else:
            change.change_rate = 1.0 if after else 0.0
        change.converged = change.change_rate < self.threshold
        return change


class RuleDiscoveryEngine:
    """Discovers rules in a stage's sample and merges them into the running set."""

    def __init__(self, calculator: Optional[ConfidenceCalculator] = None):
        self.calculator = calculator or ConfidenceCalculator()

    def discover(
        self,
        df: pd.DataFrame,
        analysis: Optional[SampleAnalysis] = None,
        stage: int = 1,
        cancel=None
    ) -> List[PreprocessingRule]:
        """
        Discover candidate rules in a sample.

        Args:
            df: The stage's sample
            analysis: Its SampleAnalysis, used for column types
            stage: Stage number recorded on new rules
            cancel: Optional CancellationToken

        Returns:
            Rules sorted by priority, one per (column set, type)
        """
        rules: Dict[str, PreprocessingRule] = {}

        for pattern in detect_patterns(df, cancel):
            column = analysis.get_column(pattern.column) if analysis is not None else None
            if column is not None:
                is_numeric = column.is_numeric
            else:
                is_numeric = pd.api.types.is_numeric_dtype(df[pattern.column])

            rule = pattern_to_rule(pattern, stage, is_numeric)
            if rule.id in rules:
                _fold(rules[rule.id], rule)
            else:
                rules[rule.id] = rule

        discovered = sort_rules(list(rules.values()))
        logger.info(
            "Stage %d discovered %d rules (%d need review)",
            stage, len(discovered), sum(1 for r in discovered if r.requires_hitl)
        )
        return discovered

    def merge(
        self,
        existing: List[PreprocessingRule],
        incoming: List[PreprocessingRule],
        stage: int
    ) -> Tuple[List[PreprocessingRule], List[str]]:
        """
        Merge a stage's rules into the running set.

        Rules with a known identity refresh their statistics and confidence
        but keep their approval state; unknown identities are appended.

        Returns:
            Tuple of (merged rules sorted by priority, ids of new rules)
        """
        merged = {r.id: r for r in existing}
        new_ids = []

        for rule in incoming:
            current = merged.get(rule.id)
            if current is None:
                merged[rule.id] = rule
                new_ids.append(rule.id)
                continue
            if current.applied:
                continue

            score = self.calculator.score(current, rule, stage)
            current.confidence = round(score.overall, 6)
            current.affected_rows = rule.affected_rows
            current.total_rows = rule.total_rows
            current.priority = max(current.priority, rule.priority)
            current.examples = list(dict.fromkeys(current.examples + rule.examples))[:5]
            if stage not in current.stages_seen:
                current.stages_seen.append(stage)
            if not current.is_resolved:
                current.description = rule.description
                for key, value in rule.parameters.items():
                    if key != "action" and value is not None:
                        current.parameters[key] = value

        return sort_rules(list(merged.values())), new_ids
