"""Human-in-the-loop questions, answers and the decision audit log."""

import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .models import (
    PreprocessingRule, RuleType, ActionType, QuestionType,
    HITLOption, HITLQuestion, HITLAnswer, HITLDecisionLog, now_iso
)

logger = logging.getLogger(__name__)


class HITLError(Exception):
    """Raised for answers that do not fit their question."""
    pass


def question_id_for(rule: PreprocessingRule) -> str:
    return f"HITL_{rule.id}"


def _column_is_numeric(rule: PreprocessingRule, df: Optional[pd.DataFrame]) -> bool:
    if df is not None and rule.column_names and rule.column_names[0] in df.columns:
        return pd.api.types.is_numeric_dtype(df[rule.column_names[0]])
    return rule.parameters.get("action") in ("impute_mean", "impute_median")


class ContextBuilder:
    """Writes the human-readable background shown with a question."""

    def build(self, rule: PreprocessingRule, df: Optional[pd.DataFrame] = None) -> str:
        column = ", ".join(rule.column_names)
        pct = rule.affected_ratio * 100
        lines = [
            f"Found {rule.affected_rows:,} affected records in '{column}' column "
            f"({pct:.1f}% of {rule.total_rows:,} records)",
            f"Pattern: {rule.description}",
        ]

        if rule.examples:
            lines.append(f"Examples: {', '.join(rule.examples[:5])}")

        if df is not None and rule.column_names and rule.column_names[0] in df.columns:
            series = df[rule.column_names[0]]
            if rule.rule_type in (
                RuleType.MISSING_VALUE_STRATEGY,
                RuleType.OUTLIER_HANDLING,
                RuleType.BUSINESS_LOGIC_DECISION,
            ) and pd.api.types.is_numeric_dtype(series) and series.notna().any():
                lines.append(
                    f"Statistics: mean={series.mean():.4g}, median={series.median():.4g}, "
                    f"min={series.min():.4g}, max={series.max():.4g}"
                )
            elif rule.rule_type == RuleType.CATEGORY_MAPPING:
                top = series.dropna().astype(str).value_counts().head(5)
                lines.append("Top values: " + ", ".join(f"{k} ({v})" for k, v in top.items()))

        lines.append(f"Rule confidence: {rule.confidence:.2f}")
        return "\n".join(lines)


class RecommendationEngine:
    """Chooses the option a reviewer is advised to pick."""

    def recommend(
        self,
        rule: PreprocessingRule,
        options: List[HITLOption],
        is_numeric: bool = False
    ) -> Tuple[Optional[str], str]:
        """
        Returns:
            Tuple of (recommended option key, rationale)
        """
        share = rule.affected_ratio
        action, reason = ActionType.CUSTOM_LOGIC, "Apply the suggested fix"

        if rule.rule_type == RuleType.MISSING_VALUE_STRATEGY:
            if share < 0.05:
                action, reason = ActionType.DELETE, "Few rows are affected; deleting them loses little data"
            elif is_numeric:
                action, reason = ActionType.IMPUTE_MEDIAN, "The median is robust to skew and outliers"
            else:
                action, reason = ActionType.IMPUTE_MODE, "The most frequent value is the safest categorical fill"

        elif rule.rule_type == RuleType.OUTLIER_HANDLING:
            if share < 0.01:
                action, reason = ActionType.REMOVE_OUTLIERS, "Outliers are rare enough to remove"
            elif share < 0.05:
                action, reason = ActionType.KEEP_AS_IS, "Outliers may be genuine extreme values"
            else:
                action, reason = ActionType.CAP_OUTLIERS, "Capping keeps rows while limiting extreme values"

        elif rule.rule_type == RuleType.CATEGORY_MAPPING:
            action, reason = ActionType.MERGE_CATEGORIES, "Variants most likely denote the same category"

        elif rule.rule_type == RuleType.TYPE_CONVERSION:
            action, reason = ActionType.CONVERT_TYPE, "Most values already share the target type"

        elif rule.rule_type == RuleType.BUSINESS_LOGIC_DECISION:
            action, reason = ActionType.KEEP_AS_IS, "Only domain knowledge can tell whether these values are valid"

        for option in options:
            if option.action == action:
                return option.key, reason
        return (options[0].key, reason) if options else (None, reason)


def _keyed(options: List[HITLOption]) -> List[HITLOption]:
    for index, option in enumerate(options):
        option.key = chr(ord("A") + index)
    return options


def build_options(rule: PreprocessingRule, is_numeric: bool) -> Tuple[QuestionType, str, List[HITLOption]]:
    """Question type, prompt and options for a rule."""
    column = ", ".join(rule.column_names)

    if rule.rule_type == RuleType.MISSING_VALUE_STRATEGY:
        options = [HITLOption("", "Delete rows", "Drop every row missing this value",
                              ActionType.DELETE, parameters={"action": "delete"})]
        if is_numeric:
            options.append(HITLOption("", "Impute with mean", "Fill with the column mean",
                                      ActionType.IMPUTE_MEAN, parameters={"action": "impute_mean"}))
            options.append(HITLOption("", "Impute with median", "Fill with the column median",
                                      ActionType.IMPUTE_MEDIAN, parameters={"action": "impute_median"}))
        options.append(HITLOption("", "Impute with mode", "Fill with the most frequent value",
                                  ActionType.IMPUTE_MODE, parameters={"action": "impute_mode"}))
        options.append(HITLOption("", "Custom value", "Fill with a value you provide",
                                  ActionType.IMPUTE_CUSTOM, parameters={"action": "impute_custom"},
                                  requires_custom_value=True))
        prompt = f"How should missing values in '{column}' be handled?"
        return QuestionType.MULTIPLE_CHOICE, prompt, _keyed(options)

    if rule.rule_type == RuleType.OUTLIER_HANDLING:
        options = [
            HITLOption("", "Keep as is", "Outliers are genuine values", ActionType.KEEP_AS_IS),
            HITLOption("", "Remove outliers", "Drop rows with outlying values",
                       ActionType.REMOVE_OUTLIERS, parameters={"action": "remove"}),
            HITLOption("", "Cap outliers", "Clip values to the 1st and 99th percentiles",
                       ActionType.CAP_OUTLIERS,
                       parameters={"action": "cap", "lower_pct": 1, "upper_pct": 99}),
            HITLOption("", "Flag for review", f"Add a '{column}_outlier' indicator column",
                       ActionType.FLAG_FOR_REVIEW, parameters={"action": "flag"}),
        ]
        prompt = f"How should outliers in '{column}' be handled?"
        return QuestionType.MULTIPLE_CHOICE, prompt, _keyed(options)

    if rule.rule_type == RuleType.CATEGORY_MAPPING:
        options = [
            HITLOption("", "Merge categories", "Map variants onto the most frequent spelling",
                       ActionType.MERGE_CATEGORIES, parameters={"preserve_original": False}),
            HITLOption("", "Keep as is", "Variants are distinct categories", ActionType.KEEP_AS_IS),
            HITLOption("", "Merge and keep original", f"Merge, keeping '{column}_original'",
                       ActionType.MERGE_CATEGORIES, parameters={"preserve_original": True}),
        ]
        prompt = f"Should similar categories in '{column}' be merged?"
        return QuestionType.MULTIPLE_CHOICE, prompt, _keyed(options)

    if rule.rule_type == RuleType.TYPE_CONVERSION:
        target = rule.parameters.get("target_type", "numeric")
        options = [
            HITLOption("", f"Convert to {target}", "Non-conforming values become missing",
                       ActionType.CONVERT_TYPE, parameters={"target_type": target, "action": "convert"}),
            HITLOption("", "Convert to string", "Keep every value as text",
                       ActionType.CONVERT_TYPE, parameters={"target_type": "string", "action": "convert"}),
            HITLOption("", "Delete rows", f"Drop rows whose value is not {target}",
                       ActionType.DELETE, parameters={"target_type": target, "action": "delete"}),
        ]
        prompt = f"'{column}' mixes value types. How should it be converted?"
        return QuestionType.MULTIPLE_CHOICE, prompt, _keyed(options)

    if rule.rule_type == RuleType.BUSINESS_LOGIC_DECISION:
        constraint = rule.parameters.get("constraint", ">= 0")
        options = [
            HITLOption("", "Set to missing", "Treat violating values as unknown",
                       ActionType.CUSTOM_LOGIC, parameters={"action": "nullify"}),
            HITLOption("", "Delete rows", "Drop rows with violating values",
                       ActionType.DELETE, parameters={"action": "delete"}),
            HITLOption("", "Keep as is", "The values are valid", ActionType.KEEP_AS_IS),
            HITLOption("", "Replace with value", "Replace violating values with a value you provide",
                       ActionType.CUSTOM_LOGIC, parameters={"action": "replace"},
                       requires_custom_value=True),
        ]
        prompt = f"'{column}' contains values that break '{constraint}'. What should happen to them?"
        return QuestionType.MULTIPLE_CHOICE, prompt, _keyed(options)

    options = [
        HITLOption("", "Apply", "Apply the suggested fix", ActionType.CUSTOM_LOGIC),
        HITLOption("", "Skip", "Leave the column unchanged", ActionType.KEEP_AS_IS),
    ]
    prompt = f"Apply '{rule.description}' to '{column}'?"
    return QuestionType.CONFIRMATION, prompt, _keyed(options)


class HITLQuestionGenerator:
    """Builds one question per rule that needs a human decision."""

    def __init__(
        self,
        context_builder: Optional[ContextBuilder] = None,
        recommendation_engine: Optional[RecommendationEngine] = None
    ):
        self.context_builder = context_builder or ContextBuilder()
        self.recommendation_engine = recommendation_engine or RecommendationEngine()

    def generate(self, rule: PreprocessingRule, df: Optional[pd.DataFrame] = None) -> HITLQuestion:
        is_numeric = _column_is_numeric(rule, df)
        question_type, prompt, options = build_options(rule, is_numeric)
        key, reason = self.recommendation_engine.recommend(rule, options, is_numeric)
        for option in options:
            option.is_recommended = option.key == key

        return HITLQuestion(
            id=question_id_for(rule),
            rule_id=rule.id,
            question_type=question_type,
            context=self.context_builder.build(rule, df),
            prompt=prompt,
            options=options,
            recommended_option=key,
            recommendation_reason=reason
        )

    def generate_all(
        self,
        rules: List[PreprocessingRule],
        df: Optional[pd.DataFrame] = None
    ) -> List[HITLQuestion]:
        return [self.generate(r, df) for r in rules if r.requires_hitl and not r.is_resolved]


@dataclass
class HITLDecisionSummary:
    total_decisions: int = 0
    followed_recommendations: int = 0
    overridden_recommendations: int = 0
    follow_rate: float = 0.0
    average_decision_time: float = 0.0
    question_type_distribution: Dict[str, int] = field(default_factory=dict)
    action_distribution: Dict[str, int] = field(default_factory=dict)
    first_decision_at: Optional[str] = None
    last_decision_at: Optional[str] = None


class HITLDecisionLogger:
    """
    Append-only decision log.

    When a directory is given, each session's log is rewritten to
    ``<directory>/<session_id>.json`` after every decision.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory is not None else None
        self._decisions: List[HITLDecisionLog] = []
        self._lock = threading.Lock()

    def log(self, decision: HITLDecisionLog) -> None:
        with self._lock:
            self._decisions.append(decision)
            if self.directory is not None:
                self._write(decision.session_id)

    def get_decisions(self, session_id: Optional[str] = None) -> List[HITLDecisionLog]:
        with self._lock:
            return [d for d in self._decisions if session_id is None or d.session_id == session_id]

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def _write(self, session_id: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        records = [d.to_dict() for d in self._decisions if d.session_id == session_id]
        with open(self._path(session_id), "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2, default=str)

    def load(self, session_id: str) -> List[HITLDecisionLog]:
        """Read a session's persisted decisions into the log."""
        if self.directory is None or not self._path(session_id).exists():
            return []
        with open(self._path(session_id), "r", encoding="utf-8") as f:
            decisions = [HITLDecisionLog.from_dict(d) for d in json.load(f)]
        with self._lock:
            known = {d.id for d in self._decisions}
            self._decisions.extend(d for d in decisions if d.id not in known)
        return decisions

    def summary(self, session_id: Optional[str] = None) -> HITLDecisionSummary:
        decisions = self.get_decisions(session_id)
        if not decisions:
            return HITLDecisionSummary()

        followed = sum(1 for d in decisions if d.followed_recommendation)
        question_types: Dict[str, int] = {}
        actions: Dict[str, int] = {}
        for d in decisions:
            qtype = d.question.question_type.value
            question_types[qtype] = question_types.get(qtype, 0) + 1
            option = d.question.get_option(d.answer.selected_option)
            if option is not None:
                actions[option.action.value] = actions.get(option.action.value, 0) + 1

        timestamps = sorted(d.logged_at for d in decisions)
        return HITLDecisionSummary(
            total_decisions=len(decisions),
            followed_recommendations=followed,
            overridden_recommendations=len(decisions) - followed,
            follow_rate=followed / len(decisions),
            average_decision_time=sum(d.answer.time_to_decide for d in decisions) / len(decisions),
            question_type_distribution=question_types,
            action_distribution=actions,
            first_decision_at=timestamps[0],
            last_decision_at=timestamps[-1]
        )


class HITLWorkflowService:
    """Applies answers to rules and records every decision."""

    def __init__(
        self,
        session_id: str,
        decision_log: Optional[HITLDecisionLogger] = None,
        generator: Optional[HITLQuestionGenerator] = None
    ):
        self.session_id = session_id
        self.decision_log = decision_log or HITLDecisionLogger()
        self.generator = generator or HITLQuestionGenerator()

    @staticmethod
    def validate_answer(question: HITLQuestion, answer: HITLAnswer) -> HITLOption:
        """
        Check an answer against its question.

        Returns:
            The selected option

        Raises:
            HITLError: If the answer does not belong to the question, picks an
                unknown option or omits a required custom value
        """
        if answer.question_id != question.id:
            raise HITLError(f"Answer for {answer.question_id} given to question {question.id}")

        option = question.get_option(answer.selected_option)
        if option is None:
            raise HITLError(
                f"Option '{answer.selected_option}' is not one of "
                f"{[o.key for o in question.options]} for {question.id}"
            )
        if option.requires_custom_value and not answer.custom_value:
            raise HITLError(f"Option '{option.key}' of {question.id} needs a custom value")
        return option

    def apply_answer(
        self,
        question: HITLQuestion,
        answer: HITLAnswer,
        rule: PreprocessingRule,
        user_id: str = "user"
    ) -> HITLDecisionLog:
        """
        Resolve a rule with an answer.

        Args:
            question: The question that was asked
            answer: The reviewer's answer
            rule: Rule the question was generated for
            user_id: Identity of whoever answered

        Returns:
            The decision log entry

        Raises:
            HITLError: If the answer does not fit the question
        """
        option = self.validate_answer(question, answer)

        feedback = f"{option.action.value}: {option.label}"
        if option.action == ActionType.KEEP_AS_IS:
            rule.reject(feedback)
        else:
            rule.parameters.update(option.parameters)
            if answer.custom_value is not None:
                rule.parameters["custom_value"] = answer.custom_value
            rule.approve(feedback)

        followed = answer.selected_option == question.recommended_option
        if followed:
            notes = "Followed recommendation"
        else:
            notes = f"Overrode recommendation (recommended {question.recommended_option})"
            logger.warning("%s overrode the recommendation for %s", user_id, rule.id)

        decision = HITLDecisionLog(
            id=f"DEC_{self.session_id}_{len(self.decision_log.get_decisions(self.session_id)) + 1:04d}",
            session_id=self.session_id,
            question=copy.deepcopy(question),
            answer=copy.deepcopy(answer),
            approved_rule=copy.deepcopy(rule),
            user_id=user_id,
            logged_at=now_iso(),
            notes=notes
        )
        self.decision_log.log(decision)
        logger.info("Rule %s %s via option %s", rule.id, rule.approval_state.value, option.key)
        return decision

    def auto_resolve(
        self,
        question: HITLQuestion,
        rule: PreprocessingRule,
        reason: str
    ) -> HITLDecisionLog:
        """Answer ``question`` with its recommended option on behalf of ``reason``."""
        if question.recommended_option is None:
            raise HITLError(f"Question {question.id} has no recommended option")
        answer = HITLAnswer(
            question_id=question.id,
            selected_option=question.recommended_option,
            user_rationale=f"Resolved automatically ({reason})"
        )
        return self.apply_answer(question, answer, rule, user_id=f"system:{reason}")
