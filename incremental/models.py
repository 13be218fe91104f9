"""Shared records for the incremental preprocessing workflow."""

from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Optional, Dict, List, Any
import copy

import pandas as pd

from .config import IncrementalWorkflowConfig


class WorkflowStage(IntEnum):
    """Stages of the workflow state machine, in execution order."""
    NOT_STARTED = 0
    INITIAL_EXPLORATION = 1
    PATTERN_EXPANSION = 2
    HITL_DECISION = 3
    CONFIDENCE_CHECKPOINT = 4
    BULK_PROCESSING = 5
    COMPLETED = 6

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


class DataType(str, Enum):
    INTEGER = "integer"
    FLOATING = "floating"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    STRING = "string"
    DATETIME = "datetime"
    UNKNOWN = "unknown"

    @property
    def is_numeric(self) -> bool:
        return self in (DataType.INTEGER, DataType.FLOATING, DataType.DECIMAL)


class IssueSeverity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    IssueSeverity.INFO: 0,
    IssueSeverity.LOW: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.HIGH: 3,
    IssueSeverity.CRITICAL: 4,
}


class IssueType(str, Enum):
    HIGH_MISSING_VALUES = "high_missing_values"
    MODERATE_MISSING_VALUES = "moderate_missing_values"
    HIGH_OUTLIERS = "high_outliers"
    HIGH_CARDINALITY = "high_cardinality"


class RuleType(str, Enum):
    MISSING_VALUE_STRATEGY = "missing_value_strategy"
    OUTLIER_HANDLING = "outlier_handling"
    WHITESPACE_NORMALIZATION = "whitespace_normalization"
    DATE_FORMAT_STANDARDIZATION = "date_format_standardization"
    CATEGORY_MAPPING = "category_mapping"
    TYPE_CONVERSION = "type_conversion"
    ENCODING_NORMALIZATION = "encoding_normalization"
    NUMERIC_FORMAT_STANDARDIZATION = "numeric_format_standardization"
    BUSINESS_LOGIC_DECISION = "business_logic_decision"


class PatternType(str, Enum):
    MISSING_VALUE = "missing_value"
    WHITESPACE_ISSUE = "whitespace_issue"
    DATE_FORMAT_VARIATION = "date_format_variation"
    NUMERIC_FORMAT_VARIATION = "numeric_format_variation"
    BOOLEAN_FORMAT_VARIATION = "boolean_format_variation"
    TYPE_INCONSISTENCY = "type_inconsistency"
    OUTLIER_ANOMALY = "outlier_anomaly"
    CATEGORY_VARIATION = "category_variation"
    ENCODING_ISSUE = "encoding_issue"
    BUSINESS_RULE = "business_rule"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ActionType(str, Enum):
    DELETE = "delete"
    KEEP_AS_IS = "keep_as_is"
    IMPUTE_MEAN = "impute_mean"
    IMPUTE_MEDIAN = "impute_median"
    IMPUTE_MODE = "impute_mode"
    IMPUTE_CUSTOM = "impute_custom"
    REMOVE_OUTLIERS = "remove_outliers"
    CAP_OUTLIERS = "cap_outliers"
    FLAG_FOR_REVIEW = "flag_for_review"
    MERGE_CATEGORIES = "merge_categories"
    CONVERT_TYPE = "convert_type"
    CUSTOM_LOGIC = "custom_logic"


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    YES_NO = "yes_no"
    NUMERIC_INPUT = "numeric_input"
    TEXT_INPUT = "text_input"
    CONFIRMATION = "confirmation"


class RuleLockedError(Exception):
    """Raised when an applied rule is asked to change its approval state."""
    pass


def now_iso() -> str:
    return pd.Timestamp.now().isoformat()


# ---------------------------------------------------------------------------
# Analysis records
# ---------------------------------------------------------------------------

@dataclass
class NumericStats:
    """Descriptive statistics for a numeric column."""
    count: int
    mean: float
    median: float
    std: float
    variance: float
    min: float
    max: float
    q1: float
    q3: float
    iqr: float
    outlier_count: int
    sum: float
    skewness: float = 0.0
    kurtosis: float = 0.0


@dataclass
class CategoricalStats:
    """Frequency statistics for a categorical, boolean or string column."""
    count: int
    unique_count: int
    most_frequent: Optional[str]
    most_frequent_count: int
    value_counts: Dict[str, int]
    cardinality_ratio: float
    entropy: float
    is_high_cardinality: bool
    is_likely_identifier: bool = False
    is_low_cardinality: bool = False


@dataclass
class DataQualityIssue:
    issue_type: IssueType
    severity: IssueSeverity
    description: str
    affected_count: int
    affected_percentage: float

    @classmethod
    def from_dict(cls, data: dict) -> "DataQualityIssue":
        return cls(
            issue_type=IssueType(data["issue_type"]),
            severity=IssueSeverity(data["severity"]),
            description=data["description"],
            affected_count=data["affected_count"],
            affected_percentage=data["affected_percentage"]
        )


@dataclass
class ColumnAnalysis:
    """Analysis of one column of a sample."""
    column_name: str
    column_index: int
    data_type: DataType
    non_null_count: int
    null_count: int
    missing_percentage: float
    unique_count: int
    numeric_stats: Optional[NumericStats] = None
    categorical_stats: Optional[CategoricalStats] = None
    issues: List[DataQualityIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def is_numeric(self) -> bool:
        return self.numeric_stats is not None

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnAnalysis":
        numeric = data.get("numeric_stats")
        categorical = data.get("categorical_stats")
        return cls(
            column_name=data["column_name"],
            column_index=data["column_index"],
            data_type=DataType(data["data_type"]),
            non_null_count=data["non_null_count"],
            null_count=data["null_count"],
            missing_percentage=data["missing_percentage"],
            unique_count=data["unique_count"],
            numeric_stats=NumericStats(**numeric) if numeric else None,
            categorical_stats=CategoricalStats(**categorical) if categorical else None,
            issues=[DataQualityIssue.from_dict(i) for i in data.get("issues", [])],
            recommendations=list(data.get("recommendations", []))
        )


@dataclass
class SampleAnalysis:
    """Statistics and quality assessment for one stage's sample."""
    stage: int
    sample_ratio: float
    row_count: int
    column_count: int
    columns: List[ColumnAnalysis]
    quality_score: float
    memory_bytes: int
    analyzed_at: str = field(default_factory=now_iso)
    duration: float = 0.0

    def get_column(self, name: str) -> Optional[ColumnAnalysis]:
        for column in self.columns:
            if column.column_name == name:
                return column
        return None

    @property
    def issue_count(self) -> int:
        return sum(len(c.issues) for c in self.columns)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SampleAnalysis":
        return cls(
            stage=data["stage"],
            sample_ratio=data["sample_ratio"],
            row_count=data["row_count"],
            column_count=data["column_count"],
            columns=[ColumnAnalysis.from_dict(c) for c in data["columns"]],
            quality_score=data["quality_score"],
            memory_bytes=data["memory_bytes"],
            analyzed_at=data.get("analyzed_at", ""),
            duration=data.get("duration", 0.0)
        )


@dataclass
class ValidationResult:
    """Outcome of checking a sample against its source."""
    is_valid: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass
class PreprocessingRule:
    """A column-scoped candidate transformation discovered from samples."""
    id: str
    rule_type: RuleType
    column_names: List[str]
    description: str
    pattern_type: PatternType
    requires_hitl: bool
    priority: int
    discovered_in_stage: int
    confidence: float
    affected_rows: int = 0
    total_rows: int = 0
    examples: List[str] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)
    approval_state: ApprovalState = ApprovalState.PENDING
    user_feedback: Optional[str] = None
    applied: bool = False
    stages_seen: List[int] = field(default_factory=list)

    @property
    def is_approved(self) -> bool:
        return self.approval_state == ApprovalState.APPROVED

    @property
    def is_resolved(self) -> bool:
        return self.approval_state != ApprovalState.PENDING

    @property
    def affected_ratio(self) -> float:
        return self.affected_rows / self.total_rows if self.total_rows else 0.0

    def approve(self, feedback: Optional[str] = None) -> None:
        self._check_unlocked()
        self.approval_state = ApprovalState.APPROVED
        if feedback is not None:
            self.user_feedback = feedback

    def reject(self, feedback: Optional[str] = None) -> None:
        self._check_unlocked()
        self.approval_state = ApprovalState.REJECTED
        if feedback is not None:
            self.user_feedback = feedback

    def _check_unlocked(self) -> None:
        if self.applied:
            raise RuleLockedError(f"Rule {self.id} has already been applied")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PreprocessingRule":
        data = dict(data)
        data["rule_type"] = RuleType(data["rule_type"])
        data["pattern_type"] = PatternType(data["pattern_type"])
        data["approval_state"] = ApprovalState(data.get("approval_state", "pending"))
        return cls(**data)


# ---------------------------------------------------------------------------
# Human-in-the-loop records
# ---------------------------------------------------------------------------

@dataclass
class HITLOption:
    key: str
    label: str
    description: str
    action: ActionType
    is_recommended: bool = False
    parameters: Dict[str, Any] = field(default_factory=dict)
    requires_custom_value: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "HITLOption":
        data = dict(data)
        data["action"] = ActionType(data["action"])
        return cls(**data)


@dataclass
class HITLQuestion:
    """A structured question asking a person to resolve one rule."""
    id: str
    rule_id: str
    question_type: QuestionType
    context: str
    prompt: str
    options: List[HITLOption]
    recommended_option: Optional[str] = None
    recommendation_reason: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def get_option(self, key: str) -> Optional[HITLOption]:
        for option in self.options:
            if option.key == key:
                return option
        return None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HITLQuestion":
        data = dict(data)
        data["question_type"] = QuestionType(data["question_type"])
        data["options"] = [HITLOption.from_dict(o) for o in data["options"]]
        return cls(**data)


@dataclass
class HITLAnswer:
    question_id: str
    selected_option: str
    custom_value: Optional[str] = None
    user_rationale: Optional[str] = None
    answered_at: str = field(default_factory=now_iso)
    time_to_decide: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "HITLAnswer":
        return cls(**data)


@dataclass(frozen=True)
class HITLDecisionLog:
    """Immutable audit record binding a question, its answer and the rule."""
    id: str
    session_id: str
    question: HITLQuestion
    answer: HITLAnswer
    approved_rule: PreprocessingRule
    user_id: str
    logged_at: str
    notes: Optional[str] = None

    @property
    def followed_recommendation(self) -> bool:
        return self.answer.selected_option == self.question.recommended_option

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HITLDecisionLog":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            question=HITLQuestion.from_dict(data["question"]),
            answer=HITLAnswer.from_dict(data["answer"]),
            approved_rule=PreprocessingRule.from_dict(data["approved_rule"]),
            user_id=data["user_id"],
            logged_at=data["logged_at"],
            notes=data.get("notes")
        )


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageResult:
    """What one stage sampled, found and took. Never modified after recording."""
    stage: WorkflowStage
    sample_size: int
    sample_ratio: float
    analysis: Optional[SampleAnalysis]
    rule_ids: List[str]
    duration: float
    notes: Optional[str] = None
    strategy: Optional[str] = None
    validation: Optional[ValidationResult] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "StageResult":
        analysis = data.get("analysis")
        validation = data.get("validation")
        return cls(
            stage=WorkflowStage(data["stage"]),
            sample_size=data["sample_size"],
            sample_ratio=data["sample_ratio"],
            analysis=SampleAnalysis.from_dict(analysis) if analysis else None,
            rule_ids=list(data.get("rule_ids", [])),
            duration=data["duration"],
            notes=data.get("notes"),
            strategy=data.get("strategy"),
            validation=ValidationResult(**validation) if validation else None
        )


@dataclass
class WorkflowState:
    """
    Everything needed to resume a session.

    The dataset itself is never stored; only its path.
    """
    session_id: str
    dataset_path: str
    config: IncrementalWorkflowConfig
    current_stage: WorkflowStage = WorkflowStage.NOT_STARTED
    total_records: int = 0
    completed_stages: Dict[int, StageResult] = field(default_factory=dict)
    discovered_rules: List[PreprocessingRule] = field(default_factory=list)
    confidence_score: float = 0.0
    has_converged: bool = False
    started_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    pending_questions: List[HITLQuestion] = field(default_factory=list)

    @property
    def approved_rules(self) -> List[PreprocessingRule]:
        return [r for r in self.discovered_rules if r.is_approved]

    @property
    def is_paused(self) -> bool:
        return bool(self.pending_questions)

    @property
    def total_duration(self) -> float:
        end = pd.Timestamp(self.completed_at) if self.completed_at else pd.Timestamp.now()
        return max(0.0, (end - pd.Timestamp(self.started_at)).total_seconds())

    def get_rule(self, rule_id: str) -> Optional[PreprocessingRule]:
        for rule in self.discovered_rules:
            if rule.id == rule_id:
                return rule
        return None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "dataset_path": self.dataset_path,
            "config": self.config.model_dump(mode="json"),
            "current_stage": int(self.current_stage),
            "total_records": self.total_records,
            "completed_stages": {
                str(int(stage)): result.to_dict()
                for stage, result in self.completed_stages.items()
            },
            "discovered_rules": [r.to_dict() for r in self.discovered_rules],
            "confidence_score": self.confidence_score,
            "has_converged": self.has_converged,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "pending_questions": [q.to_dict() for q in self.pending_questions]
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowState":
        return cls(
            session_id=data["session_id"],
            dataset_path=data["dataset_path"],
            config=IncrementalWorkflowConfig.model_validate(data["config"]),
            current_stage=WorkflowStage(data["current_stage"]),
            total_records=data["total_records"],
            completed_stages={
                int(stage): StageResult.from_dict(result)
                for stage, result in data.get("completed_stages", {}).items()
            },
            discovered_rules=[
                PreprocessingRule.from_dict(r) for r in data.get("discovered_rules", [])
            ],
            confidence_score=data.get("confidence_score", 0.0),
            has_converged=data.get("has_converged", False),
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            pending_questions=[
                HITLQuestion.from_dict(q) for q in data.get("pending_questions", [])
            ]
        )

    def snapshot(self) -> "WorkflowState":
        return copy.deepcopy(self)
