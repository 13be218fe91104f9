"""
Workflow configuration.

Centralized configuration using Pydantic Settings. Every field can be
overridden from the environment with the ``INCREMENTAL_`` prefix, nested
fields with a double underscore (``INCREMENTAL_SAMPLING__STRATEGY=random``).
"""

from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SamplingStrategy(str, Enum):
    AUTO = "auto"
    RANDOM = "random"
    STRATIFIED = "stratified"
    ADAPTIVE = "adaptive"


class AdaptiveThresholds(BaseModel):
    """Heuristics the adaptive strategy uses to choose stratification."""

    min_classes: int = Field(default=2, ge=1, description="Fewest distinct labels worth stratifying")
    max_classes: int = Field(default=100, ge=1, description="Most distinct labels worth stratifying")
    max_cardinality_ratio: float = Field(
        default=0.5, gt=0, le=1, description="Upper bound (exclusive) on unique labels / rows"
    )
    min_samples_per_class: int = Field(
        default=5, ge=1, description="Minimum average rows per label"
    )


class SamplingConfiguration(BaseModel):
    """Sampling engine configuration."""

    strategy: SamplingStrategy = Field(
        default=SamplingStrategy.AUTO, description="Strategy to force, or auto"
    )
    distribution_tolerance: float = Field(
        default=0.02, ge=0, le=1, description="Max per-class proportion drift for stratified samples"
    )
    adaptive: AdaptiveThresholds = Field(default_factory=AdaptiveThresholds)


class AnalysisConfiguration(BaseModel):
    """Sample analyzer thresholds."""

    max_workers: int = Field(default=1, ge=1, description="Threads used for per-column analysis")
    high_missing_pct: float = Field(default=50.0, description="Missing % flagged as high")
    moderate_missing_pct: float = Field(default=20.0, description="Missing % flagged as moderate")
    high_outlier_pct: float = Field(default=5.0, description="Outlier % flagged as high")
    high_cardinality: int = Field(default=50, description="Unique values above which a column is high-cardinality")
    max_top_values: int = Field(default=100, description="Entries kept in value-count tables")


class IncrementalWorkflowConfig(BaseSettings):
    """Configuration for one incremental preprocessing session."""

    model_config = SettingsConfigDict(env_prefix="INCREMENTAL_", env_nested_delimiter="__")

    stage1_ratio: float = Field(default=0.001, description="Sample ratio for initial exploration")
    stage2_ratio: float = Field(default=0.005, description="Sample ratio for pattern expansion")
    stage3_ratio: float = Field(default=0.015, description="Sample ratio for the HITL decision stage")
    stage4_ratio: float = Field(default=0.025, description="Sample ratio for the confidence checkpoint")
    min_sample_size: int = Field(default=100, ge=1, description="Smallest sample any stage may draw")

    min_confidence_threshold: float = Field(
        default=0.98, ge=0, le=1, description="Confidence needed to skip ahead or auto-approve"
    )
    convergence_threshold: float = Field(
        default=0.01, gt=0, description="Average relative change below which stages have converged"
    )
    max_error_rate: float = Field(
        default=0.01, ge=0, le=1, description="Tolerated share of failed rules during bulk processing"
    )

    skip_hitl: bool = Field(default=False, description="Resolve HITL rules with their recommended option")
    enable_auto_approval: bool = Field(
        default=False, description="Approve HITL rules whose confidence meets the threshold"
    )

    output_directory: str = Field(default="./cleaned", description="Where deliverables are written")
    generate_scripts: bool = Field(default=True, description="Write preprocessing_script.py")
    generate_report: bool = Field(default=True, description="Write report.md")

    enable_checkpoints: bool = Field(default=True, description="Persist state after each stage")
    checkpoint_directory: str = Field(default="./checkpoints", description="Checkpoint store location")
    continue_on_rule_failure: bool = Field(
        default=True, description="Keep applying rules after one fails"
    )

    label_column: Optional[str] = Field(default=None, description="Label column used for stratification")
    random_seed: int = Field(default=42, description="Seed for every sampling step")

    sampling: SamplingConfiguration = Field(default_factory=SamplingConfiguration)
    analysis: AnalysisConfiguration = Field(default_factory=AnalysisConfiguration)

    @field_validator("stage1_ratio", "stage2_ratio", "stage3_ratio", "stage4_ratio")
    @classmethod
    def _check_ratio(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError(f"Sample ratio must be in (0, 1], got {value}")
        return value

    @model_validator(mode="after")
    def _check_monotonic(self) -> "IncrementalWorkflowConfig":
        ratios = self.stage_ratios
        for earlier, later in zip(ratios, ratios[1:]):
            if later < earlier:
                raise ValueError(f"Stage ratios must be non-decreasing, got {ratios}")
        return self

    @property
    def stage_ratios(self) -> List[float]:
        return [self.stage1_ratio, self.stage2_ratio, self.stage3_ratio, self.stage4_ratio]

    def stage_ratio(self, stage: int) -> float:
        """Configured ratio for a stage; bulk processing always uses the full dataset."""
        if stage >= 5:
            return 1.0
        if stage < 1:
            raise ValueError(f"Stage {stage} does not sample")
        return self.stage_ratios[stage - 1]
