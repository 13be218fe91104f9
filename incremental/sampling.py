"""Stage sampling: random, stratified and adaptive strategies."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple, Optional, Any, Callable

import numpy as np
import pandas as pd

from .config import SamplingConfiguration, SamplingStrategy, AdaptiveThresholds
from .models import ValidationResult

logger = logging.getLogger(__name__)

NULL_STRATUM = "NULL"


def check_ratio(ratio: float) -> None:
    """Raise ValueError unless 0 < ratio <= 1."""
    if ratio is None or not 0 < ratio <= 1:
        raise ValueError(f"Sample ratio must be in (0, 1], got {ratio}")


def compute_sample_size(row_count: int, ratio: float) -> int:
    """Rows drawn for ``ratio``: at least one, never more than the source."""
    if row_count == 0:
        return 0
    return min(row_count, max(1, int(round(row_count * ratio))))


def effective_ratio(row_count: int, ratio: float, min_sample_size: int = 1) -> float:
    """
    Raise ``ratio`` so the sample holds at least ``min_sample_size`` rows.

    Args:
        row_count: Rows in the source table
        ratio: Configured ratio
        min_sample_size: Smallest acceptable sample

    Returns:
        The ratio to sample at, capped at 1.0
    """
    check_ratio(ratio)
    if row_count == 0:
        return ratio
    if row_count * ratio < min_sample_size:
        return min(1.0, min_sample_size / row_count)
    return ratio


def stratum_labels(series: pd.Series) -> pd.Series:
    """Label of every row as a string; missing labels share one stratum."""
    return series.astype(object).where(series.notna(), NULL_STRATUM).astype(str)


def _partial_shuffle(n: int, k: int, rng: np.random.Generator) -> np.ndarray:
    # Fisher-Yates limited to the first k positions
    positions = np.arange(n)
    for i in range(k):
        j = int(rng.integers(i, n))
        positions[i], positions[j] = positions[j], positions[i]
    return positions[:k]


def _reservoir(members: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    reservoir = members[:k].copy()
    for i in range(k, len(members)):
        j = int(rng.integers(0, i + 1))
        if j < k:
            reservoir[j] = members[i]
    return reservoir


def random_sample(
    df: pd.DataFrame,
    ratio: float,
    seed: int,
    label_column: Optional[str] = None
) -> pd.DataFrame:
    """
    Uniform sample without replacement.

    Args:
        df: Source table
        ratio: Fraction of rows to keep, in (0, 1]
        seed: Random seed; equal seeds select equal rows
        label_column: Ignored

    Returns:
        Sampled rows in their original order
    """
    check_ratio(ratio)
    if df.empty or ratio >= 1.0:
        return df.copy()

    rng = np.random.default_rng(seed)
    k = compute_sample_size(len(df), ratio)
    positions = np.sort(_partial_shuffle(len(df), k, rng))
    return df.iloc[positions].copy()


def stratified_sample(
    df: pd.DataFrame,
    ratio: float,
    seed: int,
    label_column: Optional[str] = None
) -> pd.DataFrame:
    """
    Sample each label class in proportion to its share of the source.

    Every class keeps at least one row, so with many small classes the
    sample can be larger than ``round(len(df) * ratio)``.

    Args:
        df: Source table
        ratio: Fraction of rows to keep, in (0, 1]
        seed: Random seed
        label_column: Column whose values define the strata

    Returns:
        Sampled rows in their original order

    Raises:
        ValueError: If no label column is given or it is not in the table
    """
    check_ratio(ratio)
    if not label_column:
        raise ValueError("Stratified sampling requires a label column")
    if label_column not in df.columns:
        raise ValueError(f"Label column '{label_column}' not found")
    if df.empty or ratio >= 1.0:
        return df.copy()

    rng = np.random.default_rng(seed)
    labels = stratum_labels(df[label_column]).to_numpy()
    n = len(df)
    total = compute_sample_size(n, ratio)

    selected: List[np.ndarray] = []
    for label in sorted(set(labels)):
        members = np.flatnonzero(labels == label)
        target = min(len(members), max(1, int(round(total * len(members) / n))))
        selected.append(_reservoir(members, target, rng))

    positions = np.sort(np.concatenate(selected))
    return df.iloc[positions].copy()


def choose_adaptive_strategy(
    df: pd.DataFrame,
    label_column: Optional[str],
    thresholds: AdaptiveThresholds
) -> Tuple[SamplingStrategy, str]:
    """
    Pick stratified sampling when the label column supports it.

    Returns:
        Tuple of (strategy, human-readable reason)
    """
    if not label_column or label_column not in df.columns:
        return SamplingStrategy.RANDOM, "No label column available"
    if df.empty:
        return SamplingStrategy.RANDOM, "Empty dataset"

    unique = int(df[label_column].nunique(dropna=False))
    cardinality_ratio = unique / len(df)

    if unique < thresholds.min_classes:
        return SamplingStrategy.RANDOM, f"Label has only {unique} class(es)"
    if unique > thresholds.max_classes:
        return SamplingStrategy.RANDOM, f"Label has {unique} classes (> {thresholds.max_classes})"
    if cardinality_ratio >= thresholds.max_cardinality_ratio:
        return SamplingStrategy.RANDOM, f"Label cardinality ratio {cardinality_ratio:.2f} too high"
    if len(df) // unique < thresholds.min_samples_per_class:
        return SamplingStrategy.RANDOM, f"Fewer than {thresholds.min_samples_per_class} rows per class"

    return SamplingStrategy.STRATIFIED, f"Label '{label_column}' has {unique} well-populated classes"


STRATEGY_FUNCTIONS: Dict[SamplingStrategy, Callable[..., pd.DataFrame]] = {
    SamplingStrategy.RANDOM: random_sample,
    SamplingStrategy.STRATIFIED: stratified_sample,
}


def class_proportions(series: pd.Series) -> Dict[str, float]:
    if len(series) == 0:
        return {}
    return stratum_labels(series).value_counts(normalize=True).to_dict()


def validate_sample(
    source: pd.DataFrame,
    sample: pd.DataFrame,
    tolerance: float = 0.02,
    label_column: Optional[str] = None
) -> ValidationResult:
    """
    Check a sample against its source. Never raises.

    Args:
        source: Table that was sampled
        sample: The sample
        tolerance: Max allowed |sample share - source share| per class
        label_column: When given, class proportions are compared

    Returns:
        ValidationResult describing the check
    """
    details: Dict[str, Any] = {
        "source_rows": len(source),
        "sample_rows": len(sample),
    }

    if len(sample) > len(source):
        return ValidationResult(False, "Sample is larger than its source", details)
    if len(source) > 0 and len(sample) == 0:
        return ValidationResult(False, "Sample is empty", details)

    if label_column and label_column in source.columns and len(sample) > 0:
        source_props = class_proportions(source[label_column])
        sample_props = class_proportions(sample[label_column])
        differences = {
            label: round(abs(sample_props.get(label, 0.0) - share), 6)
            for label, share in source_props.items()
        }
        max_difference = max(differences.values()) if differences else 0.0
        details["class_differences"] = differences
        details["max_proportion_difference"] = max_difference
        details["tolerance"] = tolerance

        if max_difference > tolerance:
            return ValidationResult(
                False,
                f"Class proportions drift by {max_difference:.4f} (tolerance {tolerance})",
                details
            )

    return ValidationResult(True, "Sample is valid", details)


@dataclass
class SamplingOutcome:
    strategy: SamplingStrategy
    requested_ratio: float
    effective_ratio: float
    source_rows: int
    sample_rows: int
    reason: str
    validation: ValidationResult


class SamplingEngine:
    """
    Selects a sampling strategy, runs it and validates the result.

    Validation failures are logged and reported on the outcome; only invalid
    arguments raise.
    """

    def __init__(
        self,
        config: Optional[SamplingConfiguration] = None,
        label_column: Optional[str] = None,
        random_seed: int = 42,
        min_sample_size: int = 1
    ):
        self.config = config or SamplingConfiguration()
        self.label_column = label_column
        self.random_seed = random_seed
        self.min_sample_size = min_sample_size

    def resolve_strategy(self, df: pd.DataFrame) -> Tuple[SamplingStrategy, str]:
        """Concrete strategy for ``df`` and why it was chosen."""
        strategy = self.config.strategy

        if strategy == SamplingStrategy.RANDOM:
            return strategy, "Random sampling forced by configuration"
        if strategy == SamplingStrategy.STRATIFIED:
            return strategy, "Stratified sampling forced by configuration"
        if strategy == SamplingStrategy.AUTO and not self.label_column:
            return SamplingStrategy.RANDOM, "No label column configured"

        return choose_adaptive_strategy(df, self.label_column, self.config.adaptive)

    def sample(
        self,
        df: pd.DataFrame,
        ratio: float,
        seed: Optional[int] = None
    ) -> Tuple[pd.DataFrame, SamplingOutcome]:
        """
        Draw a sample of ``df``.

        Args:
            df: Source table
            ratio: Requested ratio, raised to honour the minimum sample size
            seed: Overrides the engine seed

        Returns:
            Tuple of (sample, outcome)

        Raises:
            ValueError: If ratio is outside (0, 1] or stratification is
                forced without a usable label column
        """
        check_ratio(ratio)
        ratio_used = effective_ratio(len(df), ratio, self.min_sample_size)
        if ratio_used != ratio:
            logger.info(
                "Raised sample ratio %.4f to %.4f to reach %d rows",
                ratio, ratio_used, self.min_sample_size
            )

        strategy, reason = self.resolve_strategy(df)
        sampler = STRATEGY_FUNCTIONS[strategy]
        sample = sampler(
            df,
            ratio_used,
            self.random_seed if seed is None else seed,
            label_column=self.label_column
        )

        validation = self.validate(df, sample, strategy=strategy)
        logger.info(
            "Sampled %d of %d rows with %s strategy (%s)",
            len(sample), len(df), strategy.value, reason
        )

        return sample, SamplingOutcome(
            strategy=strategy,
            requested_ratio=ratio,
            effective_ratio=ratio_used,
            source_rows=len(df),
            sample_rows=len(sample),
            reason=reason,
            validation=validation
        )

    def validate(
        self,
        source: pd.DataFrame,
        sample: pd.DataFrame,
        tolerance: Optional[float] = None,
        strategy: SamplingStrategy = SamplingStrategy.STRATIFIED
    ) -> ValidationResult:
        """Validate a sample; class proportions are checked for stratified samples only."""
        label = self.label_column if strategy == SamplingStrategy.STRATIFIED else None
        result = validate_sample(
            source,
            sample,
            self.config.distribution_tolerance if tolerance is None else tolerance,
            label
        )
        if not result.is_valid:
            logger.warning("Sample validation failed: %s", result.message)
        return result
