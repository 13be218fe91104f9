"""Per-column statistics, quality issues and convergence between stages."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from .cancellation import check_cancelled
from .config import AnalysisConfiguration
from .models import (
    ColumnAnalysis, SampleAnalysis, NumericStats, CategoricalStats,
    DataQualityIssue, DataType, IssueSeverity, IssueType
)

logger = logging.getLogger(__name__)


def infer_data_type(series: pd.Series) -> DataType:
    """Map the column's storage type onto a DataType."""
    if pd.api.types.is_bool_dtype(series):
        return DataType.BOOLEAN
    if pd.api.types.is_integer_dtype(series):
        return DataType.INTEGER
    if pd.api.types.is_float_dtype(series):
        return DataType.FLOATING
    if pd.api.types.is_datetime64_any_dtype(series):
        return DataType.DATETIME
    if (
        series.dtype == object
        or isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_string_dtype(series.dtype)
    ):
        values = series.dropna()
        if len(values) > 0 and all(isinstance(v, Decimal) for v in values):
            return DataType.DECIMAL
        if len(values) > 0 and all(isinstance(v, (bool, np.bool_)) for v in values):
            return DataType.BOOLEAN
        return DataType.STRING
    return DataType.UNKNOWN


def _finite(value: float) -> float:
    value = float(value)
    return value if np.isfinite(value) else 0.0


def compute_numeric_stats(series: pd.Series) -> Optional[NumericStats]:
    """
    Descriptive statistics over the non-null values.

    Quartiles interpolate linearly at p * (n - 1); outliers use the 1.5 x IQR
    fences.

    Returns:
        NumericStats, or None when the column has no values
    """
    data = pd.to_numeric(series.dropna(), errors="coerce").dropna().astype(float)
    n = len(data)
    if n == 0:
        return None

    q1 = float(data.quantile(0.25))
    q3 = float(data.quantile(0.75))
    iqr = q3 - q1
    outliers = (data < q1 - 1.5 * iqr) | (data > q3 + 1.5 * iqr)

    std = float(data.std(ddof=1)) if n > 1 else 0.0
    values = data.to_numpy()
    skewness = stats.skew(values, bias=False) if n >= 4 and std > 0 else 0.0
    kurtosis = stats.kurtosis(values, bias=False) if n >= 4 and std > 0 else 0.0

    return NumericStats(
        count=n,
        mean=float(data.mean()),
        median=float(data.median()),
        std=std,
        variance=std ** 2,
        min=float(data.min()),
        max=float(data.max()),
        q1=q1,
        q3=q3,
        iqr=iqr,
        outlier_count=int(outliers.sum()),
        sum=float(data.sum()),
        skewness=_finite(skewness),
        kurtosis=_finite(kurtosis)
    )


def compute_categorical_stats(
    series: pd.Series,
    high_cardinality: int = 50,
    max_top_values: int = 100
) -> Optional[CategoricalStats]:
    """Frequency table, entropy and cardinality flags of the non-null values."""
    values = series.dropna().astype(str)
    n = len(values)
    if n == 0:
        return None

    counts = values.value_counts()
    unique = len(counts)
    ratio = unique / n

    return CategoricalStats(
        count=n,
        unique_count=unique,
        most_frequent=str(counts.index[0]),
        most_frequent_count=int(counts.iloc[0]),
        value_counts={str(k): int(v) for k, v in counts.head(max_top_values).items()},
        cardinality_ratio=ratio,
        entropy=_finite(stats.entropy(counts.to_numpy(), base=2)),
        is_high_cardinality=unique > high_cardinality,
        is_likely_identifier=ratio > 0.95 and n >= 20,
        is_low_cardinality=unique < 20 and ratio < 0.1
    )


def detect_quality_issues(
    column: ColumnAnalysis,
    config: AnalysisConfiguration
) -> List[DataQualityIssue]:
    issues = []
    pct = column.missing_percentage

    if pct > config.high_missing_pct:
        issues.append(DataQualityIssue(
            issue_type=IssueType.HIGH_MISSING_VALUES,
            severity=IssueSeverity.HIGH,
            description=f"{pct:.1f}% of values are missing",
            affected_count=column.null_count,
            affected_percentage=pct
        ))
    elif pct > config.moderate_missing_pct:
        issues.append(DataQualityIssue(
            issue_type=IssueType.MODERATE_MISSING_VALUES,
            severity=IssueSeverity.MEDIUM,
            description=f"{pct:.1f}% of values are missing",
            affected_count=column.null_count,
            affected_percentage=pct
        ))

    numeric = column.numeric_stats
    if numeric is not None and numeric.count > 0:
        outlier_pct = numeric.outlier_count / numeric.count * 100
        if outlier_pct > config.high_outlier_pct:
            issues.append(DataQualityIssue(
                issue_type=IssueType.HIGH_OUTLIERS,
                severity=IssueSeverity.MEDIUM,
                description=f"{outlier_pct:.1f}% of values fall outside 1.5 x IQR",
                affected_count=numeric.outlier_count,
                affected_percentage=outlier_pct
            ))

    categorical = column.categorical_stats
    if categorical is not None and categorical.is_high_cardinality:
        issues.append(DataQualityIssue(
            issue_type=IssueType.HIGH_CARDINALITY,
            severity=IssueSeverity.LOW,
            description=f"{categorical.unique_count} distinct values",
            affected_count=categorical.unique_count,
            affected_percentage=categorical.cardinality_ratio * 100
        ))

    return issues


def recommend_actions(column: ColumnAnalysis, config: AnalysisConfiguration) -> List[str]:
    recommendations = []
    pct = column.missing_percentage

    if pct > config.high_missing_pct:
        recommendations.append(f"Drop column: {pct:.1f}% of values are missing")
    elif pct > 0:
        if column.is_numeric:
            recommendations.append("Impute missing values with the median")
        else:
            recommendations.append("Impute missing values with the mode")

    if any(i.issue_type == IssueType.HIGH_OUTLIERS for i in column.issues):
        recommendations.append("Review outliers before modeling")

    categorical = column.categorical_stats
    if categorical is not None and column.data_type == DataType.STRING:
        if categorical.is_likely_identifier:
            recommendations.append("Drop column: values are nearly unique (likely an identifier)")
        elif categorical.is_high_cardinality:
            recommendations.append("Use target encoding (high cardinality)")
        elif categorical.is_low_cardinality:
            recommendations.append("Use one-hot encoding (low cardinality)")

    if (
        column.data_type == DataType.INTEGER
        and column.non_null_count >= 20
        and column.unique_count / column.non_null_count > 0.95
    ):
        recommendations.append("Drop column: values are nearly unique (likely an identifier)")

    return recommendations


def analyze_column(
    series: pd.Series,
    index: int,
    config: Optional[AnalysisConfiguration] = None
) -> ColumnAnalysis:
    """
    Analyze a single column.

    Args:
        series: Column values
        index: Position of the column in the table
        config: Analyzer thresholds

    Returns:
        ColumnAnalysis with statistics, issues and recommendations
    """
    config = config or AnalysisConfiguration()
    data_type = infer_data_type(series)
    total = len(series)
    null_count = int(series.isna().sum())

    column = ColumnAnalysis(
        column_name=str(series.name),
        column_index=index,
        data_type=data_type,
        non_null_count=total - null_count,
        null_count=null_count,
        missing_percentage=(null_count / total * 100) if total > 0 else 0.0,
        unique_count=int(series.nunique())
    )

    if data_type.is_numeric:
        column.numeric_stats = compute_numeric_stats(series)
    elif data_type in (DataType.STRING, DataType.BOOLEAN):
        column.categorical_stats = compute_categorical_stats(
            series, config.high_cardinality, config.max_top_values
        )

    column.issues = detect_quality_issues(column, config)
    column.recommendations = recommend_actions(column, config)
    return column


def calculate_quality_score(columns: List[ColumnAnalysis]) -> float:
    """
    Average per-column quality in [0, 1].

    Each column starts at 1.0, loses half its missing fraction and 0.2 per
    high-or-worse issue (at most 0.4), and is floored at zero.
    """
    if not columns:
        return 0.0

    scores = []
    for column in columns:
        score = 1.0 - column.missing_percentage / 100 * 0.5
        severe = sum(1 for i in column.issues if i.severity.rank >= IssueSeverity.HIGH.rank)
        score -= min(0.4, 0.2 * severe)
        scores.append(max(0.0, score))

    return float(np.mean(scores))


def measure_change(previous: SampleAnalysis, current: SampleAnalysis) -> Optional[float]:
    """
    Average relative change of column statistics between two analyses.

    Numeric columns compare mean and standard deviation, categorical columns
    compare entropy only. Columns are matched by name.

    Returns:
        The average difference, or None when nothing was comparable
    """
    differences = []

    for prev in previous.columns:
        cur = current.get_column(prev.column_name)
        if cur is None:
            continue

        if prev.numeric_stats is not None and cur.numeric_stats is not None:
            p, c = prev.numeric_stats, cur.numeric_stats
            differences.append(abs(c.mean - p.mean) / max(abs(p.mean), 1.0))
            differences.append(abs(c.std - p.std) / max(p.std, 1.0))

        elif prev.categorical_stats is not None and cur.categorical_stats is not None:
            p, c = prev.categorical_stats, cur.categorical_stats
            differences.append(abs(c.entropy - p.entropy) / max(p.entropy, 1.0))

    if not differences:
        return None
    return float(np.mean(differences))


def has_converged(
    previous: SampleAnalysis,
    current: SampleAnalysis,
    threshold: float = 0.01
) -> bool:
    """True when the average relative change is below ``threshold``."""
    change = measure_change(previous, current)
    if change is None:
        same_columns = (
            [c.column_name for c in previous.columns] == [c.column_name for c in current.columns]
        )
        return same_columns
    return change < threshold


class SampleAnalyzer:
    """Analyzes the sample drawn at each stage."""

    def __init__(self, config: Optional[AnalysisConfiguration] = None):
        self.config = config or AnalysisConfiguration()

    def analyze(
        self,
        df: pd.DataFrame,
        stage: int,
        sample_ratio: float,
        cancel=None
    ) -> SampleAnalysis:
        """
        Analyze every column of a sample.

        Args:
            df: The sample
            stage: Stage that drew it
            sample_ratio: Ratio it was drawn at
            cancel: Optional CancellationToken, checked before each column

        Returns:
            SampleAnalysis for the stage

        Raises:
            WorkflowCancelledError: If cancellation was requested
        """
        start = time.perf_counter()
        workers = self.config.max_workers

        if workers > 1 and df.shape[1] > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = []
                for i in range(df.shape[1]):
                    check_cancelled(cancel, f"analysis of column {df.columns[i]}")
                    futures.append(pool.submit(analyze_column, df.iloc[:, i], i, self.config))
                columns = [f.result() for f in futures]
        else:
            columns = []
            for i in range(df.shape[1]):
                check_cancelled(cancel, f"analysis of column {df.columns[i]}")
                columns.append(analyze_column(df.iloc[:, i], i, self.config))

        analysis = SampleAnalysis(
            stage=stage,
            sample_ratio=sample_ratio,
            row_count=len(df),
            column_count=df.shape[1],
            columns=columns,
            quality_score=calculate_quality_score(columns),
            memory_bytes=int(df.memory_usage(deep=True).sum()),
            duration=time.perf_counter() - start
        )

        logger.info(
            "Stage %d analysis: %d rows, %d columns, %d issues, quality %.3f",
            stage, analysis.row_count, analysis.column_count,
            analysis.issue_count, analysis.quality_score
        )
        return analysis

    def has_converged(
        self,
        previous: SampleAnalysis,
        current: SampleAnalysis,
        threshold: float = 0.01
    ) -> bool:
        return has_converged(previous, current, threshold)
