"""Pattern detectors that feed rule discovery."""

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Dict, List, Any, Optional, Callable

import numpy as np
import pandas as pd
from scipy import stats

from .cancellation import check_cancelled
from .models import PatternType, IssueSeverity
from .transforms import MISSING_TOKENS, BOOLEAN_TOKENS, DATE_FORMATS, NUMBER_STYLES, MOJIBAKE_PATTERN


@dataclass
class DetectedPattern:
    """A structural or quality pattern found in one column of a sample."""
    pattern_type: PatternType
    column: str
    description: str
    affected_rows: int
    total_rows: int
    severity: IssueSeverity
    confidence: float
    examples: List[str] = field(default_factory=list)
    suggested_fix: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def affected_ratio(self) -> float:
        return self.affected_rows / self.total_rows if self.total_rows else 0.0


def _is_text(series: pd.Series) -> bool:
    return series.dtype == object or pd.api.types.is_string_dtype(series.dtype)


def _text_values(series: pd.Series) -> pd.Series:
    """Non-null values as strings, keeping the original index."""
    values = series.dropna()
    return values[values.map(lambda v: isinstance(v, str))].astype(str)


def _examples(values: pd.Series, limit: int = 5) -> List[str]:
    return [repr(v) if isinstance(v, str) else str(v) for v in pd.unique(values)[:limit]]


def _severity_by_share(share: float, high: float, medium: float) -> IssueSeverity:
    if share >= high:
        return IssueSeverity.HIGH
    if share >= medium:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


def detect_missing_values(series: pd.Series) -> List[DetectedPattern]:
    """Nulls plus textual placeholders such as 'N/A' or '?'."""
    total = len(series)
    if total == 0:
        return []

    mask = series.isna()
    text = _text_values(series)
    placeholders = text[text.str.strip().str.upper().isin(MISSING_TOKENS)]
    mask = mask | series.index.isin(placeholders.index)

    count = int(mask.sum())
    if count == 0:
        return []

    share = count / total
    if share >= 0.5:
        severity = IssueSeverity.CRITICAL
    elif share >= 0.2:
        severity = IssueSeverity.HIGH
    elif share >= 0.05:
        severity = IssueSeverity.MEDIUM
    else:
        severity = IssueSeverity.LOW

    examples = ["<null>"] if series.isna().any() else []
    examples += _examples(placeholders, 4)

    return [DetectedPattern(
        pattern_type=PatternType.MISSING_VALUE,
        column=str(series.name),
        description=f"{count} missing values ({share:.1%})",
        affected_rows=count,
        total_rows=total,
        severity=severity,
        confidence=1.0,
        examples=examples,
        suggested_fix="Impute or drop missing values",
        parameters={"placeholder_count": int(len(placeholders))}
    )]


def detect_whitespace_issues(series: pd.Series) -> List[DetectedPattern]:
    """Leading/trailing blanks, repeated spaces and embedded tabs or newlines."""
    text = _text_values(series)
    if len(text) == 0:
        return []

    edges = text != text.str.strip()
    doubled = text.str.contains("  ", regex=False)
    control = text.str.contains(r"[\t\n\r]", regex=True)
    mask = edges | doubled | control

    count = int(mask.sum())
    if count == 0:
        return []

    share = count / len(series)
    return [DetectedPattern(
        pattern_type=PatternType.WHITESPACE_ISSUE,
        column=str(series.name),
        description=f"{count} values with irregular whitespace",
        affected_rows=count,
        total_rows=len(series),
        severity=IssueSeverity.MEDIUM if share >= 0.5 else IssueSeverity.LOW,
        confidence=1.0,
        examples=_examples(text[mask]),
        suggested_fix="Trim and collapse whitespace"
    )]


def classify_date_format(value: str) -> Optional[str]:
    for name, (pattern, _) in DATE_FORMATS.items():
        if re.match(pattern, value):
            return name
    return None


def classify_number_style(value: str) -> Optional[str]:
    for name, pattern in NUMBER_STYLES.items():
        if re.match(pattern, value):
            return name
    return None


def detect_format_variations(series: pd.Series) -> List[DetectedPattern]:
    """Mixed date layouts, number separators or boolean spellings in one column."""
    text = _text_values(series).str.strip()
    if len(text) == 0:
        return []

    column = str(series.name)
    patterns = []

    dates = text.map(classify_date_format)
    date_counts = dates.value_counts()
    if len(date_counts) > 1 and dates.notna().mean() >= 0.5:
        dominant = str(date_counts.index[0])
        affected = int((dates.notna() & (dates != dominant)).sum())
        patterns.append(DetectedPattern(
            pattern_type=PatternType.DATE_FORMAT_VARIATION,
            column=column,
            description=f"Dates mix {len(date_counts)} formats: {', '.join(map(str, date_counts.index))}",
            affected_rows=affected,
            total_rows=len(series),
            severity=IssueSeverity.MEDIUM,
            confidence=0.9,
            examples=_examples(text[dates.notna() & (dates != dominant)]),
            suggested_fix="Standardize dates to ISO-8601 (YYYY-MM-DD)",
            parameters={"formats": [str(f) for f in date_counts.index]}
        ))

    styles = text.map(classify_number_style)
    style_counts = styles.value_counts()
    non_plain = style_counts.drop("plain", errors="ignore")
    if len(non_plain) > 0 and styles.notna().mean() >= 0.8:
        affected = int(non_plain.sum())
        patterns.append(DetectedPattern(
            pattern_type=PatternType.NUMERIC_FORMAT_VARIATION,
            column=column,
            description=f"Numbers written with separators: {', '.join(map(str, style_counts.index))}",
            affected_rows=affected,
            total_rows=len(series),
            severity=IssueSeverity.MEDIUM,
            confidence=0.85,
            examples=_examples(text[styles.isin(non_plain.index)]),
            suggested_fix="Normalize separators and convert to numbers",
            parameters={"styles": [str(s) for s in style_counts.index]}
        ))

    lowered = text.str.lower()
    if lowered.isin(BOOLEAN_TOKENS).all():
        spellings = sorted(text.unique())
        if len(spellings) > 2:
            patterns.append(DetectedPattern(
                pattern_type=PatternType.BOOLEAN_FORMAT_VARIATION,
                column=column,
                description=f"Boolean values spelled {len(spellings)} ways",
                affected_rows=len(text),
                total_rows=len(series),
                severity=IssueSeverity.LOW,
                confidence=0.9,
                examples=spellings[:5],
                suggested_fix="Convert to a boolean column",
                parameters={"target_type": "boolean"}
            ))

    return patterns


def detect_type_inconsistency(series: pd.Series) -> List[DetectedPattern]:
    """Text columns that mix numbers and non-numeric values."""
    if not _is_text(series):
        return []

    text = _text_values(series).str.strip()
    text = text[~text.str.upper().isin(MISSING_TOKENS)]
    if len(text) == 0:
        return []
    if text.str.lower().isin(BOOLEAN_TOKENS).all():
        return []

    numeric = pd.to_numeric(text, errors="coerce").notna() | text.map(classify_number_style).notna()
    numeric_count = int(numeric.sum())
    other_count = len(text) - numeric_count
    minority = min(numeric_count, other_count)
    share = minority / len(text)

    if minority == 0 or share <= 0.05:
        return []

    majority = "numeric" if numeric_count >= other_count else "string"
    minority_values = text[~numeric] if majority == "numeric" else text[numeric]

    return [DetectedPattern(
        pattern_type=PatternType.TYPE_INCONSISTENCY,
        column=str(series.name),
        description=f"{minority} values ({share:.1%}) do not match the majority {majority} type",
        affected_rows=minority,
        total_rows=len(series),
        severity=IssueSeverity.HIGH if share >= 0.2 else IssueSeverity.MEDIUM,
        confidence=0.95,
        examples=_examples(minority_values),
        suggested_fix=f"Convert column to {majority}",
        parameters={"target_type": majority, "numeric_ratio": round(numeric_count / len(text), 4)}
    )]


def detect_outliers(series: pd.Series) -> List[DetectedPattern]:
    """Values beyond |z| > 3 or the 1.5 x IQR fences, when 1%-30% of the column."""
    if pd.api.types.is_bool_dtype(series) or not pd.api.types.is_numeric_dtype(series):
        return []

    data = series.dropna().astype(float)
    if len(data) < 4 or data.std() == 0:
        return []

    q1, q3 = data.quantile(0.25), data.quantile(0.75)
    iqr = q3 - q1
    iqr_mask = (data < q1 - 1.5 * iqr) | (data > q3 + 1.5 * iqr)
    z_mask = pd.Series(np.abs(stats.zscore(data)) > 3, index=data.index)
    mask = iqr_mask | z_mask

    count = int(mask.sum())
    share = count / len(data)
    if not 0.01 <= share <= 0.30:
        return []

    return [DetectedPattern(
        pattern_type=PatternType.OUTLIER_ANOMALY,
        column=str(series.name),
        description=f"{count} outliers ({share:.1%}) outside [{q1 - 1.5 * iqr:.4g}, {q3 + 1.5 * iqr:.4g}]",
        affected_rows=count,
        total_rows=len(series),
        severity=_severity_by_share(share, 0.2, 0.1),
        confidence=0.85,
        examples=[f"{v:g}" for v in data[mask].sort_values().head(5)],
        suggested_fix="Remove, cap or flag outliers",
        parameters={"lower_bound": float(q1 - 1.5 * iqr), "upper_bound": float(q3 + 1.5 * iqr)}
    )]


def string_similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, a, b).ratio()


def detect_category_variations(
    series: pd.Series,
    max_categories: int = 100,
    similarity_threshold: float = 0.85
) -> List[DetectedPattern]:
    """Categories that differ only by case or by a likely typo."""
    text = _text_values(series)
    if len(text) == 0:
        return []

    counts = text.value_counts()
    if len(counts) < 2 or len(counts) > max_categories:
        return []

    column = str(series.name)
    patterns = []

    keys = text.str.strip().str.lower()
    spellings: Dict[str, set] = {}
    for value, key in zip(text, keys):
        spellings.setdefault(key, set()).add(value)
    variant_groups = {k: sorted(v) for k, v in sorted(spellings.items()) if len(v) > 1}

    if variant_groups:
        affected = 0
        for group in variant_groups.values():
            group_counts = counts[group]
            affected += int(group_counts.sum() - group_counts.max())
        examples = [" / ".join(group) for group in list(variant_groups.values())[:5]]
        patterns.append(DetectedPattern(
            pattern_type=PatternType.CATEGORY_VARIATION,
            column=column,
            description=f"{len(variant_groups)} categories appear with different casing",
            affected_rows=affected,
            total_rows=len(series),
            severity=IssueSeverity.LOW,
            confidence=0.95,
            examples=examples,
            suggested_fix="Merge case variants into one category",
            parameters={"kind": "case"}
        ))

    key_counts = keys.value_counts()
    distinct = sorted(k for k in key_counts.index if len(k) >= 4)
    pairs = []
    for i, a in enumerate(distinct):
        for b in distinct[i + 1:]:
            if string_similarity(a, b) >= similarity_threshold:
                pairs.append((a, b))
    if pairs:
        affected = sum(int(min(key_counts[a], key_counts[b])) for a, b in pairs)
        patterns.append(DetectedPattern(
            pattern_type=PatternType.CATEGORY_VARIATION,
            column=column,
            description=f"{len(pairs)} pairs of near-identical categories",
            affected_rows=affected,
            total_rows=len(series),
            severity=IssueSeverity.MEDIUM,
            confidence=0.8,
            examples=[f"{a} ~ {b}" for a, b in pairs[:5]],
            suggested_fix="Merge similar categories into the most frequent spelling",
            parameters={"kind": "similar", "similarity_threshold": similarity_threshold}
        ))

    return patterns


def detect_encoding_issues(series: pd.Series) -> List[DetectedPattern]:
    """Replacement characters and UTF-8 text decoded with the wrong codec."""
    text = _text_values(series)
    if len(text) == 0:
        return []

    mask = text.str.contains("\ufffd", regex=False) | text.str.contains(MOJIBAKE_PATTERN, regex=True)
    count = int(mask.sum())
    if count == 0:
        return []

    return [DetectedPattern(
        pattern_type=PatternType.ENCODING_ISSUE,
        column=str(series.name),
        description=f"{count} values with encoding damage",
        affected_rows=count,
        total_rows=len(series),
        severity=IssueSeverity.MEDIUM,
        confidence=0.85,
        examples=_examples(text[mask]),
        suggested_fix="Repair mis-decoded text and drop replacement characters"
    )]


def detect_business_rule_violations(series: pd.Series) -> List[DetectedPattern]:
    """A few negative values in an otherwise non-negative numeric column."""
    if pd.api.types.is_bool_dtype(series) or not pd.api.types.is_numeric_dtype(series):
        return []

    data = series.dropna()
    if len(data) < 20:
        return []

    negative = data < 0
    count = int(negative.sum())
    share = count / len(data)
    if count == 0 or share > 0.05:
        return []

    return [DetectedPattern(
        pattern_type=PatternType.BUSINESS_RULE,
        column=str(series.name),
        description=f"{count} negative values in a column that is otherwise non-negative",
        affected_rows=count,
        total_rows=len(series),
        severity=IssueSeverity.MEDIUM,
        confidence=0.75,
        examples=[f"{v:g}" for v in data[negative].head(5)],
        suggested_fix="Confirm whether negative values are valid",
        parameters={"constraint": ">= 0"}
    )]


DETECTORS: List[Callable[[pd.Series], List[DetectedPattern]]] = [
    detect_missing_values,
    detect_whitespace_issues,
    detect_format_variations,
    detect_type_inconsistency,
    detect_outliers,
    detect_category_variations,
    detect_encoding_issues,
    detect_business_rule_violations,
]


def detect_patterns(df: pd.DataFrame, cancel=None) -> List[DetectedPattern]:
    """
    Run every detector over every column.

    Args:
        df: Sample to inspect
        cancel: Optional CancellationToken, checked before each column

    Returns:
        Patterns in column order
    """
    patterns = []
    for i in range(df.shape[1]):
        series = df.iloc[:, i]
        check_cancelled(cancel, f"pattern detection on column {series.name}")
        for detector in DETECTORS:
            patterns.extend(detector(series))
    return patterns
