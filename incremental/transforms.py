"""
Data transformations behind every preprocessing rule type.

Each transformation takes ``(df, columns, params)`` and returns
``(transformed_df, rows_affected)`` without modifying its input. The module
only depends on pandas, numpy and the standard library so that generated
preprocessing scripts can embed it unchanged.
"""

import re
from datetime import datetime
from difflib import SequenceMatcher
from typing import Dict, List, Tuple, Any, Optional, Callable

import numpy as np
import pandas as pd


MISSING_TOKENS = {"", "NULL", "NA", "N/A", "NAN", "NONE", "-", "?"}

BOOLEAN_TOKENS = {"true", "false", "yes", "no", "y", "n", "1", "0", "t", "f"}
TRUE_TOKENS = {"true", "yes", "y", "1", "t"}

# name -> (pattern, strptime formats tried in order)
DATE_FORMATS = {
    "iso": (r"^\d{4}-\d{2}-\d{2}$", ["%Y-%m-%d"]),
    "us": (r"^\d{1,2}/\d{1,2}/(\d{2}|\d{4})$", ["%m/%d/%Y", "%m/%d/%y"]),
    "eu": (r"^\d{1,2}\.\d{1,2}\.(\d{2}|\d{4})$", ["%d.%m.%Y", "%d.%m.%y"]),
}

# Checked in order; "1,234" is read as a thousands separator, not a decimal comma
NUMBER_STYLES = {
    "plain": r"^-?\d+(\.\d+)?$",
    "thousands_comma": r"^-?\d{1,3}(,\d{3})+(\.\d+)?$",
    "decimal_comma": r"^-?\d+,\d+$",
    "thousands_dot": r"^-?\d{1,3}(\.\d{3})+(,\d+)?$",
}

MOJIBAKE_PATTERN = r"Ã[\u0080-\u00bf]|â€|Â[\u00a0-\u00bf]"


# ---------------------------------------------------------------------------
# Reading and writing tables
# ---------------------------------------------------------------------------

def detect_delimiter(sample: str) -> str:
    """Detect CSV delimiter from sample text."""
    delimiters = [",", ";", "\t", "|"]
    counts = {d: sample.count(d) for d in delimiters}
    return max(counts, key=counts.get)


FALLBACK_ENCODINGS = ["latin-1", "cp1252", "iso-8859-1"]


def read_table(path: str, encoding: str = "utf-8") -> pd.DataFrame:
    """
    Load a delimited text file, sniffing the delimiter from its head.

    Files that do not decode with ``encoding`` are retried with common
    single-byte encodings. The encoding used is kept in ``df.attrs["encoding"]``.

    Raises:
        ValueError: If no candidate encoding can decode the file
    """
    candidates = [encoding] + [e for e in FALLBACK_ENCODINGS if e != encoding]
    for candidate in candidates:
        try:
            with open(path, "r", encoding=candidate) as handle:
                sample = handle.read(4096)
            df = pd.read_csv(path, sep=detect_delimiter(sample), encoding=candidate)
        except UnicodeDecodeError:
            continue
        df.attrs["encoding"] = candidate
        return df
    raise ValueError(f"Could not determine the encoding of {path}")


def write_table(df: pd.DataFrame, path: str) -> None:
    df.to_csv(path, index=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _changed(before: pd.Series, after: pd.Series) -> int:
    both_null = before.isna() & after.isna()
    return int(((before != after) & ~both_null).sum())


def normalize_missing(series: pd.Series) -> pd.Series:
    """Replace textual placeholders such as 'N/A' with NaN."""
    def is_placeholder(value):
        return _is_str(value) and value.strip().upper() in MISSING_TOKENS

    mask = series.map(is_placeholder).astype(bool)
    if not mask.any():
        return series
    series = series.copy()
    series[mask] = np.nan
    return series


def outlier_mask(data: pd.Series, multiplier: float = 1.5, z_threshold: float = 3.0) -> pd.Series:
    """IQR-fence or z-score outliers of a numeric series (NaN is never an outlier)."""
    values = data.dropna().astype(float)
    mask = pd.Series(False, index=data.index)
    if len(values) < 4:
        return mask

    q1, q3 = values.quantile(0.25), values.quantile(0.75)
    iqr = q3 - q1
    hits = (values < q1 - multiplier * iqr) | (values > q3 + multiplier * iqr)

    std = values.std(ddof=0)
    if std > 0:
        hits = hits | ((values - values.mean()).abs() / std > z_threshold)

    mask[hits.index] = hits
    return mask


def parse_date(value: str) -> Optional[datetime]:
    text = value.strip()
    for pattern, formats in DATE_FORMATS.values():
        if re.match(pattern, text):
            for fmt in formats:
                try:
                    return datetime.strptime(text, fmt)
                except ValueError:
                    continue
    return None


def parse_number(value: Any) -> Optional[float]:
    """Parse a number written in any of NUMBER_STYLES; None if it is not one."""
    if isinstance(value, (int, float, np.number)) and not isinstance(value, bool):
        return None if pd.isna(value) else float(value)
    if not _is_str(value):
        return None

    text = value.strip()
    for style, pattern in NUMBER_STYLES.items():
        if re.match(pattern, text):
            if style == "thousands_comma":
                text = text.replace(",", "")
            elif style == "decimal_comma":
                text = text.replace(",", ".")
            elif style == "thousands_dot":
                text = text.replace(".", "").replace(",", ".")
            return float(text)
    return None


def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    token = str(value).strip().lower()
    if token not in BOOLEAN_TOKENS:
        return None
    return token in TRUE_TOKENS


def repair_encoding(value: str) -> str:
    """Undo UTF-8 text decoded as cp1252/latin-1 and drop replacement characters."""
    if re.search(MOJIBAKE_PATTERN, value):
        for codec in ("cp1252", "latin-1"):
            try:
                value = value.encode(codec).decode("utf-8")
                break
            except (UnicodeEncodeError, UnicodeDecodeError):
                continue
    return value.replace("\ufffd", "")


def build_category_mapping(
    series: pd.Series,
    merge_case: bool = True,
    similarity_threshold: Optional[float] = 0.85
) -> Dict[str, str]:
    """
    Map each spelling to its canonical category.

    Case variants collapse to their most frequent spelling. Keys of at least
    four characters whose similarity reaches the threshold collapse into the
    more frequent key. Ties are broken alphabetically.
    """
    text = series[series.map(_is_str)]
    if len(text) == 0:
        return {}

    counts = text.value_counts()
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    canonical_by_key: Dict[str, str] = {}
    key_totals: Dict[str, int] = {}
    for value, count in ranked:
        key = value.strip().lower() if merge_case else value
        canonical_by_key.setdefault(key, value)
        key_totals[key] = key_totals.get(key, 0) + int(count)

    target_key = {key: key for key in key_totals}
    if similarity_threshold is not None:
        kept: List[str] = []
        for key, _ in sorted(key_totals.items(), key=lambda item: (-item[1], item[0])):
            match = None
            if len(key) >= 4:
                for other in kept:
                    if len(other) >= 4 and SequenceMatcher(None, key, other).ratio() >= similarity_threshold:
                        match = other
                        break
            if match is None:
                kept.append(key)
            else:
                target_key[key] = match

    mapping = {}
    for value, _ in ranked:
        key = value.strip().lower() if merge_case else value
        mapping[value] = canonical_by_key[target_key[key]]
    return mapping


# ---------------------------------------------------------------------------
# Transformations
# ---------------------------------------------------------------------------

def handle_missing_values(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """
    Fill or drop missing values.

    params:
        action: delete | impute_mean | impute_median | impute_mode | impute_custom
        custom_value: fill value for impute_custom
    """
    df = df.copy()
    action = params.get("action", "impute_median")
    affected = 0
    drop_mask = pd.Series(False, index=df.index)

    for column in columns:
        df[column] = normalize_missing(df[column])
        missing = df[column].isna()
        if not missing.any():
            continue

        if action == "delete":
            drop_mask = drop_mask | missing
            continue

        if action in ("impute_mean", "impute_median"):
            values = pd.to_numeric(df[column], errors="coerce")
            fill_value = values.mean() if action == "impute_mean" else values.median()
            df[column] = values.fillna(fill_value)
        elif action == "impute_mode":
            mode_values = df[column].mode()
            if len(mode_values) == 0:
                continue
            df[column] = df[column].fillna(mode_values.iloc[0])
        elif action == "impute_custom":
            fill_value = params.get("custom_value")
            if fill_value is None:
                raise ValueError(f"impute_custom on '{column}' needs a custom_value")
            if pd.api.types.is_numeric_dtype(df[column]):
                fill_value = float(fill_value)
            df[column] = df[column].fillna(fill_value)
        elif action == "keep":
            continue
        else:
            raise ValueError(f"Unknown missing-value action: {action}")

        affected += int(missing.sum())

    if drop_mask.any():
        affected = int(drop_mask.sum())
        df = df[~drop_mask]

    return df, affected


def handle_outliers(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """
    Remove, cap or flag outliers.

    params:
        action: remove | cap | flag | keep
        lower_pct, upper_pct: percentiles used by cap (default 1 and 99)
        iqr_multiplier: fence width (default 1.5)
    """
    df = df.copy()
    action = params.get("action", "cap")
    multiplier = params.get("iqr_multiplier", 1.5)
    affected = 0
    drop_mask = pd.Series(False, index=df.index)

    for column in columns:
        values = pd.to_numeric(df[column], errors="coerce")
        mask = outlier_mask(values, multiplier)
        count = int(mask.sum())
        if count == 0 or action == "keep":
            continue

        if action == "remove":
            drop_mask = drop_mask | mask
        elif action == "cap":
            lower = values.quantile(params.get("lower_pct", 1) / 100)
            upper = values.quantile(params.get("upper_pct", 99) / 100)
            capped = values.clip(lower=lower, upper=upper)
            affected += _changed(values, capped)
            df[column] = capped
        elif action == "flag":
            df[f"{column}_outlier"] = mask
            affected += count
        else:
            raise ValueError(f"Unknown outlier action: {action}")

    if drop_mask.any():
        affected = int(drop_mask.sum())
        df = df[~drop_mask]

    return df, affected


def normalize_whitespace(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """Trim text values and collapse internal runs of whitespace to one space."""
    df = df.copy()
    trim = params.get("trim", True)
    collapse = params.get("collapse_spaces", True)
    affected = 0

    def clean(value):
        if not _is_str(value):
            return value
        if collapse:
            value = re.sub(r"\s+", " ", value)
        return value.strip() if trim else value

    for column in columns:
        before = df[column]
        df[column] = before.map(clean)
        affected += _changed(before, df[column])

    return df, affected


def standardize_dates(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """Rewrite recognised date strings in ``target_format`` (ISO-8601 by default)."""
    df = df.copy()
    target = params.get("target_format", "%Y-%m-%d")
    affected = 0

    def convert(value):
        if not _is_str(value):
            return value
        parsed = parse_date(value)
        return parsed.strftime(target) if parsed is not None else value

    for column in columns:
        before = df[column]
        df[column] = before.map(convert)
        affected += _changed(before, df[column])

    return df, affected


def map_categories(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """
    Merge case variants and near-duplicate categories.

    params:
        merge_case: collapse case variants (default True)
        similarity_threshold: merge similar spellings, None disables
        preserve_original: keep a ``<column>_original`` copy
    """
    df = df.copy()
    affected = 0

    for column in columns:
        mapping = build_category_mapping(
            df[column],
            params.get("merge_case", True),
            params.get("similarity_threshold", 0.85)
        )
        before = df[column]
        if params.get("preserve_original", False):
            df[f"{column}_original"] = before
        df[column] = before.map(lambda v: mapping.get(v, v) if _is_str(v) else v)
        affected += _changed(before, df[column])

    return df, affected


def convert_type(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """
    Convert columns to a target type.

    params:
        target_type: numeric | boolean | string
        action: convert (non-conforming values become missing) | delete
            (rows with non-conforming values are dropped)
    """
    df = df.copy()
    target = params.get("target_type", "numeric")
    action = params.get("action", "convert")
    affected = 0
    drop_mask = pd.Series(False, index=df.index)

    parsers: Dict[str, Callable[[Any], Any]] = {
        "numeric": parse_number,
        "boolean": parse_boolean,
        "string": lambda v: str(v),
    }
    if target not in parsers:
        raise ValueError(f"Unknown target type: {target}")
    parser = parsers[target]

    for column in columns:
        values = normalize_missing(df[column])
        present = values.notna()
        converted = values.map(lambda v: parser(v) if pd.notna(v) else None)
        invalid = present & converted.isna()

        if action == "delete":
            drop_mask = drop_mask | invalid
            df[column] = converted.where(~invalid, values)
            continue

        if target == "numeric":
            df[column] = pd.to_numeric(converted, errors="coerce")
        else:
            df[column] = converted.where(converted.notna(), np.nan)
        affected += int(invalid.sum()) if target == "numeric" else int(present.sum())

    if drop_mask.any():
        affected = int(drop_mask.sum())
        df = df[~drop_mask]
        if target == "numeric":
            for column in columns:
                df[column] = pd.to_numeric(df[column], errors="coerce")

    return df, affected


def normalize_encoding(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    df = df.copy()
    affected = 0
    for column in columns:
        before = df[column]
        df[column] = before.map(lambda v: repair_encoding(v) if _is_str(v) else v)
        affected += _changed(before, df[column])
    return df, affected


def standardize_numbers(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """Normalise thousands/decimal separators; fully numeric columns become float."""
    df = df.copy()
    affected = 0

    for column in columns:
        before = normalize_missing(df[column])
        parsed = before.map(lambda v: parse_number(v) if pd.notna(v) else None)
        changed = before.notna() & parsed.notna() & before.map(_is_str)
        affected += int(changed.sum())

        if (parsed.notna() | before.isna()).all():
            df[column] = pd.to_numeric(parsed, errors="coerce")
        else:
            df[column] = before.where(~changed, parsed)

    return df, affected


def _constraint_mask(values: pd.Series, constraint: str) -> pd.Series:
    """True where a value violates ``constraint`` such as '>= 0'."""
    match = re.match(r"^\s*(>=|<=|>|<|==|!=)\s*(-?\d+(\.\d+)?)\s*$", constraint)
    if not match:
        raise ValueError(f"Could not parse constraint: {constraint}")

    op, bound = match.group(1), float(match.group(2))
    checks = {
        ">=": values >= bound,
        "<=": values <= bound,
        ">": values > bound,
        "<": values < bound,
        "==": values == bound,
        "!=": values != bound,
    }
    return values.notna() & ~checks[op]


def apply_business_rule(
    df: pd.DataFrame,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """
    Resolve values that break a column constraint.

    params:
        constraint: comparison such as '>= 0'
        action: nullify | delete | replace | flag | keep
        custom_value: replacement used by replace
    """
    df = df.copy()
    constraint = params.get("constraint", ">= 0")
    action = params.get("action", "keep")
    affected = 0
    drop_mask = pd.Series(False, index=df.index)

    for column in columns:
        values = pd.to_numeric(df[column], errors="coerce")
        violations = _constraint_mask(values, constraint)
        count = int(violations.sum())
        if count == 0 or action == "keep":
            continue

        if action == "nullify":
            df[column] = values.mask(violations)
        elif action == "delete":
            drop_mask = drop_mask | violations
        elif action == "replace":
            replacement = params.get("custom_value")
            if replacement is None:
                raise ValueError(f"replace on '{column}' needs a custom_value")
            df[column] = values.mask(violations, float(replacement))
        elif action == "flag":
            df[f"{column}_constraint_violation"] = violations
        else:
            raise ValueError(f"Unknown business-rule action: {action}")
        affected += count

    if drop_mask.any():
        affected = int(drop_mask.sum())
        df = df[~drop_mask]

    return df, affected


RULE_TRANSFORMS: Dict[str, Callable[..., Tuple[pd.DataFrame, int]]] = {
    "missing_value_strategy": handle_missing_values,
    "outlier_handling": handle_outliers,
    "whitespace_normalization": normalize_whitespace,
    "date_format_standardization": standardize_dates,
    "category_mapping": map_categories,
    "type_conversion": convert_type,
    "encoding_normalization": normalize_encoding,
    "numeric_format_standardization": standardize_numbers,
    "business_logic_decision": apply_business_rule,
}


def apply_transform(
    df: pd.DataFrame,
    rule_type: str,
    columns: List[str],
    params: Dict[str, Any]
) -> Tuple[pd.DataFrame, int]:
    """Run the transformation registered for ``rule_type``."""
    if rule_type not in RULE_TRANSFORMS:
        raise ValueError(f"No transformation for rule type: {rule_type}")
    return RULE_TRANSFORMS[rule_type](df, columns, params)


def resolve_columns(df: pd.DataFrame, names: List[str]) -> Tuple[List[str], List[str]]:
    """
    Match rule columns to table columns, ignoring case.

    Returns:
        Tuple of (resolved column names, names that matched nothing)
    """
    exact = {str(c): c for c in df.columns}
    lowered = {str(c).lower(): c for c in df.columns}
    resolved, missing = [], []
    for name in names:
        if name in exact:
            resolved.append(exact[name])
        elif name.lower() in lowered:
            resolved.append(lowered[name.lower()])
        else:
            missing.append(name)
    return resolved, missing
