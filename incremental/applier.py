"""Validate and apply approved rules to a table."""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Tuple, Optional, Callable

import pandas as pd

from .models import PreprocessingRule
from .transforms import apply_transform, resolve_columns

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PreprocessingRule, int, int, str], None]


@dataclass
class RuleApplicationResult:
    rule: PreprocessingRule
    success: bool
    rows_affected: int = 0
    rows_skipped: int = 0
    error_message: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule.id,
            "success": self.success,
            "rows_affected": self.rows_affected,
            "rows_skipped": self.rows_skipped,
            "error_message": self.error_message,
            "duration": self.duration,
        }


@dataclass
class RuleApplicationBatchResult:
    results: List[RuleApplicationResult] = field(default_factory=list)
    total_rules: int = 0
    total_duration: float = 0.0
    cancelled: bool = False

    @property
    def successful_rules(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_rules(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success_rate(self) -> float:
        return self.successful_rules / len(self.results) if self.results else 0.0

    @property
    def error_rate(self) -> float:
        return self.failed_rules / len(self.results) if self.results else 0.0

    @property
    def total_rows_affected(self) -> int:
        return sum(r.rows_affected for r in self.results)

    @property
    def first_failure(self) -> Optional[RuleApplicationResult]:
        for result in self.results:
            if not result.success:
                return result
        return None


class RuleApplier:
    """
    Executes rules one at a time.

    A rule that fails leaves the table exactly as it was; failures are
    reported on the result and never raised.
    """

    def validate_rule(self, df: pd.DataFrame, rule: PreprocessingRule) -> Optional[RuleApplicationResult]:
        """
        Check that every column the rule references exists (case-insensitive).

        Returns:
            None when the rule is valid, otherwise a failed result that skips
            every row
        """
        if not rule.column_names:
            return RuleApplicationResult(
                rule=rule,
                success=False,
                rows_skipped=len(df),
                error_message=f"Rule {rule.id} references no columns"
            )

        _, missing = resolve_columns(df, rule.column_names)
        if missing:
            return RuleApplicationResult(
                rule=rule,
                success=False,
                rows_affected=0,
                rows_skipped=len(df),
                error_message=f"Column(s) not found: {', '.join(missing)}"
            )
        return None

    def apply_rule(
        self,
        df: pd.DataFrame,
        rule: PreprocessingRule
    ) -> Tuple[pd.DataFrame, RuleApplicationResult]:
        """
        Apply one rule.

        Returns:
            Tuple of (resulting table, result). On failure the input table is
            returned unchanged.
        """
        start = time.perf_counter()

        invalid = self.validate_rule(df, rule)
        if invalid is not None:
            invalid.duration = time.perf_counter() - start
            logger.warning("Skipping rule %s: %s", rule.id, invalid.error_message)
            return df, invalid

        columns, _ = resolve_columns(df, rule.column_names)
        try:
            transformed, affected = apply_transform(df, rule.rule_type.value, columns, rule.parameters)
        except Exception as e:
            logger.warning("Rule %s failed: %s", rule.id, e)
            return df, RuleApplicationResult(
                rule=rule,
                success=False,
                rows_skipped=len(df),
                error_message=str(e),
                duration=time.perf_counter() - start
            )

        return transformed, RuleApplicationResult(
            rule=rule,
            success=True,
            rows_affected=affected,
            rows_skipped=max(0, len(df) - affected),
            duration=time.perf_counter() - start
        )

    def apply_rules(
        self,
        df: pd.DataFrame,
        rules: List[PreprocessingRule],
        progress: Optional[ProgressCallback] = None,
        cancel=None,
        continue_on_failure: bool = True
    ) -> Tuple[pd.DataFrame, RuleApplicationBatchResult]:
        """
        Apply rules in order.

        Args:
            df: Table to transform
            rules: Rules in application order
            progress: Called as (rule, index, total, message) before each rule
            cancel: Optional CancellationToken, checked before each rule
            continue_on_failure: Keep going after a failed rule

        Returns:
            Tuple of (transformed table, batch result). A cancelled or halted
            batch holds only the results produced so far.
        """
        start = time.perf_counter()
        batch = RuleApplicationBatchResult(total_rules=len(rules))

        for index, rule in enumerate(rules):
            if cancel is not None and cancel.is_cancelled:
                batch.cancelled = True
                logger.info("Rule application cancelled before rule %d of %d", index + 1, len(rules))
                break

            if progress is not None:
                progress(rule, index, len(rules), f"Applying {rule.rule_type.value} to {', '.join(rule.column_names)}")

            df, result = self.apply_rule(df, rule)
            batch.results.append(result)

            if not result.success and not continue_on_failure:
                logger.warning("Stopping after failed rule %s", rule.id)
                break

        batch.total_duration = time.perf_counter() - start
        logger.info(
            "Applied %d/%d rules (%d failed, %.0f%% success) in %.2fs",
            batch.successful_rules, batch.total_rules, batch.failed_rules,
            batch.success_rate * 100, batch.total_duration
        )
        return df, batch
