"""Generate standalone Python scripts that replay approved rules."""

import inspect
import keyword
from dataclasses import dataclass
from pathlib import Path
from pprint import pformat
from typing import List, Optional

import pandas as pd

from incremental import transforms
from incremental.models import PreprocessingRule


@dataclass
class ScriptGenerationOptions:
    include_comments: bool = True
    include_validation: bool = True
    include_logging: bool = False
    module_name: str = "generated"
    class_name: str = "PreprocessingScript"
    generate_async: bool = False
    final_class: bool = True

    def __post_init__(self):
        if not self.class_name.isidentifier() or keyword.iskeyword(self.class_name):
            raise ValueError(f"Invalid class name: {self.class_name}")


def _rule_literal(rule: PreprocessingRule) -> str:
    spec = {
        "id": rule.id,
        "rule_type": rule.rule_type.value,
        "columns": list(rule.column_names),
        "parameters": dict(rule.parameters),
    }
    return pformat(spec, indent=4, width=88, sort_dicts=True)


class ScriptGenerator:
    """
    Renders approved rules as a self-contained preprocessing module.

    The transformation library is embedded verbatim, so the script behaves
    exactly like the workflow that produced it and needs only pandas and
    numpy to run.
    """

    def __init__(self, options: Optional[ScriptGenerationOptions] = None):
        self.options = options or ScriptGenerationOptions()

    def generate_script(self, rules: List[PreprocessingRule], session_id: Optional[str] = None) -> str:
        """
        Build the script source.

        Args:
            rules: Rules to replay, in application order
            session_id: Recorded in the module docstring

        Returns:
            Python source text
        """
        opts = self.options
        lines: List[str] = []

        lines.append('"""')
        lines.append(f"{opts.module_name}: preprocessing replay script.")
        lines.append("")
        lines.append(f"Generated: {pd.Timestamp.now().isoformat()}")
        if session_id:
            lines.append(f"Session: {session_id}")
        lines.append(f"Rules: {len(rules)}")
        lines.append("")
        lines.append(f"Usage: python {opts.module_name}.py <input.csv> <output.csv>")
        lines.append('"""')
        lines.append("")
        if opts.generate_async:
            lines.append("import asyncio")
        if opts.include_logging:
            lines.append("import logging")
        lines.append("import sys")
        if opts.final_class:
            lines.append("from typing import final")
        lines.append("")
        lines.append("")

        if opts.include_comments:
            lines.append("# " + "-" * 75)
            lines.append("# Transformation library")
            lines.append("# " + "-" * 75)
        lines.append(inspect.getsource(transforms).rstrip())
        lines.append("")
        lines.append("")

        if opts.include_logging:
            lines.append(f"logger = logging.getLogger({opts.module_name!r})")
            lines.append("")

        if opts.include_comments:
            lines.append("# Approved rules in application order")
        lines.append("RULES = [")
        for rule in rules:
            if opts.include_comments:
                lines.append(f"    # {rule.description}")
                lines.append(
                    f"    # confidence {rule.confidence:.2f}"
                    + (f", decision: {rule.user_feedback}" if rule.user_feedback else "")
                )
            literal = _rule_literal(rule).replace("\n", "\n    ")
            lines.append(f"    {literal},")
        lines.append("]")
        lines.append("")
        lines.append("")

        lines.extend(self._class_lines(rules))
        lines.append("")
        lines.append("")
        lines.append('if __name__ == "__main__":')
        lines.append("    if len(sys.argv) != 3:")
        lines.append(f'        print("usage: python {opts.module_name}.py <input.csv> <output.csv>")')
        lines.append("        sys.exit(2)")
        lines.append(f"    {opts.class_name}().run(sys.argv[1], sys.argv[2])")
        lines.append("")

        return "\n".join(lines)

    def _class_lines(self, rules: List[PreprocessingRule]) -> List[str]:
        opts = self.options
        lines = []

        if opts.final_class:
            lines.append("@final")
        lines.append(f"class {opts.class_name}:")
        lines.append(f'    """Replays {len(rules)} approved preprocessing rule(s)."""')
        lines.append("")
        lines.append("    rules = RULES")
        lines.append("")

        if opts.include_validation:
            lines.append("    def validate(self, df: pd.DataFrame) -> None:")
            lines.append('        """Raise KeyError if a column used by a rule is missing."""')
            lines.append("        missing = []")
            lines.append("        for rule in self.rules:")
            lines.append('            missing.extend(resolve_columns(df, rule["columns"])[1])')
            lines.append("        if missing:")
            lines.append('            raise KeyError(f"Input is missing columns: {sorted(set(missing))}")')
            lines.append("")

        lines.append("    def apply(self, df: pd.DataFrame) -> pd.DataFrame:")
        lines.append('        """Apply every rule to a copy of ``df``."""')
        if opts.include_validation:
            lines.append("        self.validate(df)")
        lines.append("        df = df.copy()")
        lines.append("        for rule in self.rules:")
        lines.append('            columns, missing = resolve_columns(df, rule["columns"])')
        lines.append("            if missing:")
        if opts.include_logging:
            lines.append('                logger.warning("Skipping %s: missing %s", rule["id"], missing)')
        lines.append("                continue")
        lines.append('            df, affected = apply_transform(df, rule["rule_type"], columns, rule["parameters"])')
        if opts.include_logging:
            lines.append('            logger.info("Applied %s (%d rows affected)", rule["id"], affected)')
        lines.append("        return df")
        lines.append("")

        if opts.generate_async:
            lines.append("    async def apply_async(self, df: pd.DataFrame) -> pd.DataFrame:")
            lines.append("        return await asyncio.to_thread(self.apply, df)")
            lines.append("")

        lines.append("    def run(self, input_path: str, output_path: str) -> pd.DataFrame:")
        lines.append('        """Read ``input_path``, clean it and write ``output_path``."""')
        lines.append("        cleaned = self.apply(read_table(input_path))")
        lines.append("        write_table(cleaned, output_path)")
        lines.append("        return cleaned")
        return lines

    def save_script(self, source: str, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(source)
        return path

    def generate_and_save(
        self,
        rules: List[PreprocessingRule],
        path: Path,
        session_id: Optional[str] = None
    ) -> Path:
        return self.save_script(self.generate_script(rules, session_id), path)
