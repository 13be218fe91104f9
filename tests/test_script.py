import ast
import importlib.util

import pandas as pd
import pytest

from incremental.applier import RuleApplier
from incremental.discovery import RuleDiscoveryEngine
from incremental.transforms import read_table, write_table
from reporting.script import ScriptGenerator, ScriptGenerationOptions


def load_module(path, name="generated_script"):
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def approved_rules(messy_df):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    for rule in rules:
        rule.approve()
    return rules


def test_generated_script_is_valid_python(approved_rules):
    source = ScriptGenerator().generate_script(approved_rules, session_id="s1")
    ast.parse(source)
    assert "class PreprocessingScript" in source
    assert "@final" in source
    assert "Session: s1" in source
    assert source.count("'rule_type'") == len(approved_rules)


def test_options_shape_the_script(approved_rules):
    options = ScriptGenerationOptions(
        include_comments=False,
        include_validation=False,
        include_logging=True,
        class_name="Cleaner",
        generate_async=True,
        final_class=False
    )
    source = ScriptGenerator(options).generate_script(approved_rules)
    ast.parse(source)
    assert "class Cleaner" in source
    assert "async def apply_async" in source
    assert "logger.info" in source
    assert "def validate" not in source
    assert "@final" not in source
    assert "# Transformation library" not in source


def test_invalid_class_name_is_rejected():
    with pytest.raises(ValueError):
        ScriptGenerationOptions(class_name="not valid")
    with pytest.raises(ValueError):
        ScriptGenerationOptions(class_name="class")


def test_script_replays_the_workflow_exactly(tmp_path, messy_df, approved_rules):
    source_path = tmp_path / "messy.csv"
    messy_df.to_csv(source_path, index=False)

    expected, batch = RuleApplier().apply_rules(read_table(str(source_path)), approved_rules)
    assert batch.failed_rules == 0
    expected_path = tmp_path / "expected.csv"
    write_table(expected, str(expected_path))

    script_path = ScriptGenerator().generate_and_save(approved_rules, tmp_path / "replay.py")
    module = load_module(script_path)
    replay_path = tmp_path / "replayed.csv"
    module.PreprocessingScript().run(str(source_path), str(replay_path))

    assert replay_path.read_text(encoding="utf-8") == expected_path.read_text(encoding="utf-8")


def test_validation_reports_missing_columns(tmp_path, approved_rules):
    module = load_module(ScriptGenerator().generate_and_save(approved_rules, tmp_path / "replay.py"))
    with pytest.raises(KeyError):
        module.PreprocessingScript().apply(pd.DataFrame({"Other": [1]}))
