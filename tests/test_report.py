import json
from pathlib import Path

import pytest

from incremental.analysis import SampleAnalyzer
from incremental.discovery import RuleDiscoveryEngine
from incremental.models import WorkflowState, WorkflowStage, StageResult, ApprovalState
from reporting.deliverables import DeliverableGenerator, export_metadata
from reporting.report import export_report, format_duration


@pytest.fixture
def finished_state(messy_df, workflow_config):
    rules = RuleDiscoveryEngine().discover(messy_df, stage=1)
    for rule in rules:
        rule.approve("auto-approved: automatic fix")
    rules[-1].approval_state = ApprovalState.REJECTED

    analysis = SampleAnalyzer().analyze(messy_df, 1, 1.0)
    state = WorkflowState(
        session_id="report-1",
        dataset_path="people.csv",
        config=workflow_config(),
        current_stage=WorkflowStage.COMPLETED,
        total_records=len(messy_df),
        discovered_rules=rules
    )
    state.completed_stages[1] = StageResult(
        stage=WorkflowStage.INITIAL_EXPLORATION,
        sample_size=len(messy_df),
        sample_ratio=1.0,
        analysis=analysis,
        rule_ids=[r.id for r in rules],
        duration=0.25,
        notes="first look"
    )
    return state


def test_format_duration():
    assert format_duration(0.25) == "250 ms"
    assert format_duration(12.34) == "12.3 s"
    assert format_duration(125) == "2 min 5 s"


def test_report_marks_approved_and_rejected_rules(finished_state):
    report = export_report(finished_state, {"Cleaned data": "cleaned_data.csv"})
    assert report.startswith("# Incremental Preprocessing Report")
    assert report.count("| ✅ |") == len(finished_state.discovered_rules) - 1
    assert report.count("| ❌ |") == 1
    assert "- Notes: first look" in report
    assert "- **Cleaned data:** `cleaned_data.csv`" in report
    assert "- **Sampling Stages Completed:** 1/4" in report


def test_metadata_uses_camel_case_keys(finished_state):
    metadata = export_metadata(finished_state)
    assert metadata["sessionId"] == "report-1"
    assert metadata["currentStage"] == "COMPLETED"
    assert list(metadata["completedStages"]) == ["INITIAL_EXPLORATION"]
    assert metadata["completedStages"]["INITIAL_EXPLORATION"]["sampleSize"] == 6
    assert {r["id"] for r in metadata["rules"]} == {r.id for r in finished_state.discovered_rules}
    json.dumps(metadata)


def test_generate_all_writes_every_file(finished_state, messy_df):
    manifest = DeliverableGenerator().generate_all(finished_state, messy_df)

    for path in (manifest.cleaned_data_path, manifest.script_path, manifest.report_path, manifest.metadata_path):
        assert Path(path).exists()
    assert Path(manifest.cleaned_data_path).parent == Path(finished_state.config.output_directory)
    report = Path(manifest.report_path).read_text(encoding="utf-8")
    assert "`preprocessing_script.py`" in report
    assert "`metadata.json`" in report


def test_script_and_report_can_be_disabled(finished_state, messy_df, tmp_path):
    finished_state.config.generate_scripts = False
    finished_state.config.generate_report = False
    manifest = DeliverableGenerator().generate_all(finished_state, messy_df, output_directory=str(tmp_path / "out"))

    assert manifest.script_path is None
    assert manifest.report_path is None
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["cleaned_data.csv", "metadata.json"]
