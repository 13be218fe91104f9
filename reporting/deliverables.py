"""Write the cleaned data, replay script, report and metadata of a session."""

import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any, Optional, List

import pandas as pd

from incremental.models import WorkflowState, PreprocessingRule, now_iso
from incremental.transforms import write_table
from .report import export_report
from .script import ScriptGenerator, ScriptGenerationOptions

logger = logging.getLogger(__name__)

CLEANED_DATA_FILE = "cleaned_data.csv"
SCRIPT_FILE = "preprocessing_script.py"
REPORT_FILE = "report.md"
METADATA_FILE = "metadata.json"


@dataclass
class DeliverableManifest:
    cleaned_data_path: str
    metadata_path: str
    script_path: Optional[str] = None
    report_path: Optional[str] = None
    generated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def export_metadata(state: WorkflowState) -> Dict[str, Any]:
    """
    Machine-readable snapshot of a session.

    Returns:
        Dict ready for ``json.dump``
    """
    return {
        "sessionId": state.session_id,
        "currentStage": state.current_stage.name,
        "datasetPath": state.dataset_path,
        "totalRecords": state.total_records,
        "totalDuration": round(state.total_duration, 3),
        "confidenceScore": round(state.confidence_score, 4),
        "hasConverged": state.has_converged,
        "startedAt": state.started_at,
        "completedAt": state.completed_at,
        "completedStages": {
            result.stage.name: {
                "sampleSize": result.sample_size,
                "sampleRatio": result.sample_ratio,
                "rulesDiscovered": len(result.rule_ids),
                "duration": round(result.duration, 3),
                "qualityScore": result.analysis.quality_score if result.analysis else None,
                "notes": result.notes,
            }
            for _, result in sorted(state.completed_stages.items())
        },
        "rules": [
            {
                "id": rule.id,
                "type": rule.rule_type.value,
                "columnNames": rule.column_names,
                "description": rule.description,
                "confidence": rule.confidence,
                "isApproved": rule.is_approved,
                "approvalState": rule.approval_state.value,
                "requiresHITL": rule.requires_hitl,
                "applied": rule.applied,
                "parameters": rule.parameters,
                "userFeedback": rule.user_feedback,
            }
            for rule in state.discovered_rules
        ],
        "config": state.config.model_dump(mode="json"),
    }


class DeliverableGenerator:
    """Produces every output file of a completed session."""

    def __init__(self, script_options: Optional[ScriptGenerationOptions] = None):
        self.script_generator = ScriptGenerator(script_options)

    def generate_all(
        self,
        state: WorkflowState,
        cleaned_df: pd.DataFrame,
        output_directory: Optional[str] = None,
        script_rules: Optional[List[PreprocessingRule]] = None
    ) -> DeliverableManifest:
        """
        Write deliverables.

        Args:
            state: Final workflow state
            cleaned_df: The fully transformed dataset
            output_directory: Defaults to the session's configured directory
            script_rules: Rules the script replays; defaults to approved rules

        Returns:
            Manifest listing only the files that were written
        """
        directory = Path(output_directory or state.config.output_directory)
        directory.mkdir(parents=True, exist_ok=True)
        config = state.config
        rules = state.approved_rules if script_rules is None else script_rules

        cleaned_path = directory / CLEANED_DATA_FILE
        write_table(cleaned_df, str(cleaned_path))
        listing = {"Cleaned data": CLEANED_DATA_FILE}

        script_path = None
        if config.generate_scripts and rules:
            script_path = self.script_generator.generate_and_save(
                rules, directory / SCRIPT_FILE, state.session_id
            )
            listing["Preprocessing script"] = SCRIPT_FILE

        report_path = None
        if config.generate_report:
            listing["Report"] = REPORT_FILE
            listing["Metadata"] = METADATA_FILE
            report_path = directory / REPORT_FILE
            with open(report_path, "w", encoding="utf-8") as f:
                f.write(export_report(state, listing))

        metadata_path = directory / METADATA_FILE
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(export_metadata(state), f, indent=2, default=str)

        manifest = DeliverableManifest(
            cleaned_data_path=str(cleaned_path),
            metadata_path=str(metadata_path),
            script_path=str(script_path) if script_path else None,
            report_path=str(report_path) if report_path else None,
            generated_at=now_iso()
        )
        logger.info("Deliverables written to %s", directory)
        return manifest
