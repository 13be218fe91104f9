"""Markdown report of a workflow session."""

import json
from typing import Dict, List

from incremental.models import WorkflowState


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    if seconds < 60:
        return f"{seconds:.1f} s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes} min {secs} s"


def _cell(text) -> str:
    return str(text).replace("|", "\\|").replace("\n", " ") if text is not None else ""


def export_report(state: WorkflowState, deliverables: Dict[str, str]) -> str:
    """
    Generate a markdown report of the workflow execution.

    Args:
        state: Final workflow state
        deliverables: Deliverable name -> file name, in listing order

    Returns:
        Markdown report string
    """
    report: List[str] = []

    report.append("# Incremental Preprocessing Report\n")
    report.append(f"- **Session:** `{state.session_id}`")
    report.append(f"- **Dataset:** `{state.dataset_path}`")
    report.append(f"- **Generated:** {state.completed_at or state.started_at}")
    report.append("")

    # Summary
    approved = state.approved_rules
    report.append("## Summary\n")
    report.append(f"- **Total Records:** {state.total_records:,}")
    report.append(f"- **Duration:** {format_duration(state.total_duration)}")
    report.append(f"- **Final Stage:** {state.current_stage.label}")
    report.append(f"- **Confidence Score:** {state.confidence_score:.2%}")
    report.append(f"- **Converged:** {'Yes' if state.has_converged else 'No'}")
    sampling_stages = [s for s in state.completed_stages if 1 <= s <= 4]
    report.append(f"- **Sampling Stages Completed:** {len(sampling_stages)}/4")
    report.append(f"- **Rules Discovered:** {len(state.discovered_rules)}")
    report.append(f"- **Rules Approved:** {len(approved)}")
    report.append("")

    # Rules
    report.append("## Rules Applied\n")
    if state.discovered_rules:
        report.append("| | Rule | Columns | Description | Confidence | Decision |")
        report.append("|---|---|---|---|---|---|")
        for rule in state.discovered_rules:
            mark = "✅" if rule.is_approved else "❌"
            report.append(
                f"| {mark} | {rule.rule_type.value} | {_cell(', '.join(rule.column_names))} "
                f"| {_cell(rule.description)} | {rule.confidence:.2f} | {_cell(rule.user_feedback)} |"
            )
    else:
        report.append("No rules were discovered.")
    report.append("")

    # Stages
    report.append("## Stage Details\n")
    for stage in sorted(state.completed_stages):
        result = state.completed_stages[stage]
        report.append(f"### Stage {int(result.stage)}: {result.stage.label}\n")
        report.append(f"- Sample ratio: {result.sample_ratio:.2%}")
        report.append(f"- Sample size: {result.sample_size:,}")
        report.append(f"- Duration: {format_duration(result.duration)}")
        report.append(f"- Rules discovered: {len(result.rule_ids)}")
        if result.analysis is not None:
            report.append(f"- Quality score: {result.analysis.quality_score:.3f}")
        if result.strategy:
            report.append(f"- Sampling strategy: {result.strategy}")
        if result.notes:
            report.append(f"- Notes: {result.notes}")
        report.append("")

    # Deliverables
    report.append("## Deliverables\n")
    for name, filename in deliverables.items():
        report.append(f"- **{name}:** `{filename}`")
    report.append("")

    # Configuration
    report.append("## Configuration\n")
    report.append("```json")
    report.append(json.dumps(state.config.model_dump(mode="json"), indent=2))
    report.append("```")

    return "\n".join(report)
