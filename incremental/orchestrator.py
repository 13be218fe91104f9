"""Drives a session through the sampling stages, HITL review and bulk processing."""

import copy
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from .analysis import SampleAnalyzer
from .applier import RuleApplier
from .cancellation import WorkflowCancelledError, check_cancelled
from .checkpoint import CheckpointStore, FileCheckpointStore, CheckpointNotFoundError
from .config import IncrementalWorkflowConfig
from .discovery import RuleDiscoveryEngine, RuleSetConvergenceDetector
from .hitl import HITLDecisionLogger, HITLWorkflowService, HITLError
from .models import (
    WorkflowState, WorkflowStage, StageResult, HITLQuestion, HITLAnswer, now_iso
)
from .sampling import SamplingEngine
from .transforms import read_table

if TYPE_CHECKING:
    from reporting.deliverables import DeliverableManifest

logger = logging.getLogger(__name__)

SAMPLING_STAGES = (1, 2, 3, 4)
DECISIONS_SUBDIRECTORY = "hitl-decisions"


@dataclass
class WorkflowProgress:
    session_id: str
    stage: WorkflowStage
    message: str
    percent_complete: float
    rules_discovered: int = 0
    confidence_score: float = 0.0
    has_converged: bool = False


ProgressCallback = Callable[[WorkflowProgress], None]


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


@dataclass
class WorkflowRunResult:
    """What a call to run() or resume() ended with."""
    status: RunStatus
    state: WorkflowState
    pending_questions: List[HITLQuestion] = field(default_factory=list)
    manifest: Optional["DeliverableManifest"] = None
    checkpoint_path: Optional[str] = None

    @property
    def is_paused(self) -> bool:
        return self.status == RunStatus.PAUSED


def workflow_confidence(converged: bool, quality_score: float, approved: int, discovered: int) -> float:
    """
    Blend convergence, sample quality and the approved share of rules.

    Returns:
        Confidence in [0, 1]
    """
    approval_ratio = approved / discovered if discovered else 1.0
    score = 0.4 * (1.0 if converged else 0.8) + 0.3 * quality_score + 0.3 * approval_ratio
    return max(0.0, min(1.0, score))


class IncrementalWorkflowOrchestrator:
    """
    Runs the staged workflow for one dataset at a time.

    Stages 1-4 sample progressively larger shares of the data, discover rules
    and collect decisions. A session pauses whenever a rule needs a human
    decision and resumes from its checkpoint once answers arrive. Stage 5
    applies the approved rules to the full dataset and writes deliverables.
    """

    def __init__(
        self,
        config: Optional[IncrementalWorkflowConfig] = None,
        store: Optional[CheckpointStore] = None,
        progress: Optional[ProgressCallback] = None,
        decision_log: Optional[HITLDecisionLogger] = None
    ):
        self.config = config or IncrementalWorkflowConfig()
        if store is None and self.config.enable_checkpoints:
            store = FileCheckpointStore(Path(self.config.checkpoint_directory))
        self.store = store
        self.progress = progress
        if decision_log is None:
            directory = None
            if self.config.enable_checkpoints:
                directory = Path(self.config.checkpoint_directory) / DECISIONS_SUBDIRECTORY
            decision_log = HITLDecisionLogger(directory)
        self.decision_log = decision_log
        self.applier = RuleApplier()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        dataset_path: str,
        session_id: Optional[str] = None,
        cancel=None
    ) -> WorkflowRunResult:
        """
        Start a new session on ``dataset_path``.

        Args:
            dataset_path: Delimited text file to clean
            session_id: Generated when omitted
            cancel: Optional CancellationToken

        Returns:
            WorkflowRunResult with status completed, paused or cancelled

        Raises:
            CheckpointError: If a checkpoint cannot be written
        """
        df = read_table(dataset_path)
        state = WorkflowState(
            session_id=session_id or uuid.uuid4().hex[:12],
            dataset_path=str(dataset_path),
            config=self.config.model_copy(deep=True),
            total_records=len(df)
        )
        logger.info(
            "Session %s started on %s (%d records)",
            state.session_id, dataset_path, state.total_records
        )
        return self._advance(state, df, first_stage=1, cancel=cancel)

    def resume(
        self,
        session: Union[str, Path],
        answers: Union[Iterable[HITLAnswer], Dict[str, HITLAnswer]] = (),
        user_id: str = "user",
        cancel=None
    ) -> WorkflowRunResult:
        """
        Continue a session from its latest checkpoint.

        Args:
            session: Session id, or the path of a checkpoint file
            answers: Answers to the session's pending questions
            user_id: Recorded on every decision
            cancel: Optional CancellationToken

        Returns:
            WorkflowRunResult; paused again while questions remain open

        Raises:
            CheckpointNotFoundError: If the session has no checkpoint
            HITLError: If an answer does not match a pending question
        """
        state = self._load_state(session)
        self.decision_log.load(state.session_id)

        if state.current_stage == WorkflowStage.COMPLETED:
            logger.info("Session %s is already complete", state.session_id)
            return WorkflowRunResult(RunStatus.COMPLETED, state)

        was_paused = state.is_paused
        service = HITLWorkflowService(state.session_id, self.decision_log)
        self._apply_answers(state, service, answers, user_id)

        if state.pending_questions:
            return self._pause(state, state.pending_questions)

        df = read_table(state.dataset_path)
        if len(df) != state.total_records:
            logger.warning(
                "Dataset %s now has %d records, checkpoint recorded %d",
                state.dataset_path, len(df), state.total_records
            )

        stage = int(state.current_stage)
        if stage in SAMPLING_STAGES:
            if was_paused:
                self._finish_stage(state, stage)
                self._save(state)
            first = stage + 1
        else:
            first = 1
        return self._advance(state, df, first_stage=first, cancel=cancel)

    # ------------------------------------------------------------------
    # Stage loop
    # ------------------------------------------------------------------

    def _advance(
        self,
        state: WorkflowState,
        df: pd.DataFrame,
        first_stage: int,
        cancel=None
    ) -> WorkflowRunResult:
        config = state.config
        sampler = SamplingEngine(
            config.sampling,
            label_column=config.label_column,
            random_seed=config.random_seed,
            min_sample_size=config.min_sample_size
        )
        analyzer = SampleAnalyzer(config.analysis)
        discovery = RuleDiscoveryEngine()
        service = HITLWorkflowService(state.session_id, self.decision_log)

        try:
            for stage in SAMPLING_STAGES:
                if stage < first_stage or self._should_skip(state):
                    continue
                check_cancelled(cancel, f"start of stage {stage}")
                self._notify(state, WorkflowStage(stage), f"Sampling stage {stage}")

                sample = self._run_stage(state, df, stage, sampler, analyzer, discovery, cancel)
                self._approve_automatic(state)
                questions = self._resolve_hitl(state, service, sample)
                if questions:
                    return self._pause(state, questions)

                self._finish_stage(state, stage)
                self._save(state)

            check_cancelled(cancel, "start of bulk processing")
            manifest = self._bulk_process(state, df, cancel)
        except WorkflowCancelledError as e:
            logger.info("Session %s cancelled: %s", state.session_id, e)
            return WorkflowRunResult(RunStatus.CANCELLED, state)

        checkpoint_path = self._save(state)
        self._notify(state, WorkflowStage.COMPLETED, "Workflow complete")
        return WorkflowRunResult(
            RunStatus.COMPLETED,
            state,
            manifest=manifest,
            checkpoint_path=checkpoint_path
        )

    def _run_stage(
        self,
        state: WorkflowState,
        df: pd.DataFrame,
        stage: int,
        sampler: SamplingEngine,
        analyzer: SampleAnalyzer,
        discovery: RuleDiscoveryEngine,
        cancel=None
    ) -> pd.DataFrame:
        """Sample, analyze and discover for one stage; returns the sample."""
        start = time.perf_counter()
        state.current_stage = WorkflowStage(stage)

        sample, outcome = sampler.sample(df, state.config.stage_ratio(stage))
        analysis = analyzer.analyze(sample, stage, outcome.effective_ratio, cancel)
        incoming = discovery.discover(sample, analysis, stage, cancel)

        previous = copy.deepcopy(state.discovered_rules)
        state.discovered_rules, new_ids = discovery.merge(state.discovered_rules, incoming, stage)
        change = RuleSetConvergenceDetector().compare(previous, state.discovered_rules)

        notes = [f"{len(new_ids)} new rule(s), rule-set change rate {change.change_rate:.1%}"]
        if not outcome.validation.is_valid:
            notes.append(outcome.validation.message)

        state.completed_stages[stage] = StageResult(
            stage=WorkflowStage(stage),
            sample_size=len(sample),
            sample_ratio=outcome.effective_ratio,
            analysis=analysis,
            rule_ids=[r.id for r in incoming],
            duration=time.perf_counter() - start,
            notes="; ".join(notes),
            strategy=outcome.strategy.value,
            validation=outcome.validation
        )
        logger.info(
            "Stage %d (%s) finished: %d rows sampled, %d rules known",
            stage, WorkflowStage(stage).label, len(sample), len(state.discovered_rules)
        )
        return sample

    def _approve_automatic(self, state: WorkflowState) -> None:
        for rule in state.discovered_rules:
            if not rule.requires_hitl and not rule.is_resolved:
                rule.approve("auto-approved: automatic fix")

    def _resolve_hitl(
        self,
        state: WorkflowState,
        service: HITLWorkflowService,
        sample: pd.DataFrame
    ) -> List[HITLQuestion]:
        """Resolve what configuration allows; return questions left for a person."""
        config = state.config
        open_questions = []

        for rule in state.discovered_rules:
            if not rule.requires_hitl or rule.is_resolved:
                continue
            question = service.generator.generate(rule, sample)
            if config.skip_hitl:
                service.auto_resolve(question, rule, "skip_hitl")
            elif config.enable_auto_approval and rule.confidence >= config.min_confidence_threshold:
                service.auto_resolve(question, rule, "auto_approval")
            else:
                open_questions.append(question)

        return open_questions

    def _finish_stage(self, state: WorkflowState, stage: int) -> None:
        """Convergence and confidence once every rule of ``stage`` is resolved."""
        current = state.completed_stages[stage]
        previous = state.completed_stages.get(stage - 1)

        converged = False
        if previous is not None and previous.analysis is not None and current.analysis is not None:
            converged = SampleAnalyzer(state.config.analysis).has_converged(
                previous.analysis,
                current.analysis,
                state.config.convergence_threshold
            )

        quality = current.analysis.quality_score if current.analysis is not None else 0.0
        state.has_converged = converged
        state.confidence_score = workflow_confidence(
            converged, quality, len(state.approved_rules), len(state.discovered_rules)
        )
        state.pending_questions = []
        logger.info(
            "Stage %d confidence %.3f (converged: %s)",
            stage, state.confidence_score, converged
        )
        if self._should_skip(state):
            logger.info("Confidence threshold met after stage %d, moving to bulk processing", stage)

    def _should_skip(self, state: WorkflowState) -> bool:
        return state.has_converged and state.confidence_score >= state.config.min_confidence_threshold

    # ------------------------------------------------------------------
    # Bulk processing
    # ------------------------------------------------------------------

    def _bulk_process(self, state: WorkflowState, df: pd.DataFrame, cancel=None):
        # Imported here; the reporting package depends on this one
        from reporting.deliverables import DeliverableGenerator

        start = time.perf_counter()
        config = state.config
        state.current_stage = WorkflowStage.BULK_PROCESSING
        rules = state.approved_rules
        self._notify(state, WorkflowStage.BULK_PROCESSING, f"Applying {len(rules)} rule(s) to {len(df):,} rows")

        def on_rule(rule, index, total, message):
            self._notify(
                state,
                WorkflowStage.BULK_PROCESSING,
                message,
                percent=80.0 + 20.0 * index / max(total, 1)
            )

        cleaned, batch = self.applier.apply_rules(
            df,
            rules,
            progress=on_rule,
            cancel=cancel,
            continue_on_failure=config.continue_on_rule_failure
        )
        if batch.cancelled:
            raise WorkflowCancelledError("Workflow cancelled during bulk processing")

        applied = [r.rule for r in batch.results if r.success]
        for rule in applied:
            rule.applied = True

        notes = f"{batch.successful_rules}/{batch.total_rules} rules applied, {batch.total_rows_affected:,} row changes"
        if batch.error_rate > config.max_error_rate:
            logger.error(
                "Rule failure rate %.1f%% exceeds the %.1f%% limit",
                batch.error_rate * 100, config.max_error_rate * 100
            )
            notes += f"; failure rate {batch.error_rate:.1%} exceeds limit {config.max_error_rate:.1%}"

        state.completed_stages[int(WorkflowStage.BULK_PROCESSING)] = StageResult(
            stage=WorkflowStage.BULK_PROCESSING,
            sample_size=len(df),
            sample_ratio=1.0,
            analysis=None,
            rule_ids=[r.id for r in applied],
            duration=time.perf_counter() - start,
            notes=notes
        )
        state.current_stage = WorkflowStage.COMPLETED
        state.completed_at = now_iso()

        manifest = DeliverableGenerator().generate_all(state, cleaned, script_rules=applied)
        logger.info("Session %s completed", state.session_id)
        return manifest

    # ------------------------------------------------------------------
    # HITL answers, checkpoints and progress
    # ------------------------------------------------------------------

    def _apply_answers(
        self,
        state: WorkflowState,
        service: HITLWorkflowService,
        answers: Union[Iterable[HITLAnswer], Dict[str, HITLAnswer]],
        user_id: str
    ) -> None:
        if isinstance(answers, dict):
            answers = list(answers.values())
        answers = list(answers)

        questions = {q.id: q for q in state.pending_questions}
        checked: List[Tuple[HITLQuestion, HITLAnswer]] = []
        for answer in answers:
            question = questions.get(answer.question_id)
            if question is None:
                raise HITLError(f"No pending question {answer.question_id} in session {state.session_id}")
            if state.get_rule(question.rule_id) is None:
                raise HITLError(f"Question {question.id} refers to unknown rule {question.rule_id}")
            service.validate_answer(question, answer)
            checked.append((question, answer))

        for question, answer in checked:
            service.apply_answer(question, answer, state.get_rule(question.rule_id), user_id)

        answered = {q.id for q, _ in checked}
        state.pending_questions = [q for q in state.pending_questions if q.id not in answered]

    def _pause(self, state: WorkflowState, questions: List[HITLQuestion]) -> WorkflowRunResult:
        state.pending_questions = list(questions)
        checkpoint_path = self._save(state)
        logger.info(
            "Session %s paused at %s with %d open question(s)",
            state.session_id, state.current_stage.label, len(questions)
        )
        self._notify(state, state.current_stage, f"Waiting for {len(questions)} decision(s)")
        return WorkflowRunResult(
            RunStatus.PAUSED,
            state,
            pending_questions=list(questions),
            checkpoint_path=checkpoint_path
        )

    def _save(self, state: WorkflowState) -> Optional[str]:
        if not state.config.enable_checkpoints or self.store is None:
            return None
        return self.store.save(state)

    def _load_state(self, session: Union[str, Path]) -> WorkflowState:
        path = Path(session)
        if path.suffix == ".json" and os.path.isfile(path):
            return FileCheckpointStore(path.parent).load_file(path)
        if self.store is None:
            raise CheckpointNotFoundError(f"No checkpoint store configured to resume {session}")
        return self.store.load(str(session))

    def _notify(
        self,
        state: WorkflowState,
        stage: WorkflowStage,
        message: str,
        percent: Optional[float] = None
    ) -> None:
        if self.progress is None:
            return
        if percent is None:
            percent = min(100.0, 20.0 * (int(stage) - 1)) if int(stage) > 0 else 0.0
        self.progress(WorkflowProgress(
            session_id=state.session_id,
            stage=stage,
            message=message,
            percent_complete=percent,
            rules_discovered=len(state.discovered_rules),
            confidence_score=state.confidence_score,
            has_converged=state.has_converged
        ))
