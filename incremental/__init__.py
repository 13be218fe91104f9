"""Incremental preprocessing workflow modules."""

from .config import IncrementalWorkflowConfig, SamplingConfiguration, AnalysisConfiguration, SamplingStrategy
from .models import (
    WorkflowStage, WorkflowState, StageResult, PreprocessingRule, RuleType, PatternType,
    ApprovalState, HITLQuestion, HITLAnswer, HITLOption, HITLDecisionLog, SampleAnalysis, RuleLockedError
)
from .cancellation import CancellationToken, WorkflowCancelledError
from .sampling import SamplingEngine, random_sample, stratified_sample, validate_sample
from .analysis import SampleAnalyzer, has_converged
from .discovery import RuleDiscoveryEngine, ConfidenceCalculator, RuleSetConvergenceDetector
from .hitl import HITLQuestionGenerator, HITLWorkflowService, HITLDecisionLogger, HITLError
from .applier import RuleApplier, RuleApplicationResult, RuleApplicationBatchResult
from .checkpoint import (
    CheckpointStore, FileCheckpointStore, InMemoryCheckpointStore, CheckpointError, CheckpointNotFoundError
)
from .orchestrator import IncrementalWorkflowOrchestrator, WorkflowRunResult, WorkflowProgress, RunStatus

__all__ = [
    'IncrementalWorkflowConfig', 'SamplingConfiguration', 'AnalysisConfiguration', 'SamplingStrategy',
    'WorkflowStage', 'WorkflowState', 'StageResult', 'PreprocessingRule', 'RuleType', 'PatternType',
    'ApprovalState', 'HITLQuestion', 'HITLAnswer', 'HITLOption', 'HITLDecisionLog', 'SampleAnalysis',
    'RuleLockedError',
    'CancellationToken', 'WorkflowCancelledError',
    'SamplingEngine', 'random_sample', 'stratified_sample', 'validate_sample',
    'SampleAnalyzer', 'has_converged',
    'RuleDiscoveryEngine', 'ConfidenceCalculator', 'RuleSetConvergenceDetector',
    'HITLQuestionGenerator', 'HITLWorkflowService', 'HITLDecisionLogger', 'HITLError',
    'RuleApplier', 'RuleApplicationResult', 'RuleApplicationBatchResult',
    'CheckpointStore', 'FileCheckpointStore', 'InMemoryCheckpointStore',
    'CheckpointError', 'CheckpointNotFoundError',
    'IncrementalWorkflowOrchestrator', 'WorkflowRunResult', 'WorkflowProgress', 'RunStatus'
]
