"""Bounded self-correction loop for failing verification steps."""

from .classifier import (
    ConsecutiveFailureTracker,
    classify_failure,
    compute_signature,
    normalize_output,
)
from .collaborators import ApprovalDecision, ApprovalResult, RepairCapabilities
from .models import (
    DEFAULT_SELF_CORRECTION_POLICY,
    DecisionAction,
    DecisionContext,
    DecisionOption,
    FailureClassification,
    FailureType,
    RepairAttemptRecord,
    RepairAttemptResult,
    RepairContext,
    RepairDiffProposal,
    RepairLoopState,
    SelfCorrectionPolicy,
    StopCheck,
    StopEvent,
    StopReason,
    StopSignals,
    TestFailureInput,
)
from .policy import (
    check_stop_conditions,
    create_repair_loop_state,
    generate_decision_options,
    grant_additional_iterations,
    record_scope_approval,
    record_scope_request,
    reset_failure_tracking,
    update_state_after_diagnosis_timeout,
    update_state_after_diff_applied,
    update_state_after_diff_gen_timeout,
    update_state_after_failure,
)
from .runner import SelfCorrectionRunner

__all__ = [
    # Core classes
    "SelfCorrectionRunner",
    "ConsecutiveFailureTracker",
    "RepairCapabilities",
    # Classification
    "classify_failure",
    "normalize_output",
    "compute_signature",
    # Policy
    "create_repair_loop_state",
    "check_stop_conditions",
    "update_state_after_failure",
    "update_state_after_diff_applied",
    "update_state_after_diagnosis_timeout",
    "update_state_after_diff_gen_timeout",
    "generate_decision_options",
    "grant_additional_iterations",
    "reset_failure_tracking",
    "record_scope_request",
    "record_scope_approval",
    # Models
    "DEFAULT_SELF_CORRECTION_POLICY",
    "SelfCorrectionPolicy",
    "RepairLoopState",
    "FailureType",
    "FailureClassification",
    "TestFailureInput",
    "RepairDiffProposal",
    "RepairContext",
    "RepairAttemptRecord",
    "RepairAttemptResult",
    "StopReason",
    "StopSignals",
    "StopCheck",
    "StopEvent",
    "DecisionAction",
    "DecisionContext",
    "DecisionOption",
    "ApprovalDecision",
    "ApprovalResult",
]
