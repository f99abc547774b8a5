"""Data models for the self-correction repair loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, StrEnum

from ..core import defaults as D


class FailureType(Enum):
    """Categories of verification failures."""

    TEST_ASSERTION = "TEST_ASSERTION"
    TYPECHECK = "TYPECHECK"
    LINT = "LINT"
    BUILD_COMPILE = "BUILD_COMPILE"
    TOOLING_ENV = "TOOLING_ENV"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"

    @property
    def is_code_fixable(self) -> bool:
        """Whether a code change can plausibly fix this kind of failure."""
        return self in _CODE_FIXABLE


_CODE_FIXABLE = frozenset(
    {
        FailureType.TEST_ASSERTION,
        FailureType.TYPECHECK,
        FailureType.LINT,
        FailureType.BUILD_COMPILE,
    }
)


class StopReason(StrEnum):
    """Terminal conditions of the repair loop."""

    BUDGET_EXHAUSTED = "budget_exhausted"
    REPEATED_FAILURE = "repeated_failure"
    TOOLING_ENV_FAILURE = "tooling_env_failure"
    SCOPE_EXPANSION_DENIED = "scope_expansion_denied"
    EMPTY_DIFF_EXHAUSTED = "empty_diff_exhausted"
    DIAGNOSIS_TIMEOUT = "diagnosis_timeout"
    DIFFGEN_TIMEOUT = "diffgen_timeout"
    REPEATED_STALE_CONTEXT = "repeated_stale_context"
    VERIFICATION_PENDING = "verification_pending"
    MISSION_CANCELLED = "mission_cancelled"


class DecisionAction(StrEnum):
    """What picking a decision option asks the caller to do."""

    RETRY_TESTS = "retry_tests"
    RETRY_REPAIR = "retry_repair"
    APPROVE_SCOPE = "approve_scope"
    CHANGE_COMMAND = "change_command"
    STOP = "stop"
    EXPORT = "export"


class RepairAttemptResult(StrEnum):
    """Outcome of a single repair attempt."""

    APPLIED_AND_PASSED = "applied_and_passed"
    APPLIED_AND_FAILED = "applied_and_failed"
    APPLIED_NOT_VERIFIED = "applied_not_verified"
    NO_FIX_FOUND = "no_fix_found"
    APPLY_FAILED = "apply_failed"
    TIMEOUT_DIAGNOSIS = "timeout_diagnosis"
    TIMEOUT_DIFFGEN = "timeout_diffgen"
    SCOPE_DENIED = "scope_denied"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class SelfCorrectionPolicy:
    """Limits and behaviors of the repair loop."""

    max_repair_iterations: int = D.DEFAULT_MAX_REPAIR_ITERATIONS
    max_consecutive_same_failure: int = D.DEFAULT_MAX_CONSECUTIVE_SAME_FAILURE
    allow_auto_rerun_allowlisted_tests: bool = D.DEFAULT_ALLOW_AUTO_RERUN_ALLOWLISTED_TESTS
    stop_on_scope_expansion_denied: bool = D.DEFAULT_STOP_ON_SCOPE_EXPANSION_DENIED
    stop_on_repeated_stale_context: bool = D.DEFAULT_STOP_ON_REPEATED_STALE_CONTEXT
    timeout_retry_once: bool = D.DEFAULT_TIMEOUT_RETRY_ONCE
    repair_diagnosis_timeout_ms: int = D.DEFAULT_REPAIR_DIAGNOSIS_TIMEOUT_MS
    repair_diff_gen_timeout_ms: int = D.DEFAULT_REPAIR_DIFF_GEN_TIMEOUT_MS
    test_run_timeout_ms: int = D.DEFAULT_TEST_RUN_TIMEOUT_MS


DEFAULT_SELF_CORRECTION_POLICY = SelfCorrectionPolicy()


@dataclass(frozen=True)
class RepairLoopState:
    """Immutable snapshot of one task's repair loop.

    Only the functions in `repairloop.correction.policy` produce new states.
    """

    repair_remaining: int
    current_iteration: int = 0
    consecutive_same_failure: int = 0
    previous_failure_signature: str | None = None
    diagnosis_timeout_retried: bool = False
    diff_gen_timeout_retried: bool = False
    pending_scope_files: tuple[str, ...] = ()
    approved_scope_files: tuple[str, ...] = ()


@dataclass
class FailureClassification:
    """Typed, noise-normalized view of raw tool output."""

    failure_type: FailureType
    is_code_fixable: bool
    failure_signature: str
    summary: str
    file_references: list[str] = field(default_factory=list)
    normalized_key: str = ""
    failing_tests: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "failure_type": self.failure_type.value,
            "is_code_fixable": self.is_code_fixable,
            "failure_signature": self.failure_signature,
            "summary": self.summary,
            "file_references": list(self.file_references),
            "failing_tests": list(self.failing_tests),
        }

    def to_context(self) -> str:
        """Format classification for injection into prompts."""
        lines = [
            f"Failure Type: {self.failure_type.value}",
            f"Summary: {self.summary}",
            f"Signature: {self.failure_signature}",
        ]
        if self.failing_tests:
            lines.append("Failing Tests:")
            for test in self.failing_tests:
                lines.append(f"  - {test}")
        if self.file_references:
            lines.append("Referenced Files:")
            for path in self.file_references:
                lines.append(f"  - {path}")
        return "\n".join(lines)


@dataclass
class TestFailureInput:
    """Result of running the verification command."""

    __test__ = False  # not a pytest test class

    raw_output: str
    command: str
    exit_code: int
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


@dataclass
class RepairDiffProposal:
    """A candidate fix produced by the diff generator."""

    diff_id: str
    unified_diff: str
    files_affected: list[str] = field(default_factory=list)
    summary: str = ""
    fix_plan: str | None = None  # informational only

    @property
    def is_empty(self) -> bool:
        return not self.unified_diff or not self.unified_diff.strip()


@dataclass
class RepairAttemptRecord:
    """History entry for one repair attempt."""

    attempt: int
    result: RepairAttemptResult
    failure_signature: str | None = None
    diff_id: str | None = None
    files_changed: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_context(self) -> str:
        """Format attempt for injection into prompts."""
        line = f"Attempt #{self.attempt}: {self.result.value}"
        if self.diff_id:
            line += f" (diff {self.diff_id})"
        if self.files_changed:
            line += f" files: {', '.join(self.files_changed)}"
        return line


@dataclass
class RepairContext:
    """Everything diagnosis and diff generation get to see."""

    failure: FailureClassification
    allowed_files: list[str]
    history: list[RepairAttemptRecord] = field(default_factory=list)
    diagnosis: str | None = None
    failing_test_file: str | None = None
    referenced_source_files: list[str] = field(default_factory=list)
    config_files: list[str] = field(default_factory=list)

    def to_context(self) -> str:
        """Format the full repair context for a diagnosis or diff prompt."""
        sections = [self.failure.to_context()]
        if self.diagnosis:
            sections.append(f"Diagnosis:\n{self.diagnosis}")
        if self.failing_test_file:
            sections.append(f"Failing Test File: {self.failing_test_file}")
        if self.referenced_source_files:
            sections.append("Source Files:\n" + "\n".join(f"  - {f}" for f in self.referenced_source_files))
        if self.config_files:
            sections.append("Config Files:\n" + "\n".join(f"  - {f}" for f in self.config_files))
        sections.append("Allowed Files:\n" + "\n".join(f"  - {f}" for f in self.allowed_files))
        if self.history:
            sections.append("Previous Attempts:\n" + "\n".join(r.to_context() for r in self.history))
        return "\n\n".join(sections)


@dataclass(frozen=True)
class DecisionOption:
    """One button on the human decision menu."""

    id: str
    label: str
    action: DecisionAction
    description: str = ""
    is_default: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "action": self.action.value,
            "description": self.description,
            "is_default": self.is_default,
        }


@dataclass(frozen=True)
class DecisionContext:
    """Inputs that shape the decision menu."""

    repair_remaining: int = 0
    pending_scope_files: tuple[str, ...] = ()


@dataclass
class StopSignals:
    """Per-check observations that are not part of the loop state."""

    is_tooling_env_failure: bool = False
    scope_expansion_denied: bool = False
    empty_diff_count: int = 0
    diagnosis_timed_out: bool = False
    diff_gen_timed_out: bool = False
    stale_context_count: int = 0


@dataclass
class StopCheck:
    """Result of evaluating stop conditions."""

    should_stop: bool
    reason: StopReason | None = None
    message: str = ""


@dataclass
class StopEvent:
    """Terminal decision handed back to the human."""

    reason: StopReason
    decision_options: list[DecisionOption]
    message: str = ""
    iteration: int = 0
    remaining: int = 0
    failure_signature: str | None = None
    pending_scope_files: list[str] = field(default_factory=list)

    @property
    def default_option(self) -> DecisionOption | None:
        for option in self.decision_options:
            if option.is_default:
                return option
        return None

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "decision_options": [o.to_dict() for o in self.decision_options],
            "context": {
                "iteration": self.iteration,
                "remaining": self.remaining,
                "failure_signature": self.failure_signature,
                "pending_scope_files": list(self.pending_scope_files),
            },
        }
