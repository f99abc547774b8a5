"""Self-correction policy: pure state transitions and stop conditions.

Every function here takes a `RepairLoopState` and returns a new one; nothing
mutates state in place. `update_state_after_diff_applied` is the only
transition that spends repair budget.
"""

from __future__ import annotations

from dataclasses import replace

from ..core import defaults as D
from .models import (
    DecisionAction,
    DecisionContext,
    DecisionOption,
    RepairLoopState,
    SelfCorrectionPolicy,
    StopCheck,
    StopReason,
    StopSignals,
)


def create_repair_loop_state(policy: SelfCorrectionPolicy) -> RepairLoopState:
    """Fresh state for a new task: full budget, counters zeroed."""
    return RepairLoopState(repair_remaining=policy.max_repair_iterations)


def check_stop_conditions(
    state: RepairLoopState,
    policy: SelfCorrectionPolicy,
    signals: StopSignals | None = None,
) -> StopCheck:
    """Decide whether the loop must stop, in strict priority order.

    Environmental conditions come before budget checks. Cancellation is
    handled by the caller.

    Args:
        state: Current loop state.
        policy: Active policy.
        signals: Observations from the stage that just ran.

    Returns:
        The first matching stop condition, or `should_stop=False`.
    """
    signals = signals or StopSignals()

    if signals.is_tooling_env_failure:
        return StopCheck(
            True,
            StopReason.TOOLING_ENV_FAILURE,
            "Environment or tooling issue detected - cannot fix via code changes",
        )

    if signals.scope_expansion_denied and policy.stop_on_scope_expansion_denied:
        return StopCheck(
            True,
            StopReason.SCOPE_EXPANSION_DENIED,
            "Scope expansion was denied - cannot access required files",
        )

    if state.repair_remaining <= 0:
        return StopCheck(
            True,
            StopReason.BUDGET_EXHAUSTED,
            f"Repair budget exhausted after {state.current_iteration} iterations",
        )

    if state.consecutive_same_failure >= policy.max_consecutive_same_failure:
        return StopCheck(
            True,
            StopReason.REPEATED_FAILURE,
            f"Same failure occurred {state.consecutive_same_failure} consecutive times",
        )

    if signals.empty_diff_count >= D.EMPTY_DIFF_LIMIT:
        return StopCheck(
            True,
            StopReason.EMPTY_DIFF_EXHAUSTED,
            "No fix could be generated after multiple attempts",
        )

    if signals.diagnosis_timed_out and state.diagnosis_timeout_retried:
        return StopCheck(True, StopReason.DIAGNOSIS_TIMEOUT, "Diagnosis timed out after retry")

    if signals.diff_gen_timed_out and state.diff_gen_timeout_retried:
        return StopCheck(True, StopReason.DIFFGEN_TIMEOUT, "Diff generation timed out after retry")

    if (
        signals.stale_context_count >= D.STALE_CONTEXT_LIMIT
        and policy.stop_on_repeated_stale_context
    ):
        return StopCheck(
            True,
            StopReason.REPEATED_STALE_CONTEXT,
            "Proposed fixes no longer apply to the current files",
        )

    return StopCheck(False)


def update_state_after_failure(state: RepairLoopState, signature: str) -> RepairLoopState:
    """Record an observed failure signature."""
    is_repeat = signature == state.previous_failure_signature
    return replace(
        state,
        consecutive_same_failure=state.consecutive_same_failure + 1 if is_repeat else 1,
        previous_failure_signature=signature,
    )


def update_state_after_diff_applied(state: RepairLoopState) -> RepairLoopState:
    """Spend one unit of budget for a cleanly applied diff."""
    return replace(
        state,
        repair_remaining=state.repair_remaining - 1,
        current_iteration=state.current_iteration + 1,
        diagnosis_timeout_retried=False,
        diff_gen_timeout_retried=False,
    )


def update_state_after_diagnosis_timeout(
    state: RepairLoopState, policy: SelfCorrectionPolicy
) -> tuple[RepairLoopState, bool]:
    """Consume the free diagnosis retry, if any.

    Returns:
        Tuple of (new state, should_retry). When should_retry is False the
        retry flag is set, so the next stop check ends the loop.
    """
    if state.diagnosis_timeout_retried:
        return state, False
    return replace(state, diagnosis_timeout_retried=True), policy.timeout_retry_once


def update_state_after_diff_gen_timeout(
    state: RepairLoopState, policy: SelfCorrectionPolicy
) -> tuple[RepairLoopState, bool]:
    """Consume the free diff-generation retry, if any."""
    if state.diff_gen_timeout_retried:
        return state, False
    return replace(state, diff_gen_timeout_retried=True), policy.timeout_retry_once


def grant_additional_iterations(state: RepairLoopState, count: int = 1) -> RepairLoopState:
    """Human-approved budget extension."""
    if count < 1:
        raise ValueError("count must be >= 1")
    return replace(state, repair_remaining=max(state.repair_remaining, 0) + count)


def reset_failure_tracking(state: RepairLoopState) -> RepairLoopState:
    """Forget the repeat streak so a new approach can be tried."""
    return replace(state, consecutive_same_failure=0, previous_failure_signature=None)


def record_scope_request(state: RepairLoopState, files: list[str]) -> RepairLoopState:
    """Remember files waiting on a scope decision."""
    return replace(state, pending_scope_files=tuple(dict.fromkeys(files)))


def record_scope_approval(state: RepairLoopState, files: list[str]) -> RepairLoopState:
    """Move approved files from pending into the approved scope."""
    approved = tuple(dict.fromkeys([*state.approved_scope_files, *files]))
    pending = tuple(f for f in state.pending_scope_files if f not in approved)
    return replace(state, approved_scope_files=approved, pending_scope_files=pending)


def _scope_preview(files: tuple[str, ...]) -> str:
    preview = ", ".join(files[:3])
    return preview + ("..." if len(files) > 3 else "")


def generate_decision_options(
    stop_reason: StopReason,
    context: DecisionContext | None = None,
) -> list[DecisionOption]:
    """Deterministic decision menu for a stop reason.

    Every menu ends with `stop` and `export`.
    """
    context = context or DecisionContext()
    options: list[DecisionOption] = []

    if stop_reason == StopReason.BUDGET_EXHAUSTED:
        options.append(
            DecisionOption(
                id="retry_repair_one_more",
                label="Try one more repair",
                action=DecisionAction.RETRY_REPAIR,
                description="Allow one additional repair attempt",
            )
        )
        options.append(
            DecisionOption(
                id="retry_tests",
                label="Retry tests",
                action=DecisionAction.RETRY_TESTS,
                description="Run the same tests again",
            )
        )

    elif stop_reason == StopReason.REPEATED_FAILURE:
        options.append(
            DecisionOption(
                id="retry_repair_new_approach",
                label="Try different approach",
                action=DecisionAction.RETRY_REPAIR,
                description="Allow repair with fresh context",
            )
        )
        options.append(
            DecisionOption(
                id="change_command",
                label="Change test command",
                action=DecisionAction.CHANGE_COMMAND,
                description="Select a different test command",
            )
        )

    elif stop_reason == StopReason.SCOPE_EXPANSION_DENIED:
        pending = tuple(context.pending_scope_files)
        if pending:
            options.append(
                DecisionOption(
                    id="approve_scope",
                    label=f"Approve scope expansion ({len(pending)} files)",
                    action=DecisionAction.APPROVE_SCOPE,
                    description=f"Allow access to: {_scope_preview(pending)}",
                )
            )
        options.append(
            DecisionOption(
                id="retry_repair",
                label="Try repair within current scope",
                action=DecisionAction.RETRY_REPAIR,
            )
        )

    elif stop_reason == StopReason.TOOLING_ENV_FAILURE:
        options.append(
            DecisionOption(
                id="change_command",
                label="Change test command",
                action=DecisionAction.CHANGE_COMMAND,
                description="Select a working command",
                is_default=True,
            )
        )
        options.append(
            DecisionOption(
                id="retry_tests",
                label="Retry tests",
                action=DecisionAction.RETRY_TESTS,
                description="Try the same command again (after fixing environment)",
            )
        )

    elif stop_reason in (StopReason.DIAGNOSIS_TIMEOUT, StopReason.DIFFGEN_TIMEOUT):
        options.append(
            DecisionOption(
                id="retry_repair",
                label="Retry repair",
                action=DecisionAction.RETRY_REPAIR,
                description="Try again (infrastructure may have recovered)",
            )
        )

    elif stop_reason == StopReason.EMPTY_DIFF_EXHAUSTED:
        options.append(
            DecisionOption(
                id="retry_repair_more_context",
                label="Retry with more context",
                action=DecisionAction.RETRY_REPAIR,
                description="Try repair with expanded context",
            )
        )

    elif stop_reason == StopReason.REPEATED_STALE_CONTEXT:
        options.append(
            DecisionOption(
                id="retry_repair_fresh_context",
                label="Retry with fresh file contents",
                action=DecisionAction.RETRY_REPAIR,
                description="Regenerate the fix against the current workspace",
            )
        )

    elif stop_reason == StopReason.VERIFICATION_PENDING:
        options.append(
            DecisionOption(
                id="retry_tests",
                label="Run tests",
                action=DecisionAction.RETRY_TESTS,
                description="Re-run the test command to verify the applied fix",
                is_default=True,
            )
        )

    elif stop_reason == StopReason.MISSION_CANCELLED and context.repair_remaining > 0:
        options.append(
            DecisionOption(
                id="retry_repair",
                label=f"Resume repair ({context.repair_remaining} remaining)",
                action=DecisionAction.RETRY_REPAIR,
            )
        )

    has_default = any(o.is_default for o in options)
    options.append(
        DecisionOption(
            id="stop",
            label="Stop mission",
            action=DecisionAction.STOP,
            description="End this mission without further attempts",
            is_default=not has_default,
        )
    )
    options.append(
        DecisionOption(
            id="export",
            label="Export run",
            action=DecisionAction.EXPORT,
            description="Export the execution log for analysis",
        )
    )

    return options
