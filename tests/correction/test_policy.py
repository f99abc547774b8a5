"""Tests for the pure self-correction policy functions."""

from __future__ import annotations

from dataclasses import FrozenInstanceError, replace

import pytest

from repairloop.correction.models import (
    DEFAULT_SELF_CORRECTION_POLICY,
    DecisionAction,
    DecisionContext,
    SelfCorrectionPolicy,
    StopReason,
    StopSignals,
)
from repairloop.correction.policy import (
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


@pytest.fixture
def policy():
    return DEFAULT_SELF_CORRECTION_POLICY


@pytest.fixture
def state(policy):
    return create_repair_loop_state(policy)


class TestCreateState:
    def test_defaults(self, state):
        assert state.repair_remaining == 2
        assert state.current_iteration == 0
        assert state.consecutive_same_failure == 0
        assert state.previous_failure_signature is None
        assert state.diagnosis_timeout_retried is False
        assert state.diff_gen_timeout_retried is False

    def test_uses_policy_budget(self):
        state = create_repair_loop_state(SelfCorrectionPolicy(max_repair_iterations=5))
        assert state.repair_remaining == 5

    def test_state_is_immutable(self, state):
        with pytest.raises(FrozenInstanceError):
            state.repair_remaining = 10


class TestCheckStopConditions:
    def test_no_stop_for_fresh_state(self, state, policy):
        result = check_stop_conditions(state, policy)
        assert result.should_stop is False
        assert result.reason is None

    def test_budget_exhausted(self, state, policy):
        result = check_stop_conditions(replace(state, repair_remaining=0), policy, StopSignals())
        assert result.should_stop is True
        assert result.reason == StopReason.BUDGET_EXHAUSTED

    def test_tooling_env_failure(self, state, policy):
        result = check_stop_conditions(state, policy, StopSignals(is_tooling_env_failure=True))
        assert result.reason == StopReason.TOOLING_ENV_FAILURE

    def test_scope_expansion_denied(self, state, policy):
        result = check_stop_conditions(state, policy, StopSignals(scope_expansion_denied=True))
        assert result.reason == StopReason.SCOPE_EXPANSION_DENIED

    def test_scope_denial_ignored_when_disabled(self, state):
        policy = SelfCorrectionPolicy(stop_on_scope_expansion_denied=False)
        result = check_stop_conditions(state, policy, StopSignals(scope_expansion_denied=True))
        assert result.should_stop is False

    def test_repeated_failure(self, state, policy):
        result = check_stop_conditions(replace(state, consecutive_same_failure=2), policy)
        assert result.reason == StopReason.REPEATED_FAILURE

    def test_one_empty_diff_does_not_stop(self, state, policy):
        assert check_stop_conditions(state, policy, StopSignals(empty_diff_count=1)).should_stop is False

    def test_two_empty_diffs_stop(self, state, policy):
        result = check_stop_conditions(state, policy, StopSignals(empty_diff_count=2))
        assert result.reason == StopReason.EMPTY_DIFF_EXHAUSTED

    def test_first_diagnosis_timeout_does_not_stop(self, state, policy):
        result = check_stop_conditions(state, policy, StopSignals(diagnosis_timed_out=True))
        assert result.should_stop is False

    def test_second_diagnosis_timeout_stops(self, state, policy):
        retried = replace(state, diagnosis_timeout_retried=True)
        result = check_stop_conditions(retried, policy, StopSignals(diagnosis_timed_out=True))
        assert result.reason == StopReason.DIAGNOSIS_TIMEOUT

    def test_second_diff_gen_timeout_stops(self, state, policy):
        retried = replace(state, diff_gen_timeout_retried=True)
        result = check_stop_conditions(retried, policy, StopSignals(diff_gen_timed_out=True))
        assert result.reason == StopReason.DIFFGEN_TIMEOUT

    def test_repeated_stale_context(self, state, policy):
        result = check_stop_conditions(state, policy, StopSignals(stale_context_count=2))
        assert result.reason == StopReason.REPEATED_STALE_CONTEXT

    def test_stale_context_ignored_when_disabled(self, state):
        policy = SelfCorrectionPolicy(stop_on_repeated_stale_context=False)
        result = check_stop_conditions(state, policy, StopSignals(stale_context_count=5))
        assert result.should_stop is False

    def test_tooling_failure_preempts_budget(self, state, policy):
        exhausted = replace(state, repair_remaining=0, consecutive_same_failure=3)
        result = check_stop_conditions(exhausted, policy, StopSignals(is_tooling_env_failure=True))
        assert result.reason == StopReason.TOOLING_ENV_FAILURE

    def test_scope_denial_preempts_budget(self, state, policy):
        exhausted = replace(state, repair_remaining=0)
        result = check_stop_conditions(exhausted, policy, StopSignals(scope_expansion_denied=True))
        assert result.reason == StopReason.SCOPE_EXPANSION_DENIED

    def test_budget_preempts_repeated_failure(self, state, policy):
        both = replace(state, repair_remaining=0, consecutive_same_failure=2)
        assert check_stop_conditions(both, policy).reason == StopReason.BUDGET_EXHAUSTED

    def test_repeated_failure_preempts_empty_diffs(self, state, policy):
        repeated = replace(state, consecutive_same_failure=2)
        result = check_stop_conditions(repeated, policy, StopSignals(empty_diff_count=2))
        assert result.reason == StopReason.REPEATED_FAILURE

    def test_every_stop_has_message(self, state, policy):
        result = check_stop_conditions(replace(state, repair_remaining=0), policy)
        assert result.message


class TestStateTransitions:
    def test_failure_tracking(self, state):
        state = update_state_after_failure(state, "sig_a")
        assert state.consecutive_same_failure == 1
        assert state.previous_failure_signature == "sig_a"

        state = update_state_after_failure(state, "sig_a")
        assert state.consecutive_same_failure == 2

        state = update_state_after_failure(state, "sig_b")
        assert state.consecutive_same_failure == 1
        assert state.previous_failure_signature == "sig_b"

    def test_failure_does_not_spend_budget(self, state):
        assert update_state_after_failure(state, "sig").repair_remaining == state.repair_remaining

    def test_diff_applied_spends_budget(self, state):
        first = update_state_after_diff_applied(state)
        second = update_state_after_diff_applied(first)
        assert (state.repair_remaining, first.repair_remaining, second.repair_remaining) == (2, 1, 0)
        assert (state.current_iteration, first.current_iteration, second.current_iteration) == (0, 1, 2)

    def test_third_attempt_refused(self, state, policy):
        state = update_state_after_diff_applied(update_state_after_diff_applied(state))
        assert check_stop_conditions(state, policy).reason == StopReason.BUDGET_EXHAUSTED

    def test_diff_applied_resets_timeout_flags(self, state):
        retried = replace(state, diagnosis_timeout_retried=True, diff_gen_timeout_retried=True)
        new_state = update_state_after_diff_applied(retried)
        assert new_state.diagnosis_timeout_retried is False
        assert new_state.diff_gen_timeout_retried is False

    def test_transitions_do_not_mutate_input(self, state):
        update_state_after_diff_applied(state)
        update_state_after_failure(state, "sig")
        assert state == create_repair_loop_state(DEFAULT_SELF_CORRECTION_POLICY)


class TestTimeouts:
    def test_diagnosis_timeout_allows_one_retry(self, state, policy):
        new_state, should_retry = update_state_after_diagnosis_timeout(state, policy)
        assert should_retry is True
        assert new_state.diagnosis_timeout_retried is True
        assert new_state.repair_remaining == state.repair_remaining

    def test_diagnosis_timeout_no_second_retry(self, state, policy):
        retried = replace(state, diagnosis_timeout_retried=True)
        new_state, should_retry = update_state_after_diagnosis_timeout(retried, policy)
        assert should_retry is False
        assert new_state == retried

    def test_diff_gen_timeout_allows_one_retry(self, state, policy):
        new_state, should_retry = update_state_after_diff_gen_timeout(state, policy)
        assert should_retry is True
        assert new_state.diff_gen_timeout_retried is True

    def test_retry_disabled(self, state):
        policy = SelfCorrectionPolicy(timeout_retry_once=False)
        new_state, should_retry = update_state_after_diagnosis_timeout(state, policy)
        assert should_retry is False
        assert new_state.diagnosis_timeout_retried is True


class TestHumanDecisions:
    def test_grant_additional_iterations(self, state):
        exhausted = replace(state, repair_remaining=0)
        assert grant_additional_iterations(exhausted).repair_remaining == 1
        assert grant_additional_iterations(exhausted, 3).repair_remaining == 3

    def test_grant_requires_positive_count(self, state):
        with pytest.raises(ValueError):
            grant_additional_iterations(state, 0)

    def test_reset_failure_tracking(self, state):
        repeated = replace(state, consecutive_same_failure=2, previous_failure_signature="sig")
        reset = reset_failure_tracking(repeated)
        assert reset.consecutive_same_failure == 0
        assert reset.previous_failure_signature is None
        assert reset.repair_remaining == state.repair_remaining

    def test_scope_request_and_approval(self, state):
        state = record_scope_request(state, ["a.py", "b.py", "a.py"])
        assert state.pending_scope_files == ("a.py", "b.py")

        state = record_scope_approval(state, ["a.py"])
        assert state.approved_scope_files == ("a.py",)
        assert state.pending_scope_files == ("b.py",)


class TestGenerateDecisionOptions:
    @pytest.mark.parametrize("reason", list(StopReason))
    def test_every_reason_offers_stop_and_export(self, reason):
        options = generate_decision_options(reason, DecisionContext(repair_remaining=0))
        actions = [o.action for o in options]
        assert DecisionAction.STOP in actions
        assert DecisionAction.EXPORT in actions
        assert [o.id for o in options][-2:] == ["stop", "export"]

    @pytest.mark.parametrize("reason", list(StopReason))
    def test_exactly_one_default(self, reason):
        options = generate_decision_options(reason, DecisionContext(repair_remaining=1))
        assert sum(o.is_default for o in options) == 1

    def test_budget_exhausted_offers_extension(self):
        options = generate_decision_options(
            StopReason.BUDGET_EXHAUSTED, DecisionContext(repair_remaining=0)
        )
        ids = [o.id for o in options]
        assert "retry_repair_one_more" in ids
        assert "retry_tests" in ids
        assert any(o.action == DecisionAction.STOP for o in options)

    def test_repeated_failure_offers_new_approach(self):
        ids = [o.id for o in generate_decision_options(StopReason.REPEATED_FAILURE)]
        assert ids == ["retry_repair_new_approach", "change_command", "stop", "export"]

    def test_tooling_failure_defaults_to_change_command(self):
        options = generate_decision_options(
            StopReason.TOOLING_ENV_FAILURE, DecisionContext(repair_remaining=2)
        )
        default = next(o for o in options if o.is_default)
        assert default.action == DecisionAction.CHANGE_COMMAND

    def test_scope_approval_only_with_pending_files(self):
        with_files = generate_decision_options(
            StopReason.SCOPE_EXPANSION_DENIED,
            DecisionContext(repair_remaining=1, pending_scope_files=("src/file.ts",)),
        )
        without = generate_decision_options(
            StopReason.SCOPE_EXPANSION_DENIED, DecisionContext(repair_remaining=1)
        )
        assert any(o.action == DecisionAction.APPROVE_SCOPE for o in with_files)
        assert not any(o.action == DecisionAction.APPROVE_SCOPE for o in without)

    def test_scope_approval_previews_files(self):
        files = ("a.py", "b.py", "c.py", "d.py")
        options = generate_decision_options(
            StopReason.SCOPE_EXPANSION_DENIED, DecisionContext(pending_scope_files=files)
        )
        approve = options[0]
        assert approve.label == "Approve scope expansion (4 files)"
        assert approve.description == "Allow access to: a.py, b.py, c.py..."

    @pytest.mark.parametrize(
        "reason, expected",
        [
            (StopReason.EMPTY_DIFF_EXHAUSTED, "retry_repair_more_context"),
            (StopReason.DIAGNOSIS_TIMEOUT, "retry_repair"),
            (StopReason.DIFFGEN_TIMEOUT, "retry_repair"),
            (StopReason.REPEATED_STALE_CONTEXT, "retry_repair_fresh_context"),
            (StopReason.VERIFICATION_PENDING, "retry_tests"),
        ],
    )
    def test_reason_specific_option(self, reason, expected):
        assert generate_decision_options(reason)[0].id == expected

    def test_cancelled_offers_resume_only_with_budget(self):
        with_budget = generate_decision_options(
            StopReason.MISSION_CANCELLED, DecisionContext(repair_remaining=1)
        )
        without = generate_decision_options(
            StopReason.MISSION_CANCELLED, DecisionContext(repair_remaining=0)
        )
        assert with_budget[0].id == "retry_repair"
        assert [o.id for o in without] == ["stop", "export"]

    def test_deterministic(self):
        context = DecisionContext(repair_remaining=1, pending_scope_files=("x.py",))
        assert generate_decision_options(
            StopReason.SCOPE_EXPANSION_DENIED, context
        ) == generate_decision_options(StopReason.SCOPE_EXPANSION_DENIED, context)
