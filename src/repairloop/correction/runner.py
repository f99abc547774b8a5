"""SelfCorrectionRunner - bounded repair loop for a failing verification step.

One runner owns one task's `RepairLoopState`. Each iteration runs strictly in
order:

    classify -> diagnose -> generate diff -> (approve scope) -> apply -> re-verify

and either loops on a new failure, returns None when re-verification passes,
or returns a `StopEvent` carrying the human decision menu.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import replace
from pathlib import PurePath
from typing import Any, TypeVar

from ..events import Event, EventType
from ..exceptions import MissingCapabilityError, RepairLoopError
from .classifier import ConsecutiveFailureTracker, classify_failure, tooling_failure
from .collaborators import (
    ApprovalDecision,
    ApprovalManager,
    DiffApplicator,
    EventBus,
    RepairCapabilities,
    RepairDiffGenerator,
    TestRunner,
)
from .models import (
    DEFAULT_SELF_CORRECTION_POLICY,
    DecisionContext,
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

logger = logging.getLogger(__name__)

T = TypeVar("T")

APPROVAL_MODE = "MISSION"
APPROVAL_STAGE = "repair"
SCOPE_APPROVAL_TYPE = "scope_expansion"

TEST_RUN_TIMEOUT_EXIT_CODE = 124

# Config files worth showing the diff generator, per failure type
_CONFIG_FILES: dict[FailureType, list[str]] = {
    FailureType.TEST_ASSERTION: ["pytest.ini", "jest.config.js", "vitest.config.ts"],
    FailureType.TYPECHECK: ["tsconfig.json", "mypy.ini", "pyproject.toml"],
    FailureType.LINT: ["ruff.toml", ".eslintrc.json", "eslint.config.js"],
    FailureType.BUILD_COMPILE: ["package.json", "pyproject.toml"],
}


def _is_test_file(path: str) -> bool:
    name = PurePath(path).name
    return (
        ".test." in name
        or ".spec." in name
        or name.startswith("test_")
        or name.endswith("_test.py")
    )


def _is_approved(result: Any) -> bool:
    if isinstance(result, dict):
        decision = result.get("decision")
    else:
        decision = getattr(result, "decision", None)
    return decision == ApprovalDecision.APPROVED


class _StageTimeout(Exception):
    """A diagnosis or diff-generation call exceeded its time limit."""


class SelfCorrectionRunner:
    """Runs the bounded self-correction loop for a single task."""

    def __init__(
        self,
        task_id: str,
        capabilities: RepairCapabilities,
        *,
        mission_id: str | None = None,
        approval_manager: ApprovalManager | None = None,
        event_bus: EventBus | None = None,
        policy: SelfCorrectionPolicy = DEFAULT_SELF_CORRECTION_POLICY,
    ):
        """Initialize the runner.

        Args:
            task_id: Task the loop belongs to; stamped on every event.
            capabilities: Test runner, diff generator, diff applicator and
                optional diagnoser.
            mission_id: Mission the repair belongs to, if any.
            approval_manager: Human approval gate for scope expansion. Without
                one, every scope expansion is treated as denied.
            event_bus: Sink for observability events.
            policy: Limits and behaviors of the loop.
        """
        self.task_id = task_id
        self.mission_id = mission_id
        self.policy = policy
        self._capabilities = capabilities
        self._approval_manager = approval_manager
        self._event_bus = event_bus

        self._state: RepairLoopState = create_repair_loop_state(policy)
        self._tracker = ConsecutiveFailureTracker()
        self._history: list[RepairAttemptRecord] = []
        self._empty_diff_count = 0
        self._stale_context_count = 0
        self._cancel_event = asyncio.Event()
        self._event_tasks: set[asyncio.Task[None]] = set()

    # =========================================================================
    # Public API
    # =========================================================================

    async def start_repair_loop(
        self,
        initial_failure: TestFailureInput,
        allowed_files: list[str],
        test_command: str,
    ) -> StopEvent | None:
        """Start a fresh repair loop for a failing verification run.

        Args:
            initial_failure: The failing run to repair.
            allowed_files: Files the repair may touch without approval.
            test_command: Approved command used for re-verification.

        Returns:
            None if re-verification passes, otherwise the stop event.
        """
        if self.is_cancelled:
            return self._finish(StopReason.MISSION_CANCELLED, "Repair loop was cancelled")

        self._state = create_repair_loop_state(self.policy)
        self._tracker.reset()
        self._history.clear()
        self._empty_diff_count = 0
        self._stale_context_count = 0

        logger.info(
            "Starting repair loop for task %s (budget=%d, command=%s)",
            self.task_id,
            self._state.repair_remaining,
            test_command,
        )
        classification = self._observe(initial_failure)
        return await self._run(classification, list(allowed_files), test_command)

    async def continue_repair_loop(
        self,
        failure: TestFailureInput,
        allowed_files: list[str],
        test_command: str,
    ) -> StopEvent | None:
        """Resume after a human decision without resetting budget or history.

        `failure` is usually the run the loop stopped on. It is not counted as
        a repeat when its signature matches the last recorded one.
        """
        if self.is_cancelled:
            return self._finish(StopReason.MISSION_CANCELLED, "Repair loop was cancelled")

        self._empty_diff_count = 0
        self._stale_context_count = 0

        logger.info(
            "Resuming repair loop for task %s (remaining=%d)",
            self.task_id,
            self._state.repair_remaining,
        )
        classification = self._observe(failure, resume=True)
        return await self._run(classification, list(allowed_files), test_command)

    def cancel(self) -> None:
        """Request cooperative cancellation. The current stage finishes first."""
        if not self._cancel_event.is_set():
            logger.info("Cancellation requested for task %s", self.task_id)
        self._cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def get_state(self) -> RepairLoopState:
        return self._state

    @property
    def history(self) -> list[RepairAttemptRecord]:
        return list(self._history)

    def grant_additional_iterations(self, count: int = 1) -> None:
        """Extend the budget after a human chose to keep going."""
        self._state = grant_additional_iterations(self._state, count)
        logger.info(
            "Granted %d more repair iteration(s) for task %s (remaining=%d)",
            count,
            self.task_id,
            self._state.repair_remaining,
        )

    def reset_failure_tracking(self) -> None:
        """Forget the repeat streak after a human asked for a new approach."""
        self._state = reset_failure_tracking(self._state)
        self._tracker.reset()

    def approve_scope(self, files: list[str] | None = None) -> None:
        """Approve pending scope files (all of them when `files` is None)."""
        approved = list(self._state.pending_scope_files) if files is None else files
        self._state = record_scope_approval(self._state, approved)
        logger.info("Scope approved for task %s: %s", self.task_id, ", ".join(approved))

    def set_test_runner(self, run_test: TestRunner | None) -> None:
        self._capabilities = self._capabilities.with_test_runner(run_test)

    def set_repair_diff_generator(self, generate_diff: RepairDiffGenerator | None) -> None:
        self._capabilities = self._capabilities.with_diff_generator(generate_diff)

    def set_diff_applicator(self, apply_diff: DiffApplicator | None) -> None:
        self._capabilities = self._capabilities.with_diff_applicator(apply_diff)

    async def wait_for_events(self) -> None:
        """Wait until every published event has been delivered."""
        while self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    # =========================================================================
    # Loop
    # =========================================================================

    async def _run(
        self,
        classification: FailureClassification,
        allowed_files: list[str],
        test_command: str,
    ) -> StopEvent | None:
        while True:
            if self.is_cancelled:
                return self._finish(StopReason.MISSION_CANCELLED, "Repair loop was cancelled")

            check = check_stop_conditions(
                self._state,
                self.policy,
                self._signals(is_tooling_env_failure=not classification.is_code_fixable),
            )
            if check.should_stop:
                if check.reason == StopReason.REPEATED_FAILURE:
                    self._publish(
                        EventType.REPEATED_FAILURE_DETECTED,
                        failure_signature=classification.failure_signature,
                        occurrences=self._tracker.count,
                    )
                if check.reason == StopReason.TOOLING_ENV_FAILURE:
                    return self._finish_check(check, message=classification.summary)
                return self._finish_check(check)

            iteration = self._state.current_iteration + 1
            started = time.monotonic()
            self._publish(
                EventType.REPAIR_ATTEMPT_STARTED,
                attempt=iteration,
                remaining=self._state.repair_remaining,
                failure_signature=classification.failure_signature,
            )
            logger.debug(
                "Task %s: repair attempt %d (remaining=%d, signature=%s)",
                self.task_id,
                iteration,
                self._state.repair_remaining,
                classification.failure_signature,
            )
            context = self._build_context(classification, allowed_files)

            # Diagnose
            try:
                context.diagnosis = await self._diagnose(context)
            except _StageTimeout:
                self._record(iteration, RepairAttemptResult.TIMEOUT_DIAGNOSIS, classification, started)
                stop = self._handle_stage_timeout(diff_gen=False)
                if stop is not None:
                    return stop
                continue
            except Exception as e:
                return self._tooling_stop("diagnosis", e, iteration, started)

            if self.is_cancelled:
                self._record(iteration, RepairAttemptResult.CANCELLED, classification, started)
                continue

            # Generate diff
            try:
                proposal = await self._generate_diff(context)
            except _StageTimeout:
                self._record(iteration, RepairAttemptResult.TIMEOUT_DIFFGEN, classification, started)
                stop = self._handle_stage_timeout(diff_gen=True)
                if stop is not None:
                    return stop
                continue
            except Exception as e:
                return self._tooling_stop("diff generation", e, iteration, started)

            if proposal is None or proposal.is_empty:
                self._empty_diff_count += 1
                logger.info(
                    "No fix generated for task %s (%d in a row)", self.task_id, self._empty_diff_count
                )
                self._record(iteration, RepairAttemptResult.NO_FIX_FOUND, classification, started)
                continue

            self._publish(
                EventType.DIFF_PROPOSED,
                diff_id=proposal.diff_id,
                kind="repair",
                attempt=iteration,
                files_affected=list(proposal.files_affected),
                summary=proposal.summary,
                fix_plan=proposal.fix_plan,
            )

            if self.is_cancelled:
                self._record(iteration, RepairAttemptResult.CANCELLED, classification, started, proposal)
                continue

            # Scope
            out_of_scope = [
                f
                for f in dict.fromkeys(proposal.files_affected)
                if f not in allowed_files and f not in self._state.approved_scope_files
            ]
            if out_of_scope:
                try:
                    approved = await self._request_scope_expansion(out_of_scope, proposal, iteration)
                except Exception as e:
                    return self._tooling_stop("scope approval", e, iteration, started)

                if approved is None:
                    self._record(iteration, RepairAttemptResult.CANCELLED, classification, started, proposal)
                    continue

                if not approved:
                    self._record(iteration, RepairAttemptResult.SCOPE_DENIED, classification, started, proposal)
                    if self.policy.stop_on_scope_expansion_denied:
                        check = check_stop_conditions(
                            self._state, self.policy, self._signals(scope_expansion_denied=True)
                        )
                        return self._finish_check(check)
                    self._empty_diff_count += 1
                    continue

                self._state = record_scope_approval(self._state, out_of_scope)

            # Apply
            try:
                applied = await self._apply_diff(proposal)
            except Exception as e:
                return self._tooling_stop("diff application", e, iteration, started)

            if not applied:
                self._record(iteration, RepairAttemptResult.APPLY_FAILED, classification, started, proposal)
                if self.policy.stop_on_repeated_stale_context:
                    self._stale_context_count += 1
                else:
                    self._empty_diff_count += 1
                logger.info("Diff %s did not apply cleanly for task %s", proposal.diff_id, self.task_id)
                continue

            self._state = update_state_after_diff_applied(self._state)
            self._empty_diff_count = 0
            self._stale_context_count = 0
            self._publish(
                EventType.DIFF_APPLIED,
                diff_id=proposal.diff_id,
                files_changed=list(proposal.files_affected),
                remaining=self._state.repair_remaining,
            )

            if self.is_cancelled:
                self._record(iteration, RepairAttemptResult.CANCELLED, classification, started, proposal)
                continue

            if not self.policy.allow_auto_rerun_allowlisted_tests:
                self._record(
                    iteration, RepairAttemptResult.APPLIED_NOT_VERIFIED, classification, started, proposal
                )
                return self._finish(
                    StopReason.VERIFICATION_PENDING,
                    "Fix applied; re-run the tests to verify it",
                )

            # Re-verify
            try:
                result = await self._run_tests(test_command)
            except Exception as e:
                return self._tooling_stop("test run", e, iteration, started)

            if result is None or result.passed:
                self._record(
                    iteration, RepairAttemptResult.APPLIED_AND_PASSED, classification, started, proposal
                )
                self._publish(
                    EventType.REPAIR_LOOP_SUCCEEDED,
                    attempts=self._state.current_iteration,
                    remaining=self._state.repair_remaining,
                    diff_id=proposal.diff_id,
                )
                logger.info(
                    "Repair loop for task %s succeeded after %d iteration(s)",
                    self.task_id,
                    self._state.current_iteration,
                )
                return None

            self._record(iteration, RepairAttemptResult.APPLIED_AND_FAILED, classification, started, proposal)
            classification = self._observe(result)

    # =========================================================================
    # Stages
    # =========================================================================

    async def _with_timeout(self, call: Awaitable[T], timeout_ms: int) -> T:
        """Await a stage call under its time limit.

        Only expiry of this limit becomes `_StageTimeout`; a `TimeoutError`
        raised by the collaborator itself propagates unchanged.
        """
        deadline = asyncio.timeout(timeout_ms / 1000)
        try:
            async with deadline:
                return await call
        except TimeoutError as e:
            if deadline.expired():
                raise _StageTimeout() from e
            raise

    async def _diagnose(self, context: RepairContext) -> str | None:
        diagnose = self._capabilities.diagnose
        if diagnose is None:
            return None
        logger.debug("Task %s: diagnosing", self.task_id)
        return await self._with_timeout(diagnose(context), self.policy.repair_diagnosis_timeout_ms)

    async def _generate_diff(self, context: RepairContext) -> RepairDiffProposal | None:
        generate_diff = self._capabilities.generate_diff
        if generate_diff is None:
            raise MissingCapabilityError("repair diff generator")
        logger.debug("Task %s: generating diff", self.task_id)
        return await self._with_timeout(generate_diff(context), self.policy.repair_diff_gen_timeout_ms)

    async def _apply_diff(self, proposal: RepairDiffProposal) -> bool:
        apply_diff = self._capabilities.apply_diff
        if apply_diff is None:
            raise MissingCapabilityError("diff applicator")
        logger.debug("Task %s: applying diff %s", self.task_id, proposal.diff_id)
        return bool(await apply_diff(proposal))

    async def _run_tests(self, test_command: str) -> TestFailureInput | None:
        run_test = self._capabilities.run_test
        if run_test is None:
            raise MissingCapabilityError("test runner")
        logger.debug("Task %s: re-running %s", self.task_id, test_command)
        timeout_ms = self.policy.test_run_timeout_ms
        try:
            return await self._with_timeout(run_test(test_command), timeout_ms)
        except _StageTimeout:
            logger.warning("Test run for task %s timed out after %dms", self.task_id, timeout_ms)
            return TestFailureInput(
                raw_output=f"Verification run timed out after {timeout_ms} ms",
                command=test_command,
                exit_code=TEST_RUN_TIMEOUT_EXIT_CODE,
            )

    async def _request_scope_expansion(
        self,
        files: list[str],
        proposal: RepairDiffProposal,
        iteration: int,
    ) -> bool | None:
        """Ask a human to widen the scope.

        Returns:
            True if approved, False if denied, None if the loop was cancelled
            while waiting.
        """
        self._state = record_scope_request(self._state, files)
        self._publish(
            EventType.SCOPE_EXPANSION_REQUESTED,
            files=list(files),
            reason="repair_diff_out_of_scope",
            diff_id=proposal.diff_id,
            attempt=iteration,
        )

        if self._approval_manager is None:
            logger.warning(
                "No approval manager for task %s; denying scope expansion to %s",
                self.task_id,
                ", ".join(files),
            )
            return False

        preview = ", ".join(files[:3]) + ("..." if len(files) > 3 else "")
        request = self._approval_manager.request_approval(
            self.task_id,
            APPROVAL_MODE,
            APPROVAL_STAGE,
            SCOPE_APPROVAL_TYPE,
            f"Repair diff touches out-of-scope files: {preview}",
            {
                "files": list(files),
                "reason": "repair_diff_out_of_scope",
                "diff_id": proposal.diff_id,
                "mission_id": self.mission_id,
                "attempt": iteration,
            },
        )
        approval = asyncio.ensure_future(request)
        cancelled = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({approval, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not approval.done():
                approval.cancel()

        if approval not in done:
            logger.info("Scope approval for task %s abandoned on cancel", self.task_id)
            return None

        approved = _is_approved(approval.result())
        logger.info(
            "Scope expansion for task %s %s", self.task_id, "approved" if approved else "denied"
        )
        return approved

    # =========================================================================
    # Helpers
    # =========================================================================

    def _observe(self, failure: TestFailureInput, resume: bool = False) -> FailureClassification:
        """Classify a failing run and record its signature."""
        classification = classify_failure(failure.raw_output)
        signature = classification.failure_signature
        if not (resume and signature == self._state.previous_failure_signature):
            self._state = update_state_after_failure(self._state, signature)
            self._tracker.record_failure(signature)

        self._publish(
            EventType.FAILURE_CLASSIFIED,
            **classification.to_dict(),
            command=failure.command,
            exit_code=failure.exit_code,
        )
        logger.info(
            "Task %s failure classified as %s (%s)",
            self.task_id,
            classification.failure_type.value,
            signature,
        )
        return classification

    def _signals(self, **overrides: Any) -> StopSignals:
        signals = StopSignals(
            empty_diff_count=self._empty_diff_count,
            stale_context_count=self._stale_context_count,
        )
        return replace(signals, **overrides)

    def _handle_stage_timeout(self, diff_gen: bool) -> StopEvent | None:
        """Spend the free retry for a timed-out stage, or stop.

        The stop check runs against the state from before this timeout, so
        only a second timeout in a row matches the timeout stop condition.
        """
        if diff_gen:
            signals = self._signals(diff_gen_timed_out=True)
            reason, stage = StopReason.DIFFGEN_TIMEOUT, "Diff generation"
            update = update_state_after_diff_gen_timeout
        else:
            signals = self._signals(diagnosis_timed_out=True)
            reason, stage = StopReason.DIAGNOSIS_TIMEOUT, "Diagnosis"
            update = update_state_after_diagnosis_timeout

        check = check_stop_conditions(self._state, self.policy, signals)
        if check.should_stop:
            return self._finish_check(check)

        self._state, should_retry = update(self._state, self.policy)
        if not should_retry:
            return self._finish(reason, f"{stage} timed out")

        logger.info("%s timed out for task %s, retrying once", stage, self.task_id)
        return None

    def _build_context(
        self, classification: FailureClassification, allowed_files: list[str]
    ) -> RepairContext:
        references = classification.file_references
        return RepairContext(
            failure=classification,
            allowed_files=list(dict.fromkeys([*allowed_files, *self._state.approved_scope_files])),
            history=list(self._history),
            failing_test_file=next((f for f in references if _is_test_file(f)), None),
            referenced_source_files=[f for f in references if not _is_test_file(f)],
            config_files=list(_CONFIG_FILES.get(classification.failure_type, [])),
        )

    def _record(
        self,
        iteration: int,
        result: RepairAttemptResult,
        classification: FailureClassification,
        started: float,
        proposal: RepairDiffProposal | None = None,
    ) -> None:
        record = RepairAttemptRecord(
            attempt=iteration,
            result=result,
            failure_signature=classification.failure_signature,
            diff_id=proposal.diff_id if proposal else None,
            files_changed=list(proposal.files_affected) if proposal else [],
            duration_seconds=time.monotonic() - started,
        )
        self._history.append(record)
        self._publish(
            EventType.REPAIR_ATTEMPT_COMPLETED,
            attempt=iteration,
            result=result.value,
            failure_signature=record.failure_signature,
            diff_id=record.diff_id,
            duration_seconds=round(record.duration_seconds, 3),
        )

    def _tooling_stop(
        self, stage: str, error: Exception, iteration: int, started: float
    ) -> StopEvent:
        logger.warning("Task %s: %s raised, stopping", self.task_id, stage, exc_info=True)
        classification = tooling_failure(stage, error)
        self._publish(EventType.FAILURE_CLASSIFIED, **classification.to_dict(), stage=stage)
        self._record(iteration, RepairAttemptResult.ERROR, classification, started)
        check = check_stop_conditions(
            self._state, self.policy, self._signals(is_tooling_env_failure=True)
        )
        return self._finish_check(
            check,
            message=classification.summary,
            failure_signature=classification.failure_signature,
        )

    def _finish_check(
        self,
        check: StopCheck,
        message: str | None = None,
        failure_signature: str | None = None,
    ) -> StopEvent:
        if check.reason is None:
            raise RepairLoopError("Stop check has no reason")
        return self._finish(check.reason, message or check.message, failure_signature)

    def _finish(
        self,
        reason: StopReason,
        message: str,
        failure_signature: str | None = None,
    ) -> StopEvent:
        state = self._state
        options = generate_decision_options(
            reason,
            DecisionContext(
                repair_remaining=state.repair_remaining,
                pending_scope_files=state.pending_scope_files,
            ),
        )
        stop = StopEvent(
            reason=reason,
            decision_options=options,
            message=message,
            iteration=state.current_iteration,
            remaining=state.repair_remaining,
            failure_signature=failure_signature or state.previous_failure_signature,
            pending_scope_files=list(state.pending_scope_files),
        )
        logger.info("Repair loop for task %s stopped: %s (%s)", self.task_id, reason.value, message)
        self._publish(EventType.REPAIR_LOOP_STOPPED, **stop.to_dict())
        return stop

    def _publish(self, event_type: EventType, **data: Any) -> None:
        """Fire-and-forget publish; delivery is tracked but never awaited here."""
        if self._event_bus is None:
            return
        event = Event(
            event_type=event_type,
            task_id=self.task_id,
            mission_id=self.mission_id,
            mode=APPROVAL_MODE,
            stage=APPROVAL_STAGE,
            data=data,
        )
        task = asyncio.get_running_loop().create_task(self._deliver(self._event_bus, event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _deliver(self, event_bus: EventBus, event: Event) -> None:
        try:
            await event_bus.publish(event)
        except Exception:
            logger.warning(
                "Failed to publish %s for task %s", event.event_type.value, self.task_id, exc_info=True
            )
