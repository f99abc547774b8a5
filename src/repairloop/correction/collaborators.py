"""Boundary types for the collaborators the repair loop drives.

Diagnosis, diff generation, diff application, test execution, approvals and
event delivery all live outside this package. The runner only sees these
protocols.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from .models import RepairContext, RepairDiffProposal, TestFailureInput

if TYPE_CHECKING:
    from ..events import Event


class TestRunner(Protocol):
    """Runs the verification command. `None` or exit code 0 means pass."""

    __test__ = False

    def __call__(self, command: str) -> Awaitable[TestFailureInput | None]: ...


class RepairDiffGenerator(Protocol):
    def __call__(self, context: RepairContext) -> Awaitable[RepairDiffProposal | None]: ...


class DiffApplicator(Protocol):
    """Applies a proposal; returns False if it does not apply cleanly."""

    def __call__(self, proposal: RepairDiffProposal) -> Awaitable[bool]: ...


class Diagnoser(Protocol):
    def __call__(self, context: RepairContext) -> Awaitable[str]: ...


class ApprovalDecision(StrEnum):
    APPROVED = "approved"
    DENIED = "denied"


@dataclass
class ApprovalResult:
    decision: ApprovalDecision
    reason: str = ""

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED


class ApprovalManager(Protocol):
    """Human approval gate. Invoked once per scope-expansion request."""

    async def request_approval(
        self,
        task_id: str,
        mode: str,
        stage: str,
        approval_type: str,
        description: str,
        context: dict[str, Any],
    ) -> ApprovalResult: ...


class EventBus(Protocol):
    async def publish(self, event: Event) -> None: ...


@dataclass(frozen=True)
class RepairCapabilities:
    """The capability set a runner is constructed with.

    Any of the required callables may be None; the runner stops with a
    tooling failure when it reaches a stage whose capability is missing.
    """

    run_test: TestRunner | None = None
    generate_diff: RepairDiffGenerator | None = None
    apply_diff: DiffApplicator | None = None
    diagnose: Diagnoser | None = None

    def with_test_runner(self, run_test: TestRunner | None) -> RepairCapabilities:
        return replace(self, run_test=run_test)

    def with_diff_generator(self, generate_diff: RepairDiffGenerator | None) -> RepairCapabilities:
        return replace(self, generate_diff=generate_diff)

    def with_diff_applicator(self, apply_diff: DiffApplicator | None) -> RepairCapabilities:
        return replace(self, apply_diff=apply_diff)
