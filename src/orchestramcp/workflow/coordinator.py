"""Workflow coordinator: multi-step operations across capability servers.

Steps run in order.  A step marked ``fatal`` halts the workflow when it
fails; a non-fatal step is logged and recorded as a warning.  Completed
steps are never undone: backing servers are not transactional, so a fatal
failure raises ``PartialWorkflowFailure`` describing exactly what ran and
the caller decides on compensation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from orchestramcp.audit.schemas import AuditEvent
from orchestramcp.audit.schemas import AuditEventType
from orchestramcp.audit.store import AuditLogger
from orchestramcp.dispatch.coordinator import DispatchCoordinator
from orchestramcp.errors import PartialWorkflowFailure
from orchestramcp.observability import record_operation

logger = logging.getLogger(__name__)


@dataclass
class WorkflowContext:
    """Inputs of a workflow run plus the results of steps completed so far."""

    workflow: str
    params: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)


StepAction = Callable[[WorkflowContext], Awaitable[Any]]
PayloadBuilder = Callable[[WorkflowContext], dict[str, Any]]


@dataclass(frozen=True)
class WorkflowStep:
    name: str
    action: StepAction
    fatal: bool = True


@dataclass
class WorkflowResult:
    """Outcome of a workflow whose fatal steps all succeeded."""

    workflow: str
    completed: list[int]
    results: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    failed_non_fatal: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow,
            "completed": list(self.completed),
            "failed_non_fatal": list(self.failed_non_fatal),
            "warnings": list(self.warnings),
            "results": dict(self.results),
        }


def dispatch_step(
    coordinator: DispatchCoordinator,
    server: str,
    operation: str,
    payload: dict[str, Any] | PayloadBuilder | None = None,
    *,
    name: str | None = None,
    fatal: bool = True,
) -> WorkflowStep:
    """Build a step that dispatches one operation and unwraps the envelope.

    *payload* may be a callable receiving the ``WorkflowContext``, so a
    step can consume the results of earlier steps.
    """

    async def _action(context: WorkflowContext) -> Any:
        body = payload(context) if callable(payload) else dict(payload or {})
        result = await coordinator.invoke(server, operation, body)
        return result.unwrap()

    return WorkflowStep(name=name or f"{server}.{operation}", action=_action, fatal=fatal)


class WorkflowCoordinator:
    def __init__(self, audit_logger: AuditLogger | None = None) -> None:
        self._audit = audit_logger

    async def run(
        self,
        name: str,
        steps: list[WorkflowStep],
        params: dict[str, Any] | None = None,
    ) -> WorkflowResult:
        """Run *steps* in order.

        Raises ``PartialWorkflowFailure`` on the first fatal failure.  A
        cancelled step counts as a fatal failure; when the workflow task
        itself is being cancelled the failure is recorded and the
        cancellation propagates.
        """
        context = WorkflowContext(workflow=name, params=dict(params or {}))
        completed: list[int] = []
        failed_non_fatal: list[int] = []
        warnings: list[str] = []
        start = time.perf_counter()

        for index, step in enumerate(steps):
            try:
                context.results[step.name] = await step.action(context)
            except asyncio.CancelledError as exc:
                failure = self._failure(context, completed, index, step, exc, warnings)
                await self._record_failure(failure, start)
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise
                raise failure from exc
            except Exception as exc:
                if step.fatal:
                    failure = self._failure(context, completed, index, step, exc, warnings)
                    await self._record_failure(failure, start)
                    raise failure from exc
                logger.warning(
                    "Workflow %s: non-fatal step %d (%s) failed: %s",
                    name,
                    index,
                    step.name,
                    exc,
                )
                failed_non_fatal.append(index)
                warnings.append(f"{step.name}: {type(exc).__name__}: {exc}")
                continue
            completed.append(index)

        record_operation(
            operation=f"workflow.{name}",
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        return WorkflowResult(
            workflow=name,
            completed=completed,
            results=context.results,
            warnings=warnings,
            failed_non_fatal=failed_non_fatal,
        )

    @staticmethod
    def _failure(
        context: WorkflowContext,
        completed: list[int],
        index: int,
        step: WorkflowStep,
        exc: BaseException,
        warnings: list[str],
    ) -> PartialWorkflowFailure:
        return PartialWorkflowFailure(
            context.workflow,
            completed=completed,
            failed_at=index,
            failed_step=step.name,
            error=exc,
            warnings=warnings,
            results=context.results,
        )

    async def _record_failure(self, failure: PartialWorkflowFailure, start: float) -> None:
        logger.error(
            "Workflow %s failed at step %d (%s) after completing %s",
            failure.workflow,
            failure.failed_at,
            failure.failed_step,
            failure.completed,
        )
        record_operation(
            operation=f"workflow.{failure.workflow}",
            duration_ms=(time.perf_counter() - start) * 1000,
            ok=False,
        )
        if self._audit is not None:
            await self._audit.log(
                AuditEvent(
                    event_type=AuditEventType.WORKFLOW_FAILED,
                    payload=failure.to_dict()["details"],
                )
            )
