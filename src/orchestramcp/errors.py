"""Error taxonomy shared by every OrchestraMCP layer.

Each error carries a stable ``code`` and a structured ``context`` dict so
that the MCP surface can render a precise diagnostic without re-deriving
state.
"""

from __future__ import annotations

from typing import Any


class OrchestraError(Exception):
    """Base exception for OrchestraMCP."""

    code = "orchestra_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "message": self.message,
            "details": dict(self.context),
        }


class ConfigurationError(OrchestraError):
    """Raised when the server configuration is malformed."""

    code = "configuration_error"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class UnknownServerError(OrchestraError):
    """Raised when no server with the given name is registered."""

    code = "unknown_server"

    def __init__(self, server: str) -> None:
        self.server = server
        super().__init__(f"Server '{server}' is not registered", server=server)


class CapabilityUnsupportedError(OrchestraError):
    """Raised when a server does not declare the requested operation."""

    code = "capability_unsupported"

    def __init__(self, server: str, operation: str) -> None:
        self.server = server
        self.operation = operation
        super().__init__(
            f"Server '{server}' does not support operation '{operation}'",
            server=server,
            operation=operation,
        )


class DuplicateServerError(OrchestraError):
    """Raised when registering a server name twice."""

    code = "duplicate_server"

    def __init__(self, server: str) -> None:
        self.server = server
        super().__init__(f"Server '{server}' is already registered", server=server)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class ServerUnavailableError(OrchestraError):
    """Raised when a server is unreachable and no fallback is configured."""

    code = "server_unavailable"

    def __init__(self, server: str, operation: str) -> None:
        self.server = server
        self.operation = operation
        super().__init__(
            f"Server '{server}' is unreachable; '{operation}' was not attempted",
            server=server,
            operation=operation,
            attempts=0,
        )


class PayloadValidationError(OrchestraError):
    """Raised when a dispatch payload is rejected before any attempt."""

    code = "validation_error"


class DispatchFailure(OrchestraError):
    """Raised when every dispatch attempt failed with a transient error."""

    code = "dispatch_failure"

    def __init__(
        self,
        server: str,
        operation: str,
        *,
        attempts: int,
        last_error: BaseException | None,
    ) -> None:
        self.server = server
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        cause = f"{type(last_error).__name__}: {last_error}" if last_error else None
        super().__init__(
            f"'{operation}' on server '{server}' failed after {attempts} attempt(s)",
            server=server,
            operation=operation,
            attempts=attempts,
            last_error=cause,
        )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class NotFoundError(OrchestraError):
    """Raised when a store lookup finds nothing."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            f"{kind} '{identifier}' not found", kind=kind, identifier=identifier
        )


class DanglingReferenceError(OrchestraError):
    """Raised when a relation references entities that do not exist."""

    code = "dangling_reference"

    def __init__(self, missing: list[str]) -> None:
        self.missing = sorted(set(missing))
        super().__init__(
            "Relations reference unknown entities: " + ", ".join(self.missing),
            missing=self.missing,
        )


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------


class InvalidBranchOriginError(OrchestraError):
    """Raised when a branch forks from a thought its parent cannot see."""

    code = "invalid_branch_origin"

    def __init__(
        self, branch_id: str, origin_branch: str | None, branch_from_thought: int
    ) -> None:
        self.branch_id = branch_id
        self.origin_branch = origin_branch
        self.branch_from_thought = branch_from_thought
        parent = origin_branch or "trunk"
        super().__init__(
            f"Cannot fork branch '{branch_id}' from thought {branch_from_thought}: "
            f"not present in '{parent}'",
            branch_id=branch_id,
            origin_branch=parent,
            branch_from_thought=branch_from_thought,
        )


class InvalidRevisionTargetError(OrchestraError):
    """Raised when a revision targets a thought outside the branch lineage."""

    code = "invalid_revision_target"

    def __init__(self, branch_id: str | None, revises_thought: int) -> None:
        self.branch_id = branch_id
        self.revises_thought = revises_thought
        branch = branch_id or "trunk"
        super().__init__(
            f"Thought {revises_thought} does not exist in the lineage of '{branch}'",
            branch_id=branch,
            revises_thought=revises_thought,
        )


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class PartialWorkflowFailure(OrchestraError):
    """Raised when a fatal workflow step fails after earlier steps completed.

    Completed steps are not rolled back; the caller decides on compensation.
    """

    code = "partial_workflow_failure"

    def __init__(
        self,
        workflow: str,
        *,
        completed: list[int],
        failed_at: int,
        failed_step: str,
        error: BaseException,
        warnings: list[str] | None = None,
        results: dict[str, Any] | None = None,
    ) -> None:
        self.workflow = workflow
        self.completed = list(completed)
        self.failed_at = failed_at
        self.failed_step = failed_step
        self.error = error
        self.warnings = list(warnings or [])
        self.results = dict(results or {})
        underlying = error.to_dict() if isinstance(error, OrchestraError) else {
            "error_code": type(error).__name__,
            "message": str(error),
        }
        super().__init__(
            f"Workflow '{workflow}' failed at step {failed_at} ({failed_step})",
            workflow=workflow,
            completed=self.completed,
            failed_at=failed_at,
            failed_step=failed_step,
            error=underlying,
            warnings=self.warnings or None,
        )
