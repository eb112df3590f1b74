"""Dispatch result envelope."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from orchestramcp.errors import DispatchFailure
from orchestramcp.errors import OrchestraError


@dataclass
class DispatchResult:
    """Uniform outcome of one ``DispatchCoordinator.invoke`` call."""

    server: str
    operation: str
    ok: bool
    value: Any = None
    error: BaseException | None = None
    attempts: int = 0
    fallback_used: bool = False
    short_circuited: bool = False

    @classmethod
    def success(
        cls, server: str, operation: str, value: Any, *, attempts: int
    ) -> DispatchResult:
        return cls(server, operation, True, value=value, attempts=attempts)

    @classmethod
    def failure(
        cls,
        server: str,
        operation: str,
        error: BaseException,
        *,
        attempts: int,
        short_circuited: bool = False,
    ) -> DispatchResult:
        return cls(
            server,
            operation,
            False,
            error=error,
            attempts=attempts,
            short_circuited=short_circuited,
        )

    def unwrap(self) -> Any:
        """Return the value, or raise the carried error."""
        if self.ok:
            return self.value
        if self.error is None:
            raise DispatchFailure(
                self.server, self.operation, attempts=self.attempts, last_error=None
            )
        raise self.error

    def error_payload(self) -> dict[str, Any]:
        """Render the error as ``{error_code, message, details}``."""
        if self.ok or self.error is None:
            return {}
        error = self.error
        if isinstance(error, OrchestraError):
            payload = error.to_dict()
        elif isinstance(error, ValidationError):
            first = error.errors()[0] if error.errors() else {}
            payload = {
                "error_code": "validation_error",
                "message": str(first.get("msg", "Invalid input")),
                "details": {},
            }
        else:
            payload = {
                "error_code": "server_error",
                "message": f"{type(error).__name__}: {error}",
                "details": {},
            }
        details = payload["details"]
        details.setdefault("server", self.server)
        details.setdefault("operation", self.operation)
        details.setdefault("attempts", self.attempts)
        if self.fallback_used:
            details["fallback_used"] = True
        return payload
