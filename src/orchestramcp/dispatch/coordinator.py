"""Dispatch coordinator: the only component that retries or touches health.

``invoke`` resolves the target through the registry, gates on health,
runs the attempt loop with per-attempt timeouts and exponential backoff,
reports every attempt outcome back to the registry, and always returns a
``DispatchResult`` envelope.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterator
from dataclasses import replace
from time import perf_counter
from typing import Any

import httpx
import neo4j.exceptions
import redis.exceptions

from orchestramcp.audit import AuditEvent
from orchestramcp.audit import AuditEventType
from orchestramcp.audit import AuditLogger
from orchestramcp.auth import redact
from orchestramcp.config import DispatchPolicy
from orchestramcp.dispatch.schemas import DispatchResult
from orchestramcp.dispatch.transports import ServerTransport
from orchestramcp.dispatch.transports import build_transport
from orchestramcp.errors import ConfigurationError
from orchestramcp.errors import DispatchFailure
from orchestramcp.errors import OrchestraError
from orchestramcp.errors import PayloadValidationError
from orchestramcp.errors import ServerUnavailableError
from orchestramcp.observability import record_operation
from orchestramcp.registry.schemas import HealthStatus
from orchestramcp.registry.schemas import ServerDescriptor
from orchestramcp.registry.store import ServerRegistry

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    httpx.TransportError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    neo4j.exceptions.ServiceUnavailable,
    neo4j.exceptions.SessionExpired,
    neo4j.exceptions.TransientError,
)

_PATH_KEYS = ("path", "paths", "source", "destination")


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """*exc*, its causes or contexts, and the members of exception groups."""
    seen: set[int] = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, BaseExceptionGroup):
            pending.extend(current.exceptions)
        if current.__cause__ is not None:
            pending.append(current.__cause__)
        elif current.__context__ is not None and not current.__suppress_context__:
            pending.append(current.__context__)


def is_transient(exc: BaseException) -> bool:
    """Whether *exc* is worth retrying (timeouts and connection failures).

    Client libraries often wrap the network error, e.g. fastmcp raises
    ``RuntimeError("Client failed to connect: ...")`` from the transport
    error, so the whole chain is inspected.  Domain errors are the server's
    answer and never count, whatever they were raised from.
    """
    if isinstance(exc, OrchestraError):
        return False
    return any(isinstance(link, TRANSIENT_ERRORS) for link in _exception_chain(exc))


def backoff_delay(
    policy: DispatchPolicy,
    retry_index: int,
    *,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before retry number *retry_index* (0-based)."""
    base = min(policy.base_delay_seconds * (2**retry_index), policy.max_delay_seconds)
    jitter = rng(0.0, policy.jitter_seconds) if policy.jitter_seconds > 0 else 0.0
    return base + jitter


def _payload_paths(payload: dict[str, Any]) -> list[str]:
    paths: list[str] = []
    for key in _PATH_KEYS:
        value = payload.get(key)
        if isinstance(value, str):
            paths.append(value)
        elif isinstance(value, list):
            paths.extend(item for item in value if isinstance(item, str))
    return paths


def check_allowed_paths(descriptor: ServerDescriptor, payload: dict[str, Any]) -> None:
    """Reject payload paths outside *descriptor*'s allow-list."""
    if not descriptor.allowed_directories:
        return
    allowed = [os.path.normpath(d) for d in descriptor.allowed_directories]
    for raw in _payload_paths(payload):
        candidate = os.path.normpath(raw)
        if not os.path.isabs(candidate) or not any(
            os.path.commonpath([candidate, root]) == root for root in allowed
        ):
            raise PayloadValidationError(
                f"Path {raw!r} is outside the allowed directories of "
                f"'{descriptor.name}'",
                server=descriptor.name,
                path=raw,
            )


class DispatchCoordinator:
    """Routes operations to servers with retry, backoff and circuit-breaking."""

    def __init__(
        self,
        registry: ServerRegistry,
        *,
        policy: DispatchPolicy | None = None,
        audit_logger: AuditLogger | None = None,
        transport_factory: Callable[[ServerDescriptor], ServerTransport] = build_transport,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self.default_policy = policy or DispatchPolicy()
        self._audit = audit_logger
        self._transport_factory = transport_factory
        self._sleep = sleep
        self._transports: dict[str, ServerTransport] = {}

    @property
    def registry(self) -> ServerRegistry:
        return self._registry

    def attach(self, name: str, transport: ServerTransport) -> None:
        """Bind *transport* to the registered server *name*."""
        descriptor = self._registry.get(name)
        self._transports[name] = transport
        logger.debug("Attached transport for %s auth=%s", name, redact(descriptor.auth))

    def detach(self, name: str) -> None:
        self._transports.pop(name, None)

    def _transport_for(self, descriptor: ServerDescriptor) -> ServerTransport:
        transport = self._transports.get(descriptor.name)
        if transport is not None:
            return transport
        if descriptor.is_local:
            raise ConfigurationError(
                f"No in-process transport attached for '{descriptor.name}'",
                server=descriptor.name,
            )
        transport = self._transport_factory(descriptor)
        self._transports[descriptor.name] = transport
        return transport

    # ------------------------------------------------------------------
    # Invoke
    # ------------------------------------------------------------------

    async def invoke(
        self,
        server: str,
        operation: str,
        payload: dict[str, Any] | None = None,
        policy: DispatchPolicy | None = None,
    ) -> DispatchResult:
        """Dispatch *operation* to *server* and return the result envelope."""
        start = perf_counter()
        active = policy or self.default_policy
        body = dict(payload or {})
        result = await self._invoke(server, operation, body, active)
        record_operation(
            operation=f"{server}.{operation}",
            duration_ms=(perf_counter() - start) * 1000,
            ok=result.ok,
            attempts=result.attempts,
            short_circuited=result.short_circuited,
        )
        return result

    async def _invoke(
        self,
        server: str,
        operation: str,
        payload: dict[str, Any],
        policy: DispatchPolicy,
    ) -> DispatchResult:
        try:
            descriptor = self._registry.resolve(server, operation)
            check_allowed_paths(descriptor, payload)
            transport = self._transport_for(descriptor)
        except OrchestraError as exc:
            return DispatchResult.failure(server, operation, exc, attempts=0)

        if not self._registry.claim_probe(server):
            return await self._short_circuit(server, operation, payload, policy)

        return await self._attempt_loop(descriptor, transport, operation, payload, policy)

    async def _short_circuit(
        self,
        server: str,
        operation: str,
        payload: dict[str, Any],
        policy: DispatchPolicy,
    ) -> DispatchResult:
        fallback = policy.fallback_server
        if fallback and fallback != server:
            logger.warning(
                "Server %s unreachable; routing %s to fallback %s",
                server,
                operation,
                fallback,
            )
            # No chained fallbacks.
            result = await self._invoke(
                fallback, operation, payload, replace(policy, fallback_server=None)
            )
            result.fallback_used = True
            await self._audit_event(
                AuditEventType.FALLBACK_USED,
                server,
                {"operation": operation, "fallback": fallback, "ok": result.ok},
            )
            return result

        logger.warning("Server %s unreachable; short-circuiting %s", server, operation)
        return DispatchResult.failure(
            server,
            operation,
            ServerUnavailableError(server, operation),
            attempts=0,
            short_circuited=True,
        )

    async def _attempt_loop(
        self,
        descriptor: ServerDescriptor,
        transport: ServerTransport,
        operation: str,
        payload: dict[str, Any],
        policy: DispatchPolicy,
    ) -> DispatchResult:
        server = descriptor.name
        last_error: BaseException | None = None
        attempts = 0

        for attempt in range(policy.max_attempts):
            if attempt > 0:
                # The only suspension point between attempts; cancellation lands here.
                await self._sleep(backoff_delay(policy, attempt - 1))

            attempts = attempt + 1
            value, error = await self._run_attempt(
                server, transport, operation, payload, policy
            )
            if error is None:
                await self._registry.report_outcome(server, True)
                return DispatchResult.success(server, operation, value, attempts=attempts)

            if not is_transient(error):
                # The server answered; the request itself was rejected.
                await self._registry.report_outcome(server, True)
                return DispatchResult.failure(server, operation, error, attempts=attempts)

            last_error = error
            status = await self._registry.report_outcome(server, False)
            logger.warning(
                "Dispatch attempt failed server=%s operation=%s attempt=%d/%d error=%s",
                server,
                operation,
                attempts,
                policy.max_attempts,
                f"{type(error).__name__}: {error}",
            )
            if status is None or status == HealthStatus.unreachable:
                # Unreachable, or removed from the registry mid-call.
                break

        failure = DispatchFailure(
            server, operation, attempts=attempts, last_error=last_error
        )
        await self._audit_event(
            AuditEventType.DISPATCH_FAILED,
            server,
            {"operation": operation, "attempts": attempts, "last_error": str(last_error)},
        )
        return DispatchResult.failure(server, operation, failure, attempts=attempts)

    async def _run_attempt(
        self,
        server: str,
        transport: ServerTransport,
        operation: str,
        payload: dict[str, Any],
        policy: DispatchPolicy,
    ) -> tuple[Any, BaseException | None]:
        """Run one attempt to completion and return ``(value, error)``.

        The attempt is shielded so that a cancellation arriving mid-attempt
        waits for the attempt to settle, reports its outcome, then propagates.
        """
        task = asyncio.ensure_future(
            asyncio.wait_for(
                transport.call(operation, dict(payload)),
                timeout=policy.attempt_timeout_seconds,
            )
        )
        try:
            return await asyncio.shield(task), None
        except asyncio.CancelledError:
            if not task.done():
                await asyncio.wait([task])
            settled = None if task.cancelled() else task.exception()
            await self._registry.report_outcome(
                server, settled is None or not is_transient(settled)
            )
            raise
        except Exception as exc:
            return None, exc

    async def _audit_event(
        self, event_type: AuditEventType, server: str, payload: dict[str, Any]
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            AuditEvent(event_type=event_type, server=server, payload=payload)
        )
