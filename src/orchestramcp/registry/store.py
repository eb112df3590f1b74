"""In-process server registry.

Holds validated ``ServerDescriptor`` objects.  Health counters are the one
piece of state shared across concurrent dispatches, so every update for a
given server runs under that server's lock.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable

from orchestramcp.config import RegistryConfig
from orchestramcp.errors import CapabilityUnsupportedError
from orchestramcp.errors import DuplicateServerError
from orchestramcp.errors import UnknownServerError
from orchestramcp.locks import KeyedLock
from orchestramcp.registry.health import apply_outcome
from orchestramcp.registry.schemas import HealthStatus
from orchestramcp.registry.schemas import ServerDescriptor
from orchestramcp.registry.schemas import ServerHealthView

logger = logging.getLogger(__name__)

HealthChangeCallback = Callable[[str, HealthStatus, HealthStatus], Awaitable[None]]


class ServerRegistry:
    """Registry of capability servers and their health state."""

    def __init__(
        self,
        config: RegistryConfig | None = None,
        *,
        on_health_change: HealthChangeCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or RegistryConfig()
        self._servers: dict[str, ServerDescriptor] = {}
        self._locks = KeyedLock()
        self._on_health_change = on_health_change
        self._clock = clock
        # name -> time a half-open trial was granted
        self._probes: dict[str, float] = {}

    # -- membership --

    def register(self, descriptor: ServerDescriptor) -> None:
        """Add *descriptor*; its name must not already be registered."""
        if descriptor.name in self._servers:
            raise DuplicateServerError(descriptor.name)
        self._servers[descriptor.name] = descriptor
        logger.info(
            "Registered server name=%s endpoint=%s capabilities=%d",
            descriptor.name,
            descriptor.endpoint,
            len(descriptor.capabilities),
        )

    def unregister(self, name: str) -> ServerDescriptor:
        try:
            descriptor = self._servers.pop(name)
        except KeyError:
            raise UnknownServerError(name) from None
        self._probes.pop(name, None)
        logger.info("Unregistered server name=%s", name)
        return descriptor

    def replace_all(self, descriptors: Iterable[ServerDescriptor]) -> None:
        """Swap the registry contents for a freshly loaded configuration.

        Validates the whole batch before touching the current contents.
        """
        incoming: dict[str, ServerDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in incoming:
                raise DuplicateServerError(descriptor.name)
            incoming[descriptor.name] = descriptor
        self._servers = incoming
        self._probes = {n: t for n, t in self._probes.items() if n in incoming}
        logger.info("Registry reloaded with %d server(s)", len(incoming))

    def names(self) -> list[str]:
        return sorted(self._servers)

    def __contains__(self, name: object) -> bool:
        return name in self._servers

    def __len__(self) -> int:
        return len(self._servers)

    # -- lookup --

    def get(self, name: str) -> ServerDescriptor:
        descriptor = self._servers.get(name)
        if descriptor is None:
            raise UnknownServerError(name)
        return descriptor

    def resolve(self, name: str, required_capability: str) -> ServerDescriptor:
        """Return the descriptor for *name* if it supports *required_capability*."""
        descriptor = self.get(name)
        if required_capability not in descriptor.capabilities:
            raise CapabilityUnsupportedError(name, required_capability)
        return descriptor

    def claim_probe(self, name: str) -> bool:
        """Whether a call to *name* may go through right now.

        Servers that are not unreachable always pass.  An unreachable server
        is short-circuited until ``probe_interval_seconds`` have passed since
        its last failure; then exactly one caller is granted the half-open
        trial, and the others keep short-circuiting until that trial reports
        its outcome.  A claim whose outcome never arrives expires after
        another probe interval.
        """
        descriptor = self.get(name)
        if descriptor.health != HealthStatus.unreachable:
            return True
        now = self._clock()
        interval = self.config.probe_interval_seconds
        last_failure = descriptor.last_failure_at
        if last_failure is not None and now - last_failure < interval:
            return False
        claimed_at = self._probes.get(name)
        if claimed_at is not None and now - claimed_at < interval:
            return False
        self._probes[name] = now
        logger.info("Half-open trial granted name=%s", name)
        return True

    def snapshot(self) -> list[ServerHealthView]:
        return [
            ServerHealthView(
                name=d.name,
                category=d.category,
                health=d.health,
                consecutive_failures=d.consecutive_failures,
                last_failure_at=d.last_failure_at,
                capabilities=sorted(d.capabilities),
            )
            for _, d in sorted(self._servers.items())
        ]

    # -- health --

    async def report_outcome(self, name: str, success: bool) -> HealthStatus | None:
        """Apply one attempt outcome to *name*'s health and return the new status.

        Returns ``None`` when *name* was unregistered while the attempt ran
        (e.g. by a configuration reload); the outcome is dropped.
        """
        async with self._locks.hold(name):
            self._probes.pop(name, None)
            descriptor = self._servers.get(name)
            if descriptor is None:
                logger.info(
                    "Dropping outcome for unregistered server name=%s success=%s",
                    name,
                    success,
                )
                return None
            previous = descriptor.health
            update = apply_outcome(
                previous,
                descriptor.consecutive_failures,
                success=success,
                failure_threshold=self.config.failure_threshold,
            )
            descriptor.health = update.status
            descriptor.consecutive_failures = update.consecutive_failures
            if not success:
                descriptor.last_failure_at = self._clock()

        if update.changed:
            log = logger.info if update.status == HealthStatus.healthy else logger.warning
            log(
                "Server health changed name=%s from=%s to=%s",
                name,
                previous.value,
                update.status.value,
            )
            if self._on_health_change is not None:
                try:
                    await self._on_health_change(name, previous, update.status)
                except Exception:
                    logger.exception("on_health_change callback failed")
        return update.status
