"""Unit test fixtures: scripted transports and a fake clock."""

from __future__ import annotations

import pytest

from orchestramcp.config import DispatchPolicy
from orchestramcp.config import RegistryConfig
from orchestramcp.dispatch import DispatchCoordinator
from orchestramcp.registry import ServerDescriptor
from orchestramcp.registry import ServerRegistry


class ScriptedTransport:
    """Transport replaying a script of outcomes, then returning ``default``.

    Exception instances in the script are raised; anything else is returned.
    """

    def __init__(self, *outcomes, default=None):
        self.outcomes = list(outcomes)
        self.default = {"ok": True} if default is None else default
        self.calls: list[tuple[str, dict]] = []

    async def call(self, operation: str, payload: dict):
        self.calls.append((operation, payload))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_descriptor(name: str = "alpha", capabilities=("op",), **kwargs) -> ServerDescriptor:
    return ServerDescriptor(
        name=name,
        endpoint=kwargs.pop("endpoint", f"http://{name}.test/mcp"),
        capabilities=set(capabilities),
        **kwargs,
    )


FAST_POLICY = DispatchPolicy(
    max_attempts=3,
    base_delay_seconds=0.1,
    max_delay_seconds=1.0,
    jitter_seconds=0.0,
    attempt_timeout_seconds=1.0,
)


@pytest.fixture()
def make_descriptor():
    return _make_descriptor


@pytest.fixture()
def scripted():
    """The ScriptedTransport class, for building per-test transports."""
    return ScriptedTransport


@pytest.fixture()
def fast_policy():
    return FAST_POLICY


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def registry(clock):
    return ServerRegistry(RegistryConfig(probe_interval_seconds=30.0), clock=clock)


@pytest.fixture()
def transports():
    """Name -> transport map consulted by the coordinator's factory."""
    return {}


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def coordinator(registry, transports, sleeps):
    async def _fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return DispatchCoordinator(
        registry,
        policy=FAST_POLICY,
        transport_factory=lambda descriptor: transports[descriptor.name],
        sleep=_fake_sleep,
    )
