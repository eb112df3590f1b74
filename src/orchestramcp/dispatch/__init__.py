"""Dispatch domain: routing, retry/backoff and transports."""

from orchestramcp.dispatch.coordinator import DispatchCoordinator
from orchestramcp.dispatch.coordinator import backoff_delay
from orchestramcp.dispatch.coordinator import is_transient
from orchestramcp.dispatch.schemas import DispatchResult
from orchestramcp.dispatch.transports import FastMCPTransport
from orchestramcp.dispatch.transports import LocalTransport
from orchestramcp.dispatch.transports import ServerTransport

__all__ = [
    "DispatchCoordinator",
    "DispatchResult",
    "FastMCPTransport",
    "LocalTransport",
    "ServerTransport",
    "backoff_delay",
    "is_transient",
]
