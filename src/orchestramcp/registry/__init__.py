"""Registry domain: server descriptors and the health state machine.

Exports are loaded lazily to avoid an import cycle with ``config``.
"""

from __future__ import annotations

from importlib import import_module

__all__ = [
    "AuthMethod",
    "AuthSettings",
    "HealthEvent",
    "HealthStatus",
    "ServerCategory",
    "ServerDescriptor",
    "ServerHealthView",
    "ServerRegistry",
    "apply_outcome",
]


_EXPORT_TO_MODULE = {
    "AuthMethod": "orchestramcp.registry.schemas",
    "AuthSettings": "orchestramcp.registry.schemas",
    "HealthStatus": "orchestramcp.registry.schemas",
    "ServerCategory": "orchestramcp.registry.schemas",
    "ServerDescriptor": "orchestramcp.registry.schemas",
    "ServerHealthView": "orchestramcp.registry.schemas",
    "HealthEvent": "orchestramcp.registry.health",
    "apply_outcome": "orchestramcp.registry.health",
    "ServerRegistry": "orchestramcp.registry.store",
}


def __getattr__(name: str):
    module_name = _EXPORT_TO_MODULE.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(module_name)
    return getattr(module, name)
