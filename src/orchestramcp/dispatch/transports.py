"""Transports that carry one operation to one capability server.

Built-in servers are called in-process through a handler table; remote
servers are called over MCP with a FastMCP client.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Mapping
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from fastmcp import Client
from fastmcp.client.transports import StreamableHttpTransport

from orchestramcp.auth import build_auth
from orchestramcp.errors import CapabilityUnsupportedError
from orchestramcp.registry.schemas import ServerDescriptor

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


@runtime_checkable
class ServerTransport(Protocol):
    """Protocol for calling one operation on one server."""

    async def call(self, operation: str, payload: dict[str, Any]) -> Any: ...


class LocalTransport:
    """In-process transport backed by a table of async handlers."""

    def __init__(self, name: str, handlers: Mapping[str, Handler]) -> None:
        self.name = name
        self._handlers = dict(handlers)

    @property
    def operations(self) -> set[str]:
        return set(self._handlers)

    async def call(self, operation: str, payload: dict[str, Any]) -> Any:
        handler = self._handlers.get(operation)
        if handler is None:
            raise CapabilityUnsupportedError(self.name, operation)
        return await handler(payload)


class FastMCPTransport:
    """Remote transport: one MCP tool call per operation over streamable HTTP."""

    def __init__(self, descriptor: ServerDescriptor) -> None:
        self.name = descriptor.name
        self._endpoint = descriptor.endpoint
        self._auth = build_auth(descriptor.auth)

    async def call(self, operation: str, payload: dict[str, Any]) -> Any:
        transport = StreamableHttpTransport(self._endpoint, auth=self._auth)
        async with Client(transport) as client:
            result = await client.call_tool(operation, payload)
        return _decode_tool_result(result)


def _decode_tool_result(result: Any) -> Any:
    """Prefer structured content; fall back to JSON (or raw) text blocks."""
    structured = result.structured_content
    if structured is not None:
        return structured

    texts = [block.text for block in result.content if hasattr(block, "text")]
    if not texts:
        return None
    joined = "".join(texts)
    try:
        return json.loads(joined)
    except json.JSONDecodeError:
        return joined


def build_transport(descriptor: ServerDescriptor) -> ServerTransport:
    """Default transport factory for configured (remote) servers."""
    if descriptor.is_local:
        raise ValueError(
            f"Server '{descriptor.name}' is local; attach its LocalTransport explicitly"
        )
    logger.debug("Building FastMCP transport for %s", descriptor.name)
    return FastMCPTransport(descriptor)
