"""Application configuration.

Frozen dataclasses with sensible defaults for each subsystem, plus the
loader for the JSON server file.  The server file is read once at process
start and validated eagerly: malformed entries fail here rather than at the
first dispatch.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from orchestramcp.errors import ConfigurationError
from orchestramcp.registry.schemas import ServerDescriptor

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "ORCHESTRAMCP_CONFIG"
REDIS_URL_ENV = "ORCHESTRAMCP_REDIS_URL"
NEO4J_URL_ENV = "ORCHESTRAMCP_NEO4J_URL"

MEMORY_SERVER = "memory"
GRAPH_SERVER = "knowledge-graph"
REASONING_SERVER = "sequential-thinking"
RESERVED_SERVER_NAMES = frozenset({MEMORY_SERVER, GRAPH_SERVER, REASONING_SERVER})


@dataclass(frozen=True)
class DispatchPolicy:
    """Retry, timeout and fallback settings for one dispatch."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 5.0
    jitter_seconds: float = 0.05
    attempt_timeout_seconds: float = 30.0
    fallback_server: str | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.attempt_timeout_seconds <= 0:
            raise ValueError("attempt_timeout_seconds must be positive")


@dataclass(frozen=True)
class RegistryConfig:
    """Health state machine parameters."""

    # Consecutive failures per health step (healthy->degraded->unreachable)
    failure_threshold: int = 3
    # Half-open probe delay for unreachable servers
    probe_interval_seconds: float = 30.0


@dataclass(frozen=True)
class MemoryStoreConfig:
    """Redis key layout and search batching for the memory store."""

    key_prefix: str = "orchestramcp"
    search_batch_size: int = 50


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "orchestramcp_audit.jsonl"
    enabled: bool = True
    recent_events: int = 100


# ---------------------------------------------------------------------------
# Server file
# ---------------------------------------------------------------------------


class ServersFile(BaseModel):
    """Top-level shape of the JSON server configuration file."""

    servers: list[ServerDescriptor] = Field(default_factory=list)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(item) for item in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(parts) or "invalid configuration"


def parse_server_config(data: dict) -> list[ServerDescriptor]:
    """Validate an already-decoded server configuration mapping."""
    try:
        parsed = ServersFile.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid server configuration: {_format_validation_error(exc)}"
        ) from exc

    seen: set[str] = set()
    for descriptor in parsed.servers:
        if descriptor.name in RESERVED_SERVER_NAMES:
            raise ConfigurationError(
                f"Server name '{descriptor.name}' is reserved for a built-in server",
                server=descriptor.name,
            )
        if descriptor.name in seen:
            raise ConfigurationError(
                f"Duplicate server name '{descriptor.name}'",
                server=descriptor.name,
            )
        if descriptor.is_local:
            raise ConfigurationError(
                f"Server '{descriptor.name}' cannot use a local:// endpoint",
                server=descriptor.name,
            )
        seen.add(descriptor.name)
    return parsed.servers


def load_server_config(path: str | Path) -> list[ServerDescriptor]:
    """Read and validate the JSON server file at *path*."""
    config_path = Path(path)
    try:
        raw = config_path.read_text()
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read server configuration {config_path}: {exc}",
            path=str(config_path),
        ) from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Server configuration {config_path} is not valid JSON: {exc}",
            path=str(config_path),
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Server configuration {config_path} must be a JSON object",
            path=str(config_path),
        )

    descriptors = parse_server_config(data)
    logger.info(
        "Loaded %d server descriptor(s) from %s", len(descriptors), config_path
    )
    return descriptors


def get_config_path() -> str | None:
    """Return the server file path from ``ORCHESTRAMCP_CONFIG``, if set."""
    value = os.getenv(CONFIG_PATH_ENV)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def get_redis_url() -> str:
    return os.getenv(REDIS_URL_ENV, "redis://localhost:6379")


def get_neo4j_url() -> str:
    return os.getenv(NEO4J_URL_ENV, "bolt://localhost:7687")
