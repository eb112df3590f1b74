"""Registry data models: server descriptors and health state."""

from __future__ import annotations

from enum import Enum
from pathlib import PurePosixPath
from urllib.parse import urlparse

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator

_REMOTE_SCHEMES = {"http", "https"}
_LOCAL_SCHEME = "local"


class AuthMethod(str, Enum):
    """How the orchestrator authenticates against a server."""

    none = "none"
    basic = "basic"
    bearer = "bearer"


class HealthStatus(str, Enum):
    """Coarse reachability classification of a server."""

    healthy = "healthy"
    degraded = "degraded"
    unreachable = "unreachable"


class ServerCategory(str, Enum):
    """Kind of capability a server exposes."""

    memory = "memory"
    graph = "graph"
    reasoning = "reasoning"
    filesystem = "filesystem"
    other = "other"


class AuthSettings(BaseModel):
    """Authentication block of a server descriptor."""

    model_config = {"frozen": True}

    type: AuthMethod = Field(
        default=AuthMethod.none,
        description="Authentication method: none, basic or bearer.",
    )
    credential: str | None = Field(
        default=None,
        description="Bearer token, or 'user:password' for basic auth.",
    )

    @model_validator(mode="after")
    def _credential_matches_type(self) -> AuthSettings:
        if self.type == AuthMethod.none:
            return self
        if not self.credential or not self.credential.strip():
            raise ValueError(f"auth type '{self.type.value}' requires a credential")
        if self.type == AuthMethod.basic and ":" not in self.credential:
            raise ValueError("basic auth credential must be 'user:password'")
        return self


class ServerDescriptor(BaseModel):
    """A capability server known to the registry.

    Health fields are mutated only through ``ServerRegistry.report_outcome``.
    """

    name: str = Field(
        min_length=1,
        description="Unique server name within the registry.",
    )
    endpoint: str = Field(
        description="'local://<name>' for in-process servers, http(s) URL otherwise.",
    )
    auth: AuthSettings = Field(
        default_factory=AuthSettings,
        description="Authentication settings used when calling the server.",
    )
    capabilities: set[str] = Field(
        default_factory=set,
        description="Operation names the server accepts.",
    )
    category: ServerCategory = Field(
        default=ServerCategory.other,
        description="Kind of capability server.",
    )
    allowed_directories: list[str] = Field(
        default_factory=list,
        description="Filesystem allow-list; required for filesystem servers.",
    )
    health: HealthStatus = Field(
        default=HealthStatus.healthy,
        description="Current health classification.",
    )
    consecutive_failures: int = Field(
        default=0,
        description="Failures since the last success or health transition.",
    )
    last_failure_at: float | None = Field(
        default=None,
        description="Unix epoch of the most recent failed attempt.",
    )

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("server name must not be blank")
        return stripped

    @field_validator("endpoint")
    @classmethod
    def _valid_endpoint(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme == _LOCAL_SCHEME:
            if not parsed.netloc:
                raise ValueError("local endpoint must be 'local://<name>'")
        elif parsed.scheme in _REMOTE_SCHEMES:
            if not parsed.hostname:
                raise ValueError(f"endpoint {value!r} has no host")
        else:
            raise ValueError(
                f"endpoint {value!r} must use one of: http, https, local"
            )
        return value.strip()

    @field_validator("allowed_directories")
    @classmethod
    def _absolute_directories(cls, value: list[str]) -> list[str]:
        for directory in value:
            if not PurePosixPath(directory).is_absolute():
                raise ValueError(f"allowed directory {directory!r} must be absolute")
        return value

    @model_validator(mode="after")
    def _filesystem_needs_allow_list(self) -> ServerDescriptor:
        if self.category == ServerCategory.filesystem and not self.allowed_directories:
            raise ValueError(
                f"filesystem server '{self.name}' requires allowed_directories"
            )
        return self

    @property
    def is_local(self) -> bool:
        return urlparse(self.endpoint).scheme == _LOCAL_SCHEME


class ServerHealthView(BaseModel):
    """Read-only health projection returned by ``server_health``."""

    name: str
    category: ServerCategory
    health: HealthStatus
    consecutive_failures: int
    last_failure_at: float | None = None
    capabilities: list[str] = Field(default_factory=list)
