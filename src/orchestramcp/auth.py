"""Outbound authentication for remote capability servers."""

from __future__ import annotations

import httpx
from fastmcp.client.auth import BearerAuth

from orchestramcp.registry.schemas import AuthMethod
from orchestramcp.registry.schemas import AuthSettings


def build_auth(auth: AuthSettings) -> httpx.Auth | None:
    """Return the ``httpx.Auth`` that signs requests under *auth*, if any."""
    if auth.type == AuthMethod.none or auth.credential is None:
        return None
    if auth.type == AuthMethod.bearer:
        return BearerAuth(auth.credential.strip())
    username, _, password = auth.credential.partition(":")
    return httpx.BasicAuth(username, password)


def redact(auth: AuthSettings) -> dict[str, str]:
    """Loggable view of *auth* with the credential masked."""
    if auth.credential is None:
        return {"type": auth.type.value}
    return {"type": auth.type.value, "credential": "***"}
