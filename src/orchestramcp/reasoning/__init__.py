"""Reasoning domain: branchable, revisable thought sequences per session."""

from __future__ import annotations

from orchestramcp.reasoning.engine import DEFAULT_SESSION
from orchestramcp.reasoning.engine import SequentialReasoningEngine
from orchestramcp.reasoning.engine import ThoughtSession
from orchestramcp.reasoning.schemas import ThoughtAck
from orchestramcp.reasoning.schemas import ThoughtNode

__all__ = [
    "DEFAULT_SESSION",
    "SequentialReasoningEngine",
    "ThoughtAck",
    "ThoughtNode",
    "ThoughtSession",
]
