"""Expert backend implementations."""

from agent_relay.orchestrator.backend.base import (
    BackendCallError,
    BackendMessage,
    BackendRequest,
    BackendResponse,
    ExpertBackend,
)
from agent_relay.orchestrator.backend.cli_backend import CliExpertBackend

__all__ = [
    "BackendCallError",
    "BackendMessage",
    "BackendRequest",
    "BackendResponse",
    "CliExpertBackend",
    "ExpertBackend",
]
