"""Providers used to manage a local backend."""
from __future__ import annotations

from .binary_provider import BinaryProvisioner, BinaryProvisionError, ResolvedBinary
from .deploy import CommandResult, DeployError, DeployOrchestrator, DeployRunner, DeployTimeoutError
from .process import BackendCleanupError, ProcessSupervisor, SpawnError, StdioMode
from .readiness import ProbeOutcome, ReadinessTimeoutError, wait_for_http_ok
from .runtime_api import BackendCallError, RuntimeApiClient

__all__ = [
    "BackendCallError",
    "BackendCleanupError",
    "BinaryProvisionError",
    "BinaryProvisioner",
    "CommandResult",
    "DeployError",
    "DeployOrchestrator",
    "DeployRunner",
    "DeployTimeoutError",
    "ProbeOutcome",
    "ProcessSupervisor",
    "ReadinessTimeoutError",
    "ResolvedBinary",
    "RuntimeApiClient",
    "SpawnError",
    "StdioMode",
    "wait_for_http_ok",
]
