"""
WB Fleet Admin: remote update/restart orchestration for instances on a shared host.
"""

from authorizer import RemoteCommand, authorize, is_command_allowed
from channel import RemoteExecutionChannel
from clients import HealthCheckClient, InventoryClient
from config import AdminConfig
from log_utils import setup_logging
from models import (
    CommandExecutionResult,
    Instance,
    InstanceStatus,
    LifecycleStatus,
    Operation,
    OperationKind,
    OperationResult,
)
from orchestrator import OperationOrchestrator
from poller import ReadinessPoller

__all__ = [
    "RemoteCommand",
    "authorize",
    "is_command_allowed",
    "RemoteExecutionChannel",
    "HealthCheckClient",
    "InventoryClient",
    "AdminConfig",
    "setup_logging",
    "CommandExecutionResult",
    "Instance",
    "InstanceStatus",
    "LifecycleStatus",
    "Operation",
    "OperationKind",
    "OperationResult",
    "OperationOrchestrator",
    "ReadinessPoller",
]
