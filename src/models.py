"""
Data models for the WB Fleet Admin orchestrator.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


class LifecycleStatus(Enum):
    """Per-instance restart lifecycle as surfaced to callers."""

    IDLE = "idle"
    PENDING = "pending"
    ONLINE = "online"


class OperationKind(Enum):
    """Mutating operations that take the exclusivity slot."""

    UPDATE = "update"
    RESTART = "restart"


@dataclass
class Instance:
    """Inventory record for one managed instance."""

    id: str
    label: str = ""
    port: Optional[int] = None
    server_version: str = ""
    admin_version: Optional[str] = None
    instance_dir: Optional[str] = None
    french: bool = False
    ethiopian: bool = False
    open_access: bool = False
    version_confirmed: bool = True  # False while server_version is tentative

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Instance":
        """
        Build an Instance from an inventory (servers.json) entry.

        Args:
            data: Inventory entry using the inventory's camelCase keys

        Returns:
            Instance
        """
        return cls(
            id=data["id"],
            label=data.get("label", "") or "",
            port=data.get("port"),
            server_version=data.get("serverVersion", "") or "",
            admin_version=data.get("adminVersion"),
            instance_dir=data.get("instanceDir"),
            french=bool(data.get("french", False)),
            ethiopian=bool(data.get("ethiopian", False)),
            open_access=bool(data.get("openAccess", False)),
        )

    def with_version(self, version: str, confirmed: bool) -> "Instance":
        """Return a copy carrying a different server version."""
        return replace(self, server_version=version, version_confirmed=confirmed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "port": self.port,
            "serverVersion": self.server_version,
            "adminVersion": self.admin_version,
            "instanceDir": self.instance_dir,
            "french": self.french,
            "ethiopian": self.ethiopian,
            "openAccess": self.open_access,
            "versionConfirmed": self.version_confirmed,
        }


@dataclass(frozen=True)
class CommandExecutionResult:
    """Outcome of one remote command."""

    success: bool
    stdout: str
    stderr: str
    exit_code: int

    @classmethod
    def from_exit_code(
        cls, exit_code: int, stdout: str, stderr: str
    ) -> "CommandExecutionResult":
        return cls(
            success=exit_code == 0, stdout=stdout, stderr=stderr, exit_code=exit_code
        )


@dataclass
class Operation:
    """The single in-flight remote action."""

    instance_id: str
    kind: OperationKind
    submitted_at: float
    target_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "kind": self.kind.value,
            "submitted_at": self.submitted_at,
            "target_version": self.target_version,
        }


@dataclass
class OperationResult:
    """Result of an update or restart request."""

    instance_id: str
    kind: OperationKind
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    target_version: Optional[str] = None
    # True: marker seen, False: readiness timeout, None: not checked / still polling
    readiness: Optional[bool] = None
    message: str = ""
    follow_up: Optional["OperationResult"] = None  # restart chained after an update

    @property
    def readiness_timed_out(self) -> bool:
        return self.readiness is False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "kind": self.kind.value,
            "success": self.success,
            "message": self.message,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "target_version": self.target_version,
            "readiness": self.readiness,
            "follow_up": self.follow_up.to_dict() if self.follow_up else None,
        }


@dataclass
class InstanceStatus:
    """Lifecycle status plus the last liveness snapshot."""

    instance_id: str
    lifecycle: LifecycleStatus
    health: Optional[Dict[str, Any]] = field(default=None)

    @property
    def reachable(self) -> bool:
        return self.health is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "lifecycle": self.lifecycle.value,
            "reachable": self.reachable,
            "health": self.health,
        }
