"""
Exception taxonomy for the WB Fleet Admin orchestrator.
"""


class FleetAdminError(Exception):
    """Base class for all orchestrator errors."""


class UnauthorizedCommandError(FleetAdminError):
    """Rendered command did not match any allow-list rule."""

    def __init__(self, command: str):
        super().__init__(f"Command not allowed: {command!r}")
        self.command = command


class BusyError(FleetAdminError):
    """Another remote operation is already in flight."""

    def __init__(self, operation=None):
        if operation is not None:
            message = (
                f"Another operation is in progress "
                f"({operation.kind.value} {operation.instance_id}); retry later"
            )
        else:
            message = "Another operation is in progress; retry later"
        super().__init__(message)
        self.operation = operation


class TransportError(FleetAdminError):
    """SSH connection could not be established or the command could not be spawned."""


class NotFoundError(FleetAdminError):
    """Unknown instance identifier."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance not found: {instance_id}")
        self.instance_id = instance_id


class InventoryError(FleetAdminError):
    """Inventory service could not be read."""


class RemoteCommandError(FleetAdminError):
    """Remote command exited non-zero where output had to be parsed."""

    def __init__(self, command: str, stderr: str, exit_code: int):
        super().__init__(
            f"Remote command failed ({exit_code}): {command}: {stderr.strip()}"
        )
        self.command = command
        self.stderr = stderr
        self.exit_code = exit_code
