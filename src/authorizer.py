"""
Command allow-list and structured command builder.

Every command sent to the managed host is built from a RemoteCommand,
rendered to a string, and checked against ALLOWED_COMMANDS immediately
before dispatch. Instance identifiers and versions come from callers, so
the rendered string is re-validated end-to-end rather than trusted.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Pattern, Tuple

from errors import UnauthorizedCommandError

logger = logging.getLogger(__name__)

# identifiers never start with "-", so they cannot be read as options
_ID = r"[A-Za-z0-9][\w-]*"
_VERSION = r"[\d.]+"
_BOOL = r"(?:true|false)"
_TARGET = rf"(?:{_ID}|@[\w-]+|server=[\d.]+)"
_TARGETS = rf"{_TARGET}(?: {_TARGET})*"
_UPDATE_OPTION = (
    r"(?:"
    r'--label "[\w .-]+"'
    rf"|--french {_BOOL}"
    rf"|--ethiopian {_BOOL}"
    rf"|--open-access {_BOOL}"
    rf"|--server {_VERSION}"
    rf"|--admin {_VERSION}"
    rf"|--instance-dir {_ID}"
    r")"
)

# Ordered rule families. Patterns are matched with re.fullmatch, so no
# anchors are needed and a trailing newline never matches.
_RULES: Dict[str, Tuple[str, ...]] = {
    "inventory": (
        r"wb c list",
        r"wb c list --json",
        rf"wb c list --tag {_ID}",
        rf"wb c show {_ID}",
        rf"wb c show {_ID} --json",
        rf"wb c add {_ID}",
        rf"wb c update (?:{_ID}|@[\w-]+)(?: {_UPDATE_OPTION})*",
        rf"wb c remove {_ID}",
        rf"wb c tag {_ID}(?: {_ID})+",
        rf"wb c untag {_ID}(?: {_ID})+",
        r"wb c validate",
        r"wb c backup",
        r"wb c restore [A-Za-z0-9][\w.-]*",
    ),
    "initialization": (
        rf"wb init-dirs {_ID}",
        rf"wb init-nginx {_ID}",
        rf"wb init-ssl {_ID}",
        rf"wb remove-dirs {_ID}",
        rf"wb remove-nginx {_ID}",
        rf"wb remove-ssl {_ID}",
        r"wb list-nginx",
        r"wb list-ssl",
    ),
    "container": (
        rf"wb run {_TARGETS}",
        rf"wb start {_TARGETS}",
        rf"wb stop {_TARGETS}",
        rf"wb restart {_TARGETS}",
        r"wb pull",
        r"wb prune",
    ),
    "diagnostics": (
        r"wb help",
        r"docker ps",
        rf"docker logs(?: --tail \d+)? {_ID}",
        r'docker images --format "\{\{\.Tag\}\}" [A-Za-z0-9][\w./-]*',
    ),
}

ALLOWED_COMMANDS: Tuple[Tuple[str, Pattern[str]], ...] = tuple(
    (family, re.compile(pattern, re.ASCII))
    for family, patterns in _RULES.items()
    for pattern in patterns
)


def matching_family(command: str) -> Optional[str]:
    """Return the rule family that allows `command`, or None."""
    for family, pattern in ALLOWED_COMMANDS:
        if pattern.fullmatch(command):
            return family
    return None


def is_command_allowed(command: str) -> bool:
    """True iff the whole command matches at least one allow-list rule."""
    return matching_family(command) is not None


def authorize(command: str) -> str:
    """
    Gate a rendered command before dispatch.

    Args:
        command: Fully rendered command string

    Returns:
        The command, unchanged

    Raises:
        UnauthorizedCommandError: If no rule matches the whole string
    """
    if not is_command_allowed(command):
        logger.warning(f"AUDIT: rejected command {command!r}")
        raise UnauthorizedCommandError(command)
    return command


class CommandKind(Enum):
    """Legal operation kinds and their command prefix."""

    CONFIG_LIST = "wb c list"
    CONFIG_SHOW = "wb c show"
    CONFIG_UPDATE = "wb c update"
    INIT_DIRS = "wb init-dirs"
    INIT_NGINX = "wb init-nginx"
    INIT_SSL = "wb init-ssl"
    RUN = "wb run"
    START = "wb start"
    STOP = "wb stop"
    RESTART = "wb restart"
    PULL = "wb pull"
    PRUNE = "wb prune"
    DOCKER_PS = "docker ps"
    DOCKER_LOGS = "docker logs"
    DOCKER_IMAGE_TAGS = "docker images"


@dataclass(frozen=True)
class RemoteCommand:
    """A command kind plus its arguments, rendered only when authorized."""

    kind: CommandKind
    args: Tuple[str, ...] = ()

    def render(self) -> str:
        return " ".join((self.kind.value,) + tuple(self.args))

    def authorized(self) -> str:
        """Render and authorize in one step."""
        return authorize(self.render())

    def __str__(self) -> str:
        return self.render()


def _flag(value: bool) -> str:
    return "true" if value else "false"


def config_list(tag: Optional[str] = None, as_json: bool = False) -> RemoteCommand:
    args: Tuple[str, ...] = ()
    if tag:
        args = ("--tag", tag)
    elif as_json:
        args = ("--json",)
    return RemoteCommand(CommandKind.CONFIG_LIST, args)


def config_show(instance_id: str, as_json: bool = False) -> RemoteCommand:
    args = (instance_id, "--json") if as_json else (instance_id,)
    return RemoteCommand(CommandKind.CONFIG_SHOW, args)


def config_update(
    instance_id: str,
    server: Optional[str] = None,
    admin: Optional[str] = None,
    label: Optional[str] = None,
    french: Optional[bool] = None,
    ethiopian: Optional[bool] = None,
    open_access: Optional[bool] = None,
    instance_dir: Optional[str] = None,
) -> RemoteCommand:
    """Build `wb c update <id> [options]`; options render in a fixed order."""
    args = [instance_id]
    if label is not None:
        args += ["--label", f'"{label}"']
    if french is not None:
        args += ["--french", _flag(french)]
    if ethiopian is not None:
        args += ["--ethiopian", _flag(ethiopian)]
    if open_access is not None:
        args += ["--open-access", _flag(open_access)]
    if server is not None:
        args += ["--server", server]
    if admin is not None:
        args += ["--admin", admin]
    if instance_dir is not None:
        args += ["--instance-dir", instance_dir]
    return RemoteCommand(CommandKind.CONFIG_UPDATE, tuple(args))


def init_dirs(instance_id: str) -> RemoteCommand:
    return RemoteCommand(CommandKind.INIT_DIRS, (instance_id,))


def init_nginx(instance_id: str) -> RemoteCommand:
    return RemoteCommand(CommandKind.INIT_NGINX, (instance_id,))


def init_ssl(instance_id: str) -> RemoteCommand:
    return RemoteCommand(CommandKind.INIT_SSL, (instance_id,))


def _targets(kind: CommandKind, targets: Tuple[str, ...]) -> RemoteCommand:
    if not targets:
        raise ValueError(f"{kind.value} needs at least one target")
    return RemoteCommand(kind, tuple(targets))


def run(*targets: str) -> RemoteCommand:
    return _targets(CommandKind.RUN, targets)


def start(*targets: str) -> RemoteCommand:
    return _targets(CommandKind.START, targets)


def stop(*targets: str) -> RemoteCommand:
    return _targets(CommandKind.STOP, targets)


def restart(*targets: str) -> RemoteCommand:
    return _targets(CommandKind.RESTART, targets)


def pull() -> RemoteCommand:
    return RemoteCommand(CommandKind.PULL)


def prune() -> RemoteCommand:
    return RemoteCommand(CommandKind.PRUNE)


def docker_ps() -> RemoteCommand:
    return RemoteCommand(CommandKind.DOCKER_PS)


def docker_logs(instance_id: str, tail: Optional[int] = None) -> RemoteCommand:
    if tail is not None:
        if tail < 0:
            raise ValueError(f"tail must be non-negative, got {tail}")
        return RemoteCommand(CommandKind.DOCKER_LOGS, ("--tail", str(tail), instance_id))
    return RemoteCommand(CommandKind.DOCKER_LOGS, (instance_id,))


def docker_image_tags(repository: str) -> RemoteCommand:
    return RemoteCommand(
        CommandKind.DOCKER_IMAGE_TAGS, ("--format", '"{{.Tag}}"', repository)
    )
