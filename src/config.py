"""
Configuration management for the WB Fleet Admin orchestrator.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

DEFAULT_STARTUP_MARKER = "Listening on http://0.0.0.0:8000/"


@dataclass
class AdminConfig:
    """Configuration for remote fleet operations."""

    remote_host: str = "159.223.167.134"
    ssh_user: str = "root"
    ssh_key_path: str = "~/.ssh/id_rsa"
    ssh_port: int = 22
    connect_timeout: float = 15.0
    connection_idle_timeout: float = 600.0
    command_timeout: Optional[float] = None
    inventory_url: str = "https://central.fastr-analytics.org/servers.json"
    health_url_template: str = "https://{instance_id}.fastr-analytics.org/health_check"
    startup_marker: str = DEFAULT_STARTUP_MARKER
    poll_interval: float = 5.0
    max_poll_attempts: int = 400
    settle_delay: float = 1.0
    image_repository: str = "timroberton/comb"
    tag_prefix: str = "wb-fastr-server-v"
    background_readiness: bool = False
    admin_api_token: Optional[str] = None
    allowed_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )
    verbose: bool = False

    @property
    def key_filename(self) -> str:
        """SSH key path with ~ expanded."""
        return os.path.expanduser(self.ssh_key_path)

    @classmethod
    def from_args(cls, args) -> "AdminConfig":
        """
        Create configuration from command-line arguments.

        Options left unset on the command line fall back to the environment,
        then to the defaults.

        Args:
            args: Parsed argparse arguments

        Returns:
            AdminConfig instance
        """
        config = cls.from_env()
        overrides = {
            "remote_host": args.host,
            "ssh_user": args.ssh_user,
            "ssh_key_path": args.ssh_key,
            "inventory_url": args.inventory_url,
            "poll_interval": args.poll_interval,
            "max_poll_attempts": args.max_attempts,
            "settle_delay": args.settle_delay,
            "command_timeout": args.command_timeout,
        }
        for name, value in overrides.items():
            if value is not None:
                setattr(config, name, value)
        config.verbose = args.verbose
        config.background_readiness = False
        return config.clamped()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AdminConfig":
        """
        Create configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            AdminConfig instance
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def get_str(key: str, default):
            value = env.get(key, "").strip()
            return value if value else default

        def get_int(key: str, default: int) -> int:
            value = env.get(key, "").strip()
            return int(value) if value else default

        def get_float(key: str, default: float) -> float:
            value = env.get(key, "").strip()
            return float(value) if value else default

        def get_bool(key: str, default: bool) -> bool:
            value = env.get(key, "").strip().lower()
            if value in ("true", "1", "yes"):
                return True
            if value in ("false", "0", "no"):
                return False
            return default

        origins_raw = env.get("ALLOWED_ORIGINS", "")
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()]

        config = cls(
            remote_host=get_str("REMOTE_HOST", defaults.remote_host),
            ssh_user=get_str("SSH_USER", defaults.ssh_user),
            ssh_key_path=get_str("SSH_KEY_PATH", defaults.ssh_key_path),
            ssh_port=get_int("SSH_PORT", defaults.ssh_port),
            connect_timeout=get_float("SSH_CONNECT_TIMEOUT", defaults.connect_timeout),
            connection_idle_timeout=get_float(
                "CONNECTION_IDLE_TIMEOUT", defaults.connection_idle_timeout
            ),
            command_timeout=get_float("SSH_COMMAND_TIMEOUT", defaults.command_timeout),
            inventory_url=get_str("INVENTORY_URL", defaults.inventory_url),
            health_url_template=get_str(
                "HEALTH_URL_TEMPLATE", defaults.health_url_template
            ),
            startup_marker=get_str("STARTUP_MARKER", defaults.startup_marker),
            poll_interval=get_float("POLL_INTERVAL", defaults.poll_interval),
            max_poll_attempts=get_int("MAX_POLL_ATTEMPTS", defaults.max_poll_attempts),
            settle_delay=get_float("SETTLE_DELAY", defaults.settle_delay),
            image_repository=get_str("IMAGE_REPOSITORY", defaults.image_repository),
            tag_prefix=get_str("TAG_PREFIX", defaults.tag_prefix),
            background_readiness=get_bool("BACKGROUND_READINESS", True),
            admin_api_token=get_str("ADMIN_API_TOKEN", None),
            allowed_origins=origins or defaults.allowed_origins,
            verbose=get_bool("VERBOSE", False),
        )
        return config.clamped()

    def clamped(self) -> "AdminConfig":
        """Apply lower bounds to polling settings."""
        self.poll_interval = max(float(self.poll_interval), 1.0)
        self.max_poll_attempts = max(int(self.max_poll_attempts), 1)
        self.settle_delay = max(float(self.settle_delay), 0.0)
        return self
