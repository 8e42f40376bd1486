"""
Remote operation orchestrator.

Turns update and restart requests into authorized remote commands on the
shared host, one at a time fleet-wide. Updates and restarts contend for the
same container engine, so a single permit covers the whole
request -> execute -> poll sequence for every instance, not per instance.
Read-only queries (status, logs, version catalog, inventory) never take the
permit.
"""

import logging
import re
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import authorizer
from channel import RemoteExecutionChannel
from clients import HealthCheckClient, InventoryClient
from config import DEFAULT_STARTUP_MARKER
from errors import BusyError, NotFoundError, RemoteCommandError
from models import (
    CommandExecutionResult,
    Instance,
    InstanceStatus,
    LifecycleStatus,
    Operation,
    OperationKind,
    OperationResult,
)
from poller import ReadinessPoller

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"\d+(?:\.\d+){1,2}")


def _version_key(version: str) -> Optional[Tuple[int, int, int]]:
    if not _VERSION_RE.fullmatch(version):
        return None
    parts = [int(p) for p in version.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return parts[0], parts[1], parts[2]


def parse_version_catalog(output: str, tag_prefix: str) -> List[str]:
    """
    Turn `docker images --format "{{.Tag}}"` output into installable versions.

    Only tags carrying `tag_prefix` count. Of those, only the versions on the
    highest minor line are kept, newest first.

    Args:
        output: One image tag per line
        tag_prefix: Tag prefix marking server images (stripped from results)

    Returns:
        Version strings, newest first
    """
    keyed: Dict[str, Tuple[int, int, int]] = {}
    for line in output.splitlines():
        tag = line.strip()
        if not tag.startswith(tag_prefix):
            continue
        version = tag[len(tag_prefix):]
        key = _version_key(version)
        if key is not None:
            keyed[version] = key

    if not keyed:
        return []

    highest_minor = max(key[1] for key in keyed.values())
    selected = [v for v, key in keyed.items() if key[1] == highest_minor]
    return sorted(selected, key=lambda v: keyed[v], reverse=True)


class OperationOrchestrator:
    """Serializes update/restart operations and tracks instance lifecycle."""

    def __init__(
        self,
        host: str,
        channel: RemoteExecutionChannel,
        inventory: InventoryClient,
        health: Optional[HealthCheckClient] = None,
        poller: Optional[ReadinessPoller] = None,
        startup_marker: str = DEFAULT_STARTUP_MARKER,
        max_poll_attempts: int = 400,
        poll_interval: float = 5.0,
        settle_delay: float = 1.0,
        image_repository: str = "timroberton/comb",
        tag_prefix: str = "wb-fastr-server-v",
        background_readiness: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the orchestrator.

        Args:
            host: Managed host every instance runs on
            channel: Execution channel to the host
            inventory: Inventory collaborator
            health: Optional health-check collaborator for status snapshots
            poller: Readiness poller (built from channel/host when omitted)
            startup_marker: Log substring printed once an instance has booted
            max_poll_attempts: Readiness attempt budget
            poll_interval: Seconds between readiness attempts
            settle_delay: Pause between a successful update and its restart
            image_repository: Docker repository listed for the version catalog
            tag_prefix: Tag prefix of installable server images
            background_readiness: Poll readiness on a worker thread and return
                as soon as the restart command has run
            sleep: Sleep function, injectable for tests
            clock: Wall clock used for operation timestamps
        """
        self.host = host
        self.channel = channel
        self.inventory = inventory
        self.health = health
        self.poller = poller or ReadinessPoller(channel, host)
        self.startup_marker = startup_marker
        self.max_poll_attempts = max_poll_attempts
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.image_repository = image_repository
        self.tag_prefix = tag_prefix
        self.background_readiness = background_readiness
        self._sleep = sleep
        self._clock = clock

        self._slot = threading.BoundedSemaphore(1)
        self._current: Optional[Operation] = None
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

        # Guards the maps below; never held across remote calls.
        self._state_lock = threading.Lock()
        self._statuses: Dict[str, LifecycleStatus] = {}
        self._instances: Dict[str, Instance] = {}
        # instance id -> (tentative version, readiness confirmed)
        self._tentative: Dict[str, Tuple[str, bool]] = {}

    @classmethod
    def from_config(cls, config) -> "OperationOrchestrator":
        channel = RemoteExecutionChannel.from_config(config)
        return cls(
            host=config.remote_host,
            channel=channel,
            inventory=InventoryClient(config.inventory_url),
            health=HealthCheckClient(config.health_url_template),
            startup_marker=config.startup_marker,
            max_poll_attempts=config.max_poll_attempts,
            poll_interval=config.poll_interval,
            settle_delay=config.settle_delay,
            image_repository=config.image_repository,
            tag_prefix=config.tag_prefix,
            background_readiness=config.background_readiness,
        )

    # --- exclusivity slot

    @property
    def current_operation(self) -> Optional[Operation]:
        return self._current

    @property
    def busy(self) -> bool:
        return self._current is not None

    def _acquire(self, op: Operation) -> None:
        # slot and _current change together so a rejected caller sees the holder
        with self._state_lock:
            acquired = self._slot.acquire(blocking=False)
            if acquired:
                self._current = op
            else:
                holder = self._current
        if not acquired:
            logger.info(
                f"Rejected {op.kind.value} {op.instance_id}: another operation is in flight"
            )
            raise BusyError(holder)
        logger.info(f"Acquired operation slot: {op.kind.value} {op.instance_id}")

    def _release(self) -> None:
        with self._state_lock:
            op = self._current
            self._current = None
            try:
                self._slot.release()
            except ValueError as e:
                raise RuntimeError("Operation slot released more than once") from e
        if op is not None:
            elapsed = self._clock() - op.submitted_at
            logger.info(
                f"Released operation slot: {op.kind.value} {op.instance_id} ({elapsed:.0f}s)"
            )

    # --- lifecycle and cache state

    def _set_status(self, instance_id: str, status: LifecycleStatus) -> None:
        with self._state_lock:
            self._statuses[instance_id] = status
        logger.debug(f"{instance_id}: lifecycle -> {status.value}")

    def _settle_pending(self, instance_id: str) -> None:
        with self._state_lock:
            if self._statuses.get(instance_id) is LifecycleStatus.PENDING:
                self._statuses[instance_id] = LifecycleStatus.IDLE
                logger.warning(f"{instance_id}: operation ended while pending; reset to idle")

    def lifecycle_status(self, instance_id: str) -> LifecycleStatus:
        with self._state_lock:
            return self._statuses.get(instance_id, LifecycleStatus.IDLE)

    def lifecycle_statuses(self) -> Dict[str, str]:
        with self._state_lock:
            return {k: v.value for k, v in self._statuses.items()}

    def _store_instance(self, inst: Instance) -> Instance:
        with self._state_lock:
            tentative = self._tentative.get(inst.id)
            if tentative is not None:
                version, confirmed = tentative
                if inst.server_version == version:
                    del self._tentative[inst.id]
                else:
                    inst = inst.with_version(version, confirmed)
            self._instances[inst.id] = inst
            return inst

    def _mark_tentative(self, inst: Instance, version: str) -> None:
        with self._state_lock:
            self._tentative[inst.id] = (version, False)
            self._instances[inst.id] = inst.with_version(version, confirmed=False)

    def _confirm_tentative(self, instance_id: str) -> None:
        with self._state_lock:
            tentative = self._tentative.get(instance_id)
            if tentative is None:
                return
            version = tentative[0]
            self._tentative[instance_id] = (version, True)
            cached = self._instances.get(instance_id)
            if cached is not None:
                self._instances[instance_id] = cached.with_version(version, confirmed=True)

    def get_cached_instance(self, instance_id: str) -> Optional[Instance]:
        with self._state_lock:
            return self._instances.get(instance_id)

    def list_instances(self, refresh: bool = False) -> List[Instance]:
        """
        Return the cached fleet, fetching it from inventory when needed.

        Raises:
            InventoryError: If the inventory cannot be read
        """
        with self._state_lock:
            cached = list(self._instances.values())
        if cached and not refresh:
            return cached

        fetched = self.inventory.list_instances()
        with self._state_lock:
            self._instances = {}
        return [self._store_instance(inst) for inst in fetched]

    def _resolve_instance(self, instance_id: str) -> Instance:
        inst = self.inventory.get_instance(instance_id)
        if inst is None:
            raise NotFoundError(instance_id)
        return self._store_instance(inst)

    # --- mutating operations

    def request_update(self, instance_id: str, version: str) -> OperationResult:
        """
        Update an instance's server version, then restart it.

        Args:
            instance_id: Instance identifier
            version: Target server version

        Returns:
            OperationResult for the update, with the restart in `follow_up`

        Raises:
            BusyError: If any operation is already in flight
            NotFoundError: If the instance is unknown to inventory
            UnauthorizedCommandError: If the rendered command is not allowed
            TransportError: If the host cannot be reached
        """
        op = Operation(
            instance_id=instance_id,
            kind=OperationKind.UPDATE,
            submitted_at=self._clock(),
            target_version=version,
        )
        self._acquire(op)
        handed_off = False
        try:
            inst = self._resolve_instance(instance_id)
            command = authorizer.config_update(inst.id, server=version).authorized()
            result = self.channel.execute(self.host, command)

            if not result.success:
                logger.error(
                    f"Update FAILED for {inst.id} (exit {result.exit_code}): {result.stderr.strip()}"
                )
                return self._result(
                    inst.id,
                    OperationKind.UPDATE,
                    result,
                    target_version=version,
                    message=f"Failed to update {inst.id} to {version}",
                )

            logger.info(f"{inst.id} updated to {version} (was {inst.server_version}); restarting")
            self._mark_tentative(inst, version)

            if self.settle_delay > 0:
                self._sleep(self.settle_delay)

            restart_result, handed_off = self._restart_locked(inst.id)
            message = f"{inst.id} updated to {version}; {restart_result.message}"
            update_result = self._result(
                inst.id,
                OperationKind.UPDATE,
                result,
                target_version=version,
                message=message,
            )
            update_result.success = restart_result.success
            update_result.readiness = restart_result.readiness
            update_result.follow_up = restart_result
            return update_result
        finally:
            if not handed_off:
                self._settle_pending(instance_id)
                self._release()

    def request_restart(self, instance_id: str) -> OperationResult:
        """
        Restart an instance and wait for it to report startup.

        Raises:
            BusyError: If any operation is already in flight
            NotFoundError: If the instance is unknown to inventory
            UnauthorizedCommandError: If the rendered command is not allowed
            TransportError: If the host cannot be reached
        """
        op = Operation(
            instance_id=instance_id,
            kind=OperationKind.RESTART,
            submitted_at=self._clock(),
        )
        self._acquire(op)
        handed_off = False
        try:
            inst = self._resolve_instance(instance_id)
            result, handed_off = self._restart_locked(inst.id)
            return result
        finally:
            if not handed_off:
                self._settle_pending(instance_id)
                self._release()

    def _restart_locked(self, instance_id: str) -> Tuple[OperationResult, bool]:
        """
        Run the restart sequence while holding the slot.

        Returns:
            (result, handed_off); handed_off is True when a readiness worker
            now owns the slot and will release it
        """
        self._set_status(instance_id, LifecycleStatus.PENDING)
        command = authorizer.restart(instance_id).authorized()
        result = self.channel.execute(self.host, command)

        if not result.success:
            self._set_status(instance_id, LifecycleStatus.IDLE)
            logger.error(
                f"Restart FAILED for {instance_id} (exit {result.exit_code}): {result.stderr.strip()}"
            )
            return (
                self._result(
                    instance_id,
                    OperationKind.RESTART,
                    result,
                    message=f"Failed to restart {instance_id}",
                ),
                False,
            )

        if self.background_readiness:
            self._start_readiness_worker(instance_id)
            return (
                self._result(
                    instance_id,
                    OperationKind.RESTART,
                    result,
                    message=f"Restart issued for {instance_id}; waiting for startup",
                ),
                True,
            )

        ready = self._await_readiness(instance_id)
        if ready:
            message = f"{instance_id} restarted and is online"
        else:
            message = f"{instance_id} restarted, but readiness was not confirmed"
        return (
            self._result(
                instance_id,
                OperationKind.RESTART,
                result,
                readiness=ready,
                message=message,
            ),
            False,
        )

    def _await_readiness(self, instance_id: str) -> bool:
        logger.info(
            f"Waiting for {instance_id} to start "
            f"(max {self.max_poll_attempts} attempts every {self.poll_interval}s)..."
        )
        ready = self.poller.poll_until_ready(
            instance_id,
            self.startup_marker,
            max_attempts=self.max_poll_attempts,
            interval=self.poll_interval,
            stop_event=self._stop,
        )
        if ready:
            self._confirm_tentative(instance_id)
            self._set_status(instance_id, LifecycleStatus.ONLINE)
        else:
            self._set_status(instance_id, LifecycleStatus.IDLE)
            logger.warning(
                f"{instance_id}: restart command succeeded but startup marker was not seen"
            )
        return ready

    def _start_readiness_worker(self, instance_id: str) -> None:
        worker = threading.Thread(
            target=self._readiness_worker,
            args=(instance_id,),
            name=f"readiness-{instance_id}",
            daemon=True,
        )
        self._worker = worker
        worker.start()

    def _readiness_worker(self, instance_id: str) -> None:
        try:
            self._await_readiness(instance_id)
        except Exception:
            logger.exception(f"Readiness polling for {instance_id} failed")
        finally:
            self._settle_pending(instance_id)
            self._release()

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Join the readiness worker, if any; True once nothing is in flight."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
            if worker.is_alive():
                return False
        return not self.busy

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel readiness polling and close SSH connections."""
        self._stop.set()
        self.wait_for_idle(timeout)
        self.channel.close()

    @staticmethod
    def _result(
        instance_id: str,
        kind: OperationKind,
        result: CommandExecutionResult,
        target_version: Optional[str] = None,
        readiness: Optional[bool] = None,
        message: str = "",
    ) -> OperationResult:
        return OperationResult(
            instance_id=instance_id,
            kind=kind,
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            target_version=target_version,
            readiness=readiness,
            message=message,
        )

    # --- read-only operations

    def get_status(self, instance_id: str) -> InstanceStatus:
        """
        Lifecycle status plus a liveness snapshot.

        An unreachable instance yields health=None (unknown) rather than an
        error.
        """
        health = self.health.get_health(instance_id) if self.health else None
        return InstanceStatus(
            instance_id=instance_id,
            lifecycle=self.lifecycle_status(instance_id),
            health=health,
        )

    def get_logs(self, instance_id: str, tail: Optional[int] = None) -> CommandExecutionResult:
        """
        Fetch an instance's container log.

        Raises:
            UnauthorizedCommandError: If the identifier renders an illegal command
            TransportError: If the host cannot be reached
        """
        command = authorizer.docker_logs(instance_id, tail=tail).authorized()
        return self.channel.execute(self.host, command)

    def get_version_catalog(self) -> List[str]:
        """
        List installable server versions, newest first.

        Raises:
            TransportError: If the host cannot be reached
            RemoteCommandError: If the image listing fails on the host
        """
        command = authorizer.docker_image_tags(self.image_repository).authorized()
        result = self.channel.execute(self.host, command)
        if not result.success:
            raise RemoteCommandError(command, result.stderr, result.exit_code)
        return parse_version_catalog(result.stdout, self.tag_prefix)
