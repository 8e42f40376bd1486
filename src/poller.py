"""
Readiness polling for restarted instances.

After a restart the instance's container log is fetched on a fixed cadence
until the startup marker shows up or the attempt budget is spent. Fetch
failures count as attempts; only running out of attempts ends polling.
"""

import logging
import threading
import time
from typing import Callable, Optional

import authorizer
from errors import TransportError

logger = logging.getLogger(__name__)


class ReadinessPoller:
    """Waits for an instance's startup marker in its container log."""

    def __init__(
        self,
        channel,
        host: str,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the poller.

        Args:
            channel: RemoteExecutionChannel used to fetch logs
            host: Managed host the instances run on
            sleep: Sleep function used when no stop event is given
        """
        self.channel = channel
        self.host = host
        self._sleep = sleep
        self.last_attempts = 0

    def fetch_contains(self, instance_id: str, marker: str) -> bool:
        """
        Fetch the instance log once and look for the marker.

        Raises:
            TransportError: If the log could not be fetched
        """
        command = authorizer.docker_logs(instance_id).authorized()
        result = self.channel.execute(self.host, command)
        if not result.success:
            logger.debug(
                f"Log fetch for {instance_id} exited {result.exit_code}: "
                f"{result.stderr.strip()[:200]}"
            )
            return False
        # docker logs replays the container's stderr on stderr
        return marker in result.stdout or marker in result.stderr

    def poll_until_ready(
        self,
        instance_id: str,
        marker: str,
        max_attempts: int = 400,
        interval: float = 5.0,
        stop_event: Optional[threading.Event] = None,
    ) -> bool:
        """
        Poll the instance log until the marker appears.

        Args:
            instance_id: Instance (container) identifier
            marker: Literal substring printed once the instance has booted
            max_attempts: Attempt budget (400 x 5s is roughly 35 minutes)
            interval: Seconds between attempts; 0 polls back to back
            stop_event: Optional cancellation token

        Returns:
            True on the first attempt that sees the marker, False when the
            budget is exhausted or polling was cancelled
        """
        start = time.time()
        self.last_attempts = 0

        for attempt in range(1, max_attempts + 1):
            self.last_attempts = attempt
            try:
                if self.fetch_contains(instance_id, marker):
                    logger.info(
                        f"✓ {instance_id} is online after {attempt} attempt(s) "
                        f"({time.time() - start:.0f}s)"
                    )
                    return True
            except TransportError as e:
                logger.warning(
                    f"Log fetch for {instance_id} failed "
                    f"(attempt {attempt}/{max_attempts}): {e}"
                )

            if attempt == max_attempts:
                break

            if attempt % 12 == 0:
                logger.info(
                    f"  {instance_id}: still waiting for startup marker "
                    f"({attempt}/{max_attempts} attempts, {time.time() - start:.0f}s elapsed)"
                )

            if stop_event is not None:
                if stop_event.wait(interval):
                    logger.info(f"Readiness polling for {instance_id} cancelled")
                    return False
            elif interval > 0:
                self._sleep(interval)

        logger.error(
            f"{instance_id} did not report startup after {max_attempts} attempts"
        )
        return False
