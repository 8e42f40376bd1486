"""
HTTP clients for the inventory and per-instance health collaborators.
"""

import logging
import random
import re
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from errors import InventoryError
from models import Instance

logger = logging.getLogger(__name__)

INSTANCE_ID_RE = re.compile(r"[\w-]+", re.ASCII)


class RestClient:
    """requests session with bounded retries on transient HTTP errors."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        timeout_s: float = 30,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the REST client.

        Args:
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
            max_delay: Upper bound on a single backoff delay
            sleep: Sleep function, injectable for tests
        """
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _get_with_retry(self, url: str, **kwargs) -> requests.Response:
        """
        GET with exponential backoff for transient errors.

        Returns:
            The final response (may be a non-retryable error status)

        Raises:
            RuntimeError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.get(url, timeout=self.timeout_s, **kwargs)
            except requests.RequestException as e:
                last_error = str(e)
                if attempt == self.max_retries:
                    break
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error for {url}: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                self._sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                if attempt == self.max_retries:
                    break
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code} for {url}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                self._sleep(delay)
                continue

            return resp

        raise RuntimeError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return min(float(resp.headers["Retry-After"]), self.max_delay)
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (random.random() - 0.5)
        return min(delay + jitter, self.max_delay)


class InventoryClient(RestClient):
    """Reads the fleet inventory (servers.json)."""

    def __init__(self, inventory_url: str, **kwargs):
        super().__init__(**kwargs)
        self.inventory_url = inventory_url

    def list_instances(self) -> List[Instance]:
        """
        Fetch every instance from the inventory.

        Returns:
            List of Instance records

        Raises:
            InventoryError: If the inventory cannot be fetched or parsed
        """
        try:
            resp = self._get_with_retry(self.inventory_url)
        except RuntimeError as e:
            raise InventoryError(f"Inventory unavailable: {e}") from e

        if resp.status_code != 200:
            raise InventoryError(
                f"List instances failed ({resp.status_code}): {resp.text[:200]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise InventoryError(f"Inventory is not valid JSON: {e}") from e

        if isinstance(data, dict):
            data = data.get("servers", [])
        if not isinstance(data, list):
            raise InventoryError(f"Unexpected inventory payload: {type(data).__name__}")

        instances: List[Instance] = []
        for item in data:
            if not isinstance(item, dict) or not item.get("id"):
                logger.debug(f"Skipping inventory entry without id: {item!r}")
                continue
            instances.append(Instance.from_dict(item))
        return instances

    def get_instance(self, instance_id: str) -> Optional[Instance]:
        """
        Look up one instance by identifier.

        Returns:
            Instance if found, None otherwise
        """
        for inst in self.list_instances():
            if inst.id == instance_id:
                return inst
        return None


class HealthCheckClient(RestClient):
    """Fetches an instance's own /health_check liveness snapshot."""

    def __init__(self, url_template: str, timeout_s: float = 10, max_retries: int = 0, **kwargs):
        super().__init__(timeout_s=timeout_s, max_retries=max_retries, **kwargs)
        self.url_template = url_template

    def url_for(self, instance_id: str) -> str:
        if not INSTANCE_ID_RE.fullmatch(instance_id):
            raise ValueError(f"Invalid instance id: {instance_id!r}")
        return self.url_template.format(instance_id=instance_id)

    def get_health(self, instance_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the health snapshot.

        Returns:
            Parsed health JSON, or None when the instance is unreachable
        """
        url = self.url_for(instance_id)
        try:
            resp = self._get_with_retry(url)
        except RuntimeError as e:
            logger.debug(f"Health check for {instance_id} failed: {e}")
            return None

        if resp.status_code != 200:
            logger.debug(f"Health check for {instance_id} returned {resp.status_code}")
            return None
        try:
            data = resp.json()
        except ValueError:
            logger.debug(f"Health check for {instance_id} returned non-JSON body")
            return None
        return data if isinstance(data, dict) else None
