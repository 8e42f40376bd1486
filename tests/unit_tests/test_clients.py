"""
Unit tests for InventoryClient and HealthCheckClient.
"""

import unittest
from unittest.mock import MagicMock

import requests

from clients import HealthCheckClient, InventoryClient, RestClient
from errors import InventoryError

INVENTORY_URL = "https://central.example.org/servers.json"


def response(status_code=200, payload=None, text="", headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.headers = headers or {}
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


class TestRestClient(unittest.TestCase):
    """Test retry and backoff behaviour."""

    def setUp(self):
        """Set up test fixtures."""
        self.sleep = MagicMock()
        self.client = RestClient(max_retries=3, base_delay=1.0, sleep=self.sleep)
        self.client.session = MagicMock()

    def test_client_initialization(self):
        """Test client defaults."""
        client = RestClient()
        self.assertEqual(client.timeout_s, 30)
        self.assertEqual(client.max_retries, 3)
        self.assertEqual(client.session.headers["Accept"], "application/json")

    def test_retries_transient_status(self):
        """Test 503 responses are retried until success."""
        self.client.session.get.side_effect = [
            response(503, text="unavailable"),
            response(503, text="unavailable"),
            response(200, payload=[]),
        ]

        resp = self.client._get_with_retry("https://x")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.session.get.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)

    def test_non_retryable_status_returned(self):
        """Test a 404 is returned without retrying."""
        self.client.session.get.return_value = response(404, text="not found")

        resp = self.client._get_with_retry("https://x")

        self.assertEqual(resp.status_code, 404)
        self.assertEqual(self.client.session.get.call_count, 1)
        self.sleep.assert_not_called()

    def test_max_retries_exceeded(self):
        """Test exhaustion raises after max_retries + 1 attempts."""
        self.client.session.get.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(RuntimeError) as ctx:
            self.client._get_with_retry("https://x")

        self.assertIn("Max retries exceeded", str(ctx.exception))
        self.assertEqual(self.client.session.get.call_count, 4)
        self.assertEqual(self.sleep.call_count, 3)

    def test_retry_after_header(self):
        """Test Retry-After is honoured and capped."""
        resp = response(429, headers={"Retry-After": "7"})
        self.assertEqual(self.client._calculate_delay(0, resp), 7.0)

        resp = response(429, headers={"Retry-After": "600"})
        self.assertEqual(self.client._calculate_delay(0, resp), 30.0)

    def test_exponential_backoff(self):
        """Test the delay grows with the attempt number within jitter bounds."""
        delay = self.client._calculate_delay(2)
        self.assertGreaterEqual(delay, 3.6)
        self.assertLessEqual(delay, 4.4)


class TestInventoryClient(unittest.TestCase):
    """Test inventory reads."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = InventoryClient(INVENTORY_URL, max_retries=0)
        self.client.session = MagicMock()

    def test_list_instances_success(self):
        """Test inventory entries are parsed into Instance records."""
        self.client.session.get.return_value = response(
            payload=[
                {
                    "id": "ghana",
                    "label": "Ghana",
                    "port": 9001,
                    "serverVersion": "1.6.11",
                    "adminVersion": "2.0.0",
                    "french": False,
                },
                {"id": "mali", "label": "Mali", "serverVersion": "1.6.10", "french": True},
            ]
        )

        instances = self.client.list_instances()

        self.assertEqual([i.id for i in instances], ["ghana", "mali"])
        self.assertEqual(instances[0].server_version, "1.6.11")
        self.assertEqual(instances[0].port, 9001)
        self.assertTrue(instances[1].french)
        self.client.session.get.assert_called_once_with(INVENTORY_URL, timeout=30)

    def test_list_instances_wrapped_payload(self):
        """Test a {"servers": [...]} payload is accepted."""
        self.client.session.get.return_value = response(
            payload={"servers": [{"id": "ghana"}]}
        )

        self.assertEqual(self.client.list_instances()[0].id, "ghana")

    def test_entries_without_id_skipped(self):
        """Test malformed entries are ignored."""
        self.client.session.get.return_value = response(
            payload=[{"label": "orphan"}, "junk", {"id": "ghana"}]
        )

        self.assertEqual([i.id for i in self.client.list_instances()], ["ghana"])

    def test_http_error(self):
        """Test a non-200 response raises InventoryError."""
        self.client.session.get.return_value = response(403, text="forbidden")

        with self.assertRaises(InventoryError) as ctx:
            self.client.list_instances()

        self.assertIn("403", str(ctx.exception))

    def test_invalid_json(self):
        """Test an unparseable body raises InventoryError."""
        self.client.session.get.return_value = response(payload=ValueError("bad json"))

        with self.assertRaises(InventoryError):
            self.client.list_instances()

    def test_unreachable(self):
        """Test connection failures raise InventoryError."""
        self.client.session.get.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(InventoryError):
            self.client.list_instances()

    def test_get_instance(self):
        """Test lookup by identifier."""
        self.client.session.get.return_value = response(
            payload=[{"id": "ghana"}, {"id": "mali"}]
        )

        self.assertEqual(self.client.get_instance("mali").id, "mali")
        self.assertIsNone(self.client.get_instance("atlantis"))


class TestHealthCheckClient(unittest.TestCase):
    """Test health snapshot fetches."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = HealthCheckClient("https://{instance_id}.example.org/health_check")
        self.client.session = MagicMock()

    def test_url_for(self):
        """Test the health URL is built from the template."""
        self.assertEqual(
            self.client.url_for("nigeria-3"), "https://nigeria-3.example.org/health_check"
        )

    def test_url_for_rejects_bad_identifier(self):
        """Test identifiers that could alter the URL are rejected."""
        for bad in ("evil.com/x", "a b", "", "gh\u0430na"):
            with self.subTest(instance_id=bad):
                with self.assertRaises(ValueError):
                    self.client.url_for(bad)

    def test_get_health_success(self):
        """Test the snapshot JSON is returned."""
        self.client.session.get.return_value = response(
            payload={"running": True, "serverVersion": "1.6.12"}
        )

        health = self.client.get_health("ghana")

        self.assertEqual(health["serverVersion"], "1.6.12")

    def test_get_health_unreachable(self):
        """Test an unreachable instance yields None without retrying."""
        self.client.session.get.side_effect = requests.ConnectionError("timed out")

        self.assertIsNone(self.client.get_health("ghana"))
        self.assertEqual(self.client.session.get.call_count, 1)

    def test_get_health_error_status(self):
        """Test error statuses and non-object bodies yield None."""
        self.client.session.get.return_value = response(404)
        self.assertIsNone(self.client.get_health("ghana"))

        self.client.session.get.return_value = response(payload=["not", "a", "dict"])
        self.assertIsNone(self.client.get_health("ghana"))

        self.client.session.get.return_value = response(payload=ValueError("html"))
        self.assertIsNone(self.client.get_health("ghana"))


if __name__ == "__main__":
    unittest.main()
