from __future__ import annotations

import json
import logging
import unittest

from fastapi.testclient import TestClient

from markme.logging_utils import JsonFormatter
from markme.main import app


class HealthEndpointTests(unittest.TestCase):
    def test_health_reports_schema_guard_and_sweep_state(self) -> None:
        client = TestClient(app)

        response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertIn("issues", body["schema_guard"])
        self.assertIn("next_run_utc", body["absence_sweep"])
        self.assertIn("last_result", body["absence_sweep"])
        self.assertTrue(response.headers["X-Request-Id"])

    def test_request_id_header_is_echoed(self) -> None:
        client = TestClient(app)
        response = client.get("/health", headers={"X-Request-Id": "req-123"})
        self.assertEqual(response.headers["X-Request-Id"], "req-123")


class JsonFormatterTests(unittest.TestCase):
    def test_extra_fields_are_flattened_into_payload(self) -> None:
        record = logging.LogRecord("markme.attendance", logging.INFO, __file__, 1, "sign_in_completed", None, None)
        record.user_id = 7
        record.timezone = "Asia/Karachi"

        payload = json.loads(JsonFormatter(service="markme").format(record))

        self.assertEqual(payload["message"], "sign_in_completed")
        self.assertEqual(payload["level"], "INFO")
        self.assertEqual(payload["service"], "markme")
        self.assertEqual(payload["user_id"], 7)
        self.assertEqual(payload["timezone"], "Asia/Karachi")
        self.assertNotIn("msg", payload)


if __name__ == "__main__":
    unittest.main()
