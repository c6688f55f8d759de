from __future__ import annotations

import os
import unittest
import uuid

from campus_market import create_app
from campus_market.extensions import db


class ApiErrorContractTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), 404)
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_missing_auth_is_401_with_trace_id(self):
        res = self.client.get("/api/wallet")
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True)
        self.assertEqual(body.get("error"), "Unauthorized")
        self.assertEqual((body.get("trace_id") or "").strip(), (res.headers.get("X-Request-Id") or "").strip())

    def test_garbage_token_is_401(self):
        res = self.client.get("/api/orders/buyer", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(res.status_code, 401)

    def test_validation_error_shape(self):
        res = self.client.post("/api/pricing/calculate", json={"sellerPrice": -5})
        self.assertEqual(res.status_code, 400)
        body = res.get_json()
        self.assertEqual(body["error"], "ValidationError")
        self.assertEqual(body["message"], "Valid seller price is required")
        self.assertEqual(body["status"], 400)

    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        rid = (res.headers.get("X-Request-Id") or "").strip()
        self.assertTrue(rid)
        uuid.UUID(rid)

    def test_echoes_request_id_when_provided(self):
        res = self.client.get("/api/health", headers={"X-Request-Id": "rid-test-123"})
        self.assertEqual(res.headers.get("X-Request-Id"), "rid-test-123")

    def test_health_reports_database(self):
        body = self.client.get("/api/health").get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["service"], "campus-market-backend")


if __name__ == "__main__":
    unittest.main()
