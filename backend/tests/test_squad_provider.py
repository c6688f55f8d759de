from __future__ import annotations

import json
import unittest
from decimal import Decimal
from unittest import mock

import requests

from campus_market.errors import GatewayError, GatewayErrorType
from campus_market.integrations.payments.base import DEFAULT_BANKS, hmac_sha512_hex
from campus_market.integrations.payments.squad_provider import (
    LIVE_BASE_URL,
    MAX_ATTEMPTS,
    SANDBOX_BASE_URL,
    SquadPaymentsProvider,
    base_url_for,
    categorize_error,
    is_sandbox_key,
    retry_delay,
)

_REQUEST = "campus_market.integrations.payments.squad_provider.requests.request"


class _FakeResponse:
    def __init__(self, status_code: int, body):
        self.status_code = status_code
        self._body = body
        self.content = json.dumps(body).encode("utf-8") if body is not None else b""

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class CategorizeErrorTestCase(unittest.TestCase):
    def test_auth_failures(self):
        for status in (401, 403):
            err = categorize_error(status, {"message": "bad key"})
            self.assertEqual(err.error_type, GatewayErrorType.INVALID_CREDENTIALS)
            self.assertFalse(err.retryable)

    def test_validation_errors_get_friendly_messages(self):
        err = categorize_error(400, {"message": "Validation failed", "errors": {"email": ["is invalid"]}})
        self.assertEqual(err.error_type, GatewayErrorType.INVALID_REQUEST)
        self.assertEqual(err.message, "Please provide a valid email address.")
        self.assertIn("email: is invalid", err.detail)
        err = categorize_error(400, {"message": "amount too small"})
        self.assertIn("amount", err.message)

    def test_insufficient_funds(self):
        self.assertEqual(categorize_error(402, {}).error_type, GatewayErrorType.INSUFFICIENT_FUNDS)
        self.assertEqual(
            categorize_error(422, {"message": "Insufficient balance"}).error_type, GatewayErrorType.INSUFFICIENT_FUNDS
        )

    def test_retryable_classes(self):
        self.assertTrue(categorize_error(429, {}).retryable)
        self.assertTrue(categorize_error(502, {"message": "bad gateway"}).retryable)
        self.assertEqual(categorize_error(502, {}).status_code, 503)
        self.assertEqual(categorize_error(418, {}).error_type, GatewayErrorType.UNKNOWN)


class SquadEnvironmentTestCase(unittest.TestCase):
    def test_sandbox_detection(self):
        self.assertTrue(is_sandbox_key("sk_test_abc"))
        self.assertTrue(is_sandbox_key("sandbox_sk_abc"))
        self.assertFalse(is_sandbox_key("sk_live_abc"))
        self.assertEqual(base_url_for("sandbox_sk_abc"), SANDBOX_BASE_URL)
        self.assertEqual(base_url_for("sk_live_abc"), LIVE_BASE_URL)
        self.assertEqual(SquadPaymentsProvider("sk_test_x").mode, "sandbox")

    def test_retry_delay_bounds(self):
        for attempt in range(6):
            delay = retry_delay(attempt)
            self.assertGreaterEqual(delay, min(2 ** attempt, 10))
            self.assertLessEqual(delay, 10.0)

    def test_webhook_signature_uses_secret_key(self):
        provider = SquadPaymentsProvider("sk_test_secret")
        raw = b'{"Event":"charge_successful"}'
        self.assertTrue(provider.verify_webhook_signature(raw, hmac_sha512_hex("sk_test_secret", raw).upper()))
        self.assertFalse(provider.verify_webhook_signature(raw, hmac_sha512_hex("other", raw)))
        self.assertFalse(provider.verify_webhook_signature(raw, None))


class SquadRequestTestCase(unittest.TestCase):
    def setUp(self):
        self.sleeps = []
        self.provider = SquadPaymentsProvider("sandbox_sk_key", "sandbox_pk_key", sleep=self.sleeps.append)

    def test_initialize_sends_kobo_and_returns_checkout(self):
        body = {"success": True, "data": {"checkout_url": "https://sandbox-pay.squadco.com/abc", "transaction_ref": "REF1"}}
        with mock.patch(_REQUEST, return_value=_FakeResponse(200, body)) as req:
            result = self.provider.initialize_payment(amount=Decimal("11100"), email="b@campus.test", reference="REF1")
        self.assertEqual(result.checkout_url, "https://sandbox-pay.squadco.com/abc")
        self.assertEqual(result.reference, "REF1")
        args, kwargs = req.call_args
        self.assertEqual(args[0], "POST")
        self.assertEqual(args[1], f"{SANDBOX_BASE_URL}/transaction/initiate")
        self.assertEqual(kwargs["json"]["amount"], 1110000)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sandbox_sk_key")

    def test_verify_reads_naira_amount(self):
        body = {"success": True, "data": {"transaction_ref": "REF2", "transaction_status": "Success", "transaction_amount": 5000}}
        with mock.patch(_REQUEST, return_value=_FakeResponse(200, body)):
            result = self.provider.verify_transaction("REF2")
        self.assertEqual(result.status, "success")
        self.assertEqual(result.amount, Decimal("5000"))

    def test_server_errors_are_retried_then_raised(self):
        with mock.patch(_REQUEST, return_value=_FakeResponse(500, {"success": False, "message": "boom"})) as req:
            with self.assertRaises(GatewayError) as ctx:
                self.provider.verify_transaction("REF3")
        self.assertEqual(req.call_count, MAX_ATTEMPTS)
        self.assertEqual(len(self.sleeps), MAX_ATTEMPTS - 1)
        self.assertEqual(ctx.exception.error_type, GatewayErrorType.SERVER_ERROR)

    def test_recovers_after_transient_failure(self):
        responses = [
            requests.ConnectionError("reset"),
            _FakeResponse(200, {"success": True, "data": {"transaction_status": "success", "transaction_amount": "250.50"}}),
        ]
        with mock.patch(_REQUEST, side_effect=responses) as req:
            result = self.provider.verify_transaction("REF4")
        self.assertEqual(req.call_count, 2)
        self.assertEqual(len(self.sleeps), 1)
        self.assertEqual(result.amount, Decimal("250.50"))

    def test_client_errors_are_not_retried(self):
        with mock.patch(_REQUEST, return_value=_FakeResponse(401, {"success": False, "message": "Unauthorized"})) as req:
            with self.assertRaises(GatewayError) as ctx:
                self.provider.verify_transaction("REF5")
        self.assertEqual(req.call_count, 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(ctx.exception.error_type, GatewayErrorType.INVALID_CREDENTIALS)

    def test_unsuccessful_envelope_is_an_error(self):
        with mock.patch(_REQUEST, return_value=_FakeResponse(200, {"success": False, "message": "Bad input"})):
            with self.assertRaises(GatewayError) as ctx:
                self.provider.verify_bank_account("0123456789", "058")
        self.assertEqual(ctx.exception.error_type, GatewayErrorType.UNKNOWN)

    def test_timeout_maps_to_timeout(self):
        with mock.patch(_REQUEST, side_effect=requests.Timeout("slow")):
            with self.assertRaises(GatewayError) as ctx:
                self.provider.verify_transaction("REF6")
        self.assertEqual(ctx.exception.error_type, GatewayErrorType.TIMEOUT)
        self.assertEqual(len(self.sleeps), MAX_ATTEMPTS - 1)

    def test_transfer_payload_and_status(self):
        body = {"success": True, "data": {"transaction_reference": "TRF1", "transaction_status": "Success"}}
        with mock.patch(_REQUEST, return_value=_FakeResponse(200, body)) as req:
            result = self.provider.initiate_transfer(
                reference="TRF1", amount=Decimal("3000"), bank_code="058", account_number="0123456789", account_name="Ada"
            )
        self.assertEqual(result.status, "success")
        self.assertEqual(req.call_args[1]["json"]["amount"], 300000)
        self.assertEqual(req.call_args[0][1], f"{SANDBOX_BASE_URL}/payout/transfer")

    def test_bank_list_falls_back_to_defaults(self):
        with mock.patch(_REQUEST, return_value=_FakeResponse(404, {"success": False})):
            banks = self.provider.get_bank_list()
        self.assertEqual(banks, list(DEFAULT_BANKS))

    def test_bank_list_from_gateway(self):
        body = {"success": True, "data": [{"name": "Test Bank", "code": "999"}, {"name": "", "code": "1"}]}
        with mock.patch(_REQUEST, return_value=_FakeResponse(200, body)):
            banks = self.provider.get_bank_list()
        self.assertEqual([(b.name, b.code) for b in banks], [("Test Bank", "999")])


if __name__ == "__main__":
    unittest.main()
