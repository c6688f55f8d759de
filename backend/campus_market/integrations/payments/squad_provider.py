from __future__ import annotations

import logging
import random
import secrets
import time
from decimal import Decimal, InvalidOperation

import requests

from campus_market.errors import GatewayError, GatewayErrorType
from campus_market.integrations.payments.base import (
    DEFAULT_BANKS,
    Bank,
    BankAccount,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    TransferResult,
)

logger = logging.getLogger(__name__)

LIVE_BASE_URL = "https://api.squadco.com"
SANDBOX_BASE_URL = "https://sandbox-api-d.squadco.com"
SANDBOX_KEY_PREFIXES = ("sk_test_", "sandbox_sk_")

MAX_ATTEMPTS = 3
INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 10.0
REQUEST_TIMEOUT = 30

USER_MESSAGES = {
    GatewayErrorType.NETWORK_ERROR: "Unable to connect to payment service. Please check your internet connection and try again.",
    GatewayErrorType.TIMEOUT: "Payment request timed out. Please try again.",
    GatewayErrorType.INVALID_CREDENTIALS: "Payment service configuration error. Please contact support.",
    GatewayErrorType.INVALID_REQUEST: "Invalid payment details. Please check and try again.",
    GatewayErrorType.INSUFFICIENT_FUNDS: "Payment could not be processed due to insufficient funds.",
    GatewayErrorType.RATE_LIMITED: "Too many payment requests. Please wait a moment and try again.",
    GatewayErrorType.SERVER_ERROR: "Payment service is temporarily unavailable. Please try again later.",
    GatewayErrorType.UNKNOWN: "An error occurred processing your payment. Please try again or contact support.",
}


def is_sandbox_key(secret_key: str) -> bool:
    return (secret_key or "").startswith(SANDBOX_KEY_PREFIXES)


def base_url_for(secret_key: str) -> str:
    return SANDBOX_BASE_URL if is_sandbox_key(secret_key) else LIVE_BASE_URL


def retry_delay(attempt: int) -> float:
    """Exponential backoff from 1s doubling per attempt, plus 0-30% jitter, capped at 10s."""
    delay = INITIAL_RETRY_DELAY * (2 ** attempt)
    jitter = random.random() * 0.3 * delay
    return min(delay + jitter, MAX_RETRY_DELAY)


def _validation_user_message(data: dict) -> str:
    errors = data.get("errors") if isinstance(data.get("errors"), dict) else {}
    if "email" in errors:
        return "Please provide a valid email address."
    if "amount" in errors:
        return "The payment amount is invalid."
    if "phone" in errors or "mobile_num" in errors:
        return "Please provide a valid phone number."
    message = str(data.get("message") or "").lower()
    if "email" in message:
        return "Please provide a valid email address."
    if "amount" in message:
        return "The payment amount is invalid. Please check and try again."
    return "Please check your payment details and try again."


def categorize_error(status: int, data: dict) -> GatewayError:
    """Map an unsuccessful Squad response onto a ``GatewayError``."""
    data = data if isinstance(data, dict) else {}
    message = str(data.get("message") or data.get("error") or data.get("error_message") or "")
    if status in (401, 403):
        return GatewayError(
            f"Authentication failed: {message}",
            error_type=GatewayErrorType.INVALID_CREDENTIALS,
            upstream_status=status,
            user_message="Payment service authentication failed. Please contact support.",
            raw=data,
        )
    if status == 400:
        details = message
        errors = data.get("errors")
        if isinstance(errors, dict) and errors:
            details = "; ".join(
                f"{k}: {', '.join(v) if isinstance(v, list) else v}" for k, v in errors.items()
            )
        return GatewayError(
            f"Invalid request: {details}",
            error_type=GatewayErrorType.INVALID_REQUEST,
            upstream_status=status,
            user_message=_validation_user_message(data),
            raw=data,
        )
    if status == 402 or "insufficient" in message.lower():
        kind = GatewayErrorType.INSUFFICIENT_FUNDS
        text = f"Insufficient funds: {message}"
    elif status == 429:
        kind = GatewayErrorType.RATE_LIMITED
        text = "Rate limited by Squad API"
    elif status >= 500:
        kind = GatewayErrorType.SERVER_ERROR
        text = f"Squad server error ({status}): {message}"
    else:
        kind = GatewayErrorType.UNKNOWN
        text = message or f"HTTP {status}"
    return GatewayError(text, error_type=kind, upstream_status=status, user_message=USER_MESSAGES[kind], raw=data)


def _naira(value) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


class SquadPaymentsProvider(PaymentsProvider):
    name = "squad"

    def __init__(self, secret_key: str, public_key: str = "", *, base_url: str | None = None, sleep=time.sleep):
        self.secret_key = secret_key
        self.public_key = public_key
        self.webhook_secret = secret_key
        self.base_url = (base_url or base_url_for(secret_key)).rstrip("/")
        self.mode = "sandbox" if is_sandbox_key(secret_key) else "live"
        self._sleep = sleep

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, endpoint: str, body: dict | None) -> dict:
        try:
            r = requests.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=self._headers(),
                json=body,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.Timeout:
            raise GatewayError(
                "Request timed out",
                error_type=GatewayErrorType.TIMEOUT,
                upstream_status=0,
                user_message=USER_MESSAGES[GatewayErrorType.TIMEOUT],
            )
        except requests.RequestException as e:
            raise GatewayError(
                f"Network error: {e}",
                error_type=GatewayErrorType.NETWORK_ERROR,
                upstream_status=0,
                user_message=USER_MESSAGES[GatewayErrorType.NETWORK_ERROR],
            )
        try:
            j = r.json() if r.content else {}
        except ValueError:
            raise GatewayError(
                "Invalid response from payment service",
                error_type=GatewayErrorType.SERVER_ERROR,
                upstream_status=r.status_code,
                user_message=USER_MESSAGES[GatewayErrorType.SERVER_ERROR],
            )
        if r.status_code < 200 or r.status_code >= 300 or not (isinstance(j, dict) and j.get("success")):
            raise categorize_error(r.status_code, j if isinstance(j, dict) else {})
        data = j.get("data")
        return data if data is not None else {}

    def _request(self, method: str, endpoint: str, body: dict | None = None):
        request_id = secrets.token_hex(4)
        for attempt in range(MAX_ATTEMPTS):
            logger.info(
                "squad_request id=%s method=%s endpoint=%s attempt=%s/%s",
                request_id,
                method,
                endpoint,
                attempt + 1,
                MAX_ATTEMPTS,
            )
            try:
                return self._send(method, endpoint, body)
            except GatewayError as e:
                if not e.retryable or attempt >= MAX_ATTEMPTS - 1:
                    logger.warning(
                        "squad_request_failed id=%s endpoint=%s type=%s status=%s detail=%s",
                        request_id,
                        endpoint,
                        e.error_type,
                        e.upstream_status,
                        e.detail,
                    )
                    raise
                delay = retry_delay(attempt)
                logger.info("squad_request_retry id=%s type=%s delay=%.2f", request_id, e.error_type, delay)
                self._sleep(delay)
        raise AssertionError("unreachable")

    def initialize_payment(
        self,
        *,
        amount: Decimal,
        email: str,
        reference: str,
        customer_name: str = "",
        callback_url: str = "",
        channels: list[str] | None = None,
        metadata: dict | None = None,
    ) -> PaymentInitializeResult:
        payload = {
            "amount": int((Decimal(str(amount)) * 100).to_integral_value()),
            "email": email,
            "currency": "NGN",
            "initiate_type": "inline",
            "transaction_ref": reference,
            "customer_name": customer_name,
            "callback_url": callback_url,
            "payment_channels": channels or ["transfer", "card", "ussd"],
            "metadata": metadata or {},
            "pass_charge": False,
        }
        data = self._request("POST", "/transaction/initiate", payload) or {}
        ref = (data.get("transaction_ref") or data.get("transactionRef") or reference or "").strip()
        checkout_url = (data.get("checkout_url") or data.get("checkoutUrl") or "").strip()
        return PaymentInitializeResult(
            checkout_url=checkout_url or f"https://checkout.squadco.com/{ref}",
            reference=ref,
            provider=self.name,
            raw=data,
        )

    def verify_transaction(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        data = self._request("GET", f"/transaction/verify/{ref}") or {}
        # Verify responses carry naira, not kobo.
        return PaymentVerifyResult(
            reference=str(data.get("transaction_ref") or ref),
            status=str(data.get("transaction_status") or "").strip().lower(),
            amount=_naira(data.get("transaction_amount")),
            currency=str(data.get("transaction_currency_id") or "NGN").strip().upper(),
            email=str(data.get("email") or ""),
            payment_type=str(data.get("transaction_type") or ""),
            paid_at=data.get("created_at"),
            gateway_reference=str(data.get("gateway_transaction_ref") or ""),
            raw=data,
        )

    def initiate_transfer(
        self,
        *,
        reference: str,
        amount: Decimal,
        bank_code: str,
        account_number: str,
        account_name: str,
        remark: str = "",
    ) -> TransferResult:
        payload = {
            "transaction_reference": reference,
            "amount": int((Decimal(str(amount)) * 100).to_integral_value()),
            "bank_code": bank_code,
            "account_number": account_number,
            "account_name": account_name,
            "currency_id": "NGN",
            "remark": remark or "Campus Market payout",
        }
        data = self._request("POST", "/payout/transfer", payload) or {}
        return TransferResult(
            reference=str(data.get("transaction_reference") or reference),
            status=str(data.get("transaction_status") or "pending").strip().lower(),
            response_code=str(data.get("response_code") or ""),
            description=str(data.get("response_description") or ""),
            raw=data,
        )

    def verify_bank_account(self, account_number: str, bank_code: str) -> BankAccount:
        data = self._request(
            "POST",
            "/payout/account/lookup",
            {"bank_code": bank_code, "account_number": account_number},
        ) or {}
        return BankAccount(
            account_number=str(data.get("account_number") or account_number),
            account_name=str(data.get("account_name") or ""),
            bank_code=bank_code,
        )

    def get_bank_list(self) -> list[Bank]:
        try:
            data = self._request("GET", "/payout/banks/all")
        except GatewayError:
            logger.warning("squad_bank_list_unavailable using_defaults=1")
            return list(DEFAULT_BANKS)
        if not isinstance(data, list) or not data:
            return list(DEFAULT_BANKS)
        banks = []
        for row in data:
            if not isinstance(row, dict):
                continue
            name = str(row.get("name") or "").strip()
            code = str(row.get("code") or row.get("bankCode") or "").strip()
            if name and code:
                banks.append(Bank(name, code))
        return banks or list(DEFAULT_BANKS)
