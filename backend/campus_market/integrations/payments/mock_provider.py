from __future__ import annotations

from decimal import Decimal

from campus_market.errors import GatewayError, GatewayErrorType
from campus_market.integrations.payments.base import (
    BankAccount,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    TransferResult,
)


class MockPaymentsProvider(PaymentsProvider):
    """In-process provider for local runs and tests.

    Remembers initialized amounts so verification reports what was asked for.
    ``fail_transfers_with`` makes ``initiate_transfer`` raise the given error.
    """

    name = "mock"
    mode = "mock"

    def __init__(self, webhook_secret: str = "mock-webhook-secret"):
        self.webhook_secret = webhook_secret
        self.amounts: dict[str, Decimal] = {}
        self.statuses: dict[str, str] = {}
        self.transfers: list[dict] = []
        self.fail_transfers_with: GatewayError | None = None

    def initialize_payment(self, *, amount, email, reference, customer_name="", callback_url="", channels=None, metadata=None):
        self.amounts[reference] = Decimal(str(amount))
        return PaymentInitializeResult(
            checkout_url=f"https://example.com/mock/pay?reference={reference}",
            reference=reference,
            provider=self.name,
            raw={"email": email, "channels": channels or [], "metadata": metadata or {}},
        )

    def verify_transaction(self, reference: str) -> PaymentVerifyResult:
        return PaymentVerifyResult(
            reference=reference,
            status=self.statuses.get(reference, "success"),
            amount=self.amounts.get(reference),
            payment_type="mock",
            raw={"reference": reference, "provider": self.name},
        )

    def initiate_transfer(self, *, reference, amount, bank_code, account_number, account_name, remark=""):
        if self.fail_transfers_with is not None:
            raise self.fail_transfers_with
        self.transfers.append(
            {
                "reference": reference,
                "amount": Decimal(str(amount)),
                "bank_code": bank_code,
                "account_number": account_number,
            }
        )
        return TransferResult(reference=reference, status="success", response_code="200", raw={})

    def verify_bank_account(self, account_number: str, bank_code: str) -> BankAccount:
        if len(account_number or "") != 10 or not account_number.isdigit():
            raise GatewayError(
                "Invalid request: account_number",
                error_type=GatewayErrorType.INVALID_REQUEST,
                upstream_status=400,
                user_message="Please check your payment details and try again.",
            )
        return BankAccount(account_number=account_number, account_name="MOCK ACCOUNT", bank_code=bank_code)
