from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal


@dataclass
class PaymentInitializeResult:
    checkout_url: str
    reference: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    reference: str
    status: str  # success | pending | failed | abandoned
    amount: Decimal | None
    currency: str = "NGN"
    email: str = ""
    payment_type: str = ""
    paid_at: str | None = None
    gateway_reference: str = ""
    raw: dict | None = None


@dataclass
class TransferResult:
    reference: str
    status: str  # pending | success | failed
    response_code: str = ""
    description: str = ""
    raw: dict | None = None


@dataclass
class BankAccount:
    account_number: str
    account_name: str
    bank_code: str

    def to_dict(self) -> dict:
        return {
            "accountNumber": self.account_number,
            "accountName": self.account_name,
            "bankCode": self.bank_code,
        }


@dataclass
class Bank:
    name: str
    code: str

    def to_dict(self) -> dict:
        return {"name": self.name, "code": self.code}


DEFAULT_BANKS: tuple[Bank, ...] = tuple(
    Bank(name, code)
    for name, code in (
        ("Access Bank", "044"),
        ("Citibank Nigeria", "023"),
        ("Ecobank Nigeria", "050"),
        ("Fidelity Bank", "070"),
        ("First Bank of Nigeria", "011"),
        ("First City Monument Bank", "214"),
        ("Globus Bank", "00103"),
        ("Guaranty Trust Bank", "058"),
        ("Heritage Bank", "030"),
        ("Keystone Bank", "082"),
        ("Kuda Bank", "50211"),
        ("Moniepoint MFB", "50515"),
        ("OPay", "999992"),
        ("Palmpay", "999991"),
        ("Polaris Bank", "076"),
        ("Providus Bank", "101"),
        ("Stanbic IBTC Bank", "221"),
        ("Standard Chartered Bank", "068"),
        ("Sterling Bank", "232"),
        ("Suntrust Bank", "100"),
        ("Union Bank of Nigeria", "032"),
        ("United Bank for Africa", "033"),
        ("Unity Bank", "215"),
        ("VFD Microfinance Bank", "566"),
        ("Wema Bank", "035"),
        ("Zenith Bank", "057"),
    )
)


def hmac_sha512_hex(secret: str, payload: bytes) -> str:
    return hmac.new((secret or "").encode("utf-8"), payload or b"", hashlib.sha512).hexdigest()


class PaymentsProvider:
    name = "unknown"
    mode = "unknown"
    webhook_secret: str = ""

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
        raise NotImplementedError

    def verify_transaction(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

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
        raise NotImplementedError

    def verify_bank_account(self, account_number: str, bank_code: str) -> BankAccount:
        raise NotImplementedError

    def get_bank_list(self) -> list[Bank]:
        return list(DEFAULT_BANKS)

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        if not signature or not self.webhook_secret:
            return False
        expected = hmac_sha512_hex(self.webhook_secret, payload)
        return hmac.compare_digest(expected.lower(), signature.strip().lower())
