from __future__ import annotations

import hashlib
import json
import os
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import update

from campus_market.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from campus_market.extensions import db
from campus_market.integrations.common import generate_reference
from campus_market.integrations.payments.base import PaymentsProvider
from campus_market.models import GatewayPayment, Order, User, WebhookEvent
from campus_market.services.order_lifecycle import OrderStatus, allowed_transitions, apply_system_transition
from campus_market.services.wallet_service import TxnType, record_transaction, update_wallet_balance
from campus_market.utils.events import log_event
from campus_market.utils.money import parse_amount, round2
from campus_market.utils.observability import get_request_id

MIN_PAYMENT = Decimal("100")

PURPOSES = ("wallet_deposit", "boost_payment", "featured_payment", "escrow_payment", "checkout_payment")
ORDER_PURPOSES = ("escrow_payment", "checkout_payment")
CHANNELS = ("transfer", "card", "ussd", "bank")


def _callback_url() -> str:
    return f"{(os.getenv('APP_URL') or 'http://localhost:5000').rstrip('/')}/payment/callback"


def initialize_payment(
    user: User,
    provider: PaymentsProvider,
    *,
    amount=None,
    purpose: str = "wallet_deposit",
    payment_channel: str | None = None,
    description: str | None = None,
    order_id=None,
) -> GatewayPayment:
    purpose = (purpose or "wallet_deposit").strip().lower()
    if purpose not in PURPOSES:
        raise ValidationError(f"purpose must be one of {', '.join(PURPOSES)}")
    channel = (payment_channel or "").strip().lower() or None
    if channel is not None and channel not in CHANNELS:
        raise ValidationError(f"paymentChannel must be one of {', '.join(CHANNELS)}")

    order = None
    if purpose in ORDER_PURPOSES:
        try:
            order = db.session.get(Order, int(order_id))
        except (TypeError, ValueError):
            raise ValidationError("orderId is required for order payments")
        if order is None:
            raise NotFoundError("Order not found")
        if int(order.buyer_id) != int(user.id):
            raise ForbiddenError("You don't have permission to pay for this order")
        if order.status != OrderStatus.PENDING:
            raise ValidationError("Order is not awaiting payment")
        value = round2(order.total_amount)
    else:
        value = parse_amount(amount, "payment amount", minimum=MIN_PAYMENT)

    reference = generate_reference()
    result = provider.initialize_payment(
        amount=value,
        email=user.email,
        reference=reference,
        customer_name=user.name or "",
        callback_url=_callback_url(),
        channels=[channel] if channel else None,
        metadata={
            "userId": int(user.id),
            "purpose": purpose,
            "orderId": int(order.id) if order is not None else None,
            "paymentDescription": description or f"{purpose} - Campus Market",
        },
    )
    payment = GatewayPayment(
        user_id=int(user.id),
        order_id=int(order.id) if order is not None else None,
        provider=provider.name,
        transaction_ref=result.reference or reference,
        amount=value,
        purpose=purpose,
        payment_channel=channel,
        status="pending",
        checkout_url=result.checkout_url,
        metadata_json=json.dumps({"description": description or ""}, separators=(",", ":")),
    )
    db.session.add(payment)
    db.session.commit()
    current_app.logger.info(
        "payment_initialized ref=%s user_id=%s amount=%s purpose=%s", payment.transaction_ref, int(user.id), value, purpose
    )
    return payment


def _claim(payment: GatewayPayment, paid_at: datetime | None) -> bool:
    """Flip the payment to successful exactly once; the winner applies the money effects."""
    result = db.session.execute(
        update(GatewayPayment)
        .where(GatewayPayment.id == payment.id, GatewayPayment.status != "successful")
        .values(status="successful", paid_at=paid_at or datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _credit_wallet(payment: GatewayPayment, description: str) -> None:
    update_wallet_balance(int(payment.user_id), payment.amount, "add")
    record_transaction(
        int(payment.user_id),
        TxnType.DEPOSIT,
        payment.amount,
        description=description,
        external_reference=payment.transaction_ref,
    )
    log_event(
        "gateway_payment_credited",
        actor_user_id=int(payment.user_id),
        subject_type="gateway_payment",
        subject_id=payment.transaction_ref,
        amount=payment.amount,
        idempotency_key=f"payment:{payment.transaction_ref}",
    )


def _settle_order_payment(payment: GatewayPayment) -> dict:
    order = db.session.get(Order, int(payment.order_id))
    if order is None:
        _credit_wallet(payment, f"Squad deposit - {payment.purpose}")
        db.session.commit()
        return {"credited": True, "orderId": None}
    if OrderStatus.PAID in allowed_transitions(order.status):
        try:
            apply_system_transition(order, OrderStatus.PAID, note=f"Payment {payment.transaction_ref}", source="gateway")
            return {"credited": False, "orderId": int(order.id), "orderStatus": order.status}
        except InvalidTransitionError:
            # Lost the race; the rollback also undid our claim on the payment.
            if not _claim(payment, None):
                return {"credited": False, "orderId": int(order.id), "duplicate": True}
    # The order moved on (cancelled, or already paid) before the money arrived.
    _credit_wallet(payment, f"Payment for order #{order.order_number} credited to wallet")
    db.session.commit()
    current_app.logger.warning(
        "payment_order_not_payable ref=%s order_id=%s status=%s", payment.transaction_ref, int(order.id), order.status
    )
    return {"credited": True, "orderId": int(order.id), "orderStatus": order.status}


def settle_payment(payment: GatewayPayment, status: str, *, amount: Decimal | None = None, paid_at: datetime | None = None) -> dict:
    """Apply a gateway outcome to a payment. Safe to call repeatedly."""
    status = (status or "").strip().lower()
    if status != "success":
        if status in ("failed", "abandoned") and payment.status == "pending":
            payment.status = "failed"
            db.session.add(payment)
            db.session.commit()
        return {"status": status, "credited": False}

    if amount is not None and round2(amount) < round2(payment.amount):
        log_event(
            "gateway_payment_amount_mismatch",
            actor_user_id=int(payment.user_id),
            subject_type="gateway_payment",
            subject_id=payment.transaction_ref,
            amount=amount,
            severity="WARN",
            metadata={"expected": payment.amount},
        )
        db.session.commit()
        current_app.logger.warning(
            "payment_amount_mismatch ref=%s expected=%s got=%s", payment.transaction_ref, payment.amount, amount
        )
        return {"status": status, "credited": False, "error": "AMOUNT_MISMATCH"}

    try:
        if not _claim(payment, paid_at):
            db.session.rollback()
            return {"status": status, "credited": False, "duplicate": True}
        if payment.order_id is not None and payment.purpose in ORDER_PURPOSES:
            outcome = _settle_order_payment(payment)
        else:
            _credit_wallet(payment, f"Squad deposit - {payment.purpose}")
            db.session.commit()
            outcome = {"credited": True}
    except Exception:
        db.session.rollback()
        raise
    db.session.refresh(payment)
    current_app.logger.info("payment_settled ref=%s outcome=%s", payment.transaction_ref, outcome)
    return {"status": status, **outcome}


def _parse_paid_at(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def verify_payment(user: User, provider: PaymentsProvider, reference: str) -> dict:
    payment = GatewayPayment.query.filter_by(transaction_ref=(reference or "").strip()).first()
    if payment is None:
        raise NotFoundError("Payment not found")
    if int(payment.user_id) != int(user.id):
        raise ForbiddenError("Not authorized to verify this payment")
    result = provider.verify_transaction(payment.transaction_ref)
    settle_payment(payment, result.status, amount=result.amount, paid_at=_parse_paid_at(result.paid_at))
    return {
        "status": result.status,
        "amountPaid": float(result.amount) if result.amount is not None else None,
        "paymentMethod": result.payment_type or "unknown",
        "paidOn": result.paid_at,
        "paymentStatus": payment.status,
    }


def list_payments(user_id: int, *, limit: int = 100) -> list[GatewayPayment]:
    return (
        GatewayPayment.query.filter_by(user_id=int(user_id))
        .order_by(GatewayPayment.created_at.desc(), GatewayPayment.id.desc())
        .limit(int(limit))
        .all()
    )


def parse_webhook(payload: dict) -> tuple[str, str, str]:
    """Return (event, reference, status) for either webhook shape Squad sends."""
    body = payload.get("Body")
    if isinstance(body, dict):
        event = str(payload.get("Event") or "charge_successful")
        reference = str(payload.get("TransactionRef") or body.get("transaction_ref") or "")
        status = str(body.get("transaction_status") or "")
    else:
        event = str(payload.get("event") or "payment")
        reference = str(payload.get("transactionReference") or payload.get("transaction_ref") or "")
        status = str(payload.get("paymentStatus") or payload.get("transaction_status") or "")
    return event.strip(), reference.strip(), status.strip().lower()


def process_webhook(payload: dict, raw: bytes, *, source: str = "api/squad/webhook") -> tuple[dict, int]:
    """Apply a signature-verified webhook once per delivery."""
    if not isinstance(payload, dict):
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "payload must be an object"}, 400
    event, reference, status = parse_webhook(payload)
    if not reference:
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "transaction reference is required"}, 400

    event_id = hashlib.sha256(raw or json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()[:32]
    row = WebhookEvent.query.filter_by(provider="squad", event_id=event_id).first()
    if row is not None and row.status in ("processed", "ignored"):
        return {"ok": True, "replayed": True}, 200
    if row is None:
        row = WebhookEvent(
            provider="squad",
            event_id=event_id,
            reference=reference,
            request_id=(get_request_id() or "")[:64] or None,
            payload_hash=event_id,
        )
        db.session.add(row)
        db.session.commit()

    payment = GatewayPayment.query.filter_by(transaction_ref=reference).first()
    if payment is None:
        row.status = "ignored"
        row.error = "PAYMENT_NOT_FOUND"
        db.session.commit()
        current_app.logger.warning("squad_webhook_unknown_reference ref=%s source=%s", reference, source)
        return {"ok": False, "error": "NotFound", "message": "Payment not found"}, 404

    try:
        # Amounts are taken from our own payment row; the signature vouches for the status.
        outcome = settle_payment(payment, status)
    except Exception as exc:
        db.session.rollback()
        failed = db.session.get(WebhookEvent, int(row.id))
        if failed is not None:
            failed.status = "failed"
            failed.error = f"{type(exc).__name__}: {exc}"[:2000]
            db.session.commit()
        current_app.logger.exception("squad_webhook_failed ref=%s source=%s", reference, source)
        raise
    row.status = "processed"
    row.processed_at = datetime.utcnow()
    db.session.commit()
    current_app.logger.info("squad_webhook_processed event=%s ref=%s status=%s", event, reference, status)
    return {"ok": True, "message": "Webhook processed successfully", **outcome}, 200
