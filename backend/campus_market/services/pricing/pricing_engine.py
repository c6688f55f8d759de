from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from campus_market.services.pricing.fee_schedule import FeeRule, FeeSchedule, SQUAD_SCHEDULE, schedule_from_env
from campus_market.utils.money import CENT, round2

DEFAULT_COMMISSION_RATE = Decimal("0.10")
DEFAULT_SECURITY_DEPOSIT = Decimal("0")
DEFAULT_UNVERIFIED_WITHDRAWAL_LIMIT = Decimal("5000")
DEFAULT_REVERSE_MAX_ITERATIONS = 20

ZERO = Decimal("0")
ONE = Decimal("1")


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class PricingConfig:
    commission_rate: Decimal = DEFAULT_COMMISSION_RATE
    security_deposit_amount: Decimal = DEFAULT_SECURITY_DEPOSIT
    unverified_withdrawal_limit: Decimal = DEFAULT_UNVERIFIED_WITHDRAWAL_LIMIT
    fee_schedule: FeeSchedule = field(default=SQUAD_SCHEDULE)
    default_payment_method: str = "CARD"
    reverse_max_iterations: int = DEFAULT_REVERSE_MAX_ITERATIONS
    reverse_exact_fallback: bool = True

    @classmethod
    def from_env(cls) -> "PricingConfig":
        """Read configuration once at startup; the engine never touches the environment."""
        try:
            iterations = int((os.getenv("REVERSE_PRICING_MAX_ITERATIONS") or "").strip() or DEFAULT_REVERSE_MAX_ITERATIONS)
        except ValueError:
            iterations = DEFAULT_REVERSE_MAX_ITERATIONS
        exact_raw = (os.getenv("REVERSE_PRICING_EXACT_FALLBACK") or "true").strip().lower()
        return cls(
            commission_rate=_parse_rate(os.getenv("WEBSITE_COMMISSION_RATE")),
            security_deposit_amount=_parse_non_negative(os.getenv("SECURITY_DEPOSIT_AMOUNT"), DEFAULT_SECURITY_DEPOSIT),
            unverified_withdrawal_limit=_parse_non_negative(
                os.getenv("UNVERIFIED_WITHDRAWAL_LIMIT"), DEFAULT_UNVERIFIED_WITHDRAWAL_LIMIT
            ),
            fee_schedule=schedule_from_env(),
            default_payment_method=(os.getenv("DEFAULT_PAYMENT_METHOD") or "CARD").strip().upper() or "CARD",
            reverse_max_iterations=max(1, min(iterations, 100)),
            reverse_exact_fallback=exact_raw in ("1", "true", "yes", "on"),
        )


def _parse_rate(raw) -> Decimal:
    if raw is None:
        return DEFAULT_COMMISSION_RATE
    try:
        rate = Decimal(str(raw).strip())
    except InvalidOperation:
        return DEFAULT_COMMISSION_RATE
    if not rate.is_finite() or rate < 0 or rate > 1:
        return DEFAULT_COMMISSION_RATE
    return rate


def _parse_non_negative(raw, default: Decimal) -> Decimal:
    if raw is None:
        return default
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return default
    if not value.is_finite() or value < 0:
        return default
    return value


@dataclass(frozen=True)
class GatewayFee:
    fee_percentage: Decimal
    fixed_fee: Decimal
    total_fee: Decimal
    capped_fee: Decimal

    def to_dict(self) -> dict:
        return {
            "feePercentage": float(self.fee_percentage),
            "fixedFee": float(self.fixed_fee),
            "totalFee": float(round2(self.total_fee)),
            "cappedFee": float(round2(self.capped_fee)),
        }


@dataclass(frozen=True)
class PricingBreakdown:
    seller_price: Decimal
    platform_commission: Decimal
    payment_fee: Decimal
    buyer_pays: Decimal
    seller_receives: Decimal
    commission_rate: Decimal
    payment_method: str = "CARD"

    def to_dict(self) -> dict:
        return {
            "sellerPrice": float(self.seller_price),
            "platformCommission": float(self.platform_commission),
            "paymentFee": float(self.payment_fee),
            "buyerPays": float(self.buyer_pays),
            "sellerReceives": float(self.seller_receives),
            "commissionRate": float(self.commission_rate),
            "paymentMethod": self.payment_method,
        }


@dataclass(frozen=True)
class WithdrawalDecision:
    allowed: bool
    reason: str | None = None

    def to_dict(self) -> dict:
        out = {"allowed": bool(self.allowed)}
        if self.reason:
            out["reason"] = self.reason
        return out


class PricingEngine:
    """Commission and gateway-fee arithmetic.

    All inputs are Naira amounts; every result is rounded half-up to kobo.
    Callers validate that prices are positive before calling in.
    """

    def __init__(self, config: PricingConfig | None = None):
        self.config = config or PricingConfig()

    # -- configuration -------------------------------------------------

    def get_commission_rate(self) -> Decimal:
        return _parse_rate(self.config.commission_rate)

    def get_security_deposit_amount(self) -> Decimal:
        return _parse_non_negative(self.config.security_deposit_amount, DEFAULT_SECURITY_DEPOSIT)

    def _method(self, payment_method: str | None) -> str:
        method = self.config.fee_schedule.normalize_method(payment_method)
        return method or self.config.default_payment_method

    # -- forward -------------------------------------------------------

    def calculate_gateway_fee(self, amount, payment_method: str | None = None) -> GatewayFee:
        amount = _dec(amount)
        rule = self.config.fee_schedule.rule_for(self._method(payment_method))
        fixed = rule.fixed_for(amount)
        total = amount * rule.percentage + fixed
        return GatewayFee(
            fee_percentage=rule.percentage,
            fixed_fee=fixed,
            total_fee=total,
            capped_fee=min(total, rule.cap),
        )

    def calculate_pricing_from_seller_price(self, seller_price, payment_method: str | None = None) -> PricingBreakdown:
        seller_price = round2(_dec(seller_price))
        method = self._method(payment_method)
        rate = self.get_commission_rate()
        commission = round2(seller_price * rate)
        fee = round2(self.calculate_gateway_fee(seller_price, method).capped_fee)
        # Buyer absorbs the whole gateway fee; seller proceeds only lose commission.
        return PricingBreakdown(
            seller_price=seller_price,
            platform_commission=commission,
            payment_fee=fee,
            buyer_pays=round2(seller_price + commission + fee),
            seller_receives=round2(seller_price - commission),
            commission_rate=rate,
            payment_method=method,
        )

    def calculate_negotiation_pricing(self, offer_price, payment_method: str | None = None) -> PricingBreakdown:
        return self.calculate_pricing_from_seller_price(offer_price, payment_method)

    # -- reverse -------------------------------------------------------

    def calculate_pricing_from_buyer_price(self, buyer_price, payment_method: str | None = None) -> PricingBreakdown:
        """Recover the seller price whose forward breakdown charges ``buyer_price``.

        Fixed-point refinement ``s = (b - fee(s)) / (1 + r)`` seeded with
        ``b / (1 + r)``. With one iteration this is the classic one-step
        approximation; more iterations converge whenever the fee slope is
        below ``1 + r``. A fixed-fee waiver threshold can make the iteration
        oscillate, in which case the piecewise-linear fee is solved per
        regime instead.
        """
        buyer_price = _dec(buyer_price)
        method = self._method(payment_method)
        divisor = ONE + self.get_commission_rate()

        estimate = buyer_price / divisor
        converged = False
        for _ in range(max(1, int(self.config.reverse_max_iterations))):
            fee = self.calculate_gateway_fee(estimate, method).capped_fee
            refined = (buyer_price - fee) / divisor
            if abs(refined - estimate) < Decimal("0.005"):
                estimate = refined
                converged = True
                break
            estimate = refined

        result = self.calculate_pricing_from_seller_price(round2(estimate), method)
        if converged or not self.config.reverse_exact_fallback:
            return result
        if abs(result.buyer_pays - buyer_price) <= CENT:
            return result
        return self._solve_by_regime(buyer_price, method, fallback=result)

    def _solve_by_regime(self, buyer_price: Decimal, method: str, *, fallback: PricingBreakdown) -> PricingBreakdown:
        rule: FeeRule = self.config.fee_schedule.rule_for(method)
        rate = self.get_commission_rate()
        candidates = []
        # fee = pct * s (fixed waived or absent), fee = pct * s + fixed, fee = cap
        candidates.append(buyer_price / (ONE + rate + rule.percentage))
        if rule.fixed_fee > 0:
            candidates.append((buyer_price - rule.fixed_fee) / (ONE + rate + rule.percentage))
        candidates.append((buyer_price - rule.cap) / (ONE + rate))

        best = fallback
        best_gap = abs(fallback.buyer_pays - buyer_price)
        for candidate in candidates:
            if candidate <= 0:
                continue
            breakdown = self.calculate_pricing_from_seller_price(round2(candidate), method)
            gap = abs(breakdown.buyer_pays - buyer_price)
            if gap < best_gap:
                best, best_gap = breakdown, gap
        return best

    # -- deposits and withdrawals -------------------------------------

    def calculate_security_deposit_required(self, current_locked) -> dict:
        required = self.get_security_deposit_amount()
        to_lock = max(ZERO, required - _dec(current_locked or 0))
        return {"required": round2(required), "amount_to_lock": round2(to_lock)}

    def is_withdrawal_allowed(self, amount, is_verified: bool, balance, escrow_locked=ZERO) -> WithdrawalDecision:
        # escrow_locked is held in a separate wallet bucket; balance is already the spendable amount.
        amount = _dec(amount)
        if amount > _dec(balance or 0):
            return WithdrawalDecision(False, "Insufficient balance")
        limit = self.config.unverified_withdrawal_limit
        if not is_verified and amount > limit:
            return WithdrawalDecision(
                False,
                f"Unverified sellers can only withdraw up to {format_naira(limit, decimals=0)}. "
                "Please complete verification to withdraw larger amounts.",
            )
        return WithdrawalDecision(True)


def format_naira(amount, *, decimals: int = 2) -> str:
    value = round2(_dec(amount or 0)) if decimals == 2 else _dec(amount or 0).quantize(ONE, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}₦{abs(value):,.{decimals}f}"


_NAIRA_NOISE = re.compile(r"[₦,\s]")


def parse_naira(text) -> Decimal:
    cleaned = _NAIRA_NOISE.sub("", str(text or ""))
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return ZERO
    return value if value.is_finite() else ZERO
