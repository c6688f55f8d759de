from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation

ZERO = Decimal("0")


@dataclass(frozen=True)
class FeeRule:
    """Gateway fee for one payment method: ``min(amount * percentage + fixed, cap)``.

    The fixed component is waived for amounts strictly below ``waiver_threshold``.
    """

    percentage: Decimal
    cap: Decimal
    fixed_fee: Decimal = ZERO
    waiver_threshold: Decimal = ZERO

    def fixed_for(self, amount: Decimal) -> Decimal:
        if self.fixed_fee <= 0:
            return ZERO
        if amount < self.waiver_threshold:
            return ZERO
        return self.fixed_fee


@dataclass(frozen=True)
class FeeSchedule:
    name: str
    rules: dict = field(default_factory=dict)
    default_rule: FeeRule = FeeRule(percentage=Decimal("0.015"), cap=Decimal("2000"))
    aliases: dict = field(default_factory=dict)

    def normalize_method(self, payment_method: str | None) -> str:
        method = (payment_method or "").strip().upper().replace("-", "_").replace(" ", "_")
        return self.aliases.get(method, method)

    def rule_for(self, payment_method: str | None) -> FeeRule:
        return self.rules.get(self.normalize_method(payment_method), self.default_rule)

    def methods(self) -> list[str]:
        return sorted(self.rules.keys())

    def to_dict(self) -> dict:
        def _rule(rule: FeeRule) -> dict:
            return {
                "percentage": float(rule.percentage),
                "cap": float(rule.cap),
                "fixedFee": float(rule.fixed_fee),
                "waiverThreshold": float(rule.waiver_threshold),
            }

        return {
            "name": self.name,
            "methods": {method: _rule(rule) for method, rule in sorted(self.rules.items())},
            "default": _rule(self.default_rule),
        }


_SQUAD_TRANSFER = FeeRule(percentage=Decimal("0.01"), cap=Decimal("1000"))
_SQUAD_CARD = FeeRule(percentage=Decimal("0.015"), cap=Decimal("2000"))

SQUAD_SCHEDULE = FeeSchedule(
    name="squad",
    rules={
        "BANK_TRANSFER": _SQUAD_TRANSFER,
        "TRANSFER": _SQUAD_TRANSFER,
        "CARD": _SQUAD_CARD,
        "USSD": _SQUAD_CARD,
    },
    default_rule=_SQUAD_CARD,
)

_MONNIFY_FIXED = Decimal("50")
_MONNIFY_WAIVER = Decimal("2500")
_MONNIFY_CAP = Decimal("2000")

MONNIFY_SCHEDULE = FeeSchedule(
    name="monnify",
    rules={
        "CARD": FeeRule(Decimal("0.015"), _MONNIFY_CAP, _MONNIFY_FIXED, _MONNIFY_WAIVER),
        "PHONE_NUMBER": FeeRule(Decimal("0.015"), _MONNIFY_CAP, _MONNIFY_FIXED, _MONNIFY_WAIVER),
        "ACCOUNT_TRANSFER": FeeRule(Decimal("0.01"), _MONNIFY_CAP, _MONNIFY_FIXED, _MONNIFY_WAIVER),
        "USSD": FeeRule(Decimal("0.01"), _MONNIFY_CAP, _MONNIFY_FIXED, _MONNIFY_WAIVER),
    },
    default_rule=FeeRule(Decimal("0.015"), _MONNIFY_CAP, _MONNIFY_FIXED, _MONNIFY_WAIVER),
    aliases={"BANK_TRANSFER": "ACCOUNT_TRANSFER", "TRANSFER": "ACCOUNT_TRANSFER"},
)

SCHEDULES = {
    SQUAD_SCHEDULE.name: SQUAD_SCHEDULE,
    MONNIFY_SCHEDULE.name: MONNIFY_SCHEDULE,
}


def _env_decimal(name: str) -> Decimal | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def schedule_from_env(default: str = "squad") -> FeeSchedule:
    """Pick the gateway schedule and apply ``FEE_<METHOD>_{PERCENT,CAP,FIXED,WAIVER}`` overrides.

    The built-in tables mirror the gateway contracts; overrides exist so a
    renegotiated contract can be applied without a release.
    """
    name = (os.getenv("PAYMENT_FEE_SCHEDULE") or default).strip().lower()
    schedule = SCHEDULES.get(name, SCHEDULES[default])

    rules = dict(schedule.rules)
    for method, rule in schedule.rules.items():
        percent = _env_decimal(f"FEE_{method}_PERCENT")
        cap = _env_decimal(f"FEE_{method}_CAP")
        fixed = _env_decimal(f"FEE_{method}_FIXED")
        waiver = _env_decimal(f"FEE_{method}_WAIVER")
        if percent is not None and percent > 1:
            percent = None
        if percent is None and cap is None and fixed is None and waiver is None:
            continue
        rules[method] = replace(
            rule,
            percentage=percent if percent is not None else rule.percentage,
            cap=cap if cap is not None else rule.cap,
            fixed_fee=fixed if fixed is not None else rule.fixed_fee,
            waiver_threshold=waiver if waiver is not None else rule.waiver_threshold,
        )
    return replace(schedule, rules=rules)
