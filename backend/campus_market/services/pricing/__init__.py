from .fee_schedule import (  # noqa: F401
    FeeRule,
    FeeSchedule,
    MONNIFY_SCHEDULE,
    SQUAD_SCHEDULE,
    schedule_from_env,
)
from .pricing_engine import (  # noqa: F401
    GatewayFee,
    PricingBreakdown,
    PricingConfig,
    PricingEngine,
    WithdrawalDecision,
    format_naira,
    parse_naira,
)


def get_pricing_engine() -> PricingEngine:
    """Engine bound to the running app's configuration."""
    from flask import current_app

    engine = current_app.extensions.get("pricing_engine")
    if engine is None:
        engine = PricingEngine(PricingConfig.from_env())
        current_app.extensions["pricing_engine"] = engine
    return engine
