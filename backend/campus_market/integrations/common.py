from __future__ import annotations

import secrets
import string
import time

from campus_market.errors import MarketError

B36_ALPHABET = string.digits + string.ascii_uppercase


class IntegrationMisconfiguredError(MarketError):
    status_code = 503
    code = "ServiceUnavailable"


def base36(value: int) -> str:
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = B36_ALPHABET[rem] + out
    return out or "0"


def generate_reference(prefix: str = "EKSU") -> str:
    """``PREFIX_<base36 ms timestamp>_<8 hex>``, unique enough for gateway refs."""
    stamp = base36(int(time.time() * 1000))
    return f"{prefix}_{stamp}_{secrets.token_hex(4).upper()}"


def generate_transfer_reference() -> str:
    return generate_reference("PAYOUT")
