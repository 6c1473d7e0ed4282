# utils.py
"""
Utility functions for the Aviator round engine

Includes:
- Cryptographic helpers (seeds, SHA256, HMAC)
- Decimal quantisation & parsing
- Number formatting
- Retry with exponential backoff for ledger / storage calls
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Awaitable, Callable, Optional, TypeVar, Union

logger = logging.getLogger("aviator.utils")

T = TypeVar("T")

CENT = Decimal("0.01")

# =========================
# RANDOM & HASHING
# =========================

def generate_server_seed(length: int = 32) -> str:
    """
    Generate a cryptographically secure random server seed (hex).
    Used as the HMAC key the crash point is derived from.
    """
    return secrets.token_hex(length)


def hmac_sha256(key: str, message: str) -> str:
    """
    Compute HMAC-SHA256 hash.

    Args:
        key: The secret key (e.g., server_seed).
        message: The data to sign (e.g., the public salt).

    Returns:
        Hexadecimal string of the hash.
    """
    return hmac.new(
        key.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def hash_sha256(value: str) -> str:
    """
    Compute standard SHA256 hash of a string.
    Published as the commitment before the round starts.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a, b)


# =========================
# DECIMALS
# =========================

NumberType = Union[float, Decimal, int, str]


def quantize_down(value: Decimal) -> Decimal:
    """Truncate to 2 decimals. The house never rounds up."""
    return value.quantize(CENT, rounding=ROUND_DOWN)


def to_decimal(value: NumberType) -> Decimal:
    """
    Convert API input to Decimal.
    Floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Not a number: {value!r}") from e


# =========================
# FORMATTING
# =========================

def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        return f"x{float(mult):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# RETRY
# =========================

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Await `operation` until it succeeds or `attempts` run out.

    Delay doubles after each failure, capped at `max_delay`.
    The last exception is re-raised.
    """
    sleep = sleep or asyncio.sleep
    backoff = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {backoff:.2f}s"
            )
            await sleep(backoff)
            backoff = min(backoff * 2, max_delay)
    raise RuntimeError("attempts must be >= 1")
