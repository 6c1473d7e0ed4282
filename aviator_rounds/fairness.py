# fairness.py
"""
Crash point generation with commit-reveal fairness.

Flow per round:
1. The supervisor draws a fresh server seed (32 random bytes, hex).
2. sha256(seed) is published while bets are open (the commitment).
3. The crash point is HMAC-SHA256(seed, salt) mapped onto the payout curve.
4. After the crash the seed is revealed; anyone can recompute both values.

Payout curve: crash = RTP / (1 - r), r uniform in [0, 1) from 52 hash bits.
P(crash >= x) = RTP / x, so any fixed cash-out target returns RTP on
average. Values are floored at 1.00x and capped at the max multiplier.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN

from .utils import (
    CENT,
    constant_time_equals,
    generate_server_seed,
    hash_sha256,
    hmac_sha256,
)

MIN_CRASH = Decimal("1.00")

# 52 bits fit a double mantissa; more hex digits add nothing
_HASH_HEX_DIGITS = 13
_HASH_SPACE = Decimal(16 ** _HASH_HEX_DIGITS)


def new_seed() -> str:
    return generate_server_seed(32)


def commitment(seed: str) -> str:
    return hash_sha256(seed)


class CrashPointGenerator:
    """
    Pure seed -> crash point mapping.
    Same seed (and salt) always gives the same crash point.
    """

    def __init__(
        self,
        rtp: Decimal,
        max_multiplier: Decimal,
        salt: str = "",
    ) -> None:
        if not (Decimal("0") < rtp <= Decimal("1")):
            raise ValueError("rtp must be in (0, 1]")
        if max_multiplier < MIN_CRASH:
            raise ValueError("max multiplier must be >= 1.00")
        self.rtp = Decimal(rtp)
        self.max_multiplier = Decimal(max_multiplier)
        self.salt = salt

    @classmethod
    def from_config(cls, config) -> "CrashPointGenerator":
        return cls(
            rtp=config.TARGET_RTP,
            max_multiplier=config.MAX_MULTIPLIER,
            salt=config.FAIRNESS_SALT,
        )

    def uniform(self, seed: str) -> Decimal:
        """Uniform value in [0, 1) taken from the seed's HMAC."""
        digest = hmac_sha256(seed, self.salt)
        return Decimal(int(digest[:_HASH_HEX_DIGITS], 16)) / _HASH_SPACE

    def generate(self, seed: str) -> Decimal:
        r = self.uniform(seed)
        raw = self.rtp / (Decimal(1) - r)
        crash = max(raw, MIN_CRASH)
        crash = min(crash, self.max_multiplier)
        return crash.quantize(CENT, rounding=ROUND_DOWN)

    def verify(self, seed: str, published_commitment: str, crash_point: Decimal) -> bool:
        """
        Check a finished round: the revealed seed matches the commitment
        published before the round, and reproduces the crash point.
        """
        if not constant_time_equals(commitment(seed), published_commitment):
            return False
        return self.generate(seed) == Decimal(crash_point)
