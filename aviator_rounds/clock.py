# clock.py
"""
Round clock: elapsed flight time -> multiplier.

The multiplier is always recomputed from the flight start instant, never
accumulated tick by tick, so a late or skipped tick catches up exactly.
Ticks only decide when the engine looks at the clock.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN

from .utils import CENT

ONE = Decimal("1.00")


class RoundClock:

    def __init__(
        self,
        flight_duration_sec: Decimal,
        max_multiplier: Decimal,
        tick_interval_sec: float,
    ) -> None:
        if flight_duration_sec <= 0:
            raise ValueError("flight duration must be positive")
        if max_multiplier < ONE:
            raise ValueError("max multiplier must be >= 1.00")
        self.flight_duration_ms = Decimal(flight_duration_sec) * 1000
        self.max_multiplier = Decimal(max_multiplier)
        self.tick_interval_sec = tick_interval_sec

    @classmethod
    def from_config(cls, config) -> "RoundClock":
        return cls(
            flight_duration_sec=config.FLIGHT_DURATION_SEC,
            max_multiplier=config.MAX_MULTIPLIER,
            tick_interval_sec=config.TICK_INTERVAL_SEC,
        )

    def multiplier_at_ms(self, ms: int) -> Decimal:
        """
        Pure function: elapsed milliseconds -> multiplier.
        Linear ramp from 1.00x to max_multiplier over the flight duration.
        """
        if ms <= 0:
            return ONE
        growth = (self.max_multiplier - ONE) * Decimal(ms) / self.flight_duration_ms
        value = (ONE + growth).quantize(CENT, rounding=ROUND_DOWN)
        return min(value, self.max_multiplier)

    def multiplier_at(self, elapsed_sec: float) -> Decimal:
        # nearest ms; float subtraction noise must not cost a cent
        return self.multiplier_at_ms(round(elapsed_sec * 1000))

    def multiplier(self, flight_start_at: float, now: float) -> Decimal:
        return self.multiplier_at(now - flight_start_at)

    def next_tick_delay(self, tick_started_at: float, now: float) -> float:
        """
        Sleep needed so ticks stay on a fixed interval.
        Processing time is subtracted; a tick that is already late fires at once.
        """
        processing = now - tick_started_at
        return max(0.0, self.tick_interval_sec - processing)
