"""Meter rollover detection.

A mechanical meter counts up to its capacity and then wraps to zero, so a
closing value below the opening value is either a wraparound or bad data.
The detector decides which, using a plausibility bound on how much fuel one
pump can dispense in a day, and always returns a volume. It never raises:
ambiguous cases come back with ``has_rollover=False`` and the naive
difference, to be caught by deviation detection or confirmed by an operator.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..config import EngineSettings, settings as default_settings
from ..decimals import Number, quantize_volume, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloverResult:
    volume_dispensed: Decimal
    has_rollover: bool
    rollover_value: Optional[Decimal] = None


class RolloverDetector:
    def __init__(self, settings: EngineSettings = default_settings):
        self.sanity_ratio = to_decimal(settings.rollover_sanity_ratio)

    def detect(self, opening: Number, closing: Number, capacity: Number) -> RolloverResult:
        opening = to_decimal(opening)
        closing = to_decimal(closing)
        capacity = to_decimal(capacity)

        if closing >= opening:
            return RolloverResult(quantize_volume(closing - opening), False)

        # Closing below opening: volume up to the wrap plus volume after it
        total = (capacity - opening) + closing
        if total <= capacity * self.sanity_ratio:
            return RolloverResult(quantize_volume(total), True, capacity)

        logger.warning(
            "Implausible rollover (opening=%s closing=%s capacity=%s); using absolute difference",
            opening, closing, capacity,
        )
        return RolloverResult(quantize_volume(abs(closing - opening)), False)
