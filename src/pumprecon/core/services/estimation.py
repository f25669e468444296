"""Estimation of missing meter readings for a pump-day.

When an opening or closing reading (or both) was never recorded, the missing
values are synthesized from the pump's trusted history:

* one reading present: the other is the present value plus or minus the
  pump's historical average daily volume;
* both missing: the opening is seeded from the previous day's closing reading
  (or a configured default) and the closing derived the same way.

Synthesized positions are wrapped into the meter range, but the day's volume
is always the average itself; it is never re-derived from the wrapped
positions. Only calculations built from real readings feed the historical
average, so estimates never compound on estimates.

Synthesized readings are stored with ``is_estimated=True`` and
``recorded_by`` set to the system user. Recording or correcting the real
reading replaces them, and a forced recompute deletes them first.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from ..config import EngineSettings, settings as default_settings
from ..decimals import ZERO, mean, quantize_volume, to_decimal
from ..models import EstimationMethod, MeterReading, PumpConfiguration, ReadingType
from ..store import ReconciliationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EstimatedReadings:
    opening_value: Decimal
    closing_value: Decimal
    estimation_method: EstimationMethod
    average_volume: Decimal
    volume_dispensed: Decimal
    has_rollover: bool = False
    rollover_value: Optional[Decimal] = None


def wrap_to_capacity(value: Decimal, capacity: Decimal) -> Decimal:
    """Map a synthesized meter position back into ``[0, capacity)``."""
    if capacity <= ZERO:
        return value
    if ZERO <= value < capacity:
        return value
    # Decimal remainder takes the sign of the dividend
    wrapped = value % capacity
    if wrapped < ZERO:
        wrapped += capacity
    return wrapped


class EstimationEngine:
    def __init__(self, store: ReconciliationStore, settings: EngineSettings = default_settings):
        self.store = store
        self.settings = settings

    def historical_average_volume(self, pump_id: int, before: date) -> Decimal:
        volumes = self.store.recent_trusted_volumes(pump_id, before, self.settings.estimation_history_size)
        avg = mean(volumes)
        if avg is None:
            logger.info("No trusted history for pump %s; using default volume %s",
                        pump_id, self.settings.default_daily_volume)
            return to_decimal(self.settings.default_daily_volume)
        return avg

    def estimate(
        self,
        pump: PumpConfiguration,
        day: date,
        opening: Optional[MeterReading],
        closing: Optional[MeterReading],
    ) -> EstimatedReadings:
        capacity = to_decimal(pump.meter_capacity)
        average = self.historical_average_volume(pump.id, day)

        if opening is not None and closing is None:
            opening_value = to_decimal(opening.meter_value)
            closing_value = opening_value + average
        elif closing is not None and opening is None:
            closing_value = to_decimal(closing.meter_value)
            opening_value = closing_value - average
        elif opening is None and closing is None:
            previous = self.store.previous_closing(pump.id, day)
            if previous is not None:
                opening_value = to_decimal(previous.meter_value)
            else:
                logger.warning("No previous closing for pump %s before %s; seeding opening with %s",
                               pump.id, day, self.settings.default_opening_reading)
                opening_value = to_decimal(self.settings.default_opening_reading)
            closing_value = opening_value + average
        else:
            raise ValueError(f"pump {pump.id} has both readings on {day}; nothing to estimate")

        opening_value = quantize_volume(wrap_to_capacity(opening_value, capacity))
        closing_value = quantize_volume(wrap_to_capacity(closing_value, capacity))
        # The volume is the average by construction. The meter passed its
        # capacity when the wrapped closing sits below the wrapped opening.
        crossed = average > ZERO and (closing_value < opening_value or average >= capacity)
        logger.warning("Estimated readings for pump %s on %s: opening=%s closing=%s (average %s)",
                       pump.id, day, opening_value, closing_value, average)
        return EstimatedReadings(
            opening_value=opening_value,
            closing_value=closing_value,
            estimation_method=EstimationMethod.historical_average,
            average_volume=average,
            volume_dispensed=quantize_volume(average),
            has_rollover=crossed,
            rollover_value=capacity if crossed else None,
        )

    def persist_missing(
        self,
        pump: PumpConfiguration,
        day: date,
        estimate: EstimatedReadings,
        opening: Optional[MeterReading],
        closing: Optional[MeterReading],
    ) -> None:
        """Store the synthesized readings; the caller owns the transaction."""
        for existing, reading_type, value in (
            (opening, ReadingType.opening, estimate.opening_value),
            (closing, ReadingType.closing, estimate.closing_value),
        ):
            if existing is not None:
                continue
            self.store.add_reading(MeterReading(
                pump_id=pump.id,
                reading_date=day,
                reading_type=reading_type,
                meter_value=value,
                recorded_by=self.settings.system_user,
                is_estimated=True,
                estimation_method=estimate.estimation_method,
                notes=f"Estimated from historical average volume {quantize_volume(estimate.average_volume)} L",
            ))
