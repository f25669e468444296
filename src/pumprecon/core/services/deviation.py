"""Deviation of a day's volume from the pump's rolling baseline.

The baseline is the mean volume of the pump's non-estimated calculations in
the ``window_days`` days ending the day before the target date. Estimated
days are excluded so that guesses never shape what counts as normal.

``DeviationQueryService`` re-derives the same number for any window and
threshold at query time. With the default window it reproduces what the
analyzer stored at calculation time; with any other window it is a fresh
derivation, not a replay of stored state.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

from ..config import EngineSettings, settings as default_settings
from ..decimals import Number, mean, percent_change, to_decimal
from ..errors import ValidationError
from ..store import ReconciliationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Baseline:
    average_volume: Optional[Decimal]
    sample_size: int


@dataclass(frozen=True)
class DeviationRecord:
    calculation_id: int
    pump_id: int
    pump_number: str
    calculation_date: date
    volume_dispensed: Decimal
    average_volume: Optional[Decimal]
    deviation_percent: Decimal
    is_estimated: bool


class DeviationAnalyzer:
    def __init__(self, store: ReconciliationStore, settings: EngineSettings = default_settings):
        self.store = store
        self.window_days = settings.deviation_window_days

    def baseline(self, pump_id: int, day: date, window_days: Optional[int] = None) -> Baseline:
        window = window_days or self.window_days
        volumes = self.store.trusted_volumes(
            pump_id, day - timedelta(days=window), day - timedelta(days=1)
        )
        return Baseline(mean(volumes), len(volumes))

    def deviation_percent(self, pump_id: int, current_volume: Number, day: date,
                          window_days: Optional[int] = None) -> Decimal:
        base = self.baseline(pump_id, day, window_days)
        return percent_change(current_volume, base.average_volume)


class DeviationQueryService:
    def __init__(self, store: ReconciliationStore, settings: EngineSettings = default_settings):
        self.store = store
        self.settings = settings
        self.analyzer = DeviationAnalyzer(store, settings)

    def get_deviations(
        self,
        station_id: int,
        start: date,
        end: date,
        threshold_percent: Optional[Number] = None,
        window_days: Optional[int] = None,
    ) -> List[DeviationRecord]:
        threshold = to_decimal(
            self.settings.deviation_threshold_percent if threshold_percent is None else threshold_percent
        )
        window = self.settings.deviation_window_days if window_days is None else window_days
        if threshold < 0:
            raise ValidationError("threshold_percent must not be negative")
        if window <= 0:
            raise ValidationError("window_days must be positive")
        if end < start:
            raise ValidationError("end date precedes start date")

        records = []
        for calc in self.store.station_calculations(station_id, start, end):
            base = self.analyzer.baseline(calc.pump_id, calc.calculation_date, window)
            deviation = percent_change(calc.volume_dispensed, base.average_volume)
            if abs(deviation) < threshold:
                continue
            records.append(DeviationRecord(
                calculation_id=calc.id,
                pump_id=calc.pump_id,
                pump_number=calc.pump.pump_number,
                calculation_date=calc.calculation_date,
                volume_dispensed=to_decimal(calc.volume_dispensed),
                average_volume=base.average_volume,
                deviation_percent=deviation,
                is_estimated=calc.is_estimated,
            ))
        records.sort(key=lambda r: abs(r.deviation_percent), reverse=True)
        logger.info("Deviation query station=%s %s..%s threshold=%s window=%s: %d hit(s)",
                    station_id, start, end, threshold, window, len(records))
        return records
