"""Recording and correcting meter readings, and pump lifecycle status."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional

from ..config import EngineSettings, settings as default_settings
from ..decimals import ZERO, Number, quantize_volume, to_decimal
from ..errors import BusinessRuleViolation, NotFoundError, ValidationError
from ..models import (
    EstimationMethod, MeterReading, PumpConfiguration, PumpStatus, ReadingType, utcnow,
)
from ..store import ReconciliationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PumpReadingStatus:
    pump_id: int
    pump_number: str
    has_opening: bool
    has_closing: bool
    opening_value: Optional[Decimal] = None
    closing_value: Optional[Decimal] = None
    opening_recorded_at: Optional[datetime] = None
    closing_recorded_at: Optional[datetime] = None


def modification_deadline(reading_date: date, cutoff_hour: int = 6) -> datetime:
    """Readings may be changed until ``cutoff_hour`` on the next business day.

    Friday and Saturday readings stay open until Monday morning.
    """
    weekday = reading_date.weekday()
    if weekday == 4:
        days = 3
    elif weekday == 5:
        days = 2
    else:
        days = 1
    return datetime.combine(reading_date + timedelta(days=days), time(hour=cutoff_hour))


def _meter_value(value: Number, pump: PumpConfiguration) -> Decimal:
    try:
        value = to_decimal(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(str(e)) from e
    if value < ZERO:
        raise ValidationError("Meter value must not be negative")
    capacity = to_decimal(pump.meter_capacity)
    if value > capacity:
        raise ValidationError(f"Meter value exceeds pump capacity of {capacity}")
    return quantize_volume(value)


class ReadingService:
    def __init__(self, store: ReconciliationStore, settings: EngineSettings = default_settings):
        self.store = store
        self.settings = settings

    def record_reading(
        self,
        pump_id: int,
        reading_date: date,
        reading_type: ReadingType,
        meter_value: Number,
        recorded_by: str,
        is_estimated: bool = False,
        estimation_method: Optional[EstimationMethod] = None,
        notes: Optional[str] = None,
    ) -> MeterReading:
        pump = self.store.get_pump(pump_id)
        if pump is None or not pump.is_active:
            raise NotFoundError(f"Pump {pump_id} not found or not active")
        value = _meter_value(meter_value, pump)
        try:
            reading_type = ReadingType(reading_type)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if is_estimated and estimation_method is None:
            estimation_method = EstimationMethod.manual

        existing = self.store.readings_for(pump_id, reading_date).get(reading_type)
        if existing is not None and self._is_synthesized(existing):
            return self._replace_synthesized(existing, value, recorded_by, is_estimated,
                                             estimation_method, notes)

        reading = MeterReading(
            pump_id=pump_id,
            reading_date=reading_date,
            reading_type=reading_type,
            meter_value=value,
            recorded_by=recorded_by,
            is_estimated=is_estimated,
            estimation_method=estimation_method if is_estimated else None,
            notes=notes,
        )
        try:
            self.store.add_reading(reading)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(reading)
        logger.info("Recorded %s reading %s for pump %s on %s",
                    reading.reading_type.value, value, pump_id, reading_date)
        return reading

    def _is_synthesized(self, reading: MeterReading) -> bool:
        return bool(reading.is_estimated) and reading.recorded_by == self.settings.system_user

    def _replace_synthesized(self, reading, value, recorded_by, is_estimated, estimation_method, notes):
        # the engine's estimate stays behind as original_value
        try:
            if not reading.is_modified:
                reading.original_value = reading.meter_value
            reading.meter_value = value
            reading.recorded_by = recorded_by
            reading.recorded_at = utcnow()
            reading.is_estimated = is_estimated
            reading.estimation_method = estimation_method if is_estimated else None
            reading.notes = notes
            reading.is_modified = True
            reading.modified_by = recorded_by
            reading.modified_at = reading.recorded_at
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(reading)
        logger.info("Replaced estimated %s reading for pump %s on %s: %s -> %s",
                    reading.reading_type.value, reading.pump_id, reading.reading_date,
                    reading.original_value, value)
        return reading

    def correct_reading(
        self,
        reading_id: int,
        meter_value: Number,
        modified_by: str,
        notes: Optional[str] = None,
        override_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MeterReading:
        """Change a stored reading's value.

        ``now`` and the deadline are naive UTC. A corrected value is taken as
        the operator's real reading, so any estimated flag is cleared.
        """
        reading = self.store.get_reading(reading_id)
        if reading is None:
            raise NotFoundError(f"Meter reading {reading_id} not found")

        now = now or utcnow()
        deadline = modification_deadline(reading.reading_date, self.settings.modification_cutoff_hour)
        if override_reason is None and now >= deadline:
            raise BusinessRuleViolation(
                f"Modification window expired at {deadline:%Y-%m-%d %H:%M}; a manager override is required"
            )

        pump = self.store.get_pump(reading.pump_id)
        if pump is None:
            raise NotFoundError(f"Pump {reading.pump_id} not found")
        value = _meter_value(meter_value, pump)

        try:
            if not reading.is_modified:
                reading.original_value = reading.meter_value
            reading.meter_value = value
            reading.is_modified = True
            reading.modified_by = modified_by
            reading.modified_at = now
            reading.is_estimated = False
            reading.estimation_method = None
            text = notes if notes is not None else reading.notes
            if override_reason is not None:
                text = f"{text or ''}\n[MANAGER OVERRIDE: {override_reason}]".strip()
            reading.notes = text
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(reading)
        logger.info("Corrected reading %s: %s -> %s by %s",
                    reading_id, reading.original_value, value, modified_by)
        return reading

    def daily_reading_status(self, station_id: int, reading_date: date) -> List[PumpReadingStatus]:
        readings = self.store.readings_for_station(station_id, reading_date)
        by_pump = {}
        for r in readings:
            by_pump.setdefault(r.pump_id, {})[r.reading_type] = r

        statuses = []
        for pump in self.store.active_pumps(station_id):
            found = by_pump.get(pump.id, {})
            opening = found.get(ReadingType.opening)
            closing = found.get(ReadingType.closing)
            statuses.append(PumpReadingStatus(
                pump_id=pump.id,
                pump_number=pump.pump_number,
                has_opening=opening is not None,
                has_closing=closing is not None,
                opening_value=to_decimal(opening.meter_value) if opening else None,
                closing_value=to_decimal(closing.meter_value) if closing else None,
                opening_recorded_at=opening.recorded_at if opening else None,
                closing_recorded_at=closing.recorded_at if closing else None,
            ))
        return statuses

    def update_pump_status(self, pump_id: int, status: PumpStatus) -> PumpConfiguration:
        pump = self.store.get_pump(pump_id)
        if pump is None:
            raise NotFoundError(f"Pump configuration {pump_id} not found")
        try:
            status = PumpStatus(status)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        try:
            pump.status = status
            pump.is_active = status == PumpStatus.active
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(pump)
        logger.info("Pump %s status -> %s", pump_id, status.value)
        return pump
