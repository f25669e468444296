"""
Station-wide daily reconciliation.

This module drives the per-station, per-date calculation run. For every
active pump at the station it loads the day's meter readings, estimates any
that are missing, resolves meter rollover, prices the volume at the pump
product's current unit price, annotates the deviation from the pump's rolling
baseline and persists one DailyCalculation row.

Run lifecycle:
  * NotStarted -> Computing -> Completed
  * force_recalculate first deletes the station's calculations for the date,
    and the readings the system synthesized for it (the ForceRecompute
    transition), then computes from scratch
  * Cancelled, when the caller's cancel event is set between pumps

Each pump is its own unit of work and its own transaction. A failing pump is
rolled back, logged and reported in ``BatchResult.failed``; the remaining
pumps still run, and whatever succeeded stays committed. Once every pump has
been visited the StationDailySummary is upserted in a separate transaction.

Calculations are never overwritten: an existing (pump, date) row is returned
as-is unless a forced recompute removed it, and the database unique
constraint rejects a second concurrent insert.
"""

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from ..config import EngineSettings, settings as default_settings
from ..decimals import ZERO, as_json_number, quantize_money, quantize_volume, to_decimal
from ..errors import BusinessRuleViolation, NotFoundError, PartialBatchFailure, ValidationError
from ..models import (
    ApprovalStatus, CalculationMethod, DailyCalculation, PumpConfiguration, ReadingType,
)
from ..store import ReconciliationStore
from .deviation import DeviationAnalyzer
from .estimation import EstimationEngine
from .rollover import RolloverDetector, RolloverResult

logger = logging.getLogger(__name__)


class RunState(str, enum.Enum):
    not_started = "not_started"
    computing = "computing"
    completed = "completed"
    cancelled = "cancelled"


@dataclass
class BatchResult:
    station_id: int
    calculation_date: date
    state: RunState = RunState.not_started
    calculations: List[DailyCalculation] = field(default_factory=list)
    failed: List[Tuple[int, Exception]] = field(default_factory=list)
    created_count: int = 0
    deleted_count: int = 0

    @property
    def calculated_count(self) -> int:
        return len(self.calculations)

    @property
    def total_volume(self) -> Decimal:
        return quantize_volume(sum((to_decimal(c.volume_dispensed) for c in self.calculations), ZERO))

    @property
    def total_revenue(self) -> Decimal:
        return quantize_money(sum((to_decimal(c.total_revenue) for c in self.calculations), ZERO))

    @property
    def is_partial_failure(self) -> bool:
        return bool(self.failed)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialBatchFailure(self.failed)


class CalculationOrchestrator:
    def __init__(
        self,
        store: ReconciliationStore,
        settings: EngineSettings = default_settings,
        rollover: Optional[RolloverDetector] = None,
        estimation: Optional[EstimationEngine] = None,
        deviation: Optional[DeviationAnalyzer] = None,
    ):
        self.store = store
        self.settings = settings
        self.rollover = rollover or RolloverDetector(settings)
        self.estimation = estimation or EstimationEngine(store, settings)
        self.deviation = deviation or DeviationAnalyzer(store, settings)

    def calculate_for_date(
        self,
        station_id: int,
        calculation_date: date,
        force_recalculate: bool = False,
        calculated_by: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        if not isinstance(calculation_date, date):
            raise ValidationError(f"calculation_date must be a date, got {calculation_date!r}")
        user = calculated_by or self.settings.system_user
        result = BatchResult(station_id, calculation_date)

        pumps = self.store.active_pumps(station_id)
        if not pumps:
            raise NotFoundError(f"No active pumps found for station {station_id}")

        if force_recalculate:
            try:
                result.deleted_count = self.store.delete_calculations(station_id, calculation_date)
                purged = self.store.delete_synthesized_readings(
                    station_id, calculation_date, self.settings.system_user
                )
                self.store.commit()
            except Exception:
                self.store.rollback()
                raise
            logger.info("Force recalculation: removed %d calculation(s) and %d estimated reading(s) "
                        "for station %s on %s", result.deleted_count, purged, station_id, calculation_date)

        result.state = RunState.computing
        logger.info("Reconciling station %s for %s (%d pump(s))", station_id, calculation_date, len(pumps))

        for pump in pumps:
            if cancel_event is not None and cancel_event.is_set():
                result.state = RunState.cancelled
                logger.warning("Run for station %s on %s cancelled after %d pump(s)",
                               station_id, calculation_date, result.calculated_count + len(result.failed))
                break
            try:
                calc, created = self._calculate_pump(pump, calculation_date, user)
            except Exception as e:
                self.store.rollback()
                logger.exception("Calculation failed for pump %s on %s", pump.id, calculation_date)
                result.failed.append((pump.id, e))
                continue
            result.calculations.append(calc)
            if created:
                result.created_count += 1

        if result.state == RunState.computing:
            result.state = RunState.completed

        self._update_station_summary(result)
        logger.info("Station %s on %s: %d calculated, %d failed, volume=%s revenue=%s",
                    station_id, calculation_date, result.calculated_count, len(result.failed),
                    result.total_volume, result.total_revenue)
        return result

    def _calculate_pump(self, pump: PumpConfiguration, day: date, user: str) -> Tuple[DailyCalculation, bool]:
        existing = self.store.find_calculation(pump.id, day)
        if existing is not None:
            return existing, False

        unit_price = self.store.unit_price(pump.product_id)
        if unit_price is None:
            raise BusinessRuleViolation(f"No unit price for product {pump.product_id} linked to pump {pump.id}")
        unit_price = to_decimal(unit_price)

        readings = self.store.readings_for(pump.id, day)
        opening = readings.get(ReadingType.opening)
        closing = readings.get(ReadingType.closing)

        if opening is not None and closing is not None:
            opening_value = to_decimal(opening.meter_value)
            closing_value = to_decimal(closing.meter_value)
            is_estimated = bool(opening.is_estimated or closing.is_estimated)
            rollover = self.rollover.detect(opening_value, closing_value, pump.meter_capacity)
        else:
            estimate = self.estimation.estimate(pump, day, opening, closing)
            self.estimation.persist_missing(pump, day, estimate, opening, closing)
            opening_value = estimate.opening_value
            closing_value = estimate.closing_value
            is_estimated = True
            # wrapped positions are not re-detected; the estimate already knows the volume
            rollover = RolloverResult(estimate.volume_dispensed, estimate.has_rollover, estimate.rollover_value)

        volume = rollover.volume_dispensed
        revenue = quantize_money(volume * unit_price)
        deviation = self.deviation.deviation_percent(pump.id, volume, day)

        calc = DailyCalculation(
            pump_id=pump.id,
            calculation_date=day,
            opening_reading=opening_value,
            closing_reading=closing_value,
            volume_dispensed=volume,
            unit_price=unit_price,
            total_revenue=revenue,
            has_rollover=rollover.has_rollover,
            rollover_value=rollover.rollover_value,
            deviation_from_average=deviation,
            is_estimated=is_estimated,
            calculation_method=CalculationMethod.estimated if is_estimated else CalculationMethod.meter_readings,
            approval_status=ApprovalStatus.pending if is_estimated else None,
            calculated_by=user,
        )
        self.store.add_calculation(calc)
        self.store.commit()
        self.store.refresh(calc)
        return calc, True

    def _update_station_summary(self, result: BatchResult) -> None:
        if result.created_count == 0 and result.deleted_count == 0 \
                and self.store.get_summary(result.station_id, result.calculation_date) is not None:
            # nothing changed since the summary was written
            return

        total_volume = result.total_volume
        total_revenue = result.total_revenue
        average_price = quantize_money(total_revenue / total_volume) if total_volume else quantize_money(ZERO)
        estimated_volume = quantize_volume(
            sum((to_decimal(c.volume_dispensed) for c in result.calculations if c.is_estimated), ZERO)
        )
        details = {
            "pump_calculations": [
                {
                    "pump_id": c.pump_id,
                    "pump_number": c.pump.pump_number,
                    "volume": as_json_number(to_decimal(c.volume_dispensed)),
                    "revenue": as_json_number(to_decimal(c.total_revenue)),
                    "is_estimated": c.is_estimated,
                }
                for c in result.calculations
            ]
        }
        try:
            self.store.upsert_summary({
                "station_id": result.station_id,
                "record_date": result.calculation_date,
                "total_volume": total_volume,
                "total_revenue": total_revenue,
                "average_unit_price": average_price,
                "pump_count": result.calculated_count,
                "estimated_volume": estimated_volume,
                "calculation_details": details,
            })
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
