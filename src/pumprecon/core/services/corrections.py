"""Human corrections to stored daily calculations.

Two paths change a DailyCalculation after the orchestrator wrote it:

* ``RolloverConfirmationHandler`` - an operator confirms the meter wrapped
  (or fixes a wrong automatic guess) and supplies the rollover point and the
  real closing reading. Volume, revenue and deviation are recomputed from
  the stored opening reading and unit price snapshot.
* ``ApprovalService`` - sign-off on an estimated calculation. Only estimated
  rows can be approved or rejected; the estimated flag itself is kept so the
  row stays distinguishable from one built on real readings.
"""

import logging
from datetime import date
from typing import List, Optional

from ..config import EngineSettings, settings as default_settings
from ..decimals import ZERO, Number, quantize_money, quantize_volume, to_decimal
from ..errors import BusinessRuleViolation, NotFoundError, ValidationError
from ..models import ApprovalStatus, CalculationMethod, DailyCalculation, utcnow
from ..store import ReconciliationStore
from .deviation import DeviationAnalyzer

logger = logging.getLogger(__name__)


class RolloverConfirmationHandler:
    def __init__(self, store: ReconciliationStore, settings: EngineSettings = default_settings):
        self.store = store
        self.settings = settings
        self.deviation = DeviationAnalyzer(store, settings)

    def confirm_rollover(
        self,
        pump_id: int,
        calculation_date: date,
        rollover_value: Number,
        new_closing_reading: Number,
        confirmed_by: Optional[str] = None,
    ) -> DailyCalculation:
        try:
            rollover_value = to_decimal(rollover_value)
            new_closing = to_decimal(new_closing_reading)
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e
        if rollover_value <= ZERO:
            raise ValidationError("Rollover value must be positive")
        if new_closing < ZERO:
            raise ValidationError("Closing reading must not be negative")

        pump = self.store.get_pump(pump_id)
        if pump is None:
            raise NotFoundError(f"Pump {pump_id} not found")
        capacity = to_decimal(pump.meter_capacity)
        if rollover_value > capacity:
            raise ValidationError(f"Rollover value exceeds pump capacity of {capacity}")
        if new_closing > capacity:
            raise ValidationError(f"Closing reading exceeds pump capacity of {capacity}")

        calc = self.store.find_calculation(pump_id, calculation_date)
        if calc is None:
            raise NotFoundError(f"Calculation not found for pump {pump_id} on {calculation_date}")

        opening = to_decimal(calc.opening_reading)
        if rollover_value < opening:
            raise BusinessRuleViolation(
                f"Rollover value {rollover_value} is below the opening reading {opening}; "
                "it cannot explain the volume gap"
            )

        volume = quantize_volume((rollover_value - opening) + new_closing)
        revenue = quantize_money(volume * to_decimal(calc.unit_price))
        try:
            calc.closing_reading = quantize_volume(new_closing)
            calc.volume_dispensed = volume
            calc.total_revenue = revenue
            calc.has_rollover = True
            calc.rollover_value = quantize_volume(rollover_value)
            calc.calculation_method = CalculationMethod.meter_readings
            calc.deviation_from_average = self.deviation.deviation_percent(pump_id, volume, calculation_date)
            calc.updated_at = utcnow()
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(calc)
        logger.info("Rollover confirmed for pump %s on %s by %s: rollover=%s volume=%s",
                    pump_id, calculation_date, confirmed_by or self.settings.system_user, rollover_value, volume)
        return calc


class ApprovalService:
    def __init__(self, store: ReconciliationStore, settings: EngineSettings = default_settings):
        self.store = store
        self.settings = settings

    def approve_estimated_calculation(
        self,
        calculation_id: int,
        approved: bool,
        approved_by: str,
        notes: Optional[str] = None,
    ) -> DailyCalculation:
        calc = self.store.get_calculation(calculation_id)
        if calc is None:
            raise NotFoundError(f"Calculation {calculation_id} not found")
        if not calc.is_estimated:
            raise BusinessRuleViolation("Only estimated calculations can be approved")

        try:
            calc.approval_status = ApprovalStatus.approved if approved else ApprovalStatus.rejected
            calc.approved_by = approved_by
            calc.approved_at = utcnow()
            calc.approval_notes = notes
            calc.updated_at = calc.approved_at
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(calc)
        logger.info("Estimated calculation %s %s by %s",
                    calculation_id, calc.approval_status.value, approved_by)
        return calc

    def list_pending_approvals(self, station_id: int, start: Optional[date] = None,
                               end: Optional[date] = None) -> List[DailyCalculation]:
        if start is not None and end is not None and end < start:
            raise ValidationError("end date precedes start date")
        return self.store.pending_approvals(station_id, start, end)
