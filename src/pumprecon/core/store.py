"""Read/write access to pumps, readings, calculations and summaries.

Services never issue queries themselves; they go through a
``ReconciliationStore`` bound to one SQLAlchemy session. Uniqueness of
readings and calculations is left to the database constraints, and an
``IntegrityError`` on insert surfaces as :class:`ConflictError`.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, sqlite

from .errors import ConflictError
from .models import (
    ApprovalStatus, DailyCalculation, MeterReading, Product, PumpConfiguration,
    PumpStatus, ReadingType, StationDailySummary,
)

logger = logging.getLogger(__name__)


class ReconciliationStore:
    def __init__(self, db: Session):
        self.db = db

    # ---- pumps and prices -------------------------------------------------

    def get_pump(self, pump_id: int) -> Optional[PumpConfiguration]:
        return self.db.get(PumpConfiguration, pump_id)

    def active_pumps(self, station_id: int) -> List[PumpConfiguration]:
        return self.db.execute(
            select(PumpConfiguration).where(
                PumpConfiguration.station_id == station_id,
                PumpConfiguration.is_active.is_(True),
                PumpConfiguration.status == PumpStatus.active,
            ).order_by(PumpConfiguration.pump_number.asc())
        ).scalars().all()

    def unit_price(self, product_id: int) -> Optional[Decimal]:
        product = self.db.get(Product, product_id)
        if product is None:
            return None
        return product.unit_price

    # ---- meter readings ---------------------------------------------------

    def get_reading(self, reading_id: int) -> Optional[MeterReading]:
        return self.db.get(MeterReading, reading_id)

    def readings_for(self, pump_id: int, day: date) -> Dict[ReadingType, MeterReading]:
        rows = self.db.execute(
            select(MeterReading).where(
                MeterReading.pump_id == pump_id,
                MeterReading.reading_date == day,
            )
        ).scalars().all()
        return {r.reading_type: r for r in rows}

    def readings_for_station(self, station_id: int, day: date) -> List[MeterReading]:
        return self.db.execute(
            select(MeterReading)
            .join(PumpConfiguration, MeterReading.pump_id == PumpConfiguration.id)
            .where(
                PumpConfiguration.station_id == station_id,
                MeterReading.reading_date == day,
            )
        ).scalars().all()

    def previous_closing(self, pump_id: int, day: date) -> Optional[MeterReading]:
        return self.db.execute(
            select(MeterReading).where(
                MeterReading.pump_id == pump_id,
                MeterReading.reading_date == day - timedelta(days=1),
                MeterReading.reading_type == ReadingType.closing,
            )
        ).scalars().first()

    def add_reading(self, reading: MeterReading) -> MeterReading:
        self.db.add(reading)
        self._flush_unique(f"reading already exists for pump {reading.pump_id} "
                           f"on {reading.reading_date} ({getattr(reading.reading_type, 'value', reading.reading_type)})")
        return reading

    def delete_synthesized_readings(self, station_id: int, day: date, system_user: str) -> int:
        """Remove the estimated readings the engine itself wrote for a station-day."""
        pump_ids = select(PumpConfiguration.id).where(PumpConfiguration.station_id == station_id)
        result = self.db.execute(
            delete(MeterReading).where(
                MeterReading.reading_date == day,
                MeterReading.pump_id.in_(pump_ids),
                MeterReading.is_estimated.is_(True),
                MeterReading.recorded_by == system_user,
            ).execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    # ---- daily calculations -----------------------------------------------

    def get_calculation(self, calculation_id: int) -> Optional[DailyCalculation]:
        return self.db.get(DailyCalculation, calculation_id)

    def find_calculation(self, pump_id: int, day: date) -> Optional[DailyCalculation]:
        return self.db.execute(
            select(DailyCalculation).where(
                DailyCalculation.pump_id == pump_id,
                DailyCalculation.calculation_date == day,
            )
        ).scalars().first()

    def add_calculation(self, calc: DailyCalculation) -> DailyCalculation:
        self.db.add(calc)
        self._flush_unique(f"calculation already exists for pump {calc.pump_id} on {calc.calculation_date}")
        return calc

    def delete_calculations(self, station_id: int, day: date) -> int:
        pump_ids = select(PumpConfiguration.id).where(PumpConfiguration.station_id == station_id)
        result = self.db.execute(
            delete(DailyCalculation).where(
                DailyCalculation.calculation_date == day,
                DailyCalculation.pump_id.in_(pump_ids),
            ).execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def trusted_volumes(self, pump_id: int, start: date, end: date) -> List[Decimal]:
        """Volumes of non-estimated calculations dated within [start, end]."""
        return self.db.execute(
            select(DailyCalculation.volume_dispensed).where(
                DailyCalculation.pump_id == pump_id,
                DailyCalculation.calculation_date >= start,
                DailyCalculation.calculation_date <= end,
                DailyCalculation.is_estimated.is_(False),
            )
        ).scalars().all()

    def recent_trusted_volumes(self, pump_id: int, before: date, limit: int) -> List[Decimal]:
        """Volumes of the latest ``limit`` non-estimated calculations before ``before``."""
        return self.db.execute(
            select(DailyCalculation.volume_dispensed).where(
                DailyCalculation.pump_id == pump_id,
                DailyCalculation.calculation_date < before,
                DailyCalculation.is_estimated.is_(False),
            ).order_by(DailyCalculation.calculation_date.desc()).limit(limit)
        ).scalars().all()

    def station_calculations(self, station_id: int, start: date, end: date) -> List[DailyCalculation]:
        return self.db.execute(
            select(DailyCalculation)
            .join(PumpConfiguration, DailyCalculation.pump_id == PumpConfiguration.id)
            .where(
                PumpConfiguration.station_id == station_id,
                DailyCalculation.calculation_date >= start,
                DailyCalculation.calculation_date <= end,
            )
            .order_by(DailyCalculation.calculation_date.asc(), PumpConfiguration.pump_number.asc())
        ).scalars().all()

    def pending_approvals(self, station_id: int, start: Optional[date] = None,
                          end: Optional[date] = None) -> List[DailyCalculation]:
        stmt = (
            select(DailyCalculation)
            .join(PumpConfiguration, DailyCalculation.pump_id == PumpConfiguration.id)
            .where(
                PumpConfiguration.station_id == station_id,
                DailyCalculation.is_estimated.is_(True),
                DailyCalculation.approval_status == ApprovalStatus.pending,
            )
        )
        if start is not None:
            stmt = stmt.where(DailyCalculation.calculation_date >= start)
        if end is not None:
            stmt = stmt.where(DailyCalculation.calculation_date <= end)
        return self.db.execute(
            stmt.order_by(DailyCalculation.calculation_date.asc(), PumpConfiguration.pump_number.asc())
        ).scalars().all()

    # ---- station summaries ------------------------------------------------

    def get_summary(self, station_id: int, day: date) -> Optional[StationDailySummary]:
        return self.db.execute(
            select(StationDailySummary).where(
                StationDailySummary.station_id == station_id,
                StationDailySummary.record_date == day,
            )
        ).scalars().first()

    def upsert_summary(self, values: dict) -> None:
        """Insert or update the summary row keyed on (station_id, record_date)."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise NotImplementedError(f"summary upsert not supported on {dialect}")
        stmt = insert(StationDailySummary).values(**values)
        updates = {k: stmt.excluded[k] for k in values if k not in ("station_id", "record_date")}
        self.db.execute(
            stmt.on_conflict_do_update(index_elements=["station_id", "record_date"], set_=updates)
        )

    # ---- transactions -----------------------------------------------------

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, obj) -> None:
        self.db.refresh(obj)

    def _flush_unique(self, message: str) -> None:
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning("Uniqueness conflict: %s", message)
            raise ConflictError(message) from e
