import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, Text, Date, DateTime, Numeric, Boolean, ForeignKey, JSON,
    Enum, UniqueConstraint, Index, CheckConstraint, func,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.dialects.postgresql import JSONB

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp. DateTime columns hold UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PumpStatus(str, enum.Enum):
    active = "active"
    maintenance = "maintenance"
    calibration = "calibration"
    repair = "repair"


class ReadingType(str, enum.Enum):
    opening = "opening"
    closing = "closing"


class EstimationMethod(str, enum.Enum):
    transaction_based = "transaction_based"
    historical_average = "historical_average"
    manual = "manual"


class CalculationMethod(str, enum.Enum):
    meter_readings = "meter_readings"
    estimated = "estimated"
    manual_override = "manual_override"


class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class Product(Base):
    __tablename__ = "product"
    id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False)
    # Nullable: a product without a price cannot be reconciled
    unit_price = Column(Numeric(10, 2))

    pumps = relationship("PumpConfiguration", back_populates="product")


class PumpConfiguration(Base):
    __tablename__ = "pump_configuration"
    id = Column(Integer, primary_key=True)
    station_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("product.id", ondelete="RESTRICT"), nullable=False)
    pump_number = Column(Text, nullable=False)
    meter_capacity = Column(Numeric(10, 1), nullable=False)
    install_date = Column(Date, nullable=False)
    last_calibration_date = Column(Date)
    status = Column(Enum(PumpStatus, name="pump_status"), nullable=False, default=PumpStatus.active)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("meter_capacity > 0", name="ck_pump_capacity_positive"),
        UniqueConstraint("station_id", "pump_number", name="uq_pump_number_per_station"),
    )

    product = relationship("Product", back_populates="pumps")
    readings = relationship("MeterReading", back_populates="pump")
    calculations = relationship("DailyCalculation", back_populates="pump")


class MeterReading(Base):
    __tablename__ = "meter_reading"
    id = Column(Integer, primary_key=True)
    pump_id = Column(Integer, ForeignKey("pump_configuration.id", ondelete="RESTRICT"), nullable=False)
    reading_date = Column(Date, nullable=False)
    reading_type = Column(Enum(ReadingType, name="reading_type"), nullable=False)
    meter_value = Column(Numeric(10, 1), nullable=False)
    recorded_by = Column(Text, nullable=False)
    recorded_at = Column(DateTime, nullable=False, server_default=func.now())
    is_estimated = Column(Boolean, nullable=False, default=False)
    estimation_method = Column(Enum(EstimationMethod, name="estimation_method"))
    notes = Column(Text)
    # correction trail; original_value is written once, on the first change
    is_modified = Column(Boolean, nullable=False, default=False)
    original_value = Column(Numeric(10, 1))
    modified_by = Column(Text)
    modified_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("pump_id", "reading_date", "reading_type", name="uq_reading_per_pump_date_type"),
    )

    pump = relationship("PumpConfiguration", back_populates="readings")


class DailyCalculation(Base):
    __tablename__ = "daily_calculation"
    id = Column(Integer, primary_key=True)
    pump_id = Column(Integer, ForeignKey("pump_configuration.id", ondelete="RESTRICT"), nullable=False)
    calculation_date = Column(Date, nullable=False)
    opening_reading = Column(Numeric(10, 1), nullable=False)
    closing_reading = Column(Numeric(10, 1), nullable=False)
    volume_dispensed = Column(Numeric(10, 1), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_revenue = Column(Numeric(12, 2), nullable=False)
    has_rollover = Column(Boolean, nullable=False, default=False)
    rollover_value = Column(Numeric(10, 1))
    deviation_from_average = Column(Numeric(9, 2), nullable=False, default=0)
    is_estimated = Column(Boolean, nullable=False, default=False)
    calculation_method = Column(
        Enum(CalculationMethod, name="calculation_method"),
        nullable=False,
        default=CalculationMethod.meter_readings,
    )
    calculated_by = Column(Text, nullable=False)
    calculated_at = Column(DateTime, nullable=False, server_default=func.now())
    approval_status = Column(Enum(ApprovalStatus, name="approval_status"))
    approved_by = Column(Text)
    approved_at = Column(DateTime)
    approval_notes = Column(Text)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("pump_id", "calculation_date", name="uq_calculation_per_pump_date"),
        Index("ix_calculation_lookup", "pump_id", "calculation_date", "is_estimated"),
    )

    pump = relationship("PumpConfiguration", back_populates="calculations")


class StationDailySummary(Base):
    __tablename__ = "station_daily_summary"
    id = Column(Integer, primary_key=True)
    station_id = Column(Integer, nullable=False)
    record_date = Column(Date, nullable=False)
    total_volume = Column(Numeric(12, 1), nullable=False)
    total_revenue = Column(Numeric(14, 2), nullable=False)
    average_unit_price = Column(Numeric(10, 2), nullable=False)
    pump_count = Column(Integer, nullable=False)
    estimated_volume = Column(Numeric(12, 1), nullable=False, default=0)
    calculation_details = Column(JSONType, nullable=False)  # per-pump breakdown
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("station_id", "record_date", name="uq_summary_per_station_date"),
    )
