from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pumprecon.core.config import EngineSettings
from pumprecon.core.models import (
    Base, CalculationMethod, DailyCalculation, MeterReading, Product, PumpConfiguration,
    ReadingType,
)
from pumprecon.core.store import ReconciliationStore

STATION_ID = 1
DAY = date(2024, 5, 15)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return ReconciliationStore(db)


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def petrol(db):
    product = Product(name="PMS", unit_price=Decimal("2.50"))
    db.add(product)
    db.commit()
    return product


def make_pump(db, product, number="P1", capacity="1000", station_id=STATION_ID, **kw):
    pump = PumpConfiguration(
        station_id=station_id,
        product_id=product.id,
        pump_number=number,
        meter_capacity=Decimal(capacity),
        install_date=date(2020, 1, 1),
        **kw,
    )
    db.add(pump)
    db.commit()
    return pump


def add_reading(db, pump, day, reading_type, value, estimated=False):
    reading = MeterReading(
        pump_id=pump.id,
        reading_date=day,
        reading_type=ReadingType(reading_type),
        meter_value=Decimal(str(value)),
        recorded_by="operator",
        is_estimated=estimated,
    )
    db.add(reading)
    db.commit()
    return reading


def add_calculation(db, pump, day, volume, estimated=False, price="2.50"):
    volume = Decimal(str(volume))
    calc = DailyCalculation(
        pump_id=pump.id,
        calculation_date=day,
        opening_reading=Decimal("0"),
        closing_reading=volume,
        volume_dispensed=volume,
        unit_price=Decimal(price),
        total_revenue=volume * Decimal(price),
        deviation_from_average=Decimal("0"),
        is_estimated=estimated,
        calculation_method=CalculationMethod.estimated if estimated else CalculationMethod.meter_readings,
        calculated_by="seed",
    )
    db.add(calc)
    db.commit()
    return calc


@pytest.fixture
def pump(db, petrol):
    return make_pump(db, petrol)
