from decimal import Decimal

import pandas as pd
import pytest

from conftest import DAY, add_reading
from pumprecon.core.models import ReadingType
from pumprecon.data.load_meter_readings import guess_columns, insert_meter_readings


def write_csv(tmp_path, text):
    path = tmp_path / "readings.csv"
    path.write_text(text)
    return str(path)


def test_guess_columns_from_headers():
    df = pd.DataFrame(columns=["Pump ID", "Reading Date", "Reading Type", "Meter Value", "Notes"])
    assert guess_columns(df) == {
        "pump": "Pump ID",
        "date": "Reading Date",
        "type": "Reading Type",
        "value": "Meter Value",
    }


def test_guess_columns_honours_explicit_names():
    df = pd.DataFrame(columns=["nozzle", "day", "kind", "totaliser"])
    mapping = guess_columns(df, {"pump": "Nozzle", "date": "DAY", "type": "kind", "value": "totaliser"})
    assert mapping["pump"] == "nozzle"
    assert mapping["value"] == "totaliser"


def test_guess_columns_reports_missing_field():
    df = pd.DataFrame(columns=["pump", "date", "type"])
    with pytest.raises(ValueError):
        guess_columns(df)
    with pytest.raises(KeyError):
        guess_columns(df, {"value": "litres"})


def test_insert_meter_readings(tmp_path, db, store, session_factory, pump):
    add_reading(db, pump, DAY.replace(day=14), "closing", "400")
    csv_path = write_csv(tmp_path, "\n".join([
        "pump_id,reading_date,reading_type,meter_value",
        f"{pump.id},2024-05-15,opening,400.0",
        f"{pump.id},2024-05-15,Closing,512.3",
        f"{pump.id},2024-05-14,closing,401",
        f"{pump.id},2024-05-16,opening,2500",
        f"{pump.id},not-a-date,opening,10",
        f"{pump.id},2024-05-16,lunch,10",
    ]))

    counts = insert_meter_readings(csv_path, "sqlite://", recorded_by="import",
                                   session_factory=session_factory)

    assert counts == {"inserted": 2, "skipped": 1, "rejected": 1}
    readings = store.readings_for(pump.id, DAY)
    assert readings[ReadingType.opening].meter_value == Decimal("400.0")
    assert readings[ReadingType.closing].meter_value == Decimal("512.3")
    assert readings[ReadingType.closing].recorded_by == "import"


def test_missing_csv(tmp_path):
    with pytest.raises(FileNotFoundError):
        insert_meter_readings(str(tmp_path / "nope.csv"), "sqlite://")
