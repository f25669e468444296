import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from ..core.config import LOG_LEVEL, settings
from ..core.database import get_db
from ..core.errors import (
    BusinessRuleViolation, ConflictError, NotFoundError, ReconciliationError, ValidationError,
)
from ..core.models import (
    ApprovalStatus, CalculationMethod, EstimationMethod, PumpStatus, ReadingType,
)
from ..core.services.corrections import ApprovalService, RolloverConfirmationHandler
from ..core.services.deviation import DeviationQueryService
from ..core.services.orchestrator import CalculationOrchestrator
from ..core.services.readings import ReadingService
from ..core.store import ReconciliationStore

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Pump Reconciliation API")


# ---- schemas ----------------------------------------------------------------

class CalculationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pump_id: int
    calculation_date: date
    opening_reading: Decimal
    closing_reading: Decimal
    volume_dispensed: Decimal
    unit_price: Decimal
    total_revenue: Decimal
    has_rollover: bool
    rollover_value: Optional[Decimal] = None
    deviation_from_average: Decimal
    is_estimated: bool
    calculation_method: CalculationMethod
    calculated_by: str
    approval_status: Optional[ApprovalStatus] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None


class PumpFailureOut(BaseModel):
    pump_id: int
    error: str


class CalculateRequest(BaseModel):
    calculation_date: date
    force_recalculate: Optional[bool] = False


class CalculateResponse(BaseModel):
    calculated_count: int
    total_volume: Decimal
    total_revenue: Decimal
    state: str
    calculations: List[CalculationOut]
    failed: List[PumpFailureOut]


class RolloverRequest(BaseModel):
    pump_id: int
    calculation_date: date
    rollover_value: Decimal
    new_closing_reading: Decimal


class ApprovalRequest(BaseModel):
    approved: bool
    notes: Optional[str] = None


class DeviationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    calculation_id: int
    pump_id: int
    pump_number: str
    calculation_date: date
    volume_dispensed: Decimal
    average_volume: Optional[Decimal] = None
    deviation_percent: Decimal
    is_estimated: bool


class ReadingIn(BaseModel):
    pump_id: int
    reading_date: date
    reading_type: ReadingType
    meter_value: Decimal
    is_estimated: bool = False
    estimation_method: Optional[EstimationMethod] = None
    notes: Optional[str] = None


class ReadingCorrection(BaseModel):
    meter_value: Decimal
    notes: Optional[str] = None
    override_reason: Optional[str] = None


class ReadingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pump_id: int
    reading_date: date
    reading_type: ReadingType
    meter_value: Decimal
    recorded_by: str
    is_estimated: bool
    estimation_method: Optional[EstimationMethod] = None
    notes: Optional[str] = None
    is_modified: bool
    original_value: Optional[Decimal] = None
    modified_by: Optional[str] = None
    modified_at: Optional[datetime] = None


class PumpReadingStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pump_id: int
    pump_number: str
    has_opening: bool
    has_closing: bool
    opening_value: Optional[Decimal] = None
    closing_value: Optional[Decimal] = None


class PumpStatusRequest(BaseModel):
    status: PumpStatus


class PumpOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    station_id: int
    pump_number: str
    meter_capacity: Decimal
    status: PumpStatus
    is_active: bool


# ---- error mapping ----------------------------------------------------------

_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    BusinessRuleViolation: 400,
    ConflictError: 409,
}


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


def get_store(db: Session = Depends(get_db)) -> ReconciliationStore:
    return ReconciliationStore(db)


# ---- calculations -----------------------------------------------------------

@app.post("/stations/{station_id}/calculations", response_model=CalculateResponse)
def calculate_for_date(station_id: int, req: CalculateRequest,
                       store: ReconciliationStore = Depends(get_store),
                       x_user_id: Optional[str] = Header(None)):
    result = CalculationOrchestrator(store, settings).calculate_for_date(
        station_id, req.calculation_date, bool(req.force_recalculate), calculated_by=x_user_id
    )
    return CalculateResponse(
        calculated_count=result.calculated_count,
        total_volume=result.total_volume,
        total_revenue=result.total_revenue,
        state=result.state.value,
        calculations=[CalculationOut.model_validate(c) for c in result.calculations],
        failed=[PumpFailureOut(pump_id=pump_id, error=str(err)) for pump_id, err in result.failed],
    )


@app.get("/stations/{station_id}/calculations", response_model=List[CalculationOut])
def list_calculations(station_id: int, start: date, end: date,
                      store: ReconciliationStore = Depends(get_store)):
    if end < start:
        raise ValidationError("end date precedes start date")
    return store.station_calculations(station_id, start, end)


@app.get("/stations/{station_id}/calculations/pending-approval", response_model=List[CalculationOut])
def pending_approvals(station_id: int, start: Optional[date] = None, end: Optional[date] = None,
                      store: ReconciliationStore = Depends(get_store)):
    return ApprovalService(store, settings).list_pending_approvals(station_id, start, end)


@app.post("/calculations/rollover", response_model=CalculationOut)
def confirm_rollover(req: RolloverRequest, store: ReconciliationStore = Depends(get_store),
                     x_user_id: Optional[str] = Header(None)):
    return RolloverConfirmationHandler(store, settings).confirm_rollover(
        req.pump_id, req.calculation_date, req.rollover_value, req.new_closing_reading,
        confirmed_by=x_user_id,
    )


@app.post("/calculations/{calculation_id}/approve", response_model=CalculationOut)
def approve_calculation(calculation_id: int, req: ApprovalRequest,
                        store: ReconciliationStore = Depends(get_store),
                        x_user_id: Optional[str] = Header(None)):
    return ApprovalService(store, settings).approve_estimated_calculation(
        calculation_id, req.approved, x_user_id or settings.system_user, req.notes
    )


@app.get("/stations/{station_id}/deviations", response_model=List[DeviationOut])
def get_deviations(station_id: int, start: date, end: date,
                   threshold_percent: Decimal = Query(settings.deviation_threshold_percent, ge=0),
                   window_days: int = Query(settings.deviation_window_days, gt=0),
                   store: ReconciliationStore = Depends(get_store)):
    return DeviationQueryService(store, settings).get_deviations(
        station_id, start, end, threshold_percent, window_days
    )


# ---- readings and pumps -----------------------------------------------------

@app.post("/readings", response_model=ReadingOut, status_code=201)
def record_reading(req: ReadingIn, store: ReconciliationStore = Depends(get_store),
                   x_user_id: Optional[str] = Header(None)):
    return ReadingService(store, settings).record_reading(
        req.pump_id, req.reading_date, req.reading_type, req.meter_value,
        recorded_by=x_user_id or settings.system_user,
        is_estimated=req.is_estimated,
        estimation_method=req.estimation_method,
        notes=req.notes,
    )


@app.patch("/readings/{reading_id}", response_model=ReadingOut)
def correct_reading(reading_id: int, req: ReadingCorrection,
                    store: ReconciliationStore = Depends(get_store),
                    x_user_id: Optional[str] = Header(None)):
    return ReadingService(store, settings).correct_reading(
        reading_id, req.meter_value, x_user_id or settings.system_user,
        notes=req.notes, override_reason=req.override_reason,
    )


@app.get("/stations/{station_id}/readings/status", response_model=List[PumpReadingStatusOut])
def reading_status(station_id: int, reading_date: date,
                   store: ReconciliationStore = Depends(get_store)):
    return ReadingService(store, settings).daily_reading_status(station_id, reading_date)


@app.patch("/pumps/{pump_id}/status", response_model=PumpOut)
def update_pump_status(pump_id: int, req: PumpStatusRequest,
                       store: ReconciliationStore = Depends(get_store)):
    return ReadingService(store, settings).update_pump_status(pump_id, req.status)
