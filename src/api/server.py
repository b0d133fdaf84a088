"""
FORECOURT LEDGER - FastAPI Server

Thin HTTP surface over the ledger services. Authorization beyond the API key
is the caller's concern.

Endpoints:
- POST /readings - Record a meter reading
- PATCH /readings/{id} - Correct a reading (cascades down the nozzle's chain)
- POST /transactions - Create a reconciled daily transaction
- POST /creditors/{id}/credit - Extend credit
- POST /creditors/{id}/settlements - Record a settlement
- GET /creditors/{id}/balance - Current balance
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.config import LedgerConfig
from core.errors import LedgerError
from credit.aging import AgingService
from credit.allocator import SettlementAllocator
from credit.ledger import CreditLedger, CreditReference
from metering.pricing import PriceResolver
from metering.readings import MeterReadingLedger
from persistence.database import Database
from reconciliation.daily import DailyTransactionReconciler

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class ReadingRequest(BaseModel):
    """Request to record a meter reading."""
    nozzle_id: str
    reading_date: date
    reading_value: Decimal = Field(..., ge=0)
    cash_amount: Optional[Decimal] = None
    online_amount: Optional[Decimal] = None
    notes: Optional[str] = None
    entered_by: Optional[str] = None


class ReadingEditRequest(BaseModel):
    """Correction of a historical reading."""
    reading_value: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class PriceRequest(BaseModel):
    station_id: str
    fuel_type: str
    price: Decimal = Field(..., gt=0)
    effective_from: date
    cost_price: Optional[Decimal] = None


class CreditAllocationModel(BaseModel):
    creditor_id: str
    amount: Decimal = Field(..., gt=0)


class DailyTransactionRequest(BaseModel):
    """A shift's readings and the tenders collected for them."""
    station_id: str
    transaction_date: date
    reading_ids: List[str] = Field(..., min_length=1)
    payment_breakdown: Dict[str, Decimal]
    credit_allocations: List[CreditAllocationModel] = Field(default_factory=list)
    notes: Optional[str] = None
    created_by: Optional[str] = None


class CreditorRequest(BaseModel):
    station_id: str
    name: str
    credit_limit: Decimal = Decimal("0")
    credit_period_days: Optional[int] = Field(None, ge=0)
    business_name: Optional[str] = None
    phone: Optional[str] = None


class CreditRequest(BaseModel):
    """Credit sale charged to a creditor."""
    station_id: str
    amount: Decimal = Field(..., gt=0)
    transaction_date: Optional[date] = None
    nozzle_reading_id: Optional[str] = None
    fuel_type: Optional[str] = None
    litres: Optional[Decimal] = None
    price_per_litre: Optional[Decimal] = None
    vehicle_number: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    entered_by: Optional[str] = None


class SettlementAllocationModel(BaseModel):
    credit_transaction_id: str
    amount: Decimal = Field(..., gt=0)


class SettlementRequest(BaseModel):
    """Payment received; allocations target specific credit lines."""
    station_id: str
    amount: Optional[Decimal] = Field(None, gt=0)
    allocations: List[SettlementAllocationModel] = Field(default_factory=list)
    transaction_date: Optional[date] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    entered_by: Optional[str] = None


class FlagRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Services sharing one database handle."""

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or LedgerConfig.from_env()
        self.db = Database(self.config.database_url, self.config.lock_timeout_seconds)
        self.db.initialize()

        self.prices = PriceResolver(self.db)
        self.readings = MeterReadingLedger(self.db, self.prices, self.config)
        self.allocator = SettlementAllocator(self.db, self.config)
        self.credit = CreditLedger(self.db, self.config, self.allocator)
        self.reconciler = DailyTransactionReconciler(self.db, self.credit, self.config)
        self.aging = AgingService(self.db)
        self.start_time = datetime.now(timezone.utc)

    def close(self) -> None:
        self.db.close()


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("forecourt_ledger_starting", version=VERSION)
    app_state = AppState()
    yield
    app_state.close()
    app_state = None
    logger.info("forecourt_ledger_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Forecourt Ledger",
        description="""
# Fuel Station Financial Ledger

Meter readings become priced sales, sales are reconciled into daily
cash/online/credit tenders, and credit tenders feed per-customer balances
that are settled over time.
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.category == "transient":
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        else:
            logger.info("request_rejected", path=request.url.path, code=exc.code)
        return JSONResponse(status_code=exc.http_status, content=jsonable_encoder({"error": exc.to_dict()}))

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# System
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="postgres" if state.db.is_postgres else "sqlite",
        uptime_seconds=uptime,
    )


# ============================================================================
# Prices
# ============================================================================

@app.post("/prices", status_code=201, tags=["Prices"])
def set_price(
    request: PriceRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    price = state.prices.set_price(
        request.station_id,
        request.fuel_type,
        request.price,
        request.effective_from,
        request.cost_price,
    )
    return price.to_dict()


@app.get("/prices/{station_id}/{fuel_type}", tags=["Prices"])
def get_price(
    station_id: str,
    fuel_type: str,
    on_date: date,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Price in force on a date, with profit figures when a cost price is known."""
    quote = state.prices.profit_for(station_id, fuel_type, on_date)
    if quote is None:
        raise HTTPException(status_code=404, detail=f"No {fuel_type} price in force on {on_date}")
    return quote.to_dict()


# ============================================================================
# Readings
# ============================================================================

@app.post("/readings", status_code=201, tags=["Readings"])
def record_reading(
    request: ReadingRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    reading = state.readings.record_reading(
        request.nozzle_id,
        request.reading_date,
        request.reading_value,
        cash_amount=request.cash_amount,
        online_amount=request.online_amount,
        notes=request.notes,
        entered_by=request.entered_by,
    )
    return reading.to_dict()


@app.get("/readings", tags=["Readings"])
def list_readings(
    station_id: str,
    nozzle_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 500,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    readings = state.readings.list_readings(station_id, nozzle_id, start_date, end_date, min(limit, 1000))
    return {"total": len(readings), "readings": [r.to_dict() for r in readings]}


@app.get("/readings/{reading_id}", tags=["Readings"])
def get_reading(
    reading_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.readings.get_reading(reading_id).to_dict()


@app.patch("/readings/{reading_id}", tags=["Readings"])
def edit_reading(
    reading_id: str,
    request: ReadingEditRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Correct a reading; every later reading of the nozzle is recomputed."""
    reading = state.readings.edit_reading(reading_id, request.reading_value, request.notes)
    return reading.to_dict()


@app.get("/nozzles/{nozzle_id}/previous-reading", tags=["Readings"])
def get_previous_reading(
    nozzle_id: str,
    as_of_date: Optional[date] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    reading = state.readings.get_previous_reading(nozzle_id, as_of_date)
    return {"nozzle_id": nozzle_id, "previous_reading": reading.to_dict() if reading else None}


@app.get("/nozzles/{nozzle_id}/missed-days", tags=["Readings"])
def get_missed_days(
    nozzle_id: str,
    start_date: date,
    end_date: date,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    days = state.readings.missed_days(nozzle_id, start_date, end_date)
    return {"nozzle_id": nozzle_id, "missed_days": days}


# ============================================================================
# Daily transactions
# ============================================================================

@app.post("/transactions", status_code=201, tags=["Transactions"])
def create_daily_transaction(
    request: DailyTransactionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    result = state.reconciler.create_daily_transaction(
        request.station_id,
        request.transaction_date,
        request.reading_ids,
        dict(request.payment_breakdown),
        [a.model_dump() for a in request.credit_allocations],
        notes=request.notes,
        created_by=request.created_by,
    )
    return result.to_dict()


@app.get("/transactions", tags=["Transactions"])
def get_transactions_for_date(
    station_id: str,
    transaction_date: date,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    txns = state.reconciler.get_transactions_for_date(station_id, transaction_date)
    return {"total": len(txns), "transactions": [t.to_dict() for t in txns]}


@app.get("/transactions/summary", tags=["Transactions"])
def get_daily_summary(
    station_id: str,
    start_date: date,
    end_date: date,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.reconciler.daily_summary(station_id, start_date, end_date).to_dict()


@app.get("/transactions/{transaction_id}", tags=["Transactions"])
def get_daily_transaction(
    transaction_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.reconciler.get_transaction(transaction_id).to_dict()


# ============================================================================
# Creditors
# ============================================================================

@app.post("/creditors", status_code=201, tags=["Credit"])
def create_creditor(
    request: CreditorRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    creditor = state.credit.create_creditor(
        request.station_id,
        request.name,
        credit_limit=request.credit_limit,
        credit_period_days=request.credit_period_days,
        business_name=request.business_name,
        phone=request.phone,
    )
    return creditor.to_dict()


@app.post("/creditors/{creditor_id}/credit", status_code=201, tags=["Credit"])
def extend_credit(
    creditor_id: str,
    request: CreditRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    reference = CreditReference(
        transaction_date=request.transaction_date,
        nozzle_reading_id=request.nozzle_reading_id,
        fuel_type=request.fuel_type,
        litres=request.litres,
        price_per_litre=request.price_per_litre,
        vehicle_number=request.vehicle_number,
        reference_number=request.reference_number,
        notes=request.notes,
        entered_by=request.entered_by,
    )
    txn = state.credit.extend_credit(request.station_id, creditor_id, request.amount, reference)
    return txn.to_dict()


@app.post("/creditors/{creditor_id}/settlements", status_code=201, tags=["Credit"])
def record_settlement(
    creditor_id: str,
    request: SettlementRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    txn = state.credit.record_settlement(
        request.station_id,
        creditor_id,
        amount=request.amount,
        allocations=[a.model_dump() for a in request.allocations],
        transaction_date=request.transaction_date,
        reference_number=request.reference_number,
        notes=request.notes,
        entered_by=request.entered_by,
    )
    links = state.allocator.links_for_settlement(txn.credit_transaction_id)
    return {"settlement": txn.to_dict(), "links": [link.to_dict() for link in links]}


@app.get("/creditors/{creditor_id}/balance", tags=["Credit"])
def get_creditor_balance(
    creditor_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    balance = state.credit.get_creditor_balance(creditor_id)
    return {"creditor_id": creditor_id, "current_balance": str(balance)}


@app.get("/creditors/{creditor_id}/ledger", tags=["Credit"])
def get_creditor_ledger(
    creditor_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    entries = state.credit.get_ledger(creditor_id)
    return {"creditor_id": creditor_id, "entries": [e.to_dict() for e in entries]}


@app.get("/creditors/{creditor_id}/outstanding", tags=["Credit"])
def get_outstanding_credits(
    creditor_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    state.credit.get_creditor(creditor_id)
    lines = state.allocator.outstanding_credits(creditor_id)
    return {"creditor_id": creditor_id, "credits": [line.to_dict() for line in lines]}


@app.get("/creditors/{creditor_id}/reconcile", tags=["Credit"])
def reconcile_creditor_balance(
    creditor_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.credit.reconcile_balance(creditor_id).to_dict()


@app.post("/creditors/{creditor_id}/flag", tags=["Credit"])
def flag_creditor(
    creditor_id: str,
    request: FlagRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.credit.flag_creditor(creditor_id, request.reason).to_dict()


@app.delete("/creditors/{creditor_id}/flag", tags=["Credit"])
def unflag_creditor(
    creditor_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.credit.unflag_creditor(creditor_id).to_dict()


# ============================================================================
# Station reports
# ============================================================================

@app.get("/stations/{station_id}/aging", tags=["Reports"])
def get_aging_report(
    station_id: str,
    as_of: Optional[date] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.aging.aging_report(station_id, as_of).to_dict()


@app.get("/stations/{station_id}/overdue", tags=["Reports"])
def get_overdue_creditors(
    station_id: str,
    as_of: Optional[date] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    creditors = state.aging.overdue_creditors(station_id, as_of)
    return {"total": len(creditors), "creditors": [c.to_dict() for c in creditors]}


@app.get("/stations/{station_id}/drift", tags=["Reports"])
def get_balance_drift(
    station_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    drifted = state.credit.find_drift(station_id)
    return {"consistent": not drifted, "drift": [d.to_dict() for d in drifted]}


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
