"""HTTP API for statement uploads, bank notifications and matching."""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from . import __version__
from .auth import check_api_key, limiter, optional_security, verify_api_key
from .config import get_settings
from .database import StatementStatus, close_db, get_db, init_db
from .errors import InvalidStateTransition, NotFoundError
from .services import IngestResult, NotificationStats, ReconciliationService, StatementResult
from .workers import NotificationWorkerPool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    session_factory = await init_db(settings.database_url)
    pool = NotificationWorkerPool(
        session_factory,
        max_workers=settings.notification_workers,
        queue_size=settings.notification_queue_size,
    )
    await pool.start()
    app.state.worker_pool = pool
    try:
        yield
    finally:
        await pool.shutdown()
        await close_db()


app = FastAPI(title="Fee Reconciliation API", version=__version__, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateTransition)
async def invalid_state_handler(request: Request, exc: InvalidStateTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _webhook_rate_limit() -> str:
    return get_settings().webhook_rate_limit


def detect_webhook_source(user_agent: Optional[str], declared: Optional[str] = None) -> str:
    """Name the forwarding pipeline that delivered a notification."""
    if declared and declared.strip():
        return declared.strip().upper()
    agent = (user_agent or "").lower()
    if "zapier" in agent:
        return "ZAPIER"
    if "make" in agent or "integromat" in agent:
        return "MAKE_COM"
    if "google-apps-script" in agent or "googleappsscript" in agent:
        return "GMAIL_SCRIPT"
    return "EMAIL_FORWARD"


def get_service(request: Request, db: AsyncSession = Depends(get_db)) -> ReconciliationService:
    pool = getattr(request.app.state, "worker_pool", None)
    return ReconciliationService(db, dispatcher=pool)


# Request and response models

class NotificationWebhookBody(BaseModel):
    """Email forwarded by Zapier, Make.com, a Gmail script or a mail rule."""
    email_id: Optional[str] = Field(default=None, description="Forwarder's message id")
    received_at: Optional[datetime] = Field(default=None, description="When the email arrived")
    sender: Optional[str] = Field(default=None, description="Sender address")
    subject: Optional[str] = Field(default=None, description="Email subject")
    body: Optional[str] = Field(default=None, description="Plain-text email body")
    api_key: Optional[str] = Field(default=None, description="API key, when headers cannot be set")
    recipient: Optional[str] = Field(default=None, description="Recipient address")
    source: Optional[str] = Field(default=None, description="Forwarding pipeline name")


class NotificationAcceptedResponse(BaseModel):
    status: str = "accepted"
    message: str = "Notification queued for processing"
    email_id: str = "unknown"
    notification_id: str


class ManualMatchBody(BaseModel):
    payer_id: str = Field(..., description="Payer to credit")
    month: int = Field(..., ge=1, le=12, description="Billing month")
    year: int = Field(..., ge=2000, le=2100, description="Billing year")


class TransactionResponse(BaseModel):
    id: str
    bank_reference: str
    amount: Decimal
    transaction_date: date
    reference: Optional[str] = None
    description: str
    balance: Optional[Decimal] = None
    sender_name: Optional[str] = None
    source_kind: str
    status: str
    manually_matched: bool
    match_notes: Optional[str] = None
    statement_id: Optional[str] = None
    payer_id: Optional[str] = None
    payment_id: Optional[str] = None
    matched_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: str
    payer_id: str
    period_month: int
    period_year: int
    amount_paid: Decimal
    expected_amount: Decimal
    status: str
    source_transaction_id: Optional[str] = None
    matched_automatically: bool
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class CountResponse(BaseModel):
    count: int


# Webhook

webhook_router = APIRouter(prefix="/webhook", tags=["webhook"])


@webhook_router.post("/notifications", status_code=202, response_model=NotificationAcceptedResponse)
@limiter.limit(_webhook_rate_limit)
async def receive_notification(
    request: Request,
    body: NotificationWebhookBody,
    x_api_key: Optional[str] = Header(default=None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    service: ReconciliationService = Depends(get_service),
):
    """
    Accept a forwarded bank-alert email.

    The notification is queued and processed in the background; the response
    only confirms acceptance. The API key may be sent as a bearer token, in
    the X-API-Key header or in the body.
    """
    presented = x_api_key or (credentials.credentials if credentials else None) or body.api_key
    check_api_key(presented)

    source = detect_webhook_source(request.headers.get("user-agent"), body.source)
    result: IngestResult = await service.ingest_notification(
        raw_body=body.body,
        subject=body.subject,
        sender=body.sender,
        source=source,
    )
    if not result.accepted:
        raise HTTPException(status_code=400, detail=result.reason)

    return NotificationAcceptedResponse(
        email_id=body.email_id or "unknown",
        notification_id=result.notification_id,
    )


@webhook_router.get("/stats", response_model=NotificationStats)
async def notification_stats(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.stats()


@webhook_router.post("/retry-failed", response_model=CountResponse)
async def retry_failed_notifications(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Reprocess every FAILED notification from its stored payload."""
    return CountResponse(count=await service.retry_failed())


# Statements

statements_router = APIRouter(prefix="/statements", tags=["statements"])


@statements_router.post("/upload", response_model=StatementResult)
async def upload_statement(
    file: UploadFile = File(...),
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Upload a CSV, Markdown or PDF statement.

    The statement is parsed, stored and matched before the response is sent.
    A statement that cannot be read comes back with status "failed" and a 400.
    """
    data = await file.read()
    result = await service.ingest_statement(data, file.filename or "")
    if result.status == StatementStatus.FAILED.value:
        return JSONResponse(status_code=400, content=result.model_dump())
    return result


@statements_router.get("", response_model=List[StatementResult])
async def list_statements(
    limit: int = 50,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.list_statements(limit)


@statements_router.get("/{statement_id}", response_model=StatementResult)
async def get_statement(
    statement_id: str,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.get_statement(statement_id)


# Transactions

transactions_router = APIRouter(prefix="/transactions", tags=["transactions"])


@transactions_router.get("/unmatched", response_model=List[TransactionResponse])
async def list_unmatched(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return [TransactionResponse.model_validate(t) for t in await service.get_unmatched()]


@transactions_router.post("/match-all", response_model=CountResponse)
async def match_all(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Run the matching strategies over every unmatched transaction."""
    return CountResponse(count=await service.match_all())


@transactions_router.post("/{transaction_id}/match", response_model=PaymentResponse)
async def manually_match(
    transaction_id: str,
    body: ManualMatchBody,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Attribute a transaction to a payer and billing period by hand."""
    payment = await service.manually_match(transaction_id, body.payer_id, body.month, body.year)
    return PaymentResponse.model_validate(payment)


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


app.include_router(webhook_router)
app.include_router(statements_router)
app.include_router(transactions_router)
