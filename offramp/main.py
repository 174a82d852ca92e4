from fastapi import FastAPI, APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from shared.utils import (
    get_db_client, get_settings, Settings, SuccessResponse,
    NotFoundException, HealthResponse,
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from offramp.fanout import NotificationFanout, transaction_created
from offramp.initiator import PaymentInitiator, resolve_token_amount
from offramp.models import ExchangeRate, Transaction
from offramp.provider import OnmetaClient
from offramp.rates import InMemoryRateStore, MongoRateStore, RateStore, token_amount_for
from offramp.reconciler import WebhookReconciler
from offramp.schemas import (
    InitiatePaymentRequest, InitiatePaymentResponse, QuoteResponse,
    RateUpsert, TransactionCreate, WebhookAck, WebhookPayload,
)
from offramp.store import InMemoryTransactionStore, MongoTransactionStore, TransactionStore

# Setup Logging
logger = setup_logging(get_settings().SERVICE_NAME)

router = APIRouter()

# --- Dependencies ---
def get_transaction_store(request: Request) -> TransactionStore:
    return request.app.state.transaction_store

def get_rate_store(request: Request) -> RateStore:
    return request.app.state.rate_store

def get_fanout(request: Request) -> NotificationFanout:
    return request.app.state.fanout

def get_initiator(request: Request) -> PaymentInitiator:
    return request.app.state.initiator

def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler

def request_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)

# --- Exchange rates ---

@router.get("/api/exchange-rate/{from_currency}/{to_currency}", response_model=ExchangeRate)
async def get_exchange_rate(from_currency: str, to_currency: str, rates: RateStore = Depends(get_rate_store)):
    return await rates.get(from_currency, to_currency)

@router.put("/api/exchange-rate/{from_currency}/{to_currency}", response_model=ExchangeRate)
@limiter.limit("30/minute")
async def upsert_exchange_rate(
    from_currency: str,
    to_currency: str,
    body: RateUpsert,
    request: Request,
    rates: RateStore = Depends(get_rate_store),
):
    rate = await rates.upsert(from_currency, to_currency, body.rate)
    logger.info(f"Exchange rate {rate.from_currency}/{rate.to_currency} set to {rate.rate}")
    return rate

@router.get("/api/quote", response_model=QuoteResponse)
async def get_quote(
    fiat_amount: Decimal = Query(..., gt=0),
    from_currency: str = Query("usdt", alias="from"),
    to_currency: str = Query("inr", alias="to"),
    rates: RateStore = Depends(get_rate_store),
):
    rate = await rates.get(from_currency, to_currency)
    return QuoteResponse(
        from_currency=rate.from_currency,
        to_currency=rate.to_currency,
        rate=rate.rate,
        fiat_amount=fiat_amount,
        token_amount=token_amount_for(fiat_amount, rate.rate),
    )

# --- Transactions ---

@router.post("/api/transactions", response_model=Transaction)
@limiter.limit("60/minute")
async def create_transaction(
    draft: TransactionCreate,
    request: Request,
    store: TransactionStore = Depends(get_transaction_store),
    fanout: NotificationFanout = Depends(get_fanout),
):
    transaction = await store.create(draft)
    logger.info("Transaction created", extra={
        "transaction_id": transaction.id,
        "merchant_tx_id": transaction.merchant_tx_id,
        "request_id": request_id_of(request),
    })
    await fanout.publish(transaction_created(transaction))
    return transaction

@router.get("/api/transactions", response_model=List[Transaction])
async def list_transactions(
    limit: int = Query(10, ge=1, le=100),
    store: TransactionStore = Depends(get_transaction_store),
):
    return await store.list_recent(limit)

@router.get("/api/transactions/{transaction_id}", response_model=Transaction)
async def get_transaction(transaction_id: int, store: TransactionStore = Depends(get_transaction_store)):
    return await store.get_by_id(transaction_id)

@router.post("/api/transactions/{transaction_id}/refresh", response_model=SuccessResponse[WebhookAck])
@limiter.limit("30/minute")
async def refresh_transaction(
    transaction_id: int,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    outcome = await reconciler.refresh_from_provider(transaction_id, request_id=request_id_of(request))
    return SuccessResponse(
        data=WebhookAck(applied=outcome.applied, transaction=outcome.transaction),
        message=outcome.reason,
    )

# --- Payments ---

@router.post("/api/initiate-payment", response_model=InitiatePaymentResponse)
@limiter.limit("30/minute")
async def initiate_payment(
    payment_request: InitiatePaymentRequest,
    request: Request,
    initiator: PaymentInitiator = Depends(get_initiator),
):
    token_symbol, token_amount = resolve_token_amount(
        payment_request.usdt_amount, payment_request.matic_amount
    )
    return await initiator.initiate(
        merchant_tx_id=payment_request.merchant_tx_id,
        upi_id=payment_request.upi_id,
        inr_amount=payment_request.inr_amount,
        token_amount=token_amount,
        token_symbol=token_symbol,
        wallet_address=payment_request.wallet_address,
        request_id=request_id_of(request),
    )

@router.post("/api/onmeta-webhook", response_model=SuccessResponse[WebhookAck])
@limiter.limit("300/minute")
async def onmeta_webhook(
    payload: WebhookPayload,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    outcome = await reconciler.handle_webhook(payload)
    return SuccessResponse(
        data=WebhookAck(applied=outcome.applied, transaction=outcome.transaction),
        message=outcome.reason,
    )

# --- Real-time channel ---

@router.websocket("/ws")
async def transaction_events(websocket: WebSocket):
    fanout: NotificationFanout = websocket.app.state.fanout
    await websocket.accept()
    fanout.subscribe(websocket)
    try:
        # No client messages are defined; keep reading until the socket closes
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        fanout.unsubscribe(websocket)

@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    settings: Settings = request.app.state.settings
    database = await request.app.state.transaction_store.ping()
    overall_status = "unhealthy" if database == "disconnected" else "healthy"
    return HealthResponse(
        service=settings.SERVICE_NAME,
        status=overall_status,
        timestamp=datetime.utcnow(),
        version=settings.VERSION,
        database=database,
        dependencies={
            "onmeta": settings.ONMETA_API_URL,
            "websocket_subscribers": request.app.state.fanout.subscriber_count,
        }
    )

# --- Application ---

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request data", "errors": jsonable_encoder(exc.errors())},
    )

def create_app(
    settings: Optional[Settings] = None,
    transaction_store: Optional[TransactionStore] = None,
    rate_store: Optional[RateStore] = None,
    provider: Optional[OnmetaClient] = None,
    fanout: Optional[NotificationFanout] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="UPI Crypto Off-ramp Service", version=settings.VERSION)
    app.state.settings = settings

    mongodb_client = None
    if settings.STORE_BACKEND == "mongo" and (transaction_store is None or rate_store is None):
        mongodb_client = get_db_client(settings.MONGO_URL)
        database = mongodb_client[settings.MONGO_DB_NAME]
        transaction_store = transaction_store or MongoTransactionStore(database)
        rate_store = rate_store or MongoRateStore(database)

    app.state.transaction_store = transaction_store or InMemoryTransactionStore()
    app.state.rate_store = rate_store or InMemoryRateStore()
    app.state.fanout = fanout or NotificationFanout(send_timeout=settings.BROADCAST_SEND_TIMEOUT)
    provider = provider or OnmetaClient(
        base_url=settings.ONMETA_API_URL,
        api_key=settings.ONMETA_API_KEY,
        timeout=settings.ONMETA_TIMEOUT_SECONDS,
        forwarded_for=settings.FORWARDED_FOR,
    )
    app.state.initiator = PaymentInitiator(
        app.state.transaction_store, provider, app.state.fanout, settings
    )
    app.state.reconciler = WebhookReconciler(app.state.transaction_store, app.state.fanout, provider)

    # Security Setup
    setup_rate_limiting(app)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Middleware
    app.add_middleware(RequestLoggingMiddleware, service_name=settings.SERVICE_NAME)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        await app.state.transaction_store.startup()
        await app.state.rate_store.startup()
        try:
            await app.state.rate_store.get("usdt", "inr")
        except NotFoundException:
            await app.state.rate_store.upsert("usdt", "inr", settings.USDT_INR_SEED_RATE)
        logger.info(f"{settings.SERVICE_NAME} started", extra={"target": settings.STORE_BACKEND})

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.transaction_store.shutdown()
        if mongodb_client is not None:
            mongodb_client.close()

    return app

app = create_app()
