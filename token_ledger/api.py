import time
import uuid

import structlog
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rules.rule_engine import RuleEngine, TriggerEvent, create_default_engine

from .config import get_settings
from .errors import (
    AccountNotFoundError,
    AlreadyClaimedTodayError,
    IdempotencyConflictError,
    InvariantViolationError,
    LedgerServiceError,
    StorageUnavailableError,
    TransactionRejectedError,
)
from .logging import bind_user_id, configure_logging, get_logger
from .models import (
    Account,
    ActivityRequest,
    ProposeTransactionRequest,
    RecentTransactionsResponse,
    StakeRequest,
    TransactionResult,
)
from .service import LedgerService

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Token Ledger API",
    description="Loyalty token ledger with typed transactions, staking and daily rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(settings=settings)
rule_engine = create_default_engine(ledger_service)


def get_ledger_service() -> LedgerService:
    return ledger_service


def get_rule_engine() -> RuleEngine:
    return rule_engine


def error_status(exc: LedgerServiceError) -> int:
    if isinstance(exc, (AlreadyClaimedTodayError, IdempotencyConflictError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, TransactionRejectedError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, AccountNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, StorageUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, InvariantViolationError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    body = {"error": {"code": exc.code, "message": exc.message, "details": exc.details}}
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return JSONResponse(status_code=error_status(exc), content=body)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start = time.perf_counter()
    response = await call_next(request)
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.service_name}


@app.get("/users/{user_id}/account", response_model=Account, tags=["Accounts"])
def get_account(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> Account:
    bind_user_id(user_id)
    return service.get_account(user_id)


@app.post("/users/{user_id}/transactions", response_model=TransactionResult,
          status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def propose_transaction(
    user_id: str,
    request: ProposeTransactionRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResult:
    bind_user_id(user_id)
    return service.propose_transaction(
        user_id,
        request.transaction_type,
        request.amount,
        request.source,
        description=request.description,
        reference_id=request.reference_id,
        idempotency_key=request.idempotency_key,
    )


@app.get("/users/{user_id}/transactions", response_model=RecentTransactionsResponse, tags=["Transactions"])
def list_recent_transactions(
    user_id: str,
    limit: int = Query(20, ge=1, le=settings.max_page_size),
    service: LedgerService = Depends(get_ledger_service),
) -> RecentTransactionsResponse:
    bind_user_id(user_id)
    account = service.get_account(user_id)
    return RecentTransactionsResponse(
        user_id=user_id,
        transactions=list(service.list_recent_transactions(user_id, limit)),
        limit=limit,
        balance=account.balance,
    )


@app.post("/users/{user_id}/daily-reward", response_model=TransactionResult, tags=["Rewards"])
def claim_daily_reward(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> TransactionResult:
    bind_user_id(user_id)
    return service.claim_daily_reward(user_id)


@app.post("/users/{user_id}/stake", response_model=TransactionResult, tags=["Staking"])
def stake(user_id: str, request: StakeRequest, service: LedgerService = Depends(get_ledger_service)) -> TransactionResult:
    bind_user_id(user_id)
    return service.stake(user_id, request.amount)


@app.post("/users/{user_id}/unstake", response_model=TransactionResult, tags=["Staking"])
def unstake(user_id: str, request: StakeRequest, service: LedgerService = Depends(get_ledger_service)) -> TransactionResult:
    bind_user_id(user_id)
    return service.unstake(user_id, request.amount)


@app.post("/users/{user_id}/activities/{trigger}", tags=["Rules"])
def record_activity(
    user_id: str,
    trigger: TriggerEvent,
    request: ActivityRequest,
    engine: RuleEngine = Depends(get_rule_engine),
):
    bind_user_id(user_id)
    return {"trigger": trigger.value, "results": engine.execute(trigger, user_id, request.context)}


@app.get("/rules", tags=["Rules"])
def list_rules(engine: RuleEngine = Depends(get_rule_engine)):
    return {"rules": [rule.to_dict() for rule in engine.list_rules()]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
