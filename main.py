from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import structlog
import time
from contextlib import asynccontextmanager

from models import (
    AccountResponse,
    ErrorResponse,
    HealthResponse,
    TransferRequest,
    TransferResponse,
)
from exceptions import (
    AccountNotFound,
    InsufficientFunds,
    InvalidTransferError,
    LockTimeoutError,
    OptimisticConflictError,
    RetryExhaustedError,
    TransferError,
)
from services import TransferService, get_transfer_service
from repositories import get_account_repository
from config import get_settings
from logging_config import configure_logging

settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

ERROR_STATUS_CODES = {
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    InsufficientFunds: status.HTTP_400_BAD_REQUEST,
    InvalidTransferError: status.HTTP_400_BAD_REQUEST,
    OptimisticConflictError: status.HTTP_409_CONFLICT,
    RetryExhaustedError: status.HTTP_409_CONFLICT,
    LockTimeoutError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

# Rate limiting
limiter = Limiter(key_func=get_remote_address)

# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Transfer API", default_strategy=settings.default_strategy.value)
    yield
    # Shutdown
    logger.info("Shutting down Transfer API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Account transfers under unsafe, optimistic and pessimistic concurrency control",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(account_repo=Depends(get_account_repository)) -> TransferService:
    return get_transfer_service(account_repo, settings)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger totals"
)
async def health_check(account_repo=Depends(get_account_repository)):
    try:
        accounts_count = await account_repo.get_accounts_count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            total_balance=account_repo.total_balance(),
            default_strategy=settings.default_strategy
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

@app.get(
    "/accounts/{account_id}",
    response_model=AccountResponse,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(account_id: str, account_repo=Depends(get_account_repository)):
    account = await account_repo.get(account_id)
    if account is None:
        raise AccountNotFound(account_id)
    return AccountResponse(accountId=account.id, balance=account.balance, version=account.version)

# Main transfer endpoint
@app.post(
    "/transfers",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Transfer Funds",
    description="Move funds between two accounts using the requested concurrency strategy",
    responses={
        201: {"description": "Transfer committed"},
        400: {"description": "Insufficient funds or invalid transfer"},
        404: {"description": "Account not found"},
        409: {"description": "Concurrent modification, retry later"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Account lock not acquired in time"}
    }
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_transfer(
    request: Request,
    transfer_request: TransferRequest,
    service: TransferService = Depends(get_service)
):
    logger.info(
        "Transfer request received",
        from_account_id=transfer_request.fromAccountId,
        to_account_id=transfer_request.toAccountId,
        strategy=transfer_request.strategy.value
    )

    if not settings.min_transfer_amount <= transfer_request.amount <= settings.max_transfer_amount:
        raise InvalidTransferError(
            f"amount must be between {settings.min_transfer_amount} and {settings.max_transfer_amount}"
        )

    result = await service.transfer(
        transfer_request.fromAccountId,
        transfer_request.toAccountId,
        transfer_request.amount,
        transfer_request.strategy
    )

    return TransferResponse.from_result(result)

# Global exception handlers
@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    status_code = ERROR_STATUS_CODES.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            detail=str(exc),
            error_code=exc.error_code
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
