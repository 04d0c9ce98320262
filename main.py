from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import structlog
import time
from contextlib import asynccontextmanager

from models import UserPoint, PointHistory, PointAmountRequest, ErrorResponse, HealthResponse
from services import PointService, get_point_service
from repositories import get_balance_repository, get_history_repository
from results import Err, FailureKind, PointResult
from config import get_settings

settings = get_settings()


def configure_logging(log_level: str, log_format: str) -> None:
    """Configure structlog on top of the stdlib logging module."""
    logging.basicConfig(format="%(message)s", level=log_level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def mutation_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


FAILURE_STATUS = {
    FailureKind.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    FailureKind.INSUFFICIENT_BALANCE: status.HTTP_400_BAD_REQUEST,
    FailureKind.BALANCE_LIMIT_EXCEEDED: status.HTTP_400_BAD_REQUEST,
    FailureKind.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureKind.NO_HISTORY_FOUND: status.HTTP_404_NOT_FOUND,
    FailureKind.STORAGE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureKind.LOCK_TIMEOUT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class PointHTTPException(HTTPException):
    """HTTP error carrying the failure kind that produced it."""

    def __init__(self, status_code: int, detail: str, error_code: str):
        super().__init__(status_code=status_code, detail=detail)
        self.error_code = error_code


def unwrap_or_raise(result: PointResult):
    if isinstance(result, Err):
        raise PointHTTPException(
            status_code=FAILURE_STATUS[result.kind],
            detail=result.failure.message,
            error_code=result.kind.value
        )
    return result.value


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Point Ledger API", max_balance=settings.max_balance)
    yield
    # Shutdown
    logger.info("Shutting down Point Ledger API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Per-account point balances with serialized charge/use and an append-only history",
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

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get system statistics"
)
async def health_check(
    balance_repo=Depends(get_balance_repository),
    history_repo=Depends(get_history_repository)
):
    try:
        accounts_count = await balance_repo.get_accounts_count()
        history_entries = await history_repo.get_entries_count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            history_entries=history_entries
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

@app.get(
    "/point/{account_id}",
    response_model=UserPoint,
    summary="Get Balance",
    responses={404: {"description": "Account not found"}}
)
async def get_point(account_id: int, service: PointService = Depends(get_point_service)):
    return unwrap_or_raise(await service.get_balance(account_id))

@app.get(
    "/point/{account_id}/histories",
    response_model=List[PointHistory],
    summary="Get History",
    responses={404: {"description": "No history recorded"}}
)
async def get_point_histories(account_id: int, service: PointService = Depends(get_point_service)):
    return unwrap_or_raise(await service.get_history(account_id))

@app.patch(
    "/point/{account_id}/charge",
    response_model=UserPoint,
    summary="Charge Points",
    responses={
        200: {"description": "Points charged"},
        400: {"description": "Invalid amount or balance limit exceeded"},
        404: {"description": "Account not found"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Account lock timed out"}
    }
)
@limiter.limit(mutation_rate_limit)
async def charge_point(
    request: Request,
    account_id: int,
    amount_request: PointAmountRequest,
    service: PointService = Depends(get_point_service)
):
    logger.info("Charge request received", account_id=account_id, amount=amount_request.amount)
    return unwrap_or_raise(await service.charge(account_id, amount_request.amount))

@app.patch(
    "/point/{account_id}/use",
    response_model=UserPoint,
    summary="Use Points",
    responses={
        200: {"description": "Points used"},
        400: {"description": "Invalid amount or insufficient balance"},
        404: {"description": "Account not found"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Account lock timed out"}
    }
)
@limiter.limit(mutation_rate_limit)
async def use_point(
    request: Request,
    account_id: int,
    amount_request: PointAmountRequest,
    service: PointService = Depends(get_point_service)
):
    logger.info("Use request received", account_id=account_id, amount=amount_request.amount)
    return unwrap_or_raise(await service.use(account_id, amount_request.amount))

# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error("Request failed", status_code=exc.status_code, detail=exc.detail, url=str(request.url))
    else:
        logger.warning("Request rejected", status_code=exc.status_code, detail=exc.detail, url=str(request.url))

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=getattr(exc, "error_code", f"HTTP_{exc.status_code}")
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    # The account lock is already released; the mutation may be partially applied
    logger.error(
        "Unhandled exception in point ledger",
        error=str(exc),
        error_type=type(exc).__name__,
        account_id=request.path_params.get("account_id"),
        method=request.method,
        url=str(request.url),
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Point ledger failed to process the request",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {
        "message": settings.app_name,
        "docs": "/docs",
        "max_balance": settings.max_balance,
        "operations": {
            "balance": "GET /point/{account_id}",
            "history": "GET /point/{account_id}/histories",
            "charge": "PATCH /point/{account_id}/charge",
            "use": "PATCH /point/{account_id}/use",
        },
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
