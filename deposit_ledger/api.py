import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidRequestError,
    InvalidTransactionTypeError,
    LedgerServiceError,
    StorageFailureError,
    TransactionNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from .models import (
    AccountHistoryResponse,
    AccountSummary,
    DecisionRequest,
    DecisionResponse,
    DepositRequest,
    InvestmentPackage,
    PendingListResponse,
    ReconciliationReport,
    RegisterUserRequest,
    TransactionResponse,
    UserBalance,
    WithdrawalRequest,
)
from .service import LedgerService

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    UserNotFoundError: status.HTTP_404_NOT_FOUND,
    TransactionNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidRequestError: status.HTTP_400_BAD_REQUEST,
    InvalidTransactionTypeError: status.HTTP_400_BAD_REQUEST,
    InsufficientBalanceError: status.HTTP_400_BAD_REQUEST,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    ConflictError: status.HTTP_409_CONFLICT,
}

router = APIRouter()


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "deposit-ledger"}


@router.get("/packages", response_model=list[InvestmentPackage], tags=["Packages"])
def list_packages(service: LedgerService = Depends(get_ledger_service)) -> list[InvestmentPackage]:
    return service.list_packages()


@router.post("/users", response_model=AccountSummary, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(
    request: RegisterUserRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountSummary:
    return service.register_user(request.user_id, request.referral_code)


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> UserBalance:
    return service.get_balance(user_id)


@router.get("/users/{user_id}/transactions", response_model=AccountHistoryResponse, tags=["Users"])
def get_user_transactions(
    user_id: str,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountHistoryResponse:
    return service.get_history(user_id)


@router.post(
    "/users/{user_id}/deposits",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def submit_deposit(
    user_id: str,
    request: DepositRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return service.submit_deposit(user_id, request.amount, request.method)


@router.post(
    "/users/{user_id}/withdrawals",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def submit_withdrawal(
    user_id: str,
    request: WithdrawalRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return service.submit_withdrawal(user_id, request.amount, request.method, request.account)


@router.get("/admin/transactions/pending", response_model=PendingListResponse, tags=["Admin"])
def list_pending_transactions(
    admin_id: str = "",
    service: LedgerService = Depends(get_ledger_service),
) -> PendingListResponse:
    return service.list_pending(admin_id)


@router.post("/admin/transactions/approve", response_model=DecisionResponse, tags=["Admin"])
def approve_transaction(
    request: DecisionRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> DecisionResponse:
    return service.approve(
        request.admin_id, request.user_id, request.transaction_id, request.type, request.amount
    )


@router.post("/admin/transactions/reject", response_model=DecisionResponse, tags=["Admin"])
def reject_transaction(
    request: DecisionRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> DecisionResponse:
    return service.reject(request.admin_id, request.user_id, request.transaction_id, request.type)


@router.get("/admin/users/{user_id}/reconcile", response_model=ReconciliationReport, tags=["Admin"])
def reconcile_user(
    user_id: str,
    admin_id: str = "",
    service: LedgerService = Depends(get_ledger_service),
) -> ReconciliationReport:
    return service.reconcile(admin_id, user_id)


async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def storage_error_handler(request: Request, exc: StorageFailureError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable"},
    )


def create_app(
    service: Optional[LedgerService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=settings.project_name,
        description="Deposit and withdrawal ledger with administrator approval",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.add_exception_handler(StorageFailureError, storage_error_handler)
    app.state.ledger_service = service or LedgerService.from_settings(settings)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
