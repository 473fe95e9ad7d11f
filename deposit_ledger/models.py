from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class Transaction(BaseModel):
    id: UUID
    created_at: datetime
    amount: Decimal
    method: str
    status: TransactionStatus = TransactionStatus.PENDING
    account: Optional[str] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING


class UserAccount(BaseModel):
    user_id: str
    balance: Decimal = Decimal("0")
    deposit_history: list[Transaction] = Field(default_factory=list)
    withdraw_history: list[Transaction] = Field(default_factory=list)
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    is_admin: bool = False
    created_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def history(self, transaction_type: TransactionType) -> list[Transaction]:
        if transaction_type == TransactionType.DEPOSIT:
            return self.deposit_history
        return self.withdraw_history

    def approved_total(self, transaction_type: TransactionType) -> Decimal:
        return sum(
            (t.amount for t in self.history(transaction_type) if t.status == TransactionStatus.APPROVED),
            Decimal("0"),
        )


class InvestmentPackage(BaseModel):
    id: int
    name: str
    min_amount: Decimal
    max_amount: Optional[Decimal] = None
    daily_roi_percentage: Decimal
    duration_days: int

    model_config = ConfigDict(from_attributes=True)


class RegisterUserRequest(BaseModel):
    user_id: str = Field(..., description="Unique user identifier, usually an email")
    referral_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "investor@example.com",
            "referral_code": "3F9A1C2B",
        }
    })


class DepositRequest(BaseModel):
    amount: Decimal
    method: str = ""

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 100, "method": "card"}
    })


class WithdrawalRequest(BaseModel):
    amount: Decimal
    method: str = ""
    account: str = Field(default="", description="Destination account for the payout")


class DecisionRequest(BaseModel):
    admin_id: str
    user_id: str
    transaction_id: str
    type: str = Field(..., description="deposit or withdrawal")
    amount: Optional[Decimal] = None


class AccountSummary(BaseModel):
    user_id: str
    balance: Decimal
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    created_at: datetime


class UserBalance(BaseModel):
    user_id: str
    balance: Decimal
    pending_deposits: int
    pending_withdrawals: int


class AccountHistoryResponse(BaseModel):
    user_id: str
    balance: Decimal
    deposits: list[Transaction]
    withdrawals: list[Transaction]


class TransactionResponse(BaseModel):
    user_id: str
    type: TransactionType
    transaction: Transaction
    balance: Decimal
    message: str


class DecisionResponse(BaseModel):
    user_id: str
    type: TransactionType
    transaction: Transaction
    balance: Decimal
    message: str


class PendingTransaction(BaseModel):
    user_id: str
    type: TransactionType
    transaction: Transaction


class PendingListResponse(BaseModel):
    items: list[PendingTransaction]
    total_count: int


class ReconciliationReport(BaseModel):
    user_id: str
    stored_balance: Decimal
    computed_balance: Decimal
    approved_deposits: Decimal
    approved_withdrawals: Decimal
    consistent: bool
