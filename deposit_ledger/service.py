import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

from .authorization import AccountRolePolicy, AdminPolicy, AllowListPolicy, AnyOfPolicy
from .config import Settings
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidRequestError,
    InvalidTransactionTypeError,
    TransactionNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from .models import (
    AccountHistoryResponse,
    AccountSummary,
    DecisionResponse,
    InvestmentPackage,
    PendingListResponse,
    PendingTransaction,
    ReconciliationReport,
    Transaction,
    TransactionResponse,
    TransactionStatus,
    TransactionType,
    UserAccount,
    UserBalance,
)
from .storage import InMemoryStorage, SqlUserStore, UserStore

logger = logging.getLogger(__name__)

REFERRAL_CODE_ATTEMPTS = 5
LOCK_STRIPES = 64

# Amounts are minor-unit decimals that fit Numeric(18, 2)
AMOUNT_SCALE = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999999999.99")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_referral_code() -> str:
    return uuid4().hex[:8].upper()


class LedgerService:
    """Deposit/withdrawal ledger with administrator approval.

    Submissions are recorded as Pending and never touch the balance. The
    withdrawal balance check at submission is advisory only: funds are not
    reserved, and ``approve`` repeats the check against the balance at that
    moment. Only ``approve`` moves money, and only for Pending transactions,
    which makes repeated approvals no-ops.

    Mutations for one user are serialised by an in-process lock taken from a
    fixed pool of stripes keyed by user id, and every
    write is a compare-and-swap on the account version, so a concurrent
    writer elsewhere surfaces as ``ConflictError`` rather than a lost update.
    """

    def __init__(
        self,
        storage: Optional[UserStore] = None,
        admin_policy: Optional[AdminPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], UUID]] = None,
        referral_code_factory: Optional[Callable[[], str]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.admin_policy = admin_policy or AccountRolePolicy(self.storage)
        self._clock = clock or _utcnow
        self._id_factory = id_factory or uuid4
        self._referral_code_factory = referral_code_factory or _new_referral_code
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerService":
        if settings.storage_backend == "sql":
            storage = SqlUserStore.from_url(settings.database_url, echo=settings.database_echo)
        else:
            storage = InMemoryStorage()
        policy = AnyOfPolicy(AllowListPolicy(settings.admin_user_ids), AccountRolePolicy(storage))
        return cls(storage=storage, admin_policy=policy)

    # Accounts

    def register_user(
        self,
        user_id: str,
        referral_code: Optional[str] = None,
        is_admin: bool = False,
    ) -> AccountSummary:
        user_id = (user_id or "").strip()
        if not user_id:
            raise InvalidRequestError("user_id is required")

        referred_by = None
        if referral_code:
            referred_by = self.storage.find_user_by_referral_code(referral_code)
            if referred_by is None:
                raise InvalidRequestError(f"Unknown referral code {referral_code}")

        account = UserAccount(
            user_id=user_id,
            referral_code=self._unused_referral_code(),
            referred_by=referred_by,
            is_admin=is_admin,
            created_at=self._clock(),
        )
        account = self.storage.create_user(account)
        logger.info("Registered user %s (referred by %s)", user_id, referred_by)

        return AccountSummary(
            user_id=account.user_id,
            balance=account.balance,
            referral_code=account.referral_code,
            referred_by=account.referred_by,
            created_at=account.created_at,
        )

    def get_balance(self, user_id: str) -> UserBalance:
        account = self._load_account(user_id)
        return UserBalance(
            user_id=account.user_id,
            balance=account.balance,
            pending_deposits=sum(1 for t in account.deposit_history if t.is_pending()),
            pending_withdrawals=sum(1 for t in account.withdraw_history if t.is_pending()),
        )

    def get_history(self, user_id: str) -> AccountHistoryResponse:
        account = self._load_account(user_id)
        return AccountHistoryResponse(
            user_id=account.user_id,
            balance=account.balance,
            deposits=account.deposit_history,
            withdrawals=account.withdraw_history,
        )

    def list_packages(self) -> list[InvestmentPackage]:
        return self.storage.list_packages()

    # Submissions

    def submit_deposit(self, user_id: str, amount, method: str) -> TransactionResponse:
        amount = self._coerce_amount(amount)
        method = self._require_text(method, "method")

        with self._user_lock(user_id):
            account = self._load_account(user_id)
            transaction = self._new_transaction(amount, method)
            account.deposit_history.append(transaction)
            account = self.storage.save_user(account)

        logger.info("Deposit %s of %s submitted for %s", transaction.id, amount, user_id)
        return TransactionResponse(
            user_id=user_id,
            type=TransactionType.DEPOSIT,
            transaction=transaction,
            balance=account.balance,
            message="Deposit request submitted",
        )

    def submit_withdrawal(self, user_id: str, amount, method: str, account: str) -> TransactionResponse:
        amount = self._coerce_amount(amount)
        method = self._require_text(method, "method")
        destination = self._require_text(account, "account")

        with self._user_lock(user_id):
            user = self._load_account(user_id)
            # Advisory only: nothing is reserved, approve() re-checks
            if user.balance < amount:
                logger.warning(
                    "Withdrawal of %s refused for %s: balance %s", amount, user_id, user.balance
                )
                raise InsufficientBalanceError(
                    f"Insufficient balance: requested {amount}, available {user.balance}"
                )
            transaction = self._new_transaction(amount, method, account=destination)
            user.withdraw_history.append(transaction)
            user = self.storage.save_user(user)

        logger.info("Withdrawal %s of %s submitted for %s", transaction.id, amount, user_id)
        return TransactionResponse(
            user_id=user_id,
            type=TransactionType.WITHDRAWAL,
            transaction=transaction,
            balance=user.balance,
            message="Withdrawal request submitted",
        )

    # Administrator decisions

    def approve(
        self,
        admin_id: str,
        user_id: str,
        transaction_id: Union[UUID, str],
        transaction_type: Union[TransactionType, str],
        amount=None,
    ) -> DecisionResponse:
        self._require_admin(admin_id)
        transaction_type = self._coerce_type(transaction_type)
        transaction_id = self._coerce_transaction_id(transaction_id)

        with self._user_lock(user_id):
            account = self._load_account(user_id)
            transaction = self._find_pending(account, transaction_type, transaction_id)

            if amount is not None and self._coerce_amount(amount) != transaction.amount:
                raise InvalidRequestError(
                    f"Amount {amount} does not match transaction amount {transaction.amount}"
                )

            if transaction_type == TransactionType.DEPOSIT:
                new_balance = account.balance + transaction.amount
            else:
                if account.balance < transaction.amount:
                    logger.warning(
                        "Approval of withdrawal %s blocked for %s: balance %s < %s",
                        transaction_id, user_id, account.balance, transaction.amount,
                    )
                    raise InsufficientBalanceError(
                        f"Insufficient balance: withdrawal of {transaction.amount}, "
                        f"available {account.balance}"
                    )
                new_balance = account.balance - transaction.amount

            self._decide(transaction, TransactionStatus.APPROVED, admin_id)
            account.balance = new_balance
            account = self.storage.save_user(account)

        logger.info(
            "Admin %s approved %s %s for %s, balance now %s",
            admin_id, transaction_type.value, transaction_id, user_id, account.balance,
        )
        return DecisionResponse(
            user_id=user_id,
            type=transaction_type,
            transaction=transaction,
            balance=account.balance,
            message=f"{transaction_type.value.capitalize()} approved successfully",
        )

    def reject(
        self,
        admin_id: str,
        user_id: str,
        transaction_id: Union[UUID, str],
        transaction_type: Union[TransactionType, str],
    ) -> DecisionResponse:
        self._require_admin(admin_id)
        transaction_type = self._coerce_type(transaction_type)
        transaction_id = self._coerce_transaction_id(transaction_id)

        with self._user_lock(user_id):
            account = self._load_account(user_id)
            transaction = self._find_pending(account, transaction_type, transaction_id)
            self._decide(transaction, TransactionStatus.REJECTED, admin_id)
            account = self.storage.save_user(account)

        logger.info(
            "Admin %s rejected %s %s for %s", admin_id, transaction_type.value, transaction_id, user_id
        )
        return DecisionResponse(
            user_id=user_id,
            type=transaction_type,
            transaction=transaction,
            balance=account.balance,
            message=f"{transaction_type.value.capitalize()} rejected",
        )

    def list_pending(self, admin_id: str) -> PendingListResponse:
        self._require_admin(admin_id)

        items = []
        for account in self.storage.list_users():
            for transaction_type in TransactionType:
                items.extend(
                    PendingTransaction(user_id=account.user_id, type=transaction_type, transaction=t)
                    for t in account.history(transaction_type)
                    if t.is_pending()
                )
        items.sort(key=lambda item: item.transaction.created_at)

        return PendingListResponse(items=items, total_count=len(items))

    def reconcile(self, admin_id: str, user_id: str) -> ReconciliationReport:
        self._require_admin(admin_id)
        account = self._load_account(user_id)

        deposits = account.approved_total(TransactionType.DEPOSIT)
        withdrawals = account.approved_total(TransactionType.WITHDRAWAL)
        computed = deposits - withdrawals
        consistent = computed == account.balance and account.balance >= 0
        if not consistent:
            logger.error(
                "Ledger mismatch for %s: stored %s, computed %s", user_id, account.balance, computed
            )

        return ReconciliationReport(
            user_id=user_id,
            stored_balance=account.balance,
            computed_balance=computed,
            approved_deposits=deposits,
            approved_withdrawals=withdrawals,
            consistent=consistent,
        )

    # Helpers

    def _user_lock(self, user_id: str) -> threading.Lock:
        return self._locks[hash(user_id) % len(self._locks)]

    def _require_admin(self, admin_id: str) -> None:
        if not admin_id or not self.admin_policy.is_administrator(admin_id):
            logger.warning("Rejected administrative call from %r", admin_id)
            raise UnauthorizedError("Administrator privileges required")

    def _load_account(self, user_id: str) -> UserAccount:
        account = self.storage.get_user(user_id) if user_id else None
        if account is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return account

    def _new_transaction(self, amount: Decimal, method: str, account: Optional[str] = None) -> Transaction:
        return Transaction(
            id=self._id_factory(),
            created_at=self._clock(),
            amount=amount,
            method=method,
            status=TransactionStatus.PENDING,
            account=account,
        )

    def _decide(self, transaction: Transaction, status: TransactionStatus, admin_id: str) -> None:
        transaction.status = status
        transaction.decided_at = self._clock()
        transaction.decided_by = admin_id

    def _unused_referral_code(self) -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = self._referral_code_factory()
            if self.storage.find_user_by_referral_code(code) is None:
                return code
        raise ConflictError("Could not allocate a unique referral code")

    @staticmethod
    def _find_pending(account: UserAccount, transaction_type: TransactionType, transaction_id: UUID) -> Transaction:
        for transaction in account.history(transaction_type):
            if transaction.id == transaction_id and transaction.is_pending():
                return transaction
        raise TransactionNotFoundError(
            f"No pending {transaction_type.value} {transaction_id} for user {account.user_id}"
        )

    @staticmethod
    def _coerce_amount(value) -> Decimal:
        if isinstance(value, bool) or value is None:
            raise InvalidRequestError("amount must be a positive number")
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidRequestError(f"amount must be a positive number, got {value!r}")
        if not amount.is_finite() or amount <= 0:
            raise InvalidRequestError(f"amount must be a positive number, got {value!r}")
        if amount > MAX_AMOUNT:
            raise InvalidRequestError(f"amount must not exceed {MAX_AMOUNT}, got {value!r}")
        quantized = amount.quantize(AMOUNT_SCALE)
        if quantized != amount:
            raise InvalidRequestError(f"amount must have at most 2 decimal places, got {value!r}")
        return quantized

    @staticmethod
    def _require_text(value: Optional[str], field: str) -> str:
        value = (value or "").strip()
        if not value:
            raise InvalidRequestError(f"{field} is required")
        return value

    @staticmethod
    def _coerce_type(value: Union[TransactionType, str]) -> TransactionType:
        try:
            return TransactionType(value)
        except ValueError:
            raise InvalidTransactionTypeError(f"Unknown transaction type {value!r}")

    @staticmethod
    def _coerce_transaction_id(value: Union[UUID, str]) -> UUID:
        if isinstance(value, UUID):
            return value
        try:
            return UUID(str(value))
        except ValueError:
            raise TransactionNotFoundError(f"Transaction {value} not found")
