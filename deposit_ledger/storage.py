import logging
import threading
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import JSON, Integer, Numeric, String, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from .exceptions import ConflictError, StorageFailureError, UserNotFoundError
from .models import InvestmentPackage, UserAccount

logger = logging.getLogger(__name__)


DEFAULT_PACKAGES = [
    {
        "id": 1, "name": "Starter", "min_amount": Decimal("50.00"),
        "max_amount": Decimal("499.99"), "daily_roi_percentage": Decimal("1.50"),
        "duration_days": 30,
    },
    {
        "id": 2, "name": "Silver", "min_amount": Decimal("500.00"),
        "max_amount": Decimal("4999.99"), "daily_roi_percentage": Decimal("2.00"),
        "duration_days": 60,
    },
    {
        "id": 3, "name": "Gold", "min_amount": Decimal("5000.00"),
        "max_amount": None, "daily_roi_percentage": Decimal("2.75"),
        "duration_days": 90,
    },
]


class UserStore(Protocol):
    """Persistence boundary for user accounts.

    Every method hands out copies, so a caller mutating a returned account
    changes nothing until it passes the account back to ``save_user``.
    ``save_user`` is a compare-and-swap on ``UserAccount.version``.
    """

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def create_user(self, account: UserAccount) -> UserAccount: ...

    def save_user(self, account: UserAccount) -> UserAccount: ...

    def find_user_by_referral_code(self, code: str) -> Optional[str]: ...

    def list_users(self) -> list[UserAccount]: ...

    def list_packages(self) -> list[InvestmentPackage]: ...


class InMemoryStorage:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self.referral_index: dict[str, str] = {}
        self.packages: dict[int, dict] = {}
        self._lock = threading.Lock()
        self._seed_data()

    def _seed_data(self):
        for package in DEFAULT_PACKAGES:
            self.packages[package["id"]] = dict(package)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._lock:
            user_data = self.users.get(user_id)
            if user_data is None:
                return None
            return UserAccount.model_validate(user_data)

    def create_user(self, account: UserAccount) -> UserAccount:
        with self._lock:
            if account.user_id in self.users:
                raise ConflictError(f"User {account.user_id} already exists")
            if account.referral_code and account.referral_code in self.referral_index:
                raise ConflictError(f"Referral code {account.referral_code} already in use")
            stored = account.model_copy(update={"version": 1}, deep=True)
            self.users[account.user_id] = stored.model_dump()
            if account.referral_code:
                self.referral_index[account.referral_code] = account.user_id
            return stored.model_copy(deep=True)

    def save_user(self, account: UserAccount) -> UserAccount:
        with self._lock:
            current = self.users.get(account.user_id)
            if current is None:
                raise UserNotFoundError(f"User {account.user_id} not found")
            if current["version"] != account.version:
                raise ConflictError(
                    f"User {account.user_id} was modified concurrently "
                    f"(expected version {account.version}, found {current['version']})"
                )
            stored = account.model_copy(update={"version": account.version + 1}, deep=True)
            self.users[account.user_id] = stored.model_dump()
            return stored.model_copy(deep=True)

    def find_user_by_referral_code(self, code: str) -> Optional[str]:
        with self._lock:
            return self.referral_index.get(code)

    def list_users(self) -> list[UserAccount]:
        with self._lock:
            return [UserAccount.model_validate(u) for u in self.users.values()]

    def list_packages(self) -> list[InvestmentPackage]:
        return [InvestmentPackage(**p) for p in sorted(self.packages.values(), key=lambda p: p["id"])]


class Base(DeclarativeBase):
    pass


class UserRecord(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    referral_code: Mapped[Optional[str]] = mapped_column(String(32), unique=True, index=True, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Account document without the version, which lives in its own column
    document: Mapped[dict] = mapped_column(JSON, nullable=False)


class PackageRecord(Base):
    __tablename__ = "investment_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    max_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    daily_roi_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)


def create_sql_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlUserStore:
    """Relational adapter keeping each account as a JSON document with a version column."""

    def __init__(self, engine: Engine, seed_packages: bool = True):
        self.engine = engine
        try:
            Base.metadata.create_all(engine)
            if seed_packages:
                self._seed_packages()
        except SQLAlchemyError as exc:
            logger.error("Failed to initialise SQL store: %s", exc)
            raise StorageFailureError("Could not initialise the user store") from exc

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlUserStore":
        return cls(create_sql_engine(database_url, echo=echo))

    def _seed_packages(self):
        with Session(self.engine) as session, session.begin():
            if session.execute(select(PackageRecord.id).limit(1)).first() is not None:
                return
            session.add_all(PackageRecord(**p) for p in DEFAULT_PACKAGES)

    @staticmethod
    def _to_account(record: UserRecord) -> UserAccount:
        return UserAccount.model_validate({**record.document, "version": record.version})

    @staticmethod
    def _to_document(account: UserAccount) -> dict:
        return account.model_dump(mode="json", exclude={"version"})

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        try:
            with Session(self.engine) as session:
                record = session.get(UserRecord, user_id)
                return self._to_account(record) if record else None
        except SQLAlchemyError as exc:
            logger.error("Failed to load user %s: %s", user_id, exc)
            raise StorageFailureError(f"Could not load user {user_id}") from exc

    def create_user(self, account: UserAccount) -> UserAccount:
        try:
            with Session(self.engine) as session, session.begin():
                if session.get(UserRecord, account.user_id) is not None:
                    raise ConflictError(f"User {account.user_id} already exists")
                session.add(UserRecord(
                    user_id=account.user_id,
                    referral_code=account.referral_code,
                    version=1,
                    document=self._to_document(account),
                ))
        except IntegrityError as exc:
            raise ConflictError(f"User {account.user_id} or its referral code already exists") from exc
        except SQLAlchemyError as exc:
            logger.error("Failed to create user %s: %s", account.user_id, exc)
            raise StorageFailureError(f"Could not create user {account.user_id}") from exc
        return account.model_copy(update={"version": 1}, deep=True)

    def save_user(self, account: UserAccount) -> UserAccount:
        # Conditional update on the version column prevents lost updates
        stmt = (
            update(UserRecord)
            .where(
                UserRecord.user_id == account.user_id,
                UserRecord.version == account.version,
            )
            .values(version=account.version + 1, document=self._to_document(account))
        )
        try:
            with Session(self.engine) as session, session.begin():
                result = session.execute(stmt)
                if result.rowcount == 0:
                    if session.get(UserRecord, account.user_id) is None:
                        raise UserNotFoundError(f"User {account.user_id} not found")
                    raise ConflictError(
                        f"User {account.user_id} was modified concurrently "
                        f"(expected version {account.version})"
                    )
        except SQLAlchemyError as exc:
            logger.error("Failed to save user %s: %s", account.user_id, exc)
            raise StorageFailureError(f"Could not save user {account.user_id}") from exc
        return account.model_copy(update={"version": account.version + 1}, deep=True)

    def find_user_by_referral_code(self, code: str) -> Optional[str]:
        try:
            with Session(self.engine) as session:
                return session.execute(
                    select(UserRecord.user_id).where(UserRecord.referral_code == code)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Failed to look up referral code %s: %s", code, exc)
            raise StorageFailureError("Could not look up referral code") from exc

    def list_users(self) -> list[UserAccount]:
        try:
            with Session(self.engine) as session:
                records = session.execute(select(UserRecord).order_by(UserRecord.user_id)).scalars().all()
                return [self._to_account(r) for r in records]
        except SQLAlchemyError as exc:
            logger.error("Failed to list users: %s", exc)
            raise StorageFailureError("Could not list users") from exc

    def list_packages(self) -> list[InvestmentPackage]:
        try:
            with Session(self.engine) as session:
                records = session.execute(select(PackageRecord).order_by(PackageRecord.id)).scalars().all()
                return [InvestmentPackage.model_validate(r) for r in records]
        except SQLAlchemyError as exc:
            logger.error("Failed to list investment packages: %s", exc)
            raise StorageFailureError("Could not list investment packages") from exc
