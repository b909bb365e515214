from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from database import atomic
from models import (
    Account,
    Category,
    Movement,
    MovementType,
    Transaction,
    TransactionKind,
    TransactionType,
    User,
    from_cents,
    to_cents,
)
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionTypeIn, UserIn


logger = logging.getLogger(__name__)

MINIMUM_ACCOUNT_AGE = 18

Clock = Callable[[], datetime]

# Ledger operation per transaction kind. Kinds missing here have no balance effect.
FORWARD_EFFECT = {
    TransactionKind.income: MovementType.deposit,
    TransactionKind.expense: MovementType.withdraw,
}
OPPOSITE_MOVEMENT = {
    MovementType.deposit: MovementType.withdraw,
    MovementType.withdraw: MovementType.deposit,
}


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def age_on(date_of_birth: date, today: date) -> int:
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


class LedgerError(ValueError):
    pass


class NotFoundError(LedgerError):
    pass


class ValidationError(LedgerError):
    pass


class InsufficientFundsError(LedgerError):
    pass


class ConflictError(LedgerError):
    pass


def _flush_or_conflict(session: Session) -> None:
    try:
        session.flush()
    except IntegrityError as exc:
        raise ConflictError(f"Database constraint violated: {exc.orig}") from exc


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.name, User.id)).all()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def create(self, data: UserIn) -> User:
        email = data.email.strip().lower()
        with atomic(self.session):
            existing = self.session.scalar(select(User).where(User.email == email))
            if existing:
                raise ConflictError("User with this email already exists")
            user = User(name=data.name.strip(), email=email)
            self.session.add(user)
            _flush_or_conflict(self.session)
        return user


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        return self.session.scalars(select(Category).order_by(Category.name)).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError(f"Category {category_id} not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        with atomic(self.session):
            existing = self.session.scalar(
                select(Category).where(
                    func.lower(Category.name) == data.name.strip().lower()
                )
            )
            if existing:
                raise ConflictError("Category with this name already exists")
            category = Category(name=data.name.strip())
            self.session.add(category)
            _flush_or_conflict(self.session)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        with atomic(self.session):
            category = self.get(category_id)
            category.name = name.strip()
            _flush_or_conflict(self.session)
        return category

    def delete(self, category_id: int) -> None:
        with atomic(self.session):
            self.session.delete(self.get(category_id))
            _flush_or_conflict(self.session)


class TransactionTypeService:
    """Reference data for transaction types.

    The free-text label is resolved into a ``TransactionKind`` whenever it is
    written, so balance logic never compares label strings.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[TransactionType]:
        return self.session.scalars(
            select(TransactionType).order_by(TransactionType.id)
        ).all()

    def get(self, type_id: int) -> TransactionType:
        txn_type = self.session.get(TransactionType, type_id)
        if not txn_type:
            raise NotFoundError(f"Transaction type {type_id} not found")
        return txn_type

    def create(self, data: TransactionTypeIn) -> TransactionType:
        label = data.label.strip()
        with atomic(self.session):
            txn_type = TransactionType(
                label=label, kind=TransactionKind.from_label(label)
            )
            self.session.add(txn_type)
            _flush_or_conflict(self.session)
        return txn_type

    def update(self, type_id: int, data: TransactionTypeIn) -> TransactionType:
        label = data.label.strip()
        with atomic(self.session):
            txn_type = self.get(type_id)
            txn_type.label = label
            txn_type.kind = TransactionKind.from_label(label)
            _flush_or_conflict(self.session)
        return txn_type

    def delete(self, type_id: int) -> None:
        with atomic(self.session):
            self.session.delete(self.get(type_id))
            _flush_or_conflict(self.session)


class MovementService:
    """Append-only ledger of balance-affecting events.

    Movements are only written by ``AccountService`` inside its unit of work;
    ``record`` flushes but never commits. Corrections are made by recording an
    offsetting movement, there is no update or delete.
    """

    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or local_now

    def record(
        self,
        account_id: int,
        movement_type: MovementType,
        amount_cents: int,
        at: Optional[datetime] = None,
    ) -> Movement:
        if amount_cents <= 0:
            raise ValidationError("Movement amount must be positive")
        movement = Movement(
            account_id=account_id,
            type=movement_type,
            amount_cents=amount_cents,
            movement_date=at or self.clock(),
        )
        self.session.add(movement)
        self.session.flush()
        return movement

    def list_by_account(self, account_id: int) -> list[Movement]:
        if self.session.get(Account, account_id) is None:
            raise NotFoundError(f"Account {account_id} not found")
        stmt = (
            select(Movement)
            .where(Movement.account_id == account_id)
            .order_by(Movement.movement_date.asc(), Movement.id.asc())
        )
        return self.session.scalars(stmt).all()

    def signed_total(self, account_id: int) -> int:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Movement.type == MovementType.withdraw,
                            -Movement.amount_cents,
                        ),
                        else_=Movement.amount_cents,
                    )
                ),
                0,
            )
        ).where(Movement.account_id == account_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def count_for_account(self, account_id: int) -> int:
        stmt = select(func.count(Movement.id)).where(Movement.account_id == account_id)
        return int(self.session.execute(stmt).scalar_one() or 0)


@dataclass(frozen=True)
class LedgerAudit:
    account_id: int
    balance_cents: int
    expected_cents: int
    movement_count: int

    @property
    def consistent(self) -> bool:
        return self.balance_cents == self.expected_cents

    @property
    def balance(self) -> Decimal:
        return from_cents(self.balance_cents)

    @property
    def expected_balance(self) -> Decimal:
        return from_cents(self.expected_cents)


class AccountService:
    """Owns account balances.

    ``deposit`` and ``withdraw`` are the only balance mutators and each one
    writes exactly one movement in the same unit of work. The balance change is
    a single conditional UPDATE, so concurrent operations on one account are
    serialized by the database and the persisted value is always re-read.
    """

    def __init__(
        self,
        session: Session,
        movements: Optional[MovementService] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session = session
        self.clock = clock or local_now
        self.movements = movements or MovementService(session, self.clock)

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id, populate_existing=True)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _check_age(self, date_of_birth: date) -> None:
        if age_on(date_of_birth, self.clock().date()) < MINIMUM_ACCOUNT_AGE:
            raise ValidationError(
                f"Account holder must be at least {MINIMUM_ACCOUNT_AGE} years old"
            )

    def _ensure_cpf_available(self, cpf: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Account.id).where(Account.cpf == cpf)
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("Account with this CPF already exists")

    @staticmethod
    def _positive_cents(amount: Decimal) -> int:
        cents = to_cents(amount)
        if cents <= 0:
            raise ValidationError("Amount must be positive")
        return cents

    def create_account(self, data: AccountIn) -> Account:
        self._check_age(data.date_of_birth)
        balance_cents = to_cents(data.balance) if data.balance is not None else 0
        cpf = data.cpf.strip()
        with atomic(self.session):
            self._ensure_cpf_available(cpf)
            account = Account(
                name=data.name.strip(),
                cpf=cpf,
                date_of_birth=data.date_of_birth,
                bank=data.bank.strip(),
                balance_cents=balance_cents,
                opening_balance_cents=balance_cents,
            )
            self.session.add(account)
            _flush_or_conflict(self.session)
        logger.info(
            f"account_created: account_id={account.id} balance_cents={balance_cents}"
        )
        return account

    def update_account(self, account_id: int, data: AccountIn) -> Account:
        cpf = data.cpf.strip()
        with atomic(self.session):
            account = self.get(account_id)
            self._check_age(data.date_of_birth)
            self._ensure_cpf_available(cpf, exclude_id=account.id)
            balance_cents = to_cents(data.balance) if data.balance is not None else 0
            history_cents = self.movements.signed_total(account.id)
            account.name = data.name.strip()
            account.cpf = cpf
            account.date_of_birth = data.date_of_birth
            account.bank = data.bank.strip()
            # A replaced balance re-bases the opening balance; history is untouched.
            account.opening_balance_cents = balance_cents - history_cents
            account.balance_cents = balance_cents
            _flush_or_conflict(self.session)
        logger.info(
            f"account_updated: account_id={account.id} balance_cents={balance_cents}"
        )
        return account

    def delete_account(self, account_id: int) -> None:
        with atomic(self.session):
            self.session.delete(self.get(account_id))
            _flush_or_conflict(self.session)
        logger.info(f"account_deleted: account_id={account_id}")

    def deposit(self, account_id: int, amount: Decimal) -> Account:
        amount_cents = self._positive_cents(amount)
        with atomic(self.session):
            result = self.session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(balance_cents=Account.balance_cents + amount_cents)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Account {account_id} not found")
            self.movements.record(account_id, MovementType.deposit, amount_cents)
            account = self.get(account_id)
        logger.info(
            f"deposit: account_id={account_id} amount_cents={amount_cents} "
            f"balance_cents={account.balance_cents}"
        )
        return account

    def withdraw(self, account_id: int, amount: Decimal) -> Account:
        amount_cents = self._positive_cents(amount)
        with atomic(self.session):
            result = self.session.execute(
                update(Account)
                .where(
                    Account.id == account_id,
                    Account.balance_cents >= amount_cents,
                )
                .values(balance_cents=Account.balance_cents - amount_cents)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                account = self.get(account_id)
                raise InsufficientFundsError(
                    f"Insufficient funds: balance {account.balance} "
                    f"is less than {from_cents(amount_cents)}"
                )
            self.movements.record(account_id, MovementType.withdraw, amount_cents)
            account = self.get(account_id)
        logger.info(
            f"withdraw: account_id={account_id} amount_cents={amount_cents} "
            f"balance_cents={account.balance_cents}"
        )
        return account

    def apply(
        self, account_id: int, movement_type: MovementType, amount: Decimal
    ) -> Account:
        if movement_type == MovementType.deposit:
            return self.deposit(account_id, amount)
        return self.withdraw(account_id, amount)

    def _audit(self, account: Account) -> LedgerAudit:
        return LedgerAudit(
            account_id=account.id,
            balance_cents=account.balance_cents,
            expected_cents=account.opening_balance_cents
            + self.movements.signed_total(account.id),
            movement_count=self.movements.count_for_account(account.id),
        )

    def audit(self, account_id: int) -> LedgerAudit:
        return self._audit(self.get(account_id))

    def audit_all(self) -> list[LedgerAudit]:
        audits = [self._audit(account) for account in self.list_all()]
        for item in audits:
            if not item.consistent:
                logger.warning(
                    f"ledger_mismatch: account_id={item.account_id} "
                    f"balance_cents={item.balance_cents} "
                    f"expected_cents={item.expected_cents}"
                )
        return audits


class TransactionService:
    """Keeps account balances in step with the transactions linked to them.

    Every mutation runs as one unit of work: an update first reverses the
    stored effect, then resolves the new references and applies the new
    effect. Any failure along the way rolls the whole operation back.
    """

    def __init__(
        self,
        session: Session,
        accounts: Optional[AccountService] = None,
        users: Optional[UserService] = None,
        categories: Optional[CategoryService] = None,
        transaction_types: Optional[TransactionTypeService] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session = session
        self.clock = clock or local_now
        self.accounts = accounts or AccountService(session, clock=self.clock)
        self.users = users or UserService(session)
        self.categories = categories or CategoryService(session)
        self.transaction_types = transaction_types or TransactionTypeService(session)

    def list_all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.user),
                joinedload(Transaction.category),
                joinedload(Transaction.transaction_type),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.user),
                joinedload(Transaction.category),
                joinedload(Transaction.transaction_type),
            )
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    def _resolve(
        self, data: TransactionIn
    ) -> tuple[User, Category, TransactionType, Optional[Account]]:
        user = self.users.get(data.user_id)
        category = self.categories.get(data.category_id)
        txn_type = self.transaction_types.get(data.transaction_type_id)
        account = None
        if data.account_id is not None:
            account = self.accounts.get(data.account_id)
        return user, category, txn_type, account

    def _apply_effect(self, txn: Transaction) -> None:
        movement_type = None
        if txn.account_id is not None:
            movement_type = FORWARD_EFFECT.get(txn.transaction_type.kind)
        if movement_type is not None:
            self.accounts.apply(txn.account_id, movement_type, txn.amount)
        txn.applied_movement = movement_type

    def _reverse_effect(self, txn: Transaction) -> None:
        # Undo what was recorded as applied; the type may have been relabelled since.
        if txn.applied_movement is None or txn.account_id is None:
            return
        self.accounts.apply(
            txn.account_id, OPPOSITE_MOVEMENT[txn.applied_movement], txn.amount
        )
        txn.applied_movement = None

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            user, category, txn_type, account = self._resolve(data)
            txn = Transaction(
                description=data.description,
                amount_cents=to_cents(data.amount),
                date=data.date or self.clock(),
                user=user,
                category=category,
                transaction_type=txn_type,
                account=account,
            )
            self.session.add(txn)
            _flush_or_conflict(self.session)
            self._apply_effect(txn)
        logger.info(
            f"transaction_created: transaction_id={txn.id} "
            f"account_id={txn.account_id} kind={txn_type.kind.value} "
            f"amount_cents={txn.amount_cents}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self.get(transaction_id)
            self._reverse_effect(txn)
            logger.info(
                f"transaction_reversed: transaction_id={txn.id} "
                f"account_id={txn.account_id} amount_cents={txn.amount_cents}"
            )

            user, category, txn_type, account = self._resolve(data)
            txn.description = data.description
            txn.amount_cents = to_cents(data.amount)
            txn.date = data.date or txn.date
            txn.user = user
            txn.category = category
            txn.transaction_type = txn_type
            txn.account = account
            _flush_or_conflict(self.session)

            self._apply_effect(txn)
        logger.info(
            f"transaction_updated: transaction_id={txn.id} "
            f"account_id={txn.account_id} kind={txn_type.kind.value} "
            f"amount_cents={txn.amount_cents}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            self._reverse_effect(txn)
            self.session.delete(txn)
            _flush_or_conflict(self.session)
        logger.info(f"transaction_deleted: transaction_id={transaction_id}")
