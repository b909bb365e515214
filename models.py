from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"
    other = "other"

    @classmethod
    def from_label(cls, label: Optional[str]) -> "TransactionKind":
        clean = (label or "").strip().lower()
        if clean == cls.income.value:
            return cls.income
        if clean == cls.expense.value:
            return cls.expense
        return cls.other


class MovementType(str, Enum):
    deposit = "DEPOSIT"
    withdraw = "WITHDRAW"


MOVEMENT_TYPE_ENUM = SAEnum(
    MovementType,
    name="movementtype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class TransactionType(Base, TimestampMixin):
    __tablename__ = "transaction_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False, default=TransactionKind.other
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    cpf: Mapped[str] = mapped_column(String(14), nullable=False, unique=True)
    date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    bank: Mapped[str] = mapped_column(String(120), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_accounts_balance_positive"),
    )

    @property
    def balance(self) -> Decimal:
        return from_cents(self.balance_cents)


class Movement(Base, TimestampMixin):
    __tablename__ = "movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    type: Mapped[MovementType] = mapped_column(MOVEMENT_TYPE_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    movement_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_movements_account_date", "account_id", "movement_date"),
        CheckConstraint("amount_cents > 0", name="ck_movements_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    transaction_type_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_types.id"), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    # Ledger effect currently applied to the account, if any.
    applied_movement: Mapped[Optional[MovementType]] = mapped_column(
        MOVEMENT_TYPE_ENUM, nullable=True
    )

    user: Mapped["User"] = relationship("User")
    category: Mapped["Category"] = relationship("Category")
    transaction_type: Mapped["TransactionType"] = relationship("TransactionType")
    account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account", "account_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)
