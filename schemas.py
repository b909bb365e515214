from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import MovementType, TransactionKind


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionTypeIn(BaseModel):
    label: str = Field(..., min_length=1, max_length=50)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    cpf: str = Field(..., min_length=1, max_length=14)
    date_of_birth: date
    bank: str = Field(..., min_length=1, max_length=120)
    balance: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )


class AmountIn(BaseModel):
    value: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class TransactionIn(BaseModel):
    description: Optional[str] = Field(default=None, max_length=200)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    date: Optional[datetime] = None
    user_id: int
    category_id: int
    transaction_type_id: int
    account_id: Optional[int] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class TransactionTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    label: str
    kind: TransactionKind


class AccountSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    bank: str
    balance: Decimal


class AccountOut(AccountSummaryOut):
    cpf: str
    date_of_birth: date


class MovementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: MovementType
    amount: Decimal
    movement_date: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: Optional[str]
    amount: Decimal
    date: datetime
    user: UserOut
    category: CategoryOut
    transaction_type: TransactionTypeOut
    account_id: Optional[int]


class LedgerAuditOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: int
    balance: Decimal
    expected_balance: Decimal
    movement_count: int
    consistent: bool
