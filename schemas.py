from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    CardType,
    EntryOrigin,
    SystemCategory,
    TransactionKind,
    TransactionType,
)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: Optional[str]
    system_key: Optional[SystemCategory]


class CardIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    limit_cents: int = Field(..., ge=0)
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)
    card_type: CardType = CardType.credit
    color: Optional[str] = Field(default=None, max_length=7)


class CardUpdateIn(BaseModel):
    """Card fields a user may change. The card type is not one of them."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    limit_cents: Optional[int] = Field(default=None, ge=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    color: Optional[str] = Field(default=None, max_length=7)


class CardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    limit_cents: int
    card_type: CardType
    closing_day: int
    due_day: int
    color: Optional[str]
    available_cents: Optional[int] = None


class AvailableLimitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    available_cents: int


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    occurred_at: datetime
    type: TransactionType
    kind: TransactionKind = TransactionKind.single
    amount_cents: int = Field(..., ge=0)
    category_id: int
    card_id: Optional[int] = None
    bank_account_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    type: TransactionType
    kind: TransactionKind
    origin: EntryOrigin
    amount_cents: int
    category_id: int
    card_id: Optional[int]
    bank_account_id: Optional[int]
    note: Optional[str]


class BankAccountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    initial_balance_cents: int = 0


class BankAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    initial_balance_cents: int
    balance_cents: Optional[int] = None


class BudgetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    amount_cents: int = Field(..., ge=0)
    alert_threshold: int = Field(default=80, ge=1, le=100)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    year: int
    month: int
    amount_cents: int
    alert_threshold: int


class BudgetStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    budget: BudgetOut
    spent_cents: int
    remaining_cents: int
    percent_used: int
    alert: bool
