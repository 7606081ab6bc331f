from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionKind(str, Enum):
    single = "single"
    recurring = "recurring"


class EntryOrigin(str, Enum):
    manual = "manual"
    adjustment = "adjustment"
    voucher_reset = "voucher_reset"


class CardType(str, Enum):
    credit = "credit"
    food_voucher = "food_voucher"


class SystemCategory(str, Enum):
    limit_adjustment = "limit_adjustment"
    limit_credit = "limit_credit"
    voucher_reset = "voucher_reset"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))
    system_key: Mapped[Optional[SystemCategory]] = mapped_column(
        SAEnum(SystemCategory)
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
        UniqueConstraint("user_id", "system_key", name="uq_category_user_system_key"),
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="bank_account"
    )

    __table_args__ = (Index("ix_bank_accounts_user", "user_id"),)


class Card(Base, TimestampMixin):
    __tablename__ = "cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    card_type: Mapped[CardType] = mapped_column(
        SAEnum(CardType), nullable=False, default=CardType.credit
    )
    closing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="card"
    )

    __table_args__ = (
        CheckConstraint("limit_cents >= 0", name="ck_cards_limit_non_negative"),
        CheckConstraint(
            "closing_day BETWEEN 1 AND 31", name="ck_cards_closing_day_range"
        ),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_cards_due_day_range"),
        Index("ix_cards_user_type", "user_id", "card_type"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cards.id"))
    bank_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False, default=TransactionKind.single
    )
    origin: Mapped[EntryOrigin] = mapped_column(
        SAEnum(EntryOrigin), nullable=False, default=EntryOrigin.manual
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    card: Mapped[Optional["Card"]] = relationship("Card", back_populates="transactions")
    bank_account: Mapped[Optional["BankAccount"]] = relationship(
        "BankAccount", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
        Index("ix_transactions_card_type_occurred", "card_id", "type", "occurred_at"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    """Monthly spending cap for one expense category."""

    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    alert_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=80)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        CheckConstraint(
            "alert_threshold BETWEEN 1 AND 100", name="ck_budget_alert_threshold"
        ),
        UniqueConstraint(
            "user_id", "category_id", "year", "month", name="uq_budget_category_month"
        ),
    )


class ResetMarker(Base, TimestampMixin):
    """One row per calendar month whose voucher reset pass has been claimed."""

    __tablename__ = "reset_markers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    users_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    users_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("month_key", name="uq_reset_marker_month"),)
