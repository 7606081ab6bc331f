from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import InvalidInput, NotFound, Unauthorized
from models import (
    BankAccount,
    Budget,
    Card,
    CardType,
    Category,
    SystemCategory,
    Transaction,
    TransactionType,
)
from periods import Period
from schemas import (
    BankAccountIn,
    BudgetIn,
    CardIn,
    CardUpdateIn,
    CategoryIn,
    TransactionIn,
)


SYSTEM_CATEGORY_DEFAULTS: dict[SystemCategory, tuple[str, TransactionType]] = {
    SystemCategory.limit_adjustment: ("Limit adjustment", TransactionType.expense),
    SystemCategory.limit_credit: ("Limit adjustment", TransactionType.income),
    SystemCategory.voucher_reset: ("Voucher reset", TransactionType.income),
}


def classify_card_type(
    name: str, current: Optional[CardType], marker: Optional[str] = None
) -> CardType:
    marker = marker if marker is not None else get_settings().voucher_name_marker
    if (marker and marker in name) or current == CardType.food_voucher:
        return CardType.food_voucher
    return current or CardType.credit


def voucher_card_owner_ids(session: Session) -> list[int]:
    stmt = (
        select(Card.user_id)
        .where(Card.card_type == CardType.food_voucher)
        .distinct()
        .order_by(Card.user_id)
    )
    return list(session.scalars(stmt).all())


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    card_id: Optional[int] = None
    bank_account_id: Optional[int] = None
    category_id: Optional[int] = None
    query: Optional[str] = None


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise InvalidInput("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def system_category(self, key: SystemCategory) -> Category:
        """Resolve a system category by its stable key, provisioning it once.

        Flushes but does not commit; the caller owns the transaction.
        """
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.system_key == key
            )
        )
        if category:
            return category

        name, txn_type = SYSTEM_CATEGORY_DEFAULTS[key]
        taken = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                Category.type == txn_type,
                func.lower(Category.name) == name.lower(),
            )
        )
        if taken:
            name = f"{name} (system)"
        category = Category(
            user_id=self.user_id,
            name=name,
            type=txn_type,
            color="#888888",
            system_key=key,
        )
        self.session.add(category)
        self.session.flush()
        return category


class CardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Card]:
        stmt = (
            select(Card)
            .where(Card.user_id == self.user_id)
            .order_by(Card.name, Card.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, card_id: int, *, for_update: bool = False) -> Card:
        stmt = select(Card).where(Card.id == card_id)
        if for_update:
            stmt = stmt.with_for_update()
        card = self.session.scalar(stmt)
        if not card:
            raise NotFound("Card not found")
        if card.user_id != self.user_id:
            raise Unauthorized("Card belongs to another user")
        return card

    def create(self, data: CardIn) -> Card:
        card = Card(
            user_id=self.user_id,
            name=data.name.strip(),
            limit_cents=data.limit_cents,
            card_type=classify_card_type(data.name, data.card_type),
            closing_day=data.closing_day,
            due_day=data.due_day,
            color=data.color,
        )
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def update(self, card_id: int, data: CardUpdateIn) -> Card:
        card = self.get(card_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            card.name = changes["name"].strip()
        for field in ("limit_cents", "closing_day", "due_day"):
            if changes.get(field) is not None:
                setattr(card, field, changes[field])
        if "color" in changes:
            card.color = changes["color"]
        self.session.commit()
        self.session.refresh(card)
        return card

    def delete(self, card_id: int) -> None:
        card = self.get(card_id)
        # Entries outlive the card; they simply stop counting against a limit.
        self.session.execute(
            update(Transaction)
            .where(Transaction.card_id == card.id)
            .values(card_id=None)
        )
        self.session.delete(card)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: TransactionIn) -> Transaction:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != data.type:
            raise InvalidInput("Category type mismatch")
        if data.card_id is not None and data.bank_account_id is not None:
            raise InvalidInput("An entry belongs to a card or a bank account, not both")
        if data.card_id is not None:
            CardService(self.session, self.user_id).get(data.card_id)
        if data.bank_account_id is not None:
            BankAccountService(self.session, self.user_id).get(data.bank_account_id)
        txn = Transaction(
            user_id=self.user_id,
            card_id=data.card_id,
            bank_account_id=data.bank_account_id,
            occurred_at=data.occurred_at,
            type=data.type,
            kind=data.kind,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            note=data.note,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(
        self,
        period: Period,
        filters: TransactionFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.occurred_at.between(period.start_at, period.end_at),
            )
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.card_id:
            stmt = stmt.where(Transaction.card_id == filters.card_id)
        if filters.bank_account_id:
            stmt = stmt.where(Transaction.bank_account_id == filters.bank_account_id)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(Transaction.note, "")).like(like)
            )
        return self.session.scalars(stmt).all()

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFound("Transaction not found")
        if txn.deleted_at is not None:
            return
        txn.deleted_at = datetime.utcnow()
        self.session.commit()


class BankAccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(BankAccount.user_id == self.user_id)
            .order_by(BankAccount.name, BankAccount.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> BankAccount:
        account = self.session.get(BankAccount, account_id)
        if not account:
            raise NotFound("Bank account not found")
        if account.user_id != self.user_id:
            raise Unauthorized("Bank account belongs to another user")
        return account

    def create(self, data: BankAccountIn) -> BankAccount:
        account = BankAccount(
            user_id=self.user_id,
            name=data.name.strip(),
            initial_balance_cents=data.initial_balance_cents,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def balance_cents(self, account: BankAccount) -> int:
        """Opening balance plus income minus expenses over live entries."""
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        stmt = select(func.coalesce(func.sum(signed), 0)).where(
            Transaction.bank_account_id == account.id,
            Transaction.deleted_at.is_(None),
        )
        return account.initial_balance_cents + int(self.session.scalar(stmt) or 0)

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.bank_account_id == account.id)
            .values(bank_account_id=None)
        )
        self.session.delete(account)
        self.session.commit()


@dataclass
class BudgetStatus:
    budget: Budget
    spent_cents: int
    remaining_cents: int
    percent_used: int
    alert: bool


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _month_start(year: int, month: int) -> datetime:
        return datetime(year, month, 1)

    @staticmethod
    def _next_month_start(year: int, month: int) -> datetime:
        if month == 12:
            return datetime(year + 1, 1, 1)
        return datetime(year, month + 1, 1)

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != TransactionType.expense:
            raise InvalidInput("Budgets can only be set for expense categories")
        existing = self.session.scalar(
            select(Budget.id).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.year == data.year,
                Budget.month == data.month,
            )
        )
        if existing:
            raise InvalidInput("Budget already exists for this category and month")
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            year=data.year,
            month=data.month,
            amount_cents=data.amount_cents,
            alert_threshold=data.alert_threshold,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def spent_cents(self, budget: Budget) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == budget.category_id,
            Transaction.type == TransactionType.expense,
            Transaction.deleted_at.is_(None),
            Transaction.occurred_at >= self._month_start(budget.year, budget.month),
            Transaction.occurred_at < self._next_month_start(budget.year, budget.month),
        )
        return int(self.session.scalar(stmt) or 0)

    def status(self, budget: Budget) -> BudgetStatus:
        spent = self.spent_cents(budget)
        if budget.amount_cents:
            percent = spent * 100 // budget.amount_cents
        else:
            percent = 100 if spent else 0
        return BudgetStatus(
            budget=budget,
            spent_cents=spent,
            remaining_cents=budget.amount_cents - spent,
            percent_used=percent,
            alert=percent >= budget.alert_threshold,
        )

    def list_for_month(self, year: int, month: int) -> list[BudgetStatus]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.category_id, Budget.id)
        )
        return [self.status(budget) for budget in self.session.scalars(stmt).all()]
