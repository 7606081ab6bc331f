"""Available-limit computation and drift reconciliation for cards.

A card's available limit is never stored. It is always derived from the
ledger: the card limit minus the current period's expenses, net of the credits
this module and the voucher reset post on the card.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import InvalidInput, StorageFailure
from models import (
    Card,
    EntryOrigin,
    SystemCategory,
    Transaction,
    TransactionKind,
    TransactionType,
)
from periods import billing_period_start, local_now
from services import CardService, CategoryService


logger = logging.getLogger(__name__)

DRIFT_TOLERANCE_CENTS = 1
CREDIT_ORIGINS = (EntryOrigin.adjustment, EntryOrigin.voucher_reset)


class _CardLock:
    """Weak-referenceable wrapper; a bare ``threading.Lock`` is not."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_CardLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


# Entries vanish once no reconciliation holds the lock.
_card_locks: "weakref.WeakValueDictionary[int, _CardLock]" = weakref.WeakValueDictionary()
_card_locks_guard = threading.Lock()


def _card_lock(card_id: int) -> _CardLock:
    with _card_locks_guard:
        lock = _card_locks.get(card_id)
        if lock is None:
            lock = _card_locks[card_id] = _CardLock()
        return lock


class LedgerQuery:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def expense_entries(
        self, card_id: int, period_start: datetime, now: datetime
    ) -> list[Transaction]:
        card = CardService(self.session, self.user_id).get(card_id)
        return self._entries(card, TransactionType.expense, period_start, now)

    def reconciliation_credits(
        self, card_id: int, period_start: datetime, now: datetime
    ) -> list[Transaction]:
        card = CardService(self.session, self.user_id).get(card_id)
        return [
            entry
            for entry in self._entries(card, TransactionType.income, period_start, now)
            if entry.origin in CREDIT_ORIGINS
        ]

    def _entries(
        self,
        card: Card,
        txn_type: TransactionType,
        period_start: datetime,
        now: datetime,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.card_id == card.id,
            Transaction.deleted_at.is_(None),
            Transaction.type == txn_type,
            Transaction.occurred_at >= period_start,
            Transaction.occurred_at <= now,
        )
        return list(self.session.scalars(stmt).all())


class LimitReconciler:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ledger = LedgerQuery(session, user_id)

    def used_cents(self, card: Card, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        start = billing_period_start(now)
        spent = sum(
            abs(e.amount_cents) for e in self.ledger.expense_entries(card.id, start, now)
        )
        credited = sum(
            abs(e.amount_cents)
            for e in self.ledger.reconciliation_credits(card.id, start, now)
        )
        return spent - credited

    def compute_available(self, card: Card, now: Optional[datetime] = None) -> int:
        return card.limit_cents - self.used_cents(card, now)

    def cards_with_available(
        self, cards: list[Card], now: Optional[datetime] = None
    ) -> list[tuple[Card, int]]:
        now = now or local_now()
        return [(card, self.compute_available(card, now)) for card in cards]


@dataclass(frozen=True)
class AdjustmentResult:
    card_id: int
    computed_cents: int
    declared_cents: int
    drift_cents: int
    adjustment_id: Optional[int]
    available_cents: int

    @property
    def adjusted(self) -> bool:
        return self.adjustment_id is not None


class AdjustmentEmitter:
    """Absorbs drift between a user-declared available limit and the ledger.

    The read of the computed limit and the adjustment write share one
    database transaction. The card row is locked ``FOR UPDATE`` where the
    backend supports it, and a per-card lock serializes callers in this process.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.reconciler = LimitReconciler(session, user_id)

    def reconcile(
        self,
        card_id: int,
        declared_available_cents: int,
        now: Optional[datetime] = None,
    ) -> AdjustmentResult:
        now = now or local_now()
        with _card_lock(card_id):
            try:
                result = self._reconcile(card_id, declared_available_cents, now)
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error(f"limit_adjustment_failed: card_id={card_id} error={exc}")
                raise StorageFailure("Failed to record limit adjustment") from exc
            except Exception:
                self.session.rollback()
                raise
        if result.adjusted:
            logger.info(
                f"limit_adjusted: card_id={card_id} drift_cents={result.drift_cents} "
                f"entry_id={result.adjustment_id}"
            )
        return result

    def _reconcile(
        self, card_id: int, declared: int, now: datetime
    ) -> AdjustmentResult:
        card = CardService(self.session, self.user_id).get(card_id, for_update=True)
        if declared > card.limit_cents:
            raise InvalidInput("Declared available exceeds total limit")

        computed = self.reconciler.compute_available(card, now)
        drift = computed - declared
        if abs(drift) <= DRIFT_TOLERANCE_CENTS:
            self.session.commit()
            return AdjustmentResult(
                card_id=card.id,
                computed_cents=computed,
                declared_cents=declared,
                drift_cents=drift,
                adjustment_id=None,
                available_cents=computed,
            )

        if drift > 0:
            txn_type = TransactionType.expense
            key = SystemCategory.limit_adjustment
        else:
            txn_type = TransactionType.income
            key = SystemCategory.limit_credit
        category = CategoryService(self.session, self.user_id).system_category(key)
        entry = Transaction(
            user_id=card.user_id,
            card_id=card.id,
            occurred_at=now,
            type=txn_type,
            kind=TransactionKind.single,
            origin=EntryOrigin.adjustment,
            amount_cents=abs(drift),
            category_id=category.id,
            note="Manual limit adjustment",
        )
        self.session.add(entry)
        self.session.commit()

        return AdjustmentResult(
            card_id=card.id,
            computed_cents=computed,
            declared_cents=declared,
            drift_cents=drift,
            adjustment_id=entry.id,
            available_cents=self.reconciler.compute_available(card, now),
        )
