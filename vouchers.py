from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from config import get_settings
from limits import LimitReconciler
from models import (
    Card,
    CardType,
    EntryOrigin,
    SystemCategory,
    Transaction,
    TransactionKind,
    TransactionType,
)
from periods import billing_period_start, local_now
from services import CategoryService, classify_card_type


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardTypeUpdate:
    card_id: int
    name: str
    old_type: CardType
    new_type: CardType


@dataclass(frozen=True)
class CardReset:
    card_id: int
    card_name: str
    reset_cents: int
    entry_id: Optional[int]


class CardTypeNormalizer:
    def __init__(self, session: Session, marker: Optional[str] = None) -> None:
        self.session = session
        self.marker = marker if marker is not None else get_settings().voucher_name_marker

    def normalize(self, card: Card) -> CardType:
        corrected = classify_card_type(card.name, card.card_type, self.marker)
        self.write_card_type(card, corrected)
        return corrected

    def normalize_all(self, user_id: Optional[int] = None) -> list[CardTypeUpdate]:
        stmt = select(Card).order_by(Card.id)
        if user_id is not None:
            stmt = stmt.where(Card.user_id == user_id)
        cards = self.session.scalars(stmt).all()
        logger.info(f"normalize_card_types: cards={len(cards)} user_id={user_id}")

        updates: list[CardTypeUpdate] = []
        for card in cards:
            old_type = card.card_type or CardType.credit
            try:
                with self.session.begin_nested():
                    new_type = self.normalize(card)
            except Exception as exc:
                logger.error(f"normalize_card_failed: card_id={card.id} error={exc}")
                continue
            updates.append(
                CardTypeUpdate(
                    card_id=card.id, name=card.name, old_type=old_type, new_type=new_type
                )
            )
        self.session.commit()
        logger.info(f"normalize_card_types: updated={len(updates)}")
        return updates

    def write_card_type(self, card: Card, card_type: CardType) -> None:
        # Always issue the UPDATE, even when the type is unchanged.
        self.session.execute(
            update(Card)
            .where(Card.id == card.id)
            .values(card_type=card_type, updated_at=datetime.utcnow())
        )
        card.card_type = card_type


class VoucherResetService:
    """Restores a user's food-voucher cards to their full limit for the month.

    Earlier reset credits of the month are replaced by a single credit equal to
    the card's net usage, so the card ends at its full limit even after limit
    adjustments and running it twice in a month changes nothing.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def voucher_cards(self) -> list[Card]:
        stmt = (
            select(Card)
            .where(Card.user_id == self.user_id, Card.card_type == CardType.food_voucher)
            .order_by(Card.id)
        )
        return self.session.scalars(stmt).all()

    def reset(self, now: Optional[datetime] = None) -> list[CardReset]:
        now = now or local_now()
        cards = self.voucher_cards()
        resets: list[CardReset] = []
        for card in cards:
            try:
                with self.session.begin_nested():
                    resets.append(self._reset_card(card, now))
            except Exception as exc:
                logger.error(
                    f"voucher_reset_card_failed: user_id={self.user_id} "
                    f"card_id={card.id} error={exc}"
                )
        self.session.commit()
        logger.info(
            f"voucher_reset: user_id={self.user_id} cards={len(cards)} "
            f"reset={len(resets)}"
        )
        return resets

    def _reset_card(self, card: Card, now: datetime) -> CardReset:
        start = billing_period_start(now)
        self.session.execute(
            delete(Transaction).where(
                Transaction.card_id == card.id,
                Transaction.origin == EntryOrigin.voucher_reset,
                Transaction.occurred_at >= start,
            )
        )
        used = LimitReconciler(self.session, self.user_id).used_cents(card, now)
        if used <= 0:
            return CardReset(
                card_id=card.id, card_name=card.name, reset_cents=0, entry_id=None
            )

        category = CategoryService(self.session, self.user_id).system_category(
            SystemCategory.voucher_reset
        )
        entry = Transaction(
            user_id=self.user_id,
            card_id=card.id,
            occurred_at=now,
            type=TransactionType.income,
            kind=TransactionKind.single,
            origin=EntryOrigin.voucher_reset,
            amount_cents=used,
            category_id=category.id,
            note=f"Voucher reset - {card.name}",
        )
        self.session.add(entry)
        self.session.flush()
        return CardReset(
            card_id=card.id, card_name=card.name, reset_cents=used, entry_id=entry.id
        )
