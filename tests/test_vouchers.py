from datetime import datetime, timedelta

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from limits import AdjustmentEmitter, LimitReconciler
from models import (
    Card,
    CardType,
    EntryOrigin,
    SystemCategory,
    Transaction,
    TransactionType,
)
from schemas import CardIn, CategoryIn, TransactionIn
from services import (
    CardService,
    CategoryService,
    TransactionService,
    classify_card_type,
    voucher_card_owner_ids,
)
from vouchers import CardTypeNormalizer, VoucherResetService


MARKER = "[Vale Alimentação]"
NOW = datetime(2025, 6, 20, 18, 30)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def add_card(session, name, card_type=CardType.credit, user_id=1, limit_cents=80000):
    card = Card(
        user_id=user_id,
        name=name,
        limit_cents=limit_cents,
        card_type=card_type,
        closing_day=1,
        due_day=10,
    )
    session.add(card)
    session.commit()
    return card


def reset_credits(session: Session, card_id: int) -> list[Transaction]:
    stmt = select(Transaction).where(
        Transaction.card_id == card_id,
        Transaction.origin == EntryOrigin.voucher_reset,
    )
    return session.scalars(stmt).all()


def test_classify_card_type_rules() -> None:
    assert classify_card_type(f"Alelo {MARKER}", CardType.credit, MARKER) == CardType.food_voucher
    assert classify_card_type("Alelo", CardType.food_voucher, MARKER) == CardType.food_voucher
    assert classify_card_type("Visa", CardType.credit, MARKER) == CardType.credit
    assert classify_card_type("Visa", None, MARKER) == CardType.credit


def test_card_created_with_marker_name_is_food_voucher() -> None:
    with make_session() as session:
        card = CardService(session, 1).create(
            CardIn(name=f"Ticket {MARKER}", limit_cents=60000, closing_day=1, due_day=1)
        )

        assert card.card_type == CardType.food_voucher


def test_normalizer_corrects_marked_cards_and_keeps_vouchers() -> None:
    with make_session() as session:
        marked = add_card(session, f"Sodexo {MARKER}")
        voucher = add_card(session, "VR", card_type=CardType.food_voucher)
        plain = add_card(session, "Nubank")

        updates = CardTypeNormalizer(session, marker=MARKER).normalize_all()

        by_id = {u.card_id: u for u in updates}
        assert by_id[marked.id].old_type == CardType.credit
        assert by_id[marked.id].new_type == CardType.food_voucher
        assert by_id[voucher.id].new_type == CardType.food_voucher
        assert by_id[plain.id].new_type == CardType.credit
        assert session.get(Card, marked.id).card_type == CardType.food_voucher


def test_normalizer_writes_every_card_and_is_idempotent() -> None:
    with make_session() as session:
        add_card(session, f"Sodexo {MARKER}")
        add_card(session, "Nubank")
        normalizer = CardTypeNormalizer(session, marker=MARKER)

        first = normalizer.normalize_all()
        second = normalizer.normalize_all()

        assert len(first) == len(second) == 2
        assert all(u.old_type == u.new_type for u in second)
        assert [u.new_type for u in first] == [u.new_type for u in second]


def test_normalizer_scopes_to_user() -> None:
    with make_session() as session:
        mine = add_card(session, f"Sodexo {MARKER}", user_id=1)
        theirs = add_card(session, f"Alelo {MARKER}", user_id=2)

        updates = CardTypeNormalizer(session, marker=MARKER).normalize_all(user_id=1)

        assert [u.card_id for u in updates] == [mine.id]
        assert session.get(Card, theirs.id).card_type == CardType.credit


def test_normalizer_skips_failing_card_and_continues() -> None:
    class FlakyNormalizer(CardTypeNormalizer):
        def __init__(self, session, fail_id):
            super().__init__(session, marker=MARKER)
            self.fail_id = fail_id

        def write_card_type(self, card, card_type):
            if card.id == self.fail_id:
                raise RuntimeError("storage unavailable")
            super().write_card_type(card, card_type)

    with make_session() as session:
        broken = add_card(session, f"Ticket {MARKER}")
        healthy = add_card(session, f"Alelo {MARKER}")

        updates = FlakyNormalizer(session, broken.id).normalize_all()

        assert [u.card_id for u in updates] == [healthy.id]
        assert session.get(Card, healthy.id).card_type == CardType.food_voucher
        assert session.get(Card, broken.id).card_type == CardType.credit


def test_voucher_card_owner_ids_lists_each_owner_once() -> None:
    with make_session() as session:
        add_card(session, "VA", card_type=CardType.food_voucher, user_id=3)
        add_card(session, "VR", card_type=CardType.food_voucher, user_id=3)
        add_card(session, "VA", card_type=CardType.food_voucher, user_id=1)
        add_card(session, "Visa", user_id=2)

        assert voucher_card_owner_ids(session) == [1, 3]


def test_voucher_reset_restores_full_limit_and_is_idempotent() -> None:
    with make_session() as session:
        voucher = add_card(session, "VA", card_type=CardType.food_voucher)
        credit = add_card(session, "Visa")
        food = CategoryService(session, 1).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        for card, cents in ((voucher, 30000), (credit, 12000)):
            TransactionService(session, 1).create(
                TransactionIn(
                    occurred_at=NOW - timedelta(days=3),
                    type=TransactionType.expense,
                    amount_cents=cents,
                    category_id=food.id,
                    card_id=card.id,
                )
            )
        reconciler = LimitReconciler(session, 1)
        assert reconciler.compute_available(voucher, NOW) == 50000

        service = VoucherResetService(session, 1)
        first = service.reset(NOW)
        second = service.reset(NOW)

        assert [r.card_id for r in first] == [voucher.id]
        assert first[0].reset_cents == 30000
        assert second[0].reset_cents == 30000
        credits = reset_credits(session, voucher.id)
        assert len(credits) == 1
        assert credits[0].type == TransactionType.income
        assert credits[0].category.system_key == SystemCategory.voucher_reset
        assert reconciler.compute_available(voucher, NOW) == 80000
        assert reconciler.compute_available(credit, NOW) == 68000
        assert reset_credits(session, credit.id) == []


def test_voucher_reset_without_spending_posts_nothing() -> None:
    with make_session() as session:
        voucher = add_card(session, "VA", card_type=CardType.food_voucher)

        resets = VoucherResetService(session, 1).reset(NOW)

        assert resets[0].reset_cents == 0
        assert resets[0].entry_id is None
        assert reset_credits(session, voucher.id) == []


def test_voucher_reset_after_limit_credit_stops_at_full_limit() -> None:
    with make_session() as session:
        voucher = add_card(session, "VA", card_type=CardType.food_voucher)
        food = CategoryService(session, 1).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        TransactionService(session, 1).create(
            TransactionIn(
                occurred_at=NOW - timedelta(days=3),
                type=TransactionType.expense,
                amount_cents=30000,
                category_id=food.id,
                card_id=voucher.id,
            )
        )
        AdjustmentEmitter(session, 1).reconcile(voucher.id, 60000, now=NOW)

        resets = VoucherResetService(session, 1).reset(NOW)

        assert resets[0].reset_cents == 20000
        reconciler = LimitReconciler(session, 1)
        assert reconciler.compute_available(voucher, NOW) == 80000
        assert session.get(Card, voucher.id).limit_cents == 80000
