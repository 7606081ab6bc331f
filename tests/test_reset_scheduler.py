import threading
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, build_engine, build_session_factory
from limits import LimitReconciler
from models import Card, CardType, Category, ResetMarker, Transaction, TransactionType
import scheduler as reset_scheduler
from scheduler import VoucherResetScheduler


FIRST_OF_APRIL = datetime(2025, 4, 1, 0, 5)


def make_factory() -> sessionmaker:
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)


def voucher_card(user_id: int, name: str, limit_cents: int) -> Card:
    return Card(
        user_id=user_id,
        name=name,
        limit_cents=limit_cents,
        card_type=CardType.food_voucher,
        closing_day=1,
        due_day=5,
    )


def seed_cards(factory: sessionmaker) -> None:
    with factory() as session:
        session.add_all(
            [
                voucher_card(1, "VA", 60000),
                voucher_card(2, "VR", 40000),
                Card(user_id=3, name="Visa", limit_cents=90000, closing_day=8, due_day=15),
            ]
        )
        session.commit()


class RecordingReset:
    def __init__(self, fail_for=(), hang_for=()):
        self.calls: list[int] = []
        self.fail_for = set(fail_for)
        self.hang_for = set(hang_for)
        self.release = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, user_id, now):
        with self._lock:
            self.calls.append(user_id)
        if user_id in self.hang_for:
            self.release.wait(5)
        if user_id in self.fail_for:
            raise RuntimeError(f"reset failed for {user_id}")
        return []


def markers(factory: sessionmaker) -> list[ResetMarker]:
    with factory() as session:
        return session.scalars(select(ResetMarker)).all()


def test_pass_is_skipped_outside_first_day() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset()

    result = VoucherResetScheduler(factory, reset, timeout_secs=5).run_reset_pass(
        datetime(2025, 4, 2, 0, 5)
    )

    assert result.skipped
    assert result.reason == "not_first_day"
    assert reset.calls == []
    assert markers(factory) == []


def test_pass_resets_each_voucher_owner_once_and_records_marker() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset()

    result = VoucherResetScheduler(factory, reset, timeout_secs=5).run_reset_pass(
        FIRST_OF_APRIL
    )

    assert not result.skipped
    assert result.month_key == "2025-04"
    assert sorted(reset.calls) == [1, 2]
    assert result.users_total == 2
    assert result.users_failed == 0
    (marker,) = markers(factory)
    assert marker.month_key == "2025-04"
    assert marker.finished_at is not None
    assert marker.users_total == 2


def test_second_pass_in_same_month_is_a_noop() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset()
    scheduler = VoucherResetScheduler(factory, reset, timeout_secs=5)

    scheduler.run_reset_pass(FIRST_OF_APRIL)
    again = scheduler.run_reset_pass(datetime(2025, 4, 1, 13, 0))

    assert again.skipped
    assert again.reason == "already_reset"
    assert sorted(reset.calls) == [1, 2]


def test_marker_survives_scheduler_restart() -> None:
    factory = make_factory()
    seed_cards(factory)
    first = RecordingReset()
    VoucherResetScheduler(factory, first, timeout_secs=5).run_reset_pass(FIRST_OF_APRIL)

    restarted = RecordingReset()
    result = VoucherResetScheduler(factory, restarted, timeout_secs=5).run_reset_pass(
        datetime(2025, 4, 1, 6, 0)
    )

    assert result.reason == "already_reset"
    assert restarted.calls == []


def test_next_month_runs_again() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset()
    scheduler = VoucherResetScheduler(factory, reset, timeout_secs=5)

    scheduler.run_reset_pass(FIRST_OF_APRIL)
    may = scheduler.run_reset_pass(datetime(2025, 5, 1, 0, 5))

    assert not may.skipped
    assert sorted(reset.calls) == [1, 1, 2, 2]
    assert sorted(m.month_key for m in markers(factory)) == ["2025-04", "2025-05"]


def test_concurrent_passes_reset_each_user_once() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset()
    scheduler = VoucherResetScheduler(factory, reset, timeout_secs=5)
    results = []
    start = threading.Barrier(4)

    def trigger():
        start.wait()
        results.append(scheduler.run_reset_pass(FIRST_OF_APRIL))

    threads = [threading.Thread(target=trigger) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(reset.calls) == [1, 2]
    assert sum(1 for r in results if not r.skipped) == 1
    assert all(r.reason == "already_reset" for r in results if r.skipped)


def test_failing_user_does_not_stop_the_batch() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset(fail_for={1})

    result = VoucherResetScheduler(factory, reset, timeout_secs=5).run_reset_pass(
        FIRST_OF_APRIL
    )

    assert sorted(reset.calls) == [1, 2]
    outcomes = {o.user_id: o for o in result.outcomes}
    assert not outcomes[1].ok
    assert "reset failed for 1" in outcomes[1].error
    assert outcomes[2].ok
    (marker,) = markers(factory)
    assert marker.users_failed == 1


def test_hung_user_times_out_and_pass_moves_on() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset(hang_for={1})

    try:
        result = VoucherResetScheduler(factory, reset, timeout_secs=0.1).run_reset_pass(
            FIRST_OF_APRIL
        )
    finally:
        reset.release.set()

    outcomes = {o.user_id: o for o in result.outcomes}
    assert not outcomes[1].ok
    assert "timed out" in outcomes[1].error
    assert outcomes[2].ok
    assert result.users_failed == 1


def test_manual_trigger_runs_mid_month_but_still_dedupes() -> None:
    factory = make_factory()
    seed_cards(factory)
    reset = RecordingReset()
    scheduler = VoucherResetScheduler(factory, reset, timeout_secs=5)

    first = scheduler.run_reset_pass(datetime(2025, 4, 17, 9, 0), require_first_day=False)
    second = scheduler.run_reset_pass(datetime(2025, 4, 18, 9, 0), require_first_day=False)

    assert not first.skipped
    assert second.reason == "already_reset"
    assert sorted(reset.calls) == [1, 2]


def test_default_reset_restores_voucher_limits() -> None:
    factory = make_factory()
    seed_cards(factory)
    now = datetime(2025, 4, 1, 10, 0)
    with factory() as session:
        food = Category(user_id=1, name="Food", type=TransactionType.expense)
        session.add(food)
        session.flush()
        voucher = session.scalar(select(Card).where(Card.user_id == 1))
        session.add(
            Transaction(
                user_id=1,
                card_id=voucher.id,
                occurred_at=datetime(2025, 4, 1, 9, 0),
                type=TransactionType.expense,
                amount_cents=12500,
                category_id=food.id,
            )
        )
        session.commit()
        voucher_id = voucher.id

    result = VoucherResetScheduler(factory, timeout_secs=5).run_reset_pass(now)

    outcomes = {o.user_id: o for o in result.outcomes}
    assert outcomes[1].ok and outcomes[1].cards_reset == 1
    with factory() as session:
        card = session.get(Card, voucher_id)
        assert LimitReconciler(session, 1).compute_available(card, now) == 60000


def test_marker_timestamps_use_local_clock(monkeypatch) -> None:
    factory = make_factory()
    seed_cards(factory)
    local = datetime(2025, 4, 1, 0, 6)
    monkeypatch.setattr(reset_scheduler, "local_now", lambda: local)

    VoucherResetScheduler(factory, RecordingReset(), timeout_secs=5).run_reset_pass(
        FIRST_OF_APRIL
    )

    (marker,) = markers(factory)
    assert marker.started_at == local
    assert marker.finished_at == local
