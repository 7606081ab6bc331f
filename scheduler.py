import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from models import ResetMarker
from periods import local_now, month_key
from services import voucher_card_owner_ids
from vouchers import VoucherResetService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

UserReset = Callable[[int, datetime], object]


@dataclass(frozen=True)
class UserResetOutcome:
    user_id: int
    ok: bool
    cards_reset: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class ResetPassResult:
    month_key: str
    skipped: bool
    reason: Optional[str] = None
    outcomes: tuple[UserResetOutcome, ...] = ()

    @property
    def users_total(self) -> int:
        return len(self.outcomes)

    @property
    def users_failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)

    def to_dict(self) -> dict[str, object]:
        return {
            "month": self.month_key,
            "skipped": self.skipped,
            "reason": self.reason,
            "users_total": self.users_total,
            "users_failed": self.users_failed,
            "users": [
                {
                    "user_id": o.user_id,
                    "ok": o.ok,
                    "cards_reset": o.cards_reset,
                    "error": o.error,
                }
                for o in self.outcomes
            ],
        }


class ResetMarkerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> Optional[ResetMarker]:
        return self.session.scalar(
            select(ResetMarker).where(ResetMarker.month_key == key)
        )

    def claim(self, key: str) -> bool:
        """Insert the month's marker row; False if another pass already holds it."""
        if self.get(key):
            return False
        self.session.add(ResetMarker(month_key=key, started_at=local_now()))
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            return False
        return True

    def finish(self, key: str, users_total: int, users_failed: int) -> None:
        marker = self.get(key)
        if not marker:
            return
        marker.finished_at = local_now()
        marker.users_total = users_total
        marker.users_failed = users_failed


class VoucherResetScheduler:
    """Runs the food-voucher reset pass at most once per calendar month.

    The month is claimed through a persisted ``ResetMarker`` row, so the guard
    survives restarts. Within a process the whole pass holds a lock, so
    concurrent triggers cannot both pass the guard. A user whose reset fails or
    times out is not retried until the next month. A timed-out reset is not
    cancelled: its worker thread may still commit after the marker is finished.
    Marker timestamps use the same local clock as the month key.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        reset_user: Optional[UserReset] = None,
        timeout_secs: Optional[float] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.reset_user = reset_user or self._reset_user_vouchers
        if timeout_secs is None:
            timeout_secs = get_settings().reset_timeout_secs
        self.timeout_secs = timeout_secs
        self._lock = threading.Lock()

    def run_reset_pass(
        self, now: Optional[datetime] = None, *, require_first_day: bool = True
    ) -> ResetPassResult:
        now = now or local_now()
        key = month_key(now)
        if require_first_day and now.day != 1:
            logger.info(f"reset_pass: month={key} skipped=not_first_day day={now.day}")
            return ResetPassResult(month_key=key, skipped=True, reason="not_first_day")

        with self._lock:
            with session_scope(self.session_factory) as session:
                claimed = ResetMarkerStore(session).claim(key)
                user_ids = voucher_card_owner_ids(session) if claimed else []
            if not claimed:
                logger.info(f"reset_pass: month={key} skipped=already_reset")
                return ResetPassResult(
                    month_key=key, skipped=True, reason="already_reset"
                )

            logger.info(f"reset_pass: month={key} users={len(user_ids)}")
            outcomes = tuple(self._run_for_user(user_id, now) for user_id in user_ids)
            result = ResetPassResult(month_key=key, skipped=False, outcomes=outcomes)
            with session_scope(self.session_factory) as session:
                ResetMarkerStore(session).finish(
                    key, result.users_total, result.users_failed
                )
        logger.info(
            f"reset_pass: month={key} done users={result.users_total} "
            f"failed={result.users_failed}"
        )
        return result

    def _run_for_user(self, user_id: int, now: datetime) -> UserResetOutcome:
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.reset_user, user_id, now)
        try:
            resets = future.result(timeout=self.timeout_secs)
        except FutureTimeoutError:
            logger.error(
                f"reset_pass_user_timeout: user_id={user_id} "
                f"timeout_secs={self.timeout_secs}"
            )
            return UserResetOutcome(
                user_id=user_id,
                ok=False,
                error=f"timed out after {self.timeout_secs}s",
            )
        except Exception as exc:
            logger.error(f"reset_pass_user_failed: user_id={user_id} error={exc}")
            return UserResetOutcome(user_id=user_id, ok=False, error=str(exc))
        finally:
            executor.shutdown(wait=False)
        cards_reset = len(resets) if isinstance(resets, list) else 0
        logger.info(f"reset_pass_user: user_id={user_id} cards={cards_reset}")
        return UserResetOutcome(user_id=user_id, ok=True, cards_reset=cards_reset)

    def _reset_user_vouchers(self, user_id: int, now: datetime) -> list:
        with session_scope(self.session_factory) as session:
            return VoucherResetService(session, user_id).reset(now)


class SchedulerManager:
    def __init__(self, voucher_reset: Optional[VoucherResetScheduler] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.voucher_reset = voucher_reset or VoucherResetScheduler()

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        result = self.voucher_reset.run_reset_pass()
        logger.info(
            f"scheduler_run: source={source} month={result.month_key} "
            f"skipped={result.skipped} users={result.users_total}"
        )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(day=1, hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["monthly_day1_00:05"],
            id="voucher_reset_monthly",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="voucher_reset_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly day-1 00:05 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
