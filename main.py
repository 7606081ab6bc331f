import logging
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import CardsError, InvalidInput, Unauthorized
from limits import AdjustmentEmitter, LimitReconciler
from models import TransactionType
from periods import Period, local_now, resolve_period
from scheduler import SchedulerManager, VoucherResetScheduler
from schemas import (
    AvailableLimitIn,
    BankAccountIn,
    BankAccountOut,
    BudgetIn,
    BudgetStatusOut,
    CardIn,
    CardOut,
    CardUpdateIn,
    CategoryIn,
    CategoryOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    BankAccountService,
    BudgetService,
    CardService,
    CategoryService,
    TransactionFilters,
    TransactionService,
)
from sessions import user_id_from_token
from vouchers import CardTypeNormalizer, VoucherResetService


logger = logging.getLogger(__name__)

app = FastAPI(title="Card Limits")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


def get_voucher_reset() -> VoucherResetScheduler:
    return scheduler_manager.voucher_reset


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()
    else:
        logger.info("Scheduler disabled by configuration")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(CardsError)
async def cards_error_handler(request: Request, exc: CardsError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"storage_failure: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=500,
        content={"error": {"kind": "storage_failure", "message": "Storage failure"}},
    )


def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Missing bearer token")
    return user_id_from_token(token.strip())


def require_scheduler_token(
    x_scheduler_token: Optional[str] = Header(default=None),
) -> None:
    expected = get_settings().scheduler_secret
    supplied = x_scheduler_token or ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise Unauthorized("Invalid scheduler token")


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    return TransactionFilters(
        type=txn_type,
        card_id=_int_param(request, "card"),
        bank_account_id=_int_param(request, "account"),
        category_id=_int_param(request, "category"),
        query=request.query_params.get("q"),
    )


def _card_out(card, available_cents: Optional[int] = None) -> dict:
    out = CardOut.model_validate(card)
    out.available_cents = available_cents
    return out.model_dump(mode="json")


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/categories")
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    categories = CategoryService(db, user_id).list_all()
    return [CategoryOut.model_validate(c).model_dump(mode="json") for c in categories]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    category = CategoryService(db, user_id).create(payload)
    return CategoryOut.model_validate(category).model_dump(mode="json")


@app.get("/api/cards")
def list_cards(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    cards = CardService(db, user_id).list_all()
    reconciler = LimitReconciler(db, user_id)
    return [
        _card_out(card, available)
        for card, available in reconciler.cards_with_available(cards)
    ]


@app.post("/api/cards", status_code=201)
def create_card(
    payload: CardIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    card = CardService(db, user_id).create(payload)
    logger.info(f"card_created: user_id={user_id} card_id={card.id} type={card.card_type.value}")
    return _card_out(card, LimitReconciler(db, user_id).compute_available(card))


@app.post("/api/cards/normalize-types")
def normalize_card_types(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    updates = CardTypeNormalizer(db).normalize_all(user_id=user_id)
    return {
        "updated": [
            {
                "card_id": u.card_id,
                "name": u.name,
                "old_type": u.old_type.value,
                "new_type": u.new_type.value,
            }
            for u in updates
        ]
    }


@app.post("/api/cards/voucher-reset")
def reset_my_vouchers(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    resets = VoucherResetService(db, user_id).reset()
    return {
        "reset": [
            {
                "card_id": r.card_id,
                "card_name": r.card_name,
                "reset_cents": r.reset_cents,
                "entry_id": r.entry_id,
            }
            for r in resets
        ]
    }


@app.get("/api/cards/{card_id}")
def get_card(
    card_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    card = CardService(db, user_id).get(card_id)
    return _card_out(card, LimitReconciler(db, user_id).compute_available(card))


@app.patch("/api/cards/{card_id}")
def update_card(
    card_id: int,
    payload: CardUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    card = CardService(db, user_id).update(card_id, payload)
    return _card_out(card, LimitReconciler(db, user_id).compute_available(card))


@app.delete("/api/cards/{card_id}", status_code=204)
def delete_card(
    card_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    CardService(db, user_id).delete(card_id)
    logger.info(f"card_deleted: user_id={user_id} card_id={card_id}")


@app.get("/api/cards/{card_id}/available")
def card_available(
    card_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    card = CardService(db, user_id).get(card_id)
    available = LimitReconciler(db, user_id).compute_available(card)
    return {
        "card_id": card.id,
        "limit_cents": card.limit_cents,
        "available_cents": available,
        "used_cents": card.limit_cents - available,
    }


@app.put("/api/cards/{card_id}/available-limit")
def declare_available_limit(
    card_id: int,
    payload: AvailableLimitIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    result = AdjustmentEmitter(db, user_id).reconcile(card_id, payload.available_cents)
    return {
        "card_id": result.card_id,
        "computed_cents": result.computed_cents,
        "declared_cents": result.declared_cents,
        "drift_cents": result.drift_cents,
        "adjusted": result.adjusted,
        "adjustment_id": result.adjustment_id,
        "available_cents": result.available_cents,
    }


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    period = period_from_request(request)
    filters = filters_from_request(request)
    page = max(_int_param(request, "page") or 1, 1)
    limit = min(max(_int_param(request, "limit") or 50, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(
        period, filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [TransactionOut.model_validate(t).model_dump(mode="json") for t in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).create(payload)
    return TransactionOut.model_validate(txn).model_dump(mode="json")


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).get(transaction_id)
    return TransactionOut.model_validate(txn).model_dump(mode="json")


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    TransactionService(db, user_id).soft_delete(transaction_id)


def _account_out(service: BankAccountService, account) -> dict:
    out = BankAccountOut.model_validate(account)
    out.balance_cents = service.balance_cents(account)
    return out.model_dump(mode="json")


@app.get("/api/bank-accounts")
def list_bank_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    service = BankAccountService(db, user_id)
    return [_account_out(service, a) for a in service.list_all()]


@app.post("/api/bank-accounts", status_code=201)
def create_bank_account(
    payload: BankAccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BankAccountService(db, user_id)
    account = service.create(payload)
    logger.info(f"bank_account_created: user_id={user_id} account_id={account.id}")
    return _account_out(service, account)


@app.get("/api/bank-accounts/{account_id}")
def get_bank_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BankAccountService(db, user_id)
    return _account_out(service, service.get(account_id))


@app.delete("/api/bank-accounts/{account_id}", status_code=204)
def delete_bank_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    BankAccountService(db, user_id).delete(account_id)


@app.get("/api/budgets")
def list_budgets(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    today = local_now()
    year = _int_param(request, "year") or today.year
    month = _int_param(request, "month") or today.month
    if not 1 <= month <= 12:
        raise InvalidInput("month must be between 1 and 12")
    statuses = BudgetService(db, user_id).list_for_month(year, month)
    return [BudgetStatusOut.model_validate(s).model_dump(mode="json") for s in statuses]


@app.post("/api/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    budget = service.create(payload)
    return BudgetStatusOut.model_validate(service.status(budget)).model_dump(mode="json")


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    BudgetService(db, user_id).delete(budget_id)


@app.post("/api/scheduler/voucher-reset", dependencies=[Depends(require_scheduler_token)])
def trigger_voucher_reset(
    voucher_reset: VoucherResetScheduler = Depends(get_voucher_reset),
):
    result = voucher_reset.run_reset_pass(local_now(), require_first_day=False)
    return result.to_dict()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
