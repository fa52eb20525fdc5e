import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import errors, models, schemas
from config import get_settings
from database import atomic

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=get_settings().password_hash_rounds,
)

CENT = Decimal("0.01")
# Largest value a BIGINT primary key can hold.
MAX_ID = 2**63 - 1


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _owned(db: Session, model, user_id: int, obj_id: int, label: str):
    """Fetch a row the acting user owns.

    A row owned by someone else raises Forbidden, which carries the same
    message and status as a missing row.
    """
    if not 1 <= obj_id <= MAX_ID:
        raise errors.NotFound(f"{label} not found")
    row = db.get(model, obj_id)
    if row is None:
        raise errors.NotFound(f"{label} not found")
    if row.user_id != user_id:
        logger.warning(
            f"ownership_denied: user_id={user_id} {label.lower()}_id={obj_id} owner_id={row.user_id}"
        )
        raise errors.Forbidden(f"{label} not found")
    return row


def _reject_nulls(changes: dict, fields: tuple[str, ...]) -> None:
    for key in fields:
        if key in changes and changes[key] is None:
            raise errors.ValidationError(f"{key} cannot be null")

# ---------------------- USER ----------------------
def get_user(db: Session, user_id: int):
    return db.get(models.User, user_id)

def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == normalize_email(email)).first()

def create_user(db: Session, user: schemas.UserCreate):
    email = normalize_email(user.email)
    if "@" not in email:
        raise errors.ValidationError("Invalid email address")
    if get_user_by_email(db, email):
        raise errors.EmailTaken()
    db_user = models.User(name=user.name, email=email, password_hash=pwd_context.hash(user.password))
    try:
        with atomic(db):
            db.add(db_user)
    except IntegrityError as exc:
        # lost a race with a concurrent registration
        raise errors.EmailTaken() from exc
    db.refresh(db_user)
    return db_user

def authenticate_user(db: Session, email: str, password: str):
    user = get_user_by_email(db, email)
    if user is None:
        pwd_context.dummy_verify()
        return None
    if not pwd_context.verify(password, user.password_hash):
        return None
    return user

# ---------------------- BUDGET ----------------------
def list_budgets(db: Session, user_id: int):
    return db.query(models.Budget)\
        .filter(models.Budget.user_id == user_id)\
        .order_by(models.Budget.created_at, models.Budget.id)\
        .all()

def get_budget(db: Session, user_id: int, budget_id: int):
    return _owned(db, models.Budget, user_id, budget_id, "Budget")

def create_budget(db: Session, user_id: int, data: schemas.BudgetCreate):
    budget = models.Budget(user_id=user_id, name=data.name, amount=data.amount, period=data.period)
    with atomic(db):
        db.add(budget)
    db.refresh(budget)
    return budget

def update_budget(db: Session, user_id: int, budget_id: int, patch: schemas.BudgetUpdate):
    """Apply only the fields present in the patch."""
    changes = patch.model_dump(exclude_unset=True)
    _reject_nulls(changes, ("name", "amount", "period"))
    with atomic(db):
        budget = get_budget(db, user_id, budget_id)
        for key, value in changes.items():
            setattr(budget, key, value)
    db.refresh(budget)
    return budget

def delete_budget(db: Session, user_id: int, budget_id: int):
    """Delete a budget; its transactions stay, unlinked."""
    with atomic(db):
        budget = get_budget(db, user_id, budget_id)
        unlinked = db.query(models.Transaction)\
            .filter(models.Transaction.budget_id == budget.id)\
            .update({models.Transaction.budget_id: None}, synchronize_session="fetch")
        db.delete(budget)
    logger.info(f"budget_deleted: user_id={user_id} budget_id={budget_id} unlinked_transactions={unlinked}")

def budget_summary(db: Session, user_id: int, budget_id: int):
    budget = get_budget(db, user_id, budget_id)
    total, count = db.query(
        func.coalesce(func.sum(models.Transaction.amount), 0),
        func.count(models.Transaction.id),
    ).filter(
        models.Transaction.user_id == user_id,
        models.Transaction.budget_id == budget.id,
    ).one()
    allocated = Decimal(budget.amount).quantize(CENT)
    spent = Decimal(str(total)).quantize(CENT)
    return schemas.BudgetSummary(
        budget_id=budget.id,
        allocated=allocated,
        spent=spent,
        remaining=allocated - spent,
        transaction_count=count,
    )

# ---------------------- TRANSACTION ----------------------
@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    budget_id: Optional[int] = None

def list_transactions(db: Session, user_id: int, filters: Optional[TransactionFilters] = None):
    filters = filters or TransactionFilters()
    if filters.start and filters.end and filters.start > filters.end:
        raise errors.ValidationError("Start date must be before end date")
    query = db.query(models.Transaction).filter(models.Transaction.user_id == user_id)
    if filters.budget_id is not None:
        if not 1 <= filters.budget_id <= MAX_ID:
            return []
        query = query.filter(models.Transaction.budget_id == filters.budget_id)
    if filters.start:
        query = query.filter(models.Transaction.occurred_at >= datetime.combine(filters.start, time.min))
    if filters.end:
        end_exclusive = datetime.combine(filters.end + timedelta(days=1), time.min)
        query = query.filter(models.Transaction.occurred_at < end_exclusive)
    return query.order_by(models.Transaction.occurred_at.desc(), models.Transaction.id.desc()).all()

def get_transaction(db: Session, user_id: int, transaction_id: int):
    return _owned(db, models.Transaction, user_id, transaction_id, "Transaction")

def create_transaction(db: Session, user_id: int, data: schemas.TransactionCreate):
    txn = models.Transaction(
        user_id=user_id,
        budget_id=data.budget_id,
        amount=data.amount,
        description=data.description,
        occurred_at=_naive_utc(data.occurred_at) or models.utcnow(),
    )
    try:
        with atomic(db):
            if data.budget_id is not None:
                get_budget(db, user_id, data.budget_id)
            db.add(txn)
    except IntegrityError as exc:
        # budget deleted between the ownership check and the insert
        raise errors.NotFound("Budget not found") from exc
    db.refresh(txn)
    return txn

def update_transaction(db: Session, user_id: int, transaction_id: int, patch: schemas.TransactionUpdate):
    changes = patch.model_dump(exclude_unset=True)
    _reject_nulls(changes, ("amount", "occurred_at"))
    if "occurred_at" in changes:
        changes["occurred_at"] = _naive_utc(changes["occurred_at"])
    try:
        with atomic(db):
            txn = get_transaction(db, user_id, transaction_id)
            if changes.get("budget_id") is not None:
                get_budget(db, user_id, changes["budget_id"])
            for key, value in changes.items():
                setattr(txn, key, value)
    except IntegrityError as exc:
        raise errors.NotFound("Budget not found") from exc
    db.refresh(txn)
    return txn

def delete_transaction(db: Session, user_id: int, transaction_id: int):
    with atomic(db):
        txn = get_transaction(db, user_id, transaction_id)
        db.delete(txn)
