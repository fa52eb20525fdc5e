import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
from database import Base

# Money columns: twelve digits, two of them after the decimal point.
MONEY = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BudgetPeriod(str, enum.Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    email = Column(String(100), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    budgets = relationship("Budget", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)


class Budget(Base):
    __tablename__ = "budgets"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)  # category, e.g. 'Food'
    amount = Column(MONEY, nullable=False)
    period = Column(Enum(BudgetPeriod, name="budget_period"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="budgets")
    transactions = relationship("Transaction", back_populates="budget", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_budgets_amount_non_negative"),
        Index("ix_budgets_user", "user_id"),
    )


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    budget_id = Column(Integer, ForeignKey("budgets.id", ondelete="SET NULL"), nullable=True)
    amount = Column(MONEY, nullable=False)
    occurred_at = Column(DateTime, default=utcnow, nullable=False)
    description = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="transactions")
    budget = relationship("Budget", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
        Index("ix_transactions_user_budget", "user_id", "budget_id"),
    )
