from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from models import BudgetPeriod

Money = Annotated[Decimal, Field(max_digits=12, decimal_places=2)]
NonNegativeMoney = Annotated[Decimal, Field(ge=0, max_digits=12, decimal_places=2)]
BudgetName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]


class CamelModel(BaseModel):
    """JSON uses camelCase keys; snake_case is accepted on input too."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

# ------------------ User Schemas ------------------

class UserCreate(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    email: str = Field(..., min_length=3, max_length=100)
    password: str = Field(..., min_length=1, max_length=128)

class LoginIn(CamelModel):
    email: str = Field(..., max_length=100)
    password: str = Field(..., max_length=128)

class SessionOut(CamelModel):
    user_id: int
    email: str

class Ack(CamelModel):
    ok: bool = True

# ------------------ Budget Schemas ------------------

class BudgetCreate(CamelModel):
    name: BudgetName
    amount: NonNegativeMoney
    period: BudgetPeriod

class BudgetUpdate(CamelModel):
    name: Optional[BudgetName] = None
    amount: Optional[NonNegativeMoney] = None
    period: Optional[BudgetPeriod] = None

class BudgetOut(CamelModel):
    id: int
    user_id: int
    name: str
    amount: Decimal
    period: BudgetPeriod
    created_at: datetime
    updated_at: datetime

class BudgetSummary(CamelModel):
    budget_id: int
    allocated: Decimal
    spent: Decimal
    remaining: Decimal
    transaction_count: int

# ------------------ Transaction Schemas ------------------

class TransactionCreate(CamelModel):
    amount: Money
    budget_id: Optional[int] = None
    description: Optional[str] = Field("", max_length=200)
    occurred_at: Optional[datetime] = None

class TransactionUpdate(CamelModel):
    amount: Optional[Money] = None
    budget_id: Optional[int] = None
    description: Optional[str] = Field(None, max_length=200)
    occurred_at: Optional[datetime] = None

class TransactionOut(CamelModel):
    id: int
    user_id: int
    budget_id: Optional[int] = None
    amount: Decimal
    occurred_at: datetime
    description: Optional[str] = ""
    created_at: datetime
    updated_at: datetime
