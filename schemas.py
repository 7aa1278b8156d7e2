import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    is_recurring: bool = False
    description: str = Field(default="", max_length=200)


class TransactionUpdateIn(BaseModel):
    """Partial update; only fields that were explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    is_recurring: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=200)


class CSVRow(BaseModel):
    date: date
    account: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category: Optional[str] = None
    is_recurring: bool = False
    description: str = ""
