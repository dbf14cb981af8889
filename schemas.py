import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer


class ExpenseIn(BaseModel):
    amount: Decimal
    currency_code: str = Field(..., max_length=10)
    name: str = Field(..., max_length=200)
    description: str = Field(default="", max_length=2000)
    date: Optional[dt.date] = None
    category_id: Optional[str] = None


class ExpenseUpdate(BaseModel):
    """Partial update; only fields present in ``model_fields_set`` are applied."""

    amount: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("amount", "expense")
    )
    currency_code: Optional[str] = Field(default=None, max_length=10)
    name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    date: Optional[dt.date] = None
    category_id: Optional[str] = None


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount: Decimal
    currency_code: str
    name: str
    description: str
    date: dt.date
    category_id: Optional[str] = None

    @field_serializer("amount")
    def _amount_as_number(self, value: Decimal) -> float:
        return float(value)


class PaginatedExpensesOut(BaseModel):
    expenses: list[ExpenseOut]
    total_count: int
    current_page: int
    total_pages: int
    limit: int


class MonthlyExpensesOut(BaseModel):
    expenses: list[ExpenseOut]
    total_amount: int


class LastExpensesOut(BaseModel):
    total_expenses_last_7_days: float
    total_expenses_last_30_days: float


class CSVUploadOut(BaseModel):
    success_count: int
    error_count: int
    errors: list[str]


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field(default="", max_length=9)
    icon_name: str = Field(default="", max_length=64)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    icon_name: Optional[str] = Field(default=None, max_length=64)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    color: str
    icon_name: str


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class TagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str


class InfoOut(BaseModel):
    version: str
    python_version: str
    server_env: str
