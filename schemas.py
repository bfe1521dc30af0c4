from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from errors import MalformedTimestampError
from models import CategoryScope, GraphPeriod, TransactionType
from timestamps import TimestampNormalizer


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _lenient_instant(value: object) -> Optional[datetime]:
    try:
        return TimestampNormalizer().normalize(value)
    except MalformedTimestampError:
        return None


class SavingsPlanIn(CamelModel):
    month: str = Field(..., min_length=1, max_length=20)
    year: str = Field(..., min_length=1, max_length=4)
    fixed_income: float = Field(..., allow_inf_nan=False)
    fixed_costs: float = Field(..., allow_inf_nan=False)
    savings_percentage: float = Field(..., ge=0, le=100, allow_inf_nan=False)

    @field_validator("year", mode="before")
    @classmethod
    def year_as_text(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class SavingsPlanUpdate(CamelModel):
    fixed_income: Optional[float] = Field(default=None, allow_inf_nan=False)
    fixed_costs: Optional[float] = Field(default=None, allow_inf_nan=False)
    savings_percentage: Optional[float] = Field(
        default=None, ge=0, le=100, allow_inf_nan=False
    )


class ExpenseIn(CamelModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    category: str = Field(..., min_length=1, max_length=100)
    date: str = Field(..., min_length=1, max_length=64)


class TransactionIn(CamelModel):
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    description: Optional[str] = Field(default=None, max_length=500)
    payment_method: Optional[str] = Field(default=None, max_length=50)


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=2, max_length=50)
    icon: str = Field(..., min_length=1, max_length=50)
    color: str = Field(..., min_length=1, max_length=9)
    type: TransactionType = TransactionType.expense


class SpendingEntry(CamelModel):
    date: str
    amount: float
    category: str


class SavingsPlanOut(CamelModel):
    id: str
    user_id: str
    month: str
    year: str
    fixed_income: float
    fixed_costs: float
    savings_percentage: float
    current_spending: float = 0
    daily_spending_limit: float
    progress: float = 0
    spending_history: list[SpendingEntry] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def normalize_instants(cls, value: object) -> Optional[datetime]:
        return _lenient_instant(value)


class TransactionOut(CamelModel):
    id: str
    user_id: str
    type: TransactionType
    category: Optional[str] = None
    amount: float
    description: Optional[str] = ""
    payment_method: Optional[str] = "Other"
    created_at: datetime


class CategoryOut(CamelModel):
    id: str
    user_id: str
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    type: TransactionType
    scope: CategoryScope
    created_at: Optional[datetime] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def normalize_created_at(cls, value: object) -> Optional[datetime]:
        return _lenient_instant(value)


class GraphOut(CamelModel):
    period: GraphPeriod
    dates: list[str]
    income_data: list[float]
    expense_data: list[float]
    total_income: float
    total_expenses: float


class CategoryTotal(CamelModel):
    category: str
    amount: float
    count: int
    percentage: float
    icon: Optional[str] = None
    color: Optional[str] = None


class CategorySummaryOut(CamelModel):
    categories: list[CategoryTotal]
    total_expenses: float
    category_count: int


class CategoryTransactions(CamelModel):
    category: str
    total_amount: float
    transaction_count: int
    transactions: list[TransactionOut]


class CategoryTransactionsOut(CamelModel):
    category_spending: list[CategoryTransactions]
    total_categories: int
    total_transactions: int
    total_spending: float


class DailySpending(CamelModel):
    date: str
    total_amount: float
    transactions: list[TransactionOut]


class DailySpendingOut(CamelModel):
    daily_spending: list[DailySpending]
    total_transactions: int
    total_spending: float
    range_from: datetime
    range_to: datetime


class TransactionOverviewOut(CamelModel):
    available_balance: float
    total_income: float
    total_expenses: float
    transaction_count: int
    category_count: int
    category_summary: list[CategoryTotal]
