from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountTag, Frequency, TransactionType


class RecurringObligationIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=200)
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    reminder_enabled: bool = False
    reminder_days_before: int = Field(default=3, ge=0, le=60)

    @model_validator(mode="after")
    def _end_not_before_start(self) -> "RecurringObligationIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class LedgerTransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    account_tag: AccountTag = AccountTag.current


class BudgetPeriodIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    limit_cents: int = Field(..., ge=0)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    icon: str = Field(default="tag", max_length=40)
    is_template: bool = False


class BudgetCopyIn(BaseModel):
    user_id: int
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)


class BudgetPeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    category: str
    limit_cents: int
    spent_cents: int
    month: int
    year: int
    icon: str
    is_template: bool


@dataclass(frozen=True)
class DueObligation:
    id: int
    user_id: int
    amount_cents: int
    type: TransactionType
    category: str
    description: str
    frequency: Frequency
    start_date: date
    end_date: Optional[date]
    next_occurrence: date


@dataclass(frozen=True)
class MaterializedOccurrence:
    obligation_id: int
    transaction_id: int
    user_id: int
    amount_cents: int
    type: TransactionType
    occurrence_date: date


@dataclass(frozen=True)
class ObligationError:
    obligation_id: int
    message: str


@dataclass
class ProcessingReport:
    success: list[MaterializedOccurrence] = field(default_factory=list)
    expired: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    dead_lettered: list[int] = field(default_factory=list)
    errors: list[ObligationError] = field(default_factory=list)

    @property
    def posted_count(self) -> int:
        return len(self.success)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RolloverResult:
    status: str  # "transferred" | "zero" | "skipped"
    amount_cents: int
    main_balance_cents: int
    current_balance_cents: int
    rolled_over_at: datetime
    message: str


@dataclass
class MonthEndReport:
    user_id: int
    rollover: Optional[RolloverResult] = None
    budgets: Optional[list[BudgetPeriodOut]] = None
    recurring: Optional[ProcessingReport] = None
    errors: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and not self.errors
