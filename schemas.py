import datetime as dt
import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from models import NotifyEvent, TransactionType

logger = logging.getLogger(__name__)


def parse_amount(value: Any) -> float:
    """Strict amount parsing: accepts numbers and "12,50"/"1.234,50 €" style text."""
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, (int, float, Decimal)):
        amount = float(value)
    else:
        clean = str(value).strip().replace("€", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = float(Decimal(clean))
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    if math.isnan(amount) or math.isinf(amount):
        raise ValueError("Invalid amount")
    return amount


def safe_amount(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return parse_amount(value)
    except ValueError:
        logger.warning(f"amount_coerced: value={value!r} fallback=0")
        return 0.0


def first_of_month(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        value = value.date()
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 7:
            text = f"{text}-01"
        value = dt.date.fromisoformat(text[:10])
    if not isinstance(value, dt.date):
        raise ValueError("Invalid month")
    return value.replace(day=1)


def _id_text(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


RecordId = Annotated[str, BeforeValidator(_id_text)]


class Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Transaction(Record):
    id: RecordId
    user_id: RecordId = ""
    amount: float = 0.0
    type: TransactionType
    category_id: Optional[RecordId] = None
    date: dt.date
    note: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> float:
        return safe_amount(value)

    @property
    def month_key(self) -> str:
        return f"{self.date.year:04d}-{self.date.month:02d}"

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Category(Record):
    id: RecordId
    name: str = Field(..., min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None
    is_system: bool = False
    user_id: Optional[RecordId] = None


class Tag(Record):
    id: RecordId
    user_id: RecordId = ""
    name: str
    color: str = ""
    created_at: Optional[dt.datetime] = None


class TransactionTag(Record):
    transaction_id: RecordId
    tag_id: RecordId


class Budget(Record):
    id: RecordId
    user_id: RecordId = ""
    month: dt.date
    category_id: Optional[RecordId] = None
    amount: float = 0.0
    alert_threshold: float = 0.8
    alert_sent: bool = False

    @field_validator("month", mode="before")
    @classmethod
    def _normalize_month(cls, value: Any) -> dt.date:
        return first_of_month(value)

    @field_validator("amount", "alert_threshold", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> float:
        return safe_amount(value)

    @property
    def month_key(self) -> str:
        return f"{self.month.year:04d}-{self.month.month:02d}"


class Receipt(Record):
    id: RecordId
    transaction_id: RecordId
    file_name: str
    file_path: str
    file_size: Optional[int] = None
    content_type: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: float = Field(..., gt=0)
    type: TransactionType
    category_id: str = Field(..., min_length=1)
    date: dt.date
    note: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> float:
        return parse_amount(value)

    @field_validator("note")
    @classmethod
    def _blank_note(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = "💰"
    color: str = Field("#3b82f6", max_length=9)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field("#3b82f6", max_length=9)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class BudgetIn(BaseModel):
    month: dt.date
    category_id: Optional[RecordId] = None
    amount: float = Field(..., gt=0)
    alert_threshold: float = Field(0.8, ge=0, le=1)

    @field_validator("month", mode="before")
    @classmethod
    def _normalize_month(cls, value: Any) -> dt.date:
        return first_of_month(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> float:
        return parse_amount(value)

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CSVRow(BaseModel):
    date: dt.date
    type: TransactionType
    amount: float
    category: str
    note: Optional[str]
    tags: list[str] = Field(default_factory=list)


class BudgetAlertIn(BaseModel):
    budget_id: str
    user_email: str = Field(..., min_length=3)
    category_id: Optional[RecordId] = None
    amount: float
    spent: float
    percentage: float


class TransactionSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: RecordId
    amount: float
    type: str
    category_id: Optional[RecordId] = None
    date: str
    note: Optional[str] = None


class TransactionNotifyIn(BaseModel):
    event: NotifyEvent
    transaction: TransactionSnapshot
    user_email: Optional[str] = None
