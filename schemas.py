import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import FlowType, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    currency: str = Field(..., min_length=1, max_length=10)
    initial_balance: Decimal = Decimal("0")

    @field_validator("name", "currency")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)
    initial_balance: Optional[Decimal] = None


class CurrencyRenameIn(BaseModel):
    old_code: str = Field(..., min_length=1)
    new_code: str = Field(..., min_length=2, max_length=10)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: FlowType
    parent_id: Optional[int] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[FlowType] = None
    parent_id: Optional[int] = None


class PayeeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    default_category_id: Optional[int] = None
    default_payment_type: Optional[int] = None


class PayeeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    default_category_id: Optional[int] = None
    default_payment_type: Optional[int] = None


class TransactionIn(BaseModel):
    """Creation payload: an unsigned magnitude plus a type deciding the sign."""

    type: TransactionType
    account_id: int
    amount: Decimal = Field(..., gt=0)
    date: dt.date
    payee: Optional[str] = None
    memo: Optional[str] = None
    category_id: Optional[int] = None
    payment_type: Optional[int] = None
    target_account_id: Optional[int] = None
    target_amount: Optional[Decimal] = Field(default=None, gt=0)


class TransactionUpdate(BaseModel):
    """Update payload: ``amount`` is already signed for plain transactions."""

    date: Optional[dt.date] = None
    payee: Optional[str] = None
    amount: Optional[Decimal] = None
    category_id: Optional[int] = None
    payment_type: Optional[int] = None
    memo: Optional[str] = None
    account_id: Optional[int] = None
    target_account_id: Optional[int] = None
    target_amount: Optional[Decimal] = Field(default=None, gt=0)


class TransferIn(BaseModel):
    source_account_id: int
    target_account_id: int
    amount: Decimal = Field(..., gt=0)
    target_amount: Optional[Decimal] = Field(default=None, gt=0)
    date: dt.date
    memo: Optional[str] = None


class DuplicateCandidate(BaseModel):
    date: str
    payee: str = ""
    amount: Decimal


class DuplicateCheckIn(BaseModel):
    candidates: list[DuplicateCandidate]
    date_format: Optional[str] = None


class PayeeCandidate(BaseModel):
    name: str


class PayeeDuplicateCheckIn(BaseModel):
    candidates: list[PayeeCandidate]


class TransactionImportIn(BaseModel):
    csv_data: str = Field(..., min_length=1)
    account_id: int
    skip_duplicates: bool = False
    date_format: Optional[str] = None


class PayeeImportIn(BaseModel):
    csv_data: str = Field(..., min_length=1)
    skip_duplicates: bool = False


class ExportFilters(BaseModel):
    ids: Optional[list[int]] = None
    account_id: Optional[int] = None
    date_from: Optional[dt.date] = None
    date_to: Optional[dt.date] = None
    category_id: Optional[int] = None
    payee: Optional[str] = None
    date_format: Optional[str] = None
    decimal_separator: str = Field(default=",", min_length=1, max_length=1)


class ExportRequest(ExportFilters):
    grouped: bool = False
    record: bool = False
    filename: Optional[str] = Field(default=None, max_length=255)


class ManifestIn(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    count: int = Field(..., ge=0)
    content: str
    transaction_ids: Optional[list[int]] = None


class SettingIn(BaseModel):
    value: str


class HomeBankRow(BaseModel):
    model_config = ConfigDict(extra="forbid")

    line: int
    date: dt.date
    payment_type: int = 0
    payee: str = ""
    memo: str = ""
    amount: Decimal
    category: str = ""


class CategoryCSVRow(BaseModel):
    level: int
    type: FlowType
    name: str


class PayeeCSVRow(BaseModel):
    name: str
    category: str = ""
    payment_name: str = ""
