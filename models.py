from datetime import date, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

MONEY = Numeric(18, 4)


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class FlowType(str, Enum):
    income = "income"
    expense = "expense"
    neutral = "neutral"


# HomeBank category type codes
FLOW_TYPE_CODES = {
    FlowType.income: "+",
    FlowType.expense: "-",
    FlowType.neutral: " ",
}


class PaymentMethod(IntEnum):
    none = 0
    credit_card = 1
    check = 2
    cash = 3
    internal_transfer = 4
    debit_card = 6
    standing_order = 7
    electronic_payment = 8
    deposit = 9
    fee = 10
    direct_debit = 11


PAYMENT_METHOD_NAMES = {
    PaymentMethod.none: "None",
    PaymentMethod.credit_card: "Credit Card",
    PaymentMethod.check: "Check",
    PaymentMethod.cash: "Cash",
    PaymentMethod.internal_transfer: "Bank Transfer (Internal)",
    PaymentMethod.debit_card: "Debit Card",
    PaymentMethod.standing_order: "Standing Order",
    PaymentMethod.electronic_payment: "Electronic Payment",
    PaymentMethod.deposit: "Deposit",
    PaymentMethod.fee: "Fee",
    PaymentMethod.direct_debit: "Direct Debit",
}


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    initial_balance: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0")
    )


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[FlowType] = mapped_column(SAEnum(FlowType), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id"
    )


class Payee(Base):
    __tablename__ = "payees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    default_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    default_payment_type: Mapped[Optional[int]] = mapped_column(Integer)

    default_category: Mapped[Optional["Category"]] = relationship("Category")


class ExportManifest(Base):
    __tablename__ = "export_manifests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    payee: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    payment_type: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    memo: Mapped[str] = mapped_column(Text, nullable=False, default="")
    transfer_id: Mapped[Optional[str]] = mapped_column(String(64))
    exported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    export_manifest_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("export_manifests.id", ondelete="SET NULL")
    )

    account: Mapped["Account"] = relationship("Account")
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_transfer", "transfer_id"),
    )


class Setting(Base):
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
