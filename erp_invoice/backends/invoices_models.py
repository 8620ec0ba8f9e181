"""Pydantic models for invoice handling."""
from __future__ import annotations

import re
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

TaxCategory = Literal["IVA", "IRPF", "RE"]
InvoiceType = Literal["invoice", "credit_note", "debit_note", "proforma", "recurring"]
PaymentStatus = Literal["pending", "partial", "paid", "cancelled"]
DisplayStatus = Literal["pending", "partial", "paid", "overdue", "cancelled"]
InvoiceSource = Literal["manual", "api", "import", "recurring"]
PaymentMethod = Literal[
    "cash", "transfer", "card", "paypal", "stripe", "direct_debit", "check", "other"
]
PaymentTerms = Literal[
    "immediate", "15_days", "30_days", "45_days", "60_days", "90_days", "custom"
]

ZERO = Decimal("0")
HUNDRED = Decimal("100")

_PAYMENT_TERM_DAYS: dict[str, int] = {
    "immediate": 0,
    "15_days": 15,
    "30_days": 30,
    "45_days": 45,
    "60_days": 60,
    "90_days": 90,
}

_SERIES_PATTERN = re.compile(r"^[A-Z]{1,10}$")


def _model_config() -> ConfigDict:
    return ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="forbid",
    )


class TaxInfo(BaseModel):
    model_config = _model_config()

    type: TaxCategory = "IVA"
    rate: Decimal  # percent, e.g. 21 for 21%


class LineItem(BaseModel):
    model_config = _model_config()

    product_name: str = Field(max_length=256)
    sku: str | None = Field(default=None, max_length=64)
    description: str | None = Field(default=None, max_length=512)
    quantity: Decimal = Field(ge=0)
    unit: str = Field(default="unit", max_length=32)
    unit_price: Decimal = Field(ge=0)
    discount: Decimal = Field(default=ZERO, ge=0, le=100)
    tax: TaxInfo

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def discount_amount(self) -> Decimal:
        return self.subtotal * (self.discount / HUNDRED)

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount_amount


class TaxGroup(BaseModel):
    model_config = _model_config()

    type: TaxCategory
    rate: Decimal
    base: Decimal = ZERO
    amount: Decimal = ZERO


class FinancialSummary(BaseModel):
    model_config = _model_config()

    subtotal: Decimal = ZERO
    total_discount: Decimal = ZERO
    tax_base: Decimal = ZERO
    taxes: list[TaxGroup] = Field(default_factory=list)
    total_tax: Decimal = ZERO
    total: Decimal = ZERO


class Payment(BaseModel):
    model_config = _model_config()

    date: date
    amount: Decimal  # negative for reversal entries
    method: PaymentMethod | None = None
    reference: str | None = Field(default=None, max_length=256)
    notes: str | None = Field(default=None, max_length=1000)
    reverses: int | None = Field(default=None, ge=0)


class BankAccount(BaseModel):
    model_config = _model_config()

    iban: str | None = Field(default=None, max_length=34)
    swift: str | None = Field(default=None, max_length=11)
    bank_name: str | None = Field(default=None, max_length=128)


class PaymentInfo(BaseModel):
    model_config = _model_config()

    method: PaymentMethod = "transfer"
    status: PaymentStatus = "pending"
    paid_amount: Decimal = ZERO
    payments: list[Payment] = Field(default_factory=list)
    bank_account: BankAccount | None = None


class Address(BaseModel):
    model_config = _model_config()

    street: str | None = Field(default=None, max_length=256)
    city: str | None = Field(default=None, max_length=128)
    state: str | None = Field(default=None, max_length=128)
    postal_code: str | None = Field(default=None, max_length=32)
    country: str = Field(default="ES", max_length=64)

    @property
    def full_address(self) -> str:
        parts = [self.street, self.city, self.state, self.postal_code, self.country]
        return ", ".join(part for part in parts if part)


class CustomerSnapshot(BaseModel):
    model_config = _model_config()

    customer_id: str | None = Field(default=None, max_length=64)
    name: str = Field(max_length=256)
    tax_id: str = Field(max_length=64)
    email: str | None = Field(default=None, max_length=256)
    phone: str | None = Field(default=None, max_length=64)
    address: Address = Field(default_factory=Address)


class HistoryEntry(BaseModel):
    model_config = _model_config()

    action: str = Field(max_length=64)
    date: date
    details: dict[str, Any] = Field(default_factory=dict)


class CustomField(BaseModel):
    model_config = _model_config()

    name: str = Field(max_length=64)
    value: Any = None


class InvoiceMetadata(BaseModel):
    model_config = _model_config()

    source: InvoiceSource = "manual"


class Invoice(BaseModel):
    model_config = _model_config()

    id: str | None = None
    status: Literal["draft", "final"] = "draft"

    number: str | None = None
    sequential_number: int | None = Field(default=None, ge=1)
    series: str = "FAC"
    type: InvoiceType = "invoice"

    account_id: str = Field(min_length=1, max_length=64)
    customer: CustomerSnapshot

    issue_date: date = Field(default_factory=date.today)
    due_date: date | None = None
    payment_terms: PaymentTerms = "30_days"

    items: list[LineItem] = Field(default_factory=list)
    financial: FinancialSummary = Field(default_factory=FinancialSummary)
    payment: PaymentInfo = Field(default_factory=PaymentInfo)

    currency: str = "EUR"
    notes: str | None = Field(default=None, max_length=2000)
    internal_notes: str | None = Field(default=None, max_length=2000)
    tags: list[str] = Field(default_factory=list)
    custom_fields: list[CustomField] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    metadata: InvoiceMetadata = Field(default_factory=InvoiceMetadata)

    is_deleted: bool = False
    deleted_at: date | None = None

    @field_validator("series", mode="before")
    def _normalize_series(cls, value: str):
        if isinstance(value, str):
            normalized = value.strip().upper()
            if not _SERIES_PATTERN.match(normalized):
                raise ValueError("series must be 1-10 letters (A-Z)")
            return normalized
        return value

    @model_validator(mode="after")
    def _derive_due_date(self) -> "Invoice":
        if self.due_date is None:
            days = _PAYMENT_TERM_DAYS.get(self.payment_terms)
            if days is None:
                raise ValueError("due_date is required when payment_terms is 'custom'")
            # bypass validate_assignment to avoid re-entering this validator
            self.__dict__["due_date"] = self.issue_date + timedelta(days=days)
        if self.due_date < self.issue_date:
            raise ValueError("due_date cannot be before issue_date")
        return self

    @property
    def outstanding(self) -> Decimal:
        return self.financial.total - self.payment.paid_amount

    def is_overdue(self, today: date | None = None) -> bool:
        if self.payment.status not in ("pending", "partial"):
            return False
        return self.due_date < (today or date.today())

    def display_status(self, today: date | None = None) -> DisplayStatus:
        if self.is_overdue(today):
            return "overdue"
        return self.payment.status

    def to_index_entry(self) -> dict[str, object]:
        return {
            "id": self.id,
            "number": self.number,
            "series": self.series,
            "type": self.type,
            "status": self.status,
            "account_id": self.account_id,
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "customer": self.customer.name,
            "customer_tax_id": self.customer.tax_id,
            "total": str(self.financial.total),
            "paid_amount": str(self.payment.paid_amount),
            "currency": self.currency,
            "payment_status": self.payment.status,
            "is_deleted": self.is_deleted,
        }


class InvoiceStatistics(BaseModel):
    model_config = _model_config()

    total_invoices: int = 0
    total_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    pending_amount: Decimal = ZERO
    overdue_amount: Decimal = ZERO


__all__ = [
    "Address",
    "BankAccount",
    "CustomField",
    "CustomerSnapshot",
    "DisplayStatus",
    "FinancialSummary",
    "HistoryEntry",
    "Invoice",
    "InvoiceMetadata",
    "InvoiceSource",
    "InvoiceStatistics",
    "InvoiceType",
    "LineItem",
    "Payment",
    "PaymentInfo",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentTerms",
    "TaxCategory",
    "TaxGroup",
    "TaxInfo",
]
