"""Invoice financial totals, document numbering and payment tracking."""
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional, Protocol

from .invoices_models import (
    ZERO,
    FinancialSummary,
    HistoryEntry,
    Invoice,
    InvoiceStatistics,
    LineItem,
    Payment,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    TaxGroup,
)

_LOGGER = logging.getLogger("erp_invoice.backends.finalizer")

HUNDRED = Decimal("100")


class FinalizeError(RuntimeError):
    """Raised when an invoice could not be numbered and persisted."""


class InvoiceLockedError(RuntimeError):
    """Raised when editing or recomputing a finalized invoice."""


class InvoiceStateError(RuntimeError):
    """Raised for operations the invoice's payment or deletion state does not allow."""


class SequenceProvider(Protocol):
    def next_value(self, key: str) -> int: ...

    def current_value(self, key: str) -> int: ...


class InvoiceRepository(Protocol):
    def load(self, invoice_id: str) -> Invoice: ...

    def save(self, invoice: Invoice) -> object: ...

    def query(
        self,
        *,
        account_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> Iterator[Invoice]: ...


def compute_financials(items: Iterable[LineItem]) -> FinancialSummary:
    """Aggregate line items into a document-level financial summary.

    Tax groups are keyed by ``(type, rate)`` and keep the order in which each
    key first appears. A group's base is the sum of its post-discount line
    totals. Input is trusted; nothing is validated or rounded here.
    """

    subtotal = ZERO
    total_discount = ZERO
    groups: dict[tuple[str, Decimal], TaxGroup] = {}

    for item in items:
        line_subtotal = item.subtotal
        line_discount = item.discount_amount
        line_total = line_subtotal - line_discount

        subtotal += line_subtotal
        total_discount += line_discount

        key = (item.tax.type, item.tax.rate)
        group = groups.get(key)
        if group is None:
            group = groups[key] = TaxGroup(type=item.tax.type, rate=item.tax.rate)
        group.base += line_total
        group.amount += line_total * (item.tax.rate / HUNDRED)

    taxes = list(groups.values())
    tax_base = subtotal - total_discount
    total_tax = sum((group.amount for group in taxes), ZERO)

    return FinancialSummary(
        subtotal=subtotal,
        total_discount=total_discount,
        tax_base=tax_base,
        taxes=taxes,
        total_tax=total_tax,
        total=tax_base + total_tax,
    )


def format_number(series: str, year: int, sequential_number: int) -> str:
    return f"{series}{year}-{sequential_number:05d}"


def is_overdue(invoice: Invoice, today: date | None = None) -> bool:
    """True for pending/partial invoices whose due date is strictly in the past."""

    return invoice.is_overdue(today)


def _status_after_payment(current: PaymentStatus, paid: Decimal, total: Decimal) -> PaymentStatus:
    if paid >= total:
        return "paid"
    if paid > ZERO:
        return "partial"
    return current


def _rederive_payment(payment: PaymentInfo, total: Decimal) -> PaymentInfo:
    """Recompute ``paid_amount`` and status from the full payment list.

    A cancelled invoice stays cancelled.
    """

    paid_amount = sum((entry.amount for entry in payment.payments), ZERO)
    status = payment.status
    if status != "cancelled":
        status = _status_after_payment("pending", paid_amount, total)
    return payment.model_copy(update={"paid_amount": paid_amount, "status": status})


def _ensure_payable(invoice: Invoice) -> None:
    if invoice.is_deleted:
        raise InvoiceStateError(f"Invoice {invoice.number} is deleted")
    if invoice.payment.status == "cancelled":
        raise InvoiceStateError(f"Invoice {invoice.number} is cancelled")


def record_payment(invoice: Invoice, payment: Payment, today: date | None = None) -> Invoice:
    """Append ``payment`` and derive the new payment status.

    ``paid`` is kept once reached and ``paid_amount`` is not capped at the
    invoice total. Returns a new invoice; ``invoice`` is left untouched.
    """

    _ensure_payable(invoice)
    if payment.amount < ZERO:
        raise InvoiceStateError(
            "Payment amounts must not be negative; use reverse_payment to correct a payment"
        )
    if payment.reverses is not None:
        raise InvoiceStateError("Only reverse_payment may create reversal entries")

    payments = [*invoice.payment.payments, payment]
    paid_amount = sum((entry.amount for entry in payments), ZERO)
    status = _status_after_payment(
        invoice.payment.status, paid_amount, invoice.financial.total
    )

    updated_payment = invoice.payment.model_copy(
        update={"payments": payments, "paid_amount": paid_amount, "status": status}
    )
    history = _with_history(
        invoice,
        "payment_recorded",
        today=today,
        amount=str(payment.amount),
        method=payment.method,
        reference=payment.reference,
        status=status,
    )
    return invoice.model_copy(update={"payment": updated_payment, "history": history})


def reverse_payment(
    invoice: Invoice, index: int, reason: str | None = None, today: date | None = None
) -> Invoice:
    """Append a compensating entry for the payment at ``index``.

    Payment history is append-only: the original entry stays and a negated
    copy referencing it is added. Unlike :func:`record_payment` the status is
    re-derived in full, so a fully reversed invoice goes back to ``pending``.
    """

    _ensure_payable(invoice)

    payments = invoice.payment.payments
    if index < 0 or index >= len(payments):
        raise IndexError(f"payment index {index} out of range")
    original = payments[index]
    if original.reverses is not None:
        raise InvoiceStateError("Reversal entries cannot be reversed")
    if any(entry.reverses == index for entry in payments):
        raise InvoiceStateError(f"Payment {index} has already been reversed")

    reversal = Payment(
        date=today or date.today(),
        amount=-original.amount,
        method=original.method,
        reference=original.reference,
        notes=reason,
        reverses=index,
    )
    entries = [*payments, reversal]
    updated_payment = _rederive_payment(
        invoice.payment.model_copy(update={"payments": entries}), invoice.financial.total
    )
    status = updated_payment.status
    history = _with_history(
        invoice,
        "payment_reversed",
        today=today,
        index=index,
        amount=str(reversal.amount),
        reason=reason,
        status=status,
    )
    return invoice.model_copy(update={"payment": updated_payment, "history": history})


def _with_history(
    invoice: Invoice, action: str, today: date | None = None, **details: object
) -> list[HistoryEntry]:
    entry = HistoryEntry(
        action=action,
        date=today or date.today(),
        details={key: value for key, value in details.items() if value is not None},
    )
    return [*invoice.history, entry]


class InvoiceFinalizer:
    """Numbering, persistence and payment workflow for invoices.

    The sequence provider must hand out unique values per series; this class
    does no locking of its own and never retries.
    """

    def __init__(
        self,
        sequence: SequenceProvider,
        store: InvoiceRepository,
        *,
        today: Callable[[], date] = date.today,
    ):
        self.sequence = sequence
        self.store = store
        self._today = today

    def today(self) -> date:
        return self._today()

    compute_financials = staticmethod(compute_financials)

    def assign_number(self, series: str) -> tuple[str, int]:
        sequential_number = self.sequence.next_value(series)
        number = format_number(series, self.today().year, sequential_number)
        return number, sequential_number

    def peek_next_number(self, series: str) -> str:
        upcoming = self.sequence.current_value(series) + 1
        return format_number(series, self.today().year, upcoming)

    def recompute(self, invoice: Invoice) -> Invoice:
        if invoice.status == "final":
            raise InvoiceLockedError(f"Invoice {invoice.number} is final")
        return invoice.model_copy(update={"financial": compute_financials(invoice.items)})

    def finalize(self, draft: Invoice) -> Invoice:
        """Number, total and persist a new invoice; all-or-nothing.

        A counter value consumed by a failed attempt is not reclaimed.
        """

        try:
            if draft.number or draft.sequential_number:
                raise ValueError(f"invoice already numbered as {draft.number}")
            if draft.is_deleted:
                raise ValueError("invoice is deleted")
            if not draft.items:
                raise ValueError("invoice has no line items")

            financial = compute_financials(draft.items)
            number, sequential_number = self.assign_number(draft.series)
            invoice = draft.model_copy(
                update={
                    "id": number,
                    "number": number,
                    "sequential_number": sequential_number,
                    "status": "draft",
                    "financial": financial,
                    "payment": PaymentInfo(
                        method=draft.payment.method,
                        bank_account=draft.payment.bank_account,
                    ),
                    "history": _with_history(
                        draft, "created", today=self.today(), number=number
                    ),
                }
            )
            self.store.save(invoice)
        except Exception as exc:
            _LOGGER.error(
                "invoice.finalize_failed series=%s account=%s error=%s",
                draft.series,
                draft.account_id,
                exc,
            )
            raise FinalizeError(f"Failed to finalize invoice: {exc}") from exc

        _LOGGER.info(
            "invoice.finalized number=%s account=%s total=%s",
            invoice.number,
            invoice.account_id,
            invoice.financial.total,
        )
        return invoice

    def update_draft(self, existing: Invoice, edited: Invoice) -> Invoice:
        """Replace the content of a draft, keeping identity and payments.

        The payment status is re-derived against the new total, so a paid
        invoice whose total grows drops back to ``partial``.
        """

        if existing.status != "draft":
            raise InvoiceLockedError(f"Invoice {existing.number} is final")
        if existing.is_deleted:
            raise InvoiceStateError(f"Invoice {existing.number} is deleted")

        merged = edited.model_copy(
            update={
                "id": existing.id,
                "number": existing.number,
                "sequential_number": existing.sequential_number,
                "account_id": existing.account_id,
                "series": existing.series,
                "status": existing.status,
                "payment": existing.payment,
                "metadata": existing.metadata,
                "is_deleted": existing.is_deleted,
                "deleted_at": existing.deleted_at,
                "history": _with_history(existing, "updated", today=self.today()),
            }
        )
        updated = self.recompute(merged)
        updated = updated.model_copy(
            update={"payment": _rederive_payment(updated.payment, updated.financial.total)}
        )
        self.store.save(updated)
        return updated

    def lock(self, invoice: Invoice) -> Invoice:
        if invoice.status == "final":
            return invoice
        if invoice.is_deleted:
            raise InvoiceStateError(f"Invoice {invoice.number} is deleted")
        locked = invoice.model_copy(
            update={
                "status": "final",
                "history": _with_history(invoice, "finalized", today=self.today()),
            }
        )
        self.store.save(locked)
        return locked

    def record_payment(self, invoice: Invoice, payment: Payment) -> Invoice:
        updated = record_payment(invoice, payment, today=self.today())
        self.store.save(updated)
        _LOGGER.info(
            "invoice.payment_recorded number=%s amount=%s status=%s",
            updated.number,
            payment.amount,
            updated.payment.status,
        )
        return updated

    def mark_as_paid(
        self,
        invoice: Invoice,
        *,
        method: Optional[PaymentMethod] = None,
        reference: str | None = None,
    ) -> Invoice:
        """Record a payment for the outstanding balance."""

        if invoice.payment.status == "paid":
            raise InvoiceStateError(f"Invoice {invoice.number} is already paid")
        payment = Payment(
            date=self.today(),
            amount=invoice.outstanding,
            method=method or invoice.payment.method,
            reference=reference,
        )
        return self.record_payment(invoice, payment)

    def reverse_payment(self, invoice: Invoice, index: int, reason: str | None = None) -> Invoice:
        updated = reverse_payment(invoice, index, reason, today=self.today())
        self.store.save(updated)
        _LOGGER.info(
            "invoice.payment_reversed number=%s index=%s status=%s",
            updated.number,
            index,
            updated.payment.status,
        )
        return updated

    def cancel(self, invoice: Invoice, reason: str | None = None) -> Invoice:
        if invoice.is_deleted:
            raise InvoiceStateError(f"Invoice {invoice.number} is deleted")
        if invoice.payment.status not in ("pending", "partial"):
            raise InvoiceStateError(
                f"Cannot cancel invoice {invoice.number}: "
                f"payment status is '{invoice.payment.status}'"
            )
        cancelled = invoice.model_copy(
            update={
                "payment": invoice.payment.model_copy(update={"status": "cancelled"}),
                "history": _with_history(
                    invoice, "cancelled", today=self.today(), reason=reason
                ),
            }
        )
        self.store.save(cancelled)
        return cancelled

    def delete(self, invoice: Invoice, reason: str | None = None) -> Invoice:
        """Soft-delete a draft that has no payments; the document stays on disk.

        Deleting an already deleted invoice returns it unchanged.
        """

        if invoice.is_deleted:
            return invoice
        if invoice.status == "final":
            raise InvoiceLockedError(f"Invoice {invoice.number} is final")
        if invoice.payment.payments:
            raise InvoiceStateError(
                f"Cannot delete invoice {invoice.number}: it has recorded payments"
            )
        today = self.today()
        deleted = invoice.model_copy(
            update={
                "is_deleted": True,
                "deleted_at": today,
                "history": _with_history(invoice, "deleted", today=today, reason=reason),
            }
        )
        self.store.save(deleted)
        _LOGGER.info("invoice.deleted number=%s", deleted.number)
        return deleted

    def is_overdue(self, invoice: Invoice) -> bool:
        return invoice.is_overdue(self.today())

    def clone(self, invoice: Invoice) -> Invoice:
        """Return an unsaved copy issued today, without identity or payments."""

        issue_date = self.today()
        term = invoice.due_date - invoice.issue_date
        return invoice.model_copy(
            update={
                "id": None,
                "number": None,
                "sequential_number": None,
                "status": "draft",
                "issue_date": issue_date,
                "due_date": issue_date + term,
                "payment": PaymentInfo(
                    method=invoice.payment.method,
                    bank_account=invoice.payment.bank_account,
                ),
                "history": [],
                "is_deleted": False,
                "deleted_at": None,
            },
            deep=True,
        )

    def get_statistics(
        self,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> InvoiceStatistics:
        today = self.today()
        stats = InvoiceStatistics()
        for invoice in self.store.query(
            account_id=account_id, date_from=date_from, date_to=date_to
        ):
            if invoice.is_deleted:
                continue
            total = invoice.financial.total
            stats.total_invoices += 1
            stats.total_amount += total
            stats.paid_amount += invoice.payment.paid_amount
            if invoice.payment.status == "pending":
                stats.pending_amount += total
                if invoice.due_date < today:
                    stats.overdue_amount += total
        return stats


__all__ = [
    "FinalizeError",
    "InvoiceFinalizer",
    "InvoiceLockedError",
    "InvoiceRepository",
    "InvoiceStateError",
    "SequenceProvider",
    "compute_financials",
    "format_number",
    "is_overdue",
    "record_payment",
    "reverse_payment",
]
