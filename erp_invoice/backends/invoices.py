"""MCP backend for invoice numbering, totals and payment tracking."""
from __future__ import annotations

import json
import logging
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Literal

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import ValidationError

from ..utils.config import get_default_series, writes_enabled
from ..utils.logging import record_write_attempt
from .finalizer import (
    FinalizeError,
    InvoiceFinalizer,
    InvoiceLockedError,
    InvoiceStateError,
    compute_financials,
)
from .invoices_models import (
    Address,
    CustomerSnapshot,
    DisplayStatus,
    Invoice,
    InvoiceMetadata,
    LineItem,
    Payment,
    PaymentMethod,
    TaxInfo,
)
from .invoices_storage import (
    FileInvoiceStore,
    FileSequenceProvider,
    build_index,
    ensure_structure,
    get_invoice_root,
    load_index,
    save_index,
    with_index_lock,
)

_LOGGER = logging.getLogger("erp_invoice.backends.invoices")

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


class WritesDisabled(RuntimeError):
    """Raised when write operations are attempted while disabled."""


def _require_writes_enabled() -> None:
    if not writes_enabled():
        raise WritesDisabled(
            "Write-capable tools are disabled. Set MCP_ENABLE_WRITES=1 to allow writes."
        )


def _finalizer(root: Path | None = None) -> InvoiceFinalizer:
    return InvoiceFinalizer(FileSequenceProvider(root), FileInvoiceStore(root))


def _refresh_index() -> None:
    with with_index_lock():
        save_index(build_index())


def _invoice_result(invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoice": invoice.model_dump(mode="json"),
        "display_status": invoice.display_status(),
        "invoice_path": str(FileInvoiceStore().path_for(invoice.id)),
        "index_path": str(get_invoice_root() / "index.json"),
    }


def _normalize_sort(sort_by: str | None, direction: str | None) -> tuple[str, str]:
    allowed_sort = {"issue_date", "customer", "number", "total"}
    normalized_sort = sort_by if sort_by in allowed_sort else "issue_date"
    normalized_direction = direction if direction in {"asc", "desc"} else "desc"
    return normalized_sort, normalized_direction


def coerce_total(entry: dict) -> Decimal:
    """Convert an index entry's ``total`` field to a Decimal safely."""

    try:
        return Decimal(str(entry.get("total", 0) or 0))
    except (TypeError, ValueError, ArithmeticError):
        return Decimal("0")


def _page_window(limit: int | None, offset: int | None) -> tuple[int, int]:
    """Validate paging arguments; ``limit`` is capped at MAX_LIST_LIMIT."""

    values = {}
    for name, raw, default, minimum in (
        ("limit", limit, DEFAULT_LIST_LIMIT, 1),
        ("offset", offset, 0, 0),
    ):
        try:
            value = default if raw is None else int(raw)
        except (TypeError, ValueError) as exc:
            raise ToolError(f"{name} must be an integer") from exc
        if value < minimum:
            raise ToolError(f"{name} must be >= {minimum}")
        values[name] = value

    return min(values["limit"], MAX_LIST_LIMIT), values["offset"]


def get_invoice(invoice_id: str) -> Invoice:
    """Load an invoice by id with consistent error handling."""

    normalized_id = str(invoice_id).strip() if invoice_id is not None else ""
    if not normalized_id:
        raise ToolError("invoice_id is required")

    try:
        return FileInvoiceStore().load(normalized_id)
    except FileNotFoundError as exc:
        raise ToolError(f"Invoice {normalized_id} not found") from exc
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ToolError(f"Invoice {normalized_id} is invalid") from exc


def _entry_display_status(entry: dict, today: date) -> str:
    status = str(entry.get("payment_status", ""))
    if status in ("pending", "partial"):
        try:
            due = date.fromisoformat(str(entry.get("due_date")))
        except ValueError:
            return status
        if due < today:
            return "overdue"
    return status


def _sort_index_entries(entries: list[dict], sort_by: str, direction: str) -> list[dict]:
    key_funcs = {
        "issue_date": lambda entry: (
            str(entry.get("issue_date", "")),
            str(entry.get("number", "")),
        ),
        "customer": lambda entry: (
            str(entry.get("customer", "")).lower(),
            str(entry.get("number", "")),
        ),
        "number": lambda entry: (str(entry.get("number", "")),),
        "total": lambda entry: (
            coerce_total(entry),
            str(entry.get("number", "")),
        ),
    }

    key_func = key_funcs.get(sort_by, key_funcs["issue_date"])
    reverse = direction == "desc"
    return sorted(entries, key=key_func, reverse=reverse)


def _filter_index_entries(
    entries: list[dict],
    *,
    today: date,
    account_id: str | None = None,
    status: str | None = None,
    payment_status: DisplayStatus | None = None,
    customer_query: str | None = None,
    issue_date_from: date | None = None,
    issue_date_to: date | None = None,
    include_deleted: bool = False,
) -> list[dict]:
    filtered: list[dict] = []
    for entry in entries:
        if entry.get("is_deleted") and not include_deleted:
            continue
        if account_id and entry.get("account_id") != account_id:
            continue
        if status and entry.get("status") != status:
            continue
        if payment_status and _entry_display_status(entry, today) != payment_status:
            continue

        if customer_query:
            haystack = f"{entry.get('customer', '')} {entry.get('customer_tax_id', '')}"
            if customer_query.lower() not in haystack.lower():
                continue

        issue_date_value = None
        if issue_date_from or issue_date_to:
            try:
                issue_date_value = date.fromisoformat(str(entry.get("issue_date")))
            except ValueError:
                continue

        if issue_date_from and issue_date_value and issue_date_value < issue_date_from:
            continue
        if issue_date_to and issue_date_value and issue_date_value > issue_date_to:
            continue

        filtered.append(entry)
    return filtered


def _parse_iso_date(value: str | None, field_name: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ToolError(f"Invalid {field_name}: expected YYYY-MM-DD") from exc


def list_invoices_impl(
    *,
    account_id: str | None = None,
    status: str | None = None,
    payment_status: DisplayStatus | None = None,
    customer_query: str | None = None,
    issue_date_from: str | None = None,
    issue_date_to: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    offset: int = 0,
    sort_by: str | None = None,
    direction: str | None = None,
    include_total_count: bool = True,
    include_deleted: bool = False,
) -> Dict[str, Any]:
    """List invoice summaries from index.json with filters and pagination."""

    index = load_index()
    entries: list[dict] = index.get("invoices", []) if index else []
    today = date.today()

    date_from = _parse_iso_date(issue_date_from, "issue_date_from")
    date_to = _parse_iso_date(issue_date_to, "issue_date_to")

    filtered = _filter_index_entries(
        entries,
        today=today,
        account_id=account_id,
        status=status,
        payment_status=payment_status,
        customer_query=customer_query,
        issue_date_from=date_from,
        issue_date_to=date_to,
        include_deleted=include_deleted,
    )

    normalized_sort, normalized_dir = _normalize_sort(sort_by, direction)
    sorted_entries = _sort_index_entries(filtered, normalized_sort, normalized_dir)

    safe_limit, safe_offset = _page_window(limit, offset)
    end = safe_offset + safe_limit

    page = sorted_entries[safe_offset:end]
    summaries = [
        {
            "id": entry.get("id"),
            "number": entry.get("number"),
            "account_id": entry.get("account_id"),
            "customer_name": entry.get("customer"),
            "issue_date": entry.get("issue_date"),
            "due_date": entry.get("due_date"),
            "currency": entry.get("currency"),
            "total": entry.get("total"),
            "paid_amount": entry.get("paid_amount"),
            "status": entry.get("status"),
            "payment_status": _entry_display_status(entry, today),
            "is_deleted": bool(entry.get("is_deleted", False)),
        }
        for entry in page
    ]

    has_more = end < len(filtered)

    return {
        "invoices": summaries,
        "total_count": len(filtered) if include_total_count else None,
        "limit": safe_limit,
        "offset": safe_offset,
        "has_more": has_more,
        "next_offset": end if has_more else None,
        "sort": {"by": normalized_sort, "direction": normalized_dir},
        "filters": {
            "account_id": account_id,
            "status": status,
            "payment_status": payment_status,
            "customer_query": customer_query,
            "issue_date_from": issue_date_from,
            "issue_date_to": issue_date_to,
            "include_deleted": include_deleted,
        },
    }


def compute_invoice_totals_impl(items: list[LineItem]) -> Dict[str, Any]:
    """Preview per-line and document totals without touching storage."""

    lines = [
        {
            "product_name": item.product_name,
            "subtotal": str(item.subtotal),
            "discount": str(item.discount_amount),
            "total": str(item.total),
        }
        for item in items
    ]
    return {
        "lines": lines,
        "financial": compute_financials(items).model_dump(mode="json"),
    }


def create_invoice_impl(invoice: Invoice) -> Dict[str, Any]:
    """Number, total and persist a new invoice, then refresh the index."""

    _require_writes_enabled()
    record_write_attempt("create_invoice", details={"account_id": invoice.account_id})
    ensure_structure()

    if "series" not in invoice.model_fields_set:
        invoice = invoice.model_copy(update={"series": get_default_series()})

    try:
        created = _finalizer().finalize(invoice)
    except FinalizeError as exc:
        raise ToolError(str(exc)) from exc

    _refresh_index()
    return _invoice_result(created)


def update_invoice_draft_impl(invoice_id: str, invoice: Invoice) -> Dict[str, Any]:
    """Replace the content of a draft invoice and recompute its totals."""

    _require_writes_enabled()
    record_write_attempt("update_invoice_draft", details={"invoice_id": invoice_id})

    existing = get_invoice(invoice_id)

    if existing.status != "draft":
        raise ToolError(
            f"Cannot edit invoice {invoice_id}: status is '{existing.status}'. "
            "Only drafts (status='draft') can be edited."
        )

    if invoice.number is not None and invoice.number != existing.number:
        raise ToolError(
            "Draft edits cannot change number. "
            f"Expected '{existing.number}', got '{invoice.number}'."
        )

    if invoice.account_id != existing.account_id:
        raise ToolError(
            "Draft edits cannot change account_id. "
            f"Expected '{existing.account_id}', got '{invoice.account_id}'."
        )

    if invoice.status != "draft":
        raise ToolError(
            "Draft edits must keep status='draft'. "
            f"Received status '{invoice.status}'."
        )

    if invoice.payment.status != existing.payment.status:
        raise ToolError(
            "Draft edits cannot change payment status. "
            f"Expected '{existing.payment.status}', got '{invoice.payment.status}'."
        )

    try:
        updated = _finalizer().update_draft(existing, invoice)
    except (InvoiceLockedError, InvoiceStateError) as exc:
        raise ToolError(str(exc)) from exc

    _refresh_index()
    return _invoice_result(updated)


def finalize_invoice_impl(invoice_id: str) -> Dict[str, Any]:
    """Lock a draft so its content can no longer change."""

    _require_writes_enabled()
    record_write_attempt("finalize_invoice", details={"invoice_id": invoice_id})

    return _run_invoice_operation(
        invoice_id, lambda finalizer, invoice: finalizer.lock(invoice)
    )


def _run_invoice_operation(invoice_id: str, operation) -> Dict[str, Any]:
    invoice = get_invoice(invoice_id)
    try:
        updated = operation(_finalizer(), invoice)
    except (InvoiceLockedError, InvoiceStateError, IndexError) as exc:
        raise ToolError(f"Invoice {invoice_id}: {exc}") from exc
    _refresh_index()
    return _invoice_result(updated)


def record_payment_impl(invoice_id: str, payment: Payment) -> Dict[str, Any]:
    _require_writes_enabled()
    record_write_attempt(
        "record_payment", details={"invoice_id": invoice_id, "amount": str(payment.amount)}
    )
    return _run_invoice_operation(
        invoice_id, lambda finalizer, invoice: finalizer.record_payment(invoice, payment)
    )


def mark_invoice_paid_impl(
    invoice_id: str,
    method: PaymentMethod | None = None,
    reference: str | None = None,
) -> Dict[str, Any]:
    _require_writes_enabled()
    record_write_attempt("mark_invoice_paid", details={"invoice_id": invoice_id})
    return _run_invoice_operation(
        invoice_id,
        lambda finalizer, invoice: finalizer.mark_as_paid(
            invoice, method=method, reference=reference
        ),
    )


def reverse_payment_impl(
    invoice_id: str, payment_index: int, reason: str | None = None
) -> Dict[str, Any]:
    _require_writes_enabled()
    record_write_attempt(
        "reverse_payment", details={"invoice_id": invoice_id, "index": payment_index}
    )
    return _run_invoice_operation(
        invoice_id,
        lambda finalizer, invoice: finalizer.reverse_payment(invoice, payment_index, reason),
    )


def cancel_invoice_impl(invoice_id: str, reason: str | None = None) -> Dict[str, Any]:
    _require_writes_enabled()
    record_write_attempt("cancel_invoice", details={"invoice_id": invoice_id})
    return _run_invoice_operation(
        invoice_id, lambda finalizer, invoice: finalizer.cancel(invoice, reason)
    )


def delete_invoice_impl(invoice_id: str, reason: str | None = None) -> Dict[str, Any]:
    """Soft-delete an unpaid draft; the JSON document is kept."""

    _require_writes_enabled()
    record_write_attempt("delete_invoice", details={"invoice_id": invoice_id})
    return _run_invoice_operation(
        invoice_id, lambda finalizer, invoice: finalizer.delete(invoice, reason)
    )


def clone_invoice_impl(invoice_id: str) -> Dict[str, Any]:
    """Copy an invoice into a new, freshly numbered draft issued today."""

    _require_writes_enabled()
    record_write_attempt("clone_invoice", details={"source": invoice_id})

    finalizer = _finalizer()
    source = get_invoice(invoice_id)
    try:
        created = finalizer.finalize(finalizer.clone(source))
    except FinalizeError as exc:
        raise ToolError(str(exc)) from exc

    _refresh_index()
    result = _invoice_result(created)
    result["cloned_from"] = source.id
    return result


def get_invoice_statistics_impl(
    account_id: str,
    issue_date_from: str | None = None,
    issue_date_to: str | None = None,
) -> Dict[str, Any]:
    normalized_account = str(account_id).strip() if account_id is not None else ""
    if not normalized_account:
        raise ToolError("account_id is required")

    date_from = _parse_iso_date(issue_date_from, "issue_date_from")
    date_to = _parse_iso_date(issue_date_to, "issue_date_to")

    try:
        stats = _finalizer().get_statistics(normalized_account, date_from, date_to)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ToolError("Invoice storage contains an invalid document") from exc

    return {
        "account_id": normalized_account,
        "issue_date_from": issue_date_from,
        "issue_date_to": issue_date_to,
        "statistics": stats.model_dump(mode="json"),
    }


def preview_invoice_number_impl(series: str | None = None) -> Dict[str, Any]:
    normalized = (series or get_default_series()).strip().upper()
    if not normalized.isalpha():
        raise ToolError("series must contain letters only")
    return {
        "series": normalized,
        "next_number": _finalizer().peek_next_number(normalized),
        "sequence_path": str(get_invoice_root() / "sequence.json"),
    }


def _example_invoice() -> Invoice:
    return Invoice(
        series="FAC",
        account_id="acct-0001",
        customer=CustomerSnapshot(
            name="Distribuciones Norte S.L.",
            tax_id="B12345678",
            email="facturas@norte.example",
            phone="+34 910 000 000",
            address=Address(
                street="Calle Mayor 1",
                city="Madrid",
                state="Madrid",
                postal_code="28013",
                country="ES",
            ),
        ),
        issue_date=date(2025, 1, 15),
        payment_terms="30_days",
        items=[
            LineItem(
                product_name="ERP module: Inventory",
                sku="MOD-INV",
                quantity=Decimal("2"),
                unit_price=Decimal("100"),
                discount=Decimal("10"),
                tax=TaxInfo(type="IVA", rate=Decimal("21")),
            ),
            LineItem(
                product_name="Onboarding session",
                quantity=Decimal("1"),
                unit="hour",
                unit_price=Decimal("50"),
                tax=TaxInfo(type="IVA", rate=Decimal("21")),
            ),
        ],
        notes="Thank you for your business.",
    )


def register(server: FastMCP) -> None:
    """Register invoice tools."""

    @server.tool()
    def compute_invoice_totals(items: list[LineItem]) -> Dict[str, Any]:
        """Compute line, tax-group and document totals for a list of line items.

        Read-only: nothing is numbered or stored. Taxes are grouped by
        (type, rate) in first-seen order; group bases use post-discount line totals.
        """

        return compute_invoice_totals_impl(items)

    @server.tool()
    def list_invoices(
        account_id: str | None = None,
        status: str | None = None,
        payment_status: DisplayStatus | None = None,
        customer_query: str | None = None,
        issue_date_from: str | None = None,
        issue_date_to: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        sort_by: str | None = None,
        direction: str | None = None,
        include_total_count: bool = True,
        include_deleted: bool = False,
    ) -> Dict[str, Any]:
        """Read-only listing of invoice summaries with filters/pagination.

        payment_status accepts 'overdue', which matches pending/partial invoices past due.
        Soft-deleted invoices are hidden unless include_deleted is true.
        """
        return list_invoices_impl(
            account_id=account_id,
            status=status,
            payment_status=payment_status,
            customer_query=customer_query,
            issue_date_from=issue_date_from,
            issue_date_to=issue_date_to,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            direction=direction,
            include_total_count=include_total_count,
            include_deleted=include_deleted,
        )

    @server.tool(name="get_invoice")
    def get_invoice_tool(invoice_id: str) -> Dict[str, Any]:
        """Read a full invoice JSON payload by id (read-only)."""

        invoice = get_invoice(invoice_id)
        payload = invoice.model_dump(mode="json")
        payload["display_status"] = invoice.display_status()
        return payload

    @server.tool()
    def create_invoice(invoice: Invoice) -> Dict[str, Any]:
        """Create a numbered invoice from a draft payload.

        The backend assigns `id`, `number` and `sequential_number` from the
        per-series counter, computes all financial fields and starts the
        payment in 'pending'. Client-provided values for these fields are ignored.
        metadata.source defaults to 'api'.
        """

        update: Dict[str, Any] = {
            "id": None,
            "number": None,
            "sequential_number": None,
            "is_deleted": False,
            "deleted_at": None,
        }
        if "metadata" not in invoice.model_fields_set:
            update["metadata"] = InvoiceMetadata(source="api")
        return create_invoice_impl(invoice.model_copy(update=update))

    @server.tool()
    def update_invoice_draft(invoice_id: str, invoice: Invoice) -> Dict[str, Any]:
        """Replace the content of a draft invoice; totals are recomputed.

        Number, account, status and payment history are kept from the stored invoice.
        """

        return update_invoice_draft_impl(invoice_id, invoice)

    @server.tool()
    def finalize_invoice(invoice_id: str) -> Dict[str, Any]:
        """Move a draft to status 'final'. Final invoices cannot be edited."""

        return finalize_invoice_impl(invoice_id)

    @server.tool()
    def record_payment(invoice_id: str, payment: Payment) -> Dict[str, Any]:
        """Append a payment; status becomes 'paid' once paid_amount >= total, else 'partial'."""

        return record_payment_impl(invoice_id, payment)

    @server.tool()
    def mark_invoice_paid(
        invoice_id: str,
        method: PaymentMethod | None = None,
        reference: str | None = None,
    ) -> Dict[str, Any]:
        """Record a payment for the outstanding balance of an invoice."""

        return mark_invoice_paid_impl(invoice_id, method, reference)

    @server.tool()
    def reverse_payment(
        invoice_id: str, payment_index: int, reason: str | None = None
    ) -> Dict[str, Any]:
        """Correct a payment by appending a negated entry; history is never deleted."""

        return reverse_payment_impl(invoice_id, payment_index, reason)

    @server.tool()
    def cancel_invoice(invoice_id: str, reason: str | None = None) -> Dict[str, Any]:
        """Cancel a pending or partially paid invoice."""

        return cancel_invoice_impl(invoice_id, reason)

    @server.tool()
    def delete_invoice(invoice_id: str, reason: str | None = None) -> Dict[str, Any]:
        """Soft-delete a draft with no payments; it disappears from listings and statistics."""

        return delete_invoice_impl(invoice_id, reason)

    @server.tool()
    def clone_invoice(invoice_id: str) -> Dict[str, Any]:
        """Create a new numbered invoice with the same content, issued today."""

        return clone_invoice_impl(invoice_id)

    @server.tool()
    def get_invoice_statistics(
        account_id: str,
        issue_date_from: str | None = None,
        issue_date_to: str | None = None,
    ) -> Dict[str, Any]:
        """Totals, paid, pending and overdue amounts for one account (inclusive date range)."""

        return get_invoice_statistics_impl(account_id, issue_date_from, issue_date_to)

    @server.tool()
    def preview_invoice_number(series: str | None = None) -> Dict[str, Any]:
        """Show the number the next invoice in `series` would get, without consuming it."""

        return preview_invoice_number_impl(series)

    @server.tool()
    def get_invoice_template(
        kind: Literal["invoice", "line_item"] = "invoice",
    ) -> Dict[str, Any]:
        """Return an example payload for create_invoice (or a single line item).

        - series: 1-10 letters; numbers look like FAC2025-00001.
        - tax.type: IVA (VAT), IRPF (withholding) or RE (equivalence surcharge); tax.rate in percent.
        - discount: percent between 0 and 100, applied per line before tax.
        - due_date may be omitted; it is derived from payment_terms unless 'custom'.
        """

        example = _example_invoice()
        if kind == "line_item":
            return example.items[0].model_dump(mode="json")
        return example.model_dump(mode="json", exclude={"id", "number", "sequential_number"})


__all__ = [
    "WritesDisabled",
    "cancel_invoice_impl",
    "clone_invoice_impl",
    "compute_invoice_totals_impl",
    "create_invoice_impl",
    "delete_invoice_impl",
    "finalize_invoice_impl",
    "get_invoice",
    "get_invoice_statistics_impl",
    "list_invoices_impl",
    "mark_invoice_paid_impl",
    "preview_invoice_number_impl",
    "record_payment_impl",
    "register",
    "reverse_payment_impl",
    "update_invoice_draft_impl",
]
