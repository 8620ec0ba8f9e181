#!/usr/bin/env python3
"""
Lightweight smoke test for erp-invoice-mcp.

Creates a sample invoice under a temp ERP_INVOICE_ROOT, records a partial
payment, rebuilds index.json and prints the resulting totals and statistics.
"""
from __future__ import annotations

import os
import sys
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from erp_invoice.backends.finalizer import InvoiceFinalizer
from erp_invoice.backends.invoices_models import (
    CustomerSnapshot,
    Invoice,
    LineItem,
    Payment,
    TaxInfo,
)
from erp_invoice.backends.invoices_storage import (
    FileInvoiceStore,
    FileSequenceProvider,
    build_index,
    ensure_structure,
    get_invoice_root,
    save_index,
)


def main() -> None:
    # Isolate into a temp directory unless ERP_INVOICE_ROOT is already set
    if "ERP_INVOICE_ROOT" not in os.environ:
        os.environ["ERP_INVOICE_ROOT"] = tempfile.mkdtemp(prefix="erp-invoice-smoke-")
    root = get_invoice_root()
    ensure_structure()

    finalizer = InvoiceFinalizer(FileSequenceProvider(), FileInvoiceStore())
    draft = Invoice(
        account_id="smoke-account",
        customer=CustomerSnapshot(name="ACME S.A.", tax_id="A00000000"),
        items=[
            LineItem(
                product_name="Consulting",
                quantity=Decimal("2"),
                unit_price=Decimal("100"),
                discount=Decimal("10"),
                tax=TaxInfo(type="IVA", rate=Decimal("21")),
            ),
            LineItem(
                product_name="Support",
                quantity=Decimal("1"),
                unit_price=Decimal("50"),
                tax=TaxInfo(type="IVA", rate=Decimal("21")),
            ),
        ],
    )

    invoice = finalizer.finalize(draft)
    invoice = finalizer.record_payment(
        invoice, Payment(date=date.today(), amount=Decimal("100"), method="transfer")
    )
    save_index(build_index())
    stats = finalizer.get_statistics("smoke-account")

    print(f"[smoke] ERP_INVOICE_ROOT={root}")
    print(f"[smoke] Invoice: {invoice.number} total={invoice.financial.total}")
    print(f"[smoke] Payment status: {invoice.payment.status} paid={invoice.payment.paid_amount}")
    print(f"[smoke] Statistics: {stats.model_dump(mode='json')}")
    print(f"[smoke] index.json: {root / 'index.json'}")
    print("[smoke] Done.")


if __name__ == "__main__":  # pragma: no cover
    main()
