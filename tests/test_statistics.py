import os
import sys
import tempfile
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from erp_invoice.backends.finalizer import InvoiceFinalizer, InvoiceStateError
from erp_invoice.backends.invoices_models import (
    CustomerSnapshot,
    Invoice,
    LineItem,
    Payment,
    TaxInfo,
)
from erp_invoice.backends.invoices_storage import FileInvoiceStore, FileSequenceProvider

TODAY = date(2026, 6, 15)


def _draft(account_id: str, issue_date: date, price: str, due_date: date | None = None) -> Invoice:
    return Invoice(
        account_id=account_id,
        customer=CustomerSnapshot(name="Cliente", tax_id="X0000000T"),
        issue_date=issue_date,
        due_date=due_date,
        items=[
            LineItem(
                product_name="Subscription",
                quantity=Decimal("1"),
                unit_price=Decimal(price),
                tax=TaxInfo(type="IVA", rate=Decimal("0")),
            )
        ],
    )


class StatisticsTests(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempdir.cleanup)

        self.invoice_root = Path(self.tempdir.name) / ".erp_invoice"
        self.env_patch = patch.dict(os.environ, {"ERP_INVOICE_ROOT": str(self.invoice_root)})
        self.env_patch.start()
        self.addCleanup(self.env_patch.stop)

        self.finalizer = InvoiceFinalizer(
            FileSequenceProvider(), FileInvoiceStore(), today=lambda: TODAY
        )

    def test_no_invoices_returns_zero_statistics(self):
        stats = self.finalizer.get_statistics("nobody")

        self.assertEqual(stats.total_invoices, 0)
        self.assertEqual(stats.total_amount, 0)
        self.assertEqual(stats.paid_amount, 0)
        self.assertEqual(stats.pending_amount, 0)
        self.assertEqual(stats.overdue_amount, 0)

    def test_aggregates_by_account_and_status(self):
        overdue = self.finalizer.finalize(
            _draft("acct-1", date(2026, 4, 1), "100", due_date=date(2026, 5, 1))
        )
        self.finalizer.finalize(_draft("acct-1", date(2026, 6, 1), "200"))
        partial = self.finalizer.finalize(_draft("acct-1", date(2026, 6, 2), "300"))
        self.finalizer.record_payment(
            partial, Payment(date=TODAY, amount=Decimal("120"), method="card")
        )
        self.finalizer.finalize(_draft("acct-2", date(2026, 6, 3), "999"))

        stats = self.finalizer.get_statistics("acct-1")

        self.assertEqual(overdue.display_status(TODAY), "overdue")
        self.assertEqual(stats.total_invoices, 3)
        self.assertEqual(stats.total_amount, Decimal("600"))
        self.assertEqual(stats.paid_amount, Decimal("120"))
        self.assertEqual(stats.pending_amount, Decimal("300"))
        self.assertEqual(stats.overdue_amount, Decimal("100"))

    def test_date_range_bounds_are_inclusive(self):
        self.finalizer.finalize(_draft("acct-1", date(2026, 5, 31), "1"))
        self.finalizer.finalize(_draft("acct-1", date(2026, 6, 1), "10"))
        self.finalizer.finalize(_draft("acct-1", date(2026, 6, 10), "100"))
        self.finalizer.finalize(_draft("acct-1", date(2026, 6, 11), "1000"))

        stats = self.finalizer.get_statistics("acct-1", date(2026, 6, 1), date(2026, 6, 10))

        self.assertEqual(stats.total_invoices, 2)
        self.assertEqual(stats.total_amount, Decimal("110"))

    def test_sequence_is_persisted_per_series(self):
        first = self.finalizer.finalize(_draft("acct-1", TODAY, "1"))
        second = self.finalizer.finalize(_draft("acct-1", TODAY, "1"))
        other = self.finalizer.finalize(
            _draft("acct-1", TODAY, "1").model_copy(update={"series": "REC"})
        )

        self.assertEqual(first.number, "FAC2026-00001")
        self.assertEqual(second.number, "FAC2026-00002")
        self.assertEqual(other.number, "REC2026-00001")
        self.assertEqual(FileSequenceProvider().current_value("FAC"), 2)
        self.assertTrue((self.invoice_root / "invoices" / "FAC2026-00002.json").is_file())

    def test_cancel_and_mark_paid_transitions(self):
        invoice = self.finalizer.finalize(_draft("acct-1", TODAY, "80"))

        paid = self.finalizer.mark_as_paid(invoice, reference="REF-1")
        self.assertEqual(paid.payment.status, "paid")
        self.assertEqual(paid.payment.paid_amount, Decimal("80"))
        with self.assertRaises(InvoiceStateError):
            self.finalizer.cancel(paid)

        other = self.finalizer.finalize(_draft("acct-1", TODAY, "40"))
        cancelled = self.finalizer.cancel(other, reason="duplicate")
        self.assertEqual(cancelled.payment.status, "cancelled")
        self.assertEqual(FileInvoiceStore().load(other.id).payment.status, "cancelled")
        with self.assertRaises(InvoiceStateError):
            self.finalizer.mark_as_paid(cancelled)


if __name__ == "__main__":
    unittest.main()
