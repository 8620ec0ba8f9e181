import json
import os
import sys
import tempfile
import unittest
import unittest.mock
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("MCP_ENABLE_WRITES", "1")

from mcp.server.fastmcp.exceptions import ToolError

from erp_invoice.backends.finalizer import compute_financials
from erp_invoice.backends.invoices import update_invoice_draft_impl
from erp_invoice.backends.invoices_models import Invoice


class UpdateInvoiceDraftTests(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempdir.cleanup)

        self.invoice_root = Path(self.tempdir.name) / ".erp_invoice"
        self.invoice_root.mkdir(parents=True, exist_ok=True)

        self.env_patch = unittest.mock.patch.dict(
            os.environ,
            {
                "ERP_INVOICE_ROOT": str(self.invoice_root),
                "MCP_ENABLE_WRITES": "1",
            },
        )
        self.env_patch.start()
        self.addCleanup(self.env_patch.stop)

    def _write_invoice(self, invoice: Invoice) -> Path:
        invoices_dir = self.invoice_root / "invoices"
        invoices_dir.mkdir(parents=True, exist_ok=True)
        path = invoices_dir / f"{invoice.id}.json"
        path.write_text(invoice.model_dump_json(indent=2), encoding="utf-8")
        return path

    def _read_persisted(self, invoice_id: str) -> dict:
        path = self.invoice_root / "invoices" / f"{invoice_id}.json"
        return json.loads(path.read_text(encoding="utf-8"))

    def _sample_invoice(self) -> Invoice:
        payload = {
            "id": "FAC2024-00001",
            "number": "FAC2024-00001",
            "sequential_number": 1,
            "status": "draft",
            "account_id": "acct-1",
            "customer": {"name": "Bob Distribuciones S.L.", "tax_id": "B87654321"},
            "issue_date": "2024-01-10",
            "due_date": "2024-01-24",
            "payment_terms": "custom",
            "items": [
                {
                    "product_name": "Consulting",
                    "quantity": "2",
                    "unit": "hour",
                    "unit_price": "150.00",
                    "tax": {"type": "IVA", "rate": "21"},
                }
            ],
        }

        invoice = Invoice.model_validate(payload)
        return invoice.model_copy(update={"financial": compute_financials(invoice.items)})

    def test_rejects_status_change(self):
        invoice = self._sample_invoice()
        self._write_invoice(invoice)

        updated = invoice.model_copy(update={"status": "final"})

        with self.assertRaises(ToolError) as ctx:
            update_invoice_draft_impl(invoice.id, updated)

        self.assertIn("status='draft'", str(ctx.exception))

    def test_rejects_number_change(self):
        invoice = self._sample_invoice()
        self._write_invoice(invoice)

        updated = invoice.model_copy(update={"number": "FAC2024-00099"})

        with self.assertRaises(ToolError) as ctx:
            update_invoice_draft_impl(invoice.id, updated)

        self.assertIn("cannot change number", str(ctx.exception))

    def test_rejects_account_change(self):
        invoice = self._sample_invoice()
        self._write_invoice(invoice)

        updated = invoice.model_copy(update={"account_id": "acct-2"})

        with self.assertRaises(ToolError) as ctx:
            update_invoice_draft_impl(invoice.id, updated)

        self.assertIn("account_id", str(ctx.exception))

    def test_rejects_payment_status_change(self):
        invoice = self._sample_invoice()
        self._write_invoice(invoice)

        paid = invoice.payment.model_copy(update={"status": "paid"})
        updated = invoice.model_copy(update={"payment": paid})

        with self.assertRaises(ToolError) as ctx:
            update_invoice_draft_impl(invoice.id, updated)

        self.assertIn("payment status", str(ctx.exception))

    def test_rejects_final_invoice(self):
        invoice = self._sample_invoice().model_copy(update={"status": "final"})
        self._write_invoice(invoice)

        with self.assertRaises(ToolError) as ctx:
            update_invoice_draft_impl(invoice.id, invoice)

        self.assertIn("Only drafts", str(ctx.exception))

    def test_accepts_content_edits_and_recomputes_totals(self):
        invoice = self._sample_invoice()
        self._write_invoice(invoice)

        updated_customer = invoice.customer.model_copy(update={"name": "Bob Renamed S.L."})
        updated_item = invoice.items[0].model_copy(update={"quantity": Decimal("3")})
        updated = invoice.model_copy(
            update={"customer": updated_customer, "items": [updated_item]}
        )

        result = update_invoice_draft_impl(invoice.id, updated)

        persisted = self._read_persisted(invoice.id)
        index = json.loads((self.invoice_root / "index.json").read_text(encoding="utf-8"))

        self.assertEqual(result["invoice"]["customer"]["name"], "Bob Renamed S.L.")
        self.assertEqual(persisted["customer"]["name"], "Bob Renamed S.L.")
        self.assertEqual(persisted["status"], "draft")
        self.assertEqual(persisted["number"], invoice.number)
        self.assertEqual(persisted["payment"]["status"], "pending")
        self.assertEqual(Decimal(persisted["financial"]["total"]), Decimal("544.50"))
        self.assertEqual(persisted["history"][-1]["action"], "updated")
        self.assertEqual(index["count"], 1)
        self.assertEqual(index["invoices"][0]["customer"], "Bob Renamed S.L.")


if __name__ == "__main__":
    unittest.main()
