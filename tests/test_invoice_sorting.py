import sys
import unittest
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from erp_invoice.backends.invoices import _normalize_sort, _sort_index_entries, coerce_total


class InvoiceSortingTests(unittest.TestCase):
    def setUp(self):
        self.sample_entries = [
            {
                "id": "c",
                "number": "FAC2024-00003",
                "issue_date": "2024-03-15",
                "customer": "Beta",
                "total": "150.00",
            },
            {
                "id": "b",
                "number": "FAC2024-00002",
                "issue_date": "2024-03-15",
                "customer": "Alpha",
                "total": "200.00",
            },
            {
                "id": "a",
                "number": "FAC2024-00001",
                "issue_date": "2024-03-14",
                "customer": "alpha",
                "total": "200",
            },
        ]

    def test_normalize_sort_defaults_and_rejections(self):
        self.assertEqual(_normalize_sort(None, None), ("issue_date", "desc"))
        self.assertEqual(_normalize_sort("total", "asc"), ("total", "asc"))
        # invalid entries fall back to defaults
        self.assertEqual(_normalize_sort("bogus", "sideways"), ("issue_date", "desc"))

    def test_customer_sort_is_case_insensitive_with_number_tiebreak(self):
        sorted_entries = _sort_index_entries(self.sample_entries, sort_by="customer", direction="asc")
        numbers = [entry["number"] for entry in sorted_entries]
        self.assertEqual(numbers, ["FAC2024-00001", "FAC2024-00002", "FAC2024-00003"])

    def test_issue_date_sort_desc(self):
        sorted_entries = _sort_index_entries(self.sample_entries, sort_by="issue_date", direction="desc")
        numbers = [entry["number"] for entry in sorted_entries]
        self.assertEqual(numbers, ["FAC2024-00003", "FAC2024-00002", "FAC2024-00001"])

    def test_total_sort_compares_decimal_strings_numerically(self):
        sorted_entries = _sort_index_entries(self.sample_entries, sort_by="total", direction="asc")
        numbers = [entry["number"] for entry in sorted_entries]
        self.assertEqual(numbers, ["FAC2024-00003", "FAC2024-00001", "FAC2024-00002"])


def test_total_sort_handles_non_numeric_values():
    entries = [
        {"id": "valid", "number": "FAC2024-00003", "total": "150.0"},
        {"id": "string-total", "number": "FAC2024-00002", "total": "not-a-number"},
        {"id": "none-total", "number": "FAC2024-00001", "total": None},
    ]

    sorted_entries = _sort_index_entries(entries, sort_by="total", direction="desc")
    numbers = [entry["number"] for entry in sorted_entries]

    assert numbers == [
        "FAC2024-00003",  # highest numeric total first
        "FAC2024-00002",  # both coerced to 0, number is descending tiebreaker
        "FAC2024-00001",
    ]
    assert coerce_total({"total": "not-a-number"}) == Decimal("0")


if __name__ == "__main__":
    unittest.main()
