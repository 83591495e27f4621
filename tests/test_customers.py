# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (SRC, ROOT):
    if p.is_dir() and str(p) not in sys.path:
        sys.path.insert(0, str(p))
# --- end path/bootstrap ---

import tempfile
import unittest

from customers import (
    CUSTOMERS_TABLE,
    Customer,
    CustomerExists,
    CustomerNotFound,
    CustomerStore,
    Tier,
    tier_for_count,
)
from line_store import LineStore


class TestCustomerStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = LineStore(self.tmp.name)
        self.customers = CustomerStore(self.db)

    def tearDown(self):
        self.tmp.cleanup()

    def test_add_and_find(self):
        self.customers.add("C1", "Noa Cohen", "050-1111111")
        c = self.customers.find_by_id("C1")
        self.assertEqual((c.full_name, c.phone, c.tier), ("Noa Cohen", "050-1111111", Tier.NEW))
        self.assertEqual(self.customers.purchase_count("C1"), 0)
        self.assertIsNone(self.customers.find_by_id("C2"))

    def test_add_rejects_duplicates_and_bad_fields(self):
        self.customers.add("C1", "Noa", "050")
        with self.assertRaises(CustomerExists) as ctx:
            self.customers.add("C1", "Other", "052")
        self.assertEqual(str(ctx.exception), "Customer already exists: C1")
        with self.assertRaises(ValueError):
            self.customers.add("  ", "Blank", "050")
        with self.assertRaises(ValueError):
            self.customers.add("C2", "Cohen, Noa", "050")

    def test_unknown_tier_code_defaults_to_new(self):
        self.customers.add("C1", "Noa", "050", "GOLD")
        self.assertIs(self.customers.find_by_id("C1").tier, Tier.NEW)

    def test_tier_thresholds(self):
        self.assertIs(tier_for_count(0), Tier.NEW)
        self.assertIs(tier_for_count(1), Tier.NEW)
        self.assertIs(tier_for_count(2), Tier.RETURNING)
        self.assertIs(tier_for_count(9), Tier.RETURNING)
        self.assertIs(tier_for_count(10), Tier.VIP)

    def test_record_purchase_promotes_through_tiers(self):
        self.customers.add("C1", "Noa", "050")
        tiers = [self.customers.record_purchase("C1") for _ in range(10)]
        self.assertEqual(tiers[0], Tier.NEW)
        self.assertEqual(tiers[1], Tier.RETURNING)
        self.assertEqual(tiers[8], Tier.RETURNING)
        self.assertEqual(tiers[9], Tier.VIP)
        self.assertEqual(self.customers.purchase_count("C1"), 10)
        self.assertIs(self.customers.find_by_id("C1").tier, Tier.VIP)

    def test_tier_never_demotes(self):
        self.customers.add("C1", "Noa", "050", Tier.VIP)
        self.assertIs(self.customers.record_purchase("C1"), Tier.VIP)
        self.assertIs(self.customers.find_by_id("C1").tier, Tier.VIP)

    def test_record_purchase_unknown_customer(self):
        with self.assertRaises(CustomerNotFound):
            self.customers.record_purchase("missing")

    def test_counter_created_for_customer_without_stats_row(self):
        self.db.write_all_lines(CUSTOMERS_TABLE, ["C9,Legacy,050,NEW"])
        self.customers.record_purchase("C9")
        self.assertEqual(self.customers.purchase_count("C9"), 1)

    def test_upsert_replaces_in_place(self):
        self.customers.add("C1", "Noa", "050")
        self.customers.add("C2", "Dan", "052")
        c = self.customers.find_by_id("C1")
        self.customers.upsert(Customer(c.id, "Noa Levi", c.phone, c.tier))
        self.assertEqual([x.full_name for x in self.customers.list_all()], ["Noa Levi", "Dan"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
