# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (SRC, ROOT):
    if p.is_dir() and str(p) not in sys.path:
        sys.path.insert(0, str(p))
# --- end path/bootstrap ---

import socket
import tempfile
import threading
import time
import unittest
from unittest import mock

from auth import EmployeeDirectory
from inventory import PRODUCTS_TABLE, Branch
from line_store import LineStore, StoreError
from store_server import ServerConfig, StoreServer

PRODUCTS = [
    "P00001,SHOES,HOLON,10,200.00",
    "P00002,SHIRT,HOLON,5,25.00",
    "P00003,Summer Hat,HOLON,4,12.50",
]


class Client:
    """Line-oriented test client for the store protocol."""

    def __init__(self, address):
        self.sock = socket.create_connection(address, timeout=5)
        self.f = self.sock.makefile("rw", encoding="utf-8", newline="\n")

    def readline(self):
        return self.f.readline().rstrip("\n")

    def send(self, line):
        self.f.write(line + "\n")
        self.f.flush()

    def ask(self, line):
        self.send(line)
        return self.readline()

    def ask_block(self, line):
        """Send a command and collect lines up to and including ``OK END``."""
        self.send(line)
        lines = []
        while True:
            ln = self.readline()
            lines.append(ln)
            if ln == "OK END" or ln.startswith("ERR") or ln == "":
                return lines

    def close(self):
        try:
            self.f.close()
        finally:
            self.sock.close()


class ProtocolTestCase(unittest.TestCase):
    require_login = True

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        db = LineStore(self.tmp.name)
        db.write_all_lines(PRODUCTS_TABLE, PRODUCTS)
        EmployeeDirectory(db).add("dana", "pw", "CASHIER", Branch.HOLON)
        config = ServerConfig(host="127.0.0.1", port=0, data_dir=self.tmp.name, require_login=self.require_login)
        self.server = StoreServer(config)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.clients = []

    def tearDown(self):
        for c in self.clients:
            c.close()
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)
        self.tmp.cleanup()

    def connect(self, expect_welcome=True):
        client = Client(self.server.server_address[:2])
        self.clients.append(client)
        if expect_welcome:
            self.assertEqual(client.readline(), "OK WELCOME")
        return client

    def login(self, username="dana", password="pw", role="employee"):
        client = self.connect()
        self.assertEqual(client.ask(f"LOGIN {username} {password} {role}"), "OK LOGIN")
        return client

    def wait_released(self, username, timeout=5.0):
        deadline = time.monotonic() + timeout
        while self.server.sessions.is_active(username) and time.monotonic() < deadline:
            time.sleep(0.01)
        return not self.server.sessions.is_active(username)


class TestSessionProtocol(ProtocolTestCase):
    def test_commands_require_login(self):
        c = self.connect()
        self.assertEqual(c.ask("LIST HOLON"), "ERR NOT_LOGGED_IN")
        self.assertEqual(c.ask("FROB"), "ERR UNKNOWN_CMD")
        self.assertEqual(c.ask("LOGIN dana wrong employee"), "ERR LOGIN INVALID_CREDENTIALS")
        self.assertEqual(c.ask("LOGIN dana"), "ERR BAD_ARGS")

    def test_second_login_for_same_user_is_rejected(self):
        first = self.login()
        second = self.connect()
        self.assertEqual(second.ask("LOGIN dana pw employee"), "ERR LOGIN ALREADY_CONNECTED")
        self.assertEqual(first.ask("LOGIN dana pw employee"), "ERR LOGIN ALREADY_LOGGED_IN")
        self.assertEqual(first.ask("LOGOUT"), "OK BYE")
        self.assertEqual(first.readline(), "")
        self.assertEqual(second.ask("LOGIN dana pw employee"), "OK LOGIN")

    def test_disconnect_releases_username(self):
        first = self.login()
        first.close()
        self.assertTrue(self.wait_released("dana"))
        self.login()

    def test_command_token_is_case_insensitive(self):
        c = self.login()
        self.assertEqual(c.ask_block("list holon")[-1], "OK END")


class TestStoreProtocol(ProtocolTestCase):
    def test_list_is_idempotent(self):
        c = self.login()
        first = c.ask_block("LIST HOLON")
        self.assertEqual(
            first,
            [
                "ITEM P00001,SHOES,HOLON,10,200.00",
                "ITEM P00002,SHIRT,HOLON,5,25.00",
                "ITEM P00003,Summer Hat,HOLON,4,12.50",
                "OK END",
            ],
        )
        self.assertEqual(c.ask_block("LIST HOLON"), first)
        self.assertEqual(c.ask_block("LIST RISHON"), ["OK END"])
        self.assertEqual(c.ask("LIST EILAT"), "ERR BAD_BRANCH")

    def test_buy_restocks(self):
        c = self.login()
        self.assertEqual(c.ask("BUY HOLON P00002 3"), "OK BUY")
        self.assertIn("ITEM P00002,SHIRT,HOLON,8,25.00", c.ask_block("LIST HOLON"))
        self.assertEqual(c.ask("BUY HOLON P00002 0"), "ERR BAD_QTY")
        self.assertEqual(c.ask("BUY HOLON P99999 1"), "ERR SKU_NOT_FOUND P99999")

    def test_customer_add_and_list(self):
        c = self.login()
        self.assertEqual(c.ask("CUSTOMER_ADD C1 Noa_Cohen 050-1234567"), "OK CUSTOMER_ADDED")
        self.assertEqual(c.ask("CUSTOMER_ADD C1 Someone 052"), "ERR Customer_already_exists:_C1")
        self.assertEqual(c.ask_block("CUSTOMER_LIST"), ["CUST C1,Noa Cohen,050-1234567,NEW", "OK END"])

    def test_single_sale(self):
        c = self.login()
        c.ask("CUSTOMER_ADD C2 Dan 050 RETURNING")
        self.assertEqual(
            c.ask_block("SELL HOLON P00002 2 C2"),
            ["OK SALE RETURNING 50.00 2.50 47.50", "OK END"],
        )
        self.assertEqual(c.ask("SELL HOLON P00002 2"), "ERR BAD_ARGS")
        self.assertEqual(c.ask("SELL HOLON P00002 2 GHOST"), "ERR CUSTOMER_NOT_FOUND")

    def test_sell_multi_vip_with_gift(self):
        c = self.login()
        c.ask("CUSTOMER_ADD V1 Vera 050 VIP")
        self.assertEqual(
            c.ask_block("SELL_MULTI HOLON V1 P00001:2,P00003:1"),
            [
                "OK SALE_MULTI VIP 412.50 49.50 363.00 GIFT",
                "LINE P00001 SHOES 2 200.00 400.00 48.00 352.00",
                "LINE P00003 Summer_Hat 1 12.50 12.50 1.50 11.00",
                "GIFT_SHIRT 1",
                "OK END",
            ],
        )
        listing = c.ask_block("LIST HOLON")
        self.assertIn("ITEM P00001,SHOES,HOLON,8,200.00", listing)
        self.assertIn("ITEM P00002,SHIRT,HOLON,4,25.00", listing)
        self.assertIn("ITEM P00003,Summer Hat,HOLON,3,12.50", listing)

    def test_sell_multi_rejections_keep_connection_open(self):
        c = self.login()
        c.ask("CUSTOMER_ADD C1 Noa 050")
        self.assertEqual(c.ask("SELL_MULTI HOLON C1 P00001:99"), "ERR NOT_ENOUGH_STOCK P00001")
        self.assertEqual(c.ask("SELL_MULTI HOLON C1 P00001:1,BOGUS:1"), "ERR SKU_NOT_FOUND BOGUS")
        self.assertEqual(c.ask("SELL_MULTI HOLON C1 P00001"), "ERR BAD_ITEM_SPEC")
        self.assertEqual(c.ask("SELL_MULTI HOLON C1 P00001:two"), "ERR BAD_QTY")
        self.assertIn("ITEM P00001,SHOES,HOLON,10,200.00", c.ask_block("LIST HOLON"))

    def test_sell_multi_reports_gift_out_of_stock(self):
        c = self.login()
        c.ask("CUSTOMER_ADD C1 Noa 050")
        c.ask("CUSTOMER_ADD V1 Vera 050 VIP")
        # P00002 is the only SHIRT at HOLON
        self.assertEqual(c.ask_block("SELL_MULTI HOLON C1 P00002:5")[-1], "OK END")
        self.assertEqual(
            c.ask_block("SELL_MULTI HOLON V1 P00001:2"),
            [
                "OK SALE_MULTI VIP 400.00 48.00 352.00",
                "LINE P00001 SHOES 2 200.00 400.00 48.00 352.00",
                "GIFT_SHIRT_OUT_OF_STOCK",
                "OK END",
            ],
        )
        self.assertIn("ITEM P00001,SHOES,HOLON,8,200.00", c.ask_block("LIST HOLON"))

    def test_quantities_must_be_plain_integers(self):
        c = self.login()
        c.ask("CUSTOMER_ADD C1 Noa 050")
        self.assertEqual(c.ask("BUY HOLON P00002 1_000"), "ERR BAD_QTY")
        self.assertEqual(c.ask("SELL HOLON P00002 \u0662 C1"), "ERR BAD_QTY")
        self.assertEqual(c.ask("SELL_MULTI HOLON C1 P00002:1_0"), "ERR BAD_QTY")
        self.assertIn("ITEM P00002,SHIRT,HOLON,5,25.00", c.ask_block("LIST HOLON"))

    def test_store_failure_closes_connection_and_releases_session(self):
        c = self.login()
        with mock.patch.object(LineStore, "read_all_lines", side_effect=StoreError("cannot read table products")):
            self.assertEqual(c.ask("LIST HOLON"), "ERR STORE_FAILURE")
            self.assertEqual(c.readline(), "")
        self.assertTrue(self.wait_released("dana"))
        self.login()

    def test_admin_only_commands(self):
        employee = self.login()
        self.assertEqual(employee.ask("ADD_PRODUCT HOLON Rain_Coat 3 99.90"), "ERR FORBIDDEN")
        self.assertEqual(employee.ask("METRICS"), "ERR FORBIDDEN")

        admin = self.login("admin", "admin", "admin")
        self.assertEqual(admin.ask("ADD_PRODUCT HOLON Rain_Coat 3 99.90"), "OK PRODUCT_ADDED P00004")
        self.assertEqual(admin.ask("ADD_PRODUCT HOLON Rain_Coat 3 cheap"), "ERR BAD_PRICE")
        self.assertIn("ITEM P00004,Rain Coat,HOLON,3,99.90", admin.ask_block("LIST HOLON"))
        self.assertEqual(admin.ask("REMOVE_PRODUCT HOLON P00004"), "OK PRODUCT_REMOVED")
        self.assertEqual(admin.ask("REMOVE_PRODUCT HOLON P00004"), "ERR SKU_NOT_FOUND P00004")
        metrics = admin.ask_block("METRICS")
        self.assertEqual(metrics[-1], "OK END")
        self.assertIn("# TYPE store_commands_total counter", metrics)


class TestOpenAccess(ProtocolTestCase):
    require_login = False

    def test_commands_allowed_without_login(self):
        c = self.connect()
        self.assertEqual(c.ask_block("LIST HOLON")[-1], "OK END")
        self.assertEqual(c.ask("METRICS"), "ERR FORBIDDEN")


if __name__ == "__main__":
    unittest.main(verbosity=2)
