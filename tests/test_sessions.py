# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (SRC, ROOT):
    if p.is_dir() and str(p) not in sys.path:
        sys.path.insert(0, str(p))
# --- end path/bootstrap ---

import threading
import unittest

from sessions import SessionRegistry


class TestSessionRegistry(unittest.TestCase):
    def test_reserve_release(self):
        reg = SessionRegistry()
        self.assertTrue(reg.reserve("dana"))
        self.assertFalse(reg.reserve("dana"))
        self.assertTrue(reg.is_active("dana"))
        reg.release("dana")
        self.assertFalse(reg.is_active("dana"))
        self.assertTrue(reg.reserve("dana"))

    def test_release_unknown_or_none_is_harmless(self):
        reg = SessionRegistry()
        reg.release(None)
        reg.release("ghost")
        self.assertEqual(len(reg), 0)

    def test_concurrent_reserve_has_one_winner(self):
        reg = SessionRegistry()
        barrier = threading.Barrier(16)
        wins = []

        def attempt():
            barrier.wait()
            wins.append(reg.reserve("dana"))

        threads = [threading.Thread(target=attempt) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        self.assertEqual(wins.count(True), 1)
        self.assertEqual(len(reg), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
