from __future__ import annotations

import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cyberquest.config import parse_id_list, safe_int  # noqa: E402


class ConfigHelperTests(unittest.TestCase):
    def test_safe_int(self):
        self.assertEqual(safe_int("42"), 42)
        self.assertEqual(safe_int("x", 7), 7)
        self.assertEqual(safe_int(None), 0)

    def test_parse_id_list(self):
        self.assertEqual(parse_id_list("1, 2;3,,abc"), [1, 2, 3])
        self.assertEqual(parse_id_list(""), [])
        self.assertEqual(parse_id_list(None), [])


if __name__ == "__main__":
    unittest.main()
