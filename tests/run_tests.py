"""Run the slxgraph test suite (optionally only modules matching a pattern)."""
from __future__ import annotations

import sys
import unittest
from pathlib import Path


def main(argv: list[str]) -> int:
    pattern = argv[0] if argv else "test_*.py"
    suite = unittest.defaultTestLoader.discover(start_dir=str(Path(__file__).resolve().parent), pattern=pattern)
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    return 0 if result.wasSuccessful() else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
