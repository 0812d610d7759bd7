"""Entry point for ``python -m vendor_ledger``."""

import sys

from vendor_ledger.cli import main

if __name__ == "__main__":
    sys.exit(main())
