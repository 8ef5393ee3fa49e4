"""Command-line entry point for the VXI-11 test utility."""

from __future__ import annotations

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
