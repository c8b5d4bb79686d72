#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/ddns_firewall`. This wrapper lets a fresh
checkout be run directly (e.g. `sudo ./ddns-firewall.py` from a systemd unit).

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from ddns_firewall.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
