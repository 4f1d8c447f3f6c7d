#!/usr/bin/env python3
"""
Arma Reforger server panel backend.

Thin wrapper so the panel can be run from a checkout without installing:
    python launcher.py api --port 5000
"""

import sys
from reforger_panel.cli import main

if __name__ == "__main__":
    sys.exit(main())
