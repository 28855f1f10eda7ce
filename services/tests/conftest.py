"""
Pytest configuration for the outbox relay service.

Puts ``services/src`` on ``sys.path`` so the suite runs from a plain checkout
as well as from an editable install:

pip install -e ".[test]"
pytest -q
"""

from __future__ import annotations

import sys
from pathlib import Path

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"

if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))
