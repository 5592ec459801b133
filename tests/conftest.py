"""Shared pytest setup for the SpoilerShield tests."""

from __future__ import annotations

import sys
from pathlib import Path

# The ``app`` and ``spoilershield`` packages live at the project root; make them
# importable without an editable install.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
