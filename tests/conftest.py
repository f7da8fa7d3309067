"""Shared test setup.

Puts ``backend/`` on ``sys.path`` so ``pethub`` imports from a checkout
without installing the project.
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "backend"))
