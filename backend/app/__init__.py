"""Relay messaging backend application.

The ASGI entry point is ``app.main:app``; importing the package only makes
the ``relay`` sources under ``backend/src`` importable.
"""

from pathlib import Path
import sys

SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.exists() and str(SRC_PATH) not in sys.path:
    sys.path.append(str(SRC_PATH))
