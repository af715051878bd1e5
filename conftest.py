"""Pytest bootstrap: put the service's ``src`` directory on ``sys.path``.

Lets the tests import ``watchparty_sync`` from a plain checkout, without
``pip install -e .``.
"""

from __future__ import annotations

from pathlib import Path
import sys

_SRC = Path(__file__).parent.resolve() / "services" / "watch_party" / "src"

if _SRC.exists() and str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))
