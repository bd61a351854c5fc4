"""Repository-wide pytest configuration.

Pins the repository root on ``sys.path`` so ``prompt_mining`` and ``routes``
resolve regardless of the invocation directory, and clears ``PM_*`` variables
so a developer's shell cannot leak relay configuration into the suites.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_relay_env(monkeypatch: pytest.MonkeyPatch):
    for key in list(os.environ):
        if key.startswith("PM_"):
            monkeypatch.delenv(key, raising=False)
    yield
