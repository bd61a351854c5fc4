"""Fixtures wiring ``MintingService`` to the in-memory ledger and mock gateway."""

from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

import httpx
import pytest
from eth_account import Account

HERE = Path(__file__).resolve().parent
ROOT = HERE.parent
for entry in (ROOT, HERE):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from fakes import FIXED_NOW, RELAYER_KEY, USER_KEY, FakeLedger, make_gateway, settings_mapping
from prompt_mining.config import Settings
from prompt_mining.service import MintingService


@pytest.fixture
def settings() -> Settings:
    return Settings.from_mapping(settings_mapping())


@pytest.fixture
def relayer():
    return Account.from_key(RELAYER_KEY)


@pytest.fixture
def user_account():
    return Account.from_key(USER_KEY)


@pytest.fixture
def build_service(settings: Settings) -> Callable[..., SimpleNamespace]:
    def _build(
        *,
        ledger: Optional[FakeLedger] = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = lambda: FIXED_NOW,
    ) -> SimpleNamespace:
        gateway = make_gateway(handler)
        ledger = ledger or FakeLedger()
        service = MintingService(
            settings=config or settings,
            gateway=gateway.client,
            ledger=ledger,
            relayer=Account.from_key(RELAYER_KEY),
            clock=clock,
        )
        return SimpleNamespace(service=service, ledger=ledger, gateway=gateway)

    return _build
