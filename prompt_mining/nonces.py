"""Per-chain transaction sequence numbers for concurrent submissions."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Dict, Hashable, Iterable, Optional

from .errors import NonceNotInitialized, NonceSeedError

if TYPE_CHECKING:  # pragma: no cover
    from .ledger import Ledger

logger = logging.getLogger(__name__)


class NonceAllocator:
    """Issues exclusive sequence numbers per key.

    Keys are chain ids for the relayer account and ``(chain_id, address)``
    tuples for other signing accounts or forwarder senders. Allocation and
    increment happen under one lock, so the allocator is safe from the event
    loop and from worker threads alike. State lives only in memory; a restart re-seeds from
    the ledger.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self._strict = strict
        self._lock = threading.Lock()
        self._next: Dict[Hashable, int] = {}
        self._leases: Dict[Hashable, Dict[int, float]] = {}

    async def initialize(self, ledger: "Ledger", chain_ids: Iterable[int], address: str) -> Dict[int, int]:
        """Seed each chain from the ledger's pending transaction count."""

        chains = list(chain_ids)
        results = await asyncio.gather(
            *(ledger.transaction_count(chain_id, address, "pending") for chain_id in chains),
            return_exceptions=True,
        )
        if self._strict:
            for chain_id, result in zip(chains, results):
                if isinstance(result, BaseException):
                    raise NonceSeedError(
                        f"Unable to seed nonce for chain {chain_id}: {result}",
                        details={"chainId": chain_id},
                    ) from result
        seeded: Dict[int, int] = {}
        for chain_id, result in zip(chains, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "nonce.seed_failed",
                    extra={"chain_id": chain_id, "error": str(result), "fallback": 0},
                )
                value = 0
            else:
                value = int(result)
            self.reseed(chain_id, value)
            seeded[chain_id] = value
            logger.info("nonce.seeded", extra={"chain_id": chain_id, "nonce": value})
        return seeded

    def allocate(self, key: Hashable, *, floor: Optional[int] = None, create: bool = False) -> int:
        """Return the next unused value for ``key`` and advance the counter.

        ``floor`` moves the counter forward to an externally observed value
        before allocating; it never moves it backwards. ``create`` seeds an
        unknown key from ``floor`` (or zero) instead of failing.
        """

        with self._lock:
            current = self._next.get(key)
            if current is None:
                if not create:
                    raise NonceNotInitialized(
                        f"Nonce allocator is not initialized for {key!r}",
                        details={"key": str(key)},
                    )
                current = 0
            if floor is not None and floor > current:
                current = floor
            self._next[key] = current + 1
        return current

    def lease(self, key: Hashable, *, floor: int, expires_at: float, now: float) -> int:
        """Reserve the lowest value at or above ``floor`` not held by a live lease.

        Leases below ``floor`` were consumed externally and leases past
        ``expires_at`` can no longer be used, so both are released first. A
        value freed this way is handed out again.
        """

        with self._lock:
            held = self._leases.setdefault(key, {})
            for value, expiry in list(held.items()):
                if value < floor or expiry <= now:
                    del held[value]
            value = floor
            while value in held:
                value += 1
            held[value] = expires_at
            self._next[key] = max(held) + 1
        return value

    def peek(self, key: Hashable) -> Optional[int]:
        with self._lock:
            return self._next.get(key)

    def reseed(self, key: Hashable, value: int) -> None:
        if value < 0:
            raise ValueError("nonce must be non-negative")
        with self._lock:
            self._next[key] = value

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {str(key): value for key, value in self._next.items()}


__all__ = ["NonceAllocator"]
