"""Ledger capability consumed by the submission modes, and its web3 implementation."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional, Protocol

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from .config import ChainConfig
from .contracts import (
    decode_single,
    encode_balance_of,
    encode_forwarder_nonces,
    encode_is_minted,
    encode_symbol,
    forwarder_error_selectors,
)
from .errors import (
    AlreadyMinted,
    AuthorizationExpired,
    ForwarderNotTrusted,
    InputValidationError,
    InsufficientFunds,
    InvalidForwardSignature,
    InvalidProof,
    LedgerSubmissionError,
    LedgerUnavailable,
    MetaTxExpired,
    MintingError,
    NonceConflict,
    ReceiptTimeout,
)

logger = logging.getLogger(__name__)

Receipt = Dict[str, Any]


class Ledger(Protocol):
    """Async view of the chains the relay submits to."""

    async def transaction_count(self, chain_id: int, address: str, block: str = "pending") -> int: ...

    async def gas_price(self, chain_id: int) -> int: ...

    async def send_transaction(self, chain_id: int, transaction: Dict[str, Any], account: LocalAccount) -> str: ...

    async def wait_for_receipt(self, chain_id: int, tx_hash: str, timeout: float) -> Receipt: ...

    async def is_minted(self, chain_id: int, contract: str, digest: str) -> bool: ...

    async def balance_of(self, chain_id: int, token: str, address: str) -> int: ...

    async def token_symbol(self, chain_id: int, token: str) -> str: ...

    async def forwarder_nonce(self, chain_id: int, forwarder: str, address: str) -> int: ...

    async def block_number(self, chain_id: int) -> int: ...


_FORWARDER_ERROR_TYPES = {
    "ERC2771ForwarderExpiredRequest": MetaTxExpired,
    "ERC2771ForwarderInvalidSigner": InvalidForwardSignature,
    "ERC2771UntrustfulTarget": ForwarderNotTrusted,
}

_NONCE_MARKERS = ("nonce too low", "already known", "replacement transaction underpriced", "nonce has already been used")


def _error_text(exc: BaseException) -> str:
    parts = [str(exc)]
    for attr in ("message", "data"):
        value = getattr(exc, attr, None)
        if value:
            parts.append(str(value))
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict):
            parts.append(str(arg.get("message", "")))
            parts.append(str(arg.get("data", "")))
    return " ".join(parts)


def classify_ledger_error(exc: BaseException) -> MintingError:
    """Translate a node or contract failure into the error taxonomy."""

    if isinstance(exc, MintingError):
        return exc
    text = _error_text(exc)
    lowered = text.lower()

    for name, error_cls in _FORWARDER_ERROR_TYPES.items():
        if name.lower() in lowered:
            return error_cls()
    for selector, name in forwarder_error_selectors().items():
        if selector in lowered:
            return _FORWARDER_ERROR_TYPES[name]()

    if "insufficient funds" in lowered:
        return InsufficientFunds()
    if "authorization_expired" in lowered or "authorization expired" in lowered:
        return AuthorizationExpired()
    if "invalid_signature" in lowered or "invalid signature" in lowered:
        return InvalidProof()
    if any(marker in lowered for marker in _NONCE_MARKERS):
        return NonceConflict()
    if "already minted" in lowered or "already_minted" in lowered:
        return AlreadyMinted()
    return LedgerSubmissionError(f"Ledger transaction failed: {str(exc)[:200]}")


class Web3Ledger:
    """``Ledger`` backed by one ``Web3`` HTTP provider per configured chain.

    web3 is synchronous, so every call is pushed onto a worker thread with
    ``asyncio.to_thread`` to keep the event loop free while waiting on RPC.
    """

    def __init__(self, chains: Dict[int, ChainConfig], *, request_timeout: int = 30) -> None:
        self._chains = dict(chains)
        self._request_timeout = request_timeout
        self._instances: Dict[int, Web3] = {}
        self._lock = threading.Lock()

    def _get_web3(self, chain_id: int) -> Web3:
        with self._lock:
            instance = self._instances.get(chain_id)
            if instance is None:
                chain = self._chains.get(chain_id)
                if chain is None:
                    raise InputValidationError(f"Unsupported chain {chain_id}", code="INVALID_CHAIN")
                instance = Web3(Web3.HTTPProvider(chain.rpc_url, request_kwargs={"timeout": self._request_timeout}))
                instance.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
                self._instances[chain_id] = instance
        return instance

    async def _call(self, chain_id: int, to: str, data: bytes) -> bytes:
        w3 = self._get_web3(chain_id)
        try:
            return bytes(await asyncio.to_thread(w3.eth.call, {"to": Web3.to_checksum_address(to), "data": Web3.to_hex(data)}))
        except MintingError:
            raise
        except Exception as exc:
            raise LedgerUnavailable(f"Contract call failed on chain {chain_id}: {str(exc)[:200]}") from exc

    async def _rpc(self, chain_id: int, func: Callable[[Web3], Any]) -> Any:
        w3 = self._get_web3(chain_id)
        try:
            return await asyncio.to_thread(func, w3)
        except MintingError:
            raise
        except Exception as exc:
            raise LedgerUnavailable(f"RPC call failed on chain {chain_id}: {str(exc)[:200]}") from exc

    async def transaction_count(self, chain_id: int, address: str, block: str = "pending") -> int:
        checksum = Web3.to_checksum_address(address)
        return int(await self._rpc(chain_id, lambda w3: w3.eth.get_transaction_count(checksum, block)))

    async def gas_price(self, chain_id: int) -> int:
        return int(await self._rpc(chain_id, lambda w3: w3.eth.gas_price))

    async def send_transaction(self, chain_id: int, transaction: Dict[str, Any], account: LocalAccount) -> str:
        w3 = self._get_web3(chain_id)
        try:
            signed = await asyncio.to_thread(account.sign_transaction, transaction)
            raw_hash = await asyncio.to_thread(w3.eth.send_raw_transaction, signed.raw_transaction)
        except Exception as exc:
            raise classify_ledger_error(exc) from exc
        return Web3.to_hex(raw_hash)

    async def wait_for_receipt(self, chain_id: int, tx_hash: str, timeout: float) -> Receipt:
        w3 = self._get_web3(chain_id)
        try:
            receipt = await asyncio.to_thread(w3.eth.wait_for_transaction_receipt, tx_hash, timeout=timeout)
        except TimeExhausted as exc:
            raise ReceiptTimeout(details={"transactionHash": tx_hash}) from exc
        except Exception as exc:
            raise LedgerUnavailable(
                f"Lost contact with chain {chain_id} while waiting for a receipt: {str(exc)[:200]}",
                details={"transactionHash": tx_hash},
            ) from exc
        return {
            "transactionHash": Web3.to_hex(receipt["transactionHash"]),
            "blockNumber": int(receipt["blockNumber"]),
            "gasUsed": int(receipt["gasUsed"]),
            "status": int(receipt.get("status", 1)),
        }

    async def is_minted(self, chain_id: int, contract: str, digest: str) -> bool:
        result = await self._call(chain_id, contract, encode_is_minted(digest))
        return bool(decode_single("bool", result))

    async def balance_of(self, chain_id: int, token: str, address: str) -> int:
        result = await self._call(chain_id, token, encode_balance_of(address))
        return int(decode_single("uint256", result))

    async def token_symbol(self, chain_id: int, token: str) -> str:
        result = await self._call(chain_id, token, encode_symbol())
        return str(decode_single("string", result))

    async def forwarder_nonce(self, chain_id: int, forwarder: str, address: str) -> int:
        result = await self._call(chain_id, forwarder, encode_forwarder_nonces(address))
        return int(decode_single("uint256", result))

    async def block_number(self, chain_id: int) -> int:
        return int(await self._rpc(chain_id, lambda w3: w3.eth.block_number))


def chains_by_id(chains: Any) -> Dict[int, ChainConfig]:
    return {chain.chain_id: chain for chain in chains}


def ledger_from_settings(settings: Any, *, request_timeout: Optional[int] = None) -> Web3Ledger:
    return Web3Ledger(
        chains_by_id(settings.chains),
        request_timeout=request_timeout or settings.request_timeout,
    )


__all__ = [
    "Ledger",
    "Receipt",
    "Web3Ledger",
    "chains_by_id",
    "classify_ledger_error",
    "ledger_from_settings",
]
