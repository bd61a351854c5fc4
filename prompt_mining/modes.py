"""Transaction construction and submission for the three mint modes.

Every attempt walks ``HASHED -> AUTHORIZED -> SUBMITTED -> CONFIRMED``; any
step may instead move to ``FAILED``. Phase A of the meta-transaction flow ends
in ``PREPARED`` because submission happens later, from the signer's request.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from eth_account.signers.local import LocalAccount

from .config import ChainConfig
from .contracts import (
    ForwardRequest,
    ForwarderDomain,
    build_typed_data,
    encode_direct_mint,
    encode_forwarder_execute,
    encode_operator_mint,
    recover_forward_signer,
)
from .errors import (
    AlreadyMinted,
    ConfigurationError,
    InvalidForwardSignature,
    LedgerUnavailable,
    MetaTxExpired,
    MintingError,
    TransactionReverted,
)
from .gateway import AuthorizationProof
from .ledger import Ledger, Receipt, classify_ledger_error
from .nonces import NonceAllocator

logger = logging.getLogger(__name__)


class MintState(str, Enum):
    HASHED = "hashed"
    AUTHORIZED = "authorized"
    PREPARED = "prepared"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_TRANSITIONS = {
    MintState.HASHED: {MintState.AUTHORIZED, MintState.FAILED},
    MintState.AUTHORIZED: {MintState.SUBMITTED, MintState.PREPARED, MintState.FAILED},
    MintState.SUBMITTED: {MintState.CONFIRMED, MintState.FAILED},
    MintState.PREPARED: set(),
    MintState.CONFIRMED: set(),
    MintState.FAILED: set(),
}


@dataclass
class MintAttempt:
    """State of one mint request from hashing to receipt."""

    mode: str
    chain_id: int
    digest: str
    state: MintState = MintState.HASHED
    history: List[MintState] = field(default_factory=list)
    failure: Optional[str] = None
    transaction_hash: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.state)

    def advance(self, state: MintState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal mint transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> None:
        if self.state in (MintState.FAILED, MintState.CONFIRMED, MintState.PREPARED):
            return
        self.failure = reason
        self.advance(MintState.FAILED)

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


@dataclass(frozen=True)
class TransactionRequest:
    """A fully built contract call, ready for signing."""

    to: str
    data: bytes
    gas: int
    digest: str
    beneficiary: str
    reward_data: bytes
    proof: bytes
    value: int = 0


@dataclass
class SubmissionContext:
    """Collaborators shared by every mode."""

    ledger: Ledger
    nonces: NonceAllocator
    relayer: LocalAccount
    mint_gas_limit: int = 500_000
    relay_gas_buffer: int = 50_000
    receipt_timeout: float = 180
    meta_tx_ttl: int = 3600
    clock: Callable[[], float] = time.time


async def submit_and_confirm(
    ctx: SubmissionContext,
    attempt: MintAttempt,
    request: TransactionRequest,
    account: LocalAccount,
    nonce: int,
) -> Receipt:
    """Sign, send and wait for ``request``; advances ``attempt`` to CONFIRMED."""

    chain_id = attempt.chain_id
    try:
        gas_price = await ctx.ledger.gas_price(chain_id)
        transaction: Dict[str, Any] = {
            "chainId": chain_id,
            "from": account.address,
            "to": request.to,
            "data": "0x" + request.data.hex(),
            "gas": request.gas,
            "gasPrice": gas_price,
            "nonce": nonce,
            "value": request.value,
        }
        tx_hash = await ctx.ledger.send_transaction(chain_id, transaction, account)
    except Exception as exc:
        error = classify_ledger_error(exc)
        attempt.fail(error.code)
        logger.warning(
            "mint.submit_failed",
            extra={"mode": attempt.mode, "chain_id": chain_id, "digest": attempt.digest, "code": error.code},
        )
        if error is exc:
            raise
        raise error from exc

    attempt.transaction_hash = tx_hash
    attempt.advance(MintState.SUBMITTED)
    logger.info(
        "mint.submitted",
        extra={"mode": attempt.mode, "chain_id": chain_id, "digest": attempt.digest, "tx_hash": tx_hash, "tx_nonce": nonce},
    )

    try:
        receipt = await ctx.ledger.wait_for_receipt(chain_id, tx_hash, ctx.receipt_timeout)
    except MintingError as exc:
        attempt.fail(exc.code)
        raise
    except Exception as exc:
        attempt.fail(LedgerUnavailable.code)
        logger.warning(
            "mint.receipt_failed",
            extra={"mode": attempt.mode, "chain_id": chain_id, "tx_hash": tx_hash, "error": str(exc)[:200]},
        )
        raise LedgerUnavailable(
            "Lost contact with the ledger while waiting for a receipt",
            details={"transactionHash": tx_hash},
        ) from exc
    if int(receipt.get("status", 1)) == 0:
        attempt.fail(TransactionReverted.code)
        raise TransactionReverted(details={"transactionHash": tx_hash})
    attempt.advance(MintState.CONFIRMED)
    logger.info(
        "mint.confirmed",
        extra={
            "mode": attempt.mode,
            "chain_id": chain_id,
            "tx_hash": tx_hash,
            "block_number": receipt.get("blockNumber"),
        },
    )
    return receipt


class DirectSubmitMode:
    """The caller's own key signs a ``mint`` that credits the signer."""

    name = "direct"

    def __init__(self, ctx: SubmissionContext, account: LocalAccount) -> None:
        self._ctx = ctx
        self._account = account

    @property
    def beneficiary(self) -> str:
        return self._account.address

    def build(
        self,
        chain: ChainConfig,
        digest: str,
        content: str,
        reward_data: bytes,
        proof: AuthorizationProof,
    ) -> TransactionRequest:
        return TransactionRequest(
            to=chain.prompt_miner,
            data=encode_direct_mint(digest, content, reward_data, proof.signature_bytes),
            gas=self._ctx.mint_gas_limit,
            digest=digest,
            beneficiary=self._account.address,
            reward_data=reward_data,
            proof=proof.signature_bytes,
        )

    async def _next_nonce(self, chain_id: int) -> int:
        address = self._account.address
        if address == self._ctx.relayer.address:
            return self._ctx.nonces.allocate(chain_id)
        try:
            pending = await self._ctx.ledger.transaction_count(chain_id, address, "pending")
        except MintingError:
            raise
        except Exception as exc:
            raise LedgerUnavailable(f"Unable to read the pending nonce for {address}") from exc
        return self._ctx.nonces.allocate((chain_id, address), floor=pending, create=True)

    async def submit(
        self,
        attempt: MintAttempt,
        chain: ChainConfig,
        content: str,
        reward_data: bytes,
        proof: AuthorizationProof,
    ) -> Receipt:
        request = self.build(chain, attempt.digest, content, reward_data, proof)
        try:
            nonce = await self._next_nonce(chain.chain_id)
        except MintingError as exc:
            attempt.fail(exc.code)
            raise
        return await submit_and_confirm(self._ctx, attempt, request, self._account, nonce)


class OperatorSignedMode:
    """The relayer key mints on behalf of a named beneficiary."""

    name = "operator"

    def __init__(self, ctx: SubmissionContext) -> None:
        self._ctx = ctx

    async def precheck(self, attempt: MintAttempt, chain: ChainConfig) -> None:
        """Fail fast on content that is already on chain, before spending gas."""

        if await self._ctx.ledger.is_minted(chain.chain_id, chain.prompt_miner, attempt.digest):
            attempt.fail(AlreadyMinted.code)
            raise AlreadyMinted(details={"digest": attempt.digest})

    def build(
        self,
        chain: ChainConfig,
        digest: str,
        beneficiary: str,
        content: str,
        reward_data: bytes,
        proof: AuthorizationProof,
    ) -> TransactionRequest:
        return TransactionRequest(
            to=chain.prompt_miner,
            data=encode_operator_mint(beneficiary, digest, content, reward_data, proof.signature_bytes),
            gas=self._ctx.mint_gas_limit,
            digest=digest,
            beneficiary=beneficiary,
            reward_data=reward_data,
            proof=proof.signature_bytes,
        )

    async def submit(
        self,
        attempt: MintAttempt,
        chain: ChainConfig,
        beneficiary: str,
        content: str,
        reward_data: bytes,
        proof: AuthorizationProof,
    ) -> Receipt:
        request = self.build(chain, attempt.digest, beneficiary, content, reward_data, proof)
        nonce = self._ctx.nonces.allocate(chain.chain_id)
        return await submit_and_confirm(self._ctx, attempt, request, self._ctx.relayer, nonce)


class MetaTransactionMode:
    """EIP-712 forward requests relayed through an ERC-2771 forwarder."""

    name = "meta_tx"

    def __init__(self, ctx: SubmissionContext, forwarder_nonces: NonceAllocator) -> None:
        self._ctx = ctx
        self._forwarder_nonces = forwarder_nonces

    @staticmethod
    def domain(chain: ChainConfig) -> ForwarderDomain:
        if not chain.forwarder:
            raise ConfigurationError(f"No forwarder configured for chain {chain.chain_id}")
        return ForwarderDomain(
            name=chain.forwarder_name,
            version=chain.forwarder_version,
            chain_id=chain.chain_id,
            verifying_contract=chain.forwarder,
        )

    async def _next_forwarder_nonce(self, chain: ChainConfig, sender: str, deadline: int) -> int:
        # A prepared request holds its nonce only until its deadline passes.
        on_chain = await self._ctx.ledger.forwarder_nonce(chain.chain_id, chain.forwarder, sender)
        return self._forwarder_nonces.lease(
            (chain.chain_id, sender),
            floor=on_chain,
            expires_at=deadline,
            now=self._ctx.clock(),
        )

    async def prepare(
        self,
        attempt: MintAttempt,
        chain: ChainConfig,
        author: str,
        content: str,
        reward_data: bytes,
        proof: AuthorizationProof,
        *,
        gas: Optional[int] = None,
        deadline: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Phase A: build the typed data the author signs. Nothing is submitted."""

        domain = self.domain(chain)
        if deadline is None:
            deadline = int(self._ctx.clock()) + self._ctx.meta_tx_ttl
        nonce = await self._next_forwarder_nonce(chain, author, deadline)
        request = ForwardRequest(
            sender=author,
            to=chain.prompt_miner,
            value=0,
            gas=gas if gas is not None else self._ctx.mint_gas_limit,
            nonce=nonce,
            deadline=deadline,
            data="0x" + encode_direct_mint(attempt.digest, content, reward_data, proof.signature_bytes).hex(),
        )
        attempt.advance(MintState.PREPARED)
        logger.info(
            "metatx.prepared",
            extra={"chain_id": chain.chain_id, "digest": attempt.digest, "forwarder_nonce": nonce},
        )
        return build_typed_data(domain, request)

    async def relay(
        self,
        attempt: MintAttempt,
        chain: ChainConfig,
        request: ForwardRequest,
        signature: str,
    ) -> Receipt:
        """Phase B: verify the author's signature locally, then submit ``execute``."""

        if request.deadline <= int(self._ctx.clock()):
            attempt.fail(MetaTxExpired.code)
            raise MetaTxExpired(details={"deadline": request.deadline})
        try:
            signer = recover_forward_signer(self.domain(chain), request, signature)
        except InvalidForwardSignature:
            attempt.fail(InvalidForwardSignature.code)
            raise
        if signer.lower() != request.sender.lower():
            attempt.fail(InvalidForwardSignature.code)
            raise InvalidForwardSignature(details={"expected": request.sender, "recovered": signer})

        relay_request = TransactionRequest(
            to=chain.forwarder,
            data=encode_forwarder_execute(request, signature),
            gas=request.gas + self._ctx.relay_gas_buffer,
            digest=attempt.digest,
            beneficiary=request.sender,
            reward_data=b"",
            proof=b"",
            value=request.value,
        )
        nonce = self._ctx.nonces.allocate(chain.chain_id)
        return await submit_and_confirm(self._ctx, attempt, relay_request, self._ctx.relayer, nonce)


__all__ = [
    "DirectSubmitMode",
    "MetaTransactionMode",
    "MintAttempt",
    "MintState",
    "OperatorSignedMode",
    "SubmissionContext",
    "TransactionRequest",
    "submit_and_confirm",
]
