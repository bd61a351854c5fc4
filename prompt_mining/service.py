"""Minting orchestrator: hash, authorize, build, submit, confirm."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar, Union

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest
from web3 import Web3

from .config import ChainConfig, Settings
from .contracts import ForwardRequest, mint_digest_from_call
from .errors import InputValidationError, MintingError
from .gateway import AuthorizationProof, GatewayClient
from .hashing import (
    RewardAmount,
    encode_reward,
    hash_content,
    is_valid_digest,
    normalize_address,
    normalize_reward,
    redact,
    reward_is_negative,
    reward_to_wire,
)
from .ledger import Ledger, Receipt, ledger_from_settings
from .modes import (
    DirectSubmitMode,
    MetaTransactionMode,
    MintAttempt,
    MintState,
    OperatorSignedMode,
    SubmissionContext,
)
from .nonces import NonceAllocator
from .retry import RetryPolicy
from .rewards import RewardCalculator, ScheduleRewardCalculator

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANALYTICS_PERIODS = ("day", "week", "month")


@dataclass
class MintReceipt:
    transaction_hash: str
    digest: str
    block_number: int
    gas_used: int
    chain_id: int
    mode: str
    authorization: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionHash": self.transaction_hash,
            "digest": self.digest,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "chainId": self.chain_id,
            "mode": self.mode,
            "authorization": dict(self.authorization),
        }


def _receipt_authorization(proof: Optional[AuthorizationProof]) -> Dict[str, Any]:
    if proof is None:
        return {"nonce": None, "expiresAt": None}
    return {"nonce": proof.nonce, "expiresAt": proof.expiry}


class MintingService:
    """Single entry point for every mint flow and the read-only queries.

    Content is hashed locally and only the digest reaches the gateway. The
    full content is sent to the ledger alone, inside the mint call.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        gateway: GatewayClient,
        ledger: Ledger,
        relayer: LocalAccount,
        reward_calculator: Optional[RewardCalculator] = None,
        nonces: Optional[NonceAllocator] = None,
        forwarder_nonces: Optional[NonceAllocator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._ledger = ledger
        self._relayer = relayer
        self._rewards = reward_calculator or ScheduleRewardCalculator.from_config(settings.rewards)
        self._nonces = nonces or NonceAllocator(strict=settings.strict_nonce_seeding)
        self._forwarder_nonces = forwarder_nonces or NonceAllocator()
        self._clock = clock
        self._ctx = SubmissionContext(
            ledger=ledger,
            nonces=self._nonces,
            relayer=relayer,
            mint_gas_limit=settings.mint_gas_limit,
            relay_gas_buffer=settings.relay_gas_buffer,
            receipt_timeout=settings.receipt_timeout,
            meta_tx_ttl=settings.meta_tx_ttl,
            clock=clock,
        )
        self._operator_mode = OperatorSignedMode(self._ctx)
        self._meta_mode = MetaTransactionMode(self._ctx, self._forwarder_nonces)

        self._metrics_registry = CollectorRegistry()
        self._mint_requests = Counter(
            "mint_requests_total",
            "Mint requests by mode and outcome",
            labelnames=("mode", "outcome"),
            registry=self._metrics_registry,
        )
        self._gateway_attempts = Counter(
            "gateway_attempts_total",
            "Authorization gateway HTTP attempts by outcome",
            labelnames=("outcome",),
            registry=self._metrics_registry,
        )
        self._mint_latency = Histogram(
            "mint_latency_seconds",
            "End-to-end mint latency",
            labelnames=("mode",),
            registry=self._metrics_registry,
        )
        gateway.add_attempt_listener(lambda outcome: self._gateway_attempts.labels(outcome).inc())

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        ledger: Optional[Ledger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "MintingService":
        gateway = GatewayClient(
            settings.gateway.api_url,
            api_key=settings.gateway.api_key,
            client_id=settings.gateway.client_id,
            timeout=settings.gateway.timeout,
            retry_policy=RetryPolicy(
                max_attempts=settings.gateway.retry_attempts,
                base_delay=settings.gateway.retry_base_delay,
            ),
            transport=transport,
        )
        return cls(
            settings=settings,
            gateway=gateway,
            ledger=ledger or ledger_from_settings(settings),
            relayer=Account.from_key(settings.private_key),
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def relayer_address(self) -> str:
        return self._relayer.address

    @property
    def nonces(self) -> NonceAllocator:
        return self._nonces

    @property
    def forwarder_nonces(self) -> NonceAllocator:
        return self._forwarder_nonces

    # Lifecycle -----------------------------------------------------------

    async def initialize(self) -> Dict[int, int]:
        """Seed relayer nonces for every configured chain."""

        chain_ids = [chain.chain_id for chain in self._settings.chains]
        seeded = await self._nonces.initialize(self._ledger, chain_ids, self._relayer.address)
        logger.info("service.initialized", extra={"chains": chain_ids, "relayer": self._relayer.address})
        return seeded

    async def health(self) -> Dict[str, Any]:
        chains: Dict[str, Any] = {}
        degraded = False
        for chain in self._settings.chains:
            try:
                block = await self._ledger.block_number(chain.chain_id)
            except Exception as exc:
                degraded = True
                logger.warning("health.ledger_unreachable", extra={"chain_id": chain.chain_id, "error": str(exc)})
                chains[str(chain.chain_id)] = {"name": chain.name, "reachable": False}
                continue
            chains[str(chain.chain_id)] = {"name": chain.name, "reachable": True, "blockNumber": block}
        gateway_ok = await self._gateway.check_health()
        if not gateway_ok:
            degraded = True
        return {
            "status": "degraded" if degraded else "ok",
            "chains": chains,
            "gateway": {"healthy": gateway_ok},
            "relayer": self._relayer.address,
            "nonces": self._nonces.snapshot(),
        }

    def metrics(self) -> bytes:
        return generate_latest(self._metrics_registry)

    @property
    def metrics_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    # Validation ----------------------------------------------------------

    def _chain(self, chain_id: Optional[int]) -> ChainConfig:
        try:
            return self._settings.chain(chain_id)
        except KeyError as exc:
            raise InputValidationError(f"Unsupported chain {chain_id}", code="INVALID_CHAIN") from exc

    @staticmethod
    def _require_content(content: Any) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InputValidationError("Content must be a non-empty string", code="INVALID_PROMPT")
        return content

    def _resolve_reward(self, reward: Any, content: str, beneficiary: str) -> RewardAmount:
        amount = self._rewards(content, beneficiary) if reward is None else normalize_reward(reward)
        if reward_is_negative(amount):
            raise InputValidationError("Reward must be non-negative", code="INVALID_ACTIVITY_POINTS")
        return amount

    # Pipeline ------------------------------------------------------------

    async def _measure(self, mode: str, operation: Callable[[], Awaitable[T]]) -> T:
        started = time.perf_counter()
        try:
            result = await operation()
        except MintingError as exc:
            self._mint_requests.labels(mode, exc.code).inc()
            raise
        except Exception:
            self._mint_requests.labels(mode, "INTERNAL_ERROR").inc()
            logger.exception("mint.unexpected_error", extra={"mode": mode})
            raise
        finally:
            self._mint_latency.labels(mode).observe(time.perf_counter() - started)
        self._mint_requests.labels(mode, "success").inc()
        return result

    async def _authorize(
        self,
        attempt: MintAttempt,
        chain: ChainConfig,
        beneficiary: str,
        reward: RewardAmount,
    ) -> AuthorizationProof:
        try:
            proof = await self._gateway.request_authorization(
                attempt.digest,
                beneficiary,
                reward_to_wire(reward),
                chain.prompt_miner,
                chain.chain_id,
            )
        except MintingError as exc:
            attempt.fail(exc.code)
            raise
        attempt.advance(MintState.AUTHORIZED)
        return proof

    async def _pipeline(
        self,
        mode: str,
        chain: ChainConfig,
        beneficiary: str,
        amount: RewardAmount,
        content: str,
        step: Callable[[MintAttempt, AuthorizationProof], Awaitable[T]],
        *,
        precheck: Optional[Callable[[MintAttempt], Awaitable[None]]] = None,
        label: Optional[str] = None,
    ) -> T:
        """Hash, authorize, then hand the attempt and proof to the mode's ``step``."""

        async def _run() -> T:
            attempt = MintAttempt(mode=mode, chain_id=chain.chain_id, digest=hash_content(content))
            if precheck is not None:
                await precheck(attempt)
            proof = await self._authorize(attempt, chain, beneficiary, amount)
            return await step(attempt, proof)

        return await self._measure(label or mode, _run)

    def _receipt(self, attempt: MintAttempt, receipt: Receipt, proof: Optional[AuthorizationProof]) -> MintReceipt:
        return MintReceipt(
            transaction_hash=receipt["transactionHash"],
            digest=attempt.digest,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt.get("gasUsed", 0)),
            chain_id=attempt.chain_id,
            mode=attempt.mode,
            authorization=_receipt_authorization(proof),
        )

    async def authorize_for_external_signing(
        self,
        content: str,
        beneficiary: str,
        reward: Any = None,
        chain_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Hash and authorize only; the caller signs and submits the mint itself."""

        content = self._require_content(content)
        beneficiary = normalize_address(beneficiary, code="INVALID_AUTHOR")
        chain = self._chain(chain_id)
        amount = self._resolve_reward(reward, content, beneficiary)

        async def _mint_data(attempt: MintAttempt, proof: AuthorizationProof) -> Dict[str, Any]:
            return {
                "digest": attempt.digest,
                "authorization": proof.public_dict(),
                "mintData": {
                    "content": content,
                    "beneficiary": beneficiary,
                    "rewardAmount": reward_to_wire(amount),
                    "rewardData": "0x" + encode_reward(amount).hex(),
                    "contract": chain.prompt_miner,
                    "chainId": chain.chain_id,
                },
            }

        return await self._pipeline("external", chain, beneficiary, amount, content, _mint_data)

    async def mint_direct(
        self,
        content: str,
        reward: Any = None,
        account: Optional[LocalAccount] = None,
        chain_id: Optional[int] = None,
        *,
        beneficiary: Optional[str] = None,
    ) -> MintReceipt:
        """Mint signed by ``account`` (the relayer by default), crediting its address."""

        content = self._require_content(content)
        signer = account or self._relayer
        if beneficiary is not None and normalize_address(beneficiary, code="INVALID_AUTHOR") != signer.address:
            raise InputValidationError(
                "Direct submission credits the signing account; use mint_for to name another beneficiary",
                code="INVALID_AUTHOR",
            )
        chain = self._chain(chain_id)
        amount = self._resolve_reward(reward, content, signer.address)
        mode = DirectSubmitMode(self._ctx, signer)

        async def _submit(attempt: MintAttempt, proof: AuthorizationProof) -> MintReceipt:
            receipt = await mode.submit(attempt, chain, content, encode_reward(amount), proof)
            return self._receipt(attempt, receipt, proof)

        return await self._pipeline(mode.name, chain, signer.address, amount, content, _submit)

    async def mint_for(
        self,
        content: str,
        beneficiary: str,
        reward: Any = None,
        chain_id: Optional[int] = None,
    ) -> MintReceipt:
        """Operator-signed mint on behalf of ``beneficiary``."""

        content = self._require_content(content)
        beneficiary = normalize_address(beneficiary, code="INVALID_AUTHOR")
        chain = self._chain(chain_id)
        amount = self._resolve_reward(reward, content, beneficiary)
        mode = self._operator_mode

        async def _precheck(attempt: MintAttempt) -> None:
            await mode.precheck(attempt, chain)

        async def _submit(attempt: MintAttempt, proof: AuthorizationProof) -> MintReceipt:
            receipt = await mode.submit(attempt, chain, beneficiary, content, encode_reward(amount), proof)
            logger.info(
                "mint.sponsored",
                extra={"digest": attempt.digest, "beneficiary": beneficiary, "chain_id": chain.chain_id},
            )
            return self._receipt(attempt, receipt, proof)

        return await self._pipeline(mode.name, chain, beneficiary, amount, content, _submit, precheck=_precheck)

    async def prepare_meta_transaction(
        self,
        content: str,
        author: str,
        reward: Any = None,
        gas: Optional[int] = None,
        deadline: Optional[int] = None,
        chain_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Authorize and return the EIP-712 payload the author must sign."""

        content = self._require_content(content)
        author = normalize_address(author, code="INVALID_AUTHOR")
        chain = self._chain(chain_id)
        MetaTransactionMode.domain(chain)
        if gas is not None and (isinstance(gas, bool) or int(gas) <= 0):
            raise InputValidationError("gas must be a positive integer", code="INVALID_GAS")
        if deadline is not None and int(deadline) <= int(self._clock()):
            raise InputValidationError("deadline must be in the future", code="INVALID_DEADLINE")
        amount = self._resolve_reward(reward, content, author)
        mode = self._meta_mode

        async def _prepare(attempt: MintAttempt, proof: AuthorizationProof) -> Dict[str, Any]:
            typed_data = await mode.prepare(
                attempt,
                chain,
                author,
                content,
                encode_reward(amount),
                proof,
                gas=int(gas) if gas is not None else None,
                deadline=int(deadline) if deadline is not None else None,
            )
            return {
                "digest": attempt.digest,
                "typedData": typed_data,
                "authorization": proof.public_dict(),
            }

        return await self._pipeline(mode.name, chain, author, amount, content, _prepare, label="meta_tx_prepare")

    async def relay_meta_transaction(
        self,
        request: Union[ForwardRequest, Mapping[str, Any]],
        signature: str,
        chain_id: Optional[int] = None,
    ) -> MintReceipt:
        """Verify a signed forward request and relay it through the forwarder."""

        forward = request if isinstance(request, ForwardRequest) else ForwardRequest.from_mapping(request)
        if not isinstance(signature, str) or not signature.startswith("0x") or len(signature) != 132:
            raise InputValidationError("Signature must be a 65-byte hex string", code="INVALID_SIGNATURE")
        chain = self._chain(chain_id)
        MetaTransactionMode.domain(chain)
        mode = self._meta_mode

        async def _run() -> MintReceipt:
            digest = mint_digest_from_call(forward.data) or ""
            attempt = MintAttempt(
                mode=mode.name,
                chain_id=chain.chain_id,
                digest=digest,
                state=MintState.AUTHORIZED,
            )
            logger.info(
                "metatx.relay",
                extra={"chain_id": chain.chain_id, "sender": forward.sender, "signature": redact(signature)},
            )
            receipt = await mode.relay(attempt, chain, forward, signature)
            return self._receipt(attempt, receipt, None)

        return await self._measure(mode.name, _run)

    # Read-only queries ---------------------------------------------------

    async def query_mint_status(self, content_or_digest: str, chain_id: Optional[int] = None) -> Dict[str, Any]:
        """Whether the content (or a precomputed digest) is already on chain."""

        if not isinstance(content_or_digest, str) or not content_or_digest:
            raise InputValidationError("A digest or content is required", code="INVALID_HASH")
        if is_valid_digest(content_or_digest):
            digest = content_or_digest.lower()
        else:
            digest = hash_content(content_or_digest)
        chain = self._chain(chain_id)
        minted = await self._ledger.is_minted(chain.chain_id, chain.prompt_miner, digest)
        return {"digest": digest, "minted": minted, "chainId": chain.chain_id}

    async def query_balance(
        self,
        address: str,
        token: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        address = normalize_address(address)
        chain = self._chain(chain_id)
        token_address = normalize_address(token, code="INVALID_TOKEN") if token else chain.activity_points
        balance = await self._ledger.balance_of(chain.chain_id, token_address, address)
        symbol = await self._ledger.token_symbol(chain.chain_id, token_address)
        return {
            "address": address,
            "token": token_address,
            "chainId": chain.chain_id,
            "wei": str(balance),
            "ether": str(Web3.from_wei(balance, "ether")),
            "symbol": symbol,
        }

    async def query_quota(self) -> Dict[str, Any]:
        quota = await self._gateway.get_quota()
        return quota.model_dump(by_alias=True)

    async def gateway_health(self) -> bool:
        return await self._gateway.check_health()

    async def list_prompts(self, page: int = 1, limit: int = 50, chain_id: Optional[int] = None) -> Dict[str, Any]:
        if page < 1:
            raise InputValidationError("page must be at least 1", code="INVALID_PAGE")
        if not 1 <= limit <= 100:
            raise InputValidationError("limit must be between 1 and 100", code="INVALID_LIMIT")
        return await self._gateway.list_prompts(page, limit, chain_id)

    async def get_analytics(self, period: str, date: Optional[str] = None) -> Dict[str, Any]:
        if period not in ANALYTICS_PERIODS:
            raise InputValidationError(
                "period must be one of: " + ", ".join(ANALYTICS_PERIODS),
                code="INVALID_PERIOD",
            )
        return await self._gateway.get_analytics(period, date)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._gateway.get_stats()


__all__ = ["ANALYTICS_PERIODS", "MintReceipt", "MintingService"]
