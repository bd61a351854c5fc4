"""Async client for the mint authorization gateway.

Only the content digest ever leaves this process: requests carry the digest,
beneficiary, reward and chain metadata, never the prompt text.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
from eth_utils import is_hex
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import (
    GatewayError,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidCredentials,
    MintingError,
    QuotaExceeded,
    RateLimited,
    TierNotAllowed,
)
from .hashing import redact
from .retry import AttemptOutcome, RetryPolicy, next_action

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 3.0

_STATUS_ERRORS = {
    401: InvalidCredentials,
    402: QuotaExceeded,
    403: TierNotAllowed,
    429: RateLimited,
    503: GatewayUnavailable,
}


class AuthorizationRequest(BaseModel):
    """Body of ``POST /authorize/mint``. Holds the digest, never the content."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    digest: str
    beneficiary: str
    reward_amount: Union[str, List[str]] = Field(alias="rewardAmount")
    signer_context: str = Field(alias="signerContext")
    chain_id: int = Field(alias="chainId")
    timestamp: int


class AuthorizationProof(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    signature: str
    nonce: Optional[str] = None
    expiry: Optional[int] = Field(default=None, validation_alias=AliasChoices("expiry", "expiresAt"))

    @field_validator("signature")
    @classmethod
    def _check_signature(cls, value: str) -> str:
        if not value.startswith("0x") or len(value) <= 2 or len(value) % 2 or not is_hex(value):
            raise ValueError("signature must be 0x-prefixed, even-length hex")
        return value

    @field_validator("nonce", mode="before")
    @classmethod
    def _coerce_nonce(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value)

    @property
    def signature_bytes(self) -> bytes:
        return bytes.fromhex(self.signature[2:])

    def public_dict(self) -> Dict[str, Any]:
        return {"signature": self.signature, "nonce": self.nonce, "expiresAt": self.expiry}


class QuotaSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    used: int
    limit: int
    tier: str
    reset_at: Optional[int] = Field(default=None, alias="resetAt")


class AuthorizationResponse(BaseModel):
    authorization: AuthorizationProof
    quota: Optional[QuotaSnapshot] = None


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return None


def classify_response(response: httpx.Response) -> Optional[MintingError]:
    """Map a non-2xx gateway response onto the error taxonomy."""

    status = response.status_code
    if 200 <= status < 300:
        return None
    error_cls = _STATUS_ERRORS.get(status, GatewayError)
    message = _error_message(response)
    if message is None and error_cls is GatewayError:
        message = f"Gateway responded with HTTP {status}"
    return error_cls(message, status_code=status)


def classify_transport_error(exc: httpx.TransportError) -> MintingError:
    if isinstance(exc, httpx.TimeoutException):
        return GatewayTimeout(details={"error": type(exc).__name__})
    return GatewayUnavailable(
        "Unable to reach the authorization gateway.",
        details={"error": type(exc).__name__},
    )


class GatewayClient:
    """HTTP client for the authorization gateway with classified retries."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str,
        client_id: Optional[str] = None,
        timeout: float = 5.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        on_attempt: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client_id = client_id
        self._timeout = timeout
        self._policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._listeners: List[Callable[[str], None]] = [on_attempt] if on_attempt else []

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    def _headers(self) -> Dict[str, str]:
        headers = {"x-api-key": self._api_key, "Content-Type": "application/json"}
        if self._client_id:
            headers["x-client-id"] = self._client_id
        return headers

    async def _attempt(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> AttemptOutcome[Any]:
        url = self._base_url + path
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self._timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, json=json, params=params)
        except httpx.TransportError as exc:
            return AttemptOutcome.failure(classify_transport_error(exc))
        error = classify_response(response)
        if error is not None:
            return AttemptOutcome.failure(error)
        try:
            return AttemptOutcome.success(response.json())
        except ValueError:
            return AttemptOutcome.failure(GatewayError("Gateway returned a non-JSON response"))

    def add_attempt_listener(self, callback: Callable[[str], None]) -> None:
        """Register ``callback`` to receive "success" or the error code of every attempt."""

        self._listeners.append(callback)

    def _record(self, outcome: AttemptOutcome[Any]) -> None:
        label = "success" if outcome.ok else outcome.error.code
        for listener in self._listeners:
            listener(label)

    async def _with_retry(
        self,
        operation: str,
        call: Callable[[], Awaitable[AttemptOutcome[Any]]],
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            outcome = await call()
            self._record(outcome)
            if outcome.ok:
                return outcome.value
            error = outcome.error
            decision = next_action(self._policy, attempt, error)
            if not decision.retry:
                logger.warning(
                    "gateway.failed",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "code": error.code,
                        "reason": decision.reason,
                    },
                )
                raise error
            logger.info(
                "gateway.retry",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "code": error.code,
                    "delay": decision.delay,
                },
            )
            await self._sleep(decision.delay)

    async def request_authorization(
        self,
        digest: str,
        beneficiary: str,
        reward_amount: Union[str, List[str]],
        signer_context: str,
        chain_id: int,
    ) -> AuthorizationProof:
        """Request a signed mint authorization for ``digest``."""

        request = AuthorizationRequest(
            digest=digest,
            beneficiary=beneficiary,
            reward_amount=reward_amount,
            signer_context=signer_context,
            chain_id=chain_id,
            timestamp=int(self._clock() * 1000),
        )
        payload = request.model_dump(by_alias=True)

        async def _call() -> AttemptOutcome[AuthorizationResponse]:
            outcome = await self._attempt("POST", "/authorize/mint", json=payload)
            if not outcome.ok:
                return outcome
            try:
                parsed = AuthorizationResponse.model_validate(outcome.value)
            except ValidationError:
                return AttemptOutcome.failure(GatewayError("Gateway returned an invalid authorization payload"))
            return AttemptOutcome.success(parsed)

        response: AuthorizationResponse = await self._with_retry("authorize", _call)
        if response.quota is not None:
            logger.info(
                "gateway.quota",
                extra={
                    "used": response.quota.used,
                    "limit": response.quota.limit,
                    "tier": response.quota.tier,
                },
            )
        logger.info(
            "gateway.authorized",
            extra={
                "digest": digest,
                "chain_id": chain_id,
                "signature": redact(response.authorization.signature),
                "auth_nonce": response.authorization.nonce,
            },
        )
        return response.authorization

    async def get_quota(self) -> QuotaSnapshot:
        async def _call() -> AttemptOutcome[QuotaSnapshot]:
            outcome = await self._attempt("GET", "/quota")
            if not outcome.ok:
                return outcome
            data = outcome.value.get("quota", outcome.value) if isinstance(outcome.value, dict) else None
            try:
                return AttemptOutcome.success(QuotaSnapshot.model_validate(data))
            except ValidationError:
                return AttemptOutcome.failure(GatewayError("Gateway returned an invalid quota payload"))

        return await self._with_retry("quota", _call)

    async def check_health(self) -> bool:
        """Quick liveness check; any failure reads as unhealthy."""

        outcome = await self._attempt("GET", "/health", timeout=HEALTH_TIMEOUT)
        self._record(outcome)
        if not outcome.ok:
            logger.debug("gateway.health_failed", extra={"code": outcome.error.code})
            return False
        return isinstance(outcome.value, dict) and outcome.value.get("status") == "healthy"

    async def _get_json(self, operation: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def _call() -> AttemptOutcome[Dict[str, Any]]:
            outcome = await self._attempt("GET", path, params=params)
            if outcome.ok and not isinstance(outcome.value, dict):
                return AttemptOutcome.failure(GatewayError(f"Gateway returned an invalid {operation} payload"))
            return outcome

        return await self._with_retry(operation, _call)

    async def list_prompts(self, page: int = 1, limit: int = 50, chain_id: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if chain_id is not None:
            params["chainId"] = str(chain_id)
        return await self._get_json("prompts", "/customer/prompts", params)

    async def get_analytics(self, period: str, date: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"period": period}
        if date:
            params["date"] = date
        return await self._get_json("analytics", "/customer/prompts/analytics", params)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._get_json("stats", "/customer/stats")


__all__ = [
    "AuthorizationProof",
    "AuthorizationRequest",
    "AuthorizationResponse",
    "GatewayClient",
    "QuotaSnapshot",
    "classify_response",
    "classify_transport_error",
]
