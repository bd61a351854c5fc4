"""Error taxonomy shared by the minting pipeline and the HTTP routes."""

from __future__ import annotations

from typing import Any, Dict, Optional

INPUT_VALIDATION = "InputValidation"
GATEWAY_AUTH = "GatewayAuth"
GATEWAY_QUOTA = "GatewayQuota"
GATEWAY_TRANSIENT = "GatewayTransient"
LEDGER_SUBMISSION = "LedgerSubmission"
META_TX_PROTOCOL = "MetaTxProtocol"
CONFIGURATION = "Configuration"
INTERNAL = "Internal"


class MintingError(RuntimeError):
    """Base class for every classified failure raised by the pipeline.

    ``code`` is the stable machine-readable identifier returned to callers,
    ``category`` groups codes into the propagation classes and ``retryable``
    tells the layer above whether a resubmission is safe.
    """

    code = "MINTING_ERROR"
    category = INTERNAL
    http_status = 500
    retryable = False
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.default_message)
        if code is not None:
            self.code = code
        self.status_code = status_code
        self.details = dict(details or {})

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ConfigurationError(MintingError, ValueError):
    code = "INVALID_CONFIGURATION"
    category = CONFIGURATION
    default_message = "Invalid configuration"


class InputValidationError(MintingError, ValueError):
    code = "VALIDATION_ERROR"
    category = INPUT_VALIDATION
    http_status = 400
    default_message = "Request validation failed"


# Gateway -----------------------------------------------------------------


class GatewayFailure(MintingError):
    """Any failure talking to the authorization gateway."""

    code = "GATEWAY_ERROR"
    category = GATEWAY_TRANSIENT
    http_status = 502
    retryable = True
    default_message = "An unexpected error occurred with the authorization gateway."


class GatewayError(GatewayFailure):
    """Generic non-2xx or malformed gateway response (retryable)."""


class GatewayTimeout(GatewayFailure):
    code = "GATEWAY_TIMEOUT"
    http_status = 504
    default_message = "Authorization gateway request timed out. Please try again."


class GatewayUnavailable(GatewayFailure):
    code = "GATEWAY_UNAVAILABLE"
    http_status = 503
    default_message = "Authorization gateway is temporarily unavailable."


class RateLimited(GatewayFailure):
    code = "RATE_LIMITED"
    http_status = 429
    default_message = "Authorization gateway rate limit exceeded. Please try again later."


class InvalidCredentials(GatewayFailure):
    code = "INVALID_API_KEY"
    category = GATEWAY_AUTH
    http_status = 401
    retryable = False
    default_message = "Invalid gateway API key. Check the PM_GATEWAY_API_KEY configuration."


class TierNotAllowed(GatewayFailure):
    code = "INVALID_TIER"
    category = GATEWAY_AUTH
    http_status = 403
    retryable = False
    default_message = "This feature is not available in the current gateway tier."


class QuotaExceeded(GatewayFailure):
    code = "QUOTA_EXCEEDED"
    category = GATEWAY_QUOTA
    http_status = 402
    retryable = False
    default_message = "Gateway quota exceeded. Upgrade the plan or wait for the quota reset."


# Ledger ------------------------------------------------------------------


class LedgerSubmissionError(MintingError):
    """Failure while building, submitting or confirming a transaction."""

    code = "TRANSACTION_FAILED"
    category = LEDGER_SUBMISSION
    http_status = 502
    default_message = "Ledger transaction failed"


class LedgerUnavailable(LedgerSubmissionError):
    code = "LEDGER_UNAVAILABLE"
    http_status = 503
    default_message = "Unable to reach the ledger RPC endpoint"


class AlreadyMinted(LedgerSubmissionError):
    code = "ALREADY_MINTED"
    http_status = 409
    default_message = "This content has already been minted"


class InsufficientFunds(LedgerSubmissionError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 402
    default_message = "Insufficient funds for blockchain transaction"


class AuthorizationExpired(LedgerSubmissionError):
    code = "AUTHORIZATION_EXPIRED"
    http_status = 422
    default_message = "Gateway authorization expired. Please request a new authorization."


class InvalidProof(LedgerSubmissionError):
    code = "INVALID_SIGNATURE"
    http_status = 422
    default_message = "Invalid gateway signature. Authorization may be corrupted or tampered with."


class NonceConflict(LedgerSubmissionError):
    """Duplicate or stale sequence number; safe to retry one layer up."""

    code = "NONCE_EXPIRED"
    http_status = 409
    retryable = True
    default_message = "Transaction nonce expired, please retry"


class TransactionReverted(LedgerSubmissionError):
    code = "TRANSACTION_REVERTED"
    http_status = 422
    default_message = "Transaction was mined but reverted"


class ReceiptTimeout(LedgerSubmissionError):
    code = "RECEIPT_TIMEOUT"
    http_status = 504
    default_message = "Transaction submitted but no receipt was observed before the timeout"


# Meta-transactions -------------------------------------------------------


class MetaTxProtocolError(MintingError):
    code = "META_TX_FAILED"
    category = META_TX_PROTOCOL
    http_status = 422
    default_message = "Meta-transaction execution failed"


class MetaTxExpired(MetaTxProtocolError):
    code = "META_TX_EXPIRED"
    default_message = "Meta-transaction expired. The deadline has passed."


class InvalidForwardSignature(MetaTxProtocolError):
    code = "INVALID_FORWARD_SIGNATURE"
    default_message = "Invalid signature. The signature does not match the request."


class ForwarderNotTrusted(MetaTxProtocolError):
    code = "FORWARDER_NOT_TRUSTED"
    default_message = "Target contract does not trust this forwarder."


# Nonces ------------------------------------------------------------------


class NonceNotInitialized(MintingError):
    code = "NONCE_NOT_INITIALIZED"
    http_status = 503
    default_message = "Nonce allocator is not initialized for this chain"


class NonceSeedError(ConfigurationError):
    code = "NONCE_SEED_FAILED"
    default_message = "Unable to seed transaction nonce from the ledger"


__all__ = [
    "AlreadyMinted",
    "AuthorizationExpired",
    "CONFIGURATION",
    "ConfigurationError",
    "ForwarderNotTrusted",
    "GATEWAY_AUTH",
    "GATEWAY_QUOTA",
    "GATEWAY_TRANSIENT",
    "GatewayError",
    "GatewayFailure",
    "GatewayTimeout",
    "GatewayUnavailable",
    "INPUT_VALIDATION",
    "INTERNAL",
    "InputValidationError",
    "InsufficientFunds",
    "InvalidCredentials",
    "InvalidForwardSignature",
    "InvalidProof",
    "LEDGER_SUBMISSION",
    "LedgerSubmissionError",
    "LedgerUnavailable",
    "META_TX_PROTOCOL",
    "MetaTxExpired",
    "MetaTxProtocolError",
    "MintingError",
    "NonceConflict",
    "NonceNotInitialized",
    "NonceSeedError",
    "QuotaExceeded",
    "RateLimited",
    "ReceiptTimeout",
    "TierNotAllowed",
    "TransactionReverted",
]
