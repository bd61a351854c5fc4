"""ABI call encoding for the PromptMiner, ActivityPoints and forwarder contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import function_signature_to_4byte_selector, is_hex, to_checksum_address

from .errors import InputValidationError, InvalidForwardSignature
from .hashing import digest_bytes, is_valid_address

DIRECT_MINT = "mint(bytes32,string,bytes,bytes)"
OPERATOR_MINT = "mint(address,bytes32,string,bytes,bytes)"
FORWARDER_EXECUTE = "execute((address,address,uint256,uint256,uint48,bytes,bytes))"
IS_PROMPT_MINTED = "isPromptMinted(bytes32)"
BALANCE_OF = "balanceOf(address)"
SYMBOL = "symbol()"
FORWARDER_NONCES = "nonces(address)"

FORWARDER_ERRORS = {
    "ERC2771ForwarderExpiredRequest": "ERC2771ForwarderExpiredRequest(uint48)",
    "ERC2771ForwarderInvalidSigner": "ERC2771ForwarderInvalidSigner(address,address)",
    "ERC2771UntrustfulTarget": "ERC2771UntrustfulTarget(address,address)",
}

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

FORWARD_REQUEST_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "gas", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint48"},
    {"name": "data", "type": "bytes"},
]


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def selector_hex(signature: str) -> str:
    return "0x" + selector(signature).hex()


def encode_call(signature: str, types: Sequence[str], values: Sequence[Any]) -> bytes:
    return selector(signature) + abi_encode(list(types), list(values))


def encode_direct_mint(digest: str, content: str, reward_data: bytes, proof: bytes) -> bytes:
    return encode_call(
        DIRECT_MINT,
        ["bytes32", "string", "bytes", "bytes"],
        [digest_bytes(digest), content, reward_data, proof],
    )


def encode_operator_mint(beneficiary: str, digest: str, content: str, reward_data: bytes, proof: bytes) -> bytes:
    return encode_call(
        OPERATOR_MINT,
        ["address", "bytes32", "string", "bytes", "bytes"],
        [to_checksum_address(beneficiary), digest_bytes(digest), content, reward_data, proof],
    )


def encode_is_minted(digest: str) -> bytes:
    return encode_call(IS_PROMPT_MINTED, ["bytes32"], [digest_bytes(digest)])


def encode_balance_of(address: str) -> bytes:
    return encode_call(BALANCE_OF, ["address"], [to_checksum_address(address)])


def encode_symbol() -> bytes:
    return selector(SYMBOL)


def encode_forwarder_nonces(address: str) -> bytes:
    return encode_call(FORWARDER_NONCES, ["address"], [to_checksum_address(address)])


def decode_single(abi_type: str, data: bytes) -> Any:
    (value,) = abi_decode([abi_type], bytes(data))
    return value


@dataclass(frozen=True)
class ForwarderDomain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class ForwardRequest:
    """ERC-2771 forward request envelope as signed by the original sender."""

    sender: str
    to: str
    value: int
    gas: int
    nonce: int
    deadline: int
    data: str

    def to_message(self) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.to,
            "value": self.value,
            "gas": self.gas,
            "nonce": self.nonce,
            "deadline": self.deadline,
            "data": self.data,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ForwardRequest":
        def _address(key: str, code: str) -> str:
            value = data.get(key)
            if not is_valid_address(value):
                raise InputValidationError(f"Invalid '{key}' address", code=code)
            return to_checksum_address(value)

        def _uint(key: str) -> int:
            value = data.get(key)
            try:
                number = int(value, 0) if isinstance(value, str) else int(value)
            except (TypeError, ValueError) as exc:
                raise InputValidationError(f"Invalid '{key}' value", code="INVALID_REQUEST") from exc
            if isinstance(value, bool) or number < 0:
                raise InputValidationError(f"Invalid '{key}' value", code="INVALID_REQUEST")
            return number

        call_data = data.get("data")
        if (
            not isinstance(call_data, str)
            or not call_data.startswith("0x")
            or len(call_data) % 2
            or not is_hex(call_data)
        ):
            raise InputValidationError("Invalid 'data' field", code="INVALID_DATA")
        return cls(
            sender=_address("from", "INVALID_FROM"),
            to=_address("to", "INVALID_TO"),
            value=_uint("value"),
            gas=_uint("gas"),
            nonce=_uint("nonce"),
            deadline=_uint("deadline"),
            data=call_data,
        )


def build_typed_data(domain: ForwarderDomain, request: ForwardRequest) -> Dict[str, Any]:
    return {
        "types": {
            "EIP712Domain": list(EIP712_DOMAIN_FIELDS),
            "ForwardRequest": list(FORWARD_REQUEST_FIELDS),
        },
        "primaryType": "ForwardRequest",
        "domain": domain.to_dict(),
        "message": request.to_message(),
    }


def recover_forward_signer(domain: ForwarderDomain, request: ForwardRequest, signature: str) -> str:
    """Recover the address that signed ``request`` under ``domain``."""

    signable = encode_typed_data(full_message=build_typed_data(domain, request))
    try:
        return Account.recover_message(signable, signature=signature)
    except (ValueError, TypeError, KeyValidationError) as exc:
        raise InvalidForwardSignature("Signature could not be decoded") from exc


def encode_forwarder_execute(request: ForwardRequest, signature: str) -> bytes:
    """Encode ``execute(ForwardRequestData)``; the struct carries no nonce."""

    return encode_call(
        FORWARDER_EXECUTE,
        ["(address,address,uint256,uint256,uint48,bytes,bytes)"],
        [
            (
                to_checksum_address(request.sender),
                to_checksum_address(request.to),
                request.value,
                request.gas,
                request.deadline,
                bytes.fromhex(request.data[2:]),
                bytes.fromhex(signature[2:] if signature.startswith("0x") else signature),
            )
        ],
    )


def mint_digest_from_call(data: str) -> Optional[str]:
    """Digest argument of a direct ``mint`` call, or None for any other call."""

    raw = bytes.fromhex(data[2:]) if data.startswith("0x") else b""
    if len(raw) < 36 or raw[:4] != selector(DIRECT_MINT):
        return None
    return "0x" + raw[4:36].hex()


def forwarder_error_selectors() -> Dict[str, str]:
    return {selector_hex(signature): name for name, signature in FORWARDER_ERRORS.items()}


__all__: List[str] = [
    "BALANCE_OF",
    "DIRECT_MINT",
    "FORWARDER_ERRORS",
    "FORWARDER_EXECUTE",
    "FORWARD_REQUEST_FIELDS",
    "ForwardRequest",
    "ForwarderDomain",
    "IS_PROMPT_MINTED",
    "OPERATOR_MINT",
    "build_typed_data",
    "decode_single",
    "encode_balance_of",
    "encode_call",
    "encode_direct_mint",
    "encode_forwarder_execute",
    "encode_forwarder_nonces",
    "encode_is_minted",
    "encode_operator_mint",
    "encode_symbol",
    "forwarder_error_selectors",
    "mint_digest_from_call",
    "recover_forward_signer",
    "selector",
    "selector_hex",
]
