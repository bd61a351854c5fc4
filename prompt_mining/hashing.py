"""Content commitments, reward encoding and input validators."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, List, Sequence, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import is_address, is_hex, keccak, to_checksum_address
from web3 import Web3

from .errors import InputValidationError

RewardAmount = Union[int, List[int]]

EMPTY_REWARD = b""
_DIGEST_HEX_LENGTH = 66


def hash_content(content: str) -> str:
    """Return the keccak-256 commitment of ``content`` as 0x-prefixed hex.

    The digest is computed over the UTF-8 bytes of the string with no salt, so
    identical content always yields the identical digest across processes.
    """

    if not isinstance(content, str):
        raise TypeError("content must be a string")
    return "0x" + keccak(content.encode("utf-8")).hex()


def digest_bytes(digest: str) -> bytes:
    if not is_valid_digest(digest):
        raise InputValidationError("Invalid digest format", code="INVALID_HASH")
    return bytes.fromhex(digest[2:])


def encode_reward(amount: Union[int, Sequence[int]]) -> bytes:
    """ABI-encode a reward as ``uint256`` or ``uint256[]``.

    A negative value (or a schedule containing one) encodes to the empty byte
    string, which the contracts treat as "no reward".
    """

    if isinstance(amount, (list, tuple)):
        values = [int(value) for value in amount]
        if any(value < 0 for value in values):
            return EMPTY_REWARD
        return abi_encode(["uint256[]"], [values])
    value = int(amount)
    if value < 0:
        return EMPTY_REWARD
    return abi_encode(["uint256"], [value])


def decode_reward(data: bytes, multi: bool = False) -> RewardAmount:
    if not data:
        return [] if multi else 0
    if multi:
        (values,) = abi_decode(["uint256[]"], data)
        return [int(value) for value in values]
    (value,) = abi_decode(["uint256"], data)
    return int(value)


def reward_hex(amount: Union[int, Sequence[int]]) -> str:
    return "0x" + encode_reward(amount).hex()


def normalize_reward(value: Any) -> RewardAmount:
    """Parse caller-supplied reward input into wei integers.

    Accepts an int, a decimal string of an integer, or a list of either.
    Fractional or non-numeric values raise ``InputValidationError``.
    """

    if isinstance(value, (list, tuple)):
        if not value:
            raise InputValidationError("Reward schedule must not be empty", code="INVALID_ACTIVITY_POINTS")
        return [_parse_reward_value(item) for item in value]
    return _parse_reward_value(value)


def _parse_reward_value(value: Any) -> int:
    if isinstance(value, bool):
        raise InputValidationError("Reward must be an integer", code="INVALID_ACTIVITY_POINTS")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = Decimal(text)
        except InvalidOperation as exc:
            raise InputValidationError("Reward must be an integer", code="INVALID_ACTIVITY_POINTS") from exc
        if not parsed.is_finite() or parsed != parsed.to_integral_value():
            raise InputValidationError("Reward must be an integer", code="INVALID_ACTIVITY_POINTS")
        return int(parsed)
    raise InputValidationError("Reward must be an integer", code="INVALID_ACTIVITY_POINTS")


def reward_is_negative(amount: RewardAmount) -> bool:
    if isinstance(amount, list):
        return any(value < 0 for value in amount)
    return amount < 0


def reward_to_wire(amount: RewardAmount) -> Union[str, List[str]]:
    if isinstance(amount, list):
        return [str(value) for value in amount]
    return str(amount)


def authorization_message_hash(
    chain_id: int,
    contract: str,
    digest: str,
    beneficiary: str,
    encoded_reward: bytes,
) -> bytes:
    """Hash of the tuple the gateway signs when it authorizes a mint."""

    return Web3.solidity_keccak(
        ["uint256", "address", "bytes32", "address", "bytes"],
        [
            int(chain_id),
            to_checksum_address(contract),
            digest_bytes(digest),
            to_checksum_address(beneficiary),
            encoded_reward,
        ],
    )


def is_valid_address(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("0x") and is_address(value)


def is_valid_digest(value: Any) -> bool:
    return (
        isinstance(value, str)
        and value.startswith("0x")
        and len(value) == _DIGEST_HEX_LENGTH
        and is_hex(value)
    )


def normalize_address(value: Any, *, code: str = "INVALID_ADDRESS") -> str:
    if not is_valid_address(value):
        raise InputValidationError("Invalid address format", code=code)
    return to_checksum_address(value)


def redact(value: Any, keep: int = 10) -> str:
    text = "" if value is None else str(value)
    if len(text) <= keep:
        return text
    return text[:keep] + "..."


__all__ = [
    "EMPTY_REWARD",
    "RewardAmount",
    "authorization_message_hash",
    "decode_reward",
    "digest_bytes",
    "encode_reward",
    "hash_content",
    "is_valid_address",
    "is_valid_digest",
    "normalize_address",
    "normalize_reward",
    "redact",
    "reward_hex",
    "reward_is_negative",
    "reward_to_wire",
]
