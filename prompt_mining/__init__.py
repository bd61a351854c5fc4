"""Privacy-preserving prompt mining: hash locally, authorize remotely, mint on chain."""

from .errors import MintingError
from .hashing import encode_reward, hash_content
from .nonces import NonceAllocator
from .service import MintingService, MintReceipt

__all__ = [
    "MintReceipt",
    "MintingError",
    "MintingService",
    "NonceAllocator",
    "encode_reward",
    "hash_content",
]
