"""Configuration models for the prompt mining relay."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from .errors import ConfigurationError
from .hashing import is_valid_address, normalize_address

logger = logging.getLogger(__name__)

_PRIVATE_KEY_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
DEFAULT_REWARD_SCHEDULE = ["10", "15", "20", "30"]


def _parse_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw, 0)
    except ValueError:
        logger.warning("Invalid integer for %s: %s", name, raw)
        return default
    return value


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: %s", name, raw)
        return default


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if not raw:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_api_keys(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``PM_API_KEYS``: a JSON token->role object or ``key[:role],...``."""

    if not raw or not raw.strip():
        return {}
    text = raw.strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON supplied for PM_API_KEYS: {exc}") from exc
        return {str(key): str(value) for key, value in parsed.items()}
    keys: Dict[str, str] = {}
    for entry in text.split(","):
        entry = entry.strip()
        if not entry:
            continue
        token, _, role = entry.partition(":")
        keys[token.strip()] = role.strip() or "user"
    return keys


def _require_address(name: str, value: Any) -> str:
    if not is_valid_address(value):
        raise ConfigurationError(f"Invalid address for {name}: {value!r}")
    return normalize_address(value)


def _require_url(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{name} is required")
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"{name} must be a valid URL")
    return value.rstrip("/")


@dataclass
class ChainConfig:
    """One ledger the relay submits to, with its contract addresses."""

    chain_id: int
    rpc_url: str
    prompt_miner: str
    activity_points: str
    name: str = ""
    forwarder: Optional[str] = None
    forwarder_name: str = "ERC2771Forwarder"
    forwarder_version: str = "1"

    def __post_init__(self) -> None:
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ConfigurationError("chain_id must be a positive integer")
        self.rpc_url = _require_url("rpc_url", self.rpc_url)
        self.prompt_miner = _require_address("prompt_miner", self.prompt_miner)
        self.activity_points = _require_address("activity_points", self.activity_points)
        if self.forwarder:
            self.forwarder = _require_address("forwarder", self.forwarder)
        else:
            self.forwarder = None
        if not self.name:
            self.name = f"chain-{self.chain_id}"

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ChainConfig":
        def _resolve(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        chain_id = _resolve("chain_id", "chainId")
        if chain_id is None:
            raise ConfigurationError("chain_id is required")
        try:
            chain_id = int(chain_id)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("chain_id must be a valid number") from exc
        return cls(
            chain_id=chain_id,
            name=str(_resolve("name", default="")),
            rpc_url=_resolve("rpc_url", "rpcUrl"),
            prompt_miner=_resolve("prompt_miner", "promptMiner", "prompt_miner_address"),
            activity_points=_resolve("activity_points", "activityPoints", "activity_points_address"),
            forwarder=_resolve("forwarder", "forwarder_address", "forwarderAddress"),
            forwarder_name=str(_resolve("forwarder_name", "forwarderName", default="ERC2771Forwarder")),
            forwarder_version=str(_resolve("forwarder_version", "forwarderVersion", default="1")),
        )


@dataclass
class GatewayConfig:
    """Credentials and transport settings for the authorization gateway."""

    api_url: str
    api_key: str
    client_id: Optional[str] = None
    timeout_ms: int = 5000
    retry_attempts: int = 3
    retry_base_delay: float = 1.0

    def __post_init__(self) -> None:
        self.api_url = _require_url("gateway api_url", self.api_url)
        if not isinstance(self.api_key, str) or not self.api_key.startswith("pzero_"):
            raise ConfigurationError(
                'gateway api_key must start with "pzero_" (e.g. pzero_live_xxx or pzero_test_xxx)'
            )
        if not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            raise ConfigurationError("timeout_ms must be a positive integer")
        if not isinstance(self.retry_attempts, int) or self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")
        if self.retry_base_delay < 0:
            raise ConfigurationError("retry_base_delay must be non-negative")

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000


@dataclass
class RewardConfig:
    schedule: List[str] = field(default_factory=lambda: list(DEFAULT_REWARD_SCHEDULE))
    use_multi_rewards: bool = False

    def __post_init__(self) -> None:
        if not self.schedule:
            raise ConfigurationError("reward schedule must not be empty")
        self.schedule = [str(value) for value in self.schedule]


@dataclass
class AuthConfig:
    """Caller-facing API keys and per-key rate limiting."""

    api_keys: Dict[str, str] = field(default_factory=dict)
    require_auth_mint: bool = True
    require_auth_read: bool = False
    rate_limit: int = 100
    rate_window_seconds: float = 900.0

    def __post_init__(self) -> None:
        if self.require_auth_mint and not self.api_keys:
            raise ConfigurationError(
                "require_auth_mint is enabled but no API keys are configured"
            )
        if self.rate_limit < 0:
            raise ConfigurationError("rate_limit must be non-negative")
        if self.rate_window_seconds <= 0:
            raise ConfigurationError("rate_window_seconds must be positive")


@dataclass
class Settings:
    """Loaded relay configuration."""

    chains: List[ChainConfig]
    gateway: GatewayConfig
    private_key: str = field(repr=False)
    rewards: RewardConfig = field(default_factory=RewardConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    mint_gas_limit: int = 500_000
    relay_gas_buffer: int = 50_000
    meta_tx_ttl: int = 3600
    receipt_timeout: int = 180
    request_timeout: int = 30
    strict_nonce_seeding: bool = False

    def __post_init__(self) -> None:
        if not self.chains:
            raise ConfigurationError("at least one chain must be configured")
        seen = set()
        for chain in self.chains:
            if chain.chain_id in seen:
                raise ConfigurationError(f"duplicate chain_id {chain.chain_id}")
            seen.add(chain.chain_id)
        if not isinstance(self.private_key, str) or not _PRIVATE_KEY_PATTERN.match(self.private_key):
            raise ConfigurationError("private_key must be 0x followed by 64 hex characters")
        for name in ("mint_gas_limit", "meta_tx_ttl", "receipt_timeout", "request_timeout"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer")
        if not isinstance(self.relay_gas_buffer, int) or self.relay_gas_buffer < 0:
            raise ConfigurationError("relay_gas_buffer must be non-negative")

    @property
    def default_chain_id(self) -> int:
        return self.chains[0].chain_id

    def chain(self, chain_id: Optional[int] = None) -> ChainConfig:
        target = self.default_chain_id if chain_id is None else chain_id
        for chain in self.chains:
            if chain.chain_id == target:
                return chain
        raise KeyError(target)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Settings":
        def _resolve(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        chains_data = _resolve("chains", default=[]) or []
        if isinstance(chains_data, dict):
            chains_data = [dict(value, chain_id=key) for key, value in chains_data.items()]
        chains = [ChainConfig.from_mapping(item) for item in chains_data]

        gateway_data = _resolve("gateway", "pzero", default={}) or {}
        gateway = GatewayConfig(
            api_url=gateway_data.get("api_url") or gateway_data.get("apiUrl"),
            api_key=gateway_data.get("api_key") or gateway_data.get("apiKey"),
            client_id=gateway_data.get("client_id") or gateway_data.get("clientId"),
            timeout_ms=int(gateway_data.get("timeout_ms", gateway_data.get("authTimeoutMs", 5000))),
            retry_attempts=int(gateway_data.get("retry_attempts", gateway_data.get("retryAttempts", 3))),
            retry_base_delay=float(gateway_data.get("retry_base_delay", 1.0)),
        )

        rewards_data = _resolve("rewards", default={}) or {}
        rewards = RewardConfig(
            schedule=list(rewards_data.get("schedule") or DEFAULT_REWARD_SCHEDULE),
            use_multi_rewards=bool(rewards_data.get("use_multi_rewards", rewards_data.get("useMultiRewards", False))),
        )

        auth_data = _resolve("auth", default={}) or {}
        api_keys = auth_data.get("api_keys") or auth_data.get("apiKeys") or {}
        if isinstance(api_keys, list):
            api_keys = {str(key): "user" for key in api_keys}
        auth = AuthConfig(
            api_keys={str(key): str(role) for key, role in api_keys.items()},
            require_auth_mint=bool(auth_data.get("require_auth_mint", True)),
            require_auth_read=bool(auth_data.get("require_auth_read", False)),
            rate_limit=int(auth_data.get("rate_limit", 100)),
            rate_window_seconds=float(auth_data.get("rate_window_seconds", 900)),
        )

        return cls(
            chains=chains,
            gateway=gateway,
            private_key=str(_resolve("private_key", "privateKey", default="")),
            rewards=rewards,
            auth=auth,
            mint_gas_limit=int(_resolve("mint_gas_limit", "mintGasLimit", default=500_000)),
            relay_gas_buffer=int(_resolve("relay_gas_buffer", "relayGasBuffer", default=50_000)),
            meta_tx_ttl=int(_resolve("meta_tx_ttl", "metaTxTtl", default=3600)),
            receipt_timeout=int(_resolve("receipt_timeout", "receiptTimeout", default=180)),
            request_timeout=int(_resolve("request_timeout", "requestTimeout", default=30)),
            strict_nonce_seeding=bool(_resolve("strict_nonce_seeding", "strictNonceSeeding", default=False)),
        )

    @classmethod
    def from_env(cls) -> "Settings":
        rpc_url = os.getenv("PM_RPC_URL")
        chain_id = os.getenv("PM_CHAIN_ID")
        private_key = os.getenv("PM_PRIVATE_KEY")
        prompt_miner = os.getenv("PM_PROMPT_MINER_ADDRESS")
        activity_points = os.getenv("PM_ACTIVITY_POINTS_ADDRESS")
        api_key = os.getenv("PM_GATEWAY_API_KEY") or os.getenv("PM_PZERO_API_KEY")
        api_url = os.getenv("PM_GATEWAY_API_URL") or os.getenv("PM_PZERO_API_URL")
        missing = [
            name
            for name, value in (
                ("PM_RPC_URL", rpc_url),
                ("PM_CHAIN_ID", chain_id),
                ("PM_PRIVATE_KEY", private_key),
                ("PM_PROMPT_MINER_ADDRESS", prompt_miner),
                ("PM_ACTIVITY_POINTS_ADDRESS", activity_points),
                ("PM_GATEWAY_API_KEY", api_key),
                ("PM_GATEWAY_API_URL", api_url),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Missing required environment variable(s): " + ", ".join(missing)
            )

        schedule_raw = os.getenv("PM_REWARD_SCHEDULE")
        schedule = (
            [item.strip() for item in schedule_raw.split(",") if item.strip()]
            if schedule_raw
            else list(DEFAULT_REWARD_SCHEDULE)
        )

        return cls.from_mapping(
            {
                "chains": [
                    {
                        "chain_id": chain_id,
                        "name": os.getenv("PM_CHAIN_NAME", ""),
                        "rpc_url": rpc_url,
                        "prompt_miner": prompt_miner,
                        "activity_points": activity_points,
                        "forwarder": os.getenv("PM_FORWARDER_ADDRESS"),
                        "forwarder_name": os.getenv("PM_FORWARDER_NAME", "ERC2771Forwarder"),
                        "forwarder_version": os.getenv("PM_FORWARDER_VERSION", "1"),
                    }
                ],
                "gateway": {
                    "api_url": api_url,
                    "api_key": api_key,
                    "client_id": os.getenv("PM_GATEWAY_CLIENT_ID") or os.getenv("PM_PZERO_CLIENT_ID"),
                    "timeout_ms": _parse_int_env("PM_GATEWAY_TIMEOUT_MS", _parse_int_env("PM_PZERO_AUTH_TIMEOUT_MS", 5000)),
                    "retry_attempts": _parse_int_env("PM_GATEWAY_RETRY_ATTEMPTS", _parse_int_env("PM_PZERO_RETRY_ATTEMPTS", 3)),
                    "retry_base_delay": _parse_float_env("PM_GATEWAY_RETRY_BASE_DELAY", 1.0),
                },
                "private_key": private_key,
                "rewards": {
                    "schedule": schedule,
                    "use_multi_rewards": _parse_bool_env("PM_USE_MULTI_REWARDS", False),
                },
                "auth": {
                    "api_keys": _parse_api_keys(os.getenv("PM_API_KEYS")),
                    "require_auth_mint": _parse_bool_env("PM_REQUIRE_AUTH_MINT", _parse_bool_env("PM_REQUIRE_AUTH", True)),
                    "require_auth_read": _parse_bool_env("PM_REQUIRE_AUTH_READ", False),
                    "rate_limit": _parse_int_env("PM_RATE_LIMIT_MAX_REQUESTS", 100),
                    "rate_window_seconds": (_parse_int_env("PM_RATE_LIMIT_WINDOW_MS", 900_000) or 900_000) / 1000,
                },
                "mint_gas_limit": _parse_int_env("PM_MINT_GAS_LIMIT", 500_000),
                "relay_gas_buffer": _parse_int_env("PM_RELAY_GAS_BUFFER", 50_000),
                "meta_tx_ttl": _parse_int_env("PM_META_TX_TTL", 3600),
                "receipt_timeout": _parse_int_env("PM_RECEIPT_TIMEOUT", 180),
                "request_timeout": _parse_int_env("PM_REQUEST_TIMEOUT", 30),
                "strict_nonce_seeding": _parse_bool_env("PM_NONCE_STRICT_SEEDING", False),
            }
        )


def load_config(path: str | Path) -> Settings:
    """Load relay configuration from a YAML file."""

    text = Path(path).read_text()
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Unable to parse configuration file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("relay configuration must be a mapping")
    return Settings.from_mapping(data)


def load_settings() -> Settings:
    """Load settings from ``PM_CONFIG_FILE`` when set, else from ``PM_*`` variables."""

    config_file = os.getenv("PM_CONFIG_FILE")
    if config_file:
        return load_config(config_file)
    return Settings.from_env()


__all__ = [
    "AuthConfig",
    "ChainConfig",
    "DEFAULT_REWARD_SCHEDULE",
    "GatewayConfig",
    "RewardConfig",
    "Settings",
    "load_config",
    "load_settings",
]
