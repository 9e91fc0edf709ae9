"""
strategy/config.py - Bot configuration.

YAML defaults (config/bot.yaml) with environment overrides. Secrets only
come from the environment (.env is loaded with python-dotenv).
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv
from eth_utils import to_checksum_address

from config import load_bot_yaml, load_yaml
from core.constants import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_GAS_BUFFER_PERCENT,
    DEFAULT_GAS_LIMIT,
    DEFAULT_GAS_PRICE_GWEI,
    DEFAULT_HISTORICAL_CATCH_BLOCKS,
    DEFAULT_HISTORICAL_CATCH_INTERVAL_SECONDS,
    DEFAULT_LOG_CHUNK_BLOCKS,
    DEFAULT_MAX_BORROWERS_PER_SCAN,
    DEFAULT_MAX_CONCURRENT_CHECKS,
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_MAX_LIQUIDATION_SIZE_NATIVE,
    DEFAULT_MAX_PRICE_CHANGE_PERCENT,
    DEFAULT_MIN_OUT_BPS,
    DEFAULT_MIN_PROFIT_NATIVE,
    DEFAULT_POLLING_INTERVAL_SECONDS,
    DEFAULT_PRICE_HISTORY_SIZE,
    DEFAULT_PRUNING_INTERVAL_SECONDS,
    DEFAULT_REPAY_LEASE_SECONDS,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_RPC_TIMEOUT_SECONDS,
    DEFAULT_SETTLEMENT_TIMEOUT_SECONDS,
    DEFAULT_STARTUP_LOOKBACK_BLOCKS,
    DEFAULT_SWAP_FEE_TIER,
    DEFAULT_SWAP_SLIPPAGE,
    MULTICALL3_ADDRESS,
    ZERO_ADDRESS,
)
from core.exceptions import ConfigError
from core.models import Market


@dataclass
class ChainSettings:
    chain_id: int = 56
    rpc_urls: list[str] = field(default_factory=list)
    ws_url: Optional[str] = None
    multicall_address: str = MULTICALL3_ADDRESS
    rpc_timeout_seconds: float = DEFAULT_RPC_TIMEOUT_SECONDS
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT


@dataclass
class ProtocolSettings:
    comptroller: str = ""
    oracle: str = ""
    native_token: str = ZERO_ADDRESS
    markets: list[Market] = field(default_factory=list)


@dataclass
class StrategySettings:
    min_profit_native: Decimal = DEFAULT_MIN_PROFIT_NATIVE
    max_liquidation_size_native: Decimal = DEFAULT_MAX_LIQUIDATION_SIZE_NATIVE
    swap_slippage: Decimal = DEFAULT_SWAP_SLIPPAGE
    swap_fee_tier: int = DEFAULT_SWAP_FEE_TIER
    min_out_bps: int = DEFAULT_MIN_OUT_BPS
    gas_units: int = DEFAULT_GAS_LIMIT
    max_concurrent_checks: int = DEFAULT_MAX_CONCURRENT_CHECKS
    max_borrowers_per_scan: int = DEFAULT_MAX_BORROWERS_PER_SCAN


@dataclass
class SafetySettings:
    max_price_change_percent: Decimal = DEFAULT_MAX_PRICE_CHANGE_PERCENT
    price_history_size: int = DEFAULT_PRICE_HISTORY_SIZE


@dataclass
class ExecutionSettings:
    dry_run: bool = False
    contract_address: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    gas_buffer_percent: int = DEFAULT_GAS_BUFFER_PERCENT
    default_gas_limit: int = DEFAULT_GAS_LIMIT
    settlement_timeout_seconds: float = DEFAULT_SETTLEMENT_TIMEOUT_SECONDS
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    fallback_gas_price_gwei: Decimal = DEFAULT_GAS_PRICE_GWEI


@dataclass
class TimingSettings:
    polling_interval_seconds: float = DEFAULT_POLLING_INTERVAL_SECONDS
    pruning_interval_seconds: float = DEFAULT_PRUNING_INTERVAL_SECONDS
    repay_lease_seconds: float = DEFAULT_REPAY_LEASE_SECONDS
    startup_lookback_blocks: int = DEFAULT_STARTUP_LOOKBACK_BLOCKS
    historical_catch_interval_seconds: float = DEFAULT_HISTORICAL_CATCH_INTERVAL_SECONDS
    historical_catch_blocks: int = DEFAULT_HISTORICAL_CATCH_BLOCKS
    log_chunk_blocks: int = DEFAULT_LOG_CHUNK_BLOCKS
    status_interval_seconds: float = 600.0
    retention_days: int = DEFAULT_RETENTION_DAYS


@dataclass
class StorageSettings:
    database_path: Optional[str] = None


@dataclass
class NotificationSettings:
    telegram_bot_token: Optional[str] = field(default=None, repr=False)
    telegram_chat_id: Optional[str] = None


@dataclass
class BotConfig:
    """Full bot configuration."""
    chain: ChainSettings = field(default_factory=ChainSettings)
    protocol: ProtocolSettings = field(default_factory=ProtocolSettings)
    strategy: StrategySettings = field(default_factory=StrategySettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    timing: TimingSettings = field(default_factory=TimingSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    def validate(self) -> None:
        """
        Check required values and ranges.

        Raises:
            ConfigError: listing every problem found
        """
        problems = []
        if not self.chain.rpc_urls:
            problems.append("chain.rpc_urls: at least one RPC endpoint is required")
        if not self.protocol.comptroller:
            problems.append("protocol.comptroller is required")
        if not self.protocol.oracle:
            problems.append("protocol.oracle is required")
        if not self.protocol.markets:
            problems.append("protocol.markets: at least one market is required")
        elif not any(m.is_native for m in self.protocol.markets):
            problems.append("protocol.markets: one market must have the zero address as underlying")

        if not self.execution.dry_run:
            if not self.execution.private_key:
                problems.append("PRIVATE_KEY is required unless dry_run is set")
            if not self.execution.contract_address:
                problems.append("LIQUIDATION_CONTRACT_ADDRESS is required unless dry_run is set")

        s = self.strategy
        if s.min_profit_native < 0:
            problems.append("strategy.min_profit_native must be >= 0")
        if s.max_liquidation_size_native <= 0:
            problems.append("strategy.max_liquidation_size_native must be > 0")
        if not (Decimal("0") <= s.swap_slippage < Decimal("1")):
            problems.append("strategy.swap_slippage must be in [0, 1)")
        if s.max_concurrent_checks < 1:
            problems.append("strategy.max_concurrent_checks must be >= 1")
        if s.max_borrowers_per_scan < 1:
            problems.append("strategy.max_borrowers_per_scan must be >= 1")
        if not (0 <= s.min_out_bps <= 10_000):
            problems.append("strategy.min_out_bps must be in [0, 10000]")

        if self.safety.max_price_change_percent <= 0:
            problems.append("safety.max_price_change_percent must be > 0")
        if self.safety.price_history_size < 2:
            problems.append("safety.price_history_size must be >= 2")
        if self.execution.gas_buffer_percent < 0:
            problems.append("execution.gas_buffer_percent must be >= 0")
        if self.timing.polling_interval_seconds <= 0:
            problems.append("timing.polling_interval_seconds must be > 0")
        if self.timing.log_chunk_blocks < 1:
            problems.append("timing.log_chunk_blocks must be >= 1")

        if problems:
            raise ConfigError(
                f"Invalid configuration: {len(problems)} problem(s)",
                details={"problems": problems},
            )


# =============================================================================
# Parsing helpers
# =============================================================================

def _decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigError(f"{key}: not a number: {value!r}") from e


def _int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}: not an integer: {value!r}") from e


def _float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}: not a number: {value!r}") from e


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _expand(value: Optional[str]) -> Optional[str]:
    """Expand ${VAR}; unresolved placeholders and blanks become None."""
    if value is None:
        return None
    expanded = os.path.expandvars(str(value)).strip()
    if not expanded or "${" in expanded:
        return None
    return expanded


def _apply(target: Any, data: Mapping[str, Any], section: str) -> None:
    """Copy known keys from a YAML section onto a settings dataclass."""
    for key, value in (data or {}).items():
        if not hasattr(target, key):
            raise ConfigError(f"Unknown config key: {section}.{key}")
        current = getattr(target, key)
        name = f"{section}.{key}"
        if value is None:
            setattr(target, key, None)
        elif isinstance(current, bool):
            setattr(target, key, _bool(value))
        elif isinstance(current, Decimal):
            setattr(target, key, _decimal(value, name))
        elif isinstance(current, int):
            setattr(target, key, _int(value, name))
        elif isinstance(current, float):
            setattr(target, key, _float(value, name))
        else:
            setattr(target, key, value)


def _address(value: Any, key: str) -> str:
    try:
        return to_checksum_address(str(value))
    except ValueError as e:
        raise ConfigError(f"{key}: not an address: {value!r}") from e


def _parse_markets(items: list) -> list[Market]:
    markets = []
    for i, item in enumerate(items or []):
        try:
            markets.append(Market(
                symbol=str(item["symbol"]),
                address=_address(item["address"], f"protocol.markets[{i}].address"),
                underlying=_address(item.get("underlying") or ZERO_ADDRESS, f"protocol.markets[{i}].underlying"),
                decimals=int(item.get("decimals", 18)),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"protocol.markets[{i}] is invalid: {e}") from e
    return markets


def _normalize_addresses(config: "BotConfig") -> None:
    """Checksum every configured contract address so lookups compare equal."""
    config.chain.multicall_address = _address(config.chain.multicall_address, "chain.multicall_address")
    for key in ("comptroller", "oracle", "native_token"):
        value = getattr(config.protocol, key)
        if value:
            setattr(config.protocol, key, _address(value, f"protocol.{key}"))
    if config.execution.contract_address:
        config.execution.contract_address = _address(
            config.execution.contract_address, "execution.contract_address"
        )


def _from_dict(data: Mapping[str, Any]) -> BotConfig:
    config = BotConfig()

    chain = dict(data.get("chain") or {})
    urls = chain.pop("rpc_urls", None) or []
    ws_url = chain.pop("ws_url", None)
    _apply(config.chain, chain, "chain")
    config.chain.rpc_urls = [u for u in (_expand(url) for url in urls) if u]
    config.chain.ws_url = _expand(ws_url)

    protocol = dict(data.get("protocol") or {})
    config.protocol.markets = _parse_markets(protocol.pop("markets", []))
    _apply(config.protocol, protocol, "protocol")

    _apply(config.strategy, data.get("strategy") or {}, "strategy")
    _apply(config.safety, data.get("safety") or {}, "safety")
    _apply(config.execution, data.get("execution") or {}, "execution")
    _apply(config.timing, data.get("timing") or {}, "timing")
    _apply(config.storage, data.get("storage") or {}, "storage")
    return config


def _apply_env(config: BotConfig, env: Mapping[str, str]) -> None:
    rpc_urls = env.get("LIQBOT_RPC_URLS") or env.get("RPC_URL")
    if rpc_urls:
        config.chain.rpc_urls = [u.strip() for u in rpc_urls.split(",") if u.strip()]
    if env.get("LIQBOT_WS_URL"):
        config.chain.ws_url = env["LIQBOT_WS_URL"]

    if env.get("PRIVATE_KEY"):
        config.execution.private_key = env["PRIVATE_KEY"]
    if env.get("LIQUIDATION_CONTRACT_ADDRESS"):
        config.execution.contract_address = env["LIQUIDATION_CONTRACT_ADDRESS"]
    if env.get("LIQBOT_DRY_RUN"):
        config.execution.dry_run = _bool(env["LIQBOT_DRY_RUN"])

    if env.get("TELEGRAM_BOT_TOKEN"):
        config.notifications.telegram_bot_token = env["TELEGRAM_BOT_TOKEN"]
    if env.get("TELEGRAM_CHAT_ID"):
        config.notifications.telegram_chat_id = env["TELEGRAM_CHAT_ID"]
    if "DATABASE_PATH" in env:
        config.storage.database_path = env["DATABASE_PATH"] or None

    if env.get("LIQBOT_MIN_PROFIT"):
        config.strategy.min_profit_native = _decimal(env["LIQBOT_MIN_PROFIT"], "LIQBOT_MIN_PROFIT")
    if env.get("LIQBOT_MAX_LIQUIDATION_SIZE"):
        config.strategy.max_liquidation_size_native = _decimal(
            env["LIQBOT_MAX_LIQUIDATION_SIZE"], "LIQBOT_MAX_LIQUIDATION_SIZE"
        )
    if env.get("LIQBOT_POLLING_INTERVAL"):
        config.timing.polling_interval_seconds = _float(
            env["LIQBOT_POLLING_INTERVAL"], "LIQBOT_POLLING_INTERVAL"
        )


def load_bot_config(
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    dry_run: Optional[bool] = None,
    validate: bool = True,
) -> BotConfig:
    """
    Load bot configuration.

    Args:
        config_path: YAML file (default: bundled config/bot.yaml)
        env: Environment mapping (default: os.environ after loading .env)
        dry_run: CLI override for execution.dry_run
        validate: Run BotConfig.validate()

    Returns:
        BotConfig

    Raises:
        ConfigError: unreadable file, bad values or missing required settings
    """
    if env is None:
        load_dotenv()
        env = os.environ

    try:
        data = load_yaml(config_path) if config_path else load_bot_yaml()
    except FileNotFoundError as e:
        raise ConfigError(str(e)) from e

    config = _from_dict(data)
    _apply_env(config, env)
    _normalize_addresses(config)
    if dry_run is not None:
        config.execution.dry_run = dry_run

    if validate:
        config.validate()
    return config
