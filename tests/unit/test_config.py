# PATH: tests/unit/test_config.py
"""
Unit tests for bot configuration loading.
"""

from decimal import Decimal

import pytest

from config import load_bot_yaml, load_yaml
from core.constants import ZERO_ADDRESS
from core.exceptions import ConfigError
from strategy.config import BotConfig, load_bot_config

PRIVATE_KEY = "0x" + "ab" * 32
CONTRACT = "0x" + "cd" * 20


@pytest.fixture(autouse=True)
def no_rpc_env(monkeypatch):
    monkeypatch.delenv("BSC_RPC_URL", raising=False)
    monkeypatch.delenv("BSC_WS_URL", raising=False)


def write_yaml(tmp_path, text: str):
    path = tmp_path / "bot.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestYamlLoading:

    def test_bundled_yaml_loads(self):
        data = load_bot_yaml()
        assert data["chain"]["chain_id"] == 56
        assert any(m["symbol"] == "vBNB" for m in data["protocol"]["markets"])

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "nope.yaml")


class TestLoadBotConfig:

    def test_bundled_defaults_in_dry_run(self):
        config = load_bot_config(env={}, dry_run=True)

        assert config.chain.chain_id == 56
        assert "https://bsc-dataseed.binance.org" in config.chain.rpc_urls
        assert not any("${" in url for url in config.chain.rpc_urls)
        assert config.chain.ws_url is None
        assert config.execution.dry_run is True
        assert config.strategy.min_profit_native == Decimal("0.01")
        assert config.safety.max_price_change_percent == Decimal("30")
        assert config.timing.status_interval_seconds == 600
        assert config.storage.database_path == "data/liqbot.db"

        native = [m for m in config.protocol.markets if m.is_native]
        assert [m.symbol for m in native] == ["vBNB"]
        assert native[0].underlying == ZERO_ADDRESS

    def test_env_overrides(self):
        env = {
            "LIQBOT_RPC_URLS": "https://a.test, https://b.test",
            "LIQBOT_WS_URL": "wss://ws.test",
            "PRIVATE_KEY": PRIVATE_KEY,
            "LIQUIDATION_CONTRACT_ADDRESS": CONTRACT,
            "TELEGRAM_BOT_TOKEN": "123:abc",
            "TELEGRAM_CHAT_ID": "42",
            "DATABASE_PATH": "",
            "LIQBOT_MIN_PROFIT": "0.5",
            "LIQBOT_MAX_LIQUIDATION_SIZE": "10",
            "LIQBOT_POLLING_INTERVAL": "3",
        }
        config = load_bot_config(env=env)

        assert config.chain.rpc_urls == ["https://a.test", "https://b.test"]
        assert config.chain.ws_url == "wss://ws.test"
        assert config.execution.private_key == PRIVATE_KEY
        assert config.execution.contract_address.lower() == CONTRACT
        assert config.notifications.telegram_bot_token == "123:abc"
        assert config.notifications.telegram_chat_id == "42"
        assert config.storage.database_path is None
        assert config.strategy.min_profit_native == Decimal("0.5")
        assert config.strategy.max_liquidation_size_native == Decimal("10")
        assert config.timing.polling_interval_seconds == 3.0

    def test_env_dry_run_flag(self):
        config = load_bot_config(env={"LIQBOT_DRY_RUN": "true"})
        assert config.execution.dry_run is True

    def test_cli_dry_run_beats_env(self):
        env = {"LIQBOT_DRY_RUN": "true", "PRIVATE_KEY": PRIVATE_KEY, "LIQUIDATION_CONTRACT_ADDRESS": CONTRACT}
        config = load_bot_config(env=env, dry_run=False)
        assert config.execution.dry_run is False

    def test_private_key_not_in_repr(self):
        config = load_bot_config(env={"PRIVATE_KEY": PRIVATE_KEY}, dry_run=True)
        assert PRIVATE_KEY not in repr(config)

    def test_live_mode_requires_secrets(self):
        with pytest.raises(ConfigError) as exc_info:
            load_bot_config(env={})
        problems = exc_info.value.details["problems"]
        assert any("PRIVATE_KEY" in p for p in problems)
        assert any("LIQUIDATION_CONTRACT_ADDRESS" in p for p in problems)

    def test_validate_can_be_skipped(self):
        config = load_bot_config(env={}, validate=False)
        assert config.execution.private_key is None

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_bot_config(tmp_path / "missing.yaml", env={})


class TestCustomYaml:

    MINIMAL = """
chain:
  rpc_urls: ["https://rpc.test"]
protocol:
  comptroller: "0xfd36e2c2a6789db23113685031d7f16329158384"
  oracle: "0xd8b6da2bfec71d684d3e2a2fc9492ddad5c3787f"
  markets:
    - symbol: vBNB
      address: "0xa07c5b74c9b40447a954e1466938b865b6bbea36"
execution:
  dry_run: true
"""

    def test_minimal_yaml_uses_defaults_and_checksums(self, tmp_path):
        config = load_bot_config(write_yaml(tmp_path, self.MINIMAL), env={})

        assert config.protocol.comptroller == "0xfD36E2c2a6789Db23113685031d7F16329158384"
        assert config.protocol.markets[0].address == "0xA07c5b74C9B40447a954e1466938b865b6BBea36"
        assert config.protocol.markets[0].is_native
        assert config.strategy.max_borrowers_per_scan == 25
        assert config.storage.database_path is None

    def test_unknown_key_rejected(self, tmp_path):
        text = self.MINIMAL + "strategy:\n  min_profit_eth: 1\n"
        with pytest.raises(ConfigError) as exc_info:
            load_bot_config(write_yaml(tmp_path, text), env={})
        assert "strategy.min_profit_eth" in str(exc_info.value)

    def test_bad_number_rejected(self, tmp_path):
        text = self.MINIMAL + "strategy:\n  swap_slippage: lots\n"
        with pytest.raises(ConfigError):
            load_bot_config(write_yaml(tmp_path, text), env={})

    def test_fractional_rpc_timeout_kept(self, tmp_path):
        text = self.MINIMAL.replace(
            'rpc_urls: ["https://rpc.test"]',
            'rpc_urls: ["https://rpc.test"]\n  rpc_timeout_seconds: 2.5',
        )
        config = load_bot_config(write_yaml(tmp_path, text), env={})
        assert config.chain.rpc_timeout_seconds == 2.5

    def test_bad_market_address_rejected(self, tmp_path):
        text = self.MINIMAL.replace("0xa07c5b74c9b40447a954e1466938b865b6bbea36", "0x1234")
        with pytest.raises(ConfigError):
            load_bot_config(write_yaml(tmp_path, text), env={})

    def test_native_market_required(self, tmp_path):
        text = self.MINIMAL.replace(
            'address: "0xa07c5b74c9b40447a954e1466938b865b6bbea36"',
            'address: "0xa07c5b74c9b40447a954e1466938b865b6bbea36"\n'
            '      underlying: "0x55d398326f99059ff775485246999027b3197955"',
        )
        with pytest.raises(ConfigError) as exc_info:
            load_bot_config(write_yaml(tmp_path, text), env={})
        assert any("zero address" in p for p in exc_info.value.details["problems"])

    def test_range_validation_collects_all_problems(self):
        config = BotConfig()
        config.strategy.swap_slippage = Decimal("1.5")
        config.safety.max_price_change_percent = Decimal("0")

        with pytest.raises(ConfigError) as exc_info:
            config.validate()

        problems = exc_info.value.details["problems"]
        assert any("swap_slippage" in p for p in problems)
        assert any("max_price_change_percent" in p for p in problems)
        assert any("rpc_urls" in p for p in problems)
