"""
Unit tests for configuration loading and validation.
"""
import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config, load_env_file, DEFAULT_RPC_URL
from utils import ConfigError

POOL = "0x" + "1" * 40
ALM_MANAGER = "0x" + "a" * 40
KEY = "0x" + "11" * 32


def valid_env(**overrides):
    env = {
        'PRIVATE_KEY': KEY,
        'POOL_ADDRESS': POOL,
        'ALM_MANAGER_ADDRESS': ALM_MANAGER,
    }
    env.update(overrides)
    return env


class TestConfig:
    """Test Config loading."""

    def test_defaults(self):
        config = Config(environ=valid_env())

        assert config.RPC_URL == DEFAULT_RPC_URL
        assert config.MONITORING_INTERVAL_MS == 10000
        assert config.REBALANCE_THRESHOLD_TICKS == 1
        assert config.MAX_GAS_PRICE_GWEI == 50
        assert config.MIN_REBALANCE_INTERVAL_SECONDS == 60
        assert config.GAS_CAP_LEGACY_ONLY is False
        assert config.MAX_HISTORY_SIZE == 1000
        assert config.EVENT_POLL_INTERVAL_MS == 10000
        assert config.monitoring_interval_seconds == 10.0
        assert config.validate_config() is True

    def test_overrides(self):
        config = Config(environ=valid_env(
            MONITORING_INTERVAL_MS='2500',
            MAX_GAS_PRICE_GWEI='0.5',
            GAS_CAP_LEGACY_ONLY='TRUE',
            EVENT_POLL_INTERVAL_MS='1000'
        ))

        assert config.MONITORING_INTERVAL_MS == 2500
        assert config.MAX_GAS_PRICE_GWEI == 0.5
        assert config.GAS_CAP_LEGACY_ONLY is True
        assert config.event_poll_interval_seconds == 1.0

    def test_event_poll_interval_follows_monitoring_interval(self):
        config = Config(environ=valid_env(MONITORING_INTERVAL_MS='3000'))
        assert config.EVENT_POLL_INTERVAL_MS == 3000

    def test_missing_required_fields_are_all_reported(self):
        config = Config(environ={})

        with pytest.raises(ConfigError) as exc_info:
            config.validate_config()

        message = str(exc_info.value)
        assert message.startswith("Configuration validation failed:")
        assert "PRIVATE_KEY is required" in message
        assert "POOL_ADDRESS is required" in message
        assert "ALM_MANAGER_ADDRESS is required" in message

    def test_invalid_values(self):
        config = Config(environ=valid_env(
            POOL_ADDRESS='0x1234',
            RPC_URL='ws://localhost:8546',
            MONITORING_INTERVAL_MS='0',
            MAX_GAS_PRICE_GWEI='-1',
            MIN_REBALANCE_INTERVAL_SECONDS='-5'
        ))

        with pytest.raises(ConfigError) as exc_info:
            config.validate_config()

        message = str(exc_info.value)
        assert "Invalid POOL_ADDRESS format" in message
        assert "RPC_URL must be an http(s) endpoint" in message
        assert "MONITORING_INTERVAL_MS must be positive" in message
        assert "MAX_GAS_PRICE_GWEI must be positive" in message
        assert "MIN_REBALANCE_INTERVAL_SECONDS cannot be negative" in message

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            Config(environ={}).validate_config()

    def test_non_numeric_value(self):
        with pytest.raises(ConfigError, match="MONITORING_INTERVAL_MS"):
            Config(environ=valid_env(MONITORING_INTERVAL_MS='ten'))

    def test_private_key_indirection(self):
        config = Config(environ=valid_env(PRIVATE_KEY='${EXECUTOR_KEY}', EXECUTOR_KEY=KEY))
        assert config.PRIVATE_KEY == KEY

    def test_private_key_indirection_missing(self):
        with pytest.raises(ConfigError, match="EXECUTOR_KEY"):
            Config(environ=valid_env(PRIVATE_KEY='${EXECUTOR_KEY}'))

    def test_immutable(self):
        config = Config(environ=valid_env())
        with pytest.raises(AttributeError):
            config.MAX_GAS_PRICE_GWEI = 1000

    def test_summary_has_no_secrets(self):
        summary = Config(environ=valid_env()).get_summary()
        assert KEY not in summary.values()
        assert summary['pool_address'] == POOL

    def test_load_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / "test.env"
        env_file.write_text("ALM_TEST_SETTING=from-file\n")
        monkeypatch.delenv("ALM_TEST_SETTING", raising=False)

        load_env_file(str(env_file))

        assert os.environ["ALM_TEST_SETTING"] == "from-file"
        monkeypatch.delenv("ALM_TEST_SETTING")

    def test_load_env_file_missing(self, tmp_path):
        with pytest.raises(ConfigError):
            load_env_file(str(tmp_path / "missing.env"))
