"""
Configuration management for the ALM Executor.
Loads settings from environment variables.
"""
import logging
import os
from typing import Dict, Any, Mapping, Optional
from dotenv import load_dotenv
from web3 import Web3
from utils import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = 'https://rpc.testnet.soniclabs.com'


def load_env_file(env_file: Optional[str] = None) -> bool:
    """Load environment variables from .env (or an explicit file) without overriding the process env"""
    if env_file:
        if not os.path.exists(env_file):
            raise ConfigError(f"Environment file not found: {env_file}")
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


class Config:
    """Monitoring configuration, immutable once loaded"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        """
        Read configuration from the environment

        Args:
            environ: Mapping to read from, defaults to os.environ
        """
        env = os.environ if environ is None else environ
        self._env = env

        # Network settings
        self.RPC_URL = env.get('RPC_URL') or DEFAULT_RPC_URL
        self.CHAIN_NAME = env.get('CHAIN_NAME', 'Sonic Testnet')

        # Signing credential - raw key or ${VARIABLE_NAME} reference
        self.PRIVATE_KEY = self._resolve_private_key(env.get('PRIVATE_KEY', ''))

        # Contract addresses
        self.POOL_ADDRESS = env.get('POOL_ADDRESS', '')
        self.ALM_MANAGER_ADDRESS = env.get('ALM_MANAGER_ADDRESS', '')

        # Monitoring configuration
        self.MONITORING_INTERVAL_MS = self._int('MONITORING_INTERVAL_MS', '10000')
        self.REBALANCE_THRESHOLD_TICKS = self._int('REBALANCE_THRESHOLD_TICKS', '1')  # reserved, unused by policy
        self.MIN_REBALANCE_INTERVAL_SECONDS = self._int('MIN_REBALANCE_INTERVAL_SECONDS', '60')
        self.EVENT_POLL_INTERVAL_MS = self._int('EVENT_POLL_INTERVAL_MS', str(self.MONITORING_INTERVAL_MS))

        # Gas settings
        self.MAX_GAS_PRICE_GWEI = self._float('MAX_GAS_PRICE_GWEI', '50')
        self.GAS_CAP_LEGACY_ONLY = env.get('GAS_CAP_LEGACY_ONLY', 'false').lower() == 'true'
        self.TX_RECEIPT_TIMEOUT_SECONDS = self._float('TX_RECEIPT_TIMEOUT_SECONDS', '120')

        # Metrics and health
        self.MAX_HISTORY_SIZE = self._int('MAX_HISTORY_SIZE', '1000')
        self.METRICS_LOG_INTERVAL_SECONDS = self._float('METRICS_LOG_INTERVAL_SECONDS', '60')
        self.LOW_BALANCE_THRESHOLD = self._float('LOW_BALANCE_THRESHOLD', '0.01')

        # Logging and export
        self.LOG_LEVEL = env.get('LOG_LEVEL', 'INFO')
        self.LOG_FILE = env.get('LOG_FILE', 'logs/executor.log')
        self.METRICS_EXPORT_FILE = env.get('METRICS_EXPORT_FILE', 'logs/final_metrics.json')
        self.METRICS_HISTORY_CSV = env.get('METRICS_HISTORY_CSV', '')

        self._frozen = True

    def __setattr__(self, name: str, value: Any):
        if getattr(self, '_frozen', False):
            raise AttributeError(f"Config is immutable, cannot set {name}")
        super().__setattr__(name, value)

    def _int(self, name: str, default: str) -> int:
        raw = self._env.get(name, default)
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {raw!r}")

    def _float(self, name: str, default: str) -> float:
        raw = self._env.get(name, default)
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {raw!r}")

    def _resolve_private_key(self, value: str) -> str:
        if value.startswith('${') and value.endswith('}'):
            env_var_name = value[2:-1]
            resolved = self._env.get(env_var_name)
            if not resolved:
                raise ConfigError(f"Environment variable '{env_var_name}' referenced in PRIVATE_KEY is not set")
            return resolved
        return value

    @property
    def monitoring_interval_seconds(self) -> float:
        return self.MONITORING_INTERVAL_MS / 1000.0

    @property
    def event_poll_interval_seconds(self) -> float:
        return self.EVENT_POLL_INTERVAL_MS / 1000.0

    def validate_config(self) -> bool:
        """Validate that required configuration is present"""
        errors = []

        if not self.PRIVATE_KEY:
            errors.append("PRIVATE_KEY is required")

        if not self.POOL_ADDRESS:
            errors.append("POOL_ADDRESS is required")
        elif not self._is_valid_address(self.POOL_ADDRESS):
            errors.append(f"Invalid POOL_ADDRESS format: {self.POOL_ADDRESS}")

        if not self.ALM_MANAGER_ADDRESS:
            errors.append("ALM_MANAGER_ADDRESS is required")
        elif not self._is_valid_address(self.ALM_MANAGER_ADDRESS):
            errors.append(f"Invalid ALM_MANAGER_ADDRESS format: {self.ALM_MANAGER_ADDRESS}")

        if not self.RPC_URL.startswith(('http://', 'https://')):
            errors.append(f"RPC_URL must be an http(s) endpoint, got {self.RPC_URL}")

        if self.MONITORING_INTERVAL_MS <= 0:
            errors.append("MONITORING_INTERVAL_MS must be positive")

        if self.EVENT_POLL_INTERVAL_MS <= 0:
            errors.append("EVENT_POLL_INTERVAL_MS must be positive")

        if self.MAX_GAS_PRICE_GWEI <= 0:
            errors.append("MAX_GAS_PRICE_GWEI must be positive")

        if self.MIN_REBALANCE_INTERVAL_SECONDS < 0:
            errors.append("MIN_REBALANCE_INTERVAL_SECONDS cannot be negative")

        if self.MAX_HISTORY_SIZE <= 0:
            errors.append("MAX_HISTORY_SIZE must be positive")

        if errors:
            raise ConfigError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> Dict[str, Any]:
        """Loggable configuration summary (no secrets)"""
        return {
            'rpc_url': self.RPC_URL,
            'chain_name': self.CHAIN_NAME,
            'pool_address': self.POOL_ADDRESS,
            'alm_manager_address': self.ALM_MANAGER_ADDRESS,
            'monitoring_interval_ms': self.MONITORING_INTERVAL_MS,
            'rebalance_threshold_ticks': self.REBALANCE_THRESHOLD_TICKS,
            'max_gas_price_gwei': self.MAX_GAS_PRICE_GWEI,
            'min_rebalance_interval_seconds': self.MIN_REBALANCE_INTERVAL_SECONDS,
            'gas_cap_legacy_only': self.GAS_CAP_LEGACY_ONLY,
        }

    @staticmethod
    def _is_valid_address(address: str) -> bool:
        """Check if address is valid Ethereum address format"""
        if not address:
            return False

        if not (address.startswith('0x') and len(address) == 42):
            return False

        if not all(c in '0123456789abcdefABCDEF' for c in address[2:]):
            return False

        try:
            Web3.to_checksum_address(address)
            return True
        except (ValueError, TypeError) as e:
            logger.debug(f"Address validation failed for {address}: {e}")
            return False
