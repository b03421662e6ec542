"""
ALM Executor - Utility Functions
Error taxonomy, error classification and logging setup
"""
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from web3 import Web3

logger = logging.getLogger(__name__)


class ExecutorError(Exception):
    """Base class for all executor errors"""


class ConfigError(ExecutorError, ValueError):
    """Missing or invalid configuration - fatal at startup"""


class RpcError(ExecutorError):
    """Ledger communication failure - recovered on the next poll cycle"""


class ContractPausedError(ExecutorError):
    """The ALM manager refused to rebalance because it is paused"""

    def __init__(self, message: str = "ALM contract is paused"):
        super().__init__(message)


class GasPriceExceededError(ExecutorError):
    """Network gas price is above the configured cap"""

    def __init__(self, gas_price_wei: int, max_gas_price_wei: int):
        self.gas_price_wei = gas_price_wei
        self.max_gas_price_wei = max_gas_price_wei
        super().__init__(
            f"Gas price too high: {Web3.from_wei(gas_price_wei, 'gwei')} gwei "
            f"(max {Web3.from_wei(max_gas_price_wei, 'gwei')} gwei)"
        )


class TransactionRevertedError(ExecutorError):
    """Transaction was mined but rejected on-chain"""

    def __init__(self, tx_hash: str, status: Any):
        self.tx_hash = tx_hash
        self.status = status
        super().__init__(f"Transaction failed with status: {status} (tx {tx_hash})")


class UnknownError(ExecutorError):
    """Any other failure during execution, message preserved"""

    @classmethod
    def wrap(cls, error: Exception) -> 'UnknownError':
        message = str(error) or error.__class__.__name__
        wrapped = cls(message)
        wrapped.__cause__ = error
        return wrapped


class ErrorHandler:
    """Error handling utilities"""

    @staticmethod
    def to_executor_error(error: Exception) -> ExecutorError:
        """
        Map an arbitrary exception into the executor error taxonomy

        Args:
            error: Exception object

        Returns:
            The error itself if already an ExecutorError, otherwise UnknownError
        """
        if isinstance(error, ExecutorError):
            return error
        return UnknownError.wrap(error)

    @staticmethod
    def classify_error(error: Exception) -> Dict[str, Any]:
        """
        Classify an execution error and provide a meaningful message

        Args:
            error: Exception object

        Returns:
            Error information dictionary
        """
        error_msg = str(error)
        lowered = error_msg.lower()

        if isinstance(error, ContractPausedError):
            return {
                'type': 'paused',
                'message': error_msg,
                'suggestion': 'Wait for the ALM manager to be unpaused'
            }
        elif isinstance(error, GasPriceExceededError):
            return {
                'type': 'gas_price',
                'message': error_msg,
                'suggestion': 'Wait for lower gas prices or raise MAX_GAS_PRICE_GWEI'
            }
        elif isinstance(error, TransactionRevertedError):
            return {
                'type': 'reverted',
                'message': error_msg,
                'suggestion': 'Inspect the transaction on a block explorer'
            }
        elif "insufficient funds" in lowered:
            return {
                'type': 'insufficient_funds',
                'message': 'Insufficient native balance for gas fees',
                'suggestion': 'Top up the executor wallet'
            }
        elif "nonce" in lowered:
            return {
                'type': 'nonce',
                'message': 'Nonce error',
                'suggestion': 'Wait for pending transactions or reset nonce'
            }
        elif "gas" in lowered:
            return {
                'type': 'gas_limit',
                'message': 'Transaction gas limit exceeded',
                'suggestion': 'Check the rebalance call does not exceed the gas ceiling'
            }
        elif isinstance(error, RpcError) or "timeout" in lowered or "connection" in lowered:
            return {
                'type': 'rpc',
                'message': error_msg,
                'suggestion': 'Check RPC_URL and network connectivity'
            }
        else:
            return {
                'type': 'unknown',
                'message': error_msg,
                'suggestion': 'Check logs for details'
            }


class Logger:
    """Logging utilities"""

    @staticmethod
    def setup_logging(level: str = "INFO", log_file: Optional[str] = None,
                      error_log_file: Optional[str] = None):
        """
        Set up logging configuration

        Args:
            level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_file: Optional combined log file path
            error_log_file: Optional error-only log file path, defaults to
                error.log next to log_file
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        handlers = [console_handler]

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

            error_path = Path(error_log_file) if error_log_file else log_path.parent / 'error.log'
            error_handler = logging.FileHandler(error_path)
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(formatter)
            handlers.append(error_handler)

        logging.basicConfig(
            level=log_level,
            handlers=handlers,
            force=True
        )

    @staticmethod
    def log_transaction(tx_hash: str, operation: str, success: bool, details: Dict[str, Any] = None):
        """
        Log transaction details

        Args:
            tx_hash: Transaction hash
            operation: Operation type (rebalance)
            success: Whether transaction was successful
            details: Additional details
        """
        status = "SUCCESS" if success else "FAILED"
        logger.info(f"Transaction {status}: {operation} - {tx_hash}")

        if details:
            for key, value in details.items():
                logger.info(f"  {key}: {value}")
