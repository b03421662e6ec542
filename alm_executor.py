"""
Rebalance transaction submitter for the ALM Executor.
Gates on the paused flag and gas price, submits rebalance() with a fixed gas
limit, awaits confirmation and keeps the executor's running counters.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from web3 import Web3
from config import Config
from alm_client import ALMClient
from alm_types import ALMState, RebalanceEvent, ExecutorMetrics
from utils import (
    ErrorHandler, Logger, ContractPausedError, GasPriceExceededError,
    TransactionRevertedError
)

logger = logging.getLogger(__name__)

REBALANCE_GAS_LIMIT = 500_000


class ALMExecutor:
    """Submits rebalance transactions to the ALM manager"""

    def __init__(self, config: Config, client: Optional[ALMClient] = None):
        """
        Initialize the executor

        Args:
            config: Configuration object
            client: Signing ledger client, created from config if omitted
        """
        self.config = config
        self.client = client or ALMClient(config)
        self.metrics = ExecutorMetrics()
        self.start_time = time.time()

        logger.info(f"ALMExecutor initialized (ALM manager {self.config.ALM_MANAGER_ADDRESS}, "
                    f"signer {self.get_signer_address()})")

    @property
    def max_gas_price_wei(self) -> int:
        return int(Web3.to_wei(self.config.MAX_GAS_PRICE_GWEI, 'gwei'))

    async def _build_gas_params(self) -> Dict[str, Any]:
        """
        Price the rebalance transaction

        Legacy pricing is preferred when the network reports a gas price.
        Otherwise EIP-1559 fields are used, with maxFeePerGas held to the
        same cap unless GAS_CAP_LEGACY_ONLY is set.

        Returns:
            Transaction gas fields including the fixed gas limit

        Raises:
            GasPriceExceededError: if the price is above MAX_GAS_PRICE_GWEI
        """
        fee_data = await self.client.get_fee_data()
        max_gas_price = self.max_gas_price_wei
        tx_params = {'gas': REBALANCE_GAS_LIMIT}

        gas_price = fee_data.get('gas_price')
        max_fee = fee_data.get('max_fee_per_gas')
        priority_fee = fee_data.get('max_priority_fee_per_gas')

        if gas_price is not None:
            if gas_price > max_gas_price:
                raise GasPriceExceededError(gas_price, max_gas_price)
            tx_params['gasPrice'] = gas_price
        elif max_fee and priority_fee:
            if not self.config.GAS_CAP_LEGACY_ONLY and max_fee > max_gas_price:
                raise GasPriceExceededError(max_fee, max_gas_price)
            tx_params['maxFeePerGas'] = max_fee
            tx_params['maxPriorityFeePerGas'] = priority_fee

        return tx_params

    async def execute_rebalance(self) -> RebalanceEvent:
        """
        Execute one rebalance attempt

        Never raises for execution failures: the returned event carries
        success=False and a readable error instead.

        Returns:
            RebalanceEvent describing the attempt
        """
        start = time.monotonic()
        rebalance_event = RebalanceEvent(timestamp=datetime.now(timezone.utc))

        try:
            logger.info("Starting rebalance execution...")

            if await self.client.is_paused():
                raise ContractPausedError()

            current_state = ALMState.from_contract(await self.client.get_alm_state())
            rebalance_event.old_tick_lower = current_state.current_tick_lower
            rebalance_event.old_tick_upper = current_state.current_tick_upper

            tx_params = await self._build_gas_params()
            logger.info(f"Sending rebalance transaction... {tx_params}")

            tx_hash = await self.client.send_rebalance(tx_params)
            rebalance_event.tx_hash = tx_hash
            logger.info(f"Rebalance transaction sent: {tx_hash}")

            receipt = await self.client.wait_for_receipt(tx_hash, timeout=self.config.TX_RECEIPT_TIMEOUT_SECONDS)
            status = receipt.get('status')
            if status != 1:
                raise TransactionRevertedError(tx_hash, status)

            new_state = ALMState.from_contract(await self.client.get_alm_state())
            execution_time = (time.monotonic() - start) * 1000

            rebalance_event.success = True
            rebalance_event.new_tick_lower = new_state.current_tick_lower
            rebalance_event.new_tick_upper = new_state.current_tick_upper
            rebalance_event.gas_used = receipt.get('gasUsed')
            rebalance_event.gas_price = receipt.get('effectiveGasPrice',
                                                    tx_params.get('gasPrice', tx_params.get('maxFeePerGas')))
            rebalance_event.execution_time_ms = execution_time

            self.metrics.total_rebalances += 1
            self.metrics.successful_rebalances += 1
            self.metrics.last_rebalance_time = datetime.now(timezone.utc)
            self._update_average_rebalance_time(execution_time)

            Logger.log_transaction(tx_hash, "rebalance", True, {
                'gas_used': rebalance_event.gas_used,
                'execution_time_ms': f"{execution_time:.0f}",
                'old_range': current_state.range_label,
                'new_range': new_state.range_label
            })

        except asyncio.CancelledError:
            self.metrics.total_rebalances += 1
            self.metrics.failed_rebalances += 1
            logger.warning(f"Rebalance execution cancelled (tx {rebalance_event.tx_hash or 'not sent'})")
            raise

        except Exception as e:
            error = ErrorHandler.to_executor_error(e)
            error_info = ErrorHandler.classify_error(error)

            rebalance_event.success = False
            rebalance_event.error = str(error)
            rebalance_event.execution_time_ms = (time.monotonic() - start) * 1000

            self.metrics.total_rebalances += 1
            self.metrics.failed_rebalances += 1

            logger.error(f"Rebalance execution failed [{error_info['type']}]: {error} "
                         f"({rebalance_event.execution_time_ms:.0f} ms)")
            logger.info(f"Suggestion: {error_info['suggestion']}")
            if rebalance_event.tx_hash:
                Logger.log_transaction(rebalance_event.tx_hash, "rebalance", False)

        return rebalance_event

    def _update_average_rebalance_time(self, new_time_ms: float):
        """Running mean of latency over successful rebalances"""
        count = self.metrics.successful_rebalances
        if count <= 1:
            self.metrics.average_rebalance_time = new_time_ms
        else:
            total_time = self.metrics.average_rebalance_time * (count - 1) + new_time_ms
            self.metrics.average_rebalance_time = total_time / count

    async def check_balance(self) -> Dict[str, Any]:
        """
        Get the signer's native balance

        Returns:
            Dictionary with address, balance (native units) and balance_wei
        """
        address = self.get_signer_address()
        balance_wei = await self.client.get_balance(address)
        return {
            'address': address,
            'balance': float(Web3.from_wei(balance_wei, 'ether')),
            'balance_wei': balance_wei
        }

    async def is_contract_paused(self) -> bool:
        """Paused flag; a failed query is reported as paused"""
        try:
            return await self.client.is_paused()
        except Exception as e:
            logger.error(f"Error checking if contract is paused: {e}")
            return True

    def get_metrics(self) -> ExecutorMetrics:
        """Copy of the running counters with uptime filled in"""
        self.metrics.uptime_seconds = int(time.time() - self.start_time)
        return self.metrics.copy()

    def update_fees_collected(self, amount0: int, amount1: int):
        self.metrics.total_fees_collected['token0'] += int(amount0)
        self.metrics.total_fees_collected['token1'] += int(amount1)

    def get_signer_address(self) -> Optional[str]:
        return self.client.wallet_address
