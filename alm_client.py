"""
Ledger client for the pool and ALM manager contracts.
Handles connection, contract reads, event log queries and signed transactions.
"""
import logging
from typing import Dict, Any, List, Optional, Awaitable
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from eth_account import Account
from hexbytes import HexBytes
from config import Config
from utils import RpcError

logger = logging.getLogger(__name__)

# Events emitted by each contract
POOL_EVENTS = ('Swap',)
ALM_MANAGER_EVENTS = ('Rebalanced', 'FeesCollected')


class ALMClient:
    """Client for the pool and ALM manager contracts"""

    def __init__(self, config: Config, read_only: bool = False, w3: Optional[AsyncWeb3] = None):
        """
        Initialize the ledger client

        Args:
            config: Configuration object
            read_only: Skip loading the signing account
            w3: Pre-built AsyncWeb3 instance (tests)
        """
        self.config = config
        self.read_only = read_only
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(self.config.RPC_URL))

        # Initialize account only if not in read-only mode
        if not read_only:
            if not self.config.PRIVATE_KEY:
                raise RpcError("Signing client requires PRIVATE_KEY")
            self.account = Account.from_key(self.config.PRIVATE_KEY)
            self.wallet_address = self.account.address
        else:
            self.account = None
            self.wallet_address = None

        self.pool_address = Web3.to_checksum_address(self.config.POOL_ADDRESS)
        self.alm_manager_address = Web3.to_checksum_address(self.config.ALM_MANAGER_ADDRESS)

        self.pool_abi = self._get_pool_abi()
        self.alm_manager_abi = self._get_alm_manager_abi()

        self.pool = self.w3.eth.contract(address=self.pool_address, abi=self.pool_abi)
        self.alm_manager = self.w3.eth.contract(address=self.alm_manager_address, abi=self.alm_manager_abi)

        self.chain_id = None

    def _get_pool_abi(self) -> list:
        """Get Pool ABI (monitoring subset)"""
        return [
            {
                "inputs": [],
                "name": "slot0",
                "outputs": [
                    {"internalType": "uint160", "name": "sqrtPriceX96", "type": "uint160"},
                    {"internalType": "int24", "name": "tick", "type": "int24"},
                    {"internalType": "uint16", "name": "observationIndex", "type": "uint16"},
                    {"internalType": "uint16", "name": "observationCardinality", "type": "uint16"},
                    {"internalType": "uint16", "name": "observationCardinalityNext", "type": "uint16"},
                    {"internalType": "uint8", "name": "feeProtocol", "type": "uint8"},
                    {"internalType": "bool", "name": "unlocked", "type": "bool"}
                ],
                "stateMutability": "view",
                "type": "function"
            },
            {
                "inputs": [],
                "name": "liquidity",
                "outputs": [
                    {"internalType": "uint128", "name": "", "type": "uint128"}
                ],
                "stateMutability": "view",
                "type": "function"
            },
            {
                "anonymous": False,
                "inputs": [
                    {"indexed": True, "internalType": "address", "name": "sender", "type": "address"},
                    {"indexed": True, "internalType": "address", "name": "recipient", "type": "address"},
                    {"indexed": False, "internalType": "int256", "name": "amount0", "type": "int256"},
                    {"indexed": False, "internalType": "int256", "name": "amount1", "type": "int256"},
                    {"indexed": False, "internalType": "uint160", "name": "sqrtPriceX96", "type": "uint160"},
                    {"indexed": False, "internalType": "uint128", "name": "liquidity", "type": "uint128"},
                    {"indexed": False, "internalType": "int24", "name": "tick", "type": "int24"}
                ],
                "name": "Swap",
                "type": "event"
            }
        ]

    def _get_alm_manager_abi(self) -> list:
        """Get ALM Manager ABI"""
        return [
            {
                "inputs": [],
                "name": "getALMState",
                "outputs": [
                    {
                        "components": [
                            {"internalType": "uint128", "name": "totalLiquidity", "type": "uint128"},
                            {"internalType": "int24", "name": "currentTickLower", "type": "int24"},
                            {"internalType": "int24", "name": "currentTickUpper", "type": "int24"},
                            {"internalType": "uint256", "name": "lastRebalanceTimestamp", "type": "uint256"},
                            {"internalType": "uint256", "name": "totalFeesCollected0", "type": "uint256"},
                            {"internalType": "uint256", "name": "totalFeesCollected1", "type": "uint256"},
                            {"internalType": "uint256", "name": "rebalanceCount", "type": "uint256"}
                        ],
                        "internalType": "struct ALMState",
                        "name": "",
                        "type": "tuple"
                    }
                ],
                "stateMutability": "view",
                "type": "function"
            },
            {
                "inputs": [],
                "name": "paused",
                "outputs": [
                    {"internalType": "bool", "name": "", "type": "bool"}
                ],
                "stateMutability": "view",
                "type": "function"
            },
            {
                "inputs": [],
                "name": "rebalance",
                "outputs": [
                    {"internalType": "bool", "name": "success", "type": "bool"}
                ],
                "stateMutability": "nonpayable",
                "type": "function"
            },
            {
                "anonymous": False,
                "inputs": [
                    {"indexed": False, "internalType": "int24", "name": "oldTickLower", "type": "int24"},
                    {"indexed": False, "internalType": "int24", "name": "oldTickUpper", "type": "int24"},
                    {"indexed": False, "internalType": "int24", "name": "newTickLower", "type": "int24"},
                    {"indexed": False, "internalType": "int24", "name": "newTickUpper", "type": "int24"},
                    {"indexed": False, "internalType": "uint128", "name": "liquidityAmount", "type": "uint128"}
                ],
                "name": "Rebalanced",
                "type": "event"
            },
            {
                "anonymous": False,
                "inputs": [
                    {"indexed": False, "internalType": "uint256", "name": "amount0", "type": "uint256"},
                    {"indexed": False, "internalType": "uint256", "name": "amount1", "type": "uint256"}
                ],
                "name": "FeesCollected",
                "type": "event"
            }
        ]

    async def _call(self, awaitable: Awaitable, description: str) -> Any:
        """Await a ledger call, converting any failure into RpcError"""
        try:
            return await awaitable
        except RpcError:
            raise
        except Exception as e:
            logger.error(f"Error {description}: {e}")
            raise RpcError(f"Error {description}: {e}") from e

    async def connect(self) -> int:
        """
        Check connectivity and cache the chain id

        Returns:
            Chain id reported by the RPC endpoint
        """
        connected = await self._call(self.w3.is_connected(), "checking connection")
        if not connected:
            raise RpcError(f"Failed to connect to {self.config.RPC_URL}")

        self.chain_id = await self._call(self.w3.eth.chain_id, "getting chain id")
        logger.info(f"Connected to {self.config.CHAIN_NAME} (Chain ID: {self.chain_id})")
        if self.wallet_address:
            logger.info(f"Wallet: {self.wallet_address}")
        return self.chain_id

    async def get_slot0(self) -> tuple:
        """Get pool slot0 (sqrtPriceX96, tick, ...)"""
        return await self._call(self.pool.functions.slot0().call(), "getting pool slot0")

    async def get_pool_liquidity(self) -> int:
        """Get pool in-range liquidity"""
        return await self._call(self.pool.functions.liquidity().call(), "getting pool liquidity")

    async def get_alm_state(self) -> tuple:
        """Get the raw ALM state tuple"""
        return await self._call(self.alm_manager.functions.getALMState().call(), "getting ALM state")

    async def is_paused(self) -> bool:
        """Get the ALM manager paused flag"""
        return bool(await self._call(self.alm_manager.functions.paused().call(), "checking paused flag"))

    async def get_block_number(self) -> int:
        return await self._call(self.w3.eth.block_number, "getting block number")

    async def get_balance(self, address: Optional[str] = None) -> int:
        """Get native balance in wei (defaults to the signing wallet)"""
        target = address or self.wallet_address
        if not target:
            raise RpcError("No address to query balance for")
        return await self._call(self.w3.eth.get_balance(target), "getting balance")

    async def get_fee_data(self) -> Dict[str, Optional[int]]:
        """
        Get current network fee data

        Returns:
            Dictionary with gas_price (legacy), max_fee_per_gas and
            max_priority_fee_per_gas (EIP-1559); unavailable fields are None
        """
        fee_data = {'gas_price': None, 'max_fee_per_gas': None, 'max_priority_fee_per_gas': None}

        try:
            fee_data['gas_price'] = int(await self.w3.eth.gas_price)
        except Exception as e:
            logger.debug(f"Legacy gas price unavailable: {e}")

        block = await self._call(self.w3.eth.get_block('latest'), "getting latest block")
        base_fee = block.get('baseFeePerGas')
        if base_fee is not None:
            try:
                priority_fee = int(await self.w3.eth.max_priority_fee)
            except Exception as e:
                logger.debug(f"Priority fee unavailable, using 1 gwei: {e}")
                priority_fee = Web3.to_wei(1, 'gwei')
            fee_data['max_priority_fee_per_gas'] = priority_fee
            fee_data['max_fee_per_gas'] = int(base_fee) * 2 + priority_fee

        if fee_data['gas_price'] is None and fee_data['max_fee_per_gas'] is None:
            raise RpcError("No fee data available from network")

        logger.debug(f"Fee data: {fee_data}")
        return fee_data

    async def send_rebalance(self, tx_params: Dict[str, Any]) -> str:
        """
        Build, sign and send the rebalance() transaction

        Args:
            tx_params: Gas fields (gas, gasPrice or maxFeePerGas/maxPriorityFeePerGas)

        Returns:
            Transaction hash as hex string
        """
        if self.account is None:
            raise RpcError("Cannot send transactions from a read-only client")

        nonce = await self._call(
            self.w3.eth.get_transaction_count(self.wallet_address, 'pending'), "getting nonce"
        )
        transaction = await self._call(
            self.alm_manager.functions.rebalance().build_transaction({
                'from': self.wallet_address,
                'nonce': nonce,
                **tx_params
            }),
            "building rebalance transaction"
        )

        signed_txn = self.account.sign_transaction(transaction)
        tx_hash = await self._call(
            self.w3.eth.send_raw_transaction(signed_txn.raw_transaction), "sending rebalance transaction"
        )
        return HexBytes(tx_hash).to_0x_hex()

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        """Wait for a transaction receipt"""
        return await self._call(
            self.w3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout),
            f"waiting for receipt of {tx_hash}"
        )

    async def get_events(self, event_name: str, from_block: int, to_block: int) -> List[Any]:
        """
        Get decoded event logs in a block range

        Args:
            event_name: Swap, Rebalanced or FeesCollected
            from_block: First block (inclusive)
            to_block: Last block (inclusive)

        Returns:
            List of decoded event records
        """
        if event_name in POOL_EVENTS:
            contract = self.pool
        elif event_name in ALM_MANAGER_EVENTS:
            contract = self.alm_manager
        else:
            raise ValueError(f"Unknown ledger event: {event_name}")

        event = getattr(contract.events, event_name)
        return await self._call(
            event.get_logs(from_block=from_block, to_block=to_block),
            f"getting {event_name} logs {from_block}-{to_block}"
        )
