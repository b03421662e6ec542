"""
Reads pool and ALM manager state from the ledger.
"""
import asyncio
import logging
from typing import Optional, Tuple
from config import Config
from alm_client import ALMClient
from alm_types import PoolState, ALMState
from utils import RpcError

logger = logging.getLogger(__name__)


class StateReader:
    """Read-only view of the pool and the ALM manager"""

    def __init__(self, config: Config, client: Optional[ALMClient] = None):
        self.config = config
        self.client = client or ALMClient(config, read_only=True)

    async def read_pool_state(self) -> PoolState:
        """
        Read the pool's current tick, sqrt price and liquidity

        Returns:
            PoolState

        Raises:
            RpcError: on any ledger communication failure
        """
        try:
            slot0, liquidity = await asyncio.gather(
                self.client.get_slot0(),
                self.client.get_pool_liquidity()
            )
            pool_state = PoolState.from_contract(slot0, liquidity)
        except RpcError:
            raise
        except Exception as e:
            raise RpcError(f"Failed to read pool state: {e}") from e

        logger.debug(f"Pool state: tick={pool_state.current_tick}, liquidity={pool_state.liquidity}")
        return pool_state

    async def read_alm_state(self) -> ALMState:
        """
        Read the ALM manager's range, liquidity and fee totals

        Returns:
            ALMState

        Raises:
            RpcError: on any ledger communication failure or malformed tuple
        """
        try:
            raw_state = await self.client.get_alm_state()
            alm_state = ALMState.from_contract(raw_state)
        except RpcError:
            raise
        except Exception as e:
            raise RpcError(f"Failed to read ALM state: {e}") from e

        logger.debug(f"ALM state: range={alm_state.range_label}, liquidity={alm_state.total_liquidity}")
        return alm_state

    async def read_state(self) -> Tuple[PoolState, ALMState]:
        """Read pool and ALM state concurrently, waiting for both"""
        pool_state, alm_state = await asyncio.gather(
            self.read_pool_state(),
            self.read_alm_state()
        )
        return pool_state, alm_state
