"""
Rebalance decision policy for the ALM Executor.
Decides whether the ALM range has drifted away from the pool's active tick.
"""
import time
from typing import Optional
from alm_types import PoolState, ALMState


def should_rebalance(pool: PoolState, alm: ALMState, config, now_seconds: float) -> bool:
    """
    Out-of-range trigger with a minimum interval between rebalances.

    Args:
        pool: Current pool state
        alm: Current ALM state
        config: Object exposing MIN_REBALANCE_INTERVAL_SECONDS
        now_seconds: Current unix time in seconds

    Returns:
        True when the ALM holds liquidity, the pool tick is outside
        [lower, upper) and the minimum interval has elapsed
    """
    if alm.total_liquidity == 0:
        return False

    tick_out_of_range = not alm.contains_tick(pool.current_tick)
    min_time_elapsed = now_seconds - alm.last_rebalance_timestamp >= config.MIN_REBALANCE_INTERVAL_SECONDS

    return tick_out_of_range and min_time_elapsed


class RebalanceDecisionEngine:
    """Rebalance trigger bound to a config, with wall-clock time as the default 'now'. No IO."""
    def __init__(self, config):
        self.config = config

    def should_rebalance(self, pool: PoolState, alm: ALMState, now_seconds: Optional[float] = None) -> bool:
        if now_seconds is None:
            now_seconds = time.time()
        return should_rebalance(pool, alm, self.config, now_seconds)
