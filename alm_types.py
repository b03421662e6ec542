"""
Data model for the ALM Executor.
Pool/ALM state read from the ledger, rebalance outcomes, executor counters,
metrics snapshots and decoded ledger notifications.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, Optional, Sequence
from utils import RpcError


def _serialise(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialise(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialise(v) for v in value]
    return value


@dataclass(frozen=True)
class PoolState:
    """Current pool price tick and in-range liquidity"""
    current_tick: int
    sqrt_price_x96: int
    liquidity: int

    @classmethod
    def from_contract(cls, slot0: Sequence[Any], liquidity: int) -> 'PoolState':
        """Build from slot0() (sqrtPriceX96, tick, ...) and liquidity()"""
        return cls(
            current_tick=int(slot0[1]),
            sqrt_price_x96=int(slot0[0]),
            liquidity=int(liquidity)
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ALMState:
    """Mirror of the ALM manager's getALMState() tuple"""
    total_liquidity: int
    current_tick_lower: int
    current_tick_upper: int
    last_rebalance_timestamp: int
    total_fees_collected0: int
    total_fees_collected1: int
    rebalance_count: int

    @classmethod
    def from_contract(cls, state: Sequence[Any]) -> 'ALMState':
        """
        Build from the getALMState() tuple

        Args:
            state: (totalLiquidity, currentTickLower, currentTickUpper,
                lastRebalanceTimestamp, totalFeesCollected0,
                totalFeesCollected1, rebalanceCount)

        Returns:
            ALMState

        Raises:
            RpcError: if the tuple is malformed or the range is inverted
        """
        if len(state) != 7:
            raise RpcError(f"Malformed ALM state: expected 7 fields, got {len(state)}")

        alm_state = cls(*(int(value) for value in state))
        if alm_state.current_tick_lower > alm_state.current_tick_upper:
            raise RpcError(
                f"Malformed ALM state: tick lower {alm_state.current_tick_lower} "
                f"above tick upper {alm_state.current_tick_upper}"
            )
        return alm_state

    def contains_tick(self, tick: int) -> bool:
        """Half-open range membership: lower <= tick < upper"""
        return self.current_tick_lower <= tick < self.current_tick_upper

    @property
    def range_label(self) -> str:
        return f"{self.current_tick_lower} - {self.current_tick_upper}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RebalanceEvent:
    """Outcome of one rebalance execution attempt"""
    timestamp: datetime
    success: bool = False
    old_tick_lower: int = 0
    old_tick_upper: int = 0
    new_tick_lower: int = 0
    new_tick_upper: int = 0
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    execution_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialise(asdict(self))


@dataclass
class ExecutorMetrics:
    """Running counters owned by the executor"""
    total_rebalances: int = 0
    successful_rebalances: int = 0
    failed_rebalances: int = 0
    total_fees_collected: Dict[str, int] = field(default_factory=lambda: {'token0': 0, 'token1': 0})
    last_rebalance_time: Optional[datetime] = None
    uptime_seconds: int = 0
    average_rebalance_time: float = 0.0

    def copy(self) -> 'ExecutorMetrics':
        return ExecutorMetrics(
            total_rebalances=self.total_rebalances,
            successful_rebalances=self.successful_rebalances,
            failed_rebalances=self.failed_rebalances,
            total_fees_collected=dict(self.total_fees_collected),
            last_rebalance_time=self.last_rebalance_time,
            uptime_seconds=self.uptime_seconds,
            average_rebalance_time=self.average_rebalance_time
        )

    def to_dict(self) -> Dict[str, Any]:
        return _serialise(asdict(self))


@dataclass(frozen=True)
class MetricsSnapshot:
    """One poll-cycle sample of pool, ALM and executor state"""
    timestamp: datetime
    pool_data: PoolState
    alm_state: ALMState
    executor_metrics: ExecutorMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'pool_data': self.pool_data.to_dict(),
            'alm_state': self.alm_state.to_dict(),
            'executor_metrics': self.executor_metrics.to_dict()
        }


# Ledger notifications republished by the EventBridge

@dataclass(frozen=True)
class SwapNotification:
    sender: str
    recipient: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int
    block_number: int
    log_index: int
    tx_hash: str


@dataclass(frozen=True)
class RebalancedNotification:
    old_tick_lower: int
    old_tick_upper: int
    new_tick_lower: int
    new_tick_upper: int
    liquidity_amount: int
    block_number: int
    log_index: int
    tx_hash: str


@dataclass(frozen=True)
class FeesCollectedNotification:
    amount0: int
    amount1: int
    block_number: int
    log_index: int
    tx_hash: str
