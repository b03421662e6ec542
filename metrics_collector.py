"""
Metrics collection for the ALM Executor.
Bounded histories of poll snapshots and rebalance outcomes, plus derived
performance statistics (success rate, time-in-range, fee totals).
"""
import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional
import numpy as np
import pandas as pd
from alm_types import PoolState, ALMState, RebalanceEvent, ExecutorMetrics, MetricsSnapshot

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY_SIZE = 1000


class MetricsCollector:
    """Collects snapshots and rebalance events and derives statistics from them"""

    def __init__(self, max_history_size: int = DEFAULT_MAX_HISTORY_SIZE):
        if max_history_size <= 0:
            raise ValueError("max_history_size must be positive")

        self.max_history_size = max_history_size
        self.snapshots: deque = deque(maxlen=max_history_size)
        self.rebalance_history: deque = deque(maxlen=max_history_size)

        logger.info(f"MetricsCollector initialized (max history {max_history_size})")

    def record_snapshot(self, pool_data: PoolState, alm_state: ALMState,
                        executor_metrics: ExecutorMetrics, timestamp: Optional[datetime] = None) -> MetricsSnapshot:
        """
        Append a snapshot, discarding the oldest beyond max_history_size

        Args:
            pool_data: Pool state read this cycle
            alm_state: ALM state read this cycle
            executor_metrics: Executor counters at this cycle
            timestamp: Sample time, defaults to now

        Returns:
            The recorded snapshot
        """
        snapshot = MetricsSnapshot(
            timestamp=timestamp or datetime.now(timezone.utc),
            pool_data=pool_data,
            alm_state=alm_state,
            executor_metrics=executor_metrics
        )
        self.snapshots.append(snapshot)

        logger.debug(f"Metrics snapshot recorded: total={len(self.snapshots)}, "
                     f"tick={pool_data.current_tick}, alm_liquidity={alm_state.total_liquidity}")
        return snapshot

    def record_rebalance_event(self, event: RebalanceEvent):
        """Append a rebalance outcome, discarding the oldest beyond max_history_size"""
        self.rebalance_history.append(event)

        logger.info(f"Rebalance event recorded: success={event.success}, "
                    f"total={len(self.rebalance_history)}, "
                    f"range={event.new_tick_lower} - {event.new_tick_upper}")

    def get_latest_snapshot(self) -> Optional[MetricsSnapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def get_rebalance_history(self, limit: Optional[int] = None) -> List[RebalanceEvent]:
        """Rebalance events oldest first, optionally only the last `limit`"""
        history = list(self.rebalance_history)
        if limit:
            return history[-limit:]
        return history

    def get_success_rate(self) -> float:
        """Percentage of recorded rebalance events that succeeded"""
        if not self.rebalance_history:
            return 0.0

        successful = sum(1 for event in self.rebalance_history if event.success)
        return successful / len(self.rebalance_history) * 100

    def get_time_in_range(self) -> float:
        """
        Percentage of observed time the pool tick sat inside the ALM range

        Each interval between consecutive snapshots counts as in range when
        the later snapshot's tick lies in the earlier snapshot's range.
        """
        if len(self.snapshots) < 2:
            return 0.0

        snapshots = list(self.snapshots)
        times = np.array([s.timestamp.timestamp() for s in snapshots], dtype=float)
        ticks = np.array([s.pool_data.current_tick for s in snapshots], dtype=np.int64)
        lowers = np.array([s.alm_state.current_tick_lower for s in snapshots], dtype=np.int64)
        uppers = np.array([s.alm_state.current_tick_upper for s in snapshots], dtype=np.int64)

        deltas = np.diff(times)
        in_range = (ticks[1:] >= lowers[:-1]) & (ticks[1:] < uppers[:-1])

        total_time = deltas.sum()
        if total_time <= 0:
            return 0.0

        return float(deltas[in_range].sum() / total_time * 100)

    def get_average_tick_range(self) -> Optional[Dict[str, int]]:
        """Mean ALM range over snapshots with liquidity, rounded half-up"""
        active = [s.alm_state for s in self.snapshots if s.alm_state.total_liquidity > 0]
        if not active:
            return None

        avg_lower = np.mean([state.current_tick_lower for state in active])
        avg_upper = np.mean([state.current_tick_upper for state in active])

        return {
            'lower': int(np.floor(avg_lower + 0.5)),
            'upper': int(np.floor(avg_upper + 0.5))
        }

    def get_total_fees_earned(self) -> Dict[str, int]:
        latest = self.get_latest_snapshot()
        if latest is None:
            return {'token0': 0, 'token1': 0}

        return {
            'token0': latest.alm_state.total_fees_collected0,
            'token1': latest.alm_state.total_fees_collected1
        }

    def get_rebalance_frequency(self) -> float:
        """Rebalance events per hour across the retained history"""
        if len(self.rebalance_history) < 2:
            return 0.0

        time_span = (self.rebalance_history[-1].timestamp - self.rebalance_history[0].timestamp).total_seconds()
        if time_span <= 0:
            return 0.0

        return len(self.rebalance_history) / time_span * 3600

    def get_summary(self) -> Dict[str, Any]:
        latest = self.get_latest_snapshot()

        return {
            'total_snapshots': len(self.snapshots),
            'total_rebalances': len(self.rebalance_history),
            'success_rate': self.get_success_rate(),
            'time_in_range': self.get_time_in_range(),
            'average_tick_range': self.get_average_tick_range(),
            'total_fees_earned': self.get_total_fees_earned(),
            'rebalance_frequency': self.get_rebalance_frequency(),
            'latest_state': {
                'timestamp': latest.timestamp.isoformat(),
                'pool_tick': latest.pool_data.current_tick,
                'alm_range': latest.alm_state.range_label,
                'alm_liquidity': str(latest.alm_state.total_liquidity)
            } if latest else None
        }

    def export_metrics(self) -> Dict[str, Any]:
        """
        Export summary and full histories as JSON-serialisable data

        Returns:
            Dictionary with summary, snapshots and rebalance_history
        """
        return {
            'summary': self.get_summary(),
            'snapshots': [snapshot.to_dict() for snapshot in self.snapshots],
            'rebalance_history': [event.to_dict() for event in self.rebalance_history]
        }

    def save_metrics(self, output_file: str):
        """
        Save exported metrics to a JSON file

        Args:
            output_file: Output file path
        """
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(self.export_metrics(), f, indent=2)

        logger.info(f"Metrics saved to {output_file}")

    def history_frame(self) -> pd.DataFrame:
        """Snapshot history as a DataFrame, one row per poll cycle"""
        columns = [
            'timestamp', 'current_tick', 'tick_lower', 'tick_upper', 'in_range',
            'pool_liquidity', 'alm_liquidity', 'fees_collected0', 'fees_collected1',
            'total_rebalances', 'successful_rebalances', 'failed_rebalances'
        ]
        rows = []
        for s in self.snapshots:
            rows.append({
                'timestamp': s.timestamp,
                'current_tick': s.pool_data.current_tick,
                'tick_lower': s.alm_state.current_tick_lower,
                'tick_upper': s.alm_state.current_tick_upper,
                'in_range': s.alm_state.contains_tick(s.pool_data.current_tick),
                # Ledger integers may exceed int64
                'pool_liquidity': str(s.pool_data.liquidity),
                'alm_liquidity': str(s.alm_state.total_liquidity),
                'fees_collected0': str(s.alm_state.total_fees_collected0),
                'fees_collected1': str(s.alm_state.total_fees_collected1),
                'total_rebalances': s.executor_metrics.total_rebalances,
                'successful_rebalances': s.executor_metrics.successful_rebalances,
                'failed_rebalances': s.executor_metrics.failed_rebalances
            })

        return pd.DataFrame(rows, columns=columns)

    def save_history_csv(self, output_file: str):
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.history_frame().to_csv(output_path, index=False)
        logger.info(f"Snapshot history saved to {output_file}")

    def clear_history(self):
        self.snapshots.clear()
        self.rebalance_history.clear()
        logger.info("Metrics history cleared")
