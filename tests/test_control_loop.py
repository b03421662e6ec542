"""
Tests for the ControlLoop orchestration.
Components are wired with mocked ledger access; coroutines run via asyncio.run.
"""
import asyncio
import pytest
import sys
import os
from unittest.mock import Mock, AsyncMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from control_loop import ControlLoop
from event_bridge import EventBridge
from metrics_collector import MetricsCollector
from alm_types import PoolState, ALMState, ExecutorMetrics, RebalanceEvent, FeesCollectedNotification, SwapNotification
from utils import RpcError
from datetime import datetime, timezone

POOL = PoolState(current_tick=5, sqrt_price_x96=2 ** 96, liquidity=10 ** 18)
ALM = ALMState(
    total_liquidity=1000,
    current_tick_lower=0,
    current_tick_upper=10,
    last_rebalance_timestamp=0,
    total_fees_collected0=0,
    total_fees_collected1=0,
    rebalance_count=0
)


class TestControlLoop:
    """Test the monitor cycle and lifecycle."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = Mock()
        self.config.MONITORING_INTERVAL_MS = 10000
        self.config.monitoring_interval_seconds = 10.0
        self.config.event_poll_interval_seconds = 10.0

        self.state_reader = Mock()
        self.state_reader.read_state = AsyncMock(return_value=(POOL, ALM))

        self.decision_engine = Mock()
        self.decision_engine.should_rebalance.return_value = False

        self.executor = Mock()
        self.executor.execute_rebalance = AsyncMock(
            return_value=RebalanceEvent(timestamp=datetime.now(timezone.utc), success=True, new_tick_lower=10, new_tick_upper=20)
        )
        self.executor.get_metrics.return_value = ExecutorMetrics()

        self.metrics_collector = MetricsCollector(max_history_size=10)

        bridge_client = Mock()
        bridge_client.get_block_number = AsyncMock(return_value=100)
        bridge_client.get_events = AsyncMock(return_value=[])
        self.event_bridge = EventBridge(self.config, client=bridge_client)

        self.loop = ControlLoop(
            self.config,
            self.state_reader,
            self.decision_engine,
            self.executor,
            self.metrics_collector,
            self.event_bridge
        )

    def test_start_polls_immediately_and_stop(self):
        async def scenario():
            await self.loop.start()
            assert self.loop.is_running is True
            assert self.event_bridge.is_subscribed is True
            assert self.event_bridge.listener_count('swap') == 1

            await self.loop.stop()

        asyncio.run(scenario())

        assert self.loop.is_running is False
        assert self.event_bridge.is_subscribed is False
        assert self.event_bridge.listener_count('swap') == 0
        assert self.state_reader.read_state.await_count == 1
        assert len(self.metrics_collector.snapshots) == 1
        assert len(self.metrics_collector.rebalance_history) == 0

    def test_start_twice_is_noop(self):
        async def scenario():
            await self.loop.start()
            await self.loop.start()
            await self.loop.stop()

        asyncio.run(scenario())
        assert self.state_reader.read_state.await_count == 1

    def test_stop_is_idempotent(self):
        async def scenario():
            await self.loop.stop()
            await self.loop.start()
            await self.loop.stop()
            await self.loop.stop()

        asyncio.run(scenario())
        assert self.loop.is_running is False

    def test_rebalance_recorded(self):
        self.decision_engine.should_rebalance.return_value = True

        async def scenario():
            await self.loop.start()
            await self.loop.stop()

        asyncio.run(scenario())

        self.executor.execute_rebalance.assert_awaited_once()
        assert len(self.metrics_collector.snapshots) == 1
        assert len(self.metrics_collector.rebalance_history) == 1
        assert self.metrics_collector.get_success_rate() == 100

    def test_read_failure_is_a_noop_poll(self):
        self.state_reader.read_state.side_effect = RpcError("connection refused")
        errors = []
        self.event_bridge.on('error', errors.append)

        async def scenario():
            await self.loop.start()
            assert self.loop.is_running is True
            await self.loop.stop()

        asyncio.run(scenario())

        assert len(self.metrics_collector.snapshots) == 0
        self.decision_engine.should_rebalance.assert_not_called()
        assert len(errors) == 1
        assert isinstance(errors[0], RpcError)

    def test_timer_triggers_periodic_polls(self):
        self.config.monitoring_interval_seconds = 0.01

        async def scenario():
            await self.loop.start()
            await asyncio.sleep(0.1)
            await self.loop.stop()
            calls_at_stop = self.state_reader.read_state.await_count
            await asyncio.sleep(0.05)
            return calls_at_stop

        calls_at_stop = asyncio.run(scenario())

        assert calls_at_stop >= 2
        assert self.state_reader.read_state.await_count == calls_at_stop

    def test_results_discarded_after_stop(self):
        async def scenario():
            await self.loop.start()

            async def read_then_stop():
                await self.loop.stop()
                return POOL, ALM

            self.state_reader.read_state.side_effect = read_then_stop
            result = await self.loop.check_pool_state('test')
            return result

        result = asyncio.run(scenario())

        assert result is None
        assert len(self.metrics_collector.snapshots) == 1

    def test_check_pool_state_when_stopped(self):
        result = asyncio.run(self.loop.check_pool_state('test'))
        assert result is None
        self.state_reader.read_state.assert_not_awaited()

    def test_fees_collected_updates_executor_and_reevaluates(self):
        async def scenario():
            await self.loop.start()
            await self.event_bridge.emit('fees_collected', FeesCollectedNotification(
                amount0=5, amount1=7, block_number=101, log_index=0, tx_hash='0x01'
            ))
            await self.loop.stop()

        asyncio.run(scenario())

        self.executor.update_fees_collected.assert_called_once_with(5, 7)
        assert self.state_reader.read_state.await_count == 2

    def test_swap_triggers_evaluation(self):
        swap = SwapNotification(
            sender='0x' + '1' * 40, recipient='0x' + '2' * 40, amount0=1, amount1=-1,
            sqrt_price_x96=2 ** 96, liquidity=1, tick=42, block_number=101, log_index=0, tx_hash='0x01'
        )

        async def scenario():
            await self.loop.start()
            await self.event_bridge.emit('swap', swap)
            await self.loop.stop()

        asyncio.run(scenario())
        assert self.state_reader.read_state.await_count == 2

    def _slow_rebalance(self, started, finished, seconds=0.3):
        async def slow_rebalance():
            started.set()
            await asyncio.sleep(seconds)
            finished.append(True)
            return RebalanceEvent(timestamp=datetime.now(timezone.utc), success=True)
        return slow_rebalance

    def test_stop_lets_swap_triggered_rebalance_finish(self):
        """stop() mid-rebalance waits for the transaction instead of cancelling it."""
        self.config.event_poll_interval_seconds = 0.01
        block_numbers = iter([100])
        self.event_bridge.client.get_block_number = AsyncMock(side_effect=lambda: next(block_numbers, 101))

        swap_log = {
            'args': {
                'sender': '0x' + '1' * 40, 'recipient': '0x' + '2' * 40, 'amount0': 1, 'amount1': -1,
                'sqrtPriceX96': 2 ** 96, 'liquidity': 1, 'tick': 42
            },
            'blockNumber': 101, 'logIndex': 0, 'transactionHash': b'\x01' * 32
        }

        async def get_events(event_name, from_block, to_block):
            return [swap_log] if event_name == 'Swap' and from_block == 101 else []

        self.event_bridge.client.get_events = AsyncMock(side_effect=get_events)
        # Startup poll sees the range intact, the swap-triggered one does not
        self.decision_engine.should_rebalance.side_effect = [False, True]

        finished = []

        async def scenario():
            started = asyncio.Event()
            self.executor.execute_rebalance = AsyncMock(side_effect=self._slow_rebalance(started, finished))

            await self.loop.start()
            await asyncio.wait_for(started.wait(), timeout=2)
            await self.loop.stop()
            return finished == [True]

        finished_when_stopped = asyncio.run(scenario())

        assert finished_when_stopped is True
        self.executor.execute_rebalance.assert_awaited_once()
        assert self.event_bridge.is_subscribed is False
        # Stopped mid-cycle, so only the startup snapshot is kept
        assert len(self.metrics_collector.snapshots) == 1
        assert len(self.metrics_collector.rebalance_history) == 0

    def test_stop_waits_for_ad_hoc_cycle(self):
        finished = []

        async def scenario():
            await self.loop.start()

            started = asyncio.Event()
            self.executor.execute_rebalance = AsyncMock(
                side_effect=self._slow_rebalance(started, finished, seconds=0.1)
            )
            self.decision_engine.should_rebalance.return_value = True

            in_flight = asyncio.create_task(self.loop.check_pool_state('manual'))
            await started.wait()
            await self.loop.stop()
            stopped_after_finish = finished == [True]
            await in_flight
            return stopped_after_finish

        assert asyncio.run(scenario()) is True

    def test_ad_hoc_evaluation_coalesced_while_cycle_running(self):
        async def scenario():
            await self.loop.start()

            gate = asyncio.Event()

            async def slow_read():
                await gate.wait()
                return POOL, ALM

            self.state_reader.read_state.side_effect = slow_read
            in_flight = asyncio.create_task(self.loop.check_pool_state('timer'))
            await asyncio.sleep(0.01)

            skipped = await self.loop.check_pool_state('swap', coalesce=True)

            gate.set()
            await in_flight
            await self.loop.stop()
            return skipped

        skipped = asyncio.run(scenario())

        assert skipped is None
        # startup poll + the in-flight cycle only
        assert self.state_reader.read_state.await_count == 2
        assert len(self.metrics_collector.snapshots) == 2
