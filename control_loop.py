"""
Control loop for the ALM Executor.
Runs the fixed-interval monitor cycle (read state, decide, optionally
rebalance, record metrics) and re-evaluates on ledger notifications.
"""
import asyncio
import logging
from typing import Optional
from config import Config
from state_reader import StateReader
from strategy import RebalanceDecisionEngine
from alm_executor import ALMExecutor
from metrics_collector import MetricsCollector
from event_bridge import EventBridge
from alm_types import RebalanceEvent
from utils import ExecutorError, RpcError

logger = logging.getLogger(__name__)


class ControlLoop:
    """Orchestrates StateReader, decision engine, executor and metrics"""

    def __init__(self, config: Config, state_reader: StateReader,
                 decision_engine: RebalanceDecisionEngine, executor: ALMExecutor,
                 metrics_collector: MetricsCollector, event_bridge: EventBridge):
        self.config = config
        self.state_reader = state_reader
        self.decision_engine = decision_engine
        self.executor = executor
        self.metrics_collector = metrics_collector
        self.event_bridge = event_bridge

        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._tick_lock = asyncio.Lock()
        self._cycle_owner: Optional[asyncio.Task] = None

        self._listeners = {
            'swap': self._on_swap,
            'rebalanced': self._on_rebalanced,
            'fees_collected': self._on_fees_collected,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Run one poll immediately, then arm the timer and subscribe to ledger events"""
        if self._running:
            logger.warning("Control loop is already running")
            return

        logger.info(f"Starting control loop (interval {self.config.MONITORING_INTERVAL_MS} ms)...")
        self._running = True
        self._stop_event = asyncio.Event()

        await self.check_pool_state('startup')
        if not self._running:
            return

        self._timer_task = asyncio.create_task(self._timer_loop())

        for notification, listener in self._listeners.items():
            self.event_bridge.on(notification, listener)
        try:
            await self.event_bridge.subscribe()
        except Exception as e:
            logger.error(f"Ledger event subscription failed, continuing with timer only: {e}")

        logger.info("Control loop started")

    async def stop(self):
        """
        Disarm the timer and unsubscribe. Idempotent.

        No new cycle starts once this is called. A cycle already in progress,
        including a submitted rebalance, is awaited to completion rather than
        cancelled; its results are discarded.
        """
        if not self._running:
            return

        logger.info("Stopping control loop...")
        self._running = False
        self._stop_event.set()

        for notification, listener in self._listeners.items():
            self.event_bridge.off(notification, listener)
        await self.event_bridge.unsubscribe()

        task, self._timer_task = self._timer_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            await task

        # Ad-hoc cycles started outside the timer and poll tasks
        if self._tick_lock.locked() and self._cycle_owner is not asyncio.current_task():
            logger.info("Waiting for in-flight cycle to finish...")
            async with self._tick_lock:
                pass

        logger.info("Control loop stopped")

    async def _timer_loop(self):
        interval = self.config.monitoring_interval_seconds
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            if not self._running:
                break
            try:
                await self.check_pool_state('timer')
            except Exception as e:
                logger.error(f"Error during periodic pool check: {e}")

    async def check_pool_state(self, reason: str = 'timer', coalesce: bool = False) -> Optional[RebalanceEvent]:
        """
        Run one monitor cycle

        Args:
            reason: What triggered the cycle (for logging)
            coalesce: Skip instead of waiting when a cycle is already running

        Returns:
            The rebalance event if a rebalance was attempted, otherwise None
        """
        if not self._running:
            return None
        if coalesce and self._tick_lock.locked():
            logger.debug(f"Evaluation already in progress, skipping {reason} trigger")
            return None

        async with self._tick_lock:
            if not self._running:
                return None
            self._cycle_owner = asyncio.current_task()
            try:
                return await self._run_cycle(reason)
            finally:
                self._cycle_owner = None

    async def _run_cycle(self, reason: str) -> Optional[RebalanceEvent]:
        try:
            pool_data, alm_state = await self.state_reader.read_state()
        except Exception as e:
            error = e if isinstance(e, ExecutorError) else RpcError(str(e))
            logger.error(f"Error checking pool state ({reason}): {error}")
            await self.event_bridge.emit('error', error)
            return None

        if not self._running:
            logger.debug("Stopped during state read, discarding results")
            return None

        logger.debug(f"Pool state check ({reason}): tick={pool_data.current_tick}, "
                     f"ALM range={alm_state.range_label}, liquidity={alm_state.total_liquidity}")

        rebalance_event = None
        if self.decision_engine.should_rebalance(pool_data, alm_state):
            logger.info(f"Rebalance needed - executing... (tick {pool_data.current_tick}, "
                        f"ALM range {alm_state.range_label})")
            rebalance_event = await self.executor.execute_rebalance()

            if not self._running:
                logger.debug("Stopped during rebalance, discarding results")
                return rebalance_event

        self.metrics_collector.record_snapshot(pool_data, alm_state, self.executor.get_metrics())
        if rebalance_event is not None:
            self.metrics_collector.record_rebalance_event(rebalance_event)

        return rebalance_event

    async def _on_swap(self, notification):
        logger.debug(f"Swap at block {notification.block_number}: tick {notification.tick}")
        await self.check_pool_state('swap', coalesce=True)

    async def _on_rebalanced(self, notification):
        logger.info(f"Rebalanced on ledger: {notification.old_tick_lower} - {notification.old_tick_upper} -> "
                    f"{notification.new_tick_lower} - {notification.new_tick_upper}")
        await self.check_pool_state('rebalanced', coalesce=True)

    async def _on_fees_collected(self, notification):
        self.executor.update_fees_collected(notification.amount0, notification.amount1)
        logger.info(f"Fees collected and recorded in metrics: {notification.amount0} / {notification.amount1}")
        await self.check_pool_state('fees_collected', coalesce=True)
