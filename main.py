#!/usr/bin/env python3
"""
Main application for the ALM Executor service.
Wires the monitor, decision, execution and metrics components and runs
them until SIGINT/SIGTERM.
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, Any, Optional
from config import Config, load_env_file
from alm_executor import ALMExecutor
from control_loop import ControlLoop
from event_bridge import EventBridge
from metrics_collector import MetricsCollector
from state_reader import StateReader
from strategy import RebalanceDecisionEngine
from utils import Logger, ExecutorError

logger = logging.getLogger(__name__)


class ExecutorApp:
    """Main application class for the ALM executor service"""

    def __init__(self, config: Config, metrics_output: Optional[str] = None):
        """
        Initialize the application

        Args:
            config: Validated configuration
            metrics_output: Final metrics JSON path, defaults to METRICS_EXPORT_FILE
        """
        self.config = config
        self.metrics_output = metrics_output or config.METRICS_EXPORT_FILE

        self.metrics_collector = MetricsCollector(config.MAX_HISTORY_SIZE)
        self.executor = ALMExecutor(config)
        self.state_reader = StateReader(config)
        self.event_bridge = EventBridge(config)
        self.decision_engine = RebalanceDecisionEngine(config)
        self.control_loop = ControlLoop(
            config,
            self.state_reader,
            self.decision_engine,
            self.executor,
            self.metrics_collector,
            self.event_bridge
        )

        self.monitor_errors = 0
        self.exit_code = 0
        self._shutdown_event: Optional[asyncio.Event] = None

        logger.info("ExecutorApp initialized")

    async def connect(self):
        """Connect every ledger client"""
        await asyncio.gather(
            self.executor.client.connect(),
            self.state_reader.client.connect(),
            self.event_bridge.client.connect()
        )

    async def check_balance(self) -> Dict[str, Any]:
        """Log the executor wallet balance and warn when it is low"""
        balance = await self.executor.check_balance()
        logger.info(f"Executor wallet: {balance['address']} (balance {balance['balance']})")

        if balance['balance'] < self.config.LOW_BALANCE_THRESHOLD:
            logger.warning("Low balance detected - ensure sufficient funds for gas fees")
        return balance

    async def check(self) -> int:
        """Validate connectivity, balance and contract status, then exit"""
        try:
            await self.connect()
            await self.check_balance()
            paused = await self.executor.is_contract_paused()
            pool_data, alm_state = await self.state_reader.read_state()
        except ExecutorError as e:
            logger.error(f"Check failed: {e}")
            return 1

        logger.info(f"ALM manager paused: {paused}")
        logger.info(f"Pool tick: {pool_data.current_tick}, ALM range: {alm_state.range_label}, "
                    f"ALM liquidity: {alm_state.total_liquidity}")
        logger.info(f"Rebalance due now: {self.decision_engine.should_rebalance(pool_data, alm_state)}")
        return 0

    def log_periodic_metrics(self):
        """Log a one-line health summary"""
        metrics = self.executor.get_metrics()
        latest = self.metrics_collector.get_latest_snapshot()

        logger.info(
            f"Periodic metrics update: uptime={metrics.uptime_seconds}s, "
            f"total_rebalances={metrics.total_rebalances}, "
            f"success_rate={metrics.successful_rebalances}/{metrics.total_rebalances}, "
            f"success_percentage={self.metrics_collector.get_success_rate():.2f}%, "
            f"time_in_range={self.metrics_collector.get_time_in_range():.2f}%, "
            f"current_tick={latest.pool_data.current_tick if latest else None}, "
            f"alm_liquidity={latest.alm_state.total_liquidity if latest else None}, "
            f"monitor_errors={self.monitor_errors}"
        )

    async def _metrics_loop(self):
        while True:
            await asyncio.sleep(self.config.METRICS_LOG_INTERVAL_SECONDS)
            self.log_periodic_metrics()

    def _on_monitor_error(self, error: Exception):
        self.monitor_errors += 1
        logger.debug(f"Pool monitor error #{self.monitor_errors}: {error}")

    def request_shutdown(self, reason: str, exit_code: int = 0):
        """Trigger the shutdown sequence"""
        logger.info(f"Received {reason}, shutting down gracefully...")
        self.exit_code = max(self.exit_code, exit_code)
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _handle_loop_exception(self, loop, context: Dict[str, Any]):
        error = context.get('exception')
        logger.error(f"Uncaught exception: {context.get('message')} {error if error else ''}")
        self.request_shutdown("uncaught exception", exit_code=1)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(
                    self.request_shutdown, signal.Signals(signum).name))

    async def run(self) -> int:
        """
        Run the service until a shutdown signal or fatal fault

        Returns:
            Process exit code
        """
        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers(loop)
        loop.set_exception_handler(self._handle_loop_exception)

        try:
            await self.connect()
            await self.check_balance()
        except ExecutorError as e:
            logger.error(f"Failed to start ALM Executor Service: {e}")
            return 1

        self.event_bridge.on('error', self._on_monitor_error)
        metrics_task = None
        try:
            await self.control_loop.start()
            logger.info("ALM Executor Service started successfully")
            logger.info("Press Ctrl+C to stop")

            metrics_task = asyncio.create_task(self._metrics_loop())
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Fatal error in ALM Executor Service: {e}")
            self.exit_code = 1
        finally:
            if metrics_task is not None:
                metrics_task.cancel()
            await self.shutdown()

        return self.exit_code

    async def shutdown(self):
        """Stop the loop and export final metrics"""
        await self.control_loop.stop()
        self.event_bridge.off('error', self._on_monitor_error)

        final_metrics = self.metrics_collector.export_metrics()
        logger.info(f"Final metrics: {final_metrics['summary']}")

        try:
            if self.metrics_output:
                self.metrics_collector.save_metrics(self.metrics_output)
            if self.config.METRICS_HISTORY_CSV:
                self.metrics_collector.save_history_csv(self.config.METRICS_HISTORY_CSV)
        except OSError as e:
            logger.error(f"Failed to export final metrics: {e}")

        logger.info("Shutdown complete")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='ALM Executor - automated liquidity range rebalancer')
    parser.add_argument('--env-file', type=str, help='Environment file to load (default: .env)')
    parser.add_argument('--log-level', type=str, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: LOG_LEVEL)')
    parser.add_argument('--log-file', type=str, help='Combined log file (default: LOG_FILE)')
    parser.add_argument('--metrics-output', type=str, help='Final metrics JSON (default: METRICS_EXPORT_FILE)')
    parser.add_argument('--check', action='store_true',
                        help='Validate configuration, connectivity and balance, then exit')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    try:
        load_env_file(args.env_file)
        config = Config()
    except ExecutorError as e:
        Logger.setup_logging(level=args.log_level or "INFO")
        logger.error(f"Failed to load configuration: {e}")
        return 1

    Logger.setup_logging(level=args.log_level or config.LOG_LEVEL, log_file=args.log_file or config.LOG_FILE)
    logger.info("Starting ALM Executor Service...")

    try:
        config.validate_config()
        logger.info("Configuration validation passed")
        logger.info(f"Configuration loaded: {config.get_summary()}")
        app = ExecutorApp(config, metrics_output=args.metrics_output)
    except (ExecutorError, ValueError) as e:
        logger.error(f"Failed to start ALM Executor Service: {e}")
        return 1

    if args.check:
        return asyncio.run(app.check())
    return asyncio.run(app.run())


if __name__ == "__main__":
    sys.exit(main())
