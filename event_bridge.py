"""
Ledger event bridge for the ALM Executor.
Polls Swap, Rebalanced and FeesCollected logs and republishes them as
internal notifications ('swap', 'rebalanced', 'fees_collected', 'error').
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Dict, Any, List, Callable, Optional
from hexbytes import HexBytes
from config import Config
from alm_client import ALMClient
from alm_types import SwapNotification, RebalancedNotification, FeesCollectedNotification
from utils import RpcError

logger = logging.getLogger(__name__)

NOTIFICATIONS = ('swap', 'rebalanced', 'fees_collected', 'error')


def _tx_hash(log: Any) -> str:
    tx_hash = log.get('transactionHash')
    return HexBytes(tx_hash).to_0x_hex() if tx_hash is not None else ''


def decode_swap(log: Any) -> SwapNotification:
    args = log['args']
    return SwapNotification(
        sender=args['sender'],
        recipient=args['recipient'],
        amount0=int(args['amount0']),
        amount1=int(args['amount1']),
        sqrt_price_x96=int(args['sqrtPriceX96']),
        liquidity=int(args['liquidity']),
        tick=int(args['tick']),
        block_number=int(log['blockNumber']),
        log_index=int(log['logIndex']),
        tx_hash=_tx_hash(log)
    )


def decode_rebalanced(log: Any) -> RebalancedNotification:
    args = log['args']
    return RebalancedNotification(
        old_tick_lower=int(args['oldTickLower']),
        old_tick_upper=int(args['oldTickUpper']),
        new_tick_lower=int(args['newTickLower']),
        new_tick_upper=int(args['newTickUpper']),
        liquidity_amount=int(args['liquidityAmount']),
        block_number=int(log['blockNumber']),
        log_index=int(log['logIndex']),
        tx_hash=_tx_hash(log)
    )


def decode_fees_collected(log: Any) -> FeesCollectedNotification:
    args = log['args']
    return FeesCollectedNotification(
        amount0=int(args['amount0']),
        amount1=int(args['amount1']),
        block_number=int(log['blockNumber']),
        log_index=int(log['logIndex']),
        tx_hash=_tx_hash(log)
    )


# Ledger event -> (notification name, decoder)
LEDGER_EVENTS = {
    'Swap': ('swap', decode_swap),
    'Rebalanced': ('rebalanced', decode_rebalanced),
    'FeesCollected': ('fees_collected', decode_fees_collected),
}


class EventBridge:
    """Publish/subscribe relay between ledger events and internal listeners"""

    def __init__(self, config: Config, client: Optional[ALMClient] = None):
        """
        Initialize the event bridge

        Args:
            config: Configuration object
            client: Ledger client, a read-only one is created if omitted
        """
        self.config = config
        self.client = client or ALMClient(config, read_only=True)

        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._poll_task: Optional[asyncio.Task] = None
        self._subscribed = False
        self._wakeup: Optional[asyncio.Event] = None
        self.next_block: Optional[int] = None

    @property
    def is_subscribed(self) -> bool:
        return self._subscribed

    def on(self, notification: str, listener: Callable):
        """Register a listener (plain function or coroutine function)"""
        if notification not in NOTIFICATIONS:
            raise ValueError(f"Unknown notification: {notification}")
        self._listeners[notification].append(listener)

    def off(self, notification: str, listener: Optional[Callable] = None):
        """Remove one listener, or every listener of a notification when none is given"""
        if listener is None:
            self._listeners.pop(notification, None)
            return
        listeners = self._listeners.get(notification, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, notification: str) -> int:
        return len(self._listeners.get(notification, []))

    async def emit(self, notification: str, payload: Any):
        """
        Deliver a notification to every registered listener

        A failing listener is logged and does not prevent delivery to the others.
        """
        for listener in list(self._listeners.get(notification, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Listener for '{notification}' failed: {e}")

    async def subscribe(self):
        """Start polling ledger events from the next block"""
        if self._subscribed:
            logger.warning("Event bridge already subscribed")
            return

        self.next_block = await self.client.get_block_number() + 1
        self._subscribed = True
        self._wakeup = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Subscribed to ledger events from block {self.next_block}")

    async def unsubscribe(self):
        """
        Stop polling ledger events. Safe to call repeatedly or when never subscribed.

        A dispatch already in progress runs to completion before this returns.
        """
        if not self._subscribed and self._poll_task is None:
            return

        self._subscribed = False
        if self._wakeup is not None:
            self._wakeup.set()

        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            await task

        logger.info("Unsubscribed from ledger events")

    async def _poll_loop(self):
        while self._subscribed:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.event_poll_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            if not self._subscribed:
                break
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Event polling failed: {e}")
                await self.emit('error', e if isinstance(e, RpcError) else RpcError(str(e)))

    async def poll_once(self) -> int:
        """
        Fetch and dispatch every ledger event since the cursor

        Returns:
            Number of notifications dispatched

        Raises:
            RpcError: if the block number or logs cannot be fetched; the
                cursor is left unchanged so the range is retried next poll
        """
        latest_block = await self.client.get_block_number()
        if self.next_block is None:
            self.next_block = latest_block + 1
            return 0
        if latest_block < self.next_block:
            return 0

        from_block = self.next_block
        event_names = list(LEDGER_EVENTS)
        results = await asyncio.gather(*(
            self.client.get_events(name, from_block, latest_block) for name in event_names
        ))

        decoded = []
        for event_name, logs in zip(event_names, results):
            notification, decoder = LEDGER_EVENTS[event_name]
            for log in logs:
                decoded.append((int(log['blockNumber']), int(log['logIndex']), notification, decoder(log)))

        decoded.sort(key=lambda item: (item[0], item[1]))
        for _, _, notification, payload in decoded:
            logger.debug(f"Ledger event {notification} at block {payload.block_number}")
            await self.emit(notification, payload)

        self.next_block = latest_block + 1
        return len(decoded)
