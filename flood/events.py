"""
SwapWatcher: turns pool state changes into rebalance triggers.

A swap always moves the pool's sqrt price, so a changed (sqrt price, tick)
signature between two polls means at least one swap landed. Deposits and
withdrawals only move liquidity and are not triggers. Swaps seen while a
run is in progress collapse into the next trigger.
"""

import logging
import time
from typing import Iterator, Optional

from flood.chain_reader import PoolState
from flood.errors import QueryError

logger = logging.getLogger(__name__)


class SwapWatcher:
    def __init__(self, reader, pool_id: int, interval: float, sleep=time.sleep):
        self.reader = reader
        self.pool_id = pool_id
        self.interval = interval
        self.sleep = sleep
        self._last_signature: Optional[tuple] = None

    def poll(self) -> Optional[PoolState]:
        """Return the pool if it changed since the last poll, else None."""
        pool = self.reader.get_pool(self.pool_id)
        if pool.signature == self._last_signature:
            return None
        if self._last_signature is not None:
            logger.info(
                "Swap detected in pool %d: tick=%d sqrt_price=%s",
                self.pool_id,
                pool.current_tick,
                pool.current_sqrt_price,
            )
        self._last_signature = pool.signature
        return pool

    def triggers(self) -> Iterator[PoolState]:
        """Yield once per observed pool change, forever. The first poll always triggers."""
        while True:
            try:
                pool = self.poll()
            except QueryError as e:
                logger.warning("Pool %d poll failed, retrying: %s", self.pool_id, e)
                pool = None
            if pool is not None:
                yield pool
            else:
                self.sleep(self.interval)
