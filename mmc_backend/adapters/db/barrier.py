"""
Store-wide reader/writer barrier.

Ordinary cache operations hold the shared side and only serialize per path (see
`Sqlite.lock_for_path`). Whole-store operations (backup, restore, prune, clear, migration
swap) hold the exclusive side: they wait for in-flight shared holders to drain and block
new ones until released. Waiting exclusive holders take priority over new shared holders.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from ...shared import get_logger

logger = get_logger(__name__)


class StoreBarrier:
    def __init__(self) -> None:
        self._cond: Optional[asyncio.Condition] = None
        self._shared = 0
        self._exclusive = False
        self._exclusive_waiting = 0
        self._exclusive_label: Optional[str] = None

    def _condition(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    @property
    def exclusive_active(self) -> bool:
        return self._exclusive

    @property
    def exclusive_label(self) -> Optional[str]:
        return self._exclusive_label

    @property
    def shared_holders(self) -> int:
        return self._shared

    @asynccontextmanager
    async def shared(self):
        cond = self._condition()
        async with cond:
            await cond.wait_for(lambda: not self._exclusive and self._exclusive_waiting == 0)
            self._shared += 1
        try:
            yield
        finally:
            async with cond:
                self._shared -= 1
                if self._shared == 0:
                    cond.notify_all()

    @asynccontextmanager
    async def exclusive(self, label: str = "maintenance"):
        cond = self._condition()
        async with cond:
            self._exclusive_waiting += 1
            try:
                await cond.wait_for(lambda: not self._exclusive and self._shared == 0)
            finally:
                self._exclusive_waiting -= 1
                if self._exclusive_waiting == 0:
                    cond.notify_all()
            self._exclusive = True
            self._exclusive_label = label
        logger.debug("Store barrier: exclusive acquired (%s)", label)
        try:
            yield
        finally:
            async with cond:
                self._exclusive = False
                self._exclusive_label = None
                cond.notify_all()
            logger.debug("Store barrier: exclusive released (%s)", label)
