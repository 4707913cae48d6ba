# retry_worker.py
"""Re-attempt failed zaps whose retry deadline has passed.

Fixed interval, no backoff: a payment that fails again is pushed another
30 minutes out, until it succeeds or an operator edits the codes file.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from codes import Ledger
from errors import RewardError
from zaps import Zapper

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SEC = 60.0


class Scheduler:
    """Waits between runs. Tests substitute one that does not sleep."""

    async def wait(self, stop: asyncio.Event, seconds: float) -> bool:
        """Sleep up to `seconds`. Returns True if `stop` was set meanwhile."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return stop.is_set()


@dataclass(frozen=True)
class RetryResult:
    index: int
    message_id: str
    ok: bool
    detail: str = ""


class RetryWorker:
    def __init__(self, ledger: Ledger, zapper: Zapper, interval: float = DEFAULT_INTERVAL_SEC,
                 scheduler: Optional[Scheduler] = None):
        self.ledger = ledger
        self.zapper = zapper
        self.interval = interval
        self.scheduler = scheduler or Scheduler()

    async def run_once(self, now: Optional[datetime] = None) -> List[RetryResult]:
        results: List[RetryResult] = []
        for item in self.ledger.due_retries(now):
            logger.info("retrying zap for note %s... (code #%d)", item.message_id[:12], item.index)
            try:
                outcome = await self.zapper.zap_event_id(item.message_id)
            except RewardError as e:
                retry_at = self.ledger.mark_payment_failed(item.index)
                logger.warning("zap retry for %s... failed, next attempt at %s: %s",
                               item.message_id[:12], retry_at.isoformat(), e)
                results.append(RetryResult(item.index, item.message_id, False, str(e)))
                continue
            except Exception as e:
                retry_at = self.ledger.mark_payment_failed(item.index)
                logger.exception("zap retry for %s... crashed, next attempt at %s",
                                 item.message_id[:12], retry_at.isoformat())
                results.append(RetryResult(item.index, item.message_id, False, repr(e)))
                continue

            self.ledger.clear_payment_failed(item.index)
            detail = "ok" if outcome.confirmed else "unconfirmed"
            logger.info("zap retry for %s... succeeded (%s)", item.message_id[:12], detail)
            results.append(RetryResult(item.index, item.message_id, True, detail))
        return results

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("retry worker started (interval %.0fs)", self.interval)
        while not stop.is_set():
            if await self.scheduler.wait(stop, self.interval):
                break
            try:
                await self.run_once()
            except Exception:
                logger.exception("retry pass failed")
        logger.info("retry worker stopped")
