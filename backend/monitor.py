# monitor.py
"""Live subscription to tagged notes across all relays, fed into one queue."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence

from errors import RelayError
from relay import KIND_TEXT_NOTE, Connector, Message, RelayConnection, build_filter, verify_event

logger = logging.getLogger(__name__)

SEEN_IDS_MAX = 10_000
RECONNECT_DELAY_SEC = 5.0
MAX_RECONNECT_DELAY_SEC = 60.0

_CLOSED = object()


@dataclass(frozen=True)
class MessageFilter:
    required_tag: str
    content_kinds: Sequence[int] = (KIND_TEXT_NOTE,)
    since_timestamp: Optional[int] = None


class StreamMonitor:
    def __init__(self, relays: Sequence[str], connector: Optional[Connector] = None,
                 connect_timeout: float = 10.0, reconnect_delay: float = RECONNECT_DELAY_SEC):
        self.relays = list(relays)
        self.connector = connector
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.queue: asyncio.Queue = asyncio.Queue()
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: List[asyncio.Task] = []
        self._since: Dict[str, int] = {}
        self._stopped = False

    def subscribe(self, flt: MessageFilter) -> "StreamMonitor":
        start = flt.since_timestamp if flt.since_timestamp is not None else int(time.time())
        for url in self.relays:
            self._since[url] = start
            self._tasks.append(asyncio.create_task(self._reader(url, flt), name=f"monitor:{url}"))
        logger.info("listening for #%s on %d relay(s)", flt.required_tag, len(self.relays))
        return self

    def _remember(self, event_id: str) -> bool:
        """True the first time an id is seen."""
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        if len(self._seen) > SEEN_IDS_MAX:
            self._seen.popitem(last=False)
        return True

    def _advance(self, url: str, created_at: int) -> None:
        # created_at is author-controlled; never move the cursor past our own clock.
        ts = min(created_at, int(time.time()))
        self._since[url] = max(self._since.get(url, 0), ts)

    def since(self, url: str) -> int:
        return self._since.get(url, 0)

    def _accept(self, event: dict, flt: MessageFilter, url: str) -> Optional[Message]:
        if event.get("kind") not in flt.content_kinds:
            return None
        tags = {str(t[1]).lower() for t in (event.get("tags") or [])
                if isinstance(t, list) and len(t) >= 2 and t[0] == "t"}
        if flt.required_tag not in tags:
            return None
        if not verify_event(event):
            logger.debug("dropping event with bad signature")
            return None
        self._advance(url, int(event.get("created_at") or 0))
        if not self._remember(str(event["id"])):
            return None
        return Message.from_event(event)

    async def _reader(self, url: str, flt: MessageFilter) -> None:
        attempt = 0
        sub_id = "nostreward"
        while not self._stopped:
            conn = None
            try:
                conn = await RelayConnection.open(url, self.connect_timeout, self.connector)
                req = build_filter(kinds=flt.content_kinds, since=self.since(url), hashtags=[flt.required_tag])
                stored = await conn.subscribe(sub_id, [req], self.connect_timeout)
                attempt = 0
                logger.info("%s: subscribed (%d stored events)", url, len(stored))
                for event in stored:
                    msg = self._accept(event, flt, url)
                    if msg is not None:
                        await self.queue.put(msg)
                while True:
                    frame = await conn.next_message()
                    if frame[0] == "EVENT" and len(frame) >= 3 and frame[1] == sub_id and isinstance(frame[2], dict):
                        msg = self._accept(frame[2], flt, url)
                        if msg is not None:
                            await self.queue.put(msg)
                    elif frame[0] == "CLOSED" and len(frame) >= 2 and frame[1] == sub_id:
                        raise RelayError(f"{url}: subscription closed: {frame[2] if len(frame) > 2 else ''}")
                    elif frame[0] == "NOTICE":
                        logger.warning("%s: notice: %s", url, frame[1] if len(frame) > 1 else "")
            except asyncio.CancelledError:
                raise
            except RelayError as e:
                attempt += 1
                delay = min(self.reconnect_delay * attempt, MAX_RECONNECT_DELAY_SEC)
                logger.warning("%s: %s; reconnecting in %.0fs", url, e, delay)
                await asyncio.sleep(delay)
            finally:
                if conn is not None:
                    await conn.close()

    async def stop(self) -> None:
        self._stopped = True
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.queue.put(_CLOSED)

    async def messages(self) -> AsyncIterator[Message]:
        """Yield messages in arrival order until stop() has been called and the queue drained."""
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item
