# relay.py
"""Minimal async Nostr relay client: websockets for the socket, python-nostr
for keys, event ids, signatures and NIP-04 encryption.

Wire messages are JSON arrays (NIP-01):
  client -> relay: ["REQ", sub_id, filter...], ["EVENT", event], ["CLOSE", sub_id]
  relay -> client: ["EVENT", sub_id, event], ["EOSE", sub_id], ["OK", id, ok, msg],
                   ["CLOSED", sub_id, msg], ["NOTICE", msg]
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import bech32
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from nostr.event import Event
from nostr.filter import Filter
from nostr.key import PrivateKey, PublicKey
from nostr.message_type import ClientMessageType

from errors import ConfigurationInvalid, EventNotFound, RelayError

logger = logging.getLogger(__name__)

KIND_METADATA = 0
KIND_TEXT_NOTE = 1
KIND_REPOST = 6

Connector = Callable[[str], Awaitable[Any]]


async def ws_connect(url: str):
    return await websockets.connect(url, open_timeout=None, max_size=2 ** 22)


# ---------------------------
# Keys / events
# ---------------------------
def load_private_key(value: str) -> PrivateKey:
    """Accept nsec1... or 64-char hex."""
    v = (value or "").strip()
    try:
        if v.startswith("nsec"):
            return PrivateKey.from_nsec(v)
        if len(v) == 64:
            return PrivateKey(raw_secret=bytes.fromhex(v))
    except Exception as e:
        raise ConfigurationInvalid(f"invalid private key: {e}") from e
    raise ConfigurationInvalid("private key is not in nsec or hex format")


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "pubkey": event.public_key,
        "created_at": event.created_at,
        "kind": int(event.kind),
        "tags": event.tags,
        "content": event.content,
        "sig": event.signature,
    }


def sign_event(key: PrivateKey, kind: int, tags: List[List[str]], content: str,
               created_at: Optional[int] = None) -> Dict[str, Any]:
    event = Event(
        content=content,
        public_key=key.public_key.hex(),
        created_at=created_at or int(time.time()),
        kind=kind,
        tags=tags,
    )
    key.sign_event(event)
    return event_to_dict(event)


def verify_event(d: Dict[str, Any]) -> bool:
    """Recompute the id and check the Schnorr signature of a wire event."""
    try:
        event = Event(
            content=d["content"],
            public_key=d["pubkey"],
            created_at=int(d["created_at"]),
            kind=int(d["kind"]),
            tags=d.get("tags") or [],
        )
        if event.id != d["id"]:
            return False
        pub = PublicKey(raw_bytes=bytes.fromhex(d["pubkey"]))
        return bool(pub.verify_signed_message_hash(hash=d["id"], sig=d["sig"]))
    except Exception:
        return False


def decode_event_id(value: str) -> str:
    """Event id from hex, note1... or nevent1... (TLV type 0)."""
    v = (value or "").strip()
    if v.startswith("nostr:"):
        v = v[6:]
    if v.startswith("note1") or v.startswith("nevent1"):
        hrp, data = bech32.bech32_decode(v)
        if hrp is None or data is None:
            raise ValueError(f"invalid bech32 id: {value}")
        raw = bytes(bech32.convertbits(data, 5, 8, False))
        if hrp == "note":
            return raw.hex()
        i = 0
        while i + 2 <= len(raw):
            t, length = raw[i], raw[i + 1]
            if t == 0 and length == 32:
                return raw[i + 2:i + 2 + length].hex()
            i += 2 + length
        raise ValueError(f"nevent without event id: {value}")
    if len(v) == 64:
        bytes.fromhex(v)
        return v.lower()
    raise ValueError(f"not an event id: {value}")


def tag_values(event: Dict[str, Any], name: str) -> List[str]:
    return [t[1] for t in (event.get("tags") or []) if isinstance(t, list) and len(t) >= 2 and t[0] == name]


@dataclass(frozen=True)
class Message:
    id: str
    author: str
    content: str
    created_at: int
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_event(cls, d: Dict[str, Any]) -> "Message":
        return cls(
            id=str(d["id"]),
            author=str(d["pubkey"]),
            content=str(d.get("content") or ""),
            created_at=int(d.get("created_at") or 0),
            raw=d,
        )


def build_filter(kinds: Optional[Sequence[int]] = None, authors: Optional[Sequence[str]] = None,
                 since: Optional[int] = None, event_ids: Optional[Sequence[str]] = None,
                 pubkey_refs: Optional[Sequence[str]] = None, limit: Optional[int] = None,
                 hashtags: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    f = Filter(
        event_ids=list(event_ids) if event_ids else None,
        kinds=list(kinds) if kinds else None,
        authors=list(authors) if authors else None,
        since=since,
        pubkey_refs=list(pubkey_refs) if pubkey_refs else None,
        limit=limit,
    ).to_json_object()
    if hashtags:
        f["#t"] = list(hashtags)
    return f


# ---------------------------
# Connection
# ---------------------------
class RelayConnection:
    def __init__(self, url: str, ws):
        self.url = url
        self._ws = ws

    @classmethod
    async def open(cls, url: str, timeout: float = 10.0, connector: Optional[Connector] = None) -> "RelayConnection":
        connector = connector or ws_connect
        try:
            ws = await asyncio.wait_for(connector(url), timeout)
        except asyncio.TimeoutError as e:
            raise RelayError(f"{url}: connect timed out after {timeout}s") from e
        except (OSError, WebSocketException) as e:
            raise RelayError(f"{url}: connect failed: {e}") from e
        return cls(url, ws)

    async def send(self, message: list) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except (ConnectionClosed, ConnectionError) as e:
            raise RelayError(f"{self.url}: send failed: {e}") from e

    async def next_message(self, timeout: Optional[float] = None) -> list:
        """Next well-formed relay message. Raises asyncio.TimeoutError or RelayError."""
        while True:
            try:
                if timeout is None:
                    raw = await self._ws.recv()
                else:
                    raw = await asyncio.wait_for(self._ws.recv(), timeout)
            except (ConnectionClosed, ConnectionError) as e:
                raise RelayError(f"{self.url}: connection closed: {e}") from e
            try:
                msg = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("%s: ignoring non-json frame", self.url)
                continue
            if isinstance(msg, list) and msg and isinstance(msg[0], str):
                return msg

    async def subscribe(self, sub_id: str, filters: Iterable[Dict[str, Any]], timeout: float = 10.0) -> List[Dict[str, Any]]:
        """Open a subscription and wait for EOSE. Returns the stored events sent before EOSE."""
        await self.send([ClientMessageType.REQUEST, sub_id, *filters])
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        stored: List[Dict[str, Any]] = []
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RelayError(f"{self.url}: no EOSE for {sub_id} within {timeout}s")
            try:
                msg = await self.next_message(remaining)
            except asyncio.TimeoutError as e:
                raise RelayError(f"{self.url}: no EOSE for {sub_id} within {timeout}s") from e
            kind = msg[0]
            if kind == "EVENT" and len(msg) >= 3 and msg[1] == sub_id and isinstance(msg[2], dict):
                stored.append(msg[2])
            elif kind == "EOSE" and len(msg) >= 2 and msg[1] == sub_id:
                return stored
            elif kind == "CLOSED" and len(msg) >= 2 and msg[1] == sub_id:
                reason = msg[2] if len(msg) > 2 else ""
                raise RelayError(f"{self.url}: subscription {sub_id} closed: {reason}")
            elif kind == "NOTICE":
                logger.warning("%s: notice: %s", self.url, msg[1] if len(msg) > 1 else "")

    async def publish(self, event: Dict[str, Any]) -> None:
        await self.send([ClientMessageType.EVENT, event])

    async def unsubscribe(self, sub_id: str) -> None:
        await self.send([ClientMessageType.CLOSE, sub_id])

    async def close(self) -> None:
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug("%s: close failed: %s", self.url, e)


# ---------------------------
# Pool of short-lived connections
# ---------------------------
class RelayPool:
    """One-shot queries and publishes across the configured relays."""

    def __init__(self, relays: Sequence[str], connector: Optional[Connector] = None, timeout: float = 10.0):
        self.relays = list(relays)
        self.connector = connector
        self.timeout = timeout

    async def _query_one(self, url: str, filters: List[Dict[str, Any]], timeout: float) -> List[Dict[str, Any]]:
        conn = await RelayConnection.open(url, timeout, self.connector)
        try:
            sub_id = f"q-{int(time.time() * 1000) % 10 ** 8}"
            events = await conn.subscribe(sub_id, filters, timeout)
            await conn.unsubscribe(sub_id)
            return events
        finally:
            await conn.close()

    async def query(self, filters: List[Dict[str, Any]], timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        timeout = timeout or self.timeout
        results = await asyncio.gather(
            *(self._query_one(url, filters, timeout) for url in self.relays),
            return_exceptions=True,
        )
        seen: Dict[str, Dict[str, Any]] = {}
        for url, res in zip(self.relays, results):
            if isinstance(res, BaseException):
                logger.warning("query on %s failed: %s", url, res)
                continue
            for ev in res:
                ev_id = str(ev.get("id") or "")
                if ev_id in seen or not verify_event(ev):
                    continue
                seen[ev_id] = ev
        return list(seen.values())

    async def _publish_one(self, url: str, event: Dict[str, Any], timeout: float) -> bool:
        conn = await RelayConnection.open(url, timeout, self.connector)
        try:
            await conn.publish(event)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise RelayError(f"{url}: no OK for {event['id'][:12]} within {timeout}s")
                try:
                    msg = await conn.next_message(remaining)
                except asyncio.TimeoutError as e:
                    raise RelayError(f"{url}: no OK for {event['id'][:12]} within {timeout}s") from e
                if msg[0] == "OK" and len(msg) >= 3 and msg[1] == event["id"]:
                    if not msg[2]:
                        logger.warning("%s rejected %s: %s", url, event["id"][:12], msg[3] if len(msg) > 3 else "")
                    return bool(msg[2])
        finally:
            await conn.close()

    async def publish(self, event: Dict[str, Any], timeout: Optional[float] = None) -> int:
        """Publish to every relay. Returns how many accepted; RelayError if none did."""
        timeout = timeout or self.timeout
        results = await asyncio.gather(
            *(self._publish_one(url, event, timeout) for url in self.relays),
            return_exceptions=True,
        )
        accepted = 0
        for url, res in zip(self.relays, results):
            if isinstance(res, BaseException):
                logger.warning("publish on %s failed: %s", url, res)
            elif res:
                accepted += 1
        if accepted == 0:
            raise RelayError(f"event {event['id'][:12]} was not accepted by any relay")
        return accepted

    async def fetch_event(self, event_id: str) -> Dict[str, Any]:
        events = await self.query([build_filter(event_ids=[event_id])])
        for ev in events:
            if ev.get("id") == event_id:
                return ev
        raise EventNotFound(f"Event not found: {event_id}")

    async def fetch_profile(self, pubkey: str) -> Optional[Dict[str, Any]]:
        """Newest kind 0 metadata content for pubkey, parsed; None if absent or unparseable."""
        events = await self.query([build_filter(kinds=[KIND_METADATA], authors=[pubkey], limit=1)])
        events = [e for e in events if e.get("pubkey") == pubkey]
        if not events:
            return None
        newest = max(events, key=lambda e: int(e.get("created_at") or 0))
        try:
            profile = json.loads(newest.get("content") or "{}")
        except ValueError:
            return None
        return profile if isinstance(profile, dict) else None
