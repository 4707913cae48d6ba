# rewards.py
"""Redeem a code found in a note and hand out the rewards.

The code is consumed before any reward action runs. A failing action never
un-consumes it; a failed payment is only scheduled for retry.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from nostr.key import PrivateKey

from allowlist import AllowList
from codes import Ledger
from errors import PaymentProtocolError, RelayError, ResolutionError, RewardError
from relay import KIND_REPOST, Message, RelayPool, sign_event
from zaps import Zapper

logger = logging.getLogger(__name__)

ACTION_ZAP = "zap"
ACTION_REPOST = "repost"
ACTION_ALLOWLIST = "allowlist"


@dataclass
class RewardReport:
    message_id: str
    fingerprint: Optional[str] = None
    index: Optional[int] = None
    results: Dict[str, str] = field(default_factory=dict)
    payment_retry_scheduled: bool = False

    @property
    def redeemed(self) -> bool:
        return self.fingerprint is not None


class Reposter:
    def __init__(self, pool: RelayPool, key: PrivateKey):
        self.pool = pool
        self.key = key

    async def repost(self, event: Dict) -> str:
        """Publish a kind 6 boost of `event`. Returns the repost id."""
        hint = self.pool.relays[0] if self.pool.relays else ""
        tags = [["e", event["id"], hint], ["p", event["pubkey"]]]
        repost = sign_event(self.key, KIND_REPOST, tags, json.dumps(event, separators=(",", ":")))
        accepted = await self.pool.publish(repost)
        logger.info("repost %s... of %s... accepted by %d relay(s)", repost["id"][:12], event["id"][:12], accepted)
        return repost["id"]

    async def repost_event_id(self, event_id: str) -> str:
        return await self.repost(await self.pool.fetch_event(event_id))


class RewardOrchestrator:
    def __init__(
        self,
        ledger: Ledger,
        bot_pubkey: str,
        zapper: Optional[Zapper] = None,
        reposter: Optional[Reposter] = None,
        allowlist: Optional[AllowList] = None,
    ):
        self.ledger = ledger
        self.bot_pubkey = bot_pubkey
        self.zapper = zapper
        self.reposter = reposter
        self.allowlist = allowlist

    def claim(self, message: Message) -> RewardReport:
        """Match and consume a code for this note. Fast and local; no network."""
        report = RewardReport(message_id=message.id)
        if message.author == self.bot_pubkey:
            return report

        m = self.ledger.redeem(message.content, message.author, message.id)
        if m is None:
            return report
        report.fingerprint = m.fingerprint
        report.index = m.index
        logger.info("code %s... redeemed by %s... on note %s...", m.fingerprint[:12], message.author[:12], message.id[:12])
        return report

    async def handle_message(self, message: Message) -> RewardReport:
        report = self.claim(message)
        if report.redeemed:
            await self.reward(message, report)
        return report

    async def reward(self, message: Message, report: RewardReport) -> RewardReport:
        """Run every enabled reward action for an already-claimed note."""
        if self.zapper is not None:
            await self._zap(message, report)
        if self.reposter is not None:
            await self._repost(message, report)
        if self.allowlist is not None:
            self._allow(message, report)
        return report

    def _schedule_retry(self, message: Message, report: RewardReport) -> Optional[str]:
        try:
            retry_at = self.ledger.mark_payment_failed(report.index)
        except Exception:
            logger.exception("could not record failed zap for %s...; no retry scheduled", message.id[:12])
            return None
        report.payment_retry_scheduled = True
        return retry_at.isoformat()

    async def _zap(self, message: Message, report: RewardReport) -> None:
        try:
            outcome = await self.zapper.zap_message(message)
            report.results[ACTION_ZAP] = "ok" if outcome.confirmed else "unconfirmed"
        except ResolutionError as e:
            report.results[ACTION_ZAP] = f"skipped: {e}"
            logger.warning("zap for %s... skipped: %s", message.id[:12], e)
        except (PaymentProtocolError, RelayError) as e:
            report.results[ACTION_ZAP] = f"failed: {e}"
            retry_at = self._schedule_retry(message, report)
            logger.warning("zap for %s... failed, retry at %s: %s", message.id[:12], retry_at or "never", e)
        except Exception as e:
            # Unknown outcome: keep the obligation.
            report.results[ACTION_ZAP] = f"error: {e!r}"
            retry_at = self._schedule_retry(message, report)
            logger.exception("zap for %s... crashed, retry at %s", message.id[:12], retry_at or "never")

    async def _repost(self, message: Message, report: RewardReport) -> None:
        try:
            event = message.raw or await self.reposter.pool.fetch_event(message.id)
            await self.reposter.repost(event)
            report.results[ACTION_REPOST] = "ok"
        except RewardError as e:
            report.results[ACTION_REPOST] = f"failed: {e}"
            logger.warning("repost of %s... failed: %s", message.id[:12], e)
        except Exception as e:
            report.results[ACTION_REPOST] = f"error: {e!r}"
            logger.exception("repost of %s... crashed", message.id[:12])

    def _allow(self, message: Message, report: RewardReport) -> None:
        try:
            added = self.allowlist.add(message.author, message.id)
            report.results[ACTION_ALLOWLIST] = "added" if added else "already present"
            logger.info("allow-list %s: %s...", "added" if added else "already has", message.author[:12])
        except Exception as e:
            report.results[ACTION_ALLOWLIST] = f"error: {e!r}"
            logger.exception("allow-list add for %s... failed", message.author[:12])
