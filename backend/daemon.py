#!/usr/bin/env python3
"""
Nostreward daemon.

- Listens on the configured relays for kind 1 notes tagged #REQUIRED_HASHTAG.
- A note containing an unused redeem code consumes it and triggers the
  enabled rewards: zap (via NWC), repost, allow-list add.
- Failed zaps are retried every 30 minutes by the retry worker.

Configuration comes from the environment / backend/.env (see config.py).
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional, Set

import uvicorn

from allowlist import AllowList
from codes import Ledger
from config import Settings, load_settings
from errors import ConfigurationInvalid, LedgerCorrupt
from monitor import MessageFilter, StreamMonitor
from relay import Connector, RelayPool, load_private_key
from retry_worker import RetryWorker
from rewards import Reposter, RewardOrchestrator
from status_api import create_app
from zaps import build_zapper

logger = logging.getLogger("nostreward")


def configure_logging(level: str = "INFO") -> None:
    formatter = logging.Formatter(fmt="%(asctime)s %(name)s.%(levelname)s: %(message)s", datefmt="%Y.%m.%d %H:%M:%S")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


class Daemon:
    def __init__(self, settings: Settings, connector: Optional[Connector] = None):
        self.settings = settings
        self.key = load_private_key(settings.bot_private_key)
        self.bot_pubkey = self.key.public_key.hex()
        self.pool = RelayPool(settings.relays, connector)
        self.ledger = Ledger(settings.paths.codes_file)
        self.allowlist = AllowList(settings.paths.whitelist_file)

        self.zapper = build_zapper(settings, self.pool, self.key, connector) if settings.enable_zap else None
        self.orchestrator = RewardOrchestrator(
            self.ledger,
            self.bot_pubkey,
            zapper=self.zapper,
            reposter=Reposter(self.pool, self.key) if settings.enable_repost else None,
            allowlist=self.allowlist if settings.enable_whitelist else None,
        )
        self.retry_worker = RetryWorker(self.ledger, self.zapper, settings.retry_poll_sec) if self.zapper else None
        self.monitor = StreamMonitor(settings.relays, connector)
        self._pending: Set[asyncio.Task] = set()

    def describe(self) -> None:
        s = self.settings
        stats = self.ledger.stats()
        logger.info("bot pubkey %s", self.bot_pubkey)
        logger.info("relays: %s", ", ".join(s.relays))
        logger.info("codes file: %s (%d total, %d available, %d retries pending)",
                    s.paths.codes_file, stats.total, stats.available, stats.pending_retry)
        logger.info("actions: zap=%s (%d sats, timeout policy %s) repost=%s allow-list=%s",
                    s.enable_zap, s.zap_amount_sats, s.payment_timeout_policy, s.enable_repost, s.enable_whitelist)

    async def consume(self) -> None:
        """Single consumer: eligibility is decided strictly in arrival order."""
        async for message in self.monitor.messages():
            try:
                report = self.orchestrator.claim(message)
            except Exception:
                logger.exception("failed to check note %s...", message.id[:12])
                continue
            if not report.redeemed:
                continue
            task = asyncio.create_task(self.orchestrator.reward(message, report))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def run(self, stop: asyncio.Event) -> None:
        self.describe()
        self.monitor.subscribe(MessageFilter(required_tag=self.settings.required_hashtag))
        tasks = [asyncio.create_task(self.consume(), name="consumer")]
        if self.retry_worker is not None:
            tasks.append(asyncio.create_task(self.retry_worker.run(stop), name="retry"))

        server = None
        if self.settings.status_api_port:
            app = create_app(self.ledger, self.allowlist, self.settings.public_view())
            server = uvicorn.Server(uvicorn.Config(
                app, host=self.settings.status_api_host, port=self.settings.status_api_port, log_level="warning",
            ))
            server.install_signal_handlers = lambda: None
            tasks.append(asyncio.create_task(server.serve(), name="status-api"))
            logger.info("status api on http://%s:%d", self.settings.status_api_host, self.settings.status_api_port)

        await stop.wait()
        logger.info("shutting down")
        await self.monitor.stop()
        if server is not None:
            server.should_exit = True
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._pending:
            logger.info("waiting for %d in-flight reward(s)", len(self._pending))
            await asyncio.gather(*list(self._pending), return_exceptions=True)


async def _run(daemon: Daemon) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await daemon.run(stop)


def main() -> None:
    try:
        settings = load_settings()
    except ConfigurationInvalid as e:
        raise SystemExit(f"[fatal] {e}")
    configure_logging(settings.log_level)
    try:
        daemon = Daemon(settings)
    except (ConfigurationInvalid, LedgerCorrupt) as e:
        raise SystemExit(f"[fatal] {e}")
    asyncio.run(_run(daemon))


if __name__ == "__main__":
    main()
