import asyncio
import json

import pytest
from nostr.key import PrivateKey

from allowlist import AllowList
from codes import Ledger
from errors import NoPaymentAddress, PaymentTimeout, RelayError
from nwc import PaymentOutcome
from relay import KIND_REPOST, KIND_TEXT_NOTE, RelayPool, Message, sign_event
from retry_worker import RetryWorker, Scheduler
from rewards import ACTION_ALLOWLIST, ACTION_REPOST, ACTION_ZAP, Reposter, RewardOrchestrator
from fakes import FakeClock, FakeRelay, connector_for

BOT = "b0" * 32


class StubZapper:
    def __init__(self, error=None, confirmed=True):
        self.error = error
        self.confirmed = confirmed
        self.zapped = []

    async def zap_message(self, message):
        return await self.zap_event_id(message.id)

    async def zap_event_id(self, event_id, amount_sats=None, comment=None):
        self.zapped.append(event_id)
        if self.error is not None:
            raise self.error
        return PaymentOutcome(preimage="00" * 32 if self.confirmed else None, confirmed=self.confirmed)


class StubReposter:
    def __init__(self, error=None):
        self.error = error
        self.reposted = []

    async def repost(self, event):
        if self.error is not None:
            raise self.error
        self.reposted.append(event["id"])
        return "r" * 64


def note(content, author=None):
    key = PrivateKey()
    event = sign_event(key, KIND_TEXT_NOTE, [["t", "nostreward"]], content)
    if author is not None:
        event = dict(event, pubkey=author)
    return Message.from_event(event)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(codes_path, clock):
    ledger = Ledger(codes_path, clock=clock)
    ledger.add("NOSTR2024")
    return ledger


@pytest.fixture
def allowlist(whitelist_path, clock):
    return AllowList(whitelist_path, clock=clock)


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_redeem_runs_every_action(self, ledger, allowlist):
        zapper, reposter = StubZapper(), StubReposter()
        orch = RewardOrchestrator(ledger, BOT, zapper=zapper, reposter=reposter, allowlist=allowlist)
        msg = note("NOSTR2024 #nostreward")
        report = await orch.handle_message(msg)
        assert report.redeemed
        assert report.results == {ACTION_ZAP: "ok", ACTION_REPOST: "ok", ACTION_ALLOWLIST: "added"}
        assert zapper.zapped == [msg.id]
        assert reposter.reposted == [msg.id]
        assert allowlist.contains(msg.author)

    @pytest.mark.asyncio
    async def test_same_note_twice_rewards_once(self, ledger, allowlist):
        zapper = StubZapper()
        orch = RewardOrchestrator(ledger, BOT, zapper=zapper, allowlist=allowlist)
        msg = note("NOSTR2024")
        first = await orch.handle_message(msg)
        second = await orch.handle_message(msg)
        assert first.redeemed
        assert not second.redeemed
        assert zapper.zapped == [msg.id]
        assert len(allowlist.entries()) == 1

    @pytest.mark.asyncio
    async def test_bot_notes_ignored(self, ledger):
        zapper = StubZapper()
        orch = RewardOrchestrator(ledger, BOT, zapper=zapper)
        report = await orch.handle_message(note("NOSTR2024", author=BOT))
        assert not report.redeemed
        assert ledger.stats().used == 0
        assert zapper.zapped == []

    @pytest.mark.asyncio
    async def test_no_code_no_reward(self, ledger):
        zapper = StubZapper()
        report = await RewardOrchestrator(ledger, BOT, zapper=zapper).handle_message(note("gm #nostreward"))
        assert not report.redeemed
        assert zapper.zapped == []

    @pytest.mark.asyncio
    async def test_payment_failure_schedules_retry(self, ledger, clock):
        orch = RewardOrchestrator(ledger, BOT, zapper=StubZapper(error=PaymentTimeout("NWC payment timed out (30s)")))
        report = await orch.handle_message(note("NOSTR2024"))
        assert report.redeemed
        assert report.payment_retry_scheduled
        entry = ledger.entries()[0]
        assert entry.used
        assert entry.payment_failed
        clock.advance(minutes=31)
        assert len(ledger.due_retries()) == 1

    @pytest.mark.asyncio
    async def test_unrecordable_failure_still_runs_other_actions(self, ledger, allowlist):
        def disk_full(index):
            raise OSError("disk full")

        ledger.mark_payment_failed = disk_full
        reposter = StubReposter()
        orch = RewardOrchestrator(ledger, BOT, zapper=StubZapper(error=PaymentTimeout("timed out")),
                                  reposter=reposter, allowlist=allowlist)
        msg = note("NOSTR2024")
        report = await orch.handle_message(msg)
        assert report.results[ACTION_ZAP].startswith("failed")
        assert report.results[ACTION_REPOST] == "ok"
        assert report.results[ACTION_ALLOWLIST] == "added"
        assert not report.payment_retry_scheduled
        assert allowlist.contains(msg.author)
        assert ledger.entries()[0].used

    @pytest.mark.asyncio
    async def test_resolution_failure_is_not_retried(self, ledger):
        orch = RewardOrchestrator(ledger, BOT, zapper=StubZapper(error=NoPaymentAddress("no lightning address")))
        report = await orch.handle_message(note("NOSTR2024"))
        assert report.results[ACTION_ZAP].startswith("skipped")
        assert not report.payment_retry_scheduled
        assert not ledger.entries()[0].payment_failed

    @pytest.mark.asyncio
    async def test_repost_failure_does_not_block_allowlist(self, ledger, allowlist):
        orch = RewardOrchestrator(ledger, BOT, reposter=StubReposter(error=RelayError("no relay accepted")),
                                  allowlist=allowlist)
        msg = note("NOSTR2024")
        report = await orch.handle_message(msg)
        assert report.results[ACTION_REPOST].startswith("failed")
        assert report.results[ACTION_ALLOWLIST] == "added"
        assert ledger.entries()[0].used


@pytest.mark.asyncio
async def test_reposter_publishes_kind_6():
    relay = FakeRelay()
    pool = RelayPool(["wss://relay.example"], connector_for({"wss://relay.example": relay}), timeout=1.0)
    original = note("NOSTR2024").raw
    await Reposter(pool, PrivateKey()).repost(original)
    repost = relay.published[0]
    assert repost["kind"] == KIND_REPOST
    assert ["e", original["id"], "wss://relay.example"] in repost["tags"]
    assert ["p", original["pubkey"]] in repost["tags"]
    assert json.loads(repost["content"]) == original


class TestRetryWorker:
    @pytest.mark.asyncio
    async def test_success_clears_retry(self, ledger, clock):
        msg = note("NOSTR2024")
        ledger.redeem(msg.content, msg.author, msg.id)
        ledger.mark_payment_failed(0)
        clock.advance(minutes=31)

        zapper = StubZapper()
        results = await RetryWorker(ledger, zapper).run_once()
        assert [r.ok for r in results] == [True]
        assert zapper.zapped == [msg.id]
        assert not ledger.entries()[0].payment_failed

    @pytest.mark.asyncio
    async def test_not_due_yet(self, ledger, clock):
        msg = note("NOSTR2024")
        ledger.redeem(msg.content, msg.author, msg.id)
        ledger.mark_payment_failed(0)
        clock.advance(minutes=10)
        zapper = StubZapper()
        assert await RetryWorker(ledger, zapper).run_once() == []
        assert zapper.zapped == []

    @pytest.mark.asyncio
    async def test_failure_pushes_retry_out(self, ledger, clock):
        msg = note("NOSTR2024")
        ledger.redeem(msg.content, msg.author, msg.id)
        ledger.mark_payment_failed(0)
        clock.advance(minutes=31)

        results = await RetryWorker(ledger, StubZapper(error=PaymentTimeout("timed out"))).run_once()
        assert [r.ok for r in results] == [False]
        entry = ledger.entries()[0]
        assert entry.payment_failed
        assert entry.retry_at > clock.now


class CountingScheduler(Scheduler):
    """Lets `passes` waits through, then sets stop."""

    def __init__(self, passes):
        self.passes = passes
        self.waits = []

    async def wait(self, stop, seconds):
        self.waits.append(seconds)
        if len(self.waits) > self.passes:
            stop.set()
            return True
        return False


class TestRetryLoop:
    @pytest.mark.asyncio
    async def test_run_polls_until_stopped(self, ledger, clock):
        msg = note("NOSTR2024")
        ledger.redeem(msg.content, msg.author, msg.id)
        ledger.mark_payment_failed(0)
        clock.advance(minutes=31)

        zapper = StubZapper(error=PaymentTimeout("timed out"))
        scheduler = CountingScheduler(passes=3)
        worker = RetryWorker(ledger, zapper, interval=42, scheduler=scheduler)
        await asyncio.wait_for(worker.run(asyncio.Event()), timeout=1.0)

        assert scheduler.waits == [42, 42, 42, 42]
        # First pass fails and pushes the deadline 30 minutes out; the clock never moves.
        assert zapper.zapped == [msg.id]

    @pytest.mark.asyncio
    async def test_run_survives_a_crashing_pass(self, ledger):
        scheduler = CountingScheduler(passes=2)
        worker = RetryWorker(ledger, StubZapper(), scheduler=scheduler)
        calls = []

        async def crash(now=None):
            calls.append(now)
            raise RuntimeError("ledger unavailable")

        worker.run_once = crash
        await asyncio.wait_for(worker.run(asyncio.Event()), timeout=1.0)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_run_exits_when_already_stopped(self, ledger):
        stop = asyncio.Event()
        stop.set()
        zapper = StubZapper()
        await asyncio.wait_for(RetryWorker(ledger, zapper, scheduler=CountingScheduler(passes=5)).run(stop),
                               timeout=1.0)
        assert zapper.zapped == []

    @pytest.mark.asyncio
    async def test_scheduler_wakes_on_stop(self):
        stop = asyncio.Event()
        waiting = asyncio.create_task(Scheduler().wait(stop, 60))
        await asyncio.sleep(0)
        stop.set()
        assert await asyncio.wait_for(waiting, timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_scheduler_times_out(self):
        assert await Scheduler().wait(asyncio.Event(), 0.01) is False
