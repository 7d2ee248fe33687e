"""Tests for the background offer expiry worker."""

import asyncio

import pytest

from stoneridge.service.offer_sweeper import OfferExpiryWorker
from stoneridge.storage.models import OfferStatus


class _CountingEngine:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def sweep_expired(self, now=None):
        self.calls.append(now)
        if self.fail:
            raise RuntimeError("database unavailable")
        return 0


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_run_once_expires_stale_offers(self, engine, marketplace, store, clock):
        offer = engine.make_offer(
            marketplace["chat"].id, marketplace["buyer"].id, "80", validity_hours=1
        )
        worker = OfferExpiryWorker(engine, clock)
        clock.advance(hours=2)

        assert await worker.run_once() == 1
        assert await worker.run_once() == 0
        assert store.get_offer(offer.id).status is OfferStatus.REJECTED

    @pytest.mark.asyncio
    async def test_run_once_uses_clock_time(self, clock):
        fake = _CountingEngine()
        worker = OfferExpiryWorker(fake, clock)
        await worker.run_once()
        assert fake.calls == [clock.now()]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_sweeps_then_stops(self, clock):
        fake = _CountingEngine()
        worker = OfferExpiryWorker(fake, clock, interval=3600)

        await worker.start()
        assert worker.running
        await asyncio.sleep(0.05)
        await worker.stop()

        assert not worker.running
        assert len(fake.calls) == 1

    @pytest.mark.asyncio
    async def test_second_start_is_ignored(self, clock):
        worker = OfferExpiryWorker(_CountingEngine(), clock, interval=3600)
        await worker.start()
        task = worker._task
        await worker.start()
        assert worker._task is task
        await worker.stop()

    @pytest.mark.asyncio
    async def test_errors_do_not_kill_the_loop(self, clock):
        fake = _CountingEngine(fail=True)
        worker = OfferExpiryWorker(fake, clock, interval=0.01)

        await worker.start()
        await asyncio.sleep(0.2)
        assert worker.running
        assert worker._task is not None and not worker._task.done()
        await worker.stop()

        assert len(fake.calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, clock):
        worker = OfferExpiryWorker(_CountingEngine(), clock)
        await worker.stop()
        assert not worker.running
