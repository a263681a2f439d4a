from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, TestCase

from .db import InMemoryRealtimeStore
from .models import QuestionTimer
from .projector import CountdownProjector, CountdownState, countdown_state_for
from .timers import TimerAnchorManager
from .utils import timer_path

T0 = 1_700_000_000_000


class _FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class _SkewedClock:
    """Client clock that runs ``skew_ms`` away from the server's."""

    def __init__(self, server: _FakeClock, skew_ms: int = 0):
        self.server = server
        self.skew_ms = skew_ms

    def __call__(self) -> int:
        return self.server.now + self.skew_ms


async def _let_loops_run() -> None:
    await asyncio.sleep(0.06)


class CountdownStateForTests(TestCase):
    def test_states(self):
        running = QuestionTimer(is_active=True, start_time=T0, duration=10)

        self.assertIs(countdown_state_for(None, T0), CountdownState.PAUSED)
        self.assertIs(countdown_state_for(QuestionTimer(duration=10), T0), CountdownState.PAUSED)
        self.assertIs(countdown_state_for(running, T0 + 9_999), CountdownState.RUNNING)
        self.assertIs(countdown_state_for(running, T0 + 10_000), CountdownState.EXPIRED)


class CountdownProjectorTests(IsolatedAsyncioTestCase):
    def setUp(self):
        self.server = _FakeClock()
        self.client = _SkewedClock(self.server)
        self.store = InMemoryRealtimeStore(clock=self.server)
        self.timers = TimerAnchorManager(self.store, attempts=1, base_delay=0)
        self.time_ups = []
        self.projector = self._projector()

    async def asyncTearDown(self):
        await self.projector.unmount()

    def _projector(self, **kwargs) -> CountdownProjector:
        options = dict(
            initial_time=30,
            on_time_up=self.time_ups.append,
            clock=self.client,
            tick_interval_ms=10,
            resync_interval_ms=60_000,
        )
        options.update(kwargs)
        return CountdownProjector(self.store, **options)

    async def test_missing_anchor_shows_full_time_paused(self):
        snap = await self.projector.mount("quiz", "q1")

        self.assertIs(snap.state, CountdownState.PAUSED)
        self.assertEqual(snap.time_left, 30)
        self.assertFalse(snap.is_active)
        self.assertEqual(self.time_ups, [])

    async def test_running_anchor_counts_down_from_store(self):
        await self.timers.start_timer("quiz", "q1", 20)
        self.server.advance(4)

        snap = await self.projector.mount("quiz", "q1")
        self.assertIs(snap.state, CountdownState.RUNNING)
        self.assertEqual(snap.time_left, 16)

        self.server.advance(6)
        await _let_loops_run()
        self.assertEqual(self.projector.time_left, 10)
        self.assertAlmostEqual(self.projector.snapshot().progress, 10 / 30)

    async def test_time_up_fires_once_across_repeated_resyncs(self):
        await self.timers.start_timer("quiz", "q1", 1)
        await self.projector.mount("quiz", "q1")

        self.server.advance(1)
        await _let_loops_run()
        self.assertIs(self.projector.state, CountdownState.EXPIRED)
        self.assertEqual(self.projector.time_left, 0)

        for _ in range(3):
            await self.projector.resync()
        await self.projector.handle_visibility_change(True)
        await self.projector.handle_online()

        self.assertEqual(len(self.time_ups), 1)
        self.assertEqual(self.time_ups[0].question_id, "q1")

    async def test_mounting_on_expired_anchor_fires_once(self):
        await self.timers.start_timer("quiz", "q1", 5)
        self.server.advance(9)

        snap = await self.projector.mount("quiz", "q1")
        await self.projector.resync()

        self.assertIs(snap.state, CountdownState.EXPIRED)
        self.assertEqual(len(self.time_ups), 1)

    async def test_async_time_up_callback_is_run(self):
        called = asyncio.Event()

        async def on_time_up(snapshot):
            called.set()

        self.projector = self._projector(on_time_up=on_time_up)
        await self.timers.start_timer("quiz", "q1", 1)
        self.server.advance(2)
        await self.projector.mount("quiz", "q1")

        await asyncio.wait_for(called.wait(), timeout=1)

    async def test_skewed_client_clock_is_corrected(self):
        await self.timers.start_timer("quiz", "q1", 30)
        self.server.advance(3)

        for skew in (2_000, -2_000):
            self.client.skew_ms = skew
            snap = await self.projector.mount("quiz", "q1")
            self.assertEqual(snap.time_left, 27, f"skew {skew}")

    async def test_resync_recovers_from_clock_jump(self):
        await self.timers.start_timer("quiz", "q1", 30)
        await self.projector.mount("quiz", "q1")

        # a suspended tab or a changed system clock
        self.client.skew_ms = 5_000
        await _let_loops_run()
        self.assertEqual(self.projector.time_left, 25)

        snap = await self.projector.resync()
        self.assertEqual(snap.time_left, 30)

    async def test_periodic_resync_converges_without_prompting(self):
        self.projector = self._projector(resync_interval_ms=20)
        await self.timers.start_timer("quiz", "q1", 30)
        await self.projector.mount("quiz", "q1")

        self.client.skew_ms = -2_000
        await asyncio.sleep(0.1)

        self.assertEqual(self.projector.time_left, 30)
        self.assertEqual(self.projector.offset_ms, 2_000)

    async def test_host_pause_and_resume_are_pushed(self):
        await self.timers.start_timer("quiz", "q1", 30)
        await self.projector.mount("quiz", "q1")

        self.server.advance(12)
        await self.timers.stop_timer("quiz", "q1")
        self.assertIs(self.projector.state, CountdownState.PAUSED)
        self.assertEqual(self.projector.time_left, 18)

        self.server.advance(60)
        await _let_loops_run()
        self.assertEqual(self.projector.time_left, 18)

        await self.timers.resume_timer("quiz", "q1")
        self.assertIs(self.projector.state, CountdownState.RUNNING)
        self.assertEqual(self.projector.time_left, 18)

    async def test_observers_see_state_changes(self):
        seen = []
        unsubscribe = self.projector.subscribe(lambda snap: seen.append(snap.state))

        await self.projector.mount("quiz", "q1")
        await self.timers.start_timer("quiz", "q1", 10)
        unsubscribe()
        await self.timers.stop_timer("quiz", "q1")

        self.assertEqual(seen, [CountdownState.SYNCING, CountdownState.PAUSED, CountdownState.RUNNING])

    async def test_switching_questions_drops_previous_subscription(self):
        await self.timers.start_timer("quiz", "q1", 1)
        await self.timers.start_timer("quiz", "q2", 30)
        await self.projector.mount("quiz", "q1")

        await self.projector.switch("quiz", "q2")
        self.server.advance(2)
        await _let_loops_run()
        await self.timers.reset_timer("quiz", "q1")

        self.assertEqual(self.time_ups, [])
        self.assertIs(self.projector.state, CountdownState.RUNNING)
        self.assertEqual(self.projector.question_id, "q2")
        self.assertEqual(self.store.subscriber_count(timer_path("quiz", "q1")), 0)
        self.assertEqual(self.store.subscriber_count(timer_path("quiz", "q2")), 1)

    async def test_unmount_stops_everything(self):
        await self.timers.start_timer("quiz", "q1", 1)
        await self.projector.mount("quiz", "q1")

        await self.projector.unmount()
        self.server.advance(5)
        await _let_loops_run()
        await self.timers.start_timer("quiz", "q1", 3)

        self.assertIs(self.projector.state, CountdownState.UNSYNCED)
        self.assertEqual(self.time_ups, [])
        self.assertEqual(self.store.subscriber_count(), 0)
        self.assertIsNone(self.projector._tick_task)
        self.assertIsNone(self.projector._resync_task)

    async def test_expiry_recorded_by_host_counts_as_expired(self):
        anchor = await self.timers.start_timer("quiz", "q1", 5)
        await self.projector.mount("quiz", "q1")

        # host side already expired the period; this client has not ticked yet
        await self.timers.mark_expired("quiz", "q1", anchor.start_time)
        await self.projector.resync()

        self.assertIs(self.projector.state, CountdownState.EXPIRED)
        self.assertEqual(self.projector.time_left, 0)
        self.assertEqual(len(self.time_ups), 1)

    async def test_host_reset_while_running_pauses(self):
        await self.timers.start_timer("quiz", "q1", 5)
        await self.projector.mount("quiz", "q1")

        await self.timers.reset_timer("quiz", "q1")

        self.assertIs(self.projector.state, CountdownState.PAUSED)
        self.assertEqual(self.time_ups, [])
