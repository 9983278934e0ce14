"""Tests for the per-user serialized audio lane."""
import asyncio
import time

import pytest

from audio.audio_queue import AudioQueue
from core.errors import AudioLaneClosed, SpeechFailure


class TestAudioQueueOrdering:
    @pytest.mark.asyncio
    async def test_operations_complete_in_submission_order(self, audio_queue):
        completed = []
        active = 0
        max_active = 0

        def op(name, delay):
            async def _run():
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(delay)
                active -= 1
                completed.append(name)
                return name
            return _run

        futures = [
            audio_queue.submit("u1", op("A", 0.05)),
            audio_queue.submit("u1", op("B", 0.01)),
            audio_queue.submit("u1", op("C", 0.03)),
        ]
        results = await asyncio.gather(*futures)

        assert completed == ["A", "B", "C"]
        assert results == ["A", "B", "C"]
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_concurrent_enqueue_callers_never_overlap(self, audio_queue):
        active = 0
        max_active = 0

        async def op():
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.005)
            active -= 1

        await asyncio.gather(*(audio_queue.enqueue("u1", op) for _ in range(10)))
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_failure_reaches_only_its_caller(self, audio_queue):
        ran = []

        async def bad():
            raise RuntimeError("device error")

        async def good():
            ran.append("good")
            return "ok"

        bad_future = audio_queue.submit("u1", bad)
        good_future = audio_queue.submit("u1", good)

        with pytest.raises(RuntimeError, match="device error"):
            await bad_future
        assert await good_future == "ok"
        assert ran == ["good"]

    @pytest.mark.asyncio
    async def test_users_run_independently(self, audio_queue):
        started = {}

        async def slow():
            started["slow"] = time.monotonic()
            await asyncio.sleep(0.1)

        async def fast():
            started["fast"] = time.monotonic()

        t0 = time.monotonic()
        await asyncio.gather(audio_queue.enqueue("a", slow), audio_queue.enqueue("b", fast))

        # b did not wait for a's operation
        assert started["fast"] - t0 < 0.08


class TestAudioQueueTiming:
    @pytest.mark.asyncio
    async def test_settle_delay_between_operations(self, registry):
        queue = AudioQueue(registry, settle_delay=0.05, operation_timeout=5.0)
        stamps = []

        async def op():
            stamps.append(time.monotonic())

        await asyncio.gather(queue.enqueue("u1", op), queue.enqueue("u1", op))
        assert stamps[1] - stamps[0] >= 0.045
        await queue.close()

    @pytest.mark.asyncio
    async def test_settle_delay_applies_after_failure(self, registry):
        queue = AudioQueue(registry, settle_delay=0.05, operation_timeout=5.0)
        stamps = []

        async def bad():
            stamps.append(time.monotonic())
            raise RuntimeError("boom")

        async def good():
            stamps.append(time.monotonic())

        first = queue.submit("u1", bad)
        second = queue.submit("u1", good)
        with pytest.raises(RuntimeError):
            await first
        await second
        assert stamps[1] - stamps[0] >= 0.045
        await queue.close()

    @pytest.mark.asyncio
    async def test_hung_operation_times_out_and_lane_continues(self, registry, recorder):
        queue = AudioQueue(registry, settle_delay=0.0, operation_timeout=0.05, recorder=recorder)

        async def hang():
            await asyncio.sleep(10)

        async def after():
            return "next"

        hung = queue.submit("u1", hang)
        nxt = queue.submit("u1", after)

        with pytest.raises(asyncio.TimeoutError):
            await hung
        assert await nxt == "next"
        assert "audio_queue_timeout" in recorder.stages()
        await queue.close()


class TestAudioQueueLifecycle:
    @pytest.mark.asyncio
    async def test_lane_is_stored_on_session(self, audio_queue, registry):
        async def op():
            return 1

        await audio_queue.enqueue("u1", op)
        assert registry.get("u1").audio_lane is not None
        assert audio_queue.pending("u1") == 0
        assert audio_queue.pending("nobody") == 0

    @pytest.mark.asyncio
    async def test_close_lane_fails_running_and_queued_operations(self, audio_queue, registry):
        ran = []
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        async def later():
            ran.append("later")

        first = audio_queue.submit("u1", blocker)
        second = audio_queue.submit("u1", later)
        await asyncio.sleep(0.01)
        assert audio_queue.pending("u1") == 2

        await audio_queue.close_lane("u1")

        # Callers see a speech failure, never a cancellation of their own task
        with pytest.raises(AudioLaneClosed):
            await first
        with pytest.raises(AudioLaneClosed):
            await second
        assert not first.cancelled()
        assert ran == []
        assert registry.get("u1").audio_lane is None

    @pytest.mark.asyncio
    async def test_close_lane_error_is_a_speech_failure(self, audio_queue):
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        waiter = asyncio.create_task(audio_queue.enqueue("u1", blocker))
        await asyncio.sleep(0.01)
        await audio_queue.close_lane("u1")

        with pytest.raises(SpeechFailure):
            await waiter
        assert not waiter.cancelled()

    @pytest.mark.asyncio
    async def test_lane_recreated_after_close(self, audio_queue):
        async def op():
            return "again"

        await audio_queue.enqueue("u1", op)
        await audio_queue.close_lane("u1")
        assert await audio_queue.enqueue("u1", op) == "again"
